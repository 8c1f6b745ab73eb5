from __future__ import annotations

from app.models import InvestmentProjection


def calculate_future_value(monthly_savings: float, years: float, annual_interest_rate: float = 0.05) -> float:
    """Future value of a monthly savings annuity with monthly compounding."""
    monthly_rate = annual_interest_rate / 12
    months = years * 12
    if monthly_rate == 0:
        return monthly_savings * months
    return monthly_savings * (((1 + monthly_rate) ** months - 1) / monthly_rate)


def project_investment(
    initial: float = 0,
    monthly: float = 0,
    years: float = 0,
    annual_rate: float = 0.05,
) -> InvestmentProjection:
    months = int(round(years * 12))
    monthly_rate = annual_rate / 12

    future = initial * (1 + monthly_rate) ** months
    for _ in range(months):
        future = future * (1 + monthly_rate) + monthly

    return InvestmentProjection(
        initial=initial,
        monthly=monthly,
        years=years,
        annual_rate=annual_rate,
        future_value=round(future, 2),
    )
