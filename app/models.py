from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

SeverityLevel = Literal["none", "mild", "moderate", "severe"]
CyclePhase = Literal["menstrual", "follicular", "ovulatory", "luteal", "unknown"]
RoutineTime = Literal["AM", "PM", "AM_PM"]

SEVERITY_LEVELS: tuple[str, ...] = ("none", "mild", "moderate", "severe")

_SEVERITY_RANK = {level: i for i, level in enumerate(SEVERITY_LEVELS)}

_CYCLE_PHASE_ALIASES = {
    "ovulation": "ovulatory",
    "period": "menstrual",
}


def severity_rank(level: Any) -> int:
    return _SEVERITY_RANK.get(str(level or "").strip().lower(), 0)


def severity_at_least(level: Any, threshold: str) -> bool:
    return severity_rank(level) >= _SEVERITY_RANK[threshold]


def _dedupe(items: Any) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for item in items or []:
        text = str(item).strip()
        if not text or text in seen:
            continue
        seen.add(text)
        out.append(text)
    return out


class SkinAnalysis(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    acne: SeverityLevel = "none"
    redness: SeverityLevel = "none"
    dryness: SeverityLevel = "none"
    oiliness: SeverityLevel = "none"
    texture_notes: list[str] = Field(default_factory=list)
    non_medical_summary: str = ""
    probable_triggers: list[str] = Field(default_factory=list)
    routine_focus: list[str] = Field(default_factory=list)

    @field_validator("acne", "redness", "dryness", "oiliness", mode="before")
    @classmethod
    def _coerce_severity(cls, value: Any) -> str:
        text = str(value).strip().lower() if value is not None else ""
        return text if text in _SEVERITY_RANK else "none"

    @field_validator("probable_triggers", mode="before")
    @classmethod
    def _lower_triggers(cls, value: Any) -> list[str]:
        if not isinstance(value, (list, tuple, set)):
            return []
        return _dedupe(str(v).strip().lower() for v in value)

    @field_validator("routine_focus", mode="before")
    @classmethod
    def _dedupe_focus(cls, value: Any) -> list[str]:
        if not isinstance(value, (list, tuple, set)):
            return []
        return _dedupe(str(v).strip().lower() for v in value)

    @field_validator("texture_notes", mode="before")
    @classmethod
    def _coerce_notes(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value] if value.strip() else []
        return [str(v) for v in value if v is not None]


class CycleLifestyleInput(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    cycle_phase: CyclePhase = "unknown"
    sleep_hours: float = Field(default=7, ge=0, le=24)
    hydration_cups: float = Field(default=6, ge=0)
    stress_level: int = Field(default=3, ge=1, le=5)
    mood: int = Field(default=3, ge=1, le=5)
    notes: Optional[str] = None

    @field_validator("cycle_phase", mode="before")
    @classmethod
    def _normalize_phase(cls, value: Any) -> Any:
        if value is None:
            return "unknown"
        text = str(value).strip().lower()
        return _CYCLE_PHASE_ALIASES.get(text, text)


class SkinProfile(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    skin_analysis: SkinAnalysis
    cycle_lifestyle: CycleLifestyleInput
    combined_triggers: list[str] = Field(default_factory=list)


class IngredientInfo(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    name: str
    category: Optional[str] = None
    functions: list[str] = Field(default_factory=list)
    comedogenic_rating: Optional[float] = Field(default=None, ge=0, le=5)
    irritancy_rating: Optional[float] = Field(default=None, ge=0, le=5)
    irritant: bool = False
    fragrance: bool = False
    acne_trigger: bool = False
    warnings: list[str] = Field(default_factory=list)
    benefits: list[str] = Field(default_factory=list)
    notes: Optional[str] = None

    @field_validator("name", mode="before")
    @classmethod
    def _normalize_name(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @property
    def is_irritant(self) -> bool:
        return self.irritant or (self.irritancy_rating is not None and self.irritancy_rating >= 3)

    @property
    def is_fragrance(self) -> bool:
        return self.fragrance or any("fragrance" in w.lower() for w in self.warnings)

    @property
    def is_acne_trigger(self) -> bool:
        return self.acne_trigger or any("acne" in w.lower() for w in self.warnings)


class Product(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    brand: str
    category: str
    ingredients_full: str = ""
    ingredients: list[str] = Field(default_factory=list)
    key_ingredients: list[str] = Field(default_factory=list)
    suitable_for: list[str] = Field(default_factory=list)
    concerns: list[str] = Field(default_factory=list)
    fragrance_free: bool = False
    comedogenic_rating: int = Field(default=0, ge=0, le=5)
    image_url: Optional[str] = None
    price_estimate: Optional[float] = Field(default=None, ge=0)


class RoutineStep(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    step: str
    time: RoutineTime = "AM_PM"
    instruction: str
    product_name: Optional[str] = None


class Routine(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    steps: list[RoutineStep] = Field(default_factory=list)
    notes: str = ""

    def for_time(self, time_of_day: str) -> list[RoutineStep]:
        return [s for s in self.steps if s.time == time_of_day or s.time == "AM_PM"]


class StorePrice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    store: str
    price: Optional[float] = None
    url: str = ""
    image: Optional[str] = None
    last_checked: int


class PriceComparisonResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    product_name: str
    prices: list[StorePrice] = Field(default_factory=list)
    cheapest_store: Optional[str] = None


class RecommendationBundle(BaseModel):
    model_config = ConfigDict(extra="ignore")

    skin_profile: SkinProfile
    routine: Routine
    recommended_products: list[Product] = Field(default_factory=list)
    price_comparisons: list[PriceComparisonResult] = Field(default_factory=list)
    trace: dict[str, dict[str, Any]] = Field(default_factory=dict)


class InvestmentProjection(BaseModel):
    model_config = ConfigDict(extra="ignore")

    initial: float = 0
    monthly: float = 0
    years: float = 0
    annual_rate: float = 0.05
    future_value: float = 0
