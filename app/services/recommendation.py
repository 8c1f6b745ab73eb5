from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Optional, Sequence

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from app.catalog import Catalog
from app.models import (
    CycleLifestyleInput,
    PriceComparisonResult,
    Product,
    RecommendationBundle,
    SkinAnalysis,
    SkinProfile,
)
from app.services.analysis_normalizer import build_fallback_analysis, normalize_skin_analysis
from app.services.cycle_insights import lifestyle_triggers, refine_cycle_lifestyle
from app.services.gemini import GenerateTextFn
from app.services.matcher import attach_products_to_routine, rank_products
from app.services.pricing import (
    DEFAULT_PRICE_TIMEOUT_S,
    StoreFetchFn,
    aggregate_prices,
    fallback_comparison,
)
from app.services.prompts import skin_analysis_prompt
from app.services.routine import generate_routine
from app.store.price_cache import PriceCache

logger = logging.getLogger("skinsense.recommendation")

DEFAULT_RECOMMENDATION_LIMIT = 6


class BundleRequestError(ValueError):
    """The request cannot start the pipeline (nothing to analyze)."""


class BundleRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    skin_analysis_json: Optional[Any] = Field(
        default=None,
        validation_alias=AliasChoices("skin_analysis_json", "skinAnalysisJson"),
    )
    image_base64: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("image_base64", "imageBase64"),
    )
    mime_type: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("mime_type", "mimeType"),
    )
    lifestyle: Optional[CycleLifestyleInput] = Field(
        default=None,
        validation_alias=AliasChoices("lifestyle", "cycle_lifestyle"),
    )
    pre_existing_conditions: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("pre_existing_conditions", "preExistingConditions"),
    )
    likert_answers: Optional[dict[str, int]] = Field(
        default=None,
        validation_alias=AliasChoices("likert_answers", "likertAnswers"),
    )


def guess_mime_type(image_base64: str) -> str:
    if image_base64.startswith("iVBORw0KGgo"):
        return "image/png"
    if image_base64.startswith("UklGR"):
        return "image/webp"
    return "image/jpeg"


def build_skin_profile(analysis: SkinAnalysis, cycle: CycleLifestyleInput) -> SkinProfile:
    """Profile owning its own copies of the analysis and lifestyle input."""
    combined: list[str] = []
    for trigger in [*analysis.probable_triggers, *lifestyle_triggers(cycle)]:
        if trigger not in combined:
            combined.append(trigger)
    return SkinProfile(
        skin_analysis=analysis.model_copy(deep=True),
        cycle_lifestyle=cycle.model_copy(deep=True),
        combined_triggers=combined,
    )


def _trace(path: str, reason_code: Optional[str]) -> dict[str, Any]:
    return {"path": path, "reason_code": reason_code}


async def analyze_image(
    image_base64: str,
    *,
    mime_type: Optional[str],
    analyze: Optional[GenerateTextFn],
    pre_existing_conditions: Optional[list[str]] = None,
    likert_answers: Optional[dict[str, int]] = None,
) -> tuple[SkinAnalysis, Optional[str]]:
    if analyze is None:
        return build_fallback_analysis("Skin analysis is unavailable right now."), "no_api_key"
    try:
        raw = await analyze(
            skin_analysis_prompt(pre_existing_conditions, likert_answers),
            image_base64=image_base64,
            mime_type=mime_type or guess_mime_type(image_base64),
        )
    except httpx.TimeoutException as exc:
        logger.warning("Vision analysis timed out; using fallback analysis. err=%r", exc)
        return build_fallback_analysis("Skin analysis is unavailable right now."), "upstream_timeout"
    except Exception as exc:
        logger.warning("Vision analysis failed; using fallback analysis. err=%r", exc)
        return build_fallback_analysis("Skin analysis is unavailable right now."), "upstream_error"
    return normalize_skin_analysis(raw)


async def compare_prices_for_products(
    products: Sequence[Product],
    *,
    store_fetchers: Sequence[tuple[str, StoreFetchFn]],
    timeout_s: float = DEFAULT_PRICE_TIMEOUT_S,
    cache: Optional[PriceCache] = None,
) -> list[PriceComparisonResult]:
    stores = [store for store, _ in store_fetchers]
    outcomes = await asyncio.gather(
        *(aggregate_prices(p.name, store_fetchers, timeout_s=timeout_s, cache=cache) for p in products),
        return_exceptions=True,
    )
    results: list[PriceComparisonResult] = []
    for product, outcome in zip(products, outcomes):
        if isinstance(outcome, PriceComparisonResult):
            results.append(outcome)
        else:
            logger.warning("Price comparison failed. product=%r err=%r", product.name, outcome)
            results.append(fallback_comparison(product.name, stores))
    return results


async def build_recommendation_bundle(
    request: BundleRequest,
    *,
    catalog: Catalog,
    store_fetchers: Sequence[tuple[str, StoreFetchFn]],
    analyze: Optional[GenerateTextFn] = None,
    generate_text: Optional[GenerateTextFn] = None,
    use_ai_ranking: bool = False,
    limit: int = DEFAULT_RECOMMENDATION_LIMIT,
    price_timeout_s: float = DEFAULT_PRICE_TIMEOUT_S,
    price_cache: Optional[PriceCache] = None,
) -> RecommendationBundle:
    """
    Run one request end to end: analysis -> lifestyle -> profile -> routine -> products -> prices.

    Only request validation raises (BundleRequestError). Every collaborator failure is absorbed
    by its stage and recorded in the bundle trace.
    """
    started_at = time.perf_counter()
    trace: dict[str, dict[str, Any]] = {}

    if request.skin_analysis_json is not None:
        analysis, reason = normalize_skin_analysis(request.skin_analysis_json)
        trace["skin_analysis"] = _trace("provided" if reason is None else "fallback", reason)
    else:
        image = request.image_base64
        if not isinstance(image, str) or not image.strip():
            raise BundleRequestError(
                "Missing required data. Provide either skin_analysis_json or a non-empty image_base64."
            )
        analysis, reason = await analyze_image(
            image.strip(),
            mime_type=request.mime_type,
            analyze=analyze,
            pre_existing_conditions=request.pre_existing_conditions,
            likert_answers=request.likert_answers,
        )
        trace["skin_analysis"] = _trace("vision" if reason is None else "fallback", reason)

    cycle_input = request.lifestyle or CycleLifestyleInput()
    cycle, cycle_notes, reason = await refine_cycle_lifestyle(analysis, cycle_input, generate_text=generate_text)
    trace["cycle_lifestyle"] = _trace("ai" if reason is None else "input", reason)
    if cycle_notes:
        trace["cycle_lifestyle"]["notes"] = cycle_notes

    profile = build_skin_profile(analysis, cycle)

    routine, reason = await generate_routine(profile, generate_text=generate_text)
    trace["routine"] = _trace("ai" if reason is None else "rules", reason)

    recommended, reason = await rank_products(
        profile,
        catalog.products,
        catalog.ingredient_index,
        limit,
        generate_text=generate_text if use_ai_ranking else None,
    )
    if not use_ai_ranking:
        reason = "disabled"
    trace["products"] = _trace("ai" if reason is None else "rules", reason)

    routine = attach_products_to_routine(routine, recommended)

    price_comparisons = await compare_prices_for_products(
        recommended,
        store_fetchers=store_fetchers,
        timeout_s=price_timeout_s,
        cache=price_cache,
    )
    priced = sum(1 for c in price_comparisons if c.cheapest_store)
    trace["prices"] = _trace("stores", None if priced else "no_match")

    logger.info(
        "bundle_built products=%d priced=%d elapsed_ms=%d",
        len(recommended),
        priced,
        int(round((time.perf_counter() - started_at) * 1000)),
    )

    return RecommendationBundle(
        skin_profile=profile,
        routine=routine,
        recommended_products=recommended,
        price_comparisons=price_comparisons,
        trace=trace,
    )
