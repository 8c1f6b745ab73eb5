from __future__ import annotations

import logging
import os
import re
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import ValidationError

from app.catalog import Catalog, CatalogError, get_catalog
from app.models import CycleLifestyleInput, SkinAnalysis, SkinProfile
from app.services.analysis_normalizer import normalize_skin_analysis
from app.services.cycle_insights import refine_cycle_lifestyle
from app.services.gemini import GenerateTextFn, make_generate_text
from app.services.ingredients import parse_ingredients, score_ingredient_list
from app.services.investment import project_investment
from app.services.matcher import score_products
from app.services.pricing import DEFAULT_STORES, StoreFetchFn, aggregate_prices
from app.services.recommendation import (
    BundleRequest,
    BundleRequestError,
    DEFAULT_RECOMMENDATION_LIMIT,
    analyze_image,
    build_recommendation_bundle,
    build_skin_profile,
)
from app.services.retailers import build_store_fetchers
from app.services.routine import generate_routine
from app.store.price_cache import PRICE_CACHE


router = APIRouter()

logger = logging.getLogger("skinsense.v1")


GEMINI_API_KEY = (os.getenv("GEMINI_API_KEY") or "").strip() or None
GEMINI_BASE_URL = (os.getenv("GEMINI_BASE_URL") or "https://generativelanguage.googleapis.com/v1").rstrip("/")
GEMINI_VISION_MODEL = (os.getenv("GEMINI_VISION_MODEL") or "gemini-2.5-flash").strip()
GEMINI_TEXT_MODEL = (os.getenv("GEMINI_TEXT_MODEL") or "gemini-2.0-flash-001").strip()
RAPIDAPI_KEY = (os.getenv("RAPIDAPI_KEY") or "").strip() or None

PRICE_STORES = [s.strip() for s in (os.getenv("PRICE_STORES") or ",".join(DEFAULT_STORES)).split(",") if s.strip()]
USE_AI_PRODUCT_RANKING = (os.getenv("USE_AI_PRODUCT_RANKING") or "").strip().lower() in {"1", "true", "yes", "y"}

DEFAULT_TIMEOUT_S = float(os.getenv("UPSTREAM_TIMEOUT_S") or "20")
PRICE_TIMEOUT_S = float(os.getenv("PRICE_TIMEOUT_S") or "8")
RECOMMENDATION_LIMIT = int(os.getenv("RECOMMENDATION_LIMIT") or str(DEFAULT_RECOMMENDATION_LIMIT))

_DATA_URL_RE = re.compile(r"^data:(image/[\w+.-]+);base64,(.*)$", re.DOTALL)

_CATEGORY_GROUPS = {
    "cleansers": "cleanser",
    "moisturizers": "moisturizer",
    "serums": "serum",
    "exfoliants": "exfoliant",
    "spf": "sunscreen",
    "treatments": "treatment",
}


def _vision_generator() -> Optional[GenerateTextFn]:
    return make_generate_text(
        base_url=GEMINI_BASE_URL,
        api_key=GEMINI_API_KEY,
        model=GEMINI_VISION_MODEL,
        timeout_s=DEFAULT_TIMEOUT_S,
    )


def _text_generator() -> Optional[GenerateTextFn]:
    return make_generate_text(
        base_url=GEMINI_BASE_URL,
        api_key=GEMINI_API_KEY,
        model=GEMINI_TEXT_MODEL,
        timeout_s=DEFAULT_TIMEOUT_S,
    )


def _store_fetchers() -> list[tuple[str, StoreFetchFn]]:
    return build_store_fetchers(PRICE_STORES, rapidapi_key=RAPIDAPI_KEY, timeout_s=PRICE_TIMEOUT_S)


def _load_catalog() -> Catalog:
    try:
        return get_catalog()
    except CatalogError as exc:
        raise HTTPException(status_code=500, detail={"error": "catalog_unavailable", "details": str(exc)}) from exc


def _split_data_url(data_url: str) -> tuple[str, str]:
    match = _DATA_URL_RE.match(data_url.strip())
    if not match:
        raise HTTPException(status_code=400, detail="Invalid image data URL format")
    return match.group(2), match.group(1)


def _validation_detail(exc: ValidationError) -> list[dict[str, Any]]:
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]


def _caller_analysis(raw: Any) -> SkinAnalysis:
    if raw is None:
        raise HTTPException(status_code=422, detail="Missing skin_analysis in skin profile.")
    analysis, reason = normalize_skin_analysis(raw)
    if reason is not None:
        raise HTTPException(
            status_code=422,
            detail={"error": "invalid_skin_analysis", "reason_code": reason},
        )
    return analysis


def _profile_from_body(body: dict[str, Any]) -> SkinProfile:
    raw_profile = body.get("skin_profile")
    if raw_profile is not None:
        if not isinstance(raw_profile, dict):
            raise HTTPException(status_code=422, detail="skin_profile must be an object.")
        raw_analysis = raw_profile.get("skin_analysis")
        raw_cycle = raw_profile.get("cycle_lifestyle")
    elif "skin_analysis" in body:
        raw_analysis = body.get("skin_analysis")
        raw_cycle = body.get("cycle_lifestyle")
    else:
        raise HTTPException(status_code=400, detail="Missing skin_profile (or skin_analysis).")

    analysis = _caller_analysis(raw_analysis)
    try:
        cycle = CycleLifestyleInput.model_validate(raw_cycle or {})
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=_validation_detail(exc)) from exc
    return build_skin_profile(analysis, cycle)


@router.post("/analyze-skin")
async def analyze_skin(body: dict[str, Any]):
    image_base64 = body.get("imageBase64") or body.get("image_base64")
    mime_type = body.get("mimeType") or body.get("mime_type")
    if isinstance(body.get("image"), str) and body["image"] and not image_base64:
        image_base64, mime_type = _split_data_url(body["image"])

    if not isinstance(image_base64, str) or not image_base64.strip():
        raise HTTPException(
            status_code=400,
            detail='Missing "imageBase64". Send { image: "data:image/...;base64,..." } or { imageBase64, mimeType }.',
        )

    conditions = body.get("preExistingConditions") or body.get("pre_existing_conditions") or []
    likert = body.get("likertAnswers") or body.get("likert_answers")

    analysis, reason = await analyze_image(
        image_base64.strip(),
        mime_type=mime_type if isinstance(mime_type, str) else None,
        analyze=_vision_generator(),
        pre_existing_conditions=[str(c) for c in conditions] if isinstance(conditions, list) else [],
        likert_answers=likert if isinstance(likert, dict) else None,
    )
    if reason:
        logger.info("analyze_skin served fallback analysis. reason=%s", reason)
    return analysis.model_dump(mode="json")


@router.post("/cycle-insights")
async def cycle_insights(body: dict[str, Any]):
    analysis, _ = normalize_skin_analysis(body.get("skin_analysis") or {})
    try:
        cycle = CycleLifestyleInput.model_validate(body.get("cycle_lifestyle") or {})
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=_validation_detail(exc)) from exc

    refined, notes, reason = await refine_cycle_lifestyle(analysis, cycle, generate_text=_text_generator())
    return {
        **refined.model_dump(mode="json"),
        "notes": notes if notes is not None else refined.notes,
        "source": "ai" if reason is None else "input",
    }


@router.post("/routine")
async def routine(body: dict[str, Any]):
    profile = _profile_from_body(body)
    result, reason = await generate_routine(profile, generate_text=_text_generator())
    return {**result.model_dump(mode="json"), "source": "ai" if reason is None else "rules"}


@router.post("/recommend-products")
async def recommend_products(body: dict[str, Any]):
    profile = _profile_from_body(body)
    catalog = _load_catalog()

    try:
        limit = int(body.get("limit") or 18)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail="limit must be an integer") from exc
    limit = max(1, min(limit, 50))

    index = catalog.ingredient_index
    enriched: list[dict[str, Any]] = []
    for product, score in score_products(profile, catalog.products, index)[:limit]:
        enriched.append(
            {
                **product.model_dump(mode="json"),
                "parsed_ingredients": parse_ingredients(product.ingredients_full),
                "safety_score": score_ingredient_list(product.ingredients_full, index),
                "match_score": score,
            }
        )

    grouped = {
        group: [p for p in enriched if p["category"] == category]
        for group, category in _CATEGORY_GROUPS.items()
    }
    return {
        "profile": profile.model_dump(mode="json"),
        "recommended_products": enriched,
        "grouped_products": grouped,
    }


@router.get("/price-compare")
async def price_compare(product: Optional[str] = Query(default=None)):
    name = (product or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Missing ?product=")
    result = await aggregate_prices(
        name,
        _store_fetchers(),
        timeout_s=PRICE_TIMEOUT_S,
        cache=PRICE_CACHE,
    )
    return result.model_dump(mode="json")


@router.post("/recommendation-bundle")
async def recommendation_bundle(body: dict[str, Any]):
    try:
        request = BundleRequest.model_validate(body)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=_validation_detail(exc)) from exc

    catalog = _load_catalog()
    try:
        bundle = await build_recommendation_bundle(
            request,
            catalog=catalog,
            store_fetchers=_store_fetchers(),
            analyze=_vision_generator(),
            generate_text=_text_generator(),
            use_ai_ranking=USE_AI_PRODUCT_RANKING,
            limit=RECOMMENDATION_LIMIT,
            price_timeout_s=PRICE_TIMEOUT_S,
            price_cache=PRICE_CACHE,
        )
    except BundleRequestError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return bundle.model_dump(mode="json")


@router.post("/investment")
async def investment(body: dict[str, Any]):
    try:
        initial = float(body.get("initial") or 0)
        monthly = float(body.get("monthly") or 0)
        years = float(body.get("years") or 0)
        annual_rate = float(body.get("annualRate") if body.get("annualRate") is not None else body.get("annual_rate", 0.05))
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail="initial, monthly, years and annualRate must be numbers") from exc
    if years < 0 or years > 100:
        raise HTTPException(status_code=400, detail="years must be between 0 and 100")
    return project_investment(initial, monthly, years, annual_rate).model_dump(mode="json")
