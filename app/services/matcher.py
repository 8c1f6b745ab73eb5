from __future__ import annotations

import logging
from typing import Any, Iterable, Optional, Sequence

from app.models import Product, Routine, RoutineStep, SkinProfile, severity_at_least
from app.services.gemini import GenerateTextFn, parse_json_payload
from app.services.ingredients import IngredientDb, build_ingredient_index, score_ingredient_list
from app.services.prompts import product_ranking_prompt

logger = logging.getLogger("skinsense.matcher")

DEFAULT_LIMIT = 15

# Routine step label keyword -> catalog category.
_STEP_CATEGORIES: tuple[tuple[str, str], ...] = (
    ("cleanser", "cleanser"),
    ("serum", "serum"),
    ("moisturizer", "moisturizer"),
    ("sunscreen", "sunscreen"),
    ("exfoliant", "exfoliant"),
    ("spot treatment", "treatment"),
)


def _elevated(level: str) -> bool:
    return severity_at_least(level, "moderate")


def _safety_points(safety: int) -> int:
    # Independent checks: 95 earns both the >90 and >75 bonus.
    points = 0
    if safety > 90:
        points += 6
    if safety > 75:
        points += 4
    if safety < 50:
        points -= 5
    if safety < 30:
        points -= 8
    return points


def score_product(product: Product, profile: SkinProfile, ingredient_db: IngredientDb) -> int:
    """Additive match score of one product for a skin profile; higher is better."""
    s = profile.skin_analysis
    suitable = set(product.suitable_for)
    inci = product.ingredients_full.lower()

    score = _safety_points(score_ingredient_list(product.ingredients_full, ingredient_db))

    # Skin type compatibility
    if _elevated(s.oiliness):
        if "oily" in suitable:
            score += 4
        if "acne-prone" in suitable:
            score += 3
    if _elevated(s.dryness):
        if "dry" in suitable:
            score += 4
        if "sensitive" in suitable:
            score += 2
    if _elevated(s.redness):
        if "sensitive" in suitable:
            score += 3

    # Actives
    if _elevated(s.acne):
        if "salicylic" in inci:
            score += 4
        if "bha" in inci:
            score += 3
        if "niacinamide" in inci:
            score += 2
    if _elevated(s.dryness):
        if "hyaluronic" in inci:
            score += 4
        if "ceramide" in inci:
            score += 3
        if "glycerin" in inci:
            score += 2
        if "squalane" in inci:
            score += 2
    if _elevated(s.redness):
        if "centella" in inci:
            score += 3
        if "panthenol" in inci:
            score += 2
        if "madecassoside" in inci:
            score += 3

    # Texture / congestion
    congested = any("congestion" in note.lower() for note in s.texture_notes)
    if congested or _elevated(s.acne):
        if "salicylic" in inci:
            score += 4
        if "bha" in inci:
            score += 3

    for goal in s.routine_focus:
        if goal == "barrier repair" and "ceramide" in inci:
            score += 3
        if goal == "oil control" and "niacinamide" in inci:
            score += 2
        if goal == "soothing" and "centella" in inci:
            score += 3

    # Penalties
    if not product.fragrance_free:
        score -= 3
    if "fragrance" in inci:
        score -= 4
    if "parfum" in inci:
        score -= 4
    if "lavender oil" in inci:
        score -= 4
    if "essential oil" in inci:
        score -= 3
    if "alcohol denat" in inci:
        score -= 3

    return score


def score_products(
    profile: SkinProfile,
    products: Iterable[Product],
    ingredient_db: IngredientDb,
) -> list[tuple[Product, int]]:
    """All products with their scores, best first; catalog order breaks ties."""
    index = build_ingredient_index(ingredient_db)
    scored = [(p, score_product(p, profile, index)) for p in products]
    # sorted() is stable, so equal scores keep catalog order.
    return sorted(scored, key=lambda x: x[1], reverse=True)


def match_products_to_skin_profile(
    profile: SkinProfile,
    products: Iterable[Product],
    ingredient_db: IngredientDb,
    limit: int = DEFAULT_LIMIT,
) -> list[Product]:
    if limit <= 0:
        return []
    return [p for p, _ in score_products(profile, products, ingredient_db)[:limit]]


def _ranked_ids(obj: Any) -> Optional[list[str]]:
    if not isinstance(obj, dict):
        return None
    ranked = obj.get("ranked_products")
    if not isinstance(ranked, list):
        return None
    ids: list[str] = []
    for item in ranked:
        if isinstance(item, dict):
            item = item.get("id") or item.get("product_id")
        if isinstance(item, (str, int)) and str(item).strip():
            ids.append(str(item).strip())
    return ids


def merge_ai_ranking(
    ai_ids: Sequence[str],
    deterministic: Sequence[Product],
    products: Sequence[Product],
    limit: int,
) -> list[Product]:
    """AI order first (known ids only, no repeats), padded with deterministic picks."""
    if limit <= 0:
        return []
    by_id = {p.id: p for p in products}
    chosen: list[Product] = []
    seen: set[str] = set()
    for product_id in ai_ids:
        product = by_id.get(product_id)
        if product is None or product_id in seen:
            continue
        seen.add(product_id)
        chosen.append(product)
        if len(chosen) >= limit:
            return chosen
    for product in deterministic:
        if len(chosen) >= limit:
            break
        if product.id in seen:
            continue
        seen.add(product.id)
        chosen.append(product)
    return chosen


async def rank_products(
    profile: SkinProfile,
    products: Sequence[Product],
    ingredient_db: IngredientDb,
    limit: int = DEFAULT_LIMIT,
    *,
    generate_text: Optional[GenerateTextFn] = None,
) -> tuple[list[Product], Optional[str]]:
    """
    Rank products for a profile, optionally asking the text model for the order.

    The deterministic ranker is always computed; it is returned as-is when the AI path is
    unavailable, errors, or replies without a `ranked_products` list, and it pads any shortfall
    in the AI ranking otherwise.
    """
    deterministic = match_products_to_skin_profile(profile, products, ingredient_db, limit=len(products))
    top = deterministic[:limit]

    if generate_text is None:
        return top, "no_api_key"

    candidates = [
        {
            "id": p.id,
            "name": p.name,
            "brand": p.brand,
            "category": p.category,
            "suitable_for": list(p.suitable_for),
            "key_ingredients": list(p.key_ingredients),
        }
        for p in products
    ]
    prompt = product_ranking_prompt(profile.model_dump(mode="json"), candidates, limit=limit)

    try:
        raw = await generate_text(prompt)
    except Exception as exc:
        logger.warning("AI product ranking failed; using deterministic ranking. err=%r", exc)
        return top, "upstream_error"

    ai_ids = _ranked_ids(parse_json_payload(raw))
    if ai_ids is None:
        logger.warning("AI product ranking had no ranked_products list; using deterministic ranking.")
        return top, "invalid_shape"

    return merge_ai_ranking(ai_ids, deterministic, products, limit), None


def _category_for_step(step: RoutineStep) -> Optional[str]:
    label = step.step.lower()
    for keyword, category in _STEP_CATEGORIES:
        if keyword in label:
            return category
    return None


def attach_products_to_routine(routine: Routine, products: Sequence[Product]) -> Routine:
    """Fill empty product_name slots with the best-ranked product of the step's category."""
    first_by_category: dict[str, Product] = {}
    for product in products:
        first_by_category.setdefault(product.category, product)

    steps: list[RoutineStep] = []
    for step in routine.steps:
        category = _category_for_step(step)
        product = first_by_category.get(category) if category else None
        if product is not None and not step.product_name:
            step = step.model_copy(update={"product_name": f"{product.brand} {product.name}"})
        steps.append(step)
    return Routine(steps=steps, notes=routine.notes)
