from __future__ import annotations

import re
from typing import Iterable, Mapping, Union

from app.models import IngredientInfo

IngredientDb = Union[Mapping[str, IngredientInfo], Iterable[IngredientInfo]]

_SPLIT_RE = re.compile(r"[,;.]")

FRAGRANCE_TERMS = (
    "fragrance",
    "parfum",
    "essential oil",
    "lavender oil",
    "citrus oil",
    "bergamot",
)

DRYING_ALCOHOLS = ("alcohol denat", "ethanol")

IRRITANT_PENALTY = 4
FRAGRANCE_PENALTY = 5
ACNE_TRIGGER_PENALTY = 4
COMEDOGENIC_MULTIPLIER = 2
COMEDOGENIC_THRESHOLD = 3
QUICK_SCAN_PENALTY = 3


def parse_ingredients(inci: str) -> list[str]:
    """
    Split a full INCI string into normalized ingredient tokens.

    "Aqua, Glycerin; Sodium Hyaluronate." -> ["aqua", "glycerin", "sodium hyaluronate"]
    """
    if not inci:
        return []
    tokens = (part.strip().lower() for part in _SPLIT_RE.split(inci))
    return [t for t in tokens if t]


def build_ingredient_index(ingredient_db: IngredientDb) -> dict[str, IngredientInfo]:
    if isinstance(ingredient_db, Mapping):
        return {str(k).lower(): v for k, v in ingredient_db.items()}
    index: dict[str, IngredientInfo] = {}
    for info in ingredient_db:
        # First entry wins when the dictionary repeats a name.
        index.setdefault(info.name.lower(), info)
    return index


def detect_ingredient_hazards(tokens: list[str], ingredient_db: IngredientDb) -> dict[str, list]:
    index = build_ingredient_index(ingredient_db)
    irritants: list[str] = []
    fragrance: list[str] = []
    acne_triggers: list[str] = []
    comedogenic: list[tuple[str, float]] = []

    for token in tokens:
        found = index.get(token.lower())
        if found is None:
            continue
        if found.is_irritant:
            irritants.append(found.name)
        if found.is_fragrance:
            fragrance.append(found.name)
        if found.is_acne_trigger:
            acne_triggers.append(found.name)
        rating = found.comedogenic_rating
        if rating is not None and rating >= COMEDOGENIC_THRESHOLD:
            comedogenic.append((found.name, rating))

    return {
        "irritants": irritants,
        "fragrance": fragrance,
        "acne_triggers": acne_triggers,
        "comedogenic": comedogenic,
    }


def quick_hazard_scan(tokens: list[str]) -> list[str]:
    """Substring heuristics for fragrance, essential oils and drying alcohols, dictionary or not."""
    flagged: list[str] = []
    for token in tokens:
        if any(term in token for term in FRAGRANCE_TERMS):
            flagged.append(token)
        if any(term in token for term in DRYING_ALCOHOLS):
            flagged.append(token)
    return flagged


def compute_ingredient_safety_score(tokens: list[str], ingredient_db: IngredientDb) -> int:
    """Overall safety score in [0, 100]; higher is gentler. Unknown tokens carry no penalty."""
    hazards = detect_ingredient_hazards(tokens, ingredient_db)

    score = 100.0
    score -= len(hazards["irritants"]) * IRRITANT_PENALTY
    score -= len(hazards["fragrance"]) * FRAGRANCE_PENALTY
    score -= len(hazards["acne_triggers"]) * ACNE_TRIGGER_PENALTY
    for _, rating in hazards["comedogenic"]:
        score -= rating * COMEDOGENIC_MULTIPLIER
    score -= len(quick_hazard_scan(tokens)) * QUICK_SCAN_PENALTY

    return max(0, int(score))


def score_ingredient_list(inci: str, ingredient_db: IngredientDb) -> int:
    return compute_ingredient_safety_score(parse_ingredients(inci), ingredient_db)
