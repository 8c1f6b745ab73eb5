from __future__ import annotations

import json
from typing import Any, Optional

DEFAULT_LIKERT_ANSWERS = {"oily": 3, "hydrated": 3, "sensitive": 3, "breakouts": 3}


def skin_analysis_prompt(
    pre_existing_conditions: Optional[list[str]] = None,
    likert_answers: Optional[dict[str, Any]] = None,
) -> str:
    conditions = pre_existing_conditions or []
    likert = {**DEFAULT_LIKERT_ANSWERS, **(likert_answers or {})}
    return (
        "You are a non-medical skincare analysis assistant.\n\n"
        "You will receive a facial image and some self-reported answers about the user's skin.\n\n"
        "Your job:\n"
        "1. Visually analyze the skin (non-medical, cosmetic only).\n"
        "2. Combine this with the user's answers.\n"
        "3. Return STRICT JSON describing your findings using this schema:\n\n"
        "{\n"
        '  "ai_findings": {\n'
        '    "acne": string | null,\n'
        '    "redness": string | null,\n'
        '    "dryness": string | null,\n'
        '    "oiliness": string | null,\n'
        '    "texture": string[],\n'
        '    "other_observations": string[]\n'
        "  },\n"
        '  "combined_interpretation": string\n'
        "}\n\n"
        "Rules:\n"
        "- DO NOT mention diseases, diagnoses, or medical conditions.\n"
        "- DO NOT recommend prescription treatments.\n"
        "- Describe each finding with one of the words mild, moderate or severe, or null when absent.\n"
        "- DO NOT wrap the JSON in backticks or markdown.\n"
        "- DO NOT add any extra keys beyond the schema.\n\n"
        "User context:\n"
        f"- Pre-existing conditions: {json.dumps(conditions)}\n"
        "- Self-reported Likert answers (1-5):\n"
        f"  - Oily: {likert['oily']}\n"
        f"  - Hydrated: {likert['hydrated']}\n"
        f"  - Sensitive: {likert['sensitive']}\n"
        f"  - Breakouts: {likert['breakouts']}\n"
    )


CYCLE_INSIGHTS_PROMPT = (
    "You are a non-medical cycle & lifestyle assistant for skincare.\n\n"
    "You will receive a high-level skin analysis and some lifestyle and cycle data.\n\n"
    "Return STRICT JSON of this form:\n\n"
    "{\n"
    '  "cycle_lifestyle": {\n'
    '    "cycle_phase": "follicular" | "ovulatory" | "luteal" | "menstrual" | "unknown",\n'
    '    "sleep_hours": number,\n'
    '    "hydration_cups": number,\n'
    '    "stress_level": number,\n'
    '    "mood": number\n'
    "  },\n"
    '  "notes": string\n'
    "}\n\n"
    "Rules:\n"
    "- No markdown, no backticks.\n"
    "- No extra top-level keys.\n"
    "- You are NOT a doctor; keep it general and lifestyle-oriented.\n"
)


ROUTINE_GENERATION_PROMPT = (
    "You are a non-medical skincare routine assistant.\n\n"
    "Build a personalized AM/PM routine for the skin profile below.\n\n"
    "Return ONLY a JSON object (no markdown) with this exact shape:\n"
    "{\n"
    '  "steps": [\n'
    '    {"step": "Cleanser", "time": "AM" | "PM" | "AM_PM", "description": "..."}\n'
    "  ],\n"
    '  "notes": "..."\n'
    "}\n\n"
    "Rules:\n"
    "- Always include a broad-spectrum sunscreen in the AM.\n"
    "- Avoid exfoliants during the menstrual phase.\n"
    "- DO NOT recommend prescription treatments or specific brands.\n"
)


PRODUCT_RANKING_PROMPT = (
    "You are a non-medical skincare product matcher.\n\n"
    "Rank the candidate products for the skin profile below, best match first.\n"
    "Only use ids from the candidate list.\n\n"
    "Return ONLY a JSON object (no markdown):\n"
    '{"ranked_products": ["<product id>", ...]}\n'
)


def routine_prompt(profile_json: dict[str, Any]) -> str:
    return (
        f"{ROUTINE_GENERATION_PROMPT}\n"
        f"User's skin profile:\n{json.dumps(profile_json, indent=2)}\n\n"
        "Generate a complete, personalized routine for this user."
    )


def cycle_insights_prompt(skin_analysis_json: dict[str, Any], cycle_json: dict[str, Any]) -> str:
    payload = {"skin_analysis": skin_analysis_json, "cycle_lifestyle": cycle_json}
    return f"{CYCLE_INSIGHTS_PROMPT}\n{json.dumps(payload)}"


def product_ranking_prompt(
    profile_json: dict[str, Any],
    candidates: list[dict[str, Any]],
    *,
    limit: int,
) -> str:
    return (
        f"{PRODUCT_RANKING_PROMPT}\n"
        f"Return at most {limit} ids.\n\n"
        f"Skin profile:\n{json.dumps(profile_json)}\n\n"
        f"Candidates:\n{json.dumps(candidates)}"
    )
