from __future__ import annotations

import logging
from typing import Any, Optional

from app.models import Routine, RoutineStep, SkinProfile, severity_at_least
from app.services.gemini import GenerateTextFn, parse_json_payload
from app.services.prompts import routine_prompt

logger = logging.getLogger("skinsense.routine")

_VALID_TIMES = {"AM", "PM", "AM_PM"}


def _elevated(level: str) -> bool:
    return severity_at_least(level, "moderate")


def build_rule_based_routine(profile: SkinProfile) -> Routine:
    """Deterministic AM/PM routine from the skin analysis and cycle phase."""
    s = profile.skin_analysis
    c = profile.cycle_lifestyle
    steps: list[RoutineStep] = []

    def add(step: str, time: str, instruction: str) -> None:
        steps.append(RoutineStep(step=step, time=time, instruction=instruction))

    # AM
    if _elevated(s.oiliness):
        add("Cleanser", "AM", "Use a gentle foaming cleanser to remove excess oil.")
    elif _elevated(s.dryness):
        add("Cleanser", "AM", "Use a hydrating cream cleanser to support barrier health.")
    else:
        add("Cleanser", "AM", "Use a gentle, non-stripping cleanser.")

    if _elevated(s.dryness):
        add("Hydrating Serum", "AM", "Apply a hyaluronic-acid based serum to boost hydration.")

    if _elevated(s.redness):
        add("Soothing Serum", "AM", "Use a niacinamide or centella-based serum to reduce visible redness.")

    if s.oiliness == "severe":
        add("Moisturizer", "AM", "Use a lightweight, oil-free gel moisturizer.")
    elif _elevated(s.dryness):
        add("Moisturizer", "AM", "Use a barrier-repair moisturizer with ceramides.")
    else:
        add("Moisturizer", "AM", "Use a balanced moisturizer suitable for daily use.")

    add("Sunscreen", "AM", "Apply a broad-spectrum SPF 30+ sunscreen.")

    # PM
    add("Cleanser", "PM", "Use a gentle cleanser to remove sunscreen and buildup.")

    congested = any("congestion" in note.lower() for note in s.texture_notes)
    if (congested or _elevated(s.acne)) and c.cycle_phase != "menstrual":
        add(
            "Exfoliant (2-3x/week)",
            "PM",
            "Use a BHA liquid exfoliant 2-3 times per week to help unclog pores.",
        )

    if _elevated(s.acne):
        add(
            "Spot Treatment",
            "PM",
            "Use a gentle, non-drying spot treatment (e.g., salicylic acid or a sulfur-based spot treatment).",
        )

    if s.redness == "severe":
        add("Soothing Serum", "PM", "Apply a calming serum containing centella or panthenol.")

    if s.dryness == "severe":
        add("Moisturizer", "PM", "Apply a rich moisturizer with ceramides or squalane for barrier repair.")
    else:
        add("Moisturizer", "PM", "Use a balanced night moisturizer.")

    focus = ", ".join(s.routine_focus) or "general skin health"
    return Routine(
        steps=steps,
        notes=f"Personalized routine based on your skin analysis. Key focus: {focus}.",
    )


def _normalize_time(value: Any) -> str:
    text = str(value or "").strip().upper().replace("/", "_").replace("-", "_").replace(" ", "_")
    if text in {"AM_PM", "BOTH", "AM_AND_PM"}:
        return "AM_PM"
    return text if text in _VALID_TIMES else "AM_PM"


def parse_ai_routine(obj: Any) -> Optional[Routine]:
    """Map a model reply onto Routine; None unless it is an object with a `steps` list."""
    if not isinstance(obj, dict):
        return None
    raw_steps = obj.get("steps")
    if not isinstance(raw_steps, list):
        return None

    steps: list[RoutineStep] = []
    for item in raw_steps:
        if not isinstance(item, dict):
            continue
        label = item.get("step") or item.get("step_name") or "Unknown Step"
        instruction = item.get("description") or item.get("instruction") or "Follow product instructions"
        product_name = item.get("product_name")
        steps.append(
            RoutineStep(
                step=str(label).strip(),
                time=_normalize_time(item.get("time")),
                instruction=str(instruction).strip(),
                product_name=str(product_name).strip() if product_name else None,
            )
        )

    notes = obj.get("notes")
    if not isinstance(notes, str) or not notes.strip():
        notes = "Personalized routine based on your skin analysis."
    return Routine(steps=steps, notes=notes.strip())


async def generate_routine(
    profile: SkinProfile,
    *,
    generate_text: Optional[GenerateTextFn] = None,
) -> tuple[Routine, Optional[str]]:
    """
    AI-written routine when a text model is configured; the rule-based routine otherwise.

    Returns (routine, reason_code). reason_code is None only when the AI routine was accepted.
    """
    fallback = build_rule_based_routine(profile)
    if generate_text is None:
        return fallback, "no_api_key"

    try:
        raw = await generate_text(routine_prompt(profile.model_dump(mode="json")))
        routine = parse_ai_routine(parse_json_payload(raw))
    except Exception as exc:
        logger.warning("AI routine generation failed; using rule-based routine. err=%r", exc)
        return fallback, "upstream_error"

    if routine is None:
        logger.warning("AI routine reply had no steps list; using rule-based routine.")
        return fallback, "invalid_shape"
    return routine, None
