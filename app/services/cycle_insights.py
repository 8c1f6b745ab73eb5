from __future__ import annotations

import logging
from typing import Optional

from pydantic import ValidationError

from app.models import CycleLifestyleInput, SkinAnalysis
from app.services.gemini import GenerateTextFn, parse_json_payload
from app.services.prompts import cycle_insights_prompt

logger = logging.getLogger("skinsense.cycle")

LIFESTYLE_TRIGGER_RULES = (
    ("lack of sleep", lambda c: c.sleep_hours < 6),
    ("dehydration", lambda c: c.hydration_cups < 4),
    ("stress", lambda c: c.stress_level >= 4),
    ("hormonal", lambda c: c.cycle_phase in {"menstrual", "luteal"}),
)


def lifestyle_triggers(cycle: CycleLifestyleInput) -> list[str]:
    return [name for name, rule in LIFESTYLE_TRIGGER_RULES if rule(cycle)]


async def refine_cycle_lifestyle(
    analysis: SkinAnalysis,
    cycle: CycleLifestyleInput,
    *,
    generate_text: Optional[GenerateTextFn] = None,
) -> tuple[CycleLifestyleInput, Optional[str], Optional[str]]:
    """Returns (cycle_lifestyle, notes, reason_code); the input is returned untouched on any failure."""
    if generate_text is None:
        return cycle, None, "no_api_key"

    try:
        raw = await generate_text(
            cycle_insights_prompt(analysis.model_dump(mode="json"), cycle.model_dump(mode="json"))
        )
    except Exception as exc:
        logger.warning("Cycle insights call failed; keeping user input. err=%r", exc)
        return cycle, None, "upstream_error"

    obj = parse_json_payload(raw)
    if not isinstance(obj, dict) or not isinstance(obj.get("cycle_lifestyle"), dict):
        logger.warning("Cycle insights reply had no cycle_lifestyle object; keeping user input.")
        return cycle, None, "invalid_shape"

    try:
        refined = CycleLifestyleInput.model_validate({**cycle.model_dump(), **obj["cycle_lifestyle"]})
    except ValidationError as exc:
        logger.warning("Cycle insights reply failed validation; keeping user input. err=%s", exc)
        return cycle, None, "invalid_shape"

    notes = obj.get("notes") if isinstance(obj.get("notes"), str) else None
    return refined, notes, None
