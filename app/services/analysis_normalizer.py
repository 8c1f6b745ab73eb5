from __future__ import annotations

import logging
import re
from typing import Any, Optional

from app.models import SEVERITY_LEVELS, SkinAnalysis
from app.services.gemini import parse_json_payload

logger = logging.getLogger("skinsense.normalizer")

FALLBACK_NOTE_CHARS = 400

TRIGGER_VOCABULARY = (
    "dehydration",
    "stress",
    "hormonal",
    "lack of sleep",
    "comedogenic",
    "over-exfoliation",
    "pollution",
    "dry air",
)

_TRIGGER_RE = re.compile("(" + "|".join(re.escape(t) for t in TRIGGER_VOCABULARY) + ")", re.IGNORECASE)

_SEVERITY_KEYS = ("acne", "redness", "dryness", "oiliness")
_CANONICAL_KEYS = set(_SEVERITY_KEYS) | {"non_medical_summary"}


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _as_obj(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _as_str_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if not isinstance(value, (list, tuple)):
        return []
    return [str(v) for v in value if v is not None and str(v).strip()]


def _get_case_insensitive(d: dict[str, Any], *keys: str) -> Any:
    if not isinstance(d, dict):
        return None
    lower_map = {str(k).lower(): v for k, v in d.items()}
    for key in keys:
        value = lower_map.get(str(key).lower())
        if value is not None:
            return value
    return None


def map_severity(description: Any) -> str:
    """Free-text finding -> severity level, checking severe, then moderate, then mild."""
    if not isinstance(description, str) or not description.strip():
        return "none"
    lower = description.lower()
    for level in ("severe", "moderate", "mild"):
        if level in lower:
            return level
    return "none"


def extract_triggers(text: Any) -> list[str]:
    if not isinstance(text, str) or not text:
        return []
    seen: list[str] = []
    for match in _TRIGGER_RE.findall(text):
        trigger = match.lower()
        if trigger not in seen:
            seen.append(trigger)
    return seen


def build_fallback_analysis(raw_text: Any) -> SkinAnalysis:
    raw = raw_text if isinstance(raw_text, str) else _as_str(raw_text)
    notes = [raw[:FALLBACK_NOTE_CHARS]] if raw.strip() else []
    return SkinAnalysis(texture_notes=notes, non_medical_summary=raw)


def _looks_like_vision_response(obj: dict[str, Any]) -> bool:
    return isinstance(_get_case_insensitive(obj, "ai_findings", "aiFindings"), dict)


def _looks_canonical(obj: dict[str, Any]) -> bool:
    return any(key in obj for key in _CANONICAL_KEYS)


def _from_vision_response(obj: dict[str, Any]) -> SkinAnalysis:
    findings = _as_obj(_get_case_insensitive(obj, "ai_findings", "aiFindings"))
    interpretation = _as_str(_get_case_insensitive(obj, "combined_interpretation", "combinedInterpretation"))

    texture_notes = _as_str_list(findings.get("texture")) + _as_str_list(
        _get_case_insensitive(findings, "other_observations", "otherObservations")
    )

    return SkinAnalysis(
        acne=map_severity(findings.get("acne")),
        redness=map_severity(findings.get("redness")),
        dryness=map_severity(findings.get("dryness")),
        oiliness=map_severity(findings.get("oiliness")),
        texture_notes=texture_notes,
        non_medical_summary=interpretation,
        probable_triggers=extract_triggers(interpretation),
        routine_focus=_as_str_list(_get_case_insensitive(obj, "routine_focus", "routineFocus")),
    )


def _canonical_severity(value: Any) -> str:
    text = _as_str(value).lower()
    if text in SEVERITY_LEVELS:
        return text
    return map_severity(text)


def _from_canonical(obj: dict[str, Any]) -> SkinAnalysis:
    summary = _as_str(obj.get("non_medical_summary"))
    triggers = _as_str_list(obj.get("probable_triggers")) + extract_triggers(summary)
    return SkinAnalysis(
        acne=_canonical_severity(obj.get("acne")),
        redness=_canonical_severity(obj.get("redness")),
        dryness=_canonical_severity(obj.get("dryness")),
        oiliness=_canonical_severity(obj.get("oiliness")),
        texture_notes=_as_str_list(obj.get("texture_notes")),
        non_medical_summary=summary,
        probable_triggers=triggers,
        routine_focus=_as_str_list(obj.get("routine_focus")),
    )


def normalize_skin_analysis(payload: Any) -> tuple[SkinAnalysis, Optional[str]]:
    """
    Map any upstream analysis payload onto SkinAnalysis.

    Accepted shapes:
    - raw model text (JSON, fenced JSON, or JSON inside prose)
    - the vision response shape (`ai_findings` + `combined_interpretation`)
    - an already-canonical SkinAnalysis-shaped dict

    Returns (analysis, reason_code); reason_code is None unless the fallback analysis was used.
    Never raises.
    """
    if isinstance(payload, SkinAnalysis):
        return payload, None

    raw_text = ""
    obj: Any = payload
    if isinstance(payload, (str, bytes)):
        raw_text = payload.decode("utf-8", "replace") if isinstance(payload, bytes) else payload
        obj = parse_json_payload(raw_text)

    if isinstance(obj, dict):
        try:
            if _looks_like_vision_response(obj):
                return _from_vision_response(obj), None
            if _looks_canonical(obj):
                return _from_canonical(obj), None
        except Exception as exc:
            logger.warning("Skin analysis mapping failed; using fallback. err=%r", exc)

    if raw_text and obj is None:
        logger.warning("Skin analysis text had no JSON; using fallback. prefix=%r", raw_text[:80])
        return build_fallback_analysis(raw_text), "parse_failed"

    if not raw_text and payload is not None and not isinstance(payload, (str, bytes)):
        raw_text = _as_str(payload)

    logger.warning("Skin analysis payload not in an expected shape; using fallback. prefix=%r", raw_text[:80])
    return build_fallback_analysis(raw_text), "invalid_shape"
