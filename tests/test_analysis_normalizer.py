from __future__ import annotations

import json
from pathlib import Path
import sys
import unittest

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from app.models import SkinAnalysis
from app.services.analysis_normalizer import (
    build_fallback_analysis,
    extract_triggers,
    map_severity,
    normalize_skin_analysis,
)
from app.services.gemini import extract_candidate_text, parse_json_payload


VISION_REPLY = {
    "ai_findings": {
        "acne": "Moderate inflammatory breakouts on the chin",
        "redness": "Mild redness around the nose",
        "dryness": "",
        "oiliness": "Severe shine in the T-zone",
        "texture": ["Some congestion on the forehead"],
        "other_observations": "Enlarged pores",
    },
    "combined_interpretation": "Breakouts look linked to Stress and lack of sleep; dehydration may add to it.",
}


class TestSeverityMapping(unittest.TestCase):
    def test_first_matching_level_wins(self) -> None:
        self.assertEqual(map_severity("Severe, not moderate"), "severe")
        self.assertEqual(map_severity("moderate to mild"), "moderate")
        self.assertEqual(map_severity("MILD"), "mild")
        self.assertEqual(map_severity("looks fine"), "none")
        self.assertEqual(map_severity(None), "none")

    def test_triggers_are_lowercased_and_deduplicated(self) -> None:
        self.assertEqual(
            extract_triggers("Stress, more STRESS and Hormonal shifts"),
            ["stress", "hormonal"],
        )


class TestNormalizeSkinAnalysis(unittest.TestCase):
    def test_vision_reply_inside_fenced_block(self) -> None:
        raw = "Here you go:\n```json\n" + json.dumps(VISION_REPLY) + "\n```\nThanks!"
        analysis, reason = normalize_skin_analysis(raw)
        self.assertIsNone(reason)
        self.assertEqual(analysis.acne, "moderate")
        self.assertEqual(analysis.redness, "mild")
        self.assertEqual(analysis.dryness, "none")
        self.assertEqual(analysis.oiliness, "severe")
        self.assertEqual(analysis.texture_notes, ["Some congestion on the forehead", "Enlarged pores"])
        self.assertEqual(analysis.probable_triggers, ["stress", "lack of sleep", "dehydration"])
        self.assertEqual(analysis.non_medical_summary, VISION_REPLY["combined_interpretation"])

    def test_json_embedded_in_prose(self) -> None:
        raw = "Sure! " + json.dumps(VISION_REPLY) + " Let me know if you need more."
        analysis, reason = normalize_skin_analysis(raw)
        self.assertIsNone(reason)
        self.assertEqual(analysis.oiliness, "severe")

    def test_canonical_shape_keeps_its_fields(self) -> None:
        payload = {
            "acne": "mild",
            "redness": "severe",
            "dryness": "moderate",
            "oiliness": "none",
            "texture_notes": ["rough cheeks"],
            "non_medical_summary": "Barrier looks stressed.",
            "probable_triggers": ["Dry Air", "dry air"],
            "routine_focus": ["barrier repair", "Soothing"],
        }
        analysis, reason = normalize_skin_analysis(payload)
        self.assertIsNone(reason)
        self.assertEqual(analysis.redness, "severe")
        self.assertEqual(analysis.dryness, "moderate")
        self.assertEqual(analysis.texture_notes, ["rough cheeks"])
        self.assertEqual(analysis.probable_triggers, ["dry air", "stress"])
        self.assertEqual(analysis.routine_focus, ["barrier repair", "soothing"])

    def test_existing_analysis_passes_through(self) -> None:
        original = SkinAnalysis(acne="severe")
        analysis, reason = normalize_skin_analysis(original)
        self.assertIs(analysis, original)
        self.assertIsNone(reason)

    def test_unparseable_text_uses_fallback(self) -> None:
        raw = "I could not see the image clearly. " * 30
        analysis, reason = normalize_skin_analysis(raw)
        self.assertEqual(reason, "parse_failed")
        self.assertEqual(analysis.acne, "none")
        self.assertEqual(analysis.redness, "none")
        self.assertEqual(analysis.dryness, "none")
        self.assertEqual(analysis.oiliness, "none")
        self.assertEqual(analysis.texture_notes, [raw[:400]])
        self.assertEqual(analysis.non_medical_summary, raw)
        self.assertEqual(analysis.probable_triggers, [])
        self.assertEqual(analysis.routine_focus, [])

    def test_unexpected_object_uses_fallback(self) -> None:
        analysis, reason = normalize_skin_analysis({"verdict": "great skin"})
        self.assertEqual(reason, "invalid_shape")
        self.assertEqual(analysis.acne, "none")

    def test_empty_fallback_has_no_notes(self) -> None:
        analysis = build_fallback_analysis("")
        self.assertEqual(analysis.texture_notes, [])
        self.assertEqual(analysis.non_medical_summary, "")


class TestGeminiParsing(unittest.TestCase):
    def test_candidate_text_joins_parts(self) -> None:
        data = {"candidates": [{"content": {"parts": [{"text": '{"a": '}, {"text": "1}"}]}}]}
        self.assertEqual(extract_candidate_text(data), '{"a": 1}')
        self.assertEqual(parse_json_payload(extract_candidate_text(data)), {"a": 1})

    def test_missing_candidates_is_empty(self) -> None:
        self.assertEqual(extract_candidate_text({"candidates": []}), "")
        self.assertIsNone(parse_json_payload(""))

    def test_braces_inside_strings_are_ignored(self) -> None:
        text = 'prefix {"note": "use } carefully", "n": 2} suffix'
        self.assertEqual(parse_json_payload(text), {"note": "use } carefully", "n": 2})


if __name__ == "__main__":
    unittest.main()
