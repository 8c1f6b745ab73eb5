from __future__ import annotations

import json
from pathlib import Path
import sys
import unittest

from pydantic import ValidationError

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from app.models import CycleLifestyleInput, SkinAnalysis
from app.services.cycle_insights import lifestyle_triggers, refine_cycle_lifestyle
from app.services.investment import calculate_future_value, project_investment


class TestCycleLifestyleInput(unittest.TestCase):
    def test_defaults(self) -> None:
        cycle = CycleLifestyleInput()
        self.assertEqual(
            (cycle.cycle_phase, cycle.sleep_hours, cycle.hydration_cups, cycle.stress_level, cycle.mood),
            ("unknown", 7, 6, 3, 3),
        )

    def test_phase_aliases(self) -> None:
        self.assertEqual(CycleLifestyleInput(cycle_phase="Ovulation").cycle_phase, "ovulatory")
        self.assertEqual(CycleLifestyleInput(cycle_phase="period").cycle_phase, "menstrual")

    def test_out_of_range_values_are_rejected(self) -> None:
        for bad in ({"stress_level": 6}, {"mood": 0}, {"sleep_hours": 25}, {"hydration_cups": -1}):
            with self.assertRaises(ValidationError):
                CycleLifestyleInput(**bad)

    def test_lifestyle_triggers(self) -> None:
        cycle = CycleLifestyleInput(cycle_phase="luteal", sleep_hours=5, hydration_cups=3, stress_level=4)
        self.assertEqual(lifestyle_triggers(cycle), ["lack of sleep", "dehydration", "stress", "hormonal"])
        self.assertEqual(lifestyle_triggers(CycleLifestyleInput()), [])


class TestRefineCycleLifestyle(unittest.IsolatedAsyncioTestCase):
    async def test_invalid_reply_keeps_input(self) -> None:
        async def fake_generate(prompt: str, **_: object) -> str:
            return json.dumps({"cycle_lifestyle": {"stress_level": 11}})

        cycle = CycleLifestyleInput(sleep_hours=6)
        refined, notes, reason = await refine_cycle_lifestyle(SkinAnalysis(), cycle, generate_text=fake_generate)
        self.assertIs(refined, cycle)
        self.assertIsNone(notes)
        self.assertEqual(reason, "invalid_shape")

    async def test_reply_is_merged_over_input(self) -> None:
        async def fake_generate(prompt: str, **_: object) -> str:
            return json.dumps({"cycle_lifestyle": {"cycle_phase": "luteal"}, "notes": "Late cycle."})

        cycle = CycleLifestyleInput(sleep_hours=8)
        refined, notes, reason = await refine_cycle_lifestyle(SkinAnalysis(), cycle, generate_text=fake_generate)
        self.assertIsNone(reason)
        self.assertEqual(refined.cycle_phase, "luteal")
        self.assertEqual(refined.sleep_hours, 8)
        self.assertEqual(notes, "Late cycle.")


class TestInvestment(unittest.TestCase):
    def test_zero_rate_is_simple_sum(self) -> None:
        self.assertEqual(calculate_future_value(50, 2, 0), 1200)

    def test_annuity_with_interest(self) -> None:
        self.assertAlmostEqual(calculate_future_value(100, 1, 0.12), 1268.25, places=2)

    def test_projection_rounds_to_cents(self) -> None:
        projection = project_investment(initial=1000, monthly=0, years=1, annual_rate=0.12)
        # The initial amount is compounded once up front and again inside the monthly loop.
        self.assertEqual(projection.future_value, round(1000 * 1.01 ** 24, 2))


if __name__ == "__main__":
    unittest.main()
