from __future__ import annotations

import os
from pathlib import Path
import sys
from typing import Optional
import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from app.main import create_app
from app.models import StorePrice
from app.services.pricing import now_ms


ANALYSIS_JSON = {
    "acne": "moderate",
    "redness": "mild",
    "dryness": "none",
    "oiliness": "moderate",
    "texture_notes": ["congestion on forehead"],
    "non_medical_summary": "Oily T-zone with some breakouts.",
    "probable_triggers": [],
    "routine_focus": ["oil control"],
}


def _offline_fetchers():
    async def _amazon(name: str) -> Optional[StorePrice]:
        return StorePrice(store="AmazonCA", price=19.99, url="https://www.amazon.ca/dp/x", last_checked=now_ms())

    async def _sephora(name: str) -> Optional[StorePrice]:
        raise RuntimeError("rate limited")

    return [("AmazonCA", _amazon), ("SephoraCA", _sephora)]


class TestRecommendationBundleEndpoint(unittest.TestCase):
    def setUp(self) -> None:
        os.environ["REDIS_URL"] = ""

    def test_missing_analysis_and_image_returns_400(self) -> None:
        app = create_app()
        with TestClient(app) as client:
            res = client.post("/v1/recommendation-bundle", json={"lifestyle": {"cycle_phase": "luteal"}})
        self.assertEqual(res.status_code, 400)
        self.assertIn("Missing required data", res.json()["detail"])

    def test_out_of_range_lifestyle_returns_422(self) -> None:
        app = create_app()
        with TestClient(app) as client:
            res = client.post(
                "/v1/recommendation-bundle",
                json={"skin_analysis_json": ANALYSIS_JSON, "lifestyle": {"stress_level": 9}},
            )
        self.assertEqual(res.status_code, 422)

    def test_bundle_without_model_keys(self) -> None:
        app = create_app()
        with patch("app.routes.v1._vision_generator", return_value=None), patch(
            "app.routes.v1._text_generator", return_value=None
        ), patch("app.routes.v1._store_fetchers", side_effect=_offline_fetchers):
            with TestClient(app) as client:
                res = client.post(
                    "/v1/recommendation-bundle",
                    json={"skinAnalysisJson": ANALYSIS_JSON, "lifestyle": {"cycle_phase": "follicular"}},
                )

        self.assertEqual(res.status_code, 200)
        data = res.json()
        self.assertEqual(data["skin_profile"]["skin_analysis"]["acne"], "moderate")
        self.assertTrue(data["recommended_products"])
        self.assertEqual(len(data["price_comparisons"]), len(data["recommended_products"]))
        for comparison in data["price_comparisons"]:
            self.assertEqual([p["store"] for p in comparison["prices"]], ["AmazonCA", "SephoraCA"])
            self.assertIsNone(comparison["prices"][1]["price"])
            self.assertEqual(comparison["cheapest_store"], "AmazonCA")

        pm_labels = [s["step"] for s in data["routine"]["steps"] if s["time"] == "PM"]
        self.assertIn("Exfoliant (2-3x/week)", pm_labels)
        self.assertEqual(data["trace"]["routine"]["reason_code"], "no_api_key")


class TestStageEndpoints(unittest.TestCase):
    def setUp(self) -> None:
        os.environ["REDIS_URL"] = ""

    def test_healthz(self) -> None:
        app = create_app()
        with TestClient(app) as client:
            res = client.get("/healthz")
        self.assertEqual(res.status_code, 200)
        data = res.json()
        self.assertEqual(data["service"], "skinsense")
        self.assertEqual(data["price_cache_backend"], "memory")
        self.assertGreater(data["catalog"]["products"], 0)

    def test_analyze_skin_requires_image(self) -> None:
        app = create_app()
        with TestClient(app) as client:
            missing = client.post("/v1/analyze-skin", json={})
            malformed = client.post("/v1/analyze-skin", json={"image": "not-a-data-url"})
        self.assertEqual(missing.status_code, 400)
        self.assertEqual(malformed.status_code, 400)

    def test_analyze_skin_uses_vision_model(self) -> None:
        captured: dict = {}

        async def fake_vision(prompt: str, *, image_base64=None, mime_type=None) -> str:
            captured["image"] = image_base64
            captured["mime"] = mime_type
            captured["prompt"] = prompt
            return '{"ai_findings": {"redness": "moderate redness"}, "combined_interpretation": "Dry air."}'

        app = create_app()
        with patch("app.routes.v1._vision_generator", return_value=fake_vision):
            with TestClient(app) as client:
                res = client.post(
                    "/v1/analyze-skin",
                    json={"image": "data:image/webp;base64,UklGRabc", "preExistingConditions": ["rosacea"]},
                )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["redness"], "moderate")
        self.assertEqual(res.json()["probable_triggers"], ["dry air"])
        self.assertEqual(captured["image"], "UklGRabc")
        self.assertEqual(captured["mime"], "image/webp")
        self.assertIn("rosacea", captured["prompt"])

    def test_routine_endpoint_uses_rules_without_key(self) -> None:
        app = create_app()
        with patch("app.routes.v1._text_generator", return_value=None):
            with TestClient(app) as client:
                res = client.post(
                    "/v1/routine",
                    json={"skin_analysis": {"acne": "severe"}, "cycle_lifestyle": {"cycle_phase": "period"}},
                )
        self.assertEqual(res.status_code, 200)
        data = res.json()
        self.assertEqual(data["source"], "rules")
        labels = [s["step"] for s in data["steps"]]
        self.assertIn("Spot Treatment", labels)
        self.assertNotIn("Exfoliant (2-3x/week)", labels)

    def test_recommend_products_groups_by_category(self) -> None:
        app = create_app()
        with TestClient(app) as client:
            res = client.post(
                "/v1/recommend-products",
                json={"skin_profile": {"skin_analysis": {"dryness": "severe"}, "cycle_lifestyle": {}}, "limit": 40},
            )
        self.assertEqual(res.status_code, 200)
        data = res.json()
        products = data["recommended_products"]
        self.assertTrue(products)
        scores = [p["match_score"] for p in products]
        self.assertEqual(scores, sorted(scores, reverse=True))
        for p in products:
            self.assertGreaterEqual(p["safety_score"], 0)
            self.assertLessEqual(p["safety_score"], 100)
        self.assertTrue(all(p["category"] == "cleanser" for p in data["grouped_products"]["cleansers"]))

    def test_malformed_profile_is_rejected(self) -> None:
        bodies = [
            {"skin_profile": {}},
            {"skin_profile": {"skin_analysis": "garbage"}},
            {"skin_profile": {"skin_analysis": {"foo": 1}}},
            {"skin_profile": "not an object"},
            {"skin_analysis": None},
        ]
        app = create_app()
        with patch("app.routes.v1._text_generator", return_value=None):
            with TestClient(app) as client:
                for path in ("/v1/routine", "/v1/recommend-products"):
                    for body in bodies:
                        res = client.post(path, json=body)
                        self.assertEqual(res.status_code, 422, msg=f"{path} {body}")

    def test_missing_profile_returns_400(self) -> None:
        app = create_app()
        with TestClient(app) as client:
            res = client.post("/v1/routine", json={})
        self.assertEqual(res.status_code, 400)

    def test_price_compare_requires_product(self) -> None:
        app = create_app()
        with TestClient(app) as client:
            res = client.get("/v1/price-compare")
        self.assertEqual(res.status_code, 400)

    def test_price_compare_returns_every_store(self) -> None:
        app = create_app()
        with patch("app.routes.v1._store_fetchers", side_effect=_offline_fetchers):
            with TestClient(app) as client:
                res = client.get("/v1/price-compare", params={"product": "Effaclar Duo"})
        self.assertEqual(res.status_code, 200)
        data = res.json()
        self.assertEqual(data["product_name"], "Effaclar Duo")
        self.assertEqual([p["store"] for p in data["prices"]], ["AmazonCA", "SephoraCA"])
        self.assertEqual(data["cheapest_store"], "AmazonCA")

    def test_cycle_insights_echoes_input_without_key(self) -> None:
        app = create_app()
        with patch("app.routes.v1._text_generator", return_value=None):
            with TestClient(app) as client:
                res = client.post(
                    "/v1/cycle-insights",
                    json={"skin_analysis": {}, "cycle_lifestyle": {"cycle_phase": "ovulation", "sleep_hours": 5}},
                )
        self.assertEqual(res.status_code, 200)
        data = res.json()
        self.assertEqual(data["cycle_phase"], "ovulatory")
        self.assertEqual(data["sleep_hours"], 5)
        self.assertEqual(data["source"], "input")

    def test_investment_projection(self) -> None:
        app = create_app()
        with TestClient(app) as client:
            res = client.post("/v1/investment", json={"initial": 0, "monthly": 100, "years": 1, "annualRate": 0})
            bad = client.post("/v1/investment", json={"monthly": "lots"})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["future_value"], 1200.0)
        self.assertEqual(bad.status_code, 400)


if __name__ == "__main__":
    unittest.main()
