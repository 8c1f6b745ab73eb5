from __future__ import annotations

from functools import lru_cache
import json
import logging
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from app.models import IngredientInfo, Product
from app.services.ingredients import build_ingredient_index

logger = logging.getLogger("skinsense.catalog")

DATA_DIR = Path(__file__).resolve().parent / "data"
DEFAULT_PRODUCTS_PATH = DATA_DIR / "products.json"
DEFAULT_INGREDIENTS_PATH = DATA_DIR / "ingredients.json"


class CatalogError(RuntimeError):
    """A catalog or ingredient dictionary entry violates the data model."""


class Catalog:
    def __init__(self, products: list[Product], ingredients: list[IngredientInfo]) -> None:
        self._products = tuple(products)
        self._ingredients = tuple(ingredients)
        self._ingredient_index = build_ingredient_index(self._ingredients)

    @property
    def products(self) -> tuple[Product, ...]:
        return self._products

    @property
    def ingredients(self) -> tuple[IngredientInfo, ...]:
        return self._ingredients

    @property
    def ingredient_index(self) -> dict[str, IngredientInfo]:
        return dict(self._ingredient_index)

    def get(self, product_id: str) -> Optional[Product]:
        for product in self._products:
            if product.id == product_id:
                return product
        return None


def _split_inci(inci: str) -> list[str]:
    return [part.strip() for part in inci.replace(";", ",").split(",") if part.strip()]


def _concerns_from_suitability(suitable_for: list[str]) -> list[str]:
    concerns: list[str] = []
    if "acne-prone" in suitable_for:
        concerns.append("acne")
    if "sensitive" in suitable_for:
        concerns.extend(["redness", "sensitivity"])
    if "dry" in suitable_for:
        concerns.extend(["dryness", "hydration"])
    if "oily" in suitable_for:
        concerns.append("oil control")
    return concerns or ["general"]


def _normalize_product_row(row: dict[str, Any]) -> dict[str, Any]:
    data = dict(row)
    inci = data.get("ingredients_full")
    inci = inci if isinstance(inci, str) else ""
    data["ingredients_full"] = inci

    if not data.get("ingredients"):
        data["ingredients"] = _split_inci(inci) if inci else list(data.get("key_ingredients") or [])

    suitable_for = [str(s).strip().lower() for s in data.get("suitable_for") or [] if s]
    data["suitable_for"] = suitable_for
    if not data.get("concerns"):
        data["concerns"] = _concerns_from_suitability(suitable_for)
    return data


def _read_json_list(path: Path) -> list[Any]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise CatalogError(f"could not read {path.name}: {exc}") from exc
    if not isinstance(raw, list):
        raise CatalogError(f"{path.name} must contain a JSON list")
    return raw


def load_products(path: Path = DEFAULT_PRODUCTS_PATH) -> list[Product]:
    products: list[Product] = []
    seen_ids: set[str] = set()
    for i, row in enumerate(_read_json_list(path)):
        if not isinstance(row, dict):
            raise CatalogError(f"{path.name}[{i}] is not an object")
        try:
            product = Product.model_validate(_normalize_product_row(row))
        except ValidationError as exc:
            raise CatalogError(f"{path.name}[{i}] invalid product: {exc}") from exc
        if product.id in seen_ids:
            raise CatalogError(f"{path.name}[{i}] duplicate product id {product.id!r}")
        seen_ids.add(product.id)
        products.append(product)
    return products


def load_ingredients(path: Path = DEFAULT_INGREDIENTS_PATH) -> list[IngredientInfo]:
    ingredients: list[IngredientInfo] = []
    for i, row in enumerate(_read_json_list(path)):
        try:
            ingredients.append(IngredientInfo.model_validate(row))
        except ValidationError as exc:
            raise CatalogError(f"{path.name}[{i}] invalid ingredient: {exc}") from exc
    return ingredients


def load_catalog(
    products_path: Path = DEFAULT_PRODUCTS_PATH,
    ingredients_path: Path = DEFAULT_INGREDIENTS_PATH,
) -> Catalog:
    try:
        catalog = Catalog(load_products(products_path), load_ingredients(ingredients_path))
    except CatalogError:
        logger.exception("Catalog load failed. products=%s ingredients=%s", products_path, ingredients_path)
        raise
    logger.info(
        "catalog_loaded products=%d ingredients=%d",
        len(catalog.products),
        len(catalog.ingredients),
    )
    return catalog


@lru_cache(maxsize=1)
def get_catalog() -> Catalog:
    return load_catalog()
