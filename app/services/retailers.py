from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

import httpx

from app.models import StorePrice
from app.services.pricing import StoreFetchFn, build_search_url, now_ms, parse_price

logger = logging.getLogger("skinsense.retailers")

AMAZON_HOST = "real-time-amazon-data.p.rapidapi.com"
SEPHORA_HOST = "real-time-sephora-api.p.rapidapi.com"
SEPHORA_SITE = "https://www.sephora.com"


def _as_obj(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _products_from(data: Any) -> list[dict[str, Any]]:
    products = _as_obj(_as_obj(data).get("data")).get("products")
    if not isinstance(products, list):
        return []
    return [p for p in products if isinstance(p, dict)]


async def _rapidapi_get(url: str, *, host: str, api_key: str, params: dict[str, Any], timeout_s: float) -> Any:
    async with httpx.AsyncClient(timeout=timeout_s) as client:
        res = await client.get(
            url,
            params=params,
            headers={"x-rapidapi-host": host, "x-rapidapi-key": api_key},
        )
    if res.status_code >= 400:
        raise httpx.HTTPStatusError(f"{host} returned error", request=res.request, response=res)
    return res.json()


async def fetch_amazon_price(product_name: str, *, api_key: Optional[str], timeout_s: float) -> Optional[StorePrice]:
    if not api_key:
        return None
    data = await _rapidapi_get(
        f"https://{AMAZON_HOST}/search",
        host=AMAZON_HOST,
        api_key=api_key,
        params={
            "query": product_name,
            "country": "CA",
            "sort_by": "RELEVANCE",
            "page": 1,
            "language": "en_CA",
        },
        timeout_s=timeout_s,
    )
    products = _products_from(data)
    if not products:
        return None
    first = products[0]
    return StorePrice(
        store="AmazonCA",
        price=parse_price(first.get("product_price")),
        url=str(first.get("product_url") or "") or build_search_url("AmazonCA", product_name),
        image=first.get("product_photo") or None,
        last_checked=now_ms(),
    )


def _best_sephora_match(products: list[dict[str, Any]], product_name: str) -> dict[str, Any]:
    query = product_name.lower()
    for p in products:
        if query in str(p.get("displayName") or "").lower():
            return p
    return products[0]


async def fetch_sephora_price(product_name: str, *, api_key: Optional[str], timeout_s: float) -> Optional[StorePrice]:
    if not api_key:
        return None
    data = await _rapidapi_get(
        f"https://{SEPHORA_HOST}/search-by-category",
        host=SEPHORA_HOST,
        api_key=api_key,
        params={
            "categoryId": "skin-care",
            "sortBy": "BEST_SELLING",
            "pageSize": 60,
            "currentPage": 1,
            "query": product_name,
        },
        timeout_s=timeout_s,
    )
    products = _products_from(data)
    if not products:
        return None
    match = _best_sephora_match(products, product_name)
    sku = _as_obj(match.get("currentSku"))

    path = str(match.get("targetUrl") or "")
    url = path if path.startswith("http") else (f"{SEPHORA_SITE}{path}" if path else build_search_url("SephoraCA", product_name))

    hero = match.get("heroImage")
    image = None
    if isinstance(hero, str) and hero:
        image = hero if hero.startswith("http") else f"{SEPHORA_SITE}/productimages/sku/s{hero}-main-zoom.jpg"

    return StorePrice(
        store="SephoraCA",
        price=parse_price(sku.get("listPrice") if sku.get("listPrice") is not None else match.get("price")),
        url=url,
        image=image,
        last_checked=now_ms(),
    )


async def fetch_shoppers_price(product_name: str) -> Optional[StorePrice]:
    # No public price source; always a deep link with unknown price.
    return StorePrice(
        store="Shoppers",
        price=None,
        url=build_search_url("Shoppers", product_name),
        image=None,
        last_checked=now_ms(),
    )


def build_store_fetchers(
    stores: Sequence[str],
    *,
    rapidapi_key: Optional[str],
    timeout_s: float,
) -> list[tuple[str, StoreFetchFn]]:
    """Ordered (store, fetch) pairs; unknown stores get a fetcher that never matches."""
    fetchers: list[tuple[str, StoreFetchFn]] = []
    for store in stores:
        if store == "AmazonCA":
            async def _amazon(name: str) -> Optional[StorePrice]:
                return await fetch_amazon_price(name, api_key=rapidapi_key, timeout_s=timeout_s)

            fetchers.append((store, _amazon))
        elif store == "SephoraCA":
            async def _sephora(name: str) -> Optional[StorePrice]:
                return await fetch_sephora_price(name, api_key=rapidapi_key, timeout_s=timeout_s)

            fetchers.append((store, _sephora))
        elif store == "Shoppers":
            fetchers.append((store, fetch_shoppers_price))
        else:
            logger.warning("No price adapter for store=%s; quotes will be search links only.", store)

            async def _no_match(name: str) -> Optional[StorePrice]:
                return None

            fetchers.append((store, _no_match))
    return fetchers
