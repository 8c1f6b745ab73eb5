from __future__ import annotations

import asyncio
import logging
import math
import re
import time
from typing import Any, Awaitable, Callable, Optional, Sequence
from urllib.parse import quote_plus

from app.models import PriceComparisonResult, StorePrice
from app.store.price_cache import PriceCache

logger = logging.getLogger("skinsense.pricing")

# product_name -> best-match quote, or None when the store has no match
StoreFetchFn = Callable[[str], Awaitable[Optional[StorePrice]]]

DEFAULT_STORES = ("AmazonCA", "SephoraCA", "Shoppers")
DEFAULT_PRICE_TIMEOUT_S = 8.0

SEARCH_URL_TEMPLATES = {
    "AmazonCA": "https://www.amazon.ca/s?k={q}",
    "SephoraCA": "https://www.sephora.com/ca/en/search?keyword={q}",
    "Shoppers": "https://www.shoppersdrugmart.ca/en/search?query={q}",
    "Walmart": "https://www.walmart.ca/search?q={q}",
}

_PRICE_CHARS_RE = re.compile(r"[^0-9.]")


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_price(value: Any) -> Optional[float]:
    """Numeric price from a number or formatted text ("CA$1,299.99"); None when unparsable."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        price = float(value)
    else:
        cleaned = _PRICE_CHARS_RE.sub("", str(value))
        if not cleaned:
            return None
        try:
            price = float(cleaned)
        except ValueError:
            return None
    if math.isnan(price) or math.isinf(price) or price < 0:
        return None
    return round(price, 2)


def build_search_url(store: str, product_name: str) -> str:
    template = SEARCH_URL_TEMPLATES.get(store)
    q = quote_plus(product_name.strip())
    if template is None:
        return f"https://www.google.com/search?q={q}+{quote_plus(store)}"
    return template.format(q=q)


def fallback_store_price(store: str, product_name: str) -> StorePrice:
    return StorePrice(
        store=store,
        price=None,
        url=build_search_url(store, product_name),
        image=None,
        last_checked=now_ms(),
    )


def select_cheapest(prices: Sequence[StorePrice]) -> Optional[str]:
    best: Optional[StorePrice] = None
    for quote in prices:
        if quote.price is None:
            continue
        # Strict comparison keeps the first configured store on ties.
        if best is None or quote.price < (best.price or 0.0):
            best = quote
    return best.store if best else None


def fallback_comparison(product_name: str, stores: Sequence[str]) -> PriceComparisonResult:
    return PriceComparisonResult(
        product_name=product_name,
        prices=[fallback_store_price(store, product_name) for store in stores],
        cheapest_store=None,
    )


async def _fetch_one(
    store: str,
    fetch: StoreFetchFn,
    product_name: str,
    *,
    timeout_s: float,
    cache: Optional[PriceCache],
) -> StorePrice:
    if cache is not None:
        try:
            cached = await cache.get(store, product_name)
        except Exception as exc:
            logger.warning("price_cache_read_failed store=%s err=%r", store, exc)
            cached = None
        if cached is not None:
            return cached

    quote = await asyncio.wait_for(fetch(product_name), timeout=timeout_s)
    if quote is None:
        return fallback_store_price(store, product_name)

    if quote.store != store or not quote.url:
        quote = quote.model_copy(
            update={"store": store, "url": quote.url or build_search_url(store, product_name)}
        )

    if cache is not None and quote.price is not None:
        try:
            await cache.set(quote, product_name)
        except Exception as exc:
            logger.warning("price_cache_write_failed store=%s err=%r", store, exc)
    return quote


async def aggregate_prices(
    product_name: str,
    fetchers: Sequence[tuple[str, StoreFetchFn]],
    *,
    timeout_s: float = DEFAULT_PRICE_TIMEOUT_S,
    cache: Optional[PriceCache] = None,
) -> PriceComparisonResult:
    """
    Query every configured store concurrently for one product.

    Each store gets exactly one slot in configured order. A store that raises, times out or has
    no match gets a null-price entry with a search deep link; siblings are never cancelled.
    """
    outcomes = await asyncio.gather(
        *(
            _fetch_one(store, fetch, product_name, timeout_s=timeout_s, cache=cache)
            for store, fetch in fetchers
        ),
        return_exceptions=True,
    )

    prices: list[StorePrice] = []
    for (store, _), outcome in zip(fetchers, outcomes):
        if isinstance(outcome, StorePrice):
            prices.append(outcome)
            continue
        if isinstance(outcome, asyncio.TimeoutError):
            logger.warning("Store lookup timed out. store=%s product=%r timeout_s=%s", store, product_name, timeout_s)
        else:
            logger.warning("Store lookup failed. store=%s product=%r err=%r", store, product_name, outcome)
        prices.append(fallback_store_price(store, product_name))

    return PriceComparisonResult(
        product_name=product_name,
        prices=prices,
        cheapest_store=select_cheapest(prices),
    )
