from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from typing import Optional, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from app.models import StorePrice


logger = logging.getLogger("skinsense.price-cache")


class PriceCache(Protocol):
    async def get(self, store: str, product_name: str) -> Optional[StorePrice]: ...

    async def set(self, quote: StorePrice, product_name: str, *, ttl_s: Optional[float] = None) -> None: ...

    async def close(self) -> None: ...


def cache_key(store: str, product_name: str) -> str:
    normalized = " ".join(product_name.lower().split())
    if not normalized:
        raise ValueError("product_name must be non-empty")
    return f"{store.strip().lower()}:{normalized[:200]}"


def _coerce_ttl(ttl_s: Optional[float], default_ttl_s: float) -> float:
    ttl = default_ttl_s if ttl_s is None else float(ttl_s)
    return max(0.0, ttl)


class InMemoryPriceCache(PriceCache):
    def __init__(self, *, default_ttl_s: float = 600.0, max_entries: int = 5000) -> None:
        self._default_ttl_s = default_ttl_s
        self._max_entries = max(1, int(max_entries))
        self._lock = asyncio.Lock()
        self._items: dict[str, tuple[dict, Optional[float]]] = {}

    def __len__(self) -> int:
        return len(self._items)

    async def get(self, store: str, product_name: str) -> Optional[StorePrice]:
        key = cache_key(store, product_name)
        async with self._lock:
            record = self._items.get(key)
            if not record:
                return None
            data, expires_at = record
            if expires_at is not None and time.monotonic() >= expires_at:
                self._items.pop(key, None)
                return None
            return StorePrice.model_validate(data)

    def _prune(self, now: float) -> None:
        expired = [k for k, (_, expires_at) in self._items.items() if expires_at is not None and now >= expires_at]
        for key in expired:
            del self._items[key]
        # Oldest writes go first once the cache is full.
        while len(self._items) >= self._max_entries:
            del self._items[next(iter(self._items))]

    async def set(self, quote: StorePrice, product_name: str, *, ttl_s: Optional[float] = None) -> None:
        key = cache_key(quote.store, product_name)
        ttl = _coerce_ttl(ttl_s, self._default_ttl_s)
        now = time.monotonic()
        expires_at = None if ttl <= 0 else now + ttl
        async with self._lock:
            self._items.pop(key, None)
            self._prune(now)
            self._items[key] = (quote.model_dump(mode="json"), expires_at)

    async def close(self) -> None:
        return None


class RedisPriceCache(PriceCache):
    def __init__(
        self,
        *,
        redis_url: str,
        default_ttl_s: float = 600.0,
        connect_timeout_s: float = 1.0,
        socket_timeout_s: float = 1.0,
        key_prefix: str = "skinsense_price",
    ) -> None:
        self._default_ttl_s = default_ttl_s
        self._key_prefix = key_prefix.strip(":") or "skinsense_price"
        self._redis = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=connect_timeout_s,
            socket_timeout=socket_timeout_s,
        )

    async def ping(self) -> None:
        await self._redis.ping()

    def _key(self, store: str, product_name: str) -> str:
        return f"{self._key_prefix}:{cache_key(store, product_name)}"

    async def get(self, store: str, product_name: str) -> Optional[StorePrice]:
        raw = await self._redis.get(self._key(store, product_name))
        if not raw:
            return None
        try:
            return StorePrice.model_validate(json.loads(raw))
        except ValueError:
            logger.warning("redis_price_parse_failed store=%s product=%r", store, product_name)
            return None

    async def set(self, quote: StorePrice, product_name: str, *, ttl_s: Optional[float] = None) -> None:
        ttl = _coerce_ttl(ttl_s, self._default_ttl_s)
        value = json.dumps(quote.model_dump(mode="json"), separators=(",", ":"))
        if ttl > 0:
            await self._redis.set(self._key(quote.store, product_name), value, ex=int(max(1.0, ttl)))
        else:
            await self._redis.set(self._key(quote.store, product_name), value)

    async def close(self) -> None:
        try:
            await self._redis.aclose()
        except RedisError as exc:
            logger.debug("redis_price_cache_close_failed err=%s", exc)


class PersistentPriceCache(PriceCache):
    """Redis when REDIS_URL is reachable, in-memory otherwise; Redis errors demote to memory."""

    def __init__(
        self,
        *,
        redis_url: Optional[str] = None,
        default_ttl_s: Optional[float] = None,
        connect_timeout_s: float = 1.0,
        socket_timeout_s: float = 1.0,
    ) -> None:
        self._redis_url = redis_url
        self._default_ttl_s = default_ttl_s
        self._connect_timeout_s = connect_timeout_s
        self._socket_timeout_s = socket_timeout_s
        self._backend: PriceCache = InMemoryPriceCache(default_ttl_s=self._ttl())
        self._backend_kind = "memory"

    @property
    def backend_kind(self) -> str:
        return self._backend_kind

    def _ttl(self) -> float:
        if self._default_ttl_s is not None:
            return self._default_ttl_s
        return _env_float("PRICE_CACHE_TTL_SECONDS", 600.0)

    async def initialize(self) -> None:
        redis_url = (self._redis_url or os.getenv("REDIS_URL") or "").strip() or None

        if not redis_url:
            self._backend = InMemoryPriceCache(default_ttl_s=self._ttl())
            self._backend_kind = "memory"
            logger.info("price_cache_backend=memory reason=missing_REDIS_URL")
            return

        try:
            redis_backend = RedisPriceCache(
                redis_url=redis_url,
                default_ttl_s=self._ttl(),
                connect_timeout_s=self._connect_timeout_s,
                socket_timeout_s=self._socket_timeout_s,
            )
            await redis_backend.ping()
        except (RedisError, OSError, ValueError) as exc:
            self._backend = InMemoryPriceCache(default_ttl_s=self._ttl())
            self._backend_kind = "memory"
            logger.warning("price_cache_backend=memory reason=redis_unavailable err=%s", exc)
            return

        self._backend = redis_backend
        self._backend_kind = "redis"
        logger.info("price_cache_backend=redis")

    async def get(self, store: str, product_name: str) -> Optional[StorePrice]:
        try:
            return await self._backend.get(store, product_name)
        except RedisError as exc:
            logger.warning("price_cache_get_failed backend=%s err=%s", self._backend_kind, exc)
            await self._fallback_to_memory(reason="redis_error")
            return None

    async def set(self, quote: StorePrice, product_name: str, *, ttl_s: Optional[float] = None) -> None:
        try:
            await self._backend.set(quote, product_name, ttl_s=ttl_s)
        except RedisError as exc:
            logger.warning("price_cache_set_failed backend=%s err=%s", self._backend_kind, exc)
            await self._fallback_to_memory(reason="redis_error")

    async def _fallback_to_memory(self, *, reason: str) -> None:
        if self._backend_kind == "memory":
            return
        await self._backend.close()
        self._backend = InMemoryPriceCache(default_ttl_s=self._ttl())
        self._backend_kind = "memory"
        logger.warning("price_cache_backend=memory reason=%s", reason)

    async def close(self) -> None:
        await self._backend.close()


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


PRICE_CACHE = PersistentPriceCache()
