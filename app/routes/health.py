from __future__ import annotations

import os

from fastapi import APIRouter

from app.catalog import CatalogError, get_catalog
from app.store.price_cache import PRICE_CACHE

router = APIRouter()


def _get_commit_sha() -> str | None:
    for key in ("RAILWAY_GIT_COMMIT_SHA", "GITHUB_SHA", "COMMIT_SHA", "GIT_SHA"):
        value = os.getenv(key)
        if value:
            return value
    return None


def _catalog_counts() -> dict[str, int] | None:
    try:
        catalog = get_catalog()
    except CatalogError:
        return None
    return {"products": len(catalog.products), "ingredients": len(catalog.ingredients)}


@router.get("/healthz")
def healthz():
    counts = _catalog_counts()
    return {
        "ok": counts is not None,
        "service": "skinsense",
        "commit_sha": _get_commit_sha(),
        "environment": os.getenv("ENVIRONMENT"),
        "price_cache_backend": PRICE_CACHE.backend_kind,
        "catalog": counts,
    }
