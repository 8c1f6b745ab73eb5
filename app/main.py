from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.catalog import CatalogError, get_catalog
from app.routes.health import router as health_router
from app.routes.v1 import router as v1_router
from app.store.price_cache import PRICE_CACHE

logger = logging.getLogger("skinsense.main")


def _parse_cors_origins(raw: Optional[str]) -> list[str]:
    if not raw:
        return ["*"]
    parts = [p.strip() for p in raw.split(",")]
    return [p for p in parts if p]


def _setup_logging() -> None:
    level = (os.getenv("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
    await PRICE_CACHE.initialize()
    try:
        get_catalog()
    except CatalogError:
        # Requests that need the catalog answer 500 until the data files are fixed.
        logger.error("Catalog failed to load at startup.")
    try:
        yield
    finally:
        await PRICE_CACHE.close()


def create_app() -> FastAPI:
    _setup_logging()
    app = FastAPI(title="SkinSense", version="0.1.0", lifespan=_lifespan)

    origins = _parse_cors_origins(os.getenv("CORS_ORIGINS"))
    allow_all = "*" in origins

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=86400,
    )

    app.include_router(health_router)
    app.include_router(v1_router, prefix="/v1")

    return app


app = create_app()
