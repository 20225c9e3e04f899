from __future__ import annotations

import logging

from fastapi import FastAPI

from .api import build_router
from .cache import MarketCache
from .gateway import Gateway
from .logging_config import configure_logging
from .pipeline import Pipeline
from .settings import settings

app = FastAPI(title="Crypto Aggregator API", version="1.0.0")

cache = MarketCache.from_settings(settings.redis)
gateway = Gateway(cache, settings.exchanges)
pipeline = Pipeline(settings, cache, gateway=gateway)

app.include_router(build_router(cache, settings.exchanges))
app.include_router(gateway.router)

logger = logging.getLogger(__name__)


@app.on_event("startup")
async def startup():
    configure_logging(settings.log_level)
    # broker unreachable after every retry: let the server fail to start
    await pipeline.start()


@app.on_event("shutdown")
async def shutdown():
    await pipeline.stop()


@app.get("/health")
async def health():
    return {"status": "ok", "pipeline": pipeline.stats()}
