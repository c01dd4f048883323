"""
boost.api.main — FastAPI application entry point
=================================================

Run with::

    uvicorn boost.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

from boost import __version__  # noqa: E402
from boost.api.deps import get_engine, get_pipeline  # noqa: E402
from boost.api.routes.events import router as events_router  # noqa: E402
from boost.api.routes.rewards import router as rewards_router  # noqa: E402

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — warm the DB engine, drain fulfillments."""
    engine = get_engine()
    logger.info("Boost API started — engine ready (%s)", engine.url.database)
    yield
    await get_pipeline().drain()
    logger.info("Boost API shutting down")


app = FastAPI(
    title="Boost Rules Engine API",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(events_router, prefix="/api")
app.include_router(rewards_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
