import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from veil.api.deps import get_network
from veil.api.routes import bettors, computations, markets
from veil.config import settings
from veil.core.metrics import MetricsMiddleware, get_metrics
from veil.db.database import init_db
from veil.services.cluster import HttpComputationNetwork

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    await init_db()
    network = get_network()
    logger.info(f"Veil started with {type(network).__name__}, cluster={settings.cluster_id}")
    yield
    if isinstance(network, HttpComputationNetwork):
        await network.close()


app = FastAPI(
    title="Veil",
    description="Confidential parimutuel prediction markets",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.is_development else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if settings.metrics_enabled:
    app.add_middleware(MetricsMiddleware)

# REST API routes
app.include_router(markets.router, prefix="/api/markets", tags=["markets"])
app.include_router(bettors.router, prefix="/api/bettors", tags=["bettors"])
app.include_router(computations.router, prefix="/api/computations", tags=["computations"])


@app.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get("/metrics")
async def metrics() -> Response:
    content, content_type = await get_metrics()
    return Response(content=content, media_type=content_type)


@app.get("/")
async def root() -> dict[str, Any]:
    return {
        "name": "Veil",
        "tagline": "Bet in private, settle in public",
        "version": "0.1.0",
        "docs": "/docs",
        "endpoints": {
            "markets": "/api/markets",
            "bettors": "/api/bettors",
            "computations": "/api/computations",
        },
    }
