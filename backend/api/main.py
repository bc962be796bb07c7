"""
TrolleyOps API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import redis.asyncio as aioredis
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.config import get_settings
from db.session import Database

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown: the DB engine and Redis client live exactly as long as the app."""
    logger.info("TrolleyOps API starting up", version=settings.app_version)
    app.state.database = Database.from_settings(settings)
    app.state.redis = aioredis.from_url(settings.redis_url)
    try:
        yield
    finally:
        await app.state.redis.aclose()
        await app.state.database.dispose()
        logger.info("TrolleyOps API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Trolley geofence telemetry and checkout/return loyalty ledger",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Error envelopes
from api.errors import register_error_handlers

register_error_handlers(app)

# Import and register routers
from alerts.websocket import router as ws_router
from api.v1.routers import alerts, checkouts, gps

app.include_router(gps.router)
app.include_router(checkouts.router)
app.include_router(alerts.router)
app.include_router(ws_router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {"status": "healthy", "version": settings.app_version}
