"""
MarginSync API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.config import get_settings

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("MarginSync API starting up", version=settings.app_version, store_id=settings.store_id)
    yield
    logger.info("MarginSync API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Order reconciliation and margin engine",
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

# Import and register routers
from api.v1.routers import ingest, orders, webhooks

app.include_router(webhooks.router)
app.include_router(ingest.router)
app.include_router(orders.router)
app.include_router(orders.sales_router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {"status": "healthy", "version": settings.app_version}
