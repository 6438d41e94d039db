"""
FastAPI application entry point.

This module initializes the FastAPI application, configures middleware,
and registers the API routers.
"""
import asyncio
import logging
import os
from contextlib import asynccontextmanager, suppress
from datetime import datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routers import uploads
from .core.config import settings
from .core.logging_config import configure_logging
from .db.session import dispose_engines
from .domain.ingest.decode_pool import shutdown_decode_pool
from .domain.uploads.reclamation import reclaim_orphans, sweep_forever
from .domain.uploads.registry import get_registry

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings.log_level)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load the registry, recover interrupted work and run the maintenance sweep."""
    os.makedirs(settings.upload_dir, exist_ok=True)
    registry = get_registry()
    registry.load()
    reclaim_orphans(registry, settings.upload_dir)

    sweeper = asyncio.create_task(sweep_forever(registry))
    logger.info("Ingestion service ready (uploads in %s)", os.path.abspath(settings.upload_dir))

    yield  # Application runs here

    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper
    shutdown_decode_pool()
    dispose_engines()


# Initialize FastAPI application
app = FastAPI(
    title="Bulk Load API",
    version="1.0.0",
    description="Bulk CSV/Excel ingestion into relational tables with duplicate handling and resumable progress",
    lifespan=lifespan,
)

allowed_origins = [origin.strip() for origin in settings.allowed_origins.split(",") if origin.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(uploads.router)


@app.get("/")
async def root():
    """Root endpoint returning API information."""
    return {
        "message": "Bulk Load API",
        "version": "1.0.0"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint for deployment monitoring."""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "service": "bulkload-api"
    }
