"""
Recruitment Pipeline API - Main Application Entry Point

This module initializes the FastAPI application with:
- Database connection and schema initialization
- Background scheduler for stored file retention
- Prometheus metrics middleware
- API router registration

Architecture:
    FastAPI App
    ├── Lifespan Management (startup/shutdown)
    ├── Prometheus Middleware (/metrics)
    └── API Router
        ├── /screening - Trigger, retry, cancel and inspect screenings
        ├── /files - Direct uploads and stored file records
        └── /webhooks - Inbound email deliveries
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from app.database import init_db
from app.api import api_router
from app.middleware import setup_metrics
from app.scheduler import start_scheduler, stop_scheduler
from app.services.cache import get_embedding_cache
from app.services.ocr import shutdown_ocr_service

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
        1. Initialize database tables
        2. Start the retention scheduler

    Shutdown:
        1. Gracefully stop the scheduler
        2. Release the OCR worker pool
    """
    await init_db()
    start_scheduler()
    yield
    stop_scheduler()
    shutdown_ocr_service()


app = FastAPI(
    title="Recruitment Pipeline API",
    description="Résumé and certificate intake, analysis and screening",
    version="0.1.0",
    lifespan=lifespan,
)

setup_metrics(app)

app.include_router(api_router)


@app.get("/health")
async def health_check():
    """Redis only backs the embedding cache, so an outage degrades rather than fails."""
    cache = get_embedding_cache()
    try:
        redis_ok = await cache.health_check()
    finally:
        await cache.close()
    return {"status": "healthy" if redis_ok else "degraded", "redis": redis_ok}
