"""
FastAPI application entry point.
Sets up the API with lifespan events for database initialization.
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from reviseflow.config import settings
from reviseflow.database import init_db
from reviseflow.api.router import api_router
from reviseflow.auth.firebase import initialize_firebase
from reviseflow.middleware.metrics_middleware import MetricsMiddleware
from reviseflow.utils.logging import configure_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup/shutdown events.
    - Startup: Initialize database and Firebase Admin SDK
    """
    configure_logging('reviseflow-api', settings.log_level)

    await init_db()

    # Skip if Firebase config not provided (local dev without Firebase)
    if settings.firebase_project_id:
        try:
            initialize_firebase()
        except Exception as e:
            if settings.environment == "production":
                raise
            logger.warning(f"Firebase initialization failed: {e}")

    yield


# Create FastAPI app
app = FastAPI(
    title="ReviseFlow API",
    description="Entitlement, quota and billing backend for ReviseFlow",
    version="0.1.0",
    lifespan=lifespan
)

# CORS middleware; browser origins are checked again by the AI request guard
cors_origins = [settings.app_base_url] if settings.app_base_url else ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=bool(settings.app_base_url),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Metrics middleware (must be after CORS to track all requests)
app.add_middleware(MetricsMiddleware)

# Include API routes
app.include_router(api_router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "ReviseFlow API",
        "version": "0.1.0",
        "environment": settings.environment
    }


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )
