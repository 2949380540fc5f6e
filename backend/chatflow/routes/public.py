# /chatflow/routes/public.py

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from datetime import datetime

from chatflow.config.settings import settings

# This file defines public-facing endpoints that do not require
# authentication: the root endpoint, health checks and Prometheus metrics.

router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Chatflow Workflow Engine",
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.environment
    }


@router.get("/health", summary="Basic Health Check")
async def health_check():
    """Basic health check for load balancers."""
    return {"status": "healthy", "timestamp": datetime.utcnow()}


@router.get("/health/ready", summary="Readiness Probe")
async def readiness_check(request: Request):
    """Readiness check: the engine is built and its store answers."""
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Service not ready: engine not initialized")
    if hasattr(store, "health_check") and not await store.health_check():
        raise HTTPException(status_code=503, detail="Service not ready: database unreachable")
    return {"status": "ready"}


@router.get("/metrics", tags=["Monitoring"])
async def metrics():
    return PlainTextResponse(generate_latest().decode("utf-8"), media_type=CONTENT_TYPE_LATEST)
