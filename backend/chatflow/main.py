# /chatflow/main.py

import os
import time
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from datetime import datetime

from chatflow.config.settings import settings
from chatflow.utils.lifecycle import lifespan
from chatflow.utils.metrics import response_time_histogram
from chatflow.routes import events, executions, flows, public
from chatflow.workflows.errors import (
    ConcurrencyConflict,
    ExecutionNotFound,
    GraphConfigurationError,
    ResourceUnavailable,
)

# Initialize the FastAPI application
app = FastAPI(
    title="Chatflow Workflow Engine",
    version="1.0.0",
    description="Resumable chat-bot workflow execution engine",
    lifespan=lifespan,
    openapi_url=f"/api/{settings.api_version}/openapi.json" if settings.environment != "production" else None,
    docs_url=f"/api/{settings.api_version}/docs" if settings.environment != "production" else None,
    redoc_url=f"/api/{settings.api_version}/redoc" if settings.environment != "production" else None,
)

# --- Middleware ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def performance_middleware(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response_time_histogram.labels(endpoint=request.url.path).observe(process_time)
    response.headers["X-Process-Time"] = str(process_time)
    return response


# --- Engine errors -> HTTP ---
def _error_response(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "message": str(exc),
            "data": {"error": exc.__class__.__name__, "node_id": getattr(exc, "node_id", None)},
            "timestamp": datetime.utcnow().isoformat(),
            "version": settings.api_version,
        },
    )


@app.exception_handler(ExecutionNotFound)
async def execution_not_found_handler(request: Request, exc: ExecutionNotFound):
    return _error_response(404, exc)


@app.exception_handler(ConcurrencyConflict)
async def concurrency_conflict_handler(request: Request, exc: ConcurrencyConflict):
    return _error_response(409, exc)


@app.exception_handler(GraphConfigurationError)
async def graph_configuration_handler(request: Request, exc: GraphConfigurationError):
    return _error_response(422, exc)


@app.exception_handler(ResourceUnavailable)
async def resource_unavailable_handler(request: Request, exc: ResourceUnavailable):
    return _error_response(503, exc)


# --- API Routers ---
app.include_router(public.router)
app.include_router(flows.router, prefix=f"/api/{settings.api_version}")
app.include_router(events.router, prefix=f"/api/{settings.api_version}")
app.include_router(executions.router, prefix=f"/api/{settings.api_version}")

# --- Main Entry Point for Uvicorn (for local development) ---
if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    host = os.getenv("HOST", "127.0.0.1")

    uvicorn.run(
        "chatflow.main:app",
        host=host,
        port=port,
        reload=True if settings.environment == "development" else False,
        workers=settings.workers if settings.environment == "production" else 1
    )
