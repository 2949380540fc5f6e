# /chatflow/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from chatflow.utils.logging import setup_logging
from chatflow.utils.alerting import alerting_service
from chatflow.utils.queue import event_queue
from chatflow.utils.dependencies import create_engine, create_store
from chatflow.services.cache_service import cache_service
from chatflow.services.transport_service import transport_service

# This file manages the application's lifespan, handling startup tasks like
# building the store and engine, and shutdown tasks like closing connections.

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()
    logger.info("Application starting up...")

    store = create_store()
    if hasattr(store, "create_indexes"):
        await store.create_indexes()

    engine = create_engine(store)
    app.state.store = store
    app.state.engine = engine

    await event_queue.start_workers(engine)

    logger.info("Application startup complete. Ready to accept requests.")

    yield  # Application is now running

    logger.info("Application shutting down...")

    await event_queue.stop_workers()
    await transport_service.close()
    await alerting_service.cleanup()
    await cache_service.close()
    if hasattr(store, "close"):
        store.close()
