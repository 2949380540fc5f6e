# /chatflow/utils/dependencies.py

import structlog
from fastapi import Request, HTTPException, status

from chatflow.config.settings import settings
from chatflow.services.store import ExecutionStore, InMemoryExecutionStore
from chatflow.services.transport_service import transport_service
from chatflow.workflows.engine import WorkflowEngine

log = structlog.get_logger(__name__)


def create_store() -> ExecutionStore:
    """The configured execution store backend."""
    if settings.execution_store == "memory":
        log.warning("Using the in-memory execution store; paused executions will not survive a restart.")
        return InMemoryExecutionStore()
    # Imported lazily so the memory backend does not need a MongoDB driver connection
    from chatflow.services.db_service import MongoExecutionStore
    return MongoExecutionStore(settings.mongo_atlas_uri)


def create_engine(store: ExecutionStore) -> WorkflowEngine:
    return WorkflowEngine(store, transport_service)


async def get_engine(request: Request) -> WorkflowEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Engine is not ready")
    return engine
