# /chatflow/routes/executions.py

from fastapi import APIRouter, Depends
from fastapi.encoders import jsonable_encoder

from chatflow.config.settings import settings
from chatflow.models.api import APIResponse, RestartRequest
from chatflow.utils.dependencies import get_engine
from chatflow.workflows.engine import WorkflowEngine
import structlog

log = structlog.get_logger(__name__)

# This file defines the execution inspection and control routes.
router = APIRouter(
    prefix="/executions",
    tags=["Executions"],
)


@router.get("/{context_id}", response_model=APIResponse)
async def get_execution(context_id: str, engine: WorkflowEngine = Depends(get_engine)):
    status = await engine.get_execution_status(context_id)
    return APIResponse(success=True, message="Execution retrieved.", data=jsonable_encoder(status), version=settings.api_version)


@router.get("/{context_id}/trace", response_model=APIResponse)
async def get_execution_trace(context_id: str, engine: WorkflowEngine = Depends(get_engine)):
    traces = await engine.get_trace(context_id)
    return APIResponse(
        success=True,
        message=f"{len(traces)} step(s) recorded.",
        data={"context_id": context_id, "steps": [t.model_dump(mode="json") for t in traces]},
        version=settings.api_version,
    )


@router.post("/{context_id}/cancel", response_model=APIResponse)
async def cancel_execution(context_id: str, engine: WorkflowEngine = Depends(get_engine)):
    cancelled = await engine.cancel_execution(context_id)
    log.info("Cancel requested", context_id=context_id, cancelled=cancelled)
    return APIResponse(
        success=True,
        message="Execution cancelled." if cancelled else "Execution had already finished.",
        data={"cancelled": cancelled},
        version=settings.api_version,
    )


@router.post("/{context_id}/restart", response_model=APIResponse)
async def restart_execution(context_id: str, request: RestartRequest, engine: WorkflowEngine = Depends(get_engine)):
    new_context_id = await engine.restart_from_node(context_id, request.node_id, request.reset_variables)
    return APIResponse(
        success=True,
        message="Execution restarted.",
        data={"context_id": new_context_id, "previous_context_id": context_id},
        version=settings.api_version,
    )
