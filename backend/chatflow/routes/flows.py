# /chatflow/routes/flows.py

from fastapi import APIRouter, Depends
from fastapi.encoders import jsonable_encoder

from chatflow.config.settings import settings
from chatflow.models.api import APIResponse, FallbackFlowRequest, FlowUpsertRequest, FlowValidationRequest, StartFlowRequest
from chatflow.models.execution import InboundEvent
from chatflow.models.flow import FlowGraph
from chatflow.utils.dependencies import get_engine
from chatflow.workflows.engine import WorkflowEngine
import structlog

log = structlog.get_logger(__name__)

# This file defines the flow authoring routes (validate, save) and the
# explicit start of a flow for a subject.
router = APIRouter(
    prefix="/flows",
    tags=["Flows"],
)


@router.post("/validate", response_model=APIResponse)
async def validate_flow(request: FlowValidationRequest, engine: WorkflowEngine = Depends(get_engine)):
    """Validates a graph without saving it. Always answers 200; the result says whether it is valid."""
    result = engine.validate_flow(request.nodes, request.connections)
    return APIResponse(
        success=True,
        message="Flow is valid." if result["is_valid"] else "Flow has errors.",
        data=dict(result),
        version=settings.api_version,
    )


@router.put("/{flow_id}", response_model=APIResponse)
async def save_flow(flow_id: str, request: FlowUpsertRequest, engine: WorkflowEngine = Depends(get_engine)):
    """Compiles and stores a new version of the flow. Invalid graphs are rejected with their errors."""
    flow = FlowGraph(id=flow_id, **request.model_dump())
    result = await engine.save_flow(flow)
    if not result["success"]:
        return APIResponse(
            success=False,
            message="Flow was rejected.",
            data={"errors": result["errors"], "warnings": result["warnings"]},
            version=settings.api_version,
        )

    executable = result["executable_flow"]
    log.info("Flow saved via API", flow_id=flow_id, version=executable.version)
    return APIResponse(
        success=True,
        message="Flow saved.",
        data={"flow_id": flow_id, "version": executable.version, "warnings": result["warnings"]},
        version=settings.api_version,
    )


@router.put("/fallback/current", response_model=APIResponse)
async def set_fallback_flow(request: FallbackFlowRequest, engine: WorkflowEngine = Depends(get_engine)):
    """Registers (or clears, with a null flow_id) the project's fallback flow."""
    await engine.set_fallback_flow(request.project_id, request.flow_id)
    return APIResponse(
        success=True,
        message="Fallback flow updated.",
        data={"project_id": request.project_id, "flow_id": request.flow_id},
        version=settings.api_version,
    )


@router.post("/{flow_id}/start", response_model=APIResponse)
async def start_flow(flow_id: str, request: StartFlowRequest, engine: WorkflowEngine = Depends(get_engine)):
    trigger_event = None
    if request.kind is not None:
        trigger_event = InboundEvent(
            chat_id=request.subject.chat_id, kind=request.kind, payload=request.payload, subject=request.subject
        )
    context_id = await engine.start_flow(flow_id, request.subject, trigger_event, request.start_node_id)
    status = await engine.get_execution_status(context_id)
    return APIResponse(
        success=True,
        message="Flow started.",
        data=jsonable_encoder(status),
        version=settings.api_version,
    )
