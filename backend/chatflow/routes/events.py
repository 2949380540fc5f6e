# /chatflow/routes/events.py

from fastapi import APIRouter, Depends

from chatflow.config.settings import settings
from chatflow.models.api import APIResponse, InboundEventRequest, ResumeRequest
from chatflow.models.execution import InboundEvent
from chatflow.utils.dependencies import get_engine
from chatflow.utils.queue import event_queue
from chatflow.workflows.engine import WorkflowEngine
import structlog

log = structlog.get_logger(__name__)

# This file defines the inbound event routes. The transport adapter (webhook
# parser) posts already-parsed events here.
router = APIRouter(
    prefix="/events",
    tags=["Events"],
)


@router.post("", response_model=APIResponse)
async def receive_event(request: InboundEventRequest, engine: WorkflowEngine = Depends(get_engine)):
    """Queues an event when the Redis queue is enabled, otherwise processes it inline."""
    if await event_queue.is_duplicate_event(request.event_id, request.chat_id):
        log.info("Duplicate event ignored", event_id=request.event_id)
        return APIResponse(success=True, message="Duplicate event ignored.", data={"outcome": "duplicate"}, version=settings.api_version)

    event = InboundEvent(**request.model_dump())
    if await event_queue.add_event(event):
        return APIResponse(success=True, message="Event queued.", data={"outcome": "queued"}, version=settings.api_version)

    result = await engine.handle_inbound_event(event)
    return APIResponse(success=True, message="Event processed.", data=dict(result), version=settings.api_version)


@router.post("/resume", response_model=APIResponse)
async def resume_on_event(request: ResumeRequest, engine: WorkflowEngine = Depends(get_engine)):
    """Resumes a waiting execution of the chat only; never starts a new one."""
    resumed = await engine.resume_on_event(
        request.chat_id, request.kind, request.payload, subject=request.subject, project_id=request.project_id
    )
    return APIResponse(
        success=True,
        message="Execution resumed." if resumed else "No waiting execution matched.",
        data={"resumed": resumed},
        version=settings.api_version,
    )
