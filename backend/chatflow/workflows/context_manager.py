# /chatflow/workflows/context_manager.py

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from chatflow.models.execution import (
    EventKind,
    ExecutionContext,
    ExecutionStatus,
    InboundEvent,
    Subject,
    WaitType,
)
from chatflow.models.flow import VariableScope
from chatflow.services.store import ExecutionStore
from chatflow.workflows.compiler import ExecutableFlow
from chatflow.workflows.errors import ExecutionNotFound
from chatflow.workflows.variables import VariableAccessor

logger = logging.getLogger(__name__)

# Well-known variable names an inbound event is exposed under
LAST_INPUT = "last_input"
CALLBACK_DATA = "callback_data"
CONTACT = "contact"
LAST_EVENT_KIND = "last_event_kind"


def well_known_fields(context: ExecutionContext) -> Dict[str, Any]:
    """Read-only fields templates can reference after session and persistent variables."""
    subject = context.subject
    return {
        "chat_id": subject.chat_id,
        "user_id": subject.user_id,
        "username": subject.username,
        "first_name": subject.first_name,
        "last_name": subject.last_name,
        "context_id": context.id,
        "flow_id": context.flow_id,
        "project_id": context.project_id,
        "step": context.step_count,
        "now": datetime.utcnow().isoformat(),
        "subject": subject.model_dump(),
    }


class ExecutionContextManager:
    """Creates, resumes and archives execution contexts."""

    def __init__(self, store: ExecutionStore):
        self.store = store

    async def create_context(
        self,
        flow: ExecutableFlow,
        subject: Subject,
        event: Optional[InboundEvent] = None,
        parent_context_id: Optional[str] = None,
    ) -> ExecutionContext:
        """
        Creates a running context pinned to the flow's version.

        Raises:
            AlreadyRunning: (flow, subject) already has a running or waiting context
        """
        context = ExecutionContext(
            project_id=flow.project_id,
            flow_id=flow.id,
            flow_version=flow.version,
            subject=subject,
            status=ExecutionStatus.RUNNING,
            parent_context_id=parent_context_id,
            trigger=event.model_dump(mode="json") if event else {},
        )
        await self.store.insert_context(context)
        logger.info(f"Created context {context.id} for flow {flow.id} v{flow.version}, subject {subject.key}")
        return context

    async def initialize_variables(
        self,
        context: ExecutionContext,
        flow: ExecutableFlow,
        event: Optional[InboundEvent] = None,
        session_variables: Optional[Dict[str, Any]] = None,
    ) -> VariableAccessor:
        """
        Applies the flow's declared defaults, then carried-over session values,
        then the triggering event. Existing persistent values win over defaults.
        Safe to repeat.
        """
        variables = await VariableAccessor(self.store, context).load()
        for declaration in flow.flow.variables:
            if declaration.scope == VariableScope.PERSISTENT and variables.has(declaration.name, VariableScope.PERSISTENT):
                continue
            await variables.set(declaration.name, declaration.default, declaration.scope)
        if session_variables:
            await variables.update(session_variables)
        if event is not None:
            await self.expose_event(variables, event)
        return variables

    async def resume_context(self, context: ExecutionContext, event: Optional[InboundEvent] = None) -> VariableAccessor:
        """Binds variables for an already-persisted context and exposes the inbound payload."""
        variables = await VariableAccessor(self.store, context).load()
        if event is not None:
            await self.expose_event(variables, event)
        return variables

    @staticmethod
    async def expose_event(variables: VariableAccessor, event: InboundEvent) -> None:
        await variables.set(LAST_EVENT_KIND, event.kind.value)
        if event.kind == EventKind.MESSAGE:
            await variables.set(LAST_INPUT, event.payload)
        elif event.kind == EventKind.CALLBACK:
            await variables.set(CALLBACK_DATA, event.payload)
            await variables.set(LAST_INPUT, event.payload)
        elif event.kind == EventKind.CONTACT:
            await variables.set(CONTACT, event.payload)
            await variables.set(LAST_INPUT, event.payload)

    async def load_context(self, context_id: str) -> ExecutionContext:
        context = await self.store.get_context(context_id)
        if context is None:
            raise ExecutionNotFound(f"Execution '{context_id}' not found")
        return context

    async def archive(self, context: ExecutionContext, status: ExecutionStatus,
                      error: Optional[Dict[str, Any]] = None) -> bool:
        """
        Terminal transition. Contexts are never deleted; they stay queryable
        with their variables and traces. Returns False if the context was
        no longer running (e.g. cancelled meanwhile).
        """
        context.status = status
        context.wait_type = WaitType.NONE
        context.wait_deadline = None
        context.finished_at = datetime.utcnow()
        if error is not None:
            context.error = error
        archived = await self.store.update_context(context, expected_statuses=(ExecutionStatus.RUNNING,))
        if archived:
            logger.info(f"Context {context.id} archived as {status.value}")
        return archived
