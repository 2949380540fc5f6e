# /chatflow/workflows/engine.py

"""
Resumable workflow execution engine.

WorkflowEngine is the single entry point the API, the queue worker and the
scheduler talk to. It wires the flow registry, context manager, handler
registry, dispatcher, wait/resume coordinator and recovery together, and
holds no per-execution state of its own: everything that must survive
between events lives in the store.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, TypedDict

import httpx
import structlog

from chatflow.config.strings import RESTART_CALLBACK_DATA
from chatflow.models.execution import (
    EventKind,
    ExecutionContext,
    ExecutionStatus,
    InboundEvent,
    StepTrace,
    Subject,
)
from chatflow.models.flow import FlowGraph, NodeType, VariableScope
from chatflow.services.contact_service import ContactService
from chatflow.services.store import ExecutionStore
from chatflow.workflows.compiler import CompileResult, ExecutableFlow, compile_flow, normalize_command
from chatflow.workflows.context_manager import ExecutionContextManager
from chatflow.workflows.coordinator import WaitResumeCoordinator
from chatflow.workflows.dispatcher import NodeDispatcher
from chatflow.workflows.errors import AlreadyRunning, GraphConfigurationError
from chatflow.workflows.flow_registry import FlowRegistry
from chatflow.workflows.handlers.registry import HandlerRegistry, build_handler_registry
from chatflow.workflows.recovery import RecoveryManager
from chatflow.workflows.telemetry import PerformanceMonitor
from chatflow.workflows.validator import FlowValidationResult, validate

log = structlog.get_logger(__name__)


class ExecutionStatusView(TypedDict):
    id: str
    flow_id: str
    flow_version: int
    status: str
    current_node_id: Optional[str]
    wait_type: str
    wait_deadline: Optional[datetime]
    step_count: int
    error: Optional[Dict[str, Any]]
    parent_context_id: Optional[str]


class InboundResult(TypedDict):
    outcome: str  # duplicate | resumed | started | already_running | ignored
    context_id: Optional[str]


class WorkflowEngine:
    def __init__(
        self,
        store: ExecutionStore,
        transport,
        flow_registry: Optional[FlowRegistry] = None,
        handler_registry: Optional[HandlerRegistry] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        max_steps: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        max_recovery_attempts: Optional[int] = None,
    ):
        self.store = store
        self.transport = transport
        self.flow_registry = flow_registry or FlowRegistry(store)
        self.contact_service = ContactService(store)
        self.context_manager = ExecutionContextManager(store)
        self.monitor = PerformanceMonitor(store)
        self.handler_registry = handler_registry or build_handler_registry(self.contact_service, http_client)
        self.recovery = RecoveryManager(
            store,
            transport,
            self.context_manager,
            retry_attempts=retry_attempts,
            backoff_seconds=backoff_seconds,
            max_recovery_attempts=max_recovery_attempts,
        )
        self.recovery.fallback_starter = self._start_fallback
        self.dispatcher = NodeDispatcher(
            store,
            self.handler_registry,
            self.context_manager,
            self.recovery,
            self.monitor,
            transport,
            max_steps=max_steps,
        )
        self.coordinator = WaitResumeCoordinator(
            store,
            self.flow_registry,
            self.context_manager,
            self.dispatcher,
            self.recovery,
            self.contact_service,
            self.monitor,
            transport,
        )

    # ==================== Authoring ====================

    @staticmethod
    def validate_flow(nodes: Any, connections: Any) -> FlowValidationResult:
        return validate(nodes, connections)

    async def save_flow(self, flow: FlowGraph) -> CompileResult:
        """
        Compiles and stores a flow as a new immutable version. Invalid graphs
        are rejected and nothing is stored. Running executions keep the
        version they started on.
        """
        latest = await self.store.get_flow(flow.id)
        if latest is not None and flow.version <= latest.version:
            flow = flow.model_copy(update={"version": latest.version + 1, "updated_at": datetime.utcnow()})

        result = compile_flow(flow)
        if not result["success"]:
            log.warning("flow_rejected", flow_id=flow.id, errors=len(result["errors"]))
            return result

        await self.store.save_flow(flow)
        self.flow_registry.register(result["executable_flow"])
        log.info("flow_saved", flow_id=flow.id, version=flow.version, warnings=len(result["warnings"]))
        return result

    async def set_fallback_flow(self, project_id: str, flow_id: Optional[str]) -> None:
        if flow_id is not None:
            await self.flow_registry.get(flow_id)
        await self.store.set_fallback_flow(project_id, flow_id)

    # ==================== Starting ====================

    @staticmethod
    def _entry_node(flow: ExecutableFlow, event: Optional[InboundEvent], start_node_id: Optional[str]) -> str:
        if start_node_id is not None:
            if flow.node(start_node_id) is None:
                raise GraphConfigurationError(f"Node '{start_node_id}' does not exist in flow '{flow.id}'", start_node_id)
            return start_node_id
        if event is not None:
            matched = flow.find_trigger(event.kind, event.payload)
            if matched is not None:
                return matched
        if not flow.entry_points:
            raise GraphConfigurationError(f"Flow '{flow.id}' has no trigger to start from")
        return flow.entry_points[0]

    async def _start(
        self,
        flow: ExecutableFlow,
        subject: Subject,
        event: Optional[InboundEvent] = None,
        start_node_id: Optional[str] = None,
        parent_context_id: Optional[str] = None,
        session_variables: Optional[Dict[str, Any]] = None,
        origin: str = "api",
    ) -> ExecutionContext:
        entry = self._entry_node(flow, event, start_node_id)
        context = await self.context_manager.create_context(flow, subject, event, parent_context_id)
        self.monitor.execution_started(context, origin)
        log.info("execution_started", context_id=context.id, flow_id=flow.id, entry=entry, origin=origin)

        # The context exists from here on; failures must leave it failed, not running
        try:
            variables = await self.recovery.run_with_retry(
                lambda: self.context_manager.initialize_variables(context, flow, event, session_variables), "start"
            )
        except Exception as exc:
            log.error("execution_start_failed", context_id=context.id, error=str(exc))
            await self.dispatcher.recover(context, exc, node_id=entry)
            return context
        return await self.dispatcher.execute_node(context, flow, variables, entry)

    async def start_flow(
        self,
        flow_id: str,
        subject: Subject,
        trigger_event: Optional[InboundEvent] = None,
        start_node_id: Optional[str] = None,
    ) -> str:
        """
        Starts the latest version of a flow for a subject and runs it until it
        waits or finishes. Returns the new context id.

        Raises:
            AlreadyRunning: the subject already has an active run of this flow
            GraphConfigurationError: unknown flow or start node
        """
        flow = await self.flow_registry.get(flow_id)
        context = await self._start(flow, subject, trigger_event, start_node_id)
        return context.id

    async def _start_fallback(self, flow_id: str, subject: Subject, parent_context_id: str,
                              error_info: Dict[str, Any]) -> str:
        flow = await self.flow_registry.get(flow_id)
        context = await self._start(
            flow, subject,
            parent_context_id=parent_context_id,
            session_variables={"error_info": error_info},
            origin="fallback",
        )
        return context.id

    # ==================== Events ====================

    async def resume_on_event(self, chat_id: str, kind: EventKind, payload: Any,
                              subject: Optional[Subject] = None, project_id: Optional[str] = None) -> bool:
        """True when a waiting execution of this chat consumed the event."""
        event = InboundEvent(chat_id=chat_id, kind=EventKind(kind), payload=payload, subject=subject, project_id=project_id)
        return await self.coordinator.on_inbound_event(event)

    def _trigger_for(self, flow: ExecutableFlow, event: InboundEvent) -> Optional[str]:
        node_id = flow.find_trigger(event.kind, event.payload)
        if node_id is None and event.kind == EventKind.CALLBACK and event.payload == RESTART_CALLBACK_DATA:
            # "Start over" on a failure message behaves like /start
            node_id = flow.find_trigger(EventKind.MESSAGE, "/start")
        return node_id

    async def handle_inbound_event(self, event: InboundEvent) -> InboundResult:
        """
        Routes one inbound event: a waiting execution of the chat gets it
        first, otherwise the first active flow with a matching trigger starts.
        A command that matches a trigger restarts its flow even when a run is
        waiting. Events with an event_id are processed at most once.
        """
        event_key = f"event:{event.event_id}" if event.event_id else None
        if event_key and not await self.store.claim_effect(event_key):
            log.info("duplicate_event_ignored", event_id=event.event_id)
            return {"outcome": "duplicate", "context_id": None}

        try:
            return await self._route_event(event)
        except Exception:
            # A redelivery of an event that failed here must not look like a duplicate
            if event_key:
                await self.store.release_effect(event_key)
            raise

    async def _route_event(self, event: InboundEvent) -> InboundResult:
        is_command = event.kind == EventKind.MESSAGE and normalize_command(event.payload) is not None
        if not is_command and await self.coordinator.on_inbound_event(event):
            return {"outcome": "resumed", "context_id": None}

        subject = event.resolved_subject()
        for flow in await self.flow_registry.active_flows(event.project_id or "default"):
            node_id = self._trigger_for(flow, event)
            if node_id is None:
                continue
            if flow.node(node_id).type == NodeType.TRIGGER_COMMAND:
                active = await self.store.find_active_context(flow.id, subject.key)
                if active is not None:
                    await self.store.cancel_context(active.id)
                    log.info("execution_superseded", context_id=active.id, flow_id=flow.id)
            try:
                context = await self._start(flow, subject, event, start_node_id=node_id, origin="event")
            except AlreadyRunning as e:
                log.info("start_rejected_already_running", flow_id=flow.id, subject=subject.key, reason=str(e))
                return {"outcome": "already_running", "context_id": None}
            return {"outcome": "started", "context_id": context.id}

        if is_command and await self.coordinator.on_inbound_event(event):
            return {"outcome": "resumed", "context_id": None}

        log.info("event_ignored", chat_id=event.chat_id, kind=event.kind.value)
        return {"outcome": "ignored", "context_id": None}

    async def sweep_expired_waits(self, now: Optional[datetime] = None) -> int:
        return await self.coordinator.sweep_expired_waits(now)

    # ==================== Inspection & control ====================

    async def get_execution_status(self, context_id: str) -> ExecutionStatusView:
        context = await self.context_manager.load_context(context_id)
        return {
            "id": context.id,
            "flow_id": context.flow_id,
            "flow_version": context.flow_version,
            "status": context.status.value,
            "current_node_id": context.current_node_id,
            "wait_type": context.wait_type.value,
            "wait_deadline": context.wait_deadline,
            "step_count": context.step_count,
            "error": context.error,
            "parent_context_id": context.parent_context_id,
        }

    async def get_trace(self, context_id: str) -> List[StepTrace]:
        await self.context_manager.load_context(context_id)
        return await self.store.get_traces(context_id)

    async def cancel_execution(self, context_id: str) -> bool:
        """Cancels a running or waiting execution. False when it had already finished."""
        cancelled = await self.store.cancel_context(context_id)
        if cancelled is None:
            await self.context_manager.load_context(context_id)
            return False
        self.monitor.execution_finished(cancelled, ExecutionStatus.CANCELLED)
        return True

    async def restart_from_node(self, context_id: str, node_id: str, reset_variables: bool = False) -> str:
        """
        Starts a new execution of the same flow version at node_id. The old
        execution is cancelled if still active. Session variables carry over
        unless reset_variables is set; persistent variables always do.
        """
        previous = await self.context_manager.load_context(context_id)
        flow = await self.flow_registry.get(previous.flow_id, previous.flow_version)
        if flow.node(node_id) is None:
            raise GraphConfigurationError(f"Node '{node_id}' does not exist in flow '{flow.id}'", node_id)

        if previous.is_active:
            await self.store.cancel_context(previous.id)

        carried = {} if reset_variables else await self.store.get_variables(previous.id, VariableScope.SESSION)
        context = await self._start(
            flow, previous.subject,
            start_node_id=node_id,
            parent_context_id=previous.id,
            session_variables=carried,
            origin="restart",
        )
        log.info("execution_restarted", context_id=context.id, previous=previous.id, node_id=node_id)
        return context.id
