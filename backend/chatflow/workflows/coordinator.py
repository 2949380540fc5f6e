# /chatflow/workflows/coordinator.py

import logging
from datetime import datetime
from typing import Any, Optional, Tuple

from chatflow.config.strings import DEFAULT_TIMEOUT_MESSAGE, RECOVERY_CONTROLS, WAIT_TIMEOUT_MESSAGES
from chatflow.models.execution import (
    COMPATIBLE_WAITS,
    EventKind,
    ExecutionContext,
    ExecutionStatus,
    InboundEvent,
    WaitType,
)
from chatflow.models.flow import EdgeLabel
from chatflow.services.contact_service import ContactService
from chatflow.services.store import ExecutionStore
from chatflow.services.transport_service import as_rows, inline_controls
from chatflow.utils.metrics import resume_counter, wait_timeouts_counter
from chatflow.workflows.button_actions import ButtonActionExecutor, pressed_button
from chatflow.workflows.compiler import ExecutableFlow
from chatflow.workflows.context_manager import ExecutionContextManager
from chatflow.workflows.dispatcher import NodeDispatcher
from chatflow.workflows.flow_registry import FlowRegistry
from chatflow.workflows.handlers.base import StepContext
from chatflow.workflows.recovery import RecoveryManager
from chatflow.workflows.telemetry import PerformanceMonitor
from chatflow.workflows.variables import VariableAccessor

logger = logging.getLogger(__name__)

# Session flag set when a wait was left through its 'timeout' edge
TIMED_OUT = "timed_out"


def _running_copy(claimed: ExecutionContext) -> ExecutionContext:
    """The claimed context as the store now holds it: running, no wait."""
    return claimed.model_copy(
        update={"status": ExecutionStatus.RUNNING, "wait_type": WaitType.NONE, "wait_deadline": None}, deep=True
    )


def resume_target(flow: ExecutableFlow, waiting: ExecutionContext, event: InboundEvent) -> Optional[str]:
    """
    Where a claimed context continues after an event.

    Callbacks: a callback trigger with the same data, a button's goto_node,
    the suspension node's edge labeled with the data, then the recorded
    resume node and the default edge.
    Text and contacts: the recorded resume node, an edge labeled with the
    text (reply keyboard buttons), then the default edge.
    """
    suspended_at = waiting.current_node_id
    node = flow.node(suspended_at)
    payload = event.payload

    if event.kind == EventKind.CALLBACK:
        data = str(payload)
        if data in flow.callback_triggers:
            return flow.callback_triggers[data]
        if node is not None:
            for row in as_rows(node.config.get("buttons")):
                for button in row:
                    if str(button.get("callback_data")) == data and button.get("goto_node"):
                        return button["goto_node"]
            labeled = flow.edge(node.id, data)
            if labeled is not None:
                return labeled

    if waiting.resume_node_id:
        return waiting.resume_node_id
    if node is None:
        return None
    if event.kind == EventKind.MESSAGE and isinstance(payload, str):
        labeled = flow.edge(node.id, payload.strip())
        if labeled is not None:
            return labeled
    return flow.edge(node.id, EdgeLabel.DEFAULT.value)


class WaitResumeCoordinator:
    """Resumes waiting executions on inbound events and on expired deadlines."""

    def __init__(
        self,
        store: ExecutionStore,
        flow_registry: FlowRegistry,
        context_manager: ExecutionContextManager,
        dispatcher: NodeDispatcher,
        recovery: RecoveryManager,
        contact_service: ContactService,
        monitor: PerformanceMonitor,
        transport,
    ):
        self.store = store
        self.flow_registry = flow_registry
        self.context_manager = context_manager
        self.dispatcher = dispatcher
        self.recovery = recovery
        self.contact_service = contact_service
        self.monitor = monitor
        self.transport = transport
        self.button_actions = ButtonActionExecutor(contact_service)

    # ==================== Inbound events ====================

    async def _prepare_resume(self, context: ExecutionContext, claimed: ExecutionContext,
                              event: InboundEvent) -> Tuple[ExecutableFlow, VariableAccessor]:
        """Binds the claimed context to its flow version and records the event. Safe to repeat."""
        flow = await self.flow_registry.get(context.flow_id, context.flow_version)
        variables = await self.context_manager.resume_context(context, event)

        value: Any = event.payload
        if event.kind == EventKind.CONTACT:
            await self.contact_service.link_contact(context, variables, event.payload)
            value = variables.get("contact_phone")

        suspended_at = flow.node(claimed.current_node_id)
        if suspended_at is not None and suspended_at.config.get("save_to"):
            await variables.set(suspended_at.config["save_to"], value)
        return flow, variables

    async def _run_button_actions(self, context: ExecutionContext, flow: ExecutableFlow,
                                  variables: VariableAccessor, claimed: ExecutionContext, event: InboundEvent) -> None:
        node = flow.node(claimed.current_node_id)
        button = pressed_button(node, event.payload)
        if not button or not button.get("actions"):
            return
        step = StepContext(context, flow, variables, self.store, self.transport)
        ran = await self.button_actions.execute(step, button["actions"], node.id)
        logger.info(f"Ran {ran} button action(s) for context {context.id} at {node.id}")

    async def on_inbound_event(self, event: InboundEvent) -> bool:
        """
        Resumes the waiting context of this chat that the event is compatible
        with. Returns False when there was none, or another delivery of the
        same event already claimed it.

        Once claimed, the context is never left running without an owner:
        a failure before dispatch goes through recovery like a failed step.
        """
        claimed = await self.store.claim_waiting_context(
            event.chat_id, COMPATIBLE_WAITS[event.kind], project_id=event.project_id
        )
        if claimed is None:
            resume_counter.labels(event_kind=event.kind.value, outcome="no_match").inc()
            return False

        self.monitor.execution_resumed()
        resume_counter.labels(event_kind=event.kind.value, outcome="resumed").inc()
        context = _running_copy(claimed)
        logger.info(f"Resuming context {context.id} from {claimed.wait_type.value} wait on {event.kind.value}")

        try:
            flow, variables = await self.recovery.run_with_retry(
                lambda: self._prepare_resume(context, claimed, event), "resume"
            )
            target = resume_target(flow, claimed, event)
            if event.kind == EventKind.CALLBACK:
                await self._run_button_actions(context, flow, variables, claimed, event)
        except Exception as exc:
            logger.error(f"Could not resume context {context.id}: {exc}")
            await self.dispatcher.recover(context, exc, node_id=claimed.current_node_id)
            return True

        context.resume_node_id = None
        context.error = None
        await self.dispatcher.execute_node(context, flow, variables, target)
        return True

    # ==================== Expired waits ====================

    async def _notify_timeout(self, context: ExecutionContext, wait_type: WaitType) -> None:
        text = WAIT_TIMEOUT_MESSAGES.get(wait_type.value, DEFAULT_TIMEOUT_MESSAGE)
        try:
            await self.transport.send_message(context.subject.chat_id, text, inline_controls(RECOVERY_CONTROLS))
        except Exception as e:
            logger.error(f"Could not deliver timeout message to chat {context.subject.chat_id}: {e}")

    async def _fail_timed_out(self, context: ExecutionContext, claimed: ExecutionContext) -> None:
        wait_type = claimed.wait_type
        wait_timeouts_counter.labels(wait_type=wait_type.value, outcome="failed").inc()
        error = {
            "category": "timeout",
            "type": "WaitTimeout",
            "message": f"No {wait_type.value} received before {claimed.wait_deadline}",
            "node_id": claimed.current_node_id,
        }
        if await self.context_manager.archive(context, ExecutionStatus.FAILED, error):
            self.monitor.execution_finished(context, ExecutionStatus.FAILED)
            await self._notify_timeout(context, wait_type)

    async def _expire(self, claimed: ExecutionContext) -> None:
        """
        Delays continue at their recorded node. Other waits take their
        'timeout' edge with timed_out set, or fail with category 'timeout'.
        """
        context = _running_copy(claimed)
        wait_type = claimed.wait_type
        try:
            flow = await self.recovery.run_with_retry(
                lambda: self.flow_registry.get(context.flow_id, context.flow_version), "sweep"
            )
            if wait_type == WaitType.DELAY:
                outcome, target = "resumed", claimed.resume_node_id
            else:
                outcome = "timeout_edge"
                target = flow.edge(claimed.current_node_id, EdgeLabel.TIMEOUT.value) if claimed.current_node_id else None
                if target is None:
                    await self._fail_timed_out(context, claimed)
                    return

            variables = await self.recovery.run_with_retry(lambda: self.context_manager.resume_context(context), "sweep")
            if outcome == "timeout_edge":
                await variables.set(TIMED_OUT, True)
        except Exception as exc:
            logger.error(f"Could not handle expired wait of context {context.id}: {exc}")
            await self.dispatcher.recover(context, exc, node_id=claimed.current_node_id)
            return

        wait_timeouts_counter.labels(wait_type=wait_type.value, outcome=outcome).inc()
        context.resume_node_id = None
        await self.dispatcher.execute_node(context, flow, variables, target)

    async def sweep_expired_waits(self, now: Optional[datetime] = None, limit: int = 100) -> int:
        """
        Claims and handles waiting contexts whose deadline has passed, one at
        a time with the same atomic claim inbound events use. Returns how
        many were handled.
        """
        now = now or datetime.utcnow()
        handled = 0
        while handled < limit:
            claimed = await self.store.claim_expired_wait(now)
            if claimed is None:
                break
            handled += 1
            self.monitor.execution_resumed()
            try:
                await self._expire(claimed)
            except Exception as e:
                logger.error(f"Error handling expired wait of context {claimed.id}: {e}", exc_info=True)
        if handled:
            logger.info(f"Wait sweep handled {handled} expired execution(s)")
        return handled
