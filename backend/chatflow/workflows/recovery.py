# /chatflow/workflows/recovery.py

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import tenacity

from chatflow.config.settings import settings
from chatflow.config.strings import (
    AUTH_REQUIRED_MESSAGE,
    FALLBACK_NOTICE_MESSAGE,
    FINAL_ERROR_MESSAGE,
    RECOVERY_CONTROLS,
    VALIDATION_REPROMPT_MESSAGE,
)
from chatflow.models.execution import ExecutionContext, ExecutionStatus, Subject, WaitType
from chatflow.services.store import ExecutionStore
from chatflow.services.transport_service import inline_controls
from chatflow.utils.alerting import alerting_service
from chatflow.utils.metrics import handler_retries_counter, recovery_actions_counter
from chatflow.workflows.compiler import ExecutableNode
from chatflow.workflows.context_manager import ExecutionContextManager
from chatflow.workflows.errors import (
    AuthorizationError,
    GraphConfigurationError,
    InputValidationError,
    LoopDetected,
    ResourceUnavailable,
)

logger = logging.getLogger(__name__)

# Starts the project's fallback flow: (flow_id, subject, parent_context_id, error_info) -> context id
FallbackStarter = Callable[[str, Subject, str, Dict[str, Any]], Awaitable[str]]


class ErrorCategory(str, Enum):
    TRANSIENT = "transient"
    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    FATAL = "fatal"
    UNCLASSIFIED = "unclassified"


_TRANSIENT_TYPES = (
    ResourceUnavailable,
    httpx.TimeoutException,
    httpx.TransportError,
    asyncio.TimeoutError,
    ConnectionError,
)


def classify(exc: BaseException) -> ErrorCategory:
    """Maps an exception to the recovery strategy that applies to it."""
    if isinstance(exc, (GraphConfigurationError, LoopDetected)):
        return ErrorCategory.FATAL
    if isinstance(exc, AuthorizationError):
        return ErrorCategory.AUTHORIZATION
    if isinstance(exc, InputValidationError):
        return ErrorCategory.VALIDATION
    if isinstance(exc, _TRANSIENT_TYPES):
        return ErrorCategory.TRANSIENT

    message = str(exc).lower()
    if "network" in message or "timeout" in message or "timed out" in message:
        return ErrorCategory.TRANSIENT
    if "invalid" in message or "validation" in message:
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNCLASSIFIED


def _is_transient(exc: BaseException) -> bool:
    return classify(exc) == ErrorCategory.TRANSIENT


def error_info(exc: BaseException, category: ErrorCategory, node_id: Optional[str]) -> Dict[str, Any]:
    return {
        "category": category.value,
        "type": exc.__class__.__name__,
        "message": str(exc),
        "node_id": getattr(exc, "node_id", None) or node_id,
    }


class RecoveryManager:
    """
    Decides what happens after a handler fails.

    - transient: retried in place with exponential backoff, then escalated
    - validation: the subject is re-prompted and the same step waits for input
    - authorization: auth message, context fails
    - fatal: author alerted, final message with restart/help controls, context fails
    - unclassified: escalated to the project's fallback flow, if any

    Every terminal failure leaves the subject with a message telling them
    what to do next.
    """

    def __init__(
        self,
        store: ExecutionStore,
        transport,
        context_manager: ExecutionContextManager,
        retry_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        backoff_max_seconds: Optional[float] = None,
        max_recovery_attempts: Optional[int] = None,
        recovery_window_seconds: Optional[int] = None,
    ):
        self.store = store
        self.transport = transport
        self.context_manager = context_manager
        self.retry_attempts = retry_attempts or settings.handler_retry_attempts
        self.backoff_seconds = settings.handler_retry_backoff_seconds if backoff_seconds is None else backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds or settings.handler_retry_backoff_max_seconds
        self.max_recovery_attempts = max_recovery_attempts or settings.recovery_max_attempts
        self.recovery_window_seconds = recovery_window_seconds or settings.recovery_window_seconds
        self.fallback_starter: Optional[FallbackStarter] = None

    # ==================== Transient retry ====================

    async def run_with_retry(self, operation: Callable[[], Awaitable[Any]], node_type: str = "unknown") -> Any:
        """Runs a handler call, retrying transient failures. The last failure is re-raised as-is."""

        def before_sleep(retry_state: tenacity.RetryCallState):
            handler_retries_counter.labels(node_type=node_type).inc()
            logger.warning(
                f"Transient failure in {node_type} (attempt {retry_state.attempt_number}/{self.retry_attempts}): "
                f"{retry_state.outcome.exception()}"
            )

        async for attempt in tenacity.AsyncRetrying(
            retry=tenacity.retry_if_exception(_is_transient),
            stop=tenacity.stop_after_attempt(self.retry_attempts),
            wait=tenacity.wait_exponential(multiplier=self.backoff_seconds, max=self.backoff_max_seconds),
            before_sleep=before_sleep,
            reraise=True,
        ):
            with attempt:
                return await operation()

    # ==================== Failure handling ====================

    async def _notify(self, context: ExecutionContext, text: str, with_controls: bool = False) -> None:
        try:
            await self.transport.send_message(
                context.subject.chat_id, text, inline_controls(RECOVERY_CONTROLS) if with_controls else None
            )
        except Exception as e:
            logger.error(f"Could not deliver recovery message to chat {context.subject.chat_id}: {e}")

    async def notify_final(self, context: ExecutionContext) -> None:
        """Last resort when no recovery decision could be stored: tell the subject how to start over."""
        recovery_actions_counter.labels(category=ErrorCategory.TRANSIENT.value, action="unrecoverable").inc()
        await self._notify(context, FINAL_ERROR_MESSAGE, with_controls=True)

    async def _refresh_status(self, context: ExecutionContext) -> ExecutionStatus:
        """Status after a conditional write lost, e.g. to a cancellation."""
        stored = await self.store.get_context(context.id)
        if stored is not None:
            context.status = stored.status
        return context.status

    async def _fail(self, context: ExecutionContext, info: Dict[str, Any], text: str, action: str) -> ExecutionStatus:
        recovery_actions_counter.labels(category=info["category"], action=action).inc()
        if not await self.context_manager.archive(context, ExecutionStatus.FAILED, info):
            return await self._refresh_status(context)
        await self._notify(context, text, with_controls=True)
        return context.status

    async def handle_failure(
        self,
        context: ExecutionContext,
        exc: BaseException,
        node: Optional[ExecutableNode] = None,
        node_id: Optional[str] = None,
    ) -> ExecutionStatus:
        """Moves a running context whose step failed to waiting or failed. Returns the new status."""
        node_id = node.id if node is not None else node_id
        category = classify(exc)
        info = error_info(exc, category, node_id)
        logger.warning(f"Context {context.id} failed at node {node_id} ({category.value}): {exc}")

        if category == ErrorCategory.FATAL:
            logger.error(f"Flow {context.flow_id} v{context.flow_version} needs fixing: {exc}")
            await alerting_service.send_critical_alert(
                "Workflow configuration failure", {"flow_id": context.flow_id, **info}
            )
            return await self._fail(context, info, FINAL_ERROR_MESSAGE, "fail")

        if category == ErrorCategory.AUTHORIZATION:
            return await self._fail(context, info, AUTH_REQUIRED_MESSAGE, "fail")

        attempts = await self.store.record_recovery_attempt(
            f"{context.flow_id}:{context.subject.key}", self.recovery_window_seconds
        )
        if attempts > self.max_recovery_attempts:
            logger.error(f"Recovery cap reached for flow {context.flow_id}, subject {context.subject.key}")
            return await self._fail(context, info, FINAL_ERROR_MESSAGE, "cap_exceeded")

        if category == ErrorCategory.VALIDATION and node_id is not None:
            return await self._reprompt(context, info, node)

        return await self._escalate(context, info)

    async def _reprompt(self, context: ExecutionContext, info: Dict[str, Any],
                        node: Optional[ExecutableNode]) -> ExecutionStatus:
        recovery_actions_counter.labels(category=info["category"], action="reprompt").inc()
        context.status = ExecutionStatus.WAITING
        context.wait_type = WaitType.INPUT
        context.current_node_id = info["node_id"]
        context.resume_node_id = info["node_id"]
        context.wait_deadline = None
        context.error = info
        if not await self.store.update_context(context, expected_statuses=(ExecutionStatus.RUNNING,)):
            return await self._refresh_status(context)
        text = (node.config.get("error_message") if node is not None else None) or VALIDATION_REPROMPT_MESSAGE
        await self._notify(context, text)
        return context.status

    async def _escalate(self, context: ExecutionContext, info: Dict[str, Any]) -> ExecutionStatus:
        fallback_id = await self.store.get_fallback_flow(context.project_id)
        if not fallback_id or fallback_id == context.flow_id or self.fallback_starter is None:
            return await self._fail(context, info, FINAL_ERROR_MESSAGE, "fail")

        recovery_actions_counter.labels(category=info["category"], action="fallback").inc()
        if not await self.context_manager.archive(context, ExecutionStatus.FAILED, info):
            return await self._refresh_status(context)

        await self._notify(context, FALLBACK_NOTICE_MESSAGE)
        try:
            fallback_context_id = await self.fallback_starter(fallback_id, context.subject, context.id, info)
        except Exception as e:
            logger.error(f"Fallback flow {fallback_id} could not start for context {context.id}: {e}")
            await self._notify(context, FINAL_ERROR_MESSAGE, with_controls=True)
            return context.status

        logger.info(f"Context {context.id} escalated to fallback flow {fallback_id} as {fallback_context_id}")
        return context.status
