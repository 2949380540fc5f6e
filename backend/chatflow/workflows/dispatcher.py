# /chatflow/workflows/dispatcher.py

import logging
import time
from typing import Optional

from chatflow.config.settings import settings
from chatflow.models.execution import ExecutionContext, ExecutionStatus, NodeExecutionResult, StepStatus
from chatflow.services.store import ExecutionStore
from chatflow.workflows.compiler import ExecutableFlow, ExecutableNode
from chatflow.workflows.context_manager import ExecutionContextManager
from chatflow.workflows.errors import GraphConfigurationError, LoopDetected
from chatflow.workflows.handlers.base import StepContext
from chatflow.workflows.handlers.registry import HandlerRegistry
from chatflow.workflows.recovery import RecoveryManager
from chatflow.workflows.telemetry import PerformanceMonitor
from chatflow.workflows.variables import VariableAccessor

logger = logging.getLogger(__name__)


class _StepFailure(Exception):
    """Carries a failed step, with the node it failed on, out of the loop."""

    def __init__(self, exc: BaseException, node: Optional[ExecutableNode], node_id: Optional[str]):
        super().__init__(str(exc))
        self.exc = exc
        self.node = node
        self.node_id = node_id


class NodeDispatcher:
    """
    Walks a flow from a node until the execution waits or finishes.

    The loop is re-entrant: resuming after a wait is just another call to
    execute_node with the persisted context. Nothing survives between calls
    except what is written to the store.
    """

    def __init__(
        self,
        store: ExecutionStore,
        registry: HandlerRegistry,
        context_manager: ExecutionContextManager,
        recovery: RecoveryManager,
        monitor: PerformanceMonitor,
        transport,
        max_steps: Optional[int] = None,
    ):
        self.store = store
        self.registry = registry
        self.context_manager = context_manager
        self.recovery = recovery
        self.monitor = monitor
        self.transport = transport
        self.max_steps = max_steps or settings.max_steps

    def step_cap(self, flow: ExecutableFlow) -> int:
        return flow.flow.settings.max_steps or self.max_steps

    async def _still_running(self, context: ExecutionContext) -> bool:
        stored = await self.store.get_context(context.id)
        if stored is None or stored.status != ExecutionStatus.RUNNING:
            logger.info(f"Context {context.id} is no longer running, stopping dispatch")
            if stored is not None:
                context.status = stored.status
            return False
        return True

    async def _finish(self, context: ExecutionContext, status: ExecutionStatus, error: Optional[dict] = None) -> None:
        if await self.context_manager.archive(context, status, error):
            self.monitor.execution_finished(context, status)

    async def recover(
        self,
        context: ExecutionContext,
        exc: BaseException,
        node: Optional[ExecutableNode] = None,
        node_id: Optional[str] = None,
    ) -> ExecutionStatus:
        """
        Hands a failure of a running context to Recovery and keeps the
        execution counters in step with the outcome.

        If Recovery cannot persist its decision either (the store is down),
        the subject still gets the final message with restart controls and
        the error propagates to the caller.
        """
        try:
            status = await self.recovery.handle_failure(context, exc, node=node, node_id=node_id)
        except Exception as e:
            logger.error(f"Recovery of context {context.id} failed: {e}", exc_info=True)
            await self.recovery.notify_final(context)
            raise
        if status == ExecutionStatus.FAILED:
            self.monitor.execution_finished(context, status)
        elif status == ExecutionStatus.WAITING:
            self.monitor.execution_suspended()
        return status

    async def execute_node(
        self,
        context: ExecutionContext,
        flow: ExecutableFlow,
        variables: VariableAccessor,
        node_id: Optional[str],
    ) -> ExecutionContext:
        """
        Runs steps starting at node_id. Returns the context in its resulting state.

        Store failures between steps are step failures too: they go through
        Recovery like a failing handler would.
        """
        try:
            return await self._run(context, flow, variables, node_id)
        except _StepFailure as failure:
            await self.recover(context, failure.exc, node=failure.node, node_id=failure.node_id)
        except Exception as exc:
            await self.recover(context, exc, node_id=context.current_node_id or node_id)
        return context

    async def _run(
        self,
        context: ExecutionContext,
        flow: ExecutableFlow,
        variables: VariableAccessor,
        node_id: Optional[str],
    ) -> ExecutionContext:
        current = node_id
        cap = self.step_cap(flow)

        while True:
            if not await self._still_running(context):
                return context

            if current is None:
                await self._finish(context, ExecutionStatus.COMPLETED)
                return context

            node = flow.node(current)
            started = time.perf_counter()
            try:
                if context.step_count >= cap:
                    raise LoopDetected(
                        f"Context {context.id} exceeded {cap} steps", node_id=current, step_count=context.step_count
                    )
                if node is None:
                    raise GraphConfigurationError(f"Node '{current}' does not exist in flow '{flow.id}'", current)
                handler = self.registry.get(node.type)

                context.step_count += 1
                context.current_node_id = node.id
                step = StepContext(context, flow, variables, self.store, self.transport)
                result: NodeExecutionResult = await self.recovery.run_with_retry(
                    lambda: handler.execute(step, node), node.type.value
                )
            except Exception as exc:
                node_type = node.type.value if node is not None else "unknown"
                await self.monitor.record_step(
                    context, current, node_type, StepStatus.ERROR,
                    (time.perf_counter() - started) * 1000, dict(node.config) if node else None, error=str(exc),
                )
                raise _StepFailure(exc, node, current) from exc

            duration_ms = (time.perf_counter() - started) * 1000

            if result.wait is not None:
                await self.monitor.record_step(
                    context, node.id, node.type.value, StepStatus.WAITING, duration_ms, dict(node.config), result.output
                )
                context.status = ExecutionStatus.WAITING
                context.wait_type = result.wait.wait_type
                context.resume_node_id = result.wait.resume_node_id
                context.wait_deadline = result.wait.deadline
                if await self.store.update_context(context, expected_statuses=(ExecutionStatus.RUNNING,)):
                    self.monitor.execution_suspended()
                    logger.info(f"Context {context.id} waiting for {context.wait_type.value} at {node.id}")
                else:
                    await self._still_running(context)
                return context

            if result.end_flow:
                await self.monitor.record_step(
                    context, node.id, node.type.value, StepStatus.ENDED, duration_ms, dict(node.config), result.output
                )
                if result.success:
                    await self._finish(context, ExecutionStatus.COMPLETED)
                else:
                    error = {"message": result.error or "Flow ended unsuccessfully", "node_id": node.id}
                    await self._finish(context, ExecutionStatus.FAILED, error)
                return context

            await self.monitor.record_step(
                context, node.id, node.type.value, StepStatus.OK, duration_ms, dict(node.config), result.output
            )
            current = result.next_node_id
            context.current_node_id = current
            context.resume_node_id = None
            if not await self.store.update_context(context, expected_statuses=(ExecutionStatus.RUNNING,)):
                await self._still_running(context)
                return context
