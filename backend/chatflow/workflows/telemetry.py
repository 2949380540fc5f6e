# /chatflow/workflows/telemetry.py

import logging
from typing import Any, Dict, Optional

from chatflow.models.execution import ExecutionContext, ExecutionStatus, StepStatus, StepTrace
from chatflow.services.store import ExecutionStore
from chatflow.utils.metrics import (
    executions_finished_counter,
    executions_started_counter,
    node_duration_histogram,
    node_executions_counter,
    waiting_executions_gauge,
)

logger = logging.getLogger(__name__)


def _snapshot(data: Optional[Dict[str, Any]], limit: int = 500) -> Dict[str, Any]:
    """Keeps traces small: long strings are truncated, nested values are stringified."""
    snapshot = {}
    for key, value in (data or {}).items():
        if isinstance(value, (int, float, bool)) or value is None:
            snapshot[key] = value
        else:
            text = value if isinstance(value, str) else repr(value)
            snapshot[key] = text[:limit]
    return snapshot


class PerformanceMonitor:
    """
    Step-level traces and execution metrics.

    Telemetry must never break an execution: store failures while writing
    traces are logged and dropped.
    """

    def __init__(self, store: ExecutionStore):
        self.store = store

    async def record_step(
        self,
        context: ExecutionContext,
        node_id: str,
        node_type: str,
        status: StepStatus,
        duration_ms: float,
        input: Optional[Dict[str, Any]] = None,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        node_executions_counter.labels(node_type=node_type, status=status.value).inc()
        node_duration_histogram.labels(node_type=node_type).observe(duration_ms / 1000)

        trace = StepTrace(
            context_id=context.id,
            step=context.step_count,
            node_id=node_id,
            node_type=node_type,
            status=status,
            duration_ms=round(duration_ms, 3),
            input=_snapshot(input),
            output=_snapshot(output),
            error=error,
        )
        try:
            await self.store.append_trace(trace)
        except Exception as e:
            logger.warning(f"Could not store trace for context {context.id} step {trace.step}: {e}")

    def execution_started(self, context: ExecutionContext, origin: str) -> None:
        executions_started_counter.labels(flow_id=context.flow_id, origin=origin).inc()

    def execution_finished(self, context: ExecutionContext, status: ExecutionStatus) -> None:
        executions_finished_counter.labels(flow_id=context.flow_id, status=status.value).inc()
        logger.info(f"Context {context.id} finished as {status.value} after {context.step_count} steps")

    def execution_suspended(self) -> None:
        waiting_executions_gauge.inc()

    def execution_resumed(self) -> None:
        waiting_executions_gauge.dec()
