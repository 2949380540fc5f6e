# /chatflow/workflows/handlers/waits.py

from chatflow.models.execution import NodeExecutionResult, WaitType
from chatflow.models.flow import NodeType
from chatflow.workflows.compiler import ExecutableNode
from chatflow.workflows.handlers.base import NodeHandler, StepContext

_WAIT_TYPES = {
    NodeType.WAIT_INPUT: WaitType.INPUT,
    NodeType.WAIT_CALLBACK: WaitType.CALLBACK,
    NodeType.WAIT_CONTACT: WaitType.CONTACT,
}


class WaitHandler(NodeHandler):
    """Suspends immediately. The matching inbound event is consumed by the coordinator, not here."""

    node_types = tuple(_WAIT_TYPES)

    async def execute(self, step: StepContext, node: ExecutableNode) -> NodeExecutionResult:
        return NodeExecutionResult.wait_for(_WAIT_TYPES[node.type], deadline=step.wait_deadline(node))
