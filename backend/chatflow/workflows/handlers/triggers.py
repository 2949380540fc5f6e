# /chatflow/workflows/handlers/triggers.py

from chatflow.models.execution import NodeExecutionResult
from chatflow.models.flow import NodeType
from chatflow.workflows.compiler import ExecutableNode, normalize_command
from chatflow.workflows.handlers.base import NodeHandler, StepContext


class TriggerHandler(NodeHandler):
    """Entry points do no work of their own; they hand off along their single edge."""

    node_types = (
        NodeType.TRIGGER_COMMAND,
        NodeType.TRIGGER_MESSAGE,
        NodeType.TRIGGER_CALLBACK,
        NodeType.TRIGGER_CONTACT,
    )

    async def execute(self, step: StepContext, node: ExecutableNode) -> NodeExecutionResult:
        if node.type == NodeType.TRIGGER_COMMAND:
            # "/start ref42" exposes "ref42" as command_args
            text = step.variables.get("last_input")
            if normalize_command(text) is not None:
                parts = text.strip().split(maxsplit=1)
                await step.variables.set("command_args", parts[1] if len(parts) > 1 else "")
        return step.follow(node)
