# /chatflow/workflows/handlers/messages.py

from typing import Any, Dict, List, Optional

from chatflow.models.execution import NodeExecutionResult, WaitType
from chatflow.models.flow import NodeType
from chatflow.services.transport_service import as_rows, inline_controls, reply_controls
from chatflow.workflows.compiler import ExecutableNode
from chatflow.workflows.handlers.base import NodeHandler, StepContext


def wait_type_for(node: ExecutableNode) -> Optional[WaitType]:
    """
    Decides whether a message node suspends after sending, and for what.

    - an explicit wait_for_input flag waits for free text
    - a reply keyboard with a contact button waits for a contact, otherwise for text
    - an inline keyboard with callback buttons waits for a callback
    """
    config = node.config
    if config.get("wait_for_input"):
        return WaitType.INPUT

    buttons = [button for row in as_rows(config.get("buttons")) for button in row]
    if node.type == NodeType.MESSAGE_REPLY_KEYBOARD:
        if any(button.get("request_contact") for button in buttons):
            return WaitType.CONTACT
        return WaitType.INPUT
    if node.type == NodeType.MESSAGE_INLINE_KEYBOARD:
        if any(button.get("callback_data") or button.get("goto_node") for button in buttons):
            return WaitType.CALLBACK
    return None


class MessageHandler(NodeHandler):
    node_types = (
        NodeType.MESSAGE,
        NodeType.MESSAGE_INLINE_KEYBOARD,
        NodeType.MESSAGE_REPLY_KEYBOARD,
    )

    def _controls(self, step: StepContext, node: ExecutableNode) -> Optional[Dict[str, Any]]:
        rows = as_rows(node.config.get("buttons"))
        if not rows:
            return None
        rendered: List[List[Dict[str, Any]]] = [
            [{**button, "text": step.render(button.get("text", ""))} for button in row]
            for row in rows
        ]
        if node.type == NodeType.MESSAGE_INLINE_KEYBOARD:
            return inline_controls(rendered)
        if node.type == NodeType.MESSAGE_REPLY_KEYBOARD:
            return reply_controls(rendered, one_time=node.config.get("one_time", True))
        return None

    async def execute(self, step: StepContext, node: ExecutableNode) -> NodeExecutionResult:
        text = step.render(node.config.get("text", ""))
        message_id = await step.send(text, self._controls(step, node))
        await step.remember_message(message_id, node.config.get("save_message_id_to"))

        wait_type = wait_type_for(node)
        if wait_type is not None:
            return NodeExecutionResult.wait_for(wait_type, deadline=step.wait_deadline(node), text=text)
        return step.follow(node, text=text)
