# /chatflow/workflows/handlers/media.py

import logging
from typing import Any, Dict, Optional

from chatflow.models.execution import NodeExecutionResult
from chatflow.models.flow import NodeType
from chatflow.services.transport_service import as_rows, inline_controls
from chatflow.workflows.compiler import ExecutableNode
from chatflow.workflows.handlers.base import LAST_MESSAGE_ID, NodeHandler, StepContext

logger = logging.getLogger(__name__)

MEDIA_KINDS = {
    NodeType.MESSAGE_PHOTO: "photo",
    NodeType.MESSAGE_VIDEO: "video",
    NodeType.MESSAGE_DOCUMENT: "document",
}

# Optional Bot API flags a media node may set, per kind
MEDIA_OPTIONS = {
    "photo": ("has_spoiler", "disable_notification"),
    "video": ("has_spoiler", "supports_streaming", "duration", "width", "height", "disable_notification"),
    "document": ("disable_notification",),
}


def _inline_buttons(step: StepContext, node: ExecutableNode):
    rows = as_rows(node.config.get("buttons"))
    if not rows:
        return None
    return inline_controls([[{**b, "text": step.render(b.get("text", ""))} for b in row] for row in rows])


def _target_message(step: StepContext, node: ExecutableNode) -> Optional[str]:
    """The configured message_id, or the last message sent to the subject."""
    configured = node.config.get("message_id")
    value = step.resolve(configured) if configured else step.variables.get(LAST_MESSAGE_ID)
    if value is None or (isinstance(value, str) and ("{" in value or not value.strip())):
        return None
    return str(value)


class MediaMessageHandler(NodeHandler):
    """Sends a photo, video or document by URL or file id, with an optional caption."""

    node_types = tuple(MEDIA_KINDS)

    async def execute(self, step: StepContext, node: ExecutableNode) -> NodeExecutionResult:
        kind = MEDIA_KINDS[node.type]
        config = node.config
        media = step.render(config[kind])
        caption = step.render(config["caption"]) if config.get("caption") else None
        options: Dict[str, Any] = {k: config[k] for k in MEDIA_OPTIONS[kind] if config.get(k) is not None}

        message_id = await step.transport.send_media(
            step.context.subject.chat_id, kind, media, caption, _inline_buttons(step, node), **options
        )
        await step.remember_message(message_id, config.get("save_message_id_to"))
        return step.follow(node, kind=kind, message_id=message_id)


class EditMessageHandler(NodeHandler):
    """Replaces the text of an earlier message; message_id defaults to the last one sent."""

    node_types = (NodeType.MESSAGE_EDIT,)

    async def execute(self, step: StepContext, node: ExecutableNode) -> NodeExecutionResult:
        message_id = _target_message(step, node)
        text = step.render(node.config["text"])
        if not message_id:
            logger.warning(f"Nothing to edit at {node.id} for context {step.context.id}")
            return step.follow(node, edited=False)
        await step.transport.edit_message(step.context.subject.chat_id, message_id, text, _inline_buttons(step, node))
        return step.follow(node, edited=True, message_id=message_id)


class DeleteMessageHandler(NodeHandler):
    node_types = (NodeType.MESSAGE_DELETE,)

    async def execute(self, step: StepContext, node: ExecutableNode) -> NodeExecutionResult:
        message_id = _target_message(step, node)
        if not message_id:
            logger.warning(f"Nothing to delete at {node.id} for context {step.context.id}")
            return step.follow(node, deleted=False)
        await step.transport.delete_message(step.context.subject.chat_id, message_id)
        return step.follow(node, deleted=True, message_id=message_id)
