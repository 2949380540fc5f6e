# /chatflow/workflows/handlers/registry.py

from typing import Dict, Iterable, List, Optional

import httpx

from chatflow.models.flow import NodeType
from chatflow.services.contact_service import ContactService
from chatflow.workflows.errors import GraphConfigurationError
from chatflow.workflows.handlers.actions import (
    ApiRequestHandler,
    DatabaseQueryHandler,
    GetVariableHandler,
    RequestContactHandler,
    SendNotificationHandler,
    SetVariableHandler,
)
from chatflow.workflows.handlers.base import NodeHandler
from chatflow.workflows.handlers.conditions import ConditionHandler
from chatflow.workflows.handlers.flow_control import (
    DelayHandler,
    EndHandler,
    JumpHandler,
    LoopHandler,
    SwitchHandler,
)
from chatflow.workflows.handlers.media import DeleteMessageHandler, EditMessageHandler, MediaMessageHandler
from chatflow.workflows.handlers.messages import MessageHandler
from chatflow.workflows.handlers.triggers import TriggerHandler
from chatflow.workflows.handlers.waits import WaitHandler


class HandlerRegistry:
    """Node type -> handler, closed over the NodeType enum."""

    def __init__(self, handlers: Iterable[NodeHandler]):
        self._handlers: Dict[NodeType, NodeHandler] = {}
        for handler in handlers:
            for node_type in handler.node_types:
                if node_type in self._handlers:
                    raise ValueError(f"Duplicate handler registered for node type '{node_type.value}'")
                self._handlers[node_type] = handler

    def get(self, node_type: NodeType) -> NodeHandler:
        handler = self._handlers.get(node_type)
        if handler is None:
            raise GraphConfigurationError(f"No handler registered for node type '{node_type}'")
        return handler

    def missing_types(self) -> List[NodeType]:
        return [node_type for node_type in NodeType if node_type not in self._handlers]

    def verify_complete(self) -> "HandlerRegistry":
        missing = self.missing_types()
        if missing:
            raise GraphConfigurationError(
                f"Handler registry is incomplete, missing: {', '.join(t.value for t in missing)}"
            )
        return self


def build_handler_registry(
    contact_service: ContactService,
    http_client: Optional[httpx.AsyncClient] = None,
) -> HandlerRegistry:
    """The full registry of built-in handlers, checked for completeness."""
    return HandlerRegistry([
        TriggerHandler(),
        MessageHandler(),
        MediaMessageHandler(),
        EditMessageHandler(),
        DeleteMessageHandler(),
        ConditionHandler(),
        WaitHandler(),
        ApiRequestHandler(http_client),
        DatabaseQueryHandler(contact_service),
        SetVariableHandler(),
        GetVariableHandler(),
        RequestContactHandler(),
        SendNotificationHandler(),
        DelayHandler(),
        JumpHandler(),
        SwitchHandler(),
        LoopHandler(),
        EndHandler(),
    ]).verify_complete()
