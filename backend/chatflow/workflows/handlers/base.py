# /chatflow/workflows/handlers/base.py

from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from chatflow.config.settings import settings
from chatflow.models.execution import ExecutionContext, NodeExecutionResult
from chatflow.models.flow import EdgeLabel, NodeType
from chatflow.services.store import ExecutionStore, effect_key
from chatflow.workflows.compiler import ExecutableFlow, ExecutableNode
from chatflow.workflows.context_manager import well_known_fields
from chatflow.workflows.templates import lookup, render, resolve_value
from chatflow.workflows.variables import VariableAccessor

# Session variable holding the id of the last message sent to the subject
LAST_MESSAGE_ID = "last_message_id"


class StepContext:
    """Everything a handler may touch while running one node of one execution."""

    def __init__(self, context: ExecutionContext, flow: ExecutableFlow, variables: VariableAccessor,
                 store: ExecutionStore, transport):
        self.context = context
        self.flow = flow
        self.variables = variables
        self.store = store
        self.transport = transport

    # ---------------- Templates ---------------- #

    @property
    def scopes(self) -> Tuple[Dict[str, Any], ...]:
        return (self.variables.session, self.variables.persistent, well_known_fields(self.context))

    def lookup(self, name: str) -> Any:
        return lookup(name, self.scopes)[1]

    def render(self, template: Any) -> str:
        return render(template, self.scopes)

    def resolve(self, value: Any) -> Any:
        return resolve_value(value, self.scopes)

    # ---------------- Routing ---------------- #

    def follow(self, node: ExecutableNode, label: str = EdgeLabel.DEFAULT.value, **output: Any) -> NodeExecutionResult:
        """Goes along the labeled edge; a node with no such edge ends the flow."""
        target = self.flow.edge(node.id, label)
        if target is None:
            return NodeExecutionResult.end(success=True, **output)
        return NodeExecutionResult.goto(target, **output)

    def wait_deadline(self, node: ExecutableNode) -> Optional[datetime]:
        seconds = (
            node.config.get("timeout_seconds")
            or self.flow.flow.settings.wait_timeout_seconds
            or settings.default_wait_timeout_seconds
        )
        if not seconds:
            return None
        return datetime.utcnow() + timedelta(seconds=float(seconds))

    # ---------------- Side effects ---------------- #

    async def send(self, text: str, controls: Optional[Dict[str, Any]] = None, chat_id: Optional[str] = None):
        return await self.transport.send_message(chat_id or self.context.subject.chat_id, text, controls)

    async def remember_message(self, message_id: Any, save_to: Optional[str] = None) -> None:
        """Keeps the id of a message sent to the subject so later nodes can edit or delete it."""
        if not isinstance(message_id, (str, int)):
            return
        await self.variables.set(LAST_MESSAGE_ID, str(message_id))
        if save_to:
            await self.variables.set(save_to, str(message_id))

    async def run_once(self, node: ExecutableNode, effect: Callable[[], Awaitable[Any]]) -> Tuple[bool, Any]:
        """
        Runs a non-idempotent effect at most once per (context, node, step).
        Returns (ran, result); a failed effect releases its key so a retry can run it.
        """
        key = effect_key(self.context.id, node.id, self.context.step_count)
        if not await self.store.claim_effect(key):
            return False, None
        try:
            result = await effect()
        except Exception:
            await self.store.release_effect(key)
            raise
        return True, result


class NodeHandler:
    """Common contract: run one node and say where execution goes next."""

    node_types: Tuple[NodeType, ...] = ()

    async def execute(self, step: StepContext, node: ExecutableNode) -> NodeExecutionResult:
        raise NotImplementedError
