# /chatflow/workflows/button_actions.py

"""
Actions attached to inline keyboard buttons.

A button may carry an "actions" list that runs when the button is pressed,
before the execution continues to wherever the button leads:

    {"type": "send_message", "text": "Thanks, {{first_name}}!"}
    {"type": "set_variable", "key": "plan", "value": "pro", "scope": "persistent"}
    {"type": "get_variable", "key": "points", "assign_to": "balance"}
    {"type": "database_query", "query": "get_subject", "params": {}, "assign_to": "me"}
    {"type": "condition", "variable": "balance", "operator": "greater", "value": 100,
     "true_actions": [...], "false_actions": [...]}
    {"type": "delay", "seconds": 2}

Actions run in order and stop at the first failure, which the caller hands
to recovery like any other step failure.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from chatflow.config.settings import settings
from chatflow.models.flow import VariableScope
from chatflow.services.contact_service import ContactService
from chatflow.services.transport_service import as_rows
from chatflow.workflows.compiler import ExecutableNode
from chatflow.workflows.conditions import ConditionError, evaluate_condition, to_number
from chatflow.workflows.errors import GraphConfigurationError
from chatflow.workflows.handlers.actions import run_subject_query
from chatflow.workflows.handlers.base import StepContext
from chatflow.workflows.validator import MAX_ACTION_DEPTH

logger = logging.getLogger(__name__)


def pressed_button(node: Optional[ExecutableNode], callback_data: Any) -> Optional[Dict[str, Any]]:
    """The inline button of node whose callback_data matches, if any."""
    if node is None:
        return None
    data = str(callback_data)
    for row in as_rows(node.config.get("buttons")):
        for button in row:
            if button.get("callback_data") is not None and str(button["callback_data"]) == data:
                return button
    return None


class ButtonActionExecutor:
    def __init__(self, contact_service: ContactService):
        self.contact_service = contact_service
        self._runners = {
            "send_message": self._send_message,
            "set_variable": self._set_variable,
            "get_variable": self._get_variable,
            "database_query": self._database_query,
            "condition": self._condition,
            "delay": self._delay,
        }

    async def execute(self, step: StepContext, actions: List[Dict[str, Any]], node_id: str, depth: int = 0) -> int:
        """Runs actions in order. Returns how many ran, nested branches included."""
        if depth > MAX_ACTION_DEPTH:
            raise GraphConfigurationError(f"Button actions on '{node_id}' nest too deeply", node_id)

        ran = 0
        for action in actions or []:
            kind = action.get("type") if isinstance(action, dict) else None
            runner = self._runners.get(kind)
            if runner is None:
                raise GraphConfigurationError(f"Button on '{node_id}' has unknown action {kind!r}", node_id)
            logger.info(f"Running button action {kind} for context {step.context.id} at {node_id}")
            ran += 1 + (await runner(step, action, node_id, depth) or 0)
        return ran

    async def _send_message(self, step: StepContext, action: Dict[str, Any], node_id: str, depth: int):
        await step.send(step.render(action["text"]))

    async def _set_variable(self, step: StepContext, action: Dict[str, Any], node_id: str, depth: int):
        scope = VariableScope(action.get("scope", VariableScope.SESSION.value))
        await step.variables.set(action["key"], step.resolve(action.get("value")), scope)

    async def _get_variable(self, step: StepContext, action: Dict[str, Any], node_id: str, depth: int):
        await step.variables.set(action["assign_to"], step.variables.get(action["key"]))

    async def _database_query(self, step: StepContext, action: Dict[str, Any], node_id: str, depth: int):
        params = step.resolve(action.get("params") or {})
        result = await run_subject_query(step, self.contact_service, action.get("query"), params, node_id)
        if action.get("assign_to"):
            await step.variables.set(action["assign_to"], result)

    async def _condition(self, step: StepContext, action: Dict[str, Any], node_id: str, depth: int) -> int:
        try:
            outcome = evaluate_condition(
                step.lookup(action["variable"]),
                action["operator"],
                step.resolve(action.get("value")),
                bool(action.get("case_sensitive", False)),
            )
        except (ConditionError, KeyError) as e:
            raise GraphConfigurationError(f"Button condition on '{node_id}' is misconfigured: {e}", node_id) from e
        branch = action.get("true_actions") if outcome else action.get("false_actions")
        return await self.execute(step, branch or [], node_id, depth + 1)

    async def _delay(self, step: StepContext, action: Dict[str, Any], node_id: str, depth: int):
        seconds = to_number(action.get("seconds"))
        seconds = 1.0 if seconds is None else max(seconds, 0.0)
        await asyncio.sleep(min(seconds, settings.max_button_action_delay_seconds))
