# /chatflow/workflows/handlers/actions.py

import logging
from typing import Any, Dict, Optional

import httpx

from chatflow.config.settings import settings
from chatflow.config.strings import REQUEST_CONTACT_PROMPT, SHARE_CONTACT_BUTTON
from chatflow.models.execution import NodeExecutionResult, WaitType
from chatflow.models.flow import EdgeLabel, NodeType, VariableScope
from chatflow.services.contact_service import ContactService
from chatflow.services.transport_service import reply_controls
from chatflow.workflows.compiler import ExecutableNode
from chatflow.workflows.conditions import to_number
from chatflow.workflows.errors import (
    AuthorizationError,
    GraphConfigurationError,
    HandlerRuntimeError,
    InputValidationError,
    ResourceUnavailable,
)
from chatflow.workflows.handlers.base import NodeHandler, StepContext
from chatflow.workflows.templates import _MISSING, resolve_path

logger = logging.getLogger(__name__)

# External failures are raised, never swallowed: the dispatcher routes them
# through recovery, which decides between retry, re-prompt and fallback.


def _scope(node: ExecutableNode) -> VariableScope:
    try:
        return VariableScope(node.config.get("scope", VariableScope.SESSION.value))
    except ValueError as e:
        raise GraphConfigurationError(f"Node '{node.id}' has an unknown variable scope", node.id) from e


def _route(step: StepContext, node: ExecutableNode, outcome: bool, **output: Any) -> NodeExecutionResult:
    """Boolean actions take their true/false branch when the author drew one."""
    label = EdgeLabel.TRUE.value if outcome else EdgeLabel.FALSE.value
    if step.flow.edge(node.id, label) is not None:
        return step.follow(node, label, **output)
    return step.follow(node, **output)


# ==================== HTTP ====================

class ApiRequestHandler(NodeHandler):
    """
    Calls an external HTTP API and maps the response into variables.

    Config: url, method (GET), headers, params, body, timeout_seconds,
    assign_to (whole decoded body) and response_mapping ({variable: "path.in.body"}).
    Non-GET requests are effects and run at most once per step.
    """

    node_types = (NodeType.ACTION_API_REQUEST,)

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self.http_client = http_client or httpx.AsyncClient(timeout=settings.api_request_timeout_seconds)

    async def _request(self, node: ExecutableNode, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self.http_client.request(method, url, **kwargs)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise ResourceUnavailable(f"API request to {url} failed: {e}", node.id) from e

        status = response.status_code
        if status in (401, 403):
            raise AuthorizationError(f"API request to {url} was refused ({status})", node.id)
        if status in (400, 422):
            raise InputValidationError(f"API request to {url} was rejected as invalid ({status})", node.id)
        if status == 429 or status >= 500:
            raise ResourceUnavailable(f"API at {url} is unavailable ({status})", node.id)
        if status >= 400:
            raise HandlerRuntimeError(f"API request to {url} failed ({status})", node.id)
        return response

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text

    async def execute(self, step: StepContext, node: ExecutableNode) -> NodeExecutionResult:
        config = node.config
        method = str(config.get("method", "GET")).upper()
        url = step.render(config["url"])
        kwargs: Dict[str, Any] = {
            "headers": step.resolve(config.get("headers") or {}),
            "params": step.resolve(config.get("params") or {}),
        }
        if config.get("timeout_seconds"):
            kwargs["timeout"] = float(config["timeout_seconds"])
        body = config.get("body")
        if body is not None and method != "GET":
            kwargs["json"] = step.resolve(body)

        if method == "GET":
            response = await self._request(node, method, url, **kwargs)
        else:
            ran, response = await step.run_once(node, lambda: self._request(node, method, url, **kwargs))
            if not ran:
                logger.info(f"Skipping repeated {method} {url} for context {step.context.id}")
                return step.follow(node, skipped=True)

        data = self._decode(response)
        if config.get("assign_to"):
            await step.variables.set(config["assign_to"], data)
        for variable, path in (config.get("response_mapping") or {}).items():
            value = resolve_path(data, str(path).split(".")) if path else data
            await step.variables.set(variable, None if value is _MISSING else value)

        return step.follow(node, status_code=response.status_code)


# ==================== Store queries ====================

async def run_subject_query(step: StepContext, contact_service: ContactService, query: Any,
                            params: Dict[str, Any], node_id: Optional[str] = None) -> Any:
    """
    Runs one of the whitelisted subject queries.

    - find_subject_by_phone: params.phone (defaults to the shared contact phone)
    - get_subject: params.subject_id (defaults to linked_subject_id)
    - check_subject_linked: whether the subject has a linked, existing record
    """
    project_id = step.context.project_id

    if query == "find_subject_by_phone":
        phone = params.get("phone") or step.variables.get("contact_phone")
        record = await contact_service.match_subject(project_id, phone)
    elif query == "get_subject":
        subject_id = params.get("subject_id") or step.variables.get("linked_subject_id")
        record = await step.store.get_subject_record(subject_id) if subject_id else None
    elif query == "check_subject_linked":
        subject_id = step.variables.get("linked_subject_id", VariableScope.PERSISTENT)
        record = await step.store.get_subject_record(subject_id) if subject_id else None
        return record is not None
    else:
        raise GraphConfigurationError(f"Unknown database query '{query}'", node_id)
    return record.model_dump(mode="json") if record else None


class DatabaseQueryHandler(NodeHandler):
    node_types = (NodeType.ACTION_DATABASE_QUERY,)

    def __init__(self, contact_service: ContactService):
        self.contact_service = contact_service

    async def execute(self, step: StepContext, node: ExecutableNode) -> NodeExecutionResult:
        params = step.resolve(node.config.get("params") or {})
        result = await run_subject_query(step, self.contact_service, node.config.get("query"), params, node.id)
        await step.variables.set(node.config.get("assign_to") or "query_result", result)
        found = bool(result)
        return _route(step, node, found, found=found)


# ==================== Variables ====================

class SetVariableHandler(NodeHandler):
    node_types = (NodeType.ACTION_SET_VARIABLE,)

    async def execute(self, step: StepContext, node: ExecutableNode) -> NodeExecutionResult:
        config = node.config
        name = config["variable"]
        scope = _scope(node)
        value = step.resolve(config.get("value"))

        if config.get("operation") == "increment":
            current = to_number(step.variables.get(name, scope)) or 0
            delta = to_number(value)
            result = current + (1 if delta is None else delta)
            value = int(result) if float(result).is_integer() else result

        await step.variables.set(name, value, scope)
        return step.follow(node, variable=name, value=value)


class GetVariableHandler(NodeHandler):
    """Copies a variable (usually persistent) into a session variable."""

    node_types = (NodeType.ACTION_GET_VARIABLE,)

    async def execute(self, step: StepContext, node: ExecutableNode) -> NodeExecutionResult:
        config = node.config
        name = config["variable"]
        scope = _scope(node) if config.get("scope") else None
        value = step.variables.get(name, scope, step.resolve(config.get("default")))
        await step.variables.set(config.get("assign_to") or name, value)
        return _route(step, node, value not in (None, ""), value=value)


# ==================== Contact & notifications ====================

class RequestContactHandler(NodeHandler):
    node_types = (NodeType.ACTION_REQUEST_CONTACT,)

    async def execute(self, step: StepContext, node: ExecutableNode) -> NodeExecutionResult:
        text = step.render(node.config.get("text") or REQUEST_CONTACT_PROMPT)
        button = step.render(node.config.get("button_text") or SHARE_CONTACT_BUTTON)
        await step.send(text, reply_controls([[{"text": button, "request_contact": True}]]))
        return NodeExecutionResult.wait_for(WaitType.CONTACT, deadline=step.wait_deadline(node))


class SendNotificationHandler(NodeHandler):
    """Sends a message to a configured chat (an operator, a group), at most once per step."""

    node_types = (NodeType.ACTION_SEND_NOTIFICATION,)

    async def execute(self, step: StepContext, node: ExecutableNode) -> NodeExecutionResult:
        chat_id = step.render(node.config.get("chat_id")) or step.context.subject.chat_id
        text = step.render(node.config["text"])
        ran, _ = await step.run_once(node, lambda: step.send(text, chat_id=chat_id))
        return step.follow(node, chat_id=chat_id, sent=ran)
