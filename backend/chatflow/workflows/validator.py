# /chatflow/workflows/validator.py

"""
Pure validation of flow graphs.

validate() checks the structure of a graph as authored (nodes and
connections, as raw dicts or models) and reports every problem it finds.

All functions are:
- Pure (no side effects)
- Deterministic (same input = same output)
- Total: validate() reports malformed input as errors instead of raising
"""

from collections import deque
from typing import Dict, List, Optional, Any, TypedDict, Iterable

from chatflow.models.flow import NodeType, EdgeLabel, TRIGGER_TYPES
from chatflow.workflows.conditions import OPERATORS, ConditionError, ConditionExpression

# Named store queries an action.database_query node may run
DATABASE_QUERIES = ("find_subject_by_phone", "get_subject", "check_subject_linked")

LOOP_MODES = ("count", "foreach")

MEDIA_FIELDS = {
    NodeType.MESSAGE_PHOTO: "photo",
    NodeType.MESSAGE_VIDEO: "video",
    NodeType.MESSAGE_DOCUMENT: "document",
}

BUTTON_ACTION_TYPES = ("send_message", "set_variable", "get_variable", "database_query", "condition", "delay")

# Nested condition branches deeper than this are rejected
MAX_ACTION_DEPTH = 5


class ValidationIssue(TypedDict):
    """A single validation finding."""
    type: str  # "error" | "warning"
    code: str
    message: str
    node_id: Optional[str]
    connection_id: Optional[str]


class FlowValidationResult(TypedDict):
    """Result of validating a whole graph."""
    is_valid: bool
    errors: List[ValidationIssue]


def _issue(kind: str, code: str, message: str, node_id: Optional[str] = None,
           connection_id: Optional[str] = None) -> ValidationIssue:
    return {
        "type": kind,
        "code": code,
        "message": message,
        "node_id": node_id,
        "connection_id": connection_id,
    }


def _error(code: str, message: str, **kwargs) -> ValidationIssue:
    return _issue("error", code, message, **kwargs)


def _warning(code: str, message: str, **kwargs) -> ValidationIssue:
    return _issue("warning", code, message, **kwargs)


def _as_dict(item: Any) -> Optional[Dict[str, Any]]:
    if isinstance(item, dict):
        return item
    if hasattr(item, "model_dump"):
        return item.model_dump(mode="json")
    return None


def _is_known(value: Any, ids: Dict[str, Any]) -> bool:
    return isinstance(value, str) and value in ids


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _buttons(config: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Flattens a keyboard definition given either as rows or as a flat list."""
    flat = []
    buttons = config.get("buttons")
    if not isinstance(buttons, list):
        return flat
    for entry in buttons:
        if isinstance(entry, list):
            flat.extend(b for b in entry if isinstance(b, dict))
        elif isinstance(entry, dict):
            flat.append(entry)
    return flat


def action_errors(actions: Any, depth: int = 0) -> List[str]:
    """Problems with an actions list as authored; empty when it is usable."""
    if not isinstance(actions, list):
        return ["actions must be a list"]
    if depth > MAX_ACTION_DEPTH:
        return [f"conditions nest deeper than {MAX_ACTION_DEPTH} levels"]

    errors = []
    for index, action in enumerate(actions):
        if not isinstance(action, dict):
            errors.append(f"action {index} is not an object")
            continue
        kind = action.get("type")
        if kind not in BUTTON_ACTION_TYPES:
            errors.append(f"action {index} has unknown type {kind!r}")
        elif kind == "send_message" and not action.get("text"):
            errors.append(f"action {index} (send_message) requires text")
        elif kind == "set_variable" and not action.get("key"):
            errors.append(f"action {index} (set_variable) requires key")
        elif kind == "get_variable" and not (action.get("key") and action.get("assign_to")):
            errors.append(f"action {index} (get_variable) requires key and assign_to")
        elif kind == "database_query" and not action.get("query"):
            errors.append(f"action {index} (database_query) requires query")
        elif kind == "condition":
            if not (action.get("variable") and action.get("operator")):
                errors.append(f"action {index} (condition) requires variable and operator")
            for branch in ("true_actions", "false_actions"):
                if action.get(branch) is not None:
                    errors.extend(action_errors(action[branch], depth + 1))
    return errors


def _check_node_config(node_type: NodeType, config: Dict[str, Any], node_id: str,
                       node_ids: Iterable[str]) -> List[ValidationIssue]:
    """Required-field checks for a single node."""
    issues: List[ValidationIssue] = []

    def require(field: str, what: str):
        if _is_blank(config.get(field)):
            issues.append(_error("MISSING_FIELD", f"Node '{node_id}' ({node_type.value}) requires {what}", node_id=node_id))

    if node_type == NodeType.TRIGGER_COMMAND:
        require("command", "a command")
    elif node_type == NodeType.TRIGGER_CALLBACK:
        require("callback_data", "callback_data")
    elif node_type in (NodeType.MESSAGE, NodeType.MESSAGE_INLINE_KEYBOARD, NodeType.MESSAGE_REPLY_KEYBOARD):
        require("text", "non-empty message text")
        if node_type != NodeType.MESSAGE and not _buttons(config):
            issues.append(_error("MISSING_FIELD", f"Keyboard node '{node_id}' requires at least one button", node_id=node_id))
        if node_type == NodeType.MESSAGE_INLINE_KEYBOARD:
            for button in _buttons(config):
                if _is_blank(button.get("text")) or (_is_blank(button.get("callback_data")) and _is_blank(button.get("url"))):
                    issues.append(_error("INVALID_BUTTON", f"Inline button on '{node_id}' needs text and callback_data or url", node_id=node_id))
                if button.get("actions") is not None:
                    for problem in action_errors(button["actions"]):
                        issues.append(_error("INVALID_BUTTON_ACTION", f"Button '{button.get('text')}' on '{node_id}': {problem}", node_id=node_id))
    elif node_type in MEDIA_FIELDS:
        require(MEDIA_FIELDS[node_type], f"a {MEDIA_FIELDS[node_type]} url or file id")
    elif node_type == NodeType.MESSAGE_EDIT:
        require("text", "the new message text")
    elif node_type == NodeType.CONDITION:
        expression = config.get("expression")
        if isinstance(expression, str) and expression.strip():
            try:
                ConditionExpression(expression)
            except ConditionError as e:
                issues.append(_error("INVALID_EXPRESSION", f"Condition '{node_id}': {e}", node_id=node_id))
        else:
            if _is_blank(config.get("variable")) or _is_blank(config.get("operator")):
                issues.append(_error("MISSING_FIELD", f"Condition '{node_id}' requires variable, operator and value, or an expression", node_id=node_id))
            elif config["operator"] not in OPERATORS:
                issues.append(_error("UNKNOWN_OPERATOR", f"Condition '{node_id}' uses unknown operator '{config['operator']}'", node_id=node_id))
            elif config["operator"] not in ("is_empty", "is_not_empty") and "value" not in config:
                issues.append(_error("MISSING_FIELD", f"Condition '{node_id}' requires a value to compare against", node_id=node_id))
    elif node_type == NodeType.ACTION_API_REQUEST:
        require("url", "a url")
    elif node_type == NodeType.ACTION_DATABASE_QUERY:
        if config.get("query") not in DATABASE_QUERIES:
            issues.append(_error("UNKNOWN_QUERY", f"Node '{node_id}' must use one of {list(DATABASE_QUERIES)}", node_id=node_id))
    elif node_type in (NodeType.ACTION_SET_VARIABLE, NodeType.ACTION_GET_VARIABLE):
        require("variable", "a variable name")
    elif node_type == NodeType.ACTION_SEND_NOTIFICATION:
        require("text", "notification text")
    elif node_type == NodeType.FLOW_DELAY:
        seconds = config.get("delay_seconds")
        if _is_blank(config.get("delay_variable")):
            if not isinstance(seconds, (int, float)) or isinstance(seconds, bool) or seconds < 0:
                issues.append(_error("INVALID_DELAY", f"Delay '{node_id}' requires a non-negative delay_seconds or a delay_variable", node_id=node_id))
    elif node_type == NodeType.FLOW_JUMP:
        target = config.get("target")
        if _is_blank(target):
            require("target", "a target node")
        elif not isinstance(target, str) or target not in node_ids:
            issues.append(_error("INVALID_JUMP", f"Jump '{node_id}' targets unknown node '{target}'", node_id=node_id))
    elif node_type == NodeType.FLOW_SWITCH:
        require("variable", "a variable")
        if not config.get("cases"):
            issues.append(_error("MISSING_FIELD", f"Switch '{node_id}' requires at least one case", node_id=node_id))
    elif node_type == NodeType.FLOW_LOOP:
        mode = config.get("mode", "count")
        if mode not in LOOP_MODES:
            issues.append(_error("INVALID_LOOP", f"Loop '{node_id}' mode must be one of {list(LOOP_MODES)}", node_id=node_id))
        elif mode == "count" and not isinstance(config.get("count"), int):
            issues.append(_error("INVALID_LOOP", f"Loop '{node_id}' requires an integer count", node_id=node_id))
        elif mode == "foreach" and _is_blank(config.get("items_variable")):
            issues.append(_error("INVALID_LOOP", f"Loop '{node_id}' requires items_variable", node_id=node_id))

    return issues


def _successors(node_ids: set, connections: List[Dict[str, Any]], jumps: Dict[str, str]) -> Dict[str, List[str]]:
    graph: Dict[str, List[str]] = {node_id: [] for node_id in node_ids}
    for conn in connections:
        source, target = conn.get("source"), conn.get("target")
        if source in graph and target in node_ids:
            graph[source].append(target)
    for source, target in jumps.items():
        if target in node_ids:
            graph[source].append(target)
    return graph


def _reachable(graph: Dict[str, List[str]], roots: Iterable[str]) -> set:
    seen = set(roots)
    queue = deque(seen)
    while queue:
        current = queue.popleft()
        for nxt in graph.get(current, []):
            if nxt not in seen:
                seen.add(nxt)
                queue.append(nxt)
    return seen


def _find_cycle_node(graph: Dict[str, List[str]]) -> Optional[str]:
    """Returns a node that lies on a cycle, or None. Iterative DFS with colors."""
    WHITE, GREY, BLACK = 0, 1, 2
    color = {node: WHITE for node in graph}
    for root in graph:
        if color[root] != WHITE:
            continue
        stack = [(root, iter(graph[root]))]
        color[root] = GREY
        while stack:
            node, children = stack[-1]
            child = next(children, None)
            if child is None:
                color[node] = BLACK
                stack.pop()
            elif color[child] == GREY:
                return child
            elif color[child] == WHITE:
                color[child] = GREY
                stack.append((child, iter(graph[child])))
    return None


def _collect_issues(nodes: Any, connections: Any, issues: List[ValidationIssue]) -> None:
    raw_nodes = list(nodes) if isinstance(nodes, (list, tuple)) else []
    raw_connections = list(connections) if isinstance(connections, (list, tuple)) else []
    if nodes is not None and not isinstance(nodes, (list, tuple)):
        issues.append(_error("MALFORMED_GRAPH", "Nodes must be a list"))
    if connections is not None and not isinstance(connections, (list, tuple)):
        issues.append(_error("MALFORMED_GRAPH", "Connections must be a list"))

    if not raw_nodes:
        issues.append(_error("EMPTY_FLOW", "Flow has no nodes"))
        return

    node_map: Dict[str, Dict[str, Any]] = {}
    node_types: Dict[str, NodeType] = {}
    for index, raw in enumerate(raw_nodes):
        node = _as_dict(raw)
        if node is None:
            issues.append(_error("INVALID_NODE", f"Node at position {index} is not an object"))
            continue
        node_id = node.get("id")
        if _is_blank(node_id) or not isinstance(node_id, str):
            issues.append(_error("MISSING_NODE_ID", f"Node at position {index} has no id"))
            continue
        if node_id in node_map:
            issues.append(_error("DUPLICATE_NODE_ID", f"Node id '{node_id}' is used more than once", node_id=node_id))
            continue
        node_map[node_id] = node
        try:
            node_types[node_id] = NodeType(node.get("type"))
        except ValueError:
            issues.append(_error("UNKNOWN_NODE_TYPE", f"Node '{node_id}' has unknown type '{node.get('type')}'", node_id=node_id))

    triggers = [nid for nid, t in node_types.items() if t in TRIGGER_TYPES]
    if not triggers:
        issues.append(_error("NO_TRIGGER", "Flow must contain at least one trigger node"))
    if NodeType.FLOW_END not in node_types.values():
        issues.append(_warning("NO_END_NODE", "Flow has no end node; executions will end implicitly where edges run out"))

    jumps: Dict[str, str] = {}
    for node_id, node_type in node_types.items():
        config = node_map[node_id].get("config") or {}
        if not isinstance(config, dict):
            issues.append(_error("INVALID_CONFIG", f"Node '{node_id}' config must be an object", node_id=node_id))
            continue
        issues.extend(_check_node_config(node_type, config, node_id, node_map.keys()))
        if node_type == NodeType.FLOW_JUMP and isinstance(config.get("target"), str):
            jumps[node_id] = config["target"]

    valid_connections: List[Dict[str, Any]] = []
    for index, raw in enumerate(raw_connections):
        conn = _as_dict(raw)
        if conn is None:
            issues.append(_error("INVALID_CONNECTION", f"Connection at position {index} is not an object"))
            continue
        conn_id = conn.get("id") or f"#{index}"
        problems = []
        if not _is_known(conn.get("source"), node_map):
            problems.append(f"source '{conn.get('source')}'")
        if not _is_known(conn.get("target"), node_map):
            problems.append(f"target '{conn.get('target')}'")
        if problems:
            issues.append(_error(
                "INVALID_CONNECTION",
                f"Connection '{conn_id}' references missing {' and '.join(problems)}",
                connection_id=conn_id,
            ))
            continue
        valid_connections.append(conn)

    labels_by_source: Dict[str, set] = {}
    for conn in valid_connections:
        labels_by_source.setdefault(conn["source"], set()).add(str(conn.get("label") or EdgeLabel.DEFAULT.value))
    for node_id, node_type in node_types.items():
        if node_type == NodeType.CONDITION:
            missing = {EdgeLabel.TRUE.value, EdgeLabel.FALSE.value} - labels_by_source.get(node_id, set())
            if missing:
                issues.append(_warning("MISSING_BRANCH", f"Condition '{node_id}' has no {', '.join(sorted(missing))} branch", node_id=node_id))

    graph = _successors(set(node_map), valid_connections, jumps)
    if triggers:
        reachable = _reachable(graph, triggers)
        for node_id in node_map:
            if node_id not in reachable:
                issues.append(_warning("UNREACHABLE_NODE", f"Node '{node_id}' is not reachable from any trigger", node_id=node_id))

    cycle_node = _find_cycle_node(graph)
    if cycle_node is not None:
        issues.append(_warning(
            "CYCLE_DETECTED",
            f"Flow contains a cycle through node '{cycle_node}'; it is bounded only by the step limit",
            node_id=cycle_node,
        ))


def validate(nodes: Any, connections: Any) -> FlowValidationResult:
    """
    Validate a flow graph as authored. Never raises.

    Errors make the graph invalid; warnings are reported but do not.

    Args:
        nodes: List of nodes (dicts or FlowNode models)
        connections: List of connections (dicts or FlowConnection models)

    Returns:
        FlowValidationResult with is_valid=True when no error-type issue was found
    """
    issues: List[ValidationIssue] = []
    try:
        _collect_issues(nodes, connections, issues)
    except Exception as e:
        issues.append(_error("MALFORMED_GRAPH", f"Flow could not be validated: {type(e).__name__}: {e}"))

    return {
        "is_valid": not any(issue["type"] == "error" for issue in issues),
        "errors": issues,
    }
