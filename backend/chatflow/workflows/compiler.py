# /chatflow/workflows/compiler.py

"""
Compiles a validated FlowGraph into an ExecutableFlow.

The executable form is a node-id keyed map with outgoing edges grouped by
label, plus trigger lookup tables for starting new executions. Compilation is
pure: no I/O, and the source graph is never mutated.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, TypedDict

from chatflow.models.execution import EventKind
from chatflow.models.flow import EdgeLabel, FlowGraph, NodeType, TRIGGER_TYPES
from chatflow.workflows.validator import ValidationIssue, validate


@dataclass(frozen=True)
class ExecutableNode:
    id: str
    type: NodeType
    label: Optional[str]
    config: Mapping[str, Any]
    edges: Mapping[str, str] = field(default_factory=dict)


class CompileResult(TypedDict):
    success: bool
    executable_flow: Optional["ExecutableFlow"]
    errors: List[ValidationIssue]
    warnings: List[ValidationIssue]


def normalize_command(text: Any) -> Optional[str]:
    """'/Start@my_bot payload' -> 'start'. Returns None for non-commands."""
    if not isinstance(text, str):
        return None
    stripped = text.strip()
    if not stripped.startswith("/"):
        return None
    command = stripped[1:].split(maxsplit=1)[0] if len(stripped) > 1 else ""
    return command.split("@", 1)[0].lower() or None


class ExecutableFlow:
    """Read-only, lookup-friendly form of one flow version."""

    def __init__(self, flow: FlowGraph, nodes: Dict[str, ExecutableNode], reachable: frozenset):
        self.flow = flow
        self.nodes = nodes
        self.reachable = reachable
        self.entry_points = tuple(n.id for n in nodes.values() if n.type in TRIGGER_TYPES)

        self.command_triggers: Dict[str, str] = {}
        self.callback_triggers: Dict[str, str] = {}
        self.contact_triggers: List[str] = []
        self.message_triggers: List[str] = []
        for node_id in self.entry_points:
            node = nodes[node_id]
            if node.type == NodeType.TRIGGER_COMMAND:
                command = str(node.config.get("command", "")).lstrip("/").lower()
                self.command_triggers.setdefault(command, node_id)
            elif node.type == NodeType.TRIGGER_CALLBACK:
                self.callback_triggers.setdefault(str(node.config.get("callback_data")), node_id)
            elif node.type == NodeType.TRIGGER_CONTACT:
                self.contact_triggers.append(node_id)
            elif node.type == NodeType.TRIGGER_MESSAGE:
                self.message_triggers.append(node_id)
        # Specific message triggers win over catch-alls
        self.message_triggers.sort(key=lambda nid: not self._has_message_filter(nodes[nid]))

    @property
    def id(self) -> str:
        return self.flow.id

    @property
    def version(self) -> int:
        return self.flow.version

    @property
    def project_id(self) -> str:
        return self.flow.project_id

    def node(self, node_id: Optional[str]) -> Optional[ExecutableNode]:
        if node_id is None:
            return None
        return self.nodes.get(node_id)

    def edge(self, node_id: str, label: str = EdgeLabel.DEFAULT.value) -> Optional[str]:
        node = self.nodes.get(node_id)
        if node is None:
            return None
        return node.edges.get(label)

    @staticmethod
    def _has_message_filter(node: ExecutableNode) -> bool:
        return bool(node.config.get("pattern") or node.config.get("keywords"))

    @staticmethod
    def _message_matches(node: ExecutableNode, text: str) -> bool:
        pattern = node.config.get("pattern")
        keywords = node.config.get("keywords") or []
        if pattern:
            try:
                if re.search(pattern, text, re.IGNORECASE):
                    return True
            except re.error:
                return False
        if keywords:
            lowered = text.lower()
            return any(str(k).lower() in lowered for k in keywords)
        return not pattern

    def find_trigger(self, kind: EventKind, payload: Any) -> Optional[str]:
        """
        Picks the trigger node a fresh event starts from.

        Priority: contact trigger, callback trigger with matching data,
        command trigger, then message triggers (specific before catch-all).
        """
        if kind == EventKind.CONTACT:
            return self.contact_triggers[0] if self.contact_triggers else None
        if kind == EventKind.CALLBACK:
            return self.callback_triggers.get(str(payload))

        text = payload if isinstance(payload, str) else ""
        command = normalize_command(text)
        if command is not None and command in self.command_triggers:
            return self.command_triggers[command]
        for node_id in self.message_triggers:
            if self._message_matches(self.nodes[node_id], text):
                return node_id
        return None

    def export(self) -> Dict[str, List[Dict[str, Any]]]:
        """Nodes and connections in authoring form, for round-tripping through validate()."""
        return {
            "nodes": [node.model_dump(mode="json") for node in self.flow.nodes],
            "connections": [conn.model_dump(mode="json") for conn in self.flow.connections],
        }


def compile_flow(flow: FlowGraph) -> CompileResult:
    """
    Validate and compile a flow graph.

    Returns:
        CompileResult with executable_flow set when success is True, or the
        blocking errors otherwise. Warnings are returned either way.
    """
    result = validate(flow.nodes, flow.connections)
    errors = [issue for issue in result["errors"] if issue["type"] == "error"]
    warnings = [issue for issue in result["errors"] if issue["type"] == "warning"]
    if errors:
        return {"success": False, "executable_flow": None, "errors": errors, "warnings": warnings}

    edges: Dict[str, Dict[str, str]] = {node.id: {} for node in flow.nodes}
    for conn in flow.connections:
        edges[conn.source].setdefault(conn.edge_label, conn.target)

    nodes = {
        node.id: ExecutableNode(
            id=node.id,
            type=node.type,
            label=node.label,
            config=dict(node.config),
            edges=dict(edges[node.id]),
        )
        for node in flow.nodes
    }

    unreachable = {issue["node_id"] for issue in warnings if issue["code"] == "UNREACHABLE_NODE"}
    reachable = frozenset(node_id for node_id in nodes if node_id not in unreachable)

    return {
        "success": True,
        "executable_flow": ExecutableFlow(flow, nodes, reachable),
        "errors": [],
        "warnings": warnings,
    }
