# backend/tests/unit/test_compiler.py
from chatflow.models.execution import EventKind
from chatflow.models.flow import FlowNode
from chatflow.workflows.compiler import compile_flow, normalize_command
from chatflow.workflows.validator import validate

from conftest import build_flow


def _support_flow():
    return build_flow(
        "support",
        [
            ("start", "trigger.command", {"command": "/Start"}),
            ("menu_cb", "trigger.callback", {"callback_data": "menu"}),
            ("any_text", "trigger.message", {}),
            ("refund_text", "trigger.message", {"keywords": ["refund"]}),
            ("shared", "trigger.contact"),
            ("greet", "message", {"text": "Hello"}),
            ("end", "flow.end"),
        ],
        [
            ("start", "greet"),
            ("menu_cb", "greet"),
            ("any_text", "greet"),
            ("refund_text", "greet"),
            ("shared", "greet"),
            ("greet", "end"),
            ("greet", "end", "timeout"),
        ],
    )


def test_normalize_command():
    assert normalize_command("/Start@my_bot deep-link") == "start"
    assert normalize_command("  /help ") == "help"
    assert normalize_command("hello") is None
    assert normalize_command("/") is None
    assert normalize_command(None) is None


def test_compile_groups_edges_by_label():
    result = compile_flow(_support_flow())
    assert result["success"] is True
    flow = result["executable_flow"]
    assert flow.edge("greet") == "end"
    assert flow.edge("greet", "timeout") == "end"
    assert flow.edge("greet", "true") is None
    assert flow.node("nope") is None


def test_trigger_lookup_priority():
    flow = compile_flow(_support_flow())["executable_flow"]
    assert flow.find_trigger(EventKind.MESSAGE, "/start") == "start"
    assert flow.find_trigger(EventKind.MESSAGE, "/START@bot") == "start"
    assert flow.find_trigger(EventKind.CALLBACK, "menu") == "menu_cb"
    assert flow.find_trigger(EventKind.CALLBACK, "other") is None
    assert flow.find_trigger(EventKind.CONTACT, {"phone_number": "1"}) == "shared"
    # Specific message triggers are tried before the catch-all
    assert flow.find_trigger(EventKind.MESSAGE, "I want a Refund") == "refund_text"
    assert flow.find_trigger(EventKind.MESSAGE, "hello") == "any_text"


def test_invalid_flow_does_not_compile():
    flow = build_flow("broken", [("m", "message", {"text": "orphan"})])
    result = compile_flow(flow)
    assert result["success"] is False
    assert result["executable_flow"] is None
    assert any(e["code"] == "NO_TRIGGER" for e in result["errors"])


def test_compile_does_not_mutate_source_graph():
    source = _support_flow()
    before = source.model_dump()
    compile_flow(source)
    assert source.model_dump() == before


def test_export_round_trips_through_validation():
    """Exported nodes and connections validate to the same issues as the source."""
    source = _support_flow()
    exported = compile_flow(source)["executable_flow"].export()
    assert validate(exported["nodes"], exported["connections"]) == validate(source.nodes, source.connections)
    assert [FlowNode(**n) for n in exported["nodes"]] == list(source.nodes)


def test_unreachable_nodes_are_not_marked_reachable():
    flow = build_flow(
        "partial",
        [("t", "trigger.message"), ("end", "flow.end"), ("island", "message", {"text": "x"})],
        [("t", "end")],
    )
    executable = compile_flow(flow)["executable_flow"]
    assert "island" not in executable.reachable
    assert {"t", "end"} <= executable.reachable
