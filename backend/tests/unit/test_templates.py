# backend/tests/unit/test_templates.py
import pytest

from chatflow.models.execution import ExecutionContext, Subject
from chatflow.models.flow import VariableScope
from chatflow.services.store import InMemoryExecutionStore
from chatflow.workflows.templates import lookup, render, resolve_value
from chatflow.workflows.variables import VariableAccessor, persistent_owner


def test_render_both_placeholder_styles():
    scopes = ({"name": "Alice"}, {"city": "Pune"})
    assert render("Hi {name} from {{ city }}!", scopes) == "Hi Alice from Pune!"


def test_render_dotted_paths_and_list_indexes():
    scopes = ({"contact": {"phone_number": "+15550001"}, "items": ["a", "b"]},)
    assert render("{{contact.phone_number}} / {items.1}", scopes) == "+15550001 / b"


def test_unresolved_placeholders_are_left_in_place():
    assert render("Hello {{nobody}}", ({},)) == "Hello {{nobody}}"


def test_earlier_scope_shadows_later_scope():
    assert lookup("x", ({"x": "session"}, {"x": "persistent"})) == (True, "session")
    assert lookup("y", ({}, {"y": "persistent"})) == (True, "persistent")


def test_full_name_wins_over_dotted_path():
    scopes = ({"order.id": "literal", "order": {"id": "nested"}},)
    assert lookup("order.id", scopes) == (True, "literal")


def test_render_text_forms():
    scopes = ({"flag": True, "nothing": None, "n": 3},)
    assert render("{flag}/{nothing}/{n}", scopes) == "true//3"


def test_resolve_value_keeps_types():
    """A lone placeholder yields the raw value; mixed text is rendered."""
    scopes = ({"count": 3, "profile": {"age": 30}},)
    assert resolve_value("{{count}}", scopes) == 3
    assert resolve_value("{profile}", scopes) == {"age": 30}
    assert resolve_value("n={count}", scopes) == "n=3"
    assert resolve_value({"a": ["{count}", 1]}, scopes) == {"a": [3, 1]}


@pytest.mark.asyncio
async def test_variable_accessor_scopes():
    """Session shadows persistent; persistent values are shared by every context of the subject."""
    store = InMemoryExecutionStore()
    subject = Subject(chat_id="42", user_id="u42")
    first = ExecutionContext(flow_id="f", flow_version=1, subject=subject)
    second = ExecutionContext(flow_id="f", flow_version=1, subject=subject)

    variables = await VariableAccessor(store, first).load()
    await variables.set("name", "Alice", VariableScope.PERSISTENT)
    await variables.set("step", "one")
    assert variables.get("name") == "Alice"

    await variables.set("name", "Session Alice")
    assert variables.get("name") == "Session Alice"
    assert variables.get("name", VariableScope.PERSISTENT) == "Alice"

    other = await VariableAccessor(store, second).load()
    assert other.get("name") == "Alice"
    assert other.has("step") is False
    assert persistent_owner(second) == "default:42"

    # An event that arrived without a profile resolves to the same owner
    bare = ExecutionContext(flow_id="f", flow_version=1, subject=Subject(chat_id="42"))
    assert persistent_owner(bare) == persistent_owner(first)
    assert (await VariableAccessor(store, bare).load()).get("name") == "Alice"


@pytest.mark.asyncio
async def test_variable_accessor_namespace_and_dotted_get():
    store = InMemoryExecutionStore()
    context = ExecutionContext(flow_id="f", flow_version=1, subject=Subject(chat_id="1"))
    variables = await VariableAccessor(store, context).load()
    await variables.update({"contact": {"phone_number": "123"}, "shared": "session"})
    await variables.set("shared", "persistent", VariableScope.PERSISTENT)

    assert variables.get("contact.phone_number") == "123"
    assert variables.get("missing", default="fallback") == "fallback"
    assert variables.namespace()["shared"] == "session"
