# backend/tests/integration/test_engine.py
import asyncio
from datetime import datetime, timedelta

import httpx
import pytest

from chatflow.config.strings import (
    FALLBACK_NOTICE_MESSAGE,
    FINAL_ERROR_MESSAGE,
    RECOVERY_CONTROLS,
    REQUEST_CONTACT_PROMPT,
    VALIDATION_REPROMPT_MESSAGE,
    WAIT_TIMEOUT_MESSAGES,
)
from chatflow.models.execution import EventKind, ExecutionStatus, InboundEvent, Subject, SubjectRecord
from chatflow.models.flow import FlowSettings, NodeType, VariableScope
from chatflow.services.transport_service import inline_controls
from chatflow.workflows.engine import WorkflowEngine
from chatflow.workflows.errors import AlreadyRunning, ExecutionNotFound, GraphConfigurationError, ResourceUnavailable

from conftest import build_flow


async def _save(engine, flow):
    result = await engine.save_flow(flow)
    assert result["success"], result["errors"]
    return result["executable_flow"]


def _event(subject, kind, payload, event_id=None) -> InboundEvent:
    return InboundEvent(chat_id=subject.chat_id, kind=kind, payload=payload, subject=subject, event_id=event_id)


def _onboarding():
    return build_flow(
        "onboarding",
        [
            ("start", "trigger.command", {"command": "start"}),
            ("greet", "message", {"text": "Welcome {first_name}!"}),
            ("ask_contact", "action.request_contact"),
            ("matched", "condition", {"variable": "contact_match", "operator": "equals", "value": "matched"}),
            ("known", "flow.end", {"text": "Welcome back, customer {matched_subject_id}"}),
            ("unknown", "flow.end", {"text": "We could not find your account"}),
        ],
        [
            ("start", "greet"),
            ("greet", "ask_contact"),
            ("ask_contact", "matched"),
            ("matched", "known", "true"),
            ("matched", "unknown", "false"),
        ],
    )


def _ask_name(reply_text="Nice to meet you, {name}"):
    return build_flow(
        "ask_name",
        [
            ("start", "trigger.command", {"command": "name"}),
            ("ask", "message", {"text": "What is your name?", "wait_for_input": True, "save_to": "name"}),
            ("reply", "message", {"text": reply_text}),
            ("end", "flow.end"),
        ],
        [("start", "ask"), ("ask", "reply"), ("reply", "end")],
    )


# --- Start, wait, resume ---

@pytest.mark.asyncio
async def test_start_command_runs_until_contact_wait_then_matches_subject(engine, store, subject, sent_texts):
    await store.save_subject(SubjectRecord(id="cust-9", phone="+15550102030"))
    await _save(engine, _onboarding())

    started = await engine.handle_inbound_event(_event(subject, EventKind.MESSAGE, "/start"))
    assert started["outcome"] == "started"
    status = await engine.get_execution_status(started["context_id"])
    assert status["status"] == "waiting"
    assert status["wait_type"] == "contact"
    assert sent_texts() == ["Welcome Alice!", REQUEST_CONTACT_PROMPT]

    resumed = await engine.handle_inbound_event(_event(subject, EventKind.CONTACT, {"phone_number": "555 010 2030"}))
    assert resumed["outcome"] == "resumed"

    status = await engine.get_execution_status(started["context_id"])
    assert status["status"] == "completed"
    assert sent_texts()[-1] == "Welcome back, customer cust-9"
    persistent = await store.get_variables(f"default:{subject.key}", VariableScope.PERSISTENT)
    assert persistent["linked_subject_id"] == "cust-9"


@pytest.mark.asyncio
async def test_unknown_contact_takes_the_false_branch(engine, subject, sent_texts):
    await _save(engine, _onboarding())
    started = await engine.handle_inbound_event(_event(subject, EventKind.MESSAGE, "/start"))
    await engine.handle_inbound_event(_event(subject, EventKind.CONTACT, "+44 20 7946 0000"))

    assert (await engine.get_execution_status(started["context_id"]))["status"] == "completed"
    assert sent_texts()[-1] == "We could not find your account"


@pytest.mark.asyncio
async def test_text_answer_is_saved_and_flow_continues(engine, store, subject, sent_texts):
    await _save(engine, _ask_name())
    context_id = await engine.start_flow("ask_name", subject)

    assert await engine.resume_on_event(subject.chat_id, EventKind.MESSAGE, "Bob") is True

    assert sent_texts() == ["What is your name?", "Nice to meet you, Bob"]
    assert (await engine.get_execution_status(context_id))["status"] == "completed"
    assert (await store.get_variables(context_id, VariableScope.SESSION))["name"] == "Bob"


@pytest.mark.asyncio
async def test_duplicate_resume_advances_once(engine, subject, sent_texts):
    """Two deliveries of the same answer race; only one of them resumes the execution."""
    await _save(engine, _ask_name())
    await engine.start_flow("ask_name", subject)

    results = await asyncio.gather(
        engine.resume_on_event(subject.chat_id, EventKind.MESSAGE, "Bob"),
        engine.resume_on_event(subject.chat_id, EventKind.MESSAGE, "Bob"),
    )

    assert sorted(results) == [False, True]
    assert sent_texts().count("Nice to meet you, Bob") == 1


@pytest.mark.asyncio
async def test_repeated_event_id_is_processed_once(engine, subject):
    await _save(engine, _ask_name())
    first = await engine.handle_inbound_event(_event(subject, EventKind.MESSAGE, "/name", event_id="upd-1"))
    again = await engine.handle_inbound_event(_event(subject, EventKind.MESSAGE, "/name", event_id="upd-1"))

    assert first["outcome"] == "started"
    assert again == {"outcome": "duplicate", "context_id": None}


@pytest.mark.asyncio
async def test_callback_resumes_through_goto_node_and_labeled_edge(engine, subject, sent_texts):
    flow = build_flow(
        "menu",
        [
            ("start", "trigger.command", {"command": "menu"}),
            ("pick", "message.keyboard.inline", {"text": "Choose", "buttons": [[
                {"text": "Orders", "callback_data": "orders", "goto_node": "orders"},
                {"text": "Help", "callback_data": "help"},
            ]]}),
            ("orders", "flow.end", {"text": "Your orders"}),
            ("help_msg", "flow.end", {"text": "Help is here"}),
        ],
        [("start", "pick"), ("pick", "help_msg", "help")],
    )
    await _save(engine, flow)

    await engine.handle_inbound_event(_event(subject, EventKind.MESSAGE, "/menu"))
    # Text does not wake a callback wait
    assert (await engine.handle_inbound_event(_event(subject, EventKind.MESSAGE, "hello")))["outcome"] == "ignored"
    assert (await engine.handle_inbound_event(_event(subject, EventKind.CALLBACK, "orders")))["outcome"] == "resumed"
    assert sent_texts()[-1] == "Your orders"

    await engine.handle_inbound_event(_event(subject, EventKind.MESSAGE, "/menu"))
    await engine.handle_inbound_event(_event(subject, EventKind.CALLBACK, "help"))
    assert sent_texts()[-1] == "Help is here"


def _plan_menu(actions):
    return build_flow(
        "plans",
        [
            ("start", "trigger.command", {"command": "plans"}),
            ("pick", "message.keyboard.inline", {"text": "Pick a plan", "buttons": [[
                {"text": "Gold", "callback_data": "gold", "actions": actions},
            ]]}),
            ("done", "flow.end", {"text": "Enjoy {chosen}"}),
        ],
        [("start", "pick"), ("pick", "done", "gold")],
    )


@pytest.mark.asyncio
async def test_button_actions_run_before_the_callback_continues(engine, store, subject, sent_texts):
    await _save(engine, _plan_menu([
        {"type": "set_variable", "key": "plan", "value": "gold", "scope": "persistent"},
        {"type": "get_variable", "key": "plan", "assign_to": "chosen"},
        {"type": "send_message", "text": "Saved {plan} for {first_name}"},
        {"type": "set_variable", "key": "points", "value": 150},
        {"type": "condition", "variable": "points", "operator": "greater_than", "value": 100,
         "true_actions": [{"type": "send_message", "text": "VIP perks unlocked"}],
         "false_actions": [{"type": "send_message", "text": "Regular perks"}]},
        {"type": "database_query", "query": "check_subject_linked", "assign_to": "linked"},
        {"type": "delay", "seconds": 3},
    ]))

    started = await engine.handle_inbound_event(_event(subject, EventKind.MESSAGE, "/plans"))
    resumed = await engine.handle_inbound_event(_event(subject, EventKind.CALLBACK, "gold"))

    assert resumed["outcome"] == "resumed"
    assert sent_texts() == ["Pick a plan", "Saved gold for Alice", "VIP perks unlocked", "Enjoy gold"]
    assert (await engine.get_execution_status(started["context_id"]))["status"] == "completed"
    session = await store.get_variables(started["context_id"], VariableScope.SESSION)
    assert session["linked"] is False
    persistent = await store.get_variables(f"default:{subject.chat_id}", VariableScope.PERSISTENT)
    assert persistent["plan"] == "gold"


@pytest.mark.asyncio
async def test_failing_button_action_fails_the_execution(engine, subject, sent_texts):
    await _save(engine, _plan_menu([
        {"type": "send_message", "text": "Working on it"},
        {"type": "condition", "variable": "points", "operator": "roughly", "value": 1},
    ]))

    started = await engine.handle_inbound_event(_event(subject, EventKind.MESSAGE, "/plans"))
    await engine.handle_inbound_event(_event(subject, EventKind.CALLBACK, "gold"))

    status = await engine.get_execution_status(started["context_id"])
    assert status["status"] == "failed"
    assert status["error"]["category"] == "fatal"
    assert sent_texts() == ["Pick a plan", "Working on it", FINAL_ERROR_MESSAGE]


@pytest.mark.asyncio
async def test_condition_branches_on_numeric_text(engine, sent_texts):
    flow = build_flow(
        "payment",
        [
            ("start", "trigger.command", {"command": "pay"}),
            ("ask", "message", {"text": "Amount?", "wait_for_input": True, "save_to": "amount"}),
            ("check", "condition", {"variable": "amount", "operator": "greater", "value": 100}),
            ("big", "flow.end", {"text": "Needs approval"}),
            ("small", "flow.end", {"text": "Approved"}),
        ],
        [("start", "ask"), ("ask", "check"), ("check", "big", "true"), ("check", "small", "false")],
    )
    await _save(engine, flow)

    for chat_id, amount, expected in (("1", "150", "Needs approval"), ("2", "50", "Approved")):
        customer = Subject(chat_id=chat_id)
        await engine.handle_inbound_event(_event(customer, EventKind.MESSAGE, "/pay"))
        await engine.handle_inbound_event(_event(customer, EventKind.MESSAGE, amount))
        assert sent_texts()[-1] == expected


@pytest.mark.asyncio
async def test_command_arguments_are_exposed(engine, subject, store):
    flow = build_flow(
        "deeplink",
        [("start", "trigger.command", {"command": "start"}), ("end", "flow.end")],
        [("start", "end")],
    )
    await _save(engine, flow)
    started = await engine.handle_inbound_event(_event(subject, EventKind.MESSAGE, "/start ref42"))

    session = await store.get_variables(started["context_id"], VariableScope.SESSION)
    assert session["command_args"] == "ref42"


# --- Single active context ---

@pytest.mark.asyncio
async def test_second_start_for_same_subject_is_rejected(engine, subject):
    await _save(engine, _ask_name())
    await engine.start_flow("ask_name", subject)

    with pytest.raises(AlreadyRunning):
        await engine.start_flow("ask_name", subject)

    # A different subject is independent
    await engine.start_flow("ask_name", Subject(chat_id="2002"))


@pytest.mark.asyncio
async def test_command_supersedes_the_waiting_execution(engine, subject):
    await _save(engine, _ask_name())
    first = await engine.handle_inbound_event(_event(subject, EventKind.MESSAGE, "/name"))
    second = await engine.handle_inbound_event(_event(subject, EventKind.MESSAGE, "/name"))

    assert second["outcome"] == "started"
    assert second["context_id"] != first["context_id"]
    assert (await engine.get_execution_status(first["context_id"]))["status"] == "cancelled"
    assert (await engine.get_execution_status(second["context_id"]))["status"] == "waiting"


@pytest.mark.asyncio
async def test_api_start_and_bare_event_share_one_active_execution(engine, store, subject):
    """An event that arrives without a profile belongs to the same subject as a start with one."""
    await _save(engine, _ask_name())
    first = await engine.start_flow("ask_name", subject)

    bare = InboundEvent(chat_id=subject.chat_id, kind=EventKind.MESSAGE, payload="/name")
    second = await engine.handle_inbound_event(bare)

    assert second["outcome"] == "started"
    assert (await engine.get_execution_status(first))["status"] == "cancelled"
    assert (await store.find_active_context("ask_name", subject.chat_id)).id == second["context_id"]

    # And the other way round: the API sees the run the bare event started
    with pytest.raises(AlreadyRunning):
        await engine.start_flow("ask_name", subject)


# --- Limits and failures ---

@pytest.mark.asyncio
async def test_cycle_stops_at_the_step_cap(engine, subject, sent_texts):
    flow = build_flow(
        "spin",
        [
            ("t", "trigger.message"),
            ("a", "message", {"text": "a"}),
            ("b", "message", {"text": "b"}),
            ("c", "message", {"text": "c"}),
        ],
        [("t", "a"), ("a", "b"), ("b", "c"), ("c", "a")],
        settings=FlowSettings(max_steps=10),
    )
    await _save(engine, flow)

    context_id = await engine.start_flow("spin", subject)

    status = await engine.get_execution_status(context_id)
    assert status["status"] == "failed"
    assert status["step_count"] == 10
    assert status["error"]["category"] == "fatal"
    assert status["error"]["type"] == "LoopDetected"
    assert sent_texts()[-1] == FINAL_ERROR_MESSAGE


def _api_flow(flow_id, command):
    return build_flow(
        flow_id,
        [
            ("start", "trigger.command", {"command": command}),
            ("call", "action.api_request", {"url": "https://shop.example.com/api/check"}),
            ("done", "flow.end", {"text": "All good"}),
        ],
        [("start", "call"), ("call", "done")],
    )


def _engine_with_api(store, transport, status_code, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(status_code, json={})))
    return WorkflowEngine(store, transport, http_client=client, backoff_seconds=0, **kwargs)


@pytest.mark.asyncio
async def test_unclassified_failure_escalates_to_fallback_flow(store, transport, subject, sent_texts):
    engine = _engine_with_api(store, transport, 404)
    await _save(engine, _api_flow("checkout", "buy"))
    await _save(engine, build_flow(
        "help",
        [
            ("t", "trigger.message"),
            ("notice", "message", {"text": "Our team will contact you ({error_info.type} at {error_info.node_id})"}),
            ("end", "flow.end"),
        ],
        [("t", "notice"), ("notice", "end")],
        is_active=False,
    ))
    await engine.set_fallback_flow("default", "help")

    context_id = await engine.start_flow("checkout", subject)

    status = await engine.get_execution_status(context_id)
    assert status["status"] == "failed"
    assert status["error"]["category"] == "unclassified"
    assert sent_texts() == [FALLBACK_NOTICE_MESSAGE, "Our team will contact you (HandlerRuntimeError at call)"]


@pytest.mark.asyncio
async def test_failure_without_fallback_sends_final_message(store, transport, subject, sent_texts):
    engine = _engine_with_api(store, transport, 404)
    await _save(engine, _api_flow("checkout", "buy"))

    context_id = await engine.start_flow("checkout", subject)

    assert (await engine.get_execution_status(context_id))["status"] == "failed"
    assert sent_texts() == [FINAL_ERROR_MESSAGE]


@pytest.mark.asyncio
async def test_transient_failure_is_retried_then_escalated(store, transport, subject):
    calls = []

    def handle(request):
        calls.append(request)
        return httpx.Response(503, json={})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handle))
    engine = WorkflowEngine(store, transport, http_client=client, backoff_seconds=0, retry_attempts=3)
    await _save(engine, _api_flow("checkout", "buy"))

    context_id = await engine.start_flow("checkout", subject)

    assert len(calls) == 3
    status = await engine.get_execution_status(context_id)
    assert status["status"] == "failed"
    assert status["error"]["category"] == "transient"


@pytest.mark.asyncio
async def test_validation_failures_reprompt_until_the_recovery_cap(store, transport, subject, sent_texts):
    engine = _engine_with_api(store, transport, 422, max_recovery_attempts=2)
    await _save(engine, _api_flow("signup", "signup"))

    context_id = await engine.start_flow("signup", subject)
    assert (await engine.get_execution_status(context_id))["status"] == "waiting"
    assert sent_texts() == [VALIDATION_REPROMPT_MESSAGE]

    await engine.resume_on_event(subject.chat_id, EventKind.MESSAGE, "try again")
    assert (await engine.get_execution_status(context_id))["status"] == "waiting"

    await engine.resume_on_event(subject.chat_id, EventKind.MESSAGE, "and again")
    status = await engine.get_execution_status(context_id)
    assert status["status"] == "failed"
    assert sent_texts()[-1] == FINAL_ERROR_MESSAGE


@pytest.mark.asyncio
async def test_store_outage_during_contact_resume_fails_the_execution(engine, store, transport, subject, sent_texts, mocker):
    await _save(engine, _onboarding())
    started = await engine.handle_inbound_event(_event(subject, EventKind.MESSAGE, "/start"))
    lookup = mocker.patch.object(
        store, "find_subject_by_phone", side_effect=ResourceUnavailable("subject database unavailable")
    )

    result = await engine.handle_inbound_event(_event(subject, EventKind.CONTACT, {"phone_number": "+15550102030"}))

    assert result["outcome"] == "resumed"
    lookup.assert_awaited()
    status = await engine.get_execution_status(started["context_id"])
    assert status["status"] == "failed"
    assert status["error"]["category"] == "transient"
    assert sent_texts()[-1] == FINAL_ERROR_MESSAGE
    assert transport.send_message.await_args.args[2] == inline_controls(RECOVERY_CONTROLS)
    assert await store.find_active_context("onboarding", subject.chat_id) is None


@pytest.mark.asyncio
async def test_store_failure_between_steps_goes_through_recovery(engine, store, subject, sent_texts, mocker):
    await _save(engine, _ask_name())
    original = store.update_context
    failed_at = []

    async def fail_first_write(context, expected_statuses=(ExecutionStatus.RUNNING,)):
        if not failed_at:
            failed_at.append(context.current_node_id)
            raise ResourceUnavailable("write timed out")
        return await original(context, expected_statuses)

    mocker.patch.object(store, "update_context", side_effect=fail_first_write)

    context_id = await engine.start_flow("ask_name", subject)

    status = await engine.get_execution_status(context_id)
    assert failed_at == ["ask"]
    assert status["status"] == "failed"
    assert status["error"]["type"] == "ResourceUnavailable"
    assert sent_texts() == [FINAL_ERROR_MESSAGE]


@pytest.mark.asyncio
async def test_failure_while_preparing_variables_leaves_no_running_execution(engine, store, subject, sent_texts, mocker):
    await _save(engine, _ask_name())
    prepare = mocker.patch.object(
        engine.context_manager, "initialize_variables", side_effect=ResourceUnavailable("variables unavailable")
    )

    context_id = await engine.start_flow("ask_name", subject)

    assert prepare.await_count == 3
    assert (await engine.get_execution_status(context_id))["status"] == "failed"
    assert await store.find_active_context("ask_name", subject.chat_id) is None
    assert sent_texts() == [FINAL_ERROR_MESSAGE]


@pytest.mark.asyncio
async def test_event_that_failed_can_be_redelivered(engine, subject, sent_texts, mocker):
    await _save(engine, _ask_name())
    await engine.start_flow("ask_name", subject)
    answer = _event(subject, EventKind.MESSAGE, "Bob", event_id="upd-7")

    mocker.patch.object(engine.coordinator, "on_inbound_event", side_effect=ConnectionError("store unreachable"))
    with pytest.raises(ConnectionError):
        await engine.handle_inbound_event(answer)
    mocker.stopall()

    assert (await engine.handle_inbound_event(answer))["outcome"] == "resumed"
    assert sent_texts()[-1] == "Nice to meet you, Bob"
    assert (await engine.handle_inbound_event(answer))["outcome"] == "duplicate"


@pytest.mark.asyncio
async def test_restart_button_after_failure_starts_the_flow_again(engine, subject):
    await _save(engine, _ask_name())
    flow = build_flow(
        "onboarding",
        [("start", "trigger.command", {"command": "start"}), ("end", "flow.end", {"text": "Hi again"})],
        [("start", "end")],
    )
    await _save(engine, flow)

    result = await engine.handle_inbound_event(_event(subject, EventKind.CALLBACK, "cmd_start"))

    assert result["outcome"] == "started"
    assert (await engine.get_execution_status(result["context_id"]))["flow_id"] == "onboarding"


# --- Delays and timeouts ---

@pytest.mark.asyncio
async def test_delay_resumes_from_the_sweep(engine, subject, sent_texts):
    flow = build_flow(
        "reminder",
        [
            ("start", "trigger.command", {"command": "remind"}),
            ("pause", "flow.delay", {"delay_seconds": 60}),
            ("ping", "flow.end", {"text": "Reminder!"}),
        ],
        [("start", "pause"), ("pause", "ping")],
    )
    await _save(engine, flow)
    context_id = await engine.start_flow("reminder", subject)

    status = await engine.get_execution_status(context_id)
    assert status["wait_type"] == "delay"
    # A delay is never woken by chat input
    assert await engine.resume_on_event(subject.chat_id, EventKind.MESSAGE, "hurry") is False
    assert await engine.sweep_expired_waits() == 0

    handled = await engine.sweep_expired_waits(now=datetime.utcnow() + timedelta(minutes=2))

    assert handled == 1
    assert (await engine.get_execution_status(context_id))["status"] == "completed"
    assert sent_texts() == ["Reminder!"]


@pytest.mark.asyncio
async def test_expired_wait_follows_timeout_edge(engine, store, subject, sent_texts):
    flow = build_flow(
        "quiz",
        [
            ("start", "trigger.command", {"command": "quiz"}),
            ("ask", "message", {"text": "2+2?", "wait_for_input": True, "timeout_seconds": 30}),
            ("answered", "flow.end", {"text": "Thanks"}),
            ("late", "flow.end", {"text": "Too slow"}),
        ],
        [("start", "ask"), ("ask", "answered"), ("ask", "late", "timeout")],
    )
    await _save(engine, flow)
    context_id = await engine.start_flow("quiz", subject)

    await engine.sweep_expired_waits(now=datetime.utcnow() + timedelta(minutes=1))

    assert (await engine.get_execution_status(context_id))["status"] == "completed"
    assert sent_texts()[-1] == "Too slow"
    assert (await store.get_variables(context_id, VariableScope.SESSION))["timed_out"] is True


@pytest.mark.asyncio
async def test_expired_wait_without_timeout_edge_fails(engine, subject, sent_texts):
    flow = build_flow(
        "quiz",
        [
            ("start", "trigger.command", {"command": "quiz"}),
            ("ask", "message", {"text": "2+2?", "wait_for_input": True, "timeout_seconds": 30}),
            ("answered", "flow.end", {"text": "Thanks"}),
        ],
        [("start", "ask"), ("ask", "answered")],
    )
    await _save(engine, flow)
    context_id = await engine.start_flow("quiz", subject)

    await engine.sweep_expired_waits(now=datetime.utcnow() + timedelta(minutes=1))

    status = await engine.get_execution_status(context_id)
    assert status["status"] == "failed"
    assert status["error"]["category"] == "timeout"
    assert sent_texts()[-1] == WAIT_TIMEOUT_MESSAGES["input"]


# --- Control ---

@pytest.mark.asyncio
async def test_cancel_stops_a_waiting_execution(engine, subject, sent_texts):
    await _save(engine, _ask_name())
    context_id = await engine.start_flow("ask_name", subject)

    assert await engine.cancel_execution(context_id) is True
    assert await engine.resume_on_event(subject.chat_id, EventKind.MESSAGE, "Bob") is False
    assert await engine.cancel_execution(context_id) is False
    assert (await engine.get_execution_status(context_id))["status"] == "cancelled"
    assert sent_texts() == ["What is your name?"]

    with pytest.raises(ExecutionNotFound):
        await engine.cancel_execution("no-such-context")


@pytest.mark.asyncio
async def test_cancel_during_dispatch_stops_before_the_next_node(engine, subject, sent_texts, mocker):
    flow = build_flow(
        "checkout",
        [
            ("start", "trigger.command", {"command": "buy"}),
            ("mark", "action.set_variable", {"variable": "stage", "value": "paying"}),
            ("charge", "message", {"text": "Charging your card"}),
            ("end", "flow.end"),
        ],
        [("start", "mark"), ("mark", "charge"), ("charge", "end")],
    )
    await _save(engine, flow)

    handler = engine.handler_registry.get(NodeType.ACTION_SET_VARIABLE)
    original = handler.execute

    async def cancel_then_run(step, node):
        assert await engine.cancel_execution(step.context.id) is True
        return await original(step, node)

    mocker.patch.object(handler, "execute", side_effect=cancel_then_run)

    context_id = await engine.start_flow("checkout", subject)

    assert (await engine.get_execution_status(context_id))["status"] == "cancelled"
    assert "Charging your card" not in sent_texts()
    assert [s.node_id for s in await engine.get_trace(context_id)] == ["start", "mark"]


@pytest.mark.asyncio
async def test_waiting_execution_resumes_on_a_new_engine(store, transport, subject, sent_texts):
    """Only the store survives a restart; a fresh engine picks the wait up from it."""
    before = WorkflowEngine(store, transport, backoff_seconds=0)
    await _save(before, _ask_name())
    context_id = await before.start_flow("ask_name", subject)

    after = WorkflowEngine(store, transport, backoff_seconds=0)
    result = await after.handle_inbound_event(_event(subject, EventKind.MESSAGE, "Bob"))

    assert result["outcome"] == "resumed"
    assert sent_texts() == ["What is your name?", "Nice to meet you, Bob"]
    assert (await after.get_execution_status(context_id))["status"] == "completed"
    assert [s.node_id for s in await after.get_trace(context_id)] == ["start", "ask", "reply", "end"]


@pytest.mark.asyncio
async def test_restart_from_node_keeps_or_resets_variables(engine, subject, sent_texts):
    await _save(engine, _ask_name())
    context_id = await engine.start_flow("ask_name", subject)
    await engine.resume_on_event(subject.chat_id, EventKind.MESSAGE, "Bob")

    kept = await engine.restart_from_node(context_id, "reply")
    assert sent_texts()[-1] == "Nice to meet you, Bob"
    assert (await engine.get_execution_status(kept))["parent_context_id"] == context_id

    await engine.restart_from_node(context_id, "reply", reset_variables=True)
    assert sent_texts()[-1] == "Nice to meet you, {name}"

    with pytest.raises(GraphConfigurationError):
        await engine.restart_from_node(context_id, "missing-node")


@pytest.mark.asyncio
async def test_restart_cancels_the_active_execution(engine, subject):
    await _save(engine, _ask_name())
    context_id = await engine.start_flow("ask_name", subject)

    new_id = await engine.restart_from_node(context_id, "ask")

    assert (await engine.get_execution_status(context_id))["status"] == "cancelled"
    assert (await engine.get_execution_status(new_id))["status"] == "waiting"


@pytest.mark.asyncio
async def test_running_executions_keep_their_flow_version(engine, subject, sent_texts):
    await _save(engine, _ask_name())
    context_id = await engine.start_flow("ask_name", subject)

    updated = await _save(engine, _ask_name("Hello {name}, welcome to v2"))
    assert updated.version == 2

    await engine.resume_on_event(subject.chat_id, EventKind.MESSAGE, "Bob")
    assert sent_texts()[-1] == "Nice to meet you, Bob"
    assert (await engine.get_execution_status(context_id))["flow_version"] == 1

    await engine.start_flow("ask_name", subject)
    await engine.resume_on_event(subject.chat_id, EventKind.MESSAGE, "Eve")
    assert sent_texts()[-1] == "Hello Eve, welcome to v2"


@pytest.mark.asyncio
async def test_invalid_flow_is_not_saved(engine, store):
    result = await engine.save_flow(build_flow("broken", [("m", "message", {"text": "no trigger"})]))

    assert result["success"] is False
    assert await store.get_flow("broken") is None
    with pytest.raises(GraphConfigurationError):
        await engine.start_flow("broken", Subject(chat_id="1"))


@pytest.mark.asyncio
async def test_trace_records_every_step(engine, subject):
    await _save(engine, _ask_name())
    context_id = await engine.start_flow("ask_name", subject)
    await engine.resume_on_event(subject.chat_id, EventKind.MESSAGE, "Bob")

    steps = await engine.get_trace(context_id)

    assert [s.node_id for s in steps] == ["start", "ask", "reply", "end"]
    assert [s.status.value for s in steps] == ["ok", "waiting", "ok", "ended"]
