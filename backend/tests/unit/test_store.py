# backend/tests/unit/test_store.py
import asyncio
from datetime import datetime, timedelta

import pytest

from chatflow.models.execution import ExecutionContext, ExecutionStatus, StepStatus, StepTrace, Subject, WaitType
from chatflow.services.store import InMemoryExecutionStore, effect_key
from chatflow.workflows.errors import AlreadyRunning


def _context(chat_id="1", flow_id="f", **kwargs) -> ExecutionContext:
    return ExecutionContext(flow_id=flow_id, flow_version=1, subject=Subject(chat_id=chat_id), **kwargs)


async def _waiting(store, chat_id="1", wait_type=WaitType.INPUT, deadline=None, flow_id="f") -> ExecutionContext:
    context = _context(chat_id, flow_id=flow_id)
    await store.insert_context(context)
    context.status = ExecutionStatus.WAITING
    context.wait_type = wait_type
    context.wait_deadline = deadline
    assert await store.update_context(context)
    return context


@pytest.mark.asyncio
async def test_flow_versions_are_kept(flow_builder):
    store = InMemoryExecutionStore()
    v1 = flow_builder("f", [("t", "trigger.message")])
    v2 = v1.model_copy(update={"version": 2, "is_active": False})
    await store.save_flow(v1)
    await store.save_flow(v2)

    assert (await store.get_flow("f")).version == 2
    assert (await store.get_flow("f", 1)).version == 1
    assert await store.get_flow("f", 3) is None
    # Only the latest version decides whether a flow is active
    assert await store.list_active_flows("default") == []


@pytest.mark.asyncio
async def test_single_active_context_per_flow_and_subject():
    store = InMemoryExecutionStore()
    first = _context()
    await store.insert_context(first)

    with pytest.raises(AlreadyRunning):
        await store.insert_context(_context())

    # Another flow, or another subject, is fine
    await store.insert_context(_context(flow_id="other"))
    await store.insert_context(_context(chat_id="2"))

    await store.cancel_context(first.id)
    await store.insert_context(_context())


@pytest.mark.asyncio
async def test_update_is_conditional_on_status():
    store = InMemoryExecutionStore()
    context = _context()
    await store.insert_context(context)
    await store.cancel_context(context.id)

    context.step_count = 5
    assert await store.update_context(context) is False
    assert (await store.get_context(context.id)).status == ExecutionStatus.CANCELLED


@pytest.mark.asyncio
async def test_claim_waiting_context_is_atomic():
    """Two concurrent deliveries of the same event: exactly one claim wins."""
    store = InMemoryExecutionStore()
    waiting = await _waiting(store)

    results = await asyncio.gather(
        store.claim_waiting_context("1", (WaitType.INPUT,)),
        store.claim_waiting_context("1", (WaitType.INPUT,)),
    )

    claimed = [r for r in results if r is not None]
    assert len(claimed) == 1
    assert claimed[0].status == ExecutionStatus.WAITING  # state before the claim
    stored = await store.get_context(waiting.id)
    assert stored.status == ExecutionStatus.RUNNING
    assert stored.wait_type == WaitType.NONE


@pytest.mark.asyncio
async def test_claim_respects_wait_type():
    store = InMemoryExecutionStore()
    await _waiting(store, wait_type=WaitType.CALLBACK)
    assert await store.claim_waiting_context("1", (WaitType.INPUT,)) is None
    assert await store.claim_waiting_context("1", (WaitType.CALLBACK,)) is not None


@pytest.mark.asyncio
async def test_claim_expired_wait_only_past_deadline():
    store = InMemoryExecutionStore()
    now = datetime.utcnow()
    await _waiting(store, deadline=now + timedelta(minutes=5))
    expired = await _waiting(store, chat_id="2", deadline=now - timedelta(seconds=1))

    claimed = await store.claim_expired_wait(now)
    assert claimed.id == expired.id
    assert await store.claim_expired_wait(now) is None


@pytest.mark.asyncio
async def test_cancel_only_active_contexts():
    store = InMemoryExecutionStore()
    context = _context()
    await store.insert_context(context)

    cancelled = await store.cancel_context(context.id)
    assert cancelled.status == ExecutionStatus.CANCELLED
    assert cancelled.finished_at is not None
    assert await store.cancel_context(context.id) is None
    assert await store.cancel_context("missing") is None


@pytest.mark.asyncio
async def test_effect_keys_claim_once_and_release():
    store = InMemoryExecutionStore()
    key = effect_key("ctx", "node", 3)
    assert key == "ctx:node:3"
    assert await store.claim_effect(key) is True
    assert await store.claim_effect(key) is False
    await store.release_effect(key)
    assert await store.claim_effect(key) is True


@pytest.mark.asyncio
async def test_traces_are_ordered_by_step():
    store = InMemoryExecutionStore()
    for step in (2, 1, 3):
        await store.append_trace(StepTrace(context_id="c", step=step, node_id=f"n{step}", node_type="message", status=StepStatus.OK))
    assert [t.step for t in await store.get_traces("c")] == [1, 2, 3]
    assert await store.get_traces("other") == []


@pytest.mark.asyncio
async def test_recovery_attempts_are_counted_in_window():
    store = InMemoryExecutionStore()
    assert await store.record_recovery_attempt("f:u", 3600) == 1
    assert await store.record_recovery_attempt("f:u", 3600) == 2
    assert await store.record_recovery_attempt("f:other", 3600) == 1


@pytest.mark.asyncio
async def test_fallback_flow_registration():
    store = InMemoryExecutionStore()
    await store.set_fallback_flow("default", "help")
    assert await store.get_fallback_flow("default") == "help"
    await store.set_fallback_flow("default", None)
    assert await store.get_fallback_flow("default") is None
