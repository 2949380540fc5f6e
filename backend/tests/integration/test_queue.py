# backend/tests/integration/test_queue.py
import json
import pytest
from unittest.mock import AsyncMock, MagicMock

from chatflow.models.execution import EventKind, InboundEvent
from chatflow.utils.queue import RedisEventQueue


@pytest.mark.asyncio
async def test_worker_hands_events_to_the_engine():
    """A consumed stream entry is parsed back into an InboundEvent and routed."""
    engine = AsyncMock()
    engine.handle_inbound_event.return_value = {"outcome": "started", "context_id": "ctx-1"}
    queue = RedisEventQueue(redis_client=AsyncMock())
    queue.engine = engine

    event = InboundEvent(chat_id="1001", kind=EventKind.MESSAGE, payload="/start", event_id="u-1")
    result = await queue.process_event(json.loads(event.model_dump_json()))

    assert result["outcome"] == "started"
    routed = engine.handle_inbound_event.await_args.args[0]
    assert routed.chat_id == "1001"
    assert routed.kind == EventKind.MESSAGE
    assert routed.event_id == "u-1"


@pytest.mark.asyncio
async def test_add_event_writes_to_the_stream(mocker):
    mocker.patch("chatflow.utils.queue.settings.queue_enabled", True)
    redis_client = AsyncMock()
    queue = RedisEventQueue(redis_client=redis_client, stream_name="test_events")

    queued = await queue.add_event(InboundEvent(chat_id="1", kind=EventKind.CALLBACK, payload="menu"))

    assert queued is True
    stream, fields = redis_client.xadd.await_args.args
    assert stream == "test_events"
    assert json.loads(fields["data"])["payload"] == "menu"


@pytest.mark.asyncio
async def test_disabled_queue_never_touches_redis(mocker):
    mocker.patch("chatflow.utils.queue.settings.queue_enabled", False)
    redis_client = AsyncMock()
    queue = RedisEventQueue(redis_client=redis_client)

    assert await queue.add_event(InboundEvent(chat_id="1", kind=EventKind.MESSAGE, payload="hi")) is False
    assert await queue.is_duplicate_event("u-1", "1") is False
    await queue.start_workers(AsyncMock())
    assert queue.workers == []
    redis_client.xadd.assert_not_awaited()


@pytest.mark.asyncio
async def test_duplicate_detection_uses_the_cache(mocker):
    mocker.patch("chatflow.utils.queue.settings.queue_enabled", True)
    set_if_absent = mocker.patch(
        "chatflow.utils.queue.cache_service.set_if_absent", new_callable=AsyncMock, side_effect=[True, False, None]
    )
    queue = RedisEventQueue(redis_client=AsyncMock())

    assert await queue.is_duplicate_event("u-1", "1001") is False
    assert await queue.is_duplicate_event("u-1", "1001") is True
    # Redis unavailable: let the engine's own de-duplication decide
    assert await queue.is_duplicate_event("u-1", "1001") is False
    assert set_if_absent.await_args.args[0] == "processed:1001:u-1"


@pytest.mark.asyncio
async def test_wait_sweep_job_is_scheduled_and_runs():
    from scheduler import schedule_wait_sweep

    engine = AsyncMock()
    engine.sweep_expired_waits.return_value = 2
    scheduler = MagicMock()

    schedule_wait_sweep(scheduler, engine)

    job, trigger = scheduler.add_job.call_args.args[:2]
    assert trigger == "interval"
    assert scheduler.add_job.call_args.kwargs["max_instances"] == 1
    await job()
    engine.sweep_expired_waits.assert_awaited_once()
