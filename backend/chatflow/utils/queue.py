# /chatflow/utils/queue.py

import json
import uuid
import asyncio
import logging
import redis as redis_package
from typing import Optional

from chatflow.config.settings import settings
from chatflow.models.execution import InboundEvent
from chatflow.services.cache_service import cache_service
from chatflow.utils.metrics import queue_events_counter

# This utility provides a Redis Streams-based queue for inbound chat events.
# Webhook handlers return immediately; workers feed events to the engine,
# each event in its own coroutine.

logger = logging.getLogger(__name__)


class RedisEventQueue:
    def __init__(self, redis_client, stream_name: str = "inbound_events", max_workers: int = 5):
        self.redis = redis_client
        self.stream_name = stream_name
        self.consumer_group = "event_processors"
        self.max_workers = max_workers
        self.workers = []
        self.running = False
        self.engine = None

    @property
    def enabled(self) -> bool:
        return bool(self.redis) and settings.queue_enabled

    async def initialize(self):
        if not self.enabled: return
        try:
            await self.redis.xgroup_create(self.stream_name, self.consumer_group, id="0", mkstream=True)
        except redis_package.exceptions.ResponseError as e:
            if "BUSYGROUP" not in str(e): raise

    async def start_workers(self, engine):
        self.engine = engine
        if not self.enabled: return
        await self.initialize()
        self.running = True
        for i in range(self.max_workers):
            self.workers.append(asyncio.create_task(self._worker(f"worker-{i}-{uuid.uuid4().hex[:4]}")))
        logger.info(f"Started {self.max_workers} Redis event queue workers.")

    async def stop_workers(self):
        self.running = False
        for worker in self.workers:
            worker.cancel()
        await asyncio.gather(*self.workers, return_exceptions=True)
        self.workers = []

    async def _worker(self, consumer_name: str):
        while self.running:
            try:
                messages = await self.redis.xreadgroup(self.consumer_group, consumer_name, {self.stream_name: ">"}, count=1, block=1000)
                if not messages: continue

                # messages is a list of streams, e.g., [(b'stream_name', [(b'msg_id', {..})])]
                stream_name, stream_messages = messages[0]
                for message_id, fields in stream_messages:
                    try:
                        await self.process_event(json.loads(fields[b'data'].decode()))
                        await self.redis.xack(stream_name, self.consumer_group, message_id)
                    except Exception as e:
                        queue_events_counter.labels(status="error").inc()
                        logger.error(f"Error processing event {message_id.decode()}: {e}", exc_info=True)
            except Exception as e:
                if self.running:
                    logger.error(f"Redis worker '{consumer_name}' error: {e}")
                    await asyncio.sleep(5)

    async def process_event(self, data: dict):
        """Processes a single event consumed from the stream."""
        event = InboundEvent.model_validate(data)
        result = await self.engine.handle_inbound_event(event)
        queue_events_counter.labels(status=result["outcome"]).inc()
        return result

    async def add_event(self, event: InboundEvent) -> bool:
        """Adds an event to the stream. Returns False when the queue is disabled."""
        if not self.enabled:
            return False
        await self.redis.xadd(self.stream_name, {"data": event.model_dump_json()})
        queue_events_counter.labels(status="queued").inc()
        return True

    async def is_duplicate_event(self, event_id: Optional[str], chat_id: str) -> bool:
        """Checks for duplicate event IDs to prevent re-processing."""
        if not event_id or not self.enabled: return False
        # set with nx=True returns True if the key was set, so a duplicate is the inverse.
        created = await cache_service.set_if_absent(
            f"processed:{chat_id}:{event_id}", ttl=settings.event_dedupe_ttl_seconds
        )
        return created is False


# Globally accessible instance
event_queue = RedisEventQueue(cache_service.redis, max_workers=settings.queue_workers)
