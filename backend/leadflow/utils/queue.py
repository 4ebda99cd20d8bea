# /leadflow/utils/queue.py

import asyncio
import time
import uuid
import redis as redis_package
import structlog
from typing import Set

from pydantic import BaseModel, ValidationError

from leadflow.config.settings import settings
from leadflow.models.events import parse_event
from leadflow.services.cache_service import cache_service
from leadflow.services.flow_service import flow_engine

# Redis Streams queue between the HTTP surfaces and the flow engine. A route
# acknowledges once its event is on the stream; workers ack the stream entry
# only after the engine has processed it.

log = structlog.get_logger(__name__)


class RedisMessageQueue:
    def __init__(self, redis_client, engine, stream_name: str = "flow_events", max_workers: int = 5,
                 reclaim_idle_seconds: int = 60, max_deliveries: int = 5):
        self.redis = redis_client
        self.engine = engine
        self.stream_name = stream_name
        self.dead_letter_stream = f"{stream_name}:dead"
        self.consumer_group = "flow_workers"
        self.max_workers = max_workers
        self.reclaim_idle_seconds = reclaim_idle_seconds
        self.max_deliveries = max_deliveries
        self.workers = []
        self.running = False
        self._background: Set[asyncio.Task] = set()

    async def initialize(self):
        if not self.redis: return
        try:
            await self.redis.xgroup_create(self.stream_name, self.consumer_group, id="0", mkstream=True)
        except redis_package.exceptions.ResponseError as e:
            if "BUSYGROUP" not in str(e): raise

    async def start_workers(self):
        if not self.redis: return
        await self.initialize()
        self.running = True
        for i in range(self.max_workers):
            self.workers.append(asyncio.create_task(self._worker(f"worker-{i}-{uuid.uuid4().hex[:4]}")))
        log.info("flow_queue_workers_started", workers=self.max_workers, stream=self.stream_name)

    async def stop_workers(self):
        self.running = False
        for worker in self.workers:
            worker.cancel()
        await asyncio.gather(*self.workers, return_exceptions=True)
        self.workers = []

    async def _worker(self, consumer_name: str):
        last_reclaim = None
        while self.running:
            try:
                if last_reclaim is None or time.monotonic() - last_reclaim >= self.reclaim_idle_seconds:
                    last_reclaim = time.monotonic()
                    await self.reclaim_pending(consumer_name)

                messages = await self.redis.xreadgroup(self.consumer_group, consumer_name, {self.stream_name: ">"}, count=1, block=1000)
                if not messages: continue

                stream_name, stream_messages = messages[0]
                for message_id, fields in stream_messages:
                    await self._handle_entry(stream_name, message_id, fields)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self.running:
                    log.error("flow_queue_worker_error", consumer=consumer_name, error=str(e))
                    await asyncio.sleep(5)

    async def reclaim_pending(self, consumer_name: str) -> int:
        """
        Takes over entries that stayed unacknowledged for longer than
        ``reclaim_idle_seconds`` (a crashed worker, or an engine call that
        raised) and processes them again. Entries already delivered
        ``max_deliveries`` times are moved to the dead-letter stream.
        """
        idle_ms = self.reclaim_idle_seconds * 1000
        pending = await self.redis.xpending_range(
            self.stream_name, self.consumer_group, min="-", max="+", count=50, idle=idle_ms
        )
        reclaimed = 0
        for entry in pending:
            message_id = entry["message_id"]
            if entry["times_delivered"] >= self.max_deliveries:
                await self._dead_letter(message_id, entry["times_delivered"])
                continue
            # xclaim re-checks the idle time, so only one worker wins each entry
            for claimed_id, fields in await self.redis.xclaim(
                self.stream_name, self.consumer_group, consumer_name, idle_ms, [message_id]
            ):
                await self._handle_entry(self.stream_name, claimed_id, fields)
                reclaimed += 1
        if reclaimed:
            log.info("flow_queue_entries_reclaimed", consumer=consumer_name, count=reclaimed)
        return reclaimed

    async def _dead_letter(self, message_id, times_delivered: int):
        entries = await self.redis.xrange(self.stream_name, min=message_id, max=message_id)
        if entries:
            _, fields = entries[0]
            await self.redis.xadd(self.dead_letter_stream, {
                "data": fields.get(b"data", b""),
                "source_id": message_id,
                "times_delivered": times_delivered,
            })
        await self.redis.xack(self.stream_name, self.consumer_group, message_id)
        log.error("flow_queue_dead_letter", message_id=_text(message_id), times_delivered=times_delivered,
                  dead_letter_stream=self.dead_letter_stream)

    async def _handle_entry(self, stream_name, message_id, fields):
        try:
            event = parse_event(fields[b"data"])
        except (KeyError, ValidationError) as e:
            # A malformed entry can never succeed; drop it instead of redelivering forever
            log.error("flow_queue_invalid_event", message_id=_text(message_id), error=str(e))
            await self.redis.xack(stream_name, self.consumer_group, message_id)
            return

        try:
            await self.engine.handle_event(event)
        except Exception as e:
            # Left pending; reclaim_pending retries it once it has been idle long enough
            log.error("flow_queue_processing_failed", message_id=_text(message_id), event_type=event.event_type, error=str(e))
            return
        await self.redis.xack(stream_name, self.consumer_group, message_id)

    async def publish(self, event: BaseModel) -> str:
        """
        Appends an event to the stream. Without Redis the engine runs it as
        a background task in this process.
        """
        if self.redis:
            try:
                message_id = await self.redis.xadd(self.stream_name, {"data": event.model_dump_json()})
                return _text(message_id)
            except Exception as e:
                log.warning("flow_queue_publish_failed", event_type=event.event_type, error=str(e))

        task = asyncio.create_task(self.engine.handle_event(event))
        self._background.add(task)
        task.add_done_callback(self._inline_done)
        return "inline"

    def _inline_done(self, task: asyncio.Task):
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("flow_inline_event_failed", error=str(task.exception()))


def _text(value) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


# Globally accessible instance
message_queue = RedisMessageQueue(
    cache_service.redis,
    flow_engine,
    max_workers=settings.flow_queue_workers,
    reclaim_idle_seconds=settings.flow_queue_reclaim_idle_seconds,
    max_deliveries=settings.flow_queue_max_deliveries,
)
