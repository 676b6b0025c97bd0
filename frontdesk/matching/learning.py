"""Frontdesk – Tier-3 learning signals.

Every Tier-3 invocation (matched or degraded) yields a LearningRecord for
offline review: which utterances the cheap tiers missed, what the model
picked, what it cost. Emission is ``put_nowait`` into a bounded queue; the
response path never waits on it. A background drain publishes records to
the tenant's Redis list, or to the log when no Redis is configured.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from enum import Enum

import redis.asyncio as redis
import structlog
from pydantic import BaseModel, Field

from frontdesk.core.redis_bus import RedisBus
from frontdesk.core.redis_keys import learning_queue_key

logger = structlog.get_logger()


class LearningOutcome(str, Enum):
    MATCHED = "matched"
    NO_MATCH = "no_match"
    TIMEOUT = "timeout"
    PROVIDER_ERROR = "provider_error"
    SKIPPED = "skipped"


class LearningRecord(BaseModel):
    tenant_id: str
    utterance: str
    utterance_hash: str
    scenario_id: str
    outcome: LearningOutcome
    confidence: float = 0.0
    cost_cents: float = 0.0
    latency_ms: int = 0
    candidates: list[str] = Field(default_factory=list)
    reason: str = ""
    needs_review: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class LearningRecorder:
    """Bounded, non-blocking learning sink."""

    def __init__(self, maxsize: int = 1000, bus: RedisBus | None = None) -> None:
        self._queue: asyncio.Queue[LearningRecord] = asyncio.Queue(maxsize=maxsize)
        self._bus = bus
        self._task: asyncio.Task[None] | None = None
        self.dropped = 0
        self.published = 0

    def emit(self, record: LearningRecord) -> bool:
        """Enqueue without waiting. Returns False when the record was dropped."""
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("learning.queue_full", tenant_id=record.tenant_id, dropped=self.dropped)
            return False
        return True

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._drain(), name="learning-drain")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.flush()

    async def flush(self) -> int:
        """Publish everything currently queued. Returns the number published."""
        count = 0
        while not self._queue.empty():
            record = self._queue.get_nowait()
            await self._publish(record)
            self._queue.task_done()
            count += 1
        return count

    async def _drain(self) -> None:
        while True:
            record = await self._queue.get()
            try:
                await self._publish(record)
            finally:
                self._queue.task_done()

    async def _publish(self, record: LearningRecord) -> None:
        if self._bus is None:
            logger.info("learning.record", **record.model_dump(mode="json", exclude={"utterance"}))
            self.published += 1
            return
        try:
            await self._bus.push_to_queue(learning_queue_key(record.tenant_id), record.model_dump_json())
            self.published += 1
        except (redis.RedisError, RuntimeError) as exc:
            logger.error("learning.publish_failed", tenant_id=record.tenant_id, error=str(exc))
