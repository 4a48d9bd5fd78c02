"""Domain events on Redis Streams.

Each topic is one stream.  Subscribers read through consumer groups, so
every group sees every event at least once and handlers must dedupe on
``event_id``.  An entry is acknowledged only after its handler returns.
Entries left pending by a consumer that died mid-batch are reclaimed
with XAUTOCLAIM once they have been idle for ``claim_idle_ms``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Coroutine

import redis.asyncio as aioredis

from .events import DomainEvent
from .schemas import get_event_class

logger = logging.getLogger(__name__)

Handler = Callable[[DomainEvent], Coroutine[Any, Any, None]]


def encode_entry(event: DomainEvent) -> dict[str, str]:
    """Stream fields for one event; order and trace ids stay greppable."""
    return {
        "event_type": type(event).__name__,
        "order_id": event.order_id,
        "trace_id": event.trace_id,
        "payload": event.model_dump_json(),
    }


def decode_entry(fields: dict[str, str] | None) -> DomainEvent | None:
    """Rebuild an event from stream fields, or None for an unusable entry."""
    fields = fields or {}
    type_name = fields.get("event_type")
    payload = fields.get("payload")
    if not type_name or not payload:
        logger.warning("Dropping malformed stream entry: %s", fields)
        return None

    event_cls = get_event_class(type_name)
    if event_cls is None:
        logger.warning("Dropping entry of unknown event type %s", type_name)
        return None
    return event_cls.model_validate_json(payload)


@dataclass
class _Subscription:
    topic: str
    group: str
    handler: Handler


class RedisStreamsBus:
    """Production event bus, consumed by notification and analytics services."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        max_stream_length: int = 100_000,
        block_ms: int = 1000,
        batch_size: int = 10,
        claim_idle_ms: int = 60_000,
        consumer_name: str = "worker",
    ) -> None:
        self._redis_url = redis_url
        self._redis: aioredis.Redis | None = None
        self._max_len = max_stream_length
        self._block_ms = block_ms
        self._batch_size = batch_size
        self._claim_idle_ms = claim_idle_ms
        self._consumer_name = consumer_name
        self._subscriptions: list[_Subscription] = []
        self._tasks: list[asyncio.Task] = []
        self._running = False

    async def start(self) -> None:
        self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        self._running = True
        for sub in self._subscriptions:
            await self._ensure_group(sub)
            self._tasks.append(
                asyncio.create_task(self._consume(sub), name=f"events-{sub.group}-{sub.topic}")
            )

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, event: DomainEvent) -> str:
        """Append *event* to the topic's stream; returns the entry id."""
        if self._redis is None:
            raise RuntimeError("RedisStreamsBus not started")
        return await self._redis.xadd(
            topic, encode_entry(event), maxlen=self._max_len, approximate=True
        )

    async def subscribe(self, topic: str, group: str, handler: Handler) -> None:
        """Register a consumer group handler.  Call before ``start``."""
        self._subscriptions.append(_Subscription(topic, group, handler))

    async def _ensure_group(self, sub: _Subscription) -> None:
        assert self._redis is not None
        try:
            await self._redis.xgroup_create(sub.topic, sub.group, id="0", mkstream=True)
        except aioredis.ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    async def _consume(self, sub: _Subscription) -> None:
        assert self._redis is not None
        consumer = f"{sub.group}-{self._consumer_name}"
        next_claim = 0.0

        while self._running:
            try:
                if time.monotonic() >= next_claim:
                    await self._reclaim(sub, consumer)
                    next_claim = time.monotonic() + self._claim_idle_ms / 1000

                batches = await self._redis.xreadgroup(
                    groupname=sub.group,
                    consumername=consumer,
                    streams={sub.topic: ">"},
                    count=self._batch_size,
                    block=self._block_ms,
                )
                for _stream, entries in batches or ():
                    await self._deliver(sub, entries)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Consumer %s on %s failed; backing off", consumer, sub.topic)
                await asyncio.sleep(1)

    async def _reclaim(self, sub: _Subscription, consumer: str) -> None:
        assert self._redis is not None
        claimed = await self._redis.xautoclaim(
            sub.topic,
            sub.group,
            consumer,
            min_idle_time=self._claim_idle_ms,
            start_id="0-0",
            count=self._batch_size,
        )
        entries = claimed[1]
        if entries:
            logger.info("Reclaimed %d stale entries on %s for %s", len(entries), sub.topic, sub.group)
            await self._deliver(sub, entries)

    async def _deliver(
        self, sub: _Subscription, entries: list[tuple[str, dict[str, str] | None]]
    ) -> None:
        assert self._redis is not None
        for entry_id, fields in entries:
            event = decode_entry(fields)
            if event is not None:
                try:
                    await sub.handler(event)
                except Exception:
                    logger.exception(
                        "Handler %s failed on %s entry %s (order %s); left pending",
                        sub.group, sub.topic, entry_id, event.order_id,
                    )
                    continue
            await self._redis.xack(sub.topic, sub.group, entry_id)
