"""In-memory event bus for development and tests.

Follows the Redis Streams bus closely enough that services cannot tell
them apart: ``publish`` returns an entry id, and each consumer group gets
every event on its topic.  A handler that raises leaves the event pending
for that group only; ``redeliver_pending`` retries it, the same way a
Redis consumer reclaims stale entries.  Everything published is kept in
a history for assertions.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable, Coroutine, TypeVar

from .events import DomainEvent

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=DomainEvent)

Handler = Callable[[DomainEvent], Coroutine[Any, Any, None]]


class MemoryEventBus:
    """Single-event-loop bus; handlers are awaited inline in publish order."""

    def __init__(self) -> None:
        self._groups: dict[str, dict[str, Handler]] = defaultdict(dict)
        self._pending: dict[tuple[str, str], list[tuple[str, DomainEvent]]] = defaultdict(list)
        self._history: list[tuple[str, DomainEvent]] = []
        self._seq = 0

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    async def publish(self, topic: str, event: DomainEvent) -> str:
        self._seq += 1
        entry_id = f"{self._seq}-0"
        self._history.append((topic, event))
        for group, handler in self._groups.get(topic, {}).items():
            await self._deliver(topic, group, handler, entry_id, event)
        return entry_id

    async def subscribe(self, topic: str, group: str, handler: Handler) -> None:
        """One handler per (topic, group); subscribing again replaces it."""
        self._groups[topic][group] = handler

    async def redeliver_pending(self) -> int:
        """Retry every pending delivery once; returns how many succeeded."""
        delivered = 0
        for (topic, group), entries in list(self._pending.items()):
            handler = self._groups[topic].get(group)
            if handler is None:
                continue
            self._pending[(topic, group)] = []
            for entry_id, event in entries:
                if await self._deliver(topic, group, handler, entry_id, event):
                    delivered += 1
        return delivered

    def pending(self, topic: str, group: str) -> list[DomainEvent]:
        return [event for _, event in self._pending.get((topic, group), [])]

    async def _deliver(
        self, topic: str, group: str, handler: Handler, entry_id: str, event: DomainEvent
    ) -> bool:
        try:
            await handler(event)
        except Exception:
            logger.exception(
                "Handler %s failed on %s entry %s (%s); left pending",
                group, topic, entry_id, type(event).__name__,
            )
            self._pending[(topic, group)].append((entry_id, event))
            return False
        return True

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    def get_history(self, topic: str | None = None) -> list[tuple[str, DomainEvent]]:
        if topic is None:
            return list(self._history)
        return [(t, e) for t, e in self._history if t == topic]

    def events_of(self, event_type: type[E]) -> list[E]:
        """All published events of one type, in publish order."""
        return [e for _, e in self._history if isinstance(e, event_type)]

    def clear_history(self) -> None:
        self._history.clear()
