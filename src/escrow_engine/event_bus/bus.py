"""Event bus factory.

Creates the appropriate event bus implementation based on mode.
"""

from __future__ import annotations

from escrow_engine.core.enums import Mode

from .memory_bus import MemoryEventBus
from .redis_streams import RedisStreamsBus


def create_event_bus(
    mode: Mode,
    redis_url: str = "redis://localhost:6379/0",
) -> MemoryEventBus | RedisStreamsBus:
    """Create an event bus for the given mode.

    - DEV: MemoryEventBus (no external deps)
    - PRODUCTION: RedisStreamsBus (persistent, consumed by notification
      and analytics services)
    """
    if mode == Mode.DEV:
        return MemoryEventBus()
    return RedisStreamsBus(redis_url=redis_url)
