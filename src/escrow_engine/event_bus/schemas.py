"""Topic -> schema registry.

Maps event bus topic names to their Pydantic event models.
Used for serialization/deserialization on the Redis Streams bus.
"""

from __future__ import annotations

from .events import (
    DomainEvent,
    EscrowStatusChanged,
    ItemStatusChanged,
    MoneyMoved,
    OrderCreated,
    OrderExpired,
    OrderStatusChanged,
    PaymentCaptured,
    PaymentFailed,
    PayoutFailed,
)

TOPIC_ORDERS = "escrow.orders"
TOPIC_ESCROW = "escrow.money"

# Topic name -> list of event types that can appear on that topic
TOPIC_SCHEMAS: dict[str, list[type[DomainEvent]]] = {
    TOPIC_ORDERS: [
        OrderCreated,
        PaymentCaptured,
        PaymentFailed,
        OrderExpired,
        OrderStatusChanged,
        ItemStatusChanged,
    ],
    TOPIC_ESCROW: [EscrowStatusChanged, MoneyMoved, PayoutFailed],
}

EVENT_TYPE_MAP: dict[str, type[DomainEvent]] = {
    cls.__name__: cls for classes in TOPIC_SCHEMAS.values() for cls in classes
}


def get_event_class(event_type_name: str) -> type[DomainEvent] | None:
    """Look up event class by name."""
    return EVENT_TYPE_MAP.get(event_type_name)


def get_topic_for_event(event: DomainEvent) -> str | None:
    """Find the topic a given event should be published on."""
    for topic, schemas in TOPIC_SCHEMAS.items():
        if type(event) in schemas:
            return topic
    return None
