"""Item, order and escrow state machines."""
