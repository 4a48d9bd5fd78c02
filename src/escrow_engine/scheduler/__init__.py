"""Periodic background work: reconciliation sweeps and escrow release."""
