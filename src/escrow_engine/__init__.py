"""Escrow order lifecycle engine for a peer-to-peer secondhand marketplace."""

__version__ = "0.1.0"
