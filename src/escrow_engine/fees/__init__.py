"""Platform fee calculation."""

from escrow_engine.fees.calculator import FeeBreakdown, FeeCalculator, split_fee

__all__ = ["FeeBreakdown", "FeeCalculator", "split_fee"]
