"""Platform fee calculation.

The platform keeps a percentage of each item's gross price.  Only the fee
is rounded; the seller's share is derived by subtraction so that
``platform_fee + seller_amount == gross`` holds exactly.
"""

from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel

from escrow_engine.core.config import FeeTier
from escrow_engine.core.errors import ConfigError, InvalidAmount
from escrow_engine.core.ids import quantize_money
from escrow_engine.core.models import SellerProfile

_HUNDRED = Decimal("100")


class FeeBreakdown(BaseModel):
    platform_fee: Decimal
    seller_amount: Decimal
    fee_percentage: Decimal

    model_config = {"frozen": True}


def split_fee(gross: Decimal, fee_percentage: Decimal) -> FeeBreakdown:
    """Split *gross* into platform fee and seller amount.

    Raises:
        InvalidAmount: if *gross* is not positive or the percentage is
            outside ``[0, 100]``.
    """
    if gross <= 0:
        raise InvalidAmount(f"Gross amount must be positive, got {gross}")
    if fee_percentage < 0 or fee_percentage > _HUNDRED:
        raise InvalidAmount(f"Fee percentage out of range: {fee_percentage}")

    fee = quantize_money(gross * fee_percentage / _HUNDRED)
    return FeeBreakdown(
        platform_fee=fee,
        seller_amount=gross - fee,
        fee_percentage=fee_percentage,
    )


class FeeCalculator:
    """Resolves a seller's fee percentage from configured tiers.

    Tiers are price bands.  A seller's explicit override wins; otherwise
    the band's base percentage applies, minus the verified-profile and
    membership discounts, floored at zero.
    """

    def __init__(self, tiers: list[FeeTier]) -> None:
        if not tiers:
            raise ConfigError("FeeCalculator needs at least one fee tier")
        self._tiers = sorted(tiers, key=lambda t: t.min_value)

    def resolve_percentage(self, gross: Decimal, seller: SellerProfile) -> Decimal:
        if seller.fee_percentage is not None:
            return seller.fee_percentage

        tier = self._tier_for(gross)
        pct = tier.base_fee_percentage
        if seller.verified_profile:
            pct -= tier.verified_profile_discount
        if seller.has_membership:
            pct -= tier.membership_discount
        return max(pct, Decimal("0"))

    def calculate(self, gross: Decimal, seller: SellerProfile) -> FeeBreakdown:
        if gross <= 0:
            raise InvalidAmount(f"Gross amount must be positive, got {gross}")
        return split_fee(gross, self.resolve_percentage(gross, seller))

    def _tier_for(self, gross: Decimal) -> FeeTier:
        for tier in self._tiers:
            if tier.contains(gross):
                return tier
        # Below the lowest band or in a gap: fall back to the nearest band below.
        candidates = [t for t in self._tiers if t.min_value <= gross]
        return candidates[-1] if candidates else self._tiers[0]
