"""In-memory product catalog for development and tests."""

from __future__ import annotations

import logging

from escrow_engine.core.enums import ProductStatus

logger = logging.getLogger(__name__)


class MemoryProductCatalog:
    """Tracks listing status per product id.  Unknown products default to ACTIVE."""

    def __init__(self) -> None:
        self._status: dict[str, ProductStatus] = {}
        self.calls: list[tuple[str, str]] = []

    def status(self, product_id: str) -> ProductStatus:
        return self._status.get(product_id, ProductStatus.ACTIVE)

    async def _set(self, product_id: str, status: ProductStatus) -> None:
        self.calls.append((status.value, product_id))
        previous = self._status.get(product_id, ProductStatus.ACTIVE)
        self._status[product_id] = status
        if previous != status:
            logger.debug("Product %s: %s -> %s", product_id, previous.value, status.value)

    async def mark_reserved(self, product_id: str) -> None:
        await self._set(product_id, ProductStatus.RESERVED)

    async def mark_sold(self, product_id: str) -> None:
        await self._set(product_id, ProductStatus.SOLD)

    async def mark_active(self, product_id: str) -> None:
        await self._set(product_id, ProductStatus.ACTIVE)
