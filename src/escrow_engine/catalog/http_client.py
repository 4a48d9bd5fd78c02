"""HTTP client for the product catalog service.

Listing status updates are ``PUT {base_url}/products/{id}/status`` with a
JSON body ``{"status": "sold" | "active" | "reserved"}``.  The catalog
treats repeated updates to the same status as no-ops.
"""

from __future__ import annotations

import logging

import httpx

from escrow_engine.core.enums import ProductStatus
from escrow_engine.core.errors import EscrowEngineError

logger = logging.getLogger(__name__)


class CatalogError(EscrowEngineError):
    """Catalog service rejected or failed a listing update."""


class HttpProductCatalog:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def open(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> HttpProductCatalog:
        await self.open()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def _set_status(self, product_id: str, status: ProductStatus) -> None:
        if self._client is None:
            raise RuntimeError("Catalog client not opened. Use 'async with' or call open().")
        try:
            resp = await self._client.put(
                f"/products/{product_id}/status", json={"status": status.value}
            )
        except httpx.HTTPError as exc:
            raise CatalogError(f"Catalog unreachable updating {product_id}: {exc}") from exc
        if not resp.is_success:
            raise CatalogError(
                f"Catalog refused {status.value} for {product_id}: HTTP {resp.status_code}"
            )
        logger.debug("Catalog product %s marked %s", product_id, status.value)

    async def mark_reserved(self, product_id: str) -> None:
        await self._set_status(product_id, ProductStatus.RESERVED)

    async def mark_sold(self, product_id: str) -> None:
        await self._set_status(product_id, ProductStatus.SOLD)

    async def mark_active(self, product_id: str) -> None:
        await self._set_status(product_id, ProductStatus.ACTIVE)
