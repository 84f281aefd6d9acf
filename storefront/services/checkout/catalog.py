"""
Catalog price lookup used by checkout.

Unit prices are always read from the catalog at checkout time and
snapshotted onto order items; prices supplied by the client are ignored.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Iterable, Mapping, Optional, Protocol

import httpx

from storefront.core.config import Settings, get_settings
from storefront.core.errors import ExternalGatewayError
from storefront.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CatalogProduct:
    product_id: str
    name: str
    unit_price: Decimal
    active: bool = True


class PriceCatalog(Protocol):
    async def get_products(self, product_ids: Iterable[str]) -> dict[str, CatalogProduct]:
        """Products found for the ids; unknown ids are omitted."""
        ...


class StaticPriceCatalog:
    """In-memory catalog, for local development and tests."""

    def __init__(self, products: Mapping[str, CatalogProduct]):
        self._products = dict(products)

    async def get_products(self, product_ids: Iterable[str]) -> dict[str, CatalogProduct]:
        return {pid: self._products[pid] for pid in product_ids if pid in self._products}


class HttpPriceCatalog:
    """
    Catalog client for the catalog service.

    Calls ``GET {base_url}/products/prices?ids=a,b`` which answers
    ``{"products": [{"id", "name", "price", "active"}]}``.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.base_url = (base_url or settings.catalog_base_url).rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def get_products(self, product_ids: Iterable[str]) -> dict[str, CatalogProduct]:
        ids = sorted(set(product_ids))
        if not ids:
            return {}

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.get("/products/prices", params={"ids": ",".join(ids)})
                response.raise_for_status()
                body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                "Catalog price lookup failed",
                product_count=len(ids),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise ExternalGatewayError(
                "Catalog service unavailable",
                code="CATALOG_UNAVAILABLE",
            ) from e

        products: dict[str, CatalogProduct] = {}
        for entry in body.get("products", []):
            try:
                product = CatalogProduct(
                    product_id=str(entry["id"]),
                    name=entry.get("name") or str(entry["id"]),
                    unit_price=Decimal(str(entry["price"])),
                    active=bool(entry.get("active", True)),
                )
            except (KeyError, InvalidOperation) as e:
                logger.warning("Skipping malformed catalog entry", entry=entry, error=str(e))
                continue
            products[product.product_id] = product

        logger.debug("Catalog prices loaded", requested=len(ids), found=len(products))
        return products
