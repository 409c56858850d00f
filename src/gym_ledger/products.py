"""Product ledger: typed access to catalog products and their stock counter."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from . import log
from .constants import Collection
from .data_manager import ProductRecord, deserialize_product
from .document_store import DocumentStore, Increment, Transaction
from .exceptions import ProductNotFound


class ProductLedger:
    """Reads products and mutates stock on behalf of the sale coordinator.

    Stock is only ever changed through :meth:`decrement_stock`, which buffers
    an atomic increment inside the caller's transaction.
    """

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def get_product(self, product_id: str) -> ProductRecord:
        """Fetch a product outside any transaction.

        Raises:
            ProductNotFound: If no document exists for ``product_id``.
        """
        document = await self._store.get(Collection.PRODUCTS, product_id)
        if document is None:
            log.warning("Product lookup failed for id '%s'", product_id)
            raise ProductNotFound(product_id)
        return deserialize_product(document)

    async def read_for_sale(self, tx: Transaction, product_id: str) -> ProductRecord:
        """Read a product inside ``tx`` so the commit is validated against it.

        Raises:
            ProductNotFound: If no document exists for ``product_id``.
        """
        document = await tx.get(Collection.PRODUCTS, product_id)
        if document is None:
            log.warning("Sale attempted on unknown product '%s'", product_id)
            raise ProductNotFound(product_id)
        return deserialize_product(document)

    @staticmethod
    def decrement_stock(
        tx: Transaction, product_id: str, quantity: int, *, now: Optional[datetime] = None
    ) -> None:
        """Buffer an atomic stock decrement of ``quantity`` units."""
        fields: Dict[str, Any] = {"stock": Increment(-quantity)}
        if now is not None:
            fields["updated_at"] = now
        tx.update(Collection.PRODUCTS, product_id, fields)


__all__ = ["ProductLedger"]
