"""Sale transaction coordinator.

A sale touches three shared documents (the product's stock, the member's point
balance and the new sale record) and must change all of them or none. The
coordinator performs those writes in one store transaction, together with an
outbox entry describing the monthly aggregate contribution, and then credits
the aggregate in a second, independent transaction.

The second step may fail without undoing the sale. Such failures are returned
as warnings on :class:`SaleResult`; the outbox entry stays ``pending`` until
:meth:`~gym_ledger.aggregates.MonthlyAggregateLedger.replay_outbox` applies it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple, Union

from . import log
from .aggregates import MonthlyAggregateLedger
from .constants import Collection, IncomeCategory, OutboxStatus, PaymentMethod, SaleStatus
from .data_manager import Clock, OutboxEntry, SaleRecord, YearMonth, serialize_outbox_entry, serialize_sale, utc_now
from .document_store import DocumentStore, Increment, Transaction
from .exceptions import AggregateUpdateFailed, BusinessRuleViolation, BuyerNotFound, InsufficientStock
from .products import ProductLedger


@dataclass(frozen=True)
class SaleCommand:
    """User intent for selling ``quantity`` units of a product."""

    product_id: str
    quantity: int
    payment_method: Union[PaymentMethod, str]
    recorded_by: str
    buyer_id: Optional[str] = None
    is_member: bool = False
    buyer_name: Optional[str] = None
    buyer_email: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class SaleResult:
    """A committed sale plus the non-fatal problems met along the way."""

    sale: SaleRecord
    warnings: Tuple[Exception, ...] = ()

    @property
    def statistics_stale(self) -> bool:
        """True when the sale stands but the monthly aggregate missed it."""
        return any(isinstance(warning, AggregateUpdateFailed) for warning in self.warnings)

    @property
    def buyer_missing(self) -> bool:
        return any(isinstance(warning, BuyerNotFound) for warning in self.warnings)


def require_positive_quantity(quantity: int) -> None:
    """Validate that a sale quantity is a strictly positive integer.

    Raises:
        ValueError: If ``quantity`` is not an integer or is zero or negative.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        log.error("Quantity validation failed: %r is not an integer", quantity)
        raise ValueError("Quantity must be a whole number of units")
    if quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def resolve_payment_method(method: Union[PaymentMethod, str]) -> PaymentMethod:
    """Normalize a payment method, rejecting unknown tender types.

    Raises:
        BusinessRuleViolation: If ``method`` is not a supported payment method.
    """
    try:
        return PaymentMethod(method)
    except ValueError as exc:
        log.error("Unsupported payment method provided: %s", method)
        raise BusinessRuleViolation(f"Unsupported payment method: {method}") from exc


class SaleTransactionCoordinator:
    """Executes product sales against an injected document store."""

    def __init__(
        self,
        store: DocumentStore,
        products: ProductLedger,
        aggregates: MonthlyAggregateLedger,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._products = products
        self._aggregates = aggregates
        self._clock = clock

    async def record_sale(self, command: SaleCommand) -> SaleResult:
        """Sell ``command.quantity`` units of ``command.product_id``.

        Every read (product, member buyer) happens before any write. The sale
        record, the stock decrement, the point credit and the outbox entry
        commit together; conflicting concurrent sales are retried by the store.
        The monthly aggregate is credited after the commit.

        Returns:
            SaleResult: The committed sale. ``warnings`` may hold
                :class:`BuyerNotFound` (no points awarded) and
                :class:`AggregateUpdateFailed` (statistics briefly stale).

        Raises:
            ValueError: If the quantity is not a positive integer or
                ``recorded_by`` is empty.
            BusinessRuleViolation: If the payment method is unsupported or the
                stored product price is negative.
            ProductNotFound: If the product does not exist.
            InsufficientStock: If the product holds fewer units than requested.
            TransactionAborted: If the store exhausted its conflict retries.
        """
        require_positive_quantity(command.quantity)
        payment_method = resolve_payment_method(command.payment_method)
        if not command.recorded_by:
            raise ValueError("A sale must be attributed to the user recording it")

        quantity = command.quantity
        member_buyer_id = command.buyer_id if command.is_member and command.buyer_id else None
        sale_id = self._store.new_id(Collection.SALES)
        sale_date = self._clock()

        async def _execute(tx: Transaction) -> Tuple[SaleRecord, bool]:
            product = await self._products.read_for_sale(tx, command.product_id)
            buyer = await tx.get(Collection.USERS, member_buyer_id) if member_buyer_id else None

            if product.stock < quantity:
                log.warning(
                    "Rejected sale of %d x '%s': only %d in stock",
                    quantity,
                    product.product_id,
                    product.stock,
                )
                raise InsufficientStock(product.product_id, quantity, product.stock)
            if product.price < 0:
                log.error("Refusing sale of '%s': stored price %s is negative", product.product_id, product.price)
                raise BusinessRuleViolation(
                    f"Product '{product.product_id}' has a negative price; fix the catalog before selling it"
                )

            total_amount = product.price * quantity
            points_awarded = product.points * quantity if buyer is not None else 0
            record = _build_sale_record(
                command,
                sale_id=sale_id,
                product_name=product.name,
                unit_price=product.price,
                total_amount=total_amount,
                points_awarded=points_awarded,
                payment_method=payment_method,
                buyer_id=member_buyer_id,
                sale_date=sale_date,
            )

            tx.set(Collection.SALES, sale_id, serialize_sale(record))
            self._products.decrement_stock(tx, product.product_id, quantity, now=sale_date)
            if points_awarded > 0 and member_buyer_id is not None:
                tx.update(
                    Collection.USERS,
                    member_buyer_id,
                    {"points": Increment(points_awarded), "last_activity": sale_date},
                )
            tx.set(
                Collection.AGGREGATE_OUTBOX,
                sale_id,
                serialize_outbox_entry(
                    OutboxEntry(
                        entry_id=sale_id,
                        year_month=YearMonth.of(sale_date),
                        category=IncomeCategory.PRODUCT,
                        amount=total_amount,
                        status=OutboxStatus.PENDING.value,
                        created_at=sale_date,
                    )
                ),
            )
            return record, member_buyer_id is not None and buyer is None

        sale, buyer_missing = await self._store.run_transaction(_execute)
        log.info(
            "Recorded sale '%s' of %d x '%s' (total=%s, points=%d) by '%s'",
            sale.sale_id,
            sale.quantity,
            sale.product_id,
            sale.total_amount,
            sale.points_awarded,
            sale.sold_by,
        )

        warnings: List[Exception] = []
        if buyer_missing:
            log.warning("Buyer '%s' not found; sale '%s' awarded no points", member_buyer_id, sale.sale_id)
            warnings.append(BuyerNotFound(str(member_buyer_id)))

        try:
            await self._aggregates.credit_category(
                YearMonth.of(sale_date),
                IncomeCategory.PRODUCT,
                sale.total_amount,
                source_id=sale.sale_id,
            )
        except AggregateUpdateFailed as exc:
            log.warning("Sale '%s' committed but statistics may be briefly stale: %s", sale.sale_id, exc)
            warnings.append(exc)
        except ValueError as exc:
            failure = AggregateUpdateFailed(YearMonth.of(sale_date).key, sale.total_amount, exc)
            log.error("Sale '%s' committed but its contribution was rejected: %s", sale.sale_id, exc)
            warnings.append(failure)

        return SaleResult(sale=sale, warnings=tuple(warnings))


def _build_sale_record(
    command: SaleCommand,
    *,
    sale_id: str,
    product_name: str,
    unit_price: float,
    total_amount: float,
    points_awarded: int,
    payment_method: PaymentMethod,
    buyer_id: Optional[str],
    sale_date: datetime,
) -> SaleRecord:
    return SaleRecord(
        sale_id=sale_id,
        product_id=command.product_id,
        product_name=product_name,
        quantity=command.quantity,
        unit_price=unit_price,
        total_amount=total_amount,
        buyer_id=buyer_id,
        buyer_name=command.buyer_name or "",
        buyer_email=command.buyer_email or "",
        is_member=command.is_member,
        points_awarded=points_awarded,
        sale_date=sale_date,
        payment_method=payment_method.value,
        status=SaleStatus.COMPLETED.value,
        sold_by=command.recorded_by,
        notes=command.notes or "",
        created_at=sale_date,
    )


__all__ = [
    "SaleCommand",
    "SaleResult",
    "SaleTransactionCoordinator",
    "require_positive_quantity",
    "resolve_payment_method",
]
