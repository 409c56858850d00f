"""Monthly aggregate ledger.

One ``monthly_income`` document per calendar month (id ``YYYY-MM``) holds a
running ``{total, transactions}`` pair for every income category plus grand
totals. The document is created by the first contribution of the month and is
afterwards changed only through atomic increments, so any number of concurrent
sales and payments can contribute without losing updates.

Contributions triggered by a sale are first written to the
``aggregate_outbox`` collection inside the sale transaction. Crediting the
aggregate marks that entry ``applied`` in the same transaction, which makes
:meth:`MonthlyAggregateLedger.replay_outbox` safe to run at any time.
:meth:`MonthlyAggregateLedger.reconcile_month` rebuilds a closed month from the
raw sales and payments and reports (or repairs) any drift.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from . import log
from .constants import Collection, IncomeCategory, OutboxStatus, PaymentTransactionType, SaleStatus
from .data_manager import (
    CategoryTotals,
    Clock,
    MonthlyAggregate,
    OutboxEntry,
    YearMonth,
    deserialize_aggregate,
    deserialize_outbox_entry,
    deserialize_payment,
    deserialize_sale,
    new_aggregate_document,
    utc_now,
)
from .document_store import DocumentStore, Increment, Transaction
from .exceptions import AggregateUpdateFailed, BusinessRuleViolation
from .numeric import coerce_number


# Income tags on payment records that feed a monthly aggregate category.
PAYMENT_INCOME_CATEGORIES = {
    PaymentTransactionType.CLASS.value: IncomeCategory.CLASS,
    PaymentTransactionType.MEMBERSHIP.value: IncomeCategory.MEMBERSHIP,
    PaymentTransactionType.PRODUCT.value: IncomeCategory.PRODUCT,
    PaymentTransactionType.OTHER.value: IncomeCategory.OTHER,
}

# Float sums are order dependent; drift below this is noise.
DRIFT_TOLERANCE = 1e-6

YearMonthLike = Union[YearMonth, str]


def _as_year_month(value: YearMonthLike) -> YearMonth:
    return value if isinstance(value, YearMonth) else YearMonth.parse(value)


@dataclass(frozen=True)
class OutboxReplayResult:
    """Outcome of one pass over the pending aggregate contributions."""

    applied: int
    skipped: int
    failed: int
    errors: Tuple[AggregateUpdateFailed, ...] = ()


@dataclass(frozen=True)
class CategoryDrift:
    """Expected versus recorded totals of one category in one month."""

    category: IncomeCategory
    expected_total: float
    recorded_total: float
    expected_transactions: int
    recorded_transactions: int

    @property
    def total_drift(self) -> float:
        return self.expected_total - self.recorded_total

    @property
    def transactions_drift(self) -> int:
        return self.expected_transactions - self.recorded_transactions

    @property
    def is_consistent(self) -> bool:
        return (
            math.isclose(self.expected_total, self.recorded_total, abs_tol=DRIFT_TOLERANCE)
            and self.transactions_drift == 0
        )


@dataclass(frozen=True)
class ReconciliationResult:
    """Drift report for one month, optionally after repair."""

    year_month: YearMonth
    drifts: Tuple[CategoryDrift, ...]
    repaired: bool = False
    reconciled_outbox_entries: int = 0

    @property
    def is_consistent(self) -> bool:
        return all(drift.is_consistent for drift in self.drifts)


class MonthlyAggregateLedger:
    """Owns the ``monthly_income`` documents and their outbox."""

    def __init__(self, store: DocumentStore, *, clock: Clock = utc_now) -> None:
        self._store = store
        self._clock = clock

    async def credit_category(
        self,
        year_month: YearMonthLike,
        category: Union[IncomeCategory, str],
        amount: Any,
        *,
        source_id: Optional[str] = None,
    ) -> bool:
        """Add ``amount`` and one transaction to ``category`` for ``year_month``.

        Args:
            year_month: Month to credit, as :class:`YearMonth` or ``YYYY-MM``.
            category: Income category receiving the contribution.
            amount: Non-negative finite amount.
            source_id: Optional ``aggregate_outbox`` entry id. An entry that is
                no longer pending turns the call into a no-op; a pending one is
                marked ``applied`` in the same transaction as the increment.

        Returns:
            bool: ``False`` when the contribution had already been applied.

        Raises:
            ValueError: If ``amount`` is negative, non-finite or not a number,
                or if ``year_month``/``category`` are invalid.
            AggregateUpdateFailed: If the store transaction fails.
        """
        ym = _as_year_month(year_month)
        income_category = IncomeCategory(category)
        value = coerce_number(amount)
        if value < 0:
            raise ValueError("Aggregate contributions must be zero or positive")
        field_name = income_category.field_name

        async def _credit(tx: Transaction) -> bool:
            entry = None
            if source_id is not None:
                entry = await tx.get(Collection.AGGREGATE_OUTBOX, source_id)
                if entry is not None and entry.get("status") != OutboxStatus.PENDING.value:
                    return False
            aggregate = await tx.get(Collection.MONTHLY_INCOME, ym.key)

            now = self._clock()
            if aggregate is None:
                tx.set(
                    Collection.MONTHLY_INCOME,
                    ym.key,
                    new_aggregate_document(ym, income_category, value, now=now),
                )
            else:
                tx.update(
                    Collection.MONTHLY_INCOME,
                    ym.key,
                    {
                        f"{field_name}.total": Increment(value),
                        f"{field_name}.transactions": Increment(1),
                        "total_income": Increment(value),
                        "total_transactions": Increment(1),
                        "updated_at": now,
                    },
                )
            if entry is not None:
                tx.update(
                    Collection.AGGREGATE_OUTBOX,
                    source_id,
                    {"status": OutboxStatus.APPLIED.value, "applied_at": now},
                )
            return True

        try:
            applied = await self._store.run_transaction(_credit)
        except Exception as exc:
            log.error("Monthly aggregate %s update failed for %s: %s", ym.key, value, exc)
            raise AggregateUpdateFailed(ym.key, value, exc) from exc

        if applied:
            log.info("Credited %s to %s of monthly aggregate %s", value, field_name, ym.key)
        else:
            log.debug("Contribution '%s' already applied; skipping", source_id)
        return applied

    async def get_month(self, year_month: YearMonthLike) -> Optional[MonthlyAggregate]:
        document = await self._store.get(Collection.MONTHLY_INCOME, _as_year_month(year_month).key)
        return deserialize_aggregate(document) if document is not None else None

    async def list_months(
        self,
        start: Optional[YearMonthLike] = None,
        end: Optional[YearMonthLike] = None,
    ) -> List[MonthlyAggregate]:
        """Return the aggregates between ``start`` and ``end`` (inclusive), oldest first."""
        low = _as_year_month(start).ordinal() if start is not None else None
        high = _as_year_month(end).ordinal() if end is not None else None

        aggregates = []
        for document in await self._store.query(Collection.MONTHLY_INCOME):
            aggregate = deserialize_aggregate(document)
            if aggregate is None:
                continue
            ordinal = aggregate.year_month.ordinal()
            if low is not None and ordinal < low:
                continue
            if high is not None and ordinal > high:
                continue
            aggregates.append(aggregate)
        aggregates.sort(key=lambda item: item.year_month.ordinal())
        return aggregates

    async def pending_contributions(self) -> List[OutboxEntry]:
        documents = await self._store.query(
            Collection.AGGREGATE_OUTBOX,
            lambda doc: doc.get("status") == OutboxStatus.PENDING.value,
        )
        entries = []
        for document in documents:
            try:
                entries.append(deserialize_outbox_entry(document))
            except ValueError as exc:
                log.warning("Skipping malformed outbox entry '%s': %s", document.get("id"), exc)
        return entries

    async def replay_outbox(self) -> OutboxReplayResult:
        """Apply every pending contribution; failures stay pending for the next pass.

        A rejected entry (negative amount, unknown category) is reported in
        ``errors`` and does not stop the entries after it.
        """
        applied = skipped = 0
        errors: List[AggregateUpdateFailed] = []
        for entry in await self.pending_contributions():
            try:
                if await self.credit_category(
                    entry.year_month, entry.category, entry.amount, source_id=entry.entry_id
                ):
                    applied += 1
                else:
                    skipped += 1
            except AggregateUpdateFailed as exc:
                log.warning("Outbox entry '%s' still pending: %s", entry.entry_id, exc)
                errors.append(exc)
            except ValueError as exc:
                log.error("Outbox entry '%s' rejected and left pending: %s", entry.entry_id, exc)
                errors.append(AggregateUpdateFailed(entry.year_month.key, entry.amount, exc))

        if applied or errors:
            log.info("Outbox replay: %d applied, %d skipped, %d failed", applied, skipped, len(errors))
        return OutboxReplayResult(applied=applied, skipped=skipped, failed=len(errors), errors=tuple(errors))

    async def expected_totals(self, year_month: YearMonthLike) -> Dict[IncomeCategory, CategoryTotals]:
        """Rebuild a month's category totals from raw sales and income payments.

        Completed sales feed the product category. Income payments feed the
        category named by their transaction-type tag; expenses and untagged
        payments are not part of the aggregate. Months are UTC calendar months.
        """
        ym = _as_year_month(year_month)
        totals: Dict[IncomeCategory, List[float]] = {category: [] for category in IncomeCategory}

        for document in await self._store.query(Collection.SALES):
            sale = deserialize_sale(document)
            if sale.status != SaleStatus.COMPLETED.value or sale.sale_date is None:
                continue
            if YearMonth.of(sale.sale_date) == ym:
                totals[IncomeCategory.PRODUCT].append(sale.total_amount)

        for document in await self._store.query(Collection.PAYMENTS):
            payment = deserialize_payment(document)
            if payment.is_expense or payment.payment_date is None:
                continue
            category = PAYMENT_INCOME_CATEGORIES.get(payment.transaction_type or "")
            if category is not None and YearMonth.of(payment.payment_date) == ym:
                totals[category].append(payment.amount)

        return {
            category: CategoryTotals(total=math.fsum(amounts), transactions=len(amounts))
            for category, amounts in totals.items()
        }

    async def reconcile_month(self, year_month: YearMonthLike, *, repair: bool = False) -> ReconciliationResult:
        """Compare a month's aggregate with the raw records it summarizes.

        With ``repair=True`` the drift is applied as atomic increments and the
        month's pending outbox entries are marked ``reconciled`` so a later
        replay cannot count them twice.

        Raises:
            BusinessRuleViolation: If a repair targets the current or a future
                month, which can still receive contributions.
            AggregateUpdateFailed: If the repair transaction fails.
        """
        ym = _as_year_month(year_month)
        if repair and ym.ordinal() >= YearMonth.of(self._clock()).ordinal():
            raise BusinessRuleViolation(f"Month {ym.key} is still open and cannot be repaired")

        expected = await self.expected_totals(ym)
        recorded = await self.get_month(ym)
        drifts = _compute_drifts(expected, recorded)
        result = ReconciliationResult(year_month=ym, drifts=drifts)
        if result.is_consistent:
            log.info("Monthly aggregate %s is consistent with raw records", ym.key)
            return result

        for drift in drifts:
            if not drift.is_consistent:
                log.warning(
                    "Aggregate drift in %s/%s: expected %s (%d tx), recorded %s (%d tx)",
                    ym.key,
                    drift.category.value,
                    drift.expected_total,
                    drift.expected_transactions,
                    drift.recorded_total,
                    drift.recorded_transactions,
                )
        if not repair:
            return result

        pending_ids = [entry.entry_id for entry in await self.pending_contributions() if entry.year_month == ym]

        async def _repair(tx: Transaction) -> Tuple[Tuple[CategoryDrift, ...], int]:
            document = await tx.get(Collection.MONTHLY_INCOME, ym.key)
            entries = [await tx.get(Collection.AGGREGATE_OUTBOX, entry_id) for entry_id in pending_ids]

            current = deserialize_aggregate(document) if document is not None else None
            current_drifts = _compute_drifts(expected, current)
            now = self._clock()
            if document is None:
                tx.set(Collection.MONTHLY_INCOME, ym.key, _aggregate_document_from_totals(ym, expected, now=now))
            else:
                fields: Dict[str, Any] = {"updated_at": now, "reconciled_at": now}
                total_delta = 0.0
                count_delta = 0
                for drift in current_drifts:
                    if drift.is_consistent:
                        continue
                    name = drift.category.field_name
                    fields[f"{name}.total"] = Increment(drift.total_drift)
                    fields[f"{name}.transactions"] = Increment(drift.transactions_drift)
                    total_delta += drift.total_drift
                    count_delta += drift.transactions_drift
                fields["total_income"] = Increment(total_delta)
                fields["total_transactions"] = Increment(count_delta)
                tx.update(Collection.MONTHLY_INCOME, ym.key, fields)

            marked = 0
            for entry_id, entry in zip(pending_ids, entries):
                if entry is not None and entry.get("status") == OutboxStatus.PENDING.value:
                    tx.update(
                        Collection.AGGREGATE_OUTBOX,
                        entry_id,
                        {"status": OutboxStatus.RECONCILED.value, "applied_at": now},
                    )
                    marked += 1
            return current_drifts, marked

        try:
            applied_drifts, marked = await self._store.run_transaction(_repair)
        except Exception as exc:
            log.error("Repair of monthly aggregate %s failed: %s", ym.key, exc)
            raise AggregateUpdateFailed(ym.key, sum(d.total_drift for d in drifts), exc) from exc

        log.info("Repaired monthly aggregate %s; %d outbox entries reconciled", ym.key, marked)
        return ReconciliationResult(
            year_month=ym,
            drifts=applied_drifts,
            repaired=True,
            reconciled_outbox_entries=marked,
        )


def _compute_drifts(
    expected: Mapping[IncomeCategory, CategoryTotals],
    recorded: Optional[MonthlyAggregate],
) -> Tuple[CategoryDrift, ...]:
    drifts = []
    for category in IncomeCategory:
        want = expected.get(category, CategoryTotals())
        have = recorded.category(category) if recorded is not None else CategoryTotals()
        drifts.append(
            CategoryDrift(
                category=category,
                expected_total=want.total,
                recorded_total=have.total,
                expected_transactions=want.transactions,
                recorded_transactions=have.transactions,
            )
        )
    return tuple(drifts)


def _aggregate_document_from_totals(
    year_month: YearMonth,
    totals: Mapping[IncomeCategory, CategoryTotals],
    *,
    now: datetime,
) -> Dict[str, Any]:
    document: Dict[str, Any] = {
        "year": year_month.year,
        "month": year_month.month,
        "total_income": math.fsum(item.total for item in totals.values()),
        "total_transactions": sum(item.transactions for item in totals.values()),
        "created_at": now,
        "updated_at": now,
        "reconciled_at": now,
    }
    for category in IncomeCategory:
        item = totals.get(category, CategoryTotals())
        document[category.field_name] = {"total": item.total, "transactions": item.transactions}
    return document


__all__ = [
    "CategoryDrift",
    "MonthlyAggregateLedger",
    "OutboxReplayResult",
    "ReconciliationResult",
]
