"""Financial report aggregator.

Builds a read-only :class:`FinancialReport` from three sources that are
maintained by different writers: raw payments, raw sales and the monthly
aggregates. Every number and date read from the store passes through
:mod:`gym_ledger.numeric`, so malformed history is zeroed or discarded
instead of surfacing as ``NaN``.

Building a report never writes. Given the same store contents and clock, two
calls return equal reports.
"""

from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from . import log
from .aggregates import MonthlyAggregateLedger
from .classification import Classification, classify_payment
from .constants import (
    DEFAULT_RECENT_TRANSACTIONS_LIMIT,
    DEFAULT_TOP_PRODUCTS_LIMIT,
    MONTH_NAMES,
    Collection,
    IncomeCategory,
    PaymentCategory,
    SaleStatus,
)
from .data_manager import (
    Clock,
    MonthlyAggregate,
    PaymentRecord,
    SaleRecord,
    YearMonth,
    deserialize_payment,
    deserialize_sale,
    utc_now,
)
from .document_store import DocumentStore
from .numeric import coerce_date, ensure_number, safe_division, safe_percentage


DateBound = Union[date, datetime, str, None]


@dataclass(frozen=True)
class FinancialSummary:
    total_revenue: float = 0.0
    net_revenue: float = 0.0
    class_income: float = 0.0
    product_sales: float = 0.0
    membership_income: float = 0.0
    other_income: float = 0.0
    staff_payments: float = 0.0
    product_payments: float = 0.0
    total_transactions: int = 0
    average_transaction_value: float = 0.0


@dataclass(frozen=True)
class MonthlyFinancialData:
    month: str
    year: int
    month_number: int
    total_revenue: float
    net_revenue: float
    class_income: float
    product_sales: float
    membership_income: float
    other_income: float
    staff_payments: float
    product_payments: float
    transactions: int


@dataclass(frozen=True)
class PaymentMethodBreakdown:
    method: str
    amount: float
    transactions: int
    percentage: float


@dataclass(frozen=True)
class TopProduct:
    product_name: str
    revenue: float
    quantity: int


@dataclass(frozen=True)
class StaffPaymentData:
    staff_name: str
    total_amount: float
    payment_count: int
    last_payment: datetime
    concept: str


@dataclass(frozen=True)
class ProductPaymentData:
    product_name: str
    total_amount: float
    payment_count: int
    last_payment: datetime


@dataclass(frozen=True)
class RecentTransaction:
    """One entry of the merged payments/sales feed."""

    transaction_id: str
    type: str
    description: str
    amount: float
    date: datetime
    payment_method: str


@dataclass(frozen=True)
class FinancialReport:
    """Derived financial view over a date range; never persisted."""

    summary: FinancialSummary
    monthly_data: Tuple[MonthlyFinancialData, ...] = ()
    payment_methods: Tuple[PaymentMethodBreakdown, ...] = ()
    top_products: Tuple[TopProduct, ...] = ()
    staff_payments: Tuple[StaffPaymentData, ...] = ()
    product_payments: Tuple[ProductPaymentData, ...] = ()
    recent_transactions: Tuple[RecentTransaction, ...] = ()
    heuristic_classifications: int = 0


# Feed type of a classified payment.
_TRANSACTION_TYPES = {
    PaymentCategory.CLASS_INCOME: "class",
    PaymentCategory.MEMBERSHIP_INCOME: "membership",
    PaymentCategory.STAFF_EXPENSE: "staff",
    PaymentCategory.PRODUCT_EXPENSE: "product_payment",
    PaymentCategory.OTHER: "other",
}

ClassifiedPayment = Tuple[PaymentRecord, Classification]


def _lower_bound(value: DateBound) -> Optional[datetime]:
    if value is None:
        return None
    return coerce_date(value)


def _upper_bound(value: DateBound) -> Optional[datetime]:
    """Inclusive upper bound; a plain date covers the whole day."""
    if value is None:
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        return coerce_date(datetime.combine(value, time.max))
    return coerce_date(value)


def _within(moment: Optional[datetime], start: Optional[datetime], end: Optional[datetime]) -> bool:
    if start is None and end is None:
        return True
    if moment is None:
        return False
    if start is not None and moment < start:
        return False
    if end is not None and moment > end:
        return False
    return True


def _fsum(values: Iterable[Any]) -> float:
    return ensure_number(math.fsum(ensure_number(value) for value in values))


class FinancialReportAggregator:
    """Reads payments, sales and monthly aggregates into a :class:`FinancialReport`."""

    def __init__(
        self,
        store: DocumentStore,
        ledger: MonthlyAggregateLedger,
        *,
        clock: Clock = utc_now,
        top_products_limit: int = DEFAULT_TOP_PRODUCTS_LIMIT,
        recent_transactions_limit: int = DEFAULT_RECENT_TRANSACTIONS_LIMIT,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._clock = clock
        self._top_products_limit = top_products_limit
        self._recent_transactions_limit = recent_transactions_limit

    async def build_report(self, start_date: DateBound = None, end_date: DateBound = None) -> FinancialReport:
        """Build the financial report for ``[start_date, end_date]``.

        Either bound may be omitted. Without any bound the monthly aggregates
        of the current calendar year are used while payments and sales are
        taken in full.

        Raises:
            MalformedInput: If a supplied bound is not a usable date.
        """

        start = _lower_bound(start_date)
        end = _upper_bound(end_date)

        payments = [
            deserialize_payment(document) for document in await self._store.query(Collection.PAYMENTS)
        ]
        payments = [payment for payment in payments if _within(payment.payment_date, start, end)]
        sales = [deserialize_sale(document) for document in await self._store.query(Collection.SALES)]
        sales = [
            sale
            for sale in sales
            if sale.status == SaleStatus.COMPLETED.value and _within(sale.sale_date, start, end)
        ]
        aggregates = await self._monthly_aggregates(start, end)

        classified = [(payment, classify_payment(payment)) for payment in payments]
        heuristic_count = sum(1 for _, classification in classified if classification.heuristic)
        if heuristic_count:
            log.info(
                "%d payment(s) classified heuristically; run the category backfill to persist them",
                heuristic_count,
            )

        report = FinancialReport(
            summary=self._summary(classified, sales, aggregates),
            monthly_data=self._monthly_data(aggregates, classified),
            payment_methods=self._payment_methods(payments, sales),
            top_products=self._top_products(sales),
            staff_payments=self._staff_payments(classified),
            product_payments=self._product_payments(classified),
            recent_transactions=self._recent_transactions(classified, sales),
            heuristic_classifications=heuristic_count,
        )
        log.debug(
            "Built financial report: %d payments, %d sales, %d monthly aggregates",
            len(payments),
            len(sales),
            len(aggregates),
        )
        return report

    async def _monthly_aggregates(
        self, start: Optional[datetime], end: Optional[datetime]
    ) -> List[MonthlyAggregate]:
        if start is None and end is None:
            year = self._clock().year
            return await self._ledger.list_months(YearMonth(year, 1), YearMonth(year, 12))
        return await self._ledger.list_months(
            YearMonth.of(start) if start is not None else None,
            YearMonth.of(end) if end is not None else None,
        )

    @staticmethod
    def _summary(
        classified: Sequence[ClassifiedPayment],
        sales: Sequence[SaleRecord],
        aggregates: Sequence[MonthlyAggregate],
    ) -> FinancialSummary:
        by_category: Dict[PaymentCategory, List[float]] = defaultdict(list)
        for payment, classification in classified:
            by_category[classification.category].append(payment.amount)

        class_income = _fsum(by_category[PaymentCategory.CLASS_INCOME])
        product_sales = _fsum(sale.total_amount for sale in sales)
        membership_income = _fsum(
            aggregate.category(IncomeCategory.MEMBERSHIP).total for aggregate in aggregates
        )
        other_income = _fsum(aggregate.category(IncomeCategory.OTHER).total for aggregate in aggregates)
        staff_payments = _fsum(by_category[PaymentCategory.STAFF_EXPENSE])
        product_payments = _fsum(by_category[PaymentCategory.PRODUCT_EXPENSE])

        total_revenue = ensure_number(class_income + product_sales + membership_income + other_income)
        net_revenue = ensure_number(total_revenue - staff_payments - product_payments)
        total_transactions = len(classified) + len(sales)
        return FinancialSummary(
            total_revenue=total_revenue,
            net_revenue=net_revenue,
            class_income=class_income,
            product_sales=product_sales,
            membership_income=membership_income,
            other_income=other_income,
            staff_payments=staff_payments,
            product_payments=product_payments,
            total_transactions=total_transactions,
            average_transaction_value=safe_division(total_revenue, total_transactions),
        )

    @staticmethod
    def _monthly_data(
        aggregates: Sequence[MonthlyAggregate],
        classified: Sequence[ClassifiedPayment],
    ) -> Tuple[MonthlyFinancialData, ...]:
        expenses: Dict[Tuple[YearMonth, PaymentCategory], List[float]] = defaultdict(list)
        for payment, classification in classified:
            if payment.payment_date is None or not classification.is_expense_category:
                continue
            expenses[(YearMonth.of(payment.payment_date), classification.category)].append(payment.amount)

        rows = []
        for aggregate in sorted(aggregates, key=lambda item: item.year_month.ordinal()):
            ym = aggregate.year_month
            staff = _fsum(expenses[(ym, PaymentCategory.STAFF_EXPENSE)])
            product = _fsum(expenses[(ym, PaymentCategory.PRODUCT_EXPENSE)])
            total_revenue = ensure_number(aggregate.total_income)
            rows.append(
                MonthlyFinancialData(
                    month=MONTH_NAMES[ym.month - 1],
                    year=ym.year,
                    month_number=ym.month,
                    total_revenue=total_revenue,
                    net_revenue=ensure_number(total_revenue - staff - product),
                    class_income=aggregate.category(IncomeCategory.CLASS).total,
                    product_sales=aggregate.category(IncomeCategory.PRODUCT).total,
                    membership_income=aggregate.category(IncomeCategory.MEMBERSHIP).total,
                    other_income=aggregate.category(IncomeCategory.OTHER).total,
                    staff_payments=staff,
                    product_payments=product,
                    transactions=aggregate.total_transactions,
                )
            )
        return tuple(rows)

    @staticmethod
    def _payment_methods(
        payments: Sequence[PaymentRecord],
        sales: Sequence[SaleRecord],
    ) -> Tuple[PaymentMethodBreakdown, ...]:
        amounts: Dict[str, List[float]] = defaultdict(list)
        for payment in payments:
            if payment.payment_date is not None:
                amounts[payment.payment_method].append(payment.amount)
        for sale in sales:
            if sale.sale_date is not None:
                amounts[sale.payment_method].append(sale.total_amount)

        grand_total = _fsum(value for values in amounts.values() for value in values)
        rows = []
        for method, values in amounts.items():
            amount = _fsum(values)
            rows.append(
                PaymentMethodBreakdown(
                    method=method,
                    amount=amount,
                    transactions=len(values),
                    percentage=safe_percentage(amount, grand_total),
                )
            )
        rows.sort(key=lambda row: (-row.amount, row.method))
        return tuple(rows)

    def _top_products(self, sales: Sequence[SaleRecord]) -> Tuple[TopProduct, ...]:
        revenue: Dict[str, List[float]] = defaultdict(list)
        quantity: Dict[str, int] = defaultdict(int)
        for sale in sales:
            if sale.sale_date is None:
                continue
            revenue[sale.product_name].append(sale.total_amount)
            quantity[sale.product_name] += sale.quantity

        products = [
            TopProduct(product_name=name, revenue=_fsum(values), quantity=quantity[name])
            for name, values in revenue.items()
        ]
        products.sort(key=lambda product: (-product.revenue, product.product_name))
        return tuple(products[: self._top_products_limit])

    @staticmethod
    def _staff_payments(classified: Sequence[ClassifiedPayment]) -> Tuple[StaffPaymentData, ...]:
        grouped: Dict[str, List[PaymentRecord]] = defaultdict(list)
        for payment, classification in classified:
            if classification.category is PaymentCategory.STAFF_EXPENSE and payment.payment_date is not None:
                grouped[payment.member_name or "Staff"].append(payment)

        rows = []
        for staff_name, records in grouped.items():
            latest = max(records, key=lambda record: (record.payment_date, record.payment_id))
            rows.append(
                StaffPaymentData(
                    staff_name=staff_name,
                    total_amount=_fsum(record.amount for record in records),
                    payment_count=len(records),
                    last_payment=latest.payment_date,
                    concept=latest.notes or "Staff payment",
                )
            )
        rows.sort(key=lambda row: (-row.total_amount, row.staff_name))
        return tuple(rows)

    @staticmethod
    def _product_payments(classified: Sequence[ClassifiedPayment]) -> Tuple[ProductPaymentData, ...]:
        grouped: Dict[str, List[PaymentRecord]] = defaultdict(list)
        for payment, classification in classified:
            if classification.category is PaymentCategory.PRODUCT_EXPENSE and payment.payment_date is not None:
                grouped[payment.class_name or payment.notes or "Product"].append(payment)

        rows = [
            ProductPaymentData(
                product_name=product_name,
                total_amount=_fsum(record.amount for record in records),
                payment_count=len(records),
                last_payment=max(record.payment_date for record in records),
            )
            for product_name, records in grouped.items()
        ]
        rows.sort(key=lambda row: (-row.total_amount, row.product_name))
        return tuple(rows)

    def _recent_transactions(
        self,
        classified: Sequence[ClassifiedPayment],
        sales: Sequence[SaleRecord],
    ) -> Tuple[RecentTransaction, ...]:
        feed = []
        for payment, classification in classified:
            if payment.payment_date is None:
                continue
            feed.append(
                RecentTransaction(
                    transaction_id=payment.payment_id,
                    type=_TRANSACTION_TYPES[classification.category],
                    description=_describe_payment(payment, classification),
                    amount=payment.amount,
                    date=payment.payment_date,
                    payment_method=payment.payment_method,
                )
            )
        for sale in sales:
            if sale.sale_date is None:
                continue
            feed.append(
                RecentTransaction(
                    transaction_id=sale.sale_id,
                    type="product",
                    description=f"Product: {sale.product_name} (x{sale.quantity}) - {sale.buyer_name}",
                    amount=sale.total_amount,
                    date=sale.sale_date,
                    payment_method=sale.payment_method,
                )
            )

        feed.sort(key=lambda item: (item.date, item.transaction_id), reverse=True)
        return tuple(feed[: self._recent_transactions_limit])


def _describe_payment(payment: PaymentRecord, classification: Classification) -> str:
    category = classification.category
    if category is PaymentCategory.STAFF_EXPENSE:
        return f"Staff payment: {payment.member_name} - {payment.notes or 'Staff payment'}"
    if category is PaymentCategory.PRODUCT_EXPENSE:
        return f"Product payment: {payment.class_name or payment.notes or 'Product'}"
    if category is PaymentCategory.MEMBERSHIP_INCOME:
        return f"Membership: {payment.class_name} - {payment.member_name}"
    if category is PaymentCategory.CLASS_INCOME:
        return f"Class: {payment.class_name} - {payment.member_name}"
    return f"Other: {payment.notes or payment.class_name or payment.member_name}"


__all__ = [
    "FinancialReport",
    "FinancialReportAggregator",
    "FinancialSummary",
    "MonthlyFinancialData",
    "PaymentMethodBreakdown",
    "ProductPaymentData",
    "RecentTransaction",
    "StaffPaymentData",
    "TopProduct",
]
