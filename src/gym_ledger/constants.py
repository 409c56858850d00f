"""Enumerations and fixed identifiers shared across gym-ledger modules.

Collection names, status values and category tags live here so the store
adapters, the sale coordinator and the reporting layer agree on a single
spelling for every persisted value.
"""

from __future__ import annotations

from enum import Enum


# Schema version expected in config.ini before any component touches the store.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_MAX_TRANSACTION_ATTEMPTS = 5
DEFAULT_TOP_PRODUCTS_LIMIT = 10
DEFAULT_RECENT_TRANSACTIONS_LIMIT = 20

MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)


class Collection(str, Enum):
    """Enumerate the document collections addressed by the core."""

    PRODUCTS = "products"
    USERS = "users"
    SALES = "sales"
    PAYMENTS = "payments"
    MONTHLY_INCOME = "monthly_income"
    AGGREGATE_OUTBOX = "aggregate_outbox"


class ProductStatus(str, Enum):
    """Lifecycle states of a catalog product."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    OUT_OF_STOCK = "out_of_stock"


class SaleStatus(str, Enum):
    """Enumerate sale states; the coordinator only ever writes ``COMPLETED``."""

    COMPLETED = "completed"
    PENDING = "pending"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    """Enumerate the tender types accepted at the front desk."""

    CASH = "cash"
    CARD = "card"
    TRANSFER = "transfer"
    OTHER = "other"


class IncomeCategory(str, Enum):
    """Income buckets tracked by the monthly aggregate."""

    CLASS = "class"
    MEMBERSHIP = "membership"
    PRODUCT = "product"
    OTHER = "other"

    @property
    def field_name(self) -> str:
        """Name of the ``{total, transactions}`` map inside an aggregate."""
        return AGGREGATE_CATEGORY_FIELDS[self]


AGGREGATE_CATEGORY_FIELDS = {
    IncomeCategory.CLASS: "class_income",
    IncomeCategory.MEMBERSHIP: "membership_income",
    IncomeCategory.PRODUCT: "product_sales",
    IncomeCategory.OTHER: "other_income",
}


class PaymentTransactionType(str, Enum):
    """Transaction-type tags written on payment records by the payments desk."""

    CLASS = "class"
    MEMBERSHIP = "membership"
    PRODUCT = "product"
    OTHER = "other"
    STAFF_PAYMENT = "staff_payment"
    PRODUCT_PURCHASE = "product_purchase"
    OTHER_EXPENSE = "other_expense"


class PaymentCategory(str, Enum):
    """Reporting categories a payment is classified into."""

    CLASS_INCOME = "class_income"
    MEMBERSHIP_INCOME = "membership_income"
    STAFF_EXPENSE = "staff_expense"
    PRODUCT_EXPENSE = "product_expense"
    OTHER = "other"


class OutboxStatus(str, Enum):
    """Delivery states of a pending aggregate contribution."""

    PENDING = "pending"
    APPLIED = "applied"
    RECONCILED = "reconciled"


__all__ = [
    "AGGREGATE_CATEGORY_FIELDS",
    "Collection",
    "DEFAULT_MAX_TRANSACTION_ATTEMPTS",
    "DEFAULT_RECENT_TRANSACTIONS_LIMIT",
    "DEFAULT_TOP_PRODUCTS_LIMIT",
    "EXPECTED_SCHEMA_VERSION",
    "IncomeCategory",
    "MONTH_NAMES",
    "OutboxStatus",
    "PaymentCategory",
    "PaymentMethod",
    "PaymentTransactionType",
    "ProductStatus",
    "SaleStatus",
]
