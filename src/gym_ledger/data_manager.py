"""Data access helpers for gym-ledger.

This module turns raw store documents into typed records and back, and reads
the ``config.ini`` that tunes the engine. Business logic belongs elsewhere.

The public API covers two responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Record mapping: converting documents of the ``products``, ``sales``,
   ``payments``, ``monthly_income`` and ``aggregate_outbox`` collections into
   frozen dataclasses. Deserializers never raise on bad numbers or dates; they
   route every value through :mod:`gym_ledger.numeric`.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from . import log
from .constants import (
    DEFAULT_MAX_TRANSACTION_ATTEMPTS,
    DEFAULT_RECENT_TRANSACTIONS_LIMIT,
    DEFAULT_TOP_PRODUCTS_LIMIT,
    IncomeCategory,
    OutboxStatus,
    ProductStatus,
    SaleStatus,
)
from .numeric import ensure_date, ensure_int, ensure_number


CONFIG_FILE_NAME = "config.ini"

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock: the current timezone-aware UTC datetime."""
    return datetime.now(UTC)


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    gym_name: str
    schema_version: str
    max_transaction_attempts: int = DEFAULT_MAX_TRANSACTION_ATTEMPTS
    top_products_limit: int = DEFAULT_TOP_PRODUCTS_LIMIT
    recent_transactions_limit: int = DEFAULT_RECENT_TRANSACTIONS_LIMIT


@dataclass(frozen=True)
class YearMonth:
    """Calendar month used as the key of a monthly aggregate."""

    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValueError(f"Month must be between 1 and 12, got {self.month}")

    @property
    def key(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    @classmethod
    def of(cls, moment: datetime) -> "YearMonth":
        return cls(year=moment.year, month=moment.month)

    @classmethod
    def parse(cls, key: str) -> "YearMonth":
        """Parse a ``YYYY-MM`` key."""
        try:
            year_text, month_text = key.split("-")
            return cls(year=int(year_text), month=int(month_text))
        except ValueError as exc:
            raise ValueError(f"Invalid year-month key: {key!r}") from exc

    def ordinal(self) -> int:
        return self.year * 12 + (self.month - 1)

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class ProductRecord:
    """In-memory view of a ``products`` document."""

    product_id: str
    name: str
    price: float
    stock: int
    points: int
    status: str = ProductStatus.ACTIVE.value
    category: Optional[str] = None


@dataclass(frozen=True)
class SaleRecord:
    """Immutable view of a ``sales`` document."""

    sale_id: str
    product_id: str
    product_name: str
    quantity: int
    unit_price: float
    total_amount: float
    buyer_id: Optional[str]
    buyer_name: str
    buyer_email: str
    is_member: bool
    points_awarded: int
    sale_date: Optional[datetime]
    payment_method: str
    status: str
    sold_by: str
    notes: str = ""
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentRecord:
    """Read-only view of a ``payments`` document produced by the payments desk."""

    payment_id: str
    amount: float
    transaction_type: Optional[str]
    is_expense: bool
    payment_date: Optional[datetime]
    payment_method: str
    member_name: str = ""
    class_name: str = ""
    assignment_id: str = ""
    notes: str = ""
    category: Optional[str] = None


@dataclass(frozen=True)
class CategoryTotals:
    """Running ``{total, transactions}`` pair of one income category."""

    total: float = 0.0
    transactions: int = 0


@dataclass(frozen=True)
class MonthlyAggregate:
    """Typed view of a ``monthly_income`` document."""

    year_month: YearMonth
    categories: Mapping[IncomeCategory, CategoryTotals]
    total_income: float
    total_transactions: int

    def category(self, category: IncomeCategory) -> CategoryTotals:
        return self.categories.get(category, CategoryTotals())


@dataclass(frozen=True)
class OutboxEntry:
    """Pending aggregate contribution written alongside a sale."""

    entry_id: str
    year_month: YearMonth
    category: IncomeCategory
    amount: float
    status: str = OutboxStatus.PENDING.value
    created_at: Optional[datetime] = None


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate ``config.ini``.

    An explicit path wins without verification. Otherwise the search walks up
    from the current working directory and returns the first match.

    Raises:
        FileNotFoundError: If no directory up to the root holds the file.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion
            and resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser) -> ConfigSettings:
    """Convert a ``ConfigParser`` into :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Transactions]`` and ``[Reports]``
    are optional and fall back to the package defaults.

    Raises:
        KeyError: If a mandatory section or option is missing.
        ValueError: If a tuning value is not a positive integer.
    """

    try:
        gym_name = parser.get("System", "GymName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    max_attempts = parser.getint(
        "Transactions", "MaxAttempts", fallback=DEFAULT_MAX_TRANSACTION_ATTEMPTS
    )
    top_products = parser.getint("Reports", "TopProductsLimit", fallback=DEFAULT_TOP_PRODUCTS_LIMIT)
    recent = parser.getint(
        "Reports", "RecentTransactionsLimit", fallback=DEFAULT_RECENT_TRANSACTIONS_LIMIT
    )
    for name, value in (
        ("Transactions.MaxAttempts", max_attempts),
        ("Reports.TopProductsLimit", top_products),
        ("Reports.RecentTransactionsLimit", recent),
    ):
        if value < 1:
            raise ValueError(f"{name} must be a positive integer, got {value}")

    return ConfigSettings(
        gym_name=gym_name,
        schema_version=schema_version,
        max_transaction_attempts=max_attempts,
        top_products_limit=top_products,
        recent_transactions_limit=recent,
    )


def _text(value: Any) -> str:
    return str(value) if value is not None else ""


def _optional_text(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def deserialize_product(document: Mapping[str, Any]) -> ProductRecord:
    """Convert a ``products`` document into a :class:`ProductRecord`."""

    return ProductRecord(
        product_id=str(document["id"]),
        name=_text(document.get("name")),
        price=ensure_number(document.get("price")),
        stock=ensure_int(document.get("stock")),
        points=ensure_int(document.get("points")),
        status=_text(document.get("status")) or ProductStatus.ACTIVE.value,
        category=_optional_text(document.get("category")),
    )


def serialize_sale(record: SaleRecord) -> Dict[str, Any]:
    """Convert a :class:`SaleRecord` into the ``sales`` document layout."""

    return {
        "product_id": record.product_id,
        "product_name": record.product_name,
        "quantity": record.quantity,
        "unit_price": record.unit_price,
        "total_amount": record.total_amount,
        "buyer_id": record.buyer_id,
        "buyer_name": record.buyer_name,
        "buyer_email": record.buyer_email,
        "is_member": record.is_member,
        "points_awarded": record.points_awarded,
        "sale_date": record.sale_date,
        "payment_method": record.payment_method,
        "status": record.status,
        "notes": record.notes,
        "sold_by": record.sold_by,
        "created_at": record.created_at,
    }


def deserialize_sale(document: Mapping[str, Any]) -> SaleRecord:
    """Convert a ``sales`` document into a :class:`SaleRecord`.

    Unparsable dates become ``None``; callers decide whether such a sale can
    take part in date-sensitive computations.
    """

    return SaleRecord(
        sale_id=str(document["id"]),
        product_id=_text(document.get("product_id")),
        product_name=_text(document.get("product_name")),
        quantity=ensure_int(document.get("quantity")),
        unit_price=ensure_number(document.get("unit_price")),
        total_amount=ensure_number(document.get("total_amount")),
        buyer_id=_optional_text(document.get("buyer_id")),
        buyer_name=_text(document.get("buyer_name")),
        buyer_email=_text(document.get("buyer_email")),
        is_member=bool(document.get("is_member", False)),
        points_awarded=ensure_int(document.get("points_awarded")),
        sale_date=ensure_date(document.get("sale_date")),
        payment_method=_text(document.get("payment_method")) or "other",
        status=_text(document.get("status")) or SaleStatus.COMPLETED.value,
        sold_by=_text(document.get("sold_by")),
        notes=_text(document.get("notes")),
        created_at=ensure_date(document.get("created_at")),
    )


def deserialize_payment(document: Mapping[str, Any]) -> PaymentRecord:
    """Convert a ``payments`` document into a :class:`PaymentRecord`."""

    return PaymentRecord(
        payment_id=str(document["id"]),
        amount=ensure_number(document.get("amount")),
        transaction_type=_optional_text(document.get("transaction_type")),
        is_expense=bool(document.get("is_expense", False)),
        payment_date=ensure_date(document.get("payment_date")),
        payment_method=_text(document.get("payment_method")) or "other",
        member_name=_text(document.get("member_name")),
        class_name=_text(document.get("class_name")),
        assignment_id=_text(document.get("assignment_id")),
        notes=_text(document.get("notes")),
        category=_optional_text(document.get("category")),
    )


def new_aggregate_document(
    year_month: YearMonth,
    category: IncomeCategory,
    amount: float,
    *,
    now: datetime,
) -> Dict[str, Any]:
    """Build the first ``monthly_income`` document of a month.

    Every category starts at zero except ``category``, which receives
    ``amount`` and one transaction.
    """

    document: Dict[str, Any] = {
        "year": year_month.year,
        "month": year_month.month,
        "total_income": amount,
        "total_transactions": 1,
        "created_at": now,
        "updated_at": now,
    }
    for candidate in IncomeCategory:
        credited = candidate is category
        document[candidate.field_name] = {
            "total": amount if credited else 0.0,
            "transactions": 1 if credited else 0,
        }
    return document


def deserialize_aggregate(document: Mapping[str, Any]) -> Optional[MonthlyAggregate]:
    """Convert a ``monthly_income`` document into a :class:`MonthlyAggregate`.

    Returns ``None`` when the document has no usable year/month, which keeps a
    single corrupt aggregate from breaking reports.
    """

    try:
        year_month = YearMonth(
            year=int(ensure_number(document.get("year"), default=-1)),
            month=int(ensure_number(document.get("month"), default=-1)),
        )
    except ValueError:
        log.warning("Skipping monthly aggregate '%s' with invalid year/month", document.get("id"))
        return None
    if year_month.year < 1:
        log.warning("Skipping monthly aggregate '%s' with invalid year", document.get("id"))
        return None

    categories: Dict[IncomeCategory, CategoryTotals] = {}
    for category in IncomeCategory:
        raw = document.get(category.field_name)
        if not isinstance(raw, Mapping):
            raw = {}
        categories[category] = CategoryTotals(
            total=ensure_number(raw.get("total")),
            transactions=ensure_int(raw.get("transactions")),
        )

    return MonthlyAggregate(
        year_month=year_month,
        categories=categories,
        total_income=ensure_number(document.get("total_income")),
        total_transactions=ensure_int(document.get("total_transactions")),
    )


def serialize_outbox_entry(entry: OutboxEntry) -> Dict[str, Any]:
    """Convert an :class:`OutboxEntry` into the ``aggregate_outbox`` layout."""

    return {
        "year_month": entry.year_month.key,
        "category": entry.category.value,
        "amount": entry.amount,
        "status": entry.status,
        "created_at": entry.created_at,
    }


def deserialize_outbox_entry(document: Mapping[str, Any]) -> OutboxEntry:
    """Convert an ``aggregate_outbox`` document into an :class:`OutboxEntry`.

    Raises:
        ValueError: If the year-month key or category is not recognised.
    """

    return OutboxEntry(
        entry_id=str(document["id"]),
        year_month=YearMonth.parse(_text(document.get("year_month"))),
        category=IncomeCategory(_text(document.get("category"))),
        amount=ensure_number(document.get("amount")),
        status=_text(document.get("status")) or OutboxStatus.PENDING.value,
        created_at=ensure_date(document.get("created_at")),
    )
