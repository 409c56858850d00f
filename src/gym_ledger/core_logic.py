"""Runtime wiring for gym-ledger.

This module assembles the components (product ledger, sale coordinator,
monthly aggregate ledger and report aggregator) around an injected document
store and exposes thin coroutine facades over them. Callers own the store; the
library never opens a database connection of its own.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import data_manager, log
from .aggregates import MonthlyAggregateLedger, OutboxReplayResult, ReconciliationResult, YearMonthLike
from .classification import backfill_payment_categories as _backfill_payment_categories
from .constants import EXPECTED_SCHEMA_VERSION
from .document_store import DocumentStore
from .products import ProductLedger
from .report_export import export_report
from .reports import DateBound, FinancialReport, FinancialReportAggregator
from .sales import SaleCommand, SaleResult, SaleTransactionCoordinator


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, the injected store and the components built on it."""

    settings: data_manager.ConfigSettings
    store: DocumentStore
    products: ProductLedger
    sales: SaleTransactionCoordinator
    ledger: MonthlyAggregateLedger
    reports: FinancialReportAggregator


def build_runtime_context(
    settings: data_manager.ConfigSettings,
    store: DocumentStore,
    clock: Optional[data_manager.Clock] = None,
) -> RuntimeContext:
    """Wire every component around ``store``.

    The store adopts the configured transaction attempt budget.

    Args:
        settings (data_manager.ConfigSettings): Parsed configuration providing
            the report limits and the transaction attempt budget.
        store (DocumentStore): Document store shared by all components.
        clock (Clock | None): Source of "now". Defaults to
            :func:`data_manager.utc_now`; tests pass a fixed clock.

    Returns:
        RuntimeContext: Context ready for the facade coroutines.
    """
    if store.max_attempts != settings.max_transaction_attempts:
        log.debug(
            "Setting store transaction budget from %d to %d attempts",
            store.max_attempts,
            settings.max_transaction_attempts,
        )
        store.max_attempts = settings.max_transaction_attempts
    clock = clock or data_manager.utc_now
    products = ProductLedger(store)
    ledger = MonthlyAggregateLedger(store, clock=clock)
    sales = SaleTransactionCoordinator(store, products, ledger, clock=clock)
    reports = FinancialReportAggregator(
        store,
        ledger,
        clock=clock,
        top_products_limit=settings.top_products_limit,
        recent_transactions_limit=settings.recent_transactions_limit,
    )
    return RuntimeContext(
        settings=settings,
        store=store,
        products=products,
        sales=sales,
        ledger=ledger,
        reports=reports,
    )


def load_runtime_context(
    store: DocumentStore,
    config_path: Optional[Path] = None,
    clock: Optional[data_manager.Clock] = None,
) -> RuntimeContext:
    """Load ``config.ini`` and build a :class:`RuntimeContext` around ``store``.

    Args:
        store (DocumentStore): Document store supplied by the host application.
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.
        clock (Clock | None): Optional clock override.

    Returns:
        RuntimeContext: Fully wired context.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
        ValueError: When a tuning option is not a positive integer.
    """
    located_config = data_manager.find_config_file(config_path)
    parser = data_manager.read_config(Path(located_config))
    settings = data_manager.parse_settings(parser)
    log.info("Loaded runtime context for gym '%s'", settings.gym_name)
    return build_runtime_context(settings, store, clock)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate store compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Store schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Store schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


async def record_sale(context: RuntimeContext, command: SaleCommand) -> SaleResult:
    """Execute a sale through the coordinator after the schema check.

    See :meth:`SaleTransactionCoordinator.record_sale` for the raised errors.
    """
    ensure_schema_version(context)
    return await context.sales.record_sale(command)


async def build_report(
    context: RuntimeContext,
    start_date: DateBound = None,
    end_date: DateBound = None,
) -> FinancialReport:
    return await context.reports.build_report(start_date, end_date)


async def export_financial_report(
    context: RuntimeContext,
    destination: Path,
    start_date: DateBound = None,
    end_date: DateBound = None,
) -> Path:
    """Build the report for the range and write it as an Excel workbook."""
    report = await context.reports.build_report(start_date, end_date)
    return export_report(report, destination)


async def replay_outbox(context: RuntimeContext) -> OutboxReplayResult:
    ensure_schema_version(context)
    return await context.ledger.replay_outbox()


async def reconcile_month(
    context: RuntimeContext,
    year_month: YearMonthLike,
    *,
    repair: bool = False,
) -> ReconciliationResult:
    """Compare (and with ``repair`` fix) one closed month's aggregate."""
    if repair:
        ensure_schema_version(context)
    return await context.ledger.reconcile_month(year_month, repair=repair)


async def backfill_payment_categories(context: RuntimeContext) -> int:
    ensure_schema_version(context)
    return await _backfill_payment_categories(context.store)


__all__ = [
    "RuntimeContext",
    "backfill_payment_categories",
    "build_report",
    "build_runtime_context",
    "ensure_schema_version",
    "export_financial_report",
    "load_runtime_context",
    "reconcile_month",
    "record_sale",
    "replay_outbox",
]
