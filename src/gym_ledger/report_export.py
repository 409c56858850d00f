"""Excel export of a :class:`~gym_ledger.reports.FinancialReport`."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, List, Sequence

import openpyxl
from openpyxl.styles import Font

from . import log
from .reports import FinancialReport


SHEET_COLUMNS = {
    "Summary": ["Metric", "Value"],
    "Monthly": [
        "Year",
        "Month",
        "TotalRevenue",
        "NetRevenue",
        "ClassIncome",
        "ProductSales",
        "MembershipIncome",
        "OtherIncome",
        "StaffPayments",
        "ProductPayments",
        "Transactions",
    ],
    "PaymentMethods": ["Method", "Amount", "Transactions", "Percentage"],
    "TopProducts": ["ProductName", "Revenue", "Quantity"],
    "StaffPayments": ["StaffName", "TotalAmount", "PaymentCount", "LastPayment", "Concept"],
    "ProductPayments": ["ProductName", "TotalAmount", "PaymentCount", "LastPayment"],
    "RecentTransactions": ["TransactionID", "Type", "Description", "Amount", "Date", "PaymentMethod"],
}


def _cell_value(value: Any) -> Any:
    # openpyxl refuses timezone-aware datetimes; report dates are UTC.
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.replace(tzinfo=None)
    return value


def _report_rows(report: FinancialReport) -> dict:
    summary = report.summary
    return {
        "Summary": [
            ("TotalRevenue", summary.total_revenue),
            ("NetRevenue", summary.net_revenue),
            ("ClassIncome", summary.class_income),
            ("ProductSales", summary.product_sales),
            ("MembershipIncome", summary.membership_income),
            ("OtherIncome", summary.other_income),
            ("StaffPayments", summary.staff_payments),
            ("ProductPayments", summary.product_payments),
            ("TotalTransactions", summary.total_transactions),
            ("AverageTransactionValue", summary.average_transaction_value),
            ("HeuristicClassifications", report.heuristic_classifications),
        ],
        "Monthly": [
            (
                row.year,
                row.month,
                row.total_revenue,
                row.net_revenue,
                row.class_income,
                row.product_sales,
                row.membership_income,
                row.other_income,
                row.staff_payments,
                row.product_payments,
                row.transactions,
            )
            for row in report.monthly_data
        ],
        "PaymentMethods": [
            (row.method, row.amount, row.transactions, row.percentage) for row in report.payment_methods
        ],
        "TopProducts": [(row.product_name, row.revenue, row.quantity) for row in report.top_products],
        "StaffPayments": [
            (row.staff_name, row.total_amount, row.payment_count, row.last_payment, row.concept)
            for row in report.staff_payments
        ],
        "ProductPayments": [
            (row.product_name, row.total_amount, row.payment_count, row.last_payment)
            for row in report.product_payments
        ],
        "RecentTransactions": [
            (row.transaction_id, row.type, row.description, row.amount, row.date, row.payment_method)
            for row in report.recent_transactions
        ],
    }


def export_report(report: FinancialReport, destination: Path) -> Path:
    """Write ``report`` to an ``.xlsx`` workbook, one sheet per section.

    Existing files at ``destination`` are overwritten.

    Returns:
        Path: The resolved path of the written workbook.

    Raises:
        OSError: If the workbook cannot be saved.
    """

    destination = Path(destination).expanduser().resolve()
    destination.parent.mkdir(parents=True, exist_ok=True)

    wb = openpyxl.Workbook()
    if "Sheet" in wb.sheetnames:
        del wb["Sheet"]

    bold_font = Font(bold=True)
    rows_by_sheet = _report_rows(report)
    for sheet_name, columns in SHEET_COLUMNS.items():
        ws = wb.create_sheet(title=sheet_name)
        for col_idx, column_name in enumerate(columns, 1):
            cell = ws.cell(row=1, column=col_idx)
            cell.value = column_name
            cell.font = bold_font
        _append_rows(ws, rows_by_sheet[sheet_name])

    wb.save(destination)
    log.info("Exported financial report to '%s'", destination)
    return destination


def _append_rows(ws: Any, rows: Iterable[Sequence[Any]]) -> None:
    for row in rows:
        values: List[Any] = [_cell_value(value) for value in row]
        ws.append(values)


__all__ = ["SHEET_COLUMNS", "export_report"]
