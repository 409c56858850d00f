"""Tests for the financial report aggregator."""

from __future__ import annotations

import math
from dataclasses import astuple
from datetime import UTC, date, datetime

import pytest

from gym_ledger.aggregates import MonthlyAggregateLedger
from gym_ledger.constants import Collection, IncomeCategory
from gym_ledger.exceptions import MalformedInput
from gym_ledger.reports import FinancialReportAggregator, FinancialSummary


def _at(day: int, month: int = 3, hour: int = 10) -> datetime:
    return datetime(2024, month, day, hour, tzinfo=UTC)


@pytest.fixture
def ledger(store, clock):
    return MonthlyAggregateLedger(store, clock=clock)


@pytest.fixture
def aggregator(store, ledger, clock):
    return FinancialReportAggregator(store, ledger, clock=clock)


async def _put_payment(store, payment_id, amount, when, **fields):
    document = {"amount": amount, "payment_date": when, "payment_method": "cash", "is_expense": False}
    document.update(fields)
    await store.put(Collection.PAYMENTS, payment_id, document)


async def _put_sale(store, sale_id, product_name, quantity, amount, when, method="cash", status="completed"):
    await store.put(
        Collection.SALES,
        sale_id,
        {
            "product_id": product_name.lower(),
            "product_name": product_name,
            "quantity": quantity,
            "total_amount": amount,
            "sale_date": when,
            "payment_method": method,
            "buyer_name": "Walk-in",
            "status": status,
        },
    )


async def _seed_march(store, ledger):
    await _put_payment(
        store, "pay-class", 30.0, _at(2), transaction_type="class", class_name="Spinning", member_name="Ana"
    )
    await _put_payment(
        store, "pay-member", 40.0, _at(3), transaction_type="membership", payment_method="card"
    )
    await _put_payment(
        store,
        "pay-staff",
        500.0,
        _at(5),
        transaction_type="staff_payment",
        is_expense=True,
        payment_method="transfer",
        member_name="Coach Leo",
        notes="salario marzo",
    )
    await _put_payment(
        store,
        "pay-bonus",
        50.0,
        _at(9),
        is_expense=True,
        payment_method="transfer",
        member_name="Coach Leo",
        notes="bono",
    )
    await _put_payment(
        store,
        "pay-stock",
        120.0,
        _at(7),
        transaction_type="product_purchase",
        is_expense=True,
        payment_method="transfer",
        class_name="Whey supplier",
    )
    await _put_sale(store, "sale-1", "Protein Bar", 2, 50.0, _at(4))
    await _put_sale(store, "sale-2", "Water", 3, 7.5, _at(6), method="card")

    await ledger.credit_category("2024-03", IncomeCategory.CLASS, 30.0)
    await ledger.credit_category("2024-03", IncomeCategory.MEMBERSHIP, 40.0)
    await ledger.credit_category("2024-03", IncomeCategory.OTHER, 15.0)
    await ledger.credit_category("2024-03", IncomeCategory.PRODUCT, 57.5)


def _all_numbers(report):
    values = list(astuple(report.summary))
    for section in (report.monthly_data, report.payment_methods, report.top_products):
        for row in section:
            values.extend(value for value in astuple(row) if isinstance(value, (int, float)))
    return values


@pytest.mark.asyncio
async def test_empty_store_gives_all_zero_report(aggregator):
    report = await aggregator.build_report()

    assert report.summary == FinancialSummary()
    assert report.monthly_data == ()
    assert report.payment_methods == ()
    assert report.top_products == ()
    assert report.staff_payments == ()
    assert report.product_payments == ()
    assert report.recent_transactions == ()
    assert report.heuristic_classifications == 0
    assert all(math.isfinite(value) for value in _all_numbers(report))


@pytest.mark.asyncio
async def test_summary_combines_payments_sales_and_aggregates(aggregator, store, ledger):
    await _seed_march(store, ledger)

    summary = (await aggregator.build_report()).summary

    assert summary.class_income == 30.0
    assert summary.product_sales == 57.5
    assert summary.membership_income == 40.0
    assert summary.other_income == 15.0
    assert summary.total_revenue == 142.5
    assert summary.staff_payments == 550.0
    assert summary.product_payments == 120.0
    assert summary.net_revenue == 142.5 - 550.0 - 120.0
    assert summary.total_transactions == 7
    assert summary.average_transaction_value == pytest.approx(142.5 / 7)
    assert summary.total_revenue == (
        summary.class_income + summary.product_sales + summary.membership_income + summary.other_income
    )


@pytest.mark.asyncio
async def test_breakdowns_and_feed(aggregator, store, ledger):
    await _seed_march(store, ledger)

    report = await aggregator.build_report()

    assert report.heuristic_classifications == 1

    [march] = report.monthly_data
    assert (march.month, march.year, march.month_number) == ("March", 2024, 3)
    assert march.total_revenue == 142.5
    assert march.product_sales == 57.5
    assert march.staff_payments == 550.0
    assert march.product_payments == 120.0
    assert march.net_revenue == 142.5 - 670.0
    assert march.transactions == 4

    methods = [(row.method, row.amount, row.transactions) for row in report.payment_methods]
    assert methods == [("transfer", 670.0, 3), ("cash", 80.0, 2), ("card", 47.5, 2)]
    assert sum(row.percentage for row in report.payment_methods) == pytest.approx(100.0)

    assert [(row.product_name, row.revenue, row.quantity) for row in report.top_products] == [
        ("Protein Bar", 50.0, 2),
        ("Water", 7.5, 3),
    ]

    [staff] = report.staff_payments
    assert (staff.staff_name, staff.total_amount, staff.payment_count) == ("Coach Leo", 550.0, 2)
    assert staff.last_payment == _at(9)
    assert staff.concept == "bono"

    [supplier] = report.product_payments
    assert (supplier.product_name, supplier.total_amount, supplier.payment_count) == ("Whey supplier", 120.0, 1)

    feed = report.recent_transactions
    assert len(feed) == 7
    assert [item.date for item in feed] == sorted((item.date for item in feed), reverse=True)
    assert feed[0].transaction_id == "pay-bonus"
    assert feed[0].type == "staff"
    types = {item.transaction_id: item.type for item in feed}
    assert types["pay-stock"] == "product_payment"
    assert types["pay-member"] == "membership"
    assert types["pay-class"] == "class"
    assert types["sale-1"] == "product"


@pytest.mark.asyncio
async def test_building_twice_yields_equal_reports(aggregator, store, ledger):
    await _seed_march(store, ledger)

    assert await aggregator.build_report() == await aggregator.build_report()


@pytest.mark.asyncio
async def test_date_range_filters_every_source(aggregator, store, ledger):
    await _seed_march(store, ledger)
    await _put_payment(store, "pay-feb", 99.0, _at(20, month=2), transaction_type="class")
    await _put_sale(store, "sale-feb", "Protein Bar", 1, 25.0, _at(20, month=2))
    await ledger.credit_category("2024-02", IncomeCategory.MEMBERSHIP, 60.0)

    march = await aggregator.build_report(date(2024, 3, 1), date(2024, 3, 31))
    february = await aggregator.build_report(date(2024, 2, 1), date(2024, 2, 29))

    assert march.summary.class_income == 30.0
    assert march.summary.membership_income == 40.0
    assert [row.month_number for row in march.monthly_data] == [3]
    assert february.summary.class_income == 99.0
    assert february.summary.product_sales == 25.0
    assert february.summary.membership_income == 60.0
    assert february.summary.total_transactions == 2


@pytest.mark.asyncio
async def test_end_date_as_plain_date_includes_the_whole_day(aggregator, store):
    await _put_payment(store, "late", 10.0, datetime(2024, 3, 31, 23, 59, tzinfo=UTC), transaction_type="class")

    report = await aggregator.build_report(date(2024, 3, 1), date(2024, 3, 31))

    assert report.summary.class_income == 10.0


@pytest.mark.asyncio
async def test_single_bound_is_honoured(aggregator, store):
    await _put_sale(store, "old", "Water", 1, 2.5, _at(1, month=1))
    await _put_sale(store, "new", "Water", 1, 2.5, _at(1, month=3))

    report = await aggregator.build_report(start_date=datetime(2024, 2, 1, tzinfo=UTC))

    assert report.summary.product_sales == 2.5


@pytest.mark.asyncio
async def test_default_range_uses_current_year_aggregates(aggregator, ledger):
    await ledger.credit_category("2023-12", IncomeCategory.MEMBERSHIP, 500.0)
    await ledger.credit_category("2024-01", IncomeCategory.MEMBERSHIP, 40.0)

    report = await aggregator.build_report()

    assert report.summary.membership_income == 40.0
    assert [(row.year, row.month_number) for row in report.monthly_data] == [(2024, 1)]


@pytest.mark.asyncio
async def test_malformed_values_are_neutralized(aggregator, store):
    await _put_payment(store, "bad-amount", "abc", _at(2), transaction_type="class")
    await _put_payment(store, "bad-date", 10.0, "someday", transaction_type="class")
    await _put_sale(store, "bad-sale", "Water", "x", float("nan"), "not a date")
    await _put_sale(store, "cancelled", "Water", 1, 2.5, _at(2), status="cancelled")
    await store.put(Collection.MONTHLY_INCOME, "2024-03", {"year": 2024, "month": 3, "other_income": "??"})

    report = await aggregator.build_report()

    assert all(math.isfinite(value) for value in _all_numbers(report))
    assert report.summary.class_income == 10.0
    assert report.summary.product_sales == 0.0
    assert report.summary.other_income == 0.0
    assert [item.transaction_id for item in report.recent_transactions] == ["bad-amount"]
    assert report.top_products == ()


@pytest.mark.asyncio
async def test_invalid_range_bound_raises(aggregator):
    with pytest.raises(MalformedInput):
        await aggregator.build_report(start_date="next tuesday")


@pytest.mark.asyncio
async def test_top_products_and_recent_feed_are_capped(store, ledger, clock):
    for index in range(12):
        await _put_sale(store, f"s{index:02d}", f"Product {index:02d}", 1, float(index + 1), _at(index + 1))
    for index in range(13):
        await _put_payment(store, f"p{index:02d}", 5.0, _at(index + 1, hour=12), transaction_type="class")

    default_report = await FinancialReportAggregator(store, ledger, clock=clock).build_report()
    tight_report = await FinancialReportAggregator(
        store, ledger, clock=clock, top_products_limit=3, recent_transactions_limit=5
    ).build_report()

    assert len(default_report.top_products) == 10
    assert default_report.top_products[0].product_name == "Product 11"
    assert len(default_report.recent_transactions) == 20
    assert [row.product_name for row in tight_report.top_products] == ["Product 11", "Product 10", "Product 09"]
    assert len(tight_report.recent_transactions) == 5
    assert tight_report.recent_transactions[0].transaction_id == "p12"
