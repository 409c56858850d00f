"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from datetime import UTC, datetime
from pathlib import Path

import pytest

from gym_ledger import constants, data_manager
from gym_ledger.constants import IncomeCategory


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_parent_directories(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nGymName=Test Gym\n")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    parser = data_manager.read_config(config_file)
    assert parser.get("System", "GymName") == "Test Gym"
    assert parser.getint("Reports", "TopProductsLimit") == 10


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_reads_all_sections(config_factory):
    bundle = config_factory(gym_name="Iron Temple", max_attempts=7, top_products=3, recent=4)

    settings = data_manager.parse_settings(data_manager.read_config(bundle.config_path))

    assert settings == data_manager.ConfigSettings(
        gym_name="Iron Temple",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        max_transaction_attempts=7,
        top_products_limit=3,
        recent_transactions_limit=4,
    )


def test_parse_settings_applies_defaults_for_optional_sections():
    parser = configparser.ConfigParser()
    parser.read_string("[System]\nGymName = Test Gym\nSchemaVersion = 1.0.0\n")

    settings = data_manager.parse_settings(parser)

    assert settings.max_transaction_attempts == constants.DEFAULT_MAX_TRANSACTION_ATTEMPTS
    assert settings.top_products_limit == constants.DEFAULT_TOP_PRODUCTS_LIMIT
    assert settings.recent_transactions_limit == constants.DEFAULT_RECENT_TRANSACTIONS_LIMIT


def test_parse_settings_requires_system_section():
    parser = configparser.ConfigParser()
    parser.read_string("[Reports]\nTopProductsLimit = 5\n")

    with pytest.raises(KeyError):
        data_manager.parse_settings(parser)


def test_parse_settings_rejects_non_positive_limits(config_factory):
    bundle = config_factory(recent=0)
    with pytest.raises(ValueError):
        data_manager.parse_settings(data_manager.read_config(bundle.config_path))


def test_year_month_key_parse_and_ordering():
    ym = data_manager.YearMonth.parse("2024-03")

    assert ym == data_manager.YearMonth(2024, 3)
    assert ym.key == "2024-03"
    assert str(ym) == "2024-03"
    assert data_manager.YearMonth.of(datetime(2024, 3, 31, 23, 59, tzinfo=UTC)) == ym
    assert data_manager.YearMonth(2023, 12).ordinal() + 1 == data_manager.YearMonth(2024, 1).ordinal()


@pytest.mark.parametrize("key", ["2024-13", "2024", "March 2024", "2024-00"])
def test_year_month_parse_rejects_invalid_keys(key):
    with pytest.raises(ValueError):
        data_manager.YearMonth.parse(key)


def test_deserialize_product_tolerates_malformed_numbers():
    product = data_manager.deserialize_product(
        {"id": "p1", "name": "Shaker", "price": "12.5", "stock": "n/a", "points": None}
    )

    assert product == data_manager.ProductRecord(
        product_id="p1",
        name="Shaker",
        price=12.5,
        stock=0,
        points=0,
        status="active",
        category=None,
    )


def test_sale_serialization_matches_document_layout():
    moment = datetime(2024, 3, 15, 12, tzinfo=UTC)
    record = data_manager.SaleRecord(
        sale_id="s1",
        product_id="p1",
        product_name="Protein Bar",
        quantity=2,
        unit_price=25.0,
        total_amount=50.0,
        buyer_id="u1",
        buyer_name="Ana",
        buyer_email="ana@example.com",
        is_member=True,
        points_awarded=10,
        sale_date=moment,
        payment_method="cash",
        status="completed",
        sold_by="staff-1",
        created_at=moment,
    )

    document = data_manager.serialize_sale(record)
    assert "id" not in document
    assert document["total_amount"] == 50.0
    assert data_manager.deserialize_sale({"id": "s1", **document}) == record


def test_deserialize_sale_discards_unparsable_dates():
    sale = data_manager.deserialize_sale({"id": "s1", "sale_date": "garbage", "total_amount": "x"})

    assert sale.sale_date is None
    assert sale.total_amount == 0.0
    assert sale.status == "completed"
    assert sale.payment_method == "other"


def test_deserialize_payment_reads_optional_category():
    payment = data_manager.deserialize_payment(
        {
            "id": "pay1",
            "amount": "30",
            "transaction_type": "class",
            "is_expense": False,
            "payment_date": "2024-03-02T09:00:00Z",
            "payment_method": "card",
            "category": "class_income",
        }
    )

    assert payment.amount == 30.0
    assert payment.payment_date == datetime(2024, 3, 2, 9, tzinfo=UTC)
    assert payment.category == "class_income"
    assert payment.notes == ""


def test_new_aggregate_document_credits_a_single_category():
    now = datetime(2024, 3, 1, tzinfo=UTC)
    document = data_manager.new_aggregate_document(
        data_manager.YearMonth(2024, 3), IncomeCategory.PRODUCT, 50.0, now=now
    )

    assert document["product_sales"] == {"total": 50.0, "transactions": 1}
    assert document["class_income"] == {"total": 0.0, "transactions": 0}
    assert document["total_income"] == 50.0
    assert document["total_transactions"] == 1
    assert (document["year"], document["month"]) == (2024, 3)


def test_deserialize_aggregate_handles_missing_maps_and_bad_months():
    aggregate = data_manager.deserialize_aggregate(
        {"id": "2024-03", "year": 2024, "month": 3, "product_sales": {"total": "10"}}
    )
    assert aggregate is not None
    assert aggregate.category(IncomeCategory.PRODUCT).total == 10.0
    assert aggregate.category(IncomeCategory.CLASS) == data_manager.CategoryTotals()

    assert data_manager.deserialize_aggregate({"id": "bad", "year": 2024, "month": 14}) is None
    assert data_manager.deserialize_aggregate({"id": "bad"}) is None


def test_outbox_entry_round_trip_and_validation():
    entry = data_manager.OutboxEntry(
        entry_id="s1",
        year_month=data_manager.YearMonth(2024, 3),
        category=IncomeCategory.PRODUCT,
        amount=50.0,
    )
    document = {"id": "s1", **data_manager.serialize_outbox_entry(entry)}

    assert document["year_month"] == "2024-03"
    assert data_manager.deserialize_outbox_entry(document) == entry

    with pytest.raises(ValueError):
        data_manager.deserialize_outbox_entry({**document, "category": "snacks"})
