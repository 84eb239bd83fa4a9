"""Unit tests verifying the business logic layer with a mocked data access layer."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

from cashbook import constants, core_logic, data_manager
from cashbook.constants import Currency, EntryDirection, TransactionType


@pytest.fixture
def master_rows(monkeypatch):
    """Serve a small set of master data rows from the mocked DAL."""

    monkeypatch.setattr(
        data_manager,
        "iter_products",
        Mock(
            return_value=[
                data_manager.NamedRow("P1", "Oak Chair"),
                data_manager.NamedRow("P2", "Walnut Desk", is_active=False),
            ]
        ),
    )
    monkeypatch.setattr(
        data_manager,
        "iter_activity_types",
        Mock(return_value=[data_manager.NamedRow("A1", "Carpentry")]),
    )
    monkeypatch.setattr(
        data_manager,
        "iter_expense_types",
        Mock(return_value=[data_manager.NamedRow("E1", "Timber")]),
    )


@pytest.fixture
def stored_entries(monkeypatch):
    """Back the manual entry store with an in-memory list."""

    entries = [
        data_manager.ManualEntryRow(
            entry_id="M1",
            date=datetime(2024, 1, 10),
            description="Owner top-up",
            direction="CREDIT",
            amount_fc=Decimal("250000"),
            amount_usd=Decimal("100"),
        )
    ]
    iter_mock = Mock(side_effect=lambda workbook: list(entries))
    monkeypatch.setattr(data_manager, "iter_manual_entries", iter_mock)
    return iter_mock


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path):
    """load_runtime_context should assemble settings and workbook into a context."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    parsed_settings = data_manager.ConfigSettings(
        data_file=tmp_path / "cashbook_data.xlsx",
        business_name="Workshop",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_currency=Currency.FC,
    )
    workbook = Mock(name="workbook")

    find_config_file = Mock(return_value=config_path)
    read_config = Mock(return_value=parser)
    parse_settings = Mock(return_value=parsed_settings)
    open_workbook = Mock(return_value=workbook)

    monkeypatch.setattr(data_manager, "find_config_file", find_config_file)
    monkeypatch.setattr(data_manager, "read_config", read_config)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    monkeypatch.setattr(data_manager, "open_workbook", open_workbook)

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is parsed_settings
    assert context.workbook is workbook
    find_config_file.assert_called_once_with(config_path)
    read_config.assert_called_once_with(config_path.resolve())
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    open_workbook.assert_called_once_with(parsed_settings.data_file)


def test_ensure_schema_version_rejects_mismatch(context):
    """Schema mismatches should surface a RuntimeError with clear messaging."""

    bad_settings = replace(context.settings, schema_version="0.9")
    bad_context = core_logic.RuntimeContext(settings=bad_settings, workbook=context.workbook)
    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(bad_context)


def test_refresh_context_drops_cache(monkeypatch, context, stored_entries):
    core_logic.list_manual_entries(context)
    fresh_workbook = Mock(name="fresh")
    monkeypatch.setattr(data_manager, "refresh_workbook", Mock(return_value=fresh_workbook))

    refreshed = core_logic.refresh_context(context)

    assert refreshed.workbook is fresh_workbook
    assert refreshed.settings is context.settings
    assert refreshed._cache == {}


def test_persist_context_saves_to_configured_file(monkeypatch, context):
    save_workbook = Mock()
    monkeypatch.setattr(data_manager, "save_workbook", save_workbook)

    core_logic.persist_context(context)

    save_workbook.assert_called_once_with(context.workbook, destination=context.settings.data_file)


# ---------------------------------------------------------------------------
# Manual entry store
# ---------------------------------------------------------------------------


def test_list_manual_entries_reads_workbook_once(context, stored_entries):
    """Repeated reads should be served from the cache bucket."""

    first = core_logic.list_manual_entries(context)
    second = core_logic.list_manual_entries(context)

    assert [entry.entry_id for entry in first] == ["M1"]
    assert first == second
    assert first is not second
    stored_entries.assert_called_once_with(context.workbook)


def test_get_manual_entry_unknown_id_raises(context, stored_entries):
    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.get_manual_entry(context, "M404")


def test_create_manual_entry_appends_and_returns_id(monkeypatch, context, stored_entries, set_fixed_datetime):
    moment = set_fixed_datetime(datetime(2024, 3, 1, 12, 0, 0))
    append = Mock()
    monkeypatch.setattr(data_manager, "append_manual_entry", append)
    core_logic.list_manual_entries(context)

    entry_id = core_logic.create_manual_entry(
        context,
        core_logic.ManualEntryCommand(
            date="2024-02-29",
            description="Float for the till",
            direction="credit",
            amount_fc=Decimal("50000"),
            amount_usd=Decimal("20"),
        ),
    )

    assert entry_id == "M20240301120000000000"
    append.assert_called_once()
    workbook_arg, record = append.call_args.args
    assert workbook_arg is context.workbook
    assert record.entry_id == entry_id
    assert record.date == datetime(2024, 2, 29)
    assert record.direction == "CREDIT"
    assert record.amount_usd == Decimal("20")
    assert record.created_at == record.updated_at == moment
    assert "manual_entries" not in context._cache


def test_create_manual_entry_rejects_unknown_direction(monkeypatch, context, stored_entries):
    append = Mock()
    monkeypatch.setattr(data_manager, "append_manual_entry", append)

    with pytest.raises(core_logic.BusinessRuleViolation):
        core_logic.create_manual_entry(
            context,
            core_logic.ManualEntryCommand(date="2024-02-29", direction="SIDEWAYS"),
        )
    append.assert_not_called()


@pytest.mark.parametrize(
    "command",
    [
        core_logic.ManualEntryCommand(date="someday"),
        core_logic.ManualEntryCommand(date=None),
        core_logic.ManualEntryCommand(date="2024-02-29", amount_usd=Decimal("-1")),
        core_logic.ManualEntryCommand(date="2024-02-29", amount_fc="lots"),
    ],
)
def test_create_manual_entry_rejects_invalid_values(monkeypatch, context, stored_entries, command):
    append = Mock()
    monkeypatch.setattr(data_manager, "append_manual_entry", append)

    with pytest.raises(ValueError):
        core_logic.create_manual_entry(context, command)
    append.assert_not_called()


def test_update_manual_entry_writes_only_patched_fields(monkeypatch, context, stored_entries, set_fixed_datetime):
    moment = set_fixed_datetime(datetime(2024, 3, 2, 8, 0, 0))
    update = Mock()
    monkeypatch.setattr(data_manager, "update_manual_entry", update)

    core_logic.update_manual_entry(
        context,
        "M1",
        {"direction": EntryDirection.DEBIT, "amount_usd": "12.50"},
    )

    update.assert_called_once_with(
        context.workbook,
        "M1",
        field_values={"direction": "DEBIT", "amount_usd": Decimal("12.50"), "updated_at": moment},
    )
    assert "manual_entries" not in context._cache


def test_update_manual_entry_rejects_unknown_field(monkeypatch, context, stored_entries):
    update = Mock()
    monkeypatch.setattr(data_manager, "update_manual_entry", update)

    with pytest.raises(KeyError):
        core_logic.update_manual_entry(context, "M1", {"entry_id": "M2"})
    update.assert_not_called()


def test_update_manual_entry_unknown_id_raises(monkeypatch, context, stored_entries):
    monkeypatch.setattr(data_manager, "update_manual_entry", Mock())

    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.update_manual_entry(context, "M404", {"description": "x"})


def test_delete_manual_entry_invalidates_cache(monkeypatch, context, stored_entries):
    delete = Mock()
    monkeypatch.setattr(data_manager, "delete_manual_entry", delete)
    core_logic.list_manual_entries(context)

    core_logic.delete_manual_entry(context, "M1")

    delete.assert_called_once_with(context.workbook, "M1")
    assert "manual_entries" not in context._cache


def test_delete_manual_entry_unknown_id_raises(monkeypatch, context, stored_entries):
    delete = Mock()
    monkeypatch.setattr(data_manager, "delete_manual_entry", delete)

    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.delete_manual_entry(context, "M404")
    delete.assert_not_called()


# ---------------------------------------------------------------------------
# Sales and costs
# ---------------------------------------------------------------------------


def test_record_sale_appends_row(monkeypatch, context, master_rows):
    monkeypatch.setattr(data_manager, "iter_sales", Mock(return_value=[]))
    append = Mock()
    monkeypatch.setattr(data_manager, "append_sale", append)

    sale = core_logic.record_sale(
        context,
        core_logic.SaleCommand(
            product_id="P1",
            activity_type_id="A1",
            amount_fc=Decimal("250000"),
            amount_usd=Decimal("100"),
            channel="Shop",
            timestamp=datetime(2024, 1, 15, 9, 30),
        ),
    )

    assert sale.sale_id == "S20240115093000000000"
    assert sale.date == datetime(2024, 1, 15, 9, 30)
    assert sale.channel == "Shop"
    append.assert_called_once_with(context.workbook, sale)


def test_record_sale_rejects_inactive_product(monkeypatch, context, master_rows):
    append = Mock()
    monkeypatch.setattr(data_manager, "append_sale", append)

    with pytest.raises(core_logic.BusinessRuleViolation):
        core_logic.record_sale(
            context,
            core_logic.SaleCommand("P2", "A1", Decimal("1"), Decimal("1")),
        )
    append.assert_not_called()


def test_inactive_product_still_names_past_sales(context, master_rows):
    assert core_logic.load_master_data(context).product_names["P2"] == "Walnut Desk"


def test_record_sale_rejects_unknown_product(monkeypatch, context, master_rows):
    append = Mock()
    monkeypatch.setattr(data_manager, "append_sale", append)

    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.record_sale(
            context,
            core_logic.SaleCommand("P9", "A1", Decimal("1"), Decimal("1")),
        )
    append.assert_not_called()


@pytest.mark.parametrize(
    "command",
    [
        core_logic.SaleCommand("P1", "A1", Decimal("1"), Decimal("1"), quantity_sold=Decimal("0")),
        core_logic.SaleCommand("P1", "A1", Decimal("-1"), Decimal("1")),
    ],
)
def test_record_sale_rejects_invalid_values(monkeypatch, context, master_rows, command):
    append = Mock()
    monkeypatch.setattr(data_manager, "append_sale", append)

    with pytest.raises(ValueError):
        core_logic.record_sale(context, command)
    append.assert_not_called()


def test_record_cost_appends_row(monkeypatch, context, master_rows):
    monkeypatch.setattr(data_manager, "iter_costs", Mock(return_value=[]))
    append = Mock()
    monkeypatch.setattr(data_manager, "append_cost", append)

    cost = core_logic.record_cost(
        context,
        core_logic.CostCommand(
            expense_type_id="E1",
            activity_type_id="A1",
            amount_fc=Decimal("90000"),
            amount_usd=Decimal("36"),
            timestamp=datetime(2024, 1, 16),
        ),
    )

    assert cost.cost_id.startswith("C20240116")
    assert cost.amount_usd == Decimal("36")
    append.assert_called_once_with(context.workbook, cost)


def test_record_cost_rejects_unknown_expense_type(monkeypatch, context, master_rows):
    monkeypatch.setattr(data_manager, "append_cost", Mock())

    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.record_cost(context, core_logic.CostCommand("E9", "A1", Decimal("1"), Decimal("1")))


def test_generate_record_id_appends_suffix_on_collision():
    when = datetime(2024, 1, 1)
    existing = {"M20240101000000000000": object(), "M20240101000000000000-1": object()}

    assert core_logic.generate_record_id(prefix="M", when=when, existing=existing) == "M20240101000000000000-2"


# ---------------------------------------------------------------------------
# Monthly report
# ---------------------------------------------------------------------------


@pytest.fixture
def report_sources(monkeypatch, master_rows):
    sales = [
        data_manager.SaleRow("S1", datetime(2023, 12, 28), "P1", "A1", None, Decimal("1"), None, Decimal("100000"), Decimal("40")),
        data_manager.SaleRow("S2", datetime(2024, 1, 5), "P1", "A1", "Shop", Decimal("2"), None, Decimal("250000"), Decimal("100")),
        data_manager.SaleRow("S3", "n/a", "P1", "A1", None, Decimal("1"), None, Decimal("1"), Decimal("1")),
    ]
    costs = [
        data_manager.CostRow("C1", datetime(2024, 1, 10), "E1", "A1", None, Decimal("100000"), Decimal("40")),
    ]
    entries = [
        data_manager.ManualEntryRow("M1", datetime(2024, 1, 20), "Bank charges", "DEBIT", Decimal("25000"), Decimal("10")),
    ]
    monkeypatch.setattr(data_manager, "iter_sales", Mock(return_value=sales))
    monkeypatch.setattr(data_manager, "iter_costs", Mock(return_value=costs))
    monkeypatch.setattr(data_manager, "iter_manual_entries", Mock(return_value=entries))


def test_build_monthly_cash_book_uses_configured_currency(context, report_sources):
    report = core_logic.build_monthly_cash_book(context, 2024, 1)

    assert report.currency is Currency.USD
    assert report.opening_balance == Decimal("40")
    assert [entry.balance for entry in report.entries] == [Decimal("140"), Decimal("100"), Decimal("90")]
    assert report.entries[0].description == "Oak Chair - Carpentry (Shop)"
    assert report.summary.closing_balance == Decimal("90")
    assert report.by_type.by_type[TransactionType.MANUAL].cash_out == Decimal("10")
    assert len(report.daily) == 3
    assert report.skipped_references == ["SALE:S3"]
    assert report.available_years == [2024, 2023]


def test_build_monthly_cash_book_honours_currency_override(context, report_sources):
    report = core_logic.build_monthly_cash_book(context, 2024, 1, "FC")

    assert report.currency is Currency.FC
    assert report.opening_balance == Decimal("100000")
    assert report.summary.closing_balance == Decimal("225000")


@pytest.mark.parametrize("month", [0, 13])
def test_build_monthly_cash_book_rejects_month_outside_calendar(context, report_sources, month):
    with pytest.raises(ValueError):
        core_logic.build_monthly_cash_book(context, 2024, month)


def test_build_monthly_cash_book_reflects_store_changes(monkeypatch, context, report_sources):
    """A write between two builds shows up in the second build."""

    before = core_logic.build_monthly_cash_book(context, 2024, 1)
    monkeypatch.setattr(
        data_manager,
        "iter_manual_entries",
        Mock(return_value=[]),
    )
    monkeypatch.setattr(data_manager, "delete_manual_entry", Mock())

    core_logic.delete_manual_entry(context, "M1")
    after = core_logic.build_monthly_cash_book(context, 2024, 1)

    assert before.summary.closing_balance == Decimal("90")
    assert after.summary.closing_balance == Decimal("100")
