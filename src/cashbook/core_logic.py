"""Business logic layer for the cash book.

This module owns the runtime context (settings plus a live workbook), reads
the three cash sources through the Data Access Layer (DAL), implements the
manual entry store, and assembles the monthly cash book report from the pure
engine in :mod:`cashbook.cash_book`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from openpyxl.workbook import Workbook

from . import cash_book, data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, Currency, EntryDirection


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced entry, product, or type is unknown."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class SaleCommand:
    """User intent for recording a sale (cash in)."""

    product_id: str
    activity_type_id: str
    amount_fc: Decimal
    amount_usd: Decimal
    quantity_sold: Decimal = Decimal("1")
    channel: Optional[str] = None
    exchange_rate: Optional[Decimal] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class CostCommand:
    """User intent for recording a cost (cash out)."""

    expense_type_id: str
    activity_type_id: str
    amount_fc: Decimal
    amount_usd: Decimal
    exchange_rate: Optional[Decimal] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class ManualEntryCommand:
    """User intent for creating a manual cash book entry.

    ``date`` accepts any representation understood by
    :func:`cashbook.cash_book.normalize_timestamp`.
    """

    date: Any
    description: str = ""
    direction: Union[EntryDirection, str] = EntryDirection.DEBIT
    amount_fc: Decimal = Decimal("0")
    amount_usd: Decimal = Decimal("0")


@dataclass(frozen=True)
class CashBookReport:
    """Everything the monthly cash book view renders, computed in one pass."""

    year: int
    month: int
    currency: Currency
    opening_balance: Decimal
    entries: List[cash_book.LedgerEntry]
    summary: cash_book.CashBookSummary
    daily: List[cash_book.DailySummary]
    by_type: cash_book.TransactionTypeSummary
    skipped_references: List[str]
    available_years: List[int] = field(default_factory=list)


# Patch keys accepted by update_manual_entry.
MANUAL_ENTRY_PATCH_FIELDS = frozenset({"date", "description", "direction", "amount_fc", "amount_usd"})


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time.

    Aware values are converted to naive UTC because Excel cells cannot hold a
    timezone.
    """

    moment = candidate if candidate is not None else datetime.now(UTC)
    if moment.tzinfo is not None:
        moment = moment.astimezone(UTC).replace(tzinfo=None)
    return moment


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return the mutable cache bucket dedicated to ``name``.

    Buckets hold records read from one worksheet so repeated reports do not
    rescan the workbook. Writes invalidate the affected bucket.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Missing buckets are ignored so callers can invalidate unconditionally.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_sales_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "sales")
    if "all" not in bucket:
        all_sales = list(data_manager.iter_sales(context.workbook))
        bucket["all"] = all_sales
        bucket["by_id"] = {sale.sale_id: sale for sale in all_sales}
        log.debug("Populated sales cache with %d entries", len(all_sales))
    return bucket


def _ensure_costs_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "costs")
    if "all" not in bucket:
        all_costs = list(data_manager.iter_costs(context.workbook))
        bucket["all"] = all_costs
        bucket["by_id"] = {cost.cost_id: cost for cost in all_costs}
        log.debug("Populated costs cache with %d entries", len(all_costs))
    return bucket


def _ensure_manual_entries_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the manual entry bucket on demand.

    Every store mutation evicts this bucket, so the next read sees the
    workbook as it stands after the write.
    """

    bucket = _get_cache_bucket(context, "manual_entries")
    if "all" not in bucket:
        all_entries = list(data_manager.iter_manual_entries(context.workbook))
        bucket["all"] = all_entries
        bucket["by_id"] = {entry.entry_id: entry for entry in all_entries}
        log.debug("Populated manual entries cache with %d entries", len(all_entries))
    return bucket


def _ensure_master_data_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "master_data")
    if "lookup" not in bucket:
        products = list(data_manager.iter_products(context.workbook))
        bucket["lookup"] = cash_book.MasterData(
            product_names={row.row_id: row.name for row in products},
            activity_type_names={row.row_id: row.name for row in data_manager.iter_activity_types(context.workbook)},
            expense_type_names={row.row_id: row.name for row in data_manager.iter_expense_types(context.workbook)},
        )
        # Inactive products stay in the name lookup for past sales.
        bucket["active_products"] = frozenset(row.row_id for row in products if row.is_active)
        log.debug("Populated master data cache")
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Context bundling the settings, the workbook handle, and
            an empty cache store.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before reading or writing it.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def list_sales(context: RuntimeContext) -> List[data_manager.SaleRow]:
    """Return a snapshot of every sale in sheet order."""
    return list(_ensure_sales_cache(context)["all"])


def list_costs(context: RuntimeContext) -> List[data_manager.CostRow]:
    """Return a snapshot of every cost in sheet order."""
    return list(_ensure_costs_cache(context)["all"])


def list_manual_entries(context: RuntimeContext) -> List[data_manager.ManualEntryRow]:
    """Return the current manual entry set.

    This is the store's read view: it reflects every successful
    :func:`create_manual_entry`, :func:`update_manual_entry`, and
    :func:`delete_manual_entry` made through the same context. The list is a
    copy so callers may sort or filter it freely.
    """
    return list(_ensure_manual_entries_cache(context)["all"])


def get_manual_entry(context: RuntimeContext, entry_id: str) -> data_manager.ManualEntryRow:
    """Resolve a manual entry by identifier.

    Raises:
        MissingReferenceError: If no entry carries ``entry_id``.
    """
    cache = _ensure_manual_entries_cache(context)
    try:
        return cache["by_id"][entry_id]
    except KeyError as exc:
        log.warning("Manual entry lookup failed for id '%s'", entry_id)
        raise MissingReferenceError(f"Unknown manual entry id: {entry_id}") from exc


def load_master_data(context: RuntimeContext) -> cash_book.MasterData:
    """Return the product, activity type, and expense type name lookups."""
    return _ensure_master_data_cache(context)["lookup"]


def record_sale(context: RuntimeContext, command: SaleCommand) -> data_manager.SaleRow:
    """Validate and append a sale.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (SaleCommand): Structured intent describing the sale.

    Returns:
        data_manager.SaleRow: Newly appended sale.

    Raises:
        MissingReferenceError: If the product or activity type is unknown.
        BusinessRuleViolation: If the product is marked inactive.
        ValueError: When an amount is negative or the quantity is not
            positive.
    """
    master = load_master_data(context)
    _require_known(master.product_names, command.product_id, "product")
    if command.product_id not in _ensure_master_data_cache(context)["active_products"]:
        log.error("Sale rejected for inactive product '%s'", command.product_id)
        raise BusinessRuleViolation(f"Product is inactive: {command.product_id}")
    _require_known(master.activity_type_names, command.activity_type_id, "activity type")
    if command.quantity_sold <= Decimal("0"):
        log.error("Quantity validation failed: %s", command.quantity_sold)
        raise ValueError("Quantity must be greater than zero")
    amount_fc = _to_money(command.amount_fc)
    amount_usd = _to_money(command.amount_usd)
    require_nonnegative_money(amount_fc)
    require_nonnegative_money(amount_usd)

    timestamp = _resolve_timestamp(command.timestamp)
    sale = data_manager.SaleRow(
        sale_id=generate_record_id(prefix="S", when=timestamp, existing=_ensure_sales_cache(context)["by_id"]),
        date=timestamp,
        product_id=command.product_id,
        activity_type_id=command.activity_type_id,
        channel=command.channel,
        quantity_sold=command.quantity_sold,
        exchange_rate=command.exchange_rate,
        amount_fc=amount_fc,
        amount_usd=amount_usd,
    )
    data_manager.append_sale(context.workbook, sale)
    _invalidate_cache(context, "sales")
    log.info(
        "Recorded sale '%s' for product '%s' (FC=%s, USD=%s)",
        sale.sale_id,
        command.product_id,
        amount_fc,
        amount_usd,
    )
    return sale


def record_cost(context: RuntimeContext, command: CostCommand) -> data_manager.CostRow:
    """Validate and append a cost.

    Raises:
        MissingReferenceError: If the expense type or activity type is
            unknown.
        ValueError: When an amount is negative.
    """
    master = load_master_data(context)
    _require_known(master.expense_type_names, command.expense_type_id, "expense type")
    _require_known(master.activity_type_names, command.activity_type_id, "activity type")
    amount_fc = _to_money(command.amount_fc)
    amount_usd = _to_money(command.amount_usd)
    require_nonnegative_money(amount_fc)
    require_nonnegative_money(amount_usd)

    timestamp = _resolve_timestamp(command.timestamp)
    cost = data_manager.CostRow(
        cost_id=generate_record_id(prefix="C", when=timestamp, existing=_ensure_costs_cache(context)["by_id"]),
        date=timestamp,
        expense_type_id=command.expense_type_id,
        activity_type_id=command.activity_type_id,
        exchange_rate=command.exchange_rate,
        amount_fc=amount_fc,
        amount_usd=amount_usd,
    )
    data_manager.append_cost(context.workbook, cost)
    _invalidate_cache(context, "costs")
    log.info(
        "Recorded cost '%s' for expense type '%s' (FC=%s, USD=%s)",
        cost.cost_id,
        command.expense_type_id,
        amount_fc,
        amount_usd,
    )
    return cost


def create_manual_entry(context: RuntimeContext, command: ManualEntryCommand) -> str:
    """Validate and append a manual entry, returning its new identifier.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (ManualEntryCommand): Entry date, description, direction, and
            both currency amounts.

    Returns:
        str: Identifier of the stored entry (``M`` followed by a UTC
            timestamp).

    Raises:
        BusinessRuleViolation: If the direction is not ``CREDIT`` or
            ``DEBIT``.
        ValueError: If the date cannot be parsed or an amount is negative.
    """
    direction = require_direction(command.direction)
    entry_date = require_entry_date(command.date)
    amount_fc = _to_money(command.amount_fc)
    amount_usd = _to_money(command.amount_usd)
    require_nonnegative_money(amount_fc)
    require_nonnegative_money(amount_usd)

    now = _resolve_timestamp(None)
    entry = data_manager.ManualEntryRow(
        entry_id=generate_record_id(prefix="M", when=now, existing=_ensure_manual_entries_cache(context)["by_id"]),
        date=entry_date,
        description=command.description or "",
        direction=direction.value,
        amount_fc=amount_fc,
        amount_usd=amount_usd,
        created_at=now,
        updated_at=now,
    )
    data_manager.append_manual_entry(context.workbook, entry)
    _invalidate_cache(context, "manual_entries")
    log.info(
        "Created manual %s entry '%s' dated %s (FC=%s, USD=%s)",
        direction.value,
        entry.entry_id,
        entry_date.date().isoformat(),
        amount_fc,
        amount_usd,
    )
    return entry.entry_id


def update_manual_entry(context: RuntimeContext, entry_id: str, patch: Mapping[str, Any]) -> None:
    """Apply a partial update to an existing manual entry.

    Only the fields present in ``patch`` change; ``updated_at`` is refreshed
    on every successful call.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        entry_id (str): Identifier of the entry to change.
        patch (Mapping[str, Any]): Any of ``date``, ``description``,
            ``direction``, ``amount_fc``, ``amount_usd``.

    Raises:
        MissingReferenceError: If ``entry_id`` is unknown.
        KeyError: If ``patch`` names an unsupported field.
        BusinessRuleViolation: If a new direction is unsupported.
        ValueError: If a new date cannot be parsed or an amount is negative.
    """
    unknown = sorted(set(patch) - MANUAL_ENTRY_PATCH_FIELDS)
    if unknown:
        raise KeyError(f"Unknown manual entry field(s): {', '.join(unknown)}")
    get_manual_entry(context, entry_id)

    values: Dict[str, Any] = {}
    for name, value in patch.items():
        if name == "date":
            values[name] = require_entry_date(value)
        elif name == "direction":
            values[name] = require_direction(value).value
        elif name in ("amount_fc", "amount_usd"):
            amount = _to_money(value)
            require_nonnegative_money(amount)
            values[name] = amount
        else:
            values[name] = "" if value is None else str(value)
    values["updated_at"] = _resolve_timestamp(None)

    data_manager.update_manual_entry(context.workbook, entry_id, field_values=values)
    _invalidate_cache(context, "manual_entries")
    log.info("Updated manual entry '%s' (%s)", entry_id, ", ".join(sorted(patch)) or "no fields")


def delete_manual_entry(context: RuntimeContext, entry_id: str) -> None:
    """Remove a manual entry from the workbook.

    Raises:
        MissingReferenceError: If ``entry_id`` is unknown.
    """
    get_manual_entry(context, entry_id)
    data_manager.delete_manual_entry(context.workbook, entry_id)
    _invalidate_cache(context, "manual_entries")
    log.info("Deleted manual entry '%s'", entry_id)


def build_monthly_cash_book(
    context: RuntimeContext,
    year: int,
    month: int,
    currency: Optional[Union[Currency, str]] = None,
) -> CashBookReport:
    """Rebuild the cash book for one month from the current workbook state.

    The opening balance is recomputed from the full history, the month's
    ledger is built on top of it, and the summary and both roll-ups are
    reduced from that ledger. Nothing is stored.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        year (int): Calendar year.
        month (int): Calendar month, ``1`` for January.
        currency (Currency | str | None): ``"FC"`` or ``"USD"``. Defaults to
            the configured currency.

    Returns:
        CashBookReport: Ledger entries, summary, roll-ups, and the references
            of records excluded for unparseable dates.

    Raises:
        ValueError: If ``month`` is not between 1 and 12 or the currency is
            unsupported.
    """
    if isinstance(month, bool) or not isinstance(month, int) or not 1 <= month <= 12:
        raise ValueError(f"month must be between 1 and 12, got {month!r}")
    resolved = Currency(currency) if currency is not None else context.settings.default_currency

    sales = list_sales(context)
    costs = list_costs(context)
    manual_entries = list_manual_entries(context)
    master = load_master_data(context)

    opening_balance = cash_book.calculate_opening_balance(sales, costs, manual_entries, year, month - 1, resolved)
    entries = cash_book.generate_cash_book(
        sales,
        costs,
        manual_entries,
        year,
        month - 1,
        resolved,
        opening_balance,
        master,
    )
    skipped = cash_book.find_skipped_records(sales, costs, manual_entries)
    report = CashBookReport(
        year=year,
        month=month,
        currency=resolved,
        opening_balance=opening_balance,
        entries=entries,
        summary=cash_book.get_cash_book_summary(entries, opening_balance),
        daily=cash_book.get_daily_summary(entries),
        by_type=cash_book.get_transaction_type_summary(entries),
        skipped_references=skipped,
        available_years=cash_book.available_years(sales, costs, manual_entries),
    )
    log.info(
        "Built cash book %04d-%02d in %s: %d entries, opening=%s closing=%s",
        year,
        month,
        resolved.value,
        len(entries),
        report.summary.opening_balance,
        report.summary.closing_balance,
    )
    if skipped:
        log.warning("%d record(s) excluded for unparseable dates: %s", len(skipped), ", ".join(skipped))
    return report


def generate_record_id(*, prefix: str, when: Optional[datetime] = None, existing: Optional[Mapping[str, Any]] = None) -> str:
    """Generate a sortable identifier from a UTC timestamp.

    The identifier is ``{prefix}{YYYYMMDDHHMMSSffffff}``. When it collides
    with a key of ``existing`` a ``-N`` suffix is appended.
    """
    when = when or _resolve_timestamp(None)
    base = f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"
    candidate = base
    suffix = 1
    while existing is not None and candidate in existing:
        candidate = f"{base}-{suffix}"
        suffix += 1
    return candidate


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def require_direction(direction: Union[EntryDirection, str]) -> EntryDirection:
    """Coerce ``direction`` into :class:`EntryDirection`.

    Raises:
        BusinessRuleViolation: If the value is neither ``CREDIT`` nor
            ``DEBIT``.
    """
    try:
        return EntryDirection(str(getattr(direction, "value", direction)).strip().upper())
    except ValueError as exc:
        log.error("Unsupported manual entry direction: %s", direction)
        raise BusinessRuleViolation(f"Unsupported manual entry direction: {direction}") from exc


def require_entry_date(value: Any) -> datetime:
    """Normalize a manual entry date.

    Raises:
        ValueError: If the value is not a recognizable timestamp.
    """
    moment = cash_book.normalize_timestamp(value)
    if moment is None:
        log.error("Manual entry date validation failed: %r", value)
        raise ValueError(f"Invalid manual entry date: {value!r}")
    return moment


def _to_money(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return amount


def _require_known(lookup: Mapping[str, str], key: str, label: str) -> None:
    if key not in lookup:
        log.warning("Lookup failed for %s '%s'", label, key)
        raise MissingReferenceError(f"Unknown {label} id: {key}")


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook, discarding unsaved changes and every cache.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)
