"""Data access layer for the cash book.

This module provides low-level helpers that read from and write to the
master workbook. Ledger computation and business rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Sheet operations: loading structured records and appending, updating, or
   deleting individual rows.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import Currency, SheetName


CONFIG_FILE_NAME = "config.ini"
SALES_SHEET = SheetName.SALES.value
COSTS_SHEET = SheetName.COSTS.value
MANUAL_ENTRIES_SHEET = SheetName.MANUAL_ENTRIES.value
PRODUCTS_SHEET = SheetName.PRODUCTS.value
ACTIVITY_TYPES_SHEET = SheetName.ACTIVITY_TYPES.value
EXPENSE_TYPES_SHEET = SheetName.EXPENSE_TYPES.value

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SALES_SHEET: [
        "SaleID",
        "Date",
        "ProductID",
        "ActivityTypeID",
        "Channel",
        "QuantitySold",
        "ExchangeRate",
        "AmountFC",
        "AmountUSD",
    ],
    COSTS_SHEET: [
        "CostID",
        "Date",
        "ExpenseTypeID",
        "ActivityTypeID",
        "ExchangeRate",
        "AmountFC",
        "AmountUSD",
    ],
    MANUAL_ENTRIES_SHEET: [
        "EntryID",
        "Date",
        "Description",
        "Direction",
        "AmountFC",
        "AmountUSD",
        "CreatedAt",
        "UpdatedAt",
    ],
    PRODUCTS_SHEET: ["ProductID", "ProductName", "IsActive"],
    ACTIVITY_TYPES_SHEET: ["ActivityTypeID", "ActivityTypeName"],
    EXPENSE_TYPES_SHEET: ["ExpenseTypeID", "ExpenseTypeName"],
}

# Patch keys accepted for manual entries, mapped to their column titles.
MANUAL_ENTRY_FIELDS: Mapping[str, str] = {
    "date": "Date",
    "description": "Description",
    "direction": "Direction",
    "amount_fc": "AmountFC",
    "amount_usd": "AmountUSD",
    "updated_at": "UpdatedAt",
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    default_currency: Currency


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``Sales`` sheet.

    ``date`` keeps the raw cell value; the ledger engine normalizes it.
    """

    sale_id: str
    date: object
    product_id: Optional[str]
    activity_type_id: Optional[str]
    channel: Optional[str]
    quantity_sold: Decimal
    exchange_rate: Optional[Decimal]
    amount_fc: Optional[Decimal]
    amount_usd: Optional[Decimal]


@dataclass(frozen=True)
class CostRow:
    """In-memory view of a row from the ``Costs`` sheet."""

    cost_id: str
    date: object
    expense_type_id: Optional[str]
    activity_type_id: Optional[str]
    exchange_rate: Optional[Decimal]
    amount_fc: Optional[Decimal]
    amount_usd: Optional[Decimal]


@dataclass(frozen=True)
class ManualEntryRow:
    """In-memory view of a row from the ``ManualEntries`` sheet."""

    entry_id: str
    date: object
    description: str
    direction: str
    amount_fc: Optional[Decimal]
    amount_usd: Optional[Decimal]
    created_at: Optional[object] = None
    updated_at: Optional[object] = None


@dataclass(frozen=True)
class NamedRow:
    """Identifier/name pair read from one of the master data sheets."""

    row_id: str
    name: str
    is_active: bool = True


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME`` and returns the first match.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser holding the raw configuration data.
            Validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` must define ``DataFile``, ``BusinessName`` and
    ``SchemaVersion``. ``[Defaults] Currency`` is optional and falls back to
    ``FC``. Relative ``DataFile`` entries are anchored to ``base_path`` (or the
    current working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor relative data file
            paths.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If the default currency is not a supported code.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    currency_raw = parser.get("Defaults", "Currency", fallback=Currency.FC.value)
    try:
        default_currency = Currency(currency_raw.strip().upper())
    except ValueError as exc:
        raise ValueError(f"Unsupported default currency: {currency_raw}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        default_currency=default_currency,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook at ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_raw_rows(workbook: Workbook, sheet_name: str) -> Iterable[tuple]:
    """Yield the non-empty data rows of ``sheet_name`` padded to its width."""

    width = len(SHEET_COLUMNS[sheet_name])
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield _pad(raw, width)


def _pad(raw_row: Sequence[object], width: int) -> tuple:
    values = tuple(raw_row[:width])
    return values + (None,) * (width - len(values))


def iter_sales(workbook: Workbook) -> Iterable[SaleRow]:
    """Stream sale records from the ``Sales`` worksheet.

    Args:
        workbook (Workbook): Workbook containing the sales sheet.

    Yields:
        SaleRow: One structured record per populated row, in sheet order.
    """

    for raw in _iter_raw_rows(workbook, SALES_SHEET):
        yield deserialize_sale(raw)


def iter_costs(workbook: Workbook) -> Iterable[CostRow]:
    """Stream cost records from the ``Costs`` worksheet in sheet order."""

    for raw in _iter_raw_rows(workbook, COSTS_SHEET):
        yield deserialize_cost(raw)


def iter_manual_entries(workbook: Workbook) -> Iterable[ManualEntryRow]:
    """Stream manual cash book entries from the ``ManualEntries`` worksheet."""

    for raw in _iter_raw_rows(workbook, MANUAL_ENTRIES_SHEET):
        yield deserialize_manual_entry(raw)


def iter_products(workbook: Workbook) -> Iterable[NamedRow]:
    for raw in _iter_raw_rows(workbook, PRODUCTS_SHEET):
        product_id, product_name, is_active = raw
        yield NamedRow(
            row_id=str(product_id),
            name=_text(product_name),
            is_active=_flag(is_active),
        )


def iter_activity_types(workbook: Workbook) -> Iterable[NamedRow]:
    for raw in _iter_raw_rows(workbook, ACTIVITY_TYPES_SHEET):
        activity_type_id, activity_type_name = raw
        yield NamedRow(row_id=str(activity_type_id), name=_text(activity_type_name))


def iter_expense_types(workbook: Workbook) -> Iterable[NamedRow]:
    for raw in _iter_raw_rows(workbook, EXPENSE_TYPES_SHEET):
        expense_type_id, expense_type_name = raw
        yield NamedRow(row_id=str(expense_type_id), name=_text(expense_type_name))


def append_sale(workbook: Workbook, record: SaleRow) -> None:
    """Append a sale record to the ``Sales`` worksheet."""

    workbook[SALES_SHEET].append(serialize_sale(record))


def append_cost(workbook: Workbook, record: CostRow) -> None:
    """Append a cost record to the ``Costs`` worksheet."""

    workbook[COSTS_SHEET].append(serialize_cost(record))


def append_manual_entry(workbook: Workbook, record: ManualEntryRow) -> None:
    """Append a manual entry to the ``ManualEntries`` worksheet.

    Args:
        workbook (Workbook): Workbook containing the manual entries sheet.
        record (ManualEntryRow): Entry to persist. Amounts stay
            :class:`~decimal.Decimal` so Excel keeps their precision.
    """

    workbook[MANUAL_ENTRIES_SHEET].append(serialize_manual_entry(record))


def update_manual_entry(workbook: Workbook, entry_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns for an existing manual entry.

    The function locates the row whose ``EntryID`` matches ``entry_id`` and
    writes each value into the column named by :data:`MANUAL_ENTRY_FIELDS`.
    Columns that are not mentioned stay untouched.

    Args:
        workbook (Workbook): Workbook containing the manual entries sheet.
        entry_id (str): Identifier used to locate the target row.
        field_values (Mapping[str, Any]): Patch keyed by attribute name
            (``amount_fc``) or column title (``AmountFC``).

    Raises:
        KeyError: If the entry or any referenced field cannot be found.
    """

    row_index = locate_row(workbook, MANUAL_ENTRIES_SHEET, "EntryID", entry_id)
    if row_index is None:
        raise KeyError(f"Manual entry not found: {entry_id}")

    sheet = workbook[MANUAL_ENTRIES_SHEET]
    header_map = _header_map(sheet)

    for field, value in field_values.items():
        column_title = MANUAL_ENTRY_FIELDS.get(field, field)
        if column_title not in header_map:
            raise KeyError(f"Unknown manual entry field: {field}")
        sheet.cell(row=row_index, column=header_map[column_title], value=_cell_value(value))


def delete_manual_entry(workbook: Workbook, entry_id: str) -> None:
    """Remove the row holding ``entry_id`` from the ``ManualEntries`` sheet.

    Raises:
        KeyError: If no row carries the identifier.
    """

    row_index = locate_row(workbook, MANUAL_ENTRIES_SHEET, "EntryID", entry_id)
    if row_index is None:
        raise KeyError(f"Manual entry not found: {entry_id}")
    workbook[MANUAL_ENTRIES_SHEET].delete_rows(row_index)
    log.debug("Deleted row %d from '%s'", row_index, MANUAL_ENTRIES_SHEET)


def _header_map(sheet) -> Dict[Any, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Values are compared as strings because Excel may hand back numeric ids.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title of the column storing the lookup key.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1] if len(row) >= key_col_index else None
        if cell_value is not None and str(cell_value) == str(key_value):
            return row_idx

    return None


def _cell_value(value: Any) -> Any:
    """Convert enum members to their text so openpyxl can store them."""

    return value.value if isinstance(value, Enum) else value


def serialize_sale(record: SaleRow) -> list[object]:
    """Arrange a sale in the ``Sales`` column order."""

    return [
        record.sale_id,
        record.date,
        record.product_id,
        record.activity_type_id,
        record.channel,
        record.quantity_sold,
        record.exchange_rate,
        record.amount_fc,
        record.amount_usd,
    ]


def serialize_cost(record: CostRow) -> list[object]:
    """Arrange a cost in the ``Costs`` column order."""

    return [
        record.cost_id,
        record.date,
        record.expense_type_id,
        record.activity_type_id,
        record.exchange_rate,
        record.amount_fc,
        record.amount_usd,
    ]


def serialize_manual_entry(record: ManualEntryRow) -> list[object]:
    """Arrange a manual entry in the ``ManualEntries`` column order."""

    return [
        record.entry_id,
        record.date,
        record.description,
        record.direction,
        record.amount_fc,
        record.amount_usd,
        record.created_at,
        record.updated_at,
    ]


def parse_decimal(raw: object) -> Optional[Decimal]:
    """Coerce a cell value into :class:`~decimal.Decimal`.

    Blank cells stay ``None`` so callers can tell a missing amount from a
    zero one. Text that is not a number is logged and treated as missing.
    """

    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None
    if isinstance(raw, bool):
        return None
    try:
        return Decimal(str(raw).strip())
    except InvalidOperation:
        log.warning("Ignoring non-numeric amount cell value %r", raw)
        return None


def _text(raw: object) -> str:
    return str(raw) if raw is not None else ""


def _optional_text(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def _flag(raw: object) -> bool:
    """Read an ``IsActive`` cell; blank means active."""

    if raw is None:
        return True
    if isinstance(raw, str):
        return raw.strip().upper() not in {"FALSE", "0", "NO", "N"}
    return bool(raw)


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Convert a raw ``Sales`` row into a :class:`SaleRow`.

    Identifier columns are coerced to ``str`` so numeric ids typed into Excel
    compare consistently. ``QuantitySold`` defaults to zero when blank.
    """

    (
        sale_id,
        date,
        product_id,
        activity_type_id,
        channel,
        quantity_raw,
        exchange_rate_raw,
        amount_fc_raw,
        amount_usd_raw,
    ) = _pad(raw_row, 9)

    quantity = parse_decimal(quantity_raw)
    return SaleRow(
        sale_id=_text(sale_id),
        date=date,
        product_id=_optional_text(product_id),
        activity_type_id=_optional_text(activity_type_id),
        channel=_optional_text(channel),
        quantity_sold=quantity if quantity is not None else Decimal("0"),
        exchange_rate=parse_decimal(exchange_rate_raw),
        amount_fc=parse_decimal(amount_fc_raw),
        amount_usd=parse_decimal(amount_usd_raw),
    )


def deserialize_cost(raw_row: Sequence[object]) -> CostRow:
    """Convert a raw ``Costs`` row into a :class:`CostRow`."""

    (
        cost_id,
        date,
        expense_type_id,
        activity_type_id,
        exchange_rate_raw,
        amount_fc_raw,
        amount_usd_raw,
    ) = _pad(raw_row, 7)

    return CostRow(
        cost_id=_text(cost_id),
        date=date,
        expense_type_id=_optional_text(expense_type_id),
        activity_type_id=_optional_text(activity_type_id),
        exchange_rate=parse_decimal(exchange_rate_raw),
        amount_fc=parse_decimal(amount_fc_raw),
        amount_usd=parse_decimal(amount_usd_raw),
    )


def deserialize_manual_entry(raw_row: Sequence[object]) -> ManualEntryRow:
    """Convert a raw ``ManualEntries`` row into a :class:`ManualEntryRow`.

    The direction is upper-cased so hand-typed ``credit`` still matches. An
    empty direction is kept empty; the engine then treats the entry as having
    no cash effect.
    """

    (
        entry_id,
        date,
        description,
        direction,
        amount_fc_raw,
        amount_usd_raw,
        created_at,
        updated_at,
    ) = _pad(raw_row, 8)

    return ManualEntryRow(
        entry_id=_text(entry_id),
        date=date,
        description=_text(description),
        direction=_text(direction).strip().upper(),
        amount_fc=parse_decimal(amount_fc_raw),
        amount_usd=parse_decimal(amount_usd_raw),
        created_at=created_at,
        updated_at=updated_at,
    )
