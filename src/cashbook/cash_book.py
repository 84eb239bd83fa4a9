"""Cash book ledger engine.

Rebuilds a month of the cash book from the three source collections (sales,
costs, and manual entries) every time it is asked. Nothing in this module
performs I/O or keeps state between calls: callers hand in snapshots of the
sources and receive freshly computed entries and summaries.

The data flow mirrors the report it feeds:

1. :func:`calculate_opening_balance` folds everything dated before the month.
2. :func:`generate_cash_book` orders the month's movements and carries the
   running balance forward from that opening balance.
3. :func:`get_cash_book_summary`, :func:`get_daily_summary`, and
   :func:`get_transaction_type_summary` reduce the entries for reporting.

Records whose date cannot be parsed are left out of both the opening balance
and the ledger, and a missing amount counts as zero. Neither condition
raises; :func:`find_skipped_records` reports the excluded references.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Iterator, List, Mapping, NamedTuple, Optional, Tuple, Union

from . import log
from .constants import Currency, EntryDirection, TransactionType
from .data_manager import CostRow, ManualEntryRow, SaleRow


ZERO = Decimal("0")
_EPOCH = datetime(1970, 1, 1)

SourceRecord = Union[SaleRow, CostRow, ManualEntryRow]

# Same-instant movements list sales first, then costs, then manual entries.
_TYPE_ORDER: Mapping[TransactionType, int] = {
    TransactionType.SALE: 0,
    TransactionType.COST: 1,
    TransactionType.MANUAL: 2,
}


@dataclass(frozen=True)
class EpochTimestamp:
    """Point in time stored as seconds since the Unix epoch (UTC)."""

    seconds: int
    nanoseconds: int = 0

    def to_datetime(self) -> datetime:
        moment = datetime.fromtimestamp(self.seconds, UTC)
        return (moment + timedelta(microseconds=self.nanoseconds // 1000)).replace(tzinfo=None)


@dataclass(frozen=True)
class MasterData:
    """Identifier to display-name lookups used for entry descriptions."""

    product_names: Mapping[str, str] = field(default_factory=dict)
    activity_type_names: Mapping[str, str] = field(default_factory=dict)
    expense_type_names: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class LedgerEntry:
    """One row of the cash book carrying the running balance."""

    date: datetime
    description: str
    transaction_type: TransactionType
    reference: str
    cash_in: Decimal
    cash_out: Decimal
    balance: Decimal


@dataclass(frozen=True)
class CashBookSummary:
    """Opening/closing balances and the period's totals."""

    opening_balance: Decimal
    total_cash_in: Decimal
    total_cash_out: Decimal
    closing_balance: Decimal

    @property
    def net_flow(self) -> Decimal:
        return self.total_cash_in - self.total_cash_out


@dataclass(frozen=True)
class DailySummary:
    """Movements of a single calendar day and the balance after its last entry."""

    day: date
    transactions: int
    cash_in: Decimal
    cash_out: Decimal
    balance: Decimal

    @property
    def net_flow(self) -> Decimal:
        return self.cash_in - self.cash_out


@dataclass(frozen=True)
class TypeTotals:
    """Count and cash totals for one transaction type."""

    count: int = 0
    cash_in: Decimal = ZERO
    cash_out: Decimal = ZERO

    @property
    def net_flow(self) -> Decimal:
        return self.cash_in - self.cash_out

    def add(self, entry: LedgerEntry) -> "TypeTotals":
        return TypeTotals(
            count=self.count + 1,
            cash_in=self.cash_in + entry.cash_in,
            cash_out=self.cash_out + entry.cash_out,
        )


@dataclass(frozen=True)
class TransactionTypeSummary:
    """Per-type totals plus the grand total across every type."""

    by_type: Mapping[TransactionType, TypeTotals]
    total: TypeTotals


class _Movement(NamedTuple):
    moment: datetime
    transaction_type: TransactionType
    reference: str
    description: str
    cash_in: Decimal
    cash_out: Decimal


def normalize_timestamp(value: Any) -> Optional[datetime]:
    """Convert any supported timestamp representation into a naive datetime.

    Accepted inputs are :class:`datetime` (aware values are converted to UTC
    and stripped of their zone), :class:`date` (midnight), ISO-8601 strings,
    ``int``/``float`` epoch milliseconds, :class:`EpochTimestamp` or any object with
    a ``to_datetime()`` method, mappings with a ``"seconds"`` key, and objects
    exposing a numeric ``seconds`` attribute. Only the wrappers count in
    seconds; a bare number is always milliseconds.

    Args:
        value (Any): Raw timestamp taken from a source record.

    Returns:
        datetime | None: Comparable naive datetime, or ``None`` when the value
            cannot be interpreted.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(UTC).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        return _parse_iso(value)
    if isinstance(value, (int, float)):
        return _from_epoch_millis(value)
    if isinstance(value, Mapping):
        if "seconds" not in value:
            return None
        return _from_epoch(value["seconds"], value.get("nanoseconds", 0))

    to_datetime = getattr(value, "to_datetime", None)
    if callable(to_datetime):
        try:
            converted = to_datetime()
        except (TypeError, ValueError, OverflowError, OSError):
            return None
        # Guard against wrappers returning another wrapper.
        return normalize_timestamp(converted) if isinstance(converted, (datetime, date)) else None

    seconds = getattr(value, "seconds", None)
    if seconds is not None:
        return _from_epoch(seconds, getattr(value, "nanoseconds", 0))
    return None


def _parse_iso(text: str) -> Optional[datetime]:
    text = text.strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return normalize_timestamp(parsed)


def _from_epoch(seconds: Any, nanoseconds: Any) -> Optional[datetime]:
    if isinstance(seconds, bool) or not isinstance(seconds, (int, float)):
        return None
    if isinstance(seconds, float) and not math.isfinite(seconds):
        return None
    if isinstance(nanoseconds, bool) or not isinstance(nanoseconds, (int, float)):
        nanoseconds = 0
    try:
        return EpochTimestamp(seconds, int(nanoseconds)).to_datetime()
    except (OverflowError, OSError, ValueError):
        return None


def _from_epoch_millis(millis: Union[int, float]) -> Optional[datetime]:
    if isinstance(millis, float) and not math.isfinite(millis):
        return None
    try:
        return _EPOCH + timedelta(milliseconds=millis)
    except OverflowError:
        return None


def _as_decimal(raw: Any) -> Decimal:
    """Coerce an amount into :class:`Decimal`, treating unusable values as zero."""

    if raw is None or isinstance(raw, bool):
        return ZERO
    if isinstance(raw, Decimal):
        return raw if raw.is_finite() else ZERO
    if isinstance(raw, int):
        return Decimal(raw)
    if isinstance(raw, float):
        return Decimal(str(raw)) if math.isfinite(raw) else ZERO
    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation:
        return ZERO
    return value if value.is_finite() else ZERO


def _resolve_currency(currency: Union[Currency, str]) -> Currency:
    try:
        return Currency(currency)
    except ValueError as exc:
        raise ValueError(f"Unsupported currency: {currency!r}") from exc


def _month_bounds(year: int, month: int) -> Tuple[datetime, datetime]:
    """Return the first instant of ``(year, month)`` and of the month after.

    ``month`` is 0-based.
    """

    if isinstance(year, bool) or not isinstance(year, int):
        raise TypeError(f"year must be an int, got {type(year).__name__}")
    if isinstance(month, bool) or not isinstance(month, int):
        raise TypeError(f"month must be an int, got {type(month).__name__}")
    if not 0 <= month <= 11:
        raise ValueError(f"month must be between 0 and 11, got {month}")
    if not 1 <= year <= 9999 or (year, month) == (9999, 11):
        raise ValueError(f"period out of range: {year}-{month + 1:02d}")

    start = datetime(year, month + 1, 1)
    end = datetime(year + 1, 1, 1) if month == 11 else datetime(year, month + 2, 1)
    return start, end


def _as_records(name: str, records: Optional[Iterable[SourceRecord]]) -> List[SourceRecord]:
    if records is None or isinstance(records, (str, bytes, Mapping)):
        raise TypeError(f"{name} must be an iterable of records, got {type(records).__name__}")
    try:
        return [record for record in records if record is not None]
    except TypeError as exc:
        raise TypeError(f"{name} must be an iterable of records") from exc


def _iter_sources(
    sales: Iterable[SaleRow],
    costs: Iterable[CostRow],
    manual_entries: Iterable[ManualEntryRow],
) -> Iterator[SourceRecord]:
    # Validate all three up front so a bad argument fails before any work.
    collections = (
        _as_records("sales", sales),
        _as_records("costs", costs),
        _as_records("manual_entries", manual_entries),
    )
    for records in collections:
        for record in records:
            if not isinstance(record, (SaleRow, CostRow, ManualEntryRow)):
                raise TypeError(f"Unsupported source record: {type(record).__name__}")
            yield record


def _classify(record: SourceRecord, currency: Optional[Currency]) -> Tuple[TransactionType, str, Decimal, Decimal]:
    """Return ``(type, reference, cash_in, cash_out)`` for one source record.

    Only the amount field matching ``currency`` is read. With ``currency`` set
    to ``None`` no amount is read at all and both sides are zero.
    """

    if isinstance(record, SaleRow):
        amount = _amount(record, currency)
        return TransactionType.SALE, _reference(TransactionType.SALE, record.sale_id), amount, ZERO
    if isinstance(record, CostRow):
        amount = _amount(record, currency)
        return TransactionType.COST, _reference(TransactionType.COST, record.cost_id), ZERO, amount
    if isinstance(record, ManualEntryRow):
        reference = _reference(TransactionType.MANUAL, record.entry_id)
        direction = _direction(record.direction)
        if direction is EntryDirection.CREDIT:
            return TransactionType.MANUAL, reference, _amount(record, currency), ZERO
        if direction is EntryDirection.DEBIT:
            return TransactionType.MANUAL, reference, ZERO, _amount(record, currency)
        return TransactionType.MANUAL, reference, ZERO, ZERO
    raise TypeError(f"Unsupported source record: {type(record).__name__}")


def _amount(record: SourceRecord, currency: Optional[Currency]) -> Decimal:
    if currency is None:
        return ZERO
    if currency is Currency.FC:
        return _as_decimal(record.amount_fc)
    return _as_decimal(record.amount_usd)


def _direction(raw: Any) -> Optional[EntryDirection]:
    try:
        return EntryDirection(str(getattr(raw, "value", raw)).strip().upper())
    except ValueError:
        return None


def _reference(transaction_type: TransactionType, record_id: str) -> str:
    return f"{transaction_type.value}:{record_id}"


def _describe(record: SourceRecord, master_data: MasterData) -> str:
    if isinstance(record, SaleRow):
        product = master_data.product_names.get(record.product_id or "") or "Unknown Product"
        activity = master_data.activity_type_names.get(record.activity_type_id or "") or "Unknown Activity"
        channel = f" ({record.channel})" if record.channel else ""
        return f"{product} - {activity}{channel}"
    if isinstance(record, CostRow):
        expense = master_data.expense_type_names.get(record.expense_type_id or "") or "Unknown Expense"
        activity = master_data.activity_type_names.get(record.activity_type_id or "") or "Unknown Activity"
        return f"{expense} - {activity}"
    description = (record.description or "").strip()
    return description or "Manual Entry"


def calculate_opening_balance(
    sales: Iterable[SaleRow],
    costs: Iterable[CostRow],
    manual_entries: Iterable[ManualEntryRow],
    year: int,
    month: int,
    currency: Union[Currency, str],
) -> Decimal:
    """Fold every movement dated before the month into a signed total.

    Sales and ``CREDIT`` manual entries add to the balance; costs and
    ``DEBIT`` manual entries subtract from it. The whole history is walked on
    each call so back-dated or edited records are always reflected.

    Args:
        sales (Iterable[SaleRow]): Sale records, in any order.
        costs (Iterable[CostRow]): Cost records, in any order.
        manual_entries (Iterable[ManualEntryRow]): Manual entries, in any
            order.
        year (int): Calendar year of the target month.
        month (int): 0-based month (``0`` is January).
        currency (Currency | str): ``"FC"`` or ``"USD"``; selects the amount
            field read from every record.

    Returns:
        Decimal: Net cash position immediately before the first instant of
            the month; ``0`` when nothing precedes it.

    Raises:
        TypeError: If a source collection is ``None`` or not iterable, or a
            record is not one of the three source kinds.
        ValueError: If ``month`` or ``currency`` is out of range.
    """

    resolved = _resolve_currency(currency)
    cutoff, _ = _month_bounds(year, month)

    balance = ZERO
    for record in _iter_sources(sales, costs, manual_entries):
        moment = normalize_timestamp(record.date)
        if moment is None or moment >= cutoff:
            continue
        _, _, cash_in, cash_out = _classify(record, resolved)
        balance += cash_in - cash_out
    return balance


def generate_cash_book(
    sales: Iterable[SaleRow],
    costs: Iterable[CostRow],
    manual_entries: Iterable[ManualEntryRow],
    year: int,
    month: int,
    currency: Union[Currency, str],
    opening_balance: Union[Decimal, int, float] = ZERO,
    master_data: Optional[MasterData] = None,
) -> List[LedgerEntry]:
    """Build the chronologically ordered cash book for one month.

    Records dated in ``[first of month, first of next month)`` become ledger
    entries. Entries are sorted by date; same-instant entries list sales, then
    costs, then manual entries, each in input order. A single pass then
    assigns ``balance = previous balance + cash_in - cash_out`` starting from
    ``opening_balance``.

    Args:
        sales (Iterable[SaleRow]): Sale records (cash in).
        costs (Iterable[CostRow]): Cost records (cash out).
        manual_entries (Iterable[ManualEntryRow]): Manual entries; ``CREDIT``
            is cash in and ``DEBIT`` is cash out.
        year (int): Calendar year of the month to build.
        month (int): 0-based month.
        currency (Currency | str): Amount field to use for every entry.
        opening_balance (Decimal | int | float): Balance carried into the
            month, normally from :func:`calculate_opening_balance`.
        master_data (MasterData | None): Display names for descriptions.

    Returns:
        list[LedgerEntry]: One entry per in-period record with a parseable
            date. The inputs are never modified.

    Raises:
        TypeError: If a source collection is ``None`` or not iterable.
        ValueError: If ``month`` or ``currency`` is out of range.
    """

    resolved = _resolve_currency(currency)
    start, end = _month_bounds(year, month)
    names = master_data if master_data is not None else MasterData()

    movements: List[_Movement] = []
    skipped = 0
    for record in _iter_sources(sales, costs, manual_entries):
        moment = normalize_timestamp(record.date)
        if moment is None:
            skipped += 1
            log.warning(
                "Excluding %s from the cash book: unparseable date %r",
                _classify(record, None)[1],
                record.date,
            )
            continue
        if not start <= moment < end:
            continue
        transaction_type, reference, cash_in, cash_out = _classify(record, resolved)
        movements.append(
            _Movement(
                moment=moment,
                transaction_type=transaction_type,
                reference=reference,
                description=_describe(record, names),
                cash_in=cash_in,
                cash_out=cash_out,
            )
        )

    movements.sort(key=lambda movement: (movement.moment, _TYPE_ORDER[movement.transaction_type]))

    running_balance = _as_decimal(opening_balance)
    entries: List[LedgerEntry] = []
    for movement in movements:
        running_balance = running_balance + movement.cash_in - movement.cash_out
        entries.append(
            LedgerEntry(
                date=movement.moment,
                description=movement.description,
                transaction_type=movement.transaction_type,
                reference=movement.reference,
                cash_in=movement.cash_in,
                cash_out=movement.cash_out,
                balance=running_balance,
            )
        )

    log.debug(
        "Generated %d cash book entries for %04d-%02d in %s (%d skipped)",
        len(entries),
        year,
        month + 1,
        resolved.value,
        skipped,
    )
    return entries


def get_cash_book_summary(
    entries: Iterable[LedgerEntry],
    opening_balance: Optional[Union[Decimal, int, float]] = None,
) -> CashBookSummary:
    """Reduce a built ledger into its opening/closing balances and totals.

    The opening balance is recovered from the first entry
    (``balance - cash_in + cash_out``). For an empty ledger the caller's
    ``opening_balance`` is used (zero when omitted) and the closing balance
    equals it.
    """

    entries = list(entries)
    total_cash_in = sum((entry.cash_in for entry in entries), ZERO)
    total_cash_out = sum((entry.cash_out for entry in entries), ZERO)

    if entries:
        first = entries[0]
        opening = first.balance - first.cash_in + first.cash_out
        closing = entries[-1].balance
    else:
        opening = _as_decimal(opening_balance)
        closing = opening

    return CashBookSummary(
        opening_balance=opening,
        total_cash_in=total_cash_in,
        total_cash_out=total_cash_out,
        closing_balance=closing,
    )


def get_daily_summary(entries: Iterable[LedgerEntry]) -> List[DailySummary]:
    """Group ledger entries by calendar day.

    Each day keeps its transaction count, summed cash in and out, and the
    balance of its last entry. Days are returned in ascending order.
    """

    days: Dict[date, List[Any]] = {}
    for entry in entries:
        bucket = days.setdefault(entry.date.date(), [0, ZERO, ZERO, entry.balance])
        bucket[0] += 1
        bucket[1] += entry.cash_in
        bucket[2] += entry.cash_out
        bucket[3] = entry.balance

    return [
        DailySummary(day=day, transactions=count, cash_in=cash_in, cash_out=cash_out, balance=balance)
        for day, (count, cash_in, cash_out, balance) in sorted(days.items(), key=lambda item: item[0])
    ]


def get_transaction_type_summary(entries: Iterable[LedgerEntry]) -> TransactionTypeSummary:
    """Sum cash in/out and counts per transaction type plus a grand total.

    Every transaction type has a bucket, even when it has no entries.
    """

    by_type: Dict[TransactionType, TypeTotals] = {kind: TypeTotals() for kind in TransactionType}
    total = TypeTotals()
    for entry in entries:
        kind = TransactionType(entry.transaction_type)
        by_type[kind] = by_type[kind].add(entry)
        total = total.add(entry)
    return TransactionTypeSummary(by_type=by_type, total=total)


def average_daily_net_flow(daily: Iterable[DailySummary]) -> Decimal:
    """Average net flow across the days that had at least one entry."""

    daily = list(daily)
    if not daily:
        return ZERO
    return sum((day.net_flow for day in daily), ZERO) / len(daily)


def find_skipped_records(
    sales: Iterable[SaleRow],
    costs: Iterable[CostRow],
    manual_entries: Iterable[ManualEntryRow],
) -> List[str]:
    """List references of records excluded because their date is unparseable.

    The result is independent of the month: such records are missing from
    every opening balance and every ledger.
    """

    return [
        _classify(record, None)[1]
        for record in _iter_sources(sales, costs, manual_entries)
        if normalize_timestamp(record.date) is None
    ]


def available_years(
    sales: Iterable[SaleRow],
    costs: Iterable[CostRow],
    manual_entries: Iterable[ManualEntryRow],
) -> List[int]:
    """Return the years that hold at least one dated record, newest first."""

    years = {
        moment.year
        for moment in (normalize_timestamp(record.date) for record in _iter_sources(sales, costs, manual_entries))
        if moment is not None
    }
    return sorted(years, reverse=True)
