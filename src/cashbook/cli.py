"""Command-line entry points for the cash book.

This module limits itself to argparse wiring, translating arguments into the
command objects consumed by the business layer, and rendering the computed
cash book as plain text. Keeping the CLI thin lets tests and other front ends
reuse the same parser configuration.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import cash_book, core_logic, log
from .constants import Currency, EntryDirection, TransactionType


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="cashbook-cli",
        description="Monthly Cash Book tools for the business workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the working directory by default).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare commands that change the workbook."""
    specs = {
        "sale": register_sale_command(subparsers),
        "cost": register_cost_command(subparsers),
        "add-entry": register_add_entry_command(subparsers),
        "update-entry": register_update_entry_command(subparsers),
        "delete-entry": register_delete_entry_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only reporting commands."""
    specs = {
        "cash-book": register_cash_book_command(subparsers),
        "summary": register_summary_command(subparsers),
        "daily": register_daily_command(subparsers),
        "by-type": register_by_type_command(subparsers),
        "entries": register_entries_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_period_arguments(parser: argparse.ArgumentParser) -> None:
    today = datetime.now()
    parser.add_argument("--year", type=int, default=today.year)
    parser.add_argument("--month", type=int, choices=range(1, 13), default=today.month, metavar="1-12")
    parser.add_argument(
        "--currency",
        choices=[member.value for member in Currency],
        default=None,
        help="Amount field to report in (defaults to the configured currency).",
    )


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record a sale (cash in)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--activity-type-id", required=True)
        parser.add_argument("--amount-fc", required=True)
        parser.add_argument("--amount-usd", required=True)
        parser.add_argument("--quantity", default="1")
        parser.add_argument("--channel", default=None)
        parser.add_argument("--exchange-rate", default=None)
        parser.add_argument("--date", default=None, help="ISO date; defaults to now.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale, mutates=True)


def register_cost_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``cost``."""
    name = "cost"
    help_text = "Record a cost (cash out)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--expense-type-id", required=True)
        parser.add_argument("--activity-type-id", required=True)
        parser.add_argument("--amount-fc", required=True)
        parser.add_argument("--amount-usd", required=True)
        parser.add_argument("--exchange-rate", default=None)
        parser.add_argument("--date", default=None, help="ISO date; defaults to now.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_cost, mutates=True)


def register_add_entry_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-entry``."""
    name = "add-entry"
    help_text = "Add a manual cash book entry."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", required=True, help="ISO date of the movement.")
        parser.add_argument(
            "--direction",
            choices=[member.value for member in EntryDirection],
            default=EntryDirection.DEBIT.value,
        )
        parser.add_argument("--description", default="")
        parser.add_argument("--amount-fc", default="0")
        parser.add_argument("--amount-usd", default="0")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_entry, mutates=True)


def register_update_entry_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-entry``."""
    name = "update-entry"
    help_text = "Change fields of an existing manual entry."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--entry-id", required=True)
        parser.add_argument("--date", default=None)
        parser.add_argument(
            "--direction",
            choices=[member.value for member in EntryDirection],
            default=None,
        )
        parser.add_argument("--description", default=None)
        parser.add_argument("--amount-fc", default=None)
        parser.add_argument("--amount-usd", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_entry, mutates=True)


def register_delete_entry_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-entry``."""
    name = "delete-entry"
    help_text = "Delete a manual cash book entry."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--entry-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_entry, mutates=True)


def _register_report_command(name: str, help_text: str, execute: Callable[..., int]) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_period_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_cash_book_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``cash-book``."""
    return _register_report_command("cash-book", "Display the monthly cash book with running balances.", run_cash_book_report)


def register_summary_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``summary``."""
    return _register_report_command("summary", "Display opening/closing balances and totals.", run_summary_report)


def register_daily_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``daily``."""
    return _register_report_command("daily", "Display the cash book grouped by day.", run_daily_report)


def register_by_type_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``by-type``."""
    return _register_report_command("by-type", "Display totals per transaction type.", run_by_type_report)


def register_entries_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``entries``."""
    name = "entries"
    help_text = "List every manual cash book entry."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_entries_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve and validate the runtime context for CLI operations."""
    context = core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def _optional_decimal(raw: Optional[str]) -> Optional[Decimal]:
    return Decimal(raw) if raw not in (None, "") else None


def _optional_datetime(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None


def translate_sale(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        product_id=args.product_id,
        activity_type_id=args.activity_type_id,
        amount_fc=Decimal(args.amount_fc),
        amount_usd=Decimal(args.amount_usd),
        quantity_sold=Decimal(args.quantity),
        channel=args.channel,
        exchange_rate=_optional_decimal(args.exchange_rate),
        timestamp=_optional_datetime(args.date),
    )


def translate_cost(args: argparse.Namespace) -> core_logic.CostCommand:
    """Translate CLI args into a cost command object."""
    return core_logic.CostCommand(
        expense_type_id=args.expense_type_id,
        activity_type_id=args.activity_type_id,
        amount_fc=Decimal(args.amount_fc),
        amount_usd=Decimal(args.amount_usd),
        exchange_rate=_optional_decimal(args.exchange_rate),
        timestamp=_optional_datetime(args.date),
    )


def translate_add_entry(args: argparse.Namespace) -> core_logic.ManualEntryCommand:
    """Translate CLI args into a manual entry command object."""
    return core_logic.ManualEntryCommand(
        date=args.date,
        description=args.description,
        direction=EntryDirection(args.direction),
        amount_fc=Decimal(args.amount_fc),
        amount_usd=Decimal(args.amount_usd),
    )


def translate_update_entry(args: argparse.Namespace) -> Dict[str, Any]:
    """Collect only the options the user actually supplied into a patch."""
    patch: Dict[str, Any] = {}
    if args.date is not None:
        patch["date"] = args.date
    if args.direction is not None:
        patch["direction"] = EntryDirection(args.direction)
    if args.description is not None:
        patch["description"] = args.description
    if args.amount_fc is not None:
        patch["amount_fc"] = Decimal(args.amount_fc)
    if args.amount_usd is not None:
        patch["amount_usd"] = Decimal(args.amount_usd)
    return patch


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    sale = core_logic.record_sale(context, translate_sale(args))
    print(f"Recorded sale {sale.sale_id}")
    return 0


def run_cost(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the cost workflow via the BLL."""
    cost = core_logic.record_cost(context, translate_cost(args))
    print(f"Recorded cost {cost.cost_id}")
    return 0


def run_add_entry(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the manual entry creation workflow."""
    entry_id = core_logic.create_manual_entry(context, translate_add_entry(args))
    print(f"Created manual entry {entry_id}")
    return 0


def run_update_entry(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the manual entry update workflow."""
    core_logic.update_manual_entry(context, args.entry_id, translate_update_entry(args))
    print(f"Updated manual entry {args.entry_id}")
    return 0


def run_delete_entry(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the manual entry deletion workflow."""
    core_logic.delete_manual_entry(context, args.entry_id)
    print(f"Deleted manual entry {args.entry_id}")
    return 0


def _build_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.CashBookReport:
    return core_logic.build_monthly_cash_book(context, args.year, args.month, args.currency)


def run_cash_book_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the month's entries with their running balance."""
    _emit(render_cash_book(_build_report(context, args)))
    return 0


def run_summary_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the month's balances and totals."""
    _emit(render_summary(_build_report(context, args)))
    return 0


def run_daily_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the daily roll-up."""
    _emit(render_daily(_build_report(context, args)))
    return 0


def run_by_type_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the transaction-type roll-up."""
    _emit(render_by_type(_build_report(context, args)))
    return 0


def run_entries_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the manual entry store's current contents."""
    entries = core_logic.list_manual_entries(context)
    if not entries:
        print("No manual entries.")
        return 0
    for entry in entries:
        print(
            f"{entry.entry_id}  {_format_date(entry.date)}  {entry.direction:<6}  "
            f"FC {format_money(entry.amount_fc):>14}  USD {format_money(entry.amount_usd):>12}  {entry.description}"
        )
    return 0


def format_money(value: Optional[Decimal]) -> str:
    """Render an amount with thousands separators and two decimals."""
    return f"{(value if value is not None else Decimal('0')):,.2f}"


def _format_date(value: Any) -> str:
    moment = cash_book.normalize_timestamp(value)
    return moment.strftime("%Y-%m-%d") if moment is not None else str(value)


def _title(report: core_logic.CashBookReport) -> str:
    return f"Cash Book {report.year:04d}-{report.month:02d} ({report.currency.value})"


def render_summary(report: core_logic.CashBookReport) -> List[str]:
    summary = report.summary
    lines = [
        _title(report),
        f"  Opening balance : {format_money(summary.opening_balance):>16}",
        f"  Total cash in   : {format_money(summary.total_cash_in):>16}",
        f"  Total cash out  : {format_money(summary.total_cash_out):>16}",
        f"  Net flow        : {format_money(summary.net_flow):>16}",
        f"  Closing balance : {format_money(summary.closing_balance):>16}",
    ]
    if report.skipped_references:
        lines.append(f"  Excluded (unparseable date): {', '.join(report.skipped_references)}")
    if report.available_years:
        lines.append(f"  Years with data : {', '.join(str(year) for year in report.available_years)}")
    return lines


def render_cash_book(report: core_logic.CashBookReport) -> List[str]:
    lines = [_title(report), f"{'Date':<10}  {'Type':<6}  {'Reference':<28}  {'Cash in':>14}  {'Cash out':>14}  {'Balance':>14}  Description"]
    lines.append(f"{'':<10}  {'':<6}  {'Opening balance':<28}  {'':>14}  {'':>14}  {format_money(report.summary.opening_balance):>14}")
    for entry in report.entries:
        lines.append(
            f"{entry.date:%Y-%m-%d}  {entry.transaction_type.value:<6}  {entry.reference:<28}  "
            f"{format_money(entry.cash_in):>14}  {format_money(entry.cash_out):>14}  "
            f"{format_money(entry.balance):>14}  {entry.description}"
        )
    lines.extend(render_summary(report)[1:])
    return lines


def render_daily(report: core_logic.CashBookReport) -> List[str]:
    lines = [_title(report), f"{'Day':<10}  {'Count':>5}  {'Cash in':>14}  {'Cash out':>14}  {'Balance':>14}"]
    for day in report.daily:
        lines.append(
            f"{day.day:%Y-%m-%d}  {day.transactions:>5}  {format_money(day.cash_in):>14}  "
            f"{format_money(day.cash_out):>14}  {format_money(day.balance):>14}"
        )
    lines.append(f"Active days: {len(report.daily)}  Average daily net flow: {format_money(cash_book.average_daily_net_flow(report.daily))}")
    return lines


def render_by_type(report: core_logic.CashBookReport) -> List[str]:
    lines = [_title(report), f"{'Type':<6}  {'Count':>5}  {'Cash in':>14}  {'Cash out':>14}  {'Net':>14}  {'Share':>6}"]
    total = report.by_type.total
    rows = [(kind.value, report.by_type.by_type[kind]) for kind in TransactionType] + [("TOTAL", total)]
    for label, totals in rows:
        share = (Decimal(totals.count) * 100 / total.count) if total.count else Decimal("0")
        lines.append(
            f"{label:<6}  {totals.count:>5}  {format_money(totals.cash_in):>14}  "
            f"{format_money(totals.cash_out):>14}  {format_money(totals.net_flow):>14}  {share:>5.1f}%"
        )
    return lines


def _emit(lines: Iterable[str]) -> None:
    for line in lines:
        print(line)


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after a successful write command."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:
        return handle_cli_error(error)
