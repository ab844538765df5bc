"""Command-line entry points for the sales valuation engine.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into engine calls, and printing the results. The
engine itself never prints, so the same parser configuration can be reused by
tests, scripts, or any other front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import UTC, date
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, data_manager, log
from .constants import CENT, DEFAULT_WINDOW_DAYS, SALES_AUDIT_TABLE, SALES_DETAIL_AUDIT_TABLE

FallbackRenderer = Callable[[argparse.Namespace, Optional[data_manager.ConfigSettings]], None]


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    fallback: Optional[FallbackRenderer] = None
    mutates: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="sales-valuation",
        description="Value sales at historical prices and report on them.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the current directory by default).",
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
    """Declare commands that modify the workbook."""
    specs = {
        "record-sale": register_record_sale_command(subparsers),
        "update-sale": register_update_sale_command(subparsers),
        "delete-sale": register_delete_sale_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only reporting commands."""
    specs = {
        "sales": register_sales_command(subparsers),
        "daily": register_daily_command(subparsers),
        "top": register_top_command(subparsers),
        "dashboard": register_dashboard_command(subparsers),
        "next-id": register_next_id_command(subparsers),
        "audit": register_audit_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_range_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--start", type=date.fromisoformat, default=None, help="First sale date (YYYY-MM-DD).")
    parser.add_argument("--end", type=date.fromisoformat, default=None, help="Last sale date (YYYY-MM-DD).")


def _add_window_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--days", type=int, default=None, help="Window length in days (config WindowDays).")
    parser.add_argument(
        "--anchor",
        choices=["today", "latest"],
        default="today",
        help="End the window today or on the latest sale date.",
    )
    parser.add_argument("--end-date", type=date.fromisoformat, default=None, help="Explicit last day of the window.")


def register_record_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``record-sale``."""
    name = "record-sale"
    help_text = "Record a sale under the next transaction number."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", dest="sale_date", type=date.fromisoformat, required=True)
        parser.add_argument(
            "--line",
            dest="lines",
            action="append",
            required=True,
            help="PRODUCT=QUANTITY, repeat for every line.",
        )
        parser.add_argument("--customer-id", default=None)
        parser.add_argument("--employee-id", default=None)
        parser.add_argument("--actor", default=None, help="Who is recording the sale (written to the audit log).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_record_sale, mutates=True)


def register_update_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-sale``."""
    name = "update-sale"
    help_text = "Change the date, customer or employee of a recorded sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("transaction_id", help="Transaction number of the sale.")
        parser.add_argument("--date", dest="sale_date", type=date.fromisoformat, default=None)
        parser.add_argument("--customer-id", default=None)
        parser.add_argument("--employee-id", default=None)
        parser.add_argument("--actor", default=None, help="Who is changing the sale (written to the audit log).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_sale, mutates=True)


def register_delete_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-sale``."""
    name = "delete-sale"
    help_text = "Delete a sale together with its lines."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("transaction_id", help="Transaction number of the sale.")
        parser.add_argument("--actor", default=None, help="Who is deleting the sale (written to the audit log).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_sale, mutates=True)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "List valued sales, optionally with attribution."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_range_arguments(parser)
        parser.add_argument("--actor", default=None, help="Caller identity checked against AttributionViewers.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        register=registrar,
        execute=run_sales_report,
        fallback=render_empty_sales,
    )


def register_daily_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``daily``."""
    name = "daily"
    help_text = "Display per-day sales totals over a trailing window."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_window_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        register=registrar,
        execute=run_daily_report,
        fallback=render_empty_daily,
    )


def register_top_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``top``."""
    name = "top"
    help_text = "Rank products by revenue."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_range_arguments(parser)
        parser.add_argument("--limit", type=int, default=None, help="Number of products to show (config TopN).")
        parser.add_argument("--categories", action="store_true", help="Group the ranking by configured category.")
        parser.add_argument(
            "--positive-only",
            action="store_true",
            help="Drop products whose revenue is zero or negative.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        register=registrar,
        execute=run_top_report,
        fallback=render_empty_top,
    )


def register_dashboard_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dashboard``."""
    name = "dashboard"
    help_text = "Display headline totals, the daily series, top products and recent lines."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_window_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        register=registrar,
        execute=run_dashboard_report,
        fallback=render_empty_dashboard,
    )


def register_next_id_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``next-id``."""
    name = "next-id"
    help_text = "Show the transaction number the next sale would receive."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_next_id)


def register_audit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``audit``."""
    name = "audit"
    help_text = "Show who created, updated and deleted each record."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--actor", required=True, help="Caller identity checked against AttributionViewers.")
        parser.add_argument(
            "--table",
            choices=[SALES_AUDIT_TABLE, SALES_DETAIL_AUDIT_TABLE],
            default=SALES_AUDIT_TABLE,
        )
        parser.add_argument("--record-id", default=None, help="Limit the output to a single record.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        register=registrar,
        execute=run_audit_report,
        fallback=render_empty_audit,
    )


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else None
    return core_logic.load_runtime_context(target)


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


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


def format_currency(amount: Decimal) -> str:
    """Render money as ``$1,234.50``, rounding half-up to cents for display."""
    quantized = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    sign = "-" if quantized < 0 else ""
    return f"{sign}${abs(quantized):,.2f}"


def translate_date_range(args: argparse.Namespace) -> Optional[data_manager.DateRange]:
    """Turn ``--start``/``--end`` into a date range, or ``None`` for everything."""
    start = getattr(args, "start", None)
    end = getattr(args, "end", None)
    if start is None and end is None:
        return None
    return (start, end)


def translate_sale_lines(raw_lines: Sequence[str]) -> Tuple[Tuple[str, Decimal], ...]:
    """Parse repeated ``PRODUCT=QUANTITY`` options.

    Raises:
        MalformedInputError: If an entry has no ``=`` or an empty product.
    """
    parsed = []
    for raw in raw_lines:
        product_id, separator, quantity = raw.partition("=")
        if not separator or not product_id.strip():
            raise core_logic.MalformedInputError(f"Expected PRODUCT=QUANTITY, got {raw!r}")
        code = product_id.strip()
        parsed.append((code, core_logic.require_valid_quantity(quantity, context=f"product '{code}'")))
    return tuple(parsed)


def translate_record_sale(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        sale_date=args.sale_date,
        lines=translate_sale_lines(args.lines),
        customer_id=args.customer_id,
        employee_id=args.employee_id,
        actor=args.actor,
    )


def translate_update_sale(args: argparse.Namespace) -> core_logic.UpdateSaleCommand:
    """Translate CLI args into an update command object."""
    return core_logic.UpdateSaleCommand(
        transaction_id=args.transaction_id,
        sale_date=args.sale_date,
        customer_id=args.customer_id,
        employee_id=args.employee_id,
        actor=args.actor,
    )


def resolve_window(
    args: argparse.Namespace,
    settings: data_manager.ConfigSettings,
    valued_sales: Sequence[core_logic.ValuedSale],
) -> Tuple[int, Optional[date]]:
    """Pick the window length and end date for ``daily`` and ``dashboard``."""
    days = args.days if args.days is not None else settings.window_days
    if args.end_date is not None:
        return days, args.end_date
    if args.anchor == "latest":
        return days, core_logic.latest_sale_date(valued_sales, tz=settings.time_zone)
    return days, None


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def render_sales(rows: Sequence[Mapping[str, object]]) -> None:
    """Print sale rows with their lines and, when present, attribution."""
    if not rows:
        print("No sales found.")
        return
    for row in rows:
        print(f"{row['transaction_id']}  {row['sale_date']}  {format_currency(row['total_amount'])}")  # type: ignore[arg-type]
        for line in row["lines"]:  # type: ignore[union-attr]
            price = format_currency(line["unit_price"]) if line["unit_price"] is not None else "n/a"
            label = line["product_name"] or line["product_id"]
            unit = f" {line['unit']}" if line["unit"] else ""
            print(f"    {label}: {line['quantity']}{unit} x {price} = {format_currency(line['amount'])}")
        if "attribution" in row:
            attribution = row["attribution"]
            print(
                f"    created by {attribution['created_by'] or '-'} at {attribution['created_at'] or '-'}; "  # type: ignore[index]
                f"updated by {attribution['updated_by'] or '-'} at {attribution['updated_at'] or '-'}"  # type: ignore[index]
            )


def render_daily(series: Sequence[core_logic.DaySummary]) -> None:
    """Print one row per day of the window."""
    print(f"{'Date':<12}{'Sales':>8}{'Total':>16}")
    for day in series:
        print(f"{day.date.isoformat():<12}{day.transaction_count:>8}{format_currency(day.total_amount):>16}")


def render_top(products: Sequence[core_logic.ProductRevenue]) -> None:
    """Print a product revenue ranking."""
    if not products:
        print("No product revenue to rank.")
        return
    for rank, item in enumerate(products, start=1):
        label = item.name or item.product_id
        print(f"{rank:>3}. {item.product_id:<10} {label:<30} {item.quantity:>10} {format_currency(item.total_amount):>14}")


def render_categories(categories: Sequence[core_logic.CategoryRevenue]) -> None:
    """Print a category revenue breakdown."""
    if not categories:
        print("No category revenue to show.")
        return
    for item in categories:
        print(f"{item.category:<30} {format_currency(item.total_amount):>14}  ({', '.join(item.product_ids)})")


def render_dashboard(summary: core_logic.DashboardSummary) -> None:
    """Print every section of the dashboard."""
    print(f"Total sales:        {format_currency(summary.total_sales)}")
    print(f"Total transactions: {summary.total_transactions}")
    print(f"Total products:     {summary.total_products}")
    print("\nDaily sales")
    render_daily(summary.daily)
    print("\nTop products")
    render_top(summary.top_products)
    print("\nCategories")
    render_categories(summary.categories)
    print("\nRecent sales")
    if not summary.recent_lines:
        print("No recent sales.")
    for entry in summary.recent_lines:
        label = entry.line.product_name or entry.line.product_id
        print(f"{entry.date.isoformat()}  {entry.line.transaction_id:<10} {label:<30} {format_currency(entry.line.amount):>14}")


def render_attribution(records: Sequence[core_logic.AttributionRecord]) -> None:
    """Print attribution records, one per line."""
    if not records:
        print("No audit events found.")
        return
    for record in records:
        details = record.as_dict()
        print(
            f"{record.record_id}: created {details['created_by'] or '-'} ({details['created_at'] or '-'}), "
            f"updated {details['updated_by'] or '-'} ({details['updated_at'] or '-'}), "
            f"deleted {details['deleted_by'] or '-'} ({details['deleted_at'] or '-'})"
        )


def _fallback_window(args: argparse.Namespace, settings: Optional[data_manager.ConfigSettings]) -> int:
    if getattr(args, "days", None) is not None:
        return args.days
    return settings.window_days if settings is not None else DEFAULT_WINDOW_DAYS


def render_empty_sales(args: argparse.Namespace, settings: Optional[data_manager.ConfigSettings]) -> None:
    render_sales([])


def render_empty_daily(args: argparse.Namespace, settings: Optional[data_manager.ConfigSettings]) -> None:
    tz = settings.time_zone if settings is not None else UTC
    summary = core_logic.empty_dashboard(_fallback_window(args, settings), end_date=args.end_date, tz=tz)
    render_daily(summary.daily)


def render_empty_top(args: argparse.Namespace, settings: Optional[data_manager.ConfigSettings]) -> None:
    if getattr(args, "categories", False):
        render_categories([])
    else:
        render_top([])


def render_empty_dashboard(args: argparse.Namespace, settings: Optional[data_manager.ConfigSettings]) -> None:
    tz = settings.time_zone if settings is not None else UTC
    render_dashboard(core_logic.empty_dashboard(_fallback_window(args, settings), end_date=args.end_date, tz=tz))


def render_empty_audit(args: argparse.Namespace, settings: Optional[data_manager.ConfigSettings]) -> None:
    render_attribution([])


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def run_record_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Record a sale and print its transaction number."""
    command = translate_record_sale(args)
    transaction_id = core_logic.record_sale(context, command)
    print(f"Recorded sale {transaction_id}")
    return 0


def run_update_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Update a sale header and print the stored result."""
    sale = core_logic.update_sale(context, translate_update_sale(args))
    print(
        f"Updated sale {sale.transaction_id}: date {sale.sale_date.isoformat()}, "
        f"customer {sale.customer_id or '-'}, employee {sale.employee_id or '-'}"
    )
    return 0


def run_delete_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Delete a sale and its lines."""
    removed = core_logic.delete_sale(context, args.transaction_id, actor=args.actor)
    print(f"Deleted sale {args.transaction_id} and {len(removed)} lines")
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List valued sales, adding attribution for allow-listed actors."""
    date_range = translate_date_range(args)
    valued = core_logic.valued_sales_for(context, date_range=date_range)
    include_attribution = core_logic.can_view_attribution(context.settings, args.actor)
    if args.actor is not None and not include_attribution:
        log.info("Actor '%s' is not allowed to view attribution; omitting it", args.actor)

    attributions = None
    if include_attribution:
        snapshot = core_logic.get_snapshot(context, date_range=date_range)
        attributions = core_logic.attribution_for(snapshot.events, table_name=SALES_AUDIT_TABLE)
    rows = core_logic.sales_view(valued, attributions, include_attribution=include_attribution)
    render_sales(rows)
    return 0


def run_daily_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the per-day series."""
    valued = core_logic.valued_sales_for(context)
    days, end_date = resolve_window(args, context.settings, valued)
    series = core_logic.daily_series(valued, days, end_date=end_date, tz=context.settings.time_zone)
    render_daily(series)
    return 0


def run_top_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the product ranking or its category breakdown."""
    valued = core_logic.valued_sales_for(context, date_range=translate_date_range(args))
    limit = args.limit if args.limit is not None else context.settings.top_n
    ranking = core_logic.top_by_revenue(valued, limit, exclude_non_positive=args.positive_only)
    if args.categories:
        mapping = context.settings.category_mapping or None
        render_categories(core_logic.categorize(ranking, mapping))
    else:
        render_top(ranking)
    return 0


def run_dashboard_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the dashboard."""
    settings = context.settings
    valued = core_logic.valued_sales_for(context)
    days, end_date = resolve_window(args, settings, valued)
    summary = core_logic.build_dashboard(
        valued,
        window_days=days,
        top_n=settings.top_n,
        recent_limit=settings.recent_limit,
        end_date=end_date,
        tz=settings.time_zone,
        category_mapping=settings.category_mapping or None,
        products=core_logic.get_snapshot(context).products,
    )
    render_dashboard(summary)
    return 0


def run_next_id(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the transaction number that follows the highest stored one."""
    stored = [sale.transaction_id for sale in data_manager.iter_sales(context.workbook)]
    print(core_logic.next_identifier(core_logic.latest_identifier(stored), seed=context.settings.identifier_seed))
    return 0


def run_audit_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print attribution for one audit table, for allow-listed actors only."""
    core_logic.require_attribution_access(context.settings, args.actor)
    source = core_logic.source_for(context)
    record_ids = [args.record_id] if args.record_id else None
    events = source.list_events(args.table, record_ids)
    attributions = core_logic.attribution_for(events, table_name=args.table)
    render_attribution([attributions[key] for key in sorted(attributions, key=core_logic.identifier_sort_key)])
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.EngineError):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    context: Optional[core_logic.RuntimeContext] = None
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except core_logic.EngineError as error:
        exit_code = handle_cli_error(error)
        spec = command_table.get(args.command)
        if spec is not None and spec.fallback is not None:
            spec.fallback(args, context.settings if context is not None else None)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
