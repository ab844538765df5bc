"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from datetime import date
from decimal import Decimal
from typing import Mapping

import pytest

from conftest import make_line, make_price, make_sale, seed_workbook
from sales_valuation import cli, core_logic, data_manager


WRITE_COMMANDS = {"record-sale", "update-sale", "delete-sale"}

READ_COMMANDS = {"sales", "daily", "top", "dashboard", "next-id", "audit"}


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            return set(action.choices)
    return set()


def _stub_parser(**values: object) -> argparse.ArgumentParser:
    namespace = argparse.Namespace(config=None, **values)
    parser = argparse.ArgumentParser()
    parser.parse_args = lambda argv=None: namespace  # type: ignore[method-assign]
    return parser


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert parser.prog == "sales-valuation"


def test_configure_subcommands_registers_all_commands(cli_parser):
    """configure_subcommands should wire every reporting and write command."""

    command_table = cli.configure_subcommands(cli_parser)

    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS | READ_COMMANDS
    assert all(command_table[name].mutates for name in WRITE_COMMANDS)
    assert not any(command_table[name].mutates for name in READ_COMMANDS)


def test_register_read_commands_returns_command_specs(subparsers_action):
    """register_read_commands should return a mapping of CommandSpec objects."""

    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS
    for spec in specs.values():
        assert isinstance(spec, cli.CommandSpec)


def test_daily_command_parses_window_options():
    """The daily parser accepts a window length, an anchor and an end date."""

    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    args = parser.parse_args(["daily", "--days", "3", "--anchor", "latest", "--end-date", "2024-03-05"])

    assert args.days == 3
    assert args.anchor == "latest"
    assert args.end_date == date(2024, 3, 5)


def test_audit_command_requires_actor():
    """The audit parser refuses to run without an actor."""

    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    with pytest.raises(SystemExit):
        parser.parse_args(["audit"])


def test_build_command_table_indexes_specs(command_spec_iterable):
    """build_command_table should index specs by name."""

    table = cli.build_command_table(command_spec_iterable)
    assert list(table) == ["alpha", "beta", "gamma"]


def test_build_command_table_detects_duplicate_commands(command_spec_iterable):
    """Duplicate command names should raise ValueError."""

    with pytest.raises(ValueError):
        cli.build_command_table([*command_spec_iterable, command_spec_iterable[0]])


def test_dispatch_command_handles_unknown_commands(context):
    """Unknown command names should raise KeyError."""

    with pytest.raises(KeyError):
        cli.dispatch_command(context, argparse.Namespace(command="nope"), {})


def test_load_runtime_context_passes_none_for_upward_search(monkeypatch):
    """Without --config the data layer performs its own search."""

    captured = {}
    monkeypatch.setattr(cli.core_logic, "load_runtime_context", lambda path: captured.setdefault("path", path))

    cli.load_runtime_context(None)

    assert captured["path"] is None


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("amount", "expected"),
    [
        (Decimal("1234.5"), "$1,234.50"),
        (Decimal("0"), "$0.00"),
        (Decimal("-5"), "-$5.00"),
        (Decimal("0.005"), "$0.01"),
    ],
)
def test_format_currency(amount, expected):
    """Money is shown with grouping and two decimals."""

    assert cli.format_currency(amount) == expected


def test_translate_sale_lines_parses_pairs():
    """PRODUCT=QUANTITY options become validated pairs."""

    assert cli.translate_sale_lines(["P001=2", " P002 = 0.5"]) == (
        ("P001", Decimal("2")),
        ("P002", Decimal("0.5")),
    )


@pytest.mark.parametrize("raw", ["P001", "=2", "P001=-1", "P001=abc"])
def test_translate_sale_lines_rejects_bad_entries(raw):
    """Malformed line options raise MalformedInputError."""

    with pytest.raises(core_logic.MalformedInputError):
        cli.translate_sale_lines([raw])


def test_translate_date_range():
    """Missing bounds map to None, a single bound stays open-ended."""

    assert cli.translate_date_range(argparse.Namespace(start=None, end=None)) is None
    assert cli.translate_date_range(argparse.Namespace(start=date(2024, 1, 1), end=None)) == (date(2024, 1, 1), None)


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


@pytest.fixture
def seeded_context(config_factory):
    bundle = config_factory(categories={"P001": "Beverages", "P002": "Beverages"})
    seed_workbook(
        bundle.workbook_path,
        products=[
            data_manager.ProductRow("P001", "Cola", "can"),
            data_manager.ProductRow("P002", "Tea", "cup"),
        ],
        prices=[
            make_price("P001", date(2024, 1, 1), "10.00"),
            make_price("P001", date(2024, 3, 1), "12.00"),
            make_price("P002", date(2024, 1, 1), "2.50"),
        ],
        sales=[make_sale("T00001", date(2024, 2, 15)), make_sale("T00002", date(2024, 3, 1))],
        lines=[
            make_line("T00001", "P001", 3),
            make_line("T00002", "P001", 3),
            make_line("T00002", "P002", 2),
        ],
    )
    return core_logic.load_runtime_context(bundle.config_path)


def _window_args(**overrides):
    values = {"days": None, "anchor": "today", "end_date": None}
    values.update(overrides)
    return argparse.Namespace(**values)


def test_run_sales_report_omits_attribution_for_unknown_actor(seeded_context, capsys):
    """Sales are listed with their valued totals; attribution needs an allowed actor."""

    args = argparse.Namespace(start=None, end=None, actor="clerk@example.com")

    assert cli.run_sales_report(seeded_context, args) == 0

    output = capsys.readouterr().out
    assert "T00001  2024-02-15  $30.00" in output
    assert "T00002  2024-03-01  $41.00" in output
    assert "created by" not in output


def test_run_sales_report_includes_attribution_for_viewer(seeded_context, capsys):
    """Allow-listed actors see who created each sale."""

    args = argparse.Namespace(start=None, end=None, actor="auditor@example.com")

    cli.run_sales_report(seeded_context, args)

    assert "created by" in capsys.readouterr().out


def test_run_daily_report_anchors_on_latest_sale(seeded_context, capsys):
    """The latest anchor ends the window on the most recent sale date."""

    cli.run_daily_report(seeded_context, _window_args(days=2, anchor="latest"))

    lines = capsys.readouterr().out.splitlines()
    assert len(lines) == 3
    assert lines[1].startswith("2024-02-29")
    assert lines[2].startswith("2024-03-01") and lines[2].endswith("$41.00")


def test_run_top_report_ranks_and_categorizes(seeded_context, capsys):
    """Products are ranked by revenue; --categories uses the configured mapping."""

    args = argparse.Namespace(start=None, end=None, limit=None, categories=False, positive_only=False)
    cli.run_top_report(seeded_context, args)
    ranking = capsys.readouterr().out.splitlines()
    assert "P001" in ranking[0] and "$66.00" in ranking[0]
    assert "P002" in ranking[1] and "$5.00" in ranking[1]

    cli.run_top_report(seeded_context, argparse.Namespace(start=None, end=None, limit=None, categories=True, positive_only=False))
    categories = capsys.readouterr().out
    assert "Beverages" in categories and "$71.00" in categories


def test_run_dashboard_report_prints_every_section(seeded_context, capsys):
    """The dashboard shows totals, daily series, rankings and recent lines."""

    cli.run_dashboard_report(seeded_context, _window_args(end_date=date(2024, 3, 1)))

    output = capsys.readouterr().out
    assert "Total sales:        $71.00" in output
    assert "Total transactions: 2" in output
    assert "Total products:     2" in output
    assert "Recent sales" in output


def test_run_next_id_prints_following_number(seeded_context, capsys):
    """next-id prints the number after the highest stored transaction."""

    cli.run_next_id(seeded_context, argparse.Namespace())

    assert capsys.readouterr().out.strip() == "T00003"


def test_run_audit_report_rejects_unlisted_actor(seeded_context):
    """Attribution is refused for actors outside the allow-list."""

    args = argparse.Namespace(actor="clerk@example.com", table="sales", record_id=None)

    with pytest.raises(core_logic.AttributionAccessDenied):
        cli.run_audit_report(seeded_context, args)


def test_run_record_sale_invokes_engine(runtime_context, monkeypatch, capsys):
    """record-sale translates options into a SaleCommand."""

    captured = {}

    def fake_record(context, command):
        captured["command"] = command
        return "T00009"

    monkeypatch.setattr(cli.core_logic, "record_sale", fake_record)
    args = argparse.Namespace(
        sale_date=date(2024, 1, 1),
        lines=["P001=2"],
        customer_id="C1",
        employee_id=None,
        actor="clerk@example.com",
    )

    assert cli.run_record_sale(runtime_context, args) == 0
    assert captured["command"].lines == (("P001", Decimal("2")),)
    assert "T00009" in capsys.readouterr().out


def test_update_sale_command_parses_optional_fields(cli_parser):
    """update-sale takes the transaction number and only the fields to change."""

    cli.configure_subcommands(cli_parser)
    args = cli_parser.parse_args(["update-sale", "T00002", "--customer-id", "C9", "--actor", "mgr"])

    command = cli.translate_update_sale(args)
    assert command == core_logic.UpdateSaleCommand(transaction_id="T00002", customer_id="C9", actor="mgr")


def test_run_update_sale_rewrites_header(seeded_context, capsys):
    """update-sale changes the stored header and prints the result."""

    args = argparse.Namespace(
        transaction_id="T00001",
        sale_date=date(2024, 3, 5),
        customer_id=None,
        employee_id="E7",
        actor="mgr",
    )

    assert cli.run_update_sale(seeded_context, args) == 0

    assert "Updated sale T00001: date 2024-03-05, customer -, employee E7" in capsys.readouterr().out
    stored = [sale for sale in data_manager.iter_sales(seeded_context.workbook) if sale.transaction_id == "T00001"]
    assert stored == [make_sale("T00001", date(2024, 3, 5), employee_id="E7")]


def test_run_delete_sale_removes_sale_and_lines(seeded_context, capsys):
    """delete-sale drops the header and every line of the sale."""

    args = argparse.Namespace(transaction_id="T00002", actor="mgr")

    assert cli.run_delete_sale(seeded_context, args) == 0

    assert "Deleted sale T00002 and 2 lines" in capsys.readouterr().out
    assert [sale.transaction_id for sale in data_manager.iter_sales(seeded_context.workbook)] == ["T00001"]
    assert {line.transaction_id for line in data_manager.iter_sale_lines(seeded_context.workbook)} == {"T00001"}


# ---------------------------------------------------------------------------
# Error handling and main
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (core_logic.MalformedInputError("bad"), 2),
        (core_logic.EventOrderViolation("order"), 2),
        (FileNotFoundError("missing"), 3),
        (RuntimeError("boom"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    """handle_cli_error should convert exceptions into exit codes."""

    caplog.set_level("ERROR")
    assert cli.handle_cli_error(error) == expected
    assert any(str(error) in record.getMessage() for record in caplog.records)


def test_persist_workbook_handles_read_only_workbooks(runtime_context, monkeypatch):
    """persist_workbook should turn permission problems into RuntimeError."""

    def fake_persist(_: core_logic.RuntimeContext) -> None:
        raise PermissionError("read-only")

    monkeypatch.setattr(cli.core_logic, "persist_context", fake_persist)
    with pytest.raises(RuntimeError, match="read-only"):
        cli.persist_workbook(runtime_context)


def test_main_persists_only_mutating_commands(monkeypatch, runtime_context):
    """Reports never write the workbook back; write commands do."""

    persisted = []
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)
    monkeypatch.setattr(cli, "persist_workbook", persisted.append)

    for name, mutates in (("sales", False), ("record-sale", True)):
        parser = _stub_parser(command=name)
        table: Mapping[str, cli.CommandSpec] = {
            name: cli.CommandSpec(name, "help", lambda _: parser, lambda *_: 0, mutates=mutates)
        }
        monkeypatch.setattr(cli, "build_parser", lambda parser=parser: parser)
        monkeypatch.setattr(cli, "configure_subcommands", lambda _, table=table: table)
        assert cli.main([name]) == 0

    assert persisted == [runtime_context]


def test_main_prints_zero_filled_report_on_engine_error(monkeypatch, runtime_context, capsys):
    """An engine error yields exit code 2 and the empty report."""

    parser = _stub_parser(command="daily", days=3, anchor="today", end_date=date(2024, 1, 3))
    spec = cli.CommandSpec("daily", "help", lambda _: parser, cli.run_daily_report, fallback=cli.render_empty_daily)

    def failing(*_: object) -> int:
        raise core_logic.MalformedInputError("broken data")

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: {"daily": spec})
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)
    monkeypatch.setattr(cli, "dispatch_command", failing)

    assert cli.main(["daily"]) == 2

    lines = capsys.readouterr().out.splitlines()
    assert [line.split()[0] for line in lines[1:]] == ["2024-01-01", "2024-01-02", "2024-01-03"]
    assert all(line.endswith("$0.00") for line in lines[1:])


def test_main_returns_three_when_config_is_missing(tmp_path, monkeypatch):
    """A missing configuration file maps to exit code 3."""

    monkeypatch.chdir(tmp_path)

    assert cli.main(["--config", str(tmp_path / "absent.ini"), "next-id"]) == 3
