"""Shared pytest fixtures and utilities for sales valuation tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Sequence
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from sales_valuation import cli, constants, core_logic, data_manager  # noqa: E402
from sales_valuation.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Reporting]\n"
    "TimeZone = {time_zone}\n"
    "WindowDays = {window_days}\n"
    "TopN = 5\n"
    "RecentLimit = 10\n"
    "IdentifierSeed = T00001\n\n"
    "[Access]\n"
    "AttributionViewers = {viewers}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "sales_master.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        time_zone: str = "UTC",
        window_days: int = 7,
        viewers: str = "auditor@example.com",
        categories: dict[str, str] | None = None,
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        workbook_path = workbook_factory(subdir=bundle_dir_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        text = _CONFIG_TEMPLATE.format(
            data_file=data_file_entry,
            schema_version=schema_version,
            time_zone=time_zone,
            window_days=window_days,
            viewers=viewers,
        )
        if categories:
            text += "\n[Categories]\n" + "".join(f"{code} = {label}\n" for code, label in categories.items())
        config_path = bundle_dir / "config.ini"
        config_path.write_text(text)
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# Record builders
# ---------------------------------------------------------------------------


def make_sale(transaction_id: str, sale_date: date, **extra: str) -> data_manager.SaleRow:
    return data_manager.SaleRow(transaction_id=transaction_id, sale_date=sale_date, **extra)


def make_line(transaction_id: str, product_id: str, quantity: object) -> data_manager.SaleLineRow:
    return data_manager.SaleLineRow(transaction_id=transaction_id, product_id=product_id, quantity=quantity)


def make_price(product_id: str, effective_date: date, unit_price: str) -> data_manager.PriceRow:
    return data_manager.PriceRow(product_id=product_id, effective_date=effective_date, unit_price=Decimal(unit_price))


def seed_workbook(
    workbook_path: Path,
    *,
    products: Sequence[data_manager.ProductRow] = (),
    prices: Sequence[data_manager.PriceRow] = (),
    sales: Sequence[data_manager.SaleRow] = (),
    lines: Sequence[data_manager.SaleLineRow] = (),
    events: Sequence[data_manager.AuditEventRow] = (),
) -> None:
    """Append records to a workbook on disk through the data layer."""

    workbook = data_manager.open_workbook(workbook_path)
    for product in products:
        data_manager.append_product(workbook, product)
    for price in prices:
        data_manager.append_price(workbook, price)
    for sale in sales:
        data_manager.append_sale(workbook, sale)
    for line in lines:
        data_manager.append_sale_line(workbook, line)
    for event in events:
        data_manager.append_audit_event(workbook, event)
    data_manager.save_workbook(workbook, workbook_path)


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return cli.build_parser()


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "sales_master.xlsx",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        attribution_viewers=("auditor@example.com",),
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)
