"""Data access layer for the sales valuation engine.

This module reads from and writes to the master workbook that stands in for
the hosted backend. Valuation and reporting logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Sheet operations: loading typed records, changing rows, and the
   :class:`WorkbookSource` listing interface the engine batch-fetches from.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, tzinfo
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Collection, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    DEFAULT_IDENTIFIER_SEED,
    DEFAULT_RECENT_LIMIT,
    DEFAULT_TIME_ZONE,
    DEFAULT_TOP_N,
    DEFAULT_WINDOW_DAYS,
    SheetName,
)


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
PRICE_HISTORY_SHEET = SheetName.PRICE_HISTORY.value
SALES_SHEET = SheetName.SALES.value
SALES_DETAIL_SHEET = SheetName.SALES_DETAIL.value
AUDIT_LOG_SHEET = SheetName.AUDIT_LOG.value

SaleDate = Union[date, datetime]
DateRange = Tuple[Optional[date], Optional[date]]


class DuplicateRecordError(ValueError):
    """Raised when an append would violate a sheet's uniqueness constraint."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    schema_version: str
    time_zone: tzinfo = UTC
    window_days: int = DEFAULT_WINDOW_DAYS
    top_n: int = DEFAULT_TOP_N
    recent_limit: int = DEFAULT_RECENT_LIMIT
    identifier_seed: str = DEFAULT_IDENTIFIER_SEED
    attribution_viewers: Tuple[str, ...] = ()
    category_mapping: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    description: Optional[str]
    unit: Optional[str]


@dataclass(frozen=True)
class PriceRow:
    """In-memory view of a row from the ``PriceHistory`` sheet."""

    product_id: str
    effective_date: date
    unit_price: Decimal


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``Sales`` sheet."""

    transaction_id: str
    sale_date: SaleDate
    customer_id: Optional[str] = None
    employee_id: Optional[str] = None


@dataclass(frozen=True)
class SaleLineRow:
    """In-memory view of a row from the ``SalesDetail`` sheet.

    ``quantity`` holds a :class:`~decimal.Decimal` whenever the cell parses as
    a number. Anything else is kept verbatim so the engine can reject it.
    """

    transaction_id: str
    product_id: str
    quantity: Any


@dataclass(frozen=True)
class AuditEventRow:
    """In-memory view of a row from the ``AuditLog`` sheet."""

    table_name: str
    record_id: str
    action: str
    actor: Optional[str]
    timestamp: datetime


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls the engine.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the search walks up from the current
    working directory toward the filesystem root and returns the first
    ``CONFIG_FILE_NAME`` that exists.

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

    Option names keep their case so product codes listed under
    ``[Categories]`` match the codes stored in the workbook.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.optionxform = str  # type: ignore[assignment]
    parser.read(config_path)
    return parser


def resolve_time_zone(name: str) -> tzinfo:
    """Turn a configured zone name into a ``tzinfo``.

    Raises:
        KeyError: If the zone name is unknown to the system database.
    """

    if name.strip().upper() == "UTC":
        return UTC
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise KeyError(f"Unknown reporting time zone: {name}") from exc


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` is mandatory. ``[Reporting]``, ``[Access]`` and
    ``[Categories]`` are optional and fall back to the package defaults.
    Relative ``DataFile`` entries are anchored at ``base_path`` (or the
    current working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve a relative
            ``DataFile`` entry.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing, or the time
            zone is unknown.
        ValueError: If a numeric reporting option is not an integer.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    time_zone = resolve_time_zone(
        parser.get("Reporting", "TimeZone", fallback=DEFAULT_TIME_ZONE))
    viewers_raw = parser.get("Access", "AttributionViewers", fallback="")
    viewers = tuple(item.strip() for item in viewers_raw.split(",") if item.strip())
    categories = (
        {key: value.strip() for key, value in parser.items("Categories")}
        if parser.has_section("Categories")
        else {}
    )

    return ConfigSettings(
        data_file=data_file_path,
        schema_version=schema_version,
        time_zone=time_zone,
        window_days=parser.getint("Reporting", "WindowDays", fallback=DEFAULT_WINDOW_DAYS),
        top_n=parser.getint("Reporting", "TopN", fallback=DEFAULT_TOP_N),
        recent_limit=parser.getint("Reporting", "RecentLimit", fallback=DEFAULT_RECENT_LIMIT),
        identifier_seed=parser.get("Reporting", "IdentifierSeed", fallback=DEFAULT_IDENTIFIER_SEED),
        attribution_viewers=viewers,
        category_mapping=categories,
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

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def calendar_date(value: Union[SaleDate, str], tz: tzinfo = UTC) -> date:
    """Truncate a sale or price date to a calendar date in the zone ``tz``.

    ``date`` values are taken as-is. Naive datetimes are read as wall-clock
    time in ``tz``. Aware datetimes are converted into ``tz`` first. ISO
    strings are parsed and then follow the same rules.

    Raises:
        ValueError: If ``value`` is not a date, datetime, or ISO string.
    """

    if isinstance(value, str):
        value = _parse_iso(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.date()
        return value.astimezone(tz).date()
    if isinstance(value, date):
        return value
    raise ValueError(f"Unsupported date value: {value!r}")


def _parse_iso(raw: str) -> datetime:
    text = raw.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"Invalid ISO date or timestamp: {raw!r}") from exc


def _to_text(raw: object) -> Optional[str]:
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


def _to_key(raw: object, *, column: str) -> str:
    """Return a key cell as text, refusing blank cells."""

    text = _to_text(raw)
    if text is None:
        raise ValueError(f"Missing {column} value")
    return text


def _to_sale_date(raw: object) -> SaleDate:
    """Normalize a sale date cell, collapsing naive midnights to ``date``."""

    if isinstance(raw, str):
        raw = _parse_iso(raw)
    if isinstance(raw, datetime):
        if raw.tzinfo is None and raw.time() == time(0, 0):
            return raw.date()
        return raw
    if isinstance(raw, date):
        return raw
    raise ValueError(f"Invalid sale date: {raw!r}")


def _to_effective_date(raw: object) -> date:
    if isinstance(raw, str):
        raw = _parse_iso(raw)
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    raise ValueError(f"Invalid effective date: {raw!r}")


def _to_timestamp(raw: object) -> datetime:
    """Normalize an audit timestamp cell into an aware datetime (naive = UTC)."""

    if isinstance(raw, str):
        raw = _parse_iso(raw)
    if not isinstance(raw, datetime):
        raise ValueError(f"Invalid audit timestamp: {raw!r}")
    if raw.tzinfo is None:
        return raw.replace(tzinfo=UTC)
    return raw


def _to_money(raw: object, *, context: str) -> Decimal:
    try:
        return Decimal(str(raw).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid unit price {raw!r} for {context}") from exc


def _to_quantity(raw: object) -> Any:
    if raw is None or isinstance(raw, bool):
        return raw
    try:
        return Decimal(str(raw).strip())
    except InvalidOperation:
        return raw


def _iter_sheet_rows(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    """Yield raw value tuples below the header, skipping fully empty rows."""

    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield raw


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet."""

    for raw in _iter_sheet_rows(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_prices(workbook: Workbook) -> Iterable[PriceRow]:
    """Iterate over the ``PriceHistory`` worksheet in sheet (insertion) order.

    Sheet order matters: when two records share an effective date the engine
    lets the later row win.
    """

    for raw in _iter_sheet_rows(workbook, PRICE_HISTORY_SHEET):
        yield deserialize_price(raw)


def iter_sales(workbook: Workbook) -> Iterable[SaleRow]:
    """Iterate over sale headers stored on the ``Sales`` worksheet."""

    for raw in _iter_sheet_rows(workbook, SALES_SHEET):
        yield deserialize_sale(raw)


def iter_sale_lines(workbook: Workbook) -> Iterable[SaleLineRow]:
    """Iterate over sale lines stored on the ``SalesDetail`` worksheet."""

    for raw in _iter_sheet_rows(workbook, SALES_DETAIL_SHEET):
        yield deserialize_sale_line(raw)


def iter_audit_events(workbook: Workbook) -> Iterable[AuditEventRow]:
    """Stream the ``AuditLog`` worksheet in insertion order."""

    for raw in _iter_sheet_rows(workbook, AUDIT_LOG_SHEET):
        yield deserialize_audit_event(raw)


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product, refusing a product code that already exists."""

    if locate_row(workbook, PRODUCTS_SHEET, "ProductCode", record.product_id) is not None:
        raise DuplicateRecordError(f"Product already exists: {record.product_id}")
    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_price(workbook: Workbook, record: PriceRow) -> None:
    """Append a price history record. History is never rewritten in place."""

    workbook[PRICE_HISTORY_SHEET].append(serialize_price(record))


def append_sale(workbook: Workbook, record: SaleRow) -> None:
    """Append a sale header, enforcing transaction number uniqueness.

    The uniqueness check is what callers of
    :func:`sales_valuation.core_logic.allocate_identifier` rely on to detect
    that another writer claimed the same transaction number first.

    Raises:
        DuplicateRecordError: If ``record.transaction_id`` is already present.
    """

    if locate_row(workbook, SALES_SHEET, "TransactionNo", record.transaction_id) is not None:
        log.warning("Rejected duplicate transaction number '%s'", record.transaction_id)
        raise DuplicateRecordError(f"Transaction already exists: {record.transaction_id}")
    workbook[SALES_SHEET].append(serialize_sale(record))


def append_sale_line(workbook: Workbook, record: SaleLineRow) -> None:
    """Append a sale line to the ``SalesDetail`` worksheet."""

    workbook[SALES_DETAIL_SHEET].append(serialize_sale_line(record))


def append_audit_event(workbook: Workbook, record: AuditEventRow) -> None:
    """Append an event to the audit log."""

    workbook[AUDIT_LOG_SHEET].append(serialize_audit_event(record))


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find the first row whose ``key_column`` equals ``key_value``.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_cells = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(header_cells)}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def update_sale(workbook: Workbook, transaction_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns of an existing sale header.

    Only the given columns are written. Dates must already be serialized.

    Args:
        workbook (Workbook): Workbook containing the sales sheet.
        transaction_id (str): Transaction number of the row to change.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Raises:
        KeyError: If the sale or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, SALES_SHEET, "TransactionNo", transaction_id)
    if row_index is None:
        raise KeyError(f"Sale not found: {transaction_id}")

    sheet = workbook[SALES_SHEET]
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}

    for column, value in field_values.items():
        if column not in header_map or column == "TransactionNo":
            raise KeyError(f"Unknown sale field: {column}")
        sheet.cell(row=row_index, column=header_map[column], value=value)


def delete_sale_lines(workbook: Workbook, transaction_id: str) -> List[SaleLineRow]:
    """Remove every ``SalesDetail`` row of a sale and return what was removed."""

    sheet = workbook[SALES_DETAIL_SHEET]
    matches: List[Tuple[int, SaleLineRow]] = []
    for row_idx, raw in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if raw and _to_text(raw[0]) == transaction_id:
            matches.append((row_idx, deserialize_sale_line(raw)))

    # Bottom-up so earlier row indices stay valid.
    for row_idx, _ in reversed(matches):
        sheet.delete_rows(row_idx)
    return [line for _, line in matches]


def delete_sale(workbook: Workbook, transaction_id: str) -> SaleRow:
    """Remove a sale header whose lines have already been removed.

    Raises:
        KeyError: If the sale does not exist.
        ValueError: If ``SalesDetail`` still references the sale.
    """

    row_index = locate_row(workbook, SALES_SHEET, "TransactionNo", transaction_id)
    if row_index is None:
        raise KeyError(f"Sale not found: {transaction_id}")
    if any(line.transaction_id == transaction_id for line in iter_sale_lines(workbook)):
        raise ValueError(f"Sale {transaction_id} still has lines; delete them first")

    sheet = workbook[SALES_SHEET]
    removed = deserialize_sale([cell.value for cell in sheet[row_index]])
    sheet.delete_rows(row_index)
    return removed


def serialize_product(record: ProductRow) -> list[object]:
    """Arrange a product as ``[ProductCode, Description, Unit]``."""

    return [record.product_id, record.description, record.unit]


def serialize_price(record: PriceRow) -> list[object]:
    """Arrange a price as ``[ProductCode, EffectiveDate, UnitPrice]``."""

    return [record.product_id, record.effective_date.isoformat(), record.unit_price]


def serialize_sale(record: SaleRow) -> list[object]:
    """Arrange a sale as ``[TransactionNo, SalesDate, CustomerNo, EmployeeNo]``.

    Dates are written as ISO text because Excel cannot store time zones.
    """

    return [
        record.transaction_id,
        record.sale_date.isoformat(),
        record.customer_id,
        record.employee_id,
    ]


def serialize_sale_line(record: SaleLineRow) -> list[object]:
    """Arrange a line as ``[TransactionNo, ProductCode, Quantity]``."""

    return [record.transaction_id, record.product_id, record.quantity]


def serialize_audit_event(record: AuditEventRow) -> list[object]:
    """Arrange an event as ``[TableName, RecordID, Action, Actor, Timestamp]``."""

    return [
        record.table_name,
        record.record_id,
        record.action,
        record.actor,
        record.timestamp.isoformat(),
    ]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw ``Products`` row, coercing the code to ``str``."""

    product_id, description, unit = raw_row[:3]
    return ProductRow(
        product_id=_to_key(product_id, column="ProductCode"),
        description=_to_text(description),
        unit=_to_text(unit),
    )


def deserialize_price(raw_row: Sequence[object]) -> PriceRow:
    """Convert a raw ``PriceHistory`` row.

    Raises:
        ValueError: If the effective date or unit price cannot be parsed.
    """

    product_id, effective_raw, price_raw = raw_row[:3]
    code = _to_key(product_id, column="ProductCode")
    return PriceRow(
        product_id=code,
        effective_date=_to_effective_date(effective_raw),
        unit_price=_to_money(price_raw, context=f"product '{code}'"),
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Convert a raw ``Sales`` row.

    Raises:
        ValueError: If the sale date cannot be parsed.
    """

    transaction_id, sale_date_raw, customer_id, employee_id = raw_row[:4]
    return SaleRow(
        transaction_id=_to_key(transaction_id, column="TransactionNo"),
        sale_date=_to_sale_date(sale_date_raw),
        customer_id=_to_text(customer_id),
        employee_id=_to_text(employee_id),
    )


def deserialize_sale_line(raw_row: Sequence[object]) -> SaleLineRow:
    """Convert a raw ``SalesDetail`` row, keeping odd quantities verbatim."""

    transaction_id, product_id, quantity_raw = raw_row[:3]
    return SaleLineRow(
        transaction_id=_to_key(transaction_id, column="TransactionNo"),
        product_id=_to_key(product_id, column="ProductCode"),
        quantity=_to_quantity(quantity_raw),
    )


def deserialize_audit_event(raw_row: Sequence[object]) -> AuditEventRow:
    """Convert a raw ``AuditLog`` row into an event with an aware timestamp."""

    table_name, record_id, action, actor, timestamp_raw = raw_row[:5]
    return AuditEventRow(
        table_name=_to_key(table_name, column="TableName"),
        record_id=_to_key(record_id, column="RecordID"),
        action=_to_key(action, column="Action").lower(),
        actor=_to_text(actor),
        timestamp=_to_timestamp(timestamp_raw),
    )


class WorkbookSource:
    """Listing interface over the master workbook.

    Each ``list_*`` call reads its worksheet once and filters in memory, so a
    reporting pass issues one read per sheet regardless of how many sales or
    lines it covers.
    """

    def __init__(self, workbook: Workbook, *, time_zone: tzinfo = UTC) -> None:
        self.workbook = workbook
        self.time_zone = time_zone

    def list_products(self) -> List[ProductRow]:
        return list(iter_products(self.workbook))

    def list_prices(self, product_ids: Optional[Collection[str]] = None) -> List[PriceRow]:
        rows = iter_prices(self.workbook)
        if product_ids is None:
            return list(rows)
        wanted = set(product_ids)
        return [row for row in rows if row.product_id in wanted]

    def list_sales(self, date_range: Optional[DateRange] = None) -> List[SaleRow]:
        """Return sales whose calendar date falls inside the inclusive range."""

        rows = iter_sales(self.workbook)
        if date_range is None:
            return list(rows)
        start, end = date_range
        selected: List[SaleRow] = []
        for row in rows:
            day = calendar_date(row.sale_date, self.time_zone)
            if start is not None and day < start:
                continue
            if end is not None and day > end:
                continue
            selected.append(row)
        return selected

    def list_lines(self, sale_ids: Optional[Collection[str]] = None) -> List[SaleLineRow]:
        rows = iter_sale_lines(self.workbook)
        if sale_ids is None:
            return list(rows)
        wanted = set(sale_ids)
        return [row for row in rows if row.transaction_id in wanted]

    def list_events(
        self,
        table_name: str,
        record_ids: Optional[Collection[str]] = None,
    ) -> List[AuditEventRow]:
        """Return events for ``table_name`` in log order."""

        wanted = set(record_ids) if record_ids is not None else None
        return [
            row
            for row in iter_audit_events(self.workbook)
            if row.table_name == table_name and (wanted is None or row.record_id in wanted)
        ]
