"""Valuation and reporting engine.

This module turns already-fetched sale headers, sale lines, price history and
audit events into valued sales, daily series, revenue rankings and
per-record attribution. Every engine function is a pure function of its
arguments. The only I/O happens in :func:`load_snapshot`, which asks a data
source for everything a reporting pass needs in one batch, and in the
runtime-context helpers that open the workbook.
"""

from __future__ import annotations

import bisect
import re
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime, timedelta, tzinfo
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import (
    DEFAULT_CATEGORY,
    DEFAULT_IDENTIFIER_SEED,
    DEFAULT_RECENT_LIMIT,
    DEFAULT_TOP_N,
    DEFAULT_WINDOW_DAYS,
    EXPECTED_SCHEMA_VERSION,
    SALES_AUDIT_TABLE,
    SALES_DETAIL_AUDIT_TABLE,
    ZERO,
    AuditAction,
)


class EngineError(Exception):
    """Base class for errors raised by the valuation engine."""


class MalformedInputError(EngineError, ValueError):
    """Raised when an input value is invalid and cannot be valued or counted."""


class EventOrderViolation(EngineError):
    """Raised when audit events for a record arrive out of timestamp order."""


class IdentifierConflictError(EngineError):
    """Raised when no transaction number could be reserved."""


class SaleNotFoundError(EngineError):
    """Raised when a sale to update or delete does not exist."""


class AttributionAccessDenied(EngineError):
    """Raised when a caller asks for attribution it is not allowed to see."""


PriceSource = Union["PriceIndex", Iterable[data_manager.PriceRow]]
ProductSource = Union[Mapping[str, data_manager.ProductRow], Iterable[data_manager.ProductRow]]
UnitLookup = Callable[[str], Optional[str]]


@dataclass(frozen=True)
class RuntimeContext:
    """Configuration, the live workbook, and memoized snapshots."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[Any, Any]] = field(default_factory=dict, repr=False, compare=False)


# ---------------------------------------------------------------------------
# Effective-price resolution
# ---------------------------------------------------------------------------


class PriceIndex:
    """Price history indexed per product for O(log n) effective-date lookups.

    Each product's records are sorted by ``(effective_date, position)`` where
    ``position`` is the record's place in the input sequence. A lookup takes
    the right-most record whose effective date is on or before the reference
    date, so when two records share an effective date the one supplied later
    wins. The index is immutable once built.
    """

    def __init__(self, prices: Iterable[data_manager.PriceRow], *, tz: tzinfo = UTC) -> None:
        buckets: Dict[str, List[Tuple[date, int, data_manager.PriceRow]]] = defaultdict(list)
        count = 0
        for position, record in enumerate(prices):
            buckets[record.product_id].append((record.effective_date, position, record))
            count = position + 1

        self._dates: Dict[str, List[date]] = {}
        self._records: Dict[str, List[data_manager.PriceRow]] = {}
        for product_id, entries in buckets.items():
            entries.sort(key=lambda entry: (entry[0], entry[1]))
            self._dates[product_id] = [entry[0] for entry in entries]
            self._records[product_id] = [entry[2] for entry in entries]

        self.tz = tz
        self._size = count
        log.debug("Indexed %d price records for %d products", count, len(self._records))

    def __len__(self) -> int:
        return self._size

    def __contains__(self, product_id: object) -> bool:
        return product_id in self._records

    def history(self, product_id: str) -> List[data_manager.PriceRow]:
        """Return the product's records in resolution order (oldest first)."""

        return list(self._records.get(product_id, ()))

    def resolve_record(
        self,
        product_id: str,
        reference_date: Union[date, datetime, str],
    ) -> Optional[data_manager.PriceRow]:
        """Return the price record in effect for ``product_id`` on ``reference_date``.

        Args:
            product_id (str): Product code to resolve.
            reference_date (date | datetime | str): Day the price must apply
                to. Datetimes are truncated with the index's time zone.

        Returns:
            PriceRow | None: The record with the greatest effective date on or
                before ``reference_date``, or ``None`` when the product has no
                such record.
        """

        dates = self._dates.get(product_id)
        if not dates:
            return None
        day = data_manager.calendar_date(reference_date, self.tz)
        position = bisect.bisect_right(dates, day)
        if position == 0:
            return None
        return self._records[product_id][position - 1]

    def resolve(
        self,
        product_id: str,
        reference_date: Union[date, datetime, str],
    ) -> Optional[Decimal]:
        """Return the unit price in effect, or ``None`` when absent."""

        record = self.resolve_record(product_id, reference_date)
        return record.unit_price if record is not None else None


def _as_price_index(prices: PriceSource, tz: tzinfo) -> PriceIndex:
    if isinstance(prices, PriceIndex):
        if prices.tz != tz:
            log.warning(
                "Prebuilt price index truncates dates in %s, not the requested %s; using the index zone",
                prices.tz,
                tz,
            )
        return prices
    return PriceIndex(prices, tz=tz)


def _as_product_map(products: Optional[ProductSource]) -> Mapping[str, data_manager.ProductRow]:
    if products is None:
        return {}
    if isinstance(products, Mapping):
        return products
    return {product.product_id: product for product in products}


# ---------------------------------------------------------------------------
# Line and sale valuation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ValuedLine:
    """A sale line with the price that applied on the sale date.

    ``unit_price`` is ``None`` when no price was in effect, in which case
    ``amount`` is zero. ``product_name`` and ``unit`` are display labels and
    are ``None`` when the product is unknown.
    """

    line: data_manager.SaleLineRow
    quantity: Decimal
    unit_price: Optional[Decimal]
    amount: Decimal
    price_effective_date: Optional[date] = None
    product_name: Optional[str] = None
    unit: Optional[str] = None

    @property
    def product_id(self) -> str:
        return self.line.product_id

    @property
    def transaction_id(self) -> str:
        return self.line.transaction_id

    @property
    def is_priced(self) -> bool:
        return self.unit_price is not None


@dataclass(frozen=True)
class ValuedSale:
    """A sale header with its valued lines and their exact total."""

    sale: data_manager.SaleRow
    lines: Tuple[ValuedLine, ...]
    total_amount: Decimal

    @property
    def transaction_id(self) -> str:
        return self.sale.transaction_id

    @property
    def unpriced_lines(self) -> Tuple[ValuedLine, ...]:
        return tuple(line for line in self.lines if not line.is_priced)


def require_valid_quantity(quantity: Any, *, context: str = "sale line") -> Decimal:
    """Validate a line quantity and return it as a :class:`Decimal`.

    Integers, decimals, numeric strings and floats (through their ``str``
    form) are accepted. Fractional quantities are allowed.

    Args:
        quantity (Any): Raw quantity from a sale line.
        context (str): Description used in the error message.

    Returns:
        Decimal: The quantity, unchanged in value.

    Raises:
        MalformedInputError: If ``quantity`` is negative, not numeric, NaN or
            infinite.
    """

    value: Optional[Decimal]
    if isinstance(quantity, bool):
        value = None
    elif isinstance(quantity, Decimal):
        value = quantity
    elif isinstance(quantity, int):
        value = Decimal(quantity)
    elif isinstance(quantity, (float, str)):
        try:
            value = Decimal(str(quantity).strip())
        except InvalidOperation:
            value = None
    else:
        value = None

    if value is None or not value.is_finite():
        log.error("Quantity validation failed for %s: %r", context, quantity)
        raise MalformedInputError(f"Quantity for {context} is not a number: {quantity!r}")
    if value < ZERO:
        log.error("Quantity validation failed for %s: %s", context, value)
        raise MalformedInputError(f"Quantity for {context} must be zero or positive: {value}")
    return value


def valuate_line(
    line: data_manager.SaleLineRow,
    sale_date: Union[date, datetime, str],
    prices: PriceSource,
    *,
    products: Optional[ProductSource] = None,
    unit_lookup: Optional[UnitLookup] = None,
    tz: tzinfo = UTC,
) -> ValuedLine:
    """Value one sale line at the price in effect on the sale date.

    The sale date, not the current date, drives resolution, so historical
    sales keep the price they were made at. A missing product or price is not
    an error: the line comes back with ``unit_price=None`` and a zero amount.

    Args:
        line (SaleLineRow): Line to value.
        sale_date (date | datetime | str): Date of the owning sale.
        prices (PriceIndex | Iterable[PriceRow]): Price history. Pass a
            prebuilt :class:`PriceIndex` when valuing many lines.
        products (Mapping | Iterable[ProductRow] | None): Reference data used
            for the display name and unit.
        unit_lookup (Callable[[str], str | None] | None): Caller policy for
            the unit label currently shown for a product. A non-``None``
            result overrides the product's stored unit; the reported
            ``product_id`` never changes.
        tz (tzinfo): Zone used to truncate datetime sale dates.

    Returns:
        ValuedLine: The valued line.

    Raises:
        MalformedInputError: If the line quantity is invalid.
    """

    index = _as_price_index(prices, tz)
    return _valuate_line(line, sale_date, index, _as_product_map(products), unit_lookup)


def _valuate_line(
    line: data_manager.SaleLineRow,
    sale_date: Union[date, datetime, str],
    index: PriceIndex,
    products: Mapping[str, data_manager.ProductRow],
    unit_lookup: Optional[UnitLookup],
) -> ValuedLine:
    quantity = require_valid_quantity(
        line.quantity,
        context=f"transaction '{line.transaction_id}' product '{line.product_id}'",
    )
    product = products.get(line.product_id)
    name = product.description if product is not None else None
    unit = product.unit if product is not None else None
    if unit_lookup is not None:
        current_unit = unit_lookup(line.product_id)
        if current_unit is not None:
            unit = current_unit

    record = index.resolve_record(line.product_id, sale_date)
    if record is None:
        log.debug(
            "No price in effect for product '%s' on %s (transaction '%s')",
            line.product_id,
            sale_date,
            line.transaction_id,
        )
        return ValuedLine(line=line, quantity=quantity, unit_price=None, amount=ZERO, product_name=name, unit=unit)

    return ValuedLine(
        line=line,
        quantity=quantity,
        unit_price=record.unit_price,
        amount=quantity * record.unit_price,
        price_effective_date=record.effective_date,
        product_name=name,
        unit=unit,
    )


def _build_valued_sale(
    sale: data_manager.SaleRow,
    lines: Iterable[data_manager.SaleLineRow],
    index: PriceIndex,
    products: Mapping[str, data_manager.ProductRow],
    unit_lookup: Optional[UnitLookup],
) -> ValuedSale:
    valued = tuple(_valuate_line(line, sale.sale_date, index, products, unit_lookup) for line in lines)
    total = sum((line.amount for line in valued), ZERO)
    return ValuedSale(sale=sale, lines=valued, total_amount=total)


def valuate_sale(
    sale: data_manager.SaleRow,
    lines: Iterable[data_manager.SaleLineRow],
    prices: PriceSource,
    *,
    products: Optional[ProductSource] = None,
    unit_lookup: Optional[UnitLookup] = None,
    tz: tzinfo = UTC,
) -> ValuedSale:
    """Value every line that belongs to ``sale`` and total them exactly.

    Lines carrying another transaction number are ignored, so the full line
    set of a pass can be handed in. The total is a :class:`Decimal` sum.

    Raises:
        MalformedInputError: If one of the sale's lines has an invalid
            quantity.
    """

    own_lines = [line for line in lines if line.transaction_id == sale.transaction_id]
    return _build_valued_sale(
        sale,
        own_lines,
        _as_price_index(prices, tz),
        _as_product_map(products),
        unit_lookup,
    )


def valuate_sales(
    sales: Iterable[data_manager.SaleRow],
    lines: Iterable[data_manager.SaleLineRow],
    prices: PriceSource,
    *,
    products: Optional[ProductSource] = None,
    unit_lookup: Optional[UnitLookup] = None,
    tz: tzinfo = UTC,
) -> List[ValuedSale]:
    """Value a batch of sales against one in-memory price index.

    The price index is built once and lines are grouped by transaction number
    in a single pass, so the cost is O((s + l) log p) for ``s`` sales, ``l``
    lines and ``p`` price records. Output follows the order of ``sales``;
    each sale's lines keep their input order. Lines whose sale is not in
    ``sales`` are left out and reported in the log, since they usually mean
    the headers and lines were read at different moments.

    Args:
        sales (Iterable[SaleRow]): Sale headers to value.
        lines (Iterable[SaleLineRow]): Lines for those sales.
        prices (PriceIndex | Iterable[PriceRow]): Price history.
        products (Mapping | Iterable[ProductRow] | None): Reference data for
            display labels.
        unit_lookup (Callable[[str], str | None] | None): Caller-supplied
            current-unit policy, see :func:`valuate_line`.
        tz (tzinfo): Reporting time zone.

    Returns:
        list[ValuedSale]: One valued sale per input sale.

    Raises:
        MalformedInputError: If two sales share a transaction number or a line
            quantity is invalid.
    """

    index = _as_price_index(prices, tz)
    product_map = _as_product_map(products)

    headers: List[data_manager.SaleRow] = []
    seen: set[str] = set()
    for sale in sales:
        if sale.transaction_id in seen:
            log.error("Duplicate transaction number '%s' in valuation input", sale.transaction_id)
            raise MalformedInputError(f"Duplicate transaction number: {sale.transaction_id}")
        seen.add(sale.transaction_id)
        headers.append(sale)

    grouped: Dict[str, List[data_manager.SaleLineRow]] = defaultdict(list)
    orphans = 0
    for line in lines:
        if line.transaction_id not in seen:
            orphans += 1
            continue
        grouped[line.transaction_id].append(line)
    if orphans:
        log.warning("Ignored %d sale lines whose sale header is not in the snapshot", orphans)

    valued = [
        _build_valued_sale(sale, grouped.get(sale.transaction_id, ()), index, product_map, unit_lookup)
        for sale in headers
    ]
    unpriced = sum(len(sale.unpriced_lines) for sale in valued)
    if unpriced:
        log.warning("%d sale lines had no price in effect and were valued at zero", unpriced)
    log.info("Valuated %d sales", len(valued))
    return valued


# ---------------------------------------------------------------------------
# Transaction numbers
# ---------------------------------------------------------------------------


_PREFIXED_IDENTIFIER = re.compile(r"^([A-Za-z]+)([0-9]+)$")
_BARE_IDENTIFIER = re.compile(r"^[0-9]+$")


def _increment_digits(digits: str) -> str:
    # zfill pads but never truncates, so 99999 -> 100000 grows the width.
    return str(int(digits) + 1).zfill(len(digits))


def next_identifier(last_identifier: Optional[Union[str, int]], *, seed: str = DEFAULT_IDENTIFIER_SEED) -> str:
    """Return the transaction number that follows ``last_identifier``.

    ``<letters><digits>`` values keep their prefix and the width of the digit
    run, growing it only when the number no longer fits
    (``T00042`` -> ``T00043``, ``T99999`` -> ``T100000``). Bare digit strings
    and integers are incremented the same way. ``None``, blank strings and
    strings matching neither form restart at ``seed``.

    The function is pure. It does not make the result unique: two callers
    holding the same ``last_identifier`` get the same answer, and the store
    must reject the second insert (see :func:`allocate_identifier`).

    Raises:
        MalformedInputError: If ``last_identifier`` is neither a string, an
            integer, nor ``None``, or is a negative integer.
    """

    if last_identifier is None:
        return seed
    if isinstance(last_identifier, bool) or not isinstance(last_identifier, (str, int)):
        log.error("Cannot derive a transaction number from %r", last_identifier)
        raise MalformedInputError(f"Unsupported identifier value: {last_identifier!r}")
    if isinstance(last_identifier, int):
        if last_identifier < 0:
            raise MalformedInputError(f"Identifier must not be negative: {last_identifier}")
        return str(last_identifier + 1)

    text = last_identifier.strip()
    if not text:
        return seed
    match = _PREFIXED_IDENTIFIER.match(text)
    if match:
        prefix, digits = match.groups()
        return f"{prefix}{_increment_digits(digits)}"
    if _BARE_IDENTIFIER.match(text):
        return _increment_digits(text)

    log.warning("Identifier '%s' has no numeric suffix; restarting at '%s'", text, seed)
    return seed


def identifier_sort_key(identifier: str) -> Tuple[str, int, str]:
    """Order transaction numbers by prefix and then numeric value.

    Plain string ordering puts ``T100000`` before ``T99999``; this key does
    not.
    """

    text = identifier.strip()
    match = _PREFIXED_IDENTIFIER.match(text)
    if match:
        return (match.group(1), int(match.group(2)), text)
    if _BARE_IDENTIFIER.match(text):
        return ("", int(text), text)
    return (text, -1, text)


def latest_identifier(identifiers: Iterable[Optional[str]]) -> Optional[str]:
    """Return the highest transaction number, or ``None`` when there is none."""

    candidates = [value for value in identifiers if value and value.strip()]
    if not candidates:
        return None
    return max(candidates, key=identifier_sort_key)


def allocate_identifier(
    fetch_last: Callable[[], Optional[str]],
    reserve: Callable[[str], bool],
    *,
    seed: str = DEFAULT_IDENTIFIER_SEED,
    max_attempts: int = 5,
) -> str:
    """Generate and reserve a transaction number, retrying on conflicts.

    Uniqueness is enforced by the caller's store: ``reserve`` must insert the
    candidate atomically and return ``False`` when the number is already
    taken. Each retry re-reads the latest number through ``fetch_last``.

    Raises:
        MalformedInputError: If ``max_attempts`` is lower than one.
        IdentifierConflictError: If every attempt collided.
    """

    if max_attempts < 1:
        raise MalformedInputError("max_attempts must be at least 1")

    candidate = seed
    for attempt in range(1, max_attempts + 1):
        candidate = next_identifier(fetch_last(), seed=seed)
        if reserve(candidate):
            log.info("Reserved transaction number '%s' (attempt %d)", candidate, attempt)
            return candidate
        log.warning(
            "Transaction number '%s' was already taken (attempt %d/%d)",
            candidate,
            attempt,
            max_attempts,
        )

    log.error("Gave up reserving a transaction number after %d attempts", max_attempts)
    raise IdentifierConflictError(
        f"Could not reserve a transaction number after {max_attempts} attempts (last tried {candidate})"
    )


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DaySummary:
    """Totals for one calendar day of a trailing window."""

    date: date
    total_amount: Decimal
    transaction_count: int


@dataclass(frozen=True)
class ProductRevenue:
    """Revenue and quantity sold for one product."""

    product_id: str
    name: Optional[str]
    total_amount: Decimal
    quantity: Decimal


@dataclass(frozen=True)
class CategoryRevenue:
    """Revenue for one caller-defined category."""

    category: str
    total_amount: Decimal
    product_ids: Tuple[str, ...]


@dataclass(frozen=True)
class RecentLine:
    """A valued line paired with the calendar date of its sale."""

    date: date
    line: ValuedLine


def _require_count(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        log.error("Invalid %s: %r", name, value)
        raise MalformedInputError(f"{name} must be a non-negative integer, got {value!r}")
    return value


def _require_unique_sales(valued_sales: Iterable[ValuedSale]) -> List[ValuedSale]:
    sales = list(valued_sales)
    seen: set[str] = set()
    for sale in sales:
        if sale.transaction_id in seen:
            log.error("Duplicate transaction number '%s' in aggregation input", sale.transaction_id)
            raise MalformedInputError(f"Duplicate transaction number: {sale.transaction_id}")
        seen.add(sale.transaction_id)
    return sales


def _today(tz: tzinfo) -> date:
    return datetime.now(tz).date()


def latest_sale_date(valued_sales: Iterable[ValuedSale], *, tz: tzinfo = UTC) -> Optional[date]:
    """Return the most recent sale calendar date, or ``None`` for no sales."""

    days = [data_manager.calendar_date(sale.sale.sale_date, tz) for sale in valued_sales]
    return max(days) if days else None


def daily_series(
    valued_sales: Iterable[ValuedSale],
    window_days: int,
    *,
    end_date: Optional[Union[date, datetime]] = None,
    tz: tzinfo = UTC,
) -> List[DaySummary]:
    """Summarize sales per calendar day over a trailing window.

    Every day of the window gets an entry, zero-filled when nothing sold, so
    the output always has exactly ``window_days`` entries in ascending date
    order. Sale dates are truncated to calendar days in ``tz``; sales outside
    the window are ignored.

    Args:
        valued_sales (Iterable[ValuedSale]): Sales to summarize.
        window_days (int): Number of days in the window.
        end_date (date | datetime | None): Last day of the window. Defaults
            to today in ``tz``; pass :func:`latest_sale_date` to anchor the
            window on the data instead.
        tz (tzinfo): Reporting time zone.

    Returns:
        list[DaySummary]: One entry per day, oldest first.

    Raises:
        MalformedInputError: If ``window_days`` is negative or not an integer,
            or two sales share a transaction number.
    """

    window_days = _require_count(window_days, "window_days")
    sales = _require_unique_sales(valued_sales)
    last_day = _today(tz) if end_date is None else data_manager.calendar_date(end_date, tz)
    if window_days == 0:
        return []

    first_day = last_day - timedelta(days=window_days - 1)
    totals: Dict[date, Decimal] = {}
    counts: Dict[date, int] = {}
    for sale in sales:
        day = data_manager.calendar_date(sale.sale.sale_date, tz)
        if day < first_day or day > last_day:
            continue
        totals[day] = totals.get(day, ZERO) + sale.total_amount
        counts[day] = counts.get(day, 0) + 1

    series = []
    for offset in range(window_days):
        day = first_day + timedelta(days=offset)
        series.append(DaySummary(date=day, total_amount=totals.get(day, ZERO), transaction_count=counts.get(day, 0)))
    return series


def top_by_revenue(
    valued_sales: Iterable[ValuedSale],
    k: int,
    *,
    exclude_non_positive: bool = False,
) -> List[ProductRevenue]:
    """Rank products by the revenue of their valued lines.

    Totals are sorted descending, ties are broken by product code ascending,
    and the ranking is truncated to ``k`` entries. Products whose total is
    zero or negative stay in the ranking unless ``exclude_non_positive`` is
    set.

    Raises:
        MalformedInputError: If ``k`` is negative or not an integer, or two
            sales share a transaction number.
    """

    k = _require_count(k, "k")
    sales = _require_unique_sales(valued_sales)

    totals: Dict[str, Decimal] = {}
    quantities: Dict[str, Decimal] = {}
    names: Dict[str, str] = {}
    for sale in sales:
        for line in sale.lines:
            totals[line.product_id] = totals.get(line.product_id, ZERO) + line.amount
            quantities[line.product_id] = quantities.get(line.product_id, ZERO) + line.quantity
            if line.product_name and line.product_id not in names:
                names[line.product_id] = line.product_name

    ranking = [
        ProductRevenue(
            product_id=product_id,
            name=names.get(product_id),
            total_amount=total,
            quantity=quantities[product_id],
        )
        for product_id, total in totals.items()
        if not exclude_non_positive or total > ZERO
    ]
    ranking.sort(key=lambda item: (-item.total_amount, item.product_id))
    return ranking[:k]


def categorize(
    product_revenues: Iterable[ProductRevenue],
    mapping: Optional[Mapping[str, str]] = None,
    *,
    default_category: str = DEFAULT_CATEGORY,
) -> List[CategoryRevenue]:
    """Relabel a product ranking into caller-defined categories.

    The engine has no category model of its own. With a ``mapping`` each
    product lands in ``mapping[product_id]`` (``default_category`` when
    unmapped). Without one every product is its own category, labelled by
    its name or code. Categories are sorted by total descending, then label.
    """

    totals: Dict[str, Decimal] = {}
    members: Dict[str, List[str]] = {}
    for item in product_revenues:
        if mapping is None:
            label = item.name or item.product_id
        else:
            label = mapping.get(item.product_id, default_category)
        totals[label] = totals.get(label, ZERO) + item.total_amount
        members.setdefault(label, []).append(item.product_id)

    categories = [
        CategoryRevenue(category=label, total_amount=total, product_ids=tuple(members[label]))
        for label, total in totals.items()
    ]
    categories.sort(key=lambda item: (-item.total_amount, item.category))
    return categories


def recent_lines(
    valued_sales: Iterable[ValuedSale],
    limit: int,
    *,
    tz: tzinfo = UTC,
) -> List[RecentLine]:
    """Return the ``limit`` most recent valued lines, newest sale first.

    Sales on the same day are ordered by transaction number descending; lines
    of one sale keep their original order.
    """

    limit = _require_count(limit, "limit")
    entries: List[Tuple[Tuple[date, Tuple[str, int, str]], RecentLine]] = []
    for sale in valued_sales:
        day = data_manager.calendar_date(sale.sale.sale_date, tz)
        key = (day, identifier_sort_key(sale.transaction_id))
        for line in sale.lines:
            entries.append((key, RecentLine(date=day, line=line)))
    entries.sort(key=lambda entry: entry[0], reverse=True)
    return [entry[1] for entry in entries[:limit]]


# ---------------------------------------------------------------------------
# Audit attribution
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AttributionRecord:
    """Who created, last updated and deleted a record, and when."""

    record_id: str
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_by: Optional[str] = None
    updated_at: Optional[datetime] = None
    deleted_by: Optional[str] = None
    deleted_at: Optional[datetime] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_by": self.updated_by,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "deleted_by": self.deleted_by,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
        }


def line_record_id(line: Union[data_manager.SaleLineRow, ValuedLine]) -> str:
    """Audit-log record id of a sale line: ``<transaction>-<product>``."""

    return f"{line.transaction_id}-{line.product_id}"


def _parse_action(raw: str) -> AuditAction:
    try:
        return AuditAction(str(raw).strip().lower())
    except ValueError as exc:
        log.error("Unknown audit action: %r", raw)
        raise MalformedInputError(f"Unknown audit action: {raw!r}") from exc


def _event_time(event: data_manager.AuditEventRow) -> datetime:
    stamp = event.timestamp
    return stamp if stamp.tzinfo is not None else stamp.replace(tzinfo=UTC)


def _fold_ordered(record_id: str, events: Sequence[data_manager.AuditEventRow]) -> AttributionRecord:
    created: Optional[Tuple[Optional[str], datetime]] = None
    updated: Optional[Tuple[Optional[str], datetime]] = None
    deleted: Optional[Tuple[Optional[str], datetime]] = None
    for event in events:
        action = _parse_action(event.action)
        stamp = _event_time(event)
        if action is AuditAction.CREATED:
            if created is None:
                created = (event.actor, stamp)
        elif action is AuditAction.UPDATED:
            updated = (event.actor, stamp)
        else:
            deleted = (event.actor, stamp)

    return AttributionRecord(
        record_id=record_id,
        created_by=created[0] if created else None,
        created_at=created[1] if created else None,
        updated_by=updated[0] if updated else None,
        updated_at=updated[1] if updated else None,
        deleted_by=deleted[0] if deleted else None,
        deleted_at=deleted[1] if deleted else None,
    )


def _check_order(previous: data_manager.AuditEventRow, current: data_manager.AuditEventRow) -> None:
    if _event_time(current) < _event_time(previous):
        log.error(
            "Audit events for record '%s' are out of order: %s after %s",
            current.record_id,
            current.timestamp.isoformat(),
            previous.timestamp.isoformat(),
        )
        raise EventOrderViolation(
            f"Audit events for record '{current.record_id}' must be in timestamp order"
        )


def fold_events(events: Iterable[data_manager.AuditEventRow], *, record_id: Optional[str] = None) -> AttributionRecord:
    """Fold one record's audit events into an :class:`AttributionRecord`.

    The first ``created`` event wins and later duplicates are ignored. The
    latest ``updated`` and the latest ``deleted`` event each overwrite their
    predecessor. Events must be in non-decreasing timestamp order; the log is
    only read, never modified.

    Args:
        events (Iterable[AuditEventRow]): Events for a single record.
        record_id (str | None): Record id to report when ``events`` is empty.

    Returns:
        AttributionRecord: The folded attribution.

    Raises:
        EventOrderViolation: If a timestamp goes backwards.
        MalformedInputError: If events belong to several records, an action
            is unknown, or no record id is known.
    """

    ordered = list(events)
    ids = {event.record_id for event in ordered}
    if record_id is not None:
        ids.add(record_id)
    if len(ids) != 1:
        raise MalformedInputError(
            f"fold_events expects events for exactly one record, got {sorted(ids)}"
        )
    for previous, current in zip(ordered, ordered[1:]):
        _check_order(previous, current)
    return _fold_ordered(ids.pop(), ordered)


def attribution_for(
    events: Iterable[data_manager.AuditEventRow],
    *,
    table_name: Optional[str] = None,
) -> Dict[str, AttributionRecord]:
    """Fold an audit-log slice into attribution for every record it touches.

    The slice is read once and split by record id; ordering is checked per
    record while splitting, so the whole pass is linear in the number of
    events.

    Args:
        events (Iterable[AuditEventRow]): Events in insertion order.
        table_name (str | None): Only fold events of this table. Required
            when the slice covers more than one table, because record ids are
            only unique within a table.

    Returns:
        dict[str, AttributionRecord]: Attribution keyed by record id.

    Raises:
        EventOrderViolation: If a record's events are not in timestamp order.
        MalformedInputError: If the slice mixes tables without a filter, or
            an action is unknown.
    """

    grouped: Dict[str, List[data_manager.AuditEventRow]] = {}
    tables: set[str] = set()
    for event in events:
        if table_name is not None and event.table_name != table_name:
            continue
        tables.add(event.table_name)
        bucket = grouped.setdefault(event.record_id, [])
        if bucket:
            _check_order(bucket[-1], event)
        bucket.append(event)

    if len(tables) > 1:
        log.error("Audit slice mixes tables %s without a table filter", sorted(tables))
        raise MalformedInputError(f"Audit events span several tables: {sorted(tables)}")

    attributions = {record_id: _fold_ordered(record_id, bucket) for record_id, bucket in grouped.items()}
    log.debug("Folded audit events into %d attribution records", len(attributions))
    return attributions


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------


def _line_view(line: ValuedLine) -> Dict[str, Any]:
    return {
        "product_id": line.product_id,
        "product_name": line.product_name,
        "unit": line.unit,
        "quantity": line.quantity,
        "unit_price": line.unit_price,
        "amount": line.amount,
    }


def sales_view(
    valued_sales: Iterable[ValuedSale],
    attributions: Optional[Mapping[str, AttributionRecord]] = None,
    *,
    line_attributions: Optional[Mapping[str, AttributionRecord]] = None,
    include_attribution: bool = False,
) -> List[Dict[str, Any]]:
    """Render valued sales as plain rows for listing screens.

    When ``include_attribution`` is false the ``attribution`` keys are left
    out entirely rather than set to ``None``. Whether a caller may see
    attribution is decided outside the engine.
    """

    rows = []
    for sale in valued_sales:
        row: Dict[str, Any] = {
            "transaction_id": sale.transaction_id,
            "sale_date": sale.sale.sale_date.isoformat(),
            "customer_id": sale.sale.customer_id,
            "employee_id": sale.sale.employee_id,
            "total_amount": sale.total_amount,
            "lines": [_line_view(line) for line in sale.lines],
        }
        if include_attribution:
            record = (attributions or {}).get(sale.transaction_id) or AttributionRecord(sale.transaction_id)
            row["attribution"] = record.as_dict()
            if line_attributions is not None:
                for line, line_row in zip(sale.lines, row["lines"]):
                    key = line_record_id(line)
                    line_row["attribution"] = (line_attributions.get(key) or AttributionRecord(key)).as_dict()
        rows.append(row)
    return rows


# ---------------------------------------------------------------------------
# Reporting passes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReportingSnapshot:
    """Everything one reporting pass reads, fetched together.

    ``orphan_lines`` holds lines whose sale header was not returned by the
    source. They are kept for inspection rather than silently dropped; a
    non-empty tuple usually means the reads were not consistent.
    """

    products: Tuple[data_manager.ProductRow, ...]
    prices: Tuple[data_manager.PriceRow, ...]
    sales: Tuple[data_manager.SaleRow, ...]
    lines: Tuple[data_manager.SaleLineRow, ...]
    events: Tuple[data_manager.AuditEventRow, ...] = ()
    orphan_lines: Tuple[data_manager.SaleLineRow, ...] = ()

    @property
    def product_map(self) -> Dict[str, data_manager.ProductRow]:
        return {product.product_id: product for product in self.products}


@dataclass(frozen=True)
class DashboardSummary:
    """Headline figures and chart series for the sales dashboard."""

    total_sales: Decimal
    total_transactions: int
    total_products: int
    daily: Tuple[DaySummary, ...]
    top_products: Tuple[ProductRevenue, ...]
    categories: Tuple[CategoryRevenue, ...]
    recent_lines: Tuple[RecentLine, ...]


def load_snapshot(
    source: Any,
    *,
    date_range: Optional[data_manager.DateRange] = None,
    audit_table: Optional[str] = SALES_AUDIT_TABLE,
) -> ReportingSnapshot:
    """Fetch one consistent-as-possible snapshot from ``source``.

    ``source`` provides ``list_products``, ``list_prices``, ``list_sales``,
    ``list_lines`` and ``list_events`` (see
    :class:`~sales_valuation.data_manager.WorkbookSource`). Each is called at
    most once: sales first, then the lines of those sales, then prices for
    the products on those lines, the product list, and the audit events of
    the sales when ``audit_table`` is set.

    The reads are separate calls. If the source cannot serve them from one
    transaction the snapshot can be torn; orphaned lines are recorded and
    logged so callers can tell.
    """

    sales = tuple(source.list_sales(date_range))
    sale_ids = [sale.transaction_id for sale in sales]
    known = set(sale_ids)

    fetched_lines = source.list_lines(None if date_range is None else sale_ids)
    lines: List[data_manager.SaleLineRow] = []
    orphans: List[data_manager.SaleLineRow] = []
    for line in fetched_lines:
        (lines if line.transaction_id in known else orphans).append(line)
    if orphans:
        log.warning(
            "Snapshot has %d sale lines without a sale header (transactions: %s)",
            len(orphans),
            ", ".join(sorted({line.transaction_id for line in orphans})),
        )

    product_ids = sorted({line.product_id for line in lines})
    prices = tuple(source.list_prices(product_ids))
    products = tuple(source.list_products())
    events = tuple(source.list_events(audit_table, sale_ids)) if audit_table else ()

    log.info(
        "Loaded snapshot: %d sales, %d lines, %d prices, %d products, %d audit events",
        len(sales),
        len(lines),
        len(prices),
        len(products),
        len(events),
    )
    return ReportingSnapshot(
        products=products,
        prices=prices,
        sales=sales,
        lines=tuple(lines),
        events=events,
        orphan_lines=tuple(orphans),
    )


def valuate_snapshot(
    snapshot: ReportingSnapshot,
    *,
    unit_lookup: Optional[UnitLookup] = None,
    tz: tzinfo = UTC,
) -> List[ValuedSale]:
    """Value every sale of ``snapshot``."""

    return valuate_sales(
        snapshot.sales,
        snapshot.lines,
        snapshot.prices,
        products=snapshot.product_map,
        unit_lookup=unit_lookup,
        tz=tz,
    )


def build_dashboard(
    valued_sales: Iterable[ValuedSale],
    *,
    window_days: int = DEFAULT_WINDOW_DAYS,
    top_n: int = DEFAULT_TOP_N,
    recent_limit: int = DEFAULT_RECENT_LIMIT,
    end_date: Optional[Union[date, datetime]] = None,
    tz: tzinfo = UTC,
    category_mapping: Optional[Mapping[str, str]] = None,
    products: Optional[ProductSource] = None,
) -> DashboardSummary:
    """Assemble the dashboard figures from one list of valued sales.

    Total sales is the exact sum of every sale total; the transaction count
    counts distinct transaction numbers. The product count is the number of
    distinct product codes in ``products``. Categories relabel the top
    products.

    Raises:
        MalformedInputError: Propagated from the aggregation functions.
    """

    sales = _require_unique_sales(valued_sales)
    top = top_by_revenue(sales, top_n)
    summary = DashboardSummary(
        total_sales=sum((sale.total_amount for sale in sales), ZERO),
        total_transactions=len(sales),
        total_products=len(_as_product_map(products)),
        daily=tuple(daily_series(sales, window_days, end_date=end_date, tz=tz)),
        top_products=tuple(top),
        categories=tuple(categorize(top, category_mapping)),
        recent_lines=tuple(recent_lines(sales, recent_limit, tz=tz)),
    )
    log.info(
        "Built dashboard: %d transactions, %d products, total %s",
        summary.total_transactions,
        summary.total_products,
        summary.total_sales,
    )
    return summary


def empty_dashboard(
    window_days: int,
    *,
    end_date: Optional[Union[date, datetime]] = None,
    tz: tzinfo = UTC,
) -> DashboardSummary:
    """Zero-filled dashboard shown when a report could not be produced."""

    days = window_days if isinstance(window_days, int) and window_days > 0 else 0
    return DashboardSummary(
        total_sales=ZERO,
        total_transactions=0,
        total_products=0,
        daily=tuple(daily_series((), days, end_date=end_date, tz=tz)),
        top_products=(),
        categories=(),
        recent_lines=(),
    )


# ---------------------------------------------------------------------------
# Runtime context
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the master workbook.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Context with settings, workbook and an empty cache.

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
    """Refuse to report against a workbook built for another schema.

    Raises:
        RuntimeError: If ``config.ini`` declares a schema version other than
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


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reopen the workbook and drop every memoized snapshot."""

    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


def source_for(context: RuntimeContext) -> data_manager.WorkbookSource:
    return data_manager.WorkbookSource(context.workbook, time_zone=context.settings.time_zone)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[Any, Any]:
    """Return the mutable cache bucket stored under ``name``, creating it."""

    return context._cache.setdefault(name, {})


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict cache buckets after the workbook changed.

    Args:
        context (RuntimeContext): Context whose cache should be pruned.
        *names (str): Buckets to drop. Without names the whole cache is
            cleared. Unknown names are ignored.
    """

    if not names:
        context._cache.clear()
        return
    for name in names:
        context._cache.pop(name, None)


def get_snapshot(
    context: RuntimeContext,
    *,
    date_range: Optional[data_manager.DateRange] = None,
) -> ReportingSnapshot:
    """Return the context's snapshot for ``date_range``, loading it once."""

    bucket = _get_cache_bucket(context, "snapshots")
    if date_range not in bucket:
        log.debug("Snapshot cache miss for range %s", date_range)
        bucket[date_range] = load_snapshot(source_for(context), date_range=date_range)
    return bucket[date_range]


def valued_sales_for(
    context: RuntimeContext,
    *,
    date_range: Optional[data_manager.DateRange] = None,
) -> List[ValuedSale]:
    """Value the cached snapshot using the context's reporting time zone."""

    snapshot = get_snapshot(context, date_range=date_range)
    return valuate_snapshot(snapshot, tz=context.settings.time_zone)


@dataclass(frozen=True)
class SaleCommand:
    """Request to record a new sale with its lines."""

    sale_date: data_manager.SaleDate
    lines: Tuple[Tuple[str, Decimal], ...]
    customer_id: Optional[str] = None
    employee_id: Optional[str] = None
    actor: Optional[str] = None


def _stored_transaction_ids(context: RuntimeContext) -> List[str]:
    return [sale.transaction_id for sale in data_manager.iter_sales(context.workbook)]


def record_sale(
    context: RuntimeContext,
    command: SaleCommand,
    *,
    now: Optional[datetime] = None,
) -> str:
    """Append a sale, its lines and their ``created`` audit events.

    The transaction number comes from :func:`allocate_identifier`; the
    workbook's duplicate check on the ``Sales`` sheet is the reservation.
    Quantities are validated before anything is written.

    Args:
        context (RuntimeContext): Active runtime context.
        command (SaleCommand): Sale to record.
        now (datetime | None): Audit timestamp. Defaults to the current UTC
            time.

    Returns:
        str: The transaction number assigned to the sale.

    Raises:
        MalformedInputError: If the sale has no lines or a quantity is
            invalid.
        IdentifierConflictError: If no transaction number could be reserved.
    """

    if not command.lines:
        raise MalformedInputError("A sale needs at least one line")
    quantities = [
        (product_id, require_valid_quantity(quantity, context=f"product '{product_id}'"))
        for product_id, quantity in command.lines
    ]

    def reserve(candidate: str) -> bool:
        try:
            data_manager.append_sale(
                context.workbook,
                data_manager.SaleRow(
                    transaction_id=candidate,
                    sale_date=command.sale_date,
                    customer_id=command.customer_id,
                    employee_id=command.employee_id,
                ),
            )
        except data_manager.DuplicateRecordError:
            return False
        return True

    transaction_id = allocate_identifier(
        lambda: latest_identifier(_stored_transaction_ids(context)),
        reserve,
        seed=context.settings.identifier_seed,
    )

    stamp = now or datetime.now(UTC)
    data_manager.append_audit_event(
        context.workbook,
        data_manager.AuditEventRow(SALES_AUDIT_TABLE, transaction_id, AuditAction.CREATED.value, command.actor, stamp),
    )
    for product_id, quantity in quantities:
        line = data_manager.SaleLineRow(transaction_id=transaction_id, product_id=product_id, quantity=quantity)
        data_manager.append_sale_line(context.workbook, line)
        data_manager.append_audit_event(
            context.workbook,
            data_manager.AuditEventRow(
                SALES_DETAIL_AUDIT_TABLE,
                line_record_id(line),
                AuditAction.CREATED.value,
                command.actor,
                stamp,
            ),
        )

    _invalidate_cache(context, "snapshots")
    log.info("Recorded sale '%s' with %d lines", transaction_id, len(quantities))
    return transaction_id


@dataclass(frozen=True)
class UpdateSaleCommand:
    """Request to change a sale header. ``None`` fields are left unchanged."""

    transaction_id: str
    sale_date: Optional[data_manager.SaleDate] = None
    customer_id: Optional[str] = None
    employee_id: Optional[str] = None
    actor: Optional[str] = None


def _stored_sale(context: RuntimeContext, transaction_id: str) -> data_manager.SaleRow:
    for sale in data_manager.iter_sales(context.workbook):
        if sale.transaction_id == transaction_id:
            return sale
    log.error("Sale '%s' not found", transaction_id)
    raise SaleNotFoundError(f"Sale not found: {transaction_id}")


def update_sale(
    context: RuntimeContext,
    command: UpdateSaleCommand,
    *,
    now: Optional[datetime] = None,
) -> data_manager.SaleRow:
    """Rewrite a sale's date, customer or employee and log an ``updated`` event.

    Lines are not touched, so the sale is revalued at the prices in effect on
    its new date the next time it is reported.

    Args:
        context (RuntimeContext): Active runtime context.
        command (UpdateSaleCommand): Fields to change.
        now (datetime | None): Audit timestamp. Defaults to the current UTC
            time.

    Returns:
        SaleRow: The sale header as stored after the update.

    Raises:
        SaleNotFoundError: If the transaction number is unknown.
        MalformedInputError: If the command changes nothing.
    """

    current = _stored_sale(context, command.transaction_id)
    field_values: Dict[str, Any] = {}
    if command.sale_date is not None:
        field_values["SalesDate"] = command.sale_date.isoformat()
    if command.customer_id is not None:
        field_values["CustomerNo"] = command.customer_id
    if command.employee_id is not None:
        field_values["EmployeeNo"] = command.employee_id
    if not field_values:
        raise MalformedInputError(f"Nothing to update for sale '{command.transaction_id}'")

    data_manager.update_sale(context.workbook, command.transaction_id, field_values=field_values)
    data_manager.append_audit_event(
        context.workbook,
        data_manager.AuditEventRow(
            SALES_AUDIT_TABLE,
            command.transaction_id,
            AuditAction.UPDATED.value,
            command.actor,
            now or datetime.now(UTC),
        ),
    )

    _invalidate_cache(context, "snapshots")
    log.info("Updated sale '%s' (%s)", command.transaction_id, ", ".join(field_values))
    return replace(
        current,
        sale_date=command.sale_date if command.sale_date is not None else current.sale_date,
        customer_id=command.customer_id if command.customer_id is not None else current.customer_id,
        employee_id=command.employee_id if command.employee_id is not None else current.employee_id,
    )


def delete_sale(
    context: RuntimeContext,
    transaction_id: str,
    *,
    actor: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[data_manager.SaleLineRow, ...]:
    """Delete a sale's lines, then its header, logging a ``deleted`` event for each.

    Returns:
        tuple[SaleLineRow, ...]: The lines that were removed.

    Raises:
        SaleNotFoundError: If the transaction number is unknown.
    """

    _stored_sale(context, transaction_id)
    stamp = now or datetime.now(UTC)

    removed = tuple(data_manager.delete_sale_lines(context.workbook, transaction_id))
    for line in removed:
        data_manager.append_audit_event(
            context.workbook,
            data_manager.AuditEventRow(
                SALES_DETAIL_AUDIT_TABLE,
                line_record_id(line),
                AuditAction.DELETED.value,
                actor,
                stamp,
            ),
        )
    data_manager.delete_sale(context.workbook, transaction_id)
    data_manager.append_audit_event(
        context.workbook,
        data_manager.AuditEventRow(SALES_AUDIT_TABLE, transaction_id, AuditAction.DELETED.value, actor, stamp),
    )

    _invalidate_cache(context, "snapshots")
    log.info("Deleted sale '%s' and %d lines", transaction_id, len(removed))
    return removed


def persist_context(context: RuntimeContext) -> None:
    """Write the workbook back to its configured location."""

    data_manager.save_workbook(context.workbook, context.settings.data_file)
    log.info("Saved workbook '%s'", context.settings.data_file)


def can_view_attribution(settings: data_manager.ConfigSettings, actor: Optional[str]) -> bool:
    """Ask the configured allow-list whether ``actor`` may see attribution."""

    return actor is not None and actor in settings.attribution_viewers


def require_attribution_access(settings: data_manager.ConfigSettings, actor: Optional[str]) -> None:
    """Raise :class:`AttributionAccessDenied` unless ``actor`` is allowed."""

    if not can_view_attribution(settings, actor):
        log.warning("Attribution requested by unauthorized actor '%s'", actor)
        raise AttributionAccessDenied(f"Actor {actor!r} may not view attribution data")
