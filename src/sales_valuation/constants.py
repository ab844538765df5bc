"""Enumerations and defaults shared across the valuation engine.

The data access layer, the engine, and the CLI all read sheet names, audit
actions, and reporting defaults from here so a workbook produced by
``setup_excel`` is always understood by the reader that consumes it.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Schema version every layer expects the master workbook to follow.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# First transaction number handed out when no prior identifier exists.
DEFAULT_IDENTIFIER_SEED = "T00001"

DEFAULT_TIME_ZONE = "UTC"
DEFAULT_WINDOW_DAYS = 7
DEFAULT_TOP_N = 5
DEFAULT_RECENT_LIMIT = 10
DEFAULT_CATEGORY = "Uncategorized"

# Table name the audit log uses for sale headers.
SALES_AUDIT_TABLE = "sales"
SALES_DETAIL_AUDIT_TABLE = "salesdetail"

ZERO = Decimal("0")
CENT = Decimal("0.01")


class AuditAction(str, Enum):
    """Actions recorded in the append-only audit log."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class SheetName(str, Enum):
    """Worksheet names in the master workbook."""

    PRODUCTS = "Products"
    PRICE_HISTORY = "PriceHistory"
    SALES = "Sales"
    SALES_DETAIL = "SalesDetail"
    AUDIT_LOG = "AuditLog"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_IDENTIFIER_SEED",
    "DEFAULT_TIME_ZONE",
    "DEFAULT_WINDOW_DAYS",
    "DEFAULT_TOP_N",
    "DEFAULT_RECENT_LIMIT",
    "DEFAULT_CATEGORY",
    "SALES_AUDIT_TABLE",
    "SALES_DETAIL_AUDIT_TABLE",
    "ZERO",
    "CENT",
    "AuditAction",
    "SheetName",
]
