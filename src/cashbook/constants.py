"""Enumerations shared across the cash book modules.

The data access layer, the ledger engine, and the CLI all read these values
so sheet names, currency codes, and ledger tags are spelled in one place.
"""

from __future__ import annotations

from enum import Enum


# Workbook layout version expected by every layer.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class Currency(str, Enum):
    """Amount field selected for an entire ledger build."""

    FC = "FC"
    USD = "USD"


class EntryDirection(str, Enum):
    """Cash direction of a manual entry."""

    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class TransactionType(str, Enum):
    """Source kind of a ledger entry."""

    SALE = "SALE"
    COST = "COST"
    MANUAL = "MANUAL"


class SheetName(str, Enum):
    """Worksheets managed by the data access layer."""

    SALES = "Sales"
    COSTS = "Costs"
    MANUAL_ENTRIES = "ManualEntries"
    PRODUCTS = "Products"
    ACTIVITY_TYPES = "ActivityTypes"
    EXPENSE_TYPES = "ExpenseTypes"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "Currency",
    "EntryDirection",
    "TransactionType",
    "SheetName",
]
