"""Enumerations shared across the inn ledger modules.

The data access layer, the record validators, and the transaction workflow all
read their enumerated vocabularies from here so a misspelled trader type or
race is caught in one place.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Upper bound, in seconds, for acquiring asset and workbook locks.
DEFAULT_LOCK_TIMEOUT = 5.0


class TraderType(str, Enum):
    """Enumerate the trades a registered merchant may practise."""

    BLACKSMITH = "blacksmith"
    ALCHEMIST = "alchemist"
    GENERAL_TRADER = "generaltrader"
    HERBALIST = "herbalist"
    ARMORER = "armorer"


class Race(str, Enum):
    """Enumerate the races a hunter (client) may belong to."""

    WITCH = "WITCH"
    KNIGHT = "KNIGHT"
    NOBLE = "NOBLE"
    BANDIT = "BANDIT"
    MERCENARY = "MERCENARY"
    VILLAGER = "VILLAGER"


class AssetType(str, Enum):
    """Enumerate the categories of tradeable assets."""

    PRODUCT = "product"
    ARMOR = "armor"
    WEAPON = "weapon"
    POTION = "potion"
    BOOK = "book"
    UNKNOWN = "unknown"


class CounterpartyKind(str, Enum):
    """Enumerate which collection a transaction counterparty lives in."""

    TRADER = "trader"
    HUNTER = "hunter"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    TRADERS = "Traders"
    HUNTERS = "Hunters"
    ASSETS = "Assets"
    TRANSACTIONS = "Transactions"
    TRANSACTION_ITEMS = "TransactionItems"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_LOCK_TIMEOUT",
    "TraderType",
    "Race",
    "AssetType",
    "CounterpartyKind",
    "SheetName",
]
