"""Data access layer for the inn ledger.

This module provides low-level helpers that read from and write to the
ledger workbook. Business rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending, updating or
   deleting individual rows. Every entity type lives on its own sheet;
   transaction line items live on ``TransactionItems`` keyed by the owning
   transaction identifier.
"""


from __future__ import annotations

import configparser
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
import openpyxl

from .constants import DEFAULT_LOCK_TIMEOUT, SheetName


CONFIG_FILE_NAME = "config.ini"
TRADERS_SHEET = SheetName.TRADERS.value
HUNTERS_SHEET = SheetName.HUNTERS.value
ASSETS_SHEET = SheetName.ASSETS.value
TRANSACTIONS_SHEET = SheetName.TRANSACTIONS.value
TRANSACTION_ITEMS_SHEET = SheetName.TRANSACTION_ITEMS.value

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    TRADERS_SHEET: ["TraderID", "Name", "Type", "Location"],
    HUNTERS_SHEET: ["HunterID", "Name", "Race", "Location"],
    ASSETS_SHEET: [
        "AssetID",
        "Name",
        "Description",
        "Material",
        "Weight",
        "CrownValue",
        "Type",
        "Amount",
    ],
    TRANSACTIONS_SHEET: [
        "TransactionID",
        "CounterpartyID",
        "Date",
        "CrownValue",
        "InnBuying",
    ],
    TRANSACTION_ITEMS_SHEET: ["TransactionID", "Position", "AssetID", "Amount"],
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    inn_name: str
    schema_version: str
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT


@dataclass(frozen=True)
class TraderRow:
    """In-memory view of a row from the ``Traders`` sheet."""

    trader_id: str
    name: str
    trader_type: str
    location: str


@dataclass(frozen=True)
class HunterRow:
    """In-memory view of a row from the ``Hunters`` sheet."""

    hunter_id: str
    name: str
    race: str
    location: str


@dataclass(frozen=True)
class AssetRow:
    """In-memory view of a row from the ``Assets`` sheet."""

    asset_id: str
    name: str
    description: str
    material: str
    weight: Decimal
    crown_value: Decimal
    asset_type: str
    amount: Decimal


@dataclass(frozen=True)
class LineItem:
    """One asset-quantity pair owned by a transaction."""

    asset_id: str
    amount: Decimal


@dataclass(frozen=True)
class TransactionRow:
    """A row of the ``Transactions`` sheet joined with its line items."""

    transaction_id: str
    counterparty_id: str
    items: Tuple[LineItem, ...]
    date_iso: str
    crown_value: Decimal
    inn_buying: bool


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory looking for ``CONFIG_FILE_NAME``; the first match wins.

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

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser holding the raw configuration data.
            Required entries are checked later by :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` must provide ``DataFile``, ``InnName`` and ``SchemaVersion``.
    ``[Store] LockTimeoutSeconds`` is optional. Relative ``DataFile`` entries
    are anchored to ``base_path`` (or the working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor a relative
            ``DataFile``.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If ``LockTimeoutSeconds`` is not a positive number.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        inn_name = parser.get("System", "InnName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    lock_timeout = parser.getfloat(
        "Store", "LockTimeoutSeconds", fallback=DEFAULT_LOCK_TIMEOUT)
    if lock_timeout <= 0:
        raise ValueError("LockTimeoutSeconds must be greater than zero")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        inn_name=inn_name,
        schema_version=schema_version,
        lock_timeout=lock_timeout,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def _data_rows(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_traders(workbook: Workbook) -> Iterable[TraderRow]:
    """Iterate over the ``Traders`` sheet and yield typed records."""

    for raw in _data_rows(workbook, TRADERS_SHEET):
        yield deserialize_trader(raw)


def iter_hunters(workbook: Workbook) -> Iterable[HunterRow]:
    """Iterate over the ``Hunters`` sheet and yield typed records."""

    for raw in _data_rows(workbook, HUNTERS_SHEET):
        yield deserialize_hunter(raw)


def iter_assets(workbook: Workbook) -> Iterable[AssetRow]:
    """Iterate over the ``Assets`` sheet and yield typed records.

    Numeric columns are normalised into :class:`~decimal.Decimal` so stock
    arithmetic never mixes floats and integers coming back from Excel.
    """

    for raw in _data_rows(workbook, ASSETS_SHEET):
        yield deserialize_asset(raw)


def iter_transactions(workbook: Workbook) -> Iterable[TransactionRow]:
    """Stream transactions joined with their line items.

    The ``TransactionItems`` sheet is scanned once and grouped by transaction
    identifier; items are ordered by their ``Position`` column so the input
    order of the original request is preserved.

    Args:
        workbook (Workbook): Workbook containing both transaction sheets.

    Yields:
        TransactionRow: Normalized transaction with its ordered line items.
    """

    grouped: Dict[str, List[Tuple[int, LineItem]]] = defaultdict(list)
    for raw in _data_rows(workbook, TRANSACTION_ITEMS_SHEET):
        transaction_id, position, item = deserialize_line_item(raw)
        grouped[transaction_id].append((position, item))

    for raw in _data_rows(workbook, TRANSACTIONS_SHEET):
        transaction_id = str(raw[0])
        items = tuple(item for _, item in sorted(grouped.get(transaction_id, []), key=lambda pair: pair[0]))
        yield deserialize_transaction(raw, items)


def append_trader(workbook: Workbook, record: TraderRow) -> None:
    """Append a trader record to the ``Traders`` worksheet."""

    workbook[TRADERS_SHEET].append(serialize_trader(record))


def append_hunter(workbook: Workbook, record: HunterRow) -> None:
    """Append a hunter record to the ``Hunters`` worksheet."""

    workbook[HUNTERS_SHEET].append(serialize_hunter(record))


def append_asset(workbook: Workbook, record: AssetRow) -> None:
    """Append an asset record to the ``Assets`` worksheet."""

    workbook[ASSETS_SHEET].append(serialize_asset(record))


def append_transaction(workbook: Workbook, record: TransactionRow) -> None:
    """Append a transaction and one ``TransactionItems`` row per line item.

    Args:
        workbook (Workbook): Workbook containing the transaction sheets.
        record (TransactionRow): Transaction to persist. Item positions are
            numbered from 1 in the order of ``record.items``.
    """

    workbook[TRANSACTIONS_SHEET].append(serialize_transaction(record))
    items_sheet = workbook[TRANSACTION_ITEMS_SHEET]
    for position, item in enumerate(record.items, start=1):
        items_sheet.append(serialize_line_item(record.transaction_id, position, item))


def update_record(
    workbook: Workbook,
    sheet_name: str,
    key_column: str,
    key_value: str,
    *,
    field_values: Mapping[str, Any],
) -> None:
    """Update selected columns of the row whose ``key_column`` equals ``key_value``.

    Only the specified columns are written, leaving other cells untouched.

    Args:
        workbook (Workbook): Workbook containing ``sheet_name``.
        sheet_name (str): Worksheet holding the record.
        key_column (str): Header of the identifier column.
        key_value (str): Identifier of the record to update.
        field_values (Mapping[str, Any]): Column header to replacement value.

    Raises:
        KeyError: If the record or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"Record not found on {sheet_name}: {key_value}")

    sheet = workbook[sheet_name]
    header_map = _header_map(workbook, sheet_name)

    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown {sheet_name} field: {field}")
        sheet.cell(row=row_index, column=header_map[field], value=value)


def delete_record(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> int:
    """Delete every row whose ``key_column`` equals ``key_value``.

    Rows are removed bottom-up so earlier indices stay valid while deleting.

    Returns:
        int: Number of rows removed.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")
    key_col_index = header_map[key_column]

    matches = [
        row_idx
        for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2)
        if row[key_col_index - 1] == key_value
    ]
    for row_idx in reversed(matches):
        sheet.delete_rows(row_idx)
    return len(matches)


def delete_transaction(workbook: Workbook, transaction_id: str, *, missing_ok: bool = False) -> None:
    """Remove a transaction together with its line items.

    Raises:
        KeyError: If no transaction row carries ``transaction_id`` and
            ``missing_ok`` is false.
    """

    removed = delete_record(workbook, TRANSACTIONS_SHEET, "TransactionID", transaction_id)
    delete_record(workbook, TRANSACTION_ITEMS_SHEET, "TransactionID", transaction_id)
    if removed == 0 and not missing_ok:
        raise KeyError(f"Transaction not found: {transaction_id}")


def replace_line_items(workbook: Workbook, transaction_id: str, items: Sequence[LineItem]) -> None:
    """Swap the stored line items of a transaction for ``items``."""

    delete_record(workbook, TRANSACTION_ITEMS_SHEET, "TransactionID", transaction_id)
    items_sheet = workbook[TRANSACTION_ITEMS_SHEET]
    for position, item in enumerate(items, start=1):
        items_sheet.append(serialize_line_item(transaction_id, position, item))


def _header_map(workbook: Workbook, sheet_name: str) -> Dict[Any, int]:
    header_cells = list(workbook[sheet_name][1])
    return {cell.value: idx + 1 for idx, cell in enumerate(header_cells)}


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title of the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index of the first match, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def serialize_trader(record: TraderRow) -> list[object]:
    """Arrange a trader as ``[TraderID, Name, Type, Location]``."""

    return [record.trader_id, record.name, record.trader_type, record.location]


def serialize_hunter(record: HunterRow) -> list[object]:
    """Arrange a hunter as ``[HunterID, Name, Race, Location]``."""

    return [record.hunter_id, record.name, record.race, record.location]


def serialize_asset(record: AssetRow) -> list[object]:
    """Arrange an asset in the ``Assets`` column order, keeping decimals."""

    return [
        record.asset_id,
        record.name,
        record.description,
        record.material,
        record.weight,
        record.crown_value,
        record.asset_type,
        record.amount,
    ]


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Arrange the header fields of a transaction; items are stored apart."""

    return [
        record.transaction_id,
        record.counterparty_id,
        record.date_iso,
        record.crown_value,
        record.inn_buying,
    ]


def serialize_line_item(transaction_id: str, position: int, item: LineItem) -> list[object]:
    return [transaction_id, position, item.asset_id, item.amount]


def _to_decimal(raw: object, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _to_text(raw: object) -> str:
    return str(raw) if raw is not None else ""


def deserialize_trader(raw_row: Sequence[object]) -> TraderRow:
    """Convert a raw worksheet row into a trader record."""

    trader_id, name, trader_type, location = raw_row[:4]
    return TraderRow(
        trader_id=str(trader_id),
        name=_to_text(name),
        trader_type=_to_text(trader_type),
        location=_to_text(location),
    )


def deserialize_hunter(raw_row: Sequence[object]) -> HunterRow:
    """Convert a raw worksheet row into a hunter record."""

    hunter_id, name, race, location = raw_row[:4]
    return HunterRow(
        hunter_id=str(hunter_id),
        name=_to_text(name),
        race=_to_text(race),
        location=_to_text(location),
    )


def deserialize_asset(raw_row: Sequence[object]) -> AssetRow:
    """Convert a raw worksheet row into an asset record.

    Identifier and text columns are coerced to ``str`` so Excel's habit of
    turning numeric-looking names into numbers never leaks out; numeric
    columns become :class:`~decimal.Decimal`, blank amounts read as zero.
    """

    (
        asset_id,
        name,
        description,
        material,
        weight_raw,
        crown_value_raw,
        asset_type,
        amount_raw,
    ) = raw_row[:8]
    return AssetRow(
        asset_id=str(asset_id),
        name=_to_text(name),
        description=_to_text(description),
        material=_to_text(material),
        weight=_to_decimal(weight_raw),
        crown_value=_to_decimal(crown_value_raw),
        asset_type=_to_text(asset_type),
        amount=_to_decimal(amount_raw),
    )


def deserialize_line_item(raw_row: Sequence[object]) -> Tuple[str, int, LineItem]:
    """Convert a ``TransactionItems`` row into ``(transaction_id, position, item)``."""

    transaction_id, position, asset_id, amount_raw = raw_row[:4]
    return (
        str(transaction_id),
        int(position) if position is not None else 0,
        LineItem(asset_id=str(asset_id), amount=_to_decimal(amount_raw)),
    )


def deserialize_transaction(raw_row: Sequence[object], items: Tuple[LineItem, ...] = ()) -> TransactionRow:
    """Convert a ``Transactions`` row plus its items into a transaction record."""

    transaction_id, counterparty_id, date_iso, crown_value_raw, inn_buying = raw_row[:5]
    return TransactionRow(
        transaction_id=str(transaction_id),
        counterparty_id=_to_text(counterparty_id),
        items=items,
        date_iso=_to_text(date_iso),
        crown_value=_to_decimal(crown_value_raw),
        inn_buying=bool(inn_buying),
    )
