"""Entity store for the inn ledger.

This module owns the :class:`RuntimeContext` (settings, live workbook, caches
and locks) and every read or write of traders, hunters, assets and
transactions. All other layers receive the context explicitly; nothing here
keeps module-level storage state. Writes are validated through
:mod:`inn_ledger.validators`, guarded by the workbook lock, and followed by a
cache invalidation so later reads observe them.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from openpyxl.workbook import Workbook

from . import data_manager, log, validators
from .constants import EXPECTED_SCHEMA_VERSION
from .errors import DuplicateRecordError, NotFoundError, ValidationError
from .unit_of_work import LockRegistry


Counterparty = Union[data_manager.TraderRow, data_manager.HunterRow]

# Request field name -> (row attribute, sheet column header).
TRADER_FIELDS: Mapping[str, Tuple[str, str]] = {
    "name": ("name", "Name"),
    "type": ("trader_type", "Type"),
    "location": ("location", "Location"),
}
HUNTER_FIELDS: Mapping[str, Tuple[str, str]] = {
    "name": ("name", "Name"),
    "race": ("race", "Race"),
    "location": ("location", "Location"),
}
ASSET_FIELDS: Mapping[str, Tuple[str, str]] = {
    "name": ("name", "Name"),
    "description": ("description", "Description"),
    "material": ("material", "Material"),
    "weight": ("weight", "Weight"),
    "crown_value": ("crown_value", "CrownValue"),
    "type": ("asset_type", "Type"),
    "amount": ("amount", "Amount"),
}

NOT_ALLOWED_CHANGE = "Trying to modify a non allowed atribute"


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, the workbook handle, caches and locks."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    locks: LockRegistry = field(default_factory=LockRegistry, repr=False, compare=False)
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict cache buckets after a write so the next read rescans the sheet."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_cache(
    context: RuntimeContext,
    name: str,
    loader: Callable[[Workbook], Iterable[Any]],
    key: Callable[[Any], str],
) -> Dict[str, Any]:
    """Return bucket ``name`` holding ``all`` rows and a ``by_id`` index.

    A bucket is built completely and published with a single assignment, under
    the workbook lock, so readers see either no bucket or a whole one and a
    write cannot slip in between reading the sheet and publishing it.
    """

    bucket = context._cache.get(name)
    if bucket is not None:
        return bucket

    with context.locks.hold_workbook(timeout=context.settings.lock_timeout):
        bucket = context._cache.get(name)
        if bucket is None:
            rows = list(loader(context.workbook))
            bucket = {"all": rows, "by_id": {key(row): row for row in rows}}
            context._cache[name] = bucket
            log.debug("Populated %s cache with %d entries", name, len(rows))
    return bucket


def _traders(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "traders", data_manager.iter_traders, lambda row: row.trader_id)


def _hunters(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "hunters", data_manager.iter_hunters, lambda row: row.hunter_id)


def _assets(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "assets", data_manager.iter_assets, lambda row: row.asset_id)


def _transactions(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "transactions", data_manager.iter_transactions, lambda row: row.transaction_id)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for ``config.ini``.
            When omitted the data layer searches upward from the working
            directory.

    Returns:
        RuntimeContext: Context with an empty cache and fresh locks.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
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
    """Refuse to work on a workbook whose configured schema version differs.

    Raises:
        RuntimeError: If ``SchemaVersion`` does not match
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


def persist_context(context: RuntimeContext) -> None:
    """Save the in-memory workbook to the configured data file."""
    with context.locks.hold_workbook(timeout=context.settings.lock_timeout):
        data_manager.save_workbook(
            context.workbook,
            destination=context.settings.data_file,
        )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk, dropping unsaved edits and caches.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook, locks=context.locks)


def generate_id(prefix: str, *, when: Optional[datetime] = None, taken: Iterable[str] = ()) -> str:
    """Generate a sortable identifier ``{prefix}{YYYYMMDDHHMMSSffffff}``.

    When the candidate is already in ``taken`` the timestamp is advanced one
    microsecond at a time, which keeps identifiers unique and ordered even
    under a frozen clock.
    """
    when = when or _resolve_timestamp(None)
    existing = set(taken)
    candidate = f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"
    while candidate in existing:
        when = when + timedelta(microseconds=1)
        candidate = f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"
    return candidate


def _write(context: RuntimeContext, action: Callable[[Workbook], Any], *buckets: str) -> Any:
    with context.locks.hold_workbook(timeout=context.settings.lock_timeout):
        try:
            return action(context.workbook)
        finally:
            # A failed action may still have written some cells.
            _invalidate_cache(context, *buckets)


def _coerce_filters(filters: Mapping[str, Any], fields: Mapping[str, Tuple[str, str]], label: str) -> Dict[str, Any]:
    """Translate request filters into ``{row attribute: expected value}``."""

    unknown = [name for name in filters if name not in fields]
    if unknown:
        log.error("Unknown %s filter fields: %s", label, ", ".join(unknown))
        raise ValidationError(f"Unknown {label} field: {unknown[0]}")
    return {fields[name][0]: value for name, value in filters.items()}


def _matches(row: Any, criteria: Mapping[str, Any]) -> bool:
    for attribute, expected in criteria.items():
        actual = getattr(row, attribute)
        if isinstance(actual, Decimal):
            try:
                if actual != validators.to_decimal(expected, attribute):
                    return False
            except ValidationError:
                return False
        elif str(actual) != str(expected).strip():
            return False
    return True


def _check_changes(changes: Mapping[str, Any], fields: Mapping[str, Tuple[str, str]]) -> None:
    if not changes:
        raise ValidationError("A body must be provided")
    if not all(name in fields for name in changes):
        log.error("Rejected change of fields %s", sorted(changes))
        raise ValidationError(NOT_ALLOWED_CHANGE)


# ---------------------------------------------------------------------------
# Traders
# ---------------------------------------------------------------------------


def list_traders(context: RuntimeContext) -> List[data_manager.TraderRow]:
    """Return every trader in sheet order."""
    return list(_traders(context)["all"])


def get_trader(context: RuntimeContext, trader_id: str) -> data_manager.TraderRow:
    """Resolve a trader by identifier.

    Raises:
        NotFoundError: If no trader carries ``trader_id``.
    """
    try:
        return _traders(context)["by_id"][trader_id]
    except KeyError as exc:
        log.warning("Trader lookup failed for id '%s'", trader_id)
        raise NotFoundError(f"Trader with id {trader_id} not found") from exc


def find_traders(context: RuntimeContext, **filters: Any) -> List[data_manager.TraderRow]:
    """Return traders whose fields equal every value in ``filters``."""
    criteria = _coerce_filters(filters, TRADER_FIELDS, "trader")
    return [row for row in _traders(context)["all"] if _matches(row, criteria)]


def _ensure_unique_trader_name(context: RuntimeContext, name: str, *, exclude: Optional[str] = None) -> None:
    for row in _traders(context)["all"]:
        if row.name == name and row.trader_id != exclude:
            log.error("Trader name '%s' already registered as '%s'", name, row.trader_id)
            raise DuplicateRecordError(f"A trader named '{name}' already exists")


def add_trader(context: RuntimeContext, fields: Mapping[str, Any]) -> data_manager.TraderRow:
    """Validate and append a trader; names are unique."""
    values = validators.validate_trader(fields)
    _ensure_unique_trader_name(context, values["name"])
    record = data_manager.TraderRow(
        trader_id=generate_id("TR", taken=_traders(context)["by_id"]),
        name=values["name"],
        trader_type=values["type"],
        location=values["location"],
    )
    _write(context, lambda wb: data_manager.append_trader(wb, record), "traders")
    log.info("Registered trader '%s' (%s)", record.name, record.trader_id)
    return record


def update_trader(context: RuntimeContext, trader_id: str, changes: Mapping[str, Any]) -> data_manager.TraderRow:
    """Apply a partial update to a trader and re-validate the whole record.

    Raises:
        ValidationError: If ``changes`` is empty, names a field outside
            ``TRADER_FIELDS`` or produces an invalid record.
        NotFoundError: If the trader does not exist.
        DuplicateRecordError: If the new name belongs to another trader.
    """
    _check_changes(changes, TRADER_FIELDS)
    current = get_trader(context, trader_id)
    merged = {"name": current.name, "type": current.trader_type, "location": current.location, **changes}
    values = validators.validate_trader(merged)
    _ensure_unique_trader_name(context, values["name"], exclude=trader_id)
    _write(
        context,
        lambda wb: data_manager.update_record(
            wb,
            data_manager.TRADERS_SHEET,
            "TraderID",
            trader_id,
            field_values={"Name": values["name"], "Type": values["type"], "Location": values["location"]},
        ),
        "traders",
    )
    log.info("Updated trader '%s'", trader_id)
    return replace(current, name=values["name"], trader_type=values["type"], location=values["location"])


def update_trader_where(context: RuntimeContext, filters: Mapping[str, Any], changes: Mapping[str, Any]) -> data_manager.TraderRow:
    """Update the first trader matching ``filters``."""
    return update_trader(context, _first(find_traders(context, **filters), "Trader").trader_id, changes)


def delete_trader(context: RuntimeContext, trader_id: str) -> data_manager.TraderRow:
    """Remove a trader by identifier and return the removed record."""
    current = get_trader(context, trader_id)
    _write(context, lambda wb: data_manager.delete_record(wb, data_manager.TRADERS_SHEET, "TraderID", trader_id), "traders")
    log.info("Deleted trader '%s'", trader_id)
    return current


def delete_trader_where(context: RuntimeContext, filters: Mapping[str, Any]) -> data_manager.TraderRow:
    """Remove the first trader matching ``filters``."""
    return delete_trader(context, _first(find_traders(context, **filters), "Trader").trader_id)


# ---------------------------------------------------------------------------
# Hunters
# ---------------------------------------------------------------------------


def list_hunters(context: RuntimeContext) -> List[data_manager.HunterRow]:
    """Return every hunter in sheet order."""
    return list(_hunters(context)["all"])


def get_hunter(context: RuntimeContext, hunter_id: str) -> data_manager.HunterRow:
    """Resolve a hunter by identifier.

    Raises:
        NotFoundError: If no hunter carries ``hunter_id``.
    """
    try:
        return _hunters(context)["by_id"][hunter_id]
    except KeyError as exc:
        log.warning("Hunter lookup failed for id '%s'", hunter_id)
        raise NotFoundError(f"Hunter with id {hunter_id} not found") from exc


def find_hunters(context: RuntimeContext, **filters: Any) -> List[data_manager.HunterRow]:
    """Return hunters whose fields equal every value in ``filters``."""
    criteria = _coerce_filters(filters, HUNTER_FIELDS, "hunter")
    return [row for row in _hunters(context)["all"] if _matches(row, criteria)]


def add_hunter(context: RuntimeContext, fields: Mapping[str, Any]) -> data_manager.HunterRow:
    """Validate and append a hunter."""
    values = validators.validate_hunter(fields)
    record = data_manager.HunterRow(
        hunter_id=generate_id("HU", taken=_hunters(context)["by_id"]),
        name=values["name"],
        race=values["race"],
        location=values["location"],
    )
    _write(context, lambda wb: data_manager.append_hunter(wb, record), "hunters")
    log.info("Registered hunter '%s' (%s)", record.name, record.hunter_id)
    return record


def update_hunter(context: RuntimeContext, hunter_id: str, changes: Mapping[str, Any]) -> data_manager.HunterRow:
    """Apply a partial update to a hunter and re-validate the whole record."""
    _check_changes(changes, HUNTER_FIELDS)
    current = get_hunter(context, hunter_id)
    merged = {"name": current.name, "race": current.race, "location": current.location, **changes}
    values = validators.validate_hunter(merged)
    _write(
        context,
        lambda wb: data_manager.update_record(
            wb,
            data_manager.HUNTERS_SHEET,
            "HunterID",
            hunter_id,
            field_values={"Name": values["name"], "Race": values["race"], "Location": values["location"]},
        ),
        "hunters",
    )
    log.info("Updated hunter '%s'", hunter_id)
    return replace(current, name=values["name"], race=values["race"], location=values["location"])


def update_hunter_where(context: RuntimeContext, filters: Mapping[str, Any], changes: Mapping[str, Any]) -> data_manager.HunterRow:
    """Update the first hunter matching ``filters``."""
    return update_hunter(context, _first(find_hunters(context, **filters), "Hunter").hunter_id, changes)


def delete_hunter(context: RuntimeContext, hunter_id: str) -> data_manager.HunterRow:
    """Remove a hunter by identifier and return the removed record."""
    current = get_hunter(context, hunter_id)
    _write(context, lambda wb: data_manager.delete_record(wb, data_manager.HUNTERS_SHEET, "HunterID", hunter_id), "hunters")
    log.info("Deleted hunter '%s'", hunter_id)
    return current


def delete_hunter_where(context: RuntimeContext, filters: Mapping[str, Any]) -> data_manager.HunterRow:
    """Remove the first hunter matching ``filters``."""
    return delete_hunter(context, _first(find_hunters(context, **filters), "Hunter").hunter_id)


# ---------------------------------------------------------------------------
# Assets
# ---------------------------------------------------------------------------


def list_assets(context: RuntimeContext) -> List[data_manager.AssetRow]:
    """Return every asset in sheet order."""
    return list(_assets(context)["all"])


def get_asset(context: RuntimeContext, asset_id: str) -> data_manager.AssetRow:
    """Resolve an asset by identifier.

    Raises:
        NotFoundError: If no asset carries ``asset_id``.
    """
    try:
        return _assets(context)["by_id"][asset_id]
    except KeyError as exc:
        log.warning("Asset lookup failed for id '%s'", asset_id)
        raise NotFoundError(f"Asset with id {asset_id} not found") from exc


def find_assets(context: RuntimeContext, **filters: Any) -> List[data_manager.AssetRow]:
    """Return assets whose fields equal every value in ``filters``."""
    criteria = _coerce_filters(filters, ASSET_FIELDS, "asset")
    return [row for row in _assets(context)["all"] if _matches(row, criteria)]


def add_asset(context: RuntimeContext, fields: Mapping[str, Any]) -> Tuple[data_manager.AssetRow, bool]:
    """Register an asset, or restock it when the name is already known.

    A request naming an existing asset only increases that asset's amount by
    the requested ``amount``; the remaining fields are ignored.

    Returns:
        tuple[AssetRow, bool]: The stored record and ``True`` when a new row
            was created, ``False`` when an existing one was restocked.
    """
    name = fields.get("name")
    existing = next(
        (row for row in _assets(context)["all"] if isinstance(name, str) and row.name == name.strip()),
        None,
    )
    if existing is not None:
        increment = validators.require_nonnegative(fields.get("amount"), "amount")
        with context.locks.hold_assets([existing.asset_id], timeout=context.settings.lock_timeout):
            updated = set_asset_amount(context, existing.asset_id, get_asset(context, existing.asset_id).amount + increment)
        log.info("Restocked asset '%s' by %s", existing.asset_id, increment)
        return updated, False

    values = validators.validate_asset(fields)
    record = data_manager.AssetRow(
        asset_id=generate_id("AS", taken=_assets(context)["by_id"]),
        name=values["name"],
        description=values["description"],
        material=values["material"],
        weight=values["weight"],
        crown_value=values["crown_value"],
        asset_type=values["type"],
        amount=values["amount"],
    )
    _write(context, lambda wb: data_manager.append_asset(wb, record), "assets")
    log.info("Registered asset '%s' (%s) with amount %s", record.name, record.asset_id, record.amount)
    return record, True


def update_asset(context: RuntimeContext, asset_id: str, changes: Mapping[str, Any]) -> data_manager.AssetRow:
    """Apply a partial update to an asset and re-validate the whole record.

    Raises:
        ValidationError: If a change is not allowed or the result is invalid.
        NotFoundError: If the asset does not exist.
        DuplicateRecordError: If the new name belongs to another asset.
    """
    _check_changes(changes, ASSET_FIELDS)
    current = get_asset(context, asset_id)
    merged = {
        "name": current.name,
        "description": current.description,
        "material": current.material,
        "weight": current.weight,
        "crown_value": current.crown_value,
        "type": current.asset_type,
        "amount": current.amount,
        **changes,
    }
    values = validators.validate_asset(merged)
    for row in _assets(context)["all"]:
        if row.name == values["name"] and row.asset_id != asset_id:
            raise DuplicateRecordError(f"An asset named '{values['name']}' already exists")

    with context.locks.hold_assets([asset_id], timeout=context.settings.lock_timeout):
        _write(
            context,
            lambda wb: data_manager.update_record(
                wb,
                data_manager.ASSETS_SHEET,
                "AssetID",
                asset_id,
                field_values={ASSET_FIELDS[name][1]: values[name] for name in ASSET_FIELDS},
            ),
            "assets",
        )
    log.info("Updated asset '%s'", asset_id)
    return replace(
        current,
        name=values["name"],
        description=values["description"],
        material=values["material"],
        weight=values["weight"],
        crown_value=values["crown_value"],
        asset_type=values["type"],
        amount=values["amount"],
    )


def update_asset_where(context: RuntimeContext, filters: Mapping[str, Any], changes: Mapping[str, Any]) -> data_manager.AssetRow:
    """Update the first asset matching ``filters``."""
    return update_asset(context, _first(find_assets(context, **filters), "Asset").asset_id, changes)


def delete_asset(context: RuntimeContext, asset_id: str) -> data_manager.AssetRow:
    """Remove an asset by identifier and return the removed record."""
    current = get_asset(context, asset_id)
    _write(context, lambda wb: data_manager.delete_record(wb, data_manager.ASSETS_SHEET, "AssetID", asset_id), "assets")
    log.info("Deleted asset '%s'", asset_id)
    return current


def delete_asset_where(context: RuntimeContext, filters: Mapping[str, Any]) -> data_manager.AssetRow:
    """Remove the first asset matching ``filters``."""
    return delete_asset(context, _first(find_assets(context, **filters), "Asset").asset_id)


def set_asset_amount(context: RuntimeContext, asset_id: str, amount: Decimal) -> data_manager.AssetRow:
    """Overwrite the stock of one asset.

    Callers are expected to hold the asset's lock. The non-negativity check
    is repeated here so no code path can store a negative amount.

    Raises:
        ValidationError: If ``amount`` is negative.
        NotFoundError: If the asset does not exist.
    """
    current = get_asset(context, asset_id)
    amount = validators.require_nonnegative(amount, "amount")
    _write(
        context,
        lambda wb: data_manager.update_record(
            wb, data_manager.ASSETS_SHEET, "AssetID", asset_id, field_values={"Amount": amount}
        ),
        "assets",
    )
    log.debug("Asset '%s' amount %s -> %s", asset_id, current.amount, amount)
    return replace(current, amount=amount)


def _first(rows: List[Any], label: str) -> Any:
    if not rows:
        log.warning("%s filter matched no records", label)
        raise NotFoundError(f"{label} not found")
    return rows[0]


# ---------------------------------------------------------------------------
# Counterparties and transactions
# ---------------------------------------------------------------------------


def resolve_counterparty(context: RuntimeContext, reference: str, *, inn_buying: bool) -> Optional[Counterparty]:
    """Look up ``reference`` in the collection selected by ``inn_buying``.

    ``True`` searches traders (the inn buys from a merchant), ``False``
    searches hunters (the inn sells to a client). The flag is the only
    dispatch key; a trader id paired with ``inn_buying=False`` does not match.
    """
    bucket = _traders(context) if inn_buying else _hunters(context)
    return bucket["by_id"].get(reference)


def find_asset(context: RuntimeContext, asset_id: str) -> Optional[data_manager.AssetRow]:
    """Return the asset with ``asset_id`` or ``None``."""
    return _assets(context)["by_id"].get(asset_id)


def list_transactions(context: RuntimeContext) -> List[data_manager.TransactionRow]:
    """Return every transaction with its line items, in sheet order."""
    return list(_transactions(context)["all"])


def get_transaction(context: RuntimeContext, transaction_id: str) -> data_manager.TransactionRow:
    """Resolve a transaction by identifier.

    Raises:
        NotFoundError: If the transaction does not exist.
    """
    try:
        return _transactions(context)["by_id"][transaction_id]
    except KeyError as exc:
        log.warning("Transaction lookup failed for id '%s'", transaction_id)
        raise NotFoundError(f"Transaction with id {transaction_id} not found") from exc


def new_transaction_id(context: RuntimeContext, *, when: Optional[datetime] = None) -> str:
    return generate_id("TX", when=when, taken=_transactions(context)["by_id"])


def insert_transaction(context: RuntimeContext, record: data_manager.TransactionRow) -> None:
    """Append a transaction and its line items."""
    _write(context, lambda wb: data_manager.append_transaction(wb, record), "transactions")


def remove_transaction(context: RuntimeContext, transaction_id: str, *, missing_ok: bool = False) -> None:
    """Delete a transaction and its line items.

    With ``missing_ok`` a transaction whose header row was never written is
    not an error; any stray line items are still removed.
    """
    _write(
        context,
        lambda wb: data_manager.delete_transaction(wb, transaction_id, missing_ok=missing_ok),
        "transactions",
    )


def overwrite_transaction(context: RuntimeContext, record: data_manager.TransactionRow) -> None:
    """Rewrite the header fields and the line items of a stored transaction."""

    def _apply(wb: Workbook) -> None:
        data_manager.update_record(
            wb,
            data_manager.TRANSACTIONS_SHEET,
            "TransactionID",
            record.transaction_id,
            field_values={
                "CounterpartyID": record.counterparty_id,
                "Date": record.date_iso,
                "CrownValue": record.crown_value,
                "InnBuying": record.inn_buying,
            },
        )
        data_manager.replace_line_items(wb, record.transaction_id, record.items)

    _write(context, _apply, "transactions")
