"""Transaction workflow controller.

Each public function turns a request body into a committed change of the
store, or into an exception with nothing changed:

* create: validate -> persist -> reconcile stock
* delete: look up -> reverse stock -> remove
* edit: look up -> validate merged record -> apply differential stock
  deltas -> persist

Persistence, stock reconciliation and the optional ``persist`` callback (the
save to disk) run inside one :class:`~inn_ledger.unit_of_work.UnitOfWork`,
while the locks of every asset involved are held, so a failure half-way is
rolled back and two requests touching the same asset never interleave.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import AbstractSet, Any, Callable, Iterable, Iterator, List, Mapping, Optional, Tuple

from . import core_logic, log, reconciliation, validators
from .data_manager import LineItem, TransactionRow
from .errors import InnLedgerError, InternalError, MissingFieldError, NotFoundError, ValidationError
from .reconciliation import MISSING_BODY, TransactionCandidate
from .unit_of_work import UnitOfWork


EDITABLE_FIELDS = ("mercader", "bienes", "date", "crownValue", "innBuying")
NOT_ALLOWED_CHANGE = core_logic.NOT_ALLOWED_CHANGE


@dataclass(frozen=True)
class TransactionFields:
    """Validated, normalised fields of a transaction request."""

    counterparty_id: str
    items: Tuple[LineItem, ...]
    inn_buying: bool
    date: datetime
    crown_value: Decimal

    def candidate(self) -> TransactionCandidate:
        return TransactionCandidate(
            counterparty_id=self.counterparty_id,
            items=self.items,
            inn_buying=self.inn_buying,
        )


def _now(now: Optional[datetime]) -> datetime:
    return now if now is not None else datetime.now(UTC)


def parse_transaction_body(body: Optional[Mapping[str, Any]], *, now: Optional[datetime] = None) -> TransactionFields:
    """Validate a create request ``{mercader, bienes, innBuying, date?, crownValue?}``.

    ``date`` defaults to ``now`` and ``crownValue`` to zero.

    Raises:
        MissingFieldError: If the body, ``mercader`` or ``bienes`` is absent.
        ValidationError: If a present field is malformed, ``innBuying`` is
            missing, or ``date`` lies in the future.
    """

    if not body or not body.get("mercader") or not body.get("bienes"):
        log.error("Transaction request without counterparty or line items")
        raise MissingFieldError(MISSING_BODY)
    if "innBuying" not in body:
        raise ValidationError("innBuying is required")

    reference = _now(now)
    date = validators.parse_date(body["date"]) if body.get("date") is not None else reference
    return TransactionFields(
        counterparty_id=validators.require_text(body["mercader"], "mercader"),
        items=validators.parse_line_items(body["bienes"]),
        inn_buying=validators.require_bool(body["innBuying"], "innBuying"),
        date=validators.require_not_future(date, now=reference),
        crown_value=validators.require_nonnegative(body.get("crownValue", 0), "crownValue"),
    )


@contextmanager
def _storage_guard(action: str) -> Iterator[None]:
    """Translate unexpected storage exceptions into :class:`InternalError`."""

    try:
        yield
    except InnLedgerError:
        raise
    except (KeyError, OSError, ValueError, TypeError) as exc:
        log.error("Storage failure while %s: %s", action, exc)
        raise InternalError(f"Storage failure while {action}: {exc}") from exc


def _asset_ids(items: Iterable[LineItem]) -> AbstractSet[str]:
    return {item.asset_id for item in items}


@contextmanager
def _hold_transaction_assets(
    context: core_logic.RuntimeContext,
    transaction_id: str,
    extra: AbstractSet[str] = frozenset(),
) -> Iterator[TransactionRow]:
    """Lock the assets of a stored transaction plus ``extra``; yield the record.

    The record is read again once the locks are held. When a concurrent edit
    has meanwhile moved it onto an asset outside the held set, the locks are
    released and taken again for the larger set.
    """

    timeout = context.settings.lock_timeout
    wanted = set(extra) | _asset_ids(core_logic.get_transaction(context, transaction_id).items)
    while True:
        with context.locks.hold_assets(wanted, timeout=timeout):
            current = core_logic.get_transaction(context, transaction_id)
            missing = _asset_ids(current.items) - wanted
            if not missing:
                yield current
                return
        log.debug("Transaction '%s' now also touches %s; locking again", transaction_id, sorted(missing))
        wanted |= missing


def _reinstate(context: core_logic.RuntimeContext, record: TransactionRow) -> None:
    """Put ``record`` back exactly, whatever part of it is currently stored."""

    core_logic.remove_transaction(context, record.transaction_id, missing_ok=True)
    core_logic.insert_transaction(context, record)


def create_transaction(
    context: core_logic.RuntimeContext,
    body: Optional[Mapping[str, Any]],
    *,
    now: Optional[datetime] = None,
    persist: Optional[Callable[[], None]] = None,
) -> TransactionRow:
    """Validate, persist and reconcile a new transaction.

    ``persist`` runs as the last step of the unit of work; if it fails the
    transaction and its stock changes are rolled back.

    Returns:
        TransactionRow: The committed transaction.

    Raises:
        MissingFieldError, ValidationError: For malformed requests.
        CounterpartyNotRegistered, AssetNotFound, DuplicateAssetError,
        InsufficientStockError: When the request breaks a business rule.
        InternalError: When the store fails; the partial write is undone.
    """

    fields = parse_transaction_body(body, now=now)
    timeout = context.settings.lock_timeout

    with context.locks.hold_assets([item.asset_id for item in fields.items], timeout=timeout):
        reconciliation.validate_transaction(context, fields.candidate())
        record = TransactionRow(
            transaction_id=core_logic.new_transaction_id(context),
            counterparty_id=fields.counterparty_id,
            items=fields.items,
            date_iso=fields.date.isoformat(),
            crown_value=fields.crown_value,
            inn_buying=fields.inn_buying,
        )
        with _storage_guard(f"creating {record.transaction_id}"):
            with UnitOfWork(f"create {record.transaction_id}") as uow:
                uow.on_rollback(
                    f"remove {record.transaction_id}",
                    lambda: core_logic.remove_transaction(context, record.transaction_id, missing_ok=True),
                )
                core_logic.insert_transaction(context, record)
                reconciliation.apply_stock_delta(context, record, uow=uow)
                if persist is not None:
                    persist()

    log.info(
        "Committed %s transaction '%s' with '%s' (%d line items)",
        "buy" if record.inn_buying else "sell",
        record.transaction_id,
        record.counterparty_id,
        len(record.items),
    )
    return record


def delete_transaction(
    context: core_logic.RuntimeContext,
    transaction_id: str,
    *,
    persist: Optional[Callable[[], None]] = None,
) -> TransactionRow:
    """Reverse the stock effect of a transaction and remove it.

    Raises:
        NotFoundError: If the transaction does not exist.
        InsufficientStockError: If undoing a purchase would need stock that
            has since been sold; nothing is changed.
        InternalError: When the store or ``persist`` fails; nothing is changed.
    """

    with _hold_transaction_assets(context, transaction_id) as record:
        with _storage_guard(f"deleting {transaction_id}"):
            with UnitOfWork(f"delete {transaction_id}") as uow:
                reconciliation.apply_stock_delta(context, record, reverse=True, uow=uow)
                uow.on_rollback(f"restore {transaction_id}", lambda: _reinstate(context, record))
                core_logic.remove_transaction(context, transaction_id)
                if persist is not None:
                    persist()

    log.info("Deleted transaction '%s' and reversed its stock", transaction_id)
    return record


def _merge_changes(current: TransactionRow, changes: Mapping[str, Any], now: datetime) -> TransactionRow:
    updated = current
    if "mercader" in changes:
        updated = replace(updated, counterparty_id=validators.require_text(changes["mercader"], "mercader"))
    if "bienes" in changes:
        items = validators.parse_line_items(changes["bienes"])
        if not items:
            raise MissingFieldError(MISSING_BODY)
        updated = replace(updated, items=items)
    if "innBuying" in changes:
        updated = replace(updated, inn_buying=validators.require_bool(changes["innBuying"], "innBuying"))
    if "date" in changes:
        date = validators.require_not_future(validators.parse_date(changes["date"]), now=now)
        updated = replace(updated, date_iso=date.isoformat())
    if "crownValue" in changes:
        updated = replace(updated, crown_value=validators.require_nonnegative(changes["crownValue"], "crownValue"))
    return updated


def edit_transaction(
    context: core_logic.RuntimeContext,
    transaction_id: str,
    changes: Optional[Mapping[str, Any]],
    *,
    now: Optional[datetime] = None,
    persist: Optional[Callable[[], None]] = None,
) -> TransactionRow:
    """Apply a partial update and move stock by the difference it makes.

    The merged record is re-validated (counterparty per the possibly new
    ``innBuying``, assets, duplicates, date); the absolute stock check is
    replaced by the differential one of
    :func:`~inn_ledger.reconciliation.compute_edit_deltas`, which also gives
    back the stock of line items dropped by the edit.

    Raises:
        NotFoundError: If the transaction does not exist.
        MissingFieldError: If ``changes`` is empty.
        ValidationError: If a field outside ``EDITABLE_FIELDS`` is changed or
            a value is malformed.
        InsufficientStockError: If the new line items need stock that is not
            there; nothing is changed.
        InternalError: When the store or ``persist`` fails; the header, line
            items and stock are restored.
    """

    current = core_logic.get_transaction(context, transaction_id)
    if not changes:
        raise MissingFieldError("A body must be provided")
    if not all(name in EDITABLE_FIELDS for name in changes):
        log.error("Rejected change of transaction fields %s", sorted(changes))
        raise ValidationError(NOT_ALLOWED_CHANGE)

    reference = _now(now)
    proposed = _merge_changes(current, changes, reference)

    with _hold_transaction_assets(context, transaction_id, _asset_ids(proposed.items)) as current:
        updated = _merge_changes(current, changes, reference)
        reconciliation.validate_transaction(
            context,
            TransactionCandidate(updated.counterparty_id, updated.items, updated.inn_buying),
            check_stock=False,
        )
        planned = reconciliation.plan_stock_changes(
            context, reconciliation.compute_edit_deltas(current, updated)
        )
        with _storage_guard(f"editing {transaction_id}"):
            with UnitOfWork(f"edit {transaction_id}") as uow:
                reconciliation.write_stock_changes(context, planned, uow=uow)
                uow.on_rollback(
                    f"restore {transaction_id}",
                    lambda: core_logic.overwrite_transaction(context, current),
                )
                core_logic.overwrite_transaction(context, updated)
                if persist is not None:
                    persist()

    log.info(
        "Edited transaction '%s' (%s); %d assets re-stocked",
        transaction_id,
        ", ".join(sorted(changes)),
        len(planned),
    )
    return updated


def get_transaction(context: core_logic.RuntimeContext, transaction_id: str) -> TransactionRow:
    """Return one transaction or raise :class:`NotFoundError`."""

    return core_logic.get_transaction(context, transaction_id)


def find_transactions_by_name(context: core_logic.RuntimeContext, name: str) -> List[TransactionRow]:
    """Return the transactions of every trader or hunter called ``name``.

    Trader matches contribute their buy transactions, hunter matches their
    sell transactions.

    Raises:
        NotFoundError: If neither a trader nor a hunter has that name.
    """

    traders = {row.trader_id for row in core_logic.find_traders(context, name=name)}
    hunters = {row.hunter_id for row in core_logic.find_hunters(context, name=name)}
    if not traders and not hunters:
        log.warning("No trader or hunter named '%s'", name)
        raise NotFoundError(f"Trader with name {name} not found")

    return [
        row
        for row in core_logic.list_transactions(context)
        if (row.inn_buying and row.counterparty_id in traders)
        or (not row.inn_buying and row.counterparty_id in hunters)
    ]


def _is_date_only(value: Any) -> bool:
    return isinstance(value, str) and len(value.strip()) == 10


def find_transactions_between(
    context: core_logic.RuntimeContext, first_day: Any, last_day: Any
) -> List[TransactionRow]:
    """Return transactions dated within ``[first_day, last_day]``.

    A ``last_day`` given as a bare ``YYYY-MM-DD`` covers that whole day.

    Raises:
        ValidationError: If a bound is not an ISO-8601 date or the range is
            inverted.
    """

    lower = validators.parse_date(first_day, "firstDay")
    upper = validators.parse_date(last_day, "lastDay")
    if _is_date_only(last_day):
        upper = upper + timedelta(days=1) - timedelta(microseconds=1)
    if lower > upper:
        raise ValidationError("firstDay must not be after lastDay")

    return [
        row
        for row in core_logic.list_transactions(context)
        if lower <= validators.parse_date(row.date_iso) <= upper
    ]
