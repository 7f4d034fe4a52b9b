"""Stock reconciliation engine.

Two questions are answered here: may this transaction be posted, and how does
posting (or removing, or editing) it move the stock of every asset it names.

Line items are always processed in their input order. Stock changes are
planned for every item before any is written, so a shortfall on the third
item never leaves the first two applied; each planned write is then performed
in order and, when a :class:`~inn_ledger.unit_of_work.UnitOfWork` is supplied,
registered with an undo action restoring the previous amount.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from . import core_logic, log
from .constants import CounterpartyKind
from .data_manager import LineItem
from .errors import (
    AssetNotFound,
    CounterpartyNotRegistered,
    DuplicateAssetError,
    InnLedgerError,
    InsufficientStockError,
    MissingFieldError,
)
from .unit_of_work import UnitOfWork


MISSING_BODY = "Error: a body must be specified"


class StockBearing(Protocol):
    """Anything with ordered line items and a direction flag."""

    items: Tuple[LineItem, ...]
    inn_buying: bool


@dataclass(frozen=True)
class TransactionCandidate:
    """A transaction-shaped value that has not been stored yet."""

    counterparty_id: Optional[str]
    items: Tuple[LineItem, ...]
    inn_buying: bool


@dataclass(frozen=True)
class StockChange:
    """A planned or applied move of one asset's amount."""

    asset_id: str
    before: Decimal
    after: Decimal

    @property
    def delta(self) -> Decimal:
        return self.after - self.before


def counterparty_kind(inn_buying: bool) -> CounterpartyKind:
    """Traders sell to the inn, hunters buy from it."""

    return CounterpartyKind.TRADER if inn_buying else CounterpartyKind.HUNTER


def _raise_first(failures: Sequence[InnLedgerError], stage: str) -> None:
    if not failures:
        return
    if len(failures) > 1:
        log.error("%s found %d problems; reporting the first", stage, len(failures))
    raise failures[0]


def validate_transaction(
    context: core_logic.RuntimeContext,
    candidate: TransactionCandidate,
    *,
    check_stock: bool = True,
) -> None:
    """Check that ``candidate`` may be posted against the current store.

    The checks run in stages: counterparty, asset existence, duplicate assets,
    then (sell path only) stock sufficiency. Within a stage every line item is
    examined; the first failure in input order is raised.

    Args:
        context (RuntimeContext): Storage handle.
        candidate (TransactionCandidate): Proposed transaction.
        check_stock (bool): Skip the absolute stock check when ``False``. The
            edit path relies on the differential check of
            :func:`plan_stock_changes` instead, because the stock drawn by the
            original transaction is already gone.

    Raises:
        MissingFieldError: If the counterparty or the line items are absent.
        CounterpartyNotRegistered: If the counterparty is not found in the
            collection selected by ``inn_buying``.
        AssetNotFound: If a line item names an unknown asset.
        DuplicateAssetError: If an asset appears in two line items.
        InsufficientStockError: If a sale asks for more than is in stock.
    """

    if not candidate.counterparty_id or not candidate.items:
        log.error("Transaction rejected: counterparty or line items missing")
        raise MissingFieldError(MISSING_BODY)

    kind = counterparty_kind(candidate.inn_buying)
    counterparty = core_logic.resolve_counterparty(
        context, candidate.counterparty_id, inn_buying=candidate.inn_buying
    )
    if counterparty is None:
        log.error("Transaction rejected: %s '%s' is not registered", kind.value, candidate.counterparty_id)
        raise CounterpartyNotRegistered(candidate.counterparty_id, kind.value)

    resolved = []
    missing: List[InnLedgerError] = []
    for item in candidate.items:
        asset = core_logic.find_asset(context, item.asset_id)
        if asset is None:
            missing.append(AssetNotFound(item.asset_id))
        resolved.append((item, asset))
    _raise_first(missing, "Asset resolution")

    seen = set()
    duplicates: List[InnLedgerError] = []
    for item, _ in resolved:
        if item.asset_id in seen:
            duplicates.append(DuplicateAssetError(item.asset_id))
        seen.add(item.asset_id)
    _raise_first(duplicates, "Duplicate check")

    if check_stock and not candidate.inn_buying:
        shortages: List[InnLedgerError] = [
            InsufficientStockError(item.asset_id, asset.amount, item.amount)
            for item, asset in resolved
            if asset.amount < item.amount
        ]
        _raise_first(shortages, "Stock check")

    log.debug(
        "Validated %s transaction with %s '%s' and %d line items",
        "buy" if candidate.inn_buying else "sell",
        kind.value,
        candidate.counterparty_id,
        len(candidate.items),
    )


def signed_effect(items: Sequence[LineItem], inn_buying: bool) -> "OrderedDict[str, Decimal]":
    """Map each asset to its stock effect: ``+amount`` buying, ``-amount`` selling."""

    effect: "OrderedDict[str, Decimal]" = OrderedDict()
    for item in items:
        change = item.amount if inn_buying else -item.amount
        effect[item.asset_id] = effect.get(item.asset_id, Decimal("0")) + change
    return effect


def compute_edit_deltas(old: StockBearing, new: StockBearing) -> "OrderedDict[str, Decimal]":
    """Net stock movement needed to turn the effect of ``old`` into ``new``.

    For every asset the delta is ``effect(new) - effect(old)``. An asset kept
    in both moves by ``new - old`` when buying and by the negation when
    selling; an asset only in ``new`` moves by its full amount; an asset
    dropped from the transaction has its earlier effect undone. A flipped
    ``inn_buying`` is covered by the same formula. Assets whose delta is
    zero are omitted. New-item order comes first, then dropped assets.
    """

    before = signed_effect(old.items, old.inn_buying)
    after = signed_effect(new.items, new.inn_buying)
    deltas: "OrderedDict[str, Decimal]" = OrderedDict()
    for asset_id in [*after.keys(), *(key for key in before if key not in after)]:
        delta = after.get(asset_id, Decimal("0")) - before.get(asset_id, Decimal("0"))
        if delta != 0:
            deltas[asset_id] = delta
    return deltas


def plan_stock_changes(
    context: core_logic.RuntimeContext, deltas: Dict[str, Decimal]
) -> List[StockChange]:
    """Turn per-asset deltas into stock changes, refusing any negative result.

    Raises:
        AssetNotFound: If an asset has disappeared from the store.
        InsufficientStockError: If a delta would take an amount below zero.
    """

    changes: List[StockChange] = []
    failures: List[InnLedgerError] = []
    for asset_id, delta in deltas.items():
        asset = core_logic.find_asset(context, asset_id)
        if asset is None:
            failures.append(AssetNotFound(asset_id))
            continue
        after = asset.amount + delta
        if after < 0:
            failures.append(InsufficientStockError(asset_id, asset.amount, -delta))
            continue
        changes.append(StockChange(asset_id=asset_id, before=asset.amount, after=after))
    _raise_first(failures, "Stock planning")
    return changes


def write_stock_changes(
    context: core_logic.RuntimeContext,
    changes: Sequence[StockChange],
    *,
    uow: Optional[UnitOfWork] = None,
) -> None:
    """Store each planned amount in order, registering undo actions on ``uow``."""

    for change in changes:
        core_logic.set_asset_amount(context, change.asset_id, change.after)
        if uow is not None:
            uow.on_rollback(
                f"restore asset {change.asset_id} to {change.before}",
                lambda change=change: core_logic.set_asset_amount(context, change.asset_id, change.before),
            )


def apply_stock_delta(
    context: core_logic.RuntimeContext,
    transaction: StockBearing,
    reverse: bool = False,
    *,
    uow: Optional[UnitOfWork] = None,
) -> List[StockChange]:
    """Move stock for every line item of ``transaction``.

    The direction is ``transaction.inn_buying``, flipped when ``reverse`` is
    set. Buying adds each line amount to its asset, selling subtracts it. All
    items are checked before the first write; if any asset would go negative
    nothing is changed.

    Returns:
        list[StockChange]: The applied changes, in line-item order.

    Raises:
        InsufficientStockError: If a decrease would leave a negative amount.
        AssetNotFound: If a referenced asset no longer exists.
    """

    direction = (not transaction.inn_buying) if reverse else transaction.inn_buying
    changes = plan_stock_changes(context, signed_effect(transaction.items, direction))
    write_stock_changes(context, changes, uow=uow)
    log.info(
        "Applied %s stock delta over %d assets%s",
        "buy" if direction else "sell",
        len(changes),
        " (reversal)" if reverse else "",
    )
    return changes
