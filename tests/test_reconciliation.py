"""Tests for transaction validation and stock reconciliation."""

from __future__ import annotations

from decimal import Decimal

import pytest

from inn_ledger import core_logic, reconciliation
from inn_ledger.data_manager import LineItem
from inn_ledger.errors import (
    AssetNotFound,
    CounterpartyNotRegistered,
    DuplicateAssetError,
    InsufficientStockError,
    MissingFieldError,
)
from inn_ledger.reconciliation import TransactionCandidate
from inn_ledger.unit_of_work import UnitOfWork


def _items(*pairs):
    return tuple(LineItem(asset_id, Decimal(str(amount))) for asset_id, amount in pairs)


def _amount(context, asset_id):
    return core_logic.get_asset(context, asset_id).amount


# ---------------------------------------------------------------------------
# Validation stages
# ---------------------------------------------------------------------------


def test_validate_requires_counterparty_and_items(seeded):
    with pytest.raises(MissingFieldError, match="a body must be specified"):
        reconciliation.validate_transaction(seeded.context, TransactionCandidate(None, _items(("AS1", 1)), True))
    with pytest.raises(MissingFieldError):
        reconciliation.validate_transaction(seeded.context, TransactionCandidate(seeded.trader_id, (), True))


def test_validate_resolves_counterparty_by_direction(seeded):
    items = _items((seeded.asset_id, 1))
    reconciliation.validate_transaction(seeded.context, TransactionCandidate(seeded.trader_id, items, True))
    reconciliation.validate_transaction(seeded.context, TransactionCandidate(seeded.hunter_id, items, False))

    with pytest.raises(CounterpartyNotRegistered) as excinfo:
        reconciliation.validate_transaction(seeded.context, TransactionCandidate(seeded.hunter_id, items, True))
    assert excinfo.value.kind == "trader"
    assert excinfo.value.status == 422


def test_validate_reports_first_unknown_asset(seeded):
    items = _items((seeded.asset_id, 1), ("AS-missing-1", 1), ("AS-missing-2", 1))
    with pytest.raises(AssetNotFound) as excinfo:
        reconciliation.validate_transaction(seeded.context, TransactionCandidate(seeded.trader_id, items, True))
    assert excinfo.value.reference == "AS-missing-1"


def test_validate_counterparty_checked_before_assets(seeded):
    with pytest.raises(CounterpartyNotRegistered):
        reconciliation.validate_transaction(
            seeded.context, TransactionCandidate("TR-ghost", _items(("AS-missing", 1)), True)
        )


def test_validate_rejects_duplicate_assets(seeded):
    items = _items((seeded.asset_id, 1), (seeded.asset_id, 2))
    with pytest.raises(DuplicateAssetError) as excinfo:
        reconciliation.validate_transaction(seeded.context, TransactionCandidate(seeded.trader_id, items, True))
    assert excinfo.value.reference == seeded.asset_id


def test_validate_checks_stock_only_when_selling(seeded):
    items = _items((seeded.asset_id, 15))
    reconciliation.validate_transaction(seeded.context, TransactionCandidate(seeded.trader_id, items, True))

    with pytest.raises(InsufficientStockError) as excinfo:
        reconciliation.validate_transaction(seeded.context, TransactionCandidate(seeded.hunter_id, items, False))
    assert excinfo.value.available == Decimal("10")
    assert excinfo.value.requested == Decimal("15")

    reconciliation.validate_transaction(
        seeded.context, TransactionCandidate(seeded.hunter_id, items, False), check_stock=False
    )


def test_validate_allows_selling_the_exact_stock(seeded):
    reconciliation.validate_transaction(
        seeded.context, TransactionCandidate(seeded.hunter_id, _items((seeded.asset_id, 10)), False)
    )


# ---------------------------------------------------------------------------
# Edit deltas
# ---------------------------------------------------------------------------


def test_compute_edit_deltas_for_amount_changes():
    old = TransactionCandidate("TR1", _items(("A", 3), ("B", 2)), True)
    new = TransactionCandidate("TR1", _items(("A", 5), ("B", 2)), True)
    assert dict(reconciliation.compute_edit_deltas(old, new)) == {"A": Decimal("2")}


def test_compute_edit_deltas_on_sell_path_negates():
    old = TransactionCandidate("HU1", _items(("A", 3)), False)
    new = TransactionCandidate("HU1", _items(("A", 5)), False)
    assert dict(reconciliation.compute_edit_deltas(old, new)) == {"A": Decimal("-2")}


def test_compute_edit_deltas_handles_added_and_dropped_items():
    old = TransactionCandidate("TR1", _items(("A", 3), ("B", 2)), True)
    new = TransactionCandidate("TR1", _items(("C", 4), ("A", 3)), True)
    deltas = reconciliation.compute_edit_deltas(old, new)
    assert list(deltas.items()) == [("C", Decimal("4")), ("B", Decimal("-2"))]


def test_compute_edit_deltas_handles_direction_flip():
    old = TransactionCandidate("TR1", _items(("A", 3)), True)
    new = TransactionCandidate("HU1", _items(("A", 3)), False)
    assert dict(reconciliation.compute_edit_deltas(old, new)) == {"A": Decimal("-6")}


# ---------------------------------------------------------------------------
# Applying stock changes
# ---------------------------------------------------------------------------


def test_apply_stock_delta_buy_sell_and_reverse(seeded):
    context = seeded.context
    buy = TransactionCandidate(seeded.trader_id, _items((seeded.asset_id, 4)), True)

    changes = reconciliation.apply_stock_delta(context, buy)
    assert [(change.asset_id, change.delta) for change in changes] == [(seeded.asset_id, Decimal("4"))]
    assert _amount(context, seeded.asset_id) == Decimal("14")

    reconciliation.apply_stock_delta(context, buy, reverse=True)
    assert _amount(context, seeded.asset_id) == Decimal("10")


def test_apply_stock_delta_is_all_or_nothing(seeded, add_asset):
    context = seeded.context
    shield = add_asset("Shield", amount=1)
    sale = TransactionCandidate(seeded.hunter_id, _items((seeded.asset_id, 2), (shield.asset_id, 3)), False)

    with pytest.raises(InsufficientStockError) as excinfo:
        reconciliation.apply_stock_delta(context, sale)

    assert excinfo.value.reference == shield.asset_id
    assert _amount(context, seeded.asset_id) == Decimal("10")
    assert _amount(context, shield.asset_id) == Decimal("1")


def test_write_stock_changes_registers_undo_actions(seeded, add_asset):
    context = seeded.context
    shield = add_asset("Shield", amount=1)
    sale = TransactionCandidate(seeded.hunter_id, _items((seeded.asset_id, 2), (shield.asset_id, 1)), False)

    with pytest.raises(RuntimeError):
        with UnitOfWork("sale") as uow:
            reconciliation.apply_stock_delta(context, sale, uow=uow)
            assert uow.pending == 2
            assert _amount(context, shield.asset_id) == Decimal("0")
            raise RuntimeError("store failure after stock moved")

    assert _amount(context, seeded.asset_id) == Decimal("10")
    assert _amount(context, shield.asset_id) == Decimal("1")


def test_plan_stock_changes_reports_missing_asset(seeded):
    with pytest.raises(AssetNotFound):
        reconciliation.plan_stock_changes(seeded.context, {"AS-gone": Decimal("1")})
