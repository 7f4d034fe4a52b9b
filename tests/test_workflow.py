"""Tests for the transaction workflow controller."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from inn_ledger import core_logic, data_manager, workflow
from inn_ledger.errors import (
    AssetNotFound,
    CounterpartyNotRegistered,
    DuplicateAssetError,
    InsufficientStockError,
    InternalError,
    MissingFieldError,
    NotFoundError,
    ValidationError,
)


NOW = datetime(2024, 5, 20, 12, 0, tzinfo=UTC)


def _amount(context, asset_id):
    return core_logic.get_asset(context, asset_id).amount


def _buy(seeded, amount, **extra):
    body = {"mercader": seeded.trader_id, "bienes": [{"asset": seeded.asset_id, "amount": amount}], "innBuying": True}
    body.update(extra)
    return workflow.create_transaction(seeded.context, body, now=NOW)


def _sell(seeded, amount, **extra):
    body = {"mercader": seeded.hunter_id, "bienes": [{"asset": seeded.asset_id, "amount": amount}], "innBuying": False}
    body.update(extra)
    return workflow.create_transaction(seeded.context, body, now=NOW)


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("body", [None, {}, {"bienes": [{"asset": "A", "amount": 1}]}, {"mercader": "TR1"}])
def test_parse_transaction_body_requires_counterparty_and_items(body):
    with pytest.raises(MissingFieldError, match="Error: a body must be specified"):
        workflow.parse_transaction_body(body, now=NOW)


def test_parse_transaction_body_requires_direction():
    with pytest.raises(ValidationError, match="innBuying"):
        workflow.parse_transaction_body({"mercader": "TR1", "bienes": [{"asset": "A", "amount": 1}]}, now=NOW)


def test_parse_transaction_body_defaults():
    fields = workflow.parse_transaction_body(
        {"mercader": "TR1", "bienes": [{"asset": "A", "amount": 1}], "innBuying": "true"}, now=NOW
    )
    assert fields.date == NOW
    assert fields.crown_value == Decimal("0")
    assert fields.inn_buying is True


def test_parse_transaction_body_rejects_future_date():
    body = {
        "mercader": "TR1",
        "bienes": [{"asset": "A", "amount": 1}],
        "innBuying": True,
        "date": (NOW + timedelta(days=1)).isoformat(),
    }
    with pytest.raises(ValidationError, match="future date"):
        workflow.parse_transaction_body(body, now=NOW)


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


def test_buy_increases_stock_and_is_stored(seeded):
    record = _buy(seeded, 5, crownValue="120", date="2024-05-01T09:00:00Z")

    assert _amount(seeded.context, seeded.asset_id) == Decimal("15")
    stored = workflow.get_transaction(seeded.context, record.transaction_id)
    assert stored == record
    assert stored.date_iso == "2024-05-01T09:00:00+00:00"
    assert stored.crown_value == Decimal("120")


def test_sell_decreases_stock(seeded):
    _sell(seeded, 6)
    assert _amount(seeded.context, seeded.asset_id) == Decimal("4")


def test_sell_beyond_stock_changes_nothing(seeded):
    with pytest.raises(InsufficientStockError):
        _sell(seeded, 15)
    assert _amount(seeded.context, seeded.asset_id) == Decimal("10")
    assert core_logic.list_transactions(seeded.context) == []


def test_create_with_mismatched_counterparty_is_rejected(seeded):
    body = {"mercader": seeded.trader_id, "bienes": [{"asset": seeded.asset_id, "amount": 1}], "innBuying": False}
    with pytest.raises(CounterpartyNotRegistered):
        workflow.create_transaction(seeded.context, body, now=NOW)


def test_create_with_unknown_asset_is_rejected(seeded):
    body = {"mercader": seeded.trader_id, "bienes": [{"asset": "AS-unknown", "amount": 1}], "innBuying": True}
    with pytest.raises(AssetNotFound):
        workflow.create_transaction(seeded.context, body, now=NOW)
    assert core_logic.list_transactions(seeded.context) == []


def test_create_with_duplicate_assets_changes_nothing(seeded):
    body = {
        "mercader": seeded.trader_id,
        "bienes": [{"asset": seeded.asset_id, "amount": 1}, {"asset": seeded.asset_id, "amount": 2}],
        "innBuying": True,
    }
    with pytest.raises(DuplicateAssetError):
        workflow.create_transaction(seeded.context, body, now=NOW)
    assert _amount(seeded.context, seeded.asset_id) == Decimal("10")
    assert core_logic.list_transactions(seeded.context) == []


def test_create_rolls_back_record_when_stock_write_fails(seeded, monkeypatch):
    def broken(*_args, **_kwargs):
        raise OSError("workbook locked by another program")

    monkeypatch.setattr(core_logic, "set_asset_amount", broken)

    with pytest.raises(InternalError, match="Storage failure"):
        _buy(seeded, 5)

    monkeypatch.undo()
    assert core_logic.list_transactions(seeded.context) == []
    assert _amount(seeded.context, seeded.asset_id) == Decimal("10")


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------


def test_delete_sale_restores_stock(seeded):
    sale = _sell(seeded, 6)
    removed = workflow.delete_transaction(seeded.context, sale.transaction_id)

    assert removed.transaction_id == sale.transaction_id
    assert _amount(seeded.context, seeded.asset_id) == Decimal("10")
    with pytest.raises(NotFoundError):
        workflow.get_transaction(seeded.context, sale.transaction_id)


def test_delete_buy_that_would_go_negative_is_blocked(seeded):
    purchase = _buy(seeded, 5)
    _sell(seeded, 12)

    with pytest.raises(InsufficientStockError):
        workflow.delete_transaction(seeded.context, purchase.transaction_id)

    assert _amount(seeded.context, seeded.asset_id) == Decimal("3")
    assert workflow.get_transaction(seeded.context, purchase.transaction_id) == purchase


def test_delete_missing_transaction(seeded):
    with pytest.raises(NotFoundError):
        workflow.delete_transaction(seeded.context, "TX-missing")


# ---------------------------------------------------------------------------
# Edit
# ---------------------------------------------------------------------------


def test_edit_missing_transaction_is_not_found(seeded):
    with pytest.raises(NotFoundError):
        workflow.edit_transaction(seeded.context, "TX-missing", {"crownValue": 1}, now=NOW)


def test_edit_requires_changes(seeded):
    purchase = _buy(seeded, 1)
    with pytest.raises(MissingFieldError):
        workflow.edit_transaction(seeded.context, purchase.transaction_id, {}, now=NOW)


def test_edit_rejects_fields_outside_the_allowed_set(seeded):
    purchase = _buy(seeded, 1)
    with pytest.raises(ValidationError, match="non allowed"):
        workflow.edit_transaction(seeded.context, purchase.transaction_id, {"id": "TX9"}, now=NOW)


def test_edit_amount_applies_differential_delta(seeded):
    purchase = _buy(seeded, 3)
    assert _amount(seeded.context, seeded.asset_id) == Decimal("13")

    updated = workflow.edit_transaction(
        seeded.context,
        purchase.transaction_id,
        {"bienes": [{"asset": seeded.asset_id, "amount": 5}]},
        now=NOW,
    )

    assert _amount(seeded.context, seeded.asset_id) == Decimal("15")
    assert workflow.get_transaction(seeded.context, purchase.transaction_id) == updated


def test_edit_sale_amount_uses_differential_stock_check(seeded):
    sale = _sell(seeded, 8)
    assert _amount(seeded.context, seeded.asset_id) == Decimal("2")

    # Selling 10 in total only needs 2 more, which are in stock.
    workflow.edit_transaction(
        seeded.context, sale.transaction_id, {"bienes": [{"asset": seeded.asset_id, "amount": 10}]}, now=NOW
    )
    assert _amount(seeded.context, seeded.asset_id) == Decimal("0")

    with pytest.raises(InsufficientStockError):
        workflow.edit_transaction(
            seeded.context, sale.transaction_id, {"bienes": [{"asset": seeded.asset_id, "amount": 11}]}, now=NOW
        )
    assert _amount(seeded.context, seeded.asset_id) == Decimal("0")


def test_edit_dropping_an_item_gives_its_stock_back(seeded, add_asset):
    shield = add_asset("Shield", amount=0)
    body = {
        "mercader": seeded.trader_id,
        "bienes": [{"asset": seeded.asset_id, "amount": 2}, {"asset": shield.asset_id, "amount": 4}],
        "innBuying": True,
    }
    purchase = workflow.create_transaction(seeded.context, body, now=NOW)

    workflow.edit_transaction(
        seeded.context, purchase.transaction_id, {"bienes": [{"asset": seeded.asset_id, "amount": 2}]}, now=NOW
    )

    assert _amount(seeded.context, seeded.asset_id) == Decimal("12")
    assert _amount(seeded.context, shield.asset_id) == Decimal("0")


def test_edit_flipping_direction_requires_matching_counterparty(seeded):
    purchase = _buy(seeded, 2)
    with pytest.raises(CounterpartyNotRegistered):
        workflow.edit_transaction(seeded.context, purchase.transaction_id, {"innBuying": False}, now=NOW)
    assert _amount(seeded.context, seeded.asset_id) == Decimal("12")


def test_edit_flipping_direction_moves_stock_twice(seeded):
    purchase = _buy(seeded, 2)
    workflow.edit_transaction(
        seeded.context,
        purchase.transaction_id,
        {"innBuying": False, "mercader": seeded.hunter_id},
        now=NOW,
    )
    assert _amount(seeded.context, seeded.asset_id) == Decimal("8")
    stored = workflow.get_transaction(seeded.context, purchase.transaction_id)
    assert stored.inn_buying is False
    assert stored.counterparty_id == seeded.hunter_id


def test_edit_header_fields_leaves_stock_alone(seeded):
    purchase = _buy(seeded, 2)
    updated = workflow.edit_transaction(
        seeded.context, purchase.transaction_id, {"crownValue": "80", "date": "2024-05-02"}, now=NOW
    )
    assert updated.crown_value == Decimal("80")
    assert updated.date_iso == "2024-05-02T00:00:00+00:00"
    assert _amount(seeded.context, seeded.asset_id) == Decimal("12")


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def test_find_by_name_unknown_is_not_found(seeded):
    with pytest.raises(NotFoundError, match="Trader with name Nobody not found"):
        workflow.find_transactions_by_name(seeded.context, "Nobody")


def test_find_by_name_returns_directional_matches(seeded):
    purchase = _buy(seeded, 2)
    sale = _sell(seeded, 1)

    assert workflow.find_transactions_by_name(seeded.context, "Gorm") == [purchase]
    assert workflow.find_transactions_by_name(seeded.context, "Geralt") == [sale]


def test_find_between_is_inclusive_and_covers_whole_last_day(seeded):
    early = _buy(seeded, 1, date="2024-04-30T23:00:00Z")
    first = _buy(seeded, 1, date="2024-05-01T00:00:00Z")
    last = _buy(seeded, 1, date="2024-05-03T22:30:00Z")

    rows = workflow.find_transactions_between(seeded.context, "2024-05-01", "2024-05-03")

    assert rows == [first, last]
    assert early not in rows


def test_find_between_rejects_inverted_range(seeded):
    with pytest.raises(ValidationError):
        workflow.find_transactions_between(seeded.context, "2024-05-03", "2024-05-01")


# ---------------------------------------------------------------------------
# Partial writes and locking
# ---------------------------------------------------------------------------


def _stored_transactions(context):
    return list(data_manager.iter_transactions(context.workbook))


def _stored_line_items(context):
    return list(data_manager._data_rows(context.workbook, data_manager.TRANSACTION_ITEMS_SHEET))


def _write_error(message):
    def _raise(*_args, **_kwargs):
        raise OSError(message)

    return _raise


def test_create_removes_a_partially_appended_transaction(seeded, add_asset, monkeypatch):
    shield = add_asset("Shield", amount=0)
    original = data_manager.serialize_line_item

    def fail_on_second_item(transaction_id, position, item):
        if position == 2:
            raise OSError("sheet write failed")
        return original(transaction_id, position, item)

    monkeypatch.setattr(data_manager, "serialize_line_item", fail_on_second_item)
    body = {
        "mercader": seeded.trader_id,
        "bienes": [{"asset": seeded.asset_id, "amount": 1}, {"asset": shield.asset_id, "amount": 1}],
        "innBuying": True,
    }

    with pytest.raises(InternalError):
        workflow.create_transaction(seeded.context, body, now=NOW)

    assert _stored_transactions(seeded.context) == []
    assert _stored_line_items(seeded.context) == []
    assert core_logic.list_transactions(seeded.context) == []
    assert _amount(seeded.context, seeded.asset_id) == Decimal("10")


def test_create_rolls_back_when_the_save_fails(seeded):
    with pytest.raises(InternalError, match="disk full"):
        workflow.create_transaction(
            seeded.context,
            {"mercader": seeded.hunter_id, "bienes": [{"asset": seeded.asset_id, "amount": 6}], "innBuying": False},
            now=NOW,
            persist=_write_error("disk full"),
        )

    assert _stored_transactions(seeded.context) == []
    assert _amount(seeded.context, seeded.asset_id) == Decimal("10")


def test_edit_restores_header_and_items_when_rewriting_items_fails(seeded, monkeypatch):
    purchase = _buy(seeded, 2, crownValue="1")
    original = data_manager.replace_line_items
    calls = []

    def fail_first_call(workbook, transaction_id, items):
        calls.append(items)
        if len(calls) == 1:
            raise OSError("sheet write failed")
        return original(workbook, transaction_id, items)

    monkeypatch.setattr(data_manager, "replace_line_items", fail_first_call)

    with pytest.raises(InternalError):
        workflow.edit_transaction(
            seeded.context,
            purchase.transaction_id,
            {"crownValue": 99, "bienes": [{"asset": seeded.asset_id, "amount": 5}]},
            now=NOW,
        )

    assert _stored_transactions(seeded.context) == [purchase]
    assert workflow.get_transaction(seeded.context, purchase.transaction_id) == purchase
    assert _amount(seeded.context, seeded.asset_id) == Decimal("12")


def test_delete_reinstates_the_transaction_when_the_save_fails(seeded):
    sale = _sell(seeded, 6)

    with pytest.raises(InternalError, match="disk full"):
        workflow.delete_transaction(seeded.context, sale.transaction_id, persist=_write_error("disk full"))

    assert _stored_transactions(seeded.context) == [sale]
    assert _amount(seeded.context, seeded.asset_id) == Decimal("4")


def test_delete_locks_assets_added_since_the_first_read(seeded, add_asset, monkeypatch):
    shield = add_asset("Shield", amount=0)
    body = {
        "mercader": seeded.trader_id,
        "bienes": [{"asset": seeded.asset_id, "amount": 2}, {"asset": shield.asset_id, "amount": 3}],
        "innBuying": True,
    }
    purchase = workflow.create_transaction(seeded.context, body, now=NOW)

    # The first read sees the transaction as it was before an edit added the shield.
    real_get = core_logic.get_transaction
    reads = []

    def stale_first_read(context, transaction_id):
        record = real_get(context, transaction_id)
        reads.append(record)
        return replace(record, items=record.items[:1]) if len(reads) == 1 else record

    real_hold = seeded.context.locks.hold_assets
    held = []

    def recording_hold(asset_ids, *, timeout):
        held.append(set(asset_ids))
        return real_hold(asset_ids, timeout=timeout)

    monkeypatch.setattr(core_logic, "get_transaction", stale_first_read)
    monkeypatch.setattr(seeded.context.locks, "hold_assets", recording_hold)

    workflow.delete_transaction(seeded.context, purchase.transaction_id)

    assert held == [{seeded.asset_id}, {seeded.asset_id, shield.asset_id}]
    assert _amount(seeded.context, seeded.asset_id) == Decimal("10")
    assert _amount(seeded.context, shield.asset_id) == Decimal("0")
