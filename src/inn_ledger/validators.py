"""Field-level record validators.

The entity store runs every write through these helpers before touching the
workbook. Each ``validate_*`` function receives the raw field mapping of a
request and returns the normalised values (trimmed text, enum values as
strings, decimals, timezone-aware datetimes) or raises
:class:`~inn_ledger.errors.ValidationError`.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type

from . import log
from .constants import AssetType, Race, TraderType
from .data_manager import LineItem
from .errors import ValidationError


_CAPITALIZED = re.compile(r"^[A-Z]")


def require_text(value: Any, field: str) -> str:
    """Return ``value`` trimmed, rejecting missing or blank text."""

    if not isinstance(value, str) or not value.strip():
        log.error("Text validation failed for '%s': %r", field, value)
        raise ValidationError(f"{field} is required")
    return value.strip()


def require_capitalized(value: Any, field: str) -> str:
    """Return trimmed text that starts with a capital letter."""

    text = require_text(value, field)
    if not _CAPITALIZED.match(text):
        log.error("Capitalization validation failed for '%s': %r", field, text)
        raise ValidationError(f"{field} must start with a capital letter")
    return text


def require_choice(value: Any, choices: Type[Enum], field: str) -> str:
    """Return the enum value matching ``value`` or raise."""

    if isinstance(value, choices):
        return value.value
    text = value.strip() if isinstance(value, str) else value
    allowed = [member.value for member in choices]
    if text not in allowed:
        log.error("Enumeration validation failed for '%s': %r", field, value)
        raise ValidationError(f"Invalid {field}: {value}")
    return text


def to_decimal(value: Any, field: str) -> Decimal:
    """Coerce numbers and numeric strings into :class:`~decimal.Decimal`."""

    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number")
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation as exc:
        log.error("Numeric validation failed for '%s': %r", field, value)
        raise ValidationError(f"{field} must be a number") from exc
    if not number.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return number


def require_positive(value: Any, field: str) -> Decimal:
    """Validate that a number is strictly positive."""

    number = to_decimal(value, field)
    if number <= Decimal("0"):
        log.error("Positivity validation failed for '%s': %s", field, number)
        raise ValidationError(f"{field} must be greater than zero")
    return number


def require_nonnegative(value: Any, field: str) -> Decimal:
    """Validate that a number is zero or positive."""

    number = to_decimal(value, field)
    if number < Decimal("0"):
        log.error("Non-negativity validation failed for '%s': %s", field, number)
        raise ValidationError(f"{field} must be zero or positive")
    return number


def parse_date(value: Any, field: str = "date") -> datetime:
    """Parse an ISO-8601 string or ``datetime`` into an aware UTC datetime.

    Naive values are interpreted as UTC.
    """

    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            moment = datetime.fromisoformat(text)
        except ValueError as exc:
            log.error("Date validation failed for '%s': %r", field, value)
            raise ValidationError(f"{field} must be an ISO-8601 date") from exc
    else:
        raise ValidationError(f"{field} must be an ISO-8601 date")

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def require_not_future(moment: datetime, *, now: Optional[datetime] = None) -> datetime:
    """Reject dates later than ``now`` (defaults to the current UTC time)."""

    reference = now if now is not None else datetime.now(UTC)
    if moment > reference:
        log.error("Future date rejected: %s (now %s)", moment.isoformat(), reference.isoformat())
        raise ValidationError("A transaction can't have a future date")
    return moment


def require_bool(value: Any, field: str) -> bool:
    """Accept real booleans and the strings ``true``/``false``."""

    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    log.error("Boolean validation failed for '%s': %r", field, value)
    raise ValidationError(f"{field} must be true or false")


def validate_trader(fields: Mapping[str, Any]) -> Dict[str, str]:
    """Validate the ``name``/``type``/``location`` fields of a trader."""

    return {
        "name": require_capitalized(fields.get("name"), "Trader name"),
        "type": require_choice(fields.get("type"), TraderType, "trader type"),
        "location": require_text(fields.get("location"), "location"),
    }


def validate_hunter(fields: Mapping[str, Any]) -> Dict[str, str]:
    """Validate the ``name``/``race``/``location`` fields of a hunter."""

    return {
        "name": require_text(fields.get("name"), "Hunter name"),
        "race": require_choice(fields.get("race"), Race, "race"),
        "location": require_text(fields.get("location"), "location"),
    }


def validate_asset(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Validate every descriptive field of an asset plus its stock amount."""

    return {
        "name": require_capitalized(fields.get("name"), "Asset name"),
        "description": require_text(fields.get("description"), "description"),
        "material": require_text(fields.get("material"), "material"),
        "weight": require_positive(fields.get("weight"), "weight"),
        "crown_value": require_positive(fields.get("crown_value"), "crown_value"),
        "type": require_choice(fields.get("type"), AssetType, "asset type"),
        "amount": require_nonnegative(fields.get("amount"), "amount"),
    }


def parse_line_items(raw_items: Any) -> Tuple[LineItem, ...]:
    """Turn ``[{"asset": id, "amount": n}, ...]`` into line items.

    Order is preserved. Duplicate assets are not checked here; that belongs
    to the reconciliation engine, which reports the offending reference.
    """

    if not isinstance(raw_items, (list, tuple)):
        raise ValidationError("bienes must be a list of {asset, amount} entries")

    items: List[LineItem] = []
    for entry in raw_items:
        if isinstance(entry, LineItem):
            items.append(LineItem(asset_id=entry.asset_id, amount=require_positive(entry.amount, "amount")))
            continue
        if not isinstance(entry, Mapping):
            raise ValidationError("Each line item must provide an asset and an amount")
        asset_id = require_text(entry.get("asset"), "asset")
        items.append(LineItem(asset_id=asset_id, amount=require_positive(entry.get("amount"), "amount")))
    return tuple(items)
