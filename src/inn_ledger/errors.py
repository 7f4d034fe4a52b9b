"""Exception hierarchy for the inn ledger.

Every error raised by the business layer derives from :class:`InnLedgerError`
and carries the HTTP-like ``status`` that the request handlers answer with.
Input errors map to 400, referential and business-rule errors to 422, missing
records to 404, and storage failures to 500.
"""

from __future__ import annotations


class InnLedgerError(Exception):
    """Base class for every error surfaced by the ledger core."""

    status = 500


class MissingFieldError(InnLedgerError):
    """Raised when a request lacks a mandatory field such as the counterparty."""

    status = 400


class ValidationError(InnLedgerError, ValueError):
    """Raised when a field value breaks a record constraint."""

    status = 400


class BusinessRuleViolation(InnLedgerError):
    """Raised when a requested operation violates a domain constraint."""

    status = 422


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a transaction references a record that does not exist."""


class CounterpartyNotRegistered(MissingReferenceError):
    """Raised when the trader or hunter of a transaction cannot be resolved."""

    def __init__(self, reference: str, kind: str) -> None:
        super().__init__(f"No {kind} registered with id '{reference}'")
        self.reference = reference
        self.kind = kind


class AssetNotFound(MissingReferenceError):
    """Raised when a line item references an unknown asset."""

    def __init__(self, reference: str) -> None:
        super().__init__(f"Asset with id '{reference}' not found")
        self.reference = reference


class DuplicateAssetError(BusinessRuleViolation):
    """Raised when one asset appears in more than one line item."""

    def __init__(self, reference: str) -> None:
        super().__init__(f"Asset '{reference}' appears more than once in the transaction")
        self.reference = reference


class InsufficientStockError(BusinessRuleViolation):
    """Raised when a stock change would drive an asset amount below zero."""

    def __init__(self, reference: str, available, requested) -> None:
        super().__init__(
            f"Not enough stock of asset '{reference}': {available} available, {requested} requested"
        )
        self.reference = reference
        self.available = available
        self.requested = requested


class DuplicateRecordError(BusinessRuleViolation):
    """Raised when a unique field (trader or asset name) is already taken."""


class NotFoundError(InnLedgerError):
    """Raised when an addressed record does not exist."""

    status = 404


class InternalError(InnLedgerError):
    """Raised when the underlying store fails."""

    status = 500


class StoreTimeoutError(InternalError):
    """Raised when a lock on the store cannot be acquired in time."""


__all__ = [
    "InnLedgerError",
    "MissingFieldError",
    "ValidationError",
    "BusinessRuleViolation",
    "MissingReferenceError",
    "CounterpartyNotRegistered",
    "AssetNotFound",
    "DuplicateAssetError",
    "InsufficientStockError",
    "DuplicateRecordError",
    "NotFoundError",
    "InternalError",
    "StoreTimeoutError",
]
