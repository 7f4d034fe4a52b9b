"""Locks and compensating-action logs for multi-step ledger mutations.

A transaction mutation touches several sheets (the transaction, its line
items, and every referenced asset). :class:`UnitOfWork` records an undo action
after each completed step and replays them in reverse when a later step
fails, so the workbook returns to the last valid state. :class:`LockRegistry`
serialises concurrent mutations of the same asset and of the workbook itself;
every acquisition is bounded by a timeout and fails closed.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterable, Iterator, List, Tuple

from . import log
from .errors import StoreTimeoutError


class LockRegistry:
    """Hand out one lock per asset identifier plus a workbook-wide lock."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._asset_locks: Dict[str, threading.Lock] = {}
        self._workbook_lock = threading.RLock()

    def _lock_for(self, asset_id: str) -> threading.Lock:
        with self._guard:
            lock = self._asset_locks.get(asset_id)
            if lock is None:
                lock = threading.Lock()
                self._asset_locks[asset_id] = lock
            return lock

    @contextmanager
    def hold_assets(self, asset_ids: Iterable[str], *, timeout: float) -> Iterator[None]:
        """Hold the locks of ``asset_ids`` for the duration of the block.

        Locks are taken in sorted identifier order so two mutations sharing
        assets can never wait on each other in a cycle.

        Raises:
            StoreTimeoutError: If any lock is not obtained within ``timeout``
                seconds. Locks already taken are released first.
        """

        acquired: List[threading.Lock] = []
        try:
            for asset_id in sorted(set(asset_ids)):
                lock = self._lock_for(asset_id)
                if not lock.acquire(timeout=timeout):
                    log.error("Timed out after %ss waiting for asset '%s'", timeout, asset_id)
                    raise StoreTimeoutError(f"Timed out waiting for asset '{asset_id}'")
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    @contextmanager
    def hold_workbook(self, *, timeout: float) -> Iterator[None]:
        """Hold the re-entrant workbook lock for the duration of the block."""

        if not self._workbook_lock.acquire(timeout=timeout):
            log.error("Timed out after %ss waiting for the workbook", timeout)
            raise StoreTimeoutError("Timed out waiting for the workbook")
        try:
            yield
        finally:
            self._workbook_lock.release()


class UnitOfWork:
    """Collect undo actions and replay them in reverse if the block fails.

    Usage::

        with UnitOfWork("create T123") as uow:
            insert(...)
            uow.on_rollback("remove T123", lambda: remove(...))
            apply_stock(...)

    The original exception always propagates after the rollback.
    """

    def __init__(self, label: str) -> None:
        self.label = label
        self._undo: List[Tuple[str, Callable[[], None]]] = []

    def on_rollback(self, description: str, action: Callable[[], None]) -> None:
        self._undo.append((description, action))

    @property
    def pending(self) -> int:
        return len(self._undo)

    def __enter__(self) -> "UnitOfWork":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            self._undo.clear()
            return False

        log.warning("Rolling back '%s' (%d steps) after %s: %s", self.label, len(self._undo), exc_type.__name__, exc)
        while self._undo:
            description, action = self._undo.pop()
            try:
                action()
            except Exception:
                # Keep unwinding; the triggering error is what the caller sees.
                log.exception("Compensation '%s' failed while rolling back '%s'", description, self.label)
        return False
