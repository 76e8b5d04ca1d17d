from __future__ import annotations

import logging
import os
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.orm import Session

from services.lending_errors import ConcurrencyConflict, LendingError, StoreUnavailable

LOGGER = logging.getLogger("equipment_lending.store")

RESERVATION_MAX_ATTEMPTS = int(os.environ.get("RESERVATION_MAX_ATTEMPTS") or "3")
RESERVATION_RETRY_BACKOFF_SECONDS = float(os.environ.get("RESERVATION_RETRY_BACKOFF_SECONDS") or "0.05")

_CONTENTION_SQLSTATES = {"40001", "40P01"}
_CONTENTION_MARKERS = (
    "deadlock",
    "could not serialize",
    "database is locked",
    "lock wait timeout",
    "(1205)",
)


class _LockEntry:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.holders = 0


_LOCKS_GUARD = threading.Lock()
# Only ids with a current holder or waiter have an entry.
_EQUIPMENT_LOCKS: dict[int, _LockEntry] = {}

T = TypeVar("T")


@contextmanager
def equipment_lock(equipment_id: int) -> Iterator[None]:
    """Serialize quantity changes for one equipment id within this process."""
    with _LOCKS_GUARD:
        entry = _EQUIPMENT_LOCKS.get(equipment_id)
        if entry is None:
            entry = _LockEntry()
            _EQUIPMENT_LOCKS[equipment_id] = entry
        entry.holders += 1
    try:
        with entry.lock:
            yield
    finally:
        with _LOCKS_GUARD:
            entry.holders -= 1
            if entry.holders == 0:
                del _EQUIPMENT_LOCKS[equipment_id]


def is_contention(exc: DBAPIError) -> bool:
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in _CONTENTION_SQLSTATES:
        return True
    message = str(orig if orig is not None else exc).lower()
    return any(marker in message for marker in _CONTENTION_MARKERS)


def run_atomic(db: Session, label: str, apply: Callable[[], T]) -> T:
    """Run ``apply`` and commit, retrying only on lock contention.

    Business errors roll back and propagate untouched. Contention is retried
    with exponential backoff and then surfaces as ConcurrencyConflict; any
    other store error surfaces as StoreUnavailable without a retry.
    """
    attempts = max(RESERVATION_MAX_ATTEMPTS, 1)
    for attempt in range(1, attempts + 1):
        try:
            result = apply()
            db.commit()
            return result
        except LendingError:
            db.rollback()
            raise
        except DBAPIError as exc:
            db.rollback()
            if not is_contention(exc):
                LOGGER.error("Store failure during %s: %s", label, exc)
                raise StoreUnavailable("The equipment store is unavailable.") from exc
            if attempt >= attempts:
                LOGGER.warning("Giving up %s after %s contended attempts", label, attempt)
                raise ConcurrencyConflict("The equipment is busy, please try again.") from exc
            delay = RESERVATION_RETRY_BACKOFF_SECONDS * (2 ** (attempt - 1))
            LOGGER.info("Contention during %s attempt=%s retry_in=%.3fs", label, attempt, delay)
            time.sleep(delay)
        except SQLAlchemyError as exc:
            db.rollback()
            LOGGER.error("Store failure during %s: %s", label, exc)
            raise StoreUnavailable("The equipment store is unavailable.") from exc
    raise ConcurrencyConflict("The equipment is busy, please try again.")
