from __future__ import annotations


class LendingError(RuntimeError):
    kind = "LendingError"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict:
        return {"error": self.message, "kind": self.kind}


class NotFound(LendingError):
    kind = "NotFound"
    status_code = 404


class WrongKind(LendingError):
    kind = "WrongKind"


class InvalidQuantity(LendingError):
    kind = "InvalidQuantity"


class InsufficientStock(LendingError):
    kind = "InsufficientStock"


class AlreadyReturned(LendingError):
    kind = "AlreadyReturned"


class WrongOperation(LendingError):
    kind = "WrongOperation"


class OverReturn(LendingError):
    kind = "OverReturn"


class ConcurrencyConflict(LendingError):
    """Transaction contention that outlasted the retry budget. Safe to retry."""

    kind = "ConcurrencyConflict"
    status_code = 409


class StoreUnavailable(LendingError):
    kind = "StoreUnavailable"
    status_code = 503


def require_positive_quantity(value, field: str = "quantity") -> int:
    # bool is an int subclass; True must not pass as 1.
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidQuantity(f"{field} must be a whole number.")
    if value <= 0:
        raise InvalidQuantity(f"{field} must be greater than 0.")
    return value


def require_non_negative_quantity(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidQuantity(f"{field} must be a whole number.")
    if value < 0:
        raise InvalidQuantity(f"{field} must not be negative.")
    return value
