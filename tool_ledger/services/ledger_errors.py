from __future__ import annotations

from typing import Any


class LedgerError(RuntimeError):
    code = "LedgerError"
    status_code = 400
    retryable = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": False,
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        payload.update(self.details)
        return payload


class LedgerValidationError(LedgerError):
    code = "ValidationError"


class InvalidQuantity(LedgerValidationError):
    code = "InvalidQuantity"


class NotFound(LedgerError):
    code = "NotFound"
    status_code = 404


class Conflict(LedgerError):
    code = "Conflict"
    status_code = 409


class InsufficientStock(Conflict):
    code = "InsufficientStock"

    def __init__(self, tool_id: int, available: int, requested: int, message: str | None = None) -> None:
        super().__init__(
            message or f"Only {available} available. Cannot take {requested}.",
            toolID=tool_id,
            available=available,
            requested=requested,
        )


class ConcurrentUpdate(Conflict):
    code = "ConcurrentUpdate"


class IdempotencyConflict(Conflict):
    code = "IdempotencyConflict"


class Busy(LedgerError):
    code = "Busy"
    status_code = 503
    retryable = True


class StorageUnavailable(Busy):
    code = "StorageUnavailable"


class InvariantViolation(LedgerError):
    code = "InvariantViolation"
    status_code = 500
