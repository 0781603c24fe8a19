"""
Typed errors raised by the stock ledger and the sync engine.

Every error carries a machine-readable ``code``, the HTTP status the API maps
it to, whether a retry can help, and structured ``details``. Callers branch
on the class, never on the message.

    StockError
    +-- ValidationError          VALIDATION_ERROR       400
    +-- NotFoundError            NOT_FOUND              404
    +-- InsufficientStockError   INSUFFICIENT_STOCK     409
    +-- ConcurrencyConflict      CONCURRENCY_CONFLICT   409
    +-- LedgerImmutableError     LEDGER_IMMUTABLE       409
    +-- RunCancelledError        RUN_CANCELLED          409
    +-- AdapterError
        +-- AuthError            AUTH_ERROR             401
        +-- FormatError          FORMAT_ERROR           422
        +-- NetworkError         NETWORK_ERROR          502  (retryable)
        +-- RemoteRequestError   REMOTE_REQUEST_ERROR   502

A tracked-inventory skip is not an error; the adjustment engine returns a
result with ``skipped=True`` instead.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class StockError(Exception):
    code: str = "STOCK_ERROR"
    status_code: int = 400
    retryable: bool = False

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(StockError):
    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(StockError):
    code = "NOT_FOUND"
    status_code = 404


class InsufficientStockError(StockError):
    code = "INSUFFICIENT_STOCK"
    status_code = 409

    def __init__(self, *, item_id: int, sku: Optional[str], available: int, requested: int):
        super().__init__(
            f"Insufficient inventory for item {sku or item_id}. "
            f"Available: {available}, Requested: {requested}",
            details={"item_id": item_id, "sku": sku, "available": available, "requested": requested},
        )
        self.item_id = item_id
        self.available = available
        self.requested = requested


class ConcurrencyConflict(StockError):
    code = "CONCURRENCY_CONFLICT"
    status_code = 409
    retryable = True


class LedgerImmutableError(StockError):
    code = "LEDGER_IMMUTABLE"
    status_code = 409


class RunCancelledError(StockError):
    code = "RUN_CANCELLED"
    status_code = 409


class AdapterError(StockError):
    code = "ADAPTER_ERROR"
    status_code = 502


class AuthError(AdapterError):
    code = "AUTH_ERROR"
    status_code = 401


class FormatError(AdapterError):
    code = "FORMAT_ERROR"
    status_code = 422


class NetworkError(AdapterError):
    code = "NETWORK_ERROR"
    status_code = 502
    retryable = True


class RemoteRequestError(AdapterError):
    code = "REMOTE_REQUEST_ERROR"
    status_code = 502
