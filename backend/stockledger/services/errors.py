# Overview: Typed errors raised by the ledger services and translated to HTTP by the routes.

from __future__ import annotations


class LedgerError(Exception):
    """Base class for every error the ledger core reports to its callers."""

    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": str(self), "type": type(self).__name__, **self.details}


class LedgerValidationError(LedgerError):
    """Malformed request: bad quantities, missing reasons, unknown reason tags."""
    status_code = 400


class NotFound(LedgerError):
    """Referenced sale, order, product or size does not exist."""
    status_code = 404


class InsufficientStock(LedgerError):
    """
    A batch would drive a row below zero.

    Expected business outcome (oversell attempt), not a fault. Reported for
    the first offending row in (product_id, size_id) order and never retried
    automatically.
    """
    status_code = 409

    def __init__(self, product_id: int, size_id: int, requested_delta: int, available: int):
        self.product_id = product_id
        self.size_id = size_id
        self.requested_delta = requested_delta
        self.available = available
        super().__init__(
            f"Insufficient stock for product {product_id} size {size_id}: "
            f"requested {requested_delta}, available {available}",
            details={
                "product_id": product_id,
                "size_id": size_id,
                "requested_delta": requested_delta,
                "available": available,
            },
        )


class InvalidTransition(LedgerError):
    """Order state machine violation (e.g. leaving a terminal state)."""
    status_code = 409

    def __init__(self, order_id: int, from_status: str, to_status: str, message: str | None = None):
        self.order_id = order_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            message or f"Order {order_id} cannot move from {from_status} to {to_status}",
            details={"order_id": order_id, "from_status": from_status, "to_status": to_status},
        )


class AlreadyCompleted(InvalidTransition):
    """A completion request found the order already completed; stock was not credited again."""

    def __init__(self, order_id: int):
        super().__init__(
            order_id,
            "completed",
            "completed",
            message=f"Order {order_id} is already completed",
        )


class LockTimeout(LedgerError):
    """
    Row locks could not be acquired within the configured bound.

    Nothing was applied, so the caller may safely retry the whole batch.
    """
    status_code = 503

    def __init__(self, key, timeout: float):
        self.key = key
        self.timeout = timeout
        super().__init__(
            f"Timed out after {timeout:g}s waiting for ledger lock {key}",
            details={"lock": list(key), "timeout_seconds": timeout, "retryable": True},
        )


class PersistenceFailure(LedgerError):
    """
    The batch could not be made durable together with its history.

    Fatal for the batch: the transaction was rolled back, no stock change is
    observable without its audit entries.
    """
    status_code = 500
