"""Typed failures raised by the order services.

Every error carries a ``code`` for API payloads; views map the class to an
HTTP status.
"""
from __future__ import annotations


class OrderError(Exception):
    """Raised when an order operation fails."""

    def __init__(self, message: str, code: str = "order_error"):
        self.message = message
        self.code = code
        super().__init__(message)


class NotFound(OrderError):
    def __init__(self, message: str, code: str = "not_found"):
        super().__init__(message, code)


class Forbidden(OrderError):
    def __init__(self, message: str = "Forbidden.", code: str = "forbidden"):
        super().__init__(message, code)


class PreconditionFailed(OrderError):
    def __init__(self, message: str, code: str = "invalid_status"):
        super().__init__(message, code)


class ValidationFailed(OrderError):
    def __init__(self, message: str, code: str = "validation_error", field: str | None = None):
        self.field = field
        super().__init__(message, code)


class InsufficientStock(OrderError):
    """A stock counter cannot cover the requested quantity."""

    def __init__(
        self,
        product_id: int,
        requested: int,
        available: int,
        message: str | None = None,
        code: str = "insufficient_stock",
    ):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        self.deficit = max(0, requested - max(0, available))
        if message is None:
            message = (
                f"Insufficient stock for product {product_id}: "
                f"requested {requested}, available {available}."
            )
        super().__init__(message, code)


class ConcurrencyConflict(OrderError):
    """The record changed between read and write."""

    def __init__(self, model_name: str, record_id, message: str | None = None):
        self.model_name = model_name
        self.record_id = record_id
        if message is None:
            message = (
                f"{model_name} {record_id} was modified by another transaction. "
                "Please refresh and try again."
            )
        super().__init__(message, "concurrency_conflict")
