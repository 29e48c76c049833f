"""
Domain errors

Every error carries the HTTP status it maps to; main.py renders them as
{"success": false, "error": message}.
"""
from typing import Optional


class StoreError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(StoreError):
    status_code = 400


class ProductUnavailable(StoreError):
    status_code = 400

    def __init__(self, product_name: str):
        super().__init__(f"Product {product_name} is no longer available")
        self.product_name = product_name


class InsufficientStock(StoreError):
    status_code = 400

    def __init__(self, product_name: str, available: int):
        super().__init__(f"Insufficient stock for {product_name} (available: {available})")
        self.product_name = product_name
        self.available = available


class PriceMismatch(StoreError):
    status_code = 409

    def __init__(self, product_name: str, submitted: int, current: int):
        super().__init__(f"Price of {product_name} changed from {submitted} to {current}")
        self.product_name = product_name
        self.submitted = submitted
        self.current = current


class DuplicateOrderNumber(StoreError):
    status_code = 503


class IdempotencyConflict(StoreError):
    status_code = 409


class SignatureInvalid(StoreError):
    status_code = 400

    def __init__(self, message: str = "Invalid signature"):
        super().__init__(message)


class OrderNotFound(StoreError):
    status_code = 404

    def __init__(self, reference: Optional[str] = None):
        super().__init__("Order not found")
        self.reference = reference


class NotFound(StoreError):
    status_code = 404


class Conflict(StoreError):
    status_code = 409


class InvalidTransition(StoreError):
    status_code = 409


class PartialCommitFailure(StoreError):
    """A rollback step failed; stock and orders may disagree until repaired."""
    status_code = 500


class ConfigurationError(StoreError):
    status_code = 500
