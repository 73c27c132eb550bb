"""
Error taxonomy for the Fulfillment service.

Raised by the workflow, ledger and CRUD layers when a request cannot be
honoured. The API layer translates each kind into a distinct HTTP status
and error code.
"""
from typing import Any, Dict, Optional


class FulfillmentError(Exception):
    """Base class for every error the core reports to its caller."""
    code = "fulfillment_error"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.message, **self.details}


class ValidationError(FulfillmentError):
    """Malformed input; a caller bug that should not be retried."""
    code = "validation_error"
    status_code = 400


class PreconditionError(FulfillmentError):
    """The order is not in a state (or lacks the data) the transition needs."""
    code = "precondition_failed"
    status_code = 412


class ConflictError(FulfillmentError):
    """Another transition changed the order first; re-read and retry."""
    code = "conflict"
    status_code = 409


class NotFoundError(FulfillmentError):
    """A referenced order, product, warehouse or agent does not exist."""
    code = "not_found"
    status_code = 404


class PermissionDeniedError(FulfillmentError):
    """The acting user's role or ownership does not allow the operation."""
    code = "permission_denied"
    status_code = 403


class InsufficientStockError(FulfillmentError):
    """Aggregate stock for a product cannot cover the requested quantity."""
    code = "insufficient_stock"
    status_code = 409

    def __init__(self, product_id: int, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        self.shortfall = requested - available
        super().__init__(
            f"Insufficient stock for product {product_id}. "
            f"Available: {available}, Required: {requested}",
            details={
                "product_id": product_id,
                "requested": requested,
                "available": available,
                "shortfall": self.shortfall,
            },
        )
