"""
Domain exceptions for the reconciliation service layer.

The pure core never raises; these are raised by the service layer and
mapped to HTTP status codes by the API.
"""
from typing import Any, Dict, Optional


class ReconciliationError(Exception):
    """Base exception for reconciliation service errors."""

    http_status = 500
    error_code = "reconciliation_error"

    def __init__(self, message: str, order_number: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.order_number = order_number

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        return {"success": False, "error": self.message, "code": self.error_code}


class OrderNotFoundError(ReconciliationError):
    """Raised when no order matches the given order number."""

    http_status = 404
    error_code = "order_not_found"


class TransitionRejectedError(ReconciliationError):
    """Raised when the core refuses a requested transition."""

    http_status = 409
    error_code = "transition_rejected"


class ManualOverrideForbiddenError(ReconciliationError):
    """Raised when an administrator tries to force a gateway-managed payment."""

    http_status = 403
    error_code = "manual_override_forbidden"


class SyncUnavailableError(ReconciliationError):
    """Raised when an order has no gateway transaction to sync against."""

    http_status = 409
    error_code = "sync_unavailable"


class GatewaySyncError(ReconciliationError):
    """Raised when the gateway could not be queried; stored state is untouched."""

    http_status = 502
    error_code = "gateway_unavailable"
