"""Integrations with the payment gateway and the storefront API."""
from .midtrans_client import (
    CircuitBreaker,
    GatewayError,
    GatewayErrorType,
    GatewayStatus,
    MidtransClient,
    map_transaction_status,
)

__all__ = [
    "CircuitBreaker",
    "GatewayError",
    "GatewayErrorType",
    "GatewayStatus",
    "MidtransClient",
    "map_transaction_status",
]
