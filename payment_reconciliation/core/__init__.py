"""Core reconciliation logic for order payments."""
from .exceptions import (
    GatewaySyncError,
    ManualOverrideForbiddenError,
    OrderNotFoundError,
    ReconciliationError,
    SyncUnavailableError,
    TransitionRejectedError,
)
from .reconciliation import (
    Observation,
    ObservationSource,
    OrderPaymentState,
    OrderStatus,
    PaymentStatus,
    ReconcileResult,
    SideEffect,
    reconcile,
)

__all__ = [
    "GatewaySyncError",
    "ManualOverrideForbiddenError",
    "Observation",
    "ObservationSource",
    "OrderNotFoundError",
    "OrderPaymentState",
    "OrderStatus",
    "PaymentStatus",
    "ReconcileResult",
    "ReconciliationError",
    "SideEffect",
    "SyncUnavailableError",
    "TransitionRejectedError",
    "reconcile",
]
