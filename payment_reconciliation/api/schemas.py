"""
Pydantic schemas for API request/response models.

Bodies are camelCase on the wire; fields are snake_case in Python.
"""
from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from payment_reconciliation.core.reconciliation import (
    OrderStatus,
    PaymentStatus,
    SideEffect,
    as_utc,
)
from payment_reconciliation.database.models import Order, PaymentTransaction


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class PaymentTransactionSchema(CamelModel):
    """Latest payment transaction; channel fields are passed through verbatim."""

    id: int
    provider: str
    payment_type: str
    channel: Optional[str] = None
    transaction_id: Optional[str] = None
    status: PaymentStatus
    amount: float
    va_number: Optional[str] = None
    va_bank: Optional[str] = None
    qr_string: Optional[str] = None
    qr_image_url: Optional[str] = None
    payment_url: Optional[str] = None
    instructions: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: datetime

    @field_validator("expires_at", "created_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class OrderResponse(CamelModel):
    """Order plus latest transaction snapshot."""

    order_number: str
    status: OrderStatus
    payment_status: PaymentStatus
    payment_method: str
    total: float
    currency: str
    transaction_id: Optional[str] = None
    notes: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    payment_transaction: Optional[PaymentTransactionSchema] = None
    time_remaining_seconds: Optional[float] = Field(
        default=None, description="Seconds left to pay; null when no countdown applies"
    )

    @field_validator("paid_at", "created_at", "updated_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @classmethod
    def from_order(
        cls, order: Order, time_remaining_seconds: Optional[float] = None
    ) -> "OrderResponse":
        transaction: Optional[PaymentTransaction] = order.latest_transaction
        return cls(
            order_number=order.order_number,
            status=OrderStatus(order.status),
            payment_status=PaymentStatus(order.payment_status),
            payment_method=order.payment_method,
            total=float(order.total),
            currency=order.currency,
            transaction_id=order.transaction_id,
            notes=order.notes,
            paid_at=order.paid_at,
            created_at=order.created_at,
            updated_at=order.updated_at,
            payment_transaction=(
                PaymentTransactionSchema.model_validate(transaction) if transaction else None
            ),
            time_remaining_seconds=time_remaining_seconds,
        )


class SyncResponse(CamelModel):
    """Result of a manual payment sync."""

    synced: bool = Field(..., description="Whether this call changed the stored order")
    payment_status: PaymentStatus
    side_effect: SideEffect
    order: OrderResponse


class CancelOrderRequest(CamelModel):
    reason: Literal["expired", "customer"] = Field(
        default="expired", description="Why the order is being cancelled"
    )


class AdminOrderUpdateRequest(CamelModel):
    """Fulfilment-axis update; payment status is not touched."""

    status: Optional[OrderStatus] = None
    notes: Optional[str] = Field(default=None, max_length=2000)


class AdminPaymentUpdateRequest(CamelModel):
    """Manual payment override, allowed for offline-settled orders only."""

    payment_status: PaymentStatus
    transaction_id: Optional[str] = Field(default=None, max_length=255)


class PaymentTimeoutResponse(BaseModel):
    success: bool = True
    data: int = Field(..., description="Payment timeout in minutes")


class WebhookResponse(CamelModel):
    success: bool
    status: str
    payment_status: Optional[PaymentStatus] = None
    side_effect: Optional[SideEffect] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str
    checks: Optional[Dict[str, Any]] = None
    message: Optional[str] = None


class ErrorResponse(BaseModel):
    """Response schema for domain errors."""

    success: bool = False
    error: str
    code: str
