"""SQLAlchemy database models for order payment reconciliation."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Order(Base):
    """
    Orders table.

    Carries two independent axes: fulfilment ``status`` and
    ``payment_status``. Payment columns are only ever written through
    conditional updates in ``core.repository``.
    """

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    order_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING", index=True)
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="PENDING", index=True
    )
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False, default="COD")
    total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="IDR")
    transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    payment_transactions: Mapped[List["PaymentTransaction"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by=lambda: (PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc()),
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("total >= 0", name="non_negative_total"),
        CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'SHIPPED', 'DELIVERED', 'CANCELLED', 'REFUNDED')",
            name="valid_order_status",
        ),
        CheckConstraint(
            "payment_status IN ('PENDING', 'PAID', 'FAILED', 'REFUNDED')",
            name="valid_payment_status",
        ),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_orders_payment_status_created", "payment_status", "created_at"),
    )

    @property
    def latest_transaction(self) -> "PaymentTransaction | None":
        return self.payment_transactions[0] if self.payment_transactions else None

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(order_number={self.order_number}, status={self.status}, "
            f"payment_status={self.payment_status})>"
        )


class PaymentTransaction(Base):
    """
    Payment transaction snapshots owned by an order.

    Channel fields (VA number, QR payload, instructions) are opaque and
    stored exactly as the gateway returned them.
    """

    __tablename__ = "payment_transactions"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="OFFLINE")
    payment_type: Mapped[str] = mapped_column(String(32), nullable=False)
    channel: Mapped[str | None] = mapped_column(String(32), nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    va_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    va_bank: Mapped[str | None] = mapped_column(String(32), nullable=True)
    qr_string: Mapped[str | None] = mapped_column(Text, nullable=True)
    qr_image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    instructions: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    raw_response: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    order: Mapped[Order] = relationship(back_populates="payment_transactions")

    __table_args__ = (
        CheckConstraint(
            "payment_type IN ('qris', 'bank_transfer', 'cod', 'credit_card')",
            name="valid_payment_type",
        ),
    )

    @property
    def is_offline(self) -> bool:
        return self.provider == "OFFLINE"

    def __repr__(self) -> str:
        """String representation of PaymentTransaction."""
        return (
            f"<PaymentTransaction(id={self.id}, provider={self.provider}, "
            f"type={self.payment_type}, status={self.status})>"
        )


class PaymentEvent(Base):
    """
    Payment events audit trail table.

    One row per applied side effect, written in the same transaction as
    the conditional update it records. Immutable once written.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    correlation_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, index=True
    )

    __table_args__ = (Index("idx_payment_events_type", "event_type"),)

    def __repr__(self) -> str:
        """String representation of PaymentEvent."""
        return (
            f"<PaymentEvent(id={self.id}, order_id={self.order_id}, "
            f"type={self.event_type})>"
        )


class Setting(Base):
    """Key/value store settings; values are JSON-encoded text."""

    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="general")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    def __repr__(self) -> str:
        return f"<Setting(key={self.key}, value={self.value})>"
