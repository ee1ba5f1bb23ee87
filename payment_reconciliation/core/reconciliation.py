"""
Reconciliation core: the single authority for payment status transitions.

Merges observations from every source (webhook, poll, sync, expiry timer,
administrator) into one monotonic order lifecycle. The function is pure:
it returns the next state and the side effect the caller must persist.

Rule priority:
1. PAID (and REFUNDED) are sinks; only an authorized refund leaves PAID
2. A PAID observation wins over everything else, including a due expiry
3. A due expiry cancels an order whose payment is still PENDING
4. A FAILED observation fails a PENDING payment
5. Anything else is a no-op
"""
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class PaymentStatus(str, Enum):
    """Payment axis of an order."""

    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"

    @classmethod
    def parse(cls, value: Any) -> Optional["PaymentStatus"]:
        """Return the matching status, or None for unknown values."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None


class OrderStatus(str, Enum):
    """Fulfilment axis of an order."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class ObservationSource(str, Enum):
    """Where an observed status came from."""

    WEBHOOK = "webhook"
    POLL = "poll"
    SYNC = "sync"
    EXPIRY = "expiry"
    ADMIN = "admin"


class SideEffect(str, Enum):
    """Persistence instruction returned by the core."""

    NONE = "NONE"
    MARK_PAID = "MARK_PAID"
    MARK_EXPIRED = "MARK_EXPIRED"
    MARK_FAILED = "MARK_FAILED"
    MARK_REFUNDED = "MARK_REFUNDED"

    @property
    def is_terminal(self) -> bool:
        """Whether this effect ends the open-payment phase of an order."""
        return self in (SideEffect.MARK_PAID, SideEffect.MARK_EXPIRED, SideEffect.MARK_FAILED)


@dataclass(frozen=True)
class OrderPaymentState:
    """What the core needs to know about an order."""

    payment_status: PaymentStatus
    order_status: OrderStatus = OrderStatus.PENDING
    expires_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    @property
    def is_cancelled(self) -> bool:
        return self.order_status == OrderStatus.CANCELLED

    @property
    def is_terminal(self) -> bool:
        """PAID, REFUNDED, FAILED and cancelled-while-pending are all terminal."""
        return self.payment_status != PaymentStatus.PENDING or self.is_cancelled


@dataclass(frozen=True)
class Observation:
    """
    A status value plus its source.

    ``status`` is kept raw so that unknown gateway values reach the core
    and are rejected there as no-ops. Expiry observations carry no status.
    """

    source: ObservationSource
    status: Any = None
    authorized: bool = False

    @property
    def payment_status(self) -> Optional[PaymentStatus]:
        return PaymentStatus.parse(self.status)

    @property
    def is_recognized(self) -> bool:
        """False when a status was supplied but could not be parsed."""
        return self.status is None or self.payment_status is not None


@dataclass(frozen=True)
class ReconcileResult:
    """Next state plus the side effect that implements it."""

    state: OrderPaymentState
    side_effect: SideEffect

    @property
    def changed(self) -> bool:
        return self.side_effect != SideEffect.NONE


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Interpret naive datetimes as UTC so comparisons never raise."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def reconcile(
    current: OrderPaymentState, observed: Observation, now: datetime
) -> ReconcileResult:
    """
    Compute the next payment state for one observation.

    Args:
        current: Last known state of the order
        observed: Observed status and its source
        now: Wall clock, injected

    Returns:
        ReconcileResult: Next state and side effect (NONE when unchanged)
    """
    unchanged = ReconcileResult(current, SideEffect.NONE)
    status = observed.payment_status
    now = as_utc(now)

    if current.payment_status == PaymentStatus.PAID:
        if status == PaymentStatus.REFUNDED and observed.authorized:
            return ReconcileResult(
                replace(current, payment_status=PaymentStatus.REFUNDED),
                SideEffect.MARK_REFUNDED,
            )
        return unchanged

    if current.payment_status == PaymentStatus.REFUNDED:
        return unchanged

    if status == PaymentStatus.PAID:
        return ReconcileResult(
            replace(current, payment_status=PaymentStatus.PAID, paid_at=now),
            SideEffect.MARK_PAID,
        )

    if (
        observed.source == ObservationSource.EXPIRY
        and current.payment_status == PaymentStatus.PENDING
        and not current.is_cancelled
        and current.expires_at is not None
        and now >= as_utc(current.expires_at)
    ):
        return ReconcileResult(
            replace(current, order_status=OrderStatus.CANCELLED),
            SideEffect.MARK_EXPIRED,
        )

    if status == PaymentStatus.FAILED and current.payment_status == PaymentStatus.PENDING:
        return ReconcileResult(
            replace(current, payment_status=PaymentStatus.FAILED),
            SideEffect.MARK_FAILED,
        )

    return unchanged
