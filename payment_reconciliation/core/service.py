"""
Service layer: runs observations through the reconciliation core and
persists the resulting side effects.

Every entry point (webhook, sync, expiry sweep, customer cancel, admin
override) funnels through ``ReconciliationService.apply_observation`` so
the core stays the single authority for payment transitions.
"""
import json
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from payment_reconciliation.config import Settings, get_settings
from payment_reconciliation.core.exceptions import (
    ManualOverrideForbiddenError,
    TransitionRejectedError,
)
from payment_reconciliation.core.expiry import compute_deadline, has_deadline, seconds_until
from payment_reconciliation.core.reconciliation import (
    Observation,
    ObservationSource,
    OrderPaymentState,
    OrderStatus,
    PaymentStatus,
    ReconcileResult,
    SideEffect,
    reconcile,
    utcnow,
)
from payment_reconciliation.core.repository import OrderRepository
from payment_reconciliation.database.models import Order
from payment_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PAYMENT_TIMEOUT_KEY = "paymentTimeoutMinutes"


@dataclass
class ObservationOutcome:
    """What happened to an order after one observation."""

    order: Order
    result: ReconcileResult
    side_effect: SideEffect  # as actually persisted; NONE if a concurrent writer won


class ReconciliationService:
    """Loads orders, reconciles observations, and persists side effects."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Callable[[], datetime] = utcnow,
        settings: Optional[Settings] = None,
    ) -> None:
        self.db = db
        self.repo = OrderRepository(db)
        self.clock = clock
        self.settings = settings or get_settings()

    async def get_order(self, order_number: str) -> Order:
        return await self.repo.require(order_number, refresh=True)

    async def get_payment_timeout(self) -> int:
        """
        Payment timeout in minutes.

        Read from the ``paymentTimeoutMinutes`` setting; missing, malformed
        or sub-minute values fall back to the configured default.
        """
        default = self.settings.payment_timeout_minutes
        raw = await self.repo.get_setting(PAYMENT_TIMEOUT_KEY)
        if raw is None:
            return default
        try:
            minutes = int(json.loads(raw))
        except (TypeError, ValueError):
            logger.warning("invalid_payment_timeout_setting", value=raw)
            return default
        return minutes if minutes >= 1 else default

    async def set_payment_timeout(self, minutes: int) -> int:
        await self.repo.put_setting(PAYMENT_TIMEOUT_KEY, json.dumps(minutes), category="payment")
        await self.db.commit()
        return await self.get_payment_timeout()

    @staticmethod
    def deadline_for(order: Order, timeout_minutes: int) -> Optional[datetime]:
        """Payment deadline, or None for channels without one."""
        transaction = order.latest_transaction
        if transaction is None or not has_deadline(transaction.payment_type):
            return None
        return compute_deadline(order.created_at, timeout_minutes, transaction.expires_at)

    def state_of(self, order: Order, timeout_minutes: int) -> OrderPaymentState:
        return OrderPaymentState(
            payment_status=PaymentStatus(order.payment_status),
            order_status=OrderStatus(order.status),
            expires_at=self.deadline_for(order, timeout_minutes),
            paid_at=order.paid_at,
        )

    def time_remaining(self, order: Order, timeout_minutes: int) -> Optional[float]:
        """Seconds left to pay, or None when no countdown applies."""
        state = self.state_of(order, timeout_minutes)
        if state.expires_at is None or state.is_terminal:
            return None
        return seconds_until(state.expires_at, self.clock())

    async def apply_observation(
        self,
        order_number: str,
        observed: Observation,
        gateway_transaction_id: Optional[str] = None,
        raw_response: Optional[Dict[str, Any]] = None,
    ) -> ObservationOutcome:
        """
        Reconcile one observation against the stored order and persist it.

        Args:
            order_number: Order to reconcile
            observed: Observed status and its source
            gateway_transaction_id: Transaction id reported with the observation
            raw_response: Gateway body to store on the transaction snapshot

        Returns:
            ObservationOutcome: Fresh order plus the side effect applied
        """
        correlation_id = uuid.uuid4()
        with structlog.contextvars.bound_contextvars(
            order_number=order_number,
            source=observed.source.value,
            correlation_id=str(correlation_id),
        ):
            order = await self.repo.require(order_number, refresh=True)
            timeout = await self.get_payment_timeout()
            current = self.state_of(order, timeout)

            if not observed.is_recognized:
                metrics.record_unrecognized_status(observed.source.value)
                logger.warning("unrecognized_payment_status", observed_status=str(observed.status))

            result = reconcile(current, observed, self.clock())
            applied = SideEffect.NONE
            if result.changed:
                persisted = await self.repo.apply_side_effect(
                    order,
                    result,
                    observed,
                    correlation_id,
                    gateway_transaction_id=gateway_transaction_id,
                    raw_response=raw_response,
                )
                if persisted:
                    applied = result.side_effect
                    metrics.record_side_effect(observed.source.value, applied.value)
                    logger.info(
                        "payment_side_effect_applied",
                        side_effect=applied.value,
                        payment_status=result.state.payment_status.value,
                        order_status=result.state.order_status.value,
                    )
                else:
                    metrics.record_superseded(observed.source.value, result.side_effect.value)
                await self.db.commit()

            order = await self.repo.require(order_number, refresh=True)
            return ObservationOutcome(order=order, result=result, side_effect=applied)

    async def cancel_order(self, order_number: str, reason: str = "expired") -> Order:
        """
        Cancel an order.

        ``expired`` proposes expiry to the core (rejected if the order is
        paid or not yet due); ``customer`` cancels an unpaid order that is
        still PENDING or PROCESSING.

        Raises:
            OrderNotFoundError: Unknown order
            TransitionRejectedError: The cancellation is not allowed
        """
        order = await self.repo.require(order_number, refresh=True)

        if reason == "customer":
            applied = await self.repo.cancel_by_customer(order, uuid.uuid4())
            if not applied:
                raise TransitionRejectedError(
                    f"Order {order_number} can no longer be cancelled", order_number
                )
            await self.db.commit()
            logger.info("order_cancelled_by_customer", order_number=order_number)
            return await self.repo.require(order_number, refresh=True)

        if order.status == OrderStatus.CANCELLED.value and order.payment_status == PaymentStatus.PENDING.value:
            return order

        outcome = await self.apply_observation(
            order_number, Observation(ObservationSource.EXPIRY)
        )
        if outcome.side_effect == SideEffect.MARK_EXPIRED:
            return outcome.order
        if (
            outcome.order.status == OrderStatus.CANCELLED.value
            and outcome.order.payment_status == PaymentStatus.PENDING.value
        ):
            # Another writer expired it first
            return outcome.order
        raise TransitionRejectedError(
            f"Order {order_number} is not eligible for expiry", order_number
        )

    async def update_order(
        self,
        order_number: str,
        status: Optional[OrderStatus] = None,
        notes: Optional[str] = None,
    ) -> Order:
        """Administrative update of the fulfilment axis."""
        order = await self.repo.require(order_number)
        await self.repo.update_fulfilment(
            order, status=status.value if status is not None else None, notes=notes
        )
        await self.db.commit()
        logger.info(
            "order_updated_by_admin",
            order_number=order_number,
            status=status.value if status is not None else None,
        )
        return await self.repo.require(order_number, refresh=True)

    async def override_payment_status(
        self,
        order_number: str,
        payment_status: PaymentStatus,
        transaction_id: Optional[str] = None,
    ) -> Order:
        """
        Manually set the payment status of an offline-settled order.

        Raises:
            ManualOverrideForbiddenError: The order is settled by a gateway
            TransitionRejectedError: The core refused the transition
        """
        order = await self.repo.require(order_number, refresh=True)
        transaction = order.latest_transaction
        if transaction is not None and not transaction.is_offline:
            raise ManualOverrideForbiddenError(
                f"Payment of order {order_number} is managed by {transaction.provider}",
                order_number,
            )
        if order.payment_status == payment_status.value:
            return order

        outcome = await self.apply_observation(
            order_number,
            Observation(ObservationSource.ADMIN, payment_status.value, authorized=True),
            gateway_transaction_id=transaction_id,
        )
        if outcome.side_effect == SideEffect.NONE:
            raise TransitionRejectedError(
                f"Cannot move payment of order {order_number} from "
                f"{order.payment_status} to {payment_status.value}",
                order_number,
            )
        logger.info(
            "payment_overridden_by_admin",
            order_number=order_number,
            payment_status=payment_status.value,
        )
        return outcome.order
