"""
Order persistence behind a narrow interface.

Every payment side effect is a single conditional UPDATE (compare-and-set
on the current payment status) so that concurrent writers (poll-driven
sync, manual sync, webhook handler, expiry sweep) can never lose an
update or revert PAID. No explicit locks are taken.
"""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from payment_reconciliation.core.exceptions import OrderNotFoundError
from payment_reconciliation.core.reconciliation import (
    Observation,
    OrderStatus,
    PaymentStatus,
    ReconcileResult,
    SideEffect,
    utcnow,
)
from payment_reconciliation.database.models import (
    Order,
    PaymentEvent,
    PaymentTransaction,
    Setting,
)

logger = structlog.get_logger(__name__)

# Opaque channel fields copied verbatim from gateway payloads
PASSTHROUGH_FIELDS = (
    "transaction_id",
    "va_number",
    "va_bank",
    "qr_string",
    "qr_image_url",
    "payment_url",
    "instructions",
    "expires_at",
    "raw_response",
)


def _json_safe(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if hasattr(value, "value"):
        return value.value
    return value


class OrderRepository:
    """Reads orders and applies side effects as atomic conditional writes."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, order_number: str, refresh: bool = False) -> Optional[Order]:
        """
        Load an order with its transactions.

        Args:
            order_number: External order identifier
            refresh: Overwrite any stale copy held in the identity map

        Returns:
            Optional[Order]: The order, or None
        """
        stmt = select(Order).where(Order.order_number == order_number)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def require(self, order_number: str, refresh: bool = False) -> Order:
        """Load an order or raise OrderNotFoundError."""
        order = await self.get(order_number, refresh=refresh)
        if order is None:
            raise OrderNotFoundError(f"Order {order_number} not found", order_number)
        return order

    async def create_order(
        self,
        order_number: str,
        total: Decimal | int | str,
        currency: str = "IDR",
        payment_method: str = "COD",
        transaction: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> Order:
        """
        Create an order in (PENDING, PENDING) with an optional transaction snapshot.

        Checkout itself lives outside this service; this is the seam it
        (and the test-suite) uses to hand orders over.
        """
        created_at = created_at or utcnow()
        order = Order(
            order_number=order_number,
            status=OrderStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
            payment_method=payment_method,
            total=Decimal(str(total)),
            currency=currency.upper(),
            created_at=created_at,
            updated_at=created_at,
        )
        if transaction is not None:
            fields = dict(transaction)
            fields.setdefault("amount", order.total)
            fields.setdefault("status", PaymentStatus.PENDING.value)
            order.payment_transactions.append(
                PaymentTransaction(created_at=created_at, updated_at=created_at, **fields)
            )
            order.transaction_id = fields.get("transaction_id")
        self.db.add(order)
        await self.db.flush()
        return order

    async def list_open_orders(
        self, payment_types: Iterable[str], limit: int = 500
    ) -> List[Order]:
        """Orders still awaiting payment whose latest transaction has one of the given types."""
        stmt = (
            select(Order)
            .join(PaymentTransaction, PaymentTransaction.order_id == Order.id)
            .where(
                Order.payment_status == PaymentStatus.PENDING.value,
                Order.status != OrderStatus.CANCELLED.value,
                PaymentTransaction.payment_type.in_(list(payment_types)),
            )
            .order_by(Order.created_at)
            .limit(limit)
            .distinct()
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def apply_side_effect(
        self,
        order: Order,
        result: ReconcileResult,
        observed: Observation,
        correlation_id: uuid.UUID,
        gateway_transaction_id: Optional[str] = None,
        raw_response: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Persist a side effect with a single compare-and-set UPDATE.

        Returns:
            bool: True if this call performed the transition, False if a
            concurrent writer got there first (or the effect is NONE)
        """
        effect = result.side_effect
        now = utcnow()
        values: Dict[str, Any] = {"updated_at": now}

        if effect == SideEffect.MARK_PAID:
            guard = and_(
                Order.payment_status.in_(
                    [PaymentStatus.PENDING.value, PaymentStatus.FAILED.value]
                ),
                Order.paid_at.is_(None),
            )
            values.update(payment_status=PaymentStatus.PAID.value, paid_at=result.state.paid_at)
            if gateway_transaction_id:
                values["transaction_id"] = gateway_transaction_id
        elif effect == SideEffect.MARK_EXPIRED:
            guard = and_(
                Order.payment_status == PaymentStatus.PENDING.value,
                Order.status != OrderStatus.CANCELLED.value,
            )
            values["status"] = OrderStatus.CANCELLED.value
        elif effect == SideEffect.MARK_FAILED:
            guard = Order.payment_status == PaymentStatus.PENDING.value
            values["payment_status"] = PaymentStatus.FAILED.value
        elif effect == SideEffect.MARK_REFUNDED:
            guard = Order.payment_status == PaymentStatus.PAID.value
            values["payment_status"] = PaymentStatus.REFUNDED.value
        else:
            return False

        stmt = (
            update(Order)
            .where(Order.id == order.id, guard)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        cursor = await self.db.execute(stmt)
        if cursor.rowcount != 1:
            logger.info(
                "side_effect_superseded",
                order_number=order.order_number,
                side_effect=effect.value,
                source=observed.source.value,
            )
            return False

        await self._mirror_transaction(order, result, gateway_transaction_id, raw_response)
        self.db.add(
            PaymentEvent(
                order_id=order.id,
                event_type=f"payment.{effect.value.lower()}",
                event_data={
                    "source": observed.source.value,
                    "observed_status": _json_safe(observed.status),
                    "previous_payment_status": order.payment_status,
                    "previous_order_status": order.status,
                    "payment_status": result.state.payment_status.value,
                    "order_status": result.state.order_status.value,
                    "paid_at": _json_safe(result.state.paid_at),
                },
                correlation_id=correlation_id,
                created_at=now,
            )
        )
        await self.db.flush()
        return True

    async def _mirror_transaction(
        self,
        order: Order,
        result: ReconcileResult,
        gateway_transaction_id: Optional[str],
        raw_response: Optional[Dict[str, Any]],
    ) -> None:
        """Bring the latest transaction snapshot in line with the order."""
        transaction = order.latest_transaction
        if transaction is None:
            return
        values: Dict[str, Any] = {
            "status": result.state.payment_status.value,
            "updated_at": utcnow(),
        }
        if gateway_transaction_id:
            values["transaction_id"] = gateway_transaction_id
        if raw_response is not None:
            values["raw_response"] = raw_response
        await self.db.execute(
            update(PaymentTransaction)
            .where(PaymentTransaction.id == transaction.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def update_transaction_snapshot(
        self, order: Order, fields: Dict[str, Any]
    ) -> None:
        """
        Copy opaque channel fields onto the latest transaction.

        Only non-empty values overwrite what is stored; status columns are
        never touched here.
        """
        transaction = order.latest_transaction
        if transaction is None:
            return
        changed = False
        for name in PASSTHROUGH_FIELDS:
            value = fields.get(name)
            if value:
                setattr(transaction, name, value)
                changed = True
        if changed:
            transaction.updated_at = utcnow()
            await self.db.flush()

    async def update_fulfilment(
        self, order: Order, status: Optional[str] = None, notes: Optional[str] = None
    ) -> None:
        """Administrative update of the fulfilment axis; payment columns untouched."""
        values: Dict[str, Any] = {"updated_at": utcnow()}
        if status is not None:
            values["status"] = status
        if notes is not None:
            values["notes"] = notes
        await self.db.execute(
            update(Order)
            .where(Order.id == order.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def cancel_by_customer(self, order: Order, correlation_id: uuid.UUID) -> bool:
        """Cancel an unpaid order that has not shipped yet."""
        cursor = await self.db.execute(
            update(Order)
            .where(
                Order.id == order.id,
                Order.status.in_([OrderStatus.PENDING.value, OrderStatus.PROCESSING.value]),
                Order.payment_status.in_(
                    [PaymentStatus.PENDING.value, PaymentStatus.FAILED.value]
                ),
            )
            .values(status=OrderStatus.CANCELLED.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if cursor.rowcount != 1:
            return False
        self.db.add(
            PaymentEvent(
                order_id=order.id,
                event_type="order.cancelled",
                event_data={"reason": "customer", "previous_order_status": order.status},
                correlation_id=correlation_id,
                created_at=utcnow(),
            )
        )
        await self.db.flush()
        return True

    async def get_setting(self, key: str) -> Optional[str]:
        """Raw JSON-encoded value of a setting, or None."""
        result = await self.db.execute(select(Setting.value).where(Setting.key == key))
        return result.scalar_one_or_none()

    async def put_setting(self, key: str, value: str, category: str = "general") -> None:
        setting = await self.db.get(Setting, key)
        if setting is None:
            self.db.add(Setting(key=key, value=value, category=category))
        else:
            setting.value = value
        await self.db.flush()
