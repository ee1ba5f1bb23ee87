"""In-process OrderSource backed directly by the service layer."""
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_reconciliation.core.reconciliation import (
    OrderStatus,
    PaymentStatus,
    as_utc,
    utcnow,
)
from payment_reconciliation.core.service import ReconciliationService
from payment_reconciliation.core.session import OrderSnapshot
from payment_reconciliation.core.sync import PaymentGateway, PaymentSyncer
from payment_reconciliation.database.models import Order


def snapshot_from_order(order: Order) -> OrderSnapshot:
    transaction = order.latest_transaction
    return OrderSnapshot(
        order_number=order.order_number,
        status=OrderStatus(order.status),
        payment_status=PaymentStatus(order.payment_status),
        payment_method=order.payment_method,
        created_at=as_utc(order.created_at),
        paid_at=as_utc(order.paid_at),
        payment_type=transaction.payment_type if transaction else None,
        provider=transaction.provider if transaction else None,
        transaction_id=(transaction.transaction_id if transaction else None)
        or order.transaction_id,
        expires_at=as_utc(transaction.expires_at) if transaction else None,
    )


class LocalOrderSource:
    """
    OrderSource that talks to the database in-process.

    Each call uses its own session, like independent HTTP requests would.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: Optional[PaymentGateway] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.clock = clock

    async def fetch_order(self, order_number: str) -> OrderSnapshot:
        async with self.session_factory() as db:
            service = ReconciliationService(db, clock=self.clock)
            return snapshot_from_order(await service.get_order(order_number))

    async def sync_payment(self, order_number: str) -> OrderSnapshot:
        async with self.session_factory() as db:
            result = await PaymentSyncer(db, self.gateway, clock=self.clock).sync_payment(
                order_number
            )
            return snapshot_from_order(result.order)

    async def cancel_order(self, order_number: str, reason: str = "expired") -> OrderSnapshot:
        async with self.session_factory() as db:
            service = ReconciliationService(db, clock=self.clock)
            return snapshot_from_order(await service.cancel_order(order_number, reason))

    async def get_payment_timeout(self) -> int:
        async with self.session_factory() as db:
            return await ReconciliationService(db, clock=self.clock).get_payment_timeout()
