"""
Pull-based payment sync: ask the gateway for the truth and reconcile it.

Idempotent and safe to run concurrently with itself, the poll loop and the
webhook handler: persistence goes through conditional updates, so at most
one caller ever performs MARK_PAID for an order.
"""
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from payment_reconciliation.core.exceptions import GatewaySyncError, SyncUnavailableError
from payment_reconciliation.core.reconciliation import (
    Observation,
    ObservationSource,
    PaymentStatus,
    SideEffect,
    utcnow,
)
from payment_reconciliation.core.service import ReconciliationService
from payment_reconciliation.database.models import Order
from payment_reconciliation.integrations.midtrans_client import GatewayError, GatewayStatus
from payment_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class PaymentGateway(Protocol):
    """Anything that can report the authoritative status of a transaction."""

    async def get_transaction_status(self, transaction_id: str) -> GatewayStatus:
        ...


@dataclass
class SyncResult:
    synced: bool
    payment_status: PaymentStatus
    order: Order
    side_effect: SideEffect


class PaymentSyncer:
    """Runs one gateway status query through the reconciliation core."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[PaymentGateway],
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.gateway = gateway
        self.service = ReconciliationService(db, clock=clock)

    async def sync_payment(self, order_number: str) -> SyncResult:
        """
        Sync an order's payment with the gateway.

        Raises:
            OrderNotFoundError: Unknown order
            SyncUnavailableError: No gateway transaction to query
            GatewaySyncError: The gateway could not be queried; nothing was written
        """
        started = time.perf_counter()
        order = await self.service.get_order(order_number)
        transaction = order.latest_transaction
        if self.gateway is None or transaction is None or transaction.is_offline:
            metrics.record_sync("unavailable", time.perf_counter() - started)
            raise SyncUnavailableError(
                f"Order {order_number} has no gateway transaction to sync", order_number
            )

        # Midtrans accepts either its transaction id or the merchant order id
        lookup_id = transaction.transaction_id or order.order_number
        try:
            gateway_status = await self.gateway.get_transaction_status(lookup_id)
        except GatewayError as e:
            metrics.record_sync("gateway_error", time.perf_counter() - started)
            logger.warning(
                "payment_sync_failed",
                order_number=order_number,
                error_type=e.error_type.value,
                error=str(e),
            )
            raise GatewaySyncError(
                f"Payment gateway unavailable: {e}", order_number
            ) from e

        observation = Observation(
            ObservationSource.SYNC, gateway_status.status.value, authorized=True
        )
        outcome = await self.service.apply_observation(
            order_number,
            observation,
            gateway_transaction_id=gateway_status.transaction_id,
            raw_response=gateway_status.raw,
        )
        synced = outcome.side_effect != SideEffect.NONE
        metrics.record_sync("synced" if synced else "unchanged", time.perf_counter() - started)
        logger.info(
            "payment_synced",
            order_number=order_number,
            transaction_status=gateway_status.transaction_status,
            side_effect=outcome.side_effect.value,
            payment_status=outcome.order.payment_status,
        )
        return SyncResult(
            synced=synced,
            payment_status=PaymentStatus(outcome.order.payment_status),
            order=outcome.order,
            side_effect=outcome.side_effect,
        )


async def sync_payment(
    db: AsyncSession, gateway: Optional[PaymentGateway], order_number: str
) -> SyncResult:
    """Convenience wrapper around ``PaymentSyncer``."""
    return await PaymentSyncer(db, gateway).sync_payment(order_number)
