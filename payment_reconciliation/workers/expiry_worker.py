"""
Expiry background worker.

Periodically expires unpaid orders whose payment deadline has passed,
covering orders whose payment view was never reopened. Gateway-backed
orders are synced first so that a payment which landed without a webhook
is recorded as PAID instead of being cancelled.
"""
import asyncio
import signal
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_reconciliation.config import get_settings
from payment_reconciliation.core.exceptions import GatewaySyncError, SyncUnavailableError
from payment_reconciliation.core.expiry import DEADLINE_PAYMENT_TYPES, has_deadline
from payment_reconciliation.core.reconciliation import (
    Observation,
    ObservationSource,
    PaymentStatus,
    SideEffect,
    as_utc,
    utcnow,
)
from payment_reconciliation.core.service import ReconciliationService
from payment_reconciliation.core.sync import PaymentGateway, PaymentSyncer
from payment_reconciliation.database.connection import get_session_factory
from payment_reconciliation.monitoring.logging import setup_logging
from payment_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ExpirySweeper:
    """Finds overdue unpaid orders and proposes expiry for each."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        gateway: Optional[PaymentGateway] = None,
        clock: Callable[[], datetime] = utcnow,
        batch_size: int = 500,
    ) -> None:
        self.session_factory = session_factory or get_session_factory()
        self.gateway = gateway
        self.clock = clock
        self.batch_size = batch_size

    async def find_due_orders(self) -> List[str]:
        """Order numbers of open orders whose deadline has passed."""
        async with self.session_factory() as db:
            service = ReconciliationService(db, clock=self.clock)
            timeout = await service.get_payment_timeout()
            orders = await service.repo.list_open_orders(
                DEADLINE_PAYMENT_TYPES, limit=self.batch_size
            )
            now = as_utc(self.clock())
            due = []
            for order in orders:
                transaction = order.latest_transaction
                if transaction is None or not has_deadline(transaction.payment_type):
                    continue
                deadline = service.deadline_for(order, timeout)
                if deadline is not None and now >= deadline:
                    due.append(order.order_number)
            return due

    async def expire_order(self, order_number: str) -> str:
        """
        Sync (when gateway-backed) and then propose expiry for one order.

        Returns:
            str: expired, paid, payment_failed or skipped
        """
        async with self.session_factory() as db:
            service = ReconciliationService(db, clock=self.clock)
            order = await service.get_order(order_number)
            transaction = order.latest_transaction

            if self.gateway is not None and transaction is not None and not transaction.is_offline:
                try:
                    result = await PaymentSyncer(db, self.gateway, clock=self.clock).sync_payment(
                        order_number
                    )
                    if result.payment_status == PaymentStatus.PAID:
                        return "paid"
                    if result.payment_status != PaymentStatus.PENDING:
                        return "payment_failed"
                except (GatewaySyncError, SyncUnavailableError) as e:
                    # Conditional update still refuses to cancel a PAID order
                    logger.warning(
                        "expiry_sweep_sync_failed", order_number=order_number, error=str(e)
                    )

            outcome = await service.apply_observation(
                order_number, Observation(ObservationSource.EXPIRY)
            )
            if outcome.side_effect == SideEffect.MARK_EXPIRED:
                return "expired"
            if outcome.side_effect == SideEffect.MARK_PAID:
                return "paid"
            return "skipped"

    async def sweep_once(self) -> Dict[str, int]:
        """
        Run one sweep.

        Returns:
            Dict[str, int]: Count of orders per outcome
        """
        started = time.perf_counter()
        counts: Dict[str, int] = {}
        due = await self.find_due_orders()
        logger.info("expiry_sweep_started", due_orders=len(due))

        for order_number in due:
            try:
                outcome = await self.expire_order(order_number)
            except Exception as e:
                logger.error("expiry_sweep_order_failed", order_number=order_number, error=str(e))
                outcome = "error"
            counts[outcome] = counts.get(outcome, 0) + 1
            metrics.record_expiry_sweep_order(outcome)

        duration = time.perf_counter() - started
        metrics.record_expiry_sweep(duration)
        logger.info("expiry_sweep_completed", duration_seconds=duration, **counts)
        return counts


async def start_expiry_worker(
    interval_seconds: Optional[float] = None,
    gateway: Optional[PaymentGateway] = None,
) -> None:
    """
    Start the expiry worker; runs until SIGINT/SIGTERM.

    Args:
        interval_seconds: Seconds between sweeps (default from settings)
        gateway: Gateway used for the pre-expiry sync
    """
    setup_logging()
    settings = get_settings()
    interval = interval_seconds or settings.expiry_sweep_interval_seconds

    logger.info("expiry_worker_starting", interval_seconds=interval)

    sweeper = ExpirySweeper(gateway=gateway)
    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("expiry_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await sweeper.sweep_once()
            except Exception as e:
                logger.error("expiry_sweep_error", error=str(e))
                # Keep running; the next sweep retries

            waited = 0.0
            while waited < interval and running:
                step = min(1.0, interval - waited)
                await asyncio.sleep(step)
                waited += step
    finally:
        logger.info("expiry_worker_stopped")
