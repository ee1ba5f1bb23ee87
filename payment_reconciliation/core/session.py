"""
Payment session: the client-side owner of one order view.

A session wires a PollLoop, an ExpiryGuard and a PresentationSequencer to
an ``OrderSource`` and keeps a local ``OrderPaymentState`` that only ever
changes through ``reconcile``. Observed statuses are advisory input, never
assigned directly.
"""
import asyncio
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Protocol

import structlog

from payment_reconciliation.core.exceptions import ReconciliationError, TransitionRejectedError
from payment_reconciliation.core.expiry import ExpiryGuard, compute_deadline, has_deadline
from payment_reconciliation.core.polling import PollLoop
from payment_reconciliation.core.presentation import PresentationSequencer, PresentationSignal
from payment_reconciliation.core.reconciliation import (
    Observation,
    ObservationSource,
    OrderPaymentState,
    OrderStatus,
    PaymentStatus,
    SideEffect,
    as_utc,
    reconcile,
    utcnow,
)

logger = structlog.get_logger(__name__)

# Settled by hand on delivery; nothing to poll for
MANUAL_PAYMENT_METHODS = frozenset({"COD"})


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


@dataclass(frozen=True)
class OrderSnapshot:
    """Order plus latest transaction, as an order source reports it."""

    order_number: str
    status: OrderStatus
    payment_status: PaymentStatus
    payment_method: str
    created_at: datetime
    paid_at: Optional[datetime] = None
    payment_type: Optional[str] = None
    provider: Optional[str] = None
    transaction_id: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == OrderStatus.CANCELLED

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "OrderSnapshot":
        """Build from the camelCase JSON returned by ``GET /orders/{n}``."""
        transaction = data.get("paymentTransaction") or {}
        return cls(
            order_number=data["orderNumber"],
            status=OrderStatus(data["status"]),
            payment_status=PaymentStatus(data["paymentStatus"]),
            payment_method=data.get("paymentMethod") or "COD",
            created_at=_parse_datetime(data["createdAt"]),
            paid_at=_parse_datetime(data.get("paidAt")),
            payment_type=transaction.get("paymentType"),
            provider=transaction.get("provider"),
            transaction_id=transaction.get("transactionId") or data.get("transactionId"),
            expires_at=_parse_datetime(transaction.get("expiresAt")),
        )


class OrderSource(Protocol):
    """What a session needs from the storefront, in-process or over HTTP."""

    async def fetch_order(self, order_number: str) -> OrderSnapshot:
        ...

    async def sync_payment(self, order_number: str) -> OrderSnapshot:
        ...

    async def cancel_order(self, order_number: str, reason: str = "expired") -> OrderSnapshot:
        ...

    async def get_payment_timeout(self) -> int:
        ...


@dataclass(frozen=True)
class PaymentView:
    """Everything a UI needs to render the payment state of one order."""

    payment_status: PaymentStatus
    order_status: OrderStatus
    time_remaining_seconds: Optional[float]
    presentation_signal: PresentationSignal


class PaymentSession:
    """
    Owns the timers of one open order view.

    ``open()`` loads the order and starts polling and the expiry countdown
    where they apply; ``close()`` cancels everything. A session is not
    reopened once closed.
    """

    def __init__(
        self,
        source: OrderSource,
        order_number: str,
        poll_interval: float = 2.0,
        grace_seconds: float = 1.0,
        progress_seconds: float = 1.0,
        expiry_tick_seconds: float = 1.0,
        default_timeout_minutes: int = 1440,
        clock: Callable[[], datetime] = utcnow,
        on_change: Optional[Callable[[PaymentView], None]] = None,
    ) -> None:
        self.source = source
        self.order_number = order_number
        self.poll_interval = poll_interval
        self.expiry_tick_seconds = expiry_tick_seconds
        self.default_timeout_minutes = default_timeout_minutes
        self.clock = clock
        self._on_change = on_change
        self.state: Optional[OrderPaymentState] = None
        self.snapshot: Optional[OrderSnapshot] = None
        self.poll_loop: Optional[PollLoop[OrderSnapshot]] = None
        self.expiry_guard: Optional[ExpiryGuard] = None
        self.sequencer = PresentationSequencer(
            emit=self._on_signal,
            grace_seconds=grace_seconds,
            progress_seconds=progress_seconds,
        )
        self._presentation_task: Optional[asyncio.Task] = None
        self._closed = False
        self._log = logger.bind(order_number=order_number)

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> PaymentView:
        """Load the order and start whichever timers apply to it."""
        snapshot = await self.source.fetch_order(self.order_number)
        try:
            timeout = await self.source.get_payment_timeout()
        except Exception as e:
            self._log.warning("payment_timeout_fetch_failed", error=str(e))
            timeout = self.default_timeout_minutes

        deadline = None
        if has_deadline(snapshot.payment_type):
            deadline = compute_deadline(snapshot.created_at, timeout, snapshot.expires_at)

        self.snapshot = snapshot
        self.state = OrderPaymentState(
            payment_status=snapshot.payment_status,
            order_status=snapshot.status,
            expires_at=deadline,
            paid_at=snapshot.paid_at,
        )

        if not self.state.is_terminal and snapshot.payment_method not in MANUAL_PAYMENT_METHODS:
            self._start_poll_loop()

        if deadline is not None and not self.state.is_terminal:
            self._arm_guard(deadline)

        self._log.info(
            "payment_session_opened",
            payment_status=self.state.payment_status.value,
            polling=self.poll_loop is not None,
            deadline=deadline.isoformat() if deadline else None,
        )
        return self.view()

    async def close(self) -> None:
        """Cancel every timer owned by this view."""
        if self._closed:
            return
        self._closed = True
        self._stop_timers()
        if self._presentation_task is not None and not self._presentation_task.done():
            self._presentation_task.cancel()
        for waiter in (self.poll_loop, self.expiry_guard):
            if waiter is not None:
                await waiter.wait()
        if self._presentation_task is not None:
            try:
                await self._presentation_task
            except asyncio.CancelledError:
                pass
        self._log.info("payment_session_closed")

    def view(self) -> PaymentView:
        if self.state is None:
            raise RuntimeError("session is not open")
        remaining = None
        if self.expiry_guard is not None and not self.state.is_terminal:
            remaining = self.expiry_guard.time_remaining_seconds()
        return PaymentView(
            payment_status=self.state.payment_status,
            order_status=self.state.order_status,
            time_remaining_seconds=remaining,
            presentation_signal=self.sequencer.signal,
        )

    async def wait_presentation(self) -> None:
        """Wait until the post-payment signal sequence has finished."""
        if self._presentation_task is not None:
            await self._presentation_task

    async def observe(self, observation: Observation) -> SideEffect:
        """Feed one observation into the local state and act on its side effect."""
        if self._closed or self.state is None:
            return SideEffect.NONE
        if not observation.is_recognized:
            self._log.warning(
                "unrecognized_payment_status",
                source=observation.source.value,
                observed_status=str(observation.status),
            )

        result = reconcile(self.state, observation, self.clock())
        self.state = result.state
        effect = result.side_effect

        if effect == SideEffect.MARK_PAID:
            self._stop_timers()
            self._presentation_task = asyncio.create_task(self._after_paid())
        elif effect == SideEffect.MARK_EXPIRED:
            self._stop_timers()
            await self._persist_expiry()
        elif effect == SideEffect.MARK_FAILED:
            self._stop_timers()

        if effect != SideEffect.NONE:
            self._log.info("payment_session_transition", side_effect=effect.value,
                           source=observation.source.value)
            self._notify()
        return effect

    async def _fetch(self) -> OrderSnapshot:
        return await self.source.fetch_order(self.order_number)

    async def _refetch_status(self) -> PaymentStatus:
        snapshot = await self.source.fetch_order(self.order_number)
        return snapshot.payment_status

    async def _on_poll_result(self, snapshot: OrderSnapshot) -> SideEffect:
        self.snapshot = snapshot
        effect = await self.observe(
            Observation(ObservationSource.POLL, snapshot.payment_status.value)
        )
        if effect == SideEffect.NONE and snapshot.is_cancelled and self.state is not None:
            # Cancelled elsewhere (sweep, customer, admin): nothing left to wait for
            self.state = replace(self.state, order_status=OrderStatus.CANCELLED)
            self._stop_timers()
            self._notify()
            return SideEffect.NONE
        return effect

    async def _after_paid(self) -> None:
        # Force-persist before trusting the locally reconciled state
        try:
            await self.source.sync_payment(self.order_number)
        except Exception as e:
            self._log.info("post_payment_sync_skipped", error=str(e))
        await self.sequencer.run()

    async def _persist_expiry(self) -> None:
        try:
            await self.source.cancel_order(self.order_number, reason="expired")
            self._log.info("payment_session_expired")
            return
        except TransitionRejectedError:
            self._log.info("expiry_cancel_rejected")
        except ReconciliationError as e:
            # Server state unknown; stay open until a poll reports it
            self._log.warning("expiry_cancel_unconfirmed", error=str(e))
            if self.state is not None and self.snapshot is not None:
                self.state = replace(self.state, order_status=self.snapshot.status)
            self._resume_polling()
            return

        # The server refused: paid at the last moment, or not due on its clock
        try:
            snapshot = await self.source.fetch_order(self.order_number)
        except ReconciliationError as e:
            self._log.warning("expiry_refetch_failed", error=str(e))
            self._resume_polling()
            return
        self.snapshot = snapshot
        if self.state is not None:
            self.state = replace(self.state, order_status=snapshot.status)
        if snapshot.payment_status == PaymentStatus.PAID:
            await self.observe(Observation(ObservationSource.POLL, PaymentStatus.PAID.value))
            return
        if snapshot.payment_status == PaymentStatus.PENDING and not snapshot.is_cancelled:
            await self._rearm_if_extended(snapshot)
            self._resume_polling()
        self._notify()

    async def _rearm_if_extended(self, snapshot: OrderSnapshot) -> None:
        if self.state is None or not has_deadline(snapshot.payment_type):
            return
        try:
            timeout = await self.source.get_payment_timeout()
        except Exception as e:
            self._log.warning("payment_timeout_fetch_failed", error=str(e))
            timeout = self.default_timeout_minutes
        deadline = compute_deadline(snapshot.created_at, timeout, snapshot.expires_at)
        if self.state.expires_at is not None and deadline <= self.state.expires_at:
            return
        if self._closed:
            return
        self.state = replace(self.state, expires_at=deadline)
        self._arm_guard(deadline)
        self._log.info("expiry_deadline_extended", deadline=deadline.isoformat())

    def _resume_polling(self) -> None:
        if self._closed or self.state is None or self.state.is_terminal:
            return
        if self.snapshot is not None and self.snapshot.payment_method in MANUAL_PAYMENT_METHODS:
            return
        self._start_poll_loop()
        self._log.info("payment_session_polling_resumed")

    def _start_poll_loop(self) -> None:
        # A stopped loop never restarts; each resume gets a new one
        self.poll_loop = PollLoop(
            self._fetch,
            self._on_poll_result,
            interval=self.poll_interval,
            name=f"poll-{self.order_number}",
        )
        self.poll_loop.start()

    def _arm_guard(self, deadline: datetime) -> None:
        self.expiry_guard = ExpiryGuard(
            deadline,
            refetch=self._refetch_status,
            on_observation=self.observe,
            clock=self.clock,
            tick_seconds=self.expiry_tick_seconds,
        )
        self.expiry_guard.arm()

    def _stop_timers(self) -> None:
        if self.poll_loop is not None:
            self.poll_loop.stop()
        if self.expiry_guard is not None:
            self.expiry_guard.disarm()

    def _on_signal(self, signal: PresentationSignal) -> None:
        self._notify()

    def _notify(self) -> None:
        if self._on_change is not None and self.state is not None:
            self._on_change(self.view())
