"""
Tests for the client-side payment session.
"""
import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

import pytest

from payment_reconciliation.core.exceptions import TransitionRejectedError
from payment_reconciliation.core.local_source import LocalOrderSource
from payment_reconciliation.core.presentation import PresentationSignal
from payment_reconciliation.core.reconciliation import (
    Observation,
    ObservationSource,
    OrderStatus,
    PaymentStatus,
    SideEffect,
)
from payment_reconciliation.core.service import ReconciliationService
from payment_reconciliation.core.session import OrderSnapshot, PaymentSession, PaymentView
from payment_reconciliation.integrations.storefront_client import StorefrontError

from .conftest import FakeClock

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def snapshot(**kwargs) -> OrderSnapshot:
    fields = dict(
        order_number="ORD-1",
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
        payment_method="VIRTUAL_ACCOUNT",
        created_at=T0,
        payment_type="bank_transfer",
        provider="MIDTRANS",
    )
    fields.update(kwargs)
    return OrderSnapshot(**fields)


class FakeOrderSource:
    """In-memory order source; ``fetches`` can script successive answers."""

    def __init__(self, current: OrderSnapshot, timeout_minutes: int = 2) -> None:
        self.current = current
        self.timeout_minutes = timeout_minutes
        self.fetches: List[OrderSnapshot] = []
        self.fetch_count = 0
        self.synced: List[str] = []
        self.cancelled: List[str] = []
        self.cancel_error: Optional[Exception] = None
        self.timeout_error: Optional[Exception] = None

    async def fetch_order(self, order_number: str) -> OrderSnapshot:
        self.fetch_count += 1
        if self.fetches:
            self.current = self.fetches.pop(0)
        return self.current

    async def sync_payment(self, order_number: str) -> OrderSnapshot:
        self.synced.append(order_number)
        return self.current

    async def cancel_order(self, order_number: str, reason: str = "expired") -> OrderSnapshot:
        self.cancelled.append(reason)
        if self.cancel_error is not None:
            raise self.cancel_error
        self.current = replace(self.current, status=OrderStatus.CANCELLED)
        return self.current

    async def get_payment_timeout(self) -> int:
        if self.timeout_error is not None:
            raise self.timeout_error
        return self.timeout_minutes


def make_session(source: FakeOrderSource, clock: FakeClock, **kwargs) -> PaymentSession:
    options = dict(
        poll_interval=10,
        grace_seconds=0,
        progress_seconds=0,
        expiry_tick_seconds=0.01,
        clock=clock,
    )
    options.update(kwargs)
    return PaymentSession(source, "ORD-1", **options)


class TestPaymentSessionLifecycle:
    """Test suite for opening and closing sessions."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_open_pending_order_starts_timers(self) -> None:
        session = make_session(FakeOrderSource(snapshot()), FakeClock(T0 + timedelta(seconds=30)))

        view = await session.open()
        try:
            assert view == PaymentView(
                payment_status=PaymentStatus.PENDING,
                order_status=OrderStatus.PENDING,
                time_remaining_seconds=90,
                presentation_signal=PresentationSignal.IDLE,
            )
            assert session.poll_loop.active
            assert session.expiry_guard.armed
        finally:
            await session.close()

        assert session.closed
        assert session.poll_loop.stopped
        assert not session.expiry_guard.armed

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cod_order_has_no_timers(self) -> None:
        source = FakeOrderSource(
            snapshot(payment_method="COD", payment_type="cod", provider="OFFLINE")
        )
        session = make_session(source, FakeClock(T0))

        view = await session.open()
        await session.close()

        assert session.poll_loop is None
        assert session.expiry_guard is None
        assert view.time_remaining_seconds is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_paid_order_opens_without_timers(self) -> None:
        source = FakeOrderSource(snapshot(payment_status=PaymentStatus.PAID, paid_at=T0))
        session = make_session(source, FakeClock(T0 + timedelta(hours=1)))

        view = await session.open()
        await session.close()

        assert view.payment_status == PaymentStatus.PAID
        assert view.time_remaining_seconds is None
        assert session.poll_loop is None
        assert session.expiry_guard is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gateway_expiry_sets_deadline(self) -> None:
        source = FakeOrderSource(snapshot(expires_at=T0 + timedelta(minutes=15)))
        session = make_session(source, FakeClock(T0))

        view = await session.open()
        await session.close()

        assert view.time_remaining_seconds == 15 * 60

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_fetch_failure_uses_default(self) -> None:
        source = FakeOrderSource(snapshot())
        source.timeout_error = ConnectionError("settings unavailable")
        session = make_session(source, FakeClock(T0), default_timeout_minutes=60)

        view = await session.open()
        await session.close()

        assert view.time_remaining_seconds == 60 * 60

    @pytest.mark.unit
    def test_view_before_open(self) -> None:
        session = make_session(FakeOrderSource(snapshot()), FakeClock(T0))

        with pytest.raises(RuntimeError):
            session.view()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_observations_after_close_are_ignored(self) -> None:
        session = make_session(FakeOrderSource(snapshot()), FakeClock(T0))
        await session.open()
        await session.close()

        effect = await session.observe(Observation(ObservationSource.POLL, "PAID"))

        assert effect == SideEffect.NONE
        assert session.state.payment_status == PaymentStatus.PENDING


class TestPaymentSessionTransitions:
    """Test suite for poll, expiry and presentation interplay."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_poll_sees_paid(self) -> None:
        views: List[PaymentView] = []
        source = FakeOrderSource(snapshot())
        session = make_session(source, FakeClock(T0), poll_interval=0.01, on_change=views.append)
        await session.open()

        source.current = snapshot(payment_status=PaymentStatus.PAID, paid_at=T0)
        await asyncio.wait_for(session.poll_loop.wait(), timeout=2)
        await asyncio.wait_for(session.wait_presentation(), timeout=2)
        await session.close()

        assert session.state.payment_status == PaymentStatus.PAID
        assert source.synced == ["ORD-1"]
        assert source.cancelled == []
        assert not session.expiry_guard.armed
        assert views[-1].presentation_signal == PresentationSignal.COMPLETE
        assert [v.presentation_signal for v in views].count(PresentationSignal.COMPLETE) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unrecognized_poll_status_changes_nothing(self) -> None:
        session = make_session(FakeOrderSource(snapshot()), FakeClock(T0))
        await session.open()

        effect = await session.observe(Observation(ObservationSource.POLL, "settlement"))
        await session.close()

        assert effect == SideEffect.NONE
        assert session.state.payment_status == PaymentStatus.PENDING

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_deadline_without_payment_expires_once(self) -> None:
        """Created at t0 with a 2-minute deadline; nothing paid by t0+120s."""
        views: List[PaymentView] = []
        source = FakeOrderSource(snapshot(), timeout_minutes=2)
        clock = FakeClock(T0 + timedelta(seconds=120, milliseconds=1))
        session = make_session(source, clock, on_change=views.append)

        await session.open()
        await asyncio.wait_for(session.expiry_guard.wait(), timeout=2)
        await session.close()

        assert source.cancelled == ["expired"]
        assert session.state.order_status == OrderStatus.CANCELLED
        assert session.state.payment_status == PaymentStatus.PENDING
        assert session.poll_loop.stopped
        assert views[-1].time_remaining_seconds is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_paid_poll_at_119s_prevents_expiry(self) -> None:
        source = FakeOrderSource(snapshot(), timeout_minutes=2)
        clock = FakeClock(T0 + timedelta(seconds=119))
        session = make_session(source, clock, poll_interval=0.01)
        await session.open()

        source.current = snapshot(payment_status=PaymentStatus.PAID, paid_at=clock.now)
        await asyncio.wait_for(session.poll_loop.wait(), timeout=2)
        clock.advance(seconds=1)
        await asyncio.wait_for(session.expiry_guard.wait(), timeout=2)
        await asyncio.wait_for(session.wait_presentation(), timeout=2)
        await session.close()

        assert source.cancelled == []
        assert session.state.payment_status == PaymentStatus.PAID
        assert session.state.order_status == OrderStatus.PENDING
        assert session.sequencer.completed

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_guard_refetch_sees_payment_poll_missed(self) -> None:
        """Paid just before the deadline, but the poll loop has not ticked yet."""
        source = FakeOrderSource(snapshot(), timeout_minutes=2)
        clock = FakeClock(T0 + timedelta(seconds=119))
        session = make_session(source, clock)
        await session.open()

        source.current = snapshot(payment_status=PaymentStatus.PAID, paid_at=clock.now)
        clock.advance(seconds=1)
        await asyncio.wait_for(session.expiry_guard.wait(), timeout=2)
        await asyncio.wait_for(session.wait_presentation(), timeout=2)
        await session.close()

        assert source.cancelled == []
        assert session.state.payment_status == PaymentStatus.PAID
        assert session.state.order_status == OrderStatus.PENDING

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejected_cancel_recovers_late_payment(self) -> None:
        """The server refuses the expiry because the payment landed after the re-fetch."""
        paid = snapshot(payment_status=PaymentStatus.PAID, paid_at=T0)
        source = FakeOrderSource(snapshot(), timeout_minutes=2)
        source.fetches = [snapshot(), snapshot(), paid]
        source.cancel_error = TransitionRejectedError("not eligible", "ORD-1")
        session = make_session(source, FakeClock(T0 + timedelta(minutes=5)))

        await session.open()
        await asyncio.wait_for(session.expiry_guard.wait(), timeout=2)
        await asyncio.wait_for(session.wait_presentation(), timeout=2)
        await session.close()

        assert source.cancelled == ["expired"]
        assert session.state.payment_status == PaymentStatus.PAID
        assert session.state.order_status == OrderStatus.PENDING

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_external_cancel_is_adopted(self) -> None:
        source = FakeOrderSource(snapshot())
        session = make_session(source, FakeClock(T0), poll_interval=0.01)
        await session.open()

        source.current = snapshot(status=OrderStatus.CANCELLED)
        await eventually(lambda: session.state.order_status == OrderStatus.CANCELLED)
        await session.close()

        assert session.poll_loop.stopped
        assert not session.expiry_guard.armed
        assert source.cancelled == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_payment_stops_timers(self) -> None:
        source = FakeOrderSource(snapshot())
        session = make_session(source, FakeClock(T0), poll_interval=0.01)
        await session.open()

        source.current = snapshot(payment_status=PaymentStatus.FAILED)
        await asyncio.wait_for(session.poll_loop.wait(), timeout=2)
        await session.close()

        assert session.state.payment_status == PaymentStatus.FAILED
        assert session.sequencer.signal == PresentationSignal.IDLE
        assert source.synced == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refused_expiry_keeps_watching_open_order(self) -> None:
        """Not yet due on the server's clock: the order stays open and is still polled."""
        paid = snapshot(payment_status=PaymentStatus.PAID, paid_at=T0 + timedelta(minutes=6))
        source = FakeOrderSource(snapshot(), timeout_minutes=2)
        source.cancel_error = TransitionRejectedError("not eligible", "ORD-1")
        session = make_session(source, FakeClock(T0 + timedelta(minutes=5)), poll_interval=0.01)

        await session.open()
        first_loop = session.poll_loop
        await asyncio.wait_for(session.expiry_guard.wait(), timeout=2)

        assert source.cancelled == ["expired"]
        assert first_loop.stopped
        assert session.poll_loop is not first_loop
        assert session.poll_loop.active
        assert session.state.order_status == OrderStatus.PENDING

        source.current = paid
        await eventually(lambda: session.state.payment_status == PaymentStatus.PAID)
        await asyncio.wait_for(session.wait_presentation(), timeout=2)
        await session.close()

        assert session.poll_loop.stopped
        assert source.synced == ["ORD-1"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refused_expiry_adopts_later_server_deadline(self) -> None:
        extended = T0 + timedelta(minutes=10)
        source = FakeOrderSource(snapshot(), timeout_minutes=2)
        source.fetches = [snapshot(), snapshot(), snapshot(expires_at=extended)]
        source.cancel_error = TransitionRejectedError("not eligible", "ORD-1")
        session = make_session(source, FakeClock(T0 + timedelta(minutes=5)))

        await session.open()
        first_guard = session.expiry_guard
        await asyncio.wait_for(first_guard.wait(), timeout=2)

        assert session.expiry_guard is not first_guard
        assert session.expiry_guard.armed
        assert session.state.expires_at == extended
        assert session.view().time_remaining_seconds == 300
        assert session.poll_loop.active
        await session.close()

        assert not session.expiry_guard.armed
        assert source.cancelled == ["expired"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refused_expiry_without_later_deadline_does_not_rearm(self) -> None:
        source = FakeOrderSource(snapshot(), timeout_minutes=2)
        source.cancel_error = TransitionRejectedError("not eligible", "ORD-1")
        session = make_session(source, FakeClock(T0 + timedelta(minutes=5)))

        await session.open()
        first_guard = session.expiry_guard
        await asyncio.wait_for(first_guard.wait(), timeout=2)
        await session.close()

        assert session.expiry_guard is first_guard
        assert source.cancelled == ["expired"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unconfirmed_expiry_keeps_polling(self) -> None:
        """A failed cancel leaves the order open locally until the server says otherwise."""
        source = FakeOrderSource(snapshot(), timeout_minutes=2)
        source.cancel_error = StorefrontError("connection reset", "ORD-1")
        session = make_session(source, FakeClock(T0 + timedelta(minutes=5)), poll_interval=0.01)

        await session.open()
        first_loop = session.poll_loop
        await asyncio.wait_for(session.expiry_guard.wait(), timeout=2)

        assert source.cancelled == ["expired"]
        assert session.state.order_status == OrderStatus.PENDING
        assert session.poll_loop is not first_loop
        assert session.poll_loop.active

        source.current = snapshot(status=OrderStatus.CANCELLED)
        await eventually(lambda: session.state.order_status == OrderStatus.CANCELLED)
        await session.close()

        assert session.poll_loop.stopped

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unconfirmed_expiry_of_cod_order_does_not_poll(self) -> None:
        source = FakeOrderSource(snapshot(payment_method="COD"), timeout_minutes=2)
        source.cancel_error = StorefrontError("connection reset", "ORD-1")
        session = make_session(source, FakeClock(T0 + timedelta(minutes=5)))

        await session.open()
        await asyncio.wait_for(session.expiry_guard.wait(), timeout=2)
        await session.close()

        assert session.poll_loop is None
        assert session.state.order_status == OrderStatus.PENDING


class TestPaymentSessionWithDatabase:
    """Sessions driven through the in-process order source."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_webhook_payment_reaches_open_view(
        self, session_factory, make_order, gateway
    ) -> None:
        order = await make_order(payment_type="qris")
        gateway.transaction_status = "settlement"
        source = LocalOrderSource(session_factory, gateway=gateway)
        session = PaymentSession(
            source, order.order_number, poll_interval=0.01, grace_seconds=0, progress_seconds=0
        )
        await session.open()

        async with session_factory() as db:
            await ReconciliationService(db).apply_observation(
                order.order_number,
                Observation(ObservationSource.WEBHOOK, "PAID", authorized=True),
            )
        await asyncio.wait_for(session.poll_loop.wait(), timeout=5)
        await asyncio.wait_for(session.wait_presentation(), timeout=5)
        await session.close()

        assert session.view().payment_status == PaymentStatus.PAID
        assert session.view().presentation_signal == PresentationSignal.COMPLETE
        assert gateway.calls == [order.order_number]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_overdue_view_cancels_order(self, session_factory, make_order) -> None:
        clock = FakeClock()
        order = await make_order(
            payment_type="bank_transfer", created_at=clock.now - timedelta(days=2)
        )
        source = LocalOrderSource(session_factory, clock=clock)
        session = PaymentSession(source, order.order_number, clock=clock, expiry_tick_seconds=0.01)

        await session.open()
        await asyncio.wait_for(session.expiry_guard.wait(), timeout=5)
        await session.close()

        async with session_factory() as db:
            stored = await ReconciliationService(db).get_order(order.order_number)
        assert stored.status == OrderStatus.CANCELLED.value
        assert stored.payment_status == PaymentStatus.PENDING.value
        assert session.state.order_status == OrderStatus.CANCELLED
