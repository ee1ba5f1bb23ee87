"""
Unit tests for the pure reconciliation core.
"""
import itertools
from datetime import datetime, timedelta, timezone

import pytest

from payment_reconciliation.core.reconciliation import (
    Observation,
    ObservationSource,
    OrderPaymentState,
    OrderStatus,
    PaymentStatus,
    SideEffect,
    as_utc,
    reconcile,
)

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
DEADLINE = T0 + timedelta(minutes=2)

SOURCES = list(ObservationSource)
STATUSES = [None, "PENDING", "PAID", "FAILED", "REFUNDED", "settlement", 42]


def pending(**kwargs) -> OrderPaymentState:
    return OrderPaymentState(PaymentStatus.PENDING, expires_at=DEADLINE, **kwargs)


def observations():
    for source, status, authorized in itertools.product(SOURCES, STATUSES, (False, True)):
        yield Observation(source, status, authorized)


class TestReconcile:
    """Test suite for the transition rules."""

    @pytest.mark.unit
    def test_paid_observation_marks_paid(self) -> None:
        result = reconcile(pending(), Observation(ObservationSource.WEBHOOK, "PAID"), T0)

        assert result.side_effect == SideEffect.MARK_PAID
        assert result.state.payment_status == PaymentStatus.PAID
        assert result.state.paid_at == T0
        assert result.changed

    @pytest.mark.unit
    @pytest.mark.parametrize("source", SOURCES)
    def test_paid_wins_over_due_expiry(self, source: ObservationSource) -> None:
        """PAID is never turned into a cancellation, even past the deadline."""
        now = DEADLINE + timedelta(seconds=1)
        result = reconcile(pending(), Observation(source, "PAID"), now)

        assert result.side_effect == SideEffect.MARK_PAID
        assert result.state.order_status == OrderStatus.PENDING

    @pytest.mark.unit
    def test_expiry_after_deadline_cancels(self) -> None:
        result = reconcile(
            pending(), Observation(ObservationSource.EXPIRY), DEADLINE + timedelta(seconds=1)
        )

        assert result.side_effect == SideEffect.MARK_EXPIRED
        assert result.state.order_status == OrderStatus.CANCELLED
        assert result.state.payment_status == PaymentStatus.PENDING

    @pytest.mark.unit
    def test_expiry_exactly_at_deadline_cancels(self) -> None:
        result = reconcile(pending(), Observation(ObservationSource.EXPIRY), DEADLINE)
        assert result.side_effect == SideEffect.MARK_EXPIRED

    @pytest.mark.unit
    def test_no_premature_expiry(self) -> None:
        result = reconcile(
            pending(), Observation(ObservationSource.EXPIRY), DEADLINE - timedelta(seconds=1)
        )
        assert result.side_effect == SideEffect.NONE

    @pytest.mark.unit
    def test_expiry_without_deadline_is_noop(self) -> None:
        state = OrderPaymentState(PaymentStatus.PENDING)
        result = reconcile(state, Observation(ObservationSource.EXPIRY), T0 + timedelta(days=30))
        assert result.side_effect == SideEffect.NONE

    @pytest.mark.unit
    @pytest.mark.parametrize("source", [s for s in SOURCES if s != ObservationSource.EXPIRY])
    def test_only_expiry_source_cancels(self, source: ObservationSource) -> None:
        result = reconcile(pending(), Observation(source), DEADLINE + timedelta(hours=1))
        assert result.side_effect == SideEffect.NONE

    @pytest.mark.unit
    def test_single_cancellation(self) -> None:
        now = DEADLINE + timedelta(seconds=5)
        first = reconcile(pending(), Observation(ObservationSource.EXPIRY), now)
        second = reconcile(first.state, Observation(ObservationSource.EXPIRY), now)

        assert first.side_effect == SideEffect.MARK_EXPIRED
        assert second.side_effect == SideEffect.NONE
        assert second.state == first.state

    @pytest.mark.unit
    def test_failed_observation_fails_pending_payment(self) -> None:
        result = reconcile(pending(), Observation(ObservationSource.POLL, "FAILED"), T0)

        assert result.side_effect == SideEffect.MARK_FAILED
        assert result.state.payment_status == PaymentStatus.FAILED

    @pytest.mark.unit
    def test_failed_to_failed_is_noop(self) -> None:
        state = OrderPaymentState(PaymentStatus.FAILED)
        result = reconcile(state, Observation(ObservationSource.WEBHOOK, "FAILED"), T0)
        assert result.side_effect == SideEffect.NONE

    @pytest.mark.unit
    def test_failed_payment_can_still_be_paid(self) -> None:
        state = OrderPaymentState(PaymentStatus.FAILED)
        result = reconcile(state, Observation(ObservationSource.SYNC, "PAID"), T0)

        assert result.side_effect == SideEffect.MARK_PAID
        assert result.state.paid_at == T0

    @pytest.mark.unit
    def test_late_payment_after_expiry_is_recorded(self) -> None:
        """Money that lands after an expiry-cancel is still recorded as PAID."""
        cancelled = pending(order_status=OrderStatus.CANCELLED)
        result = reconcile(cancelled, Observation(ObservationSource.WEBHOOK, "PAID"), DEADLINE)

        assert result.side_effect == SideEffect.MARK_PAID
        assert result.state.order_status == OrderStatus.CANCELLED

    @pytest.mark.unit
    def test_authorized_refund_leaves_paid(self) -> None:
        paid = OrderPaymentState(PaymentStatus.PAID, paid_at=T0)
        result = reconcile(
            paid, Observation(ObservationSource.WEBHOOK, "REFUNDED", authorized=True), T0
        )

        assert result.side_effect == SideEffect.MARK_REFUNDED
        assert result.state.payment_status == PaymentStatus.REFUNDED
        assert result.state.paid_at == T0

    @pytest.mark.unit
    def test_unauthorized_refund_is_ignored(self) -> None:
        paid = OrderPaymentState(PaymentStatus.PAID, paid_at=T0)
        result = reconcile(paid, Observation(ObservationSource.POLL, "REFUNDED"), T0)
        assert result.side_effect == SideEffect.NONE

    @pytest.mark.unit
    def test_refund_of_unpaid_order_is_ignored(self) -> None:
        result = reconcile(
            pending(), Observation(ObservationSource.ADMIN, "REFUNDED", authorized=True), T0
        )
        assert result.side_effect == SideEffect.NONE

    @pytest.mark.unit
    @pytest.mark.parametrize("status", ["settlement", "UNKNOWN", 42, ""])
    def test_unknown_status_is_noop(self, status: object) -> None:
        observation = Observation(ObservationSource.POLL, status)
        result = reconcile(pending(), observation, DEADLINE + timedelta(hours=1))

        assert result.side_effect == SideEffect.NONE
        assert not observation.is_recognized

    @pytest.mark.unit
    def test_status_parsing_is_case_insensitive(self) -> None:
        assert PaymentStatus.parse("paid") == PaymentStatus.PAID
        assert PaymentStatus.parse(" Pending ") == PaymentStatus.PENDING
        assert PaymentStatus.parse(None) is None

    @pytest.mark.unit
    def test_naive_datetimes_are_treated_as_utc(self) -> None:
        state = OrderPaymentState(PaymentStatus.PENDING, expires_at=DEADLINE.replace(tzinfo=None))
        result = reconcile(state, Observation(ObservationSource.EXPIRY), DEADLINE)

        assert result.side_effect == SideEffect.MARK_EXPIRED
        assert as_utc(DEADLINE.replace(tzinfo=None)) == DEADLINE


class TestReconcileProperties:
    """Exhaustive checks of the invariants over every observation shape."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "observation", list(observations()), ids=lambda o: f"{o.source.value}-{o.status}-{o.authorized}"
    )
    def test_paid_is_a_sink(self, observation: Observation) -> None:
        paid = OrderPaymentState(PaymentStatus.PAID, expires_at=DEADLINE, paid_at=T0)
        result = reconcile(paid, observation, DEADLINE + timedelta(days=1))

        if (
            observation.payment_status == PaymentStatus.REFUNDED
            and observation.authorized
        ):
            assert result.side_effect == SideEffect.MARK_REFUNDED
        else:
            assert result.side_effect == SideEffect.NONE
            assert result.state == paid
        assert result.state.paid_at == T0

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "observation", list(observations()), ids=lambda o: f"{o.source.value}-{o.status}-{o.authorized}"
    )
    def test_refunded_is_a_sink(self, observation: Observation) -> None:
        refunded = OrderPaymentState(PaymentStatus.REFUNDED, paid_at=T0)
        result = reconcile(refunded, observation, T0)

        assert result.side_effect == SideEffect.NONE
        assert result.state == refunded

    @pytest.mark.unit
    def test_paid_at_is_monotonic_over_any_sequence(self) -> None:
        """Once set, paidAt never changes and PAID is only left through a refund."""
        steps = list(observations())
        for sequence in itertools.product(steps, repeat=2):
            state = pending()
            paid_at = None
            for i, observation in enumerate(sequence):
                before = state
                state = reconcile(state, observation, T0 + timedelta(minutes=i * 5)).state
                if paid_at is not None:
                    assert state.paid_at == paid_at
                if before.payment_status == PaymentStatus.PAID:
                    assert state.payment_status in (PaymentStatus.PAID, PaymentStatus.REFUNDED)
                if state.payment_status == PaymentStatus.PAID and paid_at is None:
                    paid_at = state.paid_at

    @pytest.mark.unit
    def test_reconcile_is_deterministic(self) -> None:
        for observation in observations():
            first = reconcile(pending(), observation, DEADLINE)
            second = reconcile(pending(), observation, DEADLINE)
            assert first == second

    @pytest.mark.unit
    def test_two_minute_deadline_expires_exactly_once(self) -> None:
        """No PAID ever arrives: one MARK_EXPIRED just after t0+120s, then nothing."""
        state = pending()
        effects = []
        for second in range(0, 181, 1):
            result = reconcile(
                state,
                Observation(ObservationSource.EXPIRY),
                T0 + timedelta(seconds=second, milliseconds=1),
            )
            state = result.state
            effects.append(result.side_effect)

        assert effects.count(SideEffect.MARK_EXPIRED) == 1
        assert effects.index(SideEffect.MARK_EXPIRED) == 120
        assert state.order_status == OrderStatus.CANCELLED

    @pytest.mark.unit
    def test_paid_poll_before_deadline_prevents_expiry(self) -> None:
        state = pending()
        paid = reconcile(
            state, Observation(ObservationSource.POLL, "PAID"), T0 + timedelta(seconds=119)
        )
        expiry = reconcile(
            paid.state, Observation(ObservationSource.EXPIRY), T0 + timedelta(seconds=120)
        )

        assert paid.side_effect == SideEffect.MARK_PAID
        assert expiry.side_effect == SideEffect.NONE
        assert expiry.state.payment_status == PaymentStatus.PAID
        assert expiry.state.order_status == OrderStatus.PENDING
