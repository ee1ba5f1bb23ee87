"""
Payment deadline computation and the client-side expiry countdown.

The guard only *proposes* expiry: before proposing it re-fetches the
authoritative status once, so that a payment which has just landed (but
has not reached the poll loop yet) is reported as PAID instead.
"""
import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

import structlog

from payment_reconciliation.core.reconciliation import (
    Observation,
    ObservationSource,
    PaymentStatus,
    as_utc,
    utcnow,
)

logger = structlog.get_logger(__name__)

# Channels that carry a payment deadline; cod never expires this way
DEADLINE_PAYMENT_TYPES = frozenset({"qris", "bank_transfer"})


def has_deadline(payment_type: Optional[str]) -> bool:
    return (payment_type or "").lower() in DEADLINE_PAYMENT_TYPES


def compute_deadline(
    created_at: datetime,
    timeout_minutes: int,
    expires_at: Optional[datetime] = None,
) -> datetime:
    """
    Deadline of an order's payment.

    The gateway-declared ``expires_at`` wins when present; otherwise the
    deadline is ``created_at + timeout_minutes``.
    """
    if expires_at is not None:
        return as_utc(expires_at)
    return as_utc(created_at) + timedelta(minutes=timeout_minutes)


def seconds_until(deadline: datetime, now: datetime) -> float:
    """Non-negative seconds left before ``deadline``."""
    return max(0.0, (as_utc(deadline) - as_utc(now)).total_seconds())


class ExpiryGuard:
    """
    Countdown that proposes exactly one expiry observation.

    Args:
        deadline: When the payment window closes
        refetch: Returns the authoritative payment status (one network call)
        on_observation: Receives the single observation the guard produces
        clock: Wall clock, injectable for tests
        tick_seconds: Upper bound on a single sleep, so clock jumps are noticed
    """

    def __init__(
        self,
        deadline: datetime,
        refetch: Callable[[], Awaitable[Optional[PaymentStatus]]],
        on_observation: Callable[[Observation], Awaitable[Any]],
        clock: Callable[[], datetime] = utcnow,
        tick_seconds: float = 1.0,
    ) -> None:
        self.deadline = as_utc(deadline)
        self._refetch = refetch
        self._on_observation = on_observation
        self._clock = clock
        self.tick_seconds = tick_seconds
        self._armed = False
        self._fired = False
        self._task: Optional[asyncio.Task] = None

    @property
    def armed(self) -> bool:
        return self._armed

    @property
    def fired(self) -> bool:
        return self._fired

    def time_remaining_seconds(self) -> float:
        return seconds_until(self.deadline, self._clock())

    def arm(self) -> None:
        """Start the countdown. A guard fires at most once in its lifetime."""
        if self._armed or self._fired:
            return
        self._armed = True
        self._task = asyncio.create_task(self._run(), name="expiry-guard")
        logger.debug(
            "expiry_guard_armed",
            deadline=self.deadline.isoformat(),
            remaining_seconds=self.time_remaining_seconds(),
        )

    def disarm(self) -> None:
        """Stop the countdown; a refetch already in flight is discarded."""
        self._armed = False
        task = self._task
        if task is not None and task is not asyncio.current_task() and not self._fired:
            task.cancel()

    async def wait(self) -> None:
        """Wait for the countdown task to finish."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise

    async def _run(self) -> None:
        while self._armed:
            remaining = self.time_remaining_seconds()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.tick_seconds, remaining))
        if self._armed:
            await self._fire()

    async def _fire(self) -> None:
        self._fired = True
        status: Optional[PaymentStatus] = None
        try:
            status = await self._refetch()
        except Exception as e:
            # The stored state is still protected by the conditional update
            logger.warning("expiry_refetch_failed", error=str(e))

        if not self._armed:
            logger.debug("expiry_refetch_discarded")
            return
        self._armed = False

        if status == PaymentStatus.PAID:
            logger.info("expiry_averted_by_payment")
            observation = Observation(ObservationSource.POLL, PaymentStatus.PAID.value)
        else:
            logger.info("expiry_proposed", deadline=self.deadline.isoformat())
            observation = Observation(ObservationSource.EXPIRY)
        await self._on_observation(observation)
