"""Cancellable poll loop over the persisted order status."""
import asyncio
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

import structlog

from payment_reconciliation.core.reconciliation import SideEffect
from payment_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class PollLoop(Generic[T]):
    """
    Repeating fetch owned by a single view.

    Every ``interval`` seconds it performs one fetch and hands the result
    to ``on_result``, which answers with the side effect the result caused.
    A terminal side effect (or ``stop()``) ends the loop for good; a loop
    is never restarted.

    An in-flight fetch is allowed to finish after ``stop()``; its result is
    then discarded instead of being delivered.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[T]],
        on_result: Callable[[T], Awaitable[Optional[SideEffect]]],
        interval: float = 2.0,
        name: str = "poll",
    ) -> None:
        self._fetch = fetch
        self._on_result = on_result
        self.interval = interval
        self.name = name
        self._task: Optional[asyncio.Task] = None
        self._stopped = False
        self._in_flight = False
        self.ticks = 0

    @property
    def active(self) -> bool:
        return self._task is not None and not self._stopped

    @property
    def stopped(self) -> bool:
        return self._stopped

    def start(self) -> None:
        if self._task is not None or self._stopped:
            return
        self._task = asyncio.create_task(self._run(), name=self.name)
        logger.debug("poll_loop_started", loop=self.name, interval=self.interval)

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        task = self._task
        if task is not None and task is not asyncio.current_task() and not self._in_flight:
            task.cancel()
        logger.debug("poll_loop_stopped", loop=self.name, ticks=self.ticks)

    async def wait(self) -> None:
        """Wait for the loop task to finish (after stop or a terminal result)."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise

    async def _run(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self.interval)
            if self._stopped:
                break
            self.ticks += 1

            self._in_flight = True
            try:
                result: Any = await self._fetch()
            except Exception as e:
                metrics.record_poll_tick("failed")
                logger.warning("poll_tick_failed", loop=self.name, tick=self.ticks, error=str(e))
                continue
            finally:
                self._in_flight = False

            if self._stopped:
                metrics.record_poll_tick("discarded")
                logger.debug("poll_result_discarded", loop=self.name, tick=self.ticks)
                break

            try:
                effect = await self._on_result(result)
            except Exception as e:
                metrics.record_poll_tick("handler_failed")
                logger.error(
                    "poll_result_handler_failed", loop=self.name, tick=self.ticks, error=str(e)
                )
                continue
            metrics.record_poll_tick("ok")
            if effect is not None and effect.is_terminal:
                self._stopped = True
                logger.info("poll_loop_finished", loop=self.name, side_effect=effect.value)
