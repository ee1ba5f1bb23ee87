"""
Ordered UI signals after a successful payment.

confirmed -> (grace) -> show_confirmation -> (progress) -> complete.
External callers synchronise on this order, so it is fixed.
"""
import asyncio
from enum import Enum
from typing import Callable, List, Optional

import structlog

logger = structlog.get_logger(__name__)


class PresentationSignal(str, Enum):
    IDLE = "idle"
    CONFIRMED = "confirmed"
    SHOW_CONFIRMATION = "show_confirmation"
    COMPLETE = "complete"


class PresentationSequencer:
    """Emits the post-payment signal sequence once; cancelling aborts it."""

    def __init__(
        self,
        emit: Optional[Callable[[PresentationSignal], None]] = None,
        grace_seconds: float = 1.0,
        progress_seconds: float = 1.0,
        progress_steps: int = 10,
    ) -> None:
        self._emit = emit
        self.grace_seconds = grace_seconds
        self.progress_seconds = progress_seconds
        self.progress_steps = max(1, progress_steps)
        self.signal = PresentationSignal.IDLE
        self.progress = 0.0
        self.history: List[PresentationSignal] = []
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    @property
    def completed(self) -> bool:
        return self.signal == PresentationSignal.COMPLETE

    def _signal(self, signal: PresentationSignal) -> None:
        self.signal = signal
        self.history.append(signal)
        logger.debug("presentation_signal", signal=signal.value)
        if self._emit is not None:
            self._emit(signal)

    async def run(self) -> None:
        """Run the sequence; later calls are no-ops."""
        if self._started:
            return
        self._started = True

        self._signal(PresentationSignal.CONFIRMED)
        await asyncio.sleep(self.grace_seconds)
        self._signal(PresentationSignal.SHOW_CONFIRMATION)

        step = self.progress_seconds / self.progress_steps
        for i in range(self.progress_steps):
            await asyncio.sleep(step)
            self.progress = (i + 1) / self.progress_steps

        self._signal(PresentationSignal.COMPLETE)
