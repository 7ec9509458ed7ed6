import asyncio
import inspect
from typing import Any, Callable, Optional

from constants import RECONNECT_BASE_DELAY_SECONDS, RECONNECT_STEP_SECONDS
from errors import ReconnectTimedOut
from logging_config import get_logger

logger = get_logger(__name__)


class ReconnectPolicy:
    """Bounded linear backoff with one pending timer at a time.

    failed() schedules retry() after base_delay + attempt * step and bumps the
    attempt counter. Once max_attempts retries have been spent the next
    failure calls on_give_up with ReconnectTimedOut and the counter starts
    over, so an unrelated later failure begins again at attempt 0.
    succeeded() cancels the pending timer and resets the counter.
    """

    def __init__(
        self,
        retry: Callable[[], Any],
        on_give_up: Callable[[ReconnectTimedOut], None],
        max_attempts: int,
        base_delay: float = RECONNECT_BASE_DELAY_SECONDS,
        step: float = RECONNECT_STEP_SECONDS,
        call_later: Optional[Callable] = None,
        name: str = "link",
    ):
        self.retry = retry
        self.on_give_up = on_give_up
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.step = step
        self.name = name
        self.attempt = 0
        self._call_later = call_later
        self._timer = None
        self._task: Optional[asyncio.Future] = None

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def delay_for(self, attempt: int) -> float:
        return self.base_delay + attempt * self.step

    def failed(self) -> Optional[float]:
        """Record a transport failure. Returns the scheduled delay, or None after giving up."""
        self._cancel_timer()
        if self.attempt >= self.max_attempts:
            attempts = self.attempt
            self.attempt = 0
            logger.error(f"Reconnect of {self.name} timed out after {attempts} attempts")
            self.on_give_up(ReconnectTimedOut(attempts))
            return None

        delay = self.delay_for(self.attempt)
        self.attempt += 1
        call_later = self._call_later or asyncio.get_running_loop().call_later
        self._timer = call_later(delay, self._fire)
        logger.info(f"Reconnect attempt {self.attempt}/{self.max_attempts} for {self.name} in {delay:.2f}s")
        return delay

    def succeeded(self):
        if self.attempt:
            logger.info(f"Reconnected {self.name} after {self.attempt} attempts")
        self._cancel_timer()
        self.attempt = 0

    def cancel(self):
        self._cancel_timer()
        self.attempt = 0

    def _fire(self):
        self._timer = None
        result = self.retry()
        if inspect.isawaitable(result):
            self._task = asyncio.ensure_future(result)

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
