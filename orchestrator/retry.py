"""Bounded retry with exponential backoff for external operations."""

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from tools.base import ExecutionError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# attempt number, error (None on success), whether another attempt follows
AttemptCallback = Callable[[int, ExecutionError | None, bool], None]


@dataclass(frozen=True)
class BackoffSpec:
    """Exponential backoff with jitter.

    The delay before attempt ``n + 1`` is ``base * multiplier ** (n - 1)``
    capped at ``cap``, then reduced by up to ``jitter`` of itself at random.
    """

    base: float = 1.0
    cap: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.5

    def __post_init__(self) -> None:
        if self.base < 0 or self.cap < 0:
            raise ValueError("Backoff base and cap must be >= 0")
        if self.multiplier < 1:
            raise ValueError("Backoff multiplier must be >= 1")
        if not 0 <= self.jitter <= 1:
            raise ValueError("Backoff jitter must be within [0, 1]")

    def delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """Seconds to wait after failed attempt number ``attempt``."""
        raw = min(self.cap, self.base * self.multiplier ** (attempt - 1))
        if self.jitter == 0 or raw == 0:
            return raw
        return (rng or random).uniform(raw * (1 - self.jitter), raw)


class ExhaustedError(Exception):
    """Raised when an operation did not succeed within its retry budget.

    Also raised after a single attempt for non-transient failures, and when
    the retry loop is cancelled while backing off.
    """

    def __init__(self, attempts: int, last_error: ExecutionError, cancelled: bool = False) -> None:
        self.attempts = attempts
        self.last_error = last_error
        self.cancelled = cancelled
        reason = "cancelled" if cancelled else "exhausted"
        super().__init__(f"{reason} after {attempts} attempt(s): {last_error}")


class RetryPolicy:
    """Runs an operation up to ``max_attempts`` times.

    Only transient failures (timeouts, network blips) are retried; anything
    else short-circuits on the first attempt.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        backoff: BackoffSpec | None = None,
        sleep: Callable[[float], None] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize retry policy.

        Args:
            max_attempts: Maximum attempts, at least 1
            backoff: Backoff between attempts
            sleep: Replacement for the backoff wait (tests)
            rng: Random source for jitter
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.backoff = backoff or BackoffSpec()
        self._sleep = sleep
        self._rng = rng

    def _wait(self, delay: float, cancel_event: threading.Event | None) -> bool:
        """Back off for ``delay`` seconds. Returns True if cancelled."""
        if self._sleep is not None:
            self._sleep(delay)
            return bool(cancel_event and cancel_event.is_set())
        if cancel_event is not None:
            return cancel_event.wait(delay)
        time.sleep(delay)
        return False

    def run(
        self,
        op: Callable[[], T],
        on_attempt: AttemptCallback | None = None,
        cancel_event: threading.Event | None = None,
    ) -> T:
        """Run ``op`` with retries.

        Args:
            op: Operation raising ExecutionError on failure
            on_attempt: Called once per attempt with its outcome; a failed
                attempt is reported after its backoff, with will_retry
                False if the wait was cancelled
            cancel_event: Interrupts the backoff wait when set

        Returns:
            The first successful result

        Raises:
            ExhaustedError: If every permitted attempt failed
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = op()
            except ExecutionError as e:
                if not (e.transient and attempt < self.max_attempts):
                    if on_attempt:
                        on_attempt(attempt, e, False)
                    if not e.transient:
                        logger.info("RETRY: attempt %d failed permanently: %s", attempt, e)
                    raise ExhaustedError(attempt, e) from e

                delay = self.backoff.delay(attempt, self._rng)
                logger.info(
                    "RETRY: attempt %d/%d failed (%s), retrying in %.2fs",
                    attempt,
                    self.max_attempts,
                    e,
                    delay,
                )
                # The attempt is reported once the backoff settles whether it is retried
                cancelled = self._wait(delay, cancel_event)
                if on_attempt:
                    on_attempt(attempt, e, not cancelled)
                if cancelled:
                    raise ExhaustedError(attempt, e, cancelled=True) from e
            else:
                if on_attempt:
                    on_attempt(attempt, None, False)
                return result

        # max_attempts >= 1 so the loop always returns or raises
        raise AssertionError("unreachable")
