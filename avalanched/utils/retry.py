"""
Time, cancellation and retry primitives shared by every stage.

Every blocking wait in the agent goes through a `Clock` and honours a
`CancelToken`, so the whole boot sequence can be driven by a fake clock in
tests and torn down promptly on SIGTERM.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

import bittensor as bt

from avalanched.errors import CancelledError, TransientError

T = TypeVar("T")


class CancelToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Block up to `timeout` seconds; True if cancelled meanwhile."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError("operation cancelled")


class Clock:
    """Wall/monotonic time plus a cancellable sleep."""

    def time(self) -> float:
        return time.time()

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float, cancel: Optional[CancelToken] = None) -> bool:
        """Sleep; returns False if woken early by cancellation."""
        seconds = max(0.0, float(seconds))
        if cancel is None:
            time.sleep(seconds)
            return True
        return not cancel.wait(seconds)


SYSTEM_CLOCK = Clock()


class Deadline:
    def __init__(self, clock: Clock, timeout_s: Optional[float]) -> None:
        self._clock = clock
        self._expires_at = None if timeout_s is None else clock.monotonic() + float(timeout_s)

    @property
    def bounded(self) -> bool:
        return self._expires_at is not None

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock.monotonic())

    @property
    def expired(self) -> bool:
        return self._expires_at is not None and self._clock.monotonic() >= self._expires_at


@dataclass(frozen=True)
class Backoff:
    initial_s: float = 1.0
    max_s: float = 30.0
    multiplier: float = 2.0

    @classmethod
    def fixed(cls, delay_s: float) -> "Backoff":
        return cls(initial_s=delay_s, max_s=delay_s, multiplier=1.0)

    def delay(self, attempt: int) -> float:
        # attempt is 1-based: the delay after the first failure is initial_s.
        n = max(1, int(attempt))
        return min(self.max_s, self.initial_s * (self.multiplier ** (n - 1)))


def retry_call(
    fn: Callable[[], T],
    *,
    attempts: int,
    backoff: Backoff,
    clock: Clock = SYSTEM_CLOCK,
    cancel: Optional[CancelToken] = None,
    deadline: Optional[Deadline] = None,
    retry_on: Tuple[Type[BaseException], ...] = (TransientError,),
    describe: str = "operation",
) -> T:
    """
    Call `fn` until it succeeds, retrying only `retry_on` errors.

    `attempts <= 0` means unbounded (only a deadline or cancellation stops it).
    The last retryable error is re-raised once the budget is spent.
    """
    attempt = 0
    while True:
        if cancel is not None:
            cancel.raise_if_cancelled()
        attempt += 1
        try:
            return fn()
        except retry_on as exc:
            exhausted = attempts > 0 and attempt >= attempts
            if exhausted or (deadline is not None and deadline.expired):
                bt.logging.error(f"{describe} failed after {attempt} attempt(s): {exc}")
                raise
            delay = backoff.delay(attempt)
            if deadline is not None and deadline.bounded:
                delay = min(delay, deadline.remaining() or 0.0)
            budget = "unbounded" if attempts <= 0 else str(attempts)
            bt.logging.warning(f"{describe} attempt {attempt}/{budget} failed: {exc}; retrying in {delay:.1f}s")
            if not clock.sleep(delay, cancel):
                raise CancelledError(f"{describe} cancelled")
