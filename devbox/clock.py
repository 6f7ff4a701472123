"""Time, ticks and bounded polling.

Every wait in devbox is an attempt count times a fixed delay. Components
receive a :class:`Clock` so tests can drive them with a fake clock instead
of real wall-clock sleeps.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Protocol

from loguru import logger
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

log = logger.bind(component="clock")


class Clock(Protocol):
    def now(self) -> float: ...
    def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall-clock time in UNIX seconds."""

    def now(self) -> float:
        return time.time()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


class Ticker:
    """Fixed-interval timer driving a callback until it asks to stop.

    The callback runs immediately, then once per ``interval``. It returns
    ``True`` to keep ticking and ``False`` to stop.
    """

    __slots__ = ("_interval", "_clock")

    def __init__(self, interval: float, clock: Clock) -> None:
        self._interval = interval
        self._clock = clock

    def run(self, callback: Callable[[], bool]) -> int:
        """Run until ``callback`` returns ``False``. Returns the tick count."""
        ticks = 0
        while True:
            ticks += 1
            if not callback():
                return ticks
            self._clock.sleep(self._interval)


def poll(
    check: Callable[[], bool],
    *,
    attempts: int,
    interval: float,
    clock: Clock,
    description: str = "resource",
) -> bool:
    """Call ``check`` until it returns ``True`` or ``attempts`` run out.

    Exhaustion is not an error: the caller decides whether "not yet" is a
    warning or a failure.

    Returns:
        ``True`` if ``check`` succeeded within ``attempts`` tries.
    """

    def _before_sleep(state: RetryCallState) -> None:
        log.info(
            "Waiting for {what}... ({n}/{total})",
            what=description, n=state.attempt_number, total=attempts,
        )

    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_fixed(interval),
        retry=retry_if_result(lambda ok: not ok),
        sleep=clock.sleep,
        before_sleep=_before_sleep,
        retry_error_callback=lambda _: False,
    )
    return bool(retrying(check))
