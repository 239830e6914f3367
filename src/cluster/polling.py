"""Deadline-bounded polling.

All waiting in the pipeline is synchronous polling on a fixed interval.
Clock and sleep are injectable so callers can be exercised without real
waits.
"""

import time
from typing import Callable, TypeVar

from tenacity import Retrying, retry_if_result

T = TypeVar("T")


def poll_until(
    probe: Callable[[], T],
    timeout: float,
    interval: float,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> T | None:
    """Call ``probe`` until it returns a truthy value or the deadline passes.

    The final probe runs at the deadline; sleeps never overshoot it.

    Args:
        probe: Zero-argument check; a falsy result means "not yet"
        timeout: Seconds from now until the deadline
        interval: Seconds between probes
        clock: Monotonic clock
        sleep: Sleep function

    Returns:
        The first truthy probe result, or None if the deadline passed
    """
    deadline = clock() + timeout

    def remaining_wait(retry_state) -> float:
        return min(interval, max(deadline - clock(), 0.0))

    retrying = Retrying(
        stop=lambda retry_state: clock() >= deadline,
        wait=remaining_wait,
        retry=retry_if_result(lambda result: not result),
        retry_error_callback=lambda retry_state: None,
        sleep=sleep,
    )
    return retrying(probe)
