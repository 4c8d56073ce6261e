"""A single wait-with-deadline primitive used by every polling call site."""

import time
from typing import Callable, Optional, TypeVar

T = TypeVar("T")


class WaitTimeout(Exception):
    """Raised when a condition did not become truthy before the deadline."""

    def __init__(self, description: str, timeout: float):
        super().__init__(f"timed out after {timeout:g}s waiting for {description}")
        self.description = description
        self.timeout = timeout


def wait_for(
    condition: Callable[[], Optional[T]],
    timeout: float,
    interval: float = 1.0,
    description: str = "condition",
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``condition`` until it returns a truthy value or time runs out.

    The condition is always evaluated at least once, and once more right at
    the deadline, so a zero timeout still performs a single check.

    Args:
        condition: Zero-argument callable; its first truthy result is returned.
        timeout: Upper bound in seconds.
        interval: Pause between evaluations.
        description: Used in the timeout message.
        clock: Monotonic time source (injectable for tests).
        sleep: Sleep function (injectable for tests).

    Returns:
        The first truthy value returned by ``condition``.

    Raises:
        WaitTimeout: If the deadline passes first.
    """
    deadline = clock() + timeout
    while True:
        result = condition()
        if result:
            return result
        remaining = deadline - clock()
        if remaining <= 0:
            raise WaitTimeout(description, timeout)
        sleep(min(interval, remaining))
