"""Utility functions and helpers for the ocnectl application."""
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple, Union

from ..errors import OcneError, WaitTimeoutError

logger = logging.getLogger("ocnectl.utils")

# A retryable function returns (value, fail_fast, error). A None error is success.
RetryFunc = Callable[[], Tuple[Any, bool, Optional[Exception]]]


class RetryError(WaitTimeoutError):
    """Raised when a retried function never succeeded before the deadline."""
    pass


@dataclass
class Linear:
    """Wait a fixed interval between attempts."""
    interval: float = 0.1
    timeout: float = 10.0

    def delays(self):
        while True:
            yield self.interval


@dataclass
class Exponential:
    """Start at ``start`` seconds and multiply by ``factor`` up to ``maximum``."""
    start: float = 0.1
    maximum: float = 10.0
    factor: float = 2.0
    timeout: float = 60.0

    def delays(self):
        current = self.start
        while True:
            yield current
            current = min(current * self.factor, self.maximum)


Strategy = Union[Linear, Exponential]


def retry(func: RetryFunc, strategy: Optional[Strategy] = None, sleep: Callable[[float], None] = time.sleep) -> Any:
    """Call ``func`` until it succeeds, asks to stop, or the strategy times out.

    Args:
        func: Callable returning ``(value, fail_fast, error)``
        strategy: Backoff strategy, 100ms linear for 10s by default
        sleep: Sleep function, replaceable for tests

    Returns:
        The value returned by the first successful call

    Raises:
        OcneError: The error from a fail-fast attempt, unchanged if it is already an OcneError
        RetryError: If the timeout was reached
    """
    strategy = strategy or Linear()
    deadline = time.monotonic() + strategy.timeout
    last_error: Optional[Exception] = None

    for delay in strategy.delays():
        value, fail_fast, err = func()
        if err is None:
            return value
        last_error = err
        if fail_fast:
            if isinstance(err, OcneError):
                raise err
            raise OcneError(str(err)) from err

        if time.monotonic() + delay > deadline:
            break
        logger.debug("Retrying after %.2fs: %s", delay, err)
        sleep(delay)

    raise RetryError(f"Timed out after {strategy.timeout}s: {last_error}") from last_error


def linear_retry_timeout(func: RetryFunc, timeout: float) -> Any:
    return retry(func, Linear(interval=1.0, timeout=timeout))
