"""
Bounded retry helper.

Used only at the connection boundary (Wi-Fi association and device
handshake). Exchanges and polls are never retried through this helper.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RetryCancelled(Exception):
    """The cancel event was set between attempts."""


@dataclass(frozen=True)
class RetryPolicy:
    """
    Fixed-delay bounded retry.

    Attributes:
        max_attempts: Total number of attempts (not retries after the first)
        delay: Seconds to wait between attempts
        retry_on: Exception types that trigger another attempt; anything
            else propagates immediately

    Example:
        >>> policy = RetryPolicy(max_attempts=3, delay=0.5, retry_on=(TimeoutError,))
        >>> version = policy.run(lambda attempt: handshake(), cancel_event)
    """

    max_attempts: int
    delay: float
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)

    def run(
        self,
        fn: Callable[[int], T],
        cancel_event: Optional[threading.Event] = None,
        description: str = "operation"
    ) -> T:
        """
        Call ``fn(attempt)`` until it returns or attempts are exhausted.

        Args:
            fn: Callable receiving the 1-based attempt number
            cancel_event: When set, waiting stops and RetryCancelled is raised
            description: Name used in log messages

        Returns:
            The first successful return value of ``fn``

        Raises:
            RetryCancelled: If cancelled before success
            Exception: The last error from ``fn`` once attempts are exhausted
        """
        attempts = max(1, self.max_attempts)
        for attempt in range(1, attempts + 1):
            if cancel_event is not None and cancel_event.is_set():
                raise RetryCancelled(f"{description} cancelled")
            try:
                return fn(attempt)
            except self.retry_on as e:
                if attempt >= attempts:
                    logger.error(f"{description} failed after {attempts} attempts: {e}")
                    raise
                logger.warning(
                    f"{description} attempt {attempt}/{attempts} failed: {e}; "
                    f"retrying in {self.delay}s"
                )
            if self.delay > 0:
                if cancel_event is not None:
                    if cancel_event.wait(self.delay):
                        raise RetryCancelled(f"{description} cancelled")
                else:
                    time.sleep(self.delay)
        raise RuntimeError("unreachable")
