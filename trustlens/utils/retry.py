"""Retry and backoff policy shared by adapters, queue nacks and webhook delivery.

One RetryPolicy instance decides how many attempts an operation gets and how
long to wait between them, so the backoff curve is configured in one place.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple, Type

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with a cap.

    Attributes:
        max_attempts: Total attempts allowed, including the first one
        base_delay: Delay in seconds before the first retry
        max_delay: Upper bound for any single delay
    """

    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 60.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")

    def delay_for(self, attempt: int) -> float:
        """Return the backoff delay after ``attempt`` failed attempts.

        The delay is ``base_delay * 2 ** (attempt - 1)``, so the first retry
        waits ``base_delay`` and each later retry doubles it, up to
        ``max_delay``.
        """
        if attempt < 1:
            return 0.0
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    def is_exhausted(self, attempts: int) -> bool:
        """True when ``attempts`` attempts have used up the policy."""
        return attempts >= self.max_attempts

    def call(
        self,
        func: Callable[..., Any],
        *args: Any,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        deadline: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        description: str = "operation",
        **kwargs: Any,
    ) -> Any:
        """Call ``func`` until it succeeds or the policy is exhausted.

        Args:
            func: Callable to invoke
            retry_on: Exception types that trigger a retry; anything else
                propagates immediately
            deadline: Optional absolute deadline on ``clock``; no retry is
                scheduled if its delay would end past the deadline
            clock: Monotonic clock used for the deadline check
            sleep: Sleep function (injectable for tests)
            description: Label used in log messages

        Returns:
            Whatever ``func`` returns

        Raises:
            The last exception raised by ``func`` once retries stop.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return func(*args, **kwargs)
            except retry_on as e:
                if self.is_exhausted(attempt):
                    logger.warning(f"{description} failed after {attempt} attempt(s): {e}")
                    raise

                delay = self.delay_for(attempt)
                if deadline is not None and clock() + delay >= deadline:
                    logger.warning(
                        f"{description} failed on attempt {attempt}; "
                        f"no time left before deadline for a retry: {e}"
                    )
                    raise

                logger.info(
                    f"{description} failed on attempt {attempt}/{self.max_attempts}, "
                    f"retrying in {delay:.2f}s: {e}"
                )
                sleep(delay)
