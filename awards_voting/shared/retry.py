"""
Retry and backoff policy for data store calls.

Transient failures (timeouts, dropped connections, generic store errors) are
retried with capped exponential backoff. Business-rule failures and constraint
violations are raised immediately: retrying them would be incorrect.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from prometheus_client import Counter

from ..config import settings
from ..data_store.base import StoreError
from .errors import ConnectionFailure, VotingError

logger = logging.getLogger(__name__)

T = TypeVar('T')

store_retries = Counter(
    'store_call_retries_total',
    'Data store calls retried after a transient failure',
    ['operation']
)

store_failures = Counter(
    'store_call_failures_total',
    'Data store calls that exhausted their retries',
    ['operation']
)


class Backoff:
    """Capped exponential delay: base, 2*base, 4*base ... up to max_delay."""

    def __init__(self, base_delay: float, max_delay: float, max_attempts: int):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)


def is_transient(error: BaseException) -> bool:
    """
    Decide whether a failure is worth retrying.

    Args:
        error: The exception raised by the operation

    Returns:
        bool: True for timeouts, connection errors and retryable store errors
    """
    if isinstance(error, VotingError):
        return False
    if isinstance(error, StoreError):
        return error.retryable
    return isinstance(error, (asyncio.TimeoutError, ConnectionError, OSError))


class RetryPolicy:
    """Bounded retry with a per-attempt timeout."""

    def __init__(
        self,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        max_attempts: Optional[int] = None,
        timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.backoff = Backoff(
            base_delay if base_delay is not None else settings.RETRY_BASE_DELAY_SECONDS,
            max_delay if max_delay is not None else settings.RETRY_MAX_DELAY_SECONDS,
            max_attempts if max_attempts is not None else settings.RETRY_MAX_ATTEMPTS,
        )
        self.timeout = timeout if timeout is not None else settings.STORE_TIMEOUT_SECONDS
        self.sleep = sleep

    @property
    def max_attempts(self) -> int:
        return self.backoff.max_attempts

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str = 'store call',
        **context: Any
    ) -> T:
        """
        Run ``operation`` until it succeeds, fails permanently or attempts run out.

        Args:
            operation: Zero-argument coroutine factory
            description: Short name used in logs and metrics
            **context: Extra fields attached to a ConnectionFailure

        Returns:
            The operation's result

        Raises:
            ConnectionFailure: transient failures exhausted every attempt
        """
        last_error: Optional[BaseException] = None

        for attempt in range(self.max_attempts):
            try:
                return await asyncio.wait_for(operation(), timeout=self.timeout)
            except Exception as e:
                if not is_transient(e):
                    raise
                last_error = e

            if attempt == self.max_attempts - 1:
                break

            delay = self.backoff.delay(attempt)
            store_retries.labels(operation=description).inc()
            logger.warning(
                f"{description} failed (attempt {attempt + 1}/{self.max_attempts}), "
                f"retrying in {delay:.1f}s: {last_error!r}"
            )
            await self.sleep(delay)

        store_failures.labels(operation=description).inc()
        logger.error(f"{description} failed after {self.max_attempts} attempts: {last_error!r}")
        raise ConnectionFailure(
            f"{description} failed after {self.max_attempts} attempts",
            **context
        ) from last_error
