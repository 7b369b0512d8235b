"""
Retry Logic
Bounded exponential backoff for remote provider calls

Retries on:
- Rate limit errors (429)
- Service unavailable (503)

Strategy:
- Max 3 attempts in total (first call included)
- Exponential backoff: base * 2^(n-1) after attempt n (1s, 2s with the default base)
- A provider Retry-After hint stretches the wait, capped at max_retry_after
- Any other error propagates immediately
- Stateless: nothing is shared between execute() calls
"""
import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from relay.core.exceptions import DEFAULT_TRANSIENT_STATUS_CODES, is_transient_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExecutor:
    """
    Wraps a zero-argument coroutine factory with bounded retry.

    Usage:
        retry = RetryExecutor()
        page = await retry.execute(lambda: client.list_messages(space_id))

    The factory may be a coroutine function or any callable returning
    an awaitable; each attempt calls it again.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        is_transient: Optional[Callable[[BaseException], bool]] = None,
        transient_status_codes: Iterable[int] = DEFAULT_TRANSIENT_STATUS_CODES,
        max_retry_after: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_retry_after = max_retry_after
        self._sleep = sleep
        self._backoff = wait_exponential(multiplier=base_delay, exp_base=2)

        if is_transient is None:
            codes = frozenset(transient_status_codes)
            is_transient = lambda exc: is_transient_error(exc, codes)  # noqa: E731
        self._is_transient = is_transient

    def _wait(self, retry_state: RetryCallState) -> float:
        """Backoff delay, raised to the provider's Retry-After hint when one was sent."""
        delay = self._backoff(retry_state)
        error = retry_state.outcome.exception() if retry_state.outcome else None
        hint = getattr(error, "retry_after", None)
        if hint:
            delay = max(delay, min(float(hint), self.max_retry_after))
        return delay

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception(self._is_transient),
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run `operation`, retrying transient failures.

        Returns:
            Whatever the operation returns

        Raises:
            The last transient error once attempts are exhausted,
            or any permanent error immediately.
        """
        # tenacity only awaits coroutine functions, so lambdas get wrapped
        async def _attempt() -> T:
            return await operation()

        try:
            return await self._retrying()(_attempt)
        except Exception as e:
            if self._is_transient(e):
                logger.error(f"❌ Max retries ({self.max_attempts}) reached for remote call: {e}")
            raise
