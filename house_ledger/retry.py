import asyncio
import random
import time
from typing import Callable, Optional, Tuple, Type

from house_ledger.config import settings
from house_ledger.errors import LedgerError
from house_ledger.logging_config import get_logger

logger = get_logger(__name__)


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, LedgerError) and bool(exc.retryable)


class RetryPolicy:
    """
    Bounded exponential backoff with jitter.

    ``max_attempts`` counts the first call, so ``max_attempts=3`` means one call
    plus at most two retries. Only exceptions accepted by ``should_retry`` are
    retried; everything else propagates on the first raise.
    """

    def __init__(
        self,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        max_backoff_seconds: float | None = None,
        jitter: bool = True,
        should_retry: Callable[[BaseException], bool] = is_retryable,
        retry_on: Tuple[Type[BaseException], ...] = (LedgerError,),
        sleep: Callable[[float], None] = time.sleep,
        async_sleep: Optional[Callable] = None,
    ):
        self.max_attempts = max(1, max_attempts if max_attempts is not None else settings.max_retries)
        self.backoff_seconds = backoff_seconds if backoff_seconds is not None else settings.retry_backoff_seconds
        self.max_backoff_seconds = (
            max_backoff_seconds if max_backoff_seconds is not None else settings.retry_max_backoff_seconds
        )
        self.jitter = jitter
        self.should_retry = should_retry
        self.retry_on = retry_on
        self._sleep = sleep
        self._async_sleep = async_sleep or asyncio.sleep

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = min(self.backoff_seconds * (2 ** (attempt - 1)), self.max_backoff_seconds)
        if self.jitter:
            delay = random.uniform(delay / 2, delay)
        return delay

    def _give_up(self, exc: BaseException, attempt: int) -> bool:
        return not self.should_retry(exc) or attempt >= self.max_attempts

    def call(self, fn: Callable, *args, **kwargs):
        attempt = 1
        while True:
            try:
                return fn(*args, **kwargs)
            except self.retry_on as exc:
                if self._give_up(exc, attempt):
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "Transient failure in %s attempt=%s/%s retry_in=%.3fs error=%s",
                    getattr(fn, "__name__", fn),
                    attempt,
                    self.max_attempts,
                    delay,
                    exc,
                )
                self._sleep(delay)
                attempt += 1

    async def call_async(self, fn: Callable, *args, **kwargs):
        attempt = 1
        while True:
            try:
                return await fn(*args, **kwargs)
            except self.retry_on as exc:
                if self._give_up(exc, attempt):
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "Transient failure in %s attempt=%s/%s retry_in=%.3fs error=%s",
                    getattr(fn, "__name__", fn),
                    attempt,
                    self.max_attempts,
                    delay,
                    exc,
                )
                await self._async_sleep(delay)
                attempt += 1
