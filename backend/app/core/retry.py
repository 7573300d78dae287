"""Reusable retry-with-backoff policy for outbound I/O."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from backend.app.core.log import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``base_delay * multiplier ** (attempt - 1)`` between attempts.

    ``give_up_on`` exceptions are raised immediately even when they also match
    ``retry_on``.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)
    give_up_on: Tuple[Type[BaseException], ...] = ()
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep, compare=False)

    def delays(self) -> list[float]:
        """Backoff delays that would be slept between attempts."""
        return [self.base_delay * (self.multiplier ** i) for i in range(max(0, self.max_attempts - 1))]

    def _should_retry(self, exc: BaseException) -> bool:
        if self.give_up_on and isinstance(exc, self.give_up_on):
            return False
        return isinstance(exc, self.retry_on)

    async def run(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        label: Optional[str] = None,
        **kwargs: Any,
    ) -> T:
        def _log_retry(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            logger.warning(
                "Attempt %s/%s failed for %s: %s",
                state.attempt_number,
                self.max_attempts,
                label or getattr(func, "__name__", "call"),
                exc,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.max_attempts)),
            wait=wait_exponential(multiplier=self.base_delay, exp_base=self.multiplier, min=0),
            retry=retry_if_exception(self._should_retry),
            before_sleep=_log_retry,
            sleep=self.sleep,
            reraise=True,
        )
        return await retrying(func, *args, **kwargs)


IMAGE_UPLOAD_POLICY = RetryPolicy(max_attempts=3, base_delay=1.0, multiplier=2.0)
