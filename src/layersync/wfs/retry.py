"""RetryPolicy — exponential backoff shared by every query site."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from loguru import logger

from layersync.wfs.cancellation import CancelToken
from layersync.wfs.errors import NetworkFailure, NetworkTimeout, ServiceError

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry transient query failures with capped exponential backoff.

    Attributes:
        max_attempts: Total attempts including the first one (>= 1).
        backoff_base: Delay before the first retry, in seconds. Doubles per retry.
        backoff_max: Upper bound for a single delay, in seconds.
    """

    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 8.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_base < 0 or self.backoff_max < 0:
            raise ValueError("backoff delays must be >= 0")

    @classmethod
    def none(cls) -> "RetryPolicy":
        return cls(max_attempts=1, backoff_base=0.0, backoff_max=0.0)

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1-based)."""
        return min(self.backoff_base * (2 ** (retry_number - 1)), self.backoff_max)

    @staticmethod
    def is_retryable(exc: BaseException) -> bool:
        if isinstance(exc, (NetworkTimeout, NetworkFailure)):
            return True
        if isinstance(exc, ServiceError):
            return exc.retryable
        return False

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        label: str = "",
        cancel_token: Optional[CancelToken] = None,
    ) -> T:
        """Run ``operation`` until it succeeds or attempts are exhausted.

        Non-retryable errors (including ``Cancelled``) propagate immediately.
        The backoff sleep is bound to ``cancel_token``; cancelling it during a
        backoff raises ``Cancelled`` at once.
        """
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as e:
                if attempt >= self.max_attempts or not self.is_retryable(e):
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    f"{label or 'query'} failed ({type(e).__name__}: {e}); "
                    f"retrying in {delay:.2f}s (attempt {attempt + 1}/{self.max_attempts})"
                )
                attempt += 1
                if cancel_token is not None:
                    await cancel_token.run(asyncio.sleep(delay))
                else:
                    await asyncio.sleep(delay)
