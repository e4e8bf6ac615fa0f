"""Bounded exponential backoff around remote store operations."""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from convosync.config import settings
from convosync.errors import (
    ConversationNotFound,
    InvalidArgument,
    PermissionDenied,
    RetriesExhausted,
    StoreUnavailable,
)
from convosync.sanitizer import SanitizeLevel

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[SanitizeLevel], Awaitable[T]]


class RetryController:
    """Retry policy for remote writes.

    Each attempt receives the sanitize level to apply. Invalid-argument
    failures escalate the level, transient failures keep it; permission and
    not-found failures are re-raised at once. After the final attempt fails,
    RetriesExhausted carries the last error.
    """

    def __init__(
        self,
        max_retries: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_retries = max(1, max_retries if max_retries is not None else settings.max_retries)
        self.base_delay = base_delay if base_delay is not None else settings.retry_base_delay
        self.max_delay = max_delay if max_delay is not None else settings.retry_max_delay
        self._sleep = sleep

    def backoff(self, attempt: int) -> float:
        """Delay in seconds after failed attempt number `attempt` (1-based)."""
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)

    async def run(self, operation: Operation[T], description: str) -> T:
        level = SanitizeLevel.NONE
        last_error: Exception | None = None

        for attempt in range(1, self.max_retries + 1):
            try:
                logger.debug(f"{description}: attempt {attempt}/{self.max_retries}")
                return await operation(level)
            except (PermissionDenied, ConversationNotFound):
                raise
            except InvalidArgument as e:
                logger.warning(
                    f"{description}: invalid argument on attempt {attempt}/{self.max_retries}, "
                    f"sanitizing further: {e}"
                )
                level = level.escalate()
                last_error = e
            except StoreUnavailable as e:
                logger.warning(f"{description}: store unavailable on attempt {attempt}/{self.max_retries}: {e}")
                last_error = e

            if attempt < self.max_retries:
                await self._sleep(self.backoff(attempt))

        logger.warning(f"{description}: giving up after {self.max_retries} attempts")
        raise RetriesExhausted(description, self.max_retries, last_error)
