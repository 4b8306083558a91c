"""Bounded exponential-backoff retry for fallible async operations."""

from __future__ import annotations

import asyncio
import logging
import random
import re
from typing import Awaitable, Callable, Optional, TypeVar

from . import constants
from .config import RetryConfig
from .errors import (
    AuthenticationError,
    ConnectionFailedError,
    FilamentDataError,
    FilamentNotFound,
    PathSecurityError,
    TransferAuthError,
    TransferConnectionError,
)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

RetryCallback = Callable[[int, BaseException, float], None]
Classifier = Callable[[BaseException], bool]

_RETRYABLE_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"ECONNREFUSED",
        r"ECONNRESET",
        r"ETIMEDOUT",
        r"ENOTFOUND",
        r"timeout",
        r"timed out",
        r"network",
        r"connection",
    )
]

# Errors that no amount of waiting will fix.
_TERMINAL_ERRORS = (
    AuthenticationError,
    TransferAuthError,
    FilamentDataError,
    FilamentNotFound,
    PathSecurityError,
)


def is_retryable(exc: BaseException) -> bool:
    """Classify an error as transient (worth retrying) or terminal."""

    if isinstance(exc, _TERMINAL_ERRORS):
        return False
    if isinstance(exc, (ConnectionFailedError, TransferConnectionError)):
        return True
    if isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError, OSError)):
        return True
    message = str(exc)
    return any(pattern.search(message) for pattern in _RETRYABLE_PATTERNS)


class RetryPolicy:
    """Retries an async operation with capped exponential backoff.

    ``max_retries`` counts retries after the first attempt, so an operation
    runs at most ``max_retries + 1`` times.
    """

    def __init__(
        self,
        *,
        max_retries: int = constants.RETRY_MAX_RETRIES,
        initial_delay: float = constants.RETRY_INITIAL_DELAY_SECONDS,
        max_delay: float = constants.RETRY_MAX_DELAY_SECONDS,
        backoff_multiplier: float = constants.RETRY_BACKOFF_MULTIPLIER,
        jitter_ratio: float = 0.0,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_retries = max_retries
        self.initial_delay = max(0.0, initial_delay)
        self.max_delay = max(self.initial_delay, max_delay)
        self.backoff_multiplier = max(1.0, backoff_multiplier)
        self.jitter_ratio = max(0.0, min(1.0, jitter_ratio))
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: RetryConfig, **overrides) -> "RetryPolicy":
        params = dict(
            max_retries=config.max_retries,
            initial_delay=config.initial_delay_seconds,
            max_delay=config.max_delay_seconds,
            backoff_multiplier=config.backoff_multiplier,
            jitter_ratio=config.jitter_ratio,
        )
        params.update(overrides)
        return cls(**params)

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""

        delay = min(
            self.initial_delay * (self.backoff_multiplier ** (attempt - 1)),
            self.max_delay,
        )
        if self.jitter_ratio > 0.0 and delay > 0.0:
            jitter = delay * self.jitter_ratio
            delay = random.uniform(max(0.0, delay - jitter), delay + jitter)
        return delay

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        on_retry: Optional[RetryCallback] = None,
    ) -> T:
        """Retry ``operation`` on any exception."""

        return await self._run(operation, on_retry=on_retry, classify=None)

    async def run_conditional(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        on_retry: Optional[RetryCallback] = None,
        classify: Classifier = is_retryable,
    ) -> T:
        """Retry ``operation`` only while ``classify`` deems the error transient."""

        return await self._run(operation, on_retry=on_retry, classify=classify)

    async def _run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        on_retry: Optional[RetryCallback],
        classify: Optional[Classifier],
    ) -> T:
        attempt = 0
        while True:
            try:
                return await operation()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if classify is not None and not classify(exc):
                    raise

                attempt += 1
                if attempt > self.max_retries:
                    LOGGER.warning("Giving up after %d attempt(s): %s", attempt, exc)
                    raise

                delay = self.delay_for(attempt)
                LOGGER.warning(
                    "Attempt %d failed: %s, retrying in %.1fs", attempt, exc, delay
                )
                if on_retry is not None:
                    on_retry(attempt, exc, delay)
                await self._sleep(delay)
