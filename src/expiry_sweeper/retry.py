# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Retry with exponential backoff for transient Redis failures.

Only StoreError instances flagged transient are retried. Anything else
propagates on the first attempt.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from expiry_sweeper.errors import StoreError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetrySettings:
    """
    Backoff settings.

    Attributes:
        attempts: Total attempts including the first one
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for a single delay, in seconds
        backoff_factor: Multiplier applied after each retry
        jitter: Randomise each delay in [delay/2, delay]
    """

    attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 10.0
    backoff_factor: float = 2.0
    jitter: bool = True


class RetryPolicy:
    """Runs an async operation, retrying transient store errors.

    Example:
        policy = RetryPolicy(RetrySettings(attempts=3))
        key_type = await policy.run(lambda: typed_read(client, key), name="TYPE")
    """

    def __init__(
        self,
        settings: Optional[RetrySettings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings or RetrySettings()
        self._sleep = sleep

    def delay_for(self, retry: int) -> float:
        """Backoff before the given retry (1-based), before jitter."""
        delay = self.settings.base_delay * (self.settings.backoff_factor ** (retry - 1))
        return min(delay, self.settings.max_delay)

    async def run(self, operation: Callable[[], Awaitable[Any]], name: str = "operation") -> Any:
        """Await operation(), retrying while it raises a transient StoreError.

        Raises:
            StoreError: The last error once attempts are exhausted, or the
                first non-transient one.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except StoreError as e:
                if not e.transient or attempt >= self.settings.attempts:
                    raise

                delay = self.delay_for(attempt)
                if self.settings.jitter:
                    delay = random.uniform(delay / 2, delay)
                logger.warning(
                    f"[{name}] Retry {attempt}/{self.settings.attempts - 1} "
                    f"in {delay:.2f}s after: {e}"
                )
                await self._sleep(delay)
