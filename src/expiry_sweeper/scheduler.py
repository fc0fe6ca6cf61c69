# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Sweep scheduling logic.

Runs the sweeper once a day at local midnight. The delay to the next
midnight is recomputed from the wall clock before every run, so the
schedule stays aligned across DST changes and long sweeps. Runs missed
while the process was down are not caught up.
"""

import asyncio
import logging
from datetime import datetime, time, timedelta
from typing import Any, Awaitable, Callable, Optional

from expiry_sweeper.sweeper import Sweeper, SweepResult

logger = logging.getLogger(__name__)


class SweepScheduler:
    """Scheduler for daily sweep runs.

    Naive datetimes are local wall-clock time; aware datetimes use their
    own timezone.

    Attributes:
        sweeper: Sweeper invoked once per day
        runs: Completed sweep cycles

    Example:
        >>> scheduler = SweepScheduler(sweeper)
        >>> scheduler.seconds_until_next_run(datetime(2025, 3, 1, 22, 30))
        5400.0
        >>> await scheduler.run_forever()
    """

    def __init__(
        self,
        sweeper: Sweeper,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize the scheduler.

        Args:
            sweeper: Sweeper to run.
            clock: Returns the current local time.
            sleep: Coroutine used to wait (replaceable in tests).
        """
        self.sweeper = sweeper
        self.runs = 0
        self._clock = clock
        self._sleep = sleep

    def next_run(self, now: Optional[datetime] = None) -> datetime:
        """Calculate the next midnight strictly after now.

        Args:
            now: Reference time (defaults to the clock).

        Returns:
            Datetime of the next scheduled run, in now's timezone.
        """
        now = now or self._clock()
        tomorrow = now.date() + timedelta(days=1)
        return datetime.combine(tomorrow, time(), tzinfo=now.tzinfo)

    def seconds_until_next_run(self, now: Optional[datetime] = None) -> float:
        """Seconds to wait before the next run (never negative).

        Uses POSIX timestamps so a DST shift between now and midnight is
        accounted for.
        """
        now = now or self._clock()
        return max(0.0, self.next_run(now).timestamp() - now.timestamp())

    async def run_once(self) -> SweepResult:
        """Run one sweep cycle now."""
        result = await self.sweeper.sweep()
        self.runs += 1
        if not result.ok:
            logger.warning(
                f"Sweep completed with {len(result.failed)} failed keys "
                f"(aborted={result.aborted}); they were requeued"
            )
        return result

    async def run_forever(self, max_runs: Optional[int] = None) -> None:
        """Sleep until each local midnight and sweep.

        Args:
            max_runs: Stop after this many cycles (None runs indefinitely).

        Raises:
            BacklogStorageError: Propagated from a failed sweep.
        """
        target: Optional[datetime] = None
        while max_runs is None or self.runs < max_runs:
            now = self._clock()
            # Never schedule the same midnight twice if the sleep woke early
            reference = max(now, target) if target is not None else now
            target = self.next_run(reference)
            delay = max(0.0, target.timestamp() - now.timestamp())
            logger.info(f"Next sweep at {target.isoformat()} (in {delay:.0f}s)")

            await self._sleep(delay)
            await self.run_once()
