# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Service runner wiring the sweeper pipeline together.

Startup order:
1. Ensure notify-keyspace-events enables expired keyevents
2. Confirm the keyevent subscription
3. Run the subscriber and the daily scheduler concurrently

If either task raises, the other is cancelled and the error propagates to
the caller (the CLI turns it into a process exit code).
"""

import asyncio
import logging
from typing import Optional

from expiry_sweeper.backlog import BacklogStore
from expiry_sweeper.config import SweeperConfig
from expiry_sweeper.notifications import ensure_expiry_notifications
from expiry_sweeper.retry import RetryPolicy, RetrySettings
from expiry_sweeper.scheduler import SweepScheduler
from expiry_sweeper.store import KeyspaceStore, create_client
from expiry_sweeper.subscriber import ExpiredKeySubscriber
from expiry_sweeper.sweeper import Sweeper, SweepResult

logger = logging.getLogger(__name__)


class SweeperRunner:
    """Orchestrates the subscriber and the scheduled sweeper.

    Attributes:
        config: Sweeper configuration
        store: Redis client
        backlog: Shared backlog store
        subscriber: Expired-key subscriber
        sweeper: Lazy-expiration sweeper
        scheduler: Daily scheduler

    Example:
        >>> runner = SweeperRunner(load_config())
        >>> await runner.run()
    """

    def __init__(
        self,
        config: SweeperConfig,
        store: Optional[KeyspaceStore] = None,
        backlog: Optional[BacklogStore] = None,
        scheduler: Optional[SweepScheduler] = None,
    ):
        """Initialize the runner.

        Args:
            config: Sweeper configuration.
            store: Redis client (creates one from config if not provided).
            backlog: Backlog store (uses config.backlog_path if not provided).
            scheduler: Custom scheduler (creates a daily one if not provided).
        """
        self.config = config
        self._owns_store = store is None
        self.store = store if store is not None else create_client(config)
        self.backlog = backlog or BacklogStore(config.backlog_path)
        self.subscriber = ExpiredKeySubscriber(
            self.store,
            self.backlog,
            db=config.db,
            subscribe_timeout=config.subscribe_timeout,
        )
        self.sweeper = Sweeper(
            self.store,
            self.backlog,
            interval_ms=config.interval_ms,
            retry=RetryPolicy(
                RetrySettings(
                    attempts=config.max_retries,
                    base_delay=config.retry_base_delay,
                    max_delay=config.retry_max_delay,
                )
            ),
        )
        self.scheduler = scheduler or SweepScheduler(self.sweeper)

    async def start(self) -> None:
        """Repair the notification config and confirm the subscription.

        Raises:
            NotificationConfigError: If notify-keyspace-events cannot be fixed.
            SubscriptionError: If the subscription is not confirmed.
        """
        await ensure_expiry_notifications(self.store)
        if self.backlog.has_stale_snapshot():
            logger.warning("Incomplete sweep detected; it will be merged into the next sweep")
        await self.subscriber.subscribe()

    async def run(self) -> None:
        """Start and run until a task fails.

        The scheduler keeps running if the event stream closes cleanly.
        """
        pending = set()
        try:
            await self.start()

            subscriber_task = asyncio.create_task(self.subscriber.run(), name="subscriber")
            scheduler_task = asyncio.create_task(self.scheduler.run_forever(), name="scheduler")
            pending = {subscriber_task, scheduler_task}

            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    # Raises if the task failed
                    task.result()
                    if task is subscriber_task:
                        logger.warning("Expiration event stream ended; only sweeping from now on")
        finally:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            await self.close()

    async def sweep_now(self) -> SweepResult:
        """Run a single sweep cycle immediately, then release connections."""
        try:
            return await self.scheduler.run_once()
        finally:
            await self.close()

    async def close(self) -> None:
        """Release the pubsub connection and the client if owned."""
        await self.subscriber.close()
        if self._owns_store:
            await self.store.aclose()
