# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Expired-key event subscriber.

Pattern-subscribes to __keyevent@<db>__:expired and appends the key name
carried by every notification to the backlog. The stream is not
re-subscribed if it drops; the error propagates to the runner.
"""

import logging
from typing import Any, Optional

from expiry_sweeper.backlog import BacklogStore
from expiry_sweeper.errors import SubscriptionError
from expiry_sweeper.store import STORE_EXCEPTIONS, KeyspaceStore

logger = logging.getLogger(__name__)


def channel_pattern(db: int) -> str:
    """Keyevent channel carrying expirations for one database."""
    return f"__keyevent@{db}__:expired"


class ExpiredKeySubscriber:
    """Records expired key names published by Redis.

    Attributes:
        store: Redis client
        backlog: Backlog receiving one record per event
        db: Database index whose expirations are observed
        subscribe_timeout: Seconds to wait for the psubscribe confirmation
        received: Number of events appended so far

    Example:
        >>> subscriber = ExpiredKeySubscriber(client, backlog, db=0)
        >>> await subscriber.subscribe()
        >>> await subscriber.run()  # returns when the stream ends
    """

    def __init__(
        self,
        store: KeyspaceStore,
        backlog: BacklogStore,
        db: int = 0,
        subscribe_timeout: float = 5.0,
    ):
        self.store = store
        self.backlog = backlog
        self.db = db
        self.subscribe_timeout = subscribe_timeout
        self.pattern = channel_pattern(db)
        self.received = 0
        self._pubsub: Optional[Any] = None

    async def subscribe(self) -> None:
        """Subscribe and wait for Redis to confirm the subscription.

        Raises:
            SubscriptionError: If the subscription is not confirmed.
        """
        try:
            self._pubsub = self.store.pubsub()
            await self._pubsub.psubscribe(self.pattern)
            while True:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=False, timeout=self.subscribe_timeout
                )
                if message is None:
                    raise SubscriptionError(
                        f"No confirmation for {self.pattern} within {self.subscribe_timeout}s",
                        operation="PSUBSCRIBE",
                    )
                if message.get("type") == "psubscribe":
                    break
        except STORE_EXCEPTIONS as e:
            raise SubscriptionError(
                f"Failed to subscribe to the channel {self.pattern}: {e}",
                operation="PSUBSCRIBE",
            ) from e

        logger.info(f"Subscribed to {self.pattern}")

    async def run(self) -> int:
        """Append every expired key to the backlog until the stream ends.

        Returns:
            Number of events received.

        Raises:
            SubscriptionError: If the connection fails mid-stream.
            BacklogStorageError: If the backlog cannot be written.
        """
        if self._pubsub is None:
            await self.subscribe()

        try:
            async for message in self._pubsub.listen():
                if message.get("type") != "pmessage":
                    continue
                key = message["data"]
                logger.debug(f"Receive key expired: {key}")
                self.backlog.append(key)
                self.received += 1
        except STORE_EXCEPTIONS as e:
            raise SubscriptionError(
                f"Lost expiration event stream after {self.received} events: {e}",
                operation="PSUBSCRIBE",
                transient=True,
            ) from e

        logger.info(f"Expiration event stream closed after {self.received} events")
        return self.received

    async def close(self) -> None:
        """Release the pubsub connection."""
        if self._pubsub is not None:
            pubsub, self._pubsub = self._pubsub, None
            await pubsub.aclose()
