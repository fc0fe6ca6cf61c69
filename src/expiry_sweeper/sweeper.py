# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Lazy-expiration sweep.

One sweep cycle walks four steps:
1. Snapshot: move the backlog into a deduplicated snapshot file
2. Read: decode the snapshot into key names
3. Drain: TYPE each key, sleeping interval_ms between keys, so Redis
   evaluates the key's TTL and evicts it if it has already expired
4. Cleanup: delete the snapshot

Keys whose TYPE read still fails after retries are put back in the backlog
for the next cycle. Local storage failures raise BacklogStorageError.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from expiry_sweeper.backlog import BacklogStore
from expiry_sweeper.errors import StoreError
from expiry_sweeper.retry import RetryPolicy
from expiry_sweeper.store import STORE_EXCEPTIONS, KeyspaceStore, wrap_store_error

logger = logging.getLogger(__name__)

# TYPE reply for a key that does not exist (already evicted)
MISSING_TYPE = "none"


@dataclass
class SweepResult:
    """
    Outcome of one sweep cycle.

    Attributes:
        snapshot_size: Unique keys in the snapshot
        inspected: Keys whose TYPE read succeeded
        evicted: Keys reported as "none" (gone after the read)
        still_present: Keys that still exist (not expired yet or re-created)
        failed: Keys whose TYPE read failed after retries
        requeued: Keys put back in the backlog
        aborted: Drain stopped early after repeated failures
        duration_ms: Wall-clock duration of the cycle
    """

    snapshot_size: int = 0
    inspected: int = 0
    evicted: int = 0
    still_present: int = 0
    failed: List[str] = field(default_factory=list)
    requeued: int = 0
    aborted: bool = False
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.failed and not self.aborted

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["failed"] = len(self.failed)
        data["ok"] = self.ok
        return data


class Sweeper:
    """Drains the expired-key backlog against Redis at a bounded rate.

    Attributes:
        store: Redis client
        backlog: Backlog to snapshot and drain
        interval_ms: Delay between successive TYPE reads
        retry: Retry policy for transient TYPE failures
        max_consecutive_failures: Failed keys in a row before the drain
            gives up and requeues the rest

    Example:
        >>> sweeper = Sweeper(client, BacklogStore(".expired_keys"), interval_ms=300)
        >>> result = await sweeper.sweep()
        >>> print(f"Evicted {result.evicted} of {result.snapshot_size} keys")
    """

    def __init__(
        self,
        store: KeyspaceStore,
        backlog: BacklogStore,
        interval_ms: int = 300,
        retry: Optional[RetryPolicy] = None,
        max_consecutive_failures: int = 10,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.backlog = backlog
        self.interval_ms = interval_ms
        self.retry = retry or RetryPolicy()
        self.max_consecutive_failures = max_consecutive_failures
        self._sleep = sleep

    async def inspect(self, key: str) -> str:
        """Issue TYPE for one key.

        Raises:
            StoreError: If the command fails.
        """
        try:
            return await self.store.type(key)
        except STORE_EXCEPTIONS as e:
            raise wrap_store_error("TYPE", e) from e

    async def drain(self, keys: List[str], result: SweepResult) -> List[str]:
        """TYPE every key in order, pausing interval_ms between keys.

        Args:
            keys: Key names from the snapshot
            result: Result updated in place

        Returns:
            Keys to put back in the backlog.
        """
        interval = self.interval_ms / 1000.0
        consecutive_failures = 0
        leftover: List[str] = []

        for index, key in enumerate(keys):
            if index and interval > 0:
                await self._sleep(interval)

            try:
                key_type = await self.retry.run(lambda: self.inspect(key), name="TYPE")
            except StoreError as e:
                logger.warning(f"Failed to get type of key {key}: {e}")
                result.failed.append(key)
                leftover.append(key)
                consecutive_failures += 1
                if consecutive_failures >= self.max_consecutive_failures:
                    remaining = keys[index + 1 :]
                    logger.error(
                        f"Aborting drain after {consecutive_failures} consecutive failures, "
                        f"{len(remaining)} keys left"
                    )
                    result.aborted = True
                    leftover.extend(remaining)
                    break
                continue

            consecutive_failures = 0
            result.inspected += 1
            if key_type == MISSING_TYPE:
                result.evicted += 1
                logger.debug(f"Key {key} evicted")
            else:
                result.still_present += 1
                logger.debug(f"Key {key} still present as {key_type}")

        return leftover

    async def sweep(self) -> SweepResult:
        """Run one full sweep cycle.

        Returns:
            SweepResult statistics.

        Raises:
            BacklogStorageError: If a backlog or snapshot file operation fails.
        """
        start_time = time.perf_counter()
        result = SweepResult()
        logger.info("Start lazily deleting")

        result.snapshot_size = await asyncio.to_thread(self.backlog.snapshot)
        keys = await asyncio.to_thread(self.backlog.read_snapshot)

        leftover = await self.drain(keys, result)
        if leftover:
            await asyncio.to_thread(self.backlog.extend, leftover)
            result.requeued = len(leftover)
            logger.warning(f"Requeued {len(leftover)} keys for the next sweep")

        await asyncio.to_thread(self.backlog.discard_snapshot)

        result.duration_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"Sweep finished: {result.inspected}/{result.snapshot_size} inspected, "
            f"{result.evicted} evicted, {result.still_present} still present, "
            f"{len(result.failed)} failed in {result.duration_ms:.0f}ms"
        )
        return result
