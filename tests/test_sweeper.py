# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Tests for the lazy-expiration sweep cycle.

Covers:
- Snapshot, drain order and cleanup for a backlog with duplicates
- Backlog already empty while the drain is still running
- Inter-key delay (N keys take at least (N-1) x interval)
- Retry of transient failures and requeue of keys that keep failing
"""

import time

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from expiry_sweeper.errors import BacklogStorageError
from expiry_sweeper.retry import RetryPolicy, RetrySettings
from expiry_sweeper.sweeper import Sweeper, SweepResult


@pytest.fixture
def fast_retry(no_sleep):
    return RetryPolicy(RetrySettings(attempts=3, base_delay=0.01, jitter=False), sleep=no_sleep)


class TestSweepCycle:
    """Tests for Sweeper.sweep()."""

    @pytest.mark.asyncio
    async def test_duplicate_backlog_scenario(self, fake_store, backlog, no_sleep):
        """k1,k2,k1,k3 is drained as k1,k2,k3 with the delay between keys."""
        backlog.path.write_text("k1\nk2\nk1\nk3\n")
        sweeper = Sweeper(fake_store, backlog, interval_ms=300, sleep=no_sleep)

        result = await sweeper.sweep()

        assert fake_store.typed_keys == ["k1", "k2", "k3"]
        assert no_sleep.delays == [0.3, 0.3]
        assert result.snapshot_size == 3
        assert result.inspected == 3
        assert result.ok

    @pytest.mark.asyncio
    async def test_backlog_empty_while_draining(self, fake_store, backlog, no_sleep):
        """The backlog is cleared at snapshot time, before the drain ends."""
        backlog.path.write_text("k1\nk2\nk1\nk3\n")
        seen_during_drain = []
        fake_store.on_type = lambda key: seen_during_drain.append(backlog.read())
        sweeper = Sweeper(fake_store, backlog, sleep=no_sleep)

        await sweeper.sweep()

        assert seen_during_drain == [[], [], []]

    @pytest.mark.asyncio
    async def test_events_during_drain_kept_for_next_cycle(self, fake_store, backlog, no_sleep):
        backlog.append("old")
        fake_store.on_type = lambda key: backlog.append("arrived-" + key)
        sweeper = Sweeper(fake_store, backlog, sleep=no_sleep)

        await sweeper.sweep()

        assert backlog.read() == ["arrived-old"]

    @pytest.mark.asyncio
    async def test_snapshot_removed_after_success(self, fake_store, backlog, no_sleep):
        backlog.append("k1")
        sweeper = Sweeper(fake_store, backlog, sleep=no_sleep)

        await sweeper.sweep()

        assert not backlog.snapshot_path.exists()
        assert not backlog.pending_path.exists()

    @pytest.mark.asyncio
    async def test_empty_backlog(self, fake_store, backlog, no_sleep):
        sweeper = Sweeper(fake_store, backlog, sleep=no_sleep)

        result = await sweeper.sweep()

        assert result.snapshot_size == 0
        assert fake_store.type_calls == []
        assert no_sleep.delays == []
        assert not backlog.snapshot_path.exists()

    @pytest.mark.asyncio
    async def test_evicted_and_still_present_counted(self, make_store, backlog, no_sleep):
        store = make_store(keys={"renewed": "string"})
        backlog.extend(["gone", "renewed"])
        sweeper = Sweeper(store, backlog, sleep=no_sleep)

        result = await sweeper.sweep()

        assert result.evicted == 1
        assert result.still_present == 1

    @pytest.mark.asyncio
    async def test_whitespace_key_inspected_whole(self, fake_store, backlog, no_sleep):
        backlog.append("user 42 cart")
        sweeper = Sweeper(fake_store, backlog, sleep=no_sleep)

        await sweeper.sweep()

        assert fake_store.typed_keys == ["user 42 cart"]

    @pytest.mark.asyncio
    async def test_storage_failure_propagates(self, fake_store, tmp_path, no_sleep):
        from expiry_sweeper.backlog import BacklogStore

        # Snapshot file name taken by a directory: the snapshot cannot be written
        store = BacklogStore(tmp_path / "keys")
        store.path.write_text("k1\n")
        store.snapshot_path.mkdir()
        sweeper = Sweeper(fake_store, store, sleep=no_sleep)

        with pytest.raises(BacklogStorageError):
            await sweeper.sweep()


class TestDrainRate:
    """The inter-key delay bounds load on Redis."""

    @pytest.mark.asyncio
    async def test_sleeps_between_keys_only(self, fake_store, no_sleep, backlog):
        sweeper = Sweeper(fake_store, backlog, interval_ms=50, sleep=no_sleep)

        await sweeper.drain(["a", "b", "c", "d"], SweepResult())

        assert no_sleep.delays == [0.05, 0.05, 0.05]

    @pytest.mark.asyncio
    async def test_zero_interval_never_sleeps(self, fake_store, no_sleep, backlog):
        sweeper = Sweeper(fake_store, backlog, interval_ms=0, sleep=no_sleep)

        await sweeper.drain(["a", "b"], SweepResult())

        assert no_sleep.delays == []

    @pytest.mark.slow
    @pytest.mark.asyncio
    async def test_wall_clock_lower_bound(self, fake_store, backlog):
        """Draining N keys with interval I takes at least (N-1) x I."""
        keys = ["a", "b", "c", "d"]
        interval_ms = 30
        sweeper = Sweeper(fake_store, backlog, interval_ms=interval_ms)

        start = time.monotonic()
        await sweeper.drain(keys, SweepResult())
        elapsed = time.monotonic() - start

        assert elapsed >= (len(keys) - 1) * interval_ms / 1000.0 * 0.95
        stamps = [stamp for _, stamp in fake_store.type_calls]
        gaps = [later - earlier for earlier, later in zip(stamps, stamps[1:])]
        assert all(gap >= interval_ms / 1000.0 * 0.9 for gap in gaps)


class TestDrainFailures:
    """Transient failures are retried; persistent ones are requeued."""

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, fake_store, backlog, no_sleep, fast_retry):
        fake_store.type_errors["k1"] = [RedisConnectionError("reset by peer")]
        backlog.append("k1")
        sweeper = Sweeper(fake_store, backlog, retry=fast_retry, sleep=no_sleep)

        result = await sweeper.sweep()

        assert fake_store.typed_keys == ["k1", "k1"]
        assert result.ok
        assert result.inspected == 1

    @pytest.mark.asyncio
    async def test_persistent_failure_requeued(self, fake_store, backlog, no_sleep, fast_retry):
        fake_store.type_errors["bad"] = [RedisConnectionError("down")] * 3
        backlog.extend(["good1", "bad", "good2"])
        sweeper = Sweeper(fake_store, backlog, retry=fast_retry, sleep=no_sleep)

        result = await sweeper.sweep()

        assert result.failed == ["bad"]
        assert result.requeued == 1
        assert result.inspected == 2
        assert not result.ok
        assert backlog.read() == ["bad"]
        assert not backlog.snapshot_path.exists()

    @pytest.mark.asyncio
    async def test_non_transient_failure_not_retried(self, fake_store, backlog, no_sleep, fast_retry):
        fake_store.type_errors["k1"] = [ResponseError("NOAUTH Authentication required.")]
        backlog.append("k1")
        sweeper = Sweeper(fake_store, backlog, retry=fast_retry, sleep=no_sleep)

        result = await sweeper.sweep()

        assert fake_store.typed_keys == ["k1"]
        assert result.failed == ["k1"]

    @pytest.mark.asyncio
    async def test_drain_aborts_after_consecutive_failures(self, fake_store, backlog, no_sleep, fast_retry):
        keys = [f"k{i}" for i in range(6)]
        for key in keys:
            fake_store.type_errors[key] = [ResponseError("LOADING Redis is loading")]
        backlog.extend(keys)
        sweeper = Sweeper(
            fake_store, backlog, retry=fast_retry, max_consecutive_failures=2, sleep=no_sleep
        )

        result = await sweeper.sweep()

        assert result.aborted
        assert fake_store.typed_keys == ["k0", "k1"]
        assert result.requeued == 6
        assert backlog.read() == keys

    def test_result_to_dict(self):
        result = SweepResult(snapshot_size=2, inspected=1, failed=["x"])
        data = result.to_dict()
        assert data["failed"] == 1
        assert data["ok"] is False
