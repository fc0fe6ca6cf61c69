# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Root pytest configuration with shared fixtures and markers.

This file is automatically loaded by pytest and provides:
- Custom markers (slow, integration)
- FakeKeyspaceStore / FakePubSub standing in for redis.asyncio.Redis
- Backlog fixtures rooted in tmp_path
"""

import time
from typing import Dict, List, Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from expiry_sweeper.backlog import BacklogStore


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "slow: Mark test as slow-running (uses real sleeps)",
    )
    config.addinivalue_line(
        "markers",
        "integration: Mark test as integration test (whole runner)",
    )


# ============================================================================
# Fakes
# ============================================================================


class FakePubSub:
    """In-memory stand-in for redis.asyncio.client.PubSub."""

    def __init__(self, events: List[str], confirm: bool = True, fail_after: Optional[int] = None):
        self.events = events
        self.confirm = confirm
        self.fail_after = fail_after
        self.patterns: List[str] = []
        self.closed = False

    async def psubscribe(self, *patterns: str) -> None:
        self.patterns.extend(patterns)

    async def get_message(self, ignore_subscribe_messages: bool = False, timeout: Optional[float] = 0.0):
        if not self.confirm:
            return None
        return {"type": "psubscribe", "pattern": None, "channel": self.patterns[-1], "data": 1}

    async def listen(self):
        # Redis repeats the subscribe confirmation on the stream
        yield {"type": "psubscribe", "pattern": None, "channel": self.patterns[-1], "data": 1}
        for index, key in enumerate(self.events):
            if self.fail_after is not None and index >= self.fail_after:
                raise RedisConnectionError("Connection closed by server.")
            yield {
                "type": "pmessage",
                "pattern": self.patterns[-1],
                "channel": self.patterns[-1],
                "data": key,
            }

    async def aclose(self) -> None:
        self.closed = True


class FakeKeyspaceStore:
    """In-memory stand-in for the redis.asyncio.Redis calls the sweeper makes.

    Attributes:
        notify: Current notify-keyspace-events value
        keys: Live keys mapped to their TYPE reply; absent keys reply "none"
        type_calls: (key, monotonic time) for every TYPE issued
        config_set_calls: (name, value) for every CONFIG SET issued
        type_errors: Exceptions queued per key, raised one per TYPE call
    """

    def __init__(self, notify: str = "", keys: Optional[Dict[str, str]] = None):
        self.notify = notify
        self.keys = dict(keys or {})
        self.type_calls: List[tuple] = []
        self.config_set_calls: List[tuple] = []
        self.type_errors: Dict[str, List[Exception]] = {}
        self.config_get_error: Optional[Exception] = None
        self.config_set_error: Optional[Exception] = None
        self.events: List[str] = []
        self.confirm_subscription = True
        self.stream_fail_after: Optional[int] = None
        self.pubsubs: List[FakePubSub] = []
        self.closed = False
        self.on_type = None

    async def config_get(self, pattern: str = "*") -> Dict[str, str]:
        if self.config_get_error is not None:
            raise self.config_get_error
        return {pattern: self.notify}

    async def config_set(self, name: str, value: str) -> bool:
        if self.config_set_error is not None:
            raise self.config_set_error
        self.config_set_calls.append((name, value))
        self.notify = value
        return True

    async def type(self, name: str) -> str:
        self.type_calls.append((name, time.monotonic()))
        if self.on_type is not None:
            self.on_type(name)
        errors = self.type_errors.get(name)
        if errors:
            raise errors.pop(0)
        return self.keys.get(name, "none")

    def pubsub(self, **kwargs) -> FakePubSub:
        pubsub = FakePubSub(
            list(self.events),
            confirm=self.confirm_subscription,
            fail_after=self.stream_fail_after,
        )
        self.pubsubs.append(pubsub)
        return pubsub

    async def aclose(self) -> None:
        self.closed = True

    @property
    def typed_keys(self) -> List[str]:
        return [key for key, _ in self.type_calls]


# ============================================================================
# Shared Fixtures
# ============================================================================


@pytest.fixture
def fake_store():
    """Fresh in-memory Redis stand-in."""
    return FakeKeyspaceStore()


@pytest.fixture
def backlog(tmp_path):
    """BacklogStore writing to a temporary directory."""
    return BacklogStore(tmp_path / ".expired_keys")


@pytest.fixture
def no_sleep():
    """Sleep replacement that records requested delays without waiting."""
    delays: List[float] = []

    async def sleep(seconds: float) -> None:
        delays.append(seconds)

    sleep.delays = delays
    return sleep


@pytest.fixture
def make_store():
    """Factory building a FakeKeyspaceStore with custom state."""
    return FakeKeyspaceStore
