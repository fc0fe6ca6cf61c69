# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Redis client construction and the store protocol the pipeline depends on.

The pipeline only needs four Redis operations, captured by the
KeyspaceStore protocol so tests can substitute an in-memory fake:
- CONFIG GET / CONFIG SET notify-keyspace-events
- PSUBSCRIBE through pubsub()
- TYPE <key>

Keys are decoded with surrogateescape so arbitrary key bytes survive the
round trip through the backlog file and back into TYPE.
"""

import logging
from typing import Any, Dict, Protocol

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, TimeoutError as RedisTimeoutError

from expiry_sweeper.config import SweeperConfig
from expiry_sweeper.errors import StoreError

logger = logging.getLogger(__name__)

KEY_ENCODING = "utf-8"
KEY_ENCODING_ERRORS = "surrogateescape"

# Errors raised by redis-py commands and the sockets underneath them
STORE_EXCEPTIONS = (RedisError, OSError)


class KeyspaceStore(Protocol):
    """Subset of redis.asyncio.Redis used by the sweeper."""

    async def config_get(self, pattern: str = "*") -> Dict[str, str]:
        ...

    async def config_set(self, name: str, value: str) -> Any:
        ...

    async def type(self, name: str) -> str:
        ...

    def pubsub(self, **kwargs: Any) -> Any:
        ...


def create_client(config: SweeperConfig) -> redis.Redis:
    """Create an asyncio Redis client for the configured address and db.

    Args:
        config: Sweeper configuration

    Returns:
        redis.asyncio.Redis client (connects lazily on first command)
    """
    client = redis.Redis(
        host=config.host,
        port=config.port,
        db=config.db,
        password=config.password or None,
        encoding=KEY_ENCODING,
        encoding_errors=KEY_ENCODING_ERRORS,
        decode_responses=True,
    )
    logger.info(f"Redis client configured for {config.host}:{config.port} db={config.db}")
    return client


def is_transient(error: BaseException) -> bool:
    """True for connection and timeout failures worth retrying."""
    return isinstance(error, (RedisConnectionError, RedisTimeoutError, ConnectionError, TimeoutError))


def wrap_store_error(operation: str, error: BaseException) -> StoreError:
    """Convert a redis-py or socket error into a StoreError."""
    return StoreError(
        f"{operation} failed: {error}",
        operation=operation,
        transient=is_transient(error),
    )

