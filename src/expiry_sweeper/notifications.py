# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
notify-keyspace-events check and repair.

Keyevent expiration notifications need two flags:
- "E": publish on the __keyevent@<db>__ channels
- "x": emit expired events ("A" is an alias that includes "x")

Missing flags are appended to the current value so flags enabled by other
consumers of the same Redis instance are kept.
"""

import logging
from typing import Optional

from expiry_sweeper.errors import NotificationConfigError
from expiry_sweeper.store import STORE_EXCEPTIONS, KeyspaceStore

logger = logging.getLogger(__name__)

NOTIFY_CONFIG_NAME = "notify-keyspace-events"

KEYEVENT_FLAG = "E"
EXPIRED_FLAG = "x"
ALL_EVENTS_ALIAS = "A"


def merge_notify_flags(current: str) -> Optional[str]:
    """Compute the flag string that enables expired keyevent notifications.

    Args:
        current: Current notify-keyspace-events value.

    Returns:
        The current flags with the missing ones appended, or None when
        nothing needs to change.

    Example:
        >>> merge_notify_flags("gxeKE") is None
        True
        >>> merge_notify_flags("gK")
        'gKEx'
    """
    missing = ""
    if KEYEVENT_FLAG not in current:
        missing += KEYEVENT_FLAG
    if EXPIRED_FLAG not in current and ALL_EVENTS_ALIAS not in current:
        missing += EXPIRED_FLAG
    if not missing:
        return None
    return current + missing


async def read_notify_flags(store: KeyspaceStore) -> str:
    """Read the current notify-keyspace-events value.

    Raises:
        NotificationConfigError: If the read fails or the value is absent.
    """
    try:
        result = await store.config_get(NOTIFY_CONFIG_NAME)
    except STORE_EXCEPTIONS as e:
        raise NotificationConfigError(
            f"Failed to get configuration: {e}", operation="CONFIG GET"
        ) from e

    value = (result or {}).get(NOTIFY_CONFIG_NAME)
    if not isinstance(value, str):
        raise NotificationConfigError(
            f"Failed to get {NOTIFY_CONFIG_NAME} configuration", operation="CONFIG GET"
        )
    return value


async def ensure_expiry_notifications(store: KeyspaceStore) -> bool:
    """Enable expired keyevent notifications if they are not already on.

    Issues no CONFIG SET when both flags are present, otherwise exactly one.

    Args:
        store: Redis client

    Returns:
        True if the configuration was changed.

    Raises:
        NotificationConfigError: On any read or write failure (not retried).
    """
    current = await read_notify_flags(store)
    updated = merge_notify_flags(current)

    if updated is None:
        logger.info(
            f"{NOTIFY_CONFIG_NAME} is already configured to support expiration "
            f"notifications ({current!r})"
        )
        return False

    try:
        await store.config_set(NOTIFY_CONFIG_NAME, updated)
    except STORE_EXCEPTIONS as e:
        raise NotificationConfigError(
            f"Failed to set configuration: {e}", operation="CONFIG SET"
        ) from e

    logger.info(f"Configured {NOTIFY_CONFIG_NAME} from {current!r} to {updated!r}")
    return True
