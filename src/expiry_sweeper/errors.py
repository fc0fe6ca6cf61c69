# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Error taxonomy for the expiry sweeper.

Every error carries the process exit code the CLI terminates with.
Exit codes follow the sysexits.h convention:
- 69 (EX_UNAVAILABLE): Redis unreachable or subscription not confirmed
- 74 (EX_IOERR): Local backlog storage failure
- 78 (EX_CONFIG): Invalid configuration or notify-keyspace-events repair failed

Only local storage failures are fatal inside a sweep. Transient store
errors are retried by the sweeper and reported in its result.
"""

from typing import Optional

EX_UNAVAILABLE = 69
EX_IOERR = 74
EX_CONFIG = 78


class SweeperError(Exception):
    """Base exception for expiry sweeper errors."""

    exit_code = 1


class ConfigError(SweeperError):
    """Invalid sweeper configuration (bad address, negative interval, ...)."""

    exit_code = EX_CONFIG


class StoreError(SweeperError):
    """A Redis command failed.

    Attributes:
        operation: Redis command that failed (e.g. "TYPE").
        transient: True when the failure is a connection or timeout error
            that may succeed on retry.
    """

    exit_code = EX_UNAVAILABLE

    def __init__(
        self, message: str, operation: Optional[str] = None, transient: bool = False
    ):
        super().__init__(message)
        self.operation = operation
        self.transient = transient


class NotificationConfigError(StoreError):
    """Reading or repairing notify-keyspace-events failed."""

    exit_code = EX_CONFIG


class SubscriptionError(StoreError):
    """The keyevent pattern subscription could not be confirmed."""

    exit_code = EX_UNAVAILABLE


class BacklogStorageError(SweeperError):
    """Local backlog or snapshot file could not be read or written."""

    exit_code = EX_IOERR
