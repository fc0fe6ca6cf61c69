# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Expiry Sweeper - reclaim memory held by lazily-expired Redis keys.

Records the names of expired keys from Redis keyevent notifications and
re-visits them once a day so Redis evicts keys it has not yet reclaimed.

Usage:
    # Run the subscriber and the nightly sweep
    expiry-sweeper -addr localhost:6379 -db 0 -interval 300

    # Sweep the current backlog now and exit
    expiry-sweeper sweep

For installation:
    pip install expiry-sweeper
"""

try:
    from expiry_sweeper._version import __version__, __version_tuple__
except ImportError:
    # Package not installed (development mode without build)
    __version__ = "0.0.0.dev0"
    __version_tuple__ = (0, 0, 0, "dev0")

__all__ = [
    "__version__",
    "__version_tuple__",
]
