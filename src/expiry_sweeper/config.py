# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Sweeper configuration.

This module provides:
- SweeperConfig dataclass for connection, backlog and drain settings
- load_config() to merge a YAML file and EXPIRY_SWEEPER_* environment variables
- parse_addr() to split a "host:port" Redis address

Precedence (lowest to highest): defaults, YAML file, environment, CLI flags.
CLI flags are applied by the caller with dataclasses.replace().
"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import yaml

from expiry_sweeper.errors import ConfigError

DEFAULT_ADDR = "localhost:6379"
DEFAULT_BACKLOG_PATH = ".expired_keys"
DEFAULT_INTERVAL_MS = 300
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

ENV_PREFIX = "EXPIRY_SWEEPER_"
CONFIG_SECTION = "expiry_sweeper"


@dataclass(frozen=True)
class SweeperConfig:
    """Configuration for the expiry sweeper.

    Attributes:
        addr: Redis address as host:port
        password: Redis password (empty for none)
        db: Redis database index; also selects the keyevent channel
        interval_ms: Delay between successive TYPE reads during a drain
        backlog_path: Path of the append-only backlog file
        subscribe_timeout: Seconds to wait for the psubscribe confirmation
        max_retries: Attempts per key before a drain read is given up
        retry_base_delay: First retry backoff in seconds
        retry_max_delay: Upper bound on the retry backoff in seconds
        log_level: Logging level name
    """

    addr: str = DEFAULT_ADDR
    password: str = ""
    db: int = 0
    interval_ms: int = DEFAULT_INTERVAL_MS
    backlog_path: str = DEFAULT_BACKLOG_PATH
    subscribe_timeout: float = 5.0
    max_retries: int = 3
    retry_base_delay: float = 0.5
    retry_max_delay: float = 10.0
    log_level: str = "INFO"

    def __post_init__(self):
        parse_addr(self.addr)
        if self.db < 0:
            raise ConfigError(f"Database index must be >= 0, got {self.db}")
        if self.interval_ms < 0:
            raise ConfigError(f"Interval must be >= 0 ms, got {self.interval_ms}")
        if self.max_retries < 1:
            raise ConfigError(f"max_retries must be >= 1, got {self.max_retries}")
        if self.subscribe_timeout <= 0:
            raise ConfigError("subscribe_timeout must be positive")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(
                f"Invalid log_level {self.log_level!r}, expected one of {', '.join(LOG_LEVELS)}"
            )

    @property
    def host(self) -> str:
        return parse_addr(self.addr)[0]

    @property
    def port(self) -> int:
        return parse_addr(self.addr)[1]


def parse_addr(addr: str) -> Tuple[str, int]:
    """Split a Redis address into host and port.

    Args:
        addr: Address in host:port form. A bare host uses port 6379.

    Returns:
        (host, port) tuple

    Raises:
        ConfigError: If the port is not a valid TCP port.
    """
    host, sep, port_text = addr.rpartition(":")
    if not sep:
        host, port_text = addr, "6379"
    if not host:
        raise ConfigError(f"Invalid Redis address: {addr!r}")
    try:
        port = int(port_text)
    except ValueError:
        raise ConfigError(f"Invalid Redis port in address: {addr!r}")
    if not 0 < port < 65536:
        raise ConfigError(f"Redis port out of range in address: {addr!r}")
    return host, port


def _coerce(name: str, value: Any, target: type) -> Any:
    """Convert a raw YAML/env value to the field's type."""
    try:
        if target is int:
            return int(value)
        if target is float:
            return float(value)
        return str(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid value for {name}: {value!r}")


def _field_types() -> Dict[str, type]:
    return {f.name: f.type for f in fields(SweeperConfig)}


def _read_yaml(config_path: Path) -> Dict[str, Any]:
    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}")
    except OSError as e:
        raise ConfigError(f"Cannot read config file {config_path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")

    # Accept either a top-level mapping or an "expiry_sweeper:" section
    section = data.get(CONFIG_SECTION, data)
    if not isinstance(section, dict):
        raise ConfigError(f"'{CONFIG_SECTION}' in {config_path} must be a mapping")
    return section


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> SweeperConfig:
    """Load sweeper configuration from a YAML file and the environment.

    Args:
        config_path: Optional YAML file. Missing path means defaults only.
        environ: Environment mapping (defaults to os.environ)

    Returns:
        SweeperConfig with file and environment values applied

    Raises:
        ConfigError: If the file is unreadable or a value is invalid.
    """
    environ = os.environ if environ is None else environ
    types = _field_types()
    values: Dict[str, Any] = {}

    if config_path is not None:
        for name, raw in _read_yaml(Path(config_path)).items():
            if name not in types:
                raise ConfigError(f"Unknown config key: {name}")
            if raw is None:
                # Blank entry, e.g. "password:", keeps the default
                continue
            values[name] = _coerce(name, raw, types[name])

    for name, target in types.items():
        env_name = ENV_PREFIX + name.upper()
        if env_name in environ:
            values[name] = _coerce(env_name, environ[env_name], target)

    return SweeperConfig(**values)
