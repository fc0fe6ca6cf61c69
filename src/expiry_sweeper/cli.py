"""CLI entry point for expiry-sweeper.

Usage:
    expiry-sweeper                   # Subscribe to expirations and sweep nightly
    expiry-sweeper run               # Same as above
    expiry-sweeper sweep             # Sweep the current backlog now and exit
    expiry-sweeper status            # Show backlog size and incomplete sweeps
    expiry-sweeper --version         # Show version

Connection flags keep their single-dash spelling:
    expiry-sweeper -addr localhost:6379 -password secret -db 0 -interval 300
"""

import argparse
import asyncio
import dataclasses
import logging
import os
import sys
from typing import List, Optional

from expiry_sweeper import __version__
from expiry_sweeper.backlog import BacklogStore
from expiry_sweeper.config import ENV_PREFIX, SweeperConfig, load_config
from expiry_sweeper.errors import SweeperError

logger = logging.getLogger("expiry_sweeper")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="expiry-sweeper",
        description="Expiry Sweeper - evict lazily-expired Redis keys",
        allow_abbrev=False,
    )
    parser.add_argument(
        "--version",
        "-V",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument("-addr", dest="addr", help="Redis server address (default: localhost:6379)")
    parser.add_argument("-password", dest="password", help="Redis password (if any)")
    parser.add_argument("-db", dest="db", type=int, help="Redis database number (default: 0)")
    parser.add_argument(
        "-interval",
        dest="interval_ms",
        type=int,
        help="Delay between keys during a sweep, in milliseconds (default: 300)",
    )
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument(
        "--backlog",
        dest="backlog_path",
        help="Backlog file path (default: .expired_keys)",
    )
    parser.add_argument(
        "--log-level",
        dest="log_level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("run", help="Subscribe to expirations and sweep at midnight")
    subparsers.add_parser("sweep", help="Sweep the current backlog once and exit")
    subparsers.add_parser("status", help="Show backlog size and incomplete sweeps")
    return parser


def resolve_config(args: argparse.Namespace, environ=None) -> SweeperConfig:
    """Merge file, environment and CLI values into a SweeperConfig."""
    environ = os.environ if environ is None else environ
    config_path = args.config or environ.get(ENV_PREFIX + "CONFIG")
    config = load_config(config_path, environ=environ)

    overrides = {
        name: getattr(args, name)
        for name in ("addr", "password", "db", "interval_ms", "backlog_path", "log_level")
        if getattr(args, name, None) is not None
    }
    return dataclasses.replace(config, **overrides)


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper()), format=LOG_FORMAT)


def show_status(config: SweeperConfig) -> None:
    """Print backlog size and whether a sweep was interrupted."""
    backlog = BacklogStore(config.backlog_path)
    print(f"Backlog: {backlog.path} ({backlog.count()} records)")
    if backlog.has_stale_snapshot():
        print(f"Incomplete sweep: {backlog.snapshot_path} or {backlog.pending_path} present")
    else:
        print("Incomplete sweep: none")


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point. Returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = resolve_config(args)
        configure_logging(config.log_level)

        if args.command == "status":
            show_status(config)
            return 0

        from expiry_sweeper.runner import SweeperRunner

        runner = SweeperRunner(config)
        if args.command == "sweep":
            result = asyncio.run(runner.sweep_now())
            return 0 if result.ok else 1

        asyncio.run(runner.run())
    except SweeperError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return e.exit_code
    except KeyboardInterrupt:
        logger.info("Shutting down")
    return 0


if __name__ == "__main__":
    sys.exit(main())
