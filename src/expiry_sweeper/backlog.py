# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Durable backlog of expired key names.

Files (for the default backlog path ".expired_keys"):
- .expired_keys          append-only backlog, one record per line, duplicates allowed
- .expired_keys.pending  backlog renamed away at snapshot time
- .expired_keys.bak      deduplicated snapshot consumed by one sweep cycle

Record encoding:
    Each key is written on its own line with "\\" escaped as "\\\\",
    newline as "\\n" and carriage return as "\\r". Reading is line-oriented,
    so keys containing spaces or tabs are never split.

Snapshot:
    The backlog is moved aside with os.replace() under the store lock and
    a fresh empty backlog is created. Events appended while the snapshot is
    being built land in the fresh backlog and are never discarded.
"""

import logging
import os
import threading
from pathlib import Path
from typing import Iterable, List, Union

from expiry_sweeper.errors import BacklogStorageError

logger = logging.getLogger(__name__)

FILE_ENCODING = "utf-8"
FILE_ERRORS = "surrogateescape"

SNAPSHOT_SUFFIX = ".bak"
PENDING_SUFFIX = ".pending"
TEMP_SUFFIX = ".tmp"

_ESCAPES = {"\\": "\\\\", "\n": "\\n", "\r": "\\r"}
_UNESCAPES = {"\\": "\\", "n": "\n", "r": "\r"}


def encode_record(key: str) -> str:
    """Escape a key name so it fits on a single line."""
    return "".join(_ESCAPES.get(ch, ch) for ch in key)


def decode_record(record: str) -> str:
    """Reverse encode_record(). Unknown escapes are kept verbatim."""
    if "\\" not in record:
        return record

    out = []
    i = 0
    while i < len(record):
        ch = record[i]
        if ch == "\\" and i + 1 < len(record) and record[i + 1] in _UNESCAPES:
            out.append(_UNESCAPES[record[i + 1]])
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def dedupe(records: Iterable[str]) -> List[str]:
    """Drop repeated records, keeping first occurrences in order."""
    seen = set()
    unique = []
    for record in records:
        if record not in seen:
            seen.add(record)
            unique.append(record)
    return unique


class BacklogStore:
    """File-backed backlog shared by the subscriber and the sweeper.

    append() and snapshot() serialise on a lock, so snapshot() may run in a
    worker thread while the event loop keeps appending.

    Attributes:
        path: Backlog file
        snapshot_path: Deduplicated snapshot file (path + ".bak")
        pending_path: Backlog moved aside during snapshot (path + ".pending")

    Example:
        >>> store = BacklogStore(".expired_keys")
        >>> store.append("session:42")
        >>> store.snapshot()
        1
        >>> store.read_snapshot()
        ['session:42']
        >>> store.discard_snapshot()
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.snapshot_path = self.path.with_name(self.path.name + SNAPSHOT_SUFFIX)
        self.pending_path = self.path.with_name(self.path.name + PENDING_SUFFIX)
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Backlog
    # ------------------------------------------------------------------

    def append(self, key: str) -> None:
        """Append one key name to the backlog.

        Raises:
            BacklogStorageError: If the backlog cannot be written.
        """
        self.extend([key])

    def extend(self, keys: Iterable[str]) -> None:
        """Append several key names in order."""
        lines = "".join(encode_record(key) + "\n" for key in keys)
        if not lines:
            return
        with self._lock:
            try:
                with open(
                    self.path, "a", encoding=FILE_ENCODING, errors=FILE_ERRORS, newline="\n"
                ) as f:
                    f.write(lines)
            except OSError as e:
                raise BacklogStorageError(
                    f"Failed to write expired key to {self.path}: {e}"
                ) from e

    def read(self) -> List[str]:
        """Return the key names currently in the backlog (duplicates kept).

        Raises:
            BacklogStorageError: If the backlog cannot be read.
        """
        return [decode_record(r) for r in self._read_backlog()]

    def count(self) -> int:
        """Number of records in the backlog."""
        return len(self._read_backlog())

    def _read_backlog(self) -> List[str]:
        with self._lock:
            try:
                return self._read_records(self.path)
            except OSError as e:
                raise BacklogStorageError(f"Failed to read backlog {self.path}: {e}") from e

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def has_stale_snapshot(self) -> bool:
        """True if a snapshot or pending file survived an interrupted sweep."""
        return self.snapshot_path.exists() or self.pending_path.exists()

    def snapshot(self) -> int:
        """Move the backlog into a deduplicated snapshot and clear it.

        Records left by an interrupted sweep (an existing snapshot or pending
        file) are folded in ahead of the current backlog.

        Returns:
            Number of unique records in the snapshot.

        Raises:
            BacklogStorageError: On any file failure.
        """
        try:
            records: List[str] = []
            if self.snapshot_path.exists():
                logger.warning(
                    f"Found snapshot {self.snapshot_path} from an incomplete sweep, merging it"
                )
                records.extend(self._read_records(self.snapshot_path))

            with self._lock:
                if self.pending_path.exists():
                    logger.warning(
                        f"Found {self.pending_path} from an incomplete sweep, merging it"
                    )
                    self._append_file(self.path, self.pending_path)
                    self.path.write_text("", encoding=FILE_ENCODING)
                elif self.path.exists():
                    os.replace(self.path, self.pending_path)
                self.path.touch()

            records.extend(self._read_records(self.pending_path))
            unique = dedupe(records)
            self._write_records(self.snapshot_path, unique)
            self.pending_path.unlink(missing_ok=True)
        except OSError as e:
            raise BacklogStorageError(f"Failed to snapshot {self.path}: {e}") from e

        logger.info(
            f"Snapshot {self.snapshot_path}: {len(records)} records, {len(unique)} unique"
        )
        return len(unique)

    def read_snapshot(self) -> List[str]:
        """Decode the snapshot into key names, in file order.

        Raises:
            BacklogStorageError: If the snapshot cannot be read.
        """
        try:
            return [decode_record(r) for r in self._read_records(self.snapshot_path, missing_ok=False)]
        except OSError as e:
            raise BacklogStorageError(f"Failed to read snapshot {self.snapshot_path}: {e}") from e

    def discard_snapshot(self) -> None:
        """Delete the snapshot at the end of a sweep.

        Raises:
            BacklogStorageError: If the snapshot cannot be removed.
        """
        try:
            self.snapshot_path.unlink()
        except OSError as e:
            raise BacklogStorageError(
                f"Failed to remove snapshot {self.snapshot_path}: {e}"
            ) from e

    # ------------------------------------------------------------------
    # File helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _read_records(path: Path, missing_ok: bool = True) -> List[str]:
        """Raw (still encoded) records of a file, blank lines skipped."""
        if missing_ok and not path.exists():
            return []
        with open(path, "r", encoding=FILE_ENCODING, errors=FILE_ERRORS, newline="\n") as f:
            return [line.rstrip("\n") for line in f if line.rstrip("\n")]

    @staticmethod
    def _write_records(path: Path, records: List[str]) -> None:
        """Write records through a temp file renamed into place."""
        tmp_path = path.with_name(path.name + TEMP_SUFFIX)
        with open(tmp_path, "w", encoding=FILE_ENCODING, errors=FILE_ERRORS, newline="\n") as f:
            f.writelines(record + "\n" for record in records)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)

    @staticmethod
    def _append_file(src: Path, dest: Path) -> None:
        """Append src's bytes to dest, keeping records line-separated."""
        if not src.exists():
            return
        data = src.read_bytes()
        if not data:
            return
        with open(dest, "ab+") as fout:
            if fout.tell() > 0:
                fout.seek(-1, os.SEEK_END)
                if fout.read(1) != b"\n":
                    data = b"\n" + data
            fout.write(data)
