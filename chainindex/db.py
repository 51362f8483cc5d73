"""Ordered key-value store used by the index."""

from __future__ import annotations

import logging
import sqlite3
import struct
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator

from chainindex.errors import IndexerError

logger = logging.getLogger(__name__)

DB_VERSION = 1
_SCAN_BATCH = 256
_DB_FILE = "db.sqlite"


@dataclass(frozen=True)
class DBRow:
    key: bytes
    value: bytes


class DBFlush(Enum):
    DISABLE = "disable"
    ENABLE = "enable"


class DB:
    """A key-value store whose keys are ordered bytewise."""

    def __init__(self, conn: sqlite3.Connection, path: Path) -> None:
        self._conn = conn
        self.path = path
        self._lock = threading.RLock()
        self._auto_compaction = False

    @classmethod
    def open(cls, path, light_mode: bool = False) -> DB:
        path = Path(path)
        logger.debug("opening DB at %s", path)
        path.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(path / _DB_FILE), check_same_thread=False, isolation_level=None
        )
        conn.execute("PRAGMA auto_vacuum = INCREMENTAL")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute(
            "CREATE TABLE IF NOT EXISTS kv (key BLOB PRIMARY KEY, value BLOB NOT NULL) WITHOUT ROWID"
        )
        db = cls(conn, path)
        try:
            db._verify_compatibility(light_mode)
        except IndexerError:
            db.close()
            raise
        return db

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> DB:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def full_compaction(self) -> None:
        logger.debug("starting full compaction on %s", self.path)
        with self._lock:
            self._conn.execute("VACUUM")
        logger.debug("finished full compaction on %s", self.path)

    def enable_auto_compaction(self) -> None:
        self._auto_compaction = True

    def _forward(self, prefix: bytes, start_at: bytes) -> Iterator[DBRow]:
        bound, op = bytes(start_at), ">="
        while True:
            with self._lock:
                batch = self._conn.execute(
                    f"SELECT key, value FROM kv WHERE key {op} ? ORDER BY key LIMIT ?",
                    (bound, _SCAN_BATCH),
                ).fetchall()
            for key, value in batch:
                if not bytes(key).startswith(prefix):
                    return
                yield DBRow(bytes(key), bytes(value))
            if len(batch) < _SCAN_BATCH:
                return
            bound, op = bytes(batch[-1][0]), ">"

    def iter_scan(self, prefix: bytes) -> Iterator[DBRow]:
        """Yield the rows whose keys start with ``prefix``, in key order."""
        return self._forward(bytes(prefix), prefix)

    def iter_scan_from(self, prefix: bytes, start_at: bytes) -> Iterator[DBRow]:
        """Yield rows from ``start_at`` onwards while keys keep ``prefix``."""
        return self._forward(bytes(prefix), start_at)

    def iter_scan_reverse(self, prefix: bytes, prefix_max: bytes) -> Iterator[DBRow]:
        """Yield rows backwards from the last key not above ``prefix_max``."""
        prefix = bytes(prefix)
        bound, op = bytes(prefix_max), "<="
        while True:
            with self._lock:
                batch = self._conn.execute(
                    f"SELECT key, value FROM kv WHERE key {op} ? ORDER BY key DESC LIMIT ?",
                    (bound, _SCAN_BATCH),
                ).fetchall()
            for key, value in batch:
                if not bytes(key).startswith(prefix):
                    return
                yield DBRow(bytes(key), bytes(value))
            if len(batch) < _SCAN_BATCH:
                return
            bound, op = bytes(batch[-1][0]), "<"

    def write(self, rows: Iterable[DBRow], flush: DBFlush = DBFlush.DISABLE) -> None:
        ordered = sorted(rows, key=lambda row: row.key)
        logger.debug("writing %d rows to %s, flush=%s", len(ordered), self.path, flush)
        sync = "FULL" if flush is DBFlush.ENABLE else "OFF"
        with self._lock:
            self._conn.execute(f"PRAGMA synchronous = {sync}")
            self._conn.execute("BEGIN")
            try:
                self._conn.executemany(
                    "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
                    ((bytes(r.key), bytes(r.value)) for r in ordered),
                )
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")
            if self._auto_compaction:
                self._conn.execute("PRAGMA incremental_vacuum")

    def flush(self) -> None:
        with self._lock:
            self._conn.execute("PRAGMA wal_checkpoint(FULL)")

    def put(self, key: bytes, value: bytes) -> None:
        with self._lock:
            self._conn.execute("PRAGMA synchronous = NORMAL")
            self._conn.execute(
                "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)", (bytes(key), bytes(value))
            )

    def put_sync(self, key: bytes, value: bytes) -> None:
        with self._lock:
            self._conn.execute("PRAGMA synchronous = FULL")
            self._conn.execute(
                "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)", (bytes(key), bytes(value))
            )

    def get(self, key: bytes) -> bytes | None:
        with self._lock:
            found = self._conn.execute(
                "SELECT value FROM kv WHERE key = ?", (bytes(key),)
            ).fetchone()
        return bytes(found[0]) if found is not None else None

    def _verify_compatibility(self, light_mode: bool) -> None:
        expected = struct.pack("<I", DB_VERSION)
        if light_mode:
            # An extra marker byte keeps the version bytes unchanged when light mode is off.
            expected += b"\x01"
        current = self.get(b"V")
        if current is None:
            self.put(b"V", expected)
        elif current != expected:
            raise IndexerError("Incompatible database found. Please reindex.")