"""
SQLite record log for HistDB.

This module stores the record log in a single SQLite database file.
Each stream is a sequence of rows ordered by offset.

Invariants:
    - One SQLite file per data directory
    - (stream, record_offset) is unique; offsets are dense per stream
    - Each append is a single IMMEDIATE transaction
    - Rows are never updated or deleted by this module

How to change safely:
    - Schema migrations must be backward compatible
    - Keep payload bytes opaque; decoding belongs to the callers

Table schema:
    records:
        - stream TEXT
        - record_offset INTEGER
        - payload BLOB
        - written_at INTEGER (Unix ms)
        - PRIMARY KEY (stream, record_offset)
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from collections.abc import AsyncIterator, Iterator
from contextlib import contextmanager
from pathlib import Path

from .base import (
    RecordPos,
    StorageConnectionError,
    StorageError,
    StoredRecord,
)

logger = logging.getLogger(__name__)


class SqliteRecordLog:
    """SQLite-backed implementation of RecordLog.

    Thread safety:
        Each operation opens its own connection. Appends are serialized
        with an asyncio lock and SQLite handles concurrent readers via
        WAL mode.

    Example:
        >>> log = SqliteRecordLog("/var/lib/histdb")
        >>> await log.connect()
        >>> pos = await log.append("versions", b"{}")
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        db_filename: str = "histdb.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        scan_batch_size: int = 500,
    ) -> None:
        """Initialize the record log.

        Args:
            data_dir: Directory for the SQLite database file
            db_filename: Database file name
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            scan_batch_size: Rows fetched per query while scanning
        """
        self.data_dir = Path(data_dir)
        self.db_filename = db_filename
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.scan_batch_size = scan_batch_size
        self._connected = False
        self._lock = asyncio.Lock()

    @property
    def db_path(self) -> Path:
        """Path of the SQLite database file."""
        return self.data_dir / self.db_filename

    @property
    def is_connected(self) -> bool:
        return self._connected

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection to the database file."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS records (
                stream TEXT NOT NULL,
                record_offset INTEGER NOT NULL,
                payload BLOB NOT NULL,
                written_at INTEGER NOT NULL,
                PRIMARY KEY (stream, record_offset)
            );

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def connect(self) -> None:
        """Create the database file and schema if needed."""
        try:
            with self._get_connection() as conn:
                self._create_schema(conn)
        except sqlite3.Error as e:
            raise StorageConnectionError(f"Failed to open record log at {self.db_path}: {e}")
        self._connected = True
        logger.info("Opened SQLite record log", extra={"db_path": str(self.db_path)})

    async def close(self) -> None:
        self._connected = False
        logger.debug("Closed SQLite record log", extra={"db_path": str(self.db_path)})

    async def append(self, stream: str, payload: bytes) -> RecordPos:
        """Append a record to a stream.

        Returns:
            RecordPos of the stored record

        Raises:
            StorageConnectionError: If not connected
            StorageError: If the write fails
        """
        if not self._connected:
            raise StorageConnectionError("Not connected")

        now = int(time.time() * 1000)

        async with self._lock:
            try:
                with self._get_connection() as conn:
                    conn.execute("BEGIN IMMEDIATE")
                    try:
                        cursor = conn.execute(
                            "SELECT COALESCE(MAX(record_offset) + 1, 0) FROM records WHERE stream = ?",
                            (stream,),
                        )
                        offset = cursor.fetchone()[0]
                        conn.execute(
                            """
                            INSERT INTO records (stream, record_offset, payload, written_at)
                            VALUES (?, ?, ?, ?)
                            """,
                            (stream, offset, payload, now),
                        )
                        conn.execute("COMMIT")
                    except Exception:
                        conn.execute("ROLLBACK")
                        raise
            except sqlite3.Error as e:
                raise StorageError(f"Failed to append to stream '{stream}': {e}")

        logger.debug(
            "Record appended to SQLite log",
            extra={"stream": stream, "offset": offset, "size": len(payload)},
        )
        return RecordPos(stream=stream, offset=offset, timestamp_ms=now)

    async def scan(self, stream: str, start_offset: int = 0) -> AsyncIterator[StoredRecord]:
        """Iterate records of a stream in append order.

        Rows are fetched in batches so large streams are not loaded at once.
        """
        if not self._connected:
            raise StorageConnectionError("Not connected")

        next_offset = start_offset
        while True:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    """
                    SELECT record_offset, payload, written_at FROM records
                    WHERE stream = ? AND record_offset >= ?
                    ORDER BY record_offset ASC
                    LIMIT ?
                    """,
                    (stream, next_offset, self.scan_batch_size),
                )
                rows = cursor.fetchall()

            if not rows:
                return

            for row in rows:
                yield StoredRecord(
                    payload=bytes(row["payload"]),
                    position=RecordPos(
                        stream=stream,
                        offset=row["record_offset"],
                        timestamp_ms=row["written_at"],
                    ),
                )
            next_offset = rows[-1]["record_offset"] + 1

    async def get_stats(self) -> dict[str, int]:
        """Get record counts per stream."""
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT stream, COUNT(*) FROM records GROUP BY stream")
            return {row[0]: row[1] for row in cursor.fetchall()}
