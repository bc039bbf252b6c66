"""
In-memory record log implementation for testing.

This module provides a simple in-memory backend for:
- Unit tests
- Integration tests
- Embedding without persistence

Invariants:
    - All data is lost on process exit
    - Provides the same ordering guarantees as the SQLite backend
    - Safe to use from multiple coroutines

How to change safely:
    - Keep interface compatible with the RecordLog protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from typing import AsyncIterator, Dict, List

from .base import (
    RecordPos,
    StorageConnectionError,
    StoredRecord,
)

logger = logging.getLogger(__name__)


class InMemoryRecordLog:
    """In-memory implementation of RecordLog.

    Thread safety:
        Uses an asyncio lock around appends. Scans iterate over a
        snapshot of the stream taken when the scan starts.

    Example:
        >>> log = InMemoryRecordLog()
        >>> await log.connect()
        >>> await log.append("versions", b"{}")
        >>> async for record in log.scan("versions"):
        ...     print(record.payload)
    """

    def __init__(self) -> None:
        self._streams: Dict[str, List[StoredRecord]] = defaultdict(list)
        self._connected = False
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        """Whether connected (always true after connect())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryRecordLog connected")

    async def close(self) -> None:
        """Close. Data is kept so a reconnect can replay it."""
        self._connected = False
        logger.debug("InMemoryRecordLog closed")

    async def append(self, stream: str, payload: bytes) -> RecordPos:
        """Append a record to an in-memory stream.

        Returns:
            RecordPos of the stored record
        """
        if not self._connected:
            raise StorageConnectionError("Not connected")

        async with self._lock:
            records = self._streams[stream]
            pos = RecordPos(
                stream=stream,
                offset=len(records),
                timestamp_ms=int(time.time() * 1000),
            )
            records.append(StoredRecord(payload=payload, position=pos))

        logger.debug(
            "Record appended to in-memory log",
            extra={"stream": stream, "offset": pos.offset, "size": len(payload)},
        )
        return pos

    async def scan(self, stream: str, start_offset: int = 0) -> AsyncIterator[StoredRecord]:
        """Iterate records of a stream in append order."""
        if not self._connected:
            raise StorageConnectionError("Not connected")

        for record in list(self._streams.get(stream, []))[start_offset:]:
            yield record

    # Testing helpers

    def get_all_records(self, stream: str) -> List[StoredRecord]:
        """Get all records of a stream (testing helper)."""
        return list(self._streams.get(stream, []))

    def get_record_count(self, stream: str) -> int:
        """Get record count of a stream (testing helper)."""
        return len(self._streams.get(stream, []))

    def overwrite_record(self, stream: str, offset: int, payload: bytes) -> None:
        """Replace a stored record's bytes, bypassing all checks (testing helper).

        Simulates an out-of-band edit of the backing store.
        """
        old = self._streams[stream][offset]
        self._streams[stream][offset] = StoredRecord(payload=payload, position=old.position)
