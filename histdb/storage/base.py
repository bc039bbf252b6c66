"""
Base protocol and types for the record log abstraction.

The record log is the durable storage collaborator that the version store
and the ledger are built on. It stores opaque byte records per stream and
replays them in append order.

Invariants:
    - RecordPos uniquely identifies a record within a stream
    - Offsets within a stream start at 0 and increase by 1 per append
    - append() returns only after the record is durably stored
    - scan() yields records in append order

How to change safely:
    - Protocol changes require updating all implementations
    - Add new methods as optional with default implementations
"""

from __future__ import annotations

import json
import logging
from abc import abstractmethod
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Dict,
    Protocol,
    runtime_checkable,
)

if TYPE_CHECKING:
    from ..config import StorageConfig

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for record log operations."""
    pass


class StorageConnectionError(StorageError):
    """Record log is not connected or the backend is unreachable."""
    pass


class RecordSerializationError(StorageError):
    """Failed to decode a stored record."""
    pass


@dataclass(frozen=True)
class RecordPos:
    """Position of a record in the log.

    Attributes:
        stream: Stream name ("versions", "ledger", ...)
        offset: Offset within the stream
        timestamp_ms: When the record was written (milliseconds)
    """
    stream: str
    offset: int
    timestamp_ms: int

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "stream": self.stream,
            "offset": self.offset,
            "timestamp_ms": self.timestamp_ms,
        }

    def __str__(self) -> str:
        return f"{self.stream}:{self.offset}"


@dataclass(frozen=True)
class StoredRecord:
    """A record read back from the log.

    Attributes:
        payload: Record bytes (JSON-encoded by the callers in this package)
        position: Where the record lives
    """
    payload: bytes
    position: RecordPos

    def payload_json(self) -> Any:
        """Parse payload as JSON.

        Raises:
            RecordSerializationError: If payload is not valid JSON
        """
        try:
            return json.loads(self.payload.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise RecordSerializationError(
                f"Failed to parse record {self.position} as JSON: {e}"
            )


@runtime_checkable
class RecordLog(Protocol):
    """Protocol for record log backends.

    Durability contract:
        - append() returns only after the record is stored
        - A record is either fully stored or absent; never partial

    Example:
        >>> log = SqliteRecordLog("/var/lib/histdb")
        >>> await log.connect()
        >>> pos = await log.append("versions", b'{"mutations": []}')
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open the backend. Must be called before any other operation.

        Raises:
            StorageConnectionError: If the backend cannot be opened
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...

    @abstractmethod
    async def append(self, stream: str, payload: bytes) -> RecordPos:
        """Append a record to a stream.

        Raises:
            StorageConnectionError: If not connected
            StorageError: For other write failures
        """
        ...

    @abstractmethod
    def scan(self, stream: str, start_offset: int = 0) -> AsyncIterator[StoredRecord]:
        """Iterate records of a stream in append order.

        Args:
            stream: Stream name
            start_offset: First offset to yield

        Yields:
            StoredRecord objects
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether the backend is open."""
        ...


def create_record_log(config: "StorageConfig") -> RecordLog:
    """Factory function to create a record log from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StorageBackend
    from .memory import InMemoryRecordLog
    from .sqlite import SqliteRecordLog

    if config.backend == StorageBackend.MEMORY:
        return InMemoryRecordLog()
    elif config.backend == StorageBackend.SQLITE:
        return SqliteRecordLog(
            config.data_dir,
            db_filename=config.db_filename,
            wal_mode=config.wal_mode,
            busy_timeout_ms=config.busy_timeout_ms,
        )
    else:
        raise ValueError(f"Unsupported storage backend: {config.backend}")
