"""
Record log abstraction for HistDB.

This module provides a pluggable durable storage interface supporting:
- SQLite (one database file per data directory)
- In-memory (for testing)

The record log is the source of truth for all writes. The version store
index and the ledger chain are rebuilt from it on load.

Invariants:
    - append() returns only after the record is stored
    - Records within a stream are totally ordered by offset
    - A failed append leaves no partial record

How to change safely:
    - New backends must implement the RecordLog protocol
    - Verify that scan() order matches append order under concurrency
"""

from .base import (
    RecordLog,
    RecordPos,
    RecordSerializationError,
    StorageConnectionError,
    StorageError,
    StoredRecord,
    create_record_log,
)
from .memory import InMemoryRecordLog
from .sqlite import SqliteRecordLog

__all__ = [
    # Protocol and types
    "RecordLog",
    "RecordPos",
    "StoredRecord",
    "StorageError",
    "StorageConnectionError",
    "RecordSerializationError",
    # Factory
    "create_record_log",
    # Implementations
    "InMemoryRecordLog",
    "SqliteRecordLog",
]
