"""
Version store for HistDB.

This module handles:
- Append-only storage of entity versions on top of a record log
- Per-entity serialization of writers
- Replay of the record log into an in-memory history index

Invariants:
    - Every mutating call writes exactly one record
    - A supersession's close and open are one record
    - Stored attribute values are never rewritten
"""

from .records import Mutation, MutationOp, TransactionRecord
from .version_store import (
    VERSIONS_STREAM,
    AppliedChange,
    Change,
    ChangeKind,
    ChangeSet,
    VersionStore,
)

__all__ = [
    "VersionStore",
    "Change",
    "ChangeKind",
    "ChangeSet",
    "AppliedChange",
    "VERSIONS_STREAM",
    "Mutation",
    "MutationOp",
    "TransactionRecord",
]
