"""
Error types for HistDB.

This module defines all exception types raised by the library:
- HistDbError: Base exception
- NotFoundError: No current version for the referenced entity
- ConflictError: Insert against an entity that already has history
- ImmutableEntityError: Mutation of an append-only collection
- InvalidIntervalError: Empty, backwards or out-of-order period
- TamperDetectedError: Ledger verification mismatch

Invariants:
    - All errors inherit from HistDbError
    - Errors include context for debugging
    - Errors are raised synchronously and never retried by the library
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class HistDbError(Exception):
    """Base exception for all HistDB errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "HISTDB_ERROR"
        self.details = details or {}


class NotFoundError(HistDbError):
    """Entity has no current version.

    Raised when:
    - Superseding or closing an entity that was never inserted
    - Superseding or closing an entity that was already closed
    """

    def __init__(self, message: str, entity_id: str) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={"entity_id": entity_id},
        )
        self.entity_id = entity_id


class ConflictError(HistDbError):
    """Insert attempted against an entity that already has history."""

    def __init__(self, message: str, entity_id: str) -> None:
        super().__init__(
            message,
            code="CONFLICT",
            details={"entity_id": entity_id},
        )
        self.entity_id = entity_id


class ImmutableEntityError(HistDbError):
    """Supersede or close attempted against an append-only collection."""

    def __init__(self, message: str, entity_id: str) -> None:
        super().__init__(
            message,
            code="IMMUTABLE",
            details={"entity_id": entity_id},
        )
        self.entity_id = entity_id


class InvalidIntervalError(HistDbError):
    """Timestamp would produce an empty, backwards or overlapping period.

    Raised when:
    - A supersession or close is not strictly after the current valid_from
    - A range query has start > end
    """

    def __init__(
        self,
        message: str,
        start: Optional[int] = None,
        end: Optional[int] = None,
    ) -> None:
        super().__init__(
            message,
            code="INVALID_INTERVAL",
            details={"start": start, "end": end},
        )
        self.start = start
        self.end = end


class TamperDetectedError(HistDbError):
    """Ledger verification failed.

    Attributes:
        block_id: First block whose recomputed state diverges
        expected_hash: Hash the verifier expected
        actual_hash: Hash recomputed from stored content
    """

    def __init__(
        self,
        message: str,
        block_id: int,
        expected_hash: Optional[str] = None,
        actual_hash: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="TAMPER_DETECTED",
            details={
                "block_id": block_id,
                "expected_hash": expected_hash,
                "actual_hash": actual_hash,
            },
        )
        self.block_id = block_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
