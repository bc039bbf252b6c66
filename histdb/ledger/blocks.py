"""
Ledger block and entry types.

Hash construction:
    hash(block) = H(canonical_json(content) || previous_hash)

where content is block_id, transaction_id, committed_at and the entries,
and previous_hash is the hex hash of the previous block (all zeros for
block 0).

Invariants:
    - block_id equals the block's position in the chain, from 0
    - Changing any byte of content or any earlier block changes the hash
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..versions import Version, canonical_json

EMPTY_BLOCK_ID = -1


class LedgerOperation(Enum):
    INSERT = "INSERT"
    DELETE = "DELETE"


@dataclass(frozen=True)
class LedgerEntry:
    """One row-version operation recorded in a block.

    Attributes:
        operation: INSERT when a version was opened, DELETE when closed
        entity_id: Entity identifier
        sequence: Version ordinal within the entity
        timestamp: valid_from for INSERT, valid_to for DELETE
        version_hash: Content hash of the version
    """

    operation: LedgerOperation
    entity_id: str
    sequence: int
    timestamp: int
    version_hash: str

    @classmethod
    def inserted(cls, version: Version, algorithm: str) -> LedgerEntry:
        return cls(
            operation=LedgerOperation.INSERT,
            entity_id=version.entity_id,
            sequence=version.sequence,
            timestamp=version.valid_from,
            version_hash=version.content_hash(algorithm),
        )

    @classmethod
    def deleted(cls, version: Version, algorithm: str) -> LedgerEntry:
        return cls(
            operation=LedgerOperation.DELETE,
            entity_id=version.entity_id,
            sequence=version.sequence,
            timestamp=version.valid_to,
            version_hash=version.content_hash(algorithm),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation.value,
            "entity_id": self.entity_id,
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "version_hash": self.version_hash,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LedgerEntry:
        return cls(
            operation=LedgerOperation(data["operation"]),
            entity_id=data["entity_id"],
            sequence=data["sequence"],
            timestamp=data["timestamp"],
            version_hash=data["version_hash"],
        )


@dataclass(frozen=True)
class LedgerDigest:
    """Latest (block_id, hash) pair of a chain.

    block_id is EMPTY_BLOCK_ID and hash is all zeros for an empty chain.
    """

    block_id: int
    hash: str

    @property
    def is_empty(self) -> bool:
        return self.block_id == EMPTY_BLOCK_ID

    def to_dict(self) -> dict[str, Any]:
        return {"block_id": self.block_id, "hash": self.hash}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LedgerDigest:
        """Create from dictionary representation.

        Raises:
            ValueError: If a key is missing or block_id is below EMPTY_BLOCK_ID
        """
        try:
            block_id = int(data["block_id"])
            digest_hash = str(data["hash"])
        except (KeyError, TypeError) as e:
            raise ValueError(f"Digest needs block_id and hash: {e}")
        if block_id < EMPTY_BLOCK_ID:
            raise ValueError(f"Digest block_id must be >= {EMPTY_BLOCK_ID}, got {block_id}")
        return cls(block_id=block_id, hash=digest_hash)


def zero_hash(algorithm: str) -> str:
    """All-zero hex string of the algorithm's digest size."""
    return "0" * (hashlib.new(algorithm).digest_size * 2)


def empty_digest(algorithm: str = "sha256") -> LedgerDigest:
    return LedgerDigest(block_id=EMPTY_BLOCK_ID, hash=zero_hash(algorithm))


@dataclass(frozen=True)
class LedgerBlock:
    """A hash-chained batch of entries from one logical transaction."""

    block_id: int
    transaction_id: str
    committed_at: int
    previous_hash: str
    hash: str
    entries: tuple[LedgerEntry, ...] = field(default_factory=tuple)

    def content(self) -> dict[str, Any]:
        """The hashed part of the block."""
        return {
            "block_id": self.block_id,
            "transaction_id": self.transaction_id,
            "committed_at": self.committed_at,
            "entries": [e.to_dict() for e in self.entries],
        }

    def compute_hash(self, algorithm: str) -> str:
        return compute_block_hash(self.content(), self.previous_hash, algorithm)

    def digest(self) -> LedgerDigest:
        return LedgerDigest(block_id=self.block_id, hash=self.hash)

    def to_dict(self) -> dict[str, Any]:
        data = self.content()
        data["previous_hash"] = self.previous_hash
        data["hash"] = self.hash
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LedgerBlock:
        """Create from dictionary representation.

        Raises:
            ValueError: If required fields are missing or malformed
        """
        try:
            return cls(
                block_id=data["block_id"],
                transaction_id=data["transaction_id"],
                committed_at=data["committed_at"],
                previous_hash=data["previous_hash"],
                hash=data["hash"],
                entries=tuple(LedgerEntry.from_dict(e) for e in data["entries"]),
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed ledger block: {e}")


def compute_block_hash(content: dict[str, Any], previous_hash: str, algorithm: str) -> str:
    hasher = hashlib.new(algorithm)
    hasher.update(canonical_json(content))
    hasher.update(previous_hash.encode("ascii"))
    return hasher.hexdigest()
