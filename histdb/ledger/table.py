"""
Ledger table: a version store whose every transaction is hash-chained.

Each insert, update, delete or explicit transaction writes one record to
the version store and commits one block to the ledger chain. Updates are
recorded as a DELETE of the prior version followed by an INSERT of the
new one, so both states appear as separate chained entries.

Invariants:
    - One ledger block per logical transaction
    - Block transaction_id equals the version store transaction_id
    - Append-only tables reject update and delete (ImmutableEntityError)

How to change safely:
    - Keep entry generation (_entries_for) in sync with verify_versions()
    - A block commit that fails after the store write is kept pending and
      committed before the next write or verify(). A process that exits
      in between leaves versions without ledger entries, and verify()
      reports them as tampering.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from ..errors import TamperDetectedError
from ..storage.base import RecordSerializationError, StorageError
from ..store.version_store import (
    AppliedChange,
    Change,
    ChangeKind,
    ChangeSet,
    VersionStore,
)
from ..versions import Version
from .blocks import LedgerBlock, LedgerDigest, LedgerEntry, LedgerOperation
from .chain import LedgerChain, VerificationResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerViewRow:
    """One entry of the ledger view with its block context."""

    block_id: int
    transaction_id: str
    committed_at: int
    operation: LedgerOperation
    entity_id: str
    sequence: int
    timestamp: int
    version_hash: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "block_id": self.block_id,
            "transaction_id": self.transaction_id,
            "committed_at": self.committed_at,
            "operation": self.operation.value,
            "entity_id": self.entity_id,
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "version_hash": self.version_hash,
        }


class LedgerTransaction(ChangeSet):
    """Changes to commit as a single ledger block.

    Created by LedgerTable.transaction(); do not instantiate directly.
    """

    def __init__(self) -> None:
        super().__init__()
        self.block: LedgerBlock | None = None


class LedgerTable:
    """Version store plus ledger chain.

    Example:
        >>> table = LedgerTable(store, chain)
        >>> await table.insert("acct-1", {"balance": 100})
        >>> async with table.transaction() as txn:
        ...     txn.update("acct-1", {"balance": 50})
        ...     txn.insert("acct-2", {"balance": 50})
        >>> await table.verify(table.digest())
    """

    def __init__(self, store: VersionStore, chain: LedgerChain) -> None:
        self.store = store
        self.chain = chain
        self._lock = asyncio.Lock()
        self._pending: tuple[str, list[LedgerEntry]] | None = None

    @property
    def append_only(self) -> bool:
        return self.store.append_only

    async def insert(
        self, entity_id: str, attributes: Mapping[str, Any], at: int | None = None
    ) -> Version:
        applied, _ = await self._commit([Change(ChangeKind.INSERT, entity_id, attributes)], at)
        return applied[0].opened

    async def update(
        self, entity_id: str, attributes: Mapping[str, Any], at: int | None = None
    ) -> Version:
        applied, _ = await self._commit([Change(ChangeKind.UPDATE, entity_id, attributes)], at)
        return applied[0].opened

    async def delete(self, entity_id: str, at: int | None = None) -> Version:
        applied, _ = await self._commit([Change(ChangeKind.DELETE, entity_id)], at)
        return applied[0].closed

    @asynccontextmanager
    async def transaction(self, at: int | None = None) -> AsyncIterator[LedgerTransaction]:
        """Group changes into one version-store record and one ledger block.

        Nothing is written if the body raises or if no change was added.
        """
        txn = LedgerTransaction()
        yield txn
        if txn.changes:
            txn.applied, txn.block = await self._commit(txn.changes, at)

    async def _commit(
        self, changes: list[Change], at: int | None
    ) -> tuple[list[AppliedChange], LedgerBlock]:
        async with self._lock:
            await self._seal_pending()
            applied = await self.store.apply_batch(changes, at=at)
            entries = [e for change in applied for e in self._entries_for(change)]
            transaction_id = applied[0].transaction_id
            try:
                block = await self.chain.commit(entries, transaction_id=transaction_id)
            except StorageError:
                # The versions are stored; their block is committed before
                # the next write or verification.
                self._pending = (transaction_id, entries)
                logger.warning(
                    "Ledger block commit failed",
                    extra={"transaction_id": transaction_id, "entries": len(entries)},
                )
                raise
        return applied, block

    async def seal_pending(self) -> LedgerBlock | None:
        """Commit the block of a transaction whose block commit failed.

        Returns:
            The committed block, or None if nothing was pending
        """
        async with self._lock:
            return await self._seal_pending()

    async def _seal_pending(self) -> LedgerBlock | None:
        if self._pending is None:
            return None
        transaction_id, entries = self._pending
        block = await self.chain.commit(entries, transaction_id=transaction_id)
        self._pending = None
        logger.info(
            "Sealed pending ledger block",
            extra={"block_id": block.block_id, "transaction_id": transaction_id},
        )
        return block

    def _entries_for(self, change: AppliedChange) -> list[LedgerEntry]:
        algorithm = self.chain.hash_algorithm
        entries = []
        if change.closed is not None:
            entries.append(LedgerEntry.deleted(change.closed, algorithm))
        if change.opened is not None:
            entries.append(LedgerEntry.inserted(change.opened, algorithm))
        return entries

    def digest(self) -> LedgerDigest:
        return self.chain.digest()

    async def ledger_view(self, entity_id: str | None = None) -> list[LedgerViewRow]:
        """Chained entries in commit order, optionally for one entity."""
        rows = []
        for block in await self.chain.blocks():
            for entry in block.entries:
                if entity_id is not None and entry.entity_id != entity_id:
                    continue
                rows.append(
                    LedgerViewRow(
                        block_id=block.block_id,
                        transaction_id=block.transaction_id,
                        committed_at=block.committed_at,
                        operation=entry.operation,
                        entity_id=entry.entity_id,
                        sequence=entry.sequence,
                        timestamp=entry.timestamp,
                        version_hash=entry.version_hash,
                    )
                )
        return rows

    async def verify(self, expected: LedgerDigest) -> VerificationResult:
        """Verify the chain, then check stored versions against it.

        Raises:
            TamperDetectedError: If the chain is broken or a stored version
                no longer matches what the ledger recorded for it
        """
        await self.seal_pending()
        result = await self.chain.verify(expected)
        await self.verify_versions()
        return result

    async def verify_versions(self) -> None:
        """Compare versions replayed from storage with their ledger entries.

        The live store is not touched: a separate store is replayed from
        the same record log.

        Raises:
            TamperDetectedError: On the first mismatch found
        """
        algorithm = self.chain.hash_algorithm
        inserts: dict[tuple[str, int], LedgerViewRow] = {}
        deletes: dict[tuple[str, int], LedgerViewRow] = {}
        for row in await self.ledger_view():
            target = inserts if row.operation == LedgerOperation.INSERT else deletes
            target[(row.entity_id, row.sequence)] = row

        replica = VersionStore(self.store.log, append_only=self.store.append_only)
        try:
            await replica.load()
        except RecordSerializationError as e:
            raise TamperDetectedError(f"Version storage cannot be replayed: {e}", block_id=-1)

        seen: set[tuple[str, int]] = set()
        for entity_id in replica.entity_ids():
            for version in replica.history(entity_id):
                key = (entity_id, version.sequence)
                seen.add(key)
                insert = inserts.get(key)
                if insert is None:
                    raise TamperDetectedError(
                        f"Version {entity_id}#{version.sequence} has no ledger entry",
                        block_id=-1,
                    )
                actual = version.content_hash(algorithm)
                if insert.version_hash != actual or insert.timestamp != version.valid_from:
                    raise TamperDetectedError(
                        f"Version {entity_id}#{version.sequence} does not match the ledger",
                        block_id=insert.block_id,
                        expected_hash=insert.version_hash,
                        actual_hash=actual,
                    )
                delete = deletes.get(key)
                if version.is_current and delete is not None:
                    raise TamperDetectedError(
                        f"Version {entity_id}#{version.sequence} is current "
                        "but the ledger recorded its deletion",
                        block_id=delete.block_id,
                    )
                if not version.is_current and (
                    delete is None or delete.timestamp != version.valid_to
                ):
                    raise TamperDetectedError(
                        f"Closure of {entity_id}#{version.sequence} does not match the ledger",
                        block_id=delete.block_id if delete else -1,
                    )

        missing = sorted(set(inserts) - seen)
        if missing:
            entity_id, sequence = missing[0]
            raise TamperDetectedError(
                f"Ledger entry for {entity_id}#{sequence} has no stored version",
                block_id=inserts[missing[0]].block_id,
            )

        logger.info("Ledger versions verified", extra={"versions": len(seen)})
