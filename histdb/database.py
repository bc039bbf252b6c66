"""
HistDB database facade.

Wires the record log, version store, query engine and (optionally) the
ledger from a HistDbConfig, and routes writes through the ledger when it
is enabled.

Usage:
    >>> async with HistDb(HistDbConfig.from_env()) as db:
    ...     await db.insert("E1", {"name": "A"})
    ...     db.query.as_of("E1", now)

Invariants:
    - Store and ledger share one record log ("versions" and "ledger" streams)
    - With the ledger enabled every write produces exactly one block
    - Append-only mode applies to the store whether or not the ledger is on

How to change safely:
    - Open the store before the chain; both replay from the same log
    - Route every write through the ledger when it is enabled, otherwise
      versions exist that verify() reports as tampering
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from typing import Any

from .clock import Clock, SystemClock
from .config import HistDbConfig, LedgerMode
from .errors import HistDbError
from .ledger import LedgerChain, LedgerDigest, LedgerTable, VerificationResult
from .query import TemporalQueryEngine
from .storage import RecordLog, create_record_log
from .store import ChangeSet, VersionStore
from .versions import Version

logger = logging.getLogger(__name__)


class HistDb:
    """Versioned record database.

    Attributes:
        config: Database configuration
        log: Record log shared by all components
        store: Version store
        query: Temporal query engine over the store
        ledger: Ledger table, or None when the ledger is disabled
    """

    def __init__(
        self,
        config: HistDbConfig | None = None,
        log: RecordLog | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Initialize the database.

        Args:
            config: Configuration (defaults to HistDbConfig())
            log: Record log to use instead of one built from config.storage
            clock: Timestamp source shared by the store and the ledger
        """
        self.config = config or HistDbConfig()
        self.clock = clock or SystemClock()
        self.log = log if log is not None else create_record_log(self.config.storage)
        self.store = VersionStore(
            self.log,
            clock=self.clock,
            append_only=self.config.ledger.mode == LedgerMode.APPEND_ONLY,
        )
        self.query = TemporalQueryEngine(self.store)
        self.ledger: LedgerTable | None = None
        if self.config.ledger.enabled:
            chain = LedgerChain(
                self.log,
                hash_algorithm=self.config.ledger.hash_algorithm,
                clock=self.clock,
            )
            self.ledger = LedgerTable(self.store, chain)
        self._open = False

    async def __aenter__(self) -> HistDb:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        """Connect storage and replay it into memory."""
        if self._open:
            logger.warning("HistDb already open")
            return

        await self.store.open()
        if self.ledger is not None:
            await self.ledger.chain.load()
        self._open = True

        logger.info(
            "HistDb opened",
            extra={**self.store.get_stats(), "ledger_enabled": self.ledger is not None},
        )

    async def close(self) -> None:
        if not self._open:
            return
        await self.store.shutdown()
        self._open = False
        logger.info("HistDb closed")

    # Writes

    async def insert(
        self, entity_id: str, attributes: Mapping[str, Any], at: int | None = None
    ) -> Version:
        if self.ledger is not None:
            return await self.ledger.insert(entity_id, attributes, at=at)
        return await self.store.append(entity_id, attributes, valid_from=at)

    async def update(
        self, entity_id: str, attributes: Mapping[str, Any], at: int | None = None
    ) -> Version:
        if self.ledger is not None:
            return await self.ledger.update(entity_id, attributes, at=at)
        return await self.store.supersede(entity_id, attributes, at=at)

    async def delete(self, entity_id: str, at: int | None = None) -> Version:
        if self.ledger is not None:
            return await self.ledger.delete(entity_id, at=at)
        return await self.store.close(entity_id, at=at)

    @asynccontextmanager
    async def transaction(self, at: int | None = None) -> AsyncIterator[ChangeSet]:
        """Apply several changes atomically (and as one block with the ledger on)."""
        if self.ledger is not None:
            writer = self.ledger.transaction(at=at)
        else:
            writer = self.store.batch(at=at)
        async with writer as change_set:
            yield change_set

    # Ledger

    def digest(self) -> LedgerDigest:
        return self.require_ledger().digest()

    async def verify(self, expected: LedgerDigest) -> VerificationResult:
        return await self.require_ledger().verify(expected)

    def require_ledger(self) -> LedgerTable:
        if self.ledger is None:
            raise HistDbError(
                "Ledger is disabled (HISTDB_LEDGER_ENABLED=false)", code="LEDGER_DISABLED"
            )
        return self.ledger

    def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = dict(self.store.get_stats())
        if self.ledger is not None:
            digest = self.ledger.digest()
            stats["ledger_blocks"] = digest.block_id + 1
        return stats
