"""
Hash-chained ledger of committed transactions.

The LedgerChain appends one LedgerBlock per logical transaction to the
"ledger" stream of a record log. Each block's hash covers its content and
the previous block's hash, so editing any stored block breaks every later
link.

Invariants:
    - One block per commit() call, regardless of entry count
    - Block ids are dense and start at 0
    - verify() reads from the record log, never from the in-memory cache,
      and never modifies anything

How to change safely:
    - The block serialization is part of the hash; changing it invalidates
      every digest handed out so far
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, replace

from ..clock import Clock, SystemClock
from ..errors import TamperDetectedError
from ..storage.base import RecordLog, RecordSerializationError
from .blocks import (
    EMPTY_BLOCK_ID,
    LedgerBlock,
    LedgerDigest,
    LedgerEntry,
    compute_block_hash,
    empty_digest,
    zero_hash,
)

logger = logging.getLogger(__name__)

LEDGER_STREAM = "ledger"


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of a successful verification.

    Attributes:
        blocks_verified: Number of blocks recomputed
        digest: Digest the chain was verified against
    """

    blocks_verified: int
    digest: LedgerDigest


class LedgerChain:
    """Tamper-evident chain of ledger blocks.

    Example:
        >>> chain = LedgerChain(InMemoryRecordLog())
        >>> await chain.open()
        >>> block = await chain.commit([entry])
        >>> digest = chain.digest()
        >>> await chain.verify(digest)
    """

    def __init__(
        self,
        log: RecordLog,
        hash_algorithm: str = "sha256",
        clock: Clock | None = None,
    ) -> None:
        """Initialize the chain.

        Args:
            log: Record log holding the ledger stream
            hash_algorithm: hashlib algorithm name
            clock: Source of committed_at timestamps
        """
        self.log = log
        self.hash_algorithm = hash_algorithm
        self.clock = clock or SystemClock()
        self._blocks: list[LedgerBlock] = []
        self._lock = asyncio.Lock()

    async def open(self) -> None:
        """Connect the record log and load existing blocks."""
        if not self.log.is_connected:
            await self.log.connect()
        await self.load()

    async def load(self) -> int:
        """Load blocks from the record log into memory.

        Blocks are loaded as stored; use verify() to check them.

        Returns:
            Number of blocks loaded
        """
        self._blocks = await self._read_blocks()
        logger.info(
            "Loaded ledger chain",
            extra={"blocks": len(self._blocks), "hash_algorithm": self.hash_algorithm},
        )
        return len(self._blocks)

    async def commit(
        self,
        entries: Iterable[LedgerEntry],
        transaction_id: str | None = None,
    ) -> LedgerBlock:
        """Append one block holding all entries of a transaction.

        Args:
            entries: Entries produced by one logical transaction
            transaction_id: Transaction identifier (generated if not given)

        Returns:
            The committed block

        Raises:
            ValueError: If entries is empty
        """
        entries = tuple(entries)
        if not entries:
            raise ValueError("Cannot commit an empty ledger block")

        async with self._lock:
            block_id = len(self._blocks)
            previous_hash = self._blocks[-1].hash if self._blocks else zero_hash(self.hash_algorithm)
            unsealed = LedgerBlock(
                block_id=block_id,
                transaction_id=transaction_id or uuid.uuid4().hex,
                committed_at=self.clock.now_ms(),
                previous_hash=previous_hash,
                hash="",
                entries=entries,
            )
            block = replace(unsealed, hash=unsealed.compute_hash(self.hash_algorithm))

            await self.log.append(LEDGER_STREAM, _encode(block))
            self._blocks.append(block)

        logger.debug(
            "Committed ledger block",
            extra={
                "block_id": block.block_id,
                "transaction_id": block.transaction_id,
                "entries": len(entries),
            },
        )
        return block

    def digest(self) -> LedgerDigest:
        """Latest (block_id, hash), or the empty digest if no blocks exist."""
        if not self._blocks:
            return empty_digest(self.hash_algorithm)
        return self._blocks[-1].digest()

    def cached_blocks(self) -> list[LedgerBlock]:
        """Blocks as committed or loaded by this instance."""
        return list(self._blocks)

    async def blocks(self) -> list[LedgerBlock]:
        """Blocks as currently stored in the record log.

        Raises:
            TamperDetectedError: If a stored block cannot be decoded
        """
        blocks = []
        async for stored in self.log.scan(LEDGER_STREAM):
            try:
                blocks.append(LedgerBlock.from_dict(stored.payload_json()))
            except (RecordSerializationError, ValueError) as e:
                raise TamperDetectedError(
                    f"Ledger block {stored.position.offset} cannot be decoded: {e}",
                    block_id=stored.position.offset,
                )
        return blocks

    async def verify(self, expected: LedgerDigest) -> VerificationResult:
        """Recompute the chain from block 0 and compare with a trusted digest.

        Args:
            expected: Digest obtained earlier from digest()

        Returns:
            VerificationResult on success

        Raises:
            TamperDetectedError: Naming the first block whose stored hash or
                link does not match recomputation, or whose hash differs
                from the expected digest
        """
        previous = zero_hash(self.hash_algorithm)
        recomputed: list[str] = []
        count = 0

        async for stored in self.log.scan(LEDGER_STREAM):
            offset = stored.position.offset
            try:
                block = LedgerBlock.from_dict(stored.payload_json())
                actual = compute_block_hash(block.content(), block.previous_hash, self.hash_algorithm)
            except (RecordSerializationError, ValueError) as e:
                self._report(offset, "undecodable block")
                raise TamperDetectedError(
                    f"Ledger block {offset} cannot be decoded: {e}", block_id=offset
                )

            if block.block_id != offset:
                self._report(offset, "block id mismatch")
                raise TamperDetectedError(
                    f"Ledger block at position {offset} claims id {block.block_id}",
                    block_id=offset,
                )
            if block.previous_hash != previous:
                self._report(offset, "broken link")
                raise TamperDetectedError(
                    f"Ledger block {offset} does not link to block {offset - 1}",
                    block_id=offset,
                    expected_hash=previous,
                    actual_hash=block.previous_hash,
                )
            if actual != block.hash:
                self._report(offset, "hash mismatch")
                raise TamperDetectedError(
                    f"Ledger block {offset} content does not match its hash",
                    block_id=offset,
                    expected_hash=block.hash,
                    actual_hash=actual,
                )

            recomputed.append(actual)
            previous = actual
            count += 1

        if expected.block_id < EMPTY_BLOCK_ID:
            self._report(expected.block_id, "invalid digest")
            raise TamperDetectedError(
                f"Digest block id {expected.block_id} is not a valid block id",
                block_id=expected.block_id,
                expected_hash=expected.hash,
            )
        if expected.is_empty:
            if expected.hash != zero_hash(self.hash_algorithm):
                raise TamperDetectedError(
                    "Empty digest carries a non-zero hash",
                    block_id=expected.block_id,
                    expected_hash=expected.hash,
                )
        elif expected.block_id >= len(recomputed):
            self._report(expected.block_id, "missing block")
            raise TamperDetectedError(
                f"Ledger block {expected.block_id} from the digest is missing "
                f"(chain has {len(recomputed)} blocks)",
                block_id=expected.block_id,
                expected_hash=expected.hash,
            )
        elif recomputed[expected.block_id] != expected.hash:
            self._report(expected.block_id, "digest mismatch")
            raise TamperDetectedError(
                f"Ledger block {expected.block_id} does not match the expected digest",
                block_id=expected.block_id,
                expected_hash=expected.hash,
                actual_hash=recomputed[expected.block_id],
            )

        logger.info(
            "Ledger verified",
            extra={"blocks_verified": count, "digest_block_id": expected.block_id},
        )
        return VerificationResult(blocks_verified=count, digest=expected)

    async def _read_blocks(self) -> list[LedgerBlock]:
        blocks = []
        async for stored in self.log.scan(LEDGER_STREAM):
            try:
                blocks.append(LedgerBlock.from_dict(stored.payload_json()))
            except ValueError as e:
                raise RecordSerializationError(f"Invalid ledger block at {stored.position}: {e}")
        return blocks

    @staticmethod
    def _report(block_id: int, reason: str) -> None:
        logger.warning("Ledger tampering detected", extra={"block_id": block_id, "reason": reason})


def _encode(block: LedgerBlock) -> bytes:
    return json.dumps(block.to_dict(), ensure_ascii=False).encode("utf-8")

