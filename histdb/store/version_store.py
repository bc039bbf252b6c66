"""
Append-only version store for HistDB.

The VersionStore keeps every version of every entity. It writes one
TransactionRecord per mutating call to the record log and maintains an
in-memory index of per-entity histories that can be rebuilt by replaying
the log.

Invariants:
    - Versions of one entity are ascending, contiguous, non-overlapping
    - At most one open version per entity; none after a close
    - An entity id has a single lifetime: it cannot be re-inserted once closed
    - The log write happens before the index changes; a failed write
      leaves the index untouched
    - Histories are immutable tuples swapped on write, so readers never
      observe a half-applied supersession

How to change safely:
    - Keep validation and replay (_apply_mutation) in sync
    - Test replay with logs written by older versions
    - Never rewrite stored attribute values; add new mutations instead

Concurrency:
    One asyncio.Lock per entity. A batch acquires the locks of all the
    entities it touches in sorted order. Reads take no locks.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..clock import Clock, SystemClock
from ..errors import (
    ConflictError,
    ImmutableEntityError,
    InvalidIntervalError,
    NotFoundError,
)
from ..storage.base import RecordLog, RecordSerializationError
from ..versions import END_OF_TIME, Period, Version
from .records import Mutation, MutationOp, TransactionRecord

logger = logging.getLogger(__name__)

VERSIONS_STREAM = "versions"


class ChangeKind(Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class Change:
    """A requested change to one entity.

    Attributes:
        kind: INSERT, UPDATE or DELETE
        entity_id: Entity identifier
        attributes: New business fields (INSERT and UPDATE)
    """

    kind: ChangeKind
    entity_id: str
    attributes: Mapping[str, Any] | None = None


@dataclass(frozen=True)
class AppliedChange:
    """Outcome of one change.

    Attributes:
        kind: The requested change kind
        entity_id: Entity identifier
        closed: The version that was closed (UPDATE, DELETE)
        opened: The version that was opened (INSERT, UPDATE)
        transaction_id: Transaction the change was written in
    """

    kind: ChangeKind
    entity_id: str
    closed: Version | None
    opened: Version | None
    transaction_id: str


class ChangeSet:
    """Collects changes to apply together.

    Yielded by VersionStore.batch() and LedgerTable.transaction().
    """

    def __init__(self) -> None:
        self.changes: list[Change] = []
        self.applied: list[AppliedChange] = []

    def insert(self, entity_id: str, attributes: Mapping[str, Any]) -> None:
        self.changes.append(Change(ChangeKind.INSERT, entity_id, attributes))

    def update(self, entity_id: str, attributes: Mapping[str, Any]) -> None:
        self.changes.append(Change(ChangeKind.UPDATE, entity_id, attributes))

    def delete(self, entity_id: str) -> None:
        self.changes.append(Change(ChangeKind.DELETE, entity_id))


class VersionStore:
    """Append-only storage of entity versions.

    Example:
        >>> store = VersionStore(InMemoryRecordLog(), clock=ManualClock(0))
        >>> await store.open()
        >>> await store.append("E1", {"name": "A"})
        >>> await store.supersede("E1", {"name": "B"}, at=10)
        >>> [v.attributes async for v in store.versions_of("E1")]
        [{'name': 'A'}, {'name': 'B'}]
    """

    def __init__(
        self,
        log: RecordLog,
        clock: Clock | None = None,
        append_only: bool = False,
    ) -> None:
        """Initialize the store.

        Args:
            log: Record log used as the source of truth
            clock: Timestamp source for default boundaries
            append_only: Reject supersede/close with ImmutableEntityError
        """
        self.log = log
        self.clock = clock or SystemClock()
        self.append_only = append_only
        self._histories: dict[str, tuple[Version, ...]] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def __aenter__(self) -> VersionStore:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    async def open(self) -> None:
        """Connect the record log and rebuild the index from it."""
        if not self.log.is_connected:
            await self.log.connect()
        await self.load()

    async def shutdown(self) -> None:
        """Close the record log."""
        await self.log.close()

    async def load(self) -> int:
        """Rebuild the in-memory index by replaying the record log.

        Returns:
            Number of records replayed

        Raises:
            RecordSerializationError: If a record cannot be decoded or
                contradicts the history replayed so far
        """
        self._histories = {}
        count = 0
        async for stored in self.log.scan(VERSIONS_STREAM):
            try:
                record = TransactionRecord.from_dict(stored.payload_json())
                for mutation in record.mutations:
                    self._apply_mutation(mutation, record.transaction_id)
            except ValueError as e:
                raise RecordSerializationError(f"Invalid record at {stored.position}: {e}")
            count += 1

        logger.info(
            "Loaded version store",
            extra={"records": count, "entities": len(self._histories)},
        )
        return count

    # Writes

    async def append(
        self,
        entity_id: str,
        attributes: Mapping[str, Any],
        valid_from: int | None = None,
    ) -> Version:
        """Insert a new entity.

        Raises:
            ConflictError: If the entity id already has history
        """
        applied = await self.apply_batch(
            [Change(ChangeKind.INSERT, entity_id, attributes)], at=valid_from
        )
        return applied[0].opened

    async def supersede(
        self,
        entity_id: str,
        new_attributes: Mapping[str, Any],
        at: int | None = None,
    ) -> Version:
        """Close the current version at `at` and open a new one starting there.

        Returns:
            The new current version

        Raises:
            ImmutableEntityError: If the store is append-only
            NotFoundError: If there is no current version
            InvalidIntervalError: If `at` is not after the current valid_from
        """
        applied = await self.apply_batch(
            [Change(ChangeKind.UPDATE, entity_id, new_attributes)], at=at
        )
        return applied[0].opened

    async def close(self, entity_id: str, at: int | None = None) -> Version:
        """Close the current version without a replacement (logical delete).

        Returns:
            The closed version

        Raises:
            ImmutableEntityError: If the store is append-only
            NotFoundError: If there is no current version
            InvalidIntervalError: If `at` is not after the current valid_from
        """
        applied = await self.apply_batch([Change(ChangeKind.DELETE, entity_id)], at=at)
        return applied[0].closed

    async def apply_batch(
        self,
        changes: Iterable[Change],
        at: int | None = None,
    ) -> list[AppliedChange]:
        """Apply several changes as one record with one timestamp.

        All changes are validated before anything is written; if any
        change is invalid, nothing is written.

        Args:
            changes: Changes to apply, each entity at most once
            at: Transaction timestamp. Defaults to the clock, advanced past
                the start of any current version being closed; an explicit
                `at` that is not after it raises InvalidIntervalError.

        Returns:
            AppliedChange per input change, in input order
        """
        changes = list(changes)
        if not changes:
            raise ValueError("Batch must contain at least one change")

        entity_ids = [c.entity_id for c in changes]
        if len(set(entity_ids)) != len(entity_ids):
            raise ValueError("A batch may change each entity at most once")

        # Histories only grow, so these rejections hold without the lock and
        # leave no lock behind for ids that were never written.
        for change in changes:
            self._check_target(change)
            if change.kind != ChangeKind.DELETE:
                self._freeze(change)

        async with AsyncExitStack() as stack:
            for entity_id in sorted(entity_ids):
                await stack.enter_async_context(self._locks[entity_id])

            ts = self._default_timestamp(changes) if at is None else at
            if ts >= END_OF_TIME:
                raise InvalidIntervalError(f"Timestamp {ts} is not before END_OF_TIME", end=ts)
            transaction_id = uuid.uuid4().hex
            mutations: list[Mutation] = []
            for change in changes:
                mutations.extend(self._plan(change, ts))

            record = TransactionRecord(transaction_id=transaction_id, mutations=mutations)
            await self.log.append(VERSIONS_STREAM, record.to_bytes())

            for mutation in mutations:
                self._apply_mutation(mutation, transaction_id)

            applied = [self._describe(change, ts, transaction_id) for change in changes]

        logger.debug(
            "Applied batch",
            extra={
                "transaction_id": transaction_id,
                "changes": len(changes),
                "ts": ts,
            },
        )
        return applied

    @asynccontextmanager
    async def batch(self, at: int | None = None) -> AsyncIterator[ChangeSet]:
        """Collect changes in a block and apply them as one batch on exit.

        Nothing is written if the block raises or adds no change.

        Example:
            >>> async with store.batch(at=40) as batch:
            ...     batch.update("E1", {"name": "D"})
            ...     batch.delete("E2")
        """
        change_set = ChangeSet()
        yield change_set
        if change_set.changes:
            change_set.applied = await self.apply_batch(change_set.changes, at=at)

    def _plan(self, change: Change, ts: int) -> list[Mutation]:
        """Validate a change against current state and return its mutations."""
        history = self._histories.get(change.entity_id, ())

        if change.kind == ChangeKind.INSERT:
            if history:
                state = "a current version" if history[-1].is_current else "closed history"
                raise ConflictError(
                    f"Entity {change.entity_id} already has {state}",
                    entity_id=change.entity_id,
                )
            return [
                Mutation(
                    op=MutationOp.OPEN,
                    entity_id=change.entity_id,
                    sequence=0,
                    timestamp=ts,
                    attributes=self._freeze(change),
                )
            ]

        self._check_target(change)
        current = history[-1]
        if ts <= current.valid_from:
            raise InvalidIntervalError(
                f"Timestamp {ts} for {change.entity_id} is not after "
                f"current valid_from {current.valid_from}",
                start=current.valid_from,
                end=ts,
            )

        mutations = [
            Mutation(
                op=MutationOp.CLOSE,
                entity_id=change.entity_id,
                sequence=current.sequence,
                timestamp=ts,
            )
        ]
        if change.kind == ChangeKind.UPDATE:
            mutations.append(
                Mutation(
                    op=MutationOp.OPEN,
                    entity_id=change.entity_id,
                    sequence=current.sequence + 1,
                    timestamp=ts,
                    attributes=self._freeze(change),
                )
            )
        return mutations

    def _check_target(self, change: Change) -> None:
        """Reject updates and deletes of append-only or non-current entities."""
        if change.kind == ChangeKind.INSERT:
            return
        if self.append_only:
            raise ImmutableEntityError(
                f"Cannot {change.kind.value} {change.entity_id}: collection is append-only",
                entity_id=change.entity_id,
            )
        history = self._histories.get(change.entity_id, ())
        if not history or not history[-1].is_current:
            raise NotFoundError(
                f"Entity {change.entity_id} has no current version",
                entity_id=change.entity_id,
            )

    def _default_timestamp(self, changes: list[Change]) -> int:
        """Clock time, moved past the valid_from of every version being closed.

        Two writes to one entity within the same millisecond still produce
        a non-empty period for the first version.
        """
        ts = self.clock.now_ms()
        for change in changes:
            current = self.current(change.entity_id)
            if change.kind != ChangeKind.INSERT and current is not None:
                ts = max(ts, current.valid_from + 1)
        return ts

    @staticmethod
    def _freeze(change: Change) -> dict[str, Any]:
        if change.attributes is None:
            raise ValueError(f"{change.kind.value} of {change.entity_id} requires attributes")
        # Fail before the log write if the attributes cannot be stored
        Version.create(change.entity_id, change.attributes, Period(valid_from=0))
        return dict(change.attributes)

    def _apply_mutation(self, mutation: Mutation, transaction_id: str) -> None:
        """Apply one mutation to the index (shared by writes and replay)."""
        history = self._histories.get(mutation.entity_id, ())

        if mutation.op == MutationOp.OPEN:
            if history and history[-1].is_current:
                raise ValueError(f"Open of {mutation.entity_id} while a version is current")
            if mutation.sequence != len(history):
                raise ValueError(
                    f"Open of {mutation.entity_id} has sequence {mutation.sequence}, "
                    f"expected {len(history)}"
                )
            if history and history[-1].valid_to != mutation.timestamp:
                raise ValueError(f"Open of {mutation.entity_id} leaves a gap in its history")
            version = Version.create(
                mutation.entity_id,
                mutation.attributes or {},
                Period(
                    valid_from=mutation.timestamp,
                    sequence=mutation.sequence,
                    transaction_id=transaction_id,
                ),
            )
            self._histories[mutation.entity_id] = history + (version,)
        else:
            if not history or not history[-1].is_current:
                raise ValueError(f"Close of {mutation.entity_id} without a current version")
            if history[-1].sequence != mutation.sequence:
                raise ValueError(
                    f"Close of {mutation.entity_id} targets sequence {mutation.sequence}, "
                    f"current is {history[-1].sequence}"
                )
            closed = history[-1].closed_at(mutation.timestamp)
            self._histories[mutation.entity_id] = history[:-1] + (closed,)

    def _describe(self, change: Change, ts: int, transaction_id: str) -> AppliedChange:
        history = self._histories[change.entity_id]
        if change.kind == ChangeKind.INSERT:
            closed, opened = None, history[-1]
        elif change.kind == ChangeKind.UPDATE:
            closed, opened = history[-2], history[-1]
        else:
            closed, opened = history[-1], None
        return AppliedChange(
            kind=change.kind,
            entity_id=change.entity_id,
            closed=closed,
            opened=opened,
            transaction_id=transaction_id,
        )

    # Reads

    async def versions_of(self, entity_id: str) -> AsyncIterator[Version]:
        """Yield all versions of an entity, ascending by valid_from.

        Iterates a snapshot taken when iteration starts; every call
        starts over.
        """
        for version in self._histories.get(entity_id, ()):
            yield version

    def history(self, entity_id: str) -> tuple[Version, ...]:
        """Snapshot of all versions of an entity (empty if unknown)."""
        return self._histories.get(entity_id, ())

    def current(self, entity_id: str) -> Version | None:
        """The open version of an entity, or None if absent or closed."""
        history = self._histories.get(entity_id, ())
        if history and history[-1].is_current:
            return history[-1]
        return None

    def entity_ids(self) -> list[str]:
        return sorted(self._histories)

    def get_stats(self) -> dict[str, int]:
        """Get counts of entities, versions and current versions."""
        histories = list(self._histories.values())
        return {
            "entities": len(histories),
            "versions": sum(len(h) for h in histories),
            "current": sum(1 for h in histories if h[-1].is_current),
        }
