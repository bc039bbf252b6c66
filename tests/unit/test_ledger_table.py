"""
Unit tests for the ledger table.

Tests cover:
- One block per insert, update, delete and transaction
- DELETE + INSERT entries for updates
- Append-only tables
- Verification of stored versions against the ledger
"""

import json

import pytest

from histdb.clock import ManualClock
from histdb.errors import ImmutableEntityError, NotFoundError, TamperDetectedError
from histdb.ledger import LEDGER_STREAM, LedgerChain, LedgerOperation, LedgerTable
from histdb.storage import InMemoryRecordLog, StorageError
from histdb.store import VERSIONS_STREAM, VersionStore


class LedgerFailingRecordLog(InMemoryRecordLog):
    """Record log whose ledger stream appends can be made to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_ledger = False

    async def append(self, stream, payload):
        if self.fail_ledger and stream == LEDGER_STREAM:
            raise StorageError("ledger volume unavailable")
        return await super().append(stream, payload)


def make_table(log, append_only=False):
    clock = ManualClock(0)
    store = VersionStore(log, clock=clock, append_only=append_only)
    chain = LedgerChain(log, clock=clock)
    return LedgerTable(store, chain)


async def open_table(table):
    await table.store.open()
    await table.chain.load()


class TestLedgerTableWrites:
    """Tests for writes through the ledger table."""

    @pytest.fixture
    def log(self):
        return InMemoryRecordLog()

    @pytest.fixture
    def table(self, log):
        return make_table(log)

    @pytest.mark.asyncio
    async def test_insert_commits_one_block(self, table, log):
        await open_table(table)

        version = await table.insert("acct-1", {"balance": 100}, at=0)

        blocks = await table.chain.blocks()
        assert len(blocks) == 1
        [entry] = blocks[0].entries
        assert entry.operation == LedgerOperation.INSERT
        assert entry.version_hash == version.content_hash()
        assert blocks[0].transaction_id == version.period.transaction_id

    @pytest.mark.asyncio
    async def test_update_records_delete_and_insert(self, table):
        await open_table(table)
        old = await table.insert("acct-1", {"balance": 100}, at=0)

        new = await table.update("acct-1", {"balance": 50}, at=10)

        block = (await table.chain.blocks())[1]
        assert [e.operation for e in block.entries] == [
            LedgerOperation.DELETE,
            LedgerOperation.INSERT,
        ]
        assert block.entries[0].sequence == old.sequence
        assert block.entries[0].timestamp == 10
        assert block.entries[1].sequence == new.sequence
        assert block.entries[1].version_hash == new.content_hash()

    @pytest.mark.asyncio
    async def test_superseded_versions_stay_retrievable(self, table):
        await open_table(table)
        await table.insert("acct-1", {"balance": 100}, at=0)
        await table.update("acct-1", {"balance": 50}, at=10)

        balances = [v.attributes["balance"] async for v in table.store.versions_of("acct-1")]

        assert balances == [100, 50]

    @pytest.mark.asyncio
    async def test_delete(self, table):
        await open_table(table)
        await table.insert("acct-1", {"balance": 100}, at=0)

        closed = await table.delete("acct-1", at=10)

        block = (await table.chain.blocks())[1]
        assert [e.operation for e in block.entries] == [LedgerOperation.DELETE]
        assert closed.valid_to == 10

    @pytest.mark.asyncio
    async def test_failed_write_commits_no_block(self, table, log):
        await open_table(table)

        with pytest.raises(NotFoundError):
            await table.update("missing", {"balance": 1}, at=10)

        assert log.get_record_count(LEDGER_STREAM) == 0

    @pytest.mark.asyncio
    async def test_transaction_is_one_block(self, table, log):
        await open_table(table)
        await table.insert("acct-1", {"balance": 100}, at=0)

        async with table.transaction(at=10) as txn:
            txn.update("acct-1", {"balance": 50})
            txn.insert("acct-2", {"balance": 50})

        assert log.get_record_count(LEDGER_STREAM) == 2
        assert log.get_record_count(VERSIONS_STREAM) == 2
        assert txn.block.block_id == 1
        assert len(txn.block.entries) == 3
        assert {a.transaction_id for a in txn.applied} == {txn.block.transaction_id}

    @pytest.mark.asyncio
    async def test_transaction_discarded_on_error(self, table, log):
        await open_table(table)

        with pytest.raises(RuntimeError):
            async with table.transaction(at=10) as txn:
                txn.insert("acct-1", {"balance": 100})
                raise RuntimeError("abort")

        assert log.get_record_count(LEDGER_STREAM) == 0
        assert table.store.entity_ids() == []

    @pytest.mark.asyncio
    async def test_empty_transaction_is_noop(self, table, log):
        await open_table(table)

        async with table.transaction() as txn:
            pass

        assert txn.block is None
        assert log.get_record_count(LEDGER_STREAM) == 0

    @pytest.mark.asyncio
    async def test_ledger_view(self, table):
        await open_table(table)
        await table.insert("acct-1", {"balance": 100}, at=0)
        await table.insert("acct-2", {"balance": 5}, at=1)
        await table.update("acct-1", {"balance": 50}, at=10)

        rows = await table.ledger_view("acct-1")

        assert [(r.block_id, r.operation, r.sequence) for r in rows] == [
            (0, LedgerOperation.INSERT, 0),
            (2, LedgerOperation.DELETE, 0),
            (2, LedgerOperation.INSERT, 1),
        ]
        assert len(await table.ledger_view()) == 4
        assert rows[0].to_dict()["operation"] == "INSERT"


class TestAppendOnlyLedgerTable:
    """Tests for append-only ledger tables."""

    @pytest.mark.asyncio
    async def test_update_and_delete_rejected(self):
        log = InMemoryRecordLog()
        table = make_table(log, append_only=True)
        await open_table(table)
        await table.insert("evt-1", {"kind": "login"}, at=0)

        with pytest.raises(ImmutableEntityError):
            await table.update("evt-1", {"kind": "logout"}, at=10)
        with pytest.raises(ImmutableEntityError):
            await table.delete("evt-1", at=10)

        assert table.append_only
        assert log.get_record_count(LEDGER_STREAM) == 1


class TestLedgerTableVerify:
    """Tests for LedgerTable.verify()."""

    @pytest.fixture
    def log(self):
        return InMemoryRecordLog()

    @pytest.fixture
    def table(self, log):
        return make_table(log)

    async def populate(self, table):
        await open_table(table)
        await table.insert("acct-1", {"balance": 100}, at=0)
        await table.update("acct-1", {"balance": 50}, at=10)
        await table.insert("acct-2", {"balance": 7}, at=12)
        await table.delete("acct-2", at=20)

    @pytest.mark.asyncio
    async def test_verify_after_commits(self, table):
        await self.populate(table)

        result = await table.verify(table.digest())

        assert result.blocks_verified == 4

    @pytest.mark.asyncio
    async def test_edited_version_detected(self, table, log):
        await self.populate(table)
        digest = table.digest()
        record = log.get_all_records(VERSIONS_STREAM)[0].payload_json()
        record["mutations"][0]["attributes"]["balance"] = 1_000_000
        log.overwrite_record(VERSIONS_STREAM, 0, json.dumps(record).encode())

        with pytest.raises(TamperDetectedError) as exc_info:
            await table.verify(digest)
        assert exc_info.value.block_id == 0

    @pytest.mark.asyncio
    async def test_edited_closure_detected(self, table, log):
        await self.populate(table)
        digest = table.digest()
        record = log.get_all_records(VERSIONS_STREAM)[3].payload_json()
        record["mutations"][0]["valid_to"] = 25
        log.overwrite_record(VERSIONS_STREAM, 3, json.dumps(record).encode())

        with pytest.raises(TamperDetectedError) as exc_info:
            await table.verify(digest)
        assert exc_info.value.block_id == 3

    @pytest.mark.asyncio
    async def test_unledgered_version_detected(self, table):
        await self.populate(table)
        digest = table.digest()

        await table.store.append("sneaky", {"balance": 1}, valid_from=30)

        with pytest.raises(TamperDetectedError, match="no ledger entry"):
            await table.verify(digest)

    @pytest.mark.asyncio
    async def test_unreadable_versions_detected(self, table, log):
        await self.populate(table)
        digest = table.digest()
        log.overwrite_record(VERSIONS_STREAM, 1, b"garbage")

        with pytest.raises(TamperDetectedError):
            await table.verify(digest)

    @pytest.mark.asyncio
    async def test_reads_and_writes_continue_after_detection(self, table, log):
        await self.populate(table)
        record = log.get_all_records(VERSIONS_STREAM)[0].payload_json()
        record["mutations"][0]["attributes"]["balance"] = 1
        log.overwrite_record(VERSIONS_STREAM, 0, json.dumps(record).encode())

        with pytest.raises(TamperDetectedError):
            await table.verify(table.digest())

        assert table.store.current("acct-1").attributes == {"balance": 50}
        await table.insert("acct-3", {"balance": 3}, at=40)
        assert table.digest().block_id == 4


class TestFailedBlockCommit:
    """Tests for a block commit that fails after the versions were stored."""

    @pytest.fixture
    def log(self):
        return LedgerFailingRecordLog()

    @pytest.fixture
    def table(self, log):
        return make_table(log)

    async def fail_update(self, table, log):
        await open_table(table)
        await table.insert("A", {"n": 0}, at=0)
        log.fail_ledger = True
        with pytest.raises(StorageError):
            await table.update("A", {"n": 1}, at=10)
        log.fail_ledger = False

    @pytest.mark.asyncio
    async def test_verify_seals_pending_block(self, table, log):
        await self.fail_update(table, log)
        assert log.get_record_count(LEDGER_STREAM) == 1

        result = await table.verify(table.digest())

        assert result.blocks_verified == 2
        assert log.get_record_count(LEDGER_STREAM) == 2
        assert await table.seal_pending() is None

    @pytest.mark.asyncio
    async def test_next_write_seals_pending_block_first(self, table, log):
        await self.fail_update(table, log)

        await table.insert("B", {"n": 0}, at=20)

        blocks = await table.chain.blocks()
        first, second = table.store.history("A")
        assert [b.transaction_id for b in blocks] == [
            first.period.transaction_id,
            second.period.transaction_id,
            table.store.current("B").period.transaction_id,
        ]
        assert [e.operation for e in blocks[1].entries] == [
            LedgerOperation.DELETE,
            LedgerOperation.INSERT,
        ]
        await table.verify(table.digest())

    @pytest.mark.asyncio
    async def test_block_stays_pending_while_ledger_fails(self, table, log):
        await self.fail_update(table, log)
        log.fail_ledger = True

        with pytest.raises(StorageError):
            await table.insert("B", {"n": 0}, at=20)

        assert table.store.entity_ids() == ["A"]
        log.fail_ledger = False
        block = await table.seal_pending()
        assert block.block_id == 1
        await table.verify(table.digest())
