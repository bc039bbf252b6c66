"""
Unit tests for the version model and transaction records.

Tests cover:
- Period validation and open/closed state
- Attribute immutability
- Content hashing
- Record encoding and decoding
"""

import json

import pytest

from histdb.store.records import RECORD_FORMAT, Mutation, MutationOp, TransactionRecord
from histdb.versions import END_OF_TIME, Period, Version, canonical_json


class TestVersion:
    """Tests for Version and Period."""

    def test_open_period(self):
        version = Version.create("E1", {"name": "A"}, Period(valid_from=0))

        assert version.is_current
        assert version.valid_to == END_OF_TIME
        assert version.period.to_dict()["valid_to"] is None

    def test_empty_period_rejected(self):
        with pytest.raises(ValueError):
            Version.create("E1", {}, Period(valid_from=10, valid_to=10))

    def test_non_json_attributes_rejected(self):
        with pytest.raises(ValueError):
            Version.create("E1", {"when": object()}, Period(valid_from=0))

    def test_attributes_are_copies(self):
        version = Version.create("E1", {"tags": ["a"]}, Period(valid_from=0))

        version.attributes["tags"].append("b")

        assert version.attributes == {"tags": ["a"]}

    def test_attributes_exclude_period_fields(self):
        version = Version.create("E1", {"name": "A"}, Period(valid_from=5, sequence=2))

        assert version.attributes == {"name": "A"}
        assert version.sequence == 2

    def test_closed_at(self):
        version = Version.create("E1", {"name": "A"}, Period(valid_from=0))

        closed = version.closed_at(10)

        assert closed.valid_to == 10
        assert not closed.is_current
        assert version.is_current

    def test_closed_at_must_follow_valid_from(self):
        version = Version.create("E1", {}, Period(valid_from=10))

        with pytest.raises(ValueError):
            version.closed_at(10)

    def test_content_hash_ignores_valid_to(self):
        version = Version.create("E1", {"name": "A"}, Period(valid_from=0))

        assert version.content_hash() == version.closed_at(10).content_hash()

    def test_content_hash_covers_attributes_and_start(self):
        base = Version.create("E1", {"name": "A"}, Period(valid_from=0))

        assert base.content_hash() != Version.create("E1", {"name": "B"}, Period(0)).content_hash()
        assert base.content_hash() != Version.create("E1", {"name": "A"}, Period(1)).content_hash()

    def test_content_hash_independent_of_key_order(self):
        a = Version.create("E1", {"x": 1, "y": 2}, Period(valid_from=0))
        b = Version.create("E1", {"y": 2, "x": 1}, Period(valid_from=0))

        assert a.content_hash() == b.content_hash()

    def test_canonical_json(self):
        assert canonical_json({"b": 1, "a": [1, 2]}) == b'{"a":[1,2],"b":1}'


class TestTransactionRecord:
    """Tests for TransactionRecord encoding."""

    def test_round_trip(self):
        record = TransactionRecord(
            transaction_id="tx1",
            mutations=[
                Mutation(MutationOp.CLOSE, "E1", sequence=0, timestamp=10),
                Mutation(MutationOp.OPEN, "E1", sequence=1, timestamp=10, attributes={"n": 2}),
            ],
        )

        data = json.loads(record.to_bytes())
        decoded = TransactionRecord.from_dict(data)

        assert data["format"] == RECORD_FORMAT
        assert data["mutations"][0] == {"op": "close", "entity_id": "E1", "sequence": 0, "valid_to": 10}
        assert decoded == record

    def test_missing_fields(self):
        with pytest.raises(ValueError, match="Missing required fields"):
            TransactionRecord.from_dict({"mutations": []})

    def test_future_format_rejected(self):
        with pytest.raises(ValueError, match="Unsupported record format"):
            TransactionRecord.from_dict(
                {"format": RECORD_FORMAT + 1, "transaction_id": "t", "mutations": []}
            )

    def test_malformed_mutation(self):
        with pytest.raises(ValueError):
            Mutation.from_dict({"op": "open", "entity_id": "E1", "sequence": 0})
        with pytest.raises(ValueError):
            Mutation.from_dict({"op": "rename", "entity_id": "E1"})
