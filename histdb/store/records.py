"""
Record format for the version store stream.

Every mutating call on the VersionStore writes exactly one
TransactionRecord to the record log. A record carries one or more
mutations; a supersession is a single record holding both the close of
the old version and the open of the new one, so replay sees both or
neither.

Example:
    {
        "format": 1,
        "transaction_id": "9f1c...",
        "mutations": [
            {"op": "close", "entity_id": "E1", "sequence": 0, "valid_to": 10},
            {"op": "open", "entity_id": "E1", "sequence": 1, "valid_from": 10,
             "attributes": {"name": "B"}}
        ]
    }

How to change safely:
    - Bump RECORD_FORMAT when adding required keys
    - Keep decoding of older formats working
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

RECORD_FORMAT = 1


class MutationOp(Enum):
    OPEN = "open"
    CLOSE = "close"


@dataclass(frozen=True)
class Mutation:
    """One boundary change in a transaction record.

    Attributes:
        op: OPEN starts a version, CLOSE ends the current one
        entity_id: Entity identifier
        sequence: Ordinal of the affected version within the entity
        timestamp: valid_from for OPEN, valid_to for CLOSE
        attributes: Business fields (OPEN only)
    """

    op: MutationOp
    entity_id: str
    sequence: int
    timestamp: int
    attributes: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "op": self.op.value,
            "entity_id": self.entity_id,
            "sequence": self.sequence,
        }
        if self.op == MutationOp.OPEN:
            data["valid_from"] = self.timestamp
            data["attributes"] = self.attributes or {}
        else:
            data["valid_to"] = self.timestamp
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Mutation:
        """Create from dictionary representation.

        Raises:
            ValueError: If the op is unknown or required keys are missing
        """
        try:
            op = MutationOp(data["op"])
            if op == MutationOp.OPEN:
                return cls(
                    op=op,
                    entity_id=data["entity_id"],
                    sequence=data["sequence"],
                    timestamp=data["valid_from"],
                    attributes=data.get("attributes", {}),
                )
            return cls(
                op=op,
                entity_id=data["entity_id"],
                sequence=data["sequence"],
                timestamp=data["valid_to"],
            )
        except KeyError as e:
            raise ValueError(f"Mutation missing required key {e}: {data}")


@dataclass(frozen=True)
class TransactionRecord:
    """A batch of mutations written atomically."""

    transaction_id: str
    mutations: list[Mutation] = field(default_factory=list)

    def to_bytes(self) -> bytes:
        return json.dumps(
            {
                "format": RECORD_FORMAT,
                "transaction_id": self.transaction_id,
                "mutations": [m.to_dict() for m in self.mutations],
            },
            ensure_ascii=False,
        ).encode("utf-8")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransactionRecord:
        """Create from dictionary representation.

        Raises:
            ValueError: If required fields are missing or the format is unknown
        """
        required = ["transaction_id", "mutations"]
        missing = [f for f in required if f not in data]
        if missing:
            raise ValueError(f"Missing required fields: {missing}")
        if data.get("format", RECORD_FORMAT) > RECORD_FORMAT:
            raise ValueError(f"Unsupported record format: {data['format']}")

        return cls(
            transaction_id=data["transaction_id"],
            mutations=[Mutation.from_dict(m) for m in data["mutations"]],
        )
