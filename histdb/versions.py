"""
Version model for HistDB.

A Version is an immutable snapshot of an entity's attributes valid over the
half-open period [valid_from, valid_to). The period metadata is kept apart
from the business attributes: ``Version.attributes`` only ever returns the
business fields, ``Version.period`` exposes the versioning columns.

Invariants:
    - valid_from < valid_to
    - END_OF_TIME marks the current (open) version
    - Attribute values are frozen at construction; every access returns a copy
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Any

# Largest value SQLite can store in an INTEGER column.
END_OF_TIME = 2**63 - 1


def canonical_json(data: Any) -> bytes:
    """Deterministic JSON encoding used for hashing."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode(
        "utf-8"
    )


@dataclass(frozen=True)
class Period:
    """Versioning metadata of a Version (the "hidden columns").

    Attributes:
        valid_from: Start of validity, inclusive (Unix ms)
        valid_to: End of validity, exclusive (Unix ms or END_OF_TIME)
        sequence: Ordinal of the version within its entity, from 0
        transaction_id: Transaction that opened the version
    """

    valid_from: int
    valid_to: int = END_OF_TIME
    sequence: int = 0
    transaction_id: str | None = None

    @property
    def is_open(self) -> bool:
        return self.valid_to == END_OF_TIME

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid_from": self.valid_from,
            "valid_to": None if self.is_open else self.valid_to,
            "sequence": self.sequence,
            "transaction_id": self.transaction_id,
        }


@dataclass(frozen=True)
class Version:
    """Immutable snapshot of an entity.

    Use ``Version.create`` rather than the constructor; it validates and
    freezes the attributes.
    """

    entity_id: str
    attributes_json: str
    period: Period

    @classmethod
    def create(
        cls,
        entity_id: str,
        attributes: Mapping[str, Any],
        period: Period,
    ) -> Version:
        """Build a Version, freezing attributes as JSON.

        Raises:
            ValueError: If the period is empty or attributes are not JSON-serializable
        """
        if period.valid_from >= period.valid_to:
            raise ValueError(
                f"Empty period for {entity_id}: [{period.valid_from}, {period.valid_to})"
            )
        try:
            frozen = json.dumps(dict(attributes), ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Attributes of {entity_id} are not JSON-serializable: {e}")
        return cls(entity_id=entity_id, attributes_json=frozen, period=period)

    @property
    def attributes(self) -> dict[str, Any]:
        """Business fields only, in insertion order. A fresh copy per call."""
        return json.loads(self.attributes_json)

    @property
    def valid_from(self) -> int:
        return self.period.valid_from

    @property
    def valid_to(self) -> int:
        return self.period.valid_to

    @property
    def sequence(self) -> int:
        return self.period.sequence

    @property
    def is_current(self) -> bool:
        return self.period.is_open

    def closed_at(self, valid_to: int) -> Version:
        """Copy of this version with its period ended at valid_to."""
        if valid_to <= self.period.valid_from:
            raise ValueError(
                f"Cannot close {self.entity_id} at {valid_to}: "
                f"not after valid_from {self.period.valid_from}"
            )
        return replace(self, period=replace(self.period, valid_to=valid_to))

    def content_hash(self, algorithm: str = "sha256") -> str:
        """Hash of the immutable content (identity, sequence, start, attributes).

        valid_to is excluded: it is the only part that changes when the
        version is superseded, and the ledger records it separately.
        """
        body = canonical_json(
            {
                "entity_id": self.entity_id,
                "sequence": self.period.sequence,
                "valid_from": self.period.valid_from,
                "attributes": self.attributes,
            }
        )
        return hashlib.new(algorithm, body).hexdigest()

    def to_dict(self, include_period: bool = False) -> dict[str, Any]:
        """Serialize to a dictionary.

        Args:
            include_period: Also include the versioning metadata
        """
        data: dict[str, Any] = {"entity_id": self.entity_id, "attributes": self.attributes}
        if include_period:
            data["period"] = self.period.to_dict()
        return data
