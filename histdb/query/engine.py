"""
Temporal query engine for HistDB.

Answers "what did entity E look like at / between time(s) T" over the
histories held by a VersionStore.

Each retrieval mode is a separate predicate over a version's period
[valid_from, valid_to):

    as_of(t)                valid_from <= t < valid_to
    from_to(start, end)     valid_from <  end and valid_to > start
    between(start, end)     valid_from <= end and valid_to > start
    contained_in(start, end) valid_from >= start and valid_to <= end

from_to and between differ only for a version starting exactly at `end`:
between includes it, from_to does not. contained_in implies from_to.

Invariants:
    - Queries never block writers; they read an immutable history snapshot
    - Results are ascending by valid_from
"""

from __future__ import annotations

import calendar
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from ..errors import InvalidIntervalError
from ..versions import Version
from .timeparts import DatePart, truncate

if TYPE_CHECKING:
    from ..store.version_store import VersionStore

logger = logging.getLogger(__name__)


def valid_at(version: Version, t: int) -> bool:
    return version.valid_from <= t < version.valid_to


def overlaps_from_to(version: Version, start: int, end: int) -> bool:
    return version.valid_from < end and version.valid_to > start


def overlaps_between(version: Version, start: int, end: int) -> bool:
    return version.valid_from <= end and version.valid_to > start


def contained_in_range(version: Version, start: int, end: int) -> bool:
    return version.valid_from >= start and version.valid_to <= end


def _check_range(start: int, end: int) -> None:
    if start > end:
        raise InvalidIntervalError(f"Range start {start} is after end {end}", start=start, end=end)


class TemporalQueryEngine:
    """Point-in-time and range queries over a VersionStore.

    Example:
        >>> engine = TemporalQueryEngine(store)
        >>> engine.as_of("E1", 5).attributes
        {'name': 'A'}
    """

    def __init__(self, store: VersionStore) -> None:
        self.store = store

    def as_of(self, entity_id: str, t: int) -> Version | None:
        """The version valid at instant t, or None.

        At a transition instant the newer version wins: the lower bound
        is inclusive and the upper bound exclusive.
        """
        for version in self.store.history(entity_id):
            if valid_at(version, t):
                return version
            if version.valid_from > t:
                break
        return None

    def from_to(self, entity_id: str, start: int, end: int) -> list[Version]:
        """Versions overlapping [start, end); a version starting at end is excluded."""
        _check_range(start, end)
        return self._select(entity_id, lambda v: overlaps_from_to(v, start, end))

    def between(self, entity_id: str, start: int, end: int) -> list[Version]:
        """Versions overlapping [start, end]; a version starting at end is included."""
        _check_range(start, end)
        return self._select(entity_id, lambda v: overlaps_between(v, start, end))

    def contained_in(self, entity_id: str, start: int, end: int) -> list[Version]:
        """Versions whose whole period lies within [start, end]."""
        _check_range(start, end)
        return self._select(entity_id, lambda v: contained_in_range(v, start, end))

    def history(self, entity_id: str) -> list[Version]:
        """Every version of an entity."""
        return list(self.store.history(entity_id))

    def all_as_of(self, t: int) -> dict[str, Version]:
        """The version of every entity that was valid at instant t."""
        result = {}
        for entity_id in self.store.entity_ids():
            version = self.as_of(entity_id, t)
            if version is not None:
                result[entity_id] = version
        return result

    def changes_by_period(
        self,
        entity_id: str,
        part: DatePart | str,
        first_weekday: int = calendar.SUNDAY,
    ) -> dict[int, list[Version]]:
        """Group versions by the truncated start of the period they began in.

        Returns:
            Mapping of bucket start (Unix ms) to versions, in ascending order
        """
        buckets: dict[int, list[Version]] = {}
        for version in self.store.history(entity_id):
            bucket = truncate(part, version.valid_from, first_weekday=first_weekday)
            buckets.setdefault(bucket, []).append(version)
        return buckets

    def _select(self, entity_id: str, predicate: Callable[[Version], bool]) -> list[Version]:
        return [v for v in self.store.history(entity_id) if predicate(v)]
