"""
Temporal queries for HistDB.

This module provides:
- Point-in-time lookup (as_of)
- Range queries with distinct overlap/containment semantics
- Date truncation for bucketing history by calendar period
"""

from .engine import (
    TemporalQueryEngine,
    contained_in_range,
    overlaps_between,
    overlaps_from_to,
    valid_at,
)
from .timeparts import DatePart, from_ms, to_ms, truncate

__all__ = [
    "TemporalQueryEngine",
    "valid_at",
    "overlaps_from_to",
    "overlaps_between",
    "contained_in_range",
    "DatePart",
    "truncate",
    "to_ms",
    "from_ms",
]
