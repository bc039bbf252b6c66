"""
HistDB - Embeddable versioned-record storage with point-in-time queries.

This package implements system-versioned ("temporal") record storage built on:
- Entities identified by a stable entity_id with mutable attributes
- Immutable Versions valid over half-open [valid_from, valid_to) periods
- An append-only record log (in-memory or SQLite) as the source of truth
- An optional hash-chained ledger for tamper evidence

Architecture:
    ┌─────────────┐     ┌──────────────────┐     ┌─────────────────┐
    │  HTTP / CLI │────▶│   LedgerTable    │────▶│  LedgerChain    │
    └─────────────┘     └────────┬─────────┘     └────────┬────────┘
                                 │                        │
                                 ▼                        │
                        ┌──────────────────┐              │
                        │  VersionStore    │◀──── TemporalQueryEngine
                        └────────┬─────────┘              │
                                 │                        │
                                 ▼                        ▼
                        ┌─────────────────────────────────────────┐
                        │        Record log (memory / SQLite)     │
                        └─────────────────────────────────────────┘

Invariants:
    - The record log is the source of truth; in-memory indexes are rebuilt from it
    - Attribute values of a version are never rewritten
    - Versions of one entity are contiguous and non-overlapping
    - One ledger block per logical transaction

How to change safely:
    - Record formats are versioned; add fields, never repurpose them
    - Changing the ledger serialization invalidates existing digests

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
