"""
HistDB Test Suite.

This package contains:
- unit/: Unit tests (in-memory record log, no external services)
- integration/: Integration tests (SQLite record log, full stack)
"""
