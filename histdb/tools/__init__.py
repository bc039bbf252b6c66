"""
Operational tools for HistDB.

- cli: Inspect history and verify the ledger of a data directory
"""
