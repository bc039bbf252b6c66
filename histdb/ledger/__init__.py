"""
Tamper-evident ledger for HistDB.

This module provides:
- Hash-chained ledger blocks, one per logical transaction
- Digests that can be stored outside the system and verified later
- A ledger table that writes versions and blocks together

Invariants:
    - hash(block) = H(canonical(content) || previous_hash)
    - Verification reads stored blocks and never repairs them
"""

from .blocks import (
    EMPTY_BLOCK_ID,
    LedgerBlock,
    LedgerDigest,
    LedgerEntry,
    LedgerOperation,
    compute_block_hash,
    empty_digest,
)
from .chain import LEDGER_STREAM, LedgerChain, VerificationResult
from .table import LedgerTable, LedgerTransaction, LedgerViewRow

__all__ = [
    # Chain
    "LedgerChain",
    "VerificationResult",
    "LEDGER_STREAM",
    # Blocks
    "LedgerBlock",
    "LedgerEntry",
    "LedgerOperation",
    "LedgerDigest",
    "EMPTY_BLOCK_ID",
    "compute_block_hash",
    "empty_digest",
    # Table
    "LedgerTable",
    "LedgerTransaction",
    "LedgerViewRow",
]
