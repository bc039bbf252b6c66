"""
HTTP API for HistDB.

This module provides a FastAPI application exposing:
- Entity writes and temporal reads
- Ledger digest, verification and entries
"""

from .config import Settings
from .http_server import create_http_app

__all__ = ["Settings", "create_http_app"]
