"""
Command line tool for inspecting a HistDB data directory.

Commands:
- history: Print every version of an entity
- as-of: Print the version of an entity valid at an instant
- periods: Group an entity's versions by calendar period
- digest: Print the current ledger digest
- verify: Verify the ledger against a trusted digest

Usage:
    histdb --data-dir ./data history acct-1
    histdb --data-dir ./data as-of acct-1 2024-01-01T00:00:00Z
    histdb --data-dir ./data digest > digest.json
    histdb --data-dir ./data verify --digest-file digest.json

Invariants:
    - Output is one JSON document per line on stdout
    - verify exits 2 on tampering, 1 on other errors, 0 on success
    - Commands never append records, and a missing data directory is an
      error rather than a new empty database

How to change safely:
    - Keep output keys stable; scripts parse them
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from ..config import HistDbConfig, LedgerConfig, StorageBackend, StorageConfig
from ..database import HistDb
from ..errors import HistDbError, TamperDetectedError
from ..ledger import LedgerDigest
from ..query import DatePart, to_ms
from ..storage import RecordSerializationError, StorageError
from ..versions import Version

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_TAMPERED = 2


def parse_instant(value: str) -> int:
    """Parse Unix milliseconds or an ISO 8601 datetime (UTC if no offset)."""
    try:
        return int(value)
    except ValueError:
        pass
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise argparse.ArgumentTypeError(f"Not a Unix-ms timestamp or ISO datetime: {value}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return to_ms(dt)


def _version_line(version: Version) -> dict[str, Any]:
    return {**version.period.to_dict(), **version.to_dict()}


def _emit(data: Any) -> None:
    print(json.dumps(data, sort_keys=True))


def build_config(args: argparse.Namespace) -> HistDbConfig:
    return HistDbConfig(
        storage=StorageConfig(
            backend=StorageBackend.SQLITE,
            data_dir=args.data_dir,
            db_filename=args.db_filename,
        ),
        ledger=LedgerConfig(hash_algorithm=args.hash_algorithm),
    )


async def run_command(args: argparse.Namespace) -> int:
    """Open the data directory, run one command, and return the exit code."""
    async with HistDb(build_config(args)) as db:
        if args.command == "history":
            for version in db.query.history(args.entity_id):
                _emit(_version_line(version))
        elif args.command == "as-of":
            version = db.query.as_of(args.entity_id, args.instant)
            if version is None:
                print(f"No version of {args.entity_id} at {args.instant}", file=sys.stderr)
                return EXIT_ERROR
            _emit(_version_line(version))
        elif args.command == "periods":
            buckets = db.query.changes_by_period(args.entity_id, args.part)
            for bucket, versions in buckets.items():
                _emit({"period_start": bucket, "sequences": [v.sequence for v in versions]})
        elif args.command == "digest":
            _emit(db.digest().to_dict())
        elif args.command == "verify":
            expected = _load_digest(args)
            try:
                result = await db.verify(expected)
            except TamperDetectedError as e:
                _emit({"verified": False, "error": e.message, **e.details})
                return EXIT_TAMPERED
            _emit({"verified": True, "blocks_verified": result.blocks_verified})
    return EXIT_OK


def _load_digest(args: argparse.Namespace) -> LedgerDigest:
    if args.digest_file:
        with open(args.digest_file) as f:
            return LedgerDigest.from_dict(json.load(f))
    if args.block_id is None or args.hash is None:
        raise ValueError("verify needs --digest-file or both --block-id and --hash")
    return LedgerDigest(block_id=args.block_id, hash=args.hash)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="histdb", description="HistDB inspection tool")
    parser.add_argument(
        "--data-dir",
        default=os.getenv("HISTDB_DATA_DIR", "./histdb-data"),
        help="Directory holding the SQLite database",
    )
    parser.add_argument(
        "--db-filename",
        default=os.getenv("HISTDB_DB_FILENAME", "histdb.db"),
        help="Database file name inside the data directory",
    )
    parser.add_argument(
        "--hash-algorithm",
        default=os.getenv("HISTDB_HASH_ALGORITHM", "sha256"),
        help="Ledger hash algorithm",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    history_parser = subparsers.add_parser("history", help="Print every version of an entity")
    history_parser.add_argument("entity_id")

    as_of_parser = subparsers.add_parser("as-of", help="Print the version valid at an instant")
    as_of_parser.add_argument("entity_id")
    as_of_parser.add_argument("instant", type=parse_instant, help="Unix ms or ISO 8601")

    periods_parser = subparsers.add_parser("periods", help="Group versions by calendar period")
    periods_parser.add_argument("entity_id")
    periods_parser.add_argument(
        "--part",
        choices=[p.value for p in DatePart],
        default=DatePart.DAY.value,
        help="Calendar part to truncate valid_from to",
    )

    subparsers.add_parser("digest", help="Print the current ledger digest")

    verify_parser = subparsers.add_parser("verify", help="Verify the ledger against a digest")
    verify_parser.add_argument("--digest-file", help="JSON file written by the digest command")
    verify_parser.add_argument("--block-id", type=int, help="Digest block id")
    verify_parser.add_argument("--hash", help="Digest hash")

    return parser


def run(argv: list[str] | None = None) -> int:
    """Parse arguments and run a command."""
    args = build_parser().parse_args(argv)
    if not os.path.isdir(args.data_dir):
        print(f"Error: data directory {args.data_dir} does not exist", file=sys.stderr)
        return EXIT_ERROR
    try:
        build_config(args).validate()
        return asyncio.run(run_command(args))
    except RecordSerializationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_TAMPERED if args.command == "verify" else EXIT_ERROR
    except (HistDbError, StorageError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR


def main() -> None:
    """CLI entry point."""
    logging.basicConfig(level=logging.WARNING)
    sys.exit(run())


if __name__ == "__main__":
    main()
