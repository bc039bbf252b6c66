"""
FastAPI application for HistDB.

This module creates the HTTP app with:
- Entity write routes (insert, update, delete, transactions)
- Temporal read routes (versions, as-of, range)
- Ledger routes (digest, verify, entries)
- Mapping of HistDB errors to HTTP status codes

Usage:
    uvicorn --factory histdb.api.http_server:create_http_app --port 8080

Invariants:
    - Timestamps are Unix milliseconds; an open period has valid_to null
    - Error bodies carry the HistDbError code and details
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Literal

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .._version import __version__
from ..config import HistDbConfig
from ..database import HistDb
from ..errors import (
    ConflictError,
    HistDbError,
    ImmutableEntityError,
    InvalidIntervalError,
    NotFoundError,
    TamperDetectedError,
)
from ..ledger import LedgerDigest
from ..store import ChangeKind
from ..versions import Version
from .config import Settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["HistDB"])

ERROR_STATUS: dict[type[HistDbError], int] = {
    NotFoundError: 404,
    ConflictError: 409,
    ImmutableEntityError: 405,
    InvalidIntervalError: 400,
    TamperDetectedError: 409,
}


# --- Request/Response Models ---


class InsertRequest(BaseModel):
    """Request to insert a new entity."""

    entity_id: str = Field(..., min_length=1, description="Entity identifier")
    attributes: dict[str, Any] = Field(..., description="Business fields")
    at: int | None = Field(None, description="valid_from (Unix ms), defaults to now")


class UpdateRequest(BaseModel):
    """Request to supersede the current version."""

    attributes: dict[str, Any] = Field(..., description="New business fields")
    at: int | None = Field(None, description="Transition time (Unix ms), defaults to now")


class ChangeRequest(BaseModel):
    """One change inside a transaction."""

    op: Literal["insert", "update", "delete"]
    entity_id: str = Field(..., min_length=1)
    attributes: dict[str, Any] | None = None


class TransactionRequest(BaseModel):
    """Request to apply several changes atomically."""

    changes: list[ChangeRequest] = Field(..., min_length=1)
    at: int | None = Field(None, description="Transaction time (Unix ms), defaults to now")


class VersionResponse(BaseModel):
    """One version of an entity."""

    entity_id: str
    sequence: int
    valid_from: int
    valid_to: int | None = None
    transaction_id: str | None = None
    attributes: dict[str, Any]


class DigestModel(BaseModel):
    """Ledger digest (block_id -1 for an empty ledger)."""

    block_id: int = Field(..., ge=-1)
    hash: str


class VerifyResponse(BaseModel):
    verified: bool
    blocks_verified: int
    digest: DigestModel


class LedgerEntryResponse(BaseModel):
    block_id: int
    transaction_id: str
    committed_at: int
    operation: str
    entity_id: str
    sequence: int
    timestamp: int
    version_hash: str


# --- Dependencies ---


def get_db(request: Request) -> HistDb:
    """Get the database from app state."""
    return request.app.state.db


def require_writes(request: Request) -> None:
    if not request.app.state.settings.allow_writes:
        raise HTTPException(status_code=403, detail="Write endpoints are disabled")


def _version_to_dict(version: Version) -> dict[str, Any]:
    period = version.period.to_dict()
    return {
        "entity_id": version.entity_id,
        "sequence": version.sequence,
        "valid_from": period["valid_from"],
        "valid_to": period["valid_to"],
        "transaction_id": period["transaction_id"],
        "attributes": version.attributes,
    }


# --- Entity Routes ---


@router.post(
    "/entities",
    response_model=VersionResponse,
    status_code=201,
    dependencies=[Depends(require_writes)],
)
async def insert_entity(request: InsertRequest, db: HistDb = Depends(get_db)):
    """Insert a new entity; returns its first version."""
    version = await db.insert(request.entity_id, request.attributes, at=request.at)
    return _version_to_dict(version)


@router.put(
    "/entities/{entity_id}",
    response_model=VersionResponse,
    dependencies=[Depends(require_writes)],
)
async def update_entity(entity_id: str, request: UpdateRequest, db: HistDb = Depends(get_db)):
    """Supersede the current version; returns the new current version."""
    version = await db.update(entity_id, request.attributes, at=request.at)
    return _version_to_dict(version)


@router.delete(
    "/entities/{entity_id}",
    response_model=VersionResponse,
    dependencies=[Depends(require_writes)],
)
async def delete_entity(
    entity_id: str,
    at: int | None = Query(None, description="Close time (Unix ms), defaults to now"),
    db: HistDb = Depends(get_db),
):
    """Close the current version; history stays queryable."""
    version = await db.delete(entity_id, at=at)
    return _version_to_dict(version)


@router.post(
    "/transactions",
    response_model=list[VersionResponse],
    dependencies=[Depends(require_writes)],
)
async def apply_transaction(request: TransactionRequest, db: HistDb = Depends(get_db)):
    """Apply several changes atomically.

    Returns the version each change opened, or closed for deletes.
    """
    try:
        async with db.transaction(at=request.at) as txn:
            for change in request.changes:
                if change.op == ChangeKind.DELETE.value:
                    txn.delete(change.entity_id)
                elif change.attributes is None:
                    raise ValueError(f"{change.op} of {change.entity_id} requires attributes")
                elif change.op == ChangeKind.INSERT.value:
                    txn.insert(change.entity_id, change.attributes)
                else:
                    txn.update(change.entity_id, change.attributes)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return [_version_to_dict(a.opened or a.closed) for a in txn.applied]


@router.get("/entities/{entity_id}/versions", response_model=list[VersionResponse])
async def list_versions(entity_id: str, db: HistDb = Depends(get_db)):
    """All versions of an entity, ascending by valid_from."""
    return [_version_to_dict(v) async for v in db.store.versions_of(entity_id)]


@router.get("/entities/{entity_id}/as-of", response_model=VersionResponse)
async def get_as_of(
    entity_id: str,
    t: int = Query(..., description="Instant (Unix ms)"),
    db: HistDb = Depends(get_db),
):
    """The version valid at instant t."""
    version = db.query.as_of(entity_id, t)
    if version is None:
        raise NotFoundError(f"Entity {entity_id} has no version valid at {t}", entity_id=entity_id)
    return _version_to_dict(version)


@router.get("/entities/{entity_id}/range", response_model=list[VersionResponse])
async def get_range(
    entity_id: str,
    start: int = Query(..., description="Range start (Unix ms)"),
    end: int = Query(..., description="Range end (Unix ms)"),
    mode: Literal["from", "between", "contained"] = Query(
        "from", description="from: [start, end), between: [start, end], contained: within"
    ),
    db: HistDb = Depends(get_db),
):
    """Versions related to [start, end] by the chosen mode."""
    if mode == "from":
        versions = db.query.from_to(entity_id, start, end)
    elif mode == "between":
        versions = db.query.between(entity_id, start, end)
    else:
        versions = db.query.contained_in(entity_id, start, end)
    return [_version_to_dict(v) for v in versions]


# --- Ledger Routes ---


@router.get("/ledger/digest", response_model=DigestModel)
async def get_digest(db: HistDb = Depends(get_db)):
    """Latest (block_id, hash); store it outside the system for later verification."""
    return db.digest().to_dict()


@router.post("/ledger/verify", response_model=VerifyResponse)
async def verify_ledger(request: DigestModel, db: HistDb = Depends(get_db)):
    """Recompute the ledger and compare it with a trusted digest.

    A mismatch is reported as 409 with the offending block id.
    """
    result = await db.verify(LedgerDigest(block_id=request.block_id, hash=request.hash))
    return {
        "verified": True,
        "blocks_verified": result.blocks_verified,
        "digest": result.digest.to_dict(),
    }


@router.get("/ledger/entries", response_model=list[LedgerEntryResponse])
async def list_ledger_entries(
    entity_id: str | None = Query(None, description="Filter by entity"),
    db: HistDb = Depends(get_db),
):
    """Ledger entries in commit order."""
    rows = await db.require_ledger().ledger_view(entity_id)
    return [row.to_dict() for row in rows]


@router.get("/health")
async def health(db: HistDb = Depends(get_db)):
    return {"status": "healthy", "service": "histdb", "version": __version__, **db.get_stats()}


# --- Application ---


async def histdb_error_handler(request: Request, exc: HistDbError) -> JSONResponse:
    status = ERROR_STATUS.get(type(exc), 400)
    if isinstance(exc, TamperDetectedError):
        logger.warning(
            "Request failed",
            extra={"path": request.url.path, "code": exc.code, "details": exc.details},
        )
    return JSONResponse(
        status_code=status,
        content={"detail": exc.message, "code": exc.code, "details": exc.details},
    )


def create_http_app(db: HistDb | None = None, settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        db: Database to serve. Built from HistDbConfig.from_env() if not given.
            It is opened on startup if needed and closed on shutdown only
            when the app opened it.
        settings: API settings (loaded from environment if not given)
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        database = db if db is not None else HistDb(HistDbConfig.from_env())
        owned = not database.is_open
        if owned:
            await database.open()
        app.state.db = database
        app.state.settings = settings

        yield

        if owned:
            await database.close()

    app = FastAPI(
        title="HistDB",
        description="Versioned records with point-in-time queries and a tamper-evident ledger.",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(HistDbError, histdb_error_handler)
    app.include_router(router, prefix="/v1")
    return app
