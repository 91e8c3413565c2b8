"""
Subscription Root API - Subscription Endpoints

- GET /subscribers/{identity}/proof: Membership proof against the current tree
- POST /verify: Check a membership claim the way the ledger does
- POST /sync: Trigger an immediate root sync
- GET /roots: Recent entries of the root publication log
- GET /roots/latest: Latest entry of the root publication log
"""

from datetime import datetime

import structlog
from fastapi import APIRouter, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from subroot.crypto.leaf import InvalidIdentityLength, parse_identity
from subroot.db.repository import StoreUnavailableError
from subroot.services.proof_service import (
    NoPublishedRootError,
    ProofService,
    SubscriberNotFoundError,
)
from subroot.services.root_sync import RootSyncService

logger = structlog.get_logger(__name__)
router = APIRouter()

HEX_HASH_PATTERN = r"^[0-9a-fA-F]{64}$"

# Expirations are encoded as signed 64-bit integers in the leaf
I64_MIN = -(2**63)
I64_MAX = 2**63 - 1


# Request/Response Models
class ProofResponse(BaseModel):
    """Membership proof for one subscriber."""

    identity: str
    expiration_ts: int
    leaf_hash: str
    proof: list[str]
    root_hash: str
    leaf_count: int


class VerifyRequest(BaseModel):
    """Membership claim to check."""

    identity: str = Field(
        ...,
        description="Subscriber identity (hex, 32 bytes)",
        pattern=HEX_HASH_PATTERN,
    )
    expiration_ts: int = Field(
        ...,
        description="Claimed expiration (Unix seconds)",
        ge=I64_MIN,
        le=I64_MAX,
    )
    proof: list[str] = Field(
        default_factory=list,
        description="Sibling hashes from leaf to root (hex)",
    )
    root_hash: str | None = Field(
        default=None,
        description="Root to check against (defaults to the latest published root)",
        pattern=HEX_HASH_PATTERN,
    )


class VerifyResponse(BaseModel):
    """Verification result."""

    valid: bool
    reason: str
    root_hash: str


class SyncResponse(BaseModel):
    """Outcome of a sync cycle."""

    outcome: str
    success: bool
    root_hash: str | None = None
    leaf_count: int = 0
    tx_reference: str | None = None
    error: str | None = None
    attempts: int = 0
    duration_seconds: float = 0.0


class RootResponse(BaseModel):
    """Root publication log entry."""

    id: int | None = None
    root_hash: str
    is_synced_on_chain: bool
    tx_signature: str | None = None
    created_at: datetime


def _get_service(req: Request, name: str):
    service = getattr(req.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name.replace('_', ' ').capitalize()} not initialized",
        )
    return service


def _root_response(record) -> RootResponse:
    return RootResponse(
        id=record.id,
        root_hash=record.root_hex,
        is_synced_on_chain=record.is_synced_on_chain,
        tx_signature=record.tx_signature,
        created_at=record.created_at,
    )


def _parse_hashes(values: list[str]) -> list[bytes]:
    try:
        hashes = [bytes.fromhex(v) for v in values]
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid proof element: {e}",
        )
    if any(len(h) != 32 for h in hashes):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Proof elements must be 32-byte hashes",
        )
    return hashes


# Endpoints
@router.get(
    "/subscribers/{identity}/proof",
    response_model=ProofResponse,
    summary="Get membership proof",
    description="Derive the membership proof for a subscriber against the current subscriber set.",
    responses={
        200: {"description": "Membership proof"},
        404: {"description": "Subscriber not found"},
        422: {"description": "Malformed identity"},
    },
)
async def get_proof(identity: str, req: Request) -> ProofResponse:
    """Get the proof a subscriber submits to the ledger."""
    proof_service: ProofService = _get_service(req, "proof_service")

    try:
        identity_bytes = parse_identity(identity)
    except InvalidIdentityLength as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        )

    try:
        proof = await proof_service.get_proof(identity_bytes)
    except SubscriberNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except StoreUnavailableError as e:
        logger.error("Proof lookup failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Subscriber store unavailable",
        )

    return ProofResponse(**proof.to_dict())


@router.post(
    "/verify",
    response_model=VerifyResponse,
    summary="Verify membership",
    description="Check a membership claim off-ledger with the ledger's own rules.",
    responses={
        200: {"description": "Verification result"},
        404: {"description": "No root published yet"},
    },
)
async def verify_membership(request: VerifyRequest, req: Request) -> VerifyResponse:
    """
    Verify a membership claim.

    Expiration is checked before the proof, so an expired subscriber is
    reported as expired even when the proof is also wrong.
    """
    proof_service: ProofService = _get_service(req, "proof_service")

    siblings = _parse_hashes(request.proof)
    root = bytes.fromhex(request.root_hash) if request.root_hash else None

    logger.info(
        "Verifying membership",
        identity=request.identity[:16] + "...",
        proof_length=len(siblings),
    )

    try:
        result = await proof_service.verify(
            bytes.fromhex(request.identity),
            request.expiration_ts,
            siblings,
            root=root,
        )
    except NoPublishedRootError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except StoreUnavailableError as e:
        logger.error("Verification failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Root log unavailable",
        )

    return VerifyResponse(**result.to_dict())


@router.post(
    "/sync",
    response_model=SyncResponse,
    summary="Trigger root sync",
    description="Run a sync cycle now, or join the one already in flight.",
    responses={
        200: {"description": "Sync cycle completed"},
        500: {"description": "Sync cycle failed"},
    },
)
async def trigger_sync(req: Request) -> SyncResponse:
    """Rebuild the tree and publish the root if it changed."""
    root_sync: RootSyncService = _get_service(req, "root_sync")

    logger.info("Sync requested", busy=root_sync.is_busy)

    result = await root_sync.sync()
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=result.error or "Sync cycle failed",
        )

    return SyncResponse(**result.to_dict())


@router.get(
    "/roots/latest",
    response_model=RootResponse,
    summary="Get latest root",
    description="Latest entry of the root publication log, synced or not.",
    responses={
        200: {"description": "Latest root record"},
        404: {"description": "No root recorded yet"},
    },
)
async def get_latest_root(req: Request) -> RootResponse:
    """Get the most recent root record."""
    root_log = _get_service(req, "root_log")

    try:
        record = await root_log.latest()
    except StoreUnavailableError as e:
        logger.error("Failed to read root log", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Root log unavailable",
        )

    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No root recorded yet",
        )

    return _root_response(record)


@router.get(
    "/roots",
    response_model=list[RootResponse],
    summary="List roots",
    description="Recent entries of the root publication log, newest first.",
)
async def list_roots(
    req: Request,
    limit: int = Query(
        default=50,
        ge=1,
        le=500,
        description="Maximum number of records to return",
    ),
) -> list[RootResponse]:
    root_log = _get_service(req, "root_log")

    try:
        records = await root_log.list_recent(limit)
    except StoreUnavailableError as e:
        logger.error("Failed to read root log", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Root log unavailable",
        )

    return [_root_response(record) for record in records]
