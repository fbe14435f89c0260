"""
api/routes_proofs.py — Proof of Aid & Verification Endpoints

Endpoints:
    POST /proofs                            → Vendor submits proof for a redemption
    GET  /proofs                            → Verification queue (by status / zone)
    GET  /proofs/{proof_id}                 → Proof + current decisions
    POST /proofs/{proof_id}/verifications   → Oracle / government decision
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from api.deps import get_caller
from core.permissions import Caller, require_permission
from db.session import get_db
from modules.verification import get_proof, list_proofs, submit_proof, submit_verification

router = APIRouter()


class LocationBody(BaseModel):
    latitude: float
    longitude: float


class SubmitProofRequest(BaseModel):
    transaction_id: str
    media_refs: List[str]                  # content hashes / IPFS CIDs
    description: str = ""
    location: Optional[LocationBody] = None


class VerificationRequest(BaseModel):
    decision: str                          # approve | reject
    confidence: int = Field(ge=0, le=100)
    notes: Optional[str] = None


@router.post("", status_code=201)
async def add_proof(
    body: SubmitProofRequest,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await submit_proof(
        db=db,
        caller=caller,
        transaction_id=body.transaction_id,
        media_refs=body.media_refs,
        description=body.description,
        location=body.location.model_dump() if body.location else None,
    )


@router.get("")
async def verification_queue(
    status: Optional[str] = None,
    zone_id: Optional[str] = None,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    require_permission(caller, "view_reports")
    return await list_proofs(db, status, zone_id)


@router.get("/{proof_id}")
async def proof_details(
    proof_id: str,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    require_permission(caller, "view_reports")
    return await get_proof(db, proof_id)


@router.post("/{proof_id}/verifications", status_code=201)
async def add_verification(
    proof_id: str,
    body: VerificationRequest,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await submit_verification(db, caller, proof_id, body.decision, body.confidence, body.notes)
