"""
modules/verification.py — Proof & Verification Workflow
========================================================
Per completed redemption:

    Completed → ProofPending → ProofSubmitted → Verified | Rejected

A vendor attaches one proof of aid (opaque media refs + description +
location). Oracle and government verifiers then record approve/reject
decisions; each role holds at most one current decision per proof and may
replace it. The proof status is recomputed from the current decisions on
every submission, so the outcome does not depend on arrival order.

Verified is final: it is the moment the redemption counts against the zone's
budget_used. Rejected is not; a fresh approve from the rejecting role lifts it.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Iterable
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from config import settings
from core.errors import (
    BudgetExceeded, InvalidProof, InvalidVerification, PermissionDenied, ProofAlreadySubmitted,
    ProofAlreadyVerified, ProofNotFound, TransactionNotEligible,
)
from core.geo import GeoBoundary
from core.locks import serialized_commit
from core.money import quantize
from core.permissions import Caller, Role, require_permission
from db.models import (
    Decision, ProofOfAid, ProofStatus, RedemptionTransaction, TransactionStatus,
    VerificationRecord, Voucher, utcnow,
)
from modules.audit import record_event
from modules.redemptions import load_transaction
from modules.zones import load_zone

logger = logging.getLogger("aidledger.modules.verification")


# ── Proof submission ──────────────────────────────────────────────────────────
async def submit_proof(
    db: AsyncSession,
    caller: Caller,
    transaction_id: str,
    media_refs: Iterable[str],
    description: str = "",
    location: Optional[dict] = None,
) -> dict:
    require_permission(caller, "submit_proof")

    refs = [r.strip() for r in (media_refs or []) if isinstance(r, str) and r.strip()]
    if not refs:
        raise InvalidProof("At least one media reference is required.")
    point = _parse_location(location)

    async def _submit():
        tx = await load_transaction(db, transaction_id)
        if caller.role == Role.VENDOR.value and tx.vendor_ref != caller.subject:
            raise PermissionDenied("Only the redeeming vendor may submit proof for this transaction.")
        if tx.status != TransactionStatus.COMPLETED.value:
            raise TransactionNotEligible(transaction_id=tx.id, status=tx.status)
        existing = (await db.execute(
            select(ProofOfAid).where(ProofOfAid.transaction_id == tx.id)
        )).scalars().first()
        if existing is not None:
            raise ProofAlreadySubmitted(transaction_id=tx.id, proof_id=existing.id)

        within_zone = None
        if point is not None:
            zone = await load_zone(db, tx.zone_id)
            within_zone = GeoBoundary(zone.latitude, zone.longitude, zone.radius_km).contains(*point)

        proof = ProofOfAid(
            transaction_id=tx.id,
            zone_id=tx.zone_id,
            submitted_by=caller.subject,
            media_refs=refs,
            description=description,
            location={"latitude": point[0], "longitude": point[1]} if point else None,
            within_zone=within_zone,
            status=ProofStatus.SUBMITTED.value,
        )
        db.add(proof)
        await db.flush()
        proof.block_hash = await record_event(
            db, caller, "PROOF_SUBMITTED", "verification", proof.id, tx.zone_id,
            details=f"Proof for transaction {tx.id} with {len(refs)} media refs",
            data={"transaction_id": tx.id, "media_refs": refs},
        )
        return proof

    try:
        proof = await serialized_commit(db, [("transaction", transaction_id)], _submit)
    except IntegrityError:
        raise ProofAlreadySubmitted(transaction_id=transaction_id)

    if proof.within_zone is False:
        logger.warning(f"Proof {proof.id} location lies outside zone {proof.zone_id}")
    logger.info(f"Proof {proof.id} submitted for transaction {transaction_id}")
    return serialize_proof(proof, [])


# ── Verification decisions ────────────────────────────────────────────────────
async def submit_verification(
    db: AsyncSession,
    caller: Caller,
    proof_id: str,
    decision: str,
    confidence: int,
    notes: Optional[str] = None,
) -> dict:
    """
    Record (or replace) the caller role's decision on a proof and re-evaluate
    the quorum. Returns the verification record plus the proof's new status.
    """
    require_permission(caller, "submit_verification")
    verifier_role = caller.role

    if decision not in {d.value for d in Decision}:
        raise InvalidVerification(f"decision must be 'approve' or 'reject', got '{decision}'.")
    if isinstance(confidence, bool) or not isinstance(confidence, int) or not 0 <= confidence <= 100:
        raise InvalidVerification("confidence must be an integer between 0 and 100.")

    proof = await load_proof(db, proof_id)
    zone_id = proof.zone_id

    async def _verify():
        proof = await load_proof(db, proof_id, for_update=True)
        if proof.status == ProofStatus.VERIFIED.value:
            raise ProofAlreadyVerified(proof_id=proof.id)

        record = (await db.execute(
            select(VerificationRecord).where(
                VerificationRecord.proof_id == proof.id,
                VerificationRecord.verifier_role == verifier_role,
            )
        )).scalars().first()
        if record is None:
            record = VerificationRecord(proof_id=proof.id, verifier_role=verifier_role)
            db.add(record)
        record.verifier_ref = caller.subject
        record.decision = decision
        record.confidence = confidence
        record.notes = notes
        record.timestamp = utcnow()
        await db.flush()

        records = await _current_records(db, proof.id)
        tx, category = await _transaction_and_category(db, proof.transaction_id)
        previous = proof.status
        new_status = evaluate_quorum(records, category)

        await record_event(
            db, caller, "VERIFICATION_SUBMITTED", "verification", record.id, proof.zone_id,
            details=f"{verifier_role} {decision} proof {proof.id} ({confidence}%)",
            data={"proof_id": proof.id, "decision": decision, "confidence": confidence},
        )

        if new_status == ProofStatus.VERIFIED.value:
            zone = await load_zone(db, zone_id, for_update=True)
            amount = quantize(tx.amount)
            used = quantize(zone.budget_used)
            if used + amount > quantize(zone.budget_allocated):
                raise BudgetExceeded(zone_id=zone.id, budget_used=str(used), amount=str(amount))
            zone.budget_used = used + amount
            proof.verified_at = utcnow()
            await record_event(
                db, caller, "PROOF_VERIFIED", "verification", proof.id, zone.id,
                details=f"Quorum reached; budget_used {used} → {used + amount}",
                data={"transaction_id": tx.id, "amount": str(amount)},
            )
        elif new_status != previous:
            await record_event(
                db, caller, f"PROOF_{new_status.upper()}", "verification", proof.id, proof.zone_id,
                details=f"Proof moved {previous} → {new_status}",
            )
        proof.status = new_status
        return record, proof, records

    record, proof, records = await serialized_commit(
        db, [("proof", proof_id), ("zone", zone_id)], _verify
    )
    logger.info(f"Verification {record.id}: {verifier_role} {decision} on {proof_id} → {proof.status}")
    return {
        **serialize_record(record),
        "proof_status": proof.status,
        "proof": serialize_proof(proof, records),
    }


def evaluate_quorum(records: Iterable[VerificationRecord], category: Optional[str] = None) -> str:
    """
    Pure function of the current per-role decisions:
      - any current reject                              → Rejected
      - every quorum role approves (≥ min confidence)   → Verified
      - fast-path category and any qualifying approve   → Verified
      - otherwise                                       → Submitted
    """
    current = {r.verifier_role: r for r in records}
    if any(r.decision == Decision.REJECT.value for r in current.values()):
        return ProofStatus.REJECTED.value
    approving = {
        role for role, r in current.items()
        if r.decision == Decision.APPROVE.value and r.confidence >= settings.VERIFICATION_MIN_CONFIDENCE
    }
    if category and category in settings.SINGLE_APPROVER_CATEGORIES and approving:
        return ProofStatus.VERIFIED.value
    if set(settings.VERIFICATION_QUORUM_ROLES) <= approving:
        return ProofStatus.VERIFIED.value
    return ProofStatus.SUBMITTED.value


# ── Reads ─────────────────────────────────────────────────────────────────────
async def get_proof(db: AsyncSession, proof_id: str) -> dict:
    proof = await load_proof(db, proof_id)
    return serialize_proof(proof, await _current_records(db, proof.id))


async def list_proofs(db: AsyncSession, status: Optional[str] = None, zone_id: Optional[str] = None) -> list:
    """The verification queue (oldest first)."""
    query = (
        select(ProofOfAid)
        .order_by(ProofOfAid.submitted_at.asc())
        .execution_options(populate_existing=True)
    )
    if status:
        query = query.where(ProofOfAid.status == status)
    if zone_id:
        query = query.where(ProofOfAid.zone_id == zone_id)
    result = await db.execute(query)
    return [serialize_proof(p, p.verifications) for p in result.scalars().all()]


async def list_stale_proofs(db: AsyncSession, now: Optional[datetime] = None, zone_id: Optional[str] = None) -> list:
    """
    Proofs still awaiting quorum after PROOF_VERIFICATION_SLA_HOURS.
    Reported for human escalation; never auto-rejected.
    """
    now = now or utcnow()
    cutoff = now - timedelta(hours=settings.PROOF_VERIFICATION_SLA_HOURS)
    query = (
        select(ProofOfAid, RedemptionTransaction)
        .join(RedemptionTransaction, RedemptionTransaction.id == ProofOfAid.transaction_id)
        .where(ProofOfAid.status == ProofStatus.SUBMITTED.value, ProofOfAid.submitted_at < cutoff)
        .order_by(ProofOfAid.submitted_at.asc())
        .execution_options(populate_existing=True)
    )
    if zone_id:
        query = query.where(ProofOfAid.zone_id == zone_id)
    result = await db.execute(query)
    stale = []
    for proof, tx in result.all():
        roles = {r.verifier_role for r in proof.verifications}
        stale.append({
            "proof_id": proof.id,
            "transaction_id": tx.id,
            "zone_id": proof.zone_id,
            "vendor_ref": tx.vendor_ref,
            "amount": quantize(tx.amount),
            "submitted_at": proof.submitted_at.isoformat(),
            "hours_pending": round((now - proof.submitted_at).total_seconds() / 3600, 1),
            "missing_roles": sorted(set(settings.VERIFICATION_QUORUM_ROLES) - roles),
        })
    if stale:
        logger.warning(f"{len(stale)} proof(s) past the {settings.PROOF_VERIFICATION_SLA_HOURS}h verification SLA")
    return stale


# ── Helpers ───────────────────────────────────────────────────────────────────
async def load_proof(db: AsyncSession, proof_id: str, for_update: bool = False) -> ProofOfAid:
    query = select(ProofOfAid).where(ProofOfAid.id == proof_id).execution_options(populate_existing=True)
    if for_update:
        query = query.with_for_update()
    proof = (await db.execute(query)).scalars().first()
    if proof is None:
        raise ProofNotFound(proof_id=proof_id)
    return proof


async def _current_records(db: AsyncSession, proof_id: str) -> list:
    result = await db.execute(
        select(VerificationRecord)
        .where(VerificationRecord.proof_id == proof_id)
        .order_by(VerificationRecord.timestamp.asc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def _transaction_and_category(db: AsyncSession, transaction_id: str):
    row = (await db.execute(
        select(RedemptionTransaction, Voucher.category)
        .join(Voucher, Voucher.id == RedemptionTransaction.voucher_id)
        .where(RedemptionTransaction.id == transaction_id)
    )).first()
    return row[0], row[1]


def _parse_location(location: Optional[dict]):
    if location is None:
        return None
    try:
        lat = float(location["latitude"])
        lon = float(location["longitude"])
    except (KeyError, TypeError, ValueError):
        raise InvalidProof("location must carry numeric 'latitude' and 'longitude'.")
    if not -90 <= lat <= 90 or not -180 <= lon <= 180:
        raise InvalidProof("location is outside valid coordinate ranges.")
    return lat, lon


def serialize_record(record: VerificationRecord) -> dict:
    return {
        "id": record.id,
        "proof_id": record.proof_id,
        "verifier_role": record.verifier_role,
        "verifier_ref": record.verifier_ref,
        "decision": record.decision,
        "confidence": record.confidence,
        "notes": record.notes,
        "timestamp": record.timestamp.isoformat() if record.timestamp else None,
    }


def serialize_proof(proof: ProofOfAid, records: Iterable[VerificationRecord]) -> dict:
    return {
        "id": proof.id,
        "transaction_id": proof.transaction_id,
        "zone_id": proof.zone_id,
        "submitted_by": proof.submitted_by,
        "media_refs": list(proof.media_refs or []),
        "description": proof.description,
        "location": proof.location,
        "within_zone": proof.within_zone,
        "status": proof.status,
        "submitted_at": proof.submitted_at.isoformat() if proof.submitted_at else None,
        "verified_at": proof.verified_at.isoformat() if proof.verified_at else None,
        "block_hash": proof.block_hash,
        "verifications": [serialize_record(r) for r in records],
    }
