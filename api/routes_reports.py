"""
api/routes_reports.py — Payouts, Reports & Audit Endpoints

Endpoints:
    POST /payouts                       → Bulk vendor payout from a CSV upload
    GET  /payouts                       → List payout batches
    GET  /payouts/{payout_id}           → Batch with its rows
    GET  /reports/summary               → Platform-wide totals
    GET  /reports/zones/{zone_id}       → Zone budget utilization
    GET  /reports/vendors               → Verified-but-unpaid per vendor
    GET  /reports/stale-proofs          → Proofs past the verification SLA
    GET  /audit                         → Audit trail
"""

from fastapi import APIRouter, Depends, File, Form, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

from api.deps import get_caller
from core.errors import NotFound
from core.permissions import Caller
from db.session import get_db
from modules.audit import list_audit_log
from modules.payouts import (
    create_bulk_payout, get_payout, list_payouts, platform_summary,
    stale_proofs, vendor_outstanding, zone_utilization,
)

payouts_router = APIRouter()
reports_router = APIRouter()
audit_router = APIRouter()


# ── Payouts ───────────────────────────────────────────────────────────────────
@payouts_router.post("", status_code=201)
async def upload_payout(
    zone_id: str = Form(...),
    vendor_refs: str = Form(...),           # comma-separated
    description: str = Form(""),
    payout_type: str = Form("vendor_reimbursement"),
    recipients: UploadFile = File(...),
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    content = await recipients.read()
    return await create_bulk_payout(
        db=db,
        caller=caller,
        zone_id=zone_id,
        vendor_refs=vendor_refs.split(","),
        description=description,
        recipients_file=content,
        payout_type=payout_type,
    )


@payouts_router.get("")
async def all_payouts(
    zone_id: Optional[str] = None,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await list_payouts(db, caller, zone_id)


@payouts_router.get("/{payout_id}")
async def payout_details(
    payout_id: str,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    payout = await get_payout(db, caller, payout_id)
    if payout is None:
        raise NotFound(f"Payout {payout_id} not found.")
    return payout


# ── Reports ───────────────────────────────────────────────────────────────────
@reports_router.get("/summary")
async def summary(caller: Caller = Depends(get_caller), db: AsyncSession = Depends(get_db)):
    return await platform_summary(db, caller)


@reports_router.get("/zones/{zone_id}")
async def zone_report(
    zone_id: str,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await zone_utilization(db, caller, zone_id)


@reports_router.get("/vendors")
async def vendor_report(
    zone_id: Optional[str] = None,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await vendor_outstanding(db, caller, zone_id)


@reports_router.get("/stale-proofs")
async def stale_proof_report(
    zone_id: Optional[str] = None,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await stale_proofs(db, caller, zone_id)


# ── Audit ─────────────────────────────────────────────────────────────────────
@audit_router.get("")
async def audit_trail(
    zone_id: Optional[str] = None,
    entity_id: Optional[str] = None,
    limit: int = 50,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await list_audit_log(db, caller, zone_id, entity_id, min(limit, 500))
