"""
api/routes_vouchers.py — Voucher Endpoints

Endpoints:
    POST /vouchers                        → Issue a voucher
    GET  /vouchers                        → List vouchers (reporting roles)
    GET  /vouchers/mine                   → The calling beneficiary's vouchers
    POST /vouchers/resolve-token          → Presentation code → voucher
    GET  /vouchers/{voucher_id}           → Voucher details
    GET  /vouchers/{voucher_id}/token     → Presentation payload (QR content)
    POST /vouchers/{voucher_id}/revoke    → Revoke (admin)
"""

from datetime import timedelta
from decimal import Decimal
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from api.deps import get_caller
from core.crypto import crypto_engine
from core.permissions import Caller, require_permission
from db.session import get_db
from modules.vouchers import (
    get_voucher, issue_voucher, list_vouchers, list_vouchers_for_beneficiary,
    presentation_token, revoke_voucher,
)

router = APIRouter()


class IssueVoucherRequest(BaseModel):
    zone_id: str
    beneficiary_ref: str
    amount: Decimal
    category: str                                   # food | medical | shelter | water | ...
    vendor_restrictions: List[str] = Field(default_factory=list)
    ttl_days: Optional[float] = None


class RevokeVoucherRequest(BaseModel):
    reason: str = ""


class ResolveTokenRequest(BaseModel):
    code: str


@router.post("", status_code=201)
async def add_voucher(
    body: IssueVoucherRequest,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await issue_voucher(
        db=db,
        caller=caller,
        zone_id=body.zone_id,
        beneficiary_ref=body.beneficiary_ref,
        amount=body.amount,
        category=body.category,
        vendor_restrictions=body.vendor_restrictions,
        ttl=timedelta(days=body.ttl_days) if body.ttl_days is not None else None,
    )


@router.get("")
async def all_vouchers(
    zone_id: Optional[str] = None,
    status: Optional[str] = None,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    require_permission(caller, "view_reports")
    return await list_vouchers(db, zone_id, status)


@router.get("/mine")
async def my_vouchers(caller: Caller = Depends(get_caller), db: AsyncSession = Depends(get_db)):
    return await list_vouchers_for_beneficiary(db, caller.subject)


@router.post("/resolve-token")
async def resolve_token(
    body: ResolveTokenRequest,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    voucher_id = crypto_engine.resolve_voucher_token(body.code)
    return await get_voucher(db, caller, voucher_id)


@router.get("/{voucher_id}")
async def voucher_details(
    voucher_id: str,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await get_voucher(db, caller, voucher_id)


@router.get("/{voucher_id}/token")
async def voucher_token(
    voucher_id: str,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await presentation_token(db, caller, voucher_id)


@router.post("/{voucher_id}/revoke")
async def cancel_voucher(
    voucher_id: str,
    body: RevokeVoucherRequest,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await revoke_voucher(db, caller, voucher_id, body.reason)
