"""
api/routes_redemptions.py — Redemption Endpoints

Endpoints:
    POST /redemptions                     → Vendor redeems against a voucher
    GET  /redemptions                     → List (vendors see their own)
    GET  /redemptions/{transaction_id}    → Transaction + proof state

The idempotency key may come in the body or the Idempotency-Key header.
A replayed request answers 200 with the original transaction instead of 201.
"""

from decimal import Decimal
from fastapi import APIRouter, Depends, Header, Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

from api.deps import get_caller
from core.crypto import crypto_engine
from core.errors import ValidationFailed
from core.permissions import Caller, Role, require_permission
from db.session import get_db
from modules.redemptions import get_transaction, list_transactions, redeem

router = APIRouter()


class RedeemRequest(BaseModel):
    voucher_id: Optional[str] = None
    voucher_code: Optional[str] = None      # scanned presentation code, alternative to voucher_id
    amount: Decimal
    idempotency_key: Optional[str] = None


@router.post("", status_code=201)
async def redeem_voucher(
    body: RedeemRequest,
    response: Response,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    voucher_id = body.voucher_id
    if body.voucher_code:
        voucher_id = crypto_engine.resolve_voucher_token(body.voucher_code)
    if not voucher_id:
        raise ValidationFailed("voucher_id or voucher_code is required.")

    result = await redeem(
        db=db,
        caller=caller,
        voucher_id=voucher_id,
        vendor_ref=caller.subject,
        amount=body.amount,
        idempotency_key=body.idempotency_key or idempotency_key,
    )
    if result["replayed"]:
        response.status_code = 200
    return result


@router.get("")
async def all_redemptions(
    voucher_id: Optional[str] = None,
    zone_id: Optional[str] = None,
    status: Optional[str] = None,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    if caller.role == Role.VENDOR.value:
        return await list_transactions(db, vendor_ref=caller.subject, voucher_id=voucher_id,
                                       zone_id=zone_id, status=status)
    require_permission(caller, "view_reports")
    return await list_transactions(db, voucher_id=voucher_id, zone_id=zone_id, status=status)


@router.get("/{transaction_id}")
async def redemption_details(
    transaction_id: str,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await get_transaction(db, caller, transaction_id)
