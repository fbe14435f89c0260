"""
modules/redemptions.py — Redemption Engine
===========================================
Vendors claim against a voucher's remaining balance.

Every redemption on a voucher runs inside one serialized commit on that
voucher (process lock + row lock + version column), so the compare-and-debit
is linearizable: when two requests contend for the same margin, exactly one
wins and the other gets InsufficientVoucherBalance.

Flow (under the voucher lock):
    idempotent replay?  → return the original outcome, nothing debited
    expired / terminal  → VoucherExpired | VoucherRevoked | VoucherRedeemed
    vendor restrictions → VendorNotAuthorized
    balance < amount    → Failed transaction recorded, InsufficientVoucherBalance
    otherwise           → debit, status transition, Completed transaction
"""

import logging
from typing import Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from core.errors import (
    IdempotencyKeyReused, InsufficientVoucherBalance, TransactionNotFound, ValidationFailed,
    VendorNotAuthorized, VoucherExpired, VoucherRedeemed, VoucherRevoked, PermissionDenied,
)
from core.locks import serialized_commit
from core.money import to_money, quantize, ZERO
from core.permissions import Caller, Role, require_permission
from db.models import (
    ProofOfAid, ProofStatus, RedemptionTransaction, TransactionStatus, Voucher, VoucherStatus,
    REDEEMABLE_STATUSES, utcnow,
)
from modules.audit import record_event
from modules.vouchers import load_voucher

logger = logging.getLogger("aidledger.modules.redemptions")


async def redeem(
    db: AsyncSession,
    caller: Caller,
    voucher_id: str,
    vendor_ref: str,
    amount,
    idempotency_key: str,
) -> dict:
    """
    Redeem `amount` from a voucher on behalf of `vendor_ref`.

    Returns the transaction (with `replayed=True` when the idempotency key was
    already used for this exact request). A replay of a request that failed
    for lack of balance raises the same InsufficientVoucherBalance again.
    """
    require_permission(caller, "redeem")
    if not idempotency_key or not idempotency_key.strip():
        raise ValidationFailed("idempotency_key is required.")
    if not vendor_ref:
        raise ValidationFailed("vendor_ref is required.")
    value = to_money(amount)

    await load_voucher(db, voucher_id)

    async def _redeem():
        voucher = await load_voucher(db, voucher_id, for_update=True)

        existing = await _find_by_idempotency_key(db, vendor_ref, idempotency_key)
        # Replays are answered before the expiry and status checks, so a retried
        # request still gets its original result after the voucher expired or ran out.
        if existing is not None:
            return _replay(existing, voucher, value), voucher, True

        _check_redeemable(voucher, vendor_ref)

        balance = quantize(voucher.remaining_balance)
        tx = RedemptionTransaction(
            voucher_id=voucher.id,
            zone_id=voucher.zone_id,
            vendor_ref=vendor_ref,
            amount=value,
            status=TransactionStatus.INITIATED.value,
            idempotency_key=idempotency_key,
        )
        db.add(tx)

        if balance < value:
            tx.status = TransactionStatus.FAILED.value
            tx.failure_reason = InsufficientVoucherBalance.code
            await db.flush()
            exc = InsufficientVoucherBalance(
                voucher_id=voucher.id,
                requested=str(value),
                remaining_balance=str(balance),
                transaction_id=tx.id,
            )
            exc.persist = True
            raise exc

        remaining = balance - value
        voucher.remaining_balance = remaining
        voucher.status = (
            VoucherStatus.REDEEMED.value if remaining == ZERO else VoucherStatus.PARTIALLY_REDEEMED.value
        )
        # Settlement is synchronous: the debit and completion commit together.
        tx.status = TransactionStatus.COMPLETED.value
        await db.flush()

        tx.block_hash = await record_event(
            db, caller, "VOUCHER_REDEEMED", "redemptions", tx.id, voucher.zone_id,
            details=f"{vendor_ref} redeemed {value} from voucher {voucher.id} ({remaining} left)",
            data={"voucher_id": voucher.id, "amount": str(value), "vendor_ref": vendor_ref},
        )
        return tx, voucher, False

    try:
        tx, voucher, replayed = await serialized_commit(db, [("voucher", voucher_id)], _redeem)
    except IntegrityError:
        # Same (vendor, key) raced in on a different voucher's lock.
        raise IdempotencyKeyReused(idempotency_key=idempotency_key)

    if replayed:
        logger.info(f"Redemption replay for key {idempotency_key} → {tx.id}")
    else:
        logger.info(f"Redemption {tx.id}: {vendor_ref} took {value} from {voucher_id} → {voucher.status}")
    return {
        **serialize_transaction(tx),
        "replayed": replayed,
        "voucher_status": voucher.status,
        "voucher_remaining_balance": quantize(voucher.remaining_balance),
    }


async def get_transaction(db: AsyncSession, caller: Caller, transaction_id: str) -> dict:
    tx = await load_transaction(db, transaction_id)
    if caller.role == Role.VENDOR.value and tx.vendor_ref != caller.subject:
        raise PermissionDenied("Vendors may only view their own transactions.")
    proof = (await db.execute(
        select(ProofOfAid).where(ProofOfAid.transaction_id == tx.id)
    )).scalars().first()
    return {**serialize_transaction(tx), "proof_state": proof_state(tx, proof)}


async def list_transactions(
    db: AsyncSession,
    vendor_ref: Optional[str] = None,
    voucher_id: Optional[str] = None,
    zone_id: Optional[str] = None,
    status: Optional[str] = None,
) -> list:
    query = (
        select(RedemptionTransaction, ProofOfAid)
        .outerjoin(ProofOfAid, ProofOfAid.transaction_id == RedemptionTransaction.id)
        .order_by(RedemptionTransaction.timestamp.desc())
    )
    if vendor_ref:
        query = query.where(RedemptionTransaction.vendor_ref == vendor_ref)
    if voucher_id:
        query = query.where(RedemptionTransaction.voucher_id == voucher_id)
    if zone_id:
        query = query.where(RedemptionTransaction.zone_id == zone_id)
    if status:
        query = query.where(RedemptionTransaction.status == status)
    result = await db.execute(query)
    return [
        {**serialize_transaction(tx), "proof_state": proof_state(tx, proof)}
        for tx, proof in result.all()
    ]


# ── Helpers ───────────────────────────────────────────────────────────────────
async def load_transaction(db: AsyncSession, transaction_id: str) -> RedemptionTransaction:
    tx = (await db.execute(
        select(RedemptionTransaction)
        .where(RedemptionTransaction.id == transaction_id)
        .execution_options(populate_existing=True)
    )).scalars().first()
    if tx is None:
        raise TransactionNotFound(transaction_id=transaction_id)
    return tx


async def _find_by_idempotency_key(db: AsyncSession, vendor_ref: str, key: str):
    result = await db.execute(
        select(RedemptionTransaction).where(
            RedemptionTransaction.vendor_ref == vendor_ref,
            RedemptionTransaction.idempotency_key == key,
        )
    )
    return result.scalars().first()


def _replay(existing: RedemptionTransaction, voucher: Voucher, value) -> RedemptionTransaction:
    if existing.voucher_id != voucher.id or quantize(existing.amount) != value:
        raise IdempotencyKeyReused(
            idempotency_key=existing.idempotency_key,
            original_transaction_id=existing.id,
        )
    if existing.status == TransactionStatus.FAILED.value:
        raise InsufficientVoucherBalance(
            voucher_id=voucher.id,
            requested=str(value),
            transaction_id=existing.id,
            replayed=True,
        )
    return existing


def _check_redeemable(voucher: Voucher, vendor_ref: str):
    if utcnow() > voucher.expires_at:
        if voucher.status in REDEEMABLE_STATUSES:
            voucher.status = VoucherStatus.EXPIRED.value
            logger.info(f"Voucher {voucher.id} expired at {voucher.expires_at.isoformat()}")
        exc = VoucherExpired(voucher_id=voucher.id, expires_at=voucher.expires_at.isoformat())
        exc.persist = True
        raise exc
    if voucher.status == VoucherStatus.EXPIRED.value:
        raise VoucherExpired(voucher_id=voucher.id, expires_at=voucher.expires_at.isoformat())
    if voucher.status == VoucherStatus.REVOKED.value:
        raise VoucherRevoked(voucher_id=voucher.id)
    if voucher.status == VoucherStatus.REDEEMED.value:
        raise VoucherRedeemed(voucher_id=voucher.id)
    if voucher.vendor_restrictions and vendor_ref not in voucher.vendor_restrictions:
        logger.warning(f"Vendor {vendor_ref} not allowed on voucher {voucher.id}")
        raise VendorNotAuthorized(voucher_id=voucher.id, vendor_ref=vendor_ref)


def proof_state(tx: RedemptionTransaction, proof: Optional[ProofOfAid]) -> Optional[str]:
    """Completed → ProofPending → ProofSubmitted → Verified | Rejected."""
    if tx.status != TransactionStatus.COMPLETED.value:
        return None
    if proof is None:
        return "ProofPending"
    if proof.status == ProofStatus.SUBMITTED.value:
        return "ProofSubmitted"
    return proof.status


def serialize_transaction(tx: RedemptionTransaction) -> dict:
    return {
        "id": tx.id,
        "voucher_id": tx.voucher_id,
        "zone_id": tx.zone_id,
        "vendor_ref": tx.vendor_ref,
        "amount": quantize(tx.amount),
        "status": tx.status,
        "idempotency_key": tx.idempotency_key,
        "failure_reason": tx.failure_reason,
        "block_hash": tx.block_hash,
        "timestamp": tx.timestamp.isoformat() if tx.timestamp else None,
    }
