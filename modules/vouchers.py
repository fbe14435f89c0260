"""
modules/vouchers.py — Voucher Issuer
=====================================
Mints vouchers against a zone's available balance.

The balance check and the debit (zone.issued_total += amount) happen inside
one serialized commit on the zone, so two concurrent issuances can never both
pass a check that only one of them fits under.

Beneficiary references are personal data: stored Fernet-encrypted, with a
salted SHA-3 hash for lookups.
"""

import logging
from datetime import timedelta
from typing import Optional, Iterable
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from config import settings
from core.crypto import crypto_engine
from core.errors import (
    InsufficientZoneBalance, InvalidVoucherParameters, VoucherNotFound,
    VoucherNotRevocable, ZoneNotActive, PermissionDenied,
)
from core.locks import serialized_commit
from core.money import to_money, quantize
from core.permissions import Caller, Role, require_permission
from db.models import (
    Voucher, VoucherCategory, VoucherStatus, ZoneStatus, TERMINAL_VOUCHER_STATUSES, utcnow,
)
from modules.audit import record_event
from modules.zones import load_zone

logger = logging.getLogger("aidledger.modules.vouchers")


async def issue_voucher(
    db: AsyncSession,
    caller: Caller,
    zone_id: str,
    beneficiary_ref: str,
    amount,
    category: str,
    vendor_restrictions: Optional[Iterable[str]] = None,
    ttl: Optional[timedelta] = None,
) -> dict:
    require_permission(caller, "issue_voucher")

    value = to_money(amount)
    ttl = ttl if ttl is not None else timedelta(days=settings.DEFAULT_VOUCHER_TTL_DAYS)
    if ttl <= timedelta(0) or ttl > timedelta(days=settings.MAX_VOUCHER_TTL_DAYS):
        raise InvalidVoucherParameters(
            f"ttl must be positive and at most {settings.MAX_VOUCHER_TTL_DAYS} days."
        )
    if category not in {c.value for c in VoucherCategory}:
        raise InvalidVoucherParameters(f"Unknown category '{category}'.")
    if not beneficiary_ref or not beneficiary_ref.strip():
        raise InvalidVoucherParameters("beneficiary_ref is required.")
    restrictions = sorted({v.strip() for v in (vendor_restrictions or []) if v and v.strip()})

    async def _issue():
        zone = await load_zone(db, zone_id, for_update=True)
        if zone.status != ZoneStatus.ACTIVE.value:
            raise ZoneNotActive(zone_id=zone_id, status=zone.status)

        donated = quantize(zone.donated_total)
        issued = quantize(zone.issued_total)
        available = donated - issued
        headroom = quantize(zone.budget_allocated) - issued
        if value > available or value > headroom:
            raise InsufficientZoneBalance(
                zone_id=zone_id,
                requested=str(value),
                available=str(min(available, headroom)),
            )

        now = utcnow()
        voucher = Voucher(
            zone_id=zone.id,
            beneficiary_hash=crypto_engine.hash_beneficiary(beneficiary_ref),
            beneficiary_encrypted=crypto_engine.encrypt(beneficiary_ref.strip()),
            total_amount=value,
            remaining_balance=value,
            category=category,
            vendor_restrictions=restrictions,
            status=VoucherStatus.ISSUED.value,
            issued_by=caller.subject,
            issued_at=now,
            expires_at=now + ttl,
        )
        db.add(voucher)
        zone.issued_total = issued + value
        await db.flush()

        voucher.block_hash = await record_event(
            db, caller, "VOUCHER_ISSUED", "vouchers", voucher.id, zone.id,
            details=f"Issued {category} voucher for {value}",
            data={"amount": str(value), "category": category, "vendor_restrictions": restrictions},
        )
        # Issued → Active in the same commit: funds are already escrowed.
        voucher.status = VoucherStatus.ACTIVE.value
        return voucher, zone

    voucher, zone = await serialized_commit(db, [("zone", zone_id)], _issue)
    logger.info(
        f"Voucher {voucher.id} issued: {value} {category} in zone {zone_id} "
        f"(zone available {quantize(zone.donated_total) - quantize(zone.issued_total)})"
    )
    return serialize_voucher(voucher)


async def revoke_voucher(db: AsyncSession, caller: Caller, voucher_id: str, reason: str = "") -> dict:
    require_permission(caller, "revoke_voucher")

    async def _revoke():
        voucher = await load_voucher(db, voucher_id, for_update=True)
        if voucher.status in TERMINAL_VOUCHER_STATUSES:
            raise VoucherNotRevocable(voucher_id=voucher_id, status=voucher.status)
        voucher.status = VoucherStatus.REVOKED.value
        voucher.revoked_at = utcnow()
        voucher.revoke_reason = reason
        await record_event(
            db, caller, "VOUCHER_REVOKED", "vouchers", voucher.id, voucher.zone_id,
            details=f"Revoked with {quantize(voucher.remaining_balance)} unredeemed: {reason}",
        )
        return voucher

    voucher = await serialized_commit(db, [("voucher", voucher_id)], _revoke)
    logger.warning(f"Voucher {voucher_id} revoked by {caller.subject}: {reason}")
    return serialize_voucher(voucher)


async def get_voucher(db: AsyncSession, caller: Caller, voucher_id: str) -> dict:
    voucher = await load_voucher(db, voucher_id)
    _require_can_view(caller, voucher)
    return serialize_voucher(voucher, include_beneficiary=caller.role != Role.VENDOR.value)


async def list_vouchers_for_beneficiary(db: AsyncSession, beneficiary_ref: str) -> list:
    result = await db.execute(
        select(Voucher)
        .where(Voucher.beneficiary_hash == crypto_engine.hash_beneficiary(beneficiary_ref))
        .order_by(Voucher.issued_at.desc())
    )
    return [serialize_voucher(v, include_beneficiary=True) for v in result.scalars().all()]


async def list_vouchers(db: AsyncSession, zone_id: Optional[str] = None, status: Optional[str] = None) -> list:
    query = select(Voucher).order_by(Voucher.issued_at.desc())
    if zone_id:
        query = query.where(Voucher.zone_id == zone_id)
    if status:
        query = query.where(Voucher.status == status)
    result = await db.execute(query)
    return [serialize_voucher(v) for v in result.scalars().all()]


async def presentation_token(db: AsyncSession, caller: Caller, voucher_id: str) -> dict:
    """The {voucher_id, signature, code} payload a beneficiary shows to a vendor."""
    voucher = await load_voucher(db, voucher_id)
    _require_can_view(caller, voucher)
    return {**crypto_engine.voucher_token(voucher.id), "expires_at": voucher.expires_at.isoformat()}


# ── Helpers ───────────────────────────────────────────────────────────────────
async def load_voucher(db: AsyncSession, voucher_id: str, for_update: bool = False) -> Voucher:
    query = select(Voucher).where(Voucher.id == voucher_id).execution_options(populate_existing=True)
    if for_update:
        query = query.with_for_update()
    voucher = (await db.execute(query)).scalars().first()
    if voucher is None:
        raise VoucherNotFound(voucher_id=voucher_id)
    return voucher


def _require_can_view(caller: Caller, voucher: Voucher):
    """Victims only see their own vouchers; every other role may look a voucher up."""
    if caller.role == Role.VICTIM.value and \
            crypto_engine.hash_beneficiary(caller.subject) != voucher.beneficiary_hash:
        raise PermissionDenied("Vouchers are only visible to their beneficiary.")


def serialize_voucher(voucher: Voucher, include_beneficiary: bool = False) -> dict:
    row = {
        "id": voucher.id,
        "zone_id": voucher.zone_id,
        "total_amount": quantize(voucher.total_amount),
        "remaining_balance": quantize(voucher.remaining_balance),
        "category": voucher.category,
        "vendor_restrictions": list(voucher.vendor_restrictions or []),
        "status": voucher.status,
        "issued_at": voucher.issued_at.isoformat(),
        "expires_at": voucher.expires_at.isoformat(),
        "revoked_at": voucher.revoked_at.isoformat() if voucher.revoked_at else None,
        "block_hash": voucher.block_hash,
    }
    if include_beneficiary:
        row["beneficiary_ref"] = crypto_engine.safe_decrypt(voucher.beneficiary_encrypted)
    return row
