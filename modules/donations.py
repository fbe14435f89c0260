"""
modules/donations.py — Donation Ledger
=======================================
Append-only record of money escrowed into a zone. Each donation bumps the
zone's donated_total under the zone lock, so voucher issuance on the same zone
never checks a stale balance.
"""

import logging
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from core.errors import ZoneNotActive
from core.locks import serialized_commit
from core.money import to_money, quantize
from core.permissions import Caller, require_permission
from db.models import Donation, ZoneStatus
from modules.audit import record_event
from modules.zones import load_zone

logger = logging.getLogger("aidledger.modules.donations")


async def record_donation(
    db: AsyncSession,
    caller: Caller,
    zone_id: str,
    donor_ref: str,
    amount,
    external_ref: Optional[str] = None,
) -> dict:
    require_permission(caller, "record_donation")
    value = to_money(amount)

    async def _record():
        zone = await load_zone(db, zone_id, for_update=True)
        if zone.status != ZoneStatus.ACTIVE.value:
            raise ZoneNotActive(zone_id=zone_id, status=zone.status)

        donation = Donation(
            zone_id=zone.id,
            donor_ref=donor_ref,
            amount=value,
            external_reference=external_ref,
        )
        db.add(donation)
        zone.donated_total = quantize(zone.donated_total) + value
        await db.flush()

        donation.block_hash = await record_event(
            db, caller, "DONATION_RECORDED", "donations", donation.id, zone.id,
            details=f"{donor_ref} donated {value}",
            data={"amount": str(value), "donor_ref": donor_ref, "external_ref": external_ref},
        )
        return donation, zone

    donation, zone = await serialized_commit(db, [("zone", zone_id)], _record)
    logger.info(f"Donation {donation.id}: {value} → zone {zone_id} (available {zone.available_balance})")
    return {
        **serialize_donation(donation),
        "zone_available_balance": quantize(zone.donated_total) - quantize(zone.issued_total),
    }


async def list_donations(
    db: AsyncSession,
    zone_id: Optional[str] = None,
    donor_ref: Optional[str] = None,
) -> list:
    query = select(Donation).order_by(Donation.timestamp.desc())
    if zone_id:
        query = query.where(Donation.zone_id == zone_id)
    if donor_ref:
        query = query.where(Donation.donor_ref == donor_ref)
    result = await db.execute(query)
    return [serialize_donation(d) for d in result.scalars().all()]


def serialize_donation(donation: Donation) -> dict:
    return {
        "id": donation.id,
        "zone_id": donation.zone_id,
        "donor_ref": donation.donor_ref,
        "amount": quantize(donation.amount),
        "external_reference": donation.external_reference,
        "block_hash": donation.block_hash,
        "timestamp": donation.timestamp.isoformat() if donation.timestamp else None,
    }
