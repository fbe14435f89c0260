"""
modules/zones.py — Zone Registry
=================================
Creates and resolves disaster zones. A zone is active (open for donations
and vouchers) from the moment it is created until it is resolved.

Flow:
    API route → check role → validate → save DB → anchor + audit → return
"""

import logging
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from core.errors import InvalidAmount, InvalidZoneParameters, ZoneNotFound, ZoneAlreadyResolved
from core.geo import validate_boundary
from core.locks import serialized_commit
from core.money import to_money, quantize
from core.permissions import Caller, require_permission
from db.models import DisasterZone, Severity, ZoneStatus, utcnow
from modules.audit import record_event

logger = logging.getLogger("aidledger.modules.zones")


async def create_zone(
    db: AsyncSession,
    caller: Caller,
    name: str,
    latitude: float,
    longitude: float,
    radius_km: float,
    budget_allocated,
    severity: str = Severity.MODERATE.value,
    disaster_type: Optional[str] = None,
    description: Optional[str] = None,
) -> dict:
    require_permission(caller, "create_zone")

    if not name or not name.strip():
        raise InvalidZoneParameters("Zone name is required.")
    if severity not in {s.value for s in Severity}:
        raise InvalidZoneParameters(f"Unknown severity '{severity}'.")
    boundary = validate_boundary(latitude, longitude, radius_km)
    try:
        budget = to_money(budget_allocated, "budget_allocated")
    except InvalidAmount as exc:
        raise InvalidZoneParameters(exc.message)

    async def _create():
        zone = DisasterZone(
            name=name.strip(),
            description=description,
            disaster_type=disaster_type,
            latitude=boundary.latitude,
            longitude=boundary.longitude,
            radius_km=boundary.radius_km,
            severity=severity,
            status=ZoneStatus.ACTIVE.value,
            budget_allocated=budget,
            budget_used=quantize(0),
            donated_total=quantize(0),
            issued_total=quantize(0),
            created_by=caller.subject,
        )
        db.add(zone)
        await db.flush()
        zone.block_hash = await record_event(
            db, caller, "ZONE_CREATED", "zones", zone.id, zone.id,
            details=f"Created zone '{zone.name}' with budget {budget}",
            data={"budget_allocated": str(budget), "severity": severity},
        )
        return zone

    # A new zone has no lock to take yet.
    zone = await serialized_commit(db, [], _create)

    logger.info(f"Zone {zone.id} '{zone.name}' created by {caller.subject} (budget {budget})")
    return serialize_zone(zone)


async def resolve_zone(db: AsyncSession, caller: Caller, zone_id: str) -> dict:
    require_permission(caller, "resolve_zone")

    async def _resolve():
        zone = await load_zone(db, zone_id, for_update=True)
        if zone.status == ZoneStatus.RESOLVED.value:
            raise ZoneAlreadyResolved(zone_id=zone_id)
        zone.status = ZoneStatus.RESOLVED.value
        zone.resolved_at = utcnow()
        await record_event(db, caller, "ZONE_RESOLVED", "zones", zone.id, zone.id,
                           details=f"Resolved zone '{zone.name}'")
        return zone

    zone = await serialized_commit(db, [("zone", zone_id)], _resolve)
    logger.info(f"Zone {zone_id} resolved by {caller.subject}")
    return serialize_zone(zone)


async def get_zone(db: AsyncSession, zone_id: str) -> dict:
    return serialize_zone(await load_zone(db, zone_id))


async def list_zones(db: AsyncSession, status: Optional[str] = None) -> list:
    query = select(DisasterZone).order_by(DisasterZone.created_at.desc())
    if status:
        query = query.where(DisasterZone.status == status)
    result = await db.execute(query)
    return [serialize_zone(z) for z in result.scalars().all()]


# ── Helpers ───────────────────────────────────────────────────────────────────
async def load_zone(db: AsyncSession, zone_id: str, for_update: bool = False) -> DisasterZone:
    """Fresh read of a zone; with for_update, row-locked where the database supports it."""
    query = select(DisasterZone).where(DisasterZone.id == zone_id).execution_options(populate_existing=True)
    if for_update:
        query = query.with_for_update()
    zone = (await db.execute(query)).scalars().first()
    if zone is None:
        raise ZoneNotFound(zone_id=zone_id)
    return zone


def serialize_zone(zone: DisasterZone) -> dict:
    return {
        "id": zone.id,
        "name": zone.name,
        "description": zone.description,
        "disaster_type": zone.disaster_type,
        "geo": {"latitude": zone.latitude, "longitude": zone.longitude, "radius_km": zone.radius_km},
        "severity": zone.severity,
        "status": zone.status,
        "budget_allocated": quantize(zone.budget_allocated),
        "budget_used": quantize(zone.budget_used),
        "donated_total": quantize(zone.donated_total),
        "issued_total": quantize(zone.issued_total),
        "available_balance": quantize(zone.donated_total) - quantize(zone.issued_total),
        "block_hash": zone.block_hash,
        "created_at": zone.created_at.isoformat() if zone.created_at else None,
        "resolved_at": zone.resolved_at.isoformat() if zone.resolved_at else None,
    }
