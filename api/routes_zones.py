"""
api/routes_zones.py — Zone Registry & Donation Ledger Endpoints

Endpoints:
    POST /zones                       → Create a disaster zone
    GET  /zones                       → List zones (optionally by status)
    GET  /zones/{zone_id}             → Zone details + balances
    POST /zones/{zone_id}/resolve     → Resolve a zone
    POST /zones/{zone_id}/donations   → Record a donation
    GET  /zones/{zone_id}/donations   → Donations into a zone
    GET  /zones/donations/mine        → The calling donor's history
"""

from decimal import Decimal
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

from api.deps import get_caller
from core.permissions import Caller, Role
from db.session import get_db
from modules.donations import list_donations, record_donation
from modules.zones import create_zone, get_zone, list_zones, resolve_zone

router = APIRouter()


class GeoBoundaryBody(BaseModel):
    latitude: float
    longitude: float
    radius_km: float


class CreateZoneRequest(BaseModel):
    name: str
    geo: GeoBoundaryBody
    budget_allocated: Decimal
    severity: str = "moderate"          # low | moderate | high | critical
    disaster_type: Optional[str] = None
    description: Optional[str] = None


class DonationRequest(BaseModel):
    amount: Decimal
    external_ref: Optional[str] = None  # payment / on-chain tx reference
    donor_ref: Optional[str] = None     # only honoured for treasury/admin recording on behalf


@router.post("", status_code=201)
async def add_zone(
    body: CreateZoneRequest,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await create_zone(
        db=db,
        caller=caller,
        name=body.name,
        latitude=body.geo.latitude,
        longitude=body.geo.longitude,
        radius_km=body.geo.radius_km,
        budget_allocated=body.budget_allocated,
        severity=body.severity,
        disaster_type=body.disaster_type,
        description=body.description,
    )


@router.get("")
async def all_zones(status: Optional[str] = None, db: AsyncSession = Depends(get_db)):
    return await list_zones(db, status)


@router.get("/donations/mine")
async def my_donations(caller: Caller = Depends(get_caller), db: AsyncSession = Depends(get_db)):
    return await list_donations(db, donor_ref=caller.subject)


@router.get("/{zone_id}")
async def zone_details(zone_id: str, db: AsyncSession = Depends(get_db)):
    return await get_zone(db, zone_id)


@router.post("/{zone_id}/resolve")
async def close_zone(
    zone_id: str,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await resolve_zone(db, caller, zone_id)


@router.post("/{zone_id}/donations", status_code=201)
async def donate(
    zone_id: str,
    body: DonationRequest,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    donor_ref = caller.subject
    if caller.role != Role.DONOR.value and body.donor_ref:
        donor_ref = body.donor_ref
    return await record_donation(db, caller, zone_id, donor_ref, body.amount, body.external_ref)


@router.get("/{zone_id}/donations")
async def zone_donations(zone_id: str, db: AsyncSession = Depends(get_db)):
    return await list_donations(db, zone_id=zone_id)
