"""
modules/payouts.py — Payout / Audit Reporter
=============================================
Read-only aggregates over the ledger, plus one mutating operation:
create_bulk_payout(), which pays vendors for verified-but-unpaid aid.

A bulk payout batch is all-or-nothing. Every row of the recipients file is
validated (shape, amount, vendor, owed balance) before anything is written;
a single bad row rejects the whole batch with every offending row listed.
"""

import csv
import io
import logging
from collections import defaultdict
from decimal import Decimal
from typing import Optional, Iterable, Union
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func

from config import settings
from core.errors import BulkPayoutValidationFailed, InvalidAmount
from core.locks import serialized_commit
from core.money import ZERO, quantize, to_money
from core.permissions import Caller, require_permission
from db.models import (
    BulkPayout, DisasterZone, PayoutItem, ProofOfAid, ProofStatus, RedemptionTransaction,
    TransactionStatus, Voucher, ZoneStatus,
)
from modules.audit import record_event
from modules.verification import list_stale_proofs
from modules.zones import load_zone

logger = logging.getLogger("aidledger.modules.payouts")

HEADER_ALIASES = {
    "vendorref": "vendor_ref",
    "vendor_ref": "vendor_ref",
    "vendor": "vendor_ref",
    "amount": "amount",
    "referencenote": "reference_note",
    "reference_note": "reference_note",
    "note": "reference_note",
}
PAYOUT_TYPES = {"vendor_reimbursement", "emergency_fund"}


# ── Recipients file parsing ───────────────────────────────────────────────────
def parse_recipients(recipients_file: Union[str, bytes]) -> tuple:
    """
    Parse a CSV with header vendorRef,amount,referenceNote.
    Returns (rows, errors); rows are dicts with a 1-based `row` number
    counted over data rows, errors are {"row", "reason"} dicts. Problems
    with the file as a whole are reported as row 0.
    """
    if isinstance(recipients_file, bytes):
        try:
            recipients_file = recipients_file.decode("utf-8-sig")
        except UnicodeDecodeError:
            return [], [{"row": 0, "reason": "file is not valid UTF-8"}]

    reader = csv.reader(io.StringIO(recipients_file))
    rows, errors = [], []
    number = 0
    try:
        header = next(reader, None)
        if not header:
            return [], [{"row": 0, "reason": "file is empty"}]
        columns = [HEADER_ALIASES.get(h.strip().lower()) for h in header]
        if "vendor_ref" not in columns or "amount" not in columns:
            return [], [{"row": 0, "reason": "header must include vendorRef and amount"}]

        for raw in reader:
            if not any(cell.strip() for cell in raw):
                continue
            number += 1
            if len(raw) > len(columns):
                errors.append({"row": number, "reason": "too many columns"})
                continue
            record = {col: raw[i].strip() for i, col in enumerate(columns) if col and i < len(raw)}
            vendor_ref = record.get("vendor_ref", "")
            if not vendor_ref:
                errors.append({"row": number, "reason": "vendorRef is missing"})
                continue
            try:
                amount = to_money(record.get("amount", ""))
            except InvalidAmount as exc:
                errors.append({"row": number, "vendor_ref": vendor_ref, "reason": exc.message})
                continue
            rows.append({
                "row": number,
                "vendor_ref": vendor_ref,
                "amount": amount,
                "reference_note": record.get("reference_note") or None,
            })
    except csv.Error as exc:
        errors.append({"row": 0, "reason": f"unreadable CSV at line {reader.line_num}: {exc}"})
    return rows, errors


# ── Bulk payout ───────────────────────────────────────────────────────────────
async def create_bulk_payout(
    db: AsyncSession,
    caller: Caller,
    zone_id: str,
    vendor_refs: Iterable[str],
    description: str,
    recipients_file: Union[str, bytes],
    payout_type: str = "vendor_reimbursement",
) -> dict:
    require_permission(caller, "create_bulk_payout")
    if payout_type not in PAYOUT_TYPES:
        raise BulkPayoutValidationFailed(f"Unknown payout type '{payout_type}'.", rows=[], row_indices=[])

    declared = {v.strip() for v in (vendor_refs or []) if v and v.strip()}
    rows, errors = parse_recipients(recipients_file)
    if not rows and not errors:
        errors.append({"row": 0, "reason": "batch has no recipient rows"})
    if len(rows) + len(errors) > settings.MAX_PAYOUT_ROWS:
        errors.append({"row": 0, "reason": f"batch exceeds {settings.MAX_PAYOUT_ROWS} rows"})

    async def _create():
        await load_zone(db, zone_id, for_update=True)
        owed = await _owed_by_vendor(db, zone_id)

        problems = list(errors)
        running = defaultdict(lambda: ZERO)
        for row in rows:
            vendor = row["vendor_ref"]
            if declared and vendor not in declared:
                problems.append({"row": row["row"], "vendor_ref": vendor, "reason": "vendor not listed for this payout"})
                continue
            if vendor not in owed:
                problems.append({"row": row["row"], "vendor_ref": vendor, "reason": "unknown vendor for this zone"})
                continue
            running[vendor] += row["amount"]
            if running[vendor] > owed[vendor]:
                problems.append({
                    "row": row["row"], "vendor_ref": vendor,
                    "reason": f"amount exceeds owed balance {owed[vendor]}",
                })

        if problems:
            problems.sort(key=lambda p: p["row"])
            raise BulkPayoutValidationFailed(
                f"{len(problems)} row(s) failed validation; no rows were applied.",
                rows=problems,
                row_indices=sorted({p["row"] for p in problems}),
            )

        total = sum((r["amount"] for r in rows), ZERO)
        payout = BulkPayout(
            zone_id=zone_id,
            created_by=caller.subject,
            description=description,
            payout_type=payout_type,
            vendor_refs=sorted(declared or {r["vendor_ref"] for r in rows}),
            total_amount=total,
            row_count=len(rows),
        )
        db.add(payout)
        await db.flush()
        for r in rows:
            db.add(PayoutItem(
                payout_id=payout.id,
                zone_id=zone_id,
                row_number=r["row"],
                vendor_ref=r["vendor_ref"],
                amount=r["amount"],
                reference_note=r["reference_note"],
            ))
        payout.block_hash = await record_event(
            db, caller, "BULK_PAYOUT_CREATED", "payouts", payout.id, zone_id,
            details=f"{len(rows)} rows, total {total}: {description}",
            data={"total_amount": str(total), "rows": len(rows)},
        )
        return payout

    try:
        payout = await serialized_commit(db, [("zone", zone_id)], _create)
    except BulkPayoutValidationFailed as exc:
        logger.warning(f"Bulk payout for zone {zone_id} rejected: rows {exc.extra.get('row_indices')}")
        raise

    logger.info(f"Bulk payout {payout.id} for zone {zone_id}: {payout.row_count} rows, {payout.total_amount}")
    return serialize_payout(payout)


# ── Reports ───────────────────────────────────────────────────────────────────
async def zone_utilization(db: AsyncSession, caller: Caller, zone_id: str) -> dict:
    require_permission(caller, "view_reports")
    zone = await load_zone(db, zone_id)

    completed = await _sum(db, select(func.sum(RedemptionTransaction.amount)).where(
        RedemptionTransaction.zone_id == zone_id,
        RedemptionTransaction.status == TransactionStatus.COMPLETED.value,
    ))
    verified = await _sum(db, _verified_query().where(RedemptionTransaction.zone_id == zone_id))
    paid = await _sum(db, select(func.sum(PayoutItem.amount)).where(PayoutItem.zone_id == zone_id))

    status_counts = dict((await db.execute(
        select(Voucher.status, func.count(Voucher.id)).where(Voucher.zone_id == zone_id).group_by(Voucher.status)
    )).all())

    allocated = quantize(zone.budget_allocated)
    budget_used = quantize(zone.budget_used)
    return {
        "zone_id": zone.id,
        "name": zone.name,
        "status": zone.status,
        "budget_allocated": allocated,
        "donated_total": quantize(zone.donated_total),
        "issued_total": quantize(zone.issued_total),
        "available_balance": quantize(zone.donated_total) - quantize(zone.issued_total),
        "redeemed_total": completed,
        "pending_distribution": completed - verified,
        "budget_used": budget_used,
        "verified_total": verified,
        "paid_out": paid,
        "remaining_budget": allocated - budget_used,
        "utilization_pct": float(round(budget_used / allocated * 100, 2)) if allocated else 0.0,
        "vouchers_by_status": status_counts,
    }


async def vendor_outstanding(db: AsyncSession, caller: Caller, zone_id: Optional[str] = None) -> list:
    """Per (zone, vendor): verified aid, already paid, and outstanding."""
    require_permission(caller, "view_reports")

    verified_q = (
        select(RedemptionTransaction.zone_id, RedemptionTransaction.vendor_ref, func.sum(RedemptionTransaction.amount))
        .join(ProofOfAid, ProofOfAid.transaction_id == RedemptionTransaction.id)
        .where(ProofOfAid.status == ProofStatus.VERIFIED.value)
        .group_by(RedemptionTransaction.zone_id, RedemptionTransaction.vendor_ref)
    )
    paid_q = (
        select(PayoutItem.zone_id, PayoutItem.vendor_ref, func.sum(PayoutItem.amount))
        .group_by(PayoutItem.zone_id, PayoutItem.vendor_ref)
    )
    if zone_id:
        verified_q = verified_q.where(RedemptionTransaction.zone_id == zone_id)
        paid_q = paid_q.where(PayoutItem.zone_id == zone_id)

    paid = {(z, v): quantize(total) for z, v, total in (await db.execute(paid_q)).all()}
    report = []
    for z, vendor, total in (await db.execute(verified_q)).all():
        verified = quantize(total)
        already = paid.get((z, vendor), ZERO)
        report.append({
            "zone_id": z,
            "vendor_ref": vendor,
            "verified_total": verified,
            "paid_total": already,
            "outstanding": verified - already,
        })
    report.sort(key=lambda r: (r["zone_id"], r["vendor_ref"]))
    return report


async def stale_proofs(db: AsyncSession, caller: Caller, zone_id: Optional[str] = None, now=None) -> list:
    require_permission(caller, "view_reports")
    return await list_stale_proofs(db, now=now, zone_id=zone_id)


async def list_payouts(db: AsyncSession, caller: Caller, zone_id: Optional[str] = None) -> list:
    require_permission(caller, "view_reports")
    query = select(BulkPayout).order_by(BulkPayout.created_at.desc())
    if zone_id:
        query = query.where(BulkPayout.zone_id == zone_id)
    result = await db.execute(query)
    return [serialize_payout(p) for p in result.scalars().all()]


async def get_payout(db: AsyncSession, caller: Caller, payout_id: str) -> Optional[dict]:
    require_permission(caller, "view_reports")
    payout = await db.get(BulkPayout, payout_id)
    if payout is None:
        return None
    items = (await db.execute(
        select(PayoutItem).where(PayoutItem.payout_id == payout_id).order_by(PayoutItem.row_number)
    )).scalars().all()
    return {
        **serialize_payout(payout),
        "items": [
            {"row": i.row_number, "vendor_ref": i.vendor_ref, "amount": quantize(i.amount),
             "reference_note": i.reference_note}
            for i in items
        ],
    }


async def platform_summary(db: AsyncSession, caller: Caller) -> dict:
    require_permission(caller, "view_reports")
    zones = (await db.execute(select(
        func.count(DisasterZone.id),
        func.sum(DisasterZone.budget_allocated),
        func.sum(DisasterZone.donated_total),
        func.sum(DisasterZone.issued_total),
        func.sum(DisasterZone.budget_used),
    ))).one()
    active = (await db.execute(
        select(func.count(DisasterZone.id)).where(DisasterZone.status == ZoneStatus.ACTIVE.value)
    )).scalar()
    pending = (await db.execute(
        select(func.count(ProofOfAid.id)).where(ProofOfAid.status == ProofStatus.SUBMITTED.value)
    )).scalar()
    return {
        "zones": zones[0],
        "active_zones": active,
        "budget_allocated": quantize(zones[1]),
        "donated_total": quantize(zones[2]),
        "issued_total": quantize(zones[3]),
        "budget_used": quantize(zones[4]),
        "proofs_awaiting_verification": pending,
    }


# ── Helpers ───────────────────────────────────────────────────────────────────
def _verified_query():
    return (
        select(func.sum(RedemptionTransaction.amount))
        .join(ProofOfAid, ProofOfAid.transaction_id == RedemptionTransaction.id)
        .where(ProofOfAid.status == ProofStatus.VERIFIED.value)
    )


async def _sum(db: AsyncSession, query) -> Decimal:
    return quantize((await db.execute(query)).scalar())


async def _owed_by_vendor(db: AsyncSession, zone_id: str) -> dict:
    """vendor_ref → verified minus already paid, for vendors with verified aid in the zone."""
    verified = (await db.execute(
        select(RedemptionTransaction.vendor_ref, func.sum(RedemptionTransaction.amount))
        .join(ProofOfAid, ProofOfAid.transaction_id == RedemptionTransaction.id)
        .where(RedemptionTransaction.zone_id == zone_id, ProofOfAid.status == ProofStatus.VERIFIED.value)
        .group_by(RedemptionTransaction.vendor_ref)
    )).all()
    paid = dict((await db.execute(
        select(PayoutItem.vendor_ref, func.sum(PayoutItem.amount))
        .where(PayoutItem.zone_id == zone_id)
        .group_by(PayoutItem.vendor_ref)
    )).all())
    return {vendor: quantize(total) - quantize(paid.get(vendor)) for vendor, total in verified}


def serialize_payout(payout: BulkPayout) -> dict:
    return {
        "id": payout.id,
        "zone_id": payout.zone_id,
        "created_by": payout.created_by,
        "description": payout.description,
        "payout_type": payout.payout_type,
        "vendor_refs": list(payout.vendor_refs or []),
        "total_amount": quantize(payout.total_amount),
        "row_count": payout.row_count,
        "block_hash": payout.block_hash,
        "created_at": payout.created_at.isoformat() if payout.created_at else None,
    }
