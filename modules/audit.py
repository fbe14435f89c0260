"""
modules/audit.py — Audit Trail
===============================
Every financial mutation calls record_event() inside its own transaction.
The AuditLog row carrying the event digest is added to the session, so it
commits (or rolls back) together with the mutation it describes; the ledger
block is queued and only written once that commit succeeds.
"""

import logging
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from core.ledger import stage_anchor
from core.permissions import Caller, require_permission
from db.models import AuditLog, utcnow

logger = logging.getLogger("aidledger.modules.audit")


async def record_event(
    db: AsyncSession,
    caller: Caller,
    action: str,
    module: str,
    entity_id: str,
    zone_id: Optional[str] = None,
    details: str = "",
    data: Optional[dict] = None,
) -> str:
    """Stage the audit row and queue its anchor block. Returns the event digest."""
    digest = stage_anchor(db, action, {
        "event": action,
        "entity_id": entity_id,
        "zone_id": zone_id,
        "actor": caller.subject,
        "role": caller.role,
        "timestamp": utcnow().isoformat(),
        **(data or {}),
    })
    db.add(AuditLog(
        actor_ref=caller.subject,
        actor_role=caller.role,
        action=action,
        module=module,
        entity_id=entity_id,
        zone_id=zone_id,
        details=details,
        block_hash=digest,
    ))
    return digest


async def list_audit_log(
    db: AsyncSession,
    caller: Caller,
    zone_id: Optional[str] = None,
    entity_id: Optional[str] = None,
    limit: int = 50,
) -> list:
    require_permission(caller, "view_audit")

    query = select(AuditLog).order_by(AuditLog.timestamp.desc()).limit(limit)
    if zone_id:
        query = query.where(AuditLog.zone_id == zone_id)
    if entity_id:
        query = query.where(AuditLog.entity_id == entity_id)
    result = await db.execute(query)
    return [
        {
            "id": log.id,
            "actor": log.actor_ref,
            "role": log.actor_role,
            "action": log.action,
            "module": log.module,
            "entity_id": log.entity_id,
            "zone_id": log.zone_id,
            "details": log.details,
            "block_hash": log.block_hash,
            "timestamp": log.timestamp.isoformat(),
        }
        for log in result.scalars().all()
    ]
