"""
db/models.py — Database Table Definitions
==========================================
Each class = one table.
Zones and vouchers are the only hot aggregates; both carry a version column
so a concurrent writer in another process fails with StaleDataError instead
of silently overwriting a balance.
Everything else is append-only once created.
"""

import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from sqlalchemy import (
    String, DateTime, Text, Integer, ForeignKey, JSON, Numeric, Boolean, UniqueConstraint, Index,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from db.session import Base


def new_uuid():
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


Money = Numeric(18, 2)


# ── Status vocabularies ───────────────────────────────────────────────────────
class ZoneStatus(str, enum.Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"


class Severity(str, enum.Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"


class VoucherStatus(str, enum.Enum):
    ISSUED = "Issued"
    ACTIVE = "Active"
    PARTIALLY_REDEEMED = "PartiallyRedeemed"
    REDEEMED = "Redeemed"
    EXPIRED = "Expired"
    REVOKED = "Revoked"


class VoucherCategory(str, enum.Enum):
    FOOD = "food"
    MEDICAL = "medical"
    SHELTER = "shelter"
    WATER = "water"
    CLOTHING = "clothing"
    TRANSPORT = "transport"
    OTHER = "other"


class TransactionStatus(str, enum.Enum):
    INITIATED = "Initiated"
    PENDING = "Pending"
    COMPLETED = "Completed"
    FAILED = "Failed"


class ProofStatus(str, enum.Enum):
    SUBMITTED = "Submitted"
    VERIFIED = "Verified"
    REJECTED = "Rejected"


class Decision(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"


REDEEMABLE_STATUSES = {VoucherStatus.ACTIVE.value, VoucherStatus.PARTIALLY_REDEEMED.value}
TERMINAL_VOUCHER_STATUSES = {
    VoucherStatus.REDEEMED.value, VoucherStatus.EXPIRED.value, VoucherStatus.REVOKED.value,
}


# ── 1. Disaster Zones ─────────────────────────────────────────────────────────
class DisasterZone(Base):
    __tablename__ = "disaster_zones"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=True)
    disaster_type: Mapped[str] = mapped_column(String(100), nullable=True)   # flood | earthquake | wildfire ...
    latitude: Mapped[float] = mapped_column(nullable=False)
    longitude: Mapped[float] = mapped_column(nullable=False)
    radius_km: Mapped[float] = mapped_column(nullable=False)
    severity: Mapped[str] = mapped_column(String(20), default=Severity.MODERATE.value)
    status: Mapped[str] = mapped_column(String(20), default=ZoneStatus.ACTIVE.value)
    budget_allocated: Mapped[Decimal] = mapped_column(Money, nullable=False)
    budget_used: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))       # verified spend
    donated_total: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    issued_total: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))      # sum of voucher totals
    created_by: Mapped[str] = mapped_column(String(255), nullable=True)
    block_hash: Mapped[str] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    resolved_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def available_balance(self) -> Decimal:
        return self.donated_total - self.issued_total


# ── 2. Donations ──────────────────────────────────────────────────────────────
class Donation(Base):
    __tablename__ = "donations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    zone_id: Mapped[str] = mapped_column(ForeignKey("disaster_zones.id"), nullable=False, index=True)
    donor_ref: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    external_reference: Mapped[str] = mapped_column(String(255), nullable=True)   # payment / tx proof
    block_hash: Mapped[str] = mapped_column(String(512), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


# ── 3. Vouchers ───────────────────────────────────────────────────────────────
class Voucher(Base):
    __tablename__ = "vouchers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    zone_id: Mapped[str] = mapped_column(ForeignKey("disaster_zones.id"), nullable=False, index=True)
    beneficiary_hash: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    beneficiary_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    remaining_balance: Mapped[Decimal] = mapped_column(Money, nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    vendor_restrictions: Mapped[list] = mapped_column(JSON, default=list)   # [] = any vendor
    status: Mapped[str] = mapped_column(String(30), default=VoucherStatus.ISSUED.value)
    issued_by: Mapped[str] = mapped_column(String(255), nullable=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    revoked_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    revoke_reason: Mapped[str] = mapped_column(Text, nullable=True)
    block_hash: Mapped[str] = mapped_column(String(512), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


# ── 4. Redemption Transactions ────────────────────────────────────────────────
class RedemptionTransaction(Base):
    __tablename__ = "redemption_transactions"
    __table_args__ = (
        UniqueConstraint("vendor_ref", "idempotency_key", name="uq_redemption_idempotency"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    voucher_id: Mapped[str] = mapped_column(ForeignKey("vouchers.id"), nullable=False, index=True)
    zone_id: Mapped[str] = mapped_column(ForeignKey("disaster_zones.id"), nullable=False, index=True)
    vendor_ref: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=TransactionStatus.INITIATED.value)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    failure_reason: Mapped[str] = mapped_column(String(100), nullable=True)
    block_hash: Mapped[str] = mapped_column(String(512), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


# ── 5. Proof of Aid ───────────────────────────────────────────────────────────
class ProofOfAid(Base):
    __tablename__ = "proofs_of_aid"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    transaction_id: Mapped[str] = mapped_column(
        ForeignKey("redemption_transactions.id"), unique=True, nullable=False
    )
    zone_id: Mapped[str] = mapped_column(ForeignKey("disaster_zones.id"), nullable=False, index=True)
    submitted_by: Mapped[str] = mapped_column(String(255), nullable=False)
    media_refs: Mapped[list] = mapped_column(JSON, default=list)     # content hashes / CIDs
    description: Mapped[str] = mapped_column(Text, nullable=True)
    location: Mapped[dict] = mapped_column(JSON, nullable=True)      # {"latitude": .., "longitude": ..}
    within_zone: Mapped[bool] = mapped_column(Boolean, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=ProofStatus.SUBMITTED.value, index=True)
    submitted_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    verified_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    block_hash: Mapped[str] = mapped_column(String(512), nullable=True)

    verifications: Mapped[list["VerificationRecord"]] = relationship(
        back_populates="proof", lazy="selectin", order_by="VerificationRecord.timestamp"
    )


# ── 6. Verification Records ───────────────────────────────────────────────────
class VerificationRecord(Base):
    __tablename__ = "verification_records"
    __table_args__ = (
        UniqueConstraint("proof_id", "verifier_role", name="uq_verification_role"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    proof_id: Mapped[str] = mapped_column(ForeignKey("proofs_of_aid.id"), nullable=False)
    verifier_role: Mapped[str] = mapped_column(String(20), nullable=False)   # oracle | government
    verifier_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    decision: Mapped[str] = mapped_column(String(10), nullable=False)        # approve | reject
    confidence: Mapped[int] = mapped_column(Integer, nullable=False)
    notes: Mapped[str] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    proof: Mapped["ProofOfAid"] = relationship(back_populates="verifications")


# ── 7. Bulk Payouts ───────────────────────────────────────────────────────────
class BulkPayout(Base):
    __tablename__ = "bulk_payouts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    zone_id: Mapped[str] = mapped_column(ForeignKey("disaster_zones.id"), nullable=False, index=True)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=True)
    payout_type: Mapped[str] = mapped_column(String(50), default="vendor_reimbursement")
    vendor_refs: Mapped[list] = mapped_column(JSON, default=list)
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    row_count: Mapped[int] = mapped_column(Integer, nullable=False)
    block_hash: Mapped[str] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class PayoutItem(Base):
    __tablename__ = "payout_items"
    __table_args__ = (
        Index("ix_payout_items_zone_vendor", "zone_id", "vendor_ref"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    payout_id: Mapped[str] = mapped_column(ForeignKey("bulk_payouts.id"), nullable=False, index=True)
    zone_id: Mapped[str] = mapped_column(ForeignKey("disaster_zones.id"), nullable=False)
    row_number: Mapped[int] = mapped_column(Integer, nullable=False)
    vendor_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    reference_note: Mapped[str] = mapped_column(Text, nullable=True)


# ── 8. Audit Log ──────────────────────────────────────────────────────────────
class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    actor_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(20), nullable=False)
    action: Mapped[str] = mapped_column(String(100))        # ZONE_CREATED | VOUCHER_ISSUED | ...
    module: Mapped[str] = mapped_column(String(100))        # zones | donations | vouchers | ...
    entity_id: Mapped[str] = mapped_column(String(36), nullable=True, index=True)
    zone_id: Mapped[str] = mapped_column(String(36), nullable=True, index=True)
    details: Mapped[str] = mapped_column(Text, nullable=True)
    block_hash: Mapped[str] = mapped_column(String(512), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
