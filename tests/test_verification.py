"""
Tests for proof submission, verification quorum and the stale-proof report.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from config import settings
from core.errors import (
    BudgetExceeded, InvalidProof, InvalidVerification, PermissionDenied, ProofAlreadySubmitted,
    ProofAlreadyVerified, ProofNotFound, TransactionNotEligible, InsufficientVoucherBalance,
)
from core.ledger import ledger
from core.permissions import Caller
from db.models import DisasterZone, VerificationRecord, utcnow
from modules.redemptions import get_transaction, list_transactions, redeem
from modules.verification import (
    evaluate_quorum, get_proof, list_proofs, list_stale_proofs, submit_proof, submit_verification,
)
from modules.zones import get_zone


@pytest.fixture
def completed_tx(db, vendor_a, make_voucher):
    async def _make(amount="100", voucher_amount="150", key="k-1", **kwargs):
        voucher = await make_voucher(voucher_amount, **kwargs)
        return await redeem(db, vendor_a, voucher["id"], vendor_a.subject, amount, key)
    return _make


@pytest.fixture
def proof_for(db, vendor_a, completed_tx):
    async def _make(**kwargs):
        tx = await completed_tx(**kwargs)
        return await submit_proof(db, vendor_a, tx["id"], ["ipfs://bafy-receipt"], "Delivered 10kg rice")
    return _make


def record(role, decision, confidence=90):
    return VerificationRecord(verifier_role=role, decision=decision, confidence=confidence)


class TestQuorumRule:
    """evaluate_quorum is a pure function of the current per-role decisions."""

    def test_no_records(self):
        assert evaluate_quorum([]) == "Submitted"

    def test_one_approve_is_not_enough(self):
        assert evaluate_quorum([record("oracle", "approve")]) == "Submitted"

    def test_both_approve(self):
        records = [record("oracle", "approve"), record("government", "approve")]
        assert evaluate_quorum(records) == "Verified"

    def test_any_reject_wins(self):
        records = [record("oracle", "approve"), record("government", "reject")]
        assert evaluate_quorum(records) == "Rejected"

    def test_order_does_not_matter(self):
        records = [record("government", "approve"), record("oracle", "approve")]
        assert evaluate_quorum(records) == evaluate_quorum(list(reversed(records)))

    def test_min_confidence(self, monkeypatch):
        monkeypatch.setattr(settings, "VERIFICATION_MIN_CONFIDENCE", 50)
        records = [record("oracle", "approve", 40), record("government", "approve", 95)]
        assert evaluate_quorum(records) == "Submitted"

    def test_single_approver_category(self, monkeypatch):
        monkeypatch.setattr(settings, "SINGLE_APPROVER_CATEGORIES", ["water"])
        assert evaluate_quorum([record("oracle", "approve")], "water") == "Verified"
        assert evaluate_quorum([record("oracle", "approve")], "medical") == "Submitted"


class TestSubmitProof:
    """Tests for submit_proof()."""

    async def test_submit_proof(self, db, vendor_a, completed_tx):
        tx = await completed_tx()
        proof = await submit_proof(
            db, vendor_a, tx["id"], ["ipfs://a", "sha3:b"], "Rice and lentils",
            location={"latitude": 13.09, "longitude": 80.28},
        )
        assert proof["status"] == "Submitted"
        assert proof["within_zone"] is True
        assert (await get_transaction(db, vendor_a, tx["id"]))["proof_state"] == "ProofSubmitted"

    async def test_location_outside_zone_is_flagged(self, db, vendor_a, completed_tx):
        tx = await completed_tx()
        proof = await submit_proof(
            db, vendor_a, tx["id"], ["ipfs://a"], location={"latitude": 28.61, "longitude": 77.21},
        )
        assert proof["within_zone"] is False

    async def test_requires_media(self, db, vendor_a, completed_tx):
        tx = await completed_tx()
        with pytest.raises(InvalidProof):
            await submit_proof(db, vendor_a, tx["id"], [" "])

    async def test_bad_location(self, db, vendor_a, completed_tx):
        tx = await completed_tx()
        with pytest.raises(InvalidProof):
            await submit_proof(db, vendor_a, tx["id"], ["ipfs://a"], location={"latitude": "north"})

    async def test_only_once(self, db, vendor_a, completed_tx):
        tx = await completed_tx()
        await submit_proof(db, vendor_a, tx["id"], ["ipfs://a"])
        with pytest.raises(ProofAlreadySubmitted):
            await submit_proof(db, vendor_a, tx["id"], ["ipfs://b"])

    async def test_other_vendor(self, db, vendor_b, completed_tx):
        tx = await completed_tx()
        with pytest.raises(PermissionDenied):
            await submit_proof(db, vendor_b, tx["id"], ["ipfs://a"])

    async def test_failed_transaction_not_eligible(self, db, vendor_a, make_voucher):
        voucher = await make_voucher("10")
        with pytest.raises(InsufficientVoucherBalance) as exc:
            await redeem(db, vendor_a, voucher["id"], vendor_a.subject, "20", "k-1")
        with pytest.raises(TransactionNotEligible):
            await submit_proof(db, vendor_a, exc.value.extra["transaction_id"], ["ipfs://a"])


class TestSubmitVerification:
    """Tests for submit_verification()."""

    async def test_oracle_then_government(self, db, vendor_a, oracle, government, proof_for):
        proof = await proof_for()
        zone_before = await get_zone(db, proof["zone_id"])

        first = await submit_verification(db, oracle, proof["id"], "approve", 88)
        assert first["proof_status"] == "Submitted"
        assert (await get_zone(db, proof["zone_id"]))["budget_used"] == zone_before["budget_used"]

        second = await submit_verification(db, government, proof["id"], "approve", 75)
        assert second["proof_status"] == "Verified"
        assert second["proof"]["verified_at"]
        zone_after = await get_zone(db, proof["zone_id"])
        assert zone_after["budget_used"] == zone_before["budget_used"] + Decimal("100.00")

        tx = await get_transaction(db, vendor_a, proof["transaction_id"])
        assert tx["proof_state"] == "Verified"

    async def test_reject_then_override(self, db, oracle, government, proof_for):
        proof = await proof_for()
        rejected = await submit_verification(db, oracle, proof["id"], "reject", 70, "photo is blurry")
        assert rejected["proof_status"] == "Rejected"

        still = await submit_verification(db, government, proof["id"], "approve", 90)
        assert still["proof_status"] == "Rejected"

        lifted = await submit_verification(db, oracle, proof["id"], "approve", 85, "clear photo uploaded")
        assert lifted["proof_status"] == "Verified"
        assert len(lifted["proof"]["verifications"]) == 2

    async def test_resubmission_replaces_own_record(self, db, oracle, proof_for):
        proof = await proof_for()
        first = await submit_verification(db, oracle, proof["id"], "approve", 60)
        second = await submit_verification(db, oracle, proof["id"], "approve", 95)
        assert first["id"] == second["id"]
        assert [r["confidence"] for r in (await get_proof(db, proof["id"]))["verifications"]] == [95]

    async def test_verified_is_final(self, db, oracle, government, proof_for):
        proof = await proof_for()
        await submit_verification(db, oracle, proof["id"], "approve", 90)
        await submit_verification(db, government, proof["id"], "approve", 90)
        with pytest.raises(ProofAlreadyVerified):
            await submit_verification(db, oracle, proof["id"], "reject", 90)

    async def test_only_verifiers(self, db, vendor_a, admin, proof_for):
        proof = await proof_for()
        for caller in (vendor_a, admin, Caller("0xdonor", "donor")):
            with pytest.raises(PermissionDenied):
                await submit_verification(db, caller, proof["id"], "approve", 90)

    @pytest.mark.parametrize("decision,confidence", [("maybe", 50), ("approve", 101), ("approve", -1), ("approve", True)])
    async def test_bad_input(self, db, oracle, proof_for, decision, confidence):
        proof = await proof_for()
        with pytest.raises(InvalidVerification):
            await submit_verification(db, oracle, proof["id"], decision, confidence)

    async def test_missing_proof(self, db, oracle):
        with pytest.raises(ProofNotFound):
            await submit_verification(db, oracle, "missing", "approve", 90)

    async def test_budget_guard(self, db, oracle, government, proof_for):
        proof = await proof_for()
        zone = await db.get(DisasterZone, proof["zone_id"])
        zone.budget_used = zone.budget_allocated
        await db.commit()

        await submit_verification(db, oracle, proof["id"], "approve", 90)
        blocks_before = len(ledger.blocks)
        with pytest.raises(BudgetExceeded):
            await submit_verification(db, government, proof["id"], "approve", 90)
        assert (await get_proof(db, proof["id"]))["status"] == "Submitted"
        assert len(ledger.blocks) == blocks_before


class TestQueueAndStaleness:
    """Tests for the verification queue and the SLA report."""

    async def test_queue_by_status(self, db, oracle, government, proof_for):
        waiting = await proof_for()
        done = await proof_for(key="k-2")
        await submit_verification(db, oracle, done["id"], "approve", 90)
        await submit_verification(db, government, done["id"], "approve", 90)

        queue = await list_proofs(db, status="Submitted")
        assert [p["id"] for p in queue] == [waiting["id"]]

    async def test_stale_proofs(self, db, oracle, proof_for):
        proof = await proof_for()
        assert await list_stale_proofs(db) == []

        await submit_verification(db, oracle, proof["id"], "approve", 90)
        later = utcnow() + timedelta(hours=settings.PROOF_VERIFICATION_SLA_HOURS + 1)
        stale = await list_stale_proofs(db, now=later)
        assert [s["proof_id"] for s in stale] == [proof["id"]]
        assert stale[0]["missing_roles"] == ["government"]
        assert stale[0]["hours_pending"] > settings.PROOF_VERIFICATION_SLA_HOURS

    async def test_verified_proofs_are_not_stale(self, db, vendor_a, verified_redemption):
        await verified_redemption()
        later = utcnow() + timedelta(days=30)
        assert await list_stale_proofs(db, now=later) == []
        completed = await list_transactions(db, vendor_ref=vendor_a.subject)
        assert completed[0]["proof_state"] == "Verified"
