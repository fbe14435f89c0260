"""
Tests for recipients parsing, bulk payouts and the reporting views.
"""

from decimal import Decimal

import pytest

from core.errors import BulkPayoutValidationFailed, PermissionDenied
from modules.payouts import (
    create_bulk_payout, get_payout, list_payouts, parse_recipients, platform_summary,
    stale_proofs, vendor_outstanding, zone_utilization,
)
from modules.redemptions import redeem


def csv_rows(*rows, header="vendorRef,amount,referenceNote"):
    return "\n".join([header, *rows]) + "\n"


class TestParseRecipients:
    """Tests for the CSV reader."""

    def test_parses_rows(self):
        rows, errors = parse_recipients(csv_rows("vendor-a,10.50,INV-1", "vendor-b,4,"))
        assert errors == []
        assert [(r["row"], r["vendor_ref"], r["amount"]) for r in rows] == [
            (1, "vendor-a", Decimal("10.50")),
            (2, "vendor-b", Decimal("4.00")),
        ]
        assert rows[1]["reference_note"] is None

    def test_accepts_bytes_with_bom(self):
        rows, errors = parse_recipients(("\ufeff" + csv_rows("vendor-a,1,x")).encode("utf-8"))
        assert errors == [] and len(rows) == 1

    def test_row_errors(self):
        rows, errors = parse_recipients(csv_rows(
            "vendor-a,abc,x",
            ",5,x",
            "vendor-a,-5,x",
            "vendor-a,1.234,x",
            "vendor-a,1,x,extra",
            "vendor-a,2,ok",
        ))
        assert [e["row"] for e in errors] == [1, 2, 3, 4, 5]
        assert [r["row"] for r in rows] == [6]

    def test_blank_lines_are_skipped(self):
        rows, errors = parse_recipients(csv_rows("vendor-a,1,x", "", "vendor-a,2,y"))
        assert [r["row"] for r in rows] == [1, 2]

    def test_huge_amount_is_a_row_error(self):
        rows, errors = parse_recipients(csv_rows("vendor-a,1e30,x", "vendor-a,2,ok"))
        assert [(e["row"], e["vendor_ref"]) for e in errors] == [(1, "vendor-a")]
        assert "exceeds" in errors[0]["reason"]
        assert [r["row"] for r in rows] == [2]

    def test_oversized_cell_is_a_file_error(self):
        rows, errors = parse_recipients(csv_rows("vendor-a,1,ok", "vendor-a,2," + "n" * 200_000))
        assert errors[-1]["row"] == 0
        assert "unreadable CSV" in errors[-1]["reason"]

    def test_bad_header(self):
        rows, errors = parse_recipients("vendor,total\nvendor-a,1\n")
        assert rows == []
        assert errors[0]["row"] == 0


class TestBulkPayout:
    """Bulk payouts are all-or-nothing."""

    async def test_fifteen_rows_with_negative_row_nine(self, db, government, verified_redemption):
        tx = await verified_redemption()
        lines = [
            f"vendor-a,{'-5.00' if i == 9 else '1.00'},batch-row-{i}"
            for i in range(1, 16)
        ]
        with pytest.raises(BulkPayoutValidationFailed) as exc:
            await create_bulk_payout(db, government, tx["zone_id"], ["vendor-a"], "March relief", csv_rows(*lines))

        assert exc.value.extra["row_indices"] == [9]
        assert exc.value.status_code == 422
        assert await list_payouts(db, government, tx["zone_id"]) == []
        outstanding = await vendor_outstanding(db, government, tx["zone_id"])
        assert outstanding[0]["paid_total"] == Decimal("0.00")

    async def test_successful_payout(self, db, government, verified_redemption):
        tx = await verified_redemption()
        payout = await create_bulk_payout(
            db, government, tx["zone_id"], ["vendor-a"], "Week 1",
            csv_rows("vendor-a,60.00,INV-1", "vendor-a,40.00,INV-2"),
        )
        assert payout["total_amount"] == Decimal("100.00")
        assert payout["row_count"] == 2
        assert payout["block_hash"]

        detail = await get_payout(db, government, payout["id"])
        assert [i["row"] for i in detail["items"]] == [1, 2]

        outstanding = await vendor_outstanding(db, government, tx["zone_id"])
        assert outstanding == [{
            "zone_id": tx["zone_id"],
            "vendor_ref": "vendor-a",
            "verified_total": Decimal("100.00"),
            "paid_total": Decimal("100.00"),
            "outstanding": Decimal("0.00"),
        }]

    async def test_cannot_pay_more_than_owed(self, db, government, verified_redemption):
        tx = await verified_redemption()
        await create_bulk_payout(db, government, tx["zone_id"], ["vendor-a"], "Week 1", csv_rows("vendor-a,70,a"))
        with pytest.raises(BulkPayoutValidationFailed) as exc:
            await create_bulk_payout(
                db, government, tx["zone_id"], ["vendor-a"], "Week 2",
                csv_rows("vendor-a,20,b", "vendor-a,20,c"),
            )
        assert exc.value.extra["row_indices"] == [2]

    async def test_unverified_vendor_is_unknown(self, db, government, vendor_b, verified_redemption, make_voucher):
        tx = await verified_redemption()
        voucher = await make_voucher("50")
        await redeem(db, vendor_b, voucher["id"], vendor_b.subject, "50", "k-b")
        with pytest.raises(BulkPayoutValidationFailed) as exc:
            await create_bulk_payout(
                db, government, tx["zone_id"], ["vendor-a", "vendor-b"], "Mixed",
                csv_rows("vendor-a,10,a", "vendor-b,10,b"),
            )
        assert exc.value.extra["rows"][0]["reason"] == "unknown vendor for this zone"
        assert exc.value.extra["row_indices"] == [2]

    async def test_vendor_not_listed(self, db, government, verified_redemption):
        tx = await verified_redemption()
        with pytest.raises(BulkPayoutValidationFailed) as exc:
            await create_bulk_payout(db, government, tx["zone_id"], ["vendor-z"], "Oops", csv_rows("vendor-a,10,a"))
        assert exc.value.extra["row_indices"] == [1]

    async def test_unreadable_file_rejects_batch(self, db, government, verified_redemption):
        tx = await verified_redemption()
        with pytest.raises(BulkPayoutValidationFailed) as exc:
            await create_bulk_payout(
                db, government, tx["zone_id"], ["vendor-a"], "Bad file",
                csv_rows("vendor-a,1.00,ok", "vendor-a,1.00," + "x" * 200_000),
            )
        assert 0 in exc.value.extra["row_indices"]
        assert await list_payouts(db, government, tx["zone_id"]) == []

    async def test_empty_batch(self, db, government, make_zone):
        zone = await make_zone()
        with pytest.raises(BulkPayoutValidationFailed):
            await create_bulk_payout(db, government, zone["id"], ["vendor-a"], "Empty", csv_rows())

    async def test_treasury_cannot_create(self, db, treasury, make_zone):
        zone = await make_zone()
        with pytest.raises(PermissionDenied):
            await create_bulk_payout(db, treasury, zone["id"], ["vendor-a"], "x", csv_rows("vendor-a,1,a"))


class TestReports:
    """Tests for the read-only reporting views."""

    async def test_zone_utilization(self, db, government, vendor_a, make_zone, make_voucher):
        zone = await make_zone(budget="1000", donated="800")
        voucher = await make_voucher("300", zone=zone)
        await redeem(db, vendor_a, voucher["id"], vendor_a.subject, "120", "k-1")

        report = await zone_utilization(db, government, zone["id"])
        assert report["donated_total"] == Decimal("800.00")
        assert report["issued_total"] == Decimal("300.00")
        assert report["available_balance"] == Decimal("500.00")
        assert report["redeemed_total"] == Decimal("120.00")
        assert report["pending_distribution"] == Decimal("120.00")
        assert report["budget_used"] == Decimal("0.00")
        assert report["vouchers_by_status"] == {"PartiallyRedeemed": 1}

    async def test_utilization_after_verification(self, db, government, verified_redemption):
        tx = await verified_redemption()
        report = await zone_utilization(db, government, tx["zone_id"])
        assert report["budget_used"] == Decimal("100.00")
        assert report["verified_total"] == Decimal("100.00")
        assert report["pending_distribution"] == Decimal("0.00")
        assert report["utilization_pct"] == 10.0

    async def test_platform_summary(self, db, treasury, make_zone):
        await make_zone(budget="500", donated="200")
        summary = await platform_summary(db, treasury)
        assert summary["zones"] == 1
        assert summary["active_zones"] == 1
        assert summary["donated_total"] == Decimal("200.00")

    async def test_stale_proofs_needs_reporting_role(self, db, vendor_a):
        with pytest.raises(PermissionDenied):
            await stale_proofs(db, vendor_a)
