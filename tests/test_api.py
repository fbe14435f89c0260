"""
HTTP-level tests: the full aid lifecycle through the FastAPI routes.
"""

import pytest
from httpx import ASGITransport, AsyncClient

from core.crypto import crypto_engine
from db.session import get_db


def auth(subject, role):
    return {"Authorization": f"Bearer {crypto_engine.create_access_token(subject, role)}"}


GOV = auth("gov-ndma", "government")
DONOR = auth("0xdonor01", "donor")
VICTIM = auth("BEN-1001", "victim")
VENDOR = auth("vendor-a", "vendor")
ORACLE = auth("oracle-1", "oracle")
ADMIN = auth("admin-1", "admin")


@pytest.fixture
async def client(session_factory):
    from main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
async def funded_zone(client):
    created = await client.post("/zones", headers=GOV, json={
        "name": "Kerala Floods",
        "geo": {"latitude": 10.85, "longitude": 76.27, "radius_km": 80},
        "budget_allocated": 5000,
        "severity": "high",
    })
    assert created.status_code == 201
    zone = created.json()
    donated = await client.post(f"/zones/{zone['id']}/donations", headers=DONOR, json={"amount": 1000})
    assert donated.status_code == 201
    return zone


class TestStatus:
    """Root and health endpoints."""

    async def test_root(self, client):
        response = await client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "operational"

    async def test_health_check(self, client):
        body = (await client.get("/health-check")).json()
        assert body["crypto"] == "ok"


class TestSession:
    """Token issuance and authentication errors."""

    async def test_issue_token(self, client):
        response = await client.post("/session/token", json={"subject": "vendor-a", "role": "vendor"})
        assert response.status_code == 201
        token = response.json()["access_token"]
        me = await client.get("/session/me", headers={"Authorization": f"Bearer {token}"})
        assert me.json() == {"subject": "vendor-a", "role": "vendor"}

    async def test_unknown_role(self, client):
        response = await client.post("/session/token", json={"subject": "x", "role": "superuser"})
        assert response.status_code == 403

    async def test_missing_token(self, client):
        response = await client.post("/zones", json={})
        assert response.status_code == 401
        assert response.json()["detail"]["error"] == "authentication_required"

    async def test_bad_token(self, client):
        response = await client.get("/session/me", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401


class TestLifecycle:
    """Donate → issue → redeem → prove → verify → pay out."""

    async def test_full_lifecycle(self, client, funded_zone):
        zone_id = funded_zone["id"]

        issued = await client.post("/vouchers", headers=GOV, json={
            "zone_id": zone_id, "beneficiary_ref": "BEN-1001", "amount": 150, "category": "food",
        })
        assert issued.status_code == 201
        voucher = issued.json()
        assert voucher["status"] == "Active"

        mine = (await client.get("/vouchers/mine", headers=VICTIM)).json()
        assert [v["id"] for v in mine] == [voucher["id"]]

        token = (await client.get(f"/vouchers/{voucher['id']}/token", headers=VICTIM)).json()
        resolved = await client.post("/vouchers/resolve-token", headers=VENDOR, json={"code": token["code"]})
        assert resolved.json()["id"] == voucher["id"]

        redeemed = await client.post(
            "/redemptions", headers={**VENDOR, "Idempotency-Key": "pos-42"},
            json={"voucher_code": token["code"], "amount": 100},
        )
        assert redeemed.status_code == 201
        tx = redeemed.json()
        assert tx["voucher_remaining_balance"] == 50.0

        replay = await client.post(
            "/redemptions", headers={**VENDOR, "Idempotency-Key": "pos-42"},
            json={"voucher_id": voucher["id"], "amount": 100},
        )
        assert replay.status_code == 200
        assert replay.json()["id"] == tx["id"]

        too_much = await client.post("/redemptions", headers=VENDOR, json={
            "voucher_id": voucher["id"], "amount": 80, "idempotency_key": "pos-43",
        })
        assert too_much.status_code == 409
        assert too_much.json()["detail"]["error"] == "insufficient_voucher_balance"

        proof = await client.post("/proofs", headers=VENDOR, json={
            "transaction_id": tx["id"],
            "media_refs": ["ipfs://bafy-photo"],
            "description": "Food kits handed over",
            "location": {"latitude": 10.9, "longitude": 76.3},
        })
        assert proof.status_code == 201
        proof_id = proof.json()["id"]

        first = await client.post(f"/proofs/{proof_id}/verifications", headers=ORACLE,
                                  json={"decision": "approve", "confidence": 90})
        assert first.json()["proof_status"] == "Submitted"
        second = await client.post(f"/proofs/{proof_id}/verifications", headers=GOV,
                                   json={"decision": "approve", "confidence": 80})
        assert second.json()["proof_status"] == "Verified"

        report = (await client.get(f"/reports/zones/{zone_id}", headers=GOV)).json()
        assert report["budget_used"] == 100.0

        payout = await client.post(
            "/payouts", headers=GOV,
            data={"zone_id": zone_id, "vendor_refs": "vendor-a", "description": "Week 1"},
            files={"recipients": ("payout.csv", b"vendorRef,amount,referenceNote\nvendor-a,100,INV-1\n", "text/csv")},
        )
        assert payout.status_code == 201
        assert payout.json()["total_amount"] == 100.0

        audit = (await client.get("/audit", headers=GOV, params={"zone_id": zone_id})).json()
        assert "BULK_PAYOUT_CREATED" in {row["action"] for row in audit}


class TestErrorsOverHttp:
    """Domain errors map to stable status codes and payloads."""

    async def test_vendor_cannot_create_zone(self, client):
        response = await client.post("/zones", headers=VENDOR, json={
            "name": "x", "geo": {"latitude": 1, "longitude": 1, "radius_km": 1}, "budget_allocated": 1,
        })
        assert response.status_code == 403
        assert response.json()["detail"]["error"] == "permission_denied"

    async def test_insufficient_zone_balance(self, client, funded_zone):
        response = await client.post("/vouchers", headers=GOV, json={
            "zone_id": funded_zone["id"], "beneficiary_ref": "BEN-1", "amount": 1500, "category": "shelter",
        })
        assert response.status_code == 409
        assert response.json()["detail"]["retryable"] is True

    async def test_out_of_range_amounts(self, client, funded_zone):
        zone = await client.post("/zones", headers=GOV, json={
            "name": "x", "geo": {"latitude": 1, "longitude": 1, "radius_km": 1}, "budget_allocated": 1e30,
        })
        assert zone.status_code == 422
        assert zone.json()["detail"]["error"] == "invalid_zone_parameters"

        donation = await client.post(f"/zones/{funded_zone['id']}/donations", headers=DONOR, json={"amount": "1e30"})
        assert donation.status_code == 422
        assert donation.json()["detail"]["error"] == "invalid_amount"

    async def test_unknown_zone(self, client):
        response = await client.get("/zones/does-not-exist")
        assert response.status_code == 404

    async def test_redeem_needs_voucher(self, client):
        response = await client.post("/redemptions", headers=VENDOR, json={"amount": 5, "idempotency_key": "k"})
        assert response.status_code == 422

    async def test_bad_payout_file(self, client, funded_zone):
        response = await client.post(
            "/payouts", headers=GOV,
            data={"zone_id": funded_zone["id"], "vendor_refs": "vendor-a"},
            files={"recipients": ("payout.csv", b"vendorRef,amount\nvendor-a,-1\n", "text/csv")},
        )
        assert response.status_code == 422
        assert response.json()["detail"]["row_indices"] == [1]

    async def test_victim_cannot_list_all_vouchers(self, client):
        response = await client.get("/vouchers", headers=VICTIM)
        assert response.status_code == 403
