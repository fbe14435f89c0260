"""
Pytest configuration and fixtures for AidLedger tests.

Each test gets its own SQLite file under tmp_path; the app settings are
pointed at throwaway keys before any application module is imported.
"""

import os
import tempfile

from cryptography.fernet import Fernet

os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("LOG_FILE", os.path.join(tempfile.gettempdir(), "aidledger-test.log"))
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.crypto import crypto_engine
from core.permissions import Caller
from db.session import build_engine, init_db
from modules.donations import record_donation
from modules.redemptions import redeem
from modules.verification import submit_proof, submit_verification
from modules.vouchers import issue_voucher
from modules.zones import create_zone


@pytest.fixture(autouse=True, scope="session")
def crypto_ready():
    crypto_engine.initialize()
    return crypto_engine


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'aidledger-test.db'}")
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ── Callers ───────────────────────────────────────────────────────────────────
@pytest.fixture
def government():
    return Caller(subject="gov-ndma", role="government")


@pytest.fixture
def admin():
    return Caller(subject="admin-1", role="admin")


@pytest.fixture
def donor():
    return Caller(subject="0xdonor01", role="donor")


@pytest.fixture
def treasury():
    return Caller(subject="treasury-1", role="treasury")


@pytest.fixture
def victim():
    return Caller(subject="BEN-1001", role="victim")


@pytest.fixture
def vendor_a():
    return Caller(subject="vendor-a", role="vendor")


@pytest.fixture
def vendor_b():
    return Caller(subject="vendor-b", role="vendor")


@pytest.fixture
def oracle():
    return Caller(subject="oracle-1", role="oracle")


# ── Builders ──────────────────────────────────────────────────────────────────
@pytest.fixture
def make_zone(db, government, donor):
    """Create a zone centred on Chennai and optionally fund it."""
    async def _make(budget="1000.00", donated="1000.00", **kwargs):
        zone = await create_zone(
            db, government,
            name=kwargs.pop("name", "Chennai Floods"),
            latitude=kwargs.pop("latitude", 13.0827),
            longitude=kwargs.pop("longitude", 80.2707),
            radius_km=kwargs.pop("radius_km", 50),
            budget_allocated=budget,
            **kwargs,
        )
        if donated:
            await record_donation(db, donor, zone["id"], donor.subject, donated)
        return zone
    return _make


@pytest.fixture
def make_voucher(db, government, victim, make_zone):
    async def _make(amount="150.00", zone=None, **kwargs):
        zone = zone or await make_zone()
        return await issue_voucher(
            db, government,
            zone_id=zone["id"],
            beneficiary_ref=kwargs.pop("beneficiary_ref", victim.subject),
            amount=amount,
            category=kwargs.pop("category", "food"),
            **kwargs,
        )
    return _make


@pytest.fixture
def verified_redemption(db, vendor_a, oracle, government, make_voucher):
    """Redeem from a fresh voucher and push its proof through both verifiers."""
    async def _make(amount="100.00", vendor=None, voucher=None, key="verified-1"):
        vendor = vendor or vendor_a
        voucher = voucher or await make_voucher()
        tx = await redeem(db, vendor, voucher["id"], vendor.subject, amount, key)
        proof = await submit_proof(db, vendor, tx["id"], ["ipfs://bafy-delivery-photo"], "Rice sacks delivered")
        await submit_verification(db, oracle, proof["id"], "approve", 90)
        await submit_verification(db, government, proof["id"], "approve", 80)
        return tx
    return _make
