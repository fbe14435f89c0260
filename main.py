"""
main.py — AidLedger Entry Point
================================
Starts the disaster-relief aid ledger:
    1. Creates the FastAPI app
    2. Creates database tables
    3. Connects the ledger anchor backend
    4. Registers all API route modules

Run with:
    uvicorn main:app --reload --host 0.0.0.0 --port 8000
"""

import logging
import uvicorn
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings

# ── Database ──────────────────────────────────────────────────────────────────
from db.session import init_db

# ── Core systems ──────────────────────────────────────────────────────────────
from core.ledger import ledger
from core.crypto import crypto_engine

# ── API Routers ───────────────────────────────────────────────────────────────
from api.routes_session import router as session_router
from api.routes_zones import router as zones_router
from api.routes_vouchers import router as vouchers_router
from api.routes_redemptions import router as redemptions_router
from api.routes_proofs import router as proofs_router
from api.routes_reports import audit_router, payouts_router, reports_router


# ── Logging setup ─────────────────────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler(settings.LOG_FILE),
    ],
)
logger = logging.getLogger("aidledger.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION} ({settings.ENVIRONMENT})")

    await init_db()
    logger.info("✓ Database ready")

    await ledger.connect()
    logger.info(f"✓ Ledger connected — backend: {settings.LEDGER_BACKEND}")

    crypto_engine.initialize()
    logger.info("✓ Crypto engine ready")

    yield

    logger.info("Shutting down — closing connections...")
    await ledger.disconnect()
    logger.info("✓ Shutdown complete")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Disaster-relief aid distribution ledger: zones, vouchers, redemptions, proof of aid",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Register all routers ──────────────────────────────────────────────────────
app.include_router(session_router,     prefix="/session",     tags=["Session"])
app.include_router(zones_router,       prefix="/zones",       tags=["Zones & Donations"])
app.include_router(vouchers_router,    prefix="/vouchers",    tags=["Vouchers"])
app.include_router(redemptions_router, prefix="/redemptions", tags=["Redemptions"])
app.include_router(proofs_router,      prefix="/proofs",      tags=["Proof of Aid"])
app.include_router(payouts_router,     prefix="/payouts",     tags=["Payouts"])
app.include_router(reports_router,     prefix="/reports",     tags=["Reports"])
app.include_router(audit_router,       prefix="/audit",       tags=["Audit"])


@app.get("/", tags=["Status"])
async def root():
    return {
        "system": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "operational",
        "ledger": settings.LEDGER_BACKEND,
        "docs": "/docs",
    }


@app.get("/health-check", tags=["Status"])
async def health_check():
    """Deep health check — confirms the ledger anchor and crypto engine are up."""
    return {
        "api": "ok",
        "database": "ok",
        "ledger": await ledger.ping(),
        "ledger_intact": await ledger.verify_chain() if hasattr(ledger, "verify_chain") else None,
        "crypto": crypto_engine.is_ready(),
    }


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
