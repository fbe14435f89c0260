"""
config.py — AidLedger Global Configuration
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import List


class Settings(BaseSettings):

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # App
    APP_NAME: str = "AidLedger"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # API Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
    ]

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./aidledger.db"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    # Ledger anchor
    LEDGER_BACKEND: str = "simulation"
    WEB3_PROVIDER_URL: str = "http://127.0.0.1:8545"
    CHAIN_ID: int = 43113
    DEPLOYER_PRIVATE_KEY: str = ""

    # Cryptography
    ENCRYPTION_KEY: str = ""
    JWT_SECRET_KEY: str = "change-me-in-production"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRY_MINUTES: int = 60
    VOUCHER_SIGNING_KEY: str = "change-me-too"

    # Vouchers & zones
    DEFAULT_VOUCHER_TTL_DAYS: int = 30
    MAX_VOUCHER_TTL_DAYS: int = 365
    MAX_ZONE_RADIUS_KM: float = 1000.0

    # Verification quorum
    VERIFICATION_QUORUM_ROLES: List[str] = ["oracle", "government"]
    VERIFICATION_MIN_CONFIDENCE: int = 0
    SINGLE_APPROVER_CATEGORIES: List[str] = []
    PROOF_VERIFICATION_SLA_HOURS: int = 72

    # Concurrency / batches
    MAX_COMMIT_RETRIES: int = 3
    MAX_PAYOUT_ROWS: int = 5000

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "aidledger.log"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
