"""
core/crypto.py — Cryptography Engine
======================================
Central place for ALL encryption, hashing and signing.
Every module imports from here — never roll your own crypto elsewhere.

Provides:
- Fernet encryption / decryption   (beneficiary references at rest)
- SHA-3 hashing                    (beneficiary lookup hashes, audit payloads)
- JWT session tokens               (role claims for the API boundary)
- Voucher presentation tokens      (HMAC-SHA3 signed, QR-friendly)
"""

import base64
import hashlib
import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from jose import JWTError, jwt
from config import settings
from core.errors import AuthenticationRequired, InvalidVoucherToken

logger = logging.getLogger("aidledger.crypto")

TOKEN_PREFIX = "AIDV1"


class CryptoEngine:
    """
    Singleton crypto engine — initialized once in main.py,
    then used across all modules via:  from core.crypto import crypto_engine
    """

    def __init__(self):
        self._fernet: Optional[Fernet] = None
        self._ready = False

    def initialize(self, key: str = None):
        """Called once on app startup (main.py lifespan)."""
        key = key or settings.ENCRYPTION_KEY
        if not key:
            raise ValueError(
                "ENCRYPTION_KEY is not set in .env! "
                "Generate one with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
            )
        self._fernet = Fernet(key.encode())
        self._ready = True
        logger.info("Crypto engine initialized.")

    def is_ready(self) -> str:
        return "ok" if self._ready else "not initialized"

    # ── Encryption ─────────────────────────────────────────────────────────
    def encrypt(self, plaintext: str) -> str:
        if not self._ready:
            raise RuntimeError("CryptoEngine not initialized. Call initialize() first.")
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        if not self._ready:
            raise RuntimeError("CryptoEngine not initialized.")
        return self._fernet.decrypt(ciphertext.encode()).decode()

    # ── Hashing ────────────────────────────────────────────────────────────
    def hash_sha3(self, data: str) -> str:
        return hashlib.sha3_256(data.encode()).hexdigest()

    def hash_beneficiary(self, beneficiary_ref: str) -> str:
        """Salted lookup hash — lets a victim find their vouchers without storing the ref in clear."""
        return self.hash_sha3(beneficiary_ref.strip() + settings.JWT_SECRET_KEY)

    # ── JWT Sessions ───────────────────────────────────────────────────────
    def create_access_token(self, subject: str, role: str, expires_minutes: int = None) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": subject,
            "role": role,
            "iat": now,
            "exp": now + timedelta(minutes=expires_minutes or settings.JWT_EXPIRY_MINUTES),
        }
        return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

    def verify_token(self, token: str) -> dict:
        """Verify and decode a JWT. Raises AuthenticationRequired if invalid/expired."""
        try:
            claims = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
        except JWTError as exc:
            raise AuthenticationRequired(f"Invalid session token: {exc}")
        if not claims.get("sub") or not claims.get("role"):
            raise AuthenticationRequired("Session token is missing 'sub' or 'role'.")
        return claims

    # ── Voucher presentation tokens ────────────────────────────────────────
    def sign_voucher(self, voucher_id: str) -> str:
        return hmac.new(
            settings.VOUCHER_SIGNING_KEY.encode(), voucher_id.encode(), hashlib.sha3_256
        ).hexdigest()

    def voucher_token(self, voucher_id: str) -> dict:
        """
        Display payload for a voucher (what a QR code would carry).
        The ledger only ever uses voucher_id; the signature lets a scanner
        reject forged codes before calling redeem.
        """
        signature = self.sign_voucher(voucher_id)
        raw = f"{TOKEN_PREFIX}:{voucher_id}:{signature}".encode()
        return {
            "voucher_id": voucher_id,
            "signature": signature,
            "code": base64.urlsafe_b64encode(raw).decode().rstrip("="),
        }

    def resolve_voucher_token(self, code: str) -> str:
        """Decode a presentation code back to its voucher id, checking the signature."""
        try:
            padded = code + "=" * (-len(code) % 4)
            prefix, voucher_id, signature = base64.urlsafe_b64decode(padded).decode().split(":")
        except (ValueError, UnicodeDecodeError):
            raise InvalidVoucherToken()
        if prefix != TOKEN_PREFIX or not hmac.compare_digest(signature, self.sign_voucher(voucher_id)):
            raise InvalidVoucherToken()
        return voucher_id

    def safe_decrypt(self, ciphertext: str) -> Optional[str]:
        """Decrypt or return None when the key rotated underneath the record."""
        try:
            return self.decrypt(ciphertext)
        except InvalidToken:
            logger.warning("Could not decrypt record with the current ENCRYPTION_KEY")
            return None


# Singleton instance — import this everywhere
crypto_engine = CryptoEngine()
