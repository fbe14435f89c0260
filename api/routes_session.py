"""
api/routes_session.py — Session Endpoints

Endpoints:
    POST /session/token   → Issue a role token (non-production only)
    GET  /session/me      → Echo the caller's subject and role

In production, tokens are minted by the identity provider that authenticated
the wallet/user; this service only verifies them.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from api.deps import get_caller
from config import settings
from core.crypto import crypto_engine
from core.errors import PermissionDenied
from core.permissions import Caller, parse_role

router = APIRouter()


class TokenRequest(BaseModel):
    subject: str            # wallet address, vendor id, agency id ...
    role: str               # donor | victim | vendor | government | oracle | treasury | admin


@router.post("/token", status_code=201)
async def issue_token(body: TokenRequest):
    if settings.ENVIRONMENT == "production":
        raise PermissionDenied("Token issuance is disabled in production.")
    role = parse_role(body.role)
    return {
        "access_token": crypto_engine.create_access_token(body.subject, role.value),
        "token_type": "bearer",
        "role": role.value,
        "expires_in_minutes": settings.JWT_EXPIRY_MINUTES,
    }


@router.get("/me")
async def whoami(caller: Caller = Depends(get_caller)):
    return {"subject": caller.subject, "role": caller.role}
