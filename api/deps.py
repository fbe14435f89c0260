"""
api/deps.py — Request Dependencies
===================================
get_caller() turns the bearer token into a Caller(subject, role).
Every mutating route depends on it; the role check itself happens in the
module layer (core/permissions.py) so it also guards non-HTTP callers.
"""

from typing import Optional
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from core.crypto import crypto_engine
from core.errors import AuthenticationRequired
from core.permissions import Caller, parse_role

bearer_scheme = HTTPBearer(auto_error=False)


async def get_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Caller:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthenticationRequired()
    claims = crypto_engine.verify_token(credentials.credentials)
    role = parse_role(claims["role"])
    return Caller(subject=claims["sub"], role=role.value)
