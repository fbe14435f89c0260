"""
core/permissions.py — Role & Permission Gate
=============================================
The security gate. Called by EVERY ledger operation before any state is read
for mutation. If this says NO, nothing is touched.

Roles come from an explicit signed claim (see core/crypto.py); they are never
inferred from wallet addresses or request shape.
"""

import enum
import logging
from dataclasses import dataclass

from core.errors import PermissionDenied

logger = logging.getLogger("aidledger.permissions")


class Role(str, enum.Enum):
    DONOR = "donor"
    VICTIM = "victim"
    VENDOR = "vendor"
    GOVERNMENT = "government"
    ORACLE = "oracle"
    TREASURY = "treasury"
    ADMIN = "admin"


VERIFIER_ROLES = {Role.ORACLE.value, Role.GOVERNMENT.value}

# operation → roles allowed to call it
PERMISSIONS = {
    "create_zone":         {Role.GOVERNMENT, Role.ADMIN},
    "resolve_zone":        {Role.GOVERNMENT, Role.ADMIN},
    "record_donation":     {Role.DONOR, Role.TREASURY, Role.ADMIN},
    "issue_voucher":       {Role.GOVERNMENT, Role.ADMIN},
    "revoke_voucher":      {Role.ADMIN},
    "redeem":              {Role.VENDOR},
    "submit_proof":        {Role.VENDOR, Role.ADMIN},
    "submit_verification": {Role.ORACLE, Role.GOVERNMENT},
    "create_bulk_payout":  {Role.GOVERNMENT, Role.ADMIN},
    "view_reports":        {Role.GOVERNMENT, Role.TREASURY, Role.ADMIN, Role.ORACLE},
    "view_audit":          {Role.GOVERNMENT, Role.TREASURY, Role.ADMIN},
}


@dataclass(frozen=True)
class Caller:
    """Authenticated caller: who (subject) and in what capacity (role)."""
    subject: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value


def parse_role(value: str) -> Role:
    try:
        return Role(value.lower())
    except (ValueError, AttributeError):
        raise PermissionDenied(f"Unknown role '{value}'.")


def check_permission(caller: Caller, operation: str) -> bool:
    """Returns True if the caller's role may perform the operation."""
    allowed = PERMISSIONS.get(operation)
    if allowed is None:
        raise KeyError(f"No permission entry for operation '{operation}'")
    return caller.role in {r.value for r in allowed}


def require_permission(caller: Caller, operation: str):
    """
    Same as check_permission but raises PermissionDenied (HTTP 403).
    Use this as the first line of every ledger operation:

        require_permission(caller, "redeem")
    """
    if not check_permission(caller, operation):
        logger.warning(f"DENIED: {caller.role}:{caller.subject} → {operation}")
        raise PermissionDenied(
            f"Role '{caller.role}' may not perform '{operation}'.",
            operation=operation,
            role=caller.role,
        )
