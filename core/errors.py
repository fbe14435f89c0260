"""
core/errors.py — Error Taxonomy
================================
Every ledger failure is an HTTPException subclass, so route handlers let them
propagate untouched and FastAPI renders them as:

    {"detail": {"error": "<code>", "message": "...", ...extra}}

Groups:
    validation      → 422   malformed input, never partially applied
    authorization   → 401 / 403, raised before any state is touched
    not found       → 404
    state conflict  → 409   entity is in the wrong lifecycle state
    balance conflict→ 409   discovered at commit time, carries retryable=True
"""

from fastapi import HTTPException, status


class AidLedgerError(HTTPException):
    code = "aidledger_error"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Request could not be processed."
    retryable = False

    def __init__(self, message: str = None, **extra):
        self.message = message or self.default_message
        self.extra = extra
        detail = {"error": self.code, "message": self.message}
        if self.retryable:
            detail["retryable"] = True
        detail.update(extra)
        super().__init__(status_code=self.status_code, detail=detail)

    def __str__(self):
        return f"{self.code}: {self.message}"


# ── Validation ────────────────────────────────────────────────────────────────
class ValidationFailed(AidLedgerError):
    code = "validation_failed"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class InvalidZoneParameters(ValidationFailed):
    code = "invalid_zone_parameters"
    default_message = "Zone parameters are invalid."


class InvalidAmount(ValidationFailed):
    code = "invalid_amount"
    default_message = "Amount must be a positive value with at most two decimal places."


class InvalidVoucherParameters(ValidationFailed):
    code = "invalid_voucher_parameters"
    default_message = "Voucher parameters are invalid."


class InvalidVoucherToken(ValidationFailed):
    code = "invalid_voucher_token"
    default_message = "Voucher token is malformed or its signature does not match."


class InvalidProof(ValidationFailed):
    code = "invalid_proof"
    default_message = "Proof of aid is incomplete."


class InvalidVerification(ValidationFailed):
    code = "invalid_verification"
    default_message = "Verification decision is invalid."


class IdempotencyKeyReused(ValidationFailed):
    code = "idempotency_key_reused"
    default_message = "Idempotency key was already used for a different redemption."


class BulkPayoutValidationFailed(ValidationFailed):
    code = "bulk_payout_validation_failed"
    default_message = "Bulk payout rejected; no rows were applied."


# ── Authorization ─────────────────────────────────────────────────────────────
class AuthenticationRequired(AidLedgerError):
    code = "authentication_required"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "A valid bearer token is required."

    def __init__(self, message: str = None, **extra):
        super().__init__(message, **extra)
        self.headers = {"WWW-Authenticate": "Bearer"}


class PermissionDenied(AidLedgerError):
    code = "permission_denied"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Caller role is not permitted to perform this operation."


class VendorNotAuthorized(PermissionDenied):
    code = "vendor_not_authorized"
    default_message = "Vendor is not allowed to redeem this voucher."


# ── Not found ─────────────────────────────────────────────────────────────────
class NotFound(AidLedgerError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class ZoneNotFound(NotFound):
    code = "zone_not_found"
    default_message = "Disaster zone not found."


class VoucherNotFound(NotFound):
    code = "voucher_not_found"
    default_message = "Voucher not found."


class TransactionNotFound(NotFound):
    code = "transaction_not_found"
    default_message = "Redemption transaction not found."


class ProofNotFound(NotFound):
    code = "proof_not_found"
    default_message = "Proof of aid not found."


# ── State conflicts ───────────────────────────────────────────────────────────
class StateConflict(AidLedgerError):
    code = "state_conflict"
    status_code = status.HTTP_409_CONFLICT


class ZoneNotActive(StateConflict):
    code = "zone_not_active"
    default_message = "Disaster zone is not active."


class ZoneAlreadyResolved(StateConflict):
    code = "zone_already_resolved"
    default_message = "Disaster zone is already resolved."


class VoucherExpired(StateConflict):
    code = "voucher_expired"
    default_message = "Voucher has expired."


class VoucherRevoked(StateConflict):
    code = "voucher_revoked"
    default_message = "Voucher has been revoked."


class VoucherRedeemed(StateConflict):
    code = "voucher_redeemed"
    default_message = "Voucher is fully redeemed."


class VoucherNotRevocable(StateConflict):
    code = "voucher_not_revocable"
    default_message = "Voucher is already in a terminal state."


class TransactionNotEligible(StateConflict):
    code = "transaction_not_eligible"
    default_message = "Only completed redemptions can carry a proof of aid."


class ProofAlreadySubmitted(StateConflict):
    code = "proof_already_submitted"
    default_message = "A proof of aid was already submitted for this transaction."


class ProofAlreadyVerified(StateConflict):
    code = "proof_already_verified"
    default_message = "Proof is already verified; decisions are final."


# ── Balance / concurrency conflicts ───────────────────────────────────────────
class BalanceConflict(StateConflict):
    code = "balance_conflict"
    retryable = True


class InsufficientZoneBalance(BalanceConflict):
    code = "insufficient_zone_balance"
    default_message = "Zone does not have enough available balance."


class InsufficientVoucherBalance(BalanceConflict):
    code = "insufficient_voucher_balance"
    default_message = "Voucher does not have enough remaining balance."


class BudgetExceeded(BalanceConflict):
    code = "budget_exceeded"
    default_message = "Verified spend would exceed the zone's allocated budget."


class ConcurrentUpdateConflict(BalanceConflict):
    code = "concurrent_update_conflict"
    default_message = "The record was modified concurrently; retry the request."
