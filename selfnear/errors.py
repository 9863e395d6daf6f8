"""
Verification error taxonomy.

One closed set of codes shared by the parser, the signature verifier, the
orchestrator and the HTTP layer. The strings are part of the public API and
must not change.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class VerificationErrorCode(str, Enum):
    """Structured error codes"""

    MISSING_FIELDS = "MISSING_FIELDS"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    MINIMUM_AGE_NOT_MET = "MINIMUM_AGE_NOT_MET"
    OFAC_CHECK_FAILED = "OFAC_CHECK_FAILED"
    NULLIFIER_MISSING = "NULLIFIER_MISSING"
    NEAR_SIGNATURE_INVALID = "NEAR_SIGNATURE_INVALID"
    NEAR_SIGNATURE_MISSING = "NEAR_SIGNATURE_MISSING"
    SIGNATURE_EXPIRED = "SIGNATURE_EXPIRED"
    SIGNATURE_TIMESTAMP_INVALID = "SIGNATURE_TIMESTAMP_INVALID"
    DUPLICATE_IDENTITY = "DUPLICATE_IDENTITY"
    DUPLICATE_PASSPORT = "DUPLICATE_IDENTITY"  # legacy name
    ACCOUNT_ALREADY_VERIFIED = "ACCOUNT_ALREADY_VERIFIED"
    NONCE_ALREADY_USED = "NONCE_ALREADY_USED"
    CONTRACT_PAUSED = "CONTRACT_PAUSED"
    NOT_FOUND = "NOT_FOUND"
    STORAGE_FAILED = "STORAGE_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorCategory(str, Enum):
    RETRYABLE = "retryable"
    NON_RETRYABLE = "non-retryable"
    INTERNAL = "internal"


@dataclass(frozen=True)
class ErrorDefinition:
    title: str
    description: str
    category: ErrorCategory
    api_message: str
    http_status: int


_GENERIC_DESCRIPTION = "Something went wrong on our end. Please try again, or contact support if the issue persists."

ERROR_DEFINITIONS: Dict[VerificationErrorCode, ErrorDefinition] = {
    VerificationErrorCode.MISSING_FIELDS: ErrorDefinition(
        "Invalid Request",
        "The verification request was incomplete. Please restart verification.",
        ErrorCategory.NON_RETRYABLE,
        "Missing or invalid required fields",
        400,
    ),
    VerificationErrorCode.VERIFICATION_FAILED: ErrorDefinition(
        "Verification Failed",
        "Your passport proof could not be verified. Please try again.",
        ErrorCategory.RETRYABLE,
        "Passport proof verification failed",
        400,
    ),
    VerificationErrorCode.MINIMUM_AGE_NOT_MET: ErrorDefinition(
        "Age Requirement Not Met",
        "You must meet the minimum age requirement to verify.",
        ErrorCategory.NON_RETRYABLE,
        "Minimum age requirement not met",
        400,
    ),
    VerificationErrorCode.OFAC_CHECK_FAILED: ErrorDefinition(
        "Verification Failed",
        "This identity could not pass sanctions screening.",
        ErrorCategory.NON_RETRYABLE,
        "OFAC verification failed",
        400,
    ),
    VerificationErrorCode.NULLIFIER_MISSING: ErrorDefinition(
        "Verification Failed",
        "The proof did not include a unique identity marker. Please try again.",
        ErrorCategory.RETRYABLE,
        "Nullifier missing from proof",
        400,
    ),
    VerificationErrorCode.NEAR_SIGNATURE_INVALID: ErrorDefinition(
        "Signature Verification Failed",
        "We couldn't verify your wallet signature. Please try signing the message again.",
        ErrorCategory.RETRYABLE,
        "NEAR signature verification failed",
        400,
    ),
    VerificationErrorCode.NEAR_SIGNATURE_MISSING: ErrorDefinition(
        "Signature Missing",
        "Your wallet signature was not attached to the proof. Please sign again.",
        ErrorCategory.RETRYABLE,
        "NEAR signature missing from user data",
        400,
    ),
    VerificationErrorCode.SIGNATURE_EXPIRED: ErrorDefinition(
        "Signature Expired",
        "Your signature has expired. Please sign a new message to continue.",
        ErrorCategory.RETRYABLE,
        "Signature expired",
        400,
    ),
    VerificationErrorCode.SIGNATURE_TIMESTAMP_INVALID: ErrorDefinition(
        "Signature Expired",
        "Your signature has expired. Please sign a new message to continue.",
        ErrorCategory.RETRYABLE,
        "Invalid signature timestamp",
        400,
    ),
    VerificationErrorCode.DUPLICATE_IDENTITY: ErrorDefinition(
        "Already Verified",
        "This identity has already been used to verify another NEAR account. "
        "Each person can only verify one account.",
        ErrorCategory.NON_RETRYABLE,
        "This identity has already been registered",
        409,
    ),
    VerificationErrorCode.ACCOUNT_ALREADY_VERIFIED: ErrorDefinition(
        "Account Already Verified",
        "This NEAR account is already verified. Connect a different account to continue.",
        ErrorCategory.NON_RETRYABLE,
        "This NEAR account is already verified",
        409,
    ),
    VerificationErrorCode.NONCE_ALREADY_USED: ErrorDefinition(
        "Signature Already Used",
        "This signature has already been used. Please sign a new message to continue.",
        ErrorCategory.RETRYABLE,
        "Signature nonce already used",
        409,
    ),
    VerificationErrorCode.CONTRACT_PAUSED: ErrorDefinition(
        "Verification Unavailable",
        "Verification is temporarily unavailable. Please try again later.",
        ErrorCategory.NON_RETRYABLE,
        "Verification is temporarily unavailable",
        503,
    ),
    VerificationErrorCode.NOT_FOUND: ErrorDefinition(
        "Not Verified",
        "No verification was found for this account.",
        ErrorCategory.NON_RETRYABLE,
        "Account not found",
        404,
    ),
    VerificationErrorCode.STORAGE_FAILED: ErrorDefinition(
        "Something Went Wrong",
        _GENERIC_DESCRIPTION,
        ErrorCategory.INTERNAL,
        "Failed to store verification",
        500,
    ),
    VerificationErrorCode.INTERNAL_ERROR: ErrorDefinition(
        "Something Went Wrong",
        _GENERIC_DESCRIPTION,
        ErrorCategory.INTERNAL,
        "Internal server error",
        500,
    ),
}

_missing = [code for code in VerificationErrorCode if code not in ERROR_DEFINITIONS]
if _missing:  # pragma: no cover - guarded at import
    raise RuntimeError(f"Error codes without definitions: {_missing}")


class VerificationError(Exception):
    """Base exception for verification operations"""

    def __init__(self, code: VerificationErrorCode, details: Optional[str] = None):
        self.code = VerificationErrorCode(code)
        self.details = details
        super().__init__(self.reason)

    @property
    def definition(self) -> ErrorDefinition:
        return ERROR_DEFINITIONS[self.code]

    @property
    def reason(self) -> str:
        api_message = ERROR_DEFINITIONS[self.code].api_message
        return f"{api_message}: {self.details}" if self.details else api_message

    @property
    def http_status(self) -> int:
        return self.definition.http_status

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to JSON-serializable dict"""
        return create_verification_error(self.code, self.details)


class ContractError(VerificationError):
    """Failure reported by the on-chain verification contract."""


def create_verification_error(code: VerificationErrorCode, details: Optional[str] = None) -> Dict[str, Any]:
    """Create a typed verification error response body."""
    code = VerificationErrorCode(code)
    api_message = ERROR_DEFINITIONS[code].api_message
    return {
        "status": "error",
        "result": False,
        "code": code.value,
        "reason": f"{api_message}: {details}" if details else api_message,
    }


def is_non_retryable(code: Optional[str]) -> bool:
    """Return True if the user cannot fix this error by trying again."""
    try:
        resolved = VerificationErrorCode(code)
    except ValueError:
        return False
    return ERROR_DEFINITIONS[resolved].category is ErrorCategory.NON_RETRYABLE


def http_status_for(code: VerificationErrorCode) -> int:
    return ERROR_DEFINITIONS[VerificationErrorCode(code)].http_status


def map_contract_error_to_code(message: str) -> Optional[VerificationErrorCode]:
    """
    Map contract panic text to an error code.

    Returns None for unknown errors so callers can treat them as transient.
    """
    text = (message or "").lower()

    if "already registered" in text or "nullifier already used" in text or "applicant already used" in text:
        return VerificationErrorCode.DUPLICATE_IDENTITY
    if "near account already verified" in text or "account already verified" in text:
        return VerificationErrorCode.ACCOUNT_ALREADY_VERIFIED
    if "contract is paused" in text:
        return VerificationErrorCode.CONTRACT_PAUSED
    if "signature already used" in text:
        return VerificationErrorCode.NONCE_ALREADY_USED
    if "invalid near signature" in text or "signature account id" in text or "signature recipient" in text:
        return VerificationErrorCode.NEAR_SIGNATURE_INVALID
    return None


class ZkVerifierUnavailable(Exception):
    """The passport proof verifier could not be reached or answered garbage."""
