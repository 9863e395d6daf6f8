"""
NEAR wallet signature verification.

Checks that an Ed25519 signature produced by a NEAR wallet's NEP-413
``signMessage`` covers a given challenge. Every public function here is
total: malformed input yields ``SignatureCheck(valid=False, error=...)``,
never an exception.
"""

from __future__ import annotations

import base64
import binascii
import time
from dataclasses import dataclass
from typing import Optional

import base58
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from selfnear.errors import VerificationErrorCode
from selfnear.nep413 import NONCE_LENGTH, compute_hash

ED25519_PREFIX = "ed25519:"
PUBLIC_KEY_LENGTH = 32
SIGNATURE_LENGTH = 64


@dataclass(frozen=True)
class SignatureCheck:
    valid: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class FreshnessCheck:
    valid: bool
    code: Optional[VerificationErrorCode] = None
    error: Optional[str] = None


def parse_near_public_key(public_key: str) -> bytes:
    """
    Decode ``ed25519:<base58>`` into the raw 32-byte key.

    Raises:
        ValueError: Unsupported curve, bad base58, or wrong key length
    """
    if not isinstance(public_key, str) or not public_key.startswith(ED25519_PREFIX):
        raise ValueError("Only ed25519 public keys are supported")
    try:
        raw = base58.b58decode(public_key[len(ED25519_PREFIX) :])
    except ValueError as exc:
        raise ValueError(f"Invalid base58 public key: {exc}") from exc
    if len(raw) != PUBLIC_KEY_LENGTH:
        raise ValueError(f"Invalid public key length: expected {PUBLIC_KEY_LENGTH} bytes, got {len(raw)}")
    return raw


def decode_signature(signature_b64: str) -> bytes:
    """Decode a base64 signature and require exactly 64 bytes."""
    if not isinstance(signature_b64, str) or not signature_b64:
        raise ValueError("Signature is empty")
    try:
        raw = base64.b64decode(signature_b64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Invalid base64 signature: {exc}") from exc
    if len(raw) != SIGNATURE_LENGTH:
        raise ValueError(f"Invalid signature length: expected {SIGNATURE_LENGTH} bytes, got {len(raw)}")
    return raw


def verify_near_signature(
    challenge: str,
    signature_b64: str,
    public_key: str,
    nonce: bytes,
    recipient: str,
) -> SignatureCheck:
    """
    Verify a NEP-413 signature.

    Args:
        challenge: Message text the wallet signed
        signature_b64: Base64 Ed25519 signature (64 bytes decoded)
        public_key: ``ed25519:`` prefixed base58 key
        nonce: The 32-byte nonce used when signing
        recipient: Recipient the signature was scoped to

    Returns:
        SignatureCheck with ``valid`` and, on failure, a descriptive ``error``
    """
    try:
        digest = compute_hash(challenge, nonce, recipient)
    except (TypeError, ValueError) as exc:
        return SignatureCheck(False, str(exc))

    try:
        key_bytes = parse_near_public_key(public_key)
    except ValueError as exc:
        return SignatureCheck(False, str(exc))

    try:
        signature = decode_signature(signature_b64)
    except ValueError as exc:
        return SignatureCheck(False, str(exc))

    try:
        Ed25519PublicKey.from_public_bytes(key_bytes).verify(signature, digest)
    except InvalidSignature:
        return SignatureCheck(False, "Signature verification failed")
    except ValueError as exc:
        return SignatureCheck(False, f"Invalid public key: {exc}")

    return SignatureCheck(True)


def extract_ed25519_public_key_hex(public_key: str) -> str:
    """Return the hex encoding of the raw key ``verify_near_signature`` uses."""
    return parse_near_public_key(public_key).hex()


def compute_nep413_hash_hex(message: str, nonce: bytes, recipient: str) -> str:
    """Return the hex digest ``verify_near_signature`` checks the signature against."""
    return compute_hash(message, nonce, recipient).hex()


def signature_hex(signature_b64: str) -> str:
    return decode_signature(signature_b64).hex()


def check_signature_freshness(
    timestamp: Optional[int],
    nonce: bytes,
    max_age_seconds: int,
    now_ms: Optional[int] = None,
) -> FreshnessCheck:
    """
    Reject stale, future-dated and trivially replayable signatures.

    ``timestamp`` is the millisecond epoch the client embedded next to its
    signature. An all-zero nonce is never accepted.
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)

    if isinstance(timestamp, bool) or not isinstance(timestamp, int) or timestamp <= 0:
        return FreshnessCheck(
            False, VerificationErrorCode.SIGNATURE_TIMESTAMP_INVALID, "Signature timestamp missing or invalid"
        )
    if timestamp > now_ms:
        return FreshnessCheck(
            False, VerificationErrorCode.SIGNATURE_TIMESTAMP_INVALID, "Signature timestamp is in the future"
        )
    if now_ms - timestamp > max_age_seconds * 1000:
        return FreshnessCheck(
            False,
            VerificationErrorCode.SIGNATURE_EXPIRED,
            f"Signature older than {max_age_seconds} seconds",
        )

    if len(nonce) != NONCE_LENGTH or not any(nonce):
        return FreshnessCheck(False, VerificationErrorCode.NEAR_SIGNATURE_INVALID, "Invalid signature nonce")

    return FreshnessCheck(True)
