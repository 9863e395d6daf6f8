"""
Unit tests for NEAR signature verification.
"""

import base64

import pytest

from selfnear.errors import VerificationErrorCode
from selfnear.signature import (
    check_signature_freshness,
    compute_nep413_hash_hex,
    decode_signature,
    extract_ed25519_public_key_hex,
    parse_near_public_key,
    signature_hex,
    verify_near_signature,
)

MESSAGE = "Identify myself"
ACCOUNT = "alice.testnet"
NONCE = bytes(range(1, 33))


def _flip(b64: str, index: int) -> str:
    raw = bytearray(base64.b64decode(b64))
    raw[index] ^= 0x01
    return base64.b64encode(bytes(raw)).decode("ascii")


class TestVerifyNearSignature:
    """Test NEP-413 signature verification."""

    def test_round_trip(self, near_key):
        """Test a wallet-style signature verifies."""
        signature = near_key.sign_nep413(MESSAGE, NONCE, ACCOUNT)

        check = verify_near_signature(MESSAGE, signature, near_key.public_key, NONCE, ACCOUNT)

        assert check.valid is True
        assert check.error is None

    @pytest.mark.parametrize("index", [0, 17, 31, 32, 63])
    def test_single_bit_flip_in_signature_fails(self, near_key, index):
        """Test any corrupted signature byte is rejected."""
        signature = near_key.sign_nep413(MESSAGE, NONCE, ACCOUNT)

        check = verify_near_signature(MESSAGE, _flip(signature, index), near_key.public_key, NONCE, ACCOUNT)

        assert check.valid is False

    def test_wrong_message_fails(self, near_key):
        """Test the signature is bound to the challenge text."""
        signature = near_key.sign_nep413(MESSAGE, NONCE, ACCOUNT)

        check = verify_near_signature("Identify yourself", signature, near_key.public_key, NONCE, ACCOUNT)

        assert check.valid is False
        assert check.error == "Signature verification failed"

    def test_wrong_recipient_fails(self, near_key):
        """Test the signature is bound to the recipient."""
        signature = near_key.sign_nep413(MESSAGE, NONCE, ACCOUNT)

        check = verify_near_signature(MESSAGE, signature, near_key.public_key, NONCE, "bob.testnet")

        assert check.valid is False

    def test_wrong_nonce_fails(self, near_key):
        """Test the signature is bound to the nonce."""
        signature = near_key.sign_nep413(MESSAGE, NONCE, ACCOUNT)

        check = verify_near_signature(MESSAGE, signature, near_key.public_key, bytes(32), ACCOUNT)

        assert check.valid is False

    def test_other_key_fails(self, near_key):
        """Test a signature does not verify under a different key."""
        from conftest import NearTestKey

        signature = near_key.sign_nep413(MESSAGE, NONCE, ACCOUNT)

        check = verify_near_signature(MESSAGE, signature, NearTestKey().public_key, NONCE, ACCOUNT)

        assert check.valid is False

    def test_short_nonce_is_reported_not_raised(self, near_key):
        """Test malformed nonces yield an error result."""
        signature = near_key.sign_nep413(MESSAGE, NONCE, ACCOUNT)

        check = verify_near_signature(MESSAGE, signature, near_key.public_key, bytes(16), ACCOUNT)

        assert check.valid is False
        assert "32 bytes" in check.error

    @pytest.mark.parametrize(
        "public_key",
        ["", "secp256k1:abc", "ed25519:", "ed25519:0OIl", "ed25519:11111111"],
    )
    def test_malformed_public_key(self, near_key, public_key):
        """Test malformed keys never raise."""
        signature = near_key.sign_nep413(MESSAGE, NONCE, ACCOUNT)

        check = verify_near_signature(MESSAGE, signature, public_key, NONCE, ACCOUNT)

        assert check.valid is False
        assert check.error

    @pytest.mark.parametrize("signature", ["", "not base64!!", base64.b64encode(b"x" * 63).decode()])
    def test_malformed_signature(self, near_key, signature):
        """Test malformed signatures never raise."""
        check = verify_near_signature(MESSAGE, signature, near_key.public_key, NONCE, ACCOUNT)

        assert check.valid is False
        assert check.error


class TestKeyAndSignatureDecoding:
    """Test the hex helpers used for proof export."""

    def test_public_key_hex_matches_raw_bytes(self, near_key):
        """Test the exported key hex is the raw 32-byte key."""
        assert extract_ed25519_public_key_hex(near_key.public_key) == near_key.public_bytes.hex()
        assert parse_near_public_key(near_key.public_key) == near_key.public_bytes

    def test_signature_hex(self, near_key):
        """Test the exported signature hex is the decoded 64 bytes."""
        signature = near_key.sign_nep413(MESSAGE, NONCE, ACCOUNT)

        assert signature_hex(signature) == base64.b64decode(signature).hex()
        assert len(decode_signature(signature)) == 64

    def test_hash_hex_is_what_the_key_signed(self, near_key):
        """Test an external Ed25519 check over the exported hash succeeds."""
        signature = near_key.sign_nep413(MESSAGE, NONCE, ACCOUNT)
        digest = bytes.fromhex(compute_nep413_hash_hex(MESSAGE, NONCE, ACCOUNT))

        near_key.private_key.public_key().verify(base64.b64decode(signature), digest)


class TestSignatureFreshness:
    """Test timestamp and nonce freshness checks."""

    NOW_MS = 1_700_000_000_000

    def test_fresh_signature_passes(self):
        """Test a recent timestamp with a random nonce passes."""
        check = check_signature_freshness(self.NOW_MS - 1000, NONCE, 600, now_ms=self.NOW_MS)

        assert check.valid is True

    @pytest.mark.parametrize("timestamp", [None, 0, -5, "1700000000000", True])
    def test_missing_or_invalid_timestamp(self, timestamp):
        """Test absent or non-positive timestamps are invalid."""
        check = check_signature_freshness(timestamp, NONCE, 600, now_ms=self.NOW_MS)

        assert check.valid is False
        assert check.code is VerificationErrorCode.SIGNATURE_TIMESTAMP_INVALID

    def test_future_timestamp(self):
        """Test timestamps ahead of the clock are invalid."""
        check = check_signature_freshness(self.NOW_MS + 1, NONCE, 600, now_ms=self.NOW_MS)

        assert check.code is VerificationErrorCode.SIGNATURE_TIMESTAMP_INVALID

    def test_expired(self):
        """Test timestamps older than the window are expired."""
        check = check_signature_freshness(self.NOW_MS - 601_000, NONCE, 600, now_ms=self.NOW_MS)

        assert check.code is VerificationErrorCode.SIGNATURE_EXPIRED

    def test_boundary_is_still_fresh(self):
        """Test a signature exactly at the limit is accepted."""
        check = check_signature_freshness(self.NOW_MS - 600_000, NONCE, 600, now_ms=self.NOW_MS)

        assert check.valid is True

    def test_zero_nonce_rejected(self):
        """Test an all-zero nonce is rejected even when fresh."""
        check = check_signature_freshness(self.NOW_MS, bytes(32), 600, now_ms=self.NOW_MS)

        assert check.valid is False
        assert check.code is VerificationErrorCode.NEAR_SIGNATURE_INVALID
