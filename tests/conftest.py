"""
Pytest configuration and shared fixtures for selfnear tests.
"""

import base64
import json
import os
import time
from unittest.mock import MagicMock

import pytest

# Set test environment before importing the package
os.environ["FLASK_ENV"] = "testing"
os.environ["FLASK_SECRET_KEY"] = "test-secret-key-for-testing-only"
os.environ["NEAR_NETWORK"] = "testnet"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["KEY_LIVENESS_CHECK"] = "false"
for _name in ("NEAR_CONTRACT_ID", "NEAR_ACCOUNT_ID", "NEAR_PRIVATE_KEY", "REDIS_HOST", "REDIS_URL", "SELF_VERIFIER_URL"):
    os.environ.pop(_name, None)

import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import base58  # noqa: E402
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey  # noqa: E402
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat, PublicFormat  # noqa: E402

from selfnear.models import SelfVerificationResult  # noqa: E402
from selfnear.nep413 import compute_hash  # noqa: E402

SIGNING_MESSAGE = "Identify myself"
ACCOUNT_ID = "alice.testnet"
NULLIFIER = "1234567890123456789"

PROOF = {
    "a": ["1", "2"],
    "b": [["3", "4"], ["5", "6"]],
    "c": ["7", "8"],
}
PUBLIC_SIGNALS = ["11", "22", "33"]


class NearTestKey:
    """Ed25519 key in NEAR's string formats."""

    def __init__(self):
        self.private_key = Ed25519PrivateKey.generate()
        self.public_bytes = self.private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        self.public_key = "ed25519:" + base58.b58encode(self.public_bytes).decode("ascii")

    @property
    def secret_key(self) -> str:
        seed = self.private_key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())
        return "ed25519:" + base58.b58encode(seed + self.public_bytes).decode("ascii")

    def sign_nep413(self, message: str, nonce: bytes, recipient: str) -> str:
        signature = self.private_key.sign(compute_hash(message, nonce, recipient))
        return base64.b64encode(signature).decode("ascii")


class FakeZkVerifier:
    """Programmable stand-in for the Self.xyz verifier."""

    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    async def verify(self, attestation_id, proof, public_signals, user_context_data):
        self.calls.append((attestation_id, proof, tuple(public_signals), user_context_data))
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def near_key():
    return NearTestKey()


@pytest.fixture
def make_bundle(near_key):
    """Build a signed signature bundle dict as the browser would embed it."""

    def _make(
        account_id=ACCOUNT_ID,
        message=SIGNING_MESSAGE,
        recipient=None,
        nonce=None,
        timestamp=None,
        key=None,
    ):
        key = key or near_key
        nonce = nonce if nonce is not None else os.urandom(32)
        signature = key.sign_nep413(message, nonce, recipient or account_id)
        return {
            "accountId": account_id,
            "publicKey": key.public_key,
            "signature": signature,
            "nonce": base64.b64encode(nonce).decode("ascii"),
            "timestamp": int(time.time() * 1000) if timestamp is None else timestamp,
        }

    return _make


@pytest.fixture
def encode_context():
    """Hex-encode a bundle the way Self.xyz returns userDefinedData."""

    def _encode(bundle, prefix=b""):
        return (prefix + json.dumps(bundle).encode("utf-8")).hex()

    return _encode


@pytest.fixture
def zk_result():
    def _make(
        is_valid=True,
        is_minimum_age_valid=True,
        is_ofac_valid=True,
        nullifier=NULLIFIER,
        user_identifier="session-1234",
        user_defined_data=None,
    ):
        return SelfVerificationResult(
            is_valid=is_valid,
            is_minimum_age_valid=is_minimum_age_valid,
            is_ofac_valid=is_ofac_valid,
            nullifier=nullifier,
            user_identifier=user_identifier,
            user_defined_data=user_defined_data,
        )

    return _make


@pytest.fixture
def proof_submission(make_bundle, encode_context):
    """Raw ``POST /api/verify`` body carrying a freshly signed bundle."""

    def _make(bundle=None, attestation_id=1):
        bundle = bundle or make_bundle()
        return {
            "attestationId": attestation_id,
            "proof": PROOF,
            "publicSignals": PUBLIC_SIGNALS,
            "userContextData": encode_context(bundle),
        }

    return _make


@pytest.fixture
def mock_audit_logger():
    """Mock audit logger for testing."""
    return MagicMock()


@pytest.fixture(autouse=True)
def reset_storage():
    """Reset in-memory storage before each test."""
    from selfnear.storage import init_storage

    init_storage()
    yield
    init_storage()


# Pytest configuration hooks
def pytest_configure(config):
    """Configure pytest with custom settings."""
    config.addinivalue_line("markers", "slow: tests that take a long time to run")


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers automatically."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
