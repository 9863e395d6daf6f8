"""
Unit tests for domain models and request validation.
"""

import base64

import pytest

from selfnear.errors import VerificationError, VerificationErrorCode
from selfnear.models import (
    NearSignatureBundle,
    SelfProof,
    SelfVerificationResult,
    VerificationRecord,
    ZkProof,
    parse_public_signals,
    parse_verify_request,
)

PROOF = {"a": ["1", "2"], "b": [["3", "4"], ["5", "6"]], "c": ["7", "8"]}


def _body(**overrides):
    body = {
        "attestationId": 1,
        "proof": PROOF,
        "publicSignals": ["11", "22"],
        "userContextData": "7b7d",
    }
    body.update(overrides)
    return body


class TestParseVerifyRequest:
    """Test validation of proof submissions."""

    def test_valid_body(self):
        """Test a well-formed body parses."""
        request = parse_verify_request(_body())

        assert request.attestation_id == 1
        assert request.proof.b == (("3", "4"), ("5", "6"))
        assert request.public_signals == ("11", "22")

    def test_integer_field_elements_are_normalised(self):
        """Test numeric proof components become decimal strings."""
        request = parse_verify_request(_body(proof={"a": [1, 2], "b": [[3, 4], [5, 6]], "c": [7, 8]}))

        assert request.proof.a == ("1", "2")

    @pytest.mark.parametrize(
        "overrides,field",
        [
            ({"attestationId": 4}, "attestationId"),
            ({"attestationId": None}, "attestationId"),
            ({"proof": {"a": ["1"], "b": [["3", "4"], ["5", "6"]], "c": ["7", "8"]}}, "proof.a"),
            ({"proof": {"a": ["1", "0x2"], "b": [["3", "4"], ["5", "6"]], "c": ["7", "8"]}}, "proof.a.1"),
            ({"publicSignals": "11"}, "publicSignals"),
            ({"publicSignals": [str(i) for i in range(22)]}, "publicSignals"),
            ({"userContextData": ""}, "userContextData"),
            ({"userContextData": "a" * 4097}, "userContextData"),
        ],
    )
    def test_invalid_fields_are_named(self, overrides, field):
        """Test each invalid field is reported by name."""
        with pytest.raises(VerificationError) as exc_info:
            parse_verify_request(_body(**overrides))

        assert exc_info.value.code is VerificationErrorCode.MISSING_FIELDS
        assert field in exc_info.value.details

    def test_non_object_body(self):
        """Test non-object bodies are rejected."""
        with pytest.raises(VerificationError):
            parse_verify_request(["not", "an", "object"])

    def test_oversized_field_element(self):
        """Test field elements longer than the contract allows are rejected."""
        with pytest.raises(ValueError):
            parse_public_signals(["9" * 81])


class TestSelfVerificationResult:
    """Test decoding of verifier responses."""

    def test_from_dict(self):
        """Test the nested Self.xyz response shape."""
        result = SelfVerificationResult.from_dict(
            {
                "isValidDetails": {"isValid": True, "isMinimumAgeValid": True, "isOfacValid": False},
                "discloseOutput": {"nullifier": 12345, "nationality": "FRA"},
                "userData": {"userIdentifier": "session-1", "userDefinedData": "7b7d"},
            }
        )

        assert result.is_valid is True
        assert result.is_ofac_valid is False
        assert result.nullifier == "12345"
        assert result.user_identifier == "session-1"
        assert result.user_defined_data == "7b7d"
        assert result.nationality == "FRA"

    def test_missing_sections(self):
        """Test absent sections decode to None values."""
        result = SelfVerificationResult.from_dict({})

        assert result.is_valid is None
        assert result.nullifier is None


class TestVerificationRecord:
    """Test contract record conversion."""

    def test_from_contract_converts_nanoseconds(self):
        """Test verified_at is converted from block nanoseconds to milliseconds."""
        record = VerificationRecord.from_contract(
            {
                "nullifier": "99",
                "near_account_id": "alice.testnet",
                "attestation_id": "1",
                "verified_at": 1_700_000_000_123_456_789,
                "self_proof": {"proof": PROOF, "public_signals": ["1"]},
                "user_context_data": "7b7d",
                "user_id": "session-1",
            }
        )

        assert record.verified_at == 1_700_000_000_123
        assert record.self_proof.public_signals == ("1",)

    def test_to_contract_args(self):
        """Test the signature travels as raw byte arrays."""
        signature = base64.b64encode(bytes(range(64))).decode("ascii")
        record = VerificationRecord(
            nullifier="99",
            near_account_id="alice.testnet",
            attestation_id="1",
            self_proof=SelfProof(ZkProof.from_dict(PROOF), ("1",)),
            user_context_data="7b7d",
            signature=NearSignatureBundle(
                account_id="alice.testnet",
                signature=signature,
                public_key="ed25519:abc",
                nonce=bytes(32),
                challenge="Identify myself",
                recipient="alice.testnet",
            ),
        )

        args = record.to_contract_args()

        assert args["signature_data"]["signature"] == list(range(64))
        assert args["signature_data"]["nonce"] == [0] * 32
        assert args["signature_data"]["recipient"] == "alice.testnet"
        assert args["self_proof"]["public_signals"] == ["1"]
        assert args["user_id"] == ""

    def test_to_contract_args_requires_signature(self):
        """Test records without signature material cannot be stored."""
        record = VerificationRecord("99", "alice.testnet", "1", SelfProof(ZkProof.from_dict(PROOF), ()), "")

        with pytest.raises(ValueError):
            record.to_contract_args()
