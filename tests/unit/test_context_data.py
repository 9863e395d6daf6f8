"""
Unit tests for user context data parsing.
"""

import base64
import json

import pytest

from selfnear.context_data import decode_user_context_data, parse_signature_bundle, parse_user_context_data

NONCE = bytes(range(32))
BUNDLE = {
    "accountId": "alice.testnet",
    "signature": base64.b64encode(b"s" * 64).decode("ascii"),
    "publicKey": "ed25519:8fWxdpBpTbC3VsuS1BMPYKpWGQh2YD9N2PdLAhCMKFmu",
    "nonce": base64.b64encode(NONCE).decode("ascii"),
    "timestamp": 1_700_000_000_000,
}
TEXT = json.dumps(BUNDLE)


def _encodings():
    raw = TEXT.encode("utf-8")
    return {
        "plain": TEXT,
        "hex": raw.hex(),
        "hex_with_nul_padding": (b"\x00" * 8 + raw + b"\x00" * 8).hex(),
        "binary_prefix": (b"\x01\x7b\xff" + raw).hex(),
        "garbage_wrapped": "xx{junk" + TEXT + "trailing",
        "bytes": raw,
        "byte_list": list(raw),
        "numeric_dict": {str(i): b for i, b in enumerate(raw)},
    }


class TestParseSignatureBundle:
    """Test bundle recovery across the encodings Self.xyz produces."""

    @pytest.mark.parametrize("name", sorted(_encodings()))
    def test_all_encodings_yield_same_bundle(self, name):
        """Test every supported encoding parses to the same bundle."""
        expected = parse_signature_bundle(TEXT).bundle

        result = parse_signature_bundle(_encodings()[name])

        assert result.ok, result.error
        assert result.bundle == expected
        assert result.bundle.account_id == "alice.testnet"
        assert result.bundle.nonce == NONCE
        assert result.bundle.timestamp == 1_700_000_000_000

    def test_nested_account_id_key(self):
        """Test an inner object keyed by accountId does not truncate the document."""
        data = {"meta": {"accountId": "mallory.testnet"}, **BUNDLE}

        bundle = parse_user_context_data(json.dumps(data))

        assert bundle is not None
        assert bundle.account_id == "alice.testnet"
        assert bundle.nonce == NONCE

    def test_nested_account_id_key_hex(self):
        """Test the same document survives hex encoding with NUL padding."""
        raw = json.dumps({"meta": {"accountId": "mallory.testnet"}, **BUNDLE}).encode("utf-8")

        bundle = parse_user_context_data((raw + b"\x00" * 4).hex())

        assert bundle.account_id == "alice.testnet"

    def test_nonce_as_byte_array(self):
        """Test a nonce sent as a list of ints is accepted."""
        data = dict(BUNDLE, nonce=list(NONCE))

        assert parse_user_context_data(json.dumps(data)).nonce == NONCE

    @pytest.mark.parametrize("field", ["accountId", "signature", "publicKey", "nonce"])
    def test_missing_required_field(self, field):
        """Test a missing field returns None and names the field."""
        data = {k: v for k, v in BUNDLE.items() if k != field}

        result = parse_signature_bundle(json.dumps(data))

        assert result.bundle is None
        assert field in result.error
        assert parse_user_context_data(json.dumps(data)) is None

    def test_empty_field_counts_as_missing(self):
        """Test empty strings are treated as absent."""
        assert parse_user_context_data(json.dumps(dict(BUNDLE, signature=""))) is None

    @pytest.mark.parametrize("nonce", [base64.b64encode(bytes(31)).decode(), list(range(33)), "***", 12])
    def test_invalid_nonce(self, nonce):
        """Test nonces that are not exactly 32 bytes are rejected."""
        result = parse_signature_bundle(json.dumps(dict(BUNDLE, nonce=nonce)))

        assert result.bundle is None
        assert "nonce" in result.error.lower()

    @pytest.mark.parametrize("raw", [None, "", "not json at all", "[1, 2, 3]", 42, {"a": "b"}, b""])
    def test_garbage_never_raises(self, raw):
        """Test malformed input returns an error instead of raising."""
        result = parse_signature_bundle(raw)

        assert result.bundle is None
        assert result.error

    def test_non_integer_timestamp_dropped(self):
        """Test a non-numeric timestamp is treated as absent."""
        bundle = parse_user_context_data(json.dumps(dict(BUNDLE, timestamp="yesterday")))

        assert bundle is not None
        assert bundle.timestamp is None


class TestDecodeUserContextData:
    """Test raw decoding to text."""

    def test_odd_length_hex_is_treated_as_text(self):
        """Test strings that are not valid hex pass through unchanged."""
        assert decode_user_context_data("abc") == "abc"

    def test_unsupported_type(self):
        """Test unsupported shapes decode to None."""
        assert decode_user_context_data(3.14) is None
