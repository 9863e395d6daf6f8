"""
Recover the NEAR signature bundle from Self.xyz user context data.

The Self app round-trips whatever the browser put into ``userDefinedData``,
but the encoding it comes back in depends on the code path: a hex string,
a raw string, a byte array, or a JSON object with numeric keys. The
returned text may also carry binary prefix bytes and NUL padding around
the JSON document.
"""

from __future__ import annotations

import base64
import binascii
import json
import string
from dataclasses import dataclass
from typing import Any, Iterator, Mapping, Optional

from selfnear.models import NearSignatureBundle
from selfnear.nep413 import NONCE_LENGTH

_HEX_DIGITS = set(string.hexdigits)
_REQUIRED_FIELDS = ("accountId", "signature", "publicKey", "nonce")
_ACCOUNT_MARKER = '{"accountId"'


@dataclass(frozen=True)
class ParseResult:
    bundle: Optional[NearSignatureBundle] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.bundle is not None


def _is_hex(text: str) -> bool:
    return bool(text) and len(text) % 2 == 0 and all(ch in _HEX_DIGITS for ch in text)


def _bytes_from_ints(values: Any) -> Optional[bytes]:
    try:
        return bytes(values)
    except (TypeError, ValueError):
        return None


def decode_user_context_data(raw: Any) -> Optional[str]:
    """
    Normalise any supported encoding to text.

    Returns None when the input is empty or of an unsupported shape.
    """
    if raw is None:
        return None

    if isinstance(raw, str):
        if _is_hex(raw):
            return binascii.unhexlify(raw).decode("utf-8", errors="replace")
        return raw or None

    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw).decode("utf-8", errors="replace") or None

    if isinstance(raw, (list, tuple)):
        data = _bytes_from_ints(raw)
    elif isinstance(raw, Mapping):
        values = list(raw.values())
        if not values or not all(isinstance(v, int) and not isinstance(v, bool) for v in values):
            return None
        data = _bytes_from_ints(values)
    else:
        return None

    if not data:
        return None
    return data.decode("utf-8", errors="replace")


def _json_candidates(text: str) -> Iterator[str]:
    text = text.replace("\0", "")
    end = text.rfind("}")

    start = text.find("{")
    if start != -1 and end > start:
        yield text[start : end + 1]

    # Binary prefixes can contain a stray "{"; retry from the known key.
    marker = text.find(_ACCOUNT_MARKER)
    if marker > start and end > marker:
        yield text[marker : end + 1]

    if start == -1:
        yield text


def _load_json(text: str) -> Any:
    error: Optional[ValueError] = None
    for candidate in _json_candidates(text):
        try:
            return json.loads(candidate)
        except ValueError as exc:
            error = exc
    raise error or ValueError("No JSON document found")


def _decode_nonce(value: Any) -> bytes:
    if isinstance(value, str):
        try:
            nonce = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"Invalid nonce encoding: {exc}") from exc
    elif isinstance(value, list):
        nonce = _bytes_from_ints(value)
        if nonce is None:
            raise ValueError("Invalid nonce: expected a byte array")
    else:
        raise ValueError("Invalid nonce: expected base64 string or byte array")

    if len(nonce) != NONCE_LENGTH:
        raise ValueError(f"Invalid nonce: expected {NONCE_LENGTH} bytes, got {len(nonce)}")
    return nonce


def parse_signature_bundle(raw: Any) -> ParseResult:
    """Decode, locate and validate the signature JSON. Never raises."""
    text = decode_user_context_data(raw)
    if not text:
        return ParseResult(error="User context data is empty")

    try:
        data = _load_json(text)
    except ValueError:
        return ParseResult(error="User context data does not contain valid JSON")

    if not isinstance(data, dict):
        return ParseResult(error="User context data is not a JSON object")

    missing = [name for name in _REQUIRED_FIELDS if not data.get(name)]
    if missing:
        return ParseResult(error=f"Missing fields: {', '.join(missing)}")

    for name in ("accountId", "signature", "publicKey"):
        if not isinstance(data[name], str):
            return ParseResult(error=f"Field {name} must be a string")

    try:
        nonce = _decode_nonce(data["nonce"])
    except ValueError as exc:
        return ParseResult(error=str(exc))

    timestamp = data.get("timestamp")
    if isinstance(timestamp, bool) or not isinstance(timestamp, int):
        timestamp = None

    challenge = data.get("challenge")
    recipient = data.get("recipient")

    return ParseResult(
        bundle=NearSignatureBundle(
            account_id=data["accountId"],
            signature=data["signature"],
            public_key=data["publicKey"],
            nonce=nonce,
            timestamp=timestamp,
            challenge=challenge if isinstance(challenge, str) else None,
            recipient=recipient if isinstance(recipient, str) else None,
        )
    )


def parse_user_context_data(raw: Any) -> Optional[NearSignatureBundle]:
    """Return the signature bundle, or None for any malformed input."""
    return parse_signature_bundle(raw).bundle
