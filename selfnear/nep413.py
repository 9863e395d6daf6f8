"""
NEP-413 message codec.

Rebuilds the exact byte string a NEAR wallet signs for an off-chain
``signMessage`` request:

    SHA-256( LE_U32(2**31 + 413) || borsh(Payload) )

where ``Payload`` is the struct::

    message:     string
    nonce:       [u8; 32]
    recipient:   string
    callbackUrl: Option<string>

Field order and encoding widths are fixed by the wallet standard. Changing
anything here breaks every signature ever collected.
"""

from __future__ import annotations

import hashlib
import struct
from typing import Optional

NEP413_TAG = 2**31 + 413  # 2147484061
NONCE_LENGTH = 32

_U8 = struct.Struct("<B")
_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")


class BorshWriter:
    """Append-only Borsh encoder for the handful of types NEAR messages use."""

    def __init__(self) -> None:
        self._buf = bytearray()

    def u8(self, value: int) -> "BorshWriter":
        self._buf += _U8.pack(value)
        return self

    def u32(self, value: int) -> "BorshWriter":
        self._buf += _U32.pack(value)
        return self

    def u64(self, value: int) -> "BorshWriter":
        self._buf += _U64.pack(value)
        return self

    def u128(self, value: int) -> "BorshWriter":
        if value < 0 or value >= 2**128:
            raise ValueError(f"u128 out of range: {value}")
        self._buf += value.to_bytes(16, "little")
        return self

    def fixed_bytes(self, data: bytes, length: int) -> "BorshWriter":
        if len(data) != length:
            raise ValueError(f"Expected {length} bytes, got {len(data)}")
        self._buf += data
        return self

    def bytes_vec(self, data: bytes) -> "BorshWriter":
        self.u32(len(data))
        self._buf += data
        return self

    def string(self, value: str) -> "BorshWriter":
        return self.bytes_vec(value.encode("utf-8"))

    def option_string(self, value: Optional[str]) -> "BorshWriter":
        if value is None:
            return self.u8(0)
        self.u8(1)
        return self.string(value)

    def raw(self, data: bytes) -> "BorshWriter":
        self._buf += data
        return self

    def getvalue(self) -> bytes:
        return bytes(self._buf)


def _require_nonce(nonce: bytes) -> bytes:
    # bytes(int) zero-fills and bytes(str) needs an encoding; neither is a nonce.
    if not isinstance(nonce, (bytes, bytearray, memoryview, list, tuple)):
        raise TypeError(f"NEP-413 nonce must be bytes, not {type(nonce).__name__}")
    nonce = bytes(nonce)
    if len(nonce) != NONCE_LENGTH:
        raise ValueError(f"NEP-413 nonce must be exactly {NONCE_LENGTH} bytes (got {len(nonce)})")
    return nonce


def encode_tag() -> bytes:
    """Return the NEP-413 prefix tag as 4 little-endian bytes."""
    return _U32.pack(NEP413_TAG)


def serialize_payload(message: str, nonce: bytes, recipient: str, callback_url: Optional[str] = None) -> bytes:
    """
    Borsh-serialize a NEP-413 payload.

    Args:
        message: Challenge text shown to the user by the wallet
        nonce: Exactly 32 bytes
        recipient: Account the signature is scoped to
        callback_url: Always ``None`` for this service

    Returns:
        Serialized payload bytes (without the tag)

    Raises:
        ValueError: If the nonce is not 32 bytes long
    """
    return (
        BorshWriter()
        .string(message)
        .fixed_bytes(_require_nonce(nonce), NONCE_LENGTH)
        .string(recipient)
        .option_string(callback_url)
        .getvalue()
    )


def signing_preimage(message: str, nonce: bytes, recipient: str) -> bytes:
    """Return ``tag || payload``, the bytes that get hashed."""
    return encode_tag() + serialize_payload(message, nonce, recipient)


def compute_hash(message: str, nonce: bytes, recipient: str) -> bytes:
    """Return the 32-byte SHA-256 digest a NEAR wallet signs for this challenge."""
    return hashlib.sha256(signing_preimage(message, nonce, recipient)).digest()
