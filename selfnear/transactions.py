"""
Signed NEAR transactions for contract calls.

Only what the backend wallet needs: a single ``FunctionCall`` action, Borsh
encoded and signed with an Ed25519 key. The layout follows nearcore's
``Transaction`` / ``SignedTransaction`` (v0) schema.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

import base58
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from selfnear.nep413 import BorshWriter
from selfnear.signature import ED25519_PREFIX, PUBLIC_KEY_LENGTH

KEY_TYPE_ED25519 = 0
ACTION_FUNCTION_CALL = 2

DEFAULT_GAS = 30_000_000_000_000  # 30 TGas
ONE_YOCTO = 1


class KeyPair:
    """Ed25519 key pair parsed from NEAR's ``ed25519:<base58>`` secret key format."""

    def __init__(self, private_key: Ed25519PrivateKey):
        self._private_key = private_key
        self.public_key_bytes = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)

    @classmethod
    def from_string(cls, secret: str) -> "KeyPair":
        if not secret or not secret.startswith(ED25519_PREFIX):
            raise ValueError("Only ed25519 secret keys are supported")
        try:
            raw = base58.b58decode(secret[len(ED25519_PREFIX) :])
        except ValueError as exc:
            raise ValueError(f"Invalid base58 secret key: {exc}") from exc

        # NEAR secret keys are seed || public key; a bare seed is accepted too.
        if len(raw) not in (32, 64):
            raise ValueError(f"Invalid secret key length: {len(raw)}")
        key_pair = cls(Ed25519PrivateKey.from_private_bytes(raw[:32]))
        if len(raw) == 64 and raw[32:] != key_pair.public_key_bytes:
            raise ValueError("Secret key does not match its embedded public key")
        return key_pair

    @property
    def public_key(self) -> str:
        return ED25519_PREFIX + base58.b58encode(self.public_key_bytes).decode("ascii")

    def sign(self, message: bytes) -> bytes:
        return self._private_key.sign(message)


@dataclass(frozen=True)
class FunctionCall:
    method_name: str
    args: bytes
    gas: int = DEFAULT_GAS
    deposit: int = ONE_YOCTO

    @classmethod
    def with_json_args(
        cls, method_name: str, args: Mapping[str, Any], gas: int = DEFAULT_GAS, deposit: int = ONE_YOCTO
    ) -> "FunctionCall":
        encoded = json.dumps(args, separators=(",", ":")).encode("utf-8")
        return cls(method_name, encoded, gas, deposit)

    def write(self, writer: BorshWriter) -> None:
        (
            writer.u8(ACTION_FUNCTION_CALL)
            .string(self.method_name)
            .bytes_vec(self.args)
            .u64(self.gas)
            .u128(self.deposit)
        )


@dataclass(frozen=True)
class Transaction:
    signer_id: str
    public_key: bytes
    nonce: int
    receiver_id: str
    block_hash: bytes
    actions: Sequence[FunctionCall]

    def serialize(self) -> bytes:
        writer = (
            BorshWriter()
            .string(self.signer_id)
            .u8(KEY_TYPE_ED25519)
            .fixed_bytes(self.public_key, PUBLIC_KEY_LENGTH)
            .u64(self.nonce)
            .string(self.receiver_id)
            .fixed_bytes(self.block_hash, 32)
            .u32(len(self.actions))
        )
        for action in self.actions:
            action.write(writer)
        return writer.getvalue()

    def hash(self) -> bytes:
        return hashlib.sha256(self.serialize()).digest()


def sign_transaction(transaction: Transaction, key_pair: KeyPair) -> bytes:
    """Return the Borsh-encoded ``SignedTransaction``."""
    if transaction.public_key != key_pair.public_key_bytes:
        raise ValueError("Transaction public key does not match the signing key")
    signature = key_pair.sign(transaction.hash())
    return (
        BorshWriter()
        .raw(transaction.serialize())
        .u8(KEY_TYPE_ED25519)
        .fixed_bytes(signature, 64)
        .getvalue()
    )
