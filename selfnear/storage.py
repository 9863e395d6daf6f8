"""In-memory storage backend for tests and local development.

This module mirrors the Redis stores and the on-chain registry but keeps
everything in Python dictionaries. The unit and integration tests rely on it
to avoid the need for a NEAR node or Redis.
"""

from __future__ import annotations

import copy
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from selfnear.errors import ContractError, VerificationErrorCode, map_contract_error_to_code
from selfnear.models import SIZE_LIMITS, VerificationPage, VerificationRecord
from selfnear.redis_store import SESSION_STATUSES, SESSION_TTL_SECONDS, nonce_key
from selfnear.signature import verify_near_signature

# Public storage dictionary used by the test-suite fixtures. The individual
# buckets are populated by ``init_storage``.
STORAGE: Dict[str, Dict[str, Dict[str, Any]]] = {}


def init_storage() -> None:
    """Initialise the in-memory storage buckets.

    Re-initialising recreates the bucket dictionaries but leaves the
    ``STORAGE`` object itself in place so references held by fixtures remain
    valid.
    """

    buckets = {
        "nonces": {},
        "sessions": {},
        "verifications": {},
        "nullifiers": {},
        "signatures": {},
    }

    STORAGE.update(buckets)
    for key in list(STORAGE.keys()):
        if key not in buckets:
            STORAGE.pop(key)


def _get_bucket(name: str) -> Dict[str, Dict[str, Any]]:
    if name not in STORAGE:
        init_storage()
    return STORAGE[name]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _store_value(bucket_name: str, key: str, value: Any, ttl: Optional[int] = None) -> None:
    bucket = _get_bucket(bucket_name)
    expires_at: Optional[datetime] = None
    if ttl:
        expires_at = _utcnow() + timedelta(seconds=ttl)

    bucket[key] = {
        "value": copy.deepcopy(value),
        "expires_at": expires_at,
    }


def _get_value(bucket_name: str, key: str) -> Optional[Any]:
    bucket = _get_bucket(bucket_name)
    entry = bucket.get(key)
    if not entry:
        return None

    expires_at = entry.get("expires_at")
    if isinstance(expires_at, datetime) and expires_at < _utcnow():
        bucket.pop(key, None)
        return None

    return copy.deepcopy(entry.get("value"))


def _delete_value(bucket_name: str, key: str) -> None:
    _get_bucket(bucket_name).pop(key, None)


class InMemoryNonceStore:
    async def reserve(self, account_id: str, nonce: bytes, ttl_seconds: int) -> bool:
        key = nonce_key(account_id, nonce)
        if _get_value("nonces", key) is not None:
            return False
        _store_value("nonces", key, "1", ttl_seconds)
        return True

    async def release(self, account_id: str, nonce: bytes) -> None:
        _delete_value("nonces", nonce_key(account_id, nonce))


class InMemorySessionStore:
    def __init__(self, ttl_seconds: int = SESSION_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds

    async def create(self, session_id: str, account_id: Optional[str] = None) -> Dict[str, Any]:
        session: Dict[str, Any] = {"status": "pending", "timestamp": int(time.time() * 1000)}
        if account_id:
            session["accountId"] = account_id
        _store_value("sessions", session_id, session, self.ttl_seconds)
        return session

    async def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        return _get_value("sessions", session_id)

    async def update(self, session_id: str, **fields: Any) -> None:
        if fields.get("status") not in SESSION_STATUSES:
            raise ValueError(f"Invalid session status: {fields.get('status')!r}")
        existing = _get_value("sessions", session_id) or {}
        session = {**existing, **{k: v for k, v in fields.items() if v is not None}}
        session["timestamp"] = int(time.time() * 1000)
        _store_value("sessions", session_id, session, self.ttl_seconds)

    async def delete(self, session_id: str) -> None:
        _delete_value("sessions", session_id)


def _reject(message: str) -> ContractError:
    return ContractError(map_contract_error_to_code(message) or VerificationErrorCode.STORAGE_FAILED, message)


class InMemoryVerificationContract:
    """
    Dictionary-backed stand-in for the verification registry contract.

    Enforces the same rules the deployed contract does and rejects with the
    same panic messages, so callers see identical error codes.
    """

    def __init__(self, paused: bool = False, clock=time.time):
        self.paused = paused
        self.clock = clock

    async def is_verified(self, account_id: str) -> bool:
        return _get_value("verifications", account_id) is not None

    async def is_nullifier_used(self, nullifier: str) -> bool:
        return _get_value("nullifiers", nullifier) is not None

    async def get_verification(self, account_id: str) -> Optional[VerificationRecord]:
        return _get_value("verifications", account_id)

    async def get_verified_count(self) -> int:
        return len(_get_bucket("verifications"))

    async def list_verifications(self, from_index: int = 0, limit: int = 50) -> VerificationPage:
        limit = max(0, min(limit, SIZE_LIMITS["MAX_BATCH_SIZE"]))
        records: List[VerificationRecord] = [
            copy.deepcopy(entry["value"]) for entry in _get_bucket("verifications").values()
        ]
        return VerificationPage(accounts=records[from_index : from_index + limit], total=len(records))

    async def store_verification(self, record: VerificationRecord) -> None:
        if self.paused:
            raise _reject("Contract is paused - no new verifications allowed")

        sig = record.signature
        if sig is None:
            raise _reject("Invalid NEAR signature - NEP-413 verification failed")
        if sig.account_id != record.near_account_id:
            raise _reject("Signature account ID must match near_account_id")
        if sig.recipient != record.near_account_id:
            raise _reject("Signature recipient must match near_account_id")

        check = verify_near_signature(sig.challenge, sig.signature, sig.public_key, sig.nonce, sig.recipient)
        if not check.valid:
            raise _reject("Invalid NEAR signature - NEP-413 verification failed")
        if _get_value("signatures", sig.signature) is not None:
            raise _reject("Signature already used - potential replay attack")
        if await self.is_nullifier_used(record.nullifier):
            raise _reject("Nullifier already used - passport already registered")
        if await self.is_verified(record.near_account_id):
            raise _reject("NEAR account already verified")

        stored = VerificationRecord(
            nullifier=record.nullifier,
            near_account_id=record.near_account_id,
            attestation_id=record.attestation_id,
            self_proof=record.self_proof,
            user_context_data=record.user_context_data,
            verified_at=int(self.clock() * 1000),
            user_id=record.user_id,
        )
        _store_value("verifications", record.near_account_id, stored)
        _store_value("nullifiers", record.nullifier, record.near_account_id)
        _store_value("signatures", sig.signature, record.near_account_id)


# Ensure buckets exist on import so fixtures can use STORAGE immediately.
init_storage()
