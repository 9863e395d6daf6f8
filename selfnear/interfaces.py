"""
Collaborator contracts for the verification orchestrator.

Anything satisfying these protocols can be injected: the HTTP-backed
clients in ``selfnear.self_verifier`` / ``selfnear.contract`` /
``selfnear.redis_store`` for production, the in-memory versions in
``selfnear.storage`` for tests and local development.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol, Sequence

from selfnear.models import (
    AccessKeyCheck,
    SelfVerificationResult,
    VerificationPage,
    VerificationRecord,
    ZkProof,
)


class ZkVerifier(Protocol):
    async def verify(
        self,
        attestation_id: int,
        proof: ZkProof,
        public_signals: Sequence[str],
        user_context_data: str,
    ) -> SelfVerificationResult:
        """Verify a Groth16 passport proof.

        Raises ``ZkVerifierUnavailable`` when the verifier cannot be reached.
        Cryptographically invalid proofs return ``is_valid=False``.
        """
        ...


class VerificationContract(Protocol):
    async def is_verified(self, account_id: str) -> bool:
        ...

    async def is_nullifier_used(self, nullifier: str) -> bool:
        ...

    async def get_verification(self, account_id: str) -> Optional[VerificationRecord]:
        ...

    async def list_verifications(self, from_index: int, limit: int) -> VerificationPage:
        ...

    async def store_verification(self, record: VerificationRecord) -> None:
        """Persist ``record``; raises ``ContractError`` with a mapped code on rejection."""
        ...


class NonceStore(Protocol):
    async def reserve(self, account_id: str, nonce: bytes, ttl_seconds: int) -> bool:
        """Atomically claim ``nonce`` for ``account_id``. False if already claimed."""
        ...

    async def release(self, account_id: str, nonce: bytes) -> None:
        """Drop a claim so a retried submission can reserve the nonce again."""
        ...


class AccessKeyChecker(Protocol):
    async def has_full_access_key(self, account_id: str, public_key: str) -> AccessKeyCheck:
        ...


class SessionStore(Protocol):
    async def update(self, session_id: str, **fields: Any) -> None:
        ...
