"""HTTP client for the Self.xyz passport proof verification service."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Sequence

import requests

from selfnear.errors import ZkVerifierUnavailable
from selfnear.models import SelfVerificationResult, ZkProof

logger = logging.getLogger(__name__)


class HttpZkVerifier:
    """
    Posts proofs to a verification service wrapping the Self.xyz backend verifier.

    A cryptographically invalid proof is a normal answer (``is_valid=False``).
    Anything that prevents getting an answer raises ``ZkVerifierUnavailable``.
    """

    def __init__(self, url: str, timeout: float = 30, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def verify_sync(
        self,
        attestation_id: int,
        proof: ZkProof,
        public_signals: Sequence[str],
        user_context_data: str,
    ) -> SelfVerificationResult:
        payload = {
            "attestationId": attestation_id,
            "proof": proof.to_dict(),
            "publicSignals": [str(signal) for signal in public_signals],
            "userContextData": user_context_data,
        }
        try:
            resp = self.session.post(self.url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.error(f"Self verifier request failed: {exc}")
            raise ZkVerifierUnavailable(f"Verifier request failed: {exc}") from exc

        if resp.status_code >= 300:
            raise ZkVerifierUnavailable(f"Verifier returned HTTP {resp.status_code}")

        try:
            body = resp.json()
        except ValueError as exc:
            raise ZkVerifierUnavailable("Verifier returned a non-JSON body") from exc
        if not isinstance(body, dict):
            raise ZkVerifierUnavailable("Verifier returned an unexpected payload")

        return SelfVerificationResult.from_dict(body)

    async def verify(
        self,
        attestation_id: int,
        proof: ZkProof,
        public_signals: Sequence[str],
        user_context_data: str,
    ) -> SelfVerificationResult:
        return await asyncio.to_thread(self.verify_sync, attestation_id, proof, public_signals, user_context_data)


class UnconfiguredZkVerifier:
    """Used when no verification service is configured; every call is unavailable."""

    async def verify(self, attestation_id, proof, public_signals, user_context_data) -> SelfVerificationResult:
        raise ZkVerifierUnavailable("SELF_VERIFIER_URL is not configured")
