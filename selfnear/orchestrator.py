"""
Verification orchestrator.

Runs a verification pass as a fixed, linear sequence of steps. Every planned
step is recorded up front as ``pending``; the first failing step is marked
``error`` and halts the pass, leaving the remaining steps ``pending``.

Two passes share the machinery:

* ``register`` - initial registration from a Self.xyz proof submission,
  ending with the on-chain write.
* ``verify_stored`` - re-verification of a record already on chain. Loss of
  the live ZK verifier degrades to a note instead of failing the pass.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from selfnear.audit_logger import AuditLogger, get_audit_logger
from selfnear.context_data import parse_signature_bundle
from selfnear.errors import VerificationError, VerificationErrorCode, ZkVerifierUnavailable
from selfnear.interfaces import AccessKeyChecker, NonceStore, SessionStore, VerificationContract, ZkVerifier
from selfnear.models import (
    NearSignatureBundle,
    SelfProof,
    SelfVerificationResult,
    StepStatus,
    VerificationOutcome,
    VerificationRecord,
    VerificationStep,
    VerifyRequest,
)
from selfnear.proof_data import build_proof_data
from selfnear.signature import check_signature_freshness, verify_near_signature

logger = logging.getLogger(__name__)

DEFAULT_SIGNING_MESSAGE = "Identify myself"
DEFAULT_MAX_SIGNATURE_AGE_SECONDS = 600
DEFAULT_NONCE_TTL_SECONDS = 86400

# Step names shown in the trace.
LOAD_ACCOUNT = "LoadAccount"
VERIFY_ZK_PROOF = "VerifyZkProof"
CHECK_MINIMUM_AGE = "CheckMinimumAge"
CHECK_OFAC = "CheckOfac"
PARSE_SIGNATURE_BUNDLE = "ParseSignatureBundle"
CHECK_NULLIFIER = "CheckNullifier"
CHECK_SIGNATURE_FRESHNESS = "CheckSignatureFreshness"
VERIFY_SIGNATURE = "VerifySignature"
CHECK_KEY_LIVENESS = "CheckKeyLiveness"
CHECK_NONCE_REPLAY = "CheckNonceReplay"
STORE_ON_CHAIN = "StoreOnChain"

ZK_UNAVAILABLE_NOTE = "RPC verification unavailable (contract-verified)"

# Contract rejections reported as-is; anything else becomes STORAGE_FAILED.
_STORE_PASSTHROUGH_CODES = frozenset(
    {
        VerificationErrorCode.DUPLICATE_IDENTITY,
        VerificationErrorCode.CONTRACT_PAUSED,
        VerificationErrorCode.NONCE_ALREADY_USED,
        VerificationErrorCode.NEAR_SIGNATURE_INVALID,
    }
)


class VerificationTrace:
    """Mutable step trace for a single pass."""

    def __init__(self, names: List[str], audit: AuditLogger, account_id: Optional[str] = None):
        self.outcome = VerificationOutcome(steps=[VerificationStep(name) for name in names], account_id=account_id)
        self._steps: Dict[str, VerificationStep] = {step.name: step for step in self.outcome.steps}
        self._audit = audit

    def start(self, name: str) -> None:
        self._steps[name].status = StepStatus.RUNNING

    def succeed(self, name: str, message: Optional[str] = None) -> None:
        step = self._steps[name]
        step.status = StepStatus.SUCCESS
        step.message = message
        self._audit.log_verification_step(self.outcome.account_id, name, step.status.value, message)

    def fail(self, name: str, error: VerificationError) -> None:
        step = self._steps[name]
        step.status = StepStatus.ERROR
        step.message = error.details or error.reason
        self.outcome.error_code = error.code
        self.outcome.error = error.reason
        self._audit.log_verification_step(self.outcome.account_id, name, step.status.value, step.message)

    def finish(self) -> VerificationOutcome:
        outcome = self.outcome
        outcome.verified = all(step.status is StepStatus.SUCCESS for step in outcome.steps)
        self._audit.log_verification_result(
            outcome.account_id, outcome.verified, outcome.error_code.value if outcome.error_code else None
        )
        return outcome


@dataclass
class _PassState:
    """Values produced by earlier steps and consumed by later ones."""

    record: Optional[VerificationRecord] = None
    zk_result: Optional[SelfVerificationResult] = None
    bundle: Optional[NearSignatureBundle] = None
    nullifier: Optional[str] = None
    already_stored: bool = False
    nonce_reserved: bool = False


Step = Callable[[_PassState], Awaitable[Optional[str]]]


class VerificationOrchestrator:
    """
    Composes proof, signature, replay and storage checks into one decision.

    All collaborators are injected. ``nonce_store``, ``key_checker`` and
    ``session_store`` are optional; their steps are left out of the plan
    when they are not provided.
    """

    def __init__(
        self,
        zk_verifier: ZkVerifier,
        contract: VerificationContract,
        *,
        signing_message: str = DEFAULT_SIGNING_MESSAGE,
        signing_recipient: Optional[str] = None,
        ofac_enabled: bool = False,
        max_signature_age_seconds: int = DEFAULT_MAX_SIGNATURE_AGE_SECONDS,
        nonce_store: Optional[NonceStore] = None,
        nonce_ttl_seconds: int = DEFAULT_NONCE_TTL_SECONDS,
        key_checker: Optional[AccessKeyChecker] = None,
        session_store: Optional[SessionStore] = None,
        audit_logger: Optional[AuditLogger] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.zk_verifier = zk_verifier
        self.contract = contract
        self.signing_message = signing_message
        self.signing_recipient = signing_recipient
        self.ofac_enabled = ofac_enabled
        self.max_signature_age_seconds = max_signature_age_seconds
        self.nonce_store = nonce_store
        self.nonce_ttl_seconds = nonce_ttl_seconds
        self.key_checker = key_checker
        self.session_store = session_store
        self.audit = audit_logger or get_audit_logger()
        self.clock = clock

    # ------------------------------------------------------------------
    # Pass runner
    # ------------------------------------------------------------------

    async def _run(
        self, trace: VerificationTrace, plan: List[Tuple[str, Step]], state: _PassState
    ) -> VerificationOutcome:
        for name, step in plan:
            trace.start(name)
            try:
                message = await step(state)
            except VerificationError as exc:
                trace.fail(name, exc)
                break
            except Exception as exc:
                logger.exception("Unexpected failure in verification step %s", name)
                trace.fail(name, VerificationError(VerificationErrorCode.INTERNAL_ERROR, str(exc)))
                break
            # Registration learns the account id only once the bundle is parsed.
            if trace.outcome.account_id is None and state.bundle is not None:
                trace.outcome.account_id = state.bundle.account_id
            trace.succeed(name, message)
        return trace.finish()

    def _recipient_for(self, bundle: NearSignatureBundle) -> str:
        return self.signing_recipient or bundle.account_id

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def verify_stored(self, account_id: str) -> VerificationOutcome:
        """Re-verify the on-chain record for ``account_id``."""

        plan = [
            (LOAD_ACCOUNT, lambda state: self._load_account(state, account_id)),
            (VERIFY_ZK_PROOF, self._reverify_zk_proof),
            (CHECK_MINIMUM_AGE, self._check_minimum_age),
        ]
        if self.ofac_enabled:
            plan.append((CHECK_OFAC, self._check_ofac))
        plan += [
            (PARSE_SIGNATURE_BUNDLE, self._parse_stored_bundle),
            (VERIFY_SIGNATURE, self._verify_signature),
        ]

        trace = VerificationTrace([name for name, _ in plan], self.audit, account_id)
        state = _PassState()
        outcome = await self._run(trace, plan, state)

        if outcome.verified:
            outcome.zk_reverified = state.zk_result is not None
        if state.record is not None and state.bundle is not None:
            outcome.proof_data = build_proof_data(
                state.record, state.bundle, self.signing_message, self._recipient_for(state.bundle)
            )
        return outcome

    async def register(self, submission: VerifyRequest) -> VerificationOutcome:
        """Verify a fresh proof submission and store it on chain."""

        plan = [
            (VERIFY_ZK_PROOF, lambda state: self._verify_submitted_proof(state, submission)),
            (CHECK_MINIMUM_AGE, self._check_minimum_age),
        ]
        if self.ofac_enabled:
            plan.append((CHECK_OFAC, self._check_ofac))
        plan += [
            (PARSE_SIGNATURE_BUNDLE, lambda state: self._parse_submitted_bundle(state, submission)),
            (CHECK_NULLIFIER, self._check_nullifier),
            (CHECK_SIGNATURE_FRESHNESS, self._check_freshness),
            (VERIFY_SIGNATURE, self._verify_signature),
        ]
        if self.key_checker is not None:
            plan.append((CHECK_KEY_LIVENESS, self._check_key_liveness))
        if self.nonce_store is not None:
            plan.append((CHECK_NONCE_REPLAY, self._reserve_nonce))
        plan.append((STORE_ON_CHAIN, lambda state: self._store_on_chain(state, submission)))

        trace = VerificationTrace([name for name, _ in plan], self.audit)
        state = _PassState()
        outcome = await self._run(trace, plan, state)
        outcome.account_id = state.bundle.account_id if state.bundle else None
        if outcome.verified:
            outcome.zk_reverified = True

        session_id = state.zk_result.user_identifier if state.zk_result else None
        if session_id:
            await self._update_session(session_id, outcome)
        return outcome

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _load_account(self, state: _PassState, account_id: str) -> Optional[str]:
        record = await self.contract.get_verification(account_id)
        if record is None:
            raise VerificationError(VerificationErrorCode.NOT_FOUND, account_id)
        state.record = record
        return None

    async def _reverify_zk_proof(self, state: _PassState) -> Optional[str]:
        record = state.record
        try:
            attestation_id = int(record.attestation_id)
        except ValueError as exc:
            raise VerificationError(
                VerificationErrorCode.VERIFICATION_FAILED, f"Invalid attestation id {record.attestation_id!r}"
            ) from exc

        try:
            result = await self.zk_verifier.verify(
                attestation_id,
                record.self_proof.proof,
                record.self_proof.public_signals,
                record.user_context_data,
            )
        except ZkVerifierUnavailable as exc:
            logger.warning("ZK re-verification unavailable for %s: %s", record.near_account_id, exc)
            return ZK_UNAVAILABLE_NOTE

        if result.is_valid is not True:
            raise VerificationError(VerificationErrorCode.VERIFICATION_FAILED, "Proof is not valid")
        state.zk_result = result
        return None

    async def _verify_submitted_proof(self, state: _PassState, submission: VerifyRequest) -> Optional[str]:
        try:
            result = await self.zk_verifier.verify(
                submission.attestation_id,
                submission.proof,
                submission.public_signals,
                submission.user_context_data,
            )
        except ZkVerifierUnavailable as exc:
            raise VerificationError(VerificationErrorCode.VERIFICATION_FAILED, str(exc)) from exc

        state.zk_result = result
        if not isinstance(result.is_valid, bool) or not isinstance(result.is_minimum_age_valid, bool):
            raise VerificationError(VerificationErrorCode.VERIFICATION_FAILED, "Invalid verifier response structure")
        if not result.is_valid:
            raise VerificationError(VerificationErrorCode.VERIFICATION_FAILED, "Proof is not valid")
        return None

    async def _check_minimum_age(self, state: _PassState) -> Optional[str]:
        if state.zk_result is None:
            return "Skipped (contract-verified)"
        if state.zk_result.is_minimum_age_valid is not True:
            raise VerificationError(VerificationErrorCode.MINIMUM_AGE_NOT_MET)
        return None

    async def _check_ofac(self, state: _PassState) -> Optional[str]:
        if state.zk_result is None:
            return "Skipped (contract-verified)"
        if state.zk_result.is_ofac_valid is False:
            raise VerificationError(VerificationErrorCode.OFAC_CHECK_FAILED)
        return None

    def _parse_bundle(self, state: _PassState, raw) -> Optional[str]:
        result = parse_signature_bundle(raw)
        if not result.ok:
            raise VerificationError(VerificationErrorCode.NEAR_SIGNATURE_MISSING, result.error)
        state.bundle = result.bundle
        return None

    async def _parse_stored_bundle(self, state: _PassState) -> Optional[str]:
        self._parse_bundle(state, state.record.user_context_data)
        if state.bundle.account_id != state.record.near_account_id:
            raise VerificationError(
                VerificationErrorCode.NEAR_SIGNATURE_INVALID, "Signature account does not match stored account"
            )
        return None

    async def _parse_submitted_bundle(self, state: _PassState, submission: VerifyRequest) -> Optional[str]:
        # Self.xyz echoes the browser's payload back as userDefinedData.
        raw = state.zk_result.user_defined_data if state.zk_result else None
        return self._parse_bundle(state, raw if raw else submission.user_context_data)

    async def _check_nullifier(self, state: _PassState) -> Optional[str]:
        nullifier = state.zk_result.nullifier
        if not nullifier:
            raise VerificationError(VerificationErrorCode.NULLIFIER_MISSING)
        state.nullifier = nullifier

        if not await self.contract.is_nullifier_used(nullifier):
            return None

        existing = await self.contract.get_verification(state.bundle.account_id)
        if existing is not None and existing.nullifier == nullifier:
            state.already_stored = True
            return "Already registered to this account"
        raise VerificationError(VerificationErrorCode.DUPLICATE_IDENTITY)

    async def _check_freshness(self, state: _PassState) -> Optional[str]:
        if state.already_stored:
            return "Skipped (already stored)"
        bundle = state.bundle
        check = check_signature_freshness(
            bundle.timestamp,
            bundle.nonce,
            self.max_signature_age_seconds,
            now_ms=int(self.clock() * 1000),
        )
        if not check.valid:
            raise VerificationError(check.code, check.error)
        return None

    async def _verify_signature(self, state: _PassState) -> Optional[str]:
        bundle = state.bundle
        check = verify_near_signature(
            self.signing_message,
            bundle.signature,
            bundle.public_key,
            bundle.nonce,
            self._recipient_for(bundle),
        )
        self.audit.log_signature_verification(bundle.public_key, check.valid, check.error)
        if not check.valid:
            raise VerificationError(VerificationErrorCode.NEAR_SIGNATURE_INVALID, check.error)
        return None

    async def _check_key_liveness(self, state: _PassState) -> Optional[str]:
        bundle = state.bundle
        check = await self.key_checker.has_full_access_key(bundle.account_id, bundle.public_key)
        if not check.is_full_access:
            raise VerificationError(
                VerificationErrorCode.NEAR_SIGNATURE_INVALID,
                check.error or "Public key is not a full-access key for this account",
            )
        return None

    async def _reserve_nonce(self, state: _PassState) -> Optional[str]:
        if state.already_stored:
            return "Skipped (already stored)"
        bundle = state.bundle
        reserved = await self.nonce_store.reserve(bundle.account_id, bundle.nonce, self.nonce_ttl_seconds)
        self.audit.log_nonce_reservation(bundle.account_id, reserved)
        if not reserved:
            raise VerificationError(VerificationErrorCode.NONCE_ALREADY_USED)
        state.nonce_reserved = True
        return None

    async def _store_on_chain(self, state: _PassState, submission: VerifyRequest) -> Optional[str]:
        if state.already_stored:
            return "Already stored"
        bundle = state.bundle
        record = VerificationRecord(
            nullifier=state.nullifier,
            near_account_id=bundle.account_id,
            attestation_id=str(submission.attestation_id),
            self_proof=SelfProof(proof=submission.proof, public_signals=submission.public_signals),
            user_context_data=submission.user_context_data,
            user_id=state.zk_result.user_identifier,
            signature=dataclasses.replace(
                bundle, challenge=self.signing_message, recipient=self._recipient_for(bundle)
            ),
        )
        try:
            await self.contract.store_verification(record)
        except VerificationError as exc:
            if exc.code is VerificationErrorCode.ACCOUNT_ALREADY_VERIFIED:
                return "Already stored"
            if exc.code in _STORE_PASSTHROUGH_CODES:
                raise
            await self._release_nonce(state)
            raise VerificationError(VerificationErrorCode.STORAGE_FAILED, exc.details or exc.reason) from exc
        except Exception:
            await self._release_nonce(state)
            raise
        return None

    async def _release_nonce(self, state: _PassState) -> None:
        # A failed write leaves nothing on chain; free the nonce for the redelivery.
        if not state.nonce_reserved:
            return
        bundle = state.bundle
        try:
            await self.nonce_store.release(bundle.account_id, bundle.nonce)
        except Exception as exc:
            logger.warning("Failed to release nonce for %s: %s", bundle.account_id, exc)
            return
        state.nonce_reserved = False
        self.audit.log_event("nonce_released", account_id=bundle.account_id)

    async def _update_session(self, session_id: str, outcome: VerificationOutcome) -> None:
        if self.session_store is None:
            return
        if outcome.verified:
            fields = {"status": "success", "accountId": outcome.account_id}
        else:
            fields = {
                "status": "error",
                "error": outcome.error,
                "errorCode": outcome.error_code.value if outcome.error_code else None,
            }
        try:
            await self.session_store.update(session_id, **fields)
        except Exception as exc:
            logger.warning("Failed to update session %s: %s", session_id[:8], exc)
