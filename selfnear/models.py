"""
Domain models for passport verification.

Plain dataclasses shared by the parser, the orchestrator and the contract
client. Wire formats (camelCase from Self.xyz and the browser, snake_case
from the NEAR contract) are converted at the ``from_*`` / ``to_*`` edges.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from selfnear.errors import VerificationError, VerificationErrorCode

# Must match the contract's storage limits.
SIZE_LIMITS = {
    "NULLIFIER": 80,
    "PROOF_COMPONENT": 80,
    "USER_CONTEXT_DATA": 4096,
    "MAX_BATCH_SIZE": 100,
}
MAX_PUBLIC_SIGNALS = 21
ATTESTATION_IDS = (1, 2, 3)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


def _field_element(value: Any, path: str) -> str:
    """Normalise one Groth16 field element to a bounded decimal string."""
    if isinstance(value, bool):
        raise ValueError(f"{path}: expected a field element")
    if isinstance(value, int):
        value = str(value)
    if not isinstance(value, str) or not value.isdigit():
        raise ValueError(f"{path}: expected a decimal string")
    if len(value) > SIZE_LIMITS["PROOF_COMPONENT"]:
        raise ValueError(f"{path}: exceeds {SIZE_LIMITS['PROOF_COMPONENT']} characters")
    return value


def _pair(value: Any, path: str) -> Tuple[str, str]:
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise ValueError(f"{path}: expected 2 elements")
    return (_field_element(value[0], f"{path}.0"), _field_element(value[1], f"{path}.1"))


@dataclass(frozen=True)
class ZkProof:
    """Groth16 proof points (a: G1, b: G2, c: G1)."""

    a: Tuple[str, str]
    b: Tuple[Tuple[str, str], Tuple[str, str]]
    c: Tuple[str, str]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ZkProof":
        if not isinstance(data, Mapping):
            raise ValueError("proof: expected an object")
        b = data.get("b")
        if not isinstance(b, (list, tuple)) or len(b) != 2:
            raise ValueError("proof.b: expected 2 rows")
        return cls(
            a=_pair(data.get("a"), "proof.a"),
            b=(_pair(b[0], "proof.b.0"), _pair(b[1], "proof.b.1")),
            c=_pair(data.get("c"), "proof.c"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"a": list(self.a), "b": [list(self.b[0]), list(self.b[1])], "c": list(self.c)}


def parse_public_signals(values: Any) -> Tuple[str, ...]:
    if not isinstance(values, (list, tuple)):
        raise ValueError("publicSignals: expected an array")
    if len(values) > MAX_PUBLIC_SIGNALS:
        raise ValueError(f"publicSignals: at most {MAX_PUBLIC_SIGNALS} signals allowed")
    return tuple(_field_element(v, f"publicSignals.{i}") for i, v in enumerate(values))


@dataclass(frozen=True)
class SelfProof:
    proof: ZkProof
    public_signals: Tuple[str, ...]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SelfProof":
        signals = data.get("public_signals", data.get("publicSignals"))
        return cls(proof=ZkProof.from_dict(data.get("proof")), public_signals=parse_public_signals(signals))

    def to_contract(self) -> Dict[str, Any]:
        return {"proof": self.proof.to_dict(), "public_signals": list(self.public_signals)}


@dataclass(frozen=True)
class NearSignatureBundle:
    """Signature material recovered from user context data."""

    account_id: str
    signature: str
    public_key: str
    nonce: bytes
    timestamp: Optional[int] = None
    challenge: Optional[str] = None
    recipient: Optional[str] = None

    @property
    def nonce_b64(self) -> str:
        return base64.b64encode(self.nonce).decode("ascii")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "accountId": self.account_id,
            "signature": self.signature,
            "publicKey": self.public_key,
            "nonce": self.nonce_b64,
        }
        if self.timestamp is not None:
            data["timestamp"] = self.timestamp
        if self.challenge is not None:
            data["challenge"] = self.challenge
        if self.recipient is not None:
            data["recipient"] = self.recipient
        return data


@dataclass(frozen=True)
class SelfVerificationResult:
    """Typed view of a Self.xyz ``verify()`` response."""

    is_valid: Optional[bool]
    is_minimum_age_valid: Optional[bool]
    is_ofac_valid: Optional[bool] = None
    nullifier: Optional[str] = None
    user_identifier: Optional[str] = None
    user_defined_data: Any = None
    nationality: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SelfVerificationResult":
        details = payload.get("isValidDetails") or {}
        disclose = payload.get("discloseOutput") or {}
        user_data = payload.get("userData") or {}
        nullifier = disclose.get("nullifier")
        nationality = disclose.get("nationality")
        return cls(
            is_valid=details.get("isValid"),
            is_minimum_age_valid=details.get("isMinimumAgeValid"),
            is_ofac_valid=details.get("isOfacValid"),
            nullifier=str(nullifier) if nullifier not in (None, "") else None,
            user_identifier=user_data.get("userIdentifier"),
            user_defined_data=user_data.get("userDefinedData"),
            nationality=nationality if isinstance(nationality, str) else None,
        )


@dataclass(frozen=True)
class VerificationRecord:
    """A verification as stored by the contract."""

    nullifier: str
    near_account_id: str
    attestation_id: str
    self_proof: SelfProof
    user_context_data: str
    verified_at: Optional[int] = None  # milliseconds
    user_id: Optional[str] = None
    signature: Optional[NearSignatureBundle] = None

    @classmethod
    def from_contract(cls, data: Mapping[str, Any]) -> "VerificationRecord":
        verified_at = data.get("verified_at")
        if verified_at is not None:
            # Contract timestamps are block nanoseconds.
            verified_at = int(verified_at) // 1_000_000
        return cls(
            nullifier=str(data["nullifier"]),
            near_account_id=str(data["near_account_id"]),
            attestation_id=str(data["attestation_id"]),
            self_proof=SelfProof.from_dict(data["self_proof"]),
            user_context_data=str(data.get("user_context_data") or ""),
            verified_at=verified_at,
            user_id=data.get("user_id"),
        )

    def to_contract_args(self) -> Dict[str, Any]:
        if self.signature is None:
            raise ValueError("signature is required to store a verification")
        sig = self.signature
        # The contract takes the signature and nonce as raw byte arrays.
        return {
            "nullifier": self.nullifier,
            "near_account_id": self.near_account_id,
            "user_id": self.user_id or "",
            "attestation_id": self.attestation_id,
            "signature_data": {
                "account_id": sig.account_id,
                "signature": list(base64.b64decode(sig.signature)),
                "public_key": sig.public_key,
                "challenge": sig.challenge,
                "nonce": list(sig.nonce),
                "recipient": sig.recipient,
            },
            "self_proof": self.self_proof.to_contract(),
            "user_context_data": self.user_context_data,
        }

    def summary(self) -> Dict[str, Any]:
        return {
            "nearAccountId": self.near_account_id,
            "nullifier": self.nullifier,
            "attestationId": self.attestation_id,
            "verifiedAt": self.verified_at,
        }


@dataclass
class VerificationStep:
    name: str
    status: StepStatus = StepStatus.PENDING
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name, "status": self.status.value}
        if self.message is not None:
            data["message"] = self.message
        return data


@dataclass(frozen=True)
class ProofData:
    """Everything a third party needs to re-verify a stored verification."""

    nullifier: str
    user_id: Optional[str]
    attestation_id: str
    verified_at: Optional[int]
    zk_proof: ZkProof
    public_signals: Tuple[str, ...]
    signature: Dict[str, Any]
    user_context_data: str
    nep413_hash: str
    public_key_hex: str
    signature_hex: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nullifier": self.nullifier,
            "userId": self.user_id,
            "attestationId": self.attestation_id,
            "verifiedAt": self.verified_at,
            "zkProof": self.zk_proof.to_dict(),
            "publicSignals": list(self.public_signals),
            "signature": dict(self.signature),
            "userContextData": self.user_context_data,
            "nearSignatureVerification": {
                "nep413Hash": self.nep413_hash,
                "publicKeyHex": self.public_key_hex,
                "signatureHex": self.signature_hex,
            },
        }


@dataclass
class VerificationOutcome:
    steps: List[VerificationStep] = field(default_factory=list)
    verified: bool = False
    error_code: Optional[VerificationErrorCode] = None
    error: Optional[str] = None
    account_id: Optional[str] = None
    proof_data: Optional[ProofData] = None
    # False when live ZK re-verification was skipped because the verifier was unreachable.
    zk_reverified: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "verified": self.verified,
            "steps": [step.to_dict() for step in self.steps],
        }
        if self.account_id:
            data["nearAccountId"] = self.account_id
        if self.error_code is not None:
            data["code"] = self.error_code.value
        if self.error:
            data["error"] = self.error
        if self.zk_reverified is not None:
            data["zkReverified"] = self.zk_reverified
        if self.proof_data is not None:
            data["proofData"] = self.proof_data.to_dict()
        return data


@dataclass(frozen=True)
class VerificationPage:
    accounts: List[VerificationRecord]
    total: int


@dataclass(frozen=True)
class AccessKeyCheck:
    is_full_access: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class VerifyRequest:
    attestation_id: int
    proof: ZkProof
    public_signals: Tuple[str, ...]
    user_context_data: str


def parse_verify_request(body: Any) -> VerifyRequest:
    """
    Validate an incoming proof submission.

    Raises:
        VerificationError: MISSING_FIELDS naming every invalid field
    """
    if not isinstance(body, Mapping):
        raise VerificationError(VerificationErrorCode.MISSING_FIELDS, "body")

    problems: List[str] = []

    attestation_id = body.get("attestationId")
    try:
        attestation_id = int(attestation_id)
        if attestation_id not in ATTESTATION_IDS:
            raise ValueError
    except (TypeError, ValueError):
        problems.append("attestationId")

    proof = None
    try:
        proof = ZkProof.from_dict(body.get("proof"))
    except ValueError as exc:
        problems.append(str(exc).split(":", 1)[0])

    signals: Tuple[str, ...] = ()
    try:
        signals = parse_public_signals(body.get("publicSignals"))
    except ValueError as exc:
        problems.append(str(exc).split(":", 1)[0])

    user_context_data = body.get("userContextData")
    if not isinstance(user_context_data, str) or not user_context_data:
        problems.append("userContextData")
    elif len(user_context_data) > SIZE_LIMITS["USER_CONTEXT_DATA"]:
        problems.append("userContextData")

    if problems:
        raise VerificationError(VerificationErrorCode.MISSING_FIELDS, ", ".join(problems))

    return VerifyRequest(
        attestation_id=attestation_id,
        proof=proof,
        public_signals=signals,
        user_context_data=user_context_data,
    )
