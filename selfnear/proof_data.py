"""Export a stored verification in a form third parties can re-verify offline."""

from __future__ import annotations

from typing import Optional

from selfnear.models import NearSignatureBundle, ProofData, VerificationRecord
from selfnear.signature import compute_nep413_hash_hex, extract_ed25519_public_key_hex, signature_hex


def build_proof_data(
    record: VerificationRecord,
    bundle: Optional[NearSignatureBundle],
    challenge: str,
    recipient: Optional[str] = None,
) -> Optional[ProofData]:
    """
    Assemble the audit bundle for ``record``.

    The hash, key and signature hex values are exactly the intermediates the
    signature verifier uses, so an external Ed25519 check over them matches
    ours. Returns None when no signature bundle could be parsed or its key
    or signature are malformed.
    """
    if bundle is None:
        return None

    recipient = recipient or bundle.account_id
    try:
        nep413_hash = compute_nep413_hash_hex(challenge, bundle.nonce, recipient)
        public_key_hex = extract_ed25519_public_key_hex(bundle.public_key)
        sig_hex = signature_hex(bundle.signature)
    except ValueError:
        return None

    return ProofData(
        nullifier=record.nullifier,
        user_id=record.user_id,
        attestation_id=record.attestation_id,
        verified_at=record.verified_at,
        zk_proof=record.self_proof.proof,
        public_signals=record.self_proof.public_signals,
        signature={
            "accountId": bundle.account_id,
            "publicKey": bundle.public_key,
            "signature": bundle.signature,
            "nonce": bundle.nonce_b64,
            "challenge": challenge,
            "recipient": recipient,
        },
        user_context_data=record.user_context_data,
        nep413_hash=nep413_hash,
        public_key_hex=public_key_hex,
        signature_hex=sig_hex,
    )
