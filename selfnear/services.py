"""Wiring of the verification collaborators from application config."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from selfnear.audit_logger import AuditLogger, get_audit_logger
from selfnear.contract import NearVerificationContract
from selfnear.interfaces import VerificationContract
from selfnear.near_rpc import NearRpcClient, RetryPolicy
from selfnear.orchestrator import VerificationOrchestrator
from selfnear.redis_store import RedisNonceStore, RedisSessionStore, get_redis
from selfnear.security import redis_configured
from selfnear.self_verifier import HttpZkVerifier, UnconfiguredZkVerifier
from selfnear.storage import InMemoryNonceStore, InMemorySessionStore, InMemoryVerificationContract
from selfnear.transactions import KeyPair

logger = logging.getLogger(__name__)


@dataclass
class Services:
    orchestrator: VerificationOrchestrator
    contract: VerificationContract
    session_store: Any
    rpc: Optional[NearRpcClient] = None


def build_services(cfg: Mapping[str, Any], audit_logger: Optional[AuditLogger] = None) -> Services:
    """Build the production object graph; falls back to in-memory stores when Redis or a contract is absent."""

    audit = audit_logger or get_audit_logger()

    rpc = NearRpcClient(
        cfg["NEAR_RPC_URL"],
        api_key=cfg.get("NEAR_RPC_API_KEY"),
        retry_policy=RetryPolicy.from_config(cfg),
        timeout=cfg.get("RPC_TIMEOUT", 10),
        audit_logger=audit,
    )

    contract: VerificationContract
    if cfg.get("NEAR_CONTRACT_ID"):
        signer_key = KeyPair.from_string(cfg["NEAR_PRIVATE_KEY"]) if cfg.get("NEAR_PRIVATE_KEY") else None
        contract = NearVerificationContract(
            rpc,
            cfg["NEAR_CONTRACT_ID"],
            signer_account_id=cfg.get("NEAR_ACCOUNT_ID"),
            signer_key=signer_key,
        )
        logger.info(f"✅ Verification contract: {cfg['NEAR_CONTRACT_ID']} ({cfg.get('NEAR_NETWORK')})")
    else:
        contract = InMemoryVerificationContract()
        logger.warning("NEAR_CONTRACT_ID not set - using in-memory verification registry")

    if redis_configured(cfg):
        client = get_redis(cfg)
        nonce_store = RedisNonceStore(client)
        session_store = RedisSessionStore(client, ttl_seconds=cfg.get("SESSION_TTL_SECONDS", 300), audit_logger=audit)
    else:
        logger.warning("Redis not configured - nonces and sessions are kept in process memory")
        nonce_store = InMemoryNonceStore()
        session_store = InMemorySessionStore(ttl_seconds=cfg.get("SESSION_TTL_SECONDS", 300))

    if cfg.get("SELF_VERIFIER_URL"):
        zk_verifier = HttpZkVerifier(cfg["SELF_VERIFIER_URL"], timeout=cfg.get("SELF_VERIFIER_TIMEOUT", 30))
    else:
        logger.warning("SELF_VERIFIER_URL not set - proof verification is unavailable")
        zk_verifier = UnconfiguredZkVerifier()

    orchestrator = VerificationOrchestrator(
        zk_verifier,
        contract,
        signing_message=cfg.get("SIGNING_MESSAGE", "Identify myself"),
        signing_recipient=cfg.get("SIGNING_RECIPIENT"),
        ofac_enabled=bool(cfg.get("SELF_OFAC_ENABLED")),
        max_signature_age_seconds=cfg.get("MAX_SIGNATURE_AGE_SECONDS", 600),
        nonce_store=nonce_store,
        nonce_ttl_seconds=cfg.get("NONCE_TTL_SECONDS", 86400),
        key_checker=rpc if cfg.get("KEY_LIVENESS_CHECK") else None,
        session_store=session_store,
        audit_logger=audit,
    )
    return Services(orchestrator=orchestrator, contract=contract, session_store=session_store, rpc=rpc)
