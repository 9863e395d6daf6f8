"""Redis-backed nonce and session stores.

The stores hold a synchronous ``redis.Redis`` client and run each command in
a worker thread. Flask runs every async view on a fresh event loop, so the
connection pool must not belong to any one loop.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import time
from typing import Any, Dict, Mapping, Optional

import redis
from redis.exceptions import RedisError

from selfnear.audit_logger import AuditLogger, get_audit_logger
from selfnear.security import _build_redis_uri

logger = logging.getLogger(__name__)

NONCE_KEY_PREFIX = "self-nonce"
SESSION_KEY_PREFIX = "self-session"
SESSION_TTL_SECONDS = 300

SESSION_STATUSES = ("pending", "success", "error")


def nonce_key(account_id: str, nonce: bytes) -> str:
    return f"{NONCE_KEY_PREFIX}:{account_id}:{base64.b64encode(nonce).decode('ascii')}"


def session_key(session_id: str) -> str:
    return f"{SESSION_KEY_PREFIX}:{session_id}"


def get_redis(cfg: Mapping[str, Any]) -> redis.Redis:
    """Create a Redis client from application config."""
    return redis.Redis.from_url(
        _build_redis_uri(cfg),
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        health_check_interval=30,
    )


class RedisNonceStore:
    """One-shot nonce reservations using ``SET NX EX``."""

    def __init__(self, client: redis.Redis):
        self.redis = client

    async def reserve(self, account_id: str, nonce: bytes, ttl_seconds: int) -> bool:
        key = nonce_key(account_id, nonce)
        result = await asyncio.to_thread(self.redis.set, key, "1", nx=True, ex=ttl_seconds)
        return bool(result)

    async def release(self, account_id: str, nonce: bytes) -> None:
        await asyncio.to_thread(self.redis.delete, nonce_key(account_id, nonce))


class RedisSessionStore:
    """
    Verification status shared between the proof callback and the polling UI.

    Sessions are JSON documents under ``self-session:<id>`` that expire after
    ``ttl_seconds``. Every write refreshes the expiry.
    """

    def __init__(
        self,
        client: redis.Redis,
        ttl_seconds: int = SESSION_TTL_SECONDS,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self.redis = client
        self.ttl_seconds = ttl_seconds
        self.audit = audit_logger or get_audit_logger()

    async def _write(self, session_id: str, session: Dict[str, Any]) -> None:
        await asyncio.to_thread(self.redis.set, session_key(session_id), json.dumps(session), ex=self.ttl_seconds)

    async def create(self, session_id: str, account_id: Optional[str] = None) -> Dict[str, Any]:
        session: Dict[str, Any] = {"status": "pending", "timestamp": int(time.time() * 1000)}
        if account_id:
            session["accountId"] = account_id
        await self._write(session_id, session)
        self.audit.log_session_updated(session_id, "pending")
        return session

    async def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        raw = await asyncio.to_thread(self.redis.get, session_key(session_id))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable session %s", session_id)
            return None

    async def update(self, session_id: str, **fields: Any) -> None:
        if fields.get("status") not in SESSION_STATUSES:
            raise ValueError(f"Invalid session status: {fields.get('status')!r}")

        try:
            existing = await self.get(session_id) or {}
            session = {**existing, **{k: v for k, v in fields.items() if v is not None}}
            session["timestamp"] = int(time.time() * 1000)
            await self._write(session_id, session)
        except RedisError as exc:
            logger.error("Failed to update session %s: %s", session_id, exc)
            raise

        self.audit.log_session_updated(session_id, session["status"])

    async def delete(self, session_id: str) -> None:
        await asyncio.to_thread(self.redis.delete, session_key(session_id))
