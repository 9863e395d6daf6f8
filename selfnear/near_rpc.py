"""NEAR JSON-RPC client with an explicit retry policy."""

from __future__ import annotations

import asyncio
import base64
import itertools
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Mapping, Optional

import requests

from selfnear.audit_logger import AuditLogger, get_audit_logger
from selfnear.models import AccessKeyCheck

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = {429, 500, 502, 503, 504}


class NearRpcError(Exception):
    """JSON-RPC or transport failure talking to a NEAR node."""

    def __init__(self, message: str, cause: Optional[str] = None, data: Any = None, transient: bool = False):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.data = data
        self.transient = transient


class NearRpcTimeout(NearRpcError):
    """The node gave up waiting; a broadcast transaction may still land."""


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff.

    ``initial_wait`` and ``max_wait`` are in seconds. ``delays()`` yields the
    pause before each retry, so a policy with ``max_attempts=3`` yields two.
    """

    max_attempts: int = 3
    initial_wait: float = 0.5
    backoff: float = 2.0
    max_wait: float = 8.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_wait < 0 or self.backoff < 1:
            raise ValueError("initial_wait must be >= 0 and backoff >= 1")

    def delays(self) -> Iterator[float]:
        wait = self.initial_wait
        for _ in range(self.max_attempts - 1):
            yield min(wait, self.max_wait)
            wait *= self.backoff

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "RetryPolicy":
        return cls(
            max_attempts=int(cfg.get("RPC_MAX_ATTEMPTS", 3)),
            initial_wait=int(cfg.get("RPC_INITIAL_WAIT_MS", 500)) / 1000.0,
            backoff=float(cfg.get("RPC_BACKOFF", 2.0)),
        )


def _cause_name(error: Mapping[str, Any]) -> Optional[str]:
    cause = error.get("cause")
    if isinstance(cause, Mapping):
        return cause.get("name")
    return error.get("name")


def _error_text(error: Mapping[str, Any]) -> str:
    data = error.get("data")
    if isinstance(data, (dict, list)):
        data = json.dumps(data)
    parts = [str(part) for part in (error.get("message"), data) if part]
    return ": ".join(parts) or "Unknown RPC error"


class NearRpcClient:
    """
    Thin synchronous JSON-RPC client over ``requests``.

    Transient failures (connection errors, timeouts, HTTP 429/5xx) are retried
    per ``retry_policy``. The coroutine wrappers at the bottom run the blocking
    request in a worker thread.
    """

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 10,
        session: Optional[requests.Session] = None,
        audit_logger: Optional[AuditLogger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.url = url
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self.session = session or requests.Session()
        self.audit = audit_logger or get_audit_logger()
        self._sleep = sleep
        self._ids = itertools.count(1)
        self.session.headers.update({"Content-Type": "application/json"})
        if api_key:
            self.session.headers["X-API-Key"] = api_key

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _post_once(self, method: str, params: Any) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            resp = self.session.post(self.url, json=payload, timeout=self.timeout)
        except requests.Timeout as exc:
            raise NearRpcTimeout(f"RPC request timed out: {exc}", cause="TIMEOUT_ERROR", transient=True) from exc
        except requests.ConnectionError as exc:
            raise NearRpcError(f"RPC connection failed: {exc}", cause="CONNECTION_ERROR", transient=True) from exc

        if resp.status_code in _TRANSIENT_STATUS:
            raise NearRpcError(f"RPC returned HTTP {resp.status_code}", cause="HTTP_ERROR", transient=True)
        if resp.status_code >= 300:
            raise NearRpcError(f"RPC returned HTTP {resp.status_code}: {resp.text[:200]}", cause="HTTP_ERROR")

        try:
            body = resp.json()
        except ValueError as exc:
            raise NearRpcError("RPC returned a non-JSON body", cause="PARSE_ERROR") from exc

        error = body.get("error")
        if error:
            cause = _cause_name(error)
            if cause == "TIMEOUT_ERROR":
                raise NearRpcTimeout(_error_text(error), cause=cause, data=error, transient=True)
            raise NearRpcError(_error_text(error), cause=cause, data=error)
        return body.get("result")

    def request(self, method: str, params: Any, retry: bool = True) -> Any:
        """Send one JSON-RPC request, retrying transient failures."""

        delays = self.retry_policy.delays() if retry else iter(())
        while True:
            try:
                result = self._post_once(method, params)
            except NearRpcError as exc:
                delay = next(delays, None) if exc.transient else None
                if delay is None:
                    self.audit.log_rpc_call(method, False, str(exc))
                    raise
                logger.warning("RPC %s failed (%s); retrying in %.2fs", method, exc, delay)
                self._sleep(delay)
                continue
            self.audit.log_rpc_call(method, True)
            return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def call_function(self, contract_id: str, method: str, args: Optional[Mapping[str, Any]] = None) -> Any:
        """Call a view method and decode its JSON return value."""

        params = {
            "request_type": "call_function",
            "finality": "final",
            "account_id": contract_id,
            "method_name": method,
            "args_base64": base64.b64encode(json.dumps(args or {}).encode("utf-8")).decode("ascii"),
        }
        result = self.request("query", params) or {}

        # Older nodes report view panics inside the result.
        if result.get("error"):
            raise NearRpcError(str(result["error"]), cause="CONTRACT_EXECUTION_ERROR", data=result)

        raw = bytes(result.get("result") or [])
        if not raw:
            return None
        return json.loads(raw.decode("utf-8"))

    def view_access_key(self, account_id: str, public_key: str) -> Dict[str, Any]:
        params = {
            "request_type": "view_access_key",
            "finality": "final",
            "account_id": account_id,
            "public_key": public_key,
        }
        result = self.request("query", params) or {}
        if result.get("error"):
            raise NearRpcError(str(result["error"]), cause="UNKNOWN_ACCESS_KEY", data=result)
        return result

    def send_transaction(self, signed_tx: bytes) -> Dict[str, Any]:
        """Broadcast a signed transaction and wait for its execution outcome.

        Not retried: a timed-out broadcast may still be executed.
        """
        encoded = base64.b64encode(signed_tx).decode("ascii")
        return self.request("broadcast_tx_commit", [encoded], retry=False) or {}

    def check_full_access_key(self, account_id: str, public_key: str) -> AccessKeyCheck:
        """Report whether ``public_key`` is a live full-access key on ``account_id``. Never raises."""

        try:
            access_key = self.view_access_key(account_id, public_key)
        except NearRpcError as exc:
            if exc.cause == "UNKNOWN_ACCESS_KEY" or "does not exist while viewing" in str(exc):
                return AccessKeyCheck(False, "Public key not found for account")
            if exc.cause == "UNKNOWN_ACCOUNT":
                return AccessKeyCheck(False, "Account not found")
            return AccessKeyCheck(False, f"RPC error: {exc}")

        permission = access_key.get("permission")
        if permission == "FullAccess" or (isinstance(permission, Mapping) and "FullAccess" in permission):
            return AccessKeyCheck(True)
        return AccessKeyCheck(False, "Public key is a function-call access key")

    # ------------------------------------------------------------------
    # Async wrappers
    # ------------------------------------------------------------------

    async def acall_function(self, contract_id: str, method: str, args: Optional[Mapping[str, Any]] = None) -> Any:
        return await asyncio.to_thread(self.call_function, contract_id, method, args)

    async def has_full_access_key(self, account_id: str, public_key: str) -> AccessKeyCheck:
        return await asyncio.to_thread(self.check_full_access_key, account_id, public_key)
