"""
Client for the on-chain verification registry contract.

Reads are view calls; ``store_verification`` is a signed ``FunctionCall``
from the backend wallet. The contract is the source of truth for
uniqueness: it rejects a second record for the same account, nullifier or
signature, and those panics come back here as ``ContractError`` with a
mapped code.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import base58

from selfnear.errors import ContractError, VerificationErrorCode, map_contract_error_to_code
from selfnear.models import SIZE_LIMITS, VerificationPage, VerificationRecord
from selfnear.near_rpc import NearRpcClient, NearRpcError, NearRpcTimeout, RetryPolicy
from selfnear.transactions import FunctionCall, KeyPair, Transaction, sign_transaction

logger = logging.getLogger(__name__)

# Confirmation polling after an ambiguous broadcast. Mainnet finality is slower.
TESTNET_POLL_POLICY = RetryPolicy(max_attempts=10, initial_wait=0.5, backoff=1.5, max_wait=5.0)
MAINNET_POLL_POLICY = RetryPolicy(max_attempts=15, initial_wait=2.0, backoff=1.5, max_wait=8.0)

_PANIC_MARKER = "Smart contract panicked:"


def _find_execution_error(value: Any) -> Optional[str]:
    """Return the first ``ExecutionError`` message nested anywhere in ``value``."""
    if isinstance(value, dict):
        for key, item in value.items():
            if key == "ExecutionError" and isinstance(item, str):
                return item
            found = _find_execution_error(item)
            if found:
                return found
    elif isinstance(value, list):
        for item in value:
            found = _find_execution_error(item)
            if found:
                return found
    return None


def extract_panic_message(text: str) -> str:
    """Strip the ``Smart contract panicked:`` wrapper from an error message."""
    if _PANIC_MARKER in text:
        return text.split(_PANIC_MARKER, 1)[1].strip().strip('"')
    return text


def _contract_error(message: str) -> ContractError:
    panic = extract_panic_message(message)
    code = map_contract_error_to_code(panic) or VerificationErrorCode.STORAGE_FAILED
    return ContractError(code, panic)


class NearVerificationContract:
    """
    Verification registry client.

    Without ``signer_account_id`` / ``signer_key`` the client is read-only and
    ``store_verification`` fails with ``STORAGE_FAILED``.
    """

    def __init__(
        self,
        rpc: NearRpcClient,
        contract_id: str,
        signer_account_id: Optional[str] = None,
        signer_key: Optional[KeyPair] = None,
        poll_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.rpc = rpc
        self.contract_id = contract_id
        self.signer_account_id = signer_account_id
        self.signer_key = signer_key
        if poll_policy is None:
            poll_policy = MAINNET_POLL_POLICY if contract_id.endswith(".near") else TESTNET_POLL_POLICY
        self.poll_policy = poll_policy
        self._sleep = sleep

    @property
    def writable(self) -> bool:
        return bool(self.signer_account_id and self.signer_key)

    def _view(self, method: str, args: Dict[str, Any]) -> Any:
        try:
            return self.rpc.call_function(self.contract_id, method, args)
        except NearRpcError as exc:
            raise ContractError(VerificationErrorCode.INTERNAL_ERROR, f"{method}: {exc}") from exc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _is_verified(self, account_id: str) -> bool:
        return bool(self._view("is_account_verified", {"near_account_id": account_id}))

    async def is_verified(self, account_id: str) -> bool:
        return await asyncio.to_thread(self._is_verified, account_id)

    async def is_nullifier_used(self, nullifier: str) -> bool:
        result = await asyncio.to_thread(self._view, "is_nullifier_used", {"nullifier": nullifier})
        return bool(result)

    def _get_verification(self, account_id: str) -> Optional[VerificationRecord]:
        data = self._view("get_verified_account", {"near_account_id": account_id})
        if not data:
            return None
        try:
            return VerificationRecord.from_contract(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise ContractError(
                VerificationErrorCode.INTERNAL_ERROR, f"Malformed record for {account_id}: {exc}"
            ) from exc

    async def get_verification(self, account_id: str) -> Optional[VerificationRecord]:
        return await asyncio.to_thread(self._get_verification, account_id)

    async def get_verified_count(self) -> int:
        result = await asyncio.to_thread(self._view, "get_verified_count", {})
        return int(result or 0)

    def _list_verifications(self, from_index: int, limit: int) -> VerificationPage:
        limit = max(0, min(limit, SIZE_LIMITS["MAX_BATCH_SIZE"]))
        total = int(self._view("get_verified_count", {}) or 0)
        rows = self._view("get_verified_accounts", {"from_index": from_index, "limit": limit}) or []

        accounts: List[VerificationRecord] = []
        for row in rows:
            try:
                accounts.append(VerificationRecord.from_contract(row))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed verification record: %s", exc)
        return VerificationPage(accounts=accounts, total=total)

    async def list_verifications(self, from_index: int = 0, limit: int = 50) -> VerificationPage:
        return await asyncio.to_thread(self._list_verifications, from_index, limit)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _poll_for_verification(self, account_id: str) -> bool:
        for attempt, delay in enumerate(self.poll_policy.delays(), start=1):
            try:
                if self._is_verified(account_id):
                    logger.info("Verification for %s confirmed on poll attempt %d", account_id, attempt)
                    return True
            except ContractError as exc:
                logger.warning("Poll attempt %d for %s failed: %s", attempt, account_id, exc)
            self._sleep(delay)
        return self._is_verified(account_id)

    def _build_signed_transaction(self, record: VerificationRecord) -> bytes:
        access_key = self.rpc.view_access_key(self.signer_account_id, self.signer_key.public_key)
        transaction = Transaction(
            signer_id=self.signer_account_id,
            public_key=self.signer_key.public_key_bytes,
            nonce=int(access_key["nonce"]) + 1,
            receiver_id=self.contract_id,
            block_hash=base58.b58decode(access_key["block_hash"]),
            actions=[FunctionCall.with_json_args("store_verification", record.to_contract_args())],
        )
        return sign_transaction(transaction, self.signer_key)

    def _store_verification(self, record: VerificationRecord) -> None:
        if not self.writable:
            raise ContractError(VerificationErrorCode.STORAGE_FAILED, "Contract client is read-only")

        try:
            signed = self._build_signed_transaction(record)
            outcome = self.rpc.send_transaction(signed)
        except NearRpcTimeout as exc:
            logger.warning("store_verification timed out for %s; polling for confirmation", record.near_account_id)
            if self._poll_for_verification(record.near_account_id):
                return
            raise ContractError(VerificationErrorCode.STORAGE_FAILED, f"Not confirmed after timeout: {exc}") from exc
        except NearRpcError as exc:
            raise _contract_error(str(exc)) from exc

        status = outcome.get("status") or {}
        if "Failure" in status:
            message = _find_execution_error(status["Failure"]) or str(status["Failure"])
            raise _contract_error(message)

        logger.info(
            "Stored verification for %s in tx %s",
            record.near_account_id,
            (outcome.get("transaction") or {}).get("hash"),
        )

    async def store_verification(self, record: VerificationRecord) -> None:
        await asyncio.to_thread(self._store_verification, record)
