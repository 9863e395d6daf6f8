"""
Unit tests for the verification registry contract client.
"""

import base64
import json
from unittest.mock import MagicMock

import base58
import pytest

from conftest import ACCOUNT_ID, NULLIFIER, PROOF, PUBLIC_SIGNALS, SIGNING_MESSAGE
from selfnear.contract import (
    MAINNET_POLL_POLICY,
    TESTNET_POLL_POLICY,
    NearVerificationContract,
    extract_panic_message,
)
from selfnear.errors import ContractError, VerificationErrorCode
from selfnear.models import NearSignatureBundle, SelfProof, VerificationRecord, ZkProof
from selfnear.near_rpc import NearRpcError, NearRpcTimeout, RetryPolicy
from selfnear.transactions import KeyPair

CONTRACT_ID = "registry.testnet"

CONTRACT_RECORD = {
    "nullifier": NULLIFIER,
    "near_account_id": ACCOUNT_ID,
    "attestation_id": "1",
    "verified_at": 1_700_000_000_000_000_000,
    "user_id": "session-1",
    "self_proof": {"proof": PROOF, "public_signals": PUBLIC_SIGNALS},
    "user_context_data": "7b7d",
}


@pytest.fixture
def rpc():
    mock = MagicMock()
    mock.view_access_key.return_value = {"nonce": 41, "block_hash": base58.b58encode(bytes(32)).decode()}
    mock.send_transaction.return_value = {"status": {"SuccessValue": ""}, "transaction": {"hash": "abc"}}
    return mock


@pytest.fixture
def signer(near_key):
    return KeyPair.from_string(near_key.secret_key)


@pytest.fixture
def contract(rpc, signer):
    return NearVerificationContract(
        rpc,
        CONTRACT_ID,
        signer_account_id="relayer.testnet",
        signer_key=signer,
        poll_policy=RetryPolicy(max_attempts=3, initial_wait=0),
        sleep=lambda _: None,
    )


@pytest.fixture
def record(near_key):
    nonce = bytes(range(32))
    return VerificationRecord(
        nullifier=NULLIFIER,
        near_account_id=ACCOUNT_ID,
        attestation_id="1",
        self_proof=SelfProof(ZkProof.from_dict(PROOF), tuple(PUBLIC_SIGNALS)),
        user_context_data="7b7d",
        user_id="session-1",
        signature=NearSignatureBundle(
            account_id=ACCOUNT_ID,
            signature=near_key.sign_nep413(SIGNING_MESSAGE, nonce, ACCOUNT_ID),
            public_key=near_key.public_key,
            nonce=nonce,
            challenge=SIGNING_MESSAGE,
            recipient=ACCOUNT_ID,
        ),
    )


def _failure(message):
    return {
        "status": {
            "Failure": {
                "ActionError": {
                    "index": 0,
                    "kind": {"FunctionCallError": {"ExecutionError": f"Smart contract panicked: {message}"}},
                }
            }
        }
    }


class TestPollPolicy:
    """Test network-dependent confirmation polling."""

    def test_default_policy_by_network(self, rpc):
        """Test mainnet contracts poll longer."""
        assert NearVerificationContract(rpc, "registry.near").poll_policy is MAINNET_POLL_POLICY
        assert NearVerificationContract(rpc, CONTRACT_ID).poll_policy is TESTNET_POLL_POLICY


class TestReads:
    """Test view calls."""

    @pytest.mark.asyncio
    async def test_is_verified(self, contract, rpc):
        """Test the account check calls the view method."""
        rpc.call_function.return_value = True

        assert await contract.is_verified(ACCOUNT_ID) is True
        rpc.call_function.assert_called_with(CONTRACT_ID, "is_account_verified", {"near_account_id": ACCOUNT_ID})

    @pytest.mark.asyncio
    async def test_is_nullifier_used(self, contract, rpc):
        """Test nullifier lookups."""
        rpc.call_function.return_value = False

        assert await contract.is_nullifier_used(NULLIFIER) is False
        rpc.call_function.assert_called_with(CONTRACT_ID, "is_nullifier_used", {"nullifier": NULLIFIER})

    @pytest.mark.asyncio
    async def test_get_verification(self, contract, rpc):
        """Test records are decoded with millisecond timestamps."""
        rpc.call_function.return_value = CONTRACT_RECORD

        stored = await contract.get_verification(ACCOUNT_ID)

        assert stored.nullifier == NULLIFIER
        assert stored.verified_at == 1_700_000_000_000
        assert stored.self_proof.public_signals == tuple(PUBLIC_SIGNALS)

    @pytest.mark.asyncio
    async def test_get_verification_missing(self, contract, rpc):
        """Test an absent record returns None."""
        rpc.call_function.return_value = None

        assert await contract.get_verification(ACCOUNT_ID) is None

    @pytest.mark.asyncio
    async def test_get_verification_malformed(self, contract, rpc):
        """Test a record missing fields raises INTERNAL_ERROR."""
        rpc.call_function.return_value = {"near_account_id": ACCOUNT_ID}

        with pytest.raises(ContractError) as exc_info:
            await contract.get_verification(ACCOUNT_ID)

        assert exc_info.value.code is VerificationErrorCode.INTERNAL_ERROR

    @pytest.mark.asyncio
    async def test_rpc_failure(self, contract, rpc):
        """Test view transport failures surface as INTERNAL_ERROR."""
        rpc.call_function.side_effect = NearRpcError("connection refused")

        with pytest.raises(ContractError) as exc_info:
            await contract.is_verified(ACCOUNT_ID)

        assert exc_info.value.code is VerificationErrorCode.INTERNAL_ERROR

    @pytest.mark.asyncio
    async def test_list_verifications(self, contract, rpc):
        """Test pagination caps the limit and skips malformed rows."""

        def _call(contract_id, method, args):
            if method == "get_verified_count":
                return 2
            return [CONTRACT_RECORD, {"broken": True}]

        rpc.call_function.side_effect = _call

        page = await contract.list_verifications(0, 1000)

        assert page.total == 2
        assert len(page.accounts) == 1
        rows_call = rpc.call_function.call_args_list[-1]
        assert rows_call.args[1] == "get_verified_accounts"
        assert rows_call.args[2]["limit"] == 100


class TestStoreVerification:
    """Test the signed write path."""

    @pytest.mark.asyncio
    async def test_success(self, contract, rpc, record, signer):
        """Test a successful store signs one FunctionCall with the next nonce."""
        await contract.store_verification(record)

        rpc.view_access_key.assert_called_once_with("relayer.testnet", signer.public_key)
        signed = rpc.send_transaction.call_args.args[0]
        assert isinstance(signed, bytes)
        assert b"store_verification" in signed
        assert json.dumps(NULLIFIER).encode() in signed

    @pytest.mark.asyncio
    async def test_contract_panic_mapped(self, contract, rpc, record):
        """Test contract panics become coded ContractErrors."""
        rpc.send_transaction.return_value = _failure("Nullifier already used - passport already registered")

        with pytest.raises(ContractError) as exc_info:
            await contract.store_verification(record)

        assert exc_info.value.code is VerificationErrorCode.DUPLICATE_IDENTITY
        assert exc_info.value.details == "Nullifier already used - passport already registered"

    @pytest.mark.asyncio
    async def test_unmapped_panic(self, contract, rpc, record):
        """Test unknown panics fall back to STORAGE_FAILED."""
        rpc.send_transaction.return_value = _failure("Exceeded the prepaid gas")

        with pytest.raises(ContractError) as exc_info:
            await contract.store_verification(record)

        assert exc_info.value.code is VerificationErrorCode.STORAGE_FAILED

    @pytest.mark.asyncio
    async def test_timeout_confirmed_by_poll(self, contract, rpc, record):
        """Test a timed-out broadcast succeeds once the record appears."""
        rpc.send_transaction.side_effect = NearRpcTimeout("timeout", cause="TIMEOUT_ERROR", transient=True)
        rpc.call_function.side_effect = [False, True]

        await contract.store_verification(record)

        assert rpc.call_function.call_count == 2

    @pytest.mark.asyncio
    async def test_timeout_never_confirmed(self, contract, rpc, record):
        """Test a timed-out broadcast fails when polling never sees the record."""
        rpc.send_transaction.side_effect = NearRpcTimeout("timeout", cause="TIMEOUT_ERROR", transient=True)
        rpc.call_function.return_value = False

        with pytest.raises(ContractError) as exc_info:
            await contract.store_verification(record)

        assert exc_info.value.code is VerificationErrorCode.STORAGE_FAILED
        assert rpc.call_function.call_count == 3

    @pytest.mark.asyncio
    async def test_read_only(self, rpc, record):
        """Test a client without a signer refuses to write."""
        contract = NearVerificationContract(rpc, CONTRACT_ID)

        with pytest.raises(ContractError) as exc_info:
            await contract.store_verification(record)

        assert exc_info.value.code is VerificationErrorCode.STORAGE_FAILED
        rpc.send_transaction.assert_not_called()

    def test_contract_args_carry_raw_bytes(self, record):
        """Test the signature and nonce are passed as byte arrays."""
        args = record.to_contract_args()

        assert args["signature_data"]["signature"] == list(base64.b64decode(record.signature.signature))
        assert args["signature_data"]["nonce"] == list(range(32))


class TestPanicMessages:
    """Test panic text extraction."""

    def test_strips_wrapper(self):
        assert extract_panic_message('Smart contract panicked: "NEAR account already verified"') == (
            "NEAR account already verified"
        )

    def test_plain_text_unchanged(self):
        assert extract_panic_message("boom") == "boom"
