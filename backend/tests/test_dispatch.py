"""
Tests for the local-key dispatcher: caller check, nonce/gas wiring,
signing and receipt status handling.

Run: cd backend && uv run python tests/test_dispatch.py
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from eth_account import Account

from fake_chain import addr
from lp_rebalancer.abis import CORNERSTONE_PROJECT_ABI
from lp_rebalancer.dispatch import LocalAccountDispatcher

# well-known throwaway key (hardhat account #0)
PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
SIGNER = Account.from_key(PRIVATE_KEY).address
PROJECT = addr(0x100)


class FakeTxFunction:
    def __init__(self, contract_address, args):
        self.contract_address = contract_address
        self.args = args
        self.built_with = None

    def estimate_gas(self, params):
        return 50_000

    def build_transaction(self, params):
        self.built_with = params
        return {
            "to": self.contract_address,
            "value": 0,
            "data": "0x",
            "gas": params["gas"],
            "gasPrice": 10 ** 9,
            "nonce": params["nonce"],
            "chainId": params["chainId"],
        }


class FakeWriteContract:
    def __init__(self, address, provider):
        self.address = address
        self.provider = provider

    def get_function_by_name(self, name):
        def bind(*args):
            fn = FakeTxFunction(self.address, args)
            self.provider.bound.append((name, fn))
            return fn
        return bind


class FakeWriteEth:
    chain_id = 1

    def __init__(self, provider, status):
        self.provider = provider
        self.status = status

    def contract(self, address, abi):
        return FakeWriteContract(address, self.provider)

    def get_transaction_count(self, address, block_identifier):
        self.provider.nonce_queries.append((address, block_identifier))
        return 7

    def send_raw_transaction(self, raw):
        self.provider.sent.append(raw)
        return b"\x12" * 32

    def wait_for_transaction_receipt(self, tx_hash, timeout):
        return {"status": self.status}


class FakeWriteProvider:
    def __init__(self, status=1):
        self.bound = []
        self.nonce_queries = []
        self.sent = []
        self.eth = FakeWriteEth(self, status)


def _dispatch(dispatcher, provider, caller=SIGNER):
    return dispatcher(
        provider=provider,
        pkp_public_key="0x04",
        caller_address=caller,
        abi=CORNERSTONE_PROJECT_ABI,
        contract_address=PROJECT,
        function_name="accrueInterest",
        args=[],
    )


def test_refuses_foreign_caller() -> None:
    provider = FakeWriteProvider()
    try:
        _dispatch(LocalAccountDispatcher(PRIVATE_KEY), provider, caller=addr(0x999))
    except ValueError as exc:
        assert "does not match" in str(exc)
    else:
        raise AssertionError("expected ValueError")
    assert provider.sent == []
    print("  [PASS] refuses_foreign_caller")


def test_signs_and_sends() -> None:
    """Pending nonce, padded gas estimate, one raw transaction, hex hash back."""
    provider = FakeWriteProvider()

    tx_hash = _dispatch(LocalAccountDispatcher(PRIVATE_KEY, gas_multiplier=1.5), provider)

    assert tx_hash == "0x" + "12" * 32
    assert provider.nonce_queries == [(SIGNER, "pending")]
    (name, fn), = provider.bound
    assert name == "accrueInterest"
    assert fn.built_with["gas"] == 75_000
    assert fn.built_with["nonce"] == 7
    assert len(provider.sent) == 1
    print("  [PASS] signs_and_sends")


def test_reverted_receipt_raises() -> None:
    provider = FakeWriteProvider(status=0)
    try:
        _dispatch(LocalAccountDispatcher(PRIVATE_KEY), provider)
    except RuntimeError as exc:
        assert "reverted" in str(exc)
    else:
        raise AssertionError("expected RuntimeError")
    print("  [PASS] reverted_receipt_raises")


def test_no_receipt_wait() -> None:
    provider = FakeWriteProvider(status=0)
    dispatcher = LocalAccountDispatcher(PRIVATE_KEY, wait_for_receipt=False)
    assert _dispatch(dispatcher, provider).startswith("0x")
    print("  [PASS] no_receipt_wait")


if __name__ == "__main__":
    print("=== test_dispatch.py ===")
    test_refuses_foreign_caller()
    test_signs_and_sends()
    test_reverted_receipt_raises()
    test_no_receipt_wait()
    print("\nAll dispatch tests passed.")
