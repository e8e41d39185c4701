"""
State-mutating call dispatch.

The rebalancer never signs anything itself: every write is handed to a
dispatcher that signs, broadcasts and returns the transaction hash. In
production that is the remote signing service holding the delegation; the
LocalAccountDispatcher here signs with a local key for dev chains and forks.
"""

import logging
from typing import Any, Protocol

from eth_account import Account
from web3 import Web3

logger = logging.getLogger(__name__)


class ContractCallDispatcher(Protocol):
    """Signs and broadcasts one contract call, returning its tx hash."""

    def __call__(
        self,
        *,
        provider: Web3,
        pkp_public_key: str,
        caller_address: str,
        abi: list[dict],
        contract_address: str,
        function_name: str,
        args: list[Any],
    ) -> str: ...


class LocalAccountDispatcher:
    """
    Dispatcher backed by a private key held in-process.

    Only suitable for local nodes and test deployments. Refuses to sign for
    any caller other than the key's own address.
    """

    def __init__(self, private_key: str, gas_multiplier: float = 1.2, wait_for_receipt: bool = True,
                 receipt_timeout: float = 180.0):
        self.account = Account.from_key(private_key)
        self.gas_multiplier = gas_multiplier
        self.wait_for_receipt = wait_for_receipt
        self.receipt_timeout = receipt_timeout

    def __call__(
        self,
        *,
        provider: Web3,
        pkp_public_key: str,
        caller_address: str,
        abi: list[dict],
        contract_address: str,
        function_name: str,
        args: list[Any],
    ) -> str:
        if caller_address.lower() != self.account.address.lower():
            raise ValueError(
                f"Caller {caller_address} does not match local signer {self.account.address}"
            )

        contract = provider.eth.contract(
            address=Web3.to_checksum_address(contract_address), abi=abi
        )
        tx_func = contract.get_function_by_name(function_name)(*args)

        sender = self.account.address
        tx_params = {
            "from": sender,
            "nonce": provider.eth.get_transaction_count(sender, "pending"),
            "chainId": provider.eth.chain_id,
        }
        estimated_gas = tx_func.estimate_gas({"from": sender})
        tx_params["gas"] = int(estimated_gas * self.gas_multiplier)

        tx = tx_func.build_transaction(tx_params)
        signed = self.account.sign_transaction(tx)
        tx_hash = provider.eth.send_raw_transaction(signed.raw_transaction)
        tx_hash_hex = Web3.to_hex(tx_hash)
        logger.info("Sent %s to %s: %s", function_name, contract_address, tx_hash_hex)

        if self.wait_for_receipt:
            receipt = provider.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
            if receipt["status"] != 1:
                raise RuntimeError(f"Transaction {tx_hash_hex} ({function_name}) reverted on-chain")

        return tx_hash_hex
