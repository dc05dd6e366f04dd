"""
EVM interaction for executing borrow and repay calls on the destination chain.
"""

from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound

from .errors import (
    DestinationUnavailableError,
    ExecutionError,
    InsufficientFundsError,
    ValidationError,
)

logger = structlog.get_logger()

# Gas margin applied on top of the node's estimate.
GAS_BUFFER_PERCENT = 20

DEFAULT_MIN_BALANCE_WEI = 10**17

# Borrow controller ABI (relayer-facing subset)
CONTROLLER_ABI = [
    {
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "recipient", "type": "address"},
        ],
        "name": "borrow",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "from", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "repay",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "token", "type": "address"}],
        "name": "allowedToken",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "relayer",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
]


def with_gas_buffer(estimate: int) -> int:
    return estimate + estimate * GAS_BUFFER_PERCENT // 100


@dataclass
class DestinationHealth:
    """Snapshot of the signer and controller on the destination chain."""

    signer_address: str
    balance_wei: int
    balance: str
    block_number: int
    is_authorized: bool
    rpc_url: str


class DestinationExecutor:
    """
    Submits relayer transactions to the borrow controller.

    Submission is fire-and-forget: ``submit_*`` returns the transaction hash
    as soon as the node accepts it. Outcomes are checked later through
    :meth:`receipt_status`.
    """

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        controller_address: str,
        min_balance_wei: int = DEFAULT_MIN_BALANCE_WEI,
    ):
        self.rpc_url = rpc_url
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.account = Account.from_key(private_key)
        self.controller = self.w3.eth.contract(
            address=Web3.to_checksum_address(controller_address),
            abi=CONTROLLER_ABI,
        )
        self.min_balance_wei = min_balance_wei

        logger.info(
            "evm_client_initialized",
            rpc_url=rpc_url,
            controller=controller_address,
            sender=self.account.address,
        )

    @property
    def address(self) -> str:
        return self.account.address

    async def signer_balance(self) -> int:
        return await self.w3.eth.get_balance(self.address)

    async def is_token_allowed(self, token: str) -> bool:
        return bool(await self.controller.functions.allowedToken(token).call())

    async def health(self) -> DestinationHealth:
        """Query signer balance, chain head and relayer authorization."""
        balance = await self.signer_balance()
        block_number = await self.w3.eth.block_number
        relayer = await self.controller.functions.relayer().call()

        return DestinationHealth(
            signer_address=self.address,
            balance_wei=balance,
            balance=str(Web3.from_wei(balance, "ether")),
            block_number=int(block_number),
            is_authorized=str(relayer).lower() == self.address.lower(),
            rpc_url=self.rpc_url,
        )

    async def preflight(
        self,
        token: str,
        recipient: Optional[str],
        amount: int,
        check_balance: bool = True,
    ) -> None:
        """
        Validate a call before submitting it.

        Raises:
            ValidationError: Missing/invalid recipient, non-positive amount,
                or token not on the controller's allow-list.
            InsufficientFundsError: Signer balance below the operating
                minimum (only when ``check_balance``).
            DestinationUnavailableError: The destination RPC could not be queried.
        """
        if not recipient:
            raise ValidationError("Missing EVM recipient address")
        if not Web3.is_address(recipient):
            raise ValidationError(f"Invalid EVM recipient address: {recipient}")
        if amount <= 0:
            raise ValidationError(f"Invalid amount: {amount}")

        balance = None
        try:
            allowed = await self.is_token_allowed(token)
            if check_balance:
                balance = await self.signer_balance()
        except Exception as e:
            logger.error("preflight_query_failed", token=token, error=str(e))
            raise DestinationUnavailableError(token, recipient, amount, e) from e

        if not allowed:
            raise ValidationError(f"Token {token} is not allowed by the controller")
        if balance is not None and balance < self.min_balance_wei:
            raise InsufficientFundsError(balance, self.min_balance_wei)

    async def submit_borrow(self, token: str, recipient: str, amount: int) -> str:
        """Call ``borrow(token, amount, recipient)`` and return the tx hash."""
        return await self._submit(
            "borrow", token, recipient, amount, lambda to: (token, amount, to)
        )

    async def submit_repay(self, token: str, sender: str, amount: int) -> str:
        """Call ``repay(token, from, amount)`` and return the tx hash."""
        return await self._submit(
            "repay", token, sender, amount, lambda sender_: (token, sender_, amount)
        )

    async def _submit(
        self,
        fn_name: str,
        token: str,
        counterparty: str,
        amount: int,
        build_args: Callable[[str], tuple[Any, ...]],
    ) -> str:
        try:
            args = build_args(Web3.to_checksum_address(counterparty))
            call = getattr(self.controller.functions, fn_name)(*args)
            gas_estimate = await call.estimate_gas({"from": self.address})
            nonce = await self.w3.eth.get_transaction_count(self.address, "pending")
            tx = await call.build_transaction(
                {
                    "from": self.address,
                    "nonce": nonce,
                    "gas": with_gas_buffer(gas_estimate),
                }
            )

            signed = self.account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as e:
            logger.error(
                f"{fn_name}_submission_error",
                token=token,
                counterparty=counterparty,
                amount=str(amount),
                error=str(e),
            )
            raise ExecutionError(token, counterparty, amount, e) from e

        tx_hash_hex = Web3.to_hex(tx_hash)
        logger.info(
            f"{fn_name}_tx_sent",
            tx_hash=tx_hash_hex,
            token=token,
            counterparty=counterparty,
            amount=str(amount),
            gas_estimate=gas_estimate,
            nonce=nonce,
        )
        return tx_hash_hex

    async def receipt_status(self, tx_hash: str) -> Optional[bool]:
        """True if mined successfully, False if reverted, None if not yet mined."""
        try:
            receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        return receipt["status"] == 1

    async def close(self) -> None:
        await self.w3.provider.disconnect()
