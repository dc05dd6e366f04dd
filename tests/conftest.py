"""
Shared fixtures: settings, in-memory chain reader, recording executor.
"""

import asyncio
from pathlib import Path
from typing import Callable, Optional

import pytest
from web3 import Web3

from stacklend_relayer.config import RelayerConfig, Settings
from stacklend_relayer.errors import InsufficientFundsError, ValidationError
from stacklend_relayer.evm import DestinationHealth
from stacklend_relayer.relayer import StackLendRelayer
from stacklend_relayer.stacks import BorrowRequested, Deposited, EventKind, ScanResult
from stacklend_relayer.state import StateStore

PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
CONTROLLER = "0x" + "cc" * 20
USDC = Web3.to_checksum_address("0x" + "aa" * 20)
RECIPIENT = "0x" + "11" * 20
SIGNER = "0x2c7536E3605D9C16a7a3D7b1898e529396a65c23"
COLLATERAL_CONTRACT = "SP3FBR2AGK5H9QBDH3EEN6DF8EK8JY7RX8QJ5SVTE.collateral-v1"
USER = "SP2J6ZY48GV1EZ5V2V5RB9MP66SW86PYKKNRV9EJ7"


class FakeReader:
    """In-memory chain reader honoring the watermark and finality filter."""

    def __init__(self) -> None:
        self.events: dict[EventKind, list] = {EventKind.BORROW: [], EventKind.DEPOSIT: []}
        self.complete = {EventKind.BORROW: True, EventKind.DEPOSIT: True}
        self.errors: dict[EventKind, Exception] = {}
        self.calls: list[tuple[EventKind, int, int]] = []
        self.tip = 1_000_000
        self.tips: list[int] = []
        self.tip_error: Optional[Exception] = None
        self.scan_tips: list[int] = []
        self.closed = False

    async def tip_height(self) -> int:
        if self.tip_error is not None:
            raise self.tip_error
        if self.tips:
            return self.tips.pop(0)
        return self.tip

    async def fetch_events_since(
        self,
        kind: EventKind,
        watermark: int,
        confirmations: int,
        tip: Optional[int] = None,
    ) -> ScanResult:
        self.calls.append((kind, watermark, confirmations))
        if kind in self.errors:
            raise self.errors[kind]
        if tip is None:
            tip = await self.tip_height()
        self.scan_tips.append(tip)
        safe_height = tip - confirmations
        events = [e for e in self.events[kind] if watermark < e.height <= safe_height]
        return ScanResult(events=events, complete=self.complete[kind])

    async def close(self) -> None:
        self.closed = True


class FakeExecutor:
    """Destination executor that records submissions instead of sending them."""

    address = SIGNER

    def __init__(self) -> None:
        self.submitted: list[tuple[str, str, int]] = []
        self.repaid: list[tuple[str, str, int]] = []
        self.low_balance = False
        self.preflight_errors: dict[str, Exception] = {}
        self.submit_errors: dict[str, Exception] = {}
        self.receipts: dict[str, Optional[bool]] = {}
        self.gate: Optional[asyncio.Event] = None
        self.entered: Optional[asyncio.Event] = None
        self.health_error: Optional[Exception] = None
        self.closed = False

    async def preflight(self, token, recipient, amount, check_balance=True) -> None:
        if not recipient:
            raise ValidationError("Missing EVM recipient address")
        if amount <= 0:
            raise ValidationError(f"Invalid amount: {amount}")
        if recipient in self.preflight_errors:
            raise self.preflight_errors[recipient]
        if check_balance and self.low_balance:
            raise InsufficientFundsError(10**15, 10**17)

    async def submit_borrow(self, token: str, recipient: str, amount: int) -> str:
        if self.entered is not None:
            self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if recipient in self.submit_errors:
            raise self.submit_errors[recipient]
        self.submitted.append((token, recipient, amount))
        return "0x" + f"{len(self.submitted):064x}"

    async def submit_repay(self, token: str, sender: str, amount: int) -> str:
        self.repaid.append((token, sender, amount))
        return "0x" + f"{len(self.repaid):064x}"

    async def receipt_status(self, tx_hash: str) -> Optional[bool]:
        return self.receipts.get(tx_hash)

    async def health(self) -> DestinationHealth:
        if self.health_error is not None:
            raise self.health_error
        return DestinationHealth(
            signer_address=SIGNER,
            balance_wei=2 * 10**17,
            balance="0.2",
            block_number=4_200_000,
            is_authorized=True,
            rpc_url="https://scroll.test",
        )

    async def close(self) -> None:
        self.closed = True


def make_settings(tmp_path: Path, **overrides) -> Settings:
    values = dict(
        stacks_api_url="https://stacks.test",
        collateral_contract_id=COLLATERAL_CONTRACT,
        stacks_confirmations=1,
        scroll_rpc_url="https://scroll.test",
        relayer_private_key=PRIVATE_KEY,
        borrow_controller=CONTROLLER,
        token_map={"USDC": USDC},
        state_file=tmp_path / "state.json",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def config(settings) -> RelayerConfig:
    return RelayerConfig(settings=settings)


@pytest.fixture
def reader() -> FakeReader:
    return FakeReader()


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def store(settings) -> StateStore:
    return StateStore(settings.state_file)


@pytest.fixture
def relayer(config, reader, executor, store) -> StackLendRelayer:
    return StackLendRelayer(config, stacks_client=reader, executor=executor, store=store)


@pytest.fixture
def make_borrow() -> Callable[..., BorrowRequested]:
    def _make(
        n: int,
        height: int,
        index: int = 0,
        token_id: str = "USDC",
        amount: int = 500_000,
        recipient: Optional[str] = RECIPIENT,
    ) -> BorrowRequested:
        txid = f"0x{n:064x}"
        return BorrowRequested(
            id=f"{txid}:{index}",
            txid=txid,
            height=height,
            user=USER,
            token_id=token_id,
            amount=amount,
            dest_recipient=recipient,
        )

    return _make


@pytest.fixture
def make_deposit() -> Callable[..., Deposited]:
    def _make(n: int, height: int, index: int = 0, amount: int = 1_000_000) -> Deposited:
        txid = f"0x{n:064x}"
        return Deposited(
            id=f"{txid}:{index}",
            txid=txid,
            height=height,
            user=USER,
            amount=amount,
            balance=amount,
            pool_kind="collateral",
        )

    return _make
