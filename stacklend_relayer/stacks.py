"""
Stacks blockchain interaction via the Stacks API (Hiro).
"""

import enum
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import httpx
import structlog

from .decoder import BorrowPrint, DepositPrint, decode
from .errors import SourceReadError

logger = structlog.get_logger()

PAGE_SIZE = 50
MAX_PAGES = 10

TX_STATUS_SUCCESS = "success"
TX_TYPE_CONTRACT_CALL = "contract_call"

POOL_COLLATERAL = "collateral"
POOL_LENDING = "lending"


class EventKind(str, enum.Enum):
    """Kind of domain event a scan collects."""

    BORROW = "borrow"
    DEPOSIT = "deposit"


@dataclass(frozen=True)
class RawTxSummary:
    """Transaction summary from the address transaction listing."""

    tx_id: str
    height: Optional[int]
    status: str
    type: str
    contract_id: Optional[str]
    sender: str

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "RawTxSummary":
        contract_call = data.get("contract_call") or {}
        return cls(
            tx_id=data["tx_id"],
            height=data.get("block_height"),
            status=data.get("tx_status", ""),
            type=data.get("tx_type", ""),
            contract_id=contract_call.get("contract_id"),
            sender=data.get("sender_address", ""),
        )


@dataclass(frozen=True)
class BorrowRequested:
    """Borrow intent printed by the collateral contract."""

    id: str
    txid: str
    height: int
    user: str
    token_id: str
    amount: int
    dest_recipient: Optional[str]

    @property
    def key(self) -> str:
        return f"{EventKind.BORROW.value}:{self.id}"

    @property
    def sort_key(self) -> tuple[int, str, int]:
        return event_sort_key(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "txid": self.txid,
            "height": self.height,
            "user": self.user,
            "tokenId": self.token_id,
            "amount": str(self.amount),
            "destRecipient": self.dest_recipient,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BorrowRequested":
        return cls(
            id=data["id"],
            txid=data["txid"],
            height=int(data["height"]),
            user=data.get("user", ""),
            token_id=data.get("tokenId", ""),
            amount=int(data.get("amount", 0)),
            dest_recipient=data.get("destRecipient"),
        )


@dataclass(frozen=True)
class Deposited:
    """STX deposit into the collateral or lending pool."""

    id: str
    txid: str
    height: int
    user: str
    amount: int
    balance: int
    pool_kind: str

    @property
    def key(self) -> str:
        return f"{EventKind.DEPOSIT.value}:{self.id}"

    @property
    def sort_key(self) -> tuple[int, str, int]:
        return event_sort_key(self)


DomainEvent = Union[BorrowRequested, Deposited]


def event_sort_key(event: DomainEvent) -> tuple[int, str, int]:
    """Order by height, then transaction, then position within the transaction."""
    txid, _, index = event.id.rpartition(":")
    return (event.height, txid, int(index))


@dataclass
class ScanResult:
    """Events collected by one fetch, and whether every contract scan finished."""

    events: list[DomainEvent] = field(default_factory=list)
    complete: bool = True


def build_event(
    printed: Union[BorrowPrint, DepositPrint],
    tx: RawTxSummary,
    index: int,
    height: int,
    pool_kind: str,
) -> DomainEvent:
    """Attach transaction context to a decoded print payload."""
    event_id = f"{tx.tx_id}:{index}"
    user = printed.user or tx.sender
    if isinstance(printed, BorrowPrint):
        return BorrowRequested(
            id=event_id,
            txid=tx.tx_id,
            height=height,
            user=user,
            token_id=printed.token_id,
            amount=printed.amount,
            dest_recipient=printed.evm_recipient,
        )
    return Deposited(
        id=event_id,
        txid=tx.tx_id,
        height=height,
        user=user,
        amount=printed.amount,
        balance=printed.balance,
        pool_kind=pool_kind,
    )


class StacksApiClient:
    """Async client for the Stacks API, scoped to the lending protocol contracts."""

    def __init__(
        self,
        base_url: str,
        collateral_contract_id: str,
        lending_contract_id: Optional[str] = None,
        timeout: float = 30.0,
        max_pages: int = MAX_PAGES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.collateral_contract_id = collateral_contract_id
        self.lending_contract_id = lending_contract_id
        self.max_pages = max_pages
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def _get_json(self, url: str, params: Optional[dict[str, Any]] = None) -> Any:
        try:
            response = await self.client.get(url, params=params)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise SourceReadError(f"GET {url} failed: {e}") from e

    async def tip_height(self) -> int:
        """Get current Stacks tip height."""
        data = await self._get_json(f"{self.base_url}/v2/info")
        return int(data.get("stacks_tip_height") or data.get("tip_height") or 0)

    async def list_contract_txs(
        self, contract_id: str, limit: int = PAGE_SIZE, offset: int = 0
    ) -> list[RawTxSummary]:
        """Get a page of transactions for a contract address (newest first)."""
        data = await self._get_json(
            f"{self.base_url}/extended/v1/address/{contract_id}/transactions",
            params={"limit": limit, "offset": offset, "unanchored": "false"},
        )
        return [RawTxSummary.from_api(item) for item in (data or {}).get("results", [])]

    async def get_tx(self, txid: str) -> dict[str, Any]:
        """Get transaction details including its event log."""
        return await self._get_json(f"{self.base_url}/extended/v1/tx/{txid}")

    async def tx_events(self, txid: str) -> list[Optional[str]]:
        """
        Get the ordered print representations of a transaction's events.

        Entries without a print value are kept as ``None`` so that list
        positions remain the event indexes.
        """
        details = await self.get_tx(txid)
        return [_event_repr(event) for event in details.get("events") or []]

    def watched_contracts(self, kind: EventKind) -> list[tuple[str, str]]:
        """Contracts scanned for an event kind, paired with their pool kind."""
        contracts = [(self.collateral_contract_id, POOL_COLLATERAL)]
        if kind is EventKind.DEPOSIT and self.lending_contract_id:
            contracts.append((self.lending_contract_id, POOL_LENDING))
        return contracts

    async def fetch_events_since(
        self,
        kind: EventKind,
        watermark: int,
        confirmations: int,
        tip: Optional[int] = None,
    ) -> ScanResult:
        """
        Collect finalized events of one kind above the watermark.

        An event is included when ``watermark < height <= tip - confirmations``.
        Callers scanning several kinds in one cycle pass the same ``tip`` to
        each scan; it is read from the node when omitted.

        A failed or truncated contract scan is logged and reported through
        ``ScanResult.complete``; other contracts are still scanned.
        """
        if tip is None:
            try:
                tip = await self.tip_height()
            except SourceReadError as e:
                logger.error("stacks_tip_failed", kind=kind.value, error=str(e))
                return ScanResult(complete=False)

        safe_height = tip - confirmations
        if safe_height <= watermark:
            logger.debug(
                "stacks_nothing_final", kind=kind.value, tip=tip, watermark=watermark
            )
            return ScanResult()

        result = ScanResult()
        for contract_id, pool_kind in self.watched_contracts(kind):
            try:
                events, finished = await self._scan_contract(
                    contract_id, kind, pool_kind, watermark, safe_height
                )
            except SourceReadError as e:
                logger.error(
                    "stacks_scan_failed",
                    kind=kind.value,
                    contract=contract_id,
                    error=str(e),
                )
                result.complete = False
                continue
            result.events.extend(events)
            if not finished:
                result.complete = False

        result.events.sort(key=event_sort_key)
        return result

    async def _scan_contract(
        self,
        contract_id: str,
        kind: EventKind,
        pool_kind: str,
        watermark: int,
        safe_height: int,
    ) -> tuple[list[DomainEvent], bool]:
        """
        Scan one contract's listing newest-first down to the watermark.

        Returns the matching events and whether the listing reached the
        watermark (or its end) within ``max_pages``.
        """
        wanted = BorrowPrint if kind is EventKind.BORROW else DepositPrint
        events: list[DomainEvent] = []
        finished = True

        for page_number in range(self.max_pages):
            page = await self.list_contract_txs(
                contract_id, limit=PAGE_SIZE, offset=page_number * PAGE_SIZE
            )
            if not page:
                break

            for tx in page:
                if tx.status != TX_STATUS_SUCCESS or tx.type != TX_TYPE_CONTRACT_CALL:
                    continue
                if tx.contract_id != contract_id:
                    continue
                if tx.height is None or not watermark < tx.height <= safe_height:
                    continue

                for index, representation in enumerate(await self.tx_events(tx.tx_id)):
                    printed = decode(representation)
                    if isinstance(printed, wanted):
                        events.append(build_event(printed, tx, index, tx.height, pool_kind))

            oldest = page[-1].height or 0
            if oldest <= watermark or len(page) < PAGE_SIZE:
                break
        else:
            # Older transactions are unread; the watermark must not pass them.
            finished = False
            logger.warning(
                "stacks_page_cap_reached",
                kind=kind.value,
                contract=contract_id,
                pages=self.max_pages,
            )

        logger.debug(
            "stacks_contract_scanned",
            kind=kind.value,
            contract=contract_id,
            events=len(events),
            finished=finished,
        )
        return events, finished

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def _event_repr(event: dict[str, Any]) -> Optional[str]:
    for container in ("print_event", "contract_log"):
        value = (event.get(container) or {}).get("value") or {}
        if value.get("repr"):
            return value["repr"]
    return None
