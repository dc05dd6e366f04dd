"""
Tests for the Stacks API chain reader.
"""

from typing import Any, Optional

import httpx
import pytest

from stacklend_relayer.stacks import (
    PAGE_SIZE,
    POOL_COLLATERAL,
    POOL_LENDING,
    BorrowRequested,
    Deposited,
    EventKind,
    StacksApiClient,
)

CONTRACT = "SP3FBR2AGK5H9QBDH3EEN6DF8EK8JY7RX8QJ5SVTE.collateral-v1"
LENDING = "SP3FBR2AGK5H9QBDH3EEN6DF8EK8JY7RX8QJ5SVTE.lending-v1"
SENDER = "SP2J6ZY48GV1EZ5V2V5RB9MP66SW86PYKKNRV9EJ7"
RECIPIENT = "0x" + "ab" * 20


def _txid(n: int) -> str:
    return f"0x{n:064x}"


def _tx(
    n: int,
    height: int,
    contract: str = CONTRACT,
    status: str = "success",
    tx_type: str = "contract_call",
) -> dict[str, Any]:
    return {
        "tx_id": _txid(n),
        "block_height": height,
        "tx_status": status,
        "tx_type": tx_type,
        "sender_address": SENDER,
        "contract_call": {"contract_id": contract, "function_name": "borrow"},
    }


def _borrow_repr(amount: int = 500000, user: Optional[str] = None) -> str:
    user_field = f' (user "{user}")' if user else ""
    return (
        f'(tuple (amount u{amount}) (event "borrow-request") '
        f'(evm-recipient {RECIPIENT}) (token-id "USDC"){user_field})'
    )


def _deposit_repr(amount: int = 1000) -> str:
    return f"(tuple (amount u{amount}) (balance u{amount}) (event \"deposit\") (user '{SENDER}))"


class FakeStacksApi:
    """Serves the handful of Stacks API routes the reader uses."""

    def __init__(self, tip: int):
        self.tip = tip
        self.txs: dict[str, list[dict[str, Any]]] = {}
        self.events: dict[str, list[Optional[str]]] = {}
        self.failing_paths: set[str] = set()
        self.requests: list[httpx.Request] = []

    def add(self, tx: dict[str, Any], reprs: list[Optional[str]]) -> None:
        contract = tx["contract_call"]["contract_id"]
        self.txs.setdefault(contract, []).append(tx)
        self.events[tx["tx_id"]] = reprs

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path in self.failing_paths:
            return httpx.Response(503, json={"error": "unavailable"})

        if path == "/v2/info":
            return httpx.Response(200, json={"stacks_tip_height": self.tip})

        if path.startswith("/extended/v1/address/"):
            contract = path.split("/")[4]
            offset = int(request.url.params["offset"])
            limit = int(request.url.params["limit"])
            listing = sorted(
                self.txs.get(contract, []), key=lambda t: t["block_height"], reverse=True
            )
            return httpx.Response(200, json={"results": listing[offset:offset + limit]})

        if path.startswith("/extended/v1/tx/"):
            txid = path.rsplit("/", 1)[1]
            events = []
            for index, repr_ in enumerate(self.events.get(txid, [])):
                if repr_ is None:
                    events.append({"event_index": index, "event_type": "stx_asset"})
                else:
                    events.append(
                        {
                            "event_index": index,
                            "event_type": "smart_contract_log",
                            "contract_log": {"value": {"repr": repr_}},
                        }
                    )
            return httpx.Response(200, json={"tx_id": txid, "events": events})

        return httpx.Response(404)

    def listing_requests(self, contract: str = CONTRACT) -> list[httpx.Request]:
        return [r for r in self.requests if f"/address/{contract}/" in r.url.path]


def _client(
    api: FakeStacksApi, lending: Optional[str] = None, max_pages: int = 10
) -> StacksApiClient:
    return StacksApiClient(
        "https://stacks.test/",
        CONTRACT,
        lending,
        max_pages=max_pages,
        transport=httpx.MockTransport(api.handler),
    )


class TestFinality:
    """Confirmation depth and watermark bounds."""

    @pytest.mark.asyncio
    async def test_event_below_confirmation_depth_excluded_until_tip_advances(self):
        api = FakeStacksApi(tip=110)
        api.add(_tx(1, 108), [_borrow_repr()])
        client = _client(api)

        result = await client.fetch_events_since(EventKind.BORROW, 100, 3)
        assert result.complete
        assert result.events == []

        api.tip = 111
        result = await client.fetch_events_since(EventKind.BORROW, 100, 3)
        assert [e.height for e in result.events] == [108]

        await client.close()

    @pytest.mark.asyncio
    async def test_supplied_tip_used_without_reading_node(self):
        api = FakeStacksApi(tip=110)
        api.add(_tx(1, 108), [_borrow_repr()])
        client = _client(api)

        result = await client.fetch_events_since(EventKind.BORROW, 100, 3, tip=111)

        assert [e.height for e in result.events] == [108]
        assert all(r.url.path != "/v2/info" for r in api.requests)
        await client.close()

    @pytest.mark.asyncio
    async def test_events_at_or_below_watermark_excluded(self):
        api = FakeStacksApi(tip=200)
        api.add(_tx(1, 100), [_borrow_repr()])
        api.add(_tx(2, 101), [_borrow_repr()])
        client = _client(api)

        result = await client.fetch_events_since(EventKind.BORROW, 100, 1)

        assert [e.txid for e in result.events] == [_txid(2)]
        await client.close()

    @pytest.mark.asyncio
    async def test_nothing_final_skips_listing(self):
        api = FakeStacksApi(tip=101)
        api.add(_tx(1, 101), [_borrow_repr()])
        client = _client(api)

        result = await client.fetch_events_since(EventKind.BORROW, 100, 1)

        assert result.complete
        assert result.events == []
        assert api.listing_requests() == []
        await client.close()


class TestFiltering:
    """Transaction filtering and event construction."""

    @pytest.mark.asyncio
    async def test_only_successful_calls_to_watched_contract(self):
        api = FakeStacksApi(tip=50)
        api.add(_tx(1, 10), [_borrow_repr()])
        api.add(_tx(2, 11, status="abort_by_response"), [_borrow_repr()])
        api.add(_tx(3, 12, tx_type="token_transfer"), [_borrow_repr()])
        # Listed under the watched address but calling another contract
        other = _tx(4, 13)
        other["contract_call"]["contract_id"] = "SP000000000000000000002Q6VF78.pox-4"
        api.txs[CONTRACT].append(other)
        api.events[other["tx_id"]] = [_borrow_repr()]
        client = _client(api)

        result = await client.fetch_events_since(EventKind.BORROW, 0, 1)

        assert [e.txid for e in result.events] == [_txid(1)]
        await client.close()

    @pytest.mark.asyncio
    async def test_event_id_uses_log_position(self):
        api = FakeStacksApi(tip=50)
        api.add(_tx(1, 10), [None, "u1", _borrow_repr(amount=42)])
        client = _client(api)

        result = await client.fetch_events_since(EventKind.BORROW, 0, 1)

        (event,) = result.events
        assert isinstance(event, BorrowRequested)
        assert event.id == f"{_txid(1)}:2"
        assert event.key == f"borrow:{_txid(1)}:2"
        assert event.amount == 42
        assert event.token_id == "USDC"
        assert event.dest_recipient == RECIPIENT
        await client.close()

    @pytest.mark.asyncio
    async def test_user_falls_back_to_tx_sender(self):
        other_user = "SP1P72Z3704VMT3DMHPP2CB8TGQWGDBHD3RPR9GZS"
        api = FakeStacksApi(tip=50)
        api.add(_tx(1, 10), [_borrow_repr()])
        api.add(_tx(2, 11), [_borrow_repr(user=other_user)])
        client = _client(api)

        result = await client.fetch_events_since(EventKind.BORROW, 0, 1)

        assert [e.user for e in result.events] == [SENDER, other_user]
        await client.close()

    @pytest.mark.asyncio
    async def test_events_sorted_by_height_then_position(self):
        api = FakeStacksApi(tip=50)
        api.add(_tx(3, 30), [_borrow_repr()])
        api.add(_tx(1, 10), [_borrow_repr(), _borrow_repr()])
        api.add(_tx(2, 20), [_borrow_repr()])
        client = _client(api)

        result = await client.fetch_events_since(EventKind.BORROW, 0, 1)

        assert [e.id for e in result.events] == [
            f"{_txid(1)}:0",
            f"{_txid(1)}:1",
            f"{_txid(2)}:0",
            f"{_txid(3)}:0",
        ]
        await client.close()


class TestDeposits:
    """Deposit scans cover both pools."""

    @pytest.mark.asyncio
    async def test_deposits_read_from_collateral_and_lending(self):
        api = FakeStacksApi(tip=50)
        api.add(_tx(1, 10), [_deposit_repr(100), _borrow_repr()])
        api.add(_tx(2, 12, contract=LENDING), [_deposit_repr(200)])
        client = _client(api, lending=LENDING)

        result = await client.fetch_events_since(EventKind.DEPOSIT, 0, 1)

        assert all(isinstance(e, Deposited) for e in result.events)
        assert [(e.amount, e.pool_kind) for e in result.events] == [
            (100, POOL_COLLATERAL),
            (200, POOL_LENDING),
        ]
        await client.close()

    @pytest.mark.asyncio
    async def test_borrow_scan_ignores_lending_contract(self):
        api = FakeStacksApi(tip=50)
        client = _client(api, lending=LENDING)

        await client.fetch_events_since(EventKind.BORROW, 0, 1)

        assert api.listing_requests(LENDING) == []
        await client.close()


class TestPaging:
    """Listing pagination."""

    @pytest.mark.asyncio
    async def test_pages_until_short_page(self):
        api = FakeStacksApi(tip=1000)
        for n in range(PAGE_SIZE + 5):
            api.add(_tx(n + 1, 100 + n), [])
        client = _client(api)

        await client.fetch_events_since(EventKind.BORROW, 0, 1)

        offsets = [int(r.url.params["offset"]) for r in api.listing_requests()]
        assert offsets == [0, PAGE_SIZE]
        await client.close()

    @pytest.mark.asyncio
    async def test_stops_once_page_reaches_watermark(self):
        api = FakeStacksApi(tip=1000)
        for n in range(PAGE_SIZE * 2):
            api.add(_tx(n + 1, 100 + n), [])
        client = _client(api)

        # Newest first: the first page covers heights 199..150
        await client.fetch_events_since(EventKind.BORROW, 160, 1)

        offsets = [int(r.url.params["offset"]) for r in api.listing_requests()]
        assert offsets == [0]
        await client.close()

    @pytest.mark.asyncio
    async def test_page_cap_marks_scan_incomplete(self):
        api = FakeStacksApi(tip=1000)
        for n in range(PAGE_SIZE * 3):
            api.add(_tx(n + 1, 100 + n), [])
        # Oldest transaction carries the only borrow, beyond two pages
        api.events[_txid(1)] = [_borrow_repr()]
        client = _client(api, max_pages=2)

        result = await client.fetch_events_since(EventKind.BORROW, 0, 1)

        assert not result.complete
        assert result.events == []
        assert len(api.listing_requests()) == 2
        await client.close()

    @pytest.mark.asyncio
    async def test_listing_that_ends_at_cap_is_complete(self):
        api = FakeStacksApi(tip=1000)
        for n in range(PAGE_SIZE + 5):
            api.add(_tx(n + 1, 100 + n), [])
        client = _client(api, max_pages=2)

        result = await client.fetch_events_since(EventKind.BORROW, 0, 1)

        assert result.complete
        await client.close()


class TestReadFailures:
    """Read failures are reported, not raised."""

    @pytest.mark.asyncio
    async def test_tip_failure_is_incomplete(self):
        api = FakeStacksApi(tip=50)
        api.add(_tx(1, 10), [_borrow_repr()])
        api.failing_paths.add("/v2/info")
        client = _client(api)

        result = await client.fetch_events_since(EventKind.BORROW, 0, 1)

        assert not result.complete
        assert result.events == []
        await client.close()

    @pytest.mark.asyncio
    async def test_failed_contract_does_not_block_other_pool(self):
        api = FakeStacksApi(tip=50)
        api.add(_tx(1, 10), [_deposit_repr(100)])
        api.failing_paths.add(f"/extended/v1/address/{LENDING}/transactions")
        client = _client(api, lending=LENDING)

        result = await client.fetch_events_since(EventKind.DEPOSIT, 0, 1)

        assert not result.complete
        assert [e.amount for e in result.events] == [100]
        await client.close()

    @pytest.mark.asyncio
    async def test_failed_tx_lookup_marks_scan_incomplete(self):
        api = FakeStacksApi(tip=50)
        api.add(_tx(1, 10), [_borrow_repr()])
        api.failing_paths.add(f"/extended/v1/tx/{_txid(1)}")
        client = _client(api)

        result = await client.fetch_events_since(EventKind.BORROW, 0, 1)

        assert not result.complete
        await client.close()

    @pytest.mark.asyncio
    async def test_base_url_trailing_slash_stripped(self):
        api = FakeStacksApi(tip=77)
        client = _client(api)

        assert await client.tip_height() == 77
        assert str(api.requests[0].url) == "https://stacks.test/v2/info"
        await client.close()
