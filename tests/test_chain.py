"""
Tests for the chain event sources.

The Sui source is exercised against httpx.MockTransport, so no network
access is needed.
"""

import json

import httpx
import pytest

from pudeez.core import (
    ChainConfig,
    ChainQueryFailure,
    ContractMisconfigured,
    InMemoryChainEventSource,
    SuiChainEventSource,
)
from pudeez.schemas import ChainEventKind

PACKAGE = "0xpkg"


def sui_event(tx_digest, seq, timestamp_ms, parsed_json):
    return {
        "id": {"txDigest": tx_digest, "eventSeq": str(seq)},
        "packageId": PACKAGE,
        "transactionModule": "steam_escrow",
        "type": f"{PACKAGE}::steam_escrow::PaymentDeposited",
        "parsedJson": parsed_json,
        "timestampMs": str(timestamp_ms),
    }


def make_source(handler) -> SuiChainEventSource:
    config = ChainConfig(rpc_url="https://fullnode.test", package_id=PACKAGE)
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return SuiChainEventSource(config, client=client)


class TestSuiChainEventSource:

    def test_query_shape_and_descending_result(self):
        requests = []

        def handler(request):
            requests.append(json.loads(request.content))
            return httpx.Response(200, json={
                "jsonrpc": "2.0",
                "id": 1,
                "result": {
                    "data": [
                        sui_event("tx1", 0, 1000, {"escrow_id": "E1", "buyer": "b", "amount": "5"}),
                        sui_event("tx2", 1, 2000, {"escrow_id": "E2", "buyer": "b", "amount": "6"}),
                    ],
                    "nextCursor": {"txDigest": "tx2", "eventSeq": "1"},
                    "hasNextPage": False,
                },
            })

        source = make_source(handler)
        result = source.poll(ChainEventKind.PAYMENT_DEPOSITED, {"txDigest": "tx0", "eventSeq": "0"})

        body = requests[0]
        assert body["method"] == "suix_queryEvents"
        assert body["params"][0] == {"MoveEventType": "0xpkg::steam_escrow::PaymentDeposited"}
        assert body["params"][1] == {"txDigest": "tx0", "eventSeq": "0"}
        assert body["params"][2] == 50

        assert [e.tx_digest for e in result.events] == ["tx2", "tx1"]
        assert result.events[0].event_seq == 1
        assert result.events[0].timestamp_ms == 2000
        assert result.events[0].escrow_id == "E2"
        assert result.next_cursor == {"txDigest": "tx2", "eventSeq": "1"}

    def test_empty_page_keeps_cursor(self):
        source = make_source(lambda request: httpx.Response(200, json={
            "jsonrpc": "2.0", "id": 1,
            "result": {"data": [], "nextCursor": None, "hasNextPage": False},
        }))
        cursor = {"txDigest": "tx9", "eventSeq": "0"}
        result = source.poll(ChainEventKind.PAYMENT_CLAIMED, cursor)
        assert result.events == []
        assert result.next_cursor == cursor

    def test_invalid_params_is_misconfiguration(self):
        source = make_source(lambda request: httpx.Response(200, json={
            "jsonrpc": "2.0", "id": 1,
            "error": {"code": -32602, "message": "Invalid params"},
        }))
        with pytest.raises(ContractMisconfigured):
            source.poll(ChainEventKind.ESCROW_INITIALIZED)

    def test_missing_package_id_is_misconfiguration(self):
        source = SuiChainEventSource(ChainConfig(package_id=""), client=httpx.Client())
        with pytest.raises(ContractMisconfigured):
            source.poll(ChainEventKind.ESCROW_INITIALIZED)

    def test_other_rpc_error(self):
        source = make_source(lambda request: httpx.Response(200, json={
            "jsonrpc": "2.0", "id": 1,
            "error": {"code": -32000, "message": "node overloaded"},
        }))
        with pytest.raises(ChainQueryFailure) as exc_info:
            source.poll(ChainEventKind.ESCROW_INITIALIZED)
        assert not isinstance(exc_info.value, ContractMisconfigured)

    def test_http_error(self):
        source = make_source(lambda request: httpx.Response(502))
        with pytest.raises(ChainQueryFailure):
            source.poll(ChainEventKind.ESCROW_INITIALIZED)

    def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ChainQueryFailure):
            make_source(handler).poll(ChainEventKind.ESCROW_INITIALIZED)

    def test_malformed_event(self):
        source = make_source(lambda request: httpx.Response(200, json={
            "jsonrpc": "2.0", "id": 1,
            "result": {"data": [{"id": {"txDigest": "tx1"}}], "nextCursor": None},
        }))
        with pytest.raises(ChainQueryFailure):
            source.poll(ChainEventKind.ESCROW_INITIALIZED)


class TestInMemoryChainEventSource:

    def test_pages_newest_first(self, make_event):
        source = InMemoryChainEventSource(page_limit=2)
        for escrow_id in ("E1", "E2", "E3"):
            source.publish(make_event(ChainEventKind.ESCROW_INITIALIZED, escrow_id))

        first = source.poll(ChainEventKind.ESCROW_INITIALIZED)
        assert [e.escrow_id for e in first.events] == ["E2", "E1"]

        second = source.poll(ChainEventKind.ESCROW_INITIALIZED, first.next_cursor)
        assert [e.escrow_id for e in second.events] == ["E3"]

        third = source.poll(ChainEventKind.ESCROW_INITIALIZED, second.next_cursor)
        assert third.events == []
        assert third.next_cursor == second.next_cursor

    def test_injected_failure(self):
        source = InMemoryChainEventSource()
        source.fail_next(ChainEventKind.PAYMENT_DEPOSITED)
        with pytest.raises(ChainQueryFailure):
            source.poll(ChainEventKind.PAYMENT_DEPOSITED)
        assert source.poll(ChainEventKind.PAYMENT_DEPOSITED).events == []
