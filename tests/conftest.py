"""
Shared fixtures: in-memory store, oracle and chain source, plus a factory
for chain events shaped the way the escrow Move module emits them.
"""

import itertools

import pytest

from pudeez.core import (
    EscrowReconciler,
    EscrowService,
    InMemoryChainEventSource,
    InMemoryInventoryOracle,
)
from pudeez.db.store import InMemoryEscrowStore
from pudeez.observability import get_metrics
from pudeez.schemas import ChainEventKind, RawEvent

BUYER = "0xb0b"
SELLER = "0x5e11"
BUYER_STEAM = "76561198000000001"
SELLER_STEAM = "76561198000000002"
APP_ID = "730"
CLASS_ID = "310776"


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics().reset()
    yield


@pytest.fixture
def store():
    return InMemoryEscrowStore()


@pytest.fixture
def oracle():
    return InMemoryInventoryOracle()


@pytest.fixture
def source():
    return InMemoryChainEventSource()


@pytest.fixture
def reconciler(store, oracle):
    return EscrowReconciler(store, oracle)


@pytest.fixture
def service(store, oracle, reconciler):
    return EscrowService(store, oracle, reconciler=reconciler)


@pytest.fixture
def linked(store):
    """Buyer and seller chain addresses linked to their Steam accounts."""
    store.link_account(BUYER, BUYER_STEAM)
    store.link_account(SELLER, SELLER_STEAM)


@pytest.fixture
def make_event():
    """
    Build a RawEvent. Later events get later timestamps unless one is given.

    Usage:
        make_event(ChainEventKind.PAYMENT_DEPOSITED, "E1")
    """
    counter = itertools.count(1)

    def _make(kind: ChainEventKind, escrow_id: str, tx_digest=None, timestamp_ms=None, **fields):
        n = next(counter)
        if kind == ChainEventKind.ESCROW_INITIALIZED:
            parsed = {
                "escrow_id": escrow_id,
                "buyer": BUYER,
                "seller": SELLER,
                "asset_id": "asset-1",
                "asset_name": "AK-47 | Redline",
                "app_id": APP_ID,
                "icon_url": "",
                "trade_url": "https://steamcommunity.com/tradeoffer/new/?partner=1",
                "price": "2500000000",
            }
        elif kind == ChainEventKind.PAYMENT_DEPOSITED:
            parsed = {"escrow_id": escrow_id, "buyer": BUYER, "amount": "2500000000"}
        elif kind == ChainEventKind.PAYMENT_CLAIMED:
            parsed = {"escrow_id": escrow_id, "seller": SELLER, "amount": "2500000000"}
        else:
            parsed = {"escrow_id": escrow_id, "buyer": BUYER, "refund_amount": "2500000000"}
        parsed.update(fields)

        return RawEvent(
            kind=kind,
            tx_digest=tx_digest or f"tx{n}",
            event_seq=0,
            timestamp_ms=timestamp_ms if timestamp_ms is not None else 1_700_000_000_000 + n * 1000,
            parsed_json=parsed,
        )

    return _make


@pytest.fixture
def seller_items(oracle):
    """
    Give the seller five items of one type; "asset-1" is the escrowed one.

    Returns the asset ids.
    """
    ids = [oracle.add_item(SELLER_STEAM, APP_ID, CLASS_ID, asset_id="asset-1")]
    ids += [oracle.add_item(SELLER_STEAM, APP_ID, CLASS_ID) for _ in range(4)]
    return ids
