"""
Demonstration: Complete Escrow Lifecycle

This example walks one Counter-Strike skin trade through the system:
the buyer pays into the on-chain escrow, the seller sends the item
through Steam, the transfer is verified and the seller claims.

Everything runs in memory; no chain node, Steam key or database needed.

Run with: python -m examples.demo_escrow_lifecycle
"""

from pudeez.core import (
    EscrowEventPoller,
    EscrowService,
    InMemoryChainEventSource,
    InMemoryInventoryOracle,
    OracleUnavailable,
    PollerConfig,
)
from pudeez.db.store import InMemoryEscrowStore
from pudeez.schemas import ChainEventKind, RawEvent

BUYER = "0x6a3f0c1e9b2d4875a1c0e3f7b9d2a4c6e8f0a1b3c5d7e9f1a3b5c7d9e1f3a5b7"
SELLER = "0x1d2c3b4a59687766554433221100ffeeddccbbaa99887766554433221100ffee"
BUYER_STEAM = "76561198012345678"
SELLER_STEAM = "76561198087654321"
CS2 = "730"
AK_REDLINE = "310776"
ESCROW_ID = "0x9e8d7c6b5a4f3e2d1c0b9a8f7e6d5c4b3a2f1e0d9c8b7a6f5e4d3c2b1a0f9e8d"


def banner(title: str) -> None:
    print("=" * 60)
    print(title)
    print("=" * 60)


def chain_event(kind: ChainEventKind, tx: str, timestamp_ms: int, **parsed) -> RawEvent:
    return RawEvent(
        kind=kind,
        tx_digest=tx,
        event_seq=0,
        timestamp_ms=timestamp_ms,
        parsed_json={"escrow_id": ESCROW_ID, **parsed},
    )


def main():
    banner("Pudeez - Escrow Lifecycle Demonstration")
    print()

    # Initialize services
    store = InMemoryEscrowStore()
    oracle = InMemoryInventoryOracle()
    chain = InMemoryChainEventSource()
    service = EscrowService(store, oracle)
    poller = EscrowEventPoller(chain, service.reconciler, store, config=PollerConfig())

    service.subscribe(lambda update: print(
        f"   >> notification: {update.escrow_id[:10]}... is now {update.status.value}"
    ))

    # ================================================================
    # STEP 0: LINK ACCOUNTS AND STOCK THE SELLER
    # ================================================================
    banner("STEP 0: LINK ACCOUNTS")

    service.link_account(BUYER, BUYER_STEAM)
    service.link_account(SELLER, SELLER_STEAM)
    escrowed_asset = oracle.add_item(SELLER_STEAM, CS2, AK_REDLINE, asset_id="28193746501")
    for _ in range(2):
        oracle.add_item(SELLER_STEAM, CS2, AK_REDLINE)

    print(f"[OK] Buyer  {BUYER[:10]}... -> Steam {BUYER_STEAM}")
    print(f"[OK] Seller {SELLER[:10]}... -> Steam {SELLER_STEAM}")
    print("   Seller holds 3x AK-47 | Redline")
    print()

    # ================================================================
    # STEP 1: PAYMENT SEEN BEFORE THE ESCROW ITSELF
    # ================================================================
    banner("STEP 1: OUT-OF-ORDER DELIVERY")

    chain.publish(chain_event(
        ChainEventKind.ESCROW_INITIALIZED, "Fq1x", 1_760_000_000_000,
        buyer=BUYER, seller=SELLER, asset_id=escrowed_asset,
        asset_name="AK-47 | Redline (Field-Tested)", app_id=CS2,
        icon_url="", trade_url="https://steamcommunity.com/tradeoffer/new/?partner=127389",
        price="2500000000",
    ))
    chain.publish(chain_event(
        ChainEventKind.PAYMENT_DEPOSITED, "Fq2y", 1_760_000_030_000,
        buyer=BUYER, amount="2500000000",
    ))

    # The deposit kind is polled first and has to wait for its escrow
    deposit = poller.poll_once(ChainEventKind.PAYMENT_DEPOSITED)
    print(f"   PaymentDeposited: deferred={deposit.deferred}")
    init = poller.poll_once(ChainEventKind.ESCROW_INITIALIZED)
    print(f"   EscrowInitialized: applied={init.applied}")

    record = service.get_escrow(ESCROW_ID)
    print(f"[OK] Status: {record.status.value}")
    print(f"   Price: {record.price_display} SUI")
    print(f"   Item type: {record.item_type_key.to_string()}")
    print(
        f"   Baseline: seller={record.initial_seller_item_count} "
        f"buyer={record.initial_buyer_item_count}"
    )
    print()

    # ================================================================
    # STEP 2: VERIFY BEFORE THE SELLER SENDS
    # ================================================================
    banner("STEP 2: VERIFY (ITEM NOT SENT)")

    result = service.verify_transfer(ESCROW_ID)
    print(f"   Transferred: {result.transferred}")
    print()

    # ================================================================
    # STEP 3: INVENTORY SERVICE OUTAGE
    # ================================================================
    banner("STEP 3: VERIFY DURING AN OUTAGE")

    oracle.set_unavailable()
    try:
        service.verify_transfer(ESCROW_ID)
    except OracleUnavailable as e:
        print(f"[RETRY] {e}")
    oracle.set_unavailable(False)
    print()

    # ================================================================
    # STEP 4: SELLER SENDS, VERIFY AGAIN
    # ================================================================
    banner("STEP 4: SELLER SENDS THE ITEM")

    new_asset = oracle.transfer_item(SELLER_STEAM, BUYER_STEAM, CS2, escrowed_asset)
    print(f"   Steam reassigned asset id {escrowed_asset} -> {new_asset}")

    result = service.verify_transfer(ESCROW_ID)
    print(f"[OK] Transferred: {result.transferred}")
    print(
        f"   Seller {result.initial_seller_item_count} -> {result.seller_current_count}, "
        f"buyer {result.initial_buyer_item_count} -> {result.buyer_current_count}"
    )
    print()

    # ================================================================
    # STEP 5: SELLER CLAIMS
    # ================================================================
    banner("STEP 5: PAYMENT CLAIMED")

    chain.publish(chain_event(
        ChainEventKind.PAYMENT_CLAIMED, "Fq3z", 1_760_000_600_000,
        seller=SELLER, amount="2500000000",
    ))
    # A late refund for the same escrow must not reopen it
    chain.publish(chain_event(
        ChainEventKind.ESCROW_CANCELLED, "Fq4w", 1_760_000_700_000,
        buyer=BUYER, refund_amount="2500000000",
    ))
    poller.poll_all_once()

    record = service.get_escrow(ESCROW_ID)
    print(f"[OK] Final status: {record.status.value}")
    print()

    banner("DEMONSTRATION COMPLETE")


if __name__ == "__main__":
    main()
