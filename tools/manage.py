#!/usr/bin/env python3
"""
Pudeez Escrow Management CLI

Commands for operating the escrow reconciliation core:
- init-schema: Create the PostgreSQL tables
- poll-once: Run one polling pass over every event kind
- show-escrow: Print one escrow record
- list-escrows: List escrows by status or by account
- link-account: Link a chain address to an inventory (Steam) account
- correct-baseline: Set the baseline of an escrow whose capture failed
- verify-transfer: Check whether the item moved from seller to buyer
- export-escrows: Export all escrow records to JSON
- health-check: Check store, chain and inventory configuration

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage init-schema
    python -m tools.manage poll-once
    python -m tools.manage link-account 0xb0b... 76561198000000000
    python -m tools.manage verify-transfer 0x5e1f...
"""

import argparse
import json
import sys

from pudeez.core import (
    InvalidState,
    OracleUnavailable,
    RecordNotFound,
    ContractMisconfigured,
    ChainConfig,
    OracleConfig,
    SteamInventoryOracle,
    SuiChainEventSource,
)
from pudeez.db.config import DatabaseConfig, StoreDriver, get_database_url, get_store_driver
from pudeez.db.store import BaselineAlreadyCapturedError, PostgresEscrowStore
from pudeez.observability import setup_logging
from pudeez.runtime import Runtime, build_runtime
from pudeez.schemas import ChainEventKind, EscrowRecord, EscrowStatus, ItemTypeKey


def _print_record(record: EscrowRecord) -> None:
    print(f"Escrow {record.escrow_id}")
    print(f"  Status:   {record.status.value}")
    print(f"  Buyer:    {record.buyer_address} (inventory: {record.buyer_inventory_id or '-'})")
    print(f"  Seller:   {record.seller_address} (inventory: {record.seller_inventory_id or '-'})")
    print(f"  Asset:    {record.asset_name} [{record.asset_id}] app {record.collection_id}")
    print(f"  Type:     {record.item_type_key or '-'}")
    print(f"  Price:    {record.price_display} SUI ({record.price_in_base_unit} MIST)")
    if record.baseline_missing:
        print("  Baseline: [WARN] MISSING - run correct-baseline")
    else:
        print(
            f"  Baseline: seller={record.initial_seller_item_count} "
            f"buyer={record.initial_buyer_item_count}"
        )
    print(f"  Last tx:  {record.chain_tx_digest or '-'}")
    print(f"  Updated:  {record.updated_at.isoformat()}")


def cmd_init_schema(args, runtime: Runtime):
    """Create tables and indexes in PostgreSQL."""
    store = runtime.store
    if not isinstance(store, PostgresEscrowStore):
        print("In-memory store selected - nothing to initialize.")
        print("Set DATABASE_URL (or ESCROWSTORE_DRIVER=psycopg2) to use PostgreSQL.")
        return 0
    store.ensure_schema()
    print("[OK] Schema ready")
    return 0


def cmd_poll_once(args, runtime: Runtime):
    """Poll every event kind once and apply what arrived."""
    results = runtime.poller.poll_all_once()
    failed = False
    for kind, result in results.items():
        if result is None:
            failed = True
            state = runtime.poller.get_status()["kinds"][kind.value]
            print(f"  {kind.value:18} [FAIL] {state['last_error']}")
        else:
            print(
                f"  {kind.value:18} applied={result.applied} deferred={result.deferred} "
                f"duplicate={result.duplicate} ignored={result.ignored}"
            )
    print(f"Deferred events waiting: {runtime.service.reconciler.deferred_count()}")
    return 1 if failed else 0


def cmd_show_escrow(args, runtime: Runtime):
    try:
        record = runtime.service.get_escrow(args.escrow_id)
    except RecordNotFound as e:
        print(f"Error: {e}")
        return 1
    _print_record(record)
    return 0


def cmd_list_escrows(args, runtime: Runtime):
    if args.account:
        records = runtime.service.list_escrows_for_account(args.account)
    elif args.status:
        records = runtime.service.list_escrows_by_status(EscrowStatus(args.status))
    else:
        records = runtime.store.list_all()

    for record in records:
        flag = " [baseline missing]" if record.baseline_missing else ""
        print(f"{record.escrow_id}  {record.status.value:11} {record.price_display} SUI{flag}")
    print(f"\n{len(records)} escrow(s)")
    return 0


def cmd_link_account(args, runtime: Runtime):
    runtime.service.link_account(args.address, args.inventory_id)
    print(f"[OK] {args.address} -> {args.inventory_id}")
    return 0


def cmd_correct_baseline(args, runtime: Runtime):
    try:
        type_key = ItemTypeKey.from_string(args.type_key) if args.type_key else None
    except ValueError as e:
        print(f"Error: invalid --type-key {args.type_key!r}: {e}")
        return 1

    try:
        record = runtime.service.correct_baseline(
            args.escrow_id,
            args.seller_count,
            args.buyer_count,
            item_type_key=type_key,
            seller_inventory_id=args.seller_inventory_id,
            buyer_inventory_id=args.buyer_inventory_id,
        )
    except (RecordNotFound, BaselineAlreadyCapturedError, ValueError) as e:
        print(f"Error: {e}")
        return 1
    print("[OK] Baseline corrected")
    _print_record(record)
    return 0


def cmd_verify_transfer(args, runtime: Runtime):
    try:
        result = runtime.service.verify_transfer(args.escrow_id)
    except (RecordNotFound, InvalidState) as e:
        print(f"Error: {e}")
        return 1
    except OracleUnavailable as e:
        print(f"[RETRY] Inventory service unavailable: {e}")
        return 2

    verdict = "[OK] Transferred" if result.transferred else "[PENDING] Not transferred yet"
    print(verdict)
    print(
        f"  Seller: {result.initial_seller_item_count} -> {result.seller_current_count} "
        f"(decrease {result.seller_decrease})"
    )
    print(
        f"  Buyer:  {result.initial_buyer_item_count} -> {result.buyer_current_count} "
        f"(increase {result.buyer_increase})"
    )
    return 0 if result.transferred else 3


def cmd_export_escrows(args, runtime: Runtime):
    """Export all escrow records to a JSON file."""
    records = runtime.store.list_all()
    export_data = [record.model_dump(mode="json") for record in records]

    output_file = args.output or "escrow_export.json"
    with open(output_file, "w") as f:
        json.dump(export_data, f, indent=2)

    print(f"[OK] Exported {len(records)} escrows to {output_file}")
    return 0


def cmd_health_check(args, runtime: Runtime):
    """Check configuration and connectivity of every dependency."""
    print("=== Pudeez Escrow Health Check ===\n")
    status = 0

    print("Store:")
    if get_store_driver() == StoreDriver.PSYCOPG2:
        db_url = get_database_url()
        config = DatabaseConfig.from_url(db_url) if db_url else DatabaseConfig.from_env()
        print(f"  Type: PostgreSQL ({config.to_url(include_password=False)})")
    else:
        print("  Type: In-Memory")
    print(f"  Escrows: {runtime.store.count()}")

    print("\nChain:")
    chain_config = ChainConfig.from_env()
    print(f"  Type: {type(runtime.source).__name__}")
    print(f"  RPC: {chain_config.rpc_url}")
    if not isinstance(runtime.source, SuiChainEventSource):
        print("  Package: [WARN] in-memory source, no chain events will arrive")
    elif not chain_config.package_id:
        print("  Package: [FAIL] ESCROW_PACKAGE_ID not set")
        status = 1
    else:
        print(f"  Package: {chain_config.package_id}::{chain_config.module}")
        try:
            runtime.source.poll(ChainEventKind.ESCROW_INITIALIZED, None)
            print("  Query: [OK]")
        except ContractMisconfigured as e:
            print(f"  Query: [FAIL] {e}")
            status = 1
        except Exception as e:
            print(f"  Query: [WARN] {e}")

    print("\nInventory:")
    print(f"  Type: {type(runtime.oracle).__name__}")
    if isinstance(runtime.oracle, SteamInventoryOracle) and not OracleConfig.from_env().api_key:
        print("  Steam API key: [FAIL] Not set - every inventory query is unavailable")
        status = 1

    print("\n=== Health Check Complete ===")
    return status


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Pudeez Escrow Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init-schema", help="Create PostgreSQL tables")
    subparsers.add_parser("poll-once", help="Poll every event kind once")

    p_show = subparsers.add_parser("show-escrow", help="Show one escrow")
    p_show.add_argument("escrow_id")

    p_list = subparsers.add_parser("list-escrows", help="List escrows")
    p_list.add_argument("--status", choices=[s.value for s in EscrowStatus])
    p_list.add_argument("--account", help="Chain address or inventory id")

    p_link = subparsers.add_parser("link-account", help="Link chain address to inventory account")
    p_link.add_argument("address")
    p_link.add_argument("inventory_id")

    p_baseline = subparsers.add_parser("correct-baseline", help="Correct a missing baseline")
    p_baseline.add_argument("escrow_id")
    p_baseline.add_argument("--seller-count", type=int, required=True)
    p_baseline.add_argument("--buyer-count", type=int, required=True)
    p_baseline.add_argument("--type-key", help="collection/class/instance, e.g. 730/310776/0")
    p_baseline.add_argument("--seller-inventory-id")
    p_baseline.add_argument("--buyer-inventory-id")

    p_verify = subparsers.add_parser("verify-transfer", help="Verify item transfer for an escrow")
    p_verify.add_argument("escrow_id")

    p_export = subparsers.add_parser("export-escrows", help="Export all escrows to JSON")
    p_export.add_argument("--output", "-o", help="Output file (default: escrow_export.json)")

    subparsers.add_parser("health-check", help="Run health checks")

    return parser


COMMANDS = {
    "init-schema": cmd_init_schema,
    "poll-once": cmd_poll_once,
    "show-escrow": cmd_show_escrow,
    "list-escrows": cmd_list_escrows,
    "link-account": cmd_link_account,
    "correct-baseline": cmd_correct_baseline,
    "verify-transfer": cmd_verify_transfer,
    "export-escrows": cmd_export_escrows,
    "health-check": cmd_health_check,
}


def main(argv=None, runtime: Runtime = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    setup_logging()
    runtime = runtime or build_runtime()
    try:
        return COMMANDS[args.command](args, runtime) or 0
    finally:
        runtime.close()


if __name__ == "__main__":
    sys.exit(main())
