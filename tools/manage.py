#!/usr/bin/env python3
"""
Adnet Management CLI

Operator commands against the configured ledger store:
- status: Pending chain, unsettled segments and history totals of a tenant
- history: Settlement attempts of a tenant, newest first
- verify-chain: Re-hash a tenant's pending chain and unsettled segments
- flush: Drain and settle a tenant's pending events now
- retry: Re-attempt a tenant's failed partitions
- sign-event: Sign an event message the way the browser client does

The store comes from ADNET_DATA_DIR / ADNET_STORE_DRIVER, exactly as
for the server. Stop the server before running flush or retry against
the same data directory: each process caches tenant state.

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage status --tenant news.example.com
    python -m tools.manage verify-chain --tenant news.example.com
    python -m tools.manage retry --tenant news.example.com --force
"""

import argparse
import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def _print_record(record) -> None:
    line = (
        f"  {record.timestamp.isoformat()}  {record.segment_id}  "
        f"{record.campaign_id}  {record.settlement.value}"
    )
    if record.reason:
        line += f" ({record.reason.value})"
    print(line)
    print(
        f"    events={record.event_count} views={record.views} "
        f"clicks={record.clicks} reach={record.reach} attempt={record.attempt}"
    )
    if record.content_address:
        print(f"    content: {record.content_address}")
    if record.tx_hash:
        print(f"    tx: {record.tx_hash}")


def cmd_status(args):
    """Show a tenant's chain and settlement state."""
    from adnet.core import HashChainLedger, normalize_tenant
    from adnet.db import create_store
    from adnet.schemas import HistoryTotals

    tenant = normalize_tenant(args.tenant)
    store = create_store()
    ledger = HashChainLedger(store)
    state = ledger.state(tenant)
    totals = HistoryTotals.from_records(store.list_history(tenant))

    print(f"=== {tenant} ===\n")
    print("Chain:")
    print(f"  Pending events: {len(state.pending_chain)}")
    print(f"  Segment start: {state.segment_start_hash[:16]}...")
    print(f"  Tail hash: {state.tail_hash[:16]}...")
    print(f"  Flush count: {state.flush_count}")

    print("\nUnsettled segments:")
    if not state.unsettled_segments:
        print("  (none)")
    for segment in state.unsettled_segments:
        print(f"  {segment.segment_id}: {len(segment.events)} events")
        for progress in segment.partitions.values():
            reason = f" ({progress.last_reason.value})" if progress.last_reason else ""
            print(
                f"    {progress.campaign_id}: {progress.status.value}{reason}, "
                f"attempts={progress.attempts}"
            )

    print("\nTotals:")
    print(f"  Events: {totals.total_events}")
    print(f"  Views: {totals.total_views}")
    print(f"  Clicks: {totals.total_clicks}")
    print(f"  Flushes: {totals.flush_count}")


def cmd_history(args):
    """Print a tenant's settlement history."""
    from adnet.core import normalize_tenant
    from adnet.db import create_store

    tenant = normalize_tenant(args.tenant)
    records = list(reversed(create_store().list_history(tenant)))
    if args.limit:
        records = records[:args.limit]

    if args.json:
        print(json.dumps([r.model_dump(mode="json") for r in records], indent=2))
        return 0

    print(f"Found {len(records)} records for {tenant}")
    for record in records:
        _print_record(record)


def cmd_verify_chain(args):
    """Verify the integrity of a tenant's chain."""
    from adnet.core import ChainError, HashChainLedger, normalize_tenant
    from adnet.db import create_store

    tenant = normalize_tenant(args.tenant)
    print("Loading ledger...")
    ledger = HashChainLedger(create_store())

    try:
        # Loading re-verifies everything persisted
        state = ledger.state(tenant)
    except ChainError as e:
        print(f"[FAIL] Chain integrity verification FAILED: {e}")
        return 1

    print(f"Ledger loaded: {len(state.pending_chain)} pending events, "
          f"{len(state.unsettled_segments)} unsettled segments")

    if ledger.verify_tenant(tenant):
        print("[OK] Chain integrity verified OK")
        print(f"  Chain tail: {state.tail_hash[:16]}...")
        return 0
    print("[FAIL] Chain integrity verification FAILED!")
    return 1


def cmd_flush(args):
    """Drain and settle a tenant's pending events."""
    from adnet.core import normalize_tenant
    from adnet.services import build_services

    tenant = normalize_tenant(args.tenant)
    services = build_services()
    try:
        pending = services.ledger.pending_count(tenant)
        print(f"Flushing {pending} pending events for {tenant}...")
        records = services.settlement.flush(tenant)
    finally:
        services.close()

    if not records:
        print("Nothing to flush.")
        return 0
    for record in records:
        _print_record(record)
    print(f"\n[OK] {len(records)} partitions processed")
    return 0


def cmd_retry(args):
    """Retry a tenant's failed partitions."""
    from adnet.core import normalize_tenant
    from adnet.schemas import SettlementOutcome
    from adnet.services import build_services

    tenant = normalize_tenant(args.tenant)
    services = build_services()
    try:
        records = services.settlement.retry(tenant, force=args.force)
    finally:
        services.close()

    if not records:
        print("Nothing to retry.")
        return 0
    for record in records:
        _print_record(record)

    failed = [r for r in records if r.settlement in (
        SettlementOutcome.FAILED, SettlementOutcome.NOT_ATTEMPTED,
    )]
    if failed:
        print(f"\n[WARN] {len(failed)} of {len(records)} partitions still unsettled")
        return 1
    print(f"\n[OK] {len(records)} partitions settled")
    return 0


def cmd_sign_event(args):
    """Sign an event message with a wallet key (for testing the collector)."""
    from eth_account import Account

    from adnet.core import SignatureVerifier

    if args.private_key:
        private_key = args.private_key
    else:
        import getpass
        private_key = getpass.getpass("Enter private key: ")

    signature = SignatureVerifier.sign(private_key, args.campaign, args.type, args.timestamp)
    print(json.dumps({
        "campaignId": args.campaign,
        "type": args.type,
        "timestamp": args.timestamp,
        "actorAddress": Account.from_key(private_key).address,
        "signature": signature,
    }, indent=2))


def main():
    parser = argparse.ArgumentParser(
        description="Adnet Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # status
    p_status = subparsers.add_parser("status", help="Show a tenant's chain and settlement state")
    p_status.add_argument("--tenant", required=True, help="Publisher host name")

    # history
    p_history = subparsers.add_parser("history", help="Show a tenant's settlement history")
    p_history.add_argument("--tenant", required=True, help="Publisher host name")
    p_history.add_argument("--limit", type=int, help="Show only the newest N records")
    p_history.add_argument("--json", action="store_true", help="Print records as JSON")

    # verify-chain
    p_verify = subparsers.add_parser("verify-chain", help="Verify a tenant's chain integrity")
    p_verify.add_argument("--tenant", required=True, help="Publisher host name")

    # flush
    p_flush = subparsers.add_parser("flush", help="Flush a tenant's pending events now")
    p_flush.add_argument("--tenant", required=True, help="Publisher host name")

    # retry
    p_retry = subparsers.add_parser("retry", help="Retry a tenant's failed partitions")
    p_retry.add_argument("--tenant", required=True, help="Publisher host name")
    p_retry.add_argument(
        "--force",
        action="store_true",
        help="Also retry partitions that used up their automatic attempts",
    )

    # sign-event
    p_sign = subparsers.add_parser("sign-event", help="Sign an event message")
    p_sign.add_argument("--campaign", required=True, help="Campaign id")
    p_sign.add_argument("--type", choices=["view", "click"], default="view")
    p_sign.add_argument("--timestamp", type=int, required=True, help="Milliseconds since epoch")
    p_sign.add_argument("--private-key", help="Wallet key (prompts if not provided)")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "status": cmd_status,
        "history": cmd_history,
        "verify-chain": cmd_verify_chain,
        "flush": cmd_flush,
        "retry": cmd_retry,
        "sign-event": cmd_sign_event,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
