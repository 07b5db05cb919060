#!/usr/bin/env python3
"""
OFF-RAMP RECOVERY CLI

PURPOSE: One operator entry point over RecoveryService instead of one-off scripts.

USAGE:
    python recovery_cli.py --all                                          # Scheduled recovery pass, once
    python recovery_cli.py --status token_received --older-than 120 --dry-run
    python recovery_cli.py --status pending --no-token --list             # Show matching rows only
    python recovery_cli.py --id offramp_abc123 --id offramp_def456        # Re-drive specific rows
    python recovery_cli.py --refund offramp_abc123 --to 0xUserAddress     # Send the deposit back
    python recovery_cli.py --return-gas offramp_abc123                    # Sweep leftover gas to the funding wallet
    python recovery_cli.py --derive-check                                 # Rows whose address no longer derives
"""

import argparse
import asyncio
import logging
import sys

from database import dispose_engine, init_engine
from models import OfframpStatus
from services.offramp_services import build_offramp_services
from services.recovery_service import STUCK_STATUSES, RecoveryCriteria
from utils.offramp_errors import StateTransitionError

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Recover stuck or abandoned off-ramp transactions')
    parser.add_argument('--all', action='store_true', help='Run every recovery pass with default thresholds')
    parser.add_argument('--status', action='append', choices=[s.value for s in OfframpStatus],
                        help='Status to select (repeatable)')
    parser.add_argument('--older-than', type=int, metavar='MINUTES',
                        help='Only rows not updated for this many minutes')
    token = parser.add_mutually_exclusive_group()
    token.add_argument('--has-token', dest='has_token', action='store_const', const=True,
                       help='Only rows with a detected deposit')
    token.add_argument('--no-token', dest='has_token', action='store_const', const=False,
                       help='Only rows without a detected deposit')
    parser.add_argument('--id', action='append', dest='ids', metavar='TRANSACTION_ID',
                        help='Specific transaction id (repeatable)')
    parser.add_argument('--limit', type=int, help='Maximum rows to touch')
    parser.add_argument('--dry-run', action='store_true', help='Show what would be done without making changes')
    parser.add_argument('--list', action='store_true', help='List matching rows and exit')
    parser.add_argument('--derive-check', action='store_true',
                        help='Report rows whose recorded derivation no longer reproduces the address')
    parser.add_argument('--refund', metavar='TRANSACTION_ID', help='Refund the deposit of this transaction')
    parser.add_argument('--to', metavar='ADDRESS', help='Refund destination address')
    parser.add_argument('--return-gas', metavar='TRANSACTION_ID',
                        help='Sweep sponsored ETH on the transaction address back to the funding wallet')
    return parser


def criteria_from_args(args) -> RecoveryCriteria:
    statuses = [OfframpStatus(s) for s in args.status] if args.status else list(STUCK_STATUSES)
    if args.ids and not args.status:
        statuses = list(OfframpStatus)
    return RecoveryCriteria(
        statuses=statuses,
        older_than_minutes=args.older_than,
        has_token=args.has_token,
        transaction_ids=args.ids,
        limit=args.limit,
        dry_run=args.dry_run,
    )


def print_report(report):
    print(f"\n{'🔍' if report.dry_run else '✅'} {report.summary()}")
    for label, ids in (
        ("Deleted", report.deleted),
        ("Re-driven", report.redriven),
        ("Released", report.released),
        ("Duplicates discarded", report.duplicates_discarded),
        ("Skipped", report.skipped),
    ):
        if ids:
            print(f"  {label}: {', '.join(ids)}")
    for transaction_id, error in report.errors.items():
        print(f"  ❌ {transaction_id}: {error}")


async def run(args) -> int:
    init_engine()
    try:
        services = build_offramp_services()
        recovery = services.recovery

        try:
            if args.refund:
                if not args.to:
                    print("❌ --refund needs --to ADDRESS")
                    return 2
                tx_hash = await recovery.refund_transaction(args.refund, args.to, dry_run=args.dry_run)
                if args.dry_run:
                    print(f"\n🔍 DRY RUN - Would refund {args.refund} to {args.to}")
                else:
                    print(f"\n✅ Refund sent for {args.refund}: {tx_hash}")
                return 0

            if args.return_gas:
                tx_hash = await recovery.return_gas(args.return_gas, dry_run=args.dry_run)
                if args.dry_run:
                    print(f"\n🔍 DRY RUN - Would return gas for {args.return_gas}")
                elif tx_hash:
                    print(f"\n✅ Gas returned for {args.return_gas}: {tx_hash}")
                else:
                    print(f"\n✅ Nothing above the reserve on {args.return_gas}")
                return 0
        except StateTransitionError as e:
            print(f"\n❌ {e}")
            return 1

        if args.derive_check:
            statuses = [OfframpStatus(s) for s in args.status] if args.status else None
            mismatched = await recovery.derive_check(statuses)
            if not mismatched:
                print("✅ Every row re-derives to its stored deposit address")
                return 0
            print(f"\n⚠️  {len(mismatched)} row(s) with derivation mismatches:")
            for transaction_id in mismatched:
                print(f"  {transaction_id}")
            return 1

        if args.all:
            report = await recovery.run(dry_run=args.dry_run)
            print_report(report)
            return 1 if report.errors else 0

        criteria = criteria_from_args(args)
        if args.list:
            rows = await recovery.select(criteria)
            if not rows:
                print("✅ No matching transactions found!")
            for row in rows:
                print(f"{row.transaction_id} | {row.status} | {row.token_symbol or '-'} {row.token_amount or ''}")
                print(f"  Address: {row.deposit_address}")
                print(f"  Updated: {row.updated_at}  Swap attempts: {row.swap_attempt_count}  "
                      f"Payout attempts: {row.payout_attempt_count}")
            return 0

        report = await recovery.run_criteria(criteria)
        print_report(report)
        return 1 if report.errors else 0
    finally:
        await dispose_engine()


def main(argv=None) -> int:
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    args = build_parser().parse_args(argv)
    if not (args.all or args.status or args.ids or args.refund or args.return_gas or args.derive_check):
        build_parser().print_help()
        return 2
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
