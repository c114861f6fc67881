#!/usr/bin/env python3
"""
CLI Reconciliation Utility for Shadow IT Sync
Reconciles stored users, applications and relationships against each
organization's identity provider, then merges duplicate applications.

Dry-run is the default; pass --live to write changes.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Setup project paths
project_root = Path(__file__).resolve().parent.parent
sys.path.append(str(project_root))

# Load environment variables
from dotenv import load_dotenv
load_dotenv(project_root / ".env")

from src.shadow_it_sync.db.operations import DatabaseOperations
from src.shadow_it_sync.sync.engine import ReconciliationService
from src.utils.error_handling import BaseError
from src.utils.logging import get_logger

logger = get_logger("cli_sync")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile Shadow IT data against identity providers")
    parser.add_argument("--org", type=int, action="append", dest="organization_ids",
                        help="Organization id to process (repeatable; default: all)")
    parser.add_argument("--live", action="store_true",
                        help="Apply changes; without it nothing is written")
    parser.add_argument("--dedup-only", action="store_true",
                        help="Only merge duplicate applications (always live)")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    db = DatabaseOperations()
    service = ReconciliationService(db)
    try:
        await db.init_db()
        if args.dedup_only:
            ids = args.organization_ids or await db.list_organization_ids()
            outcome = {}
            for organization_id in ids:
                outcome[organization_id] = await service.run_deduplication(organization_id)
            print(json.dumps(outcome, indent=2, default=str))
            return 0

        outcome = await service.run_for_organizations(args.organization_ids, dry_run=not args.live)
        print(json.dumps(outcome, indent=2, default=str))
        return 0 if outcome["summary"]["failedOrganizations"] == 0 else 2
    except BaseError as e:
        e.log(logger)
        print(f"\nReconciliation failed: {e.message}")
        return 1
    finally:
        await db.close()


def main(argv=None) -> int:
    args = parse_args(argv)
    mode = "dedup-only" if args.dedup_only else ("live" if args.live else "dry-run")
    print(f"Starting Shadow IT reconciliation ({mode})...")
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\nReconciliation interrupted by user.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
