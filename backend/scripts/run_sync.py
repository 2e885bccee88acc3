#!/usr/bin/env python3
"""
Run a sync for one connected account, inline, and print the outcome as JSON.

Usage (from repo root):
  python backend/scripts/run_sync.py --account-id <id> --type email
  python backend/scripts/run_sync.py --account-id <id> --type auto --force-full

--type auto picks the sync type from the account's provider; all runs every type.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys

# Ensure mailsync is importable when run as script from backend or project root
_script_dir = os.path.dirname(os.path.abspath(__file__))
_backend = os.path.dirname(_script_dir)
if _backend not in sys.path:
    sys.path.insert(0, _backend)


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a Gmail / Calendar / Contacts sync inline.")
    parser.add_argument("--account-id", required=True, help="Account.id to sync.")
    parser.add_argument(
        "--type",
        default="auto",
        choices=["email", "calendar", "contacts", "all", "auto"],
        help="Sync type (default: auto, from the account's provider).",
    )
    parser.add_argument("--external-user-id", default=None, help="Pipedream external user id (default: account user_id).")
    parser.add_argument("--force-full", action="store_true", help="Ignore stored cursors / clear events first.")
    parser.add_argument("--status", action="store_true", help="Only print the current sync status snapshot.")
    args = parser.parse_args()

    from mailsync.config import settings
    from mailsync.database import SessionLocal, init_db
    from mailsync.models import Account
    from mailsync.services.sync_service import get_sync_status, resolve_sync_types, start_sync

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db()

    db = SessionLocal()
    try:
        account = db.query(Account).filter(Account.id == args.account_id).first()
        if not account:
            print(f"Account {args.account_id} not found", file=sys.stderr)
            return 1
        try:
            sync_types = resolve_sync_types(account, args.type)
        except ValueError as e:
            print(str(e), file=sys.stderr)
            return 2

        results = {}
        for sync_type in sync_types:
            if args.status:
                results[sync_type] = get_sync_status(db, account.id, sync_type)
                continue
            options = {"force_full_sync": True} if args.force_full else {}
            results[sync_type] = start_sync(db, account.id, sync_type, args.external_user_id, options=options)
    finally:
        db.close()

    print(json.dumps(results, indent=2, default=str))
    if any(r.get("status") == "error" for r in results.values()):
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
