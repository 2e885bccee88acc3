#!/usr/bin/env python3
"""
Administrative override for stuck syncs: mark in-flight sync jobs cancelled and
force the single-flight locks open.

Only use this when no worker is actually running the sync (e.g. after a host
died and the task was not redelivered). A lock with no progress for
SYNC_LOCK_LEASE_S is taken over by the next sync anyway; this clears it now.
By default it refuses to run unless you pass --yes-really.

Usage (from repo root):
  python backend/scripts/reset_sync_locks.py --yes-really
  python backend/scripts/reset_sync_locks.py --account-id <id> --yes-really
"""

from __future__ import annotations

import argparse
import os
import sys

# Ensure mailsync is importable when run as script from backend or project root
_script_dir = os.path.dirname(os.path.abspath(__file__))
_backend = os.path.dirname(_script_dir)
if _backend not in sys.path:
    sys.path.insert(0, _backend)


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Cancel in-flight sync jobs and clear sync locks.",
    )
    parser.add_argument("--account-id", default=None, help="Only reset this account (default: all accounts).")
    parser.add_argument(
        "--yes-really",
        action="store_true",
        help="Required. Actually perform the reset.",
    )
    args = parser.parse_args()

    if not args.yes_really:
        print(
            "Refusing to run without --yes-really.\n"
            "This cancels in-flight sync jobs and clears sync locks.\n"
            "Example:\n"
            "  python backend/scripts/reset_sync_locks.py --yes-really",
            file=sys.stderr,
        )
        return 2

    # Import the DB + models only after confirmation so we can safely print help/errors
    # even on environments that don't have DB drivers installed.
    try:
        from mailsync.database import SessionLocal
        from mailsync.sync_jobs import cancel_in_flight_jobs
        from mailsync.sync_state_db import clear_sync_locks
    except ModuleNotFoundError as e:
        print(
            "ERROR: Missing a required dependency to connect to your database.\n"
            f"Missing module: {e}\n\n"
            "Fix: install the project (pip install -e .) into the environment you run this from.\n",
            file=sys.stderr,
        )
        return 1

    db = SessionLocal()
    try:
        cancelled = cancel_in_flight_jobs(db, account_id=args.account_id)
        cleared = clear_sync_locks(db, account_id=args.account_id)
    finally:
        db.close()

    scope = f"account {args.account_id}" if args.account_id else "all accounts"
    print(f"Reset {scope}: cancelled {cancelled} job(s), cleared {cleared} lock(s).")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
