"""Sync API: POST /sync, GET /sync-status, GET /sync-events (SSE), GET /sync-jobs/{id}."""
import asyncio
import json
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from sse_starlette.sse import EventSourceResponse

from ..auth import require_api_key, require_api_key_for_sse
from ..database import SessionLocal, get_sync_db
from ..models import Account
from ..schemas import SyncRequest
from ..services.sync_service import get_sync_status, resolve_sync_types, start_sync
from ..sync_jobs import SYNC_TYPES, get_sync_job, job_to_dict
from ..sync_state_db import release_sync_lock, try_acquire_sync_lock

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["sync"])


def _run_sync_task(account_id: str, sync_type: str, external_user_id: Optional[str], job_id: str, options: dict):
    """Run a sync whose lock the request handler already took under job_id."""
    session = SessionLocal()
    result: dict = {}
    try:
        result = start_sync(session, account_id, sync_type, external_user_id, job_id=job_id, options=options)
    except Exception as e:
        # start_sync reports run failures itself; this only catches DB/session breakage.
        logger.exception(f"Background {sync_type} sync for account {account_id} crashed: {e}")
        result = {"status": "error", "error": str(e)}
    finally:
        try:
            # The run releases its own lock; this covers returns before the run started.
            state = get_sync_status(session, account_id, sync_type)
            if state["is_syncing"] and state["active_job_id"] == job_id:
                release_sync_lock(
                    session,
                    account_id,
                    sync_type,
                    status="error",
                    error=result.get("error") or "Sync did not start",
                    job_id=job_id,
                )
        finally:
            session.close()


def _aggregate_status(results: dict) -> str:
    statuses = [r.get("status") for r in results.values()]
    if len(statuses) == 1:
        return statuses[0]
    if "error" in statuses:
        return "error"
    if all(s == "already_syncing" for s in statuses):
        return "already_syncing"
    return "success"


@router.post("/sync", dependencies=[Depends(require_api_key)])
def trigger_sync(
    body: SyncRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_sync_db),
):
    """Start a sync. sync_type=auto picks the type from the account's provider; all runs every type.
    With wait=false the sync runs in the background; poll GET /api/sync-status or GET /api/sync-events."""
    account = db.query(Account).filter(Account.id == body.account_id).first()
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")
    try:
        sync_types = resolve_sync_types(account, body.sync_type)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not sync_types:
        raise HTTPException(status_code=400, detail=f"No sync type for provider {account.provider}")

    options = {"force_full_sync": True} if body.force_full_sync else {}
    results: dict[str, dict] = {}
    if body.wait:
        for sync_type in sync_types:
            results[sync_type] = start_sync(db, account.id, sync_type, body.external_user_id, options=options)
        return {"status": _aggregate_status(results), "results": results}

    for sync_type in sync_types:
        job_id = str(uuid.uuid4())
        # Take the lock here so a second request is refused before the first task starts;
        # the run accepts a lock already held under its own job id.
        if not try_acquire_sync_lock(db, account.id, sync_type, job_id):
            state = get_sync_status(db, account.id, sync_type)
            results[sync_type] = {"status": "already_syncing", "sync_job_id": state["active_job_id"]}
            continue
        background_tasks.add_task(_run_sync_task, account.id, sync_type, body.external_user_id, job_id, options)
        results[sync_type] = {"status": "started", "sync_job_id": job_id}
    started = any(r["status"] == "started" for r in results.values())
    return {
        "message": "Sync started." if started else "Sync already running.",
        "status": "started" if started else "already_syncing",
        "results": results,
    }


@router.get("/sync-status", dependencies=[Depends(require_api_key)])
def sync_status(
    account_id: str,
    sync_type: str = Query("email"),
    db: Session = Depends(get_sync_db),
):
    """Last-written snapshot: is_syncing, last_sync_start/complete, counts, last_error."""
    if sync_type not in SYNC_TYPES:
        raise HTTPException(status_code=400, detail=f"Invalid sync type: {sync_type}")
    return get_sync_status(db, account_id, sync_type)


@router.get("/sync-jobs/{job_id}", dependencies=[Depends(require_api_key)])
def sync_job(job_id: str, db: Session = Depends(get_sync_db)):
    job = get_sync_job(db, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Sync job not found")
    return job_to_dict(job)


async def _sse_generator(account_id: str, sync_type: str):
    """Yield the status snapshot every 0.5s until the sync is no longer running (or its lock went stale)."""
    while True:
        session = SessionLocal()
        try:
            state = get_sync_status(session, account_id, sync_type)
        finally:
            session.close()
        yield {"data": json.dumps(state)}
        if not state.get("is_syncing") or state.get("lock_stale"):
            break
        await asyncio.sleep(0.5)


@router.get("/sync-events", dependencies=[Depends(require_api_key_for_sse)])
async def sync_events(account_id: str, sync_type: str = Query("email")):
    """SSE stream of sync progress for one account and sync type."""
    if sync_type not in SYNC_TYPES:
        raise HTTPException(status_code=400, detail=f"Invalid sync type: {sync_type}")
    return EventSourceResponse(_sse_generator(account_id, sync_type))
