"""Single-flight lock and status snapshot per (account, sync type), stored in SyncLock."""
from datetime import datetime, timedelta
from typing import Optional
import logging

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .models import SyncLock

logger = logging.getLogger(__name__)


def get_sync_lock(db: Session, account_id: str, sync_type: str) -> Optional[SyncLock]:
    return (
        db.query(SyncLock)
        .filter(SyncLock.account_id == account_id, SyncLock.sync_type == sync_type)
        .first()
    )


def _ensure_lock_row(db: Session, account_id: str, sync_type: str) -> None:
    if get_sync_lock(db, account_id, sync_type):
        return
    try:
        with db.begin_nested():
            db.add(SyncLock(account_id=account_id, sync_type=sync_type, is_syncing=False))
            db.flush()
    except IntegrityError:
        # Another request created the row first; the unique index keeps it single.
        pass
    db.commit()


def _lease_cutoff(now: datetime) -> datetime:
    return now - timedelta(seconds=settings.sync_lock_lease_s)


def _is_stale(row: SyncLock, now: Optional[datetime] = None) -> bool:
    """A held lock whose holder stopped writing progress (killed process, lost worker)."""
    if not row.is_syncing or row.updated_at is None:
        return False
    return row.updated_at < _lease_cutoff(now or datetime.utcnow())


def try_acquire_sync_lock(db: Session, account_id: str, sync_type: str, job_id: str) -> bool:
    """
    Atomically flip is_syncing false -> true. Returns False if another run holds it.

    A lock already held by the same job_id (a redelivered task resuming its own
    job) counts as acquired. A lock with no progress write within the lease
    (settings.sync_lock_lease_s) is taken over.
    """
    _ensure_lock_row(db, account_id, sync_type)
    now = datetime.utcnow()
    previous = get_sync_lock(db, account_id, sync_type)
    if previous is not None and previous.active_job_id != job_id and _is_stale(previous, now):
        logger.warning(
            f"Taking over stale {sync_type} lock for account {account_id} "
            f"(job {previous.active_job_id}, last update {previous.updated_at.isoformat()})"
        )
    result = db.execute(
        update(SyncLock)
        .where(
            SyncLock.account_id == account_id,
            SyncLock.sync_type == sync_type,
            or_(SyncLock.is_syncing.is_(False), SyncLock.updated_at < _lease_cutoff(now)),
        )
        .values(
            is_syncing=True,
            active_job_id=job_id,
            last_sync_start=now,
            last_status="syncing",
            last_error=None,
            processed=0,
            failed=0,
            total=0,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    acquired = result.rowcount == 1
    db.commit()
    if acquired:
        return True
    row = get_sync_lock(db, account_id, sync_type)
    db.refresh(row)
    return bool(row.is_syncing and row.active_job_id == job_id)


def set_sync_progress(
    db: Session,
    account_id: str,
    sync_type: str,
    *,
    processed: int,
    failed: int,
    total: int,
) -> None:
    """Persist progress counters into the snapshot (best-effort, like the job tracker)."""
    try:
        db.execute(
            update(SyncLock)
            .where(SyncLock.account_id == account_id, SyncLock.sync_type == sync_type)
            .values(processed=processed, failed=failed, total=total, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to record sync progress for {account_id}/{sync_type}: {e}")


def release_sync_lock(
    db: Session,
    account_id: str,
    sync_type: str,
    *,
    status: str,
    error: Optional[str] = None,
    counts: Optional[dict] = None,
    job_id: Optional[str] = None,
) -> None:
    """Clear is_syncing and record the outcome snapshot.

    With job_id, only a lock still held by that job is released; a run whose
    stale lock was taken over leaves the new holder alone.
    """
    # Discard anything a failed run left half-written before touching the lock.
    db.rollback()
    now = datetime.utcnow()
    values = {
        "is_syncing": False,
        "active_job_id": None,
        "last_status": status,
        "last_error": error,
        "updated_at": now,
    }
    if status != "error":
        values["last_sync_complete"] = now
    if counts:
        values.update(
            processed=int(counts.get("processed", 0)),
            failed=int(counts.get("failed", 0)),
            total=int(counts.get("total", 0)),
        )
    stmt = update(SyncLock).where(SyncLock.account_id == account_id, SyncLock.sync_type == sync_type)
    if job_id is not None:
        stmt = stmt.where(SyncLock.active_job_id == job_id)
    result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
    released = result.rowcount or 0
    db.commit()
    if job_id is not None and not released:
        logger.warning(f"{sync_type} lock for account {account_id} no longer held by job {job_id}; left as is")


def clear_sync_locks(db: Session, account_id: Optional[str] = None) -> int:
    """Administrative override: force every (or one account's) lock open."""
    stmt = update(SyncLock).where(SyncLock.is_syncing.is_(True))
    if account_id:
        stmt = stmt.where(SyncLock.account_id == account_id)
    result = db.execute(
        stmt.values(
            is_syncing=False,
            active_job_id=None,
            last_status="cancelled",
            last_error="Lock cleared by administrator",
            updated_at=datetime.utcnow(),
        ).execution_options(synchronize_session=False)
    )
    cleared = result.rowcount or 0
    db.commit()
    return cleared


def get_sync_status(db: Session, account_id: str, sync_type: str) -> dict:
    """Read-only snapshot for status polling; never writes or locks."""
    row = get_sync_lock(db, account_id, sync_type)
    if not row:
        return {
            "account_id": account_id,
            "sync_type": sync_type,
            "is_syncing": False,
            "active_job_id": None,
            "last_sync_start": None,
            "last_sync_complete": None,
            "last_status": None,
            "counts": {"processed": 0, "failed": 0, "total": 0},
            "last_error": None,
            "lock_stale": False,
        }
    return {
        "account_id": account_id,
        "sync_type": sync_type,
        "is_syncing": bool(row.is_syncing),
        "active_job_id": row.active_job_id,
        "last_sync_start": row.last_sync_start.isoformat() if row.last_sync_start else None,
        "last_sync_complete": row.last_sync_complete.isoformat() if row.last_sync_complete else None,
        "last_status": row.last_status,
        "counts": {
            "processed": row.processed or 0,
            "failed": row.failed or 0,
            "total": row.total or 0,
        },
        "last_error": row.last_error,
        "lock_stale": _is_stale(row),
    }
