"""SyncJob tracker: lifecycle, progress counters and error text of one sync run.

Tracker writes are never fatal to the run that issues them: a failed write is
rolled back and logged, and the run keeps going. Callers must therefore only
call the tracker between steps, when the session holds no other pending work.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .models import SyncJob

logger = logging.getLogger(__name__)

SYNC_TYPES = ("email", "calendar", "contacts")

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

TERMINAL_STATUSES = (COMPLETED, FAILED, CANCELLED)
_STATUS_RANK = {PENDING: 0, PROCESSING: 1, COMPLETED: 2, FAILED: 2, CANCELLED: 2}

_UPDATABLE_FIELDS = {
    "status",
    "total_items",
    "processed_items",
    "failed_items",
    "config",
    "result",
    "error",
    "started_at",
    "completed_at",
}


def get_sync_job(db: Session, job_id: str) -> Optional[SyncJob]:
    return db.query(SyncJob).filter(SyncJob.id == job_id).first()


def create_sync_job(
    db: Session,
    *,
    user_id: str,
    account_id: str,
    sync_type: str,
    config: Optional[dict[str, Any]] = None,
    job_id: Optional[str] = None,
) -> str:
    """Insert a pending job with zeroed counters and return its id.

    When `job_id` names an existing job (a redelivered task), that job is reused.
    """
    if sync_type not in SYNC_TYPES:
        raise ValueError(f"Unknown sync type: {sync_type}")
    if job_id:
        existing = get_sync_job(db, job_id)
        if existing:
            return existing.id
    job = SyncJob(
        user_id=user_id,
        account_id=account_id,
        type=sync_type,
        status=PENDING,
        total_items=0,
        processed_items=0,
        failed_items=0,
        config=config or {},
    )
    if job_id:
        job.id = job_id
    db.add(job)
    db.commit()
    return job.id


def _allowed_transition(current: str, new: str) -> bool:
    if current in TERMINAL_STATUSES:
        return False
    return _STATUS_RANK.get(new, -1) > _STATUS_RANK.get(current, -1)


def update_sync_job(db: Session, job_id: str, **fields: Any) -> bool:
    """Merge fields into the job row. Returns False if nothing was written."""
    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown SyncJob fields: {sorted(unknown)}")
    try:
        job = get_sync_job(db, job_id)
        if not job:
            logger.warning(f"SyncJob {job_id} not found; update skipped")
            return False
        if job.status in TERMINAL_STATUSES:
            logger.warning(f"SyncJob {job_id} is {job.status}; update skipped")
            return False
        new_status = fields.pop("status", None)
        if new_status and new_status != job.status:
            if not _allowed_transition(job.status, new_status):
                logger.warning(f"SyncJob {job_id}: ignoring status change {job.status} -> {new_status}")
            else:
                job.status = new_status
                if new_status in TERMINAL_STATUSES and "completed_at" not in fields:
                    job.completed_at = datetime.utcnow()
        for key, value in fields.items():
            setattr(job, key, value)
        db.commit()
        return True
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to update SyncJob {job_id}: {e}")
        return False


def mark_job_processing(db: Session, job_id: str) -> bool:
    job = get_sync_job(db, job_id)
    if job and job.status == PROCESSING:
        return True
    return update_sync_job(db, job_id, status=PROCESSING, started_at=datetime.utcnow())


def cancel_in_flight_jobs(db: Session, *, account_id: Optional[str] = None, error: Optional[str] = None) -> int:
    """Administrative override: mark pending/processing jobs cancelled."""
    q = db.query(SyncJob).filter(SyncJob.status.in_((PENDING, PROCESSING)))
    if account_id:
        q = q.filter(SyncJob.account_id == account_id)
    now = datetime.utcnow()
    count = 0
    for job in q.all():
        job.status = CANCELLED
        job.error = error or "Cancelled by administrator"
        job.completed_at = now
        count += 1
    db.commit()
    return count


def job_to_dict(job: SyncJob) -> dict:
    return {
        "id": job.id,
        "user_id": job.user_id,
        "account_id": job.account_id,
        "type": job.type,
        "status": job.status,
        "total_items": job.total_items or 0,
        "processed_items": job.processed_items or 0,
        "failed_items": job.failed_items or 0,
        "config": job.config or {},
        "result": job.result,
        "error": job.error,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
        "created_at": job.created_at.isoformat() if job.created_at else None,
    }
