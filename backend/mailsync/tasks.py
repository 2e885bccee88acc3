"""Celery tasks: run one sync (resumable by job id) and fan out scheduled syncs."""
import logging
import uuid
from typing import Optional

from celery import shared_task

from .config import settings
from .database import SessionLocal
from .models import Account
from .services.sync_service import start_sync, sync_types_for_provider
from .sync_state_db import get_sync_status

logger = logging.getLogger(__name__)


def _retry_countdown(result: dict, retries: int) -> float:
    """Exponential backoff per attempt; 429s start from a larger base and honor Retry-After."""
    if result.get("code") == "RATE_LIMIT":
        base = settings.sync_rate_limit_retry_base_delay_s
    else:
        base = settings.sync_retry_base_delay_s
    delay = min(base * (2 ** retries), settings.sync_retry_max_delay_s)
    return max(delay, result.get("retry_after_s") or 0)


@shared_task(bind=True, name="mailsync.tasks.run_sync")
def run_sync(
    self,
    account_id: str,
    sync_type: str,
    external_user_id: Optional[str] = None,
    job_id: Optional[str] = None,
    options: Optional[dict] = None,
):
    """
    Run one sync. job_id is fixed when the task is enqueued, so a redelivery
    after a worker crash resumes the same job (completed steps are skipped)
    instead of being turned away as already_syncing.

    A retryable failure (rate limit, network) is re-queued with backoff under a
    new job id; the failed job stays terminal.
    """
    db = SessionLocal()
    try:
        result = start_sync(
            db,
            account_id,
            sync_type,
            external_user_id,
            job_id=job_id,
            options=options,
        )
    finally:
        db.close()

    if result.get("status") == "error":
        logger.error(f"Sync {sync_type} for account {account_id} failed: {result.get('error')}")
        retries = self.request.retries or 0
        if result.get("retryable") and retries < settings.sync_task_max_retries:
            countdown = _retry_countdown(result, retries)
            logger.info(
                f"Retrying {sync_type} sync for account {account_id} in {countdown:.0f}s "
                f"(attempt {retries + 1}/{settings.sync_task_max_retries})"
            )
            raise self.retry(
                args=(account_id, sync_type, external_user_id, str(uuid.uuid4()), options),
                countdown=countdown,
                max_retries=settings.sync_task_max_retries,
            )
    return result


def enqueue_sync(
    account_id: str,
    sync_type: str,
    external_user_id: Optional[str] = None,
    options: Optional[dict] = None,
) -> str:
    """Queue run_sync with a pre-assigned job id; returns the job id."""
    job_id = str(uuid.uuid4())
    run_sync.delay(account_id, sync_type, external_user_id, job_id, options)
    return job_id


@shared_task(bind=True, name="mailsync.tasks.sync_all_accounts")
def sync_all_accounts(self):
    """Scheduled fan-out: queue a sync for every active account not already syncing."""
    db = SessionLocal()
    queued = []
    try:
        accounts = db.query(Account).filter(Account.is_active.is_(True)).all()
        for account in accounts:
            for sync_type in sync_types_for_provider(account.provider):
                state = get_sync_status(db, account.id, sync_type)
                if state["is_syncing"] and not state["lock_stale"]:
                    continue
                job_id = enqueue_sync(account.id, sync_type)
                queued.append({"account_id": account.id, "sync_type": sync_type, "job_id": job_id})
    finally:
        db.close()
    logger.info(f"Queued {len(queued)} scheduled syncs")
    return {"queued": queued}
