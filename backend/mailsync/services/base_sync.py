"""Shared run loop for provider sync strategies.

A run: acquire the single-flight lock -> create/resume the SyncJob -> provider
`sync()` (checkpointed steps) -> mark the job completed or failed -> release
the lock on every exit path.
"""
import logging
import uuid
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import SyncError
from ..fetch_client import FetchClient, get_fetch_client
from ..models import Account
from ..rate_limiter import TokenBucket, get_rate_limiter
from ..sync_jobs import (
    COMPLETED,
    FAILED,
    TERMINAL_STATUSES,
    create_sync_job,
    get_sync_job,
    mark_job_processing,
    update_sync_job,
)
from ..sync_state_db import (
    get_sync_status,
    release_sync_lock,
    set_sync_progress,
    try_acquire_sync_lock,
)
from .steps import StepRunner

logger = logging.getLogger(__name__)

SUCCESS = "success"
ALREADY_SYNCING = "already_syncing"
NO_CALENDARS = "no_calendars"
NO_PRIMARY_CALENDAR = "no_primary_calendar"
NO_MESSAGES = "no_messages"
ERROR = "error"


def _chunk_list(items: list, chunk_size: int) -> list[list]:
    if chunk_size <= 0:
        return [items]
    return [items[i : i + chunk_size] for i in range(0, len(items), chunk_size)]


def user_facing_error(exc: BaseException) -> str:
    """Short message for callers; tracebacks stay in the logs."""
    message = getattr(exc, "message", None) or str(exc)
    return message or exc.__class__.__name__


class BaseSyncService:
    sync_type = ""
    rate_limit_key = ""

    def __init__(
        self,
        db: Session,
        account: Account,
        *,
        fetch_client: Optional[FetchClient] = None,
        rate_limiter: Optional[TokenBucket] = None,
        external_user_id: Optional[str] = None,
    ):
        self.db = db
        self.account = account
        self.fetch_client = fetch_client or get_fetch_client()
        self.limiter = rate_limiter or get_rate_limiter(self.rate_limit_key)
        self.external_user_id = external_user_id or account.user_id
        # Read once here; fetches run on worker threads and must not lazy-load through the session.
        self.external_account_id = account.external_account_id
        self.job_id: Optional[str] = None
        self.steps: Optional[StepRunner] = None
        # Rebuilt from step results, so a replayed job never double-counts.
        self.processed = 0
        self.failed = 0
        self.total = 0

    # ----------------------------
    # Run lifecycle
    # ----------------------------

    def run(self, *, job_id: Optional[str] = None, options: Optional[dict] = None) -> dict:
        options = options or {}
        job_id = job_id or str(uuid.uuid4())
        account_id = self.account.id

        if not try_acquire_sync_lock(self.db, account_id, self.sync_type, job_id):
            active = get_sync_status(self.db, account_id, self.sync_type).get("active_job_id")
            logger.info(f"{self.sync_type} sync already running for account {account_id} (job {active})")
            return {"status": ALREADY_SYNCING, "sync_job_id": active}

        outcome = ERROR
        error: Optional[str] = None
        try:
            self.job_id = create_sync_job(
                self.db,
                user_id=self.account.user_id,
                account_id=account_id,
                sync_type=self.sync_type,
                config=options,
                job_id=job_id,
            )
            existing = get_sync_job(self.db, self.job_id)
            if existing is not None and existing.status in TERMINAL_STATUSES:
                # Redelivered after the job already finished; report it, don't redo it.
                outcome = (existing.result or {}).get("status", ERROR)
                error = existing.error
                self.processed = existing.processed_items or 0
                self.failed = existing.failed_items or 0
                self.total = existing.total_items or 0
                return dict(existing.result or {"status": ERROR, "error": existing.error}, sync_job_id=self.job_id)
            mark_job_processing(self.db, self.job_id)
            self.steps = StepRunner(self.db, self.job_id)
            logger.info(f"Starting {self.sync_type} sync for account {account_id} (job {self.job_id})")

            result = self.sync(options)
            outcome = result.get("status", SUCCESS)
            update_sync_job(
                self.db,
                self.job_id,
                status=COMPLETED,
                total_items=self.total,
                processed_items=self.processed,
                failed_items=self.failed,
                result=result,
            )
            logger.info(
                f"{self.sync_type} sync finished for account {account_id}: {outcome} "
                f"(processed={self.processed}, failed={self.failed}, total={self.total})"
            )
            result["sync_job_id"] = self.job_id
            return result
        except Exception as e:
            self.db.rollback()
            error = user_facing_error(e)
            outcome = ERROR
            logger.exception(f"{self.sync_type} sync failed for account {account_id}: {error}")
            failure = {"status": ERROR, "error": error, "retryable": False}
            if isinstance(e, SyncError):
                failure.update(e.to_dict())
            if self.job_id:
                update_sync_job(
                    self.db,
                    self.job_id,
                    status=FAILED,
                    error=error,
                    total_items=max(self.total, self.processed + self.failed),
                    processed_items=self.processed,
                    failed_items=self.failed,
                    result=failure,
                )
            return dict(failure, sync_job_id=self.job_id)
        finally:
            release_sync_lock(
                self.db,
                account_id,
                self.sync_type,
                status=outcome,
                error=error,
                counts={"processed": self.processed, "failed": self.failed, "total": self.total},
                job_id=job_id,
            )

    def sync(self, options: dict) -> dict:
        """Provider-specific fetch/transform/persist loop. Returns the result dict."""
        raise NotImplementedError

    # ----------------------------
    # Helpers for strategies
    # ----------------------------

    def _fetch(
        self,
        url: str,
        *,
        tokens: int = 1,
        params: Optional[dict] = None,
        method: str = "GET",
        body: Any = None,
    ) -> Any:
        """Rate-limited upstream call; `tokens` is this endpoint's declared cost."""
        self.limiter.wait(tokens, timeout=settings.rate_limit_wait_timeout_s)
        options: dict = {"method": method}
        if params:
            options["params"] = params
        if body is not None:
            options["body"] = body
        return self.fetch_client.request(
            self.external_account_id,
            self.external_user_id,
            url,
            options,
        )

    def _persist_record(self, label: str, fn: Callable[[], Any]) -> bool:
        """Run one record's transform+upsert in a savepoint. False means it failed and was rolled back."""
        try:
            with self.db.begin_nested():
                fn()
                self.db.flush()
            return True
        except Exception as e:
            logger.warning(f"Job {self.job_id}: {label} failed: {e}")
            return False

    def _apply_counts(self, counts: dict) -> None:
        self.processed += int(counts.get("processed", 0))
        self.failed += int(counts.get("failed", 0))

    def _report_progress(self, total: Optional[int] = None) -> None:
        """One progress write per page/step (tracker and lock snapshot)."""
        total = self.total if total is None else total
        update_sync_job(
            self.db,
            self.job_id,
            total_items=total,
            processed_items=self.processed,
            failed_items=self.failed,
        )
        set_sync_progress(
            self.db,
            self.account.id,
            self.sync_type,
            processed=self.processed,
            failed=self.failed,
            total=total,
        )
