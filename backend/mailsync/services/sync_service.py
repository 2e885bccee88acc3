"""Sync trigger surface: start_sync / get_sync_status for API, tasks and scripts."""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from ..fetch_client import FetchClient
from ..models import Account
from ..rate_limiter import TokenBucket
from ..sync_jobs import SYNC_TYPES
from ..sync_state_db import get_sync_status as _get_sync_status
from .base_sync import ERROR, BaseSyncService
from .calendar_sync import CalendarSyncService
from .contacts_sync import ContactsSyncService
from .gmail_sync import GmailSyncService

logger = logging.getLogger(__name__)

STRATEGIES: dict[str, type[BaseSyncService]] = {
    "email": GmailSyncService,
    "calendar": CalendarSyncService,
    "contacts": ContactsSyncService,
}

PROVIDER_SYNC_TYPES = {
    "gmail": ("email",),
    "google_calendar": ("calendar",),
    "google_contacts": ("contacts",),
}


def sync_types_for_provider(provider: Optional[str]) -> tuple[str, ...]:
    return PROVIDER_SYNC_TYPES.get((provider or "").lower(), ())


def resolve_sync_types(account: Account, requested: str) -> list[str]:
    """Expand 'auto' (by account provider) and 'all'; validate explicit types."""
    if requested == "auto":
        return list(sync_types_for_provider(account.provider))
    if requested == "all":
        return list(SYNC_TYPES)
    if requested not in SYNC_TYPES:
        raise ValueError(f"Invalid sync type: {requested}")
    return [requested]


def start_sync(
    db: Session,
    account_id: str,
    sync_type: str,
    external_user_id: Optional[str] = None,
    *,
    job_id: Optional[str] = None,
    fetch_client: Optional[FetchClient] = None,
    rate_limiter: Optional[TokenBucket] = None,
    options: Optional[dict] = None,
) -> dict:
    """Run one sync to completion in the calling thread and return its outcome."""
    account = db.query(Account).filter(Account.id == account_id).first()
    if account is None:
        return {"status": ERROR, "error": "Account not found"}
    if not account.is_active:
        return {"status": ERROR, "error": "Account is not active"}
    strategy_cls = STRATEGIES.get(sync_type)
    if strategy_cls is None:
        return {"status": ERROR, "error": f"Invalid sync type: {sync_type}"}

    strategy = strategy_cls(
        db,
        account,
        fetch_client=fetch_client,
        rate_limiter=rate_limiter,
        external_user_id=external_user_id,
    )
    return strategy.run(job_id=job_id, options=options)


def get_sync_status(db: Session, account_id: str, sync_type: str) -> dict:
    return _get_sync_status(db, account_id, sync_type)
