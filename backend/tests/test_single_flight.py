"""Run lifecycle: one active run per (account, sync type), and the lock is always released."""
import pytest

from mailsync.exceptions import AuthenticationError, UpstreamRateLimitError
from mailsync.models import SyncJob
from mailsync.services.sync_service import resolve_sync_types, start_sync
from mailsync.sync_state_db import get_sync_status, try_acquire_sync_lock

CONNECTIONS = "/people/me/connections"


def _start(db, account, fetch_client, limiter, **kwargs):
    return start_sync(db, account.id, "contacts", fetch_client=fetch_client, rate_limiter=limiter, **kwargs)


def test_second_trigger_while_running_reports_already_syncing(db_session, contacts_account, fetch_client, limiter):
    assert try_acquire_sync_lock(db_session, contacts_account.id, "contacts", "running-job")

    result = _start(db_session, contacts_account, fetch_client, limiter)

    assert result == {"status": "already_syncing", "sync_job_id": "running-job"}
    assert db_session.query(SyncJob).count() == 0
    assert fetch_client.calls == []
    # The running job still owns the lock
    assert get_sync_status(db_session, contacts_account.id, "contacts")["active_job_id"] == "running-job"


def test_lock_released_after_success(db_session, contacts_account, fetch_client, limiter):
    fetch_client.add(CONNECTIONS, {"connections": []})

    result = _start(db_session, contacts_account, fetch_client, limiter)

    assert result["status"] == "success"
    status = get_sync_status(db_session, contacts_account.id, "contacts")
    assert status["is_syncing"] is False
    assert status["last_status"] == "success"
    assert status["last_sync_complete"] is not None
    # A new run can start right away
    assert _start(db_session, contacts_account, fetch_client, limiter)["status"] == "success"


@pytest.mark.parametrize(
    "error, message",
    [
        (AuthenticationError(401), "reconnect"),
        (UpstreamRateLimitError("Rate limit exceeded"), "Rate limit"),
        (RuntimeError("connection pool exploded"), "connection pool exploded"),
    ],
)
def test_lock_released_when_the_run_fails(db_session, contacts_account, fetch_client, limiter, error, message):
    fetch_client.add(CONNECTIONS, error)

    result = _start(db_session, contacts_account, fetch_client, limiter)

    assert result["status"] == "error"
    assert message in result["error"]
    status = get_sync_status(db_session, contacts_account.id, "contacts")
    assert status["is_syncing"] is False
    assert status["last_status"] == "error"
    assert message in status["last_error"]
    job = db_session.query(SyncJob).one()
    assert job.status == "failed"
    assert job.id == result["sync_job_id"]


def test_status_read_does_not_write(db_session, contacts_account, fetch_client, limiter):
    fetch_client.add(CONNECTIONS, {"connections": []})
    _start(db_session, contacts_account, fetch_client, limiter)

    before = get_sync_status(db_session, contacts_account.id, "contacts")
    after = get_sync_status(db_session, contacts_account.id, "contacts")
    assert before == after


def test_unknown_or_inactive_account(db_session, contacts_account, fetch_client, limiter):
    assert start_sync(db_session, "missing", "contacts", fetch_client=fetch_client) == {
        "status": "error",
        "error": "Account not found",
    }
    contacts_account.is_active = False
    db_session.commit()
    assert _start(db_session, contacts_account, fetch_client, limiter)["error"] == "Account is not active"
    assert start_sync(db_session, contacts_account.id, "drive")["status"] == "error"


def test_resolve_sync_types(make_account):
    gmail = make_account("gmail")
    assert resolve_sync_types(gmail, "auto") == ["email"]
    assert resolve_sync_types(gmail, "all") == ["email", "calendar", "contacts"]
    assert resolve_sync_types(gmail, "calendar") == ["calendar"]
    with pytest.raises(ValueError):
        resolve_sync_types(gmail, "drive")
