import base64

import pytest

from mailsync.exceptions import AuthenticationError, UpstreamError, UpstreamRateLimitError
from mailsync.models import Email, SyncJob, Thread
from mailsync.services.base_sync import _chunk_list
from mailsync.services.gmail_sync import (
    GmailSyncService,
    extract_history_thread_ids,
    parse_address,
    transform_message,
    transform_thread,
)
from mailsync.sync_state_db import get_sync_status


def _b64(text):
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


def _message(mid, thread_id, *, labels=("INBOX",), sender="Alice <alice@example.com>", to="me@example.com",
             cc=None, subject="Hello", internal_date="1700000000000", attachment=False):
    headers = [{"name": "From", "value": sender}, {"name": "To", "value": to}]
    if subject is not None:
        headers.append({"name": "Subject", "value": subject})
    if cc:
        headers.append({"name": "Cc", "value": cc})
    parts = [
        {"mimeType": "text/plain", "body": {"data": _b64(f"plain {mid}")}},
        {"mimeType": "text/html", "body": {"data": _b64(f"<p>html {mid}</p>")}},
    ]
    if attachment:
        parts.append({"mimeType": "application/pdf", "filename": "cv.pdf", "body": {"attachmentId": "att-1"}})
    return {
        "id": mid,
        "threadId": thread_id,
        "labelIds": list(labels),
        "snippet": f"snippet {mid}",
        "internalDate": internal_date,
        "payload": {"mimeType": "multipart/mixed", "headers": headers, "parts": parts},
    }


def _thread(tid, *messages):
    if not messages:
        messages = (_message(f"{tid}-m1", tid),)
    return {"id": tid, "messages": list(messages)}


def _service(db, account, fetch_client, limiter):
    return GmailSyncService(db, account, fetch_client=fetch_client, rate_limiter=limiter)


# ----------------------------
# Transforms
# ----------------------------

def test_chunk_list_splits_evenly():
    items = list(range(10))
    assert _chunk_list(items, 3) == [[0, 1, 2], [3, 4, 5], [6, 7, 8], [9]]
    assert _chunk_list([], 3) == []


def test_parse_address_handles_display_names_and_garbage():
    assert parse_address('"Jane Doe" <Jane@Example.com>') == {"email": "jane@example.com", "name": "Jane Doe"}
    assert parse_address("bob@example.com") == {"email": "bob@example.com", "name": None}
    assert parse_address("undisclosed-recipients:;") is None
    assert parse_address(None) is None


def test_transform_message_extracts_bodies_flags_and_category():
    msg = _message("m1", "T1", labels=("SENT", "UNREAD", "STARRED"), cc="Bob <bob@example.com>", attachment=True)
    values = transform_message(msg)

    assert values["gmail_id"] == "m1"
    assert values["body_text"] == "plain m1"
    assert values["body_html"] == "<p>html m1</p>"
    assert values["category"] == "sent"
    assert values["is_read"] is False
    assert values["is_starred"] is True
    assert values["has_attachments"] is True
    assert values["cc_addresses"] == [{"email": "bob@example.com", "name": "Bob"}]
    assert values["received_at"].year == 2023


def test_transform_message_defaults_missing_subject():
    assert transform_message(_message("m1", "T1", subject=None))["subject"] == "(no subject)"


def test_thread_flags_merge_across_messages():
    thread = _thread(
        "T1",
        _message("m1", "T1", labels=("INBOX",), attachment=True, internal_date="1700000000000"),
        _message("m2", "T1", labels=("INBOX", "UNREAD", "STARRED"), sender="Bob <bob@example.com>",
                 internal_date="1700000500000"),
    )
    values, messages = transform_thread(thread)

    assert len(messages) == 2
    assert values["message_count"] == 2
    assert values["is_read"] is False  # one unread message makes the thread unread
    assert values["is_starred"] is True
    assert values["has_attachments"] is True
    assert values["labels"] == ["INBOX", "UNREAD", "STARRED"]
    assert [p["email"] for p in values["participants"]] == ["alice@example.com", "me@example.com", "bob@example.com"]
    assert values["last_message_at"] == messages[1]["received_at"]
    assert values["snippet"] == "snippet m2"


def test_history_thread_ids_are_deduplicated_in_order():
    history = [
        {"messagesAdded": [{"message": {"id": "a", "threadId": "T1"}}]},
        {"labelsAdded": [{"message": {"id": "b", "threadId": "T2"}}]},
        {"messagesDeleted": [{"message": {"id": "c", "threadId": "T1"}}]},
        {"labelsRemoved": [{"message": {"id": "d", "threadId": "T3"}}], "messages": [{"id": "d"}]},
    ]
    assert extract_history_thread_ids(history) == ["T1", "T2", "T3"]


# ----------------------------
# Full mode
# ----------------------------

def _full_mailbox(fetch_client):
    fetch_client.add("/threads", {"threads": [{"id": "T1"}, {"id": "T2"}], "nextPageToken": "p2"},
                     {"threads": [{"id": "T3"}]})
    fetch_client.add("/threads/T1", _thread("T1", _message("m1", "T1"), _message("m2", "T1")))
    fetch_client.add("/threads/T2", _thread("T2"))
    fetch_client.add("/threads/T3", _thread("T3"))
    fetch_client.add("/profile", {"emailAddress": "me@example.com", "historyId": "555"})


def test_full_sync_upserts_threads_and_saves_cursor(db_session, gmail_account, fetch_client, limiter):
    _full_mailbox(fetch_client)

    result = _service(db_session, gmail_account, fetch_client, limiter).run()

    assert result["status"] == "success"
    assert result["mode"] == "full"
    assert result["threads_processed"] == 3
    assert result["total_threads"] == 3
    assert result["history_id"] == "555"
    assert db_session.query(Thread).count() == 3
    assert db_session.query(Email).count() == 4

    db_session.refresh(gmail_account)
    assert gmail_account.sync_state["historyId"] == "555"
    assert gmail_account.sync_state["lastSync"]

    list_calls = fetch_client.calls_to("/threads")
    assert list_calls[0][1]["params"]["q"].startswith("after:")
    assert list_calls[1][1]["params"]["pageToken"] == "p2"

    job = db_session.query(SyncJob).one()
    assert job.status == "completed"
    assert (job.processed_items, job.failed_items, job.total_items) == (3, 0, 3)
    assert get_sync_status(db_session, gmail_account.id, "email")["is_syncing"] is False


def test_rerun_is_idempotent(db_session, gmail_account, fetch_client, limiter):
    _full_mailbox(fetch_client)
    _service(db_session, gmail_account, fetch_client, limiter).run()

    fetch_client.routes["/threads"] = [{"threads": [{"id": "T1"}]}]
    fetch_client.routes["/threads/T1"] = [
        _thread("T1", _message("m1", "T1", labels=("INBOX", "STARRED")), _message("m2", "T1"))
    ]
    result = _service(db_session, gmail_account, fetch_client, limiter).run(options={"force_full_sync": True})

    assert result["status"] == "success"
    assert db_session.query(Thread).count() == 3
    assert db_session.query(Email).count() == 4
    t1 = db_session.query(Thread).filter(Thread.gmail_thread_id == "T1").one()
    assert t1.is_starred is True


def test_empty_mailbox_reports_no_messages(db_session, gmail_account, fetch_client, limiter):
    fetch_client.add("/threads", {"resultSizeEstimate": 0})
    fetch_client.add("/profile", {"historyId": "77"})

    result = _service(db_session, gmail_account, fetch_client, limiter).run()

    assert result["status"] == "no_messages"
    assert result["total_threads"] == 0
    assert db_session.query(SyncJob).one().status == "completed"


def test_one_bad_thread_does_not_fail_the_run(db_session, gmail_account, fetch_client, limiter):
    fetch_client.add("/threads", {"threads": [{"id": "T1"}, {"id": "T2"}, {"id": "T3"}]})
    fetch_client.add("/threads/T1", _thread("T1"))
    # Message without an id cannot be stored
    fetch_client.add("/threads/T2", {"id": "T2", "messages": [{"threadId": "T2", "payload": {}}]})
    fetch_client.add("/threads/T3", UpstreamError(500, "Upstream error 500: backend error"))
    fetch_client.add("/profile", {"historyId": "9"})

    result = _service(db_session, gmail_account, fetch_client, limiter).run()

    assert result["status"] == "success"
    assert result["threads_processed"] == 1
    assert result["threads_failed"] == 2
    assert {t.gmail_thread_id for t in db_session.query(Thread).all()} == {"T1"}
    job = db_session.query(SyncJob).one()
    assert (job.status, job.processed_items, job.failed_items, job.total_items) == ("completed", 1, 2, 3)


# ----------------------------
# Incremental mode
# ----------------------------

INCREMENTAL_STATE = {"historyId": "100", "lastSync": "2026-01-01T00:00:00"}


def test_incremental_fetches_each_touched_thread_once(db_session, make_account, fetch_client, limiter):
    account = make_account("gmail", sync_state=dict(INCREMENTAL_STATE))
    fetch_client.add("/history", {
        "history": [
            {"messagesAdded": [{"message": {"id": "a", "threadId": "T1"}}]},
            {"labelsAdded": [{"message": {"id": "b", "threadId": "T2"}}]},
            {"messagesAdded": [{"message": {"id": "c", "threadId": "T1"}}]},
            {"labelsRemoved": [{"message": {"id": "d", "threadId": "T3"}}]},
        ],
        "historyId": "200",
    })
    for tid in ("T1", "T2", "T3"):
        fetch_client.add(f"/threads/{tid}", _thread(tid))
    fetch_client.add("/profile", {"historyId": "200"})

    result = _service(db_session, account, fetch_client, limiter).run()

    assert result["mode"] == "incremental"
    assert result["threads_processed"] == 3
    thread_gets = [url for url, _ in fetch_client.calls if "/threads/" in url]
    assert sorted(thread_gets) == sorted(set(thread_gets))
    assert len(thread_gets) == 3
    assert fetch_client.calls_to("/threads") == []
    assert fetch_client.calls_to("/history")[0][1]["params"]["startHistoryId"] == "100"

    db_session.refresh(account)
    assert account.sync_state["historyId"] == "200"


def test_expired_history_falls_back_to_full_sync(db_session, make_account, fetch_client, limiter):
    account = make_account("gmail", sync_state=dict(INCREMENTAL_STATE))
    fetch_client.add("/history", UpstreamError(404, "Upstream error 404: Requested entity was not found."))
    fetch_client.add("/threads", {"threads": [{"id": "T1"}]})
    fetch_client.add("/threads/T1", _thread("T1"))
    fetch_client.add("/profile", {"historyId": "300"})

    result = _service(db_session, account, fetch_client, limiter).run()

    assert result["status"] == "success"
    assert result["mode"] == "full"
    assert result["threads_processed"] == 1
    db_session.refresh(account)
    assert account.sync_state["historyId"] == "300"


def test_thread_deleted_upstream_is_removed_locally(db_session, make_account, fetch_client, limiter):
    account = make_account("gmail", sync_state=dict(INCREMENTAL_STATE))
    gone = Thread(account_id=account.id, user_id=account.user_id, gmail_thread_id="T9", subject="old")
    gone.emails.append(Email(account_id=account.id, user_id=account.user_id, gmail_id="m9", gmail_thread_id="T9"))
    db_session.add(gone)
    db_session.commit()

    fetch_client.add("/history", {"history": [{"messagesDeleted": [{"message": {"id": "m9", "threadId": "T9"}}]}]})
    fetch_client.add("/threads/T9", UpstreamError(404, "Upstream error 404: Not Found"))
    fetch_client.add("/profile", {"historyId": "101"})

    result = _service(db_session, account, fetch_client, limiter).run()

    assert result["status"] == "success"
    assert result["threads_deleted"] == 1
    assert db_session.query(Thread).count() == 0
    assert db_session.query(Email).count() == 0


# ----------------------------
# Run-level failures
# ----------------------------

def test_auth_failure_fails_the_run_and_clears_the_lock(db_session, gmail_account, fetch_client, limiter):
    fetch_client.add("/threads", {"threads": [{"id": "T1"}]})
    fetch_client.add("/threads/T1", AuthenticationError(401))

    result = _service(db_session, gmail_account, fetch_client, limiter).run()

    assert result["status"] == "error"
    assert "reconnect" in result["error"]
    job = db_session.query(SyncJob).one()
    assert job.status == "failed"
    assert "reconnect" in job.error
    status = get_sync_status(db_session, gmail_account.id, "email")
    assert status["is_syncing"] is False
    assert status["last_status"] == "error"
    assert db_session.query(Thread).count() == 0


@pytest.mark.parametrize("first_route", ["/threads", "/history"])
def test_rate_limit_on_first_call_fails_cleanly(db_session, make_account, fetch_client, limiter, first_route):
    state = dict(INCREMENTAL_STATE) if first_route == "/history" else {}
    account = make_account("gmail", sync_state=state)
    fetch_client.add(first_route, UpstreamRateLimitError("Rate limit exceeded"))

    result = _service(db_session, account, fetch_client, limiter).run()

    assert result["status"] == "error"
    assert "Rate limit" in result["error"]
    assert get_sync_status(db_session, account.id, "email")["is_syncing"] is False
    assert db_session.query(SyncJob).one().status == "failed"
    db_session.refresh(account)
    assert account.sync_state == state
