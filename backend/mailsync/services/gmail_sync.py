"""Gmail thread sync with history-based incremental mode.

Full mode lists threads from the last N days. Incremental mode replays the
history log from the stored historyId and re-syncs each touched thread once.
Either way the mailbox profile's latest historyId becomes the next cursor.
"""
import base64
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from email.utils import getaddresses, parseaddr
from typing import Any, Optional

from ..config import settings
from ..exceptions import AuthenticationError, RateLimitTimeout, UpstreamError, UpstreamRateLimitError
from ..models import Email, Thread
from ..rate_limiter import GMAIL_API
from ..sync_state import GmailCursor, load_cursor, save_cursor
from .base_sync import NO_MESSAGES, SUCCESS, BaseSyncService, _chunk_list
from .upserts import upsert_row

logger = logging.getLogger(__name__)

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"

# Token cost per endpoint
THREADS_LIST_TOKENS = 5
THREAD_GET_TOKENS = 2
HISTORY_LIST_TOKENS = 5
PROFILE_TOKENS = 1

HISTORY_CHANGE_KEYS = ("messagesAdded", "messagesDeleted", "labelsAdded", "labelsRemoved")

# Errors that mean the whole run cannot continue (vs. one bad thread).
_RUN_FATAL = (AuthenticationError, UpstreamRateLimitError, RateLimitTimeout)


# ----------------------------
# Message / thread transforms
# ----------------------------

def _headers(payload: dict) -> dict[str, str]:
    return {
        (h.get("name") or "").lower(): h.get("value") or ""
        for h in (payload or {}).get("headers") or []
    }


def parse_address(value: Optional[str]) -> Optional[dict]:
    """'"Jane Doe" <jane@x.com>' -> {"email": "jane@x.com", "name": "Jane Doe"}."""
    if not value:
        return None
    name, addr = parseaddr(value)
    if "@" not in addr:
        return None
    return {"email": addr.strip().lower(), "name": name.strip() or None}


def parse_address_list(value: Optional[str]) -> list[dict]:
    if not value:
        return []
    out = []
    for name, addr in getaddresses([value]):
        if "@" in addr:
            out.append({"email": addr.strip().lower(), "name": name.strip() or None})
    return out


def _decode_body(data: Optional[str]) -> str:
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (ValueError, TypeError):
        return ""


def _extract_bodies(payload: dict) -> tuple[str, str]:
    """Walk MIME parts; return (text/plain, text/html)."""
    text, html = "", ""
    stack = [payload or {}]
    while stack:
        part = stack.pop(0)
        mime = (part.get("mimeType") or "").lower()
        data = (part.get("body") or {}).get("data")
        if data and not part.get("filename"):
            if mime == "text/plain" and not text:
                text = _decode_body(data)
            elif mime == "text/html" and not html:
                html = _decode_body(data)
        stack.extend(part.get("parts") or [])
    return text, html


def _has_attachment(payload: dict) -> bool:
    stack = [payload or {}]
    while stack:
        part = stack.pop()
        mime = (part.get("mimeType") or "").lower()
        if part.get("filename") or (part.get("body") or {}).get("attachmentId") or mime.startswith("application/"):
            return True
        stack.extend(part.get("parts") or [])
    return False


def _category(labels: list[str]) -> str:
    for label, category in (("SENT", "sent"), ("DRAFT", "draft"), ("SPAM", "spam"), ("TRASH", "trash")):
        if label in labels:
            return category
    return "inbox"


def _internal_date(message: dict) -> Optional[datetime]:
    raw = message.get("internalDate")
    if raw in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError):
        return None


def transform_message(message: dict) -> dict:
    payload = message.get("payload") or {}
    headers = _headers(payload)
    labels = list(message.get("labelIds") or [])
    text, html = _extract_bodies(payload)
    return {
        "gmail_id": message["id"],
        "gmail_thread_id": message.get("threadId"),
        "subject": headers.get("subject") or "(no subject)",
        "snippet": message.get("snippet"),
        "body_text": text or None,
        "body_html": html or None,
        "from_address": parse_address(headers.get("from")),
        "to_addresses": parse_address_list(headers.get("to")),
        "cc_addresses": parse_address_list(headers.get("cc")),
        "bcc_addresses": parse_address_list(headers.get("bcc")),
        "labels": labels,
        "category": _category(labels),
        "is_read": "UNREAD" not in labels,
        "is_starred": "STARRED" in labels,
        "is_important": "IMPORTANT" in labels,
        "has_attachments": _has_attachment(payload),
        "received_at": _internal_date(message),
    }


def transform_thread(thread: dict) -> tuple[dict, list[dict]]:
    """Merge a thread's messages into thread-level values. Returns (thread_values, message_values)."""
    messages = [transform_message(m) for m in thread.get("messages") or []]
    participants: dict[str, dict] = {}
    labels: list[str] = []
    for m in messages:
        for addr in [m["from_address"], *m["to_addresses"], *m["cc_addresses"]]:
            if addr and addr["email"] not in participants:
                participants[addr["email"]] = addr
        for label in m["labels"]:
            if label not in labels:
                labels.append(label)
    first = messages[0] if messages else {}
    last = messages[-1] if messages else {}
    values = {
        "subject": first.get("subject") or "(no subject)",
        "snippet": last.get("snippet") or thread.get("snippet"),
        "participants": list(participants.values()),
        "labels": labels,
        "message_count": len(messages),
        "is_read": all(m["is_read"] for m in messages),
        "is_starred": any(m["is_starred"] for m in messages),
        "is_important": any(m["is_important"] for m in messages),
        "has_attachments": any(m["has_attachments"] for m in messages),
        "last_message_at": last.get("received_at"),
    }
    return values, messages


def extract_history_thread_ids(history: list[dict]) -> list[str]:
    """Distinct thread ids touched by any change record, in first-seen order."""
    seen: dict[str, None] = {}
    for record in history or []:
        for key in HISTORY_CHANGE_KEYS:
            for change in record.get(key) or []:
                thread_id = (change.get("message") or {}).get("threadId")
                if thread_id:
                    seen.setdefault(thread_id, None)
    return list(seen)


class GmailSyncService(BaseSyncService):
    sync_type = "email"
    rate_limit_key = GMAIL_API

    def sync(self, options: dict) -> dict:
        cursor = load_cursor(self.account, GmailCursor)
        mode = "incremental" if cursor.is_incremental and not options.get("force_full_sync") else "full"
        deleted = 0

        if mode == "incremental":
            thread_ids = self._collect_history(cursor.history_id)
            if thread_ids is None:
                logger.info(f"History {cursor.history_id} too old for account {self.account.id}; running full sync")
                mode = "full"
            else:
                self.total = len(thread_ids)
                for i, batch in enumerate(_chunk_list(thread_ids, settings.gmail_threads_page_size)):
                    counts = self.steps.run(f"sync-threads-{i}", lambda: self._sync_thread_batch(batch))
                    self._apply_counts(counts)
                    deleted += int(counts.get("deleted", 0))
                    self._report_progress()

        if mode == "full":
            deleted += self._full_sync()

        profile = self.steps.run("fetch-profile", self._fetch_profile)
        history_id = profile.get("history_id")
        self.steps.run("save-cursor", lambda: self._save_cursor(history_id))

        status = SUCCESS
        if mode == "full" and self.total == 0:
            status = NO_MESSAGES
        return {
            "status": status,
            "mode": mode,
            "threads_processed": self.processed,
            "threads_failed": self.failed,
            "threads_deleted": deleted,
            "total_threads": self.total,
            "history_id": history_id,
        }

    # ----------------------------
    # Incremental
    # ----------------------------

    def _collect_history(self, start_history_id: str) -> Optional[list[str]]:
        """Page the history log; None if the start id has expired upstream."""
        seen: dict[str, None] = {}
        page_token = None
        page = 0
        while True:
            data = self.steps.run(
                f"history-page-{page}",
                lambda: self._fetch_history_page(start_history_id, page_token),
            )
            if data.get("too_old"):
                return None
            for thread_id in data.get("thread_ids") or []:
                seen.setdefault(thread_id, None)
            page_token = data.get("next_page_token")
            page += 1
            if not page_token:
                break
        logger.info(f"History since {start_history_id} touched {len(seen)} threads")
        return list(seen)

    def _fetch_history_page(self, start_history_id: str, page_token: Optional[str]) -> dict:
        params = {"startHistoryId": start_history_id, "maxResults": settings.gmail_history_max_results}
        if page_token:
            params["pageToken"] = page_token
        try:
            data = self._fetch(f"{GMAIL_API_BASE}/history", tokens=HISTORY_LIST_TOKENS, params=params)
        except UpstreamError as e:
            if e.status == 404:
                return {"too_old": True, "thread_ids": [], "next_page_token": None}
            raise
        return {
            "thread_ids": extract_history_thread_ids(data.get("history") or []),
            "next_page_token": data.get("nextPageToken"),
        }

    # ----------------------------
    # Full
    # ----------------------------

    def _full_sync(self) -> int:
        after = datetime.now(timezone.utc) - timedelta(days=settings.gmail_full_sync_days_back)
        window = self.steps.run("full-sync-window", lambda: {"query": f"after:{int(after.timestamp())}"})
        query = window["query"]
        deleted = 0
        page_token = None
        page = 0
        while True:
            listing = self.steps.run(f"threads-page-{page}", lambda: self._list_threads_page(query, page_token))
            thread_ids = listing.get("thread_ids") or []
            self.total += len(thread_ids)
            if thread_ids:
                counts = self.steps.run(f"sync-threads-page-{page}", lambda: self._sync_thread_batch(thread_ids))
                self._apply_counts(counts)
                deleted += int(counts.get("deleted", 0))
                self._report_progress()
            page_token = listing.get("next_page_token")
            page += 1
            if not page_token:
                break
        return deleted

    def _list_threads_page(self, query: str, page_token: Optional[str]) -> dict:
        params = {"q": query, "maxResults": settings.gmail_threads_page_size}
        if page_token:
            params["pageToken"] = page_token
        data = self._fetch(f"{GMAIL_API_BASE}/threads", tokens=THREADS_LIST_TOKENS, params=params)
        return {
            "thread_ids": [t["id"] for t in data.get("threads") or [] if t.get("id")],
            "next_page_token": data.get("nextPageToken"),
        }

    # ----------------------------
    # Thread fetch + persist
    # ----------------------------

    def _get_thread(self, thread_id: str) -> dict:
        return self._fetch(
            f"{GMAIL_API_BASE}/threads/{thread_id}",
            tokens=THREAD_GET_TOKENS,
            params={"format": "full"},
        )

    def _fetch_threads_concurrently(self, thread_ids: list[str]) -> list[tuple[str, Optional[dict], Optional[Exception]]]:
        """Fetch one bounded batch in parallel; results keep input order."""
        results = []
        with ThreadPoolExecutor(max_workers=max(1, len(thread_ids))) as pool:
            futures = [pool.submit(self._get_thread, tid) for tid in thread_ids]
            for tid, fut in zip(thread_ids, futures):
                try:
                    results.append((tid, fut.result(), None))
                except Exception as e:
                    results.append((tid, None, e))
        return results

    def _sync_thread_batch(self, thread_ids: list[str]) -> dict:
        """Fetch and upsert threads. Persistence stays on this thread (single writer)."""
        processed = failed = deleted = 0
        for chunk in _chunk_list(thread_ids, settings.gmail_fetch_batch_size):
            for thread_id, data, err in self._fetch_threads_concurrently(chunk):
                if err is not None:
                    if isinstance(err, _RUN_FATAL):
                        raise err
                    if isinstance(err, UpstreamError) and err.status == 404:
                        self._delete_local_thread(thread_id)
                        deleted += 1
                        continue
                    logger.warning(f"Job {self.job_id}: fetching thread {thread_id} failed: {err}")
                    failed += 1
                    continue
                if self._persist_record(f"thread {thread_id}", lambda: self._upsert_thread(data)):
                    processed += 1
                else:
                    failed += 1
        return {"processed": processed, "failed": failed, "deleted": deleted}

    def _upsert_thread(self, data: dict) -> Thread:
        values, messages = transform_thread(data)
        thread = upsert_row(
            self.db,
            Thread,
            {"gmail_thread_id": data["id"], "account_id": self.account.id},
            dict(values, user_id=self.account.user_id),
        )
        for message in messages:
            upsert_row(
                self.db,
                Email,
                {"gmail_id": message.pop("gmail_id"), "account_id": self.account.id},
                dict(message, user_id=self.account.user_id, thread_id=thread.id),
            )
        return thread

    def _delete_local_thread(self, gmail_thread_id: str) -> None:
        thread = (
            self.db.query(Thread)
            .filter(Thread.gmail_thread_id == gmail_thread_id, Thread.account_id == self.account.id)
            .first()
        )
        if thread is not None:
            self.db.delete(thread)
            self.db.flush()

    # ----------------------------
    # Cursor
    # ----------------------------

    def _fetch_profile(self) -> dict:
        data = self._fetch(f"{GMAIL_API_BASE}/profile", tokens=PROFILE_TOKENS)
        return {"history_id": str(data["historyId"]) if data.get("historyId") else None}

    def _save_cursor(self, history_id: Optional[str]) -> dict:
        cursor = load_cursor(self.account, GmailCursor)
        if history_id:
            cursor.history_id = history_id
        cursor.last_sync = datetime.utcnow()
        save_cursor(self.account, cursor)
        return {"history_id": cursor.history_id}
