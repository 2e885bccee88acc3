"""Google Calendar sync for the account's primary calendar."""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import quote

from ..config import settings
from ..models import CalendarEvent
from ..rate_limiter import CALENDAR_API
from ..sync_state import CalendarCursor, save_cursor
from .base_sync import NO_CALENDARS, NO_PRIMARY_CALENDAR, SUCCESS, BaseSyncService
from .upserts import upsert_row

logger = logging.getLogger(__name__)

CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"

CALENDAR_LIST_TOKENS = 2
EVENTS_LIST_TOKENS = 3


def _rfc3339(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_event_time(value: dict) -> tuple[Optional[datetime], bool, Optional[str]]:
    """Return (naive UTC datetime, is_all_day, timezone) for an event start/end."""
    value = value or {}
    tz = value.get("timeZone")
    if value.get("dateTime"):
        dt = datetime.fromisoformat(value["dateTime"].replace("Z", "+00:00"))
        if dt.tzinfo is not None:
            dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
        return dt, False, tz
    if value.get("date"):
        return datetime.fromisoformat(value["date"]), True, tz
    return None, False, tz


def _meeting_url(event: dict) -> Optional[str]:
    for entry in (event.get("conferenceData") or {}).get("entryPoints") or []:
        if entry.get("entryPointType") == "video" and entry.get("uri"):
            return entry["uri"]
    return event.get("hangoutLink")


def transform_event(event: dict, calendar_id: str) -> dict:
    start, is_all_day, tz = _parse_event_time(event.get("start"))
    end, _, _ = _parse_event_time(event.get("end"))
    organizer = event.get("organizer") or {}
    recurrence = event.get("recurrence") or []
    return {
        "calendar_id": calendar_id,
        "title": event.get("summary") or "(no title)",
        "description": event.get("description"),
        "location": event.get("location"),
        "start_time": start,
        "end_time": end,
        "is_all_day": is_all_day,
        "timezone": tz,
        "status": event.get("status"),
        "meeting_url": _meeting_url(event),
        "organizer": {"email": organizer.get("email"), "name": organizer.get("displayName")} if organizer else None,
        "attendees": [
            {
                "email": a.get("email"),
                "name": a.get("displayName"),
                "response_status": a.get("responseStatus") or "needsAction",
                "is_organizer": bool(a.get("organizer")),
                "is_optional": bool(a.get("optional")),
            }
            for a in event.get("attendees") or []
        ],
        "is_recurring": bool(recurrence or event.get("recurringEventId")),
        "recurrence_rule": "\n".join(recurrence) or None,
        "is_busy": event.get("transparency") != "transparent",
        "html_link": event.get("htmlLink"),
    }


class CalendarSyncService(BaseSyncService):
    sync_type = "calendar"
    rate_limit_key = CALENDAR_API

    def sync(self, options: dict) -> dict:
        if options.get("force_full_sync"):
            self.steps.run("clear-events", self._clear_events)

        calendars = self.steps.run("fetch-calendars", self._list_calendars)
        if not calendars:
            logger.info(f"Account {self.account.id} has no calendars")
            return {"status": NO_CALENDARS, "events_processed": 0, "total_events": 0}
        primary = next((c for c in calendars if c.get("primary")), None)
        if primary is None:
            logger.info(f"Account {self.account.id} has {len(calendars)} calendars but no primary")
            return {"status": NO_PRIMARY_CALENDAR, "events_processed": 0, "total_events": 0}

        # Fixed once per job so a resumed run pages the same window.
        now = datetime.now(timezone.utc)
        window = self.steps.run(
            "event-window",
            lambda: {
                "time_min": _rfc3339(now - timedelta(days=settings.calendar_days_back)),
                "time_max": _rfc3339(now + timedelta(days=settings.calendar_days_forward)),
            },
        )

        skipped = 0
        page_token = None
        page = 0
        while True:
            counts = self.steps.run(
                f"events-page-{page}",
                lambda: self._sync_events_page(primary["id"], window, page_token),
            )
            self.total += int(counts.get("listed", 0)) - int(counts.get("skipped", 0))
            skipped += int(counts.get("skipped", 0))
            self._apply_counts(counts)
            self._report_progress()
            page_token = counts.get("next_page_token")
            page += 1
            if not page_token:
                break

        self.steps.run("save-cursor", self._save_cursor)
        return {
            "status": SUCCESS,
            "calendar_id": primary["id"],
            "events_processed": self.processed,
            "events_failed": self.failed,
            "events_skipped": skipped,
            "total_events": self.total,
        }

    def _list_calendars(self) -> list[dict]:
        calendars = []
        page_token = None
        while True:
            params = {"pageToken": page_token} if page_token else None
            data = self._fetch(
                f"{CALENDAR_API_BASE}/users/me/calendarList",
                tokens=CALENDAR_LIST_TOKENS,
                params=params,
            )
            for item in data.get("items") or []:
                calendars.append(
                    {"id": item.get("id"), "summary": item.get("summary"), "primary": bool(item.get("primary"))}
                )
            page_token = data.get("nextPageToken")
            if not page_token:
                return calendars

    def _sync_events_page(self, calendar_id: str, window: dict, page_token: Optional[str]) -> dict:
        params = {
            "timeMin": window["time_min"],
            "timeMax": window["time_max"],
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": settings.calendar_events_page_size,
        }
        if page_token:
            params["pageToken"] = page_token
        data = self._fetch(
            f"{CALENDAR_API_BASE}/calendars/{quote(calendar_id, safe='')}/events",
            tokens=EVENTS_LIST_TOKENS,
            params=params,
        )
        events = data.get("items") or []
        processed = failed = skipped = 0
        for event in events:
            if event.get("status") == "cancelled":
                skipped += 1
                continue
            event_id = event.get("id")
            ok = self._persist_record(
                f"event {event_id}",
                lambda: upsert_row(
                    self.db,
                    CalendarEvent,
                    {"google_event_id": event_id, "account_id": self.account.id},
                    dict(transform_event(event, calendar_id), user_id=self.account.user_id),
                ),
            )
            if ok:
                processed += 1
            else:
                failed += 1
        return {
            "listed": len(events),
            "processed": processed,
            "failed": failed,
            "skipped": skipped,
            "next_page_token": data.get("nextPageToken"),
        }

    def _clear_events(self) -> dict:
        deleted = (
            self.db.query(CalendarEvent)
            .filter(CalendarEvent.account_id == self.account.id)
            .delete(synchronize_session=False)
        )
        return {"deleted": deleted}

    def _save_cursor(self) -> dict:
        cursor = CalendarCursor(last_sync=datetime.utcnow())
        save_cursor(self.account, cursor)
        return {"calendar_last_sync": cursor.model_dump(mode="json", by_alias=True)["calendarLastSync"]}
