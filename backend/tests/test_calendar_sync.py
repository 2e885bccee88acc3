from datetime import datetime

from mailsync.models import CalendarEvent, SyncJob
from mailsync.services.calendar_sync import CalendarSyncService, transform_event
from mailsync.sync_state_db import get_sync_status

CALENDARS = {
    "items": [
        {"id": "team@group.calendar.google.com", "summary": "Team"},
        {"id": "me@example.com", "summary": "Me", "primary": True},
    ]
}


def _timed_event(event_id, **extra):
    event = {
        "id": event_id,
        "status": "confirmed",
        "summary": f"Meeting {event_id}",
        "start": {"dateTime": "2026-03-02T10:00:00+01:00", "timeZone": "Europe/Paris"},
        "end": {"dateTime": "2026-03-02T11:00:00+01:00", "timeZone": "Europe/Paris"},
    }
    event.update(extra)
    return event


def _service(db, account, fetch_client, limiter):
    return CalendarSyncService(db, account, fetch_client=fetch_client, rate_limiter=limiter)


def test_transform_event_maps_meeting_attendees_and_busy():
    event = _timed_event(
        "e1",
        transparency="transparent",
        conferenceData={"entryPoints": [
            {"entryPointType": "phone", "uri": "tel:+1-555"},
            {"entryPointType": "video", "uri": "https://meet.google.com/abc-defg-hij"},
        ]},
        organizer={"email": "boss@example.com", "displayName": "Boss"},
        attendees=[
            {"email": "boss@example.com", "organizer": True, "responseStatus": "accepted"},
            {"email": "me@example.com", "optional": True},
        ],
    )
    values = transform_event(event, "me@example.com")

    assert values["title"] == "Meeting e1"
    assert values["start_time"] == datetime(2026, 3, 2, 9, 0, 0)
    assert values["is_all_day"] is False
    assert values["timezone"] == "Europe/Paris"
    assert values["meeting_url"] == "https://meet.google.com/abc-defg-hij"
    assert values["is_busy"] is False
    assert values["organizer"] == {"email": "boss@example.com", "name": "Boss"}
    assert values["attendees"][0]["is_organizer"] is True
    assert values["attendees"][1] == {
        "email": "me@example.com",
        "name": None,
        "response_status": "needsAction",
        "is_organizer": False,
        "is_optional": True,
    }


def test_transform_all_day_recurring_event_without_title():
    event = {
        "id": "e2",
        "start": {"date": "2026-03-05"},
        "end": {"date": "2026-03-06"},
        "recurrence": ["RRULE:FREQ=WEEKLY;BYDAY=TH"],
        "hangoutLink": "https://meet.google.com/xyz",
    }
    values = transform_event(event, "me@example.com")

    assert values["title"] == "(no title)"
    assert values["is_all_day"] is True
    assert values["start_time"] == datetime(2026, 3, 5)
    assert values["is_recurring"] is True
    assert values["recurrence_rule"] == "RRULE:FREQ=WEEKLY;BYDAY=TH"
    assert values["meeting_url"] == "https://meet.google.com/xyz"
    assert values["is_busy"] is True


def test_sync_pages_primary_calendar_and_skips_cancelled(db_session, calendar_account, fetch_client, limiter):
    fetch_client.add("/calendarList", CALENDARS)
    fetch_client.add(
        "/events",
        {"items": [_timed_event("e1"), {"id": "e-x", "status": "cancelled"}], "nextPageToken": "ev2"},
        {"items": [_timed_event("e2", summary="Standup")]},
    )

    result = _service(db_session, calendar_account, fetch_client, limiter).run()

    assert result["status"] == "success"
    assert result["calendar_id"] == "me@example.com"
    assert result["events_processed"] == 2
    assert result["events_skipped"] == 1
    assert result["total_events"] == 2
    assert {e.google_event_id for e in db_session.query(CalendarEvent).all()} == {"e1", "e2"}

    event_calls = fetch_client.calls_to("/events")
    assert "/calendars/me%40example.com/events" in event_calls[0][0]
    params = event_calls[0][1]["params"]
    assert params["singleEvents"] == "true"
    assert params["orderBy"] == "startTime"
    assert params["timeMin"] < params["timeMax"]
    # The window is fixed for the whole job
    assert event_calls[1][1]["params"]["timeMin"] == params["timeMin"]
    assert event_calls[1][1]["params"]["pageToken"] == "ev2"

    db_session.refresh(calendar_account)
    assert calendar_account.sync_state["calendarLastSync"]
    assert db_session.query(SyncJob).one().total_items == 2


def test_no_primary_calendar_completes_without_fetching_events(db_session, calendar_account, fetch_client, limiter):
    fetch_client.add("/calendarList", {"items": [{"id": "team@group.calendar.google.com", "summary": "Team"}]})

    result = _service(db_session, calendar_account, fetch_client, limiter).run()

    assert result["status"] == "no_primary_calendar"
    assert result["events_processed"] == 0
    assert fetch_client.calls_to("/events") == []
    job = db_session.query(SyncJob).one()
    assert job.status == "completed"
    assert job.error is None
    status = get_sync_status(db_session, calendar_account.id, "calendar")
    assert status["is_syncing"] is False
    assert status["last_status"] == "no_primary_calendar"
    db_session.refresh(calendar_account)
    assert "calendarLastSync" not in (calendar_account.sync_state or {})


def test_no_calendars(db_session, calendar_account, fetch_client, limiter):
    fetch_client.add("/calendarList", {"items": []})
    result = _service(db_session, calendar_account, fetch_client, limiter).run()
    assert result["status"] == "no_calendars"
    assert db_session.query(SyncJob).one().status == "completed"


def test_bad_event_is_counted_and_skipped(db_session, calendar_account, fetch_client, limiter):
    fetch_client.add("/calendarList", CALENDARS)
    fetch_client.add("/events", {"items": [
        _timed_event("e1"),
        _timed_event("e-bad", start={"dateTime": "not a timestamp"}),
    ]})

    result = _service(db_session, calendar_account, fetch_client, limiter).run()

    assert result["status"] == "success"
    assert result["events_processed"] == 1
    assert result["events_failed"] == 1
    assert db_session.query(CalendarEvent).count() == 1


def test_force_full_sync_clears_stale_events(db_session, calendar_account, fetch_client, limiter):
    db_session.add(CalendarEvent(
        account_id=calendar_account.id,
        user_id=calendar_account.user_id,
        google_event_id="stale",
        title="Old",
    ))
    db_session.commit()
    fetch_client.add("/calendarList", CALENDARS)
    fetch_client.add("/events", {"items": [_timed_event("e1")]})

    _service(db_session, calendar_account, fetch_client, limiter).run(options={"force_full_sync": True})

    assert [e.google_event_id for e in db_session.query(CalendarEvent).all()] == ["e1"]


def test_resync_updates_events_in_place(db_session, calendar_account, fetch_client, limiter):
    fetch_client.add("/calendarList", CALENDARS)
    fetch_client.add("/events", {"items": [_timed_event("e1")]})
    _service(db_session, calendar_account, fetch_client, limiter).run()

    fetch_client.routes["/events"] = [{"items": [_timed_event("e1", summary="Renamed")]}]
    _service(db_session, calendar_account, fetch_client, limiter).run()

    event = db_session.query(CalendarEvent).one()
    assert event.title == "Renamed"
