"""Google Calendar page fetcher (``Event`` resource).

Events are listed from the primary calendar ordered by update time, with
deleted events included so downstream tables see cancellations.  Sync context
keys: ``next_page_token`` and ``sweep_latest_update_time`` while a sweep is
in progress, and ``last_event_update_time`` (RFC 3339) once it completes.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from datasync.sources.base import FetchRecord, Page
from datasync.sources.google import GooglePageFetcher, GoogleSession

logger = logging.getLogger(__name__)

CALENDAR_EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/primary/events"

MAX_RESULTS = 2500  # Maximum allowed by events.list
LOOKBACK_DAYS = 2 * 365

EVENT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "id": {"type": "string"},
        "status": {"type": "string"},
        "summary": {"type": "string"},
        "description": {"type": "string"},
        "location": {"type": "string"},
        "htmlLink": {"type": "string"},
        "iCalUID": {"type": "string"},
        "recurringEventId": {"type": "string"},
        "created": {"type": "string", "format": "date-time"},
        "updated": {"type": "string", "format": "date-time"},
        "start": {"type": "object"},
        "end": {"type": "object"},
        "organizer": {"type": "object"},
        "attendees": {"type": "array", "items": {"type": "object"}},
    },
    "required": ["id"],
}

_PAGINATION_KEYS = ("next_page_token", "sweep_latest_update_time")


def _rfc3339(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class GoogleCalendarFetcher(GooglePageFetcher):
    scopes = ["https://www.googleapis.com/auth/calendar.readonly"]
    page_size = MAX_RESULTS

    def fetch_page(
        self,
        session: GoogleSession,
        sync_context: dict[str, Any],
        last_synced_at: datetime | None,
    ) -> Page:
        now = datetime.now(timezone.utc)
        params: dict[str, Any] = {
            "timeMin": _rfc3339(now - timedelta(days=LOOKBACK_DAYS)),
            "timeMax": _rfc3339(now),
            "maxResults": self.page_size,
            "showDeleted": "true",
            "singleEvents": "true",
            "orderBy": "updated",
        }
        if sync_context.get("last_event_update_time"):
            params["updatedMin"] = sync_context["last_event_update_time"]
        if sync_context.get("next_page_token"):
            params["pageToken"] = sync_context["next_page_token"]

        response = session.get_json(CALENDAR_EVENTS_URL, params)
        items = response.get("items") or []

        # RFC 3339 timestamps in UTC compare correctly as strings
        latest: str | None = sync_context.get("sweep_latest_update_time")
        records: list[FetchRecord] = []
        for event in items:
            records.append(FetchRecord("Event", event))
            updated = event.get("updated")
            if updated and (latest is None or updated > latest):
                latest = updated

        next_page_token = response.get("nextPageToken")
        if self.is_last_page(next_page_token, len(items)):
            sync_context["last_event_update_time"] = latest or _rfc3339(now)
            for key in _PAGINATION_KEYS:
                sync_context.pop(key, None)
            has_more = False
        else:
            sync_context["next_page_token"] = next_page_token
            if latest is not None:
                sync_context["sweep_latest_update_time"] = latest
            has_more = True

        logger.info("google_calendar: processed %d event(s), has_more=%s", len(items), has_more)
        return Page(records=records, has_more=has_more)
