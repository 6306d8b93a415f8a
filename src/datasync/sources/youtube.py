"""YouTube page fetcher (``Activity`` resource).

Lists the authenticated channel's activity feed: uploads, likes,
favorites, comments and subscriptions.  Sync context keys:
``next_page_token`` and ``sweep_latest_published_at`` while a sweep is in
progress, and ``last_activity_time`` (RFC 3339) once it completes.  The next
sweep asks only for activities published after it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from datasync.sources.base import FetchRecord, Page
from datasync.sources.google import GooglePageFetcher, GoogleSession

logger = logging.getLogger(__name__)

YOUTUBE_ACTIVITIES_URL = "https://www.googleapis.com/youtube/v3/activities"

MAX_RESULTS = 50  # Maximum allowed by activities.list
LOOKBACK_DAYS = 365

ACTIVITY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "id": {"type": "string"},
        "kind": {"type": "string"},
        "etag": {"type": "string"},
        "snippet": {"type": "object"},
        "contentDetails": {"type": "object"},
    },
    "required": ["id"],
}

_PAGINATION_KEYS = ("next_page_token", "sweep_latest_published_at")


def _rfc3339(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class YouTubeFetcher(GooglePageFetcher):
    scopes = ["https://www.googleapis.com/auth/youtube.readonly"]
    page_size = MAX_RESULTS

    def fetch_page(
        self,
        session: GoogleSession,
        sync_context: dict[str, Any],
        last_synced_at: datetime | None,
    ) -> Page:
        now = datetime.now(timezone.utc)
        params: dict[str, Any] = {
            "part": "snippet,contentDetails",
            "mine": "true",
            "maxResults": self.page_size,
            "publishedAfter": sync_context.get("last_activity_time")
            or _rfc3339(now - timedelta(days=LOOKBACK_DAYS)),
        }
        if sync_context.get("next_page_token"):
            params["pageToken"] = sync_context["next_page_token"]

        response = session.get_json(YOUTUBE_ACTIVITIES_URL, params)
        items = response.get("items") or []

        latest: str | None = sync_context.get("sweep_latest_published_at")
        records: list[FetchRecord] = []
        for activity in items:
            records.append(FetchRecord("Activity", activity))
            published_at = (activity.get("snippet") or {}).get("publishedAt")
            if published_at and (latest is None or published_at > latest):
                latest = published_at

        next_page_token = response.get("nextPageToken")
        if self.is_last_page(next_page_token, len(items)):
            sync_context["last_activity_time"] = latest or _rfc3339(now)
            for key in _PAGINATION_KEYS:
                sync_context.pop(key, None)
            has_more = False
        else:
            sync_context["next_page_token"] = next_page_token
            if latest is not None:
                sync_context["sweep_latest_published_at"] = latest
            has_more = True

        logger.info("youtube: processed %d activities, has_more=%s", len(items), has_more)
        return Page(records=records, has_more=has_more)
