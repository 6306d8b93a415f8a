"""Gmail page fetcher (``Message`` resource).

Sync context keys:

``next_page_token``
    Pagination only; present while a sweep is in progress.
``sweep_latest_message_date``
    Pagination only; newest ``internalDate`` seen so far in this sweep.
``message_offset``
    Pagination only; messages of the current listing page already fetched.
    Set when the run deadline expires part way through a page, which is
    then listed again with the same page token and resumed at this offset.
``last_message_date``
    Durable high-water mark (epoch milliseconds, as Gmail reports
    ``internalDate``).  The next sweep lists messages after it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from datasync.errors import ProviderFetchError
from datasync.sources.base import FetchRecord, Page
from datasync.sources.google import GooglePageFetcher, GoogleSession

logger = logging.getLogger(__name__)

GMAIL_API_URL = "https://gmail.googleapis.com/gmail/v1/users/me"

MAX_RESULTS = 100  # Maximum allowed by messages.list
LOOKBACK_DAYS = 365

MESSAGE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "id": {"type": "string"},
        "threadId": {"type": "string"},
        "labelIds": {"type": "array", "items": {"type": "string"}},
        "snippet": {"type": "string"},
        "historyId": {"type": "string"},
        "internalDate": {"type": "string"},
        "sizeEstimate": {"type": "integer"},
        "payload": {"type": "object"},
    },
    "required": ["id"],
}

_PAGINATION_KEYS = ("next_page_token", "sweep_latest_message_date", "message_offset")


def _as_epoch_ms(value: Any) -> int | None:
    """Parse a stored message date (epoch millis or ISO-8601) to epoch millis."""
    if value is None or value == "":
        return None
    text = str(value)
    if text.isdigit():
        return int(text)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("gmail: ignoring unparseable last_message_date=%r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


class GmailFetcher(GooglePageFetcher):
    """Lists message ids page by page and fetches each message's metadata."""

    scopes = ["https://www.googleapis.com/auth/gmail.readonly"]
    page_size = MAX_RESULTS

    def fetch_page(
        self,
        session: GoogleSession,
        sync_context: dict[str, Any],
        last_synced_at: datetime | None,
    ) -> Page:
        after_ms = _as_epoch_ms(sync_context.get("last_message_date"))
        if after_ms is None:
            lookback = datetime.now(timezone.utc) - timedelta(days=LOOKBACK_DAYS)
            after_ms = int(lookback.timestamp() * 1000)

        params: dict[str, Any] = {
            "maxResults": self.page_size,
            "q": f"after:{after_ms // 1000}",
            "includeSpamTrash": "false",
        }
        if sync_context.get("next_page_token"):
            params["pageToken"] = sync_context["next_page_token"]

        listing = session.get_json(f"{GMAIL_API_URL}/messages", params)
        refs = [ref for ref in listing.get("messages") or [] if ref.get("id")]
        logger.info("gmail: listed %d message(s)", len(refs))

        latest = _as_epoch_ms(sync_context.get("sweep_latest_message_date"))
        records: list[FetchRecord] = []
        start = int(sync_context.get("message_offset") or 0)
        for position in range(start, len(refs)):
            # At least one message per call so a resumed page always advances
            if position > start and session.deadline.expired():
                sync_context["message_offset"] = position
                if latest is not None:
                    sync_context["sweep_latest_message_date"] = str(latest)
                logger.info("gmail: deadline reached at message %d of %d, resuming page later", position, len(refs))
                return Page(records=records, has_more=True)
            ref = refs[position]
            message = self._get_message(session, ref["id"])
            if message is None:
                continue
            records.append(FetchRecord("Message", message))
            message_ms = _as_epoch_ms(message.get("internalDate"))
            if message_ms is not None and (latest is None or message_ms > latest):
                latest = message_ms

        next_page_token = listing.get("nextPageToken")
        if self.is_last_page(next_page_token, len(refs)):
            if latest is None:
                latest = int(datetime.now(timezone.utc).timestamp() * 1000)
            sync_context["last_message_date"] = str(latest)
            for key in _PAGINATION_KEYS:
                sync_context.pop(key, None)
            has_more = False
        else:
            sync_context["next_page_token"] = next_page_token
            sync_context.pop("message_offset", None)
            if latest is not None:
                sync_context["sweep_latest_message_date"] = str(latest)
            has_more = True

        logger.info("gmail: processed page, has_more=%s", has_more)
        return Page(records=records, has_more=has_more)

    @staticmethod
    def _get_message(session: GoogleSession, message_id: str) -> dict[str, Any] | None:
        try:
            return session.get_json(f"{GMAIL_API_URL}/messages/{message_id}", {"format": "metadata"})
        except ProviderFetchError as exc:
            # Deleted between list and get
            if exc.status_code == 404:
                logger.warning("gmail: message %s disappeared before it could be fetched", message_id)
                return None
            raise
