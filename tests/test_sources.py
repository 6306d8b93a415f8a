"""Tests for source adapters: paging loop, SQL, Google APIs, Plaid, registry."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, create_engine, insert, update
from sqlalchemy.pool import StaticPool

from datasync.errors import AuthExchangeError, ProviderFetchError
from datasync.sources.base import CallbackFetchStream, FetchDone, FetchRecord, Page, TokenPair
from datasync.sources.gmail import GmailFetcher
from datasync.sources.google import GOOGLE_TOKEN_URL, GoogleAPIAdapter, GoogleSession
from datasync.sources.google_calendar import GoogleCalendarFetcher
from datasync.sources.plaid import MUTATION_DURING_PAGINATION, PlaidAdapter, PlaidError
from datasync.sources.registry import available_adapters, create_adapter
from datasync.sources.sql import SQLAdapter
from datasync.sources.youtube import YouTubeFetcher
from datasync.util.deadline import Deadline

from conftest import FakeClock


def _drain(stream) -> tuple[list[FetchRecord], FetchDone]:
    items = list(stream)
    assert isinstance(items[-1], FetchDone)
    assert not any(isinstance(item, FetchDone) for item in items[:-1])
    return items[:-1], items[-1]


# ---------------------------------------------------------------------------
# Paged stream
# ---------------------------------------------------------------------------

class TestPagedFetchStream:
    def _counter_page(self, clock: FakeClock | None = None, pages: int = 3):
        def page(context: dict[str, Any], since: datetime | None) -> Page:
            index = context.get("page", 0)
            if clock is not None:
                clock.advance(10)
            records = [FetchRecord("Item", {"id": f"{index}-{i}"}) for i in range(2)]
            if index + 1 < pages:
                context["page"] = index + 1
                return Page(records=records, has_more=True)
            context.pop("page", None)
            return Page(records=records, has_more=False)

        return page

    def test_reads_every_page_without_deadline(self):
        """Without a deadline the stream runs until the source reports no more data."""
        stream = CallbackFetchStream(self._counter_page(), None)

        records, done = _drain(stream)

        assert len(records) == 6
        assert done.has_more is False
        assert stream.page_count == 3
        assert stream.record_count == 6
        assert stream.sync_context == {}

    def test_stops_at_deadline_with_more_data(self):
        """An expired deadline ends the stream between pages with has_more set."""
        clock = FakeClock()
        stream = CallbackFetchStream(self._counter_page(clock), None, deadline=Deadline.after(15, clock))

        records, done = _drain(stream)

        assert len(records) == 4
        assert done.has_more is True
        assert stream.sync_context == {"page": 2}

    def test_first_page_is_fetched_even_if_deadline_is_tight(self):
        """A deadline shorter than one page still lets the first page through."""
        clock = FakeClock()
        stream = CallbackFetchStream(self._counter_page(clock), None, deadline=Deadline.after(1, clock))

        records, done = _drain(stream)

        assert len(records) == 2
        assert done.has_more is True

    def test_expired_deadline_fetches_nothing(self):
        """A deadline already past when the stream starts yields only FetchDone."""
        clock = FakeClock()
        deadline = Deadline.after(5, clock)
        clock.advance(5)

        records, done = _drain(CallbackFetchStream(self._counter_page(clock), {"page": 1}, deadline=deadline))

        assert records == []
        assert done.has_more is True

    def test_stream_copies_context(self):
        """The caller's context dict is never mutated by the stream."""
        original = {"page": 1}
        stream = CallbackFetchStream(self._counter_page(), original)
        _drain(stream)
        assert original == {"page": 1}


class TestDeadline:
    def test_remaining_and_expired(self):
        """remaining() counts down with the clock and expired() flips at zero."""
        clock = FakeClock(100)
        deadline = Deadline.after(10, clock)

        assert deadline.remaining() == 10
        clock.advance(4)
        assert deadline.remaining() == 6
        assert not deadline.expired()
        clock.advance(6)
        assert deadline.expired()
        assert deadline.remaining() == 0

    def test_never_expires(self):
        """Deadline.never() is never expired."""
        assert not Deadline.never().expired()


# ---------------------------------------------------------------------------
# SQL adapter
# ---------------------------------------------------------------------------

SWEEP_CLOCK = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _memory_engine():
    return create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


@pytest.fixture()
def source_engine():
    """External database with two small tables."""
    engine = _memory_engine()
    metadata = MetaData()
    customers = Table(
        "customers",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("name", String(50), nullable=False),
        Column("updated_at", DateTime),
    )
    orders = Table(
        "orders",
        metadata,
        Column("order_no", String(20), primary_key=True),
        Column("customer_id", Integer),
    )
    metadata.create_all(engine)
    with engine.begin() as conn:
        conn.execute(
            insert(customers),
            [
                {"id": i, "name": f"Customer {i}", "updated_at": datetime(2024, 1, i + 1, 12, 0)}
                for i in range(5)
            ],
        )
        conn.execute(insert(orders), [{"order_no": f"O-{i}", "customer_id": i % 5} for i in range(3)])
    yield engine
    engine.dispose()


class TestSQLAdapter:
    def test_authenticate_needs_no_redirect(self, source_engine):
        """SQL sources connect immediately and reject authorization codes."""
        adapter = SQLAdapter(engine=source_engine, tables=["customers"])

        result = adapter.authenticate("https://app.example/callback")

        assert result.success is True
        with pytest.raises(AuthExchangeError):
            adapter.complete_authentication("code", "https://app.example/callback")

    def test_requires_url_or_engine(self):
        """An adapter with neither url nor engine is a configuration error."""
        with pytest.raises(ValueError):
            SQLAdapter()

    def test_introspection(self, source_engine):
        """Tables, column schemas, primary keys and timestamp columns are reflected."""
        adapter = SQLAdapter(engine=source_engine, tables=["customers", "orders"])

        assert adapter.list_tables() == ["customers", "orders"]
        schema = adapter.describe_table("customers")
        assert schema["properties"]["id"] == {"type": "integer"}
        assert schema["properties"]["updated_at"] == {"type": "string", "format": "date-time"}
        assert "name" in schema["required"]
        assert adapter.primary_key_column("orders") == "order_no"
        assert adapter.timestamp_column("customers") == "updated_at"
        assert adapter.timestamp_column("orders") is None

    def test_unknown_table_is_a_fetch_error(self, source_engine):
        """Reading a missing table raises ProviderFetchError."""
        adapter = SQLAdapter(engine=source_engine, tables=["missing"])
        with pytest.raises(ProviderFetchError):
            list(adapter.fetch(None, None))

    def test_configured_timestamp_column_must_exist(self, source_engine):
        """A configured timestamp column that the table lacks is rejected."""
        adapter = SQLAdapter(engine=source_engine, tables=["orders"], timestamp_columns={"orders": "nope"})
        with pytest.raises(ProviderFetchError):
            adapter.timestamp_column("orders")

    def test_full_sweep_pages_through_tables(self, source_engine):
        """A full sweep reads every table page by page and leaves only the watermark."""
        adapter = SQLAdapter(engine=source_engine, tables=["customers", "orders"], page_size=2)

        stream = adapter.fetch(None, None)
        records, done = _drain(stream)

        assert [r.resource_name for r in records].count("customers") == 5
        assert [r.resource_name for r in records].count("orders") == 3
        assert [r.data["id"] for r in records if r.resource_name == "customers"] == [0, 1, 2, 3, 4]
        assert records[0].data["updated_at"] == "2024-01-01T12:00:00+00:00"
        assert done.has_more is False
        assert set(stream.sync_context) == {"last_sweep_started_at"}

    def test_deadline_leaves_position_in_context(self, source_engine):
        """A deadline mid-table stores the position and the resumed run finishes the sweep."""
        adapter = SQLAdapter(
            engine=source_engine, tables=["customers", "orders"], page_size=2, clock=lambda: SWEEP_CLOCK
        )
        clock = FakeClock()
        deadline = Deadline.after(0.5, clock)

        stream = adapter.fetch(None, None, deadline=deadline)
        # One page, then the clock jumps past the deadline
        iterator = iter(stream)
        first_page = [next(iterator), next(iterator)]
        clock.advance(1)
        rest = list(iterator)

        assert [record.data["id"] for record in first_page] == [0, 1]
        assert rest == [FetchDone(has_more=True)]
        assert stream.sync_context == {
            "resource_index": 0,
            "offset": 2,
            "sweep_started_at": SWEEP_CLOCK.isoformat(),
        }

        resumed = adapter.fetch(None, stream.sync_context)
        records, done = _drain(resumed)
        assert [r.data["id"] for r in records if r.resource_name == "customers"] == [2, 3, 4]
        assert done.has_more is False
        assert resumed.sync_context == {"last_sweep_started_at": SWEEP_CLOCK.isoformat()}

    def test_incremental_sweep_uses_last_sweep_start(self, source_engine):
        """A new sweep reads only rows changed after the previous sweep began."""
        adapter = SQLAdapter(engine=source_engine, tables=["customers"], page_size=10)

        records, _ = _drain(adapter.fetch(None, {"last_sweep_started_at": "2024-01-03T12:00:00+00:00"}))

        assert [r.data["id"] for r in records] == [3, 4]

    def test_last_synced_at_does_not_narrow_the_sweep(self, source_engine):
        """Without a stored watermark every row is read, whatever last_synced_at says."""
        adapter = SQLAdapter(engine=source_engine, tables=["customers"], page_size=10)

        records, _ = _drain(adapter.fetch(datetime(2024, 1, 3, 12, 0), None))

        assert [r.data["id"] for r in records] == [0, 1, 2, 3, 4]

    def test_continuation_keeps_sweep_window(self, source_engine):
        """Continuation runs keep the window pinned when the sweep started."""
        adapter = SQLAdapter(engine=source_engine, tables=["customers"], page_size=1, clock=lambda: SWEEP_CLOCK)
        clock = FakeClock()
        deadline = Deadline.after(0.5, clock)

        stream = adapter.fetch(None, {"last_sweep_started_at": "2024-01-02T12:00:00+00:00"}, deadline=deadline)
        iterator = iter(stream)
        first = next(iterator)
        clock.advance(1)
        list(iterator)

        assert first.data["id"] == 2
        assert stream.sync_context["sweep_since"] == "2024-01-02T12:00:00+00:00"

        # A later last_synced_at must not narrow the window mid-sweep
        resumed = adapter.fetch(datetime(2024, 6, 1), stream.sync_context)
        records, done = _drain(resumed)
        assert [r.data["id"] for r in records] == [3, 4]
        assert done.has_more is False
        assert resumed.sync_context == {"last_sweep_started_at": SWEEP_CLOCK.isoformat()}

    def test_row_changed_during_multi_run_sweep_is_read_next_sweep(self):
        """A row updated in an already-read table between bounded runs is picked up by the next sweep."""
        engine = _memory_engine()
        metadata = MetaData()
        tables = {
            name: Table(
                name,
                metadata,
                Column("id", String(10), primary_key=True),
                Column("value", String(20)),
                Column("updated_at", DateTime),
            )
            for name in ("a", "b")
        }
        metadata.create_all(engine)
        with engine.begin() as conn:
            conn.execute(insert(tables["a"]), [{"id": "1", "value": "a1-v1", "updated_at": datetime(2024, 1, 1)}])
            conn.execute(
                insert(tables["b"]),
                [
                    {"id": "1", "value": "b1-v1", "updated_at": datetime(2024, 1, 1)},
                    {"id": "2", "value": "b2-v1", "updated_at": datetime(2024, 1, 1)},
                ],
            )

        def touch(table: str, row_id: str, value: str, when: datetime) -> None:
            with engine.begin() as conn:
                conn.execute(
                    update(tables[table]).where(tables[table].c.id == row_id).values(value=value, updated_at=when)
                )

        now = [datetime(2024, 2, 1, tzinfo=timezone.utc)]
        adapter = SQLAdapter(engine=engine, tables=["a", "b"], page_size=1, clock=lambda: now[0])

        # Sweep 1 reads everything in one run
        first = adapter.fetch(None, None)
        records, done = _drain(first)
        assert len(records) == 3
        assert done.has_more is False

        touch("a", "1", "a1-v2", datetime(2024, 2, 2))
        touch("b", "2", "b2-v2", datetime(2024, 2, 2))

        # Sweep 2, run 1 stops after table a
        now[0] = datetime(2024, 2, 3, tzinfo=timezone.utc)
        clock = FakeClock()
        run_one = adapter.fetch(datetime(2024, 2, 1), first.sync_context, deadline=Deadline.after(0.5, clock))
        iterator = iter(run_one)
        record = next(iterator)
        clock.advance(1)
        assert (record.resource_name, record.data["value"]) == ("a", "a1-v2")
        assert list(iterator) == [FetchDone(has_more=True)]

        # Changed after table a was passed
        touch("a", "1", "a1-v3", datetime(2024, 2, 4))

        # Sweep 2, run 2 finishes table b
        now[0] = datetime(2024, 2, 5, tzinfo=timezone.utc)
        run_two = adapter.fetch(datetime(2024, 2, 3), run_one.sync_context)
        records, done = _drain(run_two)
        assert [(r.resource_name, r.data["value"]) for r in records] == [("b", "b2-v2")]
        assert done.has_more is False
        assert run_two.sync_context == {"last_sweep_started_at": "2024-02-03T00:00:00+00:00"}

        # Sweep 3 starts from sweep 2's start, not from run 2's end
        now[0] = datetime(2024, 2, 6, tzinfo=timezone.utc)
        records, _ = _drain(adapter.fetch(datetime(2024, 2, 5), run_two.sync_context))
        assert [(r.resource_name, r.data["value"]) for r in records] == [("a", "a1-v3")]

        engine.dispose()

    def test_malformed_context_restarts_sweep(self, source_engine):
        """Unusable position values fall back to the start of the sweep."""
        adapter = SQLAdapter(engine=source_engine, tables=["orders"])

        records, _ = _drain(adapter.fetch(None, {"resource_index": "x", "offset": -1}))

        assert len(records) == 3


# ---------------------------------------------------------------------------
# Google adapter
# ---------------------------------------------------------------------------

class FakeGoogle:
    """``httpx.MockTransport`` handler emulating the Google endpoints."""

    def __init__(self) -> None:
        self.valid_access_token = "access-1"
        self.messages: dict[str, dict[str, Any]] = {}
        self.message_pages: dict[str | None, dict[str, Any]] = {}
        self.event_pages: dict[str | None, dict[str, Any]] = {}
        self.activity_pages: dict[str | None, dict[str, Any]] = {}
        self.token_response: tuple[int, dict[str, Any]] = (
            200,
            {"access_token": "access-1", "refresh_token": "refresh-1"},
        )
        self.on_request: Callable[[httpx.Request], None] | None = None
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.on_request is not None:
            self.on_request(request)
        if str(request.url) == GOOGLE_TOKEN_URL:
            status, body = self.token_response
            if status == 200:
                self.valid_access_token = body["access_token"]
            return httpx.Response(status, json=body)

        if request.headers.get("Authorization") != f"Bearer {self.valid_access_token}":
            return httpx.Response(401, json={"error": {"code": 401, "message": "Invalid Credentials"}})

        path = request.url.path
        token = request.url.params.get("pageToken")
        if path.endswith("/messages"):
            return httpx.Response(200, json=self.message_pages[token])
        if "/messages/" in path:
            message_id = path.rsplit("/", 1)[-1]
            if message_id not in self.messages:
                return httpx.Response(404, json={"error": {"code": 404, "message": "Not Found"}})
            return httpx.Response(200, json=self.messages[message_id])
        if path.endswith("/events"):
            return httpx.Response(200, json=self.event_pages[token])
        if path.endswith("/activities"):
            return httpx.Response(200, json=self.activity_pages[token])
        return httpx.Response(404, json={"error": {"message": "unexpected path"}})


@pytest.fixture()
def google():
    return FakeGoogle()


def _google_adapter(google: FakeGoogle, fetcher) -> GoogleAPIAdapter:
    adapter = GoogleAPIAdapter(
        fetcher,
        client_id="client-id",
        client_secret="client-secret",
        http_client=httpx.Client(transport=httpx.MockTransport(google)),
    )
    adapter.set_token_pair(TokenPair("access-1", "refresh-1"))
    return adapter


class TestGoogleAuth:
    def test_authorization_url(self, google):
        """The consent URL asks for offline access with the fetcher's scopes."""
        adapter = _google_adapter(google, GmailFetcher())

        result = adapter.authenticate("https://app.example/callback")

        assert result.success is False
        params = httpx.URL(result.auth_url).params
        assert params["client_id"] == "client-id"
        assert params["redirect_uri"] == "https://app.example/callback"
        assert params["access_type"] == "offline"
        assert params["prompt"] == "consent"
        assert params["scope"] == "https://www.googleapis.com/auth/gmail.readonly"

    def test_missing_client_id(self, google):
        """Without OAuth client credentials authentication fails up front."""
        adapter = GoogleAPIAdapter(GmailFetcher(), client_id="", client_secret="")
        with pytest.raises(AuthExchangeError):
            adapter.authenticate("https://app.example/callback")

    def test_code_exchange_stores_tokens(self, google):
        """An authorization code is exchanged for an access and refresh token."""
        adapter = _google_adapter(google, GmailFetcher())
        adapter.set_token_pair(TokenPair())

        adapter.complete_authentication("code", "https://app.example/callback")

        assert adapter.get_token_pair() == TokenPair("access-1", "refresh-1")
        form = google.requests[-1].content.decode()
        assert "grant_type=authorization_code" in form
        assert "code=code" in form

    def test_rejected_code_raises(self, google):
        """A token endpoint error surfaces as AuthExchangeError with Google's message."""
        google.token_response = (400, {"error": "invalid_grant", "error_description": "Bad Request"})
        adapter = _google_adapter(google, GmailFetcher())

        with pytest.raises(AuthExchangeError, match="Bad Request"):
            adapter.complete_authentication("bad", "https://app.example/callback")

    def test_fetch_without_token_raises(self, google):
        """Fetching before authentication is a ProviderFetchError."""
        adapter = _google_adapter(google, GmailFetcher())
        adapter.set_token_pair(TokenPair())
        with pytest.raises(ProviderFetchError):
            adapter.fetch(None, None)

    def test_expired_access_token_is_refreshed(self, google):
        """A 401 triggers one refresh and the request is retried with the new token."""
        google.valid_access_token = "access-2"
        google.token_response = (200, {"access_token": "access-2"})
        google.event_pages[None] = {"items": [{"id": "e1", "updated": "2024-05-01T00:00:00Z"}]}
        adapter = _google_adapter(google, GoogleCalendarFetcher())

        records, _ = _drain(adapter.fetch(None, None))

        assert [r.data["id"] for r in records] == ["e1"]
        assert adapter.get_token_pair() == TokenPair("access-2", "refresh-1")

    def test_failed_refresh_is_a_fetch_error(self, google):
        """When the refresh fails the original 401 is reported."""
        google.valid_access_token = "access-2"
        google.token_response = (400, {"error": "invalid_grant"})
        adapter = _google_adapter(google, GoogleCalendarFetcher())

        with pytest.raises(ProviderFetchError) as excinfo:
            _drain(adapter.fetch(None, None))
        assert excinfo.value.status_code == 401


class TestGoogleSession:
    def _session(self, google: FakeGoogle, deadline: Deadline | None) -> GoogleSession:
        adapter = _google_adapter(google, GoogleCalendarFetcher())
        return GoogleSession(adapter, adapter._client(), deadline=deadline)

    def test_timeout_follows_remaining_budget(self, google):
        """Request timeouts shrink with the deadline but stay within the floor and default."""
        clock = FakeClock()
        session = self._session(google, Deadline.after(12, clock))

        assert session.timeout() == 12
        clock.advance(11)
        assert session.timeout() == 5
        assert self._session(google, None).timeout() == 30

    def test_request_carries_capped_timeout(self, google):
        """The capped timeout is passed on every request."""
        google.event_pages[None] = {"items": []}
        session = self._session(google, Deadline.after(12, FakeClock()))

        session.get_json("https://www.googleapis.com/calendar/v3/calendars/primary/events")

        assert google.requests[-1].extensions["timeout"]["read"] == 12


class TestGmail:
    def _message(self, message_id: str, internal_date: int) -> dict[str, Any]:
        return {"id": message_id, "threadId": f"t-{message_id}", "internalDate": str(internal_date), "snippet": "hi"}

    def test_sweep_tracks_newest_message_across_pages(self, google):
        """The newest internalDate across all pages becomes the stored watermark."""
        google.messages = {
            "m1": self._message("m1", 3000),
            "m2": self._message("m2", 1000),
            "m3": self._message("m3", 2000),
        }
        google.message_pages = {
            None: {"messages": [{"id": "m1"}, {"id": "m2"}], "nextPageToken": "p2"},
            "p2": {"messages": [{"id": "m3"}]},
        }
        adapter = _google_adapter(google, GmailFetcher(page_size=2))
        clock = FakeClock()

        stream = adapter.fetch(None, None, deadline=Deadline.after(0, clock))
        # An already-expired deadline fetches nothing
        assert _drain(stream) == ([], FetchDone(has_more=True))

        stream = adapter.fetch(None, {"last_message_date": "500"})
        records, done = _drain(stream)

        assert [r.data["id"] for r in records] == ["m1", "m2", "m3"]
        assert all(r.resource_name == "Message" for r in records)
        assert done.has_more is False
        assert stream.sync_context == {"last_message_date": "3000"}
        list_request = next(r for r in google.requests if r.url.path.endswith("/messages"))
        assert list_request.url.params["q"] == "after:0"

    def test_page_boundary_keeps_pagination_keys(self, google):
        """Between pages the token and the sweep's newest date are kept."""
        google.messages = {"m1": self._message("m1", 3000), "m2": self._message("m2", 1000)}
        google.message_pages = {None: {"messages": [{"id": "m1"}, {"id": "m2"}], "nextPageToken": "p2"}}
        adapter = _google_adapter(google, GmailFetcher(page_size=2))
        fetcher = adapter.fetcher

        context: dict[str, Any] = {"last_message_date": "500"}
        page = fetcher.fetch_page(GoogleSession(adapter, adapter._client()), context, None)

        assert page.has_more is True
        assert context == {
            "last_message_date": "500",
            "next_page_token": "p2",
            "sweep_latest_message_date": "3000",
        }

    def test_deadline_mid_page_resumes_at_next_message(self, google):
        """A deadline hit between message fetches stops the page and the next run resumes it."""
        google.messages = {
            "m1": self._message("m1", 3000),
            "m2": self._message("m2", 1000),
            "m3": self._message("m3", 4000),
        }
        google.message_pages = {None: {"messages": [{"id": "m1"}, {"id": "m2"}, {"id": "m3"}]}}
        clock = FakeClock()

        def slow_messages(request: httpx.Request) -> None:
            if "/messages/" in request.url.path:
                clock.advance(10)

        google.on_request = slow_messages
        adapter = _google_adapter(google, GmailFetcher(page_size=3))

        stream = adapter.fetch(None, {"last_message_date": "500"}, deadline=Deadline.after(15, clock))
        records, done = _drain(stream)

        assert [r.data["id"] for r in records] == ["m1", "m2"]
        assert done.has_more is True
        assert stream.sync_context == {
            "last_message_date": "500",
            "message_offset": 2,
            "sweep_latest_message_date": "3000",
        }

        google.requests.clear()
        resumed = adapter.fetch(None, stream.sync_context)
        records, done = _drain(resumed)

        assert [r.data["id"] for r in records] == ["m3"]
        assert done.has_more is False
        assert resumed.sync_context == {"last_message_date": "4000"}
        listing = next(r for r in google.requests if r.url.path.endswith("/messages"))
        assert "pageToken" not in listing.url.params

    def test_deleted_message_is_skipped(self, google):
        """A message deleted between list and get is skipped."""
        google.messages = {"m1": self._message("m1", 1000)}
        google.message_pages = {None: {"messages": [{"id": "m1"}, {"id": "gone"}]}}
        adapter = _google_adapter(google, GmailFetcher())

        records, done = _drain(adapter.fetch(None, None))

        assert [r.data["id"] for r in records] == ["m1"]
        assert done.has_more is False

    def test_iso_last_message_date_is_accepted(self, google):
        """An ISO-8601 watermark is converted to an epoch-seconds search query."""
        google.message_pages = {None: {"messages": []}}
        adapter = _google_adapter(google, GmailFetcher())

        _drain(adapter.fetch(None, {"last_message_date": "2024-01-01T00:00:00Z"}))

        assert google.requests[-1].url.params["q"] == "after:1704067200"


class TestGoogleCalendar:
    def test_updated_min_and_high_water_mark(self, google):
        """Events are requested from the stored update time and the newest one is kept."""
        google.event_pages = {
            None: {
                "items": [
                    {"id": "e1", "updated": "2024-05-02T00:00:00Z"},
                    {"id": "e2", "updated": "2024-05-01T00:00:00Z"},
                ],
                "nextPageToken": "p2",
            },
            "p2": {"items": [{"id": "e3", "updated": "2024-04-01T00:00:00Z"}]},
        }
        adapter = _google_adapter(google, GoogleCalendarFetcher(page_size=2))

        stream = adapter.fetch(None, {"last_event_update_time": "2024-01-01T00:00:00Z"})
        records, done = _drain(stream)

        assert [r.data["id"] for r in records] == ["e1", "e2", "e3"]
        assert done.has_more is False
        assert stream.sync_context == {"last_event_update_time": "2024-05-02T00:00:00Z"}
        first = google.requests[0].url.params
        assert first["updatedMin"] == "2024-01-01T00:00:00Z"
        assert first["orderBy"] == "updated"
        assert first["showDeleted"] == "true"

    def test_short_page_ends_pagination(self, google):
        """A page shorter than page_size ends the sweep despite a next-page token."""
        google.event_pages = {None: {"items": [{"id": "e1", "updated": "2024-05-01T00:00:00Z"}], "nextPageToken": "p2"}}
        adapter = _google_adapter(google, GoogleCalendarFetcher(page_size=2))

        records, done = _drain(adapter.fetch(None, None))

        assert len(records) == 1
        assert done.has_more is False

    def test_short_page_can_be_followed(self, google):
        """With short_page_ends_pagination off the token is always followed."""
        google.event_pages = {
            None: {"items": [{"id": "e1", "updated": "2024-05-01T00:00:00Z"}], "nextPageToken": "p2"},
            "p2": {"items": []},
        }
        fetcher = GoogleCalendarFetcher(page_size=2, short_page_ends_pagination=False)
        adapter = _google_adapter(google, fetcher)

        records, done = _drain(adapter.fetch(None, None))

        assert len(records) == 1
        assert done.has_more is False
        assert len(google.requests) == 2

    def test_empty_sweep_records_current_time(self, google):
        """A sweep with no events stores the current time as the watermark."""
        google.event_pages = {None: {"items": []}}
        adapter = _google_adapter(google, GoogleCalendarFetcher())

        stream = adapter.fetch(None, None)
        _drain(stream)

        stored = stream.sync_context["last_event_update_time"]
        assert stored.endswith("Z")
        assert datetime.fromisoformat(stored.replace("Z", "+00:00")) <= datetime.now(timezone.utc)

    def test_provider_error_message_is_kept(self, google):
        """Google's error message and status code end up on the ProviderFetchError."""
        adapter = _google_adapter(google, GoogleCalendarFetcher())
        google.event_pages = {}

        def rate_limited(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, json={"error": {"code": 429, "message": "Rate Limit Exceeded"}})

        adapter._http_client = httpx.Client(transport=httpx.MockTransport(rate_limited))

        with pytest.raises(ProviderFetchError, match="Rate Limit Exceeded") as excinfo:
            _drain(adapter.fetch(None, None))
        assert excinfo.value.status_code == 429


class TestYouTube:
    def _activity(self, activity_id: str, published_at: str) -> dict[str, Any]:
        return {
            "id": activity_id,
            "kind": "youtube#activity",
            "snippet": {"publishedAt": published_at, "type": "upload"},
            "contentDetails": {"upload": {"videoId": f"v-{activity_id}"}},
        }

    def test_authorization_url_uses_youtube_scope(self, google):
        """The YouTube connector asks for read-only YouTube access."""
        adapter = _google_adapter(google, YouTubeFetcher())

        result = adapter.authenticate("https://app.example/callback")

        assert httpx.URL(result.auth_url).params["scope"] == "https://www.googleapis.com/auth/youtube.readonly"

    def test_sweep_pages_through_activities(self, google):
        """Activities are read across pages and the newest publish time is kept."""
        google.activity_pages = {
            None: {
                "items": [
                    self._activity("a1", "2024-03-01T00:00:00Z"),
                    self._activity("a2", "2024-03-05T00:00:00Z"),
                ],
                "nextPageToken": "p2",
            },
            "p2": {"items": [self._activity("a3", "2024-03-02T00:00:00Z")]},
        }
        adapter = _google_adapter(google, YouTubeFetcher(page_size=2))

        stream = adapter.fetch(None, {"last_activity_time": "2024-02-01T00:00:00Z"})
        records, done = _drain(stream)

        assert [r.data["id"] for r in records] == ["a1", "a2", "a3"]
        assert all(r.resource_name == "Activity" for r in records)
        assert done.has_more is False
        assert stream.sync_context == {"last_activity_time": "2024-03-05T00:00:00Z"}
        first, second = (request.url.params for request in google.requests)
        assert first["mine"] == "true"
        assert first["part"] == "snippet,contentDetails"
        assert first["publishedAfter"] == "2024-02-01T00:00:00Z"
        assert "pageToken" not in first
        assert second["pageToken"] == "p2"

    def test_first_sweep_looks_back_a_year(self, google):
        """Without a stored time the first sweep starts a year back."""
        google.activity_pages = {None: {"items": []}}
        adapter = _google_adapter(google, YouTubeFetcher())

        stream = adapter.fetch(None, None)
        _drain(stream)

        published_after = google.requests[-1].url.params["publishedAfter"]
        assert published_after.endswith("Z")
        since = datetime.fromisoformat(published_after.replace("Z", "+00:00"))
        assert since < datetime.now(timezone.utc) - timedelta(days=364)
        assert stream.sync_context["last_activity_time"].endswith("Z")

    def test_page_boundary_keeps_pagination_keys(self, google):
        """Between pages the token and the newest publish time so far are kept."""
        google.activity_pages = {
            None: {"items": [self._activity("a1", "2024-03-01T00:00:00Z")], "nextPageToken": "p2"},
        }
        adapter = _google_adapter(google, YouTubeFetcher(page_size=1))

        context: dict[str, Any] = {}
        page = adapter.fetcher.fetch_page(GoogleSession(adapter, adapter._client()), context, None)

        assert page.has_more is True
        assert context == {"next_page_token": "p2", "sweep_latest_published_at": "2024-03-01T00:00:00Z"}


# ---------------------------------------------------------------------------
# Plaid adapter
# ---------------------------------------------------------------------------

class FakePlaid:
    """``httpx.MockTransport`` handler emulating the Plaid endpoints."""

    def __init__(self) -> None:
        self.accounts: list[dict[str, Any]] = [
            {"account_id": "acc-1", "name": "Checking", "type": "depository"},
            {"account_id": "acc-2", "name": "Savings", "type": "depository"},
        ]
        self.sync_pages: dict[str | None, dict[str, Any]] = {}
        # Cursor -> number of times to answer with a mutation error
        self.mutations: dict[str, int] = {}
        self.requests: list[tuple[str, dict[str, Any]]] = []

    def _error(self, code: str, message: str) -> httpx.Response:
        return httpx.Response(400, json={"error_type": "API_ERROR", "error_code": code, "error_message": message})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        path = request.url.path
        self.requests.append((path, body))
        if body.get("client_id") != "client-id" or body.get("secret") != "secret":
            return self._error("INVALID_API_KEYS", "invalid client_id or secret provided")

        if path == "/link/token/create":
            return httpx.Response(200, json={"link_token": "link-sandbox-1", "expiration": "2024-01-01T04:00:00Z"})
        if path == "/item/public_token/exchange":
            if body.get("public_token") != "public-good":
                return self._error("INVALID_PUBLIC_TOKEN", "provided public token is invalid")
            return httpx.Response(200, json={"access_token": "access-sandbox-1", "item_id": "item-1"})

        if body.get("access_token") != "access-sandbox-1":
            return self._error("INVALID_ACCESS_TOKEN", "provided access token is invalid")
        if path == "/accounts/get":
            return httpx.Response(200, json={"accounts": self.accounts})
        if path == "/transactions/sync":
            cursor = body.get("cursor")
            if self.mutations.get(cursor):
                self.mutations[cursor] -= 1
                return self._error(MUTATION_DURING_PAGINATION, "underlying transaction data changed")
            return httpx.Response(200, json=self.sync_pages[cursor])
        return httpx.Response(404, json={"error_message": "unexpected path"})

    def sync_cursors(self) -> list[str | None]:
        return [body.get("cursor") for path, body in self.requests if path == "/transactions/sync"]


def _sync_page(added: list[str], next_cursor: str, has_more: bool, modified: list[str] | None = None) -> dict[str, Any]:
    def transaction(transaction_id: str) -> dict[str, Any]:
        return {"transaction_id": transaction_id, "account_id": "acc-1", "amount": 12.5, "name": "Coffee"}

    return {
        "added": [transaction(item) for item in added],
        "modified": [transaction(item) for item in modified or []],
        "removed": [],
        "next_cursor": next_cursor,
        "has_more": has_more,
    }


@pytest.fixture()
def plaid():
    return FakePlaid()


def _plaid_adapter(plaid: FakePlaid, access_token: str | None = "access-sandbox-1") -> PlaidAdapter:
    adapter = PlaidAdapter(
        client_id="client-id",
        secret="secret",
        environment="sandbox",
        http_client=httpx.Client(transport=httpx.MockTransport(plaid)),
    )
    if access_token:
        adapter.set_token_pair(TokenPair(access_token))
    return adapter


class TestPlaid:
    def test_authenticate_returns_link_token_url(self, plaid):
        """authenticate creates a Link token and hands it back in a plaid:// URL."""
        adapter = _plaid_adapter(plaid, access_token=None)

        result = adapter.authenticate("https://app.example/callback")

        assert result.success is False
        assert result.auth_url.startswith("plaid://")
        query = parse_qs(urlsplit(result.auth_url).query)
        assert query == {"linkToken": ["link-sandbox-1"], "redirectTo": ["https://app.example/callback"]}
        path, body = plaid.requests[-1]
        assert path == "/link/token/create"
        assert body["products"] == ["transactions"]
        assert body["country_codes"] == ["US"]
        assert body["redirect_uri"] == "https://app.example/callback"

    def test_missing_credentials(self, plaid):
        """Without a client id and secret nothing is sent to Plaid."""
        adapter = PlaidAdapter(client_id="", secret="", http_client=httpx.Client(transport=httpx.MockTransport(plaid)))

        with pytest.raises(AuthExchangeError, match="PLAID_CLIENT_ID"):
            adapter.authenticate("https://app.example/callback")
        assert plaid.requests == []

    def test_public_token_exchange_stores_access_token(self, plaid):
        """The public token from Link is exchanged for an access token without a refresh token."""
        adapter = _plaid_adapter(plaid, access_token=None)

        adapter.complete_authentication("public-good", "https://app.example/callback")

        assert adapter.get_token_pair() == TokenPair("access-sandbox-1", None)

    def test_rejected_public_token(self, plaid):
        """Plaid's error message is kept when the exchange fails."""
        adapter = _plaid_adapter(plaid, access_token=None)

        with pytest.raises(AuthExchangeError, match="public token is invalid"):
            adapter.complete_authentication("public-bad", "https://app.example/callback")

    def test_sweep_reads_accounts_then_transactions(self, plaid):
        """A sweep emits the accounts first, then every sync page, keeping only the cursor."""
        plaid.sync_pages = {
            None: _sync_page(["t1", "t2"], "c1", has_more=True),
            "c1": _sync_page(["t3"], "c2", has_more=False, modified=["t1"]),
        }
        adapter = _plaid_adapter(plaid)

        stream = adapter.fetch(None, None)
        records, done = _drain(stream)

        keys = [(r.resource_name, r.data.get("transaction_id", r.data["account_id"])) for r in records]
        assert keys == [
            ("Account", "acc-1"),
            ("Account", "acc-2"),
            ("Transaction", "t1"),
            ("Transaction", "t2"),
            ("Transaction", "t3"),
            ("Transaction", "t1"),
        ]
        assert done.has_more is False
        assert stream.sync_context == {"transactions_cursor": "c2"}
        assert plaid.sync_cursors() == [None, "c1"]
        assert all(body["count"] == 500 for path, body in plaid.requests if path == "/transactions/sync")

    def test_next_sweep_continues_from_cursor(self, plaid):
        """The stored cursor is sent on the next sweep."""
        plaid.sync_pages = {"c2": _sync_page(["t4"], "c3", has_more=False)}
        adapter = _plaid_adapter(plaid)

        stream = adapter.fetch(None, {"transactions_cursor": "c2"})
        records, _ = _drain(stream)

        assert [r.data.get("transaction_id") for r in records if r.resource_name == "Transaction"] == ["t4"]
        assert plaid.sync_cursors() == ["c2"]
        assert stream.sync_context == {"transactions_cursor": "c3"}

    def test_mutation_during_pagination_restarts_from_sweep_cursor(self, plaid):
        """A mutation error restarts pagination from the cursor the sweep began with."""
        plaid.sync_pages = {
            "c0": _sync_page(["t1"], "c1", has_more=True),
            "c1": _sync_page(["t2"], "c2", has_more=False),
        }
        plaid.mutations = {"c1": 1}
        adapter = _plaid_adapter(plaid)

        stream = adapter.fetch(None, {"transactions_cursor": "c0"})
        records, done = _drain(stream)

        transactions = [r.data["transaction_id"] for r in records if r.resource_name == "Transaction"]
        assert transactions == ["t1", "t1", "t2"]
        assert plaid.sync_cursors() == ["c0", "c1", "c0", "c1"]
        assert done.has_more is False
        assert stream.sync_context == {"transactions_cursor": "c2"}

    def test_repeated_mutation_is_raised(self, plaid):
        """Only one restart is attempted per fetch."""
        plaid.sync_pages = {"c0": _sync_page(["t1"], "c1", has_more=True)}
        plaid.mutations = {"c1": 2}
        adapter = _plaid_adapter(plaid)

        with pytest.raises(PlaidError) as excinfo:
            _drain(adapter.fetch(None, {"transactions_cursor": "c0"}))
        assert excinfo.value.error_code == MUTATION_DURING_PAGINATION
        assert excinfo.value.status_code == 400

    def test_fetch_without_token_raises(self, plaid):
        """Fetching before the public token exchange is a ProviderFetchError."""
        adapter = _plaid_adapter(plaid, access_token=None)
        with pytest.raises(ProviderFetchError):
            adapter.fetch(None, None)

    def test_unknown_environment(self):
        """Only Plaid's documented environments are accepted."""
        with pytest.raises(ValueError, match="Unknown Plaid environment"):
            PlaidAdapter(client_id="client-id", secret="secret", environment="staging")


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class TestRegistry:
    def test_create_google_adapter(self):
        """GoogleAPIAdapter is built with the named fetcher and its options."""
        adapter = create_adapter("GoogleAPIAdapter", {"fetcher": "google_calendar", "page_size": 50})

        assert isinstance(adapter, GoogleAPIAdapter)
        assert isinstance(adapter.fetcher, GoogleCalendarFetcher)
        assert adapter.fetcher.page_size == 50

    def test_create_youtube_adapter(self):
        """The youtube fetcher is registered with the Google adapter."""
        adapter = create_adapter("GoogleAPIAdapter", {"fetcher": "youtube"})

        assert isinstance(adapter.fetcher, YouTubeFetcher)
        assert adapter.scopes == ["https://www.googleapis.com/auth/youtube.readonly"]

    def test_create_sql_adapter(self):
        """SQLAdapter is built from a url and table list."""
        adapter = create_adapter("SQLAdapter", {"url": "sqlite://", "tables": ["t"]})
        assert isinstance(adapter, SQLAdapter)
        assert adapter.tables == ["t"]

    def test_create_plaid_adapter(self):
        """PlaidAdapter takes its products and environment from the config."""
        adapter = create_adapter("PlaidAdapter", {"environment": "development", "products": ["transactions", "auth"]})

        assert isinstance(adapter, PlaidAdapter)
        assert adapter.base_url == "https://development.plaid.com"
        assert adapter.products == ["transactions", "auth"]

    def test_unknown_adapter(self):
        """An unregistered adapter name is a ValueError."""
        with pytest.raises(ValueError, match="Unknown source adapter"):
            create_adapter("FTPAdapter", {})

    def test_missing_required_config(self):
        """Required config keys are checked before the factory runs."""
        with pytest.raises(ValueError, match="url"):
            create_adapter("SQLAdapter", {})

    def test_unknown_google_fetcher(self):
        """An unknown Google fetcher name is a ValueError."""
        with pytest.raises(ValueError, match="Unknown Google fetcher"):
            create_adapter("GoogleAPIAdapter", {"fetcher": "drive"})

    def test_available_adapters_hide_factories(self):
        """Adapter metadata lists every adapter without exposing its factory."""
        entries = available_adapters()
        assert {entry["name"] for entry in entries} == {"GoogleAPIAdapter", "SQLAdapter", "PlaidAdapter"}
        assert all("factory" not in entry for entry in entries)
