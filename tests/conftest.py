"""Shared pytest fixtures for datasync tests.

Uses an in-memory SQLite database so that tests never touch the real
PostgreSQL instance.  Every test gets a fresh database: the engine uses a
``StaticPool`` so the ORM session and the record writer's DDL share the one
in-memory connection.
"""

from __future__ import annotations

import os

# Must be set before datasync.settings is imported anywhere
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TOKEN_ENCRYPTION_KEY"] = ""

from collections.abc import Callable, Iterator
from datetime import datetime
from typing import Any, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from datasync.api.routes import get_catalog
from datasync.connectors.catalog import Catalog, ConnectorConfig, ResourceSpec
from datasync.connectors.connector import DataConnector
from datasync.core import models  # noqa: F401
from datasync.core.db import Base, get_db
from datasync.errors import AuthExchangeError
from datasync.jobs.scheduler import JobScheduler
from datasync.main import app
from datasync.sources.base import (
    AuthResult,
    CallbackFetchStream,
    FetchRecord,
    FetchStream,
    Page,
    SourceAdapter,
    TokenPair,
)
from datasync.util.deadline import Deadline

CONNECTOR_ID = "X"

ITEM_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "id": {"type": "string"},
        "name": {"type": "string"},
        "count": {"type": "integer"},
    },
    "required": ["id"],
}


def make_records(count: int, start: int = 0, resource: str = "Item") -> list[FetchRecord]:
    return [
        FetchRecord(resource, {"id": f"item-{i}", "name": f"Item {i}", "count": i})
        for i in range(start, start + count)
    ]


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeClock:
    """Manually advanced monotonic clock for ``Deadline``."""

    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAdapter(SourceAdapter):
    """In-memory source serving a fixed list of pages.

    Sync context: ``page`` (next page index, pagination only) and
    ``sweeps`` (number of completed sweeps, durable).
    """

    def __init__(self, pages: list[list[FetchRecord]] | None = None) -> None:
        super().__init__()
        self.pages = pages if pages is not None else [make_records(100), make_records(50, start=100)]
        self.auth_url: str | None = "https://provider.example/authorize"
        self.valid_code = "good-code"
        self.issued_tokens = TokenPair(access_token="access-1", refresh_token="refresh-1")
        self.fetch_error: Exception | None = None
        self.clock: FakeClock | None = None
        self.seconds_per_page = 0.0
        self.rotate_tokens_to: TokenPair | None = None
        self.on_page: Callable[[int], None] | None = None

        self.authenticate_calls = 0
        self.fetch_calls: list[dict[str, Any]] = []

    def authenticate(self, redirect_to: str) -> AuthResult:
        self.authenticate_calls += 1
        if self.auth_url is None:
            return AuthResult(success=True)
        return AuthResult(success=False, auth_url=f"{self.auth_url}?redirect_uri={redirect_to}")

    def complete_authentication(self, code: str, redirect_to: str) -> None:
        if code != self.valid_code:
            raise AuthExchangeError("invalid_grant")
        self.set_token_pair(self.issued_tokens)

    def fetch(
        self,
        last_synced_at: datetime | None,
        sync_context: dict[str, Any] | None,
        deadline: Deadline | None = None,
    ) -> FetchStream:
        self.fetch_calls.append(
            {
                "last_synced_at": last_synced_at,
                "sync_context": dict(sync_context or {}),
                "tokens": self.get_token_pair(),
            }
        )
        if self.fetch_error is not None:
            raise self.fetch_error
        if self.rotate_tokens_to is not None:
            self.set_token_pair(self.rotate_tokens_to)
        return CallbackFetchStream(self._page, sync_context, last_synced_at=last_synced_at, deadline=deadline)

    def _page(self, sync_context: dict[str, Any], last_synced_at: datetime | None) -> Page:
        index = int(sync_context.get("page", 0))
        records = self.pages[index] if index < len(self.pages) else []
        if self.on_page is not None:
            self.on_page(index)
        if self.clock is not None:
            self.clock.advance(self.seconds_per_page)
        if index + 1 < len(self.pages):
            sync_context["page"] = index + 1
            return Page(records=list(records), has_more=True)
        sync_context.pop("page", None)
        sync_context["sweeps"] = int(sync_context.get("sweeps", 0)) + 1
        return Page(records=list(records), has_more=False)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture()
def engine():
    """Create a fresh in-memory SQLite engine with all tables."""
    _engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=_engine)
    yield _engine
    _engine.dispose()


@pytest.fixture()
def session_factory(engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Connector wiring
# ---------------------------------------------------------------------------

@pytest.fixture()
def adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture()
def catalog(adapter: FakeAdapter) -> Catalog:
    _catalog = Catalog()
    _catalog.register(
        ConnectorConfig(
            id=CONNECTOR_ID,
            name="Test source",
            description="In-memory pages of items.",
            resources=[ResourceSpec("Item", ITEM_SCHEMA)],
            adapter_factory=lambda: adapter,
        )
    )
    return _catalog


@pytest.fixture()
def connector(catalog: Catalog, db_session: Session) -> DataConnector:
    return catalog.get_connector(CONNECTOR_ID, db_session)


@pytest.fixture()
def scheduler(catalog: Catalog, db_session: Session) -> JobScheduler:
    return JobScheduler(
        db_session,
        lambda connector_id: catalog.get_connector(connector_id, db_session),
        max_job_duration_seconds=60,
        stale_multiplier=2,
    )


@pytest.fixture()
def connected(connector: DataConnector) -> DataConnector:
    """The test connector after a successful authorization handshake."""
    connector.connect("https://app.example/callback")
    connector.continue_to_connect("good-code", "https://app.example/callback")
    return connector


# ---------------------------------------------------------------------------
# FastAPI TestClient with DB and catalog overrides
# ---------------------------------------------------------------------------

@pytest.fixture()
def client(db_session: Session, catalog: Catalog) -> Iterator[TestClient]:
    """Return a ``TestClient`` that uses the test database and catalog."""

    def _override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_catalog] = lambda: catalog
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
    app.dependency_overrides.clear()
