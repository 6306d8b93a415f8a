"""Source adapter registry.

Maps adapter class names to their metadata and a constructor that accepts a
plain configuration dict, so connector definitions kept as data (JSON, YAML,
database rows) can name the adapter they need.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from datasync.sources.base import SourceAdapter
from datasync.sources.gmail import GmailFetcher
from datasync.sources.google import GoogleAPIAdapter, GooglePageFetcher
from datasync.sources.google_calendar import GoogleCalendarFetcher
from datasync.sources.plaid import PlaidAdapter
from datasync.sources.sql import SQLAdapter
from datasync.sources.youtube import YouTubeFetcher

GOOGLE_FETCHERS: dict[str, type[GooglePageFetcher]] = {
    "gmail": GmailFetcher,
    "google_calendar": GoogleCalendarFetcher,
    "youtube": YouTubeFetcher,
}


def _google_adapter(config: dict[str, Any]) -> GoogleAPIAdapter:
    fetcher_name = config.get("fetcher")
    fetcher_cls = GOOGLE_FETCHERS.get(fetcher_name or "")
    if fetcher_cls is None:
        raise ValueError(
            f"Unknown Google fetcher {fetcher_name!r}; expected one of {', '.join(sorted(GOOGLE_FETCHERS))}"
        )
    fetcher = fetcher_cls(
        page_size=config.get("page_size"),
        short_page_ends_pagination=config.get("short_page_ends_pagination", True),
    )
    return GoogleAPIAdapter(
        fetcher,
        client_id=config.get("client_id"),
        client_secret=config.get("client_secret"),
    )


def _sql_adapter(config: dict[str, Any]) -> SQLAdapter:
    return SQLAdapter(
        url=config["url"],
        tables=config.get("tables", []),
        schema=config.get("schema"),
        page_size=config.get("page_size", 1000),
        timestamp_columns=config.get("timestamp_columns"),
    )


def _plaid_adapter(config: dict[str, Any]) -> PlaidAdapter:
    return PlaidAdapter(
        products=config.get("products"),
        country_codes=config.get("country_codes"),
        language=config.get("language", "en"),
        client_id=config.get("client_id"),
        secret=config.get("secret"),
        environment=config.get("environment"),
    )


ADAPTER_TYPES: dict[str, dict[str, Any]] = {
    "GoogleAPIAdapter": {
        "name": "GoogleAPIAdapter",
        "description": "Google APIs via OAuth 2.0 (Gmail, Google Calendar, YouTube).",
        "required_config": ["fetcher"],
        "optional_config": ["page_size", "short_page_ends_pagination", "client_id", "client_secret"],
        "example_config": GoogleAPIAdapter.example_config,
        "factory": _google_adapter,
    },
    "SQLAdapter": {
        "name": "SQLAdapter",
        "description": "Tables in a SQL database reachable through SQLAlchemy.",
        "required_config": ["url"],
        "optional_config": ["tables", "schema", "page_size", "timestamp_columns"],
        "example_config": SQLAdapter.example_config,
        "factory": _sql_adapter,
    },
    "PlaidAdapter": {
        "name": "PlaidAdapter",
        "description": "Bank accounts and transactions through Plaid Link.",
        "required_config": [],
        "optional_config": ["products", "country_codes", "language", "environment", "client_id", "secret"],
        "example_config": PlaidAdapter.example_config,
        "factory": _plaid_adapter,
    },
}


def create_adapter(class_name: str, config: dict[str, Any] | None = None) -> SourceAdapter:
    """Instantiate the adapter registered as *class_name*.

    Raises ``ValueError`` for unknown adapters or missing required config.
    """
    entry = ADAPTER_TYPES.get(class_name)
    if entry is None:
        raise ValueError(f"Unknown source adapter: {class_name}")
    config = dict(config or {})
    missing = [key for key in entry["required_config"] if not config.get(key)]
    if missing:
        raise ValueError(f"{class_name} is missing required config: {', '.join(missing)}")
    factory: Callable[[dict[str, Any]], SourceAdapter] = entry["factory"]
    return factory(config)


def available_adapters() -> list[dict[str, Any]]:
    """Return metadata for every registered adapter, without the factories."""
    return [
        {key: value for key, value in entry.items() if key != "factory"}
        for entry in ADAPTER_TYPES.values()
    ]
