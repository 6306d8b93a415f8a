"""Google API source adapter.

Implements the OAuth 2.0 authorization-code flow against Google's endpoints
with ``httpx`` and delegates the actual paging to a ``GooglePageFetcher``
(Gmail, Calendar, ...).  An expired access token is refreshed once per
request using the stored refresh token; the rotated token pair is visible
through ``get_token_pair()`` so the connector can persist it.
"""

from __future__ import annotations

import abc
import logging
from datetime import datetime
from typing import Any

import httpx

from datasync.errors import AuthExchangeError, ProviderFetchError
from datasync.settings import settings
from datasync.sources.base import (
    AuthResult,
    CallbackFetchStream,
    FetchStream,
    Page,
    SourceAdapter,
    TokenPair,
)
from datasync.util.deadline import Deadline

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

DEFAULT_TIMEOUT_SECONDS = 30.0
# Floor for a request timeout cut short by the run deadline
MIN_TIMEOUT_SECONDS = 5.0


def _error_message(response: httpx.Response) -> str:
    """Pull the human-readable message out of a Google error response."""
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or error.get("status") or response.reason_phrase)
    if isinstance(error, str):
        return str(body.get("error_description") or error)
    return response.text or response.reason_phrase


# ---------------------------------------------------------------------------
# Authorized session
# ---------------------------------------------------------------------------

class GoogleSession:
    """Authorized JSON access to Google REST APIs for one fetch.

    ``deadline`` is the fetch's run budget.  Request timeouts never reach
    past it (down to ``MIN_TIMEOUT_SECONDS``), and fetchers that issue many
    requests per page check it between requests.
    """

    def __init__(
        self,
        adapter: GoogleAPIAdapter,
        client: httpx.Client,
        deadline: Deadline | None = None,
    ) -> None:
        self._adapter = adapter
        self._client = client
        self.deadline = deadline or Deadline.never()

    def timeout(self) -> float:
        remaining = self.deadline.remaining()
        return max(MIN_TIMEOUT_SECONDS, min(DEFAULT_TIMEOUT_SECONDS, remaining))

    def get_json(self, url: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """GET *url* and return the decoded body.

        Raises ``ProviderFetchError`` for transport failures and non-2xx
        responses (after one refresh attempt on 401).
        """
        response = self._get(url, params)
        if response.status_code == 401 and self._adapter.get_token_pair().refresh_token:
            logger.info("get_json: access token rejected, refreshing")
            self._adapter.refresh_access_token(self._client)
            response = self._get(url, params)

        if response.is_error:
            raise ProviderFetchError(_error_message(response), status_code=response.status_code)
        return response.json()

    def _get(self, url: str, params: dict[str, Any] | None) -> httpx.Response:
        token = self._adapter.get_token_pair().access_token
        try:
            return self._client.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.timeout(),
            )
        except httpx.HTTPError as exc:
            raise ProviderFetchError(f"Request to {url} failed: {exc}") from exc


# ---------------------------------------------------------------------------
# Page fetchers
# ---------------------------------------------------------------------------

class GooglePageFetcher(abc.ABC):
    """Provider-specific paging on top of a ``GoogleSession``.

    ``short_page_ends_pagination`` treats a page with fewer results than
    ``page_size`` as the last one even if a next-page token came back.  Google
    does not document this as a guarantee, so it stays switchable per fetcher.
    """

    scopes: list[str] = []
    page_size: int = 100

    def __init__(self, page_size: int | None = None, short_page_ends_pagination: bool = True) -> None:
        if page_size is not None:
            self.page_size = page_size
        self.short_page_ends_pagination = short_page_ends_pagination

    def is_last_page(self, next_page_token: str | None, result_count: int) -> bool:
        if not next_page_token:
            return True
        return self.short_page_ends_pagination and result_count < self.page_size

    @abc.abstractmethod
    def fetch_page(
        self,
        session: GoogleSession,
        sync_context: dict[str, Any],
        last_synced_at: datetime | None,
    ) -> Page:
        """Fetch one page and update *sync_context* in place."""


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class GoogleAPIAdapter(SourceAdapter):
    """OAuth-authorized adapter for Google REST APIs."""

    example_config = {
        "fetcher": "gmail",
        "page_size": 100,
        "short_page_ends_pagination": True,
    }

    def __init__(
        self,
        fetcher: GooglePageFetcher,
        client_id: str | None = None,
        client_secret: str | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        super().__init__()
        self.fetcher = fetcher
        self.client_id = client_id if client_id is not None else settings.GOOGLE_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else settings.GOOGLE_CLIENT_SECRET
        self._http_client = http_client

    @property
    def scopes(self) -> list[str]:
        return list(self.fetcher.scopes)

    def _client(self) -> httpx.Client:
        if self._http_client is None:
            self._http_client = httpx.Client(timeout=DEFAULT_TIMEOUT_SECONDS)
        return self._http_client

    def close(self) -> None:
        if self._http_client is not None:
            self._http_client.close()
            self._http_client = None

    # -- Authentication ----------------------------------------------------------

    def authenticate(self, redirect_to: str) -> AuthResult:
        if not self.client_id:
            raise AuthExchangeError("Google OAuth configuration missing. Please set GOOGLE_CLIENT_ID.")

        url = httpx.URL(
            GOOGLE_AUTH_URL,
            params={
                "client_id": self.client_id,
                "redirect_uri": redirect_to,
                "response_type": "code",
                "scope": " ".join(self.scopes),
                "access_type": "offline",
                "prompt": "consent",
            },
        )
        return AuthResult(success=False, auth_url=str(url))

    def complete_authentication(self, code: str, redirect_to: str) -> None:
        if not self.client_id or not self.client_secret:
            raise AuthExchangeError(
                "Google OAuth configuration missing. Please set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET."
            )

        token_data = self._token_request(
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": redirect_to,
            },
            self._client(),
        )
        self.set_token_pair(
            TokenPair(
                access_token=token_data.get("access_token"),
                refresh_token=token_data.get("refresh_token") or self.get_token_pair().refresh_token,
            )
        )
        logger.info("complete_authentication: obtained Google access token")

    def refresh_access_token(self, client: httpx.Client) -> None:
        """Swap the refresh token for a new access token."""
        tokens = self.get_token_pair()
        try:
            token_data = self._token_request(
                {
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": tokens.refresh_token,
                    "grant_type": "refresh_token",
                },
                client,
            )
        except AuthExchangeError as exc:
            raise ProviderFetchError(f"Failed to refresh access token: {exc}", status_code=401) from exc
        self.set_token_pair(
            TokenPair(
                access_token=token_data.get("access_token"),
                refresh_token=token_data.get("refresh_token") or tokens.refresh_token,
            )
        )

    @staticmethod
    def _token_request(form: dict[str, Any], client: httpx.Client) -> dict[str, Any]:
        try:
            response = client.post(GOOGLE_TOKEN_URL, data=form)
        except httpx.HTTPError as exc:
            raise AuthExchangeError(f"Failed to exchange code for token: {exc}") from exc
        if response.is_error:
            raise AuthExchangeError(f"Failed to exchange code for token: {_error_message(response)}")
        token_data = response.json()
        if not token_data.get("access_token"):
            raise AuthExchangeError("Failed to exchange code for token: no access_token in response")
        return token_data

    # -- Fetch -------------------------------------------------------------------

    def fetch(
        self,
        last_synced_at: datetime | None,
        sync_context: dict[str, Any] | None,
        deadline: Deadline | None = None,
    ) -> FetchStream:
        if not self.get_token_pair().access_token:
            raise ProviderFetchError("No access token available. Please authenticate first.")

        session = GoogleSession(self, self._client(), deadline=deadline)

        def _page(context: dict[str, Any], since: datetime | None) -> Page:
            return self.fetcher.fetch_page(session, context, since)

        logger.info("fetch: fetching from Google API (%s)", type(self.fetcher).__name__)
        return CallbackFetchStream(_page, sync_context, last_synced_at=last_synced_at, deadline=deadline)
