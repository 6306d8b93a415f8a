"""Plaid source adapter (``Account`` and ``Transaction`` resources).

Plaid has no OAuth redirect.  ``authenticate`` creates a Link token and
returns it inside a ``plaid://`` URL for the front end to open Plaid Link
with; the public token Link hands back is the "code" that
``complete_authentication`` exchanges for a long-lived access token.  There
is no refresh token.

Each sweep reads the account list once, then pages through
``/transactions/sync``.  Sync context keys:

``transactions_cursor``
    Durable.  Plaid's cursor after the last page applied; the next page
    (or sweep) continues from it.
``sweep_start_cursor``
    Pagination only; the cursor the sweep started from.  Plaid asks for
    pagination to restart from here when the data changes mid-sweep.
``accounts_loaded``
    Pagination only; set once this sweep has emitted the accounts.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from urllib.parse import urlencode

import httpx

from datasync.errors import AuthExchangeError, ProviderFetchError
from datasync.settings import settings
from datasync.sources.base import (
    AuthResult,
    FetchRecord,
    FetchStream,
    Page,
    PagedFetchStream,
    SourceAdapter,
    TokenPair,
)
from datasync.util.deadline import Deadline

logger = logging.getLogger(__name__)

PLAID_ENVIRONMENTS = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}

DEFAULT_TIMEOUT_SECONDS = 30.0
SYNC_PAGE_SIZE = 500  # Maximum allowed by /transactions/sync

MUTATION_DURING_PAGINATION = "TRANSACTIONS_SYNC_MUTATION_DURING_PAGINATION"

ACCOUNT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "account_id": {"type": "string"},
        "name": {"type": "string"},
        "official_name": {"type": "string"},
        "mask": {"type": "string"},
        "type": {"type": "string"},
        "subtype": {"type": "string"},
        "balances": {"type": "object"},
    },
    "required": ["account_id"],
}

TRANSACTION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "transaction_id": {"type": "string"},
        "account_id": {"type": "string"},
        "amount": {"type": "number"},
        "iso_currency_code": {"type": "string"},
        "date": {"type": "string", "format": "date"},
        "authorized_date": {"type": "string", "format": "date"},
        "name": {"type": "string"},
        "merchant_name": {"type": "string"},
        "pending": {"type": "boolean"},
        "category": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["transaction_id"],
}

_PAGINATION_KEYS = ("sweep_start_cursor", "accounts_loaded")


class PlaidError(ProviderFetchError):
    """A Plaid API error, keeping Plaid's ``error_code``."""

    def __init__(self, message: str, status_code: int | None = None, error_code: str | None = None) -> None:
        super().__init__(message, status_code=status_code)
        self.error_code = error_code


def _plaid_error(response: httpx.Response) -> PlaidError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    message = body.get("error_message") or response.text or response.reason_phrase
    return PlaidError(message, status_code=response.status_code, error_code=body.get("error_code"))


class PlaidAdapter(SourceAdapter):
    """Token-exchange adapter for the Plaid API."""

    example_config = {
        "products": ["transactions"],
        "country_codes": ["US"],
        "language": "en",
    }

    def __init__(
        self,
        products: list[str] | None = None,
        country_codes: list[str] | None = None,
        language: str = "en",
        client_id: str | None = None,
        secret: str | None = None,
        environment: str | None = None,
        client_name: str | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        super().__init__()
        self.products = list(products or ["transactions"])
        self.country_codes = list(country_codes or ["US"])
        self.language = language
        self.client_id = client_id if client_id is not None else settings.PLAID_CLIENT_ID
        self.secret = secret if secret is not None else settings.PLAID_SECRET
        environment = environment or settings.PLAID_ENVIRONMENT
        if environment not in PLAID_ENVIRONMENTS:
            raise ValueError(
                f"Unknown Plaid environment {environment!r}; expected one of {', '.join(PLAID_ENVIRONMENTS)}"
            )
        self.base_url = PLAID_ENVIRONMENTS[environment]
        self.client_name = client_name or settings.PLAID_CLIENT_NAME
        self._http_client = http_client

    def _client(self) -> httpx.Client:
        if self._http_client is None:
            self._http_client = httpx.Client(timeout=DEFAULT_TIMEOUT_SECONDS)
        return self._http_client

    def close(self) -> None:
        if self._http_client is not None:
            self._http_client.close()
            self._http_client = None

    def post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        """POST *body* (plus credentials) to *path* and return the decoded reply."""
        payload = {"client_id": self.client_id, "secret": self.secret, **body}
        try:
            response = self._client().post(f"{self.base_url}{path}", json=payload)
        except httpx.HTTPError as exc:
            raise ProviderFetchError(f"Request to {path} failed: {exc}") from exc
        if response.is_error:
            raise _plaid_error(response)
        return response.json()

    # -- Authentication ----------------------------------------------------------

    def _require_credentials(self) -> None:
        if not self.client_id or not self.secret:
            raise AuthExchangeError("Plaid configuration missing. Please set PLAID_CLIENT_ID and PLAID_SECRET.")

    def authenticate(self, redirect_to: str) -> AuthResult:
        self._require_credentials()
        try:
            data = self.post(
                "/link/token/create",
                {
                    "client_name": self.client_name,
                    "user": {"client_user_id": self.client_name},
                    "products": self.products,
                    "country_codes": self.country_codes,
                    "language": self.language,
                    "redirect_uri": redirect_to,
                },
            )
        except ProviderFetchError as exc:
            raise AuthExchangeError(f"Failed to create Plaid link token: {exc}") from exc

        query = urlencode({"linkToken": data["link_token"], "redirectTo": redirect_to})
        logger.info("authenticate: created Plaid link token")
        return AuthResult(success=False, auth_url=f"plaid://?{query}")

    def complete_authentication(self, code: str, redirect_to: str) -> None:
        self._require_credentials()
        try:
            data = self.post("/item/public_token/exchange", {"public_token": code})
        except ProviderFetchError as exc:
            raise AuthExchangeError(f"Failed to exchange public token: {exc}") from exc
        if not data.get("access_token"):
            raise AuthExchangeError("Failed to exchange public token: no access_token in response")
        self.set_token_pair(TokenPair(access_token=data["access_token"]))
        logger.info("complete_authentication: obtained Plaid access token")

    # -- Fetch -------------------------------------------------------------------

    def fetch(
        self,
        last_synced_at: datetime | None,
        sync_context: dict[str, Any] | None,
        deadline: Deadline | None = None,
    ) -> FetchStream:
        if not self.get_token_pair().access_token:
            raise ProviderFetchError("No access token available. Please authenticate first.")
        return PlaidFetchStream(self, sync_context, last_synced_at=last_synced_at, deadline=deadline)


class PlaidFetchStream(PagedFetchStream):
    """Accounts first, then one ``/transactions/sync`` page per iteration."""

    def __init__(
        self,
        adapter: PlaidAdapter,
        sync_context: dict[str, Any] | None,
        last_synced_at: datetime | None = None,
        deadline: Deadline | None = None,
    ) -> None:
        super().__init__(sync_context, last_synced_at=last_synced_at, deadline=deadline)
        self.adapter = adapter
        self.restarted = False

    @property
    def access_token(self) -> str | None:
        return self.adapter.get_token_pair().access_token

    def fetch_page(self, sync_context: dict[str, Any]) -> Page:
        if not sync_context.get("accounts_loaded"):
            data = self.adapter.post("/accounts/get", {"access_token": self.access_token})
            accounts = data.get("accounts") or []
            sync_context["accounts_loaded"] = True
            sync_context["sweep_start_cursor"] = sync_context.get("transactions_cursor")
            logger.info("plaid: fetched %d account(s)", len(accounts))
            return Page(records=[FetchRecord("Account", account) for account in accounts], has_more=True)

        cursor = sync_context.get("transactions_cursor")
        body: dict[str, Any] = {"access_token": self.access_token, "count": SYNC_PAGE_SIZE}
        if cursor:
            body["cursor"] = cursor
        try:
            data = self.adapter.post("/transactions/sync", body)
        except PlaidError as exc:
            if exc.error_code != MUTATION_DURING_PAGINATION or self.restarted:
                raise
            self.restarted = True
            logger.warning("plaid: transactions changed during pagination, restarting from the sweep's cursor")
            start = sync_context.get("sweep_start_cursor")
            if start:
                sync_context["transactions_cursor"] = start
            else:
                sync_context.pop("transactions_cursor", None)
            return Page(has_more=True)

        # Removed transactions are not deleted downstream
        transactions = (data.get("added") or []) + (data.get("modified") or [])
        records = [FetchRecord("Transaction", transaction) for transaction in transactions]
        sync_context["transactions_cursor"] = data.get("next_cursor")
        has_more = bool(data.get("has_more"))
        if not has_more:
            for key in _PAGINATION_KEYS:
                sync_context.pop(key, None)

        logger.info(
            "plaid: fetched %d new and %d modified transaction(s), has_more=%s",
            len(data.get("added") or []),
            len(data.get("modified") or []),
            has_more,
        )
        return Page(records=records, has_more=has_more)
