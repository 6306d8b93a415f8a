"""Source adapter contract.

A source adapter wraps one provider's authentication and paged retrieval so
the connector never special-cases providers.

Fetching is modelled as an explicit stream rather than a generator function:
``fetch()`` returns a ``FetchStream`` whose iteration yields ``FetchRecord``
items and finishes with exactly one ``FetchDone``.  ``PagedFetchStream``
implements the common loop

    while the last page reported more and the deadline has not expired:
        fetch the next page and emit its records

so the deadline check is an ordinary loop condition that tests can drive with
a fake clock.  The stream's ``sync_context`` is the only channel for resuming
later; the connector persists whatever the stream leaves there.
"""

from __future__ import annotations

import abc
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

from datasync.util.deadline import Deadline

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AuthResult:
    """Outcome of ``authenticate``.

    ``success=True`` means the source needs no interactive authorization
    (e.g. a direct database source); otherwise ``auth_url`` is where the
    user must be redirected.
    """

    success: bool
    auth_url: str | None = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str | None = None
    refresh_token: str | None = None


@dataclass(frozen=True)
class FetchRecord:
    """One record tagged with the resource it belongs to."""

    resource_name: str
    data: dict[str, Any]


@dataclass(frozen=True)
class FetchDone:
    """Terminal stream item; ``has_more`` asks for another bounded run."""

    has_more: bool


FetchItem = Union[FetchRecord, FetchDone]


@dataclass
class Page:
    """A single provider page returned by ``PagedFetchStream.fetch_page``."""

    records: list[FetchRecord] = field(default_factory=list)
    has_more: bool = False


PageFunction = Callable[[dict[str, Any], Optional[datetime]], Page]


# ---------------------------------------------------------------------------
# Streams
# ---------------------------------------------------------------------------

class FetchStream(abc.ABC):
    """Iterator over fetched records that ends with a single ``FetchDone``."""

    def __init__(self, sync_context: dict[str, Any] | None) -> None:
        self.sync_context: dict[str, Any] = dict(sync_context or {})
        self.record_count = 0
        self.has_more: bool | None = None

    def __iter__(self) -> Iterator[FetchItem]:
        for record in self._records():
            self.record_count += 1
            yield record
        yield FetchDone(has_more=bool(self.has_more))

    @abc.abstractmethod
    def _records(self) -> Iterator[FetchRecord]:
        """Emit records and set ``self.has_more`` before returning."""


class PagedFetchStream(FetchStream):
    """A ``FetchStream`` that walks provider pages until done or out of time."""

    def __init__(
        self,
        sync_context: dict[str, Any] | None,
        last_synced_at: datetime | None = None,
        deadline: Deadline | None = None,
    ) -> None:
        super().__init__(sync_context)
        self.last_synced_at = last_synced_at
        self.deadline = deadline or Deadline.never()
        self.page_count = 0

    def _records(self) -> Iterator[FetchRecord]:
        more = True
        while more and not self.deadline.expired():
            page = self.fetch_page(self.sync_context)
            self.page_count += 1
            yield from page.records
            more = page.has_more
        if more:
            logger.info(
                "fetch: deadline reached after %d page(s), %d record(s); more data remains",
                self.page_count,
                self.record_count,
            )
        self.has_more = more

    @abc.abstractmethod
    def fetch_page(self, sync_context: dict[str, Any]) -> Page:
        """Fetch the next page, updating *sync_context* in place."""


class CallbackFetchStream(PagedFetchStream):
    """``PagedFetchStream`` driven by a plain page function."""

    def __init__(
        self,
        page_fn: PageFunction,
        sync_context: dict[str, Any] | None,
        last_synced_at: datetime | None = None,
        deadline: Deadline | None = None,
    ) -> None:
        super().__init__(sync_context, last_synced_at=last_synced_at, deadline=deadline)
        self._page_fn = page_fn

    def fetch_page(self, sync_context: dict[str, Any]) -> Page:
        return self._page_fn(sync_context, self.last_synced_at)


# ---------------------------------------------------------------------------
# Adapter contract
# ---------------------------------------------------------------------------

class SourceAdapter(abc.ABC):
    """Authentication plus paged fetch for one provider."""

    #: Example configuration shown by ``available_adapters()``.
    example_config: dict[str, Any] = {}

    def __init__(self) -> None:
        self._tokens = TokenPair()

    @abc.abstractmethod
    def authenticate(self, redirect_to: str) -> AuthResult:
        """Start authentication, returning a redirect URL or immediate success."""

    @abc.abstractmethod
    def complete_authentication(self, code: str, redirect_to: str) -> None:
        """Exchange an authorization code for tokens.

        Raises ``AuthExchangeError`` if the provider rejects the code.
        """

    @abc.abstractmethod
    def fetch(
        self,
        last_synced_at: datetime | None,
        sync_context: dict[str, Any] | None,
        deadline: Deadline | None = None,
    ) -> FetchStream:
        """Return a stream of records continuing from *sync_context*."""

    def get_token_pair(self) -> TokenPair:
        return self._tokens

    def set_token_pair(self, tokens: TokenPair) -> None:
        self._tokens = tokens

    def close(self) -> None:
        """Release any connections held by the adapter."""
