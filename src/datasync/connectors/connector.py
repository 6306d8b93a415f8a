"""Data connector: one source's lifecycle.

``DataConnector`` is the only component that talks to both the source
adapter and the record writer.  It owns the authentication handshake, token
custody, and the fetch -> validate -> write loop of a single load cycle.
Job bookkeeping lives in ``datasync.jobs.scheduler``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from datasync.connectors.catalog import ConnectorConfig
from datasync.connectors.schema import drop_records_without_id, ensure_id_field, validate_records
from datasync.connectors.writer import RecordWriter, SQLRecordWriter
from datasync.core.models import ConnectorStatus
from datasync.settings import settings
from datasync.sources.base import FetchDone, SourceAdapter, TokenPair
from datasync.status.store import StatusStore
from datasync.util.deadline import Deadline
from datasync.util.timestamps import ensure_utc, utcnow

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]


@dataclass(frozen=True)
class ConnectResult:
    success: bool
    auth_url: str | None = None


@dataclass(frozen=True)
class LoadResult:
    updated_record_count: int
    is_finished: bool
    dropped_record_count: int = 0


class DataConnector:
    """Orchestrates one configured source against the status store and writer."""

    def __init__(
        self,
        config: ConnectorConfig,
        db: Session,
        writer: RecordWriter | None = None,
        batch_size: int | None = None,
    ) -> None:
        self.config = config
        self.id = config.id
        self.db = db
        self.store = StatusStore(db)
        self.writer = writer or SQLRecordWriter(
            db,
            config.id,
            id_columns={resource.name: resource.id_column for resource in config.resources},
        )
        self.batch_size = batch_size or settings.LOAD_BATCH_SIZE
        self._adapter: SourceAdapter | None = None

    @property
    def adapter(self) -> SourceAdapter:
        if self._adapter is None:
            self._adapter = self.config.adapter_factory()
        return self._adapter

    def close(self) -> None:
        if self._adapter is not None:
            self._adapter.close()

    # -----------------------------------------------------------------------
    # Status
    # -----------------------------------------------------------------------

    def get_status(self) -> ConnectorStatus | None:
        return self.store.get_status(self.id)

    def is_connected(self) -> bool:
        status = self.get_status()
        return bool(status and status.is_connected)

    def is_loading(self) -> bool:
        status = self.get_status()
        return bool(status and status.is_loading)

    def update_status(self, **fields: Any) -> ConnectorStatus:
        return self.store.upsert_status(self.id, **fields)

    # -----------------------------------------------------------------------
    # Connection handshake
    # -----------------------------------------------------------------------

    def connect(self, redirect_to: str) -> ConnectResult:
        """Start connecting; a no-op success when already connected."""
        if self.is_connected():
            logger.info("connect: connector=%s already connected", self.id)
            return ConnectResult(success=True)

        # Reset in case the provider revoked a previous grant
        self.update_status(is_connected=False)

        auth = self.adapter.authenticate(redirect_to)
        if auth.success:
            self.update_status(is_connected=True, last_connected_at=utcnow(), last_error=None)
            logger.info("connect: connector=%s connected without authorization", self.id)
            return ConnectResult(success=True)

        logger.info("connect: connector=%s awaiting authorization", self.id)
        return ConnectResult(success=False, auth_url=auth.auth_url)

    def continue_to_connect(self, auth_code: str, redirect_to: str) -> ConnectResult:
        """Exchange *auth_code* for tokens and mark the connector connected.

        ``AuthExchangeError`` propagates; the connector stays disconnected.
        """
        self.adapter.complete_authentication(auth_code, redirect_to)

        tokens = self.adapter.get_token_pair()
        self.store.save_tokens(self.id, tokens.access_token, tokens.refresh_token)
        self.update_status(is_connected=True, last_connected_at=utcnow(), last_error=None)
        logger.info("continue_to_connect: connector=%s connected", self.id)
        return ConnectResult(success=True)

    def disconnect(self) -> None:
        """Drop every table this connector owns and forget its status."""
        self.writer.drop_tables(self.config.resource_names)
        self.store.delete_table_status(self.id)
        self.store.delete_status(self.id)
        self.close()
        logger.info("disconnect: connector=%s disconnected and its tables dropped", self.id)

    # -----------------------------------------------------------------------
    # Load
    # -----------------------------------------------------------------------

    def load(
        self,
        deadline: Deadline | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> LoadResult:
        """Run one bounded load cycle.

        Fetches from the adapter until it finishes or *deadline* passes,
        writing records in batches of ``batch_size``.  ``on_progress`` gets
        the number of records written so far in this call.  The adapter's
        sync context is persisted once the fetch completes so the next call
        resumes where this one stopped.
        """
        schemas = {
            resource.name: ensure_id_field(resource.schema, resource.id_column)
            for resource in self.config.resources
        }
        for name, schema in schemas.items():
            self.writer.sync_table_schema(name, schema)

        status = self.get_status()
        access_token, refresh_token = self.store.get_tokens(self.id)
        restored = TokenPair(access_token=access_token, refresh_token=refresh_token)
        self.adapter.set_token_pair(restored)
        sync_context = dict(status.sync_context or {}) if status is not None else {}
        last_synced_at = ensure_utc(status.last_synced_at) if status is not None else None

        buffers: dict[str, list[dict[str, Any]]] = {}
        buffered = 0
        written = 0
        dropped = 0
        has_more = False

        try:
            stream = self.adapter.fetch(last_synced_at, sync_context, deadline)
            for item in stream:
                if isinstance(item, FetchDone):
                    has_more = item.has_more
                    break
                buffers.setdefault(item.resource_name, []).append(item.data)
                buffered += 1
                if buffered >= self.batch_size:
                    batch_written, batch_dropped = self._flush(buffers, schemas)
                    written += batch_written
                    dropped += batch_dropped
                    buffers, buffered = {}, 0
                    if on_progress is not None:
                        on_progress(written)

            if buffered:
                batch_written, batch_dropped = self._flush(buffers, schemas)
                written += batch_written
                dropped += batch_dropped
                if on_progress is not None:
                    on_progress(written)
        finally:
            self._persist_rotated_tokens(restored)

        self.update_status(sync_context=stream.sync_context, last_synced_at=utcnow())
        logger.info(
            "load: connector=%s wrote=%d dropped=%d has_more=%s",
            self.id,
            written,
            dropped,
            has_more,
        )
        return LoadResult(updated_record_count=written, is_finished=not has_more, dropped_record_count=dropped)

    def _flush(
        self,
        buffers: dict[str, list[dict[str, Any]]],
        schemas: dict[str, dict[str, Any]],
    ) -> tuple[int, int]:
        """Validate and write every buffered resource; returns (written, dropped)."""
        written = 0
        dropped = 0
        for resource_name, records in buffers.items():
            resource = self.config.resource(resource_name)
            if resource is None:
                logger.warning(
                    "load: connector=%s dropping %d record(s) for undeclared resource %s",
                    self.id,
                    len(records),
                    resource_name,
                )
                dropped += len(records)
                continue

            kept, missing_id = drop_records_without_id(records, resource.id_column)
            if missing_id:
                logger.warning(
                    "load: connector=%s dropped %d %s record(s) without %s",
                    self.id,
                    missing_id,
                    resource_name,
                    resource.id_column,
                )
                dropped += missing_id
            if not kept:
                continue

            schema = schemas[resource_name]
            validate_records(resource_name, schema, kept, resource.id_column)
            written += self.writer.sync_table_records(resource_name, schema, kept)
        return written, dropped

    def _persist_rotated_tokens(self, restored: TokenPair) -> None:
        current = self.adapter.get_token_pair()
        if current != restored:
            self.store.save_tokens(self.id, current.access_token, current.refresh_token)
            logger.info("load: connector=%s persisted refreshed tokens", self.id)
