"""Persistent status store for connectors, jobs and synced tables.

All connector-status writes go through ``upsert_status``.  Each call
re-reads the row under a row lock (where the dialect supports one), applies
only the given fields and commits.  Two writers touching different fields of
the same row therefore never clobber each other.  ``is_loading`` and
``active_job_id`` are always passed together by the scheduler, so they land
in the same commit.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from datasync.connectors.secrets import decrypt_token, encrypt_token
from datasync.core import crud
from datasync.core.models import ConnectorStatus, Job, TableStatus
from datasync.util.timestamps import utcnow

logger = logging.getLogger(__name__)

UNFINISHED_STATES = ("created", "running")

_STATUS_FIELDS = frozenset(
    column.name for column in ConnectorStatus.__table__.columns
) - {"connector_id", "created_at", "updated_at"}


class StatusStore:
    """Row-level access to ``connector_status``, ``sync_jobs`` and ``table_status``."""

    def __init__(self, db: Session) -> None:
        self.db = db

    # -- Connector status ------------------------------------------------------

    def get_status(self, connector_id: str) -> ConnectorStatus | None:
        return (
            self.db.query(ConnectorStatus)
            .filter(ConnectorStatus.connector_id == connector_id)
            .populate_existing()
            .first()
        )

    def upsert_status(self, connector_id: str, **fields: Any) -> ConnectorStatus:
        """Create or update the status row for *connector_id*.

        Only the given fields are written; everything else on the row keeps
        whatever value the last writer left there.
        """
        unknown = set(fields) - _STATUS_FIELDS
        if unknown:
            raise ValueError(f"Unknown connector status field(s): {', '.join(sorted(unknown))}")

        status = self._locked_status(connector_id)
        if status is None:
            status = ConnectorStatus(connector_id=connector_id, **fields)
            self.db.add(status)
            try:
                self.db.commit()
            except IntegrityError:
                # Another writer created the row first; apply our fields on top.
                self.db.rollback()
                status = self._locked_status(connector_id)
                if status is None:
                    raise
                self._apply(status, fields)
                self.db.commit()
        else:
            self._apply(status, fields)
            self.db.commit()

        self.db.refresh(status)
        return status

    def delete_status(self, connector_id: str) -> int:
        deleted = (
            self.db.query(ConnectorStatus)
            .filter(ConnectorStatus.connector_id == connector_id)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted

    def save_tokens(self, connector_id: str, access_token: str | None, refresh_token: str | None) -> None:
        self.upsert_status(
            connector_id,
            access_token=encrypt_token(access_token),
            refresh_token=encrypt_token(refresh_token),
        )
        logger.info("save_tokens: stored token pair for connector=%s", connector_id)

    def get_tokens(self, connector_id: str) -> tuple[str | None, str | None]:
        status = self.get_status(connector_id)
        if status is None:
            return None, None
        return decrypt_token(status.access_token), decrypt_token(status.refresh_token)

    def _locked_status(self, connector_id: str) -> ConnectorStatus | None:
        return (
            self.db.query(ConnectorStatus)
            .filter(ConnectorStatus.connector_id == connector_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    @staticmethod
    def _apply(status: ConnectorStatus, fields: dict[str, Any]) -> None:
        for key, value in fields.items():
            setattr(status, key, value)

    # -- Jobs ------------------------------------------------------------------

    def create_job(self, **fields: Any) -> Job:
        return crud.create(self.db, Job, **fields)

    def get_job(self, job_id: str) -> Job | None:
        return crud.get_by_id(self.db, Job, job_id, refresh=True)

    def save_job(self, job: Job) -> Job:
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)
        return job

    def find_unfinished_jobs(self, connector_id: str | None = None) -> list[Job]:
        filters: dict[str, Any] = {"state": UNFINISHED_STATES}
        if connector_id is not None:
            filters["connector_id"] = connector_id
        return crud.get_all(self.db, Job, filters=filters, order_by=Job.created_at)

    def jobs_by_connector(self, connector_id: str, limit: int | None = None, offset: int = 0) -> list[Job]:
        return crud.get_all(
            self.db,
            Job,
            filters={"connector_id": connector_id},
            order_by=Job.created_at.desc(),
            limit=limit,
            offset=offset,
        )

    # -- Table status ----------------------------------------------------------

    def touch_table_status(self, connector_id: str, table_name: str, synced_at: datetime | None = None) -> TableStatus:
        table_status = (
            self.db.query(TableStatus)
            .filter(TableStatus.connector_id == connector_id, TableStatus.table_name == table_name)
            .first()
        )
        if table_status is None:
            table_status = TableStatus(connector_id=connector_id, table_name=table_name)
            self.db.add(table_status)
        table_status.last_synced_at = synced_at or utcnow()
        self.db.commit()
        return table_status

    def get_table_status(self, connector_id: str, table_name: str) -> TableStatus | None:
        return (
            self.db.query(TableStatus)
            .filter(TableStatus.connector_id == connector_id, TableStatus.table_name == table_name)
            .first()
        )

    def delete_table_status(self, connector_id: str) -> int:
        deleted = (
            self.db.query(TableStatus)
            .filter(TableStatus.connector_id == connector_id)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted
