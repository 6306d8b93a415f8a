"""SQLAlchemy ORM models for the synchronization engine.

Contains: ConnectorConfigEntry, ConnectorStatus, Job, TableStatus.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)

from datasync.core.db import Base


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def _new_id() -> str:
    """Generate a new UUID4 string."""
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# ConnectorConfigEntry
# ---------------------------------------------------------------------------

class ConnectorConfigEntry(Base):
    """A user-defined connector; bundled connectors live only in code."""

    __tablename__ = "connector_configs"

    id = Column(String(255), primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    adapter = Column(String(100), nullable=False)
    # JSON, encrypted when TOKEN_ENCRYPTION_KEY is set
    adapter_config = Column(Text, nullable=True)
    # [{"name", "schema", "id_column"}, ...]
    resources = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


# ---------------------------------------------------------------------------
# ConnectorStatus
# ---------------------------------------------------------------------------

class ConnectorStatus(Base):
    __tablename__ = "connector_status"

    connector_id = Column(String(255), primary_key=True)
    is_connected = Column(Boolean, default=False, nullable=False)
    is_loading = Column(Boolean, default=False, nullable=False)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    last_connected_at = Column(DateTime(timezone=True), nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    # Provider-defined continuation state; opaque to everything but the adapter
    sync_context = Column(JSON, nullable=True)
    active_job_id = Column(String(36), nullable=True)
    last_job_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


# ---------------------------------------------------------------------------
# Job
# ---------------------------------------------------------------------------

class Job(Base):
    __tablename__ = "sync_jobs"

    id = Column(String(36), primary_key=True, default=_new_id)
    connector_id = Column(String(255), nullable=False)
    type = Column(String(20), nullable=False, default="load")
    state = Column(String(20), nullable=False, default="created")  # created, running, finished
    result = Column(String(20), nullable=True)  # success, error, canceled
    params = Column(JSON, nullable=True)
    sync_context = Column(JSON, nullable=True)
    progress = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_sync_jobs_connector_state", "connector_id", "state"),
    )

    @property
    def updated_record_count(self) -> int:
        return int((self.progress or {}).get("updated_record_count", 0))


# ---------------------------------------------------------------------------
# TableStatus
# ---------------------------------------------------------------------------

class TableStatus(Base):
    __tablename__ = "table_status"

    id = Column(Integer, primary_key=True, autoincrement=True)
    connector_id = Column(String(255), nullable=False)
    table_name = Column(String(255), nullable=False)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("connector_id", "table_name", name="uq_table_status_connector_table"),
    )
