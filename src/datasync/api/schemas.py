"""Pydantic v2 schemas for the adapter, connector and job endpoints."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ResourceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    id_column: str
    schema_: dict[str, Any] = Field(alias="schema", serialization_alias="schema")


class ConnectorStatusOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    connector_id: str
    is_connected: bool
    is_loading: bool
    last_connected_at: datetime | None
    last_synced_at: datetime | None
    last_error: str | None
    active_job_id: str | None
    last_job_id: str | None
    updated_at: datetime


class ConnectorOut(BaseModel):
    id: str
    name: str
    description: str
    resources: list[ResourceOut]
    is_removable: bool = False
    status: ConnectorStatusOut | None = None


class ResourceIn(BaseModel):
    name: str = Field(min_length=1)
    id_column: str = "id"
    schema_: dict[str, Any] = Field(alias="schema")


class ConnectorCreate(BaseModel):
    """A user-defined connector.  ``id`` is generated from ``name`` when omitted."""

    id: str | None = Field(default=None, pattern=r"^[A-Za-z0-9_-]+$", max_length=100)
    name: str = Field(min_length=1, max_length=255)
    description: str = ""
    adapter: str
    config: dict[str, Any] = Field(default_factory=dict)
    resources: list[ResourceIn] | None = None


class AdapterOut(BaseModel):
    name: str
    description: str
    required_config: list[str]
    optional_config: list[str]
    example_config: dict[str, Any]


class ConnectRequest(BaseModel):
    redirect_to: str


class ContinueConnectRequest(BaseModel):
    auth_code: str
    redirect_to: str


class ConnectOut(BaseModel):
    success: bool
    auth_url: str | None = None


class LoadRequest(BaseModel):
    params: dict[str, Any] = Field(default_factory=dict)


class JobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    connector_id: str
    type: str
    state: str
    result: str | None
    params: dict[str, Any] | None
    updated_record_count: int
    error: str | None
    started_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime


class RunJobOut(BaseModel):
    job: JobOut
    next_job_ids: list[str]


class CleanupOut(BaseModel):
    checked_count: int
    canceled_count: int
