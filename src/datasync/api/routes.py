"""Adapter, connector and job endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from datasync.api.schemas import (
    AdapterOut,
    CleanupOut,
    ConnectOut,
    ConnectorCreate,
    ConnectorOut,
    ConnectorStatusOut,
    ConnectRequest,
    ContinueConnectRequest,
    JobOut,
    LoadRequest,
    ResourceOut,
    RunJobOut,
)
from datasync.connectors.catalog import Catalog, ConnectorConfig, default_catalog
from datasync.connectors.connector import DataConnector
from datasync.core.db import get_db
from datasync.core.models import Job
from datasync.errors import (
    AuthExchangeError,
    BundledConnectorError,
    ConnectorConflictError,
    ConnectorNotFoundError,
    InvalidConnectorConfigError,
    JobAlreadyFinishedError,
    JobNotFoundError,
)
from datasync.jobs.scheduler import JobScheduler
from datasync.sources.registry import available_adapters
from datasync.status.store import StatusStore

connectors_router = APIRouter(prefix="/api/v1/connectors", tags=["connectors"])
jobs_router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"])
adapters_router = APIRouter(prefix="/api/v1/adapters", tags=["adapters"])


# -- Dependencies -------------------------------------------------------------

def get_catalog() -> Catalog:
    """The process-wide connector catalog (overridable in tests)."""
    return default_catalog()


def get_scheduler(
    db: Session = Depends(get_db),
    catalog: Catalog = Depends(get_catalog),
) -> JobScheduler:
    return JobScheduler(db, lambda connector_id: catalog.get_connector(connector_id, db))


def _config_or_404(catalog: Catalog, connector_id: str, db: Session) -> ConnectorConfig:
    try:
        return catalog.get_config(connector_id, db)
    except ConnectorNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Connector '{connector_id}' not found",
        )


def _connector_or_404(catalog: Catalog, connector_id: str, db: Session) -> DataConnector:
    _config_or_404(catalog, connector_id, db)
    return catalog.get_connector(connector_id, db)


def _job_or_404(scheduler: JobScheduler, job_id: str) -> Job:
    job = scheduler.get(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )
    return job


def _connector_out(config: ConnectorConfig, store: StatusStore) -> ConnectorOut:
    current = store.get_status(config.id)
    return ConnectorOut(
        id=config.id,
        name=config.name,
        description=config.description,
        resources=[ResourceOut.model_validate(resource) for resource in config.resources],
        is_removable=config.is_removable,
        status=ConnectorStatusOut.model_validate(current) if current is not None else None,
    )


# -- Connectors ---------------------------------------------------------------

@connectors_router.get("/", response_model=list[ConnectorOut])
def list_connectors(
    db: Session = Depends(get_db),
    catalog: Catalog = Depends(get_catalog),
) -> list[ConnectorOut]:
    """List every catalog connector with its current status."""
    store = StatusStore(db)
    return [_connector_out(config, store) for config in catalog.list_configs(db)]


@connectors_router.post("/", response_model=ConnectorOut, status_code=status.HTTP_201_CREATED)
def create_connector(
    body: ConnectorCreate,
    db: Session = Depends(get_db),
    catalog: Catalog = Depends(get_catalog),
) -> ConnectorOut:
    """Register a user-defined connector.

    Resources are derived from the adapter unless given explicitly; SQL
    sources are reflected table by table.
    """
    resources = None
    if body.resources:
        resources = [
            {"name": resource.name, "schema": resource.schema_, "id_column": resource.id_column}
            for resource in body.resources
        ]
    try:
        config = catalog.create_config(
            db,
            name=body.name,
            adapter=body.adapter,
            adapter_config=body.config,
            connector_id=body.id,
            description=body.description,
            resources=resources,
        )
    except ConnectorConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except InvalidConnectorConfigError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return _connector_out(config, StatusStore(db))


@connectors_router.get("/{connector_id}", response_model=ConnectorOut)
def get_connector(
    connector_id: str,
    db: Session = Depends(get_db),
    catalog: Catalog = Depends(get_catalog),
) -> ConnectorOut:
    return _connector_out(_config_or_404(catalog, connector_id, db), StatusStore(db))


@connectors_router.delete("/{connector_id}", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
def delete_connector(
    connector_id: str,
    db: Session = Depends(get_db),
    catalog: Catalog = Depends(get_catalog),
) -> Response:
    """Disconnect a user-defined connector, drop its data and remove it."""
    try:
        catalog.delete_config(db, connector_id)
    except BundledConnectorError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    except ConnectorNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Connector '{connector_id}' not found",
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@connectors_router.post("/{connector_id}/connect", response_model=ConnectOut)
def connect(
    connector_id: str,
    body: ConnectRequest,
    db: Session = Depends(get_db),
    catalog: Catalog = Depends(get_catalog),
) -> ConnectOut:
    """Start the authorization handshake.

    Returns ``success=true`` when the connector is (now) connected, otherwise
    the provider URL the user has to visit.
    """
    connector = _connector_or_404(catalog, connector_id, db)
    try:
        result = connector.connect(body.redirect_to)
    except AuthExchangeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    finally:
        connector.close()
    return ConnectOut(success=result.success, auth_url=result.auth_url)


@connectors_router.post("/{connector_id}/connect/continue", response_model=ConnectOut)
def continue_connect(
    connector_id: str,
    body: ContinueConnectRequest,
    db: Session = Depends(get_db),
    catalog: Catalog = Depends(get_catalog),
) -> ConnectOut:
    """Finish the handshake with the authorization code from the provider."""
    connector = _connector_or_404(catalog, connector_id, db)
    try:
        result = connector.continue_to_connect(body.auth_code, body.redirect_to)
    except AuthExchangeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    finally:
        connector.close()
    return ConnectOut(success=result.success)


@connectors_router.post("/{connector_id}/load", response_model=JobOut, status_code=status.HTTP_201_CREATED)
def load(
    connector_id: str,
    body: LoadRequest | None = None,
    db: Session = Depends(get_db),
    catalog: Catalog = Depends(get_catalog),
    scheduler: JobScheduler = Depends(get_scheduler),
) -> Job:
    """Create a load job, superseding any unfinished one for this connector."""
    _config_or_404(catalog, connector_id, db)
    job_id = scheduler.create(connector_id, params=body.params if body else None)
    return _job_or_404(scheduler, job_id)


@connectors_router.post("/{connector_id}/disconnect", status_code=status.HTTP_204_NO_CONTENT)
def disconnect(
    connector_id: str,
    db: Session = Depends(get_db),
    catalog: Catalog = Depends(get_catalog),
) -> Response:
    """Drop the connector's tables and forget its status.  Not reversible."""
    connector = _connector_or_404(catalog, connector_id, db)
    connector.disconnect()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@connectors_router.get("/{connector_id}/jobs", response_model=list[JobOut])
def list_connector_jobs(
    connector_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    catalog: Catalog = Depends(get_catalog),
    scheduler: JobScheduler = Depends(get_scheduler),
) -> list[Job]:
    _config_or_404(catalog, connector_id, db)
    return scheduler.get_by_connector(connector_id, limit=limit, offset=offset)


# -- Adapters -----------------------------------------------------------------

@adapters_router.get("/", response_model=list[AdapterOut])
def list_adapters() -> list[dict]:
    """Source adapters a user-defined connector can be built on."""
    return available_adapters()


# -- Jobs ---------------------------------------------------------------------

@jobs_router.post("/cleanup", response_model=CleanupOut)
def cleanup_jobs(scheduler: JobScheduler = Depends(get_scheduler)) -> CleanupOut:
    """Cancel jobs that stopped making progress."""
    result = scheduler.cleanup()
    return CleanupOut(checked_count=result.checked_count, canceled_count=result.canceled_count)


@jobs_router.get("/{job_id}", response_model=JobOut)
def get_job(job_id: str, scheduler: JobScheduler = Depends(get_scheduler)) -> Job:
    return _job_or_404(scheduler, job_id)


@jobs_router.post("/{job_id}/run", response_model=RunJobOut)
def run_job(job_id: str, scheduler: JobScheduler = Depends(get_scheduler)) -> RunJobOut:
    """Run one bounded slice of the job.

    Re-post for every id in ``next_job_ids`` until the list comes back empty.
    """
    try:
        result = scheduler.run(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    except JobAlreadyFinishedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return RunJobOut(job=JobOut.model_validate(result.job), next_job_ids=result.next_job_ids)


@jobs_router.post("/{job_id}/cancel", response_model=JobOut)
def cancel_job(job_id: str, scheduler: JobScheduler = Depends(get_scheduler)) -> Job:
    try:
        return scheduler.cancel(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    except JobAlreadyFinishedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
