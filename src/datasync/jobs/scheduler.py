"""Job scheduler: resumable, time-boxed load jobs.

A job moves ``created -> running -> finished``; ``result`` is set exactly
when it finishes (``success``, ``error`` or ``canceled``).  Each ``run`` call
is one bounded execution of ``DataConnector.load``.  If the load reports more
work the job stays ``running`` and its id comes back in ``next_job_ids`` for
the caller to run again.

Every path that ends a job goes through ``_stop_job``, which clears the
connector's ``is_loading`` flag and ``active_job_id`` in one write.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from sqlalchemy.orm import Session

from datasync.connectors.connector import DataConnector
from datasync.core.models import Job
from datasync.errors import JobAlreadyFinishedError, JobNotFoundError, StaleJobError
from datasync.settings import settings
from datasync.status.store import StatusStore
from datasync.util.deadline import Deadline
from datasync.util.timestamps import ensure_utc, utcnow

logger = logging.getLogger(__name__)


class JobState:
    CREATED = "created"
    RUNNING = "running"
    FINISHED = "finished"


class JobResult:
    SUCCESS = "success"
    ERROR = "error"
    CANCELED = "canceled"


JOB_TYPE_LOAD = "load"

GetConnector = Callable[[str], DataConnector]


@dataclass
class RunJobResult:
    job: Job
    next_job_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class CleanupResult:
    checked_count: int
    canceled_count: int


class JobScheduler:
    """Creates, runs, cancels and reclaims load jobs.

    ``get_connector`` maps a connector id to a ``DataConnector`` bound to the
    same session (normally ``lambda cid: catalog.get_connector(cid, db)``).
    """

    def __init__(
        self,
        db: Session,
        get_connector: GetConnector,
        max_job_duration_seconds: float | None = None,
        stale_multiplier: float | None = None,
    ) -> None:
        self.db = db
        self.store = StatusStore(db)
        self.get_connector = get_connector
        self.max_job_duration_seconds = (
            max_job_duration_seconds
            if max_job_duration_seconds is not None
            else settings.MAX_JOB_DURATION_SECONDS
        )
        self.stale_multiplier = (
            stale_multiplier if stale_multiplier is not None else settings.STALE_JOB_MULTIPLIER
        )

    @property
    def stale_threshold(self) -> timedelta:
        return timedelta(seconds=self.max_job_duration_seconds * self.stale_multiplier)

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------

    def get(self, job_id: str) -> Job | None:
        return self.store.get_job(job_id)

    def get_by_connector(self, connector_id: str, limit: int | None = None, offset: int = 0) -> list[Job]:
        """Jobs for *connector_id*, newest first."""
        return self.store.jobs_by_connector(connector_id, limit=limit, offset=offset)

    # -----------------------------------------------------------------------
    # Create
    # -----------------------------------------------------------------------

    def create(
        self,
        connector_id: str,
        params: dict[str, Any] | None = None,
        type: str = JOB_TYPE_LOAD,
    ) -> str:
        """Create a job, canceling any unfinished job of the same connector."""
        for existing in self.store.find_unfinished_jobs(connector_id):
            logger.info(
                "create: superseding job=%s (state=%s) for connector=%s",
                existing.id,
                existing.state,
                connector_id,
            )
            self._stop_job(existing.id, JobResult.CANCELED)

        status = self.store.get_status(connector_id)
        job = self.store.create_job(
            connector_id=connector_id,
            type=type,
            state=JobState.CREATED,
            params=dict(params or {}),
            progress={"updated_record_count": 0},
            sync_context=dict(status.sync_context or {}) if status is not None else {},
        )
        self.store.upsert_status(connector_id, is_loading=True, active_job_id=job.id)

        logger.info("create: job=%s created for connector=%s", job.id, connector_id)
        return job.id

    # -----------------------------------------------------------------------
    # Run
    # -----------------------------------------------------------------------

    def run(self, job_id: str, deadline: Deadline | None = None) -> RunJobResult:
        """Execute one bounded run of *job_id*.

        Raises ``JobNotFoundError`` / ``JobAlreadyFinishedError``.  Any
        failure while loading ends the job with ``result=error`` and is
        not raised.
        """
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        if job.state == JobState.FINISHED:
            raise JobAlreadyFinishedError(f"Job {job_id} is already finished ({job.result})")

        if deadline is None:
            deadline = Deadline.after(self.max_job_duration_seconds)

        try:
            return self._execute(job, deadline)
        except Exception as exc:
            logger.error("run: job=%s failed: %s", job_id, exc, exc_info=True)
            self.db.rollback()
            stopped = self._stop_job(job_id, JobResult.ERROR, error=str(exc))
            return RunJobResult(job=stopped, next_job_ids=[])

    def _execute(self, job: Job, deadline: Deadline) -> RunJobResult:
        if job.started_at is None:
            job.started_at = utcnow()
        job.state = JobState.RUNNING
        baseline = job.updated_record_count
        status = self.store.get_status(job.connector_id)
        job.sync_context = dict(status.sync_context or {}) if status is not None else {}
        self.store.save_job(job)
        logger.info("run: job=%s running (baseline=%d, %r)", job.id, baseline, deadline)

        def on_progress(written: int) -> None:
            job.progress = {"updated_record_count": baseline + written}
            self.store.save_job(job)

        connector = self.get_connector(job.connector_id)
        try:
            result = connector.load(deadline=deadline, on_progress=on_progress)
        finally:
            connector.close()

        job = self.store.get_job(job.id)
        if job.state == JobState.FINISHED:
            # Canceled or reclaimed while the load was in flight
            logger.warning("run: job=%s finished as %s during the run; discarding result", job.id, job.result)
            return RunJobResult(job=job, next_job_ids=[])

        job.progress = {"updated_record_count": baseline + result.updated_record_count}
        status = self.store.get_status(job.connector_id)
        job.sync_context = dict(status.sync_context or {}) if status is not None else {}

        if not result.is_finished:
            self.store.save_job(job)
            logger.info(
                "run: job=%s has more data (updated_record_count=%d)",
                job.id,
                job.updated_record_count,
            )
            return RunJobResult(job=job, next_job_ids=[job.id])

        job.state = JobState.FINISHED
        job.result = JobResult.SUCCESS
        job.error = None
        job.finished_at = utcnow()
        self.store.save_job(job)
        self._release_connector(job)
        logger.info(
            "run: job=%s finished successfully (updated_record_count=%d)",
            job.id,
            job.updated_record_count,
        )
        return RunJobResult(job=job, next_job_ids=[])

    # -----------------------------------------------------------------------
    # Stop paths
    # -----------------------------------------------------------------------

    def cancel(self, job_id: str) -> Job:
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        if job.state == JobState.FINISHED:
            raise JobAlreadyFinishedError(f"Job {job_id} is already finished ({job.result})")
        logger.info("cancel: job=%s canceled", job_id)
        return self._stop_job(job_id, JobResult.CANCELED)

    def cleanup(self) -> CleanupResult:
        """Cancel unfinished jobs not updated within the stale threshold."""
        threshold = self.stale_threshold
        cutoff = utcnow() - threshold
        jobs = self.store.find_unfinished_jobs()
        canceled = 0

        for job in jobs:
            updated_at = ensure_utc(job.updated_at)
            if updated_at is not None and updated_at >= cutoff:
                continue
            reason = StaleJobError(
                f"Job went stale: no progress since {updated_at.isoformat() if updated_at else 'never'} "
                f"(threshold {threshold.total_seconds():.0f}s)"
            )
            logger.warning("cleanup: canceling job=%s connector=%s: %s", job.id, job.connector_id, reason)
            self._stop_job(job.id, JobResult.CANCELED, error=str(reason))
            canceled += 1

        logger.info("cleanup: checked=%d canceled=%d", len(jobs), canceled)
        return CleanupResult(checked_count=len(jobs), canceled_count=canceled)

    def _stop_job(self, job_id: str, result: str, error: str | None = None) -> Job:
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        if job.state == JobState.FINISHED:
            return job

        job.state = JobState.FINISHED
        job.result = result
        job.error = error
        job.finished_at = utcnow()
        self.store.save_job(job)
        self._release_connector(job)
        return job

    def _release_connector(self, job: Job) -> None:
        status = self.store.get_status(job.connector_id)
        if status is not None and status.active_job_id not in (None, job.id):
            # A newer job owns the connector now
            logger.info(
                "release: connector=%s now belongs to job=%s; leaving flags for job=%s",
                job.connector_id,
                status.active_job_id,
                job.id,
            )
            return
        self.store.upsert_status(
            job.connector_id,
            is_loading=False,
            active_job_id=None,
            last_job_id=job.id,
            last_error=job.error if job.result == JobResult.ERROR else None,
        )
