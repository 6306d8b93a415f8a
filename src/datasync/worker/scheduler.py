"""
APScheduler setup for the datasync worker.

Runs two interval jobs against the shared database:

* a poller that picks up ``created`` load jobs and drains each one, calling
  ``JobScheduler.run`` until ``next_job_ids`` comes back empty;
* a cleanup sweep that cancels jobs whose runner died mid-execution.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from datasync.connectors.catalog import Catalog, default_catalog
from datasync.core.db import SessionLocal
from datasync.core.models import Job
from datasync.errors import DataSyncError
from datasync.jobs.scheduler import JobScheduler, JobState
from datasync.settings import settings

logger = logging.getLogger(__name__)

# Module-level scheduler instance
_scheduler: BackgroundScheduler | None = None

# Upper bound on bounded runs per job per poll, so one endless source
# cannot starve the others
MAX_RUNS_PER_POLL = 100


def _job_scheduler(db: Session, catalog: Catalog) -> JobScheduler:
    return JobScheduler(db, lambda connector_id: catalog.get_connector(connector_id, db))


# ---------------------------------------------------------------------------
# Job draining
# ---------------------------------------------------------------------------

def drain_job(scheduler: JobScheduler, job_id: str, max_runs: int = MAX_RUNS_PER_POLL) -> int:
    """Run *job_id* repeatedly until it finishes; returns the number of runs."""
    pending = [job_id]
    runs = 0
    while pending and runs < max_runs:
        result = scheduler.run(pending.pop(0))
        runs += 1
        pending.extend(result.next_job_ids)

    if pending:
        logger.warning("drain_job: job=%s still has more data after %d run(s)", job_id, runs)
    return runs


# ---------------------------------------------------------------------------
# Pending-Job Poller
# ---------------------------------------------------------------------------

def poll_pending_jobs(
    session_factory: Callable[[], Session] = SessionLocal,
    catalog: Catalog | None = None,
) -> int:
    """Drain every ``created`` job; returns how many jobs were picked up."""
    catalog = catalog or default_catalog()
    db: Session = session_factory()
    try:
        pending_ids: list[str] = [
            job_id
            for (job_id,) in db.query(Job.id)
            .filter(Job.state == JobState.CREATED)
            .order_by(Job.created_at)
            .all()
        ]

        if not pending_ids:
            return 0

        logger.info("poll_pending_jobs: found %d pending job(s)", len(pending_ids))
        scheduler = _job_scheduler(db, catalog)

        for job_id in pending_ids:
            try:
                logger.info("poll_pending_jobs: executing job=%s", job_id)
                drain_job(scheduler, job_id)
            except DataSyncError as exc:
                # Superseded or finished since the query ran
                logger.info("poll_pending_jobs: skipping job=%s: %s", job_id, exc)
            except Exception as exc:
                logger.error(
                    "poll_pending_jobs: error executing job=%s: %s",
                    job_id,
                    exc,
                    exc_info=True,
                )
                db.rollback()

        return len(pending_ids)

    finally:
        db.close()


# ---------------------------------------------------------------------------
# Stale-Job Sweep
# ---------------------------------------------------------------------------

def cleanup_stale_jobs(
    session_factory: Callable[[], Session] = SessionLocal,
    catalog: Catalog | None = None,
) -> None:
    catalog = catalog or default_catalog()
    db: Session = session_factory()
    try:
        result = _job_scheduler(db, catalog).cleanup()
        if result.canceled_count:
            logger.info(
                "cleanup_stale_jobs: canceled %d of %d unfinished job(s)",
                result.canceled_count,
                result.checked_count,
            )
    except Exception as exc:
        logger.error("cleanup_stale_jobs: sweep failed: %s", exc, exc_info=True)
        db.rollback()
    finally:
        db.close()


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

def start_scheduler() -> BackgroundScheduler:
    """Create, configure, and start the APScheduler BackgroundScheduler.

    Returns the running scheduler instance.
    """
    global _scheduler

    _scheduler = BackgroundScheduler(
        job_defaults={
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": 60,
        },
        timezone="UTC",
    )

    _scheduler.add_job(
        poll_pending_jobs,
        trigger=IntervalTrigger(seconds=settings.JOB_POLL_INTERVAL_SECONDS),
        id="poll_pending_jobs",
        name="Poll for pending jobs",
        replace_existing=True,
    )

    _scheduler.add_job(
        cleanup_stale_jobs,
        trigger=IntervalTrigger(seconds=max(1, int(settings.MAX_JOB_DURATION_SECONDS))),
        id="cleanup_stale_jobs",
        name="Cancel stale jobs",
        replace_existing=True,
    )

    _scheduler.start()
    logger.info("Scheduler started with %d job(s)", len(_scheduler.get_jobs()))

    return _scheduler
