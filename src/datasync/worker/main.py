"""
datasync worker entry point.

Starts the APScheduler-based worker process and blocks until a shutdown
signal (SIGINT / SIGTERM) is received.

Usage::

    datasync-worker
"""

from __future__ import annotations

import logging
import signal
import time
from typing import Any

from datasync.settings import settings
from datasync.util.logging import setup_logging

logger = logging.getLogger(__name__)

# Graceful-shutdown flag
_shutdown_requested = False


def _handle_signal(signum: int, frame: Any) -> None:
    """Signal handler for SIGINT / SIGTERM -- request graceful shutdown."""
    global _shutdown_requested
    sig_name = signal.Signals(signum).name
    logger.info("Received %s -- shutting down gracefully...", sig_name)
    _shutdown_requested = True


def main() -> None:
    """Entry point for the ``datasync-worker`` console script."""
    setup_logging(settings.LOG_LEVEL)
    logger.info("datasync worker starting...")

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    # Import here so logging is configured first
    from datasync.core import models  # noqa: F401
    from datasync.core.db import Base, engine
    from datasync.worker.scheduler import start_scheduler

    Base.metadata.create_all(bind=engine)
    scheduler = start_scheduler()

    # Block until shutdown is requested
    try:
        while not _shutdown_requested:
            time.sleep(1)
    except (KeyboardInterrupt, SystemExit):
        logger.info("Interrupted -- shutting down...")
    finally:
        scheduler.shutdown(wait=True)
        logger.info("datasync worker stopped.")


if __name__ == "__main__":
    main()
