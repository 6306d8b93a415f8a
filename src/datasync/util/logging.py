"""Logging setup for the datasync API and worker processes.

Both entry points call ``setup_logging(settings.LOG_LEVEL)`` before doing
anything else.  Modules log through ``logging.getLogger(__name__)`` with
messages prefixed by the operation, e.g. ``"run: job=%s ..."``.
"""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that are chatty at INFO
QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx", "httpcore", "apscheduler")


def setup_logging(level: int | str = logging.INFO) -> None:
    """Configure the root logger for the process.

    Parameters
    ----------
    level:
        Logging level (default ``INFO``).  Accepts both integer constants
        (``logging.DEBUG``) and names as found in ``LOG_LEVEL`` (``"debug"``).
    """
    if isinstance(level, str):
        level = level.upper()

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        stream=sys.stdout,
        force=True,
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
