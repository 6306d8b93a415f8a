"""Exception hierarchy for the synchronization engine.

Errors raised inside a job run are caught by the scheduler and recorded on
the job.  Errors from ``connect`` / ``continue_to_connect`` / ``disconnect``
propagate to the caller unchanged.
"""

from __future__ import annotations


class DataSyncError(Exception):
    """Base class for all engine errors."""


class AuthExchangeError(DataSyncError):
    """The provider rejected the authorization code or credentials."""


class ValidationError(DataSyncError):
    """A batch of records failed validation against its resource schema."""

    def __init__(self, message: str, resource_name: str | None = None) -> None:
        super().__init__(message)
        self.resource_name = resource_name


class ProviderFetchError(DataSyncError):
    """A network or API failure while fetching from a provider."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StaleJobError(DataSyncError):
    """A job exceeded the stale threshold without reaching a terminal state.

    Only used internally to describe why the cleanup sweep canceled a job;
    it is never raised out of the scheduler.
    """


class ConnectorNotFoundError(DataSyncError):
    """No catalog entry exists for the requested connector id."""


class ConnectorConflictError(DataSyncError):
    """A connector with the requested id already exists."""


class BundledConnectorError(DataSyncError):
    """Bundled connectors are defined in code and cannot be deleted."""


class InvalidConnectorConfigError(DataSyncError):
    """A user-defined connector names an unknown adapter or an unusable config."""


class JobNotFoundError(DataSyncError):
    """No job exists with the requested id."""


class JobAlreadyFinishedError(DataSyncError):
    """``run`` was called on a job that already reached ``finished``."""
