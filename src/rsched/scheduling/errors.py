"""Scheduler error taxonomy."""

from __future__ import annotations

from typing import Any


class SchedulerError(Exception):
    """Base class for expected scheduler failures."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class InvalidSchedule(SchedulerError, ValueError):
    """Recurrence parameters are malformed or out of range."""


class PayloadMissing(SchedulerError):
    """Neither the collection nor the search of a due schedule resolves."""


class SubmissionFailure(SchedulerError):
    """The job sink rejected the submission or timed out."""


class PersistenceError(SchedulerError):
    """The store could not be read or written."""
