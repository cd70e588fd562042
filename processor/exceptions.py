"""Exception taxonomy for the calendar sync pipeline."""
from typing import Optional


class CalendarSyncError(Exception):
    """Base class for every error raised by the sync pipeline."""


class ValidationError(CalendarSyncError):
    """Caller supplied a malformed team id or feed URL, or the team is unknown."""


class FetchError(CalendarSyncError):
    """The feed could not be downloaded."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class InvalidFeedError(CalendarSyncError):
    """The downloaded body is empty or is not an iCalendar document."""


class ParseError(CalendarSyncError):
    """The iCalendar text could not be tokenized."""


class PersistenceError(CalendarSyncError):
    """A read or write against the training store failed."""


class SyncTimeoutError(CalendarSyncError):
    """The per-team wall-clock budget ran out."""


class SyncInProgressError(CalendarSyncError):
    """Another invocation currently holds the team's sync lock."""
