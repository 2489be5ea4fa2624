"""Failure taxonomy for the status sync engine."""
from typing import Optional


class SyncError(Exception):
    """Base class for all sync engine errors."""
    pass


class FetchError(SyncError):
    """Mailbox unreachable or a page fetch failed. Aborts the current run."""
    pass


class RateLimited(SyncError):
    """Provider throttled us. Fetching stops for the remainder of the run."""

    def __init__(self, message: str = "Mailbox provider rate limit reached", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ClassificationError(SyncError):
    """Classifier unreachable or returned a malformed response."""
    pass


class InvalidTransition(SyncError):
    """Proposed status is not an allowed edge from the current status."""

    def __init__(self, application_id: int, current_status: str, proposed_status: str):
        super().__init__(
            f"Invalid status transition for application {application_id}: "
            f"{current_status} -> {proposed_status}"
        )
        self.application_id = application_id
        self.current_status = current_status
        self.proposed_status = proposed_status


class StoreConflict(SyncError):
    """The store's conditional update matched no row (concurrent change or missing record)."""

    def __init__(self, application_id: int, message: Optional[str] = None):
        super().__init__(message or f"Store rejected update for application {application_id}")
        self.application_id = application_id
