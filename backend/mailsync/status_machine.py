"""Application status state machine.

Allowed edges are listed explicitly in _EDGES:

    Applied   -> Screening, Interview, Rejected, On Hold
    Screening -> Interview, Rejected, On Hold
    Interview -> Offer, Rejected, On Hold
    Offer     -> Hired, Rejected, On Hold
    On Hold   -> Applied, Screening, Interview, Rejected

Offer is only reachable from Interview and Hired only from Offer. Hired and Rejected
are terminal.
"""
from enum import Enum
from typing import Optional


class ApplicationStatus(str, Enum):
    APPLIED = "Applied"
    SCREENING = "Screening"
    INTERVIEW = "Interview"
    OFFER = "Offer"
    HIRED = "Hired"
    REJECTED = "Rejected"
    ON_HOLD = "On Hold"


TERMINAL_STATUSES = frozenset({ApplicationStatus.HIRED, ApplicationStatus.REJECTED})
OPEN_STATUSES = frozenset(s for s in ApplicationStatus if s not in TERMINAL_STATUSES)

_EDGES = {
    ApplicationStatus.APPLIED: frozenset({
        ApplicationStatus.SCREENING,
        ApplicationStatus.INTERVIEW,
        ApplicationStatus.REJECTED,
        ApplicationStatus.ON_HOLD,
    }),
    ApplicationStatus.SCREENING: frozenset({
        ApplicationStatus.INTERVIEW,
        ApplicationStatus.REJECTED,
        ApplicationStatus.ON_HOLD,
    }),
    ApplicationStatus.INTERVIEW: frozenset({
        ApplicationStatus.OFFER,
        ApplicationStatus.REJECTED,
        ApplicationStatus.ON_HOLD,
    }),
    ApplicationStatus.OFFER: frozenset({
        ApplicationStatus.HIRED,
        ApplicationStatus.REJECTED,
        ApplicationStatus.ON_HOLD,
    }),
    ApplicationStatus.ON_HOLD: frozenset({
        ApplicationStatus.APPLIED,
        ApplicationStatus.SCREENING,
        ApplicationStatus.INTERVIEW,
        ApplicationStatus.REJECTED,
    }),
    ApplicationStatus.HIRED: frozenset(),
    ApplicationStatus.REJECTED: frozenset(),
}


_ALIASES = {
    "applied": ApplicationStatus.APPLIED,
    "application received": ApplicationStatus.APPLIED,
    "application_received": ApplicationStatus.APPLIED,
    "screening": ApplicationStatus.SCREENING,
    "phone screen": ApplicationStatus.SCREENING,
    "screening_request": ApplicationStatus.SCREENING,
    "interview": ApplicationStatus.INTERVIEW,
    "interviewing": ApplicationStatus.INTERVIEW,
    "interview_request": ApplicationStatus.INTERVIEW,
    "assessment": ApplicationStatus.INTERVIEW,
    "offer": ApplicationStatus.OFFER,
    "hired": ApplicationStatus.HIRED,
    "accepted": ApplicationStatus.HIRED,
    "rejected": ApplicationStatus.REJECTED,
    "rejection": ApplicationStatus.REJECTED,
    "on hold": ApplicationStatus.ON_HOLD,
    "on_hold": ApplicationStatus.ON_HOLD,
    "onhold": ApplicationStatus.ON_HOLD,
    "paused": ApplicationStatus.ON_HOLD,
}


def parse_status(value) -> Optional[ApplicationStatus]:
    """Map a loosely formatted status string onto ApplicationStatus. None if unknown."""
    if value is None:
        return None
    if isinstance(value, ApplicationStatus):
        return value
    raw = str(value).strip()
    if not raw:
        return None
    try:
        return ApplicationStatus(raw)
    except ValueError:
        pass
    return _ALIASES.get(raw.lower().replace("-", " "))


def is_terminal(status: ApplicationStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: ApplicationStatus, proposed: ApplicationStatus) -> bool:
    """True if current -> proposed is an allowed edge. Same-status is not an edge."""
    return proposed in _EDGES.get(current, frozenset())
