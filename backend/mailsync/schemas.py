"""Pydantic schemas for the sync engine and its API."""
from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field
from typing import Optional, List, Tuple

from .status_machine import ApplicationStatus


# =============================================================================
# Mailbox and classification
# =============================================================================

class MailMessage(BaseModel):
    """Read-only snapshot of one mailbox message. received_at is naive UTC."""
    id: str
    received_at: datetime
    sender: str = ""
    subject: str = ""
    body_text: str = ""

    class Config:
        frozen = True

    @property
    def sort_key(self) -> Tuple[datetime, str]:
        return (self.received_at, self.id)


class ExtractedDetails(BaseModel):
    """Supplementary details pulled from a message, appended to application notes."""
    interview_date: Optional[str] = None
    rejection_reason: Optional[str] = None
    offer_details: Optional[str] = None
    next_steps: Optional[str] = None


class ClassificationResult(BaseModel):
    has_signal: bool = False
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    extracted_company: Optional[str] = None
    extracted_title: Optional[str] = None
    proposed_status: Optional[ApplicationStatus] = None
    details: ExtractedDetails = Field(default_factory=ExtractedDetails)


# =============================================================================
# Checkpoint and matching
# =============================================================================

class CheckpointState(BaseModel):
    """Durable cursor: last fully processed (received_at, message_id)."""
    last_processed_timestamp: datetime
    last_message_id: str

    @property
    def key(self) -> Tuple[datetime, str]:
        return (self.last_processed_timestamp, self.last_message_id)

    @classmethod
    def from_message(cls, message: MailMessage) -> "CheckpointState":
        return cls(last_processed_timestamp=message.received_at, last_message_id=message.id)

    def is_before(self, message: MailMessage) -> bool:
        """True if message sorts strictly after this checkpoint."""
        return message.sort_key > self.key


class ApplicationRecord(BaseModel):
    """Detached view of a job application row."""
    id: int
    status: ApplicationStatus
    company_name: str
    job_title: Optional[str] = None
    updated_at: Optional[datetime] = None
    last_synced_message_id: Optional[str] = None
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class MatchedOn(BaseModel):
    company: float = 0.0
    title: float = 0.0
    recency: float = 0.0


class MatchCandidate(BaseModel):
    application_id: int
    score: float
    matched_on: MatchedOn


# =============================================================================
# Run reporting
# =============================================================================

class MessageOutcome(str, Enum):
    """What happened to one handled message (audit log value)."""
    UPDATED = "updated"
    NOOP = "noop"
    NO_SIGNAL = "no_signal"
    LOW_CONFIDENCE = "low_confidence"
    NO_MATCH = "no_match"
    AMBIGUOUS = "ambiguous"
    INVALID_TRANSITION = "invalid_transition"
    CONFLICT = "conflict"
    ERROR = "error"


class AmbiguousOutcome(BaseModel):
    """A message that resolved to several near-equal applications; left for manual review."""
    message_id: str
    extracted_company: Optional[str] = None
    proposed_status: Optional[ApplicationStatus] = None
    candidates: List[MatchCandidate] = []


class SyncRunSummary(BaseModel):
    trigger: str = "manual"
    started_at: datetime
    finished_at: Optional[datetime] = None
    messages_scanned: int = 0
    signals_found: int = 0
    applications_updated: int = 0
    low_confidence: int = 0
    no_match: int = 0
    noops: int = 0
    invalid_transitions: int = 0
    conflicts: int = 0
    already_processed: int = 0
    ambiguous: List[AmbiguousOutcome] = []
    errors: List[str] = []
    rate_limited: bool = False
    aborted: bool = False
    checkpoint: Optional[CheckpointState] = None

    @property
    def status(self) -> str:
        if self.aborted:
            return "failed"
        if self.rate_limited:
            return "rate_limited"
        return "completed"

    @classmethod
    def failed(cls, trigger: str, started_at: datetime, error: str) -> "SyncRunSummary":
        return cls(
            trigger=trigger,
            started_at=started_at,
            finished_at=datetime.utcnow(),
            errors=[error],
            aborted=True,
        )


class SyncStatusResponse(BaseModel):
    last_run: Optional[datetime] = None
    is_running: bool = False
    last_summary: Optional[SyncRunSummary] = None


class TriggerResponse(BaseModel):
    accepted: bool
    message: str = ""


class ReviewItem(BaseModel):
    message_id: str
    outcome: str
    application_ids: List[int] = []
    detail: Optional[str] = None
    processed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CheckpointResetResponse(BaseModel):
    reset: bool
    message: str = ""
