"""Application store: reads open applications, conditional status updates, checkpoint, audit log."""
import logging
import random
import time
from datetime import datetime
from typing import List, Optional, Protocol

from sqlalchemy import func, or_, update
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import DEFAULT_CHECKPOINT_NAME, JobApplication, SyncCheckpoint, SyncedMessage
from ..schemas import ApplicationRecord, CheckpointState, MessageOutcome, ReviewItem
from ..status_machine import OPEN_STATUSES, ApplicationStatus

logger = logging.getLogger(__name__)

# Outcomes after which replaying the message must not touch the application again.
CONSUMED_OUTCOMES = frozenset({
    MessageOutcome.UPDATED,
    MessageOutcome.NOOP,
    MessageOutcome.INVALID_TRANSITION,
})


class ApplicationStore(Protocol):
    def get_open_applications(self) -> List[ApplicationRecord]: ...

    def get_application(self, application_id: int) -> Optional[ApplicationRecord]: ...

    def update_application_status(
        self,
        application_id: int,
        expected_status: ApplicationStatus,
        new_status: ApplicationStatus,
        source_message_id: str,
        note: Optional[str] = None,
    ) -> bool: ...

    def load_checkpoint(self) -> Optional[CheckpointState]: ...

    def save_checkpoint(self, checkpoint: CheckpointState) -> bool: ...

    def reset_checkpoint(self) -> None: ...

    def record_message_outcome(
        self,
        message_id: str,
        outcome: MessageOutcome,
        application_id: Optional[int] = None,
        application_ids: Optional[List[int]] = None,
        proposed_status: Optional[ApplicationStatus] = None,
        detail: Optional[str] = None,
    ) -> None: ...

    def is_message_consumed(self, message_id: str) -> bool: ...


def _is_sqlite_locked_error(exc: BaseException) -> bool:
    msg = str(exc).lower()
    return "database is locked" in msg or "sqlite_busy" in msg


def _commit_with_retry(db: Session, *, max_retries: int = 6, base_sleep_s: float = 0.05) -> None:
    """
    SQLite can transiently raise 'database is locked' during concurrent access.
    Retry commits with exponential backoff + jitter. Only used for idempotent writes
    (checkpoint, audit log); status updates are never retried.
    """
    attempt = 0
    while True:
        try:
            db.commit()
            return
        except OperationalError as e:
            db.rollback()
            if attempt >= max_retries or not _is_sqlite_locked_error(e):
                raise
            sleep_s = min(2.0, base_sleep_s * (2 ** attempt)) + random.uniform(0, 0.05)
            time.sleep(sleep_s)
            attempt += 1


class SqlApplicationStore:
    """ApplicationStore backed by a SQLAlchemy session."""

    def __init__(self, db: Session, checkpoint_name: str = DEFAULT_CHECKPOINT_NAME):
        self.db = db
        self.checkpoint_name = checkpoint_name

    # Applications

    def get_open_applications(self) -> List[ApplicationRecord]:
        rows = (
            self.db.query(JobApplication)
            .filter(JobApplication.status.in_([s.value for s in OPEN_STATUSES]))
            .order_by(JobApplication.id)
            .all()
        )
        return [ApplicationRecord.model_validate(r) for r in rows]

    def get_application(self, application_id: int) -> Optional[ApplicationRecord]:
        row = self.db.get(JobApplication, application_id, populate_existing=True)
        return ApplicationRecord.model_validate(row) if row else None

    def update_application_status(
        self,
        application_id: int,
        expected_status: ApplicationStatus,
        new_status: ApplicationStatus,
        source_message_id: str,
        note: Optional[str] = None,
    ) -> bool:
        """
        Single conditional UPDATE keyed by id. Matches only while the row still has
        expected_status and has not already consumed source_message_id. Returns False
        when no row matched (conflict).
        """
        values = {
            "status": new_status.value,
            "updated_at": datetime.utcnow(),
            "last_synced_message_id": source_message_id,
        }
        if note:
            values["notes"] = func.coalesce(JobApplication.notes + "\n\n", "") + note
        stmt = (
            update(JobApplication)
            .where(
                JobApplication.id == application_id,
                JobApplication.status == expected_status.value,
                or_(
                    JobApplication.last_synced_message_id.is_(None),
                    JobApplication.last_synced_message_id != source_message_id,
                ),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        return result.rowcount == 1

    # Checkpoint

    def load_checkpoint(self) -> Optional[CheckpointState]:
        row = self.db.get(SyncCheckpoint, self.checkpoint_name, populate_existing=True)
        if not row:
            return None
        return CheckpointState(
            last_processed_timestamp=row.last_processed_timestamp,
            last_message_id=row.last_message_id,
        )

    def save_checkpoint(self, checkpoint: CheckpointState) -> bool:
        """Persist checkpoint if it moves forward. Returns False when it would move backward."""
        row = self.db.get(SyncCheckpoint, self.checkpoint_name, populate_existing=True)
        now = datetime.utcnow()
        if row:
            if (row.last_processed_timestamp, row.last_message_id) >= checkpoint.key:
                return False
            row.last_processed_timestamp = checkpoint.last_processed_timestamp
            row.last_message_id = checkpoint.last_message_id
            row.updated_at = now
        else:
            self.db.add(SyncCheckpoint(
                name=self.checkpoint_name,
                last_processed_timestamp=checkpoint.last_processed_timestamp,
                last_message_id=checkpoint.last_message_id,
                updated_at=now,
            ))
        _commit_with_retry(self.db)
        return True

    def reset_checkpoint(self) -> None:
        self.db.query(SyncCheckpoint).filter(SyncCheckpoint.name == self.checkpoint_name).delete()
        _commit_with_retry(self.db)
        logger.warning(f"Checkpoint '{self.checkpoint_name}' reset")

    # Audit log

    def record_message_outcome(
        self,
        message_id: str,
        outcome: MessageOutcome,
        application_id: Optional[int] = None,
        application_ids: Optional[List[int]] = None,
        proposed_status: Optional[ApplicationStatus] = None,
        detail: Optional[str] = None,
    ) -> None:
        self.db.add(SyncedMessage(
            message_id=message_id,
            outcome=outcome.value,
            application_id=application_id,
            application_ids=application_ids,
            proposed_status=proposed_status.value if proposed_status else None,
            detail=(detail or "")[:2000] or None,
        ))
        _commit_with_retry(self.db)

    def is_message_consumed(self, message_id: str) -> bool:
        """True once a message has reached a final decision against an application."""
        row = (
            self.db.query(SyncedMessage.id)
            .filter(
                SyncedMessage.message_id == message_id,
                SyncedMessage.outcome.in_([o.value for o in CONSUMED_OUTCOMES]),
            )
            .first()
        )
        return row is not None

    def list_review_items(self, limit: int = 50) -> List[ReviewItem]:
        rows = (
            self.db.query(SyncedMessage)
            .filter(SyncedMessage.outcome == MessageOutcome.AMBIGUOUS.value)
            .order_by(SyncedMessage.processed_at.desc(), SyncedMessage.id.desc())
            .limit(limit)
            .all()
        )
        return [
            ReviewItem(
                message_id=r.message_id,
                outcome=r.outcome,
                application_ids=r.application_ids or [],
                detail=r.detail,
                processed_at=r.processed_at,
            )
            for r in rows
        ]
