"""State updater: applies one resolved status transition to an application record."""
import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from ..errors import InvalidTransition, StoreConflict
from ..schemas import ExtractedDetails
from ..status_machine import ApplicationStatus, can_transition
from .store import ApplicationStore

logger = logging.getLogger(__name__)


class TransitionResult(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"


def build_status_note(
    status: ApplicationStatus,
    confidence: Optional[float] = None,
    details: Optional[ExtractedDetails] = None,
    now: Optional[datetime] = None,
) -> str:
    """Timestamped audit line appended to the application's notes."""
    ts = (now or datetime.utcnow()).replace(microsecond=0).isoformat()
    line = f"[{ts}] Status updated to {status.value} via email sync"
    if confidence is not None:
        line += f" (confidence: {confidence:.2f})"
    lines = [line]
    if details:
        if details.interview_date:
            lines.append(f"Interview date: {details.interview_date}")
        if details.rejection_reason:
            lines.append(f"Rejection reason: {details.rejection_reason}")
        if details.offer_details:
            lines.append(f"Offer details: {details.offer_details}")
        if details.next_steps:
            lines.append(f"Next steps: {details.next_steps}")
    return "\n".join(lines)


class StateUpdater:
    """
    Enforces the status state machine over the store's atomic update primitive.

    - NOOP if the application already consumed source_message_id, or already has the
      proposed status. No store write.
    - InvalidTransition if the edge is not allowed (including anything out of a terminal
      state). No store write.
    - Otherwise exactly one conditional update; StoreConflict if the store rejects it.
    """

    def __init__(self, store: ApplicationStore):
        self.store = store

    def apply(
        self,
        application_id: int,
        proposed_status: ApplicationStatus,
        source_message_id: str,
        note: Optional[str] = None,
    ) -> TransitionResult:
        app = self.store.get_application(application_id)
        if app is None:
            raise StoreConflict(application_id, f"Application {application_id} no longer exists")

        if app.last_synced_message_id == source_message_id:
            logger.info(f"Application {application_id}: message {source_message_id} already applied")
            return TransitionResult.NOOP
        if app.status == proposed_status:
            logger.info(f"Application {application_id}: already {proposed_status.value}")
            return TransitionResult.NOOP

        if not can_transition(app.status, proposed_status):
            logger.warning(
                f"Rejected transition for application {application_id}: "
                f"{app.status.value} -> {proposed_status.value} (message {source_message_id})"
            )
            raise InvalidTransition(application_id, app.status.value, proposed_status.value)

        ok = self.store.update_application_status(
            application_id,
            expected_status=app.status,
            new_status=proposed_status,
            source_message_id=source_message_id,
            note=note,
        )
        if not ok:
            logger.warning(
                f"Store conflict updating application {application_id} "
                f"({app.status.value} -> {proposed_status.value})"
            )
            raise StoreConflict(application_id)

        logger.info(
            f"Application {application_id}: {app.status.value} -> {proposed_status.value} "
            f"(message {source_message_id})"
        )
        return TransitionResult.APPLIED
