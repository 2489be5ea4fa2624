"""
Sync orchestrator: one pass over the mailbox.

load checkpoint -> fetch (oldest first) -> classify -> match -> update -> advance checkpoint.
Messages are handled strictly in order, one at a time. The checkpoint is persisted after
every fully handled message, so a crash or abort re-enters at the next unprocessed message.
"""
import logging
import time
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..config import settings
from ..errors import ClassificationError, FetchError, InvalidTransition, RateLimited, StoreConflict
from ..schemas import (
    AmbiguousOutcome,
    ApplicationRecord,
    CheckpointState,
    ClassificationResult,
    MailMessage,
    MessageOutcome,
    SyncRunSummary,
)
from .classifier import SignalClassifier
from .matcher import ApplicationMatcher, MatchKind
from .message_fetcher import MessageFetcher
from .state_updater import StateUpdater, TransitionResult, build_status_note
from .store import ApplicationStore

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    def __init__(
        self,
        store: ApplicationStore,
        fetcher: MessageFetcher,
        classifier: SignalClassifier,
        matcher: Optional[ApplicationMatcher] = None,
        updater: Optional[StateUpdater] = None,
        *,
        confidence_threshold: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_backoff_s: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.fetcher = fetcher
        self.classifier = classifier
        self.matcher = matcher or ApplicationMatcher()
        self.updater = updater or StateUpdater(store)
        self.confidence_threshold = (
            settings.classification_confidence_threshold if confidence_threshold is None else confidence_threshold
        )
        self.max_retries = settings.classification_max_retries if max_retries is None else max_retries
        self.retry_backoff_s = settings.classification_retry_backoff_s if retry_backoff_s is None else retry_backoff_s
        self._sleep = sleep

    def run(self, trigger: str = "manual") -> SyncRunSummary:
        summary = SyncRunSummary(trigger=trigger, started_at=datetime.utcnow())
        logger.info(f"Status sync started (trigger={trigger})")
        # Once a message is left unprocessed (conflict or failed update), later messages are
        # still handled but the durable cursor stays put so that message is retried next run.
        cursor_frozen = False
        try:
            checkpoint = self.store.load_checkpoint()
            summary.checkpoint = checkpoint
            open_apps = self.store.get_open_applications()
            for message in self.fetcher.iter_messages(checkpoint):
                summary.messages_scanned += 1
                handled, open_apps = self._handle_message(message, open_apps, summary)
                if not handled:
                    cursor_frozen = True
                    continue
                if cursor_frozen:
                    continue
                cp = CheckpointState.from_message(message)
                if self.store.save_checkpoint(cp):
                    summary.checkpoint = cp
        except RateLimited as e:
            summary.rate_limited = True
            logger.warning(f"Rate limited; ending run early with progress kept: {e}")
        except FetchError as e:
            summary.aborted = True
            summary.errors.append(f"Fetch failed: {e}")
            logger.error(f"Status sync aborted by fetch error: {e}")
        except SQLAlchemyError as e:
            summary.aborted = True
            summary.errors.append(f"Store failure: {e}")
            logger.error(f"Status sync aborted by store error: {e}")
        finally:
            summary.finished_at = datetime.utcnow()

        logger.info(
            f"Status sync finished ({summary.status}): scanned={summary.messages_scanned} "
            f"signals={summary.signals_found} updated={summary.applications_updated} "
            f"ambiguous={len(summary.ambiguous)} errors={len(summary.errors)}"
        )
        return summary

    def classify_with_retry(self, message: MailMessage) -> ClassificationResult:
        """Up to 1 + max_retries classifier calls with linear backoff; re-raises the last error."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return self.classifier.classify(message)
            except ClassificationError as e:
                if attempt > self.max_retries:
                    raise
                delay = self.retry_backoff_s * attempt
                logger.warning(
                    f"Classification failed for {message.id} (attempt {attempt}); retrying in {delay:.1f}s: {e}"
                )
                if delay > 0:
                    self._sleep(delay)

    def _handle_message(self, message: MailMessage, open_apps: List[ApplicationRecord], summary: SyncRunSummary):
        """
        Returns (handled, open_apps). handled=False means the message must be seen again
        next run; open_apps is refreshed after an applied update.
        """
        # A frozen cursor replays messages whose update already landed; re-applying them
        # could walk an application back through statuses it has since left.
        if self.store.is_message_consumed(message.id):
            summary.already_processed += 1
            logger.info(f"Message {message.id} already applied in an earlier run; skipping")
            return True, open_apps

        try:
            result = self.classify_with_retry(message)
        except ClassificationError as e:
            summary.errors.append(f"{message.id}: classification failed after {self.max_retries + 1} attempts: {e}")
            logger.warning(f"Skipping message {message.id}: {e}")
            self._record(summary, message.id, MessageOutcome.ERROR, detail=str(e))
            return True, open_apps
        except Exception as e:
            summary.errors.append(f"{message.id}: classification failed: {type(e).__name__}: {e}")
            logger.exception(f"Unexpected classifier failure for message {message.id}")
            self._record(summary, message.id, MessageOutcome.ERROR, detail=f"{type(e).__name__}: {e}")
            return True, open_apps

        if not result.has_signal or result.proposed_status is None:
            self._record(summary, message.id, MessageOutcome.NO_SIGNAL)
            return True, open_apps
        if result.confidence < self.confidence_threshold:
            summary.low_confidence += 1
            logger.info(
                f"Message {message.id}: {result.proposed_status.value} below confidence threshold "
                f"({result.confidence:.2f} < {self.confidence_threshold})"
            )
            self._record(
                summary, message.id, MessageOutcome.LOW_CONFIDENCE,
                proposed_status=result.proposed_status, detail=f"confidence={result.confidence:.2f}",
            )
            return True, open_apps

        summary.signals_found += 1
        try:
            match = self.matcher.match(result, open_apps)
        except Exception as e:
            summary.errors.append(f"{message.id}: matching failed: {e}")
            logger.exception(f"Matching failed for message {message.id}")
            self._record(summary, message.id, MessageOutcome.ERROR, detail=str(e))
            return True, open_apps

        if match.kind == MatchKind.NONE:
            summary.no_match += 1
            logger.info(f"Message {message.id}: no application matches company={result.extracted_company!r}")
            self._record(
                summary, message.id, MessageOutcome.NO_MATCH,
                proposed_status=result.proposed_status, detail=result.extracted_company,
            )
            return True, open_apps

        if match.kind == MatchKind.AMBIGUOUS:
            summary.ambiguous.append(AmbiguousOutcome(
                message_id=message.id,
                extracted_company=result.extracted_company,
                proposed_status=result.proposed_status,
                candidates=match.candidates,
            ))
            self._record(
                summary, message.id, MessageOutcome.AMBIGUOUS,
                application_ids=[c.application_id for c in match.candidates],
                proposed_status=result.proposed_status, detail=result.extracted_company,
            )
            return True, open_apps

        best = match.best
        note = build_status_note(result.proposed_status, result.confidence, result.details)
        try:
            outcome = self.updater.apply(best.application_id, result.proposed_status, message.id, note=note)
        except InvalidTransition as e:
            summary.invalid_transitions += 1
            self._record(
                summary, message.id, MessageOutcome.INVALID_TRANSITION,
                application_id=best.application_id, proposed_status=result.proposed_status, detail=str(e),
            )
            return True, open_apps
        except StoreConflict as e:
            summary.conflicts += 1
            self._record(
                summary, message.id, MessageOutcome.CONFLICT,
                application_id=best.application_id, proposed_status=result.proposed_status, detail=str(e),
            )
            return False, open_apps
        except SQLAlchemyError as e:
            # Store updates are never retried within a run.
            summary.errors.append(f"{message.id}: store update failed for application {best.application_id}: {e}")
            logger.error(f"Store update failed for application {best.application_id}: {e}")
            return False, open_apps

        if outcome == TransitionResult.NOOP:
            summary.noops += 1
            self._record(
                summary, message.id, MessageOutcome.NOOP,
                application_id=best.application_id, proposed_status=result.proposed_status,
            )
            return True, open_apps

        summary.applications_updated += 1
        self._record(
            summary, message.id, MessageOutcome.UPDATED,
            application_id=best.application_id, proposed_status=result.proposed_status,
        )
        return True, self.store.get_open_applications()

    def _record(self, summary: SyncRunSummary, message_id: str, outcome: MessageOutcome, **kwargs) -> None:
        try:
            self.store.record_message_outcome(message_id, outcome, **kwargs)
        except SQLAlchemyError as e:
            summary.errors.append(f"{message_id}: could not record outcome {outcome.value}: {e}")
            logger.error(f"Failed to record outcome for {message_id}: {e}")


def build_orchestrator(db, mailbox=None, classifier: Optional[SignalClassifier] = None) -> SyncOrchestrator:
    """Wire the production collaborators (SQL store, Gmail, configured classifier) around a session."""
    from ..gmail_service import GmailMailbox
    from .classifier import get_signal_classifier
    from .store import SqlApplicationStore

    store = SqlApplicationStore(db)
    fetcher = MessageFetcher(mailbox or GmailMailbox())
    return SyncOrchestrator(store, fetcher, classifier or get_signal_classifier())


def run_status_sync(trigger: str = "manual") -> SyncRunSummary:
    """One orchestrated run with its own DB session."""
    from ..database import SessionLocal

    db = SessionLocal()
    try:
        return build_orchestrator(db).run(trigger)
    finally:
        db.close()
