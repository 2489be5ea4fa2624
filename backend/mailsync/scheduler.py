"""
Scheduler: owns the run guard and the last-run state.

Every trigger (6-hourly interval, daily cron, manual API call, Celery beat) funnels into
run_once(). If a run is already in progress the trigger is dropped, never queued.
"""
import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError

from .config import settings
from .database import SessionLocal
from .run_guard import RunGuard, get_run_guard
from .schemas import SyncRunSummary, SyncStatusResponse, TriggerResponse
from .services.sync_orchestrator import run_status_sync
from .sync_state_db import load_last_run, save_last_run

logger = logging.getLogger(__name__)

INTERVAL_JOB_ID = "status-sync-interval"
DAILY_JOB_ID = "status-sync-daily"


class SyncScheduler:
    def __init__(
        self,
        run_fn: Callable[[str], SyncRunSummary] = run_status_sync,
        guard: Optional[RunGuard] = None,
        session_factory=SessionLocal,
    ):
        self._run_fn = run_fn
        self.guard = guard or get_run_guard()
        self._session_factory = session_factory
        self._state_lock = threading.Lock()
        self._last_summary: Optional[SyncRunSummary] = None
        self._scheduler: Optional[BackgroundScheduler] = None

    # Runs

    def run_once(self, trigger: str = "scheduled") -> Optional[SyncRunSummary]:
        """Run synchronously if idle. Returns None when another run holds the guard."""
        if not self.guard.try_acquire():
            logger.info(f"Status sync already running; {trigger} trigger skipped")
            return None
        try:
            return self._execute(trigger)
        finally:
            self.guard.release()

    def trigger_manual_run(self) -> TriggerResponse:
        """Acquire the guard in the caller's thread, then run in the background."""
        if not self.guard.try_acquire():
            return TriggerResponse(accepted=False, message="A sync run is already in progress.")

        def _background():
            try:
                self._execute("manual")
            finally:
                self.guard.release()

        try:
            threading.Thread(target=_background, name="status-sync-manual", daemon=True).start()
        except RuntimeError as e:
            self.guard.release()
            logger.error(f"Could not start manual sync thread: {e}")
            return TriggerResponse(accepted=False, message=f"Could not start sync: {e}")
        return TriggerResponse(accepted=True, message="Status sync started.")

    def _execute(self, trigger: str) -> SyncRunSummary:
        """Caller holds the guard. Never raises."""
        started = datetime.utcnow()
        try:
            summary = self._run_fn(trigger)
        except Exception as e:
            logger.exception(f"Status sync ({trigger}) failed")
            summary = SyncRunSummary.failed(trigger, started, f"{type(e).__name__}: {e}")
        self._record(summary)
        return summary

    def _record(self, summary: SyncRunSummary) -> None:
        with self._state_lock:
            self._last_summary = summary
        db = self._session_factory()
        try:
            save_last_run(db, summary)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to persist last run summary: {e}")
        finally:
            db.close()

    # Status

    def get_status(self) -> SyncStatusResponse:
        with self._state_lock:
            last = self._last_summary
        persisted = self._load_persisted()
        # Runs executed by another process (Celery worker) are only visible in the DB.
        if persisted and (last is None or persisted.started_at > last.started_at):
            last = persisted
        return SyncStatusResponse(
            last_run=(last.finished_at or last.started_at) if last else None,
            is_running=self.guard.locked(),
            last_summary=last,
        )

    def _load_persisted(self) -> Optional[SyncRunSummary]:
        db = self._session_factory()
        try:
            return load_last_run(db)
        except SQLAlchemyError as e:
            logger.warning(f"Could not load persisted run summary: {e}")
            return None
        finally:
            db.close()

    # Timers

    def start(self) -> None:
        if self._scheduler is not None:
            return
        scheduler = BackgroundScheduler(timezone=settings.scheduler_timezone)
        scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(hours=settings.scheduler_interval_hours),
            kwargs={"trigger": "interval"},
            id=INTERVAL_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.add_job(
            self.run_once,
            trigger=CronTrigger(hour=settings.scheduler_daily_hour, minute=0),
            kwargs={"trigger": "daily"},
            id=DAILY_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            f"Status sync scheduled every {settings.scheduler_interval_hours}h "
            f"and daily at {settings.scheduler_daily_hour:02d}:00 {settings.scheduler_timezone}"
        )

    def shutdown(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None


_scheduler: Optional[SyncScheduler] = None
_scheduler_lock = threading.Lock()


def get_scheduler() -> SyncScheduler:
    """Process-wide scheduler (FastAPI dependency)."""
    global _scheduler
    with _scheduler_lock:
        if _scheduler is None:
            _scheduler = SyncScheduler()
        return _scheduler
