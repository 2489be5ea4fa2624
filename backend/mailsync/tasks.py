"""Celery tasks: guarded status sync. Summary persisted in DB for the status endpoint."""
import logging
from typing import Optional

from celery import shared_task

from .scheduler import get_scheduler

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')


@shared_task(bind=True, name="mailsync.tasks.run_status_sync")
def run_status_sync(self, trigger: str = "scheduled") -> Optional[dict]:
    """
    Run one status sync in this worker. Skipped (returns None) if a run already holds
    the guard; use RUN_GUARD_BACKEND=redis so the guard is shared with the API process.
    """
    summary = get_scheduler().run_once(trigger)
    if summary is None:
        return None
    return summary.model_dump(mode="json")
