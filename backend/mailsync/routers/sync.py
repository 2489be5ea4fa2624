"""Status sync API: GET status, POST trigger, POST checkpoint reset, GET ambiguous matches for review."""
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from ..auth import require_api_key
from ..database import get_db
from ..scheduler import SyncScheduler, get_scheduler
from ..schemas import CheckpointResetResponse, ReviewItem, SyncStatusResponse, TriggerResponse
from ..services.store import SqlApplicationStore

router = APIRouter(prefix="/api/email-sync", tags=["email-sync"], dependencies=[Depends(require_api_key)])


@router.get("/status", response_model=SyncStatusResponse)
def sync_status(scheduler: SyncScheduler = Depends(get_scheduler)):
    """Last run time and summary, and whether a run is in progress."""
    return scheduler.get_status()


@router.post("/trigger", response_model=TriggerResponse, status_code=status.HTTP_202_ACCEPTED)
def trigger_sync(response: Response, scheduler: SyncScheduler = Depends(get_scheduler)):
    """Start a run in the background. 409 with accepted=false if one is already running (nothing is queued)."""
    result = scheduler.trigger_manual_run()
    if not result.accepted:
        response.status_code = status.HTTP_409_CONFLICT
    return result


@router.post("/checkpoint/reset", response_model=CheckpointResetResponse)
def reset_checkpoint(
    scheduler: SyncScheduler = Depends(get_scheduler),
    db: Session = Depends(get_db),
):
    """
    Forget the mailbox cursor so the next run rescans the initial lookback window.
    Already-applied messages are no-ops on replay. Refused while a run holds the guard.
    """
    if not scheduler.guard.try_acquire():
        raise HTTPException(status_code=409, detail="A sync run is in progress; try again when it finishes.")
    try:
        SqlApplicationStore(db).reset_checkpoint()
    finally:
        scheduler.guard.release()
    return CheckpointResetResponse(reset=True, message="Checkpoint cleared. The next run rescans the lookback window.")


@router.get("/review", response_model=List[ReviewItem])
def review_items(limit: int = Query(50, ge=1, le=500), db: Session = Depends(get_db)):
    """Messages that matched several applications equally well and were left for a human."""
    return SqlApplicationStore(db).list_review_items(limit=limit)
