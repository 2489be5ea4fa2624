"""Most recent run summary in DB (single SyncRun row), so status survives restarts and worker runs."""
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from .models import SyncRun
from .schemas import SyncRunSummary

_ROW_ID = 1


def get_sync_run(db: Session) -> Optional[SyncRun]:
    return db.get(SyncRun, _ROW_ID, populate_existing=True)


def save_last_run(db: Session, summary: SyncRunSummary) -> None:
    """Overwrite the stored run summary with this one."""
    now = datetime.utcnow()
    payload = summary.model_dump(mode="json")
    row = get_sync_run(db)
    if row:
        row.trigger = summary.trigger
        row.status = summary.status
        row.started_at = summary.started_at
        row.finished_at = summary.finished_at
        row.summary = payload
        row.updated_at = now
    else:
        db.add(SyncRun(
            id=_ROW_ID,
            trigger=summary.trigger,
            status=summary.status,
            started_at=summary.started_at,
            finished_at=summary.finished_at,
            summary=payload,
            updated_at=now,
        ))
    db.commit()


def load_last_run(db: Session) -> Optional[SyncRunSummary]:
    row = get_sync_run(db)
    if not row or not row.summary:
        return None
    return SyncRunSummary.model_validate(row.summary)
