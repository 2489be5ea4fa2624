"""SQL store: conditional update, monotonic checkpoint, audit log."""
from datetime import datetime, timedelta

from sqlalchemy.exc import OperationalError

from mailsync.models import JobApplication
from mailsync.schemas import CheckpointState, MessageOutcome
from mailsync.services import store as store_module
from mailsync.status_machine import ApplicationStatus


def _add_app(db, company="Globex", status="Applied", notes=None):
    app = JobApplication(company_name=company, status=status, notes=notes)
    db.add(app)
    db.commit()
    return app.id


def test_open_applications_exclude_terminal(db_session, store):
    _add_app(db_session, "Globex", "Applied")
    _add_app(db_session, "Initech", "Hired")
    _add_app(db_session, "Umbrella", "Rejected")
    _add_app(db_session, "Hooli", "On Hold")
    names = [a.company_name for a in store.get_open_applications()]
    assert names == ["Globex", "Hooli"]


def test_conditional_update_checks_expected_status(db_session, store):
    app_id = _add_app(db_session)
    assert not store.update_application_status(
        app_id, ApplicationStatus.SCREENING, ApplicationStatus.INTERVIEW, "m1"
    )
    assert store.update_application_status(
        app_id, ApplicationStatus.APPLIED, ApplicationStatus.INTERVIEW, "m1"
    )
    row = db_session.get(JobApplication, app_id)
    assert row.status == "Interview"
    assert row.last_synced_message_id == "m1"


def test_conditional_update_refuses_same_message(db_session, store):
    app_id = _add_app(db_session)
    assert store.update_application_status(app_id, ApplicationStatus.APPLIED, ApplicationStatus.SCREENING, "m1")
    assert not store.update_application_status(app_id, ApplicationStatus.SCREENING, ApplicationStatus.INTERVIEW, "m1")
    assert db_session.get(JobApplication, app_id).status == "Screening"


def test_notes_are_appended(db_session, store):
    app_id = _add_app(db_session, notes="Referred by Sam")
    store.update_application_status(app_id, ApplicationStatus.APPLIED, ApplicationStatus.SCREENING, "m1", note="first")
    store.update_application_status(app_id, ApplicationStatus.SCREENING, ApplicationStatus.INTERVIEW, "m2", note="second")
    assert db_session.get(JobApplication, app_id).notes == "Referred by Sam\n\nfirst\n\nsecond"


def test_note_on_empty_notes(db_session, store):
    app_id = _add_app(db_session)
    store.update_application_status(app_id, ApplicationStatus.APPLIED, ApplicationStatus.SCREENING, "m1", note="only")
    assert db_session.get(JobApplication, app_id).notes == "only"


def test_checkpoint_is_monotonic(store):
    t = datetime(2026, 3, 2, 9, 0, 0)
    assert store.load_checkpoint() is None
    assert store.save_checkpoint(CheckpointState(last_processed_timestamp=t, last_message_id="b"))
    # Same timestamp, smaller id: backward
    assert not store.save_checkpoint(CheckpointState(last_processed_timestamp=t, last_message_id="a"))
    assert not store.save_checkpoint(CheckpointState(last_processed_timestamp=t - timedelta(seconds=1), last_message_id="z"))
    assert store.save_checkpoint(CheckpointState(last_processed_timestamp=t, last_message_id="c"))
    cp = store.load_checkpoint()
    assert cp.key == (t, "c")


def test_reset_checkpoint(store):
    t = datetime(2026, 3, 2, 9, 0, 0)
    store.save_checkpoint(CheckpointState(last_processed_timestamp=t, last_message_id="m1"))
    store.reset_checkpoint()
    assert store.load_checkpoint() is None
    assert store.save_checkpoint(CheckpointState(last_processed_timestamp=t - timedelta(days=1), last_message_id="m0"))


def test_review_items_only_ambiguous(store):
    store.record_message_outcome("m1", MessageOutcome.UPDATED, application_id=1)
    store.record_message_outcome("m2", MessageOutcome.AMBIGUOUS, application_ids=[3, 4], detail="Acme")
    items = store.list_review_items()
    assert len(items) == 1
    assert items[0].message_id == "m2"
    assert items[0].application_ids == [3, 4]
    assert items[0].detail == "Acme"


def test_message_consumed_only_after_final_decision(store):
    store.record_message_outcome("m1", MessageOutcome.CONFLICT, application_id=1)
    store.record_message_outcome("m2", MessageOutcome.ERROR, detail="timeout")
    store.record_message_outcome("m3", MessageOutcome.INVALID_TRANSITION, application_id=1)
    assert not store.is_message_consumed("m1")
    assert not store.is_message_consumed("m2")
    assert store.is_message_consumed("m3")
    assert not store.is_message_consumed("unknown")

    store.record_message_outcome("m1", MessageOutcome.UPDATED, application_id=1)
    assert store.is_message_consumed("m1")


def test_commit_with_retry_retries_on_sqlite_lock():
    class DummyDB:
        def __init__(self):
            self.commit_calls = 0
            self.rollback_calls = 0

        def commit(self):
            self.commit_calls += 1
            if self.commit_calls < 3:
                raise OperationalError("COMMIT", {}, Exception("database is locked"))

        def rollback(self):
            self.rollback_calls += 1

    db = DummyDB()
    store_module._commit_with_retry(db, max_retries=5, base_sleep_s=0.0)
    assert db.commit_calls == 3
    assert db.rollback_calls == 2
