"""End-to-end runs of the orchestrator over the SQL store with a fake mailbox and classifier."""
from datetime import timedelta
from unittest.mock import MagicMock

from mailsync.errors import ClassificationError, FetchError, RateLimited
from mailsync.models import JobApplication
from mailsync.schemas import CheckpointState, ClassificationResult
from mailsync.services.message_fetcher import MessageFetcher
from mailsync.services.store import SqlApplicationStore
from mailsync.services.sync_orchestrator import SyncOrchestrator
from mailsync.status_machine import ApplicationStatus as S

from fakes import T0, FakeMailbox, ScriptedClassifier, make_message, signal


def _add_app(db, company, status="Applied", title=None):
    app = JobApplication(company_name=company, job_title=title, status=status)
    db.add(app)
    db.commit()
    return app.id


def _orchestrator(store, mailbox, classifier, sleeps=None, **kwargs):
    fetcher = MessageFetcher(mailbox, now=lambda: T0 + timedelta(days=1))
    kwargs.setdefault("confidence_threshold", 0.6)
    kwargs.setdefault("max_retries", 2)
    kwargs.setdefault("retry_backoff_s", 1.0)
    return SyncOrchestrator(
        store,
        fetcher,
        classifier,
        sleep=(sleeps.append if sleeps is not None else (lambda s: None)),
        **kwargs,
    )


def _set_checkpoint(store, seconds_after_t0=0, message_id="m0"):
    store.reset_checkpoint()
    store.save_checkpoint(
        CheckpointState(last_processed_timestamp=T0 + timedelta(seconds=seconds_after_t0), last_message_id=message_id)
    )


def test_globex_interview_end_to_end(db_session, store):
    app_id = _add_app(db_session, "Globex")
    _add_app(db_session, "Initech")
    _set_checkpoint(store)
    mailbox = FakeMailbox([make_message("m1", 1)])
    classifier = ScriptedClassifier({"m1": [signal("Globex", S.INTERVIEW, 0.9)]})

    summary = _orchestrator(store, mailbox, classifier).run("manual")

    row = db_session.get(JobApplication, app_id)
    assert row.status == "Interview"
    assert row.last_synced_message_id == "m1"
    assert "Status updated to Interview via email sync (confidence: 0.90)" in row.notes
    assert store.load_checkpoint().key == (T0 + timedelta(seconds=1), "m1")
    assert summary.messages_scanned == 1
    assert summary.signals_found == 1
    assert summary.applications_updated == 1
    assert summary.errors == []
    assert summary.status == "completed"
    assert summary.finished_at is not None


def test_replay_from_same_checkpoint_is_idempotent(db_session, store):
    app_id = _add_app(db_session, "Globex")
    _set_checkpoint(store)
    mailbox = FakeMailbox([make_message("m1", 1)])
    classifier = ScriptedClassifier({"m1": [signal("Globex", S.INTERVIEW, 0.9)]})
    _orchestrator(store, mailbox, classifier).run()

    _set_checkpoint(store)
    spy = MagicMock(wraps=store)
    summary = _orchestrator(spy, mailbox, classifier).run()

    assert spy.update_application_status.call_count == 0
    assert classifier.calls["m1"] == 1
    assert summary.applications_updated == 0
    assert summary.already_processed == 1
    assert db_session.get(JobApplication, app_id).status == "Interview"
    assert store.load_checkpoint().key == (T0 + timedelta(seconds=1), "m1")


def test_classifier_failures_within_retry_limit_are_retried(db_session, store):
    app_id = _add_app(db_session, "Globex")
    _set_checkpoint(store)
    classifier = ScriptedClassifier({
        "m1": [ClassificationError("timeout"), ClassificationError("timeout"), signal("Globex", S.SCREENING)],
    })
    sleeps = []
    summary = _orchestrator(store, FakeMailbox([make_message("m1", 1)]), classifier, sleeps=sleeps).run()

    assert classifier.calls["m1"] == 3
    assert sleeps == [1.0, 2.0]
    assert summary.errors == []
    assert summary.applications_updated == 1
    assert db_session.get(JobApplication, app_id).status == "Screening"


def test_classifier_failure_past_retry_limit_skips_message(db_session, store):
    app_id = _add_app(db_session, "Globex")
    _set_checkpoint(store)
    classifier = ScriptedClassifier({"m1": [ClassificationError("malformed")]})
    mailbox = FakeMailbox([make_message("m1", 1)])

    summary = _orchestrator(store, mailbox, classifier).run()

    assert classifier.calls["m1"] == 3
    assert len(summary.errors) == 1
    assert "m1" in summary.errors[0]
    assert summary.status == "completed"
    assert store.load_checkpoint().key == (T0 + timedelta(seconds=1), "m1")
    assert db_session.get(JobApplication, app_id).status == "Applied"


def test_low_confidence_is_not_a_signal(db_session, store):
    app_id = _add_app(db_session, "Globex")
    _set_checkpoint(store)
    classifier = ScriptedClassifier({"m1": [signal("Globex", S.OFFER, confidence=0.55)]})
    summary = _orchestrator(store, FakeMailbox([make_message("m1", 1)]), classifier).run()

    assert summary.signals_found == 0
    assert summary.low_confidence == 1
    assert db_session.get(JobApplication, app_id).status == "Applied"
    assert store.load_checkpoint().last_message_id == "m1"


def test_ambiguous_match_is_recorded_not_applied(db_session, store):
    a = _add_app(db_session, "Acme Corp")
    b = _add_app(db_session, "Acme Corporation")
    _set_checkpoint(store)
    classifier = ScriptedClassifier({"m1": [signal("Acme", S.REJECTED)]})
    summary = _orchestrator(store, FakeMailbox([make_message("m1", 1)]), classifier).run()

    assert summary.applications_updated == 0
    assert len(summary.ambiguous) == 1
    assert [c.application_id for c in summary.ambiguous[0].candidates] == [a, b]
    assert db_session.get(JobApplication, a).status == "Applied"
    assert db_session.get(JobApplication, b).status == "Applied"
    assert store.load_checkpoint().last_message_id == "m1"
    review = store.list_review_items()
    assert review[0].message_id == "m1"
    assert review[0].application_ids == [a, b]


def test_no_match_and_invalid_transition_still_advance(db_session, store):
    _add_app(db_session, "Globex", status="Offer")
    _set_checkpoint(store)
    classifier = ScriptedClassifier({
        "m1": [signal("Umbrella", S.INTERVIEW)],
        "m2": [signal("Globex", S.SCREENING)],
    })
    mailbox = FakeMailbox([make_message("m1", 1), make_message("m2", 2)])
    summary = _orchestrator(store, mailbox, classifier).run()

    assert summary.no_match == 1
    assert summary.invalid_transitions == 1
    assert summary.applications_updated == 0
    assert summary.errors == []
    assert store.load_checkpoint().last_message_id == "m2"


def test_terminal_application_is_never_changed(db_session, store):
    app_id = _add_app(db_session, "Globex", status="Hired")
    _set_checkpoint(store)
    classifier = ScriptedClassifier({"m1": [signal("Globex", S.REJECTED)]})
    summary = _orchestrator(store, FakeMailbox([make_message("m1", 1)]), classifier).run()

    assert summary.no_match == 1
    assert db_session.get(JobApplication, app_id).status == "Hired"


def test_later_message_sees_applied_status(db_session, store):
    app_id = _add_app(db_session, "Globex")
    _set_checkpoint(store)
    classifier = ScriptedClassifier({
        "m1": [signal("Globex", S.SCREENING)],
        "m2": [signal("Globex", S.INTERVIEW)],
        "m3": [signal("Globex", S.REJECTED)],
    })
    mailbox = FakeMailbox([make_message("m3", 3), make_message("m1", 1), make_message("m2", 2)])
    summary = _orchestrator(store, mailbox, classifier).run()

    assert summary.applications_updated == 3
    row = db_session.get(JobApplication, app_id)
    assert row.status == "Rejected"
    assert row.last_synced_message_id == "m3"
    assert row.notes.count("via email sync") == 3


def test_fetch_error_aborts_but_keeps_progress(db_session, store):
    _add_app(db_session, "Globex")
    _set_checkpoint(store)
    classifier = ScriptedClassifier({"m1": [signal("Globex", S.SCREENING)]})
    mailbox = FakeMailbox(
        [make_message("m1", 1), make_message("m2", 2), make_message("m3", 3)],
        get_errors={"m3": FetchError("connection reset")},
    )
    summary = _orchestrator(store, mailbox, classifier).run()

    assert summary.aborted
    assert summary.status == "failed"
    assert summary.messages_scanned == 2
    assert any("connection reset" in e for e in summary.errors)
    assert store.load_checkpoint().last_message_id == "m2"


def test_rate_limit_ends_run_successfully(db_session, store):
    _set_checkpoint(store)
    mailbox = FakeMailbox(
        [make_message("m1", 1), make_message("m2", 2)],
        get_errors={"m2": RateLimited()},
    )
    summary = _orchestrator(store, mailbox, ScriptedClassifier()).run()

    assert summary.rate_limited
    assert not summary.aborted
    assert summary.status == "rate_limited"
    assert summary.errors == []
    assert store.load_checkpoint().last_message_id == "m1"


def test_store_conflict_freezes_checkpoint_until_retried(db_session, store):
    a = _add_app(db_session, "Globex")
    b = _add_app(db_session, "Initech")
    _set_checkpoint(store)

    class ConflictingStore(SqlApplicationStore):
        def update_application_status(self, application_id, *args, **kwargs):
            if application_id == a:
                return False
            return super().update_application_status(application_id, *args, **kwargs)

    classifier = ScriptedClassifier({
        "m1": [signal("Globex", S.INTERVIEW)],
        "m2": [signal("Initech", S.SCREENING)],
    })
    mailbox = FakeMailbox([make_message("m1", 1), make_message("m2", 2)])

    summary = _orchestrator(ConflictingStore(db_session), mailbox, classifier).run()
    assert summary.conflicts == 1
    assert summary.applications_updated == 1
    assert db_session.get(JobApplication, a).status == "Applied"
    assert db_session.get(JobApplication, b).status == "Screening"
    assert store.load_checkpoint().key == (T0, "m0")

    summary = _orchestrator(store, mailbox, classifier).run()
    assert summary.applications_updated == 1
    assert summary.already_processed == 1
    assert db_session.get(JobApplication, a).status == "Interview"
    assert store.load_checkpoint().last_message_id == "m2"


def test_replay_after_conflict_does_not_reapply_later_updates(db_session, store):
    a = _add_app(db_session, "Globex")
    b = _add_app(db_session, "Initech", status="Screening")
    _set_checkpoint(store)

    class ConflictingStore(SqlApplicationStore):
        def update_application_status(self, application_id, *args, **kwargs):
            if application_id == a:
                return False
            return super().update_application_status(application_id, *args, **kwargs)

    classifier = ScriptedClassifier({
        "m1": [signal("Globex", S.INTERVIEW)],
        "m2": [signal("Initech", S.ON_HOLD)],
        "m3": [signal("Initech", S.INTERVIEW)],
    })
    mailbox = FakeMailbox([make_message("m1", 1), make_message("m2", 2), make_message("m3", 3)])

    summary = _orchestrator(ConflictingStore(db_session), mailbox, classifier).run()
    assert summary.conflicts == 1
    assert summary.applications_updated == 2
    assert db_session.get(JobApplication, b).status == "Interview"
    first_key = store.load_checkpoint().key
    assert first_key == (T0, "m0")

    spy = MagicMock(wraps=store)
    summary = _orchestrator(spy, mailbox, classifier).run()

    assert spy.update_application_status.call_count == 1
    assert summary.applications_updated == 1
    assert summary.already_processed == 2
    assert summary.invalid_transitions == 0
    assert db_session.get(JobApplication, a).status == "Interview"
    assert db_session.get(JobApplication, b).status == "Interview"
    assert classifier.calls["m2"] == 1
    assert classifier.calls["m3"] == 1
    final_key = store.load_checkpoint().key
    assert final_key == (T0 + timedelta(seconds=3), "m3")
    assert final_key > first_key


def test_unexpected_classifier_error_skips_only_that_message(db_session, store):
    app_id = _add_app(db_session, "Globex")
    _set_checkpoint(store)
    classifier = ScriptedClassifier({
        "m1": [AttributeError("'int' object has no attribute 'strip'")],
        "m2": [signal("Globex", S.SCREENING)],
    })
    mailbox = FakeMailbox([make_message("m1", 1), make_message("m2", 2)])

    summary = _orchestrator(store, mailbox, classifier).run()

    assert classifier.calls["m1"] == 1
    assert summary.status == "completed"
    assert len(summary.errors) == 1
    assert "m1" in summary.errors[0]
    assert "AttributeError" in summary.errors[0]
    assert summary.applications_updated == 1
    assert db_session.get(JobApplication, app_id).status == "Screening"
    assert store.load_checkpoint().key == (T0 + timedelta(seconds=2), "m2")


def test_no_signal_messages_advance_checkpoint(db_session, store):
    mailbox = FakeMailbox([make_message("m1", 1), make_message("m2", 2)])
    classifier = ScriptedClassifier(default=ClassificationResult(has_signal=False))
    summary = _orchestrator(store, mailbox, classifier).run()

    assert summary.messages_scanned == 2
    assert summary.signals_found == 0
    assert store.load_checkpoint().last_message_id == "m2"
