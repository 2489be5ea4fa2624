"""In-memory mailbox and classifier doubles for sync tests."""
from collections import defaultdict
from datetime import datetime, timedelta

from mailsync.schemas import ClassificationResult, MailMessage
from mailsync.services.message_fetcher import MessageRef, MessageRefPage
from mailsync.status_machine import ApplicationStatus

T0 = datetime(2026, 3, 2, 9, 0, 0)

API_HEADERS = {"X-API-Key": "test-api-key"}


def make_message(mid: str, seconds_after_t0: int, subject: str = "Update", sender: str = "hr@example.com", body: str = ""):
    return MailMessage(
        id=mid,
        received_at=T0 + timedelta(seconds=seconds_after_t0),
        sender=sender,
        subject=subject,
        body_text=body,
    )


def signal(company: str, status: ApplicationStatus, confidence: float = 0.9, title=None) -> ClassificationResult:
    return ClassificationResult(
        has_signal=True,
        confidence=confidence,
        extracted_company=company,
        extracted_title=title,
        proposed_status=status,
    )


class FakeMailbox:
    """Pages newest-first like Gmail. list_errors / get_errors map a page number or message id to an exception."""

    def __init__(self, messages, page_size: int = 2, list_errors=None, get_errors=None, missing=()):
        self.messages = {m.id: m for m in messages}
        self.page_size = page_size
        self.list_errors = list_errors or {}
        self.get_errors = get_errors or {}
        self.missing = set(missing)
        self.list_calls = 0
        self.get_calls = []

    def list_message_refs(self, since, page_token=None):
        self.list_calls += 1
        if self.list_calls in self.list_errors:
            raise self.list_errors[self.list_calls]
        visible = sorted(
            (m for m in self.messages.values() if since is None or m.received_at >= since - timedelta(seconds=1)),
            key=lambda m: m.sort_key,
            reverse=True,
        )
        start = int(page_token or 0)
        chunk = visible[start:start + self.page_size]
        next_token = str(start + self.page_size) if start + self.page_size < len(visible) else None
        return MessageRefPage(
            refs=[MessageRef(id=m.id, received_at=m.received_at) for m in chunk],
            next_page_token=next_token,
        )

    def get_message(self, message_id):
        self.get_calls.append(message_id)
        if message_id in self.get_errors:
            raise self.get_errors[message_id]
        if message_id in self.missing:
            return None
        return self.messages[message_id]


class ScriptedClassifier:
    """Returns scripted results per message id; an Exception in a script is raised instead."""

    def __init__(self, scripts=None, default=None):
        self.scripts = {k: list(v) for k, v in (scripts or {}).items()}
        self.default = default or ClassificationResult(has_signal=False)
        self.calls = defaultdict(int)

    def classify(self, message):
        self.calls[message.id] += 1
        script = self.scripts.get(message.id)
        if not script:
            return self.default
        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, Exception):
            raise item
        return item
