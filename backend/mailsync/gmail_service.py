"""Gmail API integration: paged message listing since a checkpoint, bounded backoff, error mapping."""
import base64
import calendar
import os
import pickle
import re
import time
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import List, Optional

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .config import settings
from .errors import FetchError, RateLimited
from .schemas import MailMessage
from .services.message_fetcher import MessageRef, MessageRefPage

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]

_RATE_LIMIT_REASONS = ("ratelimitexceeded", "userratelimitexceeded", "quotaexceeded")

# Gmail caps a batch at 100 calls and throttles large ones; 50 stays under both.
MINIMAL_BATCH_SIZE = 50


def _resolve_path(path: str) -> str:
    if os.path.isabs(path):
        return path
    backend_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    return os.path.join(backend_dir, path)


class GmailAuthRequiredError(FetchError):
    """Raised when Gmail needs interactive OAuth (browser). Never attempted from a background run."""
    pass


def _save_token(creds, token_path: str) -> None:
    with open(token_path, "wb") as token:
        pickle.dump(creds, token)
    try:
        os.chmod(token_path, 0o600)
    except OSError:
        pass


def get_gmail_service(allow_interactive_oauth: bool = False):
    """
    Return Gmail API service. If allow_interactive_oauth is False (default) and
    we would need to open a browser (run_local_server), raises GmailAuthRequiredError
    so a background run fails fast instead of blocking.
    """
    creds = None
    token_path = _resolve_path(settings.token_path)
    creds_path = _resolve_path(settings.credentials_path)

    if os.path.exists(token_path):
        with open(token_path, "rb") as token:
            creds = pickle.load(token)

    if not creds or not creds.valid:
        if creds and creds.expired and creds.refresh_token:
            try:
                creds.refresh(Request())
            except GoogleAuthError as e:
                if not allow_interactive_oauth:
                    raise GmailAuthRequiredError(
                        "Gmail token expired and refresh failed. Run scripts/authorize_gmail.py to sign in again."
                    ) from e
                raise
        else:
            if not os.path.exists(creds_path):
                raise FileNotFoundError(
                    f"Gmail credentials not found at {creds_path}. "
                    "Download from Google Cloud Console and save as credentials.json"
                )
            if not allow_interactive_oauth:
                raise GmailAuthRequiredError(
                    "Gmail authorization required. Run scripts/authorize_gmail.py to sign in."
                )
            flow = InstalledAppFlow.from_client_secrets_file(creds_path, SCOPES)
            creds = flow.run_local_server(port=0)
        _save_token(creds, token_path)

    return build("gmail", "v1", credentials=creds, cache_discovery=False)


def _is_rate_limited(e: HttpError) -> bool:
    status = getattr(e.resp, "status", None)
    if status == 429:
        return True
    if status == 403:
        text = str(e).lower()
        return any(reason in text for reason in _RATE_LIMIT_REASONS)
    return False


def _retry_after(e: HttpError) -> Optional[float]:
    try:
        value = e.resp.get("retry-after")
        return float(value) if value is not None else None
    except (AttributeError, TypeError, ValueError):
        return None


def _with_backoff(fn, max_retries: Optional[int] = None):
    """
    Call fn, retrying 500/503 with exponential backoff up to max_retries.
    429 (and 403 rate-limit reasons) map to RateLimited without retry; everything
    else maps to FetchError.
    """
    if max_retries is None:
        max_retries = settings.gmail_max_retries
    attempt = 0
    while True:
        try:
            return fn()
        except HttpError as e:
            if _is_rate_limited(e):
                raise RateLimited(f"Gmail rate limit: {e}", retry_after=_retry_after(e)) from e
            if e.resp.status in (500, 503) and attempt < max_retries:
                time.sleep(2 ** attempt)
                attempt += 1
                continue
            raise FetchError(f"Gmail request failed ({e.resp.status}): {e}") from e
        except (OSError, GoogleAuthError) as e:
            raise FetchError(f"Gmail unreachable: {e}") from e


def _get_body(payload: dict) -> str:
    """Prefer text/plain anywhere in the MIME tree; fall back to tag-stripped text/html."""
    if payload.get("mimeType", "").startswith("text/plain") and payload.get("body", {}).get("data"):
        return _decode(payload["body"]["data"])
    parts = payload.get("parts") or []
    html = ""
    for part in parts:
        mime = part.get("mimeType", "")
        data = part.get("body", {}).get("data")
        if mime == "text/plain" and data:
            return _decode(data)
        if mime == "text/html" and data and not html:
            html = re.sub(r"<[^>]+>", " ", _decode(data))[:5000]
        if part.get("parts"):
            nested = _get_body(part)
            if nested:
                return nested
    if html:
        return html
    if payload.get("body", {}).get("data"):
        return _decode(payload["body"]["data"])
    return ""


def _decode(data: str) -> str:
    return base64.urlsafe_b64decode(data).decode("utf-8", errors="replace")


def _get_headers(email: dict) -> dict:
    return {h["name"].lower(): h["value"] for h in email.get("payload", {}).get("headers", [])}


def _to_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _get_received_at(email: dict) -> Optional[datetime]:
    """internalDate (ms since epoch) when present, else the Date header. Naive UTC."""
    internal = email.get("internalDate")
    if internal:
        try:
            return datetime.utcfromtimestamp(int(internal) / 1000.0)
        except (TypeError, ValueError):
            pass
    date_str = _get_headers(email).get("date")
    if not date_str:
        return None
    try:
        return _to_naive_utc(parsedate_to_datetime(date_str))
    except (TypeError, ValueError):
        return None


def email_to_message(email: dict) -> MailMessage:
    """Convert a full-format Gmail message into a MailMessage."""
    headers = _get_headers(email)
    received = _get_received_at(email)
    if received is None:
        raise FetchError(f"Gmail message {email.get('id')} has no receive time")
    return MailMessage(
        id=email.get("id", ""),
        received_at=received,
        sender=headers.get("from", ""),
        subject=headers.get("subject", ""),
        body_text=_get_body(email.get("payload", {})),
    )


def _after_epoch(since: datetime) -> int:
    # One second of slack; the fetcher filters exactly against the checkpoint.
    return max(0, calendar.timegm(since.timetuple()) - 1)


class GmailMailbox:
    """MailboxProvider over the Gmail REST API."""

    def __init__(self, service=None, query: Optional[str] = None, page_size: Optional[int] = None):
        self._service = service
        self.query = query if query is not None else settings.gmail_query
        self.page_size = min(page_size or settings.gmail_page_size, 500)

    @property
    def service(self):
        if self._service is None:
            try:
                self._service = get_gmail_service()
            except FileNotFoundError as e:
                raise FetchError(str(e)) from e
        return self._service

    def build_query(self, since: Optional[datetime]) -> str:
        parts = []
        if self.query:
            parts.append(f"({self.query})")
        if since is not None:
            parts.append(f"after:{_after_epoch(since)}")
        return " ".join(parts)

    def list_message_refs(self, since: Optional[datetime], page_token: Optional[str] = None) -> MessageRefPage:
        """One page of message ids (with receive times) matching the query after `since`."""
        query = self.build_query(since)
        result = _with_backoff(
            lambda: self.service.users()
            .messages()
            .list(userId="me", q=query, maxResults=self.page_size, pageToken=page_token or None)
            .execute()
        )
        ids = list(dict.fromkeys(msg["id"] for msg in result.get("messages", [])))
        received_times = {}
        for start in range(0, len(ids), MINIMAL_BATCH_SIZE):
            received_times.update(self._receive_times(ids[start:start + MINIMAL_BATCH_SIZE]))
        refs: List[MessageRef] = []
        for message_id in ids:
            received = received_times.get(message_id)
            if received is None:
                logger.warning(f"Skipping Gmail message {message_id}: deleted or no receive time")
                continue
            refs.append(MessageRef(id=message_id, received_at=received))
        return MessageRefPage(refs=refs, next_page_token=result.get("nextPageToken"))

    def _minimal_request(self, message_id: str):
        return self.service.users().messages().get(userId="me", id=message_id, format="minimal")

    def _receive_times(self, ids: List[str]) -> dict:
        """
        Receive time per id from one batched format=minimal request. Items that fail inside
        the batch are fetched again one by one through _with_backoff; 404s are dropped.
        """
        found = {}
        failed = {}

        def _collect(request_id, response, exception):
            if exception is None:
                found[request_id] = _get_received_at(response)
            else:
                failed[request_id] = exception

        def _execute():
            failed.clear()
            batch = self.service.new_batch_http_request(callback=_collect)
            for message_id in ids:
                batch.add(self._minimal_request(message_id), request_id=message_id)
            batch.execute()

        _with_backoff(_execute)
        for message_id, exc in failed.items():
            if isinstance(exc, HttpError):
                if exc.resp.status == 404:
                    continue
                if _is_rate_limited(exc):
                    raise RateLimited(f"Gmail rate limit: {exc}", retry_after=_retry_after(exc)) from exc
            minimal = _with_backoff(lambda: self._minimal_request(message_id).execute())
            found[message_id] = _get_received_at(minimal)
        return found

    def get_message(self, message_id: str) -> Optional[MailMessage]:
        """Full message, or None if it has been deleted since listing."""
        try:
            email = _with_backoff(
                lambda: self.service.users().messages().get(userId="me", id=message_id, format="full").execute()
            )
        except FetchError as e:
            cause = e.__cause__
            if isinstance(cause, HttpError) and cause.resp.status == 404:
                return None
            raise
        return email_to_message(email)
