"""Message fetcher: ordered, restartable stream of mailbox messages after a checkpoint."""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterator, List, Optional, Protocol

from ..config import settings
from ..errors import RateLimited
from ..schemas import CheckpointState, MailMessage

logger = logging.getLogger(__name__)

MAX_PAGES = 200


@dataclass(frozen=True)
class MessageRef:
    id: str
    received_at: datetime

    @property
    def sort_key(self):
        return (self.received_at, self.id)


@dataclass(frozen=True)
class MessageRefPage:
    refs: List[MessageRef] = field(default_factory=list)
    next_page_token: Optional[str] = None


class MailboxProvider(Protocol):
    """Paged mailbox. Raises FetchError or RateLimited on failure."""

    def list_message_refs(self, since: Optional[datetime], page_token: Optional[str] = None) -> MessageRefPage: ...

    def get_message(self, message_id: str) -> Optional[MailMessage]: ...


class MessageFetcher:
    """
    Two phases: page through the provider's listing to collect references, then fetch
    full messages lazily in (received_at, id) order. Listing has to complete before
    anything is yielded because providers page newest-first; a partial listing has no
    safe oldest prefix.
    """

    def __init__(
        self,
        provider: MailboxProvider,
        max_messages: Optional[int] = None,
        initial_lookback_days: Optional[int] = None,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self.provider = provider
        self.max_messages = max_messages if max_messages is not None else settings.sync_max_messages_per_run
        self.initial_lookback_days = (
            initial_lookback_days if initial_lookback_days is not None else settings.sync_initial_lookback_days
        )
        self._now = now

    def window_start(self, checkpoint: Optional[CheckpointState]) -> datetime:
        if checkpoint is not None:
            return checkpoint.last_processed_timestamp
        return self._now() - timedelta(days=max(1, self.initial_lookback_days))

    def _collect_refs(self, since: datetime) -> List[MessageRef]:
        refs: dict[str, MessageRef] = {}
        page_token = None
        page_num = 0
        while True:
            page_num += 1
            try:
                page = self.provider.list_message_refs(since, page_token)
            except RateLimited:
                logger.warning(f"Rate limited while listing page {page_num}; nothing fetched this run")
                raise
            for ref in page.refs:
                refs[ref.id] = ref
            logger.debug(f"Listing page {page_num}: {len(page.refs)} refs ({len(refs)} total)")
            next_token = page.next_page_token
            if next_token is not None and next_token == page_token:
                logger.warning("Pagination stalled (repeated page token); stopping listing.")
                break
            page_token = next_token
            if not page_token:
                break
            if page_num >= MAX_PAGES:
                logger.warning("Pagination hit max page limit; stopping listing.")
                break
        return list(refs.values())

    def iter_messages(self, checkpoint: Optional[CheckpointState]) -> Iterator[MailMessage]:
        """
        Yield messages received strictly after checkpoint, oldest first. Calling again
        with the same checkpoint yields the same messages or a superset.
        """
        since = self.window_start(checkpoint)
        refs = self._collect_refs(since)
        if checkpoint is not None:
            refs = [r for r in refs if r.sort_key > checkpoint.key]
        else:
            refs = [r for r in refs if r.received_at >= since]
        refs.sort(key=lambda r: r.sort_key)
        if self.max_messages and len(refs) > self.max_messages:
            logger.info(f"{len(refs)} messages pending; processing the oldest {self.max_messages} this run")
            refs = refs[: self.max_messages]
        logger.info(f"Fetching {len(refs)} messages since {since.isoformat()}")

        for ref in refs:
            message = self.provider.get_message(ref.id)
            if message is None:
                logger.warning(f"Message {ref.id} disappeared before fetch; skipping")
                continue
            if checkpoint is not None and not checkpoint.is_before(message):
                continue
            yield message
