"""Application matcher: rank open applications against a classified signal.

Composite score = 0.5 * company + 0.3 * title + 0.2 * recency.
- company: 1.0 when normalized names are equal (case-insensitive, legal suffixes
  stripped), otherwise token overlap as partial credit. Applications with no company
  overlap at all are never candidates.
- title: token overlap (Jaccard) of the two titles, ignoring filler words.
- recency: 1.0 if the application was updated within the recency window.

Candidates within `ambiguity_delta` of the top score make the match ambiguous; the
engine never picks between them.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional, Sequence

from ..config import settings
from ..schemas import ApplicationRecord, ClassificationResult, MatchCandidate, MatchedOn
from .classifier import normalize_company_name

logger = logging.getLogger(__name__)

COMPANY_WEIGHT = 0.5
TITLE_WEIGHT = 0.3
RECENCY_WEIGHT = 0.2

_TOKEN_RE = re.compile(r"[a-z0-9+#]+")
_TITLE_STOPWORDS = {"the", "a", "an", "of", "for", "and", "to", "at", "in", "role", "position", "job", "opening"}


def tokenize(text: Optional[str], stopwords: Optional[set] = None) -> set:
    tokens = set(_TOKEN_RE.findall((text or "").lower()))
    if stopwords:
        tokens -= stopwords
    return tokens


def token_overlap(a: set, b: set) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def company_key(name: Optional[str]) -> str:
    normalized = normalize_company_name(name).lower()
    return " ".join(_TOKEN_RE.findall(normalized))


def company_similarity(extracted: Optional[str], candidate: Optional[str]) -> float:
    a, b = company_key(extracted), company_key(candidate)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return token_overlap(set(a.split()), set(b.split()))


def title_similarity(extracted: Optional[str], candidate: Optional[str]) -> float:
    return token_overlap(tokenize(extracted, _TITLE_STOPWORDS), tokenize(candidate, _TITLE_STOPWORDS))


class MatchKind(str, Enum):
    NONE = "none"
    SINGLE = "single"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True)
class MatchResult:
    kind: MatchKind
    candidates: List[MatchCandidate] = field(default_factory=list)

    @property
    def best(self) -> Optional[MatchCandidate]:
        return self.candidates[0] if self.kind == MatchKind.SINGLE else None


class ApplicationMatcher:
    def __init__(
        self,
        min_score: Optional[float] = None,
        ambiguity_delta: Optional[float] = None,
        recency_days: Optional[int] = None,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self.min_score = settings.match_min_score if min_score is None else min_score
        self.ambiguity_delta = settings.match_ambiguity_delta if ambiguity_delta is None else ambiguity_delta
        self.recency_days = settings.match_recency_days if recency_days is None else recency_days
        self._now = now

    def score(self, result: ClassificationResult, application: ApplicationRecord, now: datetime) -> MatchCandidate:
        company = company_similarity(result.extracted_company, application.company_name)
        title = title_similarity(result.extracted_title, application.job_title)
        recency = 0.0
        if application.updated_at and now - application.updated_at <= timedelta(days=self.recency_days):
            recency = 1.0
        total = COMPANY_WEIGHT * company + TITLE_WEIGHT * title + RECENCY_WEIGHT * recency
        return MatchCandidate(
            application_id=application.id,
            score=round(total, 4),
            matched_on=MatchedOn(company=round(company, 4), title=round(title, 4), recency=recency),
        )

    def rank(self, result: ClassificationResult, applications: Sequence[ApplicationRecord]) -> List[MatchCandidate]:
        """Candidates at or above min_score, best first (ties broken by application id)."""
        now = self._now()
        ranked = []
        for app in applications:
            cand = self.score(result, app, now)
            if cand.matched_on.company <= 0.0 or cand.score < self.min_score:
                continue
            ranked.append(cand)
        ranked.sort(key=lambda c: (-c.score, c.application_id))
        return ranked

    def match(self, result: ClassificationResult, applications: Sequence[ApplicationRecord]) -> MatchResult:
        ranked = self.rank(result, applications)
        if not ranked:
            return MatchResult(kind=MatchKind.NONE)
        top = ranked[0].score
        contenders = [c for c in ranked if top - c.score <= self.ambiguity_delta + 1e-9]
        if len(contenders) > 1:
            logger.info(
                f"Ambiguous match for company={result.extracted_company!r}: "
                f"{[(c.application_id, c.score) for c in contenders]}"
            )
            return MatchResult(kind=MatchKind.AMBIGUOUS, candidates=contenders)
        return MatchResult(kind=MatchKind.SINGLE, candidates=[ranked[0]])
