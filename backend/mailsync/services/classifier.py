"""Signal classification: one LLM call returning JSON, or a phrase rule set. Regex helpers for titles and details."""
import json
import logging
import re
from email.utils import parseaddr
from typing import Iterable, Optional, Protocol

from openai import OpenAI, OpenAIError
from pydantic import ValidationError

from ..config import settings
from ..errors import ClassificationError
from ..schemas import ClassificationResult, ExtractedDetails, MailMessage
from ..status_machine import ApplicationStatus, parse_status

logger = logging.getLogger(__name__)

RULE_CONFIDENCE = 0.8

_COMPANY_SUFFIXES = (
    "Inc", "Incorporated", "LLC", "L.L.C", "Corp", "Corporation", "Ltd", "Limited",
    "Co", "Company", "GmbH", "PLC", "LLP",
)
_ATS_DOMAINS = {
    "greenhouse", "greenhouse-mail", "lever", "hire", "myworkday", "myworkdayjobs", "workday",
    "icims", "jobvite", "smartrecruiters", "ashbyhq", "linkedin", "indeed", "gmail", "outlook",
}
_GENERIC_SENDER_WORDS = re.compile(
    r"\b(no[-\s]?reply|noreply|do[-\s]?not[-\s]?reply|careers?|recruiting|recruitment|talent|"
    r"acquisition|team|hiring|hr|jobs|people|notifications?|via|the)\b",
    re.I,
)


class SignalClassifier(Protocol):
    """Capability interface: classify one message or raise ClassificationError."""

    def classify(self, message: MailMessage) -> ClassificationResult: ...


# =============================================================================
# Shared helpers
# =============================================================================

def normalize_company_name(name: Optional[str]) -> str:
    """Strip suffixes like Inc/LLC/Corp/Corporation and trim."""
    if not name:
        return ""
    name = re.sub(r"\s+", " ", name.strip())
    changed = True
    while changed and name:
        changed = False
        for suffix in _COMPANY_SUFFIXES:
            pattern = re.compile(r"[\s,]+" + re.escape(suffix) + r"\.?$", re.I)
            stripped = pattern.sub("", name).strip()
            if stripped and stripped != name:
                name = stripped
                changed = True
    return name[:255]


def _normalize_text(*parts: str) -> str:
    text = " ".join(p or "" for p in parts)
    text = re.sub(r"\s+", " ", text.lower())
    return text.strip()


def _matches_any(text: str, patterns: Iterable[str]) -> bool:
    return any(re.search(p, text) for p in patterns)


def extract_job_title(subject: str, body: str = "") -> Optional[str]:
    """Extract job title from subject/body with regex."""
    subject = subject or ""
    patterns = [
        r"(?:position|role|job)\s*[:\-]\s*([^,\n|]+)",
        r"(?:for|regarding)\s+(?:the\s+)?([A-Z][\w/&+\- ]{2,60}?)\s+(?:position|role|opening)\b",
        r"application\s+(?:for|to)\s+(?:the\s+)?([A-Z][\w/&+\- ]{2,60}?)(?:\s+(?:at|with|position|role)\b|\s*$)",
    ]
    for pat in patterns:
        m = re.search(pat, subject, re.I)
        if m:
            return m.group(1).strip(" .-")[:200]
    text = f"{subject} {(body or '')[:1500]}"
    m = re.search(
        r"(?:position|role|title)\s*[:\-]?\s*([A-Z][a-zA-Z\s&]{3,50})(?:\s+at|\s*\.|\s*$|\n)",
        text,
    )
    if m:
        return m.group(1).strip()[:200]
    return None


def _domain_label(domain: str) -> str:
    """Registrable label of a domain: mail.globex.com -> globex, acme.co.uk -> acme."""
    parts = [p for p in (domain or "").split(".") if p]
    if len(parts) < 2:
        return parts[0] if parts else ""
    if len(parts) >= 3 and parts[-2] in ("co", "com", "ac", "org", "net") and len(parts[-1]) == 2:
        return parts[-3]
    return parts[-2]


def extract_company_from_sender(sender: str) -> Optional[str]:
    """Company from the sender's domain; from the display name when the domain is an ATS or webmail host."""
    display, address = parseaddr(sender or "")
    domain = address.split("@", 1)[1].lower() if "@" in address else ""
    domain_label = _domain_label(domain)
    if domain_label and domain_label not in _ATS_DOMAINS:
        return domain_label.capitalize()
    cleaned = re.sub(r"\s+via\s+.*$", "", display or "", flags=re.I)
    cleaned = _GENERIC_SENDER_WORDS.sub(" ", cleaned)
    cleaned = re.sub(r"[\s@|,:\-]+", " ", cleaned).strip()
    return cleaned or None


def extract_details(content: str, status: Optional[ApplicationStatus]) -> ExtractedDetails:
    details = ExtractedDetails()
    if status == ApplicationStatus.INTERVIEW:
        m = re.search(r"(\d{1,2}/\d{1,2}/\d{4}|\d{4}-\d{2}-\d{2})", content)
        if m:
            details.interview_date = m.group(1)
    elif status == ApplicationStatus.REJECTED:
        m = re.search(r"unfortunately[^.]*\.", content, re.I)
        if m:
            details.rejection_reason = m.group(0).strip()[:300]
    elif status == ApplicationStatus.OFFER:
        m = re.search(r"\$[\d,]+(?:\.\d{2})?", content)
        if m:
            details.offer_details = m.group(0)
    m = re.search(r"next steps?[:\s]+([^.\n]+)", content, re.I)
    if m:
        details.next_steps = m.group(1).strip()[:300]
    return details


# =============================================================================
# Rule set
# =============================================================================

_OFFER_PHRASES = [
    r"we(?:'|’)?re\s+pleased\s+to\s+offer",
    r"we(?:'|’)?d\s+like\s+to\s+extend\s+an?\s+offer",
    r"offer\s+letter",
    r"congratulations\s+on\s+your\s+offer",
    r"compensation\s+package",
]
_REJECTION_PHRASES = [
    r"unfortunately",
    r"regret\s+to\s+inform",
    r"we(?:'|’)?re\s+sorry\s+to\s+inform",
    r"not\s+moving\s+forward",
    r"will\s+not\s+be\s+moving\s+forward",
    r"decided\s+to\s+move\s+forward\s+with\s+other\s+candidates",
    r"not\s+selected",
    r"position\s+has\s+been\s+filled",
]
_ON_HOLD_PHRASES = [
    r"on\s+hold",
    r"(?:hiring|search|process)\s+(?:has\s+been\s+)?(?:paused|postponed|delayed)",
    r"hiring\s+freeze",
]
_INTERVIEW_PHRASES = [
    r"invit(?:e|ing)\s+you\s+(?:for|to)\s+an?\s+interview",
    r"schedule\s+an?\s+interview",
    r"interview\s+with\s+our\s+team",
    r"next\s+step.*interview",
    r"onsite\s+interview",
    r"panel\s+interview",
    r"technical\s+interview",
    r"coding\s+challenge",
    r"take[-\s]?home\s+assignment",
]
_SCREENING_PHRASES = [
    r"intro(?:ductory)?\s+call",
    r"phone\s+screen",
    r"recruiter\s+screen",
    r"screening\s+call",
    r"first\s+round",
]
_APPLIED_PHRASES = [
    r"thank\s+you\s+for\s+applying",
    r"thanks?\s+for\s+applying",
    r"we\s+received\s+your\s+application",
    r"application\s+received",
    r"your\s+application\s+has\s+been\s+received",
]
_CONDITIONAL_INTERVIEW = [
    r"if\s+(?:you(?:'|’)?re|we(?:'|’)?re)\s+selected\s+for\s+an?\s+interview",
    r"if\s+selected\s+for\s+an?\s+interview",
    r"if\s+we\s+decide\s+to\s+move\s+forward",
]

_RULES = [
    (ApplicationStatus.OFFER, _OFFER_PHRASES),
    (ApplicationStatus.ON_HOLD, _ON_HOLD_PHRASES),
    (ApplicationStatus.REJECTED, _REJECTION_PHRASES),
    (ApplicationStatus.SCREENING, _SCREENING_PHRASES),
    (ApplicationStatus.INTERVIEW, _INTERVIEW_PHRASES),
    (ApplicationStatus.APPLIED, _APPLIED_PHRASES),
]


def rule_based_status(subject: str, body: str) -> Optional[ApplicationStatus]:
    """Return the first status whose phrases match; None when nothing is clear."""
    text = _normalize_text(subject, body)
    for status, phrases in _RULES:
        if status in (ApplicationStatus.SCREENING, ApplicationStatus.INTERVIEW) and _matches_any(
            text, _CONDITIONAL_INTERVIEW
        ):
            continue
        if _matches_any(text, phrases):
            return status
    return None


class RuleBasedSignalClassifier:
    """Deterministic classifier; never raises."""

    def classify(self, message: MailMessage) -> ClassificationResult:
        status = rule_based_status(message.subject, message.body_text)
        if status is None:
            return ClassificationResult(has_signal=False, confidence=0.0)
        content = f"{message.subject}\n\n{message.body_text}"
        return ClassificationResult(
            has_signal=True,
            confidence=RULE_CONFIDENCE,
            extracted_company=extract_company_from_sender(message.sender),
            extracted_title=extract_job_title(message.subject, message.body_text),
            proposed_status=status,
            details=extract_details(content, status),
        )


# =============================================================================
# LLM
# =============================================================================

_STATUS_CHOICES = ", ".join(s.value for s in ApplicationStatus)

_PROMPT = """You track job applications. Decide whether this email changes the status of a job application the recipient already submitted.

Return JSON with exactly these keys:
- "has_signal": true only if the email is from an employer or recruiter about an existing application and implies a status
- "confidence": number 0..1
- "company_name": hiring company (not the ATS vendor such as Greenhouse or Workday), or null
- "job_title": role title, or null
- "new_status": one of [{statuses}], or null
- "interview_date": date string if an interview is scheduled, else null
- "rejection_reason": one sentence if rejected, else null
- "offer_details": salary or package summary if an offer, else null
- "next_steps": short text, else null

Newsletters, job alerts, and recruiter cold outreach have has_signal=false.
"If selected for an interview" style language is NOT an interview.

Email:
Subject: {subject}
From: {sender}
Body: {body}

Return ONLY valid JSON, no other text."""


def _optional_str(data: dict, key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ClassificationError(f"LLM field {key} is not a string: {value!r}")
    return value.strip() or None


def _parse_llm_payload(data: dict, message: MailMessage) -> ClassificationResult:
    """Build a ClassificationResult from raw LLM JSON. Raises ClassificationError on malformed data."""
    if not isinstance(data, dict):
        raise ClassificationError("LLM response is not a JSON object")
    if "has_signal" not in data:
        raise ClassificationError("LLM response missing has_signal")
    confidence = data.get("confidence")
    if confidence is None:
        confidence = 0.0
    if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
        raise ClassificationError(f"LLM confidence is not a number: {confidence!r}")
    confidence = max(0.0, min(1.0, float(confidence)))

    has_signal = bool(data.get("has_signal"))
    raw_status = _optional_str(data, "new_status")
    status = parse_status(raw_status)
    if has_signal and status is None:
        logger.info(f"Message {message.id}: LLM signal with unknown status {raw_status!r}; ignoring")
        has_signal = False

    company = _optional_str(data, "company_name")
    title = _optional_str(data, "job_title")
    if not title:
        title = extract_job_title(message.subject, message.body_text)
    if not company:
        company = extract_company_from_sender(message.sender)

    details = extract_details(f"{message.subject}\n\n{message.body_text}", status)
    for key in ("interview_date", "rejection_reason", "offer_details", "next_steps"):
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            setattr(details, key, value.strip()[:300])

    try:
        return ClassificationResult(
            has_signal=has_signal,
            confidence=confidence,
            extracted_company=company[:255] if company else None,
            extracted_title=title[:255] if title else None,
            proposed_status=status if has_signal else None,
            details=details,
        )
    except ValidationError as e:
        raise ClassificationError(f"LLM response failed validation: {e}") from e


class OpenAISignalClassifier:
    """Classifier backed by an OpenAI chat model in JSON mode. No retries here."""

    def __init__(self, client: Optional[OpenAI] = None, model: Optional[str] = None, temperature: Optional[float] = None):
        self._client = client
        self.model = model or settings.openai_model
        self.temperature = settings.openai_temperature if temperature is None else temperature

    def _get_client(self) -> OpenAI:
        if self._client is None:
            if not settings.openai_api_key:
                raise ClassificationError("OPENAI_API_KEY not set. Add to .env or environment.")
            self._client = OpenAI(api_key=settings.openai_api_key)
        return self._client

    def classify(self, message: MailMessage) -> ClassificationResult:
        prompt = _PROMPT.format(
            statuses=_STATUS_CHOICES,
            subject=message.subject,
            sender=message.sender,
            body=(message.body_text or "")[:3000],
        )
        client = self._get_client()
        try:
            response = client.chat.completions.create(
                model=self.model,
                temperature=self.temperature,
                max_tokens=400,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": "Return strict JSON only. Do not add markdown or commentary."},
                    {"role": "user", "content": prompt},
                ],
            )
        except OpenAIError as e:
            raise ClassificationError(f"OpenAI request failed: {e}") from e

        text = (response.choices[0].message.content or "").strip() if response.choices else ""
        # Strip markdown code block if present
        if text.startswith("```"):
            text = re.sub(r"^```\w*\n?", "", text).replace("```", "").strip()
        if not text:
            raise ClassificationError("OpenAI returned an empty response")
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ClassificationError(f"OpenAI returned invalid JSON: {e}") from e
        return _parse_llm_payload(data, message)


def get_signal_classifier(backend: Optional[str] = None) -> SignalClassifier:
    backend = (backend or settings.classifier_backend or "openai").strip().lower()
    if backend == "rules":
        return RuleBasedSignalClassifier()
    if backend == "openai":
        return OpenAISignalClassifier()
    raise ValueError(f"Unknown classifier backend: {backend!r}")
