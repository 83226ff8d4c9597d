"""Inbound email adapter: provider parsing, classification and filtering."""

import json
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parseaddr, parsedate_to_datetime
from enum import Enum
from typing import Any

from ..event_bus import IEventBus
from ..logging_config import get_logger, log_context
from ..models import (
    EmailPayload,
    EventType,
    InputMetadata,
    InputSource,
    ProcessingResult,
    ValidationResult,
)
from .base import BaseInputAdapter

logger = get_logger(__name__)


class EmailType(str, Enum):
    NEW_INQUIRY = "new_inquiry"
    REPLY = "reply"
    AUTO_REPLY = "auto_reply"
    BOUNCE = "bounce"
    SPAM = "spam"
    FORWARD = "forward"
    NEWSLETTER = "newsletter"
    NOTIFICATION = "notification"


class EmailProvider(str, Enum):
    SENDGRID = "sendgrid"
    MAILGUN = "mailgun"
    GENERIC = "generic"


SPAM_SCORE_THRESHOLD = 5.0
SPAM_SCORE_CAP = 10.0

_I = re.IGNORECASE

AUTO_REPLY_SUBJECTS = [
    re.compile(p, _I)
    for p in (
        r"^auto[:\s-]*reply",
        r"^automatic\s+reply",
        r"^out\s+of\s+(the\s+)?office",
        r"^ooo[:\s]",
        r"away\s+from\s+(my\s+)?desk",
        r"^vacation\s+reply",
        r"^holiday\s+notice",
        r"^\[auto-?reply\]",
        r"^re:.*\[auto\]",
        r"on\s+leave",
        r"^automatic\s+response",
        r"abwesenheitsnotiz",
        r"absence\s+du\s+bureau",
    )
]
AUTO_SUBMITTED_VALUES = ("auto-replied", "auto-generated", "auto-notified")
AUTO_RESPONSE_SUPPRESS_VALUES = ("all", "oof", "autoreply")
AUTO_PRECEDENCE_VALUES = ("bulk", "junk", "list", "auto_reply")

BOUNCE_SUBJECTS = [
    re.compile(p, _I)
    for p in (
        r"^undelivered\s+mail",
        r"^returned\s+mail",
        r"^mail\s+delivery\s+(failed|failure|system)",
        r"^delivery\s+(status\s+)?notification",
        r"failure\s+notice",
        r"^undeliverable",
        r"could\s+not\s+be\s+delivered",
        r"^rejected",
        r"^(non[- ])?delivery\s+(report|notification)",
        r"^postmaster",
        r"^mailer[- ]daemon",
    )
]
BOUNCE_SENDERS = [
    re.compile(p, _I)
    for p in (
        r"^mailer-daemon@",
        r"^postmaster@",
        r"^mail-daemon@",
        r"^bounce",
        r"^noreply",
        r"^no-reply",
        r"^donotreply",
    )
]

SPAM_SUBJECTS = [
    re.compile(p, _I)
    for p in (
        r"\$\$\$",
        r"free\s+money",
        r"click\s+here\s+now",
        r"act\s+now",
        r"limited\s+time",
        r"congratulations.*winner",
        r"you'?ve?\s+won",
        r"claim\s+your\s+prize",
        r"nigerian?\s+prince",
        r"urgent.*transfer",
        r"viagra|cialis",
        r"\bsex\b",
        r"\bxxx\b",
    )
]

NEWSLETTER_HEADERS = ("list-unsubscribe", "list-id", "x-campaign", "x-mailchimp", "x-sendgrid-marketing")

REPLY_PREFIX = re.compile(r"^(re|aw|sv|antw|r|rif|res):\s*", _I)
FORWARD_PREFIX = re.compile(r"^(fwd?|fw|wg|vs|tr|i|rv|enc):\s*", _I)
SYSTEM_SENDERS = [re.compile(p, _I) for p in (r"^notify@", r"^notification", r"^alert@", r"^system@")]
NO_REPLY_SENDERS = [
    re.compile(p, _I)
    for p in (r"^no-?reply", r"^do-?not-?reply", r"^noreply", r"^mailer-?daemon", r"^postmaster", r"^bounce")
]
URGENT_SUBJECTS = [
    re.compile(p, _I)
    for p in (r"urgent", r"asap", r"emergency", r"critical", r"important", r"priority", r"time.?sensitive")
]

ADDRESS_RE = re.compile(r"[\w.+-]+@[\w.-]+\.\w+")

SENDER_FIELDS = ("from", "sender", "from_email", "fromEmail")
RECIPIENT_FIELDS = ("to", "recipient", "recipients", "to_email", "toEmail")
BODY_FIELDS = ("text", "body", "text_body", "textBody", "body-plain", "plain", "content")


@dataclass
class ParsedEmail:
    provider: EmailProvider
    message_id: str
    from_address: str
    to: list[str]
    subject: str
    text_body: str
    email_type: EmailType = EmailType.NEW_INQUIRY
    from_name: str | None = None
    html_body: str | None = None
    attachments: list[dict[str, Any]] = field(default_factory=list)
    headers: dict[str, str] = field(default_factory=dict)
    thread_id: str | None = None
    in_reply_to: str | None = None
    references: list[str] = field(default_factory=list)
    spam_score: float = 0.0
    is_spam: bool = False
    is_auto_reply: bool = False
    is_bounce: bool = False
    timestamp: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict)


# Address helpers


def extract_address(value: str | None) -> str:
    """Bare lower-cased address from ``"Name" <addr>`` or plain text."""
    if not value:
        return ""
    _, address = parseaddr(value)
    if address and "@" in address:
        return address.strip().lower()
    match = ADDRESS_RE.search(value)
    if match:
        return match.group(0).lower()
    return value.strip().lower()


def extract_display_name(value: str | None) -> str | None:
    if not value:
        return None
    name, _ = parseaddr(value)
    name = name.strip().strip('"')
    if name and "@" not in name:
        return name
    return None


def name_from_address(address: str) -> str:
    local = address.split("@")[0]
    if not local:
        return address
    return re.sub(r"[._-]", " ", local).title().strip()


def parse_email_address(value: str) -> dict[str, str | None]:
    address = extract_address(value)
    local, _, domain = address.partition("@")
    return {
        "email": address,
        "name": extract_display_name(value),
        "local_part": local,
        "domain": domain,
    }


def is_no_reply_address(address: str) -> bool:
    return any(p.search(address) for p in NO_REPLY_SENDERS)


def clean_subject(subject: str) -> str:
    """Strip any stack of reply/forward prefixes."""
    cleaned = subject.strip()
    while True:
        stripped = FORWARD_PREFIX.sub("", REPLY_PREFIX.sub("", cleaned))
        if stripped == cleaned:
            return cleaned.strip()
        cleaned = stripped


def parse_address_list(value: str | list[str] | None) -> list[str]:
    if not value:
        return []
    items = value if isinstance(value, list) else re.split(r",\s*", value)
    return [a for a in (extract_address(item) for item in items) if a]


# Header helpers


def parse_headers(headers: str | dict[str, str] | None) -> dict[str, str]:
    """Lower-cased header map from a dict or raw header text with folded lines."""
    if not headers:
        return {}
    if isinstance(headers, dict):
        return {str(k).lower(): str(v) for k, v in headers.items()}

    result: dict[str, str] = {}
    key = ""
    value = ""
    for line in re.split(r"\r?\n", headers):
        if line.startswith((" ", "\t")):
            value += " " + line.strip()
            continue
        if key:
            result[key.lower()] = value
        name, sep, rest = line.partition(":")
        if sep and name.strip():
            key, value = name.strip(), rest.strip()
        else:
            key, value = "", ""
    if key:
        result[key.lower()] = value
    return result


def parse_mailgun_headers(headers_json: str | None) -> dict[str, str]:
    if not headers_json:
        return {}
    try:
        pairs = json.loads(headers_json)
    except ValueError:
        return {}
    if not isinstance(pairs, list):
        return {}
    return {
        pair[0].lower(): pair[1]
        for pair in pairs
        if isinstance(pair, list) and len(pair) == 2 and all(isinstance(p, str) for p in pair)
    }


def parse_references(value: str | None) -> list[str]:
    if not value:
        return []
    return [r.strip("<>").strip() for r in value.split() if r.strip("<>").strip()]


def parse_attachments(data: Any, info: str | None = None) -> list[dict[str, Any]]:
    attachments: list[dict[str, Any]] = []

    if info:
        try:
            described = json.loads(info)
        except ValueError:
            described = {}
        if isinstance(described, dict):
            for key, details in described.items():
                if isinstance(details, dict):
                    attachments.append(
                        {
                            "filename": str(details.get("filename") or details.get("name") or key),
                            "content_type": str(
                                details.get("type")
                                or details.get("content-type")
                                or "application/octet-stream"
                            ),
                            "size": int(details.get("size") or 0),
                        }
                    )

    if isinstance(data, str) and data.startswith("["):
        try:
            data = json.loads(data)
        except ValueError:
            data = None

    if isinstance(data, list):
        for item in data:
            if isinstance(item, dict):
                attachments.append(
                    {
                        "filename": str(item.get("filename") or item.get("name") or "unknown"),
                        "content_type": str(
                            item.get("contentType")
                            or item.get("content_type")
                            or item.get("type")
                            or "application/octet-stream"
                        ),
                        "size": int(item.get("size") or 0),
                        "url": item.get("url"),
                    }
                )

    return attachments


def _parse_date(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        pass
    try:
        return parsedate_to_datetime(str(value))
    except (TypeError, ValueError):
        return None


def _first(raw: dict[str, Any], fields: tuple[str, ...]) -> Any:
    for name in fields:
        value = raw.get(name)
        if value:
            return value
    return None


def _to_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# Classification


def detect_auto_reply(subject: str, headers: dict[str, str]) -> bool:
    if any(p.search(subject) for p in AUTO_REPLY_SUBJECTS):
        return True
    auto_submitted = headers.get("auto-submitted", "").lower()
    if auto_submitted and any(v in auto_submitted for v in AUTO_SUBMITTED_VALUES):
        return True
    suppress = headers.get("x-auto-response-suppress", "").lower()
    if suppress and any(v in suppress for v in AUTO_RESPONSE_SUPPRESS_VALUES):
        return True
    if headers.get("precedence", "").lower() in AUTO_PRECEDENCE_VALUES:
        return True
    return "x-autoreply" in headers or "x-autorespond" in headers


def detect_bounce(subject: str, sender: str, headers: dict[str, str]) -> bool:
    if any(p.search(subject) for p in BOUNCE_SUBJECTS):
        return True
    if any(p.search(sender) for p in BOUNCE_SENDERS):
        return True
    return_path = extract_address(headers.get("return-path"))
    return bool(return_path) and any(p.search(return_path) for p in BOUNCE_SENDERS)


def score_spam(
    subject: str,
    provider_score: float | None,
    headers: dict[str, str],
    threshold: float = SPAM_SCORE_THRESHOLD,
) -> tuple[bool, float]:
    """Return (is_spam, score). The score is capped at 10."""
    score = provider_score or 0.0
    score += 2 * sum(1 for p in SPAM_SUBJECTS if p.search(subject))

    spf = headers.get("x-spf-result", "").lower()
    if spf and spf not in ("pass", "softfail"):
        score += 1
    dkim = headers.get("x-dkim-result", "").lower()
    if dkim and dkim != "pass":
        score += 1

    return score >= threshold, min(score, SPAM_SCORE_CAP)


def classify_email(email: ParsedEmail) -> EmailType:
    """Priority: bounce > spam > auto_reply > newsletter > forward > reply > notification > new_inquiry."""
    if email.is_bounce:
        return EmailType.BOUNCE
    if email.is_spam:
        return EmailType.SPAM
    if email.is_auto_reply:
        return EmailType.AUTO_REPLY
    if any(h in email.headers for h in NEWSLETTER_HEADERS):
        return EmailType.NEWSLETTER
    if FORWARD_PREFIX.search(email.subject):
        return EmailType.FORWARD
    if REPLY_PREFIX.search(email.subject) or email.in_reply_to or email.references:
        return EmailType.REPLY
    if any(p.search(email.from_address) for p in SYSTEM_SENDERS):
        return EmailType.NOTIFICATION
    return EmailType.NEW_INQUIRY


def calculate_priority(email: ParsedEmail) -> int:
    if email.is_spam or email.email_type == EmailType.NEWSLETTER:
        return 1
    if email.is_bounce or email.is_auto_reply:
        return 2

    priority = 3
    for pattern in URGENT_SUBJECTS:
        if pattern.search(email.subject):
            priority = min(priority + 1, 5)
    if email.email_type == EmailType.REPLY:
        priority = min(priority + 1, 5)
    return priority


# Provider parsers


def detect_provider(raw: dict[str, Any]) -> EmailProvider:
    if "envelope" in raw or (raw.get("from") and raw.get("to") and "dkim" in raw):
        return EmailProvider.SENDGRID
    if "sender" in raw and "recipient" in raw:
        return EmailProvider.MAILGUN
    return EmailProvider.GENERIC


def parse_sendgrid(raw: dict[str, Any]) -> ParsedEmail:
    headers = parse_headers(raw.get("headers"))
    if raw.get("dkim"):
        headers["x-dkim-result"] = str(raw["dkim"])
    if raw.get("SPF"):
        headers["x-spf-result"] = str(raw["SPF"])

    to = parse_address_list(raw.get("to"))
    if not to and raw.get("envelope"):
        try:
            to = parse_address_list(json.loads(raw["envelope"]).get("to"))
        except (ValueError, AttributeError):
            to = []

    return ParsedEmail(
        provider=EmailProvider.SENDGRID,
        message_id=headers.get("message-id") or "",
        from_address=extract_address(raw.get("from")),
        from_name=extract_display_name(raw.get("from")),
        to=to,
        subject=raw.get("subject") or "",
        text_body=raw.get("text") or "",
        html_body=raw.get("html"),
        attachments=parse_attachments(None, raw.get("attachment-info")),
        headers=headers,
        spam_score=_to_float(raw.get("spam_score")) or 0.0,
        timestamp=_parse_date(headers.get("date")),
        raw=raw,
    )


def parse_mailgun(raw: dict[str, Any]) -> ParsedEmail:
    headers = parse_mailgun_headers(raw.get("message-headers"))
    for key in ("Message-Id", "In-Reply-To", "References", "Date"):
        if raw.get(key):
            headers[key.lower()] = raw[key]
    if raw.get("X-Mailgun-Dkim-Check-Result"):
        headers["x-dkim-result"] = raw["X-Mailgun-Dkim-Check-Result"]
    if raw.get("X-Mailgun-Spf"):
        headers["x-spf-result"] = raw["X-Mailgun-Spf"]

    sender = raw.get("sender") or raw.get("from") or ""
    email = ParsedEmail(
        provider=EmailProvider.MAILGUN,
        message_id=headers.get("message-id") or "",
        from_address=extract_address(sender),
        from_name=extract_display_name(raw.get("from") or sender),
        to=parse_address_list(raw.get("recipient")),
        subject=raw.get("subject") or "",
        text_body=raw.get("stripped-text") or raw.get("body-plain") or "",
        html_body=raw.get("stripped-html") or raw.get("body-html"),
        attachments=parse_attachments(raw.get("attachments")),
        headers=headers,
        spam_score=_to_float(raw.get("X-Mailgun-Sscore")) or 0.0,
        timestamp=_parse_date(raw.get("timestamp")) or _parse_date(headers.get("date")),
        raw=raw,
    )
    email.is_spam = str(raw.get("X-Mailgun-Sflag", "")).lower() == "yes"
    return email


def parse_generic(raw: dict[str, Any]) -> ParsedEmail:
    headers = parse_headers(raw.get("headers"))
    sender = _first(raw, SENDER_FIELDS) or ""
    message_id = (
        _first(raw, ("message_id", "messageId", "Message-Id", "id"))
        or headers.get("message-id")
        or ""
    )
    return ParsedEmail(
        provider=EmailProvider.GENERIC,
        message_id=str(message_id),
        from_address=extract_address(sender),
        from_name=extract_display_name(sender),
        to=parse_address_list(_first(raw, RECIPIENT_FIELDS)),
        subject=raw.get("subject") or raw.get("title") or "",
        text_body=_first(raw, BODY_FIELDS) or "",
        html_body=_first(raw, ("html", "html_body", "htmlBody", "body-html")),
        attachments=parse_attachments(raw.get("attachments")),
        headers=headers,
        spam_score=_to_float(_first(raw, ("spam_score", "spamScore"))) or 0.0,
        timestamp=_parse_date(raw.get("timestamp")) or _parse_date(raw.get("date")),
        raw=raw,
    )


PARSERS = {
    EmailProvider.SENDGRID: parse_sendgrid,
    EmailProvider.MAILGUN: parse_mailgun,
    EmailProvider.GENERIC: parse_generic,
}


def parse_email(raw: dict[str, Any], spam_threshold: float = SPAM_SCORE_THRESHOLD) -> ParsedEmail:
    """Parse a provider payload and run every detector over it."""
    email = PARSERS[detect_provider(raw)](raw)

    if not email.message_id:
        email.message_id = f"{uuid.uuid4().hex[:16]}@opsflow-generated"
    if not email.from_name and email.from_address:
        email.from_name = name_from_address(email.from_address)

    email.in_reply_to = (email.headers.get("in-reply-to") or "").strip("<> ") or None
    email.references = parse_references(email.headers.get("references"))
    email.thread_id = email.in_reply_to or (email.references[0] if email.references else None)

    email.is_auto_reply = detect_auto_reply(email.subject, email.headers)
    email.is_bounce = detect_bounce(email.subject, email.from_address, email.headers)
    scored_spam, email.spam_score = score_spam(
        email.subject, email.spam_score, email.headers, spam_threshold
    )
    email.is_spam = email.is_spam or scored_spam
    email.email_type = classify_email(email)
    return email


class EmailAdapter(BaseInputAdapter):
    """Normalizes inbound email webhooks and publishes ``email:received``."""

    source = InputSource.EMAIL
    name = "email"

    def __init__(
        self,
        event_bus: IEventBus,
        org_id: str | None = None,
        skip_spam: bool = False,
        skip_bounces: bool = False,
        skip_auto_replies: bool = False,
        spam_threshold: float | None = None,
        allowed_domains: list[str] | None = None,
        blocked_domains: list[str] | None = None,
    ):
        super().__init__(event_bus, org_id)
        self._skip_spam = skip_spam
        self._skip_bounces = skip_bounces
        self._skip_auto_replies = skip_auto_replies
        self._spam_threshold = spam_threshold
        self._allowed_domains = {d.lower() for d in allowed_domains or []}
        self._blocked_domains = {d.lower() for d in blocked_domains or []}
        self._by_provider: dict[str, int] = {}

    def validate(self, raw: Any) -> ValidationResult:
        if not isinstance(raw, dict):
            return ValidationResult(is_valid=False, errors=["Input must be a non-null object"])

        errors = []
        if not _first(raw, SENDER_FIELDS):
            errors.append(
                "Missing sender email address (from, sender, from_email, or fromEmail field)"
            )
        if not _first(raw, RECIPIENT_FIELDS):
            errors.append(
                "Missing recipient email address "
                "(to, recipient, recipients, to_email, or toEmail field)"
            )
        if errors:
            return ValidationResult(is_valid=False, errors=errors)

        warnings = []
        if not raw.get("subject") and not raw.get("title"):
            warnings.append("Email has no subject line")
        if not _first(raw, BODY_FIELDS):
            warnings.append("Email has no text body")

        return ValidationResult(is_valid=True, warnings=warnings, sanitized=raw)

    def skip_reason(self, email: ParsedEmail) -> str | None:
        if self._skip_spam and email.is_spam:
            return "spam"
        if self._spam_threshold is not None and email.spam_score >= self._spam_threshold:
            return "spam_score"
        if self._skip_bounces and email.is_bounce:
            return "bounce"
        if self._skip_auto_replies and email.is_auto_reply:
            return "auto_reply"

        domain = email.from_address.partition("@")[2].lower()
        if self._allowed_domains and domain and domain not in self._allowed_domains:
            return "domain_not_allowed"
        if domain and domain in self._blocked_domains:
            return "domain_blocked"
        return None

    async def _process(
        self, raw: dict[str, Any], validation: ValidationResult, started: float
    ) -> ProcessingResult:
        threshold = self._spam_threshold if self._spam_threshold is not None else SPAM_SCORE_THRESHOLD
        email = parse_email(raw, threshold)
        self._by_provider[email.provider.value] = self._by_provider.get(email.provider.value, 0) + 1
        self._stats.extra["by_provider"] = dict(self._by_provider)

        agent_input = self._to_input(email)

        reason = self.skip_reason(email)
        if reason:
            return self._skipped_result(agent_input, reason, started, validation.warnings)

        payload = EmailPayload(
            email_id=email.message_id,
            from_address=email.from_address,
            to=list(email.to),
            subject=email.subject,
            body=email.text_body,
            email_type=email.email_type.value,
            thread_id=email.thread_id,
            attachments=[
                {k: a[k] for k in ("filename", "content_type", "size")} for a in email.attachments
            ],
            metadata={
                "provider": email.provider.value,
                "from_name": email.from_name,
                "spam_score": email.spam_score,
                "is_spam": email.is_spam,
                "is_auto_reply": email.is_auto_reply,
                "is_bounce": email.is_bounce,
            },
        )
        emit_result = await self.emit_event(EventType.EMAIL_RECEIVED, payload, agent_input)

        logger.info(
            "Email %s from %s classified as %s",
            email.message_id,
            email.from_address,
            email.email_type.value,
            extra=log_context(agent_input.correlation_id, thread_id=email.thread_id),
        )
        return self._success_result(agent_input, emit_result, started, validation.warnings)

    def _to_input(self, email: ParsedEmail):
        tags = [email.email_type.value, email.provider.value]
        if email.is_spam:
            tags.append("spam")
        if email.is_auto_reply:
            tags.append("auto-reply")
        if email.is_bounce:
            tags.append("bounce")
        tags.append("thread" if email.thread_id else "new")

        related = {"message_id": email.message_id}
        if email.thread_id:
            related["thread_id"] = email.thread_id

        return self.normalize_input(
            email.raw,
            f"email_{email.email_type.value}",
            metadata=InputMetadata(
                tags=tuple(tags),
                related_entity_ids=related,
                priority_hint=calculate_priority(email),
                sender_email=email.from_address,
                sender_name=email.from_name,
                headers=dict(email.headers),
                extra={
                    "email_type": email.email_type.value,
                    "provider": email.provider.value,
                    "spam_score": email.spam_score,
                    "attachment_count": len(email.attachments),
                },
            ),
            timestamp=email.timestamp if email.timestamp and email.timestamp.tzinfo else None,
        )

    def reset_stats(self) -> None:
        super().reset_stats()
        self._by_provider = {}
