"""Input adapters: one per external trigger source."""

from .base import BaseInputAdapter, IInputAdapter, format_validation_errors
from .db_trigger import DBTriggerAdapter
from .email import EmailAdapter, EmailProvider, EmailType, clean_subject, is_no_reply_address, parse_email_address
from .webhook import WebhookAdapter, sign_payload, verify_signature
from .worker import WorkerEventAdapter

__all__ = [
    "BaseInputAdapter",
    "DBTriggerAdapter",
    "EmailAdapter",
    "EmailProvider",
    "EmailType",
    "IInputAdapter",
    "WebhookAdapter",
    "WorkerEventAdapter",
    "clean_subject",
    "format_validation_errors",
    "is_no_reply_address",
    "parse_email_address",
    "sign_payload",
    "verify_signature",
]
