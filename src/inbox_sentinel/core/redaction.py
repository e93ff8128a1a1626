"""Masking of credentials and addresses in error text and log records."""

from __future__ import annotations

import logging
import re

_SECRET_FIELDS = (
    "access_token|refresh_token|id_token|client_secret|password|code_verifier|code"
)

_JSON_SECRET = re.compile(
    rf'(?i)((?<!\w)"?(?:{_SECRET_FIELDS})"?\s*[:=]\s*")([^"]+)(")'
)
_QUERY_SECRET = re.compile(rf"(?i)((?<!\w)(?:{_SECRET_FIELDS})=)([^&\s\"']+)")
_BEARER = re.compile(r"(?i)(Authorization\s*:\s*Bearer\s+)(\S+)")
_EMAIL = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")

REDACTED = "[REDACTED]"


def redact_secrets(text: str) -> str:
    """Mask token, password and authorization-code values in ``text``."""
    if not text:
        return ""
    text = _JSON_SECRET.sub(rf"\1{REDACTED}\3", text)
    text = _QUERY_SECRET.sub(rf"\1{REDACTED}", text)
    return _BEARER.sub(rf"\1{REDACTED}", text)


def redact_for_log(text: str) -> str:
    """Mask secrets and email addresses for persisted log output."""
    return _EMAIL.sub("[REDACTED_EMAIL]", redact_secrets(text))


class RedactingFilter(logging.Filter):
    """Logging filter that rewrites each record's message through redaction.

    Exception text is folded into the message so tracebacks are masked too.
    """

    def __init__(self, mask_emails: bool = True) -> None:
        super().__init__()
        self._redact = redact_for_log if mask_emails else redact_secrets

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{logging.Formatter().formatException(record.exc_info)}"
            record.exc_info = None
            record.exc_text = None
        record.msg = self._redact(message)
        record.args = None
        return True
