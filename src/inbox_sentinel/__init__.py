"""Inbox Sentinel - Watch IMAP inboxes and raise keyword-classified new-mail events."""

from inbox_sentinel.core.models import (
    AccountConfig,
    AuthMode,
    MatchEvent,
    MonitorErrorEvent,
    OAuthToken,
)
from inbox_sentinel.core.oauth import TokenLifecycle
from inbox_sentinel.monitor.registry import MonitorRegistry

__all__ = [
    "AccountConfig",
    "AuthMode",
    "MatchEvent",
    "MonitorErrorEvent",
    "MonitorRegistry",
    "OAuthToken",
    "TokenLifecycle",
]
