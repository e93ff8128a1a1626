"""Domain model for Inbox Sentinel: account configs, tokens and monitor events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from inbox_sentinel.core.redaction import redact_secrets

DEFAULT_IMAP_PORT = 993
DEFAULT_POLL_INTERVAL_SECONDS = 25
MIN_POLL_INTERVAL_SECONDS = 10
TOKEN_REFRESH_MARGIN = timedelta(minutes=2)

NO_SUBJECT = "(No subject)"
UNKNOWN_SENDER = "Unknown sender"


class AuthMode(str, Enum):
    """How an account authenticates against its IMAP server."""

    PASSWORD = "password"
    OAUTH = "oauth"


class MonitorState(str, Enum):
    """Lifecycle of a single account monitor."""

    PRIMING = "priming"
    IDLE = "idle"
    POLLING = "polling"
    STOPPED = "stopped"


@dataclass(repr=False)
class OAuthToken:
    """OAuth credentials owned by one account.

    Mutable: a refresh replaces the access token and expiry in place so every
    config sharing this object sees the renewed credentials.
    """

    access_token: str
    refresh_token: str = ""
    expires_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    token_endpoint: str = ""
    client_id: str = ""
    client_secret: str = ""
    scope: str = ""
    account_email: str = ""

    def is_valid(self, now: datetime | None = None, margin: timedelta = TOKEN_REFRESH_MARGIN) -> bool:
        """True when the access token can be used without refreshing."""
        now = now or datetime.now(UTC)
        return bool(self.access_token.strip()) and self.expires_at > now + margin

    def apply_refresh(self, refreshed: OAuthToken) -> None:
        """Copy renewed credentials from a refresh response.

        Providers may omit ``refresh_token`` on refresh, in which case the
        stored one is kept.
        """
        self.access_token = refreshed.access_token
        self.expires_at = refreshed.expires_at
        if refreshed.refresh_token.strip():
            self.refresh_token = refreshed.refresh_token
        if refreshed.account_email.strip():
            self.account_email = refreshed.account_email

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat(),
            "token_endpoint": self.token_endpoint,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "scope": self.scope,
            "account_email": self.account_email,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OAuthToken:
        expires_at = datetime.fromisoformat(data["expires_at"])
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        return cls(
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token", ""),
            expires_at=expires_at,
            token_endpoint=data.get("token_endpoint", ""),
            client_id=data.get("client_id", ""),
            client_secret=data.get("client_secret", ""),
            scope=data.get("scope", ""),
            account_email=data.get("account_email", ""),
        )

    def __repr__(self) -> str:
        return (
            f"OAuthToken(expires_at={self.expires_at.isoformat()!r}, "
            f"token_endpoint={self.token_endpoint!r}, scope={self.scope!r}, "
            f"account_email={self.account_email!r})"
        )


@dataclass(frozen=True, repr=False)
class AccountConfig:
    """Connection settings for one monitored mailbox.

    Immutable; the embedded ``oauth_token`` is the only part that changes,
    and only through a token refresh.
    """

    provider: str
    email_address: str
    username: str = ""
    password: str = ""
    imap_host: str = ""
    imap_port: int = DEFAULT_IMAP_PORT
    use_ssl: bool = True
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS
    auth_mode: AuthMode = AuthMode.PASSWORD
    oauth_token: OAuthToken | None = None

    @property
    def login_name(self) -> str:
        """Username used to authenticate, falling back to the email address."""
        return self.username.strip() or self.email_address.strip()

    def effective_poll_interval(self, minimum: int = MIN_POLL_INTERVAL_SECONDS) -> int:
        return max(minimum, self.poll_interval_seconds)

    def __repr__(self) -> str:
        return (
            f"AccountConfig(provider={self.provider!r}, email_address={self.email_address!r}, "
            f"username={self.username!r}, imap_host={self.imap_host!r}, "
            f"imap_port={self.imap_port}, use_ssl={self.use_ssl}, "
            f"auth_mode={self.auth_mode.value!r})"
        )


@dataclass(frozen=True)
class MessageSummary:
    """Envelope-level view of one inbox message."""

    uid: int
    subject: str = ""
    sender_name: str = ""
    sender_address: str = ""
    envelope_date: datetime | None = None
    internal_date: datetime | None = None

    @property
    def display_subject(self) -> str:
        return self.subject.strip() or NO_SUBJECT

    @property
    def display_sender(self) -> str:
        return self.sender_name.strip() or self.sender_address.strip() or UNKNOWN_SENDER

    @property
    def received_at(self) -> datetime:
        return self.envelope_date or self.internal_date or datetime.now(UTC)


@dataclass(frozen=True)
class MatchEvent:
    """A newly detected message, handed to match subscribers."""

    provider: str
    sender: str
    subject: str
    preview: str
    received_at: datetime
    is_warning: bool = False

    def as_toast(self) -> tuple[str, str, str, str]:
        """Flat tuple consumed by notification surfaces."""
        return (self.provider, self.sender, self.subject, self.preview)


@dataclass(frozen=True)
class MonitorErrorEvent:
    """A failure inside one account's monitor."""

    provider: str
    error: BaseException

    def describe(self) -> str:
        """Short human-readable summary followed by redacted technical detail."""
        summary = getattr(self.error, "user_message", "Unexpected monitoring failure.")
        detail = redact_secrets(str(self.error)) or type(self.error).__name__
        return f"{self.provider}: {summary} ({detail})"
