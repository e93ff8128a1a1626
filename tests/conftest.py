"""Shared fixtures for Inbox Sentinel tests."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from inbox_sentinel.core.exceptions import ConnectivityError
from inbox_sentinel.core.models import AccountConfig, AuthMode, MessageSummary, OAuthToken

FIXED_NOW = datetime(2024, 1, 15, 10, 30, 0, tzinfo=UTC)


class FakeMailbox:
    """In-memory inbox shared by every FakeSession a factory hands out."""

    def __init__(self) -> None:
        self.messages: dict[int, MessageSummary] = {}
        self.fail_with: Exception | None = None
        self.verify_hook: Callable[[AccountConfig], None] | None = None
        self.block_search = False
        self.search_entered = threading.Event()
        self.search_released = threading.Event()
        self.sessions: list[FakeSession] = []
        self.fetched: list[list[int]] = []

    def deliver(
        self,
        uid: int,
        subject: str = "Hello",
        sender_name: str = "Alice",
        sender_address: str = "alice@example.com",
    ) -> MessageSummary:
        summary = MessageSummary(
            uid=uid,
            subject=subject,
            sender_name=sender_name,
            sender_address=sender_address,
            internal_date=FIXED_NOW + timedelta(minutes=uid),
        )
        self.messages[uid] = summary
        return summary

    def session_factory(self, config: AccountConfig) -> FakeSession:
        session = FakeSession(self, config)
        self.sessions.append(session)
        return session


class FakeSession:
    """Stands in for ImapSession.

    With ``block_search`` set, a search waits until ``search_released`` is set
    (and then succeeds) or ``abort()`` is called (and then fails).
    """

    def __init__(self, mailbox: FakeMailbox, config: AccountConfig) -> None:
        self.mailbox = mailbox
        self.config = config
        self.opened = False
        self.disconnected = False
        self.aborted = threading.Event()

    def open(self) -> FakeSession:
        if self.mailbox.fail_with is not None:
            raise self.mailbox.fail_with
        self.opened = True
        return self

    def search_recent(self, days: int, now: datetime | None = None) -> list[int]:
        if self.mailbox.block_search:
            self.mailbox.search_entered.set()
            for _ in range(100):
                if self.aborted.wait(0.05):
                    break
                if self.mailbox.search_released.is_set():
                    return sorted(self.mailbox.messages)
            raise ConnectivityError("socket closed")
        return sorted(self.mailbox.messages)

    def fetch_summaries(self, uids: Iterable[int]) -> list[MessageSummary]:
        wanted = list(uids)
        self.mailbox.fetched.append(wanted)
        return [self.mailbox.messages[uid] for uid in sorted(wanted)]

    def disconnect(self) -> None:
        self.disconnected = True

    def abort(self) -> None:
        self.aborted.set()

    def verify(self) -> None:
        if self.mailbox.verify_hook is not None:
            self.mailbox.verify_hook(self.config)
        self.open()
        self.disconnect()


def wait_until(predicate: Callable[[], object], timeout: float = 5.0) -> bool:
    """Poll ``predicate`` until it is truthy or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return bool(predicate())


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> Path:
    """Temporary database path for tests."""
    return tmp_path / "test.db"


@pytest.fixture
def mailbox() -> FakeMailbox:
    """An empty fake inbox."""
    return FakeMailbox()


@pytest.fixture
def password_config() -> AccountConfig:
    """A password-authenticated account on a generic provider."""
    return AccountConfig(
        provider="Fastmail",
        email_address="me@fastmail.com",
        password="app-password",
        imap_host="imap.fastmail.com",
    )


@pytest.fixture
def oauth_token() -> OAuthToken:
    """A token that stays valid for an hour after FIXED_NOW."""
    return OAuthToken(
        access_token="access-123",
        refresh_token="refresh-456",
        expires_at=FIXED_NOW + timedelta(hours=1),
        token_endpoint="https://login.example.com/token",
        client_id="client-id",
        scope="openid email https://mail.google.com/",
        account_email="me@gmail.com",
    )


@pytest.fixture
def oauth_config(oauth_token: OAuthToken) -> AccountConfig:
    """An OAuth Gmail account."""
    return AccountConfig(
        provider="Gmail",
        email_address="me@gmail.com",
        username="me@gmail.com",
        imap_host="imap.gmail.com",
        auth_mode=AuthMode.OAUTH,
        oauth_token=oauth_token,
    )
