"""Tests for ImapSession with a mocked IMAPClient."""

from __future__ import annotations

import threading
import time
from datetime import UTC, date, datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from imapclient.exceptions import IMAPClientError

from inbox_sentinel.core.exceptions import ConnectivityError, ReauthorizationRequiredError
from inbox_sentinel.core.imap_session import ImapSession, summary_from_fetch
from inbox_sentinel.core.models import AccountConfig


def _envelope(
    subject: bytes | None = b"Quarterly invoice",
    name: bytes | None = b"Billing Team",
    mailbox: bytes | None = b"billing",
    host: bytes | None = b"example.com",
    sent: datetime | None = None,
) -> SimpleNamespace:
    sender = SimpleNamespace(name=name, route=None, mailbox=mailbox, host=host)
    return SimpleNamespace(date=sent, subject=subject, from_=(sender,))


@pytest.fixture
def imap_client() -> MagicMock:
    """The mocked IMAPClient instance a session connects with."""
    return MagicMock()


@pytest.fixture
def imap_cls(imap_client: MagicMock):
    with patch("inbox_sentinel.core.imap_session.IMAPClient", return_value=imap_client) as cls:
        yield cls


@pytest.fixture
def tokens() -> MagicMock:
    tokens = MagicMock()
    tokens.ensure_valid_access_token.return_value = "fresh-access"
    return tokens


# ---------- summary_from_fetch ----------


class TestSummaryFromFetch:
    def test_reads_envelope(self) -> None:
        sent = datetime(2024, 1, 15, 9, 0, tzinfo=timezone(timedelta(hours=1)))
        summary = summary_from_fetch(
            42, {b"ENVELOPE": _envelope(sent=sent), b"INTERNALDATE": datetime(2024, 1, 15, 8, 1)}
        )
        assert summary.uid == 42
        assert summary.subject == "Quarterly invoice"
        assert summary.sender_name == "Billing Team"
        assert summary.sender_address == "billing@example.com"
        assert summary.envelope_date == datetime(2024, 1, 15, 8, 0, tzinfo=UTC)
        assert summary.internal_date == datetime(2024, 1, 15, 8, 1, tzinfo=UTC)

    def test_decodes_encoded_words(self) -> None:
        summary = summary_from_fetch(
            1, {b"ENVELOPE": _envelope(subject=b"=?utf-8?q?Caf=C3=A9_menu?=", name=None)}
        )
        assert summary.subject == "Café menu"
        assert summary.display_sender == "billing@example.com"

    def test_missing_envelope(self) -> None:
        summary = summary_from_fetch(7, {b"INTERNALDATE": datetime(2024, 1, 15, 8, 1)})
        assert summary.display_subject == "(No subject)"
        assert summary.display_sender == "Unknown sender"
        assert summary.received_at == datetime(2024, 1, 15, 8, 1, tzinfo=UTC)


# ---------- connect / authenticate ----------


class TestOpen:
    def test_password_login(
        self, imap_cls: MagicMock, imap_client: MagicMock, password_config: AccountConfig
    ) -> None:
        ImapSession(password_config, MagicMock(), timeout=5).open()

        imap_cls.assert_called_once_with("imap.fastmail.com", port=993, ssl=True, timeout=5)
        imap_client.login.assert_called_once_with("me@fastmail.com", "app-password")
        imap_client.oauth2_login.assert_not_called()
        imap_client.select_folder.assert_called_once_with("INBOX", readonly=True)

    def test_oauth_uses_xoauth2(
        self,
        imap_cls: MagicMock,
        imap_client: MagicMock,
        tokens: MagicMock,
        oauth_config: AccountConfig,
    ) -> None:
        imap_client.has_capability.side_effect = lambda cap: cap == "AUTH=XOAUTH2"
        ImapSession(oauth_config, tokens).open()

        tokens.ensure_valid_access_token.assert_called_once_with(oauth_config)
        imap_client.oauth2_login.assert_called_once_with("me@gmail.com", "fresh-access")
        imap_client.login.assert_not_called()

    def test_oauth_uses_oauthbearer_when_only_mechanism(
        self,
        imap_cls: MagicMock,
        imap_client: MagicMock,
        tokens: MagicMock,
        oauth_config: AccountConfig,
    ) -> None:
        imap_client.has_capability.side_effect = lambda cap: cap == "AUTH=OAUTHBEARER"
        ImapSession(oauth_config, tokens).open()

        imap_client.oauthbearer_login.assert_called_once_with("me@gmail.com", "fresh-access")
        imap_client.oauth2_login.assert_not_called()

    def test_token_errors_pass_through_and_close_socket(
        self,
        imap_cls: MagicMock,
        imap_client: MagicMock,
        tokens: MagicMock,
        oauth_config: AccountConfig,
    ) -> None:
        tokens.ensure_valid_access_token.side_effect = ReauthorizationRequiredError("reconnect")
        with pytest.raises(ReauthorizationRequiredError):
            ImapSession(oauth_config, tokens).open()
        imap_client.login.assert_not_called()
        imap_client.shutdown.assert_called_once()

    def test_connect_failure(self, imap_cls: MagicMock, password_config: AccountConfig) -> None:
        imap_cls.side_effect = OSError("connection refused")
        with pytest.raises(ConnectivityError, match="imap.fastmail.com:993"):
            ImapSession(password_config, MagicMock()).open()

    def test_login_failure_aborts(
        self, imap_cls: MagicMock, imap_client: MagicMock, password_config: AccountConfig
    ) -> None:
        imap_client.login.side_effect = IMAPClientError("AUTHENTICATIONFAILED")
        with pytest.raises(ConnectivityError, match="AUTHENTICATIONFAILED"):
            ImapSession(password_config, MagicMock()).open()
        imap_client.shutdown.assert_called_once()

    def test_select_failure(
        self, imap_cls: MagicMock, imap_client: MagicMock, password_config: AccountConfig
    ) -> None:
        imap_client.select_folder.side_effect = IMAPClientError("no such mailbox")
        with pytest.raises(ConnectivityError, match="INBOX"):
            ImapSession(password_config, MagicMock()).open()


# ---------- search / fetch ----------


class TestReading:
    def test_search_recent_uses_since_window(
        self, imap_cls: MagicMock, imap_client: MagicMock, password_config: AccountConfig
    ) -> None:
        imap_client.search.return_value = [9, 3, 5]
        session = ImapSession(password_config, MagicMock()).open()

        uids = session.search_recent(2, now=datetime(2024, 1, 15, 10, 0, tzinfo=UTC))

        assert uids == [3, 5, 9]
        imap_client.search.assert_called_once_with(["SINCE", date(2024, 1, 13)])

    def test_search_failure(
        self, imap_cls: MagicMock, imap_client: MagicMock, password_config: AccountConfig
    ) -> None:
        imap_client.search.side_effect = OSError("timed out")
        session = ImapSession(password_config, MagicMock()).open()
        with pytest.raises(ConnectivityError):
            session.search_recent(2)

    def test_fetch_summaries_sorted(
        self, imap_cls: MagicMock, imap_client: MagicMock, password_config: AccountConfig
    ) -> None:
        imap_client.fetch.return_value = {
            12: {b"ENVELOPE": _envelope(subject=b"second")},
            11: {b"ENVELOPE": _envelope(subject=b"first")},
        }
        session = ImapSession(password_config, MagicMock()).open()

        summaries = session.fetch_summaries([12, 11])

        assert [s.uid for s in summaries] == [11, 12]
        assert [s.subject for s in summaries] == ["first", "second"]
        imap_client.fetch.assert_called_once_with([12, 11], [b"ENVELOPE", b"INTERNALDATE"])

    def test_fetch_nothing(
        self, imap_cls: MagicMock, imap_client: MagicMock, password_config: AccountConfig
    ) -> None:
        session = ImapSession(password_config, MagicMock()).open()
        assert session.fetch_summaries([]) == []
        imap_client.fetch.assert_not_called()

    def test_requires_connection(self, password_config: AccountConfig) -> None:
        with pytest.raises(RuntimeError, match="not connected"):
            ImapSession(password_config, MagicMock()).search_recent(2)


# ---------- teardown ----------


class TestTeardown:
    def test_disconnect_logs_out(
        self, imap_cls: MagicMock, imap_client: MagicMock, password_config: AccountConfig
    ) -> None:
        session = ImapSession(password_config, MagicMock()).open()
        session.disconnect()
        imap_client.logout.assert_called_once()
        imap_client.shutdown.assert_not_called()

    def test_disconnect_falls_back_to_shutdown(
        self, imap_cls: MagicMock, imap_client: MagicMock, password_config: AccountConfig
    ) -> None:
        imap_client.logout.side_effect = OSError("broken pipe")
        session = ImapSession(password_config, MagicMock()).open()
        session.disconnect()
        imap_client.shutdown.assert_called_once()

    def test_abort_is_idempotent(
        self, imap_cls: MagicMock, imap_client: MagicMock, password_config: AccountConfig
    ) -> None:
        session = ImapSession(password_config, MagicMock()).open()
        session.abort()
        session.abort()
        imap_client.shutdown.assert_called_once()

    def test_verify_opens_and_disconnects(
        self, imap_cls: MagicMock, imap_client: MagicMock, password_config: AccountConfig
    ) -> None:
        ImapSession(password_config, MagicMock()).verify()
        imap_client.select_folder.assert_called_once_with("INBOX", readonly=True)
        imap_client.logout.assert_called_once()

    def test_context_manager(
        self, imap_cls: MagicMock, imap_client: MagicMock, password_config: AccountConfig
    ) -> None:
        with ImapSession(password_config, MagicMock()) as session:
            assert session.client is imap_client
        imap_client.logout.assert_called_once()


# ---------- abort during open ----------


class TestAbortDuringOpen:
    def _blocking_connect(self, imap_cls: MagicMock, imap_client: MagicMock):
        """Make IMAPClient() hang like a server that accepted but never greeted."""
        entered = threading.Event()
        release = threading.Event()

        def connect(*args, **kwargs):
            entered.set()
            release.wait(5)
            return imap_client

        imap_cls.side_effect = connect
        return entered, release

    def test_abort_releases_blocked_connect(
        self, imap_cls: MagicMock, imap_client: MagicMock, password_config: AccountConfig
    ) -> None:
        entered, release = self._blocking_connect(imap_cls, imap_client)
        session = ImapSession(password_config, MagicMock(), timeout=30)
        errors: list[Exception] = []

        def run() -> None:
            try:
                session.open()
            except ConnectivityError as e:
                errors.append(e)

        worker = threading.Thread(target=run)
        worker.start()
        assert entered.wait(2)

        session.abort()
        worker.join(2)

        assert not worker.is_alive()
        assert "aborted" in str(errors[0])
        imap_client.login.assert_not_called()

        # The handshake finishing later must not leak an open connection.
        imap_client.shutdown.assert_not_called()
        release.set()
        for _ in range(50):
            if imap_client.shutdown.called:
                break
            time.sleep(0.05)
        imap_client.shutdown.assert_called_once()

    def test_abort_before_open(
        self, imap_cls: MagicMock, password_config: AccountConfig
    ) -> None:
        session = ImapSession(password_config, MagicMock())
        session.abort()

        with pytest.raises(ConnectivityError, match="aborted"):
            session.open()
        imap_cls.assert_not_called()

    def test_abort_during_token_refresh_skips_login(
        self,
        imap_cls: MagicMock,
        imap_client: MagicMock,
        tokens: MagicMock,
        oauth_config: AccountConfig,
    ) -> None:
        session = ImapSession(oauth_config, tokens)

        def refresh(config: AccountConfig) -> str:
            session.abort()
            return "fresh-access"

        tokens.ensure_valid_access_token.side_effect = refresh

        with pytest.raises(ConnectivityError, match="aborted"):
            session.open()
        imap_client.oauth2_login.assert_not_called()
        imap_client.select_folder.assert_not_called()
        imap_client.shutdown.assert_called_once()
        assert session.aborted
