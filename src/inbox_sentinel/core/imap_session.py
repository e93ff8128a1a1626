"""Thin IMAP session wrapper: connect, authenticate, read the inbox, disconnect."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from email.errors import HeaderParseError
from email.header import decode_header, make_header
from typing import Any

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError

from inbox_sentinel.core.exceptions import ConnectivityError
from inbox_sentinel.core.models import AccountConfig, AuthMode, MessageSummary
from inbox_sentinel.core.oauth import TokenLifecycle

logger = logging.getLogger(__name__)

INBOX = "INBOX"
SUMMARY_ITEMS = [b"ENVELOPE", b"INTERNALDATE"]
ABORT_CHECK_SECONDS = 0.1


def _decode_header_value(raw: bytes | str | None) -> str:
    """Decode an RFC 2047 encoded envelope field to text."""
    if raw is None:
        return ""
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    try:
        return str(make_header(decode_header(text))).strip()
    except (HeaderParseError, UnicodeError, LookupError):
        return text.strip()


def _as_utc(value: Any) -> datetime | None:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def summary_from_fetch(uid: int, data: dict[bytes, Any]) -> MessageSummary:
    """Build a MessageSummary from one entry of an IMAP FETCH response."""
    envelope = data.get(b"ENVELOPE")
    subject = ""
    sender_name = ""
    sender_address = ""
    envelope_date = None

    if envelope is not None:
        subject = _decode_header_value(envelope.subject)
        envelope_date = _as_utc(envelope.date)
        senders = envelope.from_ or ()
        if senders:
            first = senders[0]
            sender_name = _decode_header_value(first.name)
            mailbox = _decode_header_value(first.mailbox)
            host = _decode_header_value(first.host)
            sender_address = f"{mailbox}@{host}" if mailbox and host else mailbox

    return MessageSummary(
        uid=int(uid),
        subject=subject,
        sender_name=sender_name,
        sender_address=sender_address,
        envelope_date=envelope_date,
        internal_date=_as_utc(data.get(b"INTERNALDATE")),
    )


def _shutdown_quietly(client: IMAPClient, where: str) -> None:
    try:
        client.shutdown()
    except (IMAPClientError, OSError) as e:
        logger.debug("Socket shutdown for %s failed: %s", where, e)


class _PendingConnect:
    """Runs the blocking IMAPClient handshake on a daemon thread.

    The caller waits on ``done`` and may abandon the attempt at any time. A
    client that finishes connecting after it was abandoned is shut down.
    """

    def __init__(self, connect: Callable[[], IMAPClient], *, name: str, where: str) -> None:
        self._connect = connect
        self._where = where
        self._lock = threading.Lock()
        self._abandoned = False
        self.done = threading.Event()
        self.client: IMAPClient | None = None
        self.error: Exception | None = None
        threading.Thread(target=self._run, name=name, daemon=True).start()

    def _run(self) -> None:
        try:
            client = self._connect()
        except Exception as e:
            self.error = e
            self.done.set()
            return
        with self._lock:
            if not self._abandoned:
                self.client, client = client, None
        self.done.set()
        if client is not None:
            logger.debug("Dropping connection to %s that completed after abort", self._where)
            _shutdown_quietly(client, self._where)

    def abandon(self) -> None:
        with self._lock:
            self._abandoned = True
            client, self.client = self.client, None
        if client is not None:
            _shutdown_quietly(client, self._where)


class ImapSession:
    """One connection to one concrete IMAP endpoint.

    Used for both one-shot verification and recurring polls. Every IMAP,
    socket and TLS failure surfaces as ConnectivityError; token errors from
    the OAuth refresh pass through unchanged.

    ``abort()`` may be called from any thread at any point, including while
    the connection is still being established. Once aborted the session
    refuses further work.
    """

    def __init__(
        self,
        config: AccountConfig,
        tokens: TokenLifecycle,
        *,
        timeout: float = 30.0,
    ) -> None:
        self._config = config
        self._tokens = tokens
        self._timeout = timeout
        self._client: IMAPClient | None = None
        self._lock = threading.Lock()
        self._aborted = threading.Event()

    @property
    def config(self) -> AccountConfig:
        return self._config

    @property
    def aborted(self) -> bool:
        return self._aborted.is_set()

    @property
    def client(self) -> IMAPClient:
        self._check_aborted()
        if self._client is None:
            raise RuntimeError("IMAP session not connected. Call connect() first.")
        return self._client

    def _describe(self) -> str:
        return f"{self._config.imap_host}:{self._config.imap_port}"

    def _check_aborted(self) -> None:
        if self._aborted.is_set():
            raise ConnectivityError(f"Session to {self._describe()} was aborted")

    def _new_client(self) -> IMAPClient:
        return IMAPClient(
            self._config.imap_host,
            port=self._config.imap_port,
            ssl=self._config.use_ssl,
            timeout=self._timeout,
        )

    def connect(self) -> None:
        """Open the connection and read the server greeting.

        The handshake runs on a helper thread; this call returns as soon as
        either it completes or ``abort()`` is called.
        """
        self._check_aborted()
        logger.debug("Connecting to %s (ssl=%s)", self._describe(), self._config.use_ssl)
        pending = _PendingConnect(
            self._new_client,
            name=f"imap-connect-{self._config.provider}",
            where=self._describe(),
        )
        while not pending.done.wait(ABORT_CHECK_SECONDS):
            if self._aborted.is_set():
                pending.abandon()
                self._check_aborted()

        if pending.error is not None:
            if isinstance(pending.error, (IMAPClientError, OSError)):
                raise ConnectivityError(
                    f"Could not connect to {self._describe()}: {pending.error}"
                ) from pending.error
            raise pending.error

        client = pending.client
        client.normalise_times = False
        with self._lock:
            if not self._aborted.is_set():
                self._client = client
                return
        _shutdown_quietly(client, self._describe())
        self._check_aborted()

    def authenticate(self) -> None:
        """Log in with a bearer token (OAuth) or username/password.

        OAuth never falls back to a password login, and password accounts
        never attempt an OAuth mechanism.
        """
        client = self.client
        username = self._config.login_name

        if self._config.auth_mode is AuthMode.OAUTH:
            access_token = self._tokens.ensure_valid_access_token(self._config)
            self._check_aborted()
            try:
                if not client.has_capability("AUTH=XOAUTH2") and client.has_capability(
                    "AUTH=OAUTHBEARER"
                ):
                    client.oauthbearer_login(username, access_token)
                else:
                    client.oauth2_login(username, access_token)
            except (IMAPClientError, OSError) as e:
                raise ConnectivityError(
                    f"OAuth login to {self._describe()} failed for {username}: {e}"
                ) from e
            return

        try:
            client.login(username, self._config.password)
        except (IMAPClientError, OSError) as e:
            raise ConnectivityError(
                f"Login to {self._describe()} failed for {username}: {e}"
            ) from e

    def open_inbox(self) -> None:
        try:
            self.client.select_folder(INBOX, readonly=True)
        except (IMAPClientError, OSError) as e:
            raise ConnectivityError(f"Could not open {INBOX} on {self._describe()}: {e}") from e

    def open(self) -> ImapSession:
        """Connect, authenticate and open the inbox read-only.

        An ``abort()`` that lands between steps is noticed before the next
        one starts; the OAuth refresh in particular may block on HTTP.
        """
        self.connect()
        try:
            self.authenticate()
            self._check_aborted()
            self.open_inbox()
            self._check_aborted()
        except BaseException:
            self._drop()
            raise
        return self

    def search_recent(self, days: int, now: datetime | None = None) -> list[int]:
        """UIDs of messages delivered within the last ``days`` days, ascending."""
        since = ((now or datetime.now(UTC)) - timedelta(days=days)).date()
        try:
            uids = self.client.search(["SINCE", since])
        except (IMAPClientError, OSError) as e:
            raise ConnectivityError(f"Inbox search on {self._describe()} failed: {e}") from e
        return sorted(int(uid) for uid in uids)

    def fetch_summaries(self, uids: Iterable[int]) -> list[MessageSummary]:
        """Envelope and internal date for exactly ``uids``, in ascending UID order."""
        wanted = list(uids)
        if not wanted:
            return []
        try:
            response = self.client.fetch(wanted, SUMMARY_ITEMS)
        except (IMAPClientError, OSError) as e:
            raise ConnectivityError(f"Fetch from {self._describe()} failed: {e}") from e
        return sorted(
            (summary_from_fetch(uid, data) for uid, data in response.items()),
            key=lambda s: s.uid,
        )

    def disconnect(self) -> None:
        """Log out politely, dropping the socket if the server misbehaves."""
        with self._lock:
            client, self._client = self._client, None
        if client is None:
            return
        try:
            client.logout()
        except (IMAPClientError, OSError) as e:
            logger.debug("Logout from %s failed, closing socket: %s", self._describe(), e)
            _shutdown_quietly(client, self._describe())

    def abort(self) -> None:
        """Close the socket immediately, unblocking any pending read or connect.

        Safe to call from another thread at any time, before or during
        ``open()``. The session cannot be used afterwards.
        """
        with self._lock:
            self._aborted.set()
        self._drop()

    def _drop(self) -> None:
        with self._lock:
            client, self._client = self._client, None
        if client is not None:
            _shutdown_quietly(client, self._describe())

    def verify(self) -> None:
        """Confirm the credentials by opening the inbox read-only, then disconnect."""
        self.open()
        self.disconnect()
        logger.info(
            "Verified %s as %s on %s",
            self._config.provider, self._config.login_name, self._describe(),
        )

    def __enter__(self) -> ImapSession:
        return self.open()

    def __exit__(self, *args: object) -> None:
        self.disconnect()
