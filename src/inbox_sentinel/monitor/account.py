"""Per-account polling loop with duplicate suppression."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable

from inbox_sentinel.core.exceptions import MonitorCancelledError
from inbox_sentinel.core.imap_session import ImapSession
from inbox_sentinel.core.models import (
    MIN_POLL_INTERVAL_SECONDS,
    AccountConfig,
    MatchEvent,
    MessageSummary,
    MonitorErrorEvent,
    MonitorState,
)
from inbox_sentinel.monitor.keywords import is_warning, normalize_keywords
from inbox_sentinel.monitor.seen_window import DEFAULT_CAPACITY, SeenIdWindow

logger = logging.getLogger(__name__)

KeywordSource = Callable[[], Iterable[str]]
SessionFactory = Callable[[AccountConfig], ImapSession]


class AccountMonitor:
    """Owns one account: a background poll/sleep thread, its seen-id window and poll gate.

    State machine: PRIMING → IDLE ⇄ POLLING → STOPPED.

    The poll gate serializes scheduled polls and manual ``poll()`` calls, so
    the seen window and the OAuth token are only ever touched by one poll at
    a time. Match events are collected under the gate and delivered after it
    is released. ``stop()`` interrupts a poll blocked on the network by
    closing its socket, then waits until the thread has exited, no poll holds
    the gate and no handler is running on another thread.
    """

    def __init__(
        self,
        config: AccountConfig,
        *,
        keyword_source: KeywordSource,
        on_match: Callable[[MatchEvent], None],
        on_error: Callable[[MonitorErrorEvent], None],
        session_factory: SessionFactory,
        on_token_refreshed: Callable[[AccountConfig], None] | None = None,
        seen_capacity: int = DEFAULT_CAPACITY,
        search_window_days: int = 2,
        max_candidates: int = 60,
        min_interval_seconds: int = MIN_POLL_INTERVAL_SECONDS,
        max_backoff_seconds: float = 300.0,
        gate_wait_seconds: float = 0.2,
    ) -> None:
        self._config = config
        self._keyword_source = keyword_source
        self._on_match = on_match
        self._on_error = on_error
        self._session_factory = session_factory
        self._on_token_refreshed = on_token_refreshed
        self._search_window_days = search_window_days
        self._max_candidates = max_candidates
        self._min_interval = min_interval_seconds
        self._max_backoff = max_backoff_seconds
        self._gate_wait = gate_wait_seconds

        self._seen = SeenIdWindow(seen_capacity)
        self._gate = threading.Lock()
        self._gate_owner: int | None = None
        self._emit_lock = threading.RLock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._session: ImapSession | None = None
        self._session_lock = threading.Lock()
        self._state = MonitorState.PRIMING
        self._failures = 0

    @property
    def provider(self) -> str:
        return self._config.provider

    @property
    def config(self) -> AccountConfig:
        return self._config

    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def seen(self) -> SeenIdWindow:
        return self._seen

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def prime(self) -> None:
        """Seed the seen window with current mail without emitting events."""
        self._state = MonitorState.PRIMING
        self.poll(emit=False)
        logger.info("Primed %s with %d known messages", self.provider, len(self._seen))

    def start(self) -> None:
        """Start the background poll loop."""
        if self._thread is not None:
            raise RuntimeError(f"Monitor for {self.provider} already started")
        self._thread = threading.Thread(
            target=self._run, name=f"monitor-{self.provider}", daemon=True
        )
        self._thread.start()

    def poll(self, emit: bool = True) -> int:
        """Run one poll under the gate, then deliver its events.

        Handlers run after the gate is released, so a handler may stop,
        replace or remove this very monitor.

        Args:
            emit: Deliver MatchEvents; False only seeds the seen window.

        Returns:
            Number of new messages reported.

        Raises:
            MonitorCancelledError: The monitor is stopping.
            InboxSentinelError: Connectivity or token failure.
        """
        self._acquire_gate()
        try:
            events = self._poll_locked(emit)
        finally:
            self._release_gate()
        return self._publish(events)

    def next_delay(self) -> float:
        """Seconds to sleep before the next scheduled poll.

        Consecutive failures stretch the interval exponentially up to
        ``max_backoff_seconds``; a successful poll resets it.
        """
        base = self._config.effective_poll_interval(self._min_interval)
        if self._failures == 0:
            return float(base)
        stretched = base * 2 ** min(self._failures - 1, 16)
        return float(min(stretched, max(base, self._max_backoff)))

    def stop(self, timeout: float | None = None) -> None:
        """Cancel the loop and block until it has stopped.

        Safe to call more than once, and from inside a match or token
        handler. No event is emitted after it returns.
        """
        self._stop.set()
        with self._session_lock:
            session = self._session
        if session is not None:
            session.abort()

        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Monitor thread for %s did not stop within %ss", self.provider, timeout)

        # A manual poll on another thread may still hold the gate or be
        # running a handler; wait for both to unwind.
        owns_gate = self._gate_owner == threading.get_ident()
        if not owns_gate:
            self._gate.acquire()
        try:
            with self._emit_lock:
                self._state = MonitorState.STOPPED
        finally:
            if not owns_gate:
                self._gate.release()

    def _acquire_gate(self) -> None:
        while not self._gate.acquire(timeout=self._gate_wait):
            if self._stop.is_set():
                raise MonitorCancelledError(f"Monitor for {self.provider} is stopping")
        if self._stop.is_set():
            self._gate.release()
            raise MonitorCancelledError(f"Monitor for {self.provider} is stopping")
        self._gate_owner = threading.get_ident()

    def _release_gate(self) -> None:
        self._gate_owner = None
        self._gate.release()

    def _publish(self, events: list[MatchEvent]) -> int:
        delivered = 0
        for event in events:
            # Another thread may be stopping this monitor from inside a handler
            # while it holds the emit lock; never wait on it past a stop.
            while not self._emit_lock.acquire(timeout=self._gate_wait):
                if self._stop.is_set():
                    return delivered
            try:
                if self._stop.is_set():
                    break
                self._on_match(event)
            finally:
                self._emit_lock.release()
            delivered += 1
        return delivered

    def _poll_locked(self, emit: bool) -> list[MatchEvent]:
        if self._state is not MonitorState.PRIMING:
            self._state = MonitorState.POLLING

        token = self._config.oauth_token
        token_before = token.access_token if token is not None else None

        session = self._session_factory(self._config)
        with self._session_lock:
            self._session = session
        try:
            if self._stop.is_set():
                raise MonitorCancelledError(f"Monitor for {self.provider} is stopping")
            session.open()
            try:
                return self._detect_new(session, emit)
            finally:
                session.disconnect()
        except Exception as e:
            if self._stop.is_set():
                raise MonitorCancelledError(f"Poll for {self.provider} aborted") from e
            raise
        finally:
            with self._session_lock:
                self._session = None
            if not self._stop.is_set():
                self._state = MonitorState.IDLE
            if token is not None and token.access_token != token_before:
                self._notify_token_refreshed()

    def _detect_new(self, session: ImapSession, emit: bool) -> list[MatchEvent]:
        uids = session.search_recent(self._search_window_days)
        if not uids:
            return []

        latest = sorted(uids)[-self._max_candidates:]
        new_uids = self._seen.unseen(latest)
        if not new_uids:
            return []

        summaries = session.fetch_summaries(new_uids)
        keywords = normalize_keywords(self._keyword_source()) if emit else []

        events: list[MatchEvent] = []
        for summary in sorted(summaries, key=lambda s: s.uid):
            if not self._seen.add(summary.uid):
                continue
            if emit:
                events.append(self._build_event(summary, keywords))

        if events:
            logger.info("%s: %d new message(s)", self.provider, len(events))
        return events

    def _build_event(self, summary: MessageSummary, keywords: list[str]) -> MatchEvent:
        subject = summary.display_subject
        sender = summary.display_sender
        warning = is_warning(subject, sender, keywords)
        email = self._config.email_address
        preview = (
            f"Warning keyword matched in {email}." if warning else f"New email in {email}."
        )
        return MatchEvent(
            provider=self.provider,
            sender=sender,
            subject=subject,
            preview=preview,
            received_at=summary.received_at,
            is_warning=warning,
        )

    def _notify_token_refreshed(self) -> None:
        if self._on_token_refreshed is None:
            return
        try:
            self._on_token_refreshed(self._config)
        except Exception:
            logger.exception("Persisting refreshed token for %s failed", self.provider)

    def _report(self, error: Exception) -> None:
        try:
            self._on_error(MonitorErrorEvent(provider=self.provider, error=error))
        except Exception:
            logger.exception("Error handler for %s failed", self.provider)

    def _run(self) -> None:
        logger.info(
            "Monitoring %s every %ds",
            self.provider, self._config.effective_poll_interval(self._min_interval),
        )
        while not self._stop.is_set():
            try:
                self.poll(emit=True)
                self._failures = 0
            except MonitorCancelledError:
                break
            except Exception as e:
                if self._stop.is_set():
                    break
                self._failures += 1
                logger.warning(
                    "Poll failed for %s (%d in a row): %s", self.provider, self._failures, e
                )
                self._report(e)

            if self._stop.wait(self.next_delay()):
                break

        self._state = MonitorState.STOPPED
        logger.info("Stopped monitoring %s", self.provider)
