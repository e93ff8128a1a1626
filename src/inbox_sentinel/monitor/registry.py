"""Registry of account monitors: lifecycle, manual checks and event fan-out."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from inbox_sentinel.config.settings import InboxSentinelSettings
from inbox_sentinel.core.exceptions import (
    ConnectivityError,
    InboxSentinelError,
    MonitorCancelledError,
)
from inbox_sentinel.core.imap_session import ImapSession
from inbox_sentinel.core.models import AccountConfig, MatchEvent, MonitorErrorEvent
from inbox_sentinel.core.oauth import TokenLifecycle
from inbox_sentinel.core.resolver import candidates_for
from inbox_sentinel.monitor.account import AccountMonitor, KeywordSource, SessionFactory

logger = logging.getLogger(__name__)

MatchHandler = Callable[[MatchEvent], None]
ErrorHandler = Callable[[MonitorErrorEvent], None]


class MonitorRegistry:
    """Orchestrates one AccountMonitor per provider.

    Provider names are matched case-insensitively and at most one live
    monitor exists per provider. Match and error events from every monitor
    are forwarded unchanged to the registry's subscribers, on the thread that
    produced them.
    """

    def __init__(
        self,
        keyword_source: KeywordSource,
        *,
        settings: InboxSentinelSettings | None = None,
        tokens: TokenLifecycle | None = None,
        session_factory: SessionFactory | None = None,
        on_token_refreshed: Callable[[AccountConfig], None] | None = None,
    ) -> None:
        self._settings = settings or InboxSentinelSettings()
        self._tokens = tokens or TokenLifecycle.from_settings(self._settings)
        self._keyword_source = keyword_source
        self._session_factory = session_factory or self._open_session
        self._on_token_refreshed = on_token_refreshed

        self._monitors: dict[str, AccountMonitor] = {}
        self._monitors_lock = threading.Lock()
        self._mutation_lock = threading.RLock()

        self._match_handlers: list[MatchHandler] = []
        self._error_handlers: list[ErrorHandler] = []
        self._handlers_lock = threading.Lock()

    @staticmethod
    def _key(provider: str) -> str:
        return provider.strip().casefold()

    def _open_session(self, config: AccountConfig) -> ImapSession:
        return ImapSession(config, self._tokens, timeout=self._settings.imap_timeout_seconds)

    @property
    def providers(self) -> list[str]:
        with self._monitors_lock:
            return [monitor.provider for monitor in self._monitors.values()]

    def monitor_for(self, provider: str) -> AccountMonitor | None:
        with self._monitors_lock:
            return self._monitors.get(self._key(provider))

    # ---------- subscriptions ----------

    def subscribe_matches(self, handler: MatchHandler) -> Callable[[], None]:
        """Register a match handler. Returns a callable that unsubscribes it."""
        with self._handlers_lock:
            self._match_handlers.append(handler)
        return lambda: self._unsubscribe(self._match_handlers, handler)

    def subscribe_errors(self, handler: ErrorHandler) -> Callable[[], None]:
        """Register an error handler. Returns a callable that unsubscribes it."""
        with self._handlers_lock:
            self._error_handlers.append(handler)
        return lambda: self._unsubscribe(self._error_handlers, handler)

    def _unsubscribe(self, handlers: list, handler: Callable) -> None:
        with self._handlers_lock:
            if handler in handlers:
                handlers.remove(handler)

    def _publish_match(self, event: MatchEvent) -> None:
        with self._handlers_lock:
            handlers = list(self._match_handlers)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Match handler failed for %s", event.provider)

    def _publish_error(self, event: MonitorErrorEvent) -> None:
        with self._handlers_lock:
            handlers = list(self._error_handlers)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Error handler failed for %s", event.provider)

    # ---------- account lifecycle ----------

    def add_or_replace(self, config: AccountConfig) -> AccountMonitor:
        """Start monitoring ``config``, first fully removing any existing monitor.

        The new monitor is primed before it is registered, so mail already
        in the inbox is never reported. If priming fails the provider stays
        unregistered and the error propagates.
        """
        with self._mutation_lock:
            self.remove(config.provider)

            monitor = AccountMonitor(
                config,
                keyword_source=self._keyword_source,
                on_match=self._publish_match,
                on_error=self._publish_error,
                session_factory=self._session_factory,
                on_token_refreshed=self._on_token_refreshed,
                seen_capacity=self._settings.seen_window_capacity,
                search_window_days=self._settings.search_window_days,
                max_candidates=self._settings.max_candidates_per_poll,
                min_interval_seconds=self._settings.min_poll_interval_seconds,
                max_backoff_seconds=self._settings.max_backoff_seconds,
            )
            monitor.prime()

            with self._monitors_lock:
                self._monitors[self._key(config.provider)] = monitor
            monitor.start()
            logger.info("Added %s (%s)", config.provider, config.email_address)
            return monitor

    def remove(self, provider: str) -> bool:
        """Stop and forget a provider's monitor.

        Blocks until its background thread has exited. Returns False when the
        provider was not registered.
        """
        with self._mutation_lock:
            with self._monitors_lock:
                monitor = self._monitors.pop(self._key(provider), None)
            if monitor is None:
                return False
            monitor.stop()
            logger.info("Removed %s", monitor.provider)
            return True

    def check_now(self) -> int:
        """Poll every registered account once, with events enabled.

        A failing account is reported to the error handlers and skipped.

        Returns:
            Total number of new messages reported.
        """
        with self._monitors_lock:
            monitors = list(self._monitors.values())

        total = 0
        for monitor in monitors:
            try:
                total += monitor.poll(emit=True)
            except MonitorCancelledError:
                logger.debug("Skipping %s: removed during check", monitor.provider)
            except Exception as e:
                self._publish_error(MonitorErrorEvent(provider=monitor.provider, error=e))
        return total

    # ---------- verification ----------

    def verify(self, config: AccountConfig) -> None:
        """Open the inbox of exactly ``config`` read-only and disconnect."""
        self._session_factory(config).verify()

    def resolve_and_verify(self, config: AccountConfig) -> AccountConfig:
        """Try each connection candidate in order and return the first that works.

        Raises:
            InboxSentinelError: The failure of the last candidate tried.
        """
        last: InboxSentinelError | None = None
        for candidate in candidates_for(config):
            try:
                self.verify(candidate)
                return candidate
            except InboxSentinelError as e:
                logger.info(
                    "Candidate %s as %s failed for %s: %s",
                    candidate.imap_host, candidate.login_name, config.provider, e,
                )
                last = e
        if last is not None:
            raise last
        raise ConnectivityError(f"IMAP verification failed for {config.provider}.")

    # ---------- teardown ----------

    def close(self) -> None:
        """Remove every account; no monitor thread survives this call."""
        with self._mutation_lock:
            with self._monitors_lock:
                providers = [monitor.provider for monitor in self._monitors.values()]
            for provider in providers:
                self.remove(provider)

    def __enter__(self) -> MonitorRegistry:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
