"""Custom exceptions for Inbox Sentinel."""

from __future__ import annotations


class InboxSentinelError(Exception):
    """Base exception for all Inbox Sentinel errors."""

    user_message = "Something went wrong while monitoring the mailbox."


class ConfigurationError(InboxSentinelError):
    """OAuth or account settings are missing or incomplete."""

    user_message = "Account settings are missing or incomplete."


class AuthorizationError(InboxSentinelError):
    """The interactive sign-in attempt failed and must be restarted."""

    user_message = "Sign-in failed. Please sign in again."


class StateMismatchError(AuthorizationError):
    """The callback carried a state value different from the one sent."""


class AuthorizationDeniedError(AuthorizationError):
    """The provider redirected back with an ``error`` parameter."""


class MissingCodeError(AuthorizationError):
    """The callback carried no authorization code."""


class AuthorizationCancelledError(AuthorizationError):
    """The caller cancelled while waiting for the browser callback."""

    user_message = "Sign-in was cancelled."


class ReauthorizationRequiredError(AuthorizationError):
    """Stored OAuth credentials cannot be renewed without a new sign-in."""

    user_message = "The account must be reconnected."


class TokenExchangeError(InboxSentinelError):
    """The token endpoint rejected a code exchange or refresh."""

    user_message = "The provider rejected the token request."

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        requires_reauthorization: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.requires_reauthorization = requires_reauthorization


class ConnectivityError(InboxSentinelError):
    """DNS, TCP, TLS or IMAP protocol failure talking to a mail server."""

    user_message = "Could not reach the mail server."


class MonitorCancelledError(InboxSentinelError):
    """A poll was abandoned because its monitor is stopping."""

    user_message = "Monitoring was stopped."
