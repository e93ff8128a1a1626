"""Connection candidate generation for account verification."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import replace

from inbox_sentinel.core.exceptions import AuthorizationError, ConfigurationError
from inbox_sentinel.core.models import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    AccountConfig,
    AuthMode,
    OAuthToken,
)
from inbox_sentinel.core.providers import policy_for


def host_candidates(provider: str, host: str) -> Iterator[str]:
    """Configured host first, then the provider's alternates that differ from it."""
    yield host
    for alternate in policy_for(provider).alternate_hosts:
        if alternate.casefold() != host.casefold():
            yield alternate


def username_candidates(username: str, email: str) -> Iterator[str]:
    """Configured username first, then the email address if it is different."""
    username = (username or "").strip()
    email = (email or "").strip()
    if username:
        yield username
    if email and email.casefold() != username.casefold():
        yield email


def candidates_for(config: AccountConfig) -> Iterator[AccountConfig]:
    """Yield concrete configs to try, in order, without duplicates.

    Every candidate shares the original's ``oauth_token`` object.
    """
    seen: set[tuple[str, int, bool, str]] = set()
    usernames = list(username_candidates(config.username, config.email_address))

    for host in host_candidates(config.provider, config.imap_host):
        for username in usernames:
            key = (host.casefold(), config.imap_port, config.use_ssl, username.casefold())
            if key in seen:
                continue
            seen.add(key)
            yield replace(config, imap_host=host, username=username)


def account_from_token(
    provider: str,
    token: OAuthToken,
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS,
) -> AccountConfig:
    """Build an OAuth account config from a fresh sign-in using provider defaults.

    Raises:
        ConfigurationError: The provider has no known IMAP host, or the token
            lacks a scope the provider requires for IMAP.
        AuthorizationError: No account email could be resolved.
    """
    policy = policy_for(provider)
    if not policy.imap_host:
        raise ConfigurationError(f"IMAP settings for '{provider}' are not configured.")

    if policy.required_scope and policy.required_scope.casefold() not in token.scope.casefold():
        raise ConfigurationError(
            f"{provider} OAuth token is missing IMAP scope. "
            f"Required scope: {policy.required_scope}"
        )

    email = token.account_email.strip()
    if not email:
        raise AuthorizationError(
            "OAuth succeeded but no email/username claim was returned. "
            "Add openid/email scopes for this provider and sign in again."
        )

    return AccountConfig(
        provider=provider,
        email_address=email,
        username=email,
        imap_host=policy.imap_host,
        imap_port=policy.imap_port,
        use_ssl=policy.use_ssl,
        poll_interval_seconds=poll_interval_seconds,
        auth_mode=AuthMode.OAUTH,
        oauth_token=token,
    )
