"""Per-provider connection and identity policy."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from inbox_sentinel.core.models import AccountConfig, AuthMode
from inbox_sentinel.core.redaction import redact_secrets

DEFAULT_CLAIM_ORDER = ("email", "preferred_username", "upn")


class ProviderKind(str, Enum):
    GMAIL = "Gmail"
    OUTLOOK = "Outlook"
    GENERIC = "Generic"


@dataclass(frozen=True)
class ProviderPolicy:
    """Everything that differs between mail providers.

    Attributes:
        kind: Provider family.
        imap_host: Default IMAP host, empty when the user must supply one.
        alternate_hosts: Extra hosts tried during verification, in order.
        claim_order: ID-token claims consulted for the account email.
        userinfo_endpoint: Fallback endpoint for the account email, if any.
        required_scope: Scope an OAuth token must carry to open IMAP.
        sign_in_checklist: Hints shown when sign-in fails.
    """

    kind: ProviderKind
    imap_host: str = ""
    imap_port: int = 993
    use_ssl: bool = True
    alternate_hosts: tuple[str, ...] = ()
    claim_order: tuple[str, ...] = DEFAULT_CLAIM_ORDER
    userinfo_endpoint: str | None = None
    required_scope: str | None = None
    sign_in_checklist: tuple[str, ...] = ()


_POLICIES: dict[ProviderKind, ProviderPolicy] = {
    ProviderKind.GMAIL: ProviderPolicy(
        kind=ProviderKind.GMAIL,
        imap_host="imap.gmail.com",
        userinfo_endpoint="https://openidconnect.googleapis.com/v1/userinfo",
        required_scope="https://mail.google.com/",
        sign_in_checklist=(
            "The Gmail scope includes: openid email https://mail.google.com/",
            "IMAP is enabled in Gmail settings.",
            "The Google account has an actual Gmail or Workspace mailbox.",
        ),
    ),
    ProviderKind.OUTLOOK: ProviderPolicy(
        kind=ProviderKind.OUTLOOK,
        imap_host="imap-mail.outlook.com",
        alternate_hosts=("outlook.office365.com", "imap-mail.outlook.com"),
        sign_in_checklist=(
            "The Microsoft app allows the scopes: openid email offline_access "
            "https://outlook.office.com/IMAP.AccessAsUser.All",
        ),
    ),
    ProviderKind.GENERIC: ProviderPolicy(kind=ProviderKind.GENERIC),
}


def provider_kind(provider: str) -> ProviderKind:
    """Map a provider name onto the closed provider set, case-insensitively."""
    name = provider.strip().casefold()
    for kind in ProviderKind:
        if kind.value.casefold() == name:
            return kind
    return ProviderKind.GENERIC


def policy_for(provider: str) -> ProviderPolicy:
    return _POLICIES[provider_kind(provider)]


def sign_in_error_message(
    provider: str,
    error: BaseException,
    config: AccountConfig | None = None,
) -> str:
    """Build the text shown to a user whose sign-in or verification failed."""
    detail = redact_secrets(str(error)) or type(error).__name__
    policy = policy_for(provider)
    oauth = config is not None and config.auth_mode is AuthMode.OAUTH

    if not oauth or not policy.sign_in_checklist:
        return f"Sign-in failed for {provider}.\n\n{detail}"

    lines = [f"Sign-in failed for {provider} (OAuth).", "", detail, ""]
    if config is not None and config.email_address:
        lines += [f"Signed-in account: {config.email_address}", ""]
    lines.append("Checklist:")
    lines += [f"{i}. {item}" for i, item in enumerate(policy.sign_in_checklist, start=1)]
    return "\n".join(lines)
