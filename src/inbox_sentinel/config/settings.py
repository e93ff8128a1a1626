"""Configuration via pydantic-settings with .env support."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_pascal
from pydantic_settings import BaseSettings, SettingsConfigDict

from inbox_sentinel.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class InboxSentinelSettings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="INBOX_SENTINEL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # OAuth provider registrations
    oauth_settings_path: Path = Path("oauth.settings.json")

    # Database
    database_path: Path = Path("data/inbox_sentinel.db")

    # Polling
    poll_interval_seconds: int = 25
    min_poll_interval_seconds: int = 10
    search_window_days: int = 2
    max_candidates_per_poll: int = 60
    seen_window_capacity: int = 2000
    max_backoff_seconds: float = 300.0

    # Tokens
    token_refresh_margin_seconds: int = 120
    min_token_lifetime_seconds: int = 60

    # Network timeouts
    imap_timeout_seconds: float = 30.0
    http_timeout_seconds: float = 30.0

    # Keywords seeded into an empty store
    default_keywords: list[str] = Field(
        default_factory=lambda: ["Invoice", "Payment", "Password Reset", "Urgent", "Security"]
    )

    # Logging
    log_level: str = "INFO"
    enable_file_logging: bool = False
    log_file_path: Path = Path("logs/inbox_sentinel.log")

    def ensure_directories(self) -> None:
        """Create data and log directories if they don't exist."""
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        if self.enable_file_logging:
            self.log_file_path.parent.mkdir(parents=True, exist_ok=True)


class OAuthProviderSettings(BaseModel):
    """OAuth client registration for one provider.

    Keys are accepted in snake_case or PascalCase.
    """

    model_config = ConfigDict(alias_generator=to_pascal, populate_by_name=True)

    client_id: str = ""
    client_secret: str = ""
    authorization_endpoint: str = ""
    token_endpoint: str = ""
    scope: str = ""
    additional_authorization_parameters: dict[str, str] = Field(default_factory=dict)

    def missing_fields(self) -> list[str]:
        required = ("client_id", "authorization_endpoint", "token_endpoint", "scope")
        return [name for name in required if not getattr(self, name).strip()]


def load_provider_settings(path: Path, provider: str) -> OAuthProviderSettings:
    """Load and validate the OAuth registration for ``provider``.

    Args:
        path: JSON file with a ``Providers`` (or ``providers``) object.
        provider: Provider name, matched case-insensitively.

    Returns:
        A complete OAuthProviderSettings.

    Raises:
        ConfigurationError: If the file is missing or unreadable, the provider
            is absent, or its entry is incomplete.
    """
    if not path.exists():
        raise ConfigurationError(
            f"Missing {path.name}. Create it and set Providers.{provider}.ClientId."
        )

    try:
        data: Any = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Could not parse {path.name}: {e}") from e

    providers: Any = {}
    if isinstance(data, dict):
        providers = data.get("Providers", data.get("providers", {}))

    entry = None
    if isinstance(providers, dict):
        wanted = provider.strip().casefold()
        for name, value in providers.items():
            if str(name).casefold() == wanted:
                entry = value
                break

    if entry is None:
        raise ConfigurationError(f"OAuth provider '{provider}' is not configured in {path.name}.")

    try:
        settings = OAuthProviderSettings.model_validate(entry)
    except ValidationError as e:
        # Field locations only; the error text would echo input values.
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "entry" for err in e.errors())
        raise ConfigurationError(
            f"OAuth config for '{provider}' is invalid in {path.name} (fields: {fields})."
        ) from None

    missing = settings.missing_fields()
    if missing:
        raise ConfigurationError(
            f"OAuth config for '{provider}' is incomplete in {path.name} "
            f"(missing: {', '.join(missing)})."
        )

    logger.debug("Loaded OAuth settings for %s from %s", provider, path)
    return settings
