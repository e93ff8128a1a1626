"""OAuth 2.0 authorization-code flow with PKCE and silent token refresh."""

from __future__ import annotations

import base64
import binascii
import html
import json
import logging
import secrets
import threading
import webbrowser
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any
from urllib.parse import parse_qsl, urlsplit

import requests
from authlib.common.security import generate_token
from authlib.integrations.base_client import OAuthError
from authlib.integrations.requests_client import OAuth2Session

from inbox_sentinel.config.settings import InboxSentinelSettings, OAuthProviderSettings
from inbox_sentinel.core.exceptions import (
    AuthorizationCancelledError,
    AuthorizationDeniedError,
    AuthorizationError,
    ConnectivityError,
    MissingCodeError,
    ReauthorizationRequiredError,
    StateMismatchError,
    TokenExchangeError,
)
from inbox_sentinel.core.models import TOKEN_REFRESH_MARGIN, AccountConfig, OAuthToken
from inbox_sentinel.core.providers import DEFAULT_CLAIM_ORDER, policy_for
from inbox_sentinel.core.redaction import redact_secrets

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/callback/"
LOOPBACK_HOST = "127.0.0.1"
DEFAULT_EXPIRES_IN = 3600
MIN_TOKEN_LIFETIME_SECONDS = 60
# RFC 7636 maximum; 128 characters from a 62-symbol alphabet exceed 64 random bytes.
CODE_VERIFIER_LENGTH = 128
STATE_LENGTH = 32

_PAGE = (
    "<html><head><meta charset='utf-8'><title>Inbox Sentinel</title></head>"
    "<body style='font-family:sans-serif;padding:24px;background:#111;color:#eee;'>"
    "<h2>{message}</h2></body></html>"
)


def decode_identity_claims(
    id_token: str,
    claim_order: tuple[str, ...] = DEFAULT_CLAIM_ORDER,
) -> str:
    """Best-effort account email from an ID token's payload segment.

    The signature is not verified; the value is only used as a display and
    login hint. Any decoding problem yields an empty string.
    """
    if not id_token or not id_token.strip():
        return ""

    parts = id_token.split(".")
    if len(parts) < 2:
        return ""

    payload = parts[1].replace("-", "+").replace("_", "/")
    payload += "=" * (-len(payload) % 4)
    try:
        claims = json.loads(base64.b64decode(payload, validate=True))
    except (binascii.Error, ValueError):
        logger.debug("ID token payload could not be decoded")
        return ""

    if not isinstance(claims, dict):
        return ""

    for name in claim_order:
        value = claims.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _parse_expires_in(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return DEFAULT_EXPIRES_IN


def parse_token_response(
    payload: Mapping[str, Any],
    *,
    token_endpoint: str,
    client_id: str,
    client_secret: str = "",
    scope: str = "",
    claim_order: tuple[str, ...] = DEFAULT_CLAIM_ORDER,
    now: datetime | None = None,
    min_lifetime_seconds: int = MIN_TOKEN_LIFETIME_SECONDS,
) -> OAuthToken:
    """Build an OAuthToken from a token endpoint JSON response.

    Args:
        payload: Decoded JSON body.
        token_endpoint: Endpoint the token came from, kept for refreshes.
        client_id: OAuth client id, kept for refreshes.
        client_secret: OAuth client secret, may be empty.
        scope: Requested scope; replaced by the granted scope when present.
        claim_order: ID-token claims consulted for the account email.
        now: Reference time for the expiry.
        min_lifetime_seconds: Floor applied to ``expires_in``.

    Raises:
        TokenExchangeError: If the response carries no access token.
    """
    access_token = payload.get("access_token")
    if not isinstance(access_token, str) or not access_token.strip():
        raise TokenExchangeError("OAuth provider did not return access_token.")

    refresh_token = payload.get("refresh_token")
    granted_scope = payload.get("scope")
    id_token = payload.get("id_token")
    expires_in = _parse_expires_in(payload.get("expires_in"))
    now = now or datetime.now(UTC)

    return OAuthToken(
        access_token=access_token,
        refresh_token=refresh_token if isinstance(refresh_token, str) else "",
        expires_at=now + timedelta(seconds=max(min_lifetime_seconds, expires_in)),
        token_endpoint=token_endpoint,
        client_id=client_id,
        client_secret=client_secret,
        scope=granted_scope if isinstance(granted_scope, str) and granted_scope else scope,
        account_email=decode_identity_claims(
            id_token if isinstance(id_token, str) else "", claim_order
        ),
    )


def validate_callback(
    params: Mapping[str, str], expected_state: str
) -> tuple[str, AuthorizationError | None, str]:
    """Check the redirect query parameters.

    Returns:
        ``(code, failure, page_message)``; ``failure`` is None on success.
    """
    returned_state = params.get("state", "").encode("utf-8")
    if not secrets.compare_digest(returned_state, expected_state.encode("utf-8")):
        return (
            "",
            StateMismatchError("OAuth state mismatch."),
            "OAuth failed: state mismatch. You can close this tab.",
        )

    error = params.get("error", "").strip()
    if error:
        description = params.get("error_description", "").strip()
        detail = f"{error} ({description})" if description else error
        return (
            "",
            AuthorizationDeniedError(f"OAuth authorization failed: {detail}"),
            f"OAuth failed: {error}. You can close this tab.",
        )

    code = params.get("code", "").strip()
    if not code:
        return (
            "",
            MissingCodeError("Authorization code was not returned by provider."),
            "OAuth failed: missing authorization code. You can close this tab.",
        )

    return code, None, "Sign-in complete. You can close this tab and return to the app."


class _CallbackHandler(BaseHTTPRequestHandler):
    server: _CallbackServer

    def do_GET(self) -> None:
        parsed = urlsplit(self.path)
        if parsed.path.rstrip("/") != CALLBACK_PATH.rstrip("/") or self.server.completed:
            self.send_error(404)
            return

        params = dict(parse_qsl(parsed.query, keep_blank_values=True))
        message = self.server.complete(params)

        body = _PAGE.format(message=html.escape(message)).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:
        # Request lines carry the authorization code.
        logger.debug("Callback server: %s", redact_secrets(format % args))


class _CallbackServer(HTTPServer):
    """Loopback listener that accepts a single OAuth redirect."""

    def __init__(self, expected_state: str) -> None:
        super().__init__((LOOPBACK_HOST, 0), _CallbackHandler)
        self.expected_state = expected_state
        self.code = ""
        self.failure: AuthorizationError | None = None
        self.completed = False

    @property
    def redirect_uri(self) -> str:
        return f"http://{LOOPBACK_HOST}:{self.server_address[1]}{CALLBACK_PATH}"

    def complete(self, params: Mapping[str, str]) -> str:
        self.code, self.failure, message = validate_callback(params, self.expected_state)
        self.completed = True
        return message


class TokenLifecycle:
    """Acquires OAuth tokens interactively and keeps them fresh.

    Every exchange with a token endpoint goes through an authlib
    ``OAuth2Session``; ``session_factory`` builds one per request.
    """

    def __init__(
        self,
        session_factory: Callable[..., OAuth2Session] = OAuth2Session,
        *,
        timeout: float = 30.0,
        refresh_margin: timedelta = TOKEN_REFRESH_MARGIN,
        min_lifetime_seconds: int = MIN_TOKEN_LIFETIME_SECONDS,
        open_browser: Callable[[str], bool] = webbrowser.open,
        clock: Callable[[], datetime] | None = None,
        callback_poll_seconds: float = 0.25,
    ) -> None:
        self._session_factory = session_factory
        self._timeout = timeout
        self._refresh_margin = refresh_margin
        self._min_lifetime = min_lifetime_seconds
        self._open_browser = open_browser
        self._clock = clock or (lambda: datetime.now(UTC))
        self._callback_poll_seconds = callback_poll_seconds

    @classmethod
    def from_settings(cls, settings: InboxSentinelSettings) -> TokenLifecycle:
        return cls(
            timeout=settings.http_timeout_seconds,
            refresh_margin=timedelta(seconds=settings.token_refresh_margin_seconds),
            min_lifetime_seconds=settings.min_token_lifetime_seconds,
        )

    def _new_session(
        self,
        client_id: str,
        client_secret: str,
        scope: str,
        redirect_uri: str | None = None,
    ) -> OAuth2Session:
        secret = client_secret.strip()
        return self._session_factory(
            client_id=client_id,
            client_secret=secret or None,
            token_endpoint_auth_method="client_secret_post" if secret else "none",
            scope=scope,
            redirect_uri=redirect_uri,
            code_challenge_method="S256",
            leeway=0,
        )

    def authorize(
        self,
        provider_name: str,
        provider: OAuthProviderSettings,
        cancel_event: threading.Event | None = None,
    ) -> OAuthToken:
        """Run the browser sign-in and exchange the returned code for tokens.

        Blocks until one callback reaches the loopback listener or
        ``cancel_event`` is set.

        Raises:
            AuthorizationError: State mismatch, provider error, missing code
                or cancellation.
            TokenExchangeError: The token endpoint rejected the code.
            ConnectivityError: The token endpoint could not be reached.
        """
        policy = policy_for(provider_name)
        state = generate_token(STATE_LENGTH)
        verifier = generate_token(CODE_VERIFIER_LENGTH)

        server = _CallbackServer(state)
        server.timeout = self._callback_poll_seconds
        session = self._new_session(
            provider.client_id,
            provider.client_secret,
            provider.scope,
            redirect_uri=server.redirect_uri,
        )
        try:
            auth_url, _ = session.create_authorization_url(
                provider.authorization_endpoint,
                state=state,
                code_verifier=verifier,
                **provider.additional_authorization_parameters,
            )

            logger.info(
                "Opening browser for %s sign-in (redirect %s)", provider_name, server.redirect_uri
            )
            if not self._open_browser(auth_url):
                logger.warning("Could not launch a browser; open this URL to sign in: %s", auth_url)

            while not server.completed:
                if cancel_event is not None and cancel_event.is_set():
                    raise AuthorizationCancelledError(f"{provider_name} sign-in was cancelled.")
                server.handle_request()

            if server.failure is not None:
                raise server.failure

            payload = self._token_request(
                session,
                "access_token_response",
                "Token exchange",
                provider.token_endpoint,
                lambda: session.fetch_token(
                    provider.token_endpoint,
                    grant_type="authorization_code",
                    code=server.code,
                    code_verifier=verifier,
                    timeout=self._timeout,
                ),
            )
            token = parse_token_response(
                payload,
                token_endpoint=provider.token_endpoint,
                client_id=provider.client_id,
                client_secret=provider.client_secret,
                scope=provider.scope,
                claim_order=policy.claim_order,
                now=self._clock(),
                min_lifetime_seconds=self._min_lifetime,
            )

            if not token.account_email and policy.userinfo_endpoint:
                token.account_email = self._fetch_userinfo_email(session, policy.userinfo_endpoint)
        finally:
            server.server_close()
            session.close()

        logger.info("%s sign-in complete", provider_name)
        return token

    def ensure_valid_access_token(self, config: AccountConfig) -> str:
        """Return a usable access token, refreshing it in place when needed.

        Raises:
            ReauthorizationRequiredError: No token or no refresh token stored.
            TokenExchangeError: The refresh was rejected.
            ConnectivityError: The token endpoint could not be reached.
        """
        token = config.oauth_token
        if token is None:
            raise ReauthorizationRequiredError(
                f"OAuth token data is missing. Reconnect {config.provider}."
            )

        if token.is_valid(self._clock(), self._refresh_margin):
            return token.access_token

        if not token.refresh_token.strip():
            raise ReauthorizationRequiredError(
                f"OAuth refresh token missing. Reconnect {config.provider}."
            )

        session = self._new_session(token.client_id, token.client_secret, token.scope)
        try:
            payload = self._token_request(
                session,
                "refresh_token_response",
                "Token refresh",
                token.token_endpoint,
                lambda: session.refresh_token(
                    token.token_endpoint,
                    refresh_token=token.refresh_token,
                    timeout=self._timeout,
                ),
            )
        finally:
            session.close()

        refreshed = parse_token_response(
            payload,
            token_endpoint=token.token_endpoint,
            client_id=token.client_id,
            client_secret=token.client_secret,
            scope=token.scope,
            claim_order=policy_for(config.provider).claim_order,
            now=self._clock(),
            min_lifetime_seconds=self._min_lifetime,
        )
        token.apply_refresh(refreshed)

        logger.info(
            "Refreshed OAuth access token for %s (expires %s)",
            config.provider, token.expires_at.isoformat(),
        )
        return token.access_token

    def _token_request(
        self,
        session: OAuth2Session,
        hook_type: str,
        context: str,
        endpoint: str,
        send: Callable[[], Mapping[str, Any]],
    ) -> dict[str, Any]:
        """Run one token endpoint call, mapping every failure to our errors."""
        session.register_compliance_hook(hook_type, _check_token_response(context))
        try:
            payload = send()
        except OAuthError as e:
            detail = f"{e.error} ({e.description})" if e.description else str(e.error)
            raise TokenExchangeError(
                f"{context} failed: {redact_secrets(detail)}",
                requires_reauthorization=e.error == "invalid_grant",
            ) from e
        except requests.RequestException as e:
            raise ConnectivityError(f"{context} request to {endpoint} failed: {e}") from e
        except ValueError as e:
            # authlib converts expires_in eagerly and rejects non-numeric values.
            raise TokenExchangeError(f"{context} returned an unreadable token: {e}") from e
        return dict(payload)

    def _fetch_userinfo_email(self, session: OAuth2Session, endpoint: str) -> str:
        """Best-effort email lookup with the session's fresh token; failures yield ""."""
        try:
            response = session.get(endpoint, timeout=self._timeout)
            if not 200 <= response.status_code < 300:
                logger.debug("Userinfo lookup returned %d", response.status_code)
                return ""
            data = response.json()
        except (OAuthError, requests.RequestException, ValueError) as e:
            logger.debug("Userinfo lookup failed: %s", e)
            return ""

        email = data.get("email") if isinstance(data, dict) else None
        return email.strip() if isinstance(email, str) else ""


def _check_token_response(context: str) -> Callable[[requests.Response], requests.Response]:
    """authlib compliance hook: reject non-2xx and non-object bodies before parsing."""

    def check(response: requests.Response) -> requests.Response:
        status = response.status_code
        if not 200 <= status < 300:
            body = response.text
            raise TokenExchangeError(
                f"{context} failed ({status}): {redact_secrets(body)}",
                status_code=status,
                requires_reauthorization=status in (400, 401) and "invalid_grant" in body,
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise TokenExchangeError(
                f"{context} returned a non-JSON body ({status}).", status_code=status
            ) from e
        if not isinstance(payload, dict):
            raise TokenExchangeError(
                f"{context} returned an unexpected JSON document.", status_code=status
            )
        return response

    return check
