"""Minimal CLI entry point for running Inbox Sentinel from a terminal."""

from __future__ import annotations

import argparse
import getpass
import logging
import sys
import threading
from pathlib import Path

from inbox_sentinel.config.settings import InboxSentinelSettings, load_provider_settings
from inbox_sentinel.core.exceptions import InboxSentinelError
from inbox_sentinel.core.models import AccountConfig, AuthMode, MatchEvent, MonitorErrorEvent
from inbox_sentinel.core.oauth import TokenLifecycle
from inbox_sentinel.core.providers import policy_for, sign_in_error_message
from inbox_sentinel.core.redaction import RedactingFilter
from inbox_sentinel.core.resolver import account_from_token
from inbox_sentinel.monitor.registry import MonitorRegistry
from inbox_sentinel.storage.account_store import AccountStore


def setup_logging(level: str, log_file: Path | None = None) -> None:
    """Configure logging with timestamp and module info, masking secrets."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    root = logging.getLogger()
    if log_file is not None:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(root.handlers[0].formatter if root.handlers else None)
        root.addHandler(file_handler)
    for handler in root.handlers:
        handler.addFilter(RedactingFilter())


def on_match(event: MatchEvent) -> None:
    """Print a matched message to stdout."""
    marker = "!" if event.is_warning else " "
    received = event.received_at.astimezone().strftime("%H:%M")
    print(
        f"[{marker}] {received} {event.provider}: {event.sender} - {event.subject} "
        f"({event.preview})",
        flush=True,
    )


def on_error(event: MonitorErrorEvent) -> None:
    """Print a monitor failure to stderr."""
    print(f"[error] {event.describe()}", file=sys.stderr, flush=True)


def _add_interval_arg(subparser: argparse.ArgumentParser) -> None:
    subparser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Poll interval in seconds (minimum 10)",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Inbox Sentinel - Watch mailboxes for new mail and keyword hits"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    sign_in_parser = subparsers.add_parser("sign-in", help="Connect an account via OAuth")
    sign_in_parser.add_argument("provider", help="Provider name, e.g. Gmail or Outlook")
    _add_interval_arg(sign_in_parser)

    password_parser = subparsers.add_parser(
        "add-password", help="Connect an account with an (app) password"
    )
    password_parser.add_argument("provider", help="Provider name")
    password_parser.add_argument("--email", required=True, help="Email address")
    password_parser.add_argument("--username", default="", help="Login name (default: email)")
    password_parser.add_argument("--host", default=None, help="IMAP host")
    password_parser.add_argument("--port", type=int, default=None, help="IMAP port")
    password_parser.add_argument(
        "--no-ssl", action="store_true", dest="no_ssl", help="Connect without TLS"
    )
    _add_interval_arg(password_parser)

    subparsers.add_parser("accounts", help="List connected accounts")

    remove_parser = subparsers.add_parser("remove", help="Forget a connected account")
    remove_parser.add_argument("provider")

    keywords_parser = subparsers.add_parser("keywords", help="Manage warning keywords")
    keywords_parser.add_argument("action", choices=["list", "add", "remove"])
    keywords_parser.add_argument("keyword", nargs="?", default=None)

    subparsers.add_parser("verify", help="Check every stored account can log in")
    subparsers.add_parser("watch", help="Monitor all accounts until interrupted")

    return parser


def _validate_args(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    """Reject argument combinations argparse cannot express."""
    if getattr(args, "interval", None) is not None and args.interval <= 0:
        parser.error("--interval must be positive")
    if args.command == "keywords" and args.action != "list" and not args.keyword:
        parser.error(f"keywords {args.action} requires a keyword")


def _sign_in(
    args: argparse.Namespace,
    settings: InboxSentinelSettings,
    store: AccountStore,
    registry: MonitorRegistry,
) -> None:
    provider_settings = load_provider_settings(settings.oauth_settings_path, args.provider)
    tokens = TokenLifecycle.from_settings(settings)
    print(f"Opening browser for {args.provider} sign-in...")
    token = tokens.authorize(args.provider, provider_settings)

    config = account_from_token(
        args.provider, token, args.interval or settings.poll_interval_seconds
    )
    try:
        resolved = registry.resolve_and_verify(config)
    except InboxSentinelError as e:
        print(sign_in_error_message(args.provider, e, config), file=sys.stderr)
        sys.exit(1)
    store.save_account(resolved)
    print(f"Connected {resolved.provider} as {resolved.email_address} via {resolved.imap_host}")


def _add_password(
    args: argparse.Namespace,
    settings: InboxSentinelSettings,
    store: AccountStore,
    registry: MonitorRegistry,
) -> None:
    policy = policy_for(args.provider)
    host = args.host or policy.imap_host
    if not host:
        print("Error: --host is required for this provider", file=sys.stderr)
        sys.exit(1)

    config = AccountConfig(
        provider=args.provider,
        email_address=args.email,
        username=args.username,
        password=getpass.getpass(f"Password for {args.email}: "),
        imap_host=host,
        imap_port=args.port or policy.imap_port,
        use_ssl=not args.no_ssl,
        poll_interval_seconds=args.interval or settings.poll_interval_seconds,
        auth_mode=AuthMode.PASSWORD,
    )
    try:
        resolved = registry.resolve_and_verify(config)
    except InboxSentinelError as e:
        print(sign_in_error_message(args.provider, e, config), file=sys.stderr)
        sys.exit(1)
    store.save_account(resolved)
    print(f"Connected {resolved.provider} as {resolved.login_name} via {resolved.imap_host}")


def _watch(store: AccountStore, registry: MonitorRegistry) -> None:
    accounts = store.list_accounts()
    if not accounts:
        print("No accounts connected. Use 'sign-in' or 'add-password' first.", file=sys.stderr)
        sys.exit(1)

    registry.subscribe_matches(on_match)
    registry.subscribe_errors(on_error)

    for config in accounts:
        try:
            registry.add_or_replace(config)
            print(f"Monitoring started for {config.provider} ({config.email_address})")
        except InboxSentinelError as e:
            print(sign_in_error_message(config.provider, e, config), file=sys.stderr)

    if not registry.providers:
        sys.exit(1)

    print("Watching for new mail. Press Enter to check now, Ctrl+C to stop.")
    for _ in sys.stdin:
        found = registry.check_now()
        print(f"Manual check: {found} new message(s)", flush=True)
    # stdin closed (e.g. running detached); keep the monitors alive.
    threading.Event().wait()


def main() -> None:
    """CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)
    _validate_args(parser, args)

    settings = InboxSentinelSettings()
    settings.ensure_directories()
    setup_logging(
        settings.log_level,
        settings.log_file_path if settings.enable_file_logging else None,
    )

    store = AccountStore(settings.database_path)
    store.connect()
    store.seed_keywords(settings.default_keywords)
    registry = MonitorRegistry(
        store.list_keywords,
        settings=settings,
        on_token_refreshed=store.save_token,
    )

    try:
        if args.command == "sign-in":
            _sign_in(args, settings, store, registry)

        elif args.command == "add-password":
            _add_password(args, settings, store, registry)

        elif args.command == "accounts":
            accounts = store.list_accounts()
            print(f"\nFound {len(accounts)} accounts:\n")
            for config in accounts:
                print(
                    f"  {config.provider:12s} {config.email_address:40s} "
                    f"{config.imap_host}:{config.imap_port} ({config.auth_mode.value}, "
                    f"every {config.effective_poll_interval(settings.min_poll_interval_seconds)}s)"
                )

        elif args.command == "remove":
            if store.delete_account(args.provider):
                print(f"Removed {args.provider}")
            else:
                print(f"{args.provider} is not connected", file=sys.stderr)
                sys.exit(1)

        elif args.command == "keywords":
            if args.action == "add":
                added = store.add_keyword(args.keyword)
                print(f"Added '{args.keyword.strip()}'" if added else "Keyword already present")
            elif args.action == "remove":
                removed = store.remove_keyword(args.keyword)
                print(f"Removed '{args.keyword.strip()}'" if removed else "Keyword not found")
            for keyword in store.list_keywords():
                print(f"  {keyword}")

        elif args.command == "verify":
            failures = 0
            for config in store.list_accounts():
                try:
                    registry.verify(config)
                    store.save_token(config)
                    print(f"  {config.provider}: OK")
                except InboxSentinelError as e:
                    failures += 1
                    print(sign_in_error_message(config.provider, e, config), file=sys.stderr)
            if failures:
                sys.exit(1)

        elif args.command == "watch":
            _watch(store, registry)

    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)
    except InboxSentinelError as e:
        print(f"\n{e.user_message}\n{e}", file=sys.stderr)
        sys.exit(1)
    finally:
        registry.close()
        store.close()


if __name__ == "__main__":
    main()
