"""SQLite-backed store for monitored accounts, their OAuth tokens and keywords."""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

from inbox_sentinel.core.models import AccountConfig, AuthMode, OAuthToken
from inbox_sentinel.monitor.keywords import normalize_keywords

logger = logging.getLogger(__name__)


class AccountStore:
    """Persists account configs so monitoring can resume after a restart.

    Tables:
    - accounts: one row per provider (case-insensitive), connection settings
    - oauth_tokens: the provider's OAuth credentials, rewritten on refresh
    - keywords: the warning keyword list, unique ignoring case

    Calls are serialized with a lock; the keyword list is read from every
    monitor thread.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def connect(self) -> None:
        """Open database connection and ensure schema exists."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> AccountStore:
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    def _create_tables(self) -> None:
        """Create tables if they don't exist."""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS accounts (
                provider TEXT PRIMARY KEY COLLATE NOCASE,
                email_address TEXT NOT NULL,
                username TEXT NOT NULL DEFAULT '',
                password TEXT NOT NULL DEFAULT '',
                imap_host TEXT NOT NULL,
                imap_port INTEGER NOT NULL DEFAULT 993,
                use_ssl INTEGER NOT NULL DEFAULT 1,
                poll_interval_seconds INTEGER NOT NULL DEFAULT 25,
                auth_mode TEXT NOT NULL DEFAULT 'password',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS oauth_tokens (
                provider TEXT PRIMARY KEY COLLATE NOCASE,
                access_token TEXT NOT NULL,
                refresh_token TEXT NOT NULL DEFAULT '',
                expires_at TEXT NOT NULL,
                token_endpoint TEXT NOT NULL DEFAULT '',
                client_id TEXT NOT NULL DEFAULT '',
                client_secret TEXT NOT NULL DEFAULT '',
                scope TEXT NOT NULL DEFAULT '',
                account_email TEXT NOT NULL DEFAULT '',
                updated_at TEXT NOT NULL,
                FOREIGN KEY (provider) REFERENCES accounts(provider)
            );

            CREATE TABLE IF NOT EXISTS keywords (
                keyword TEXT PRIMARY KEY COLLATE NOCASE,
                position INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );
        """)

    # ---------- accounts ----------

    def save_account(self, config: AccountConfig) -> None:
        """Insert or replace an account and its OAuth token, if any."""
        now = datetime.now(UTC).isoformat()
        with self._lock:
            self.conn.execute(
                """INSERT INTO accounts
                   (provider, email_address, username, password, imap_host, imap_port,
                    use_ssl, poll_interval_seconds, auth_mode, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(provider) DO UPDATE SET
                       provider = excluded.provider,
                       email_address = excluded.email_address,
                       username = excluded.username,
                       password = excluded.password,
                       imap_host = excluded.imap_host,
                       imap_port = excluded.imap_port,
                       use_ssl = excluded.use_ssl,
                       poll_interval_seconds = excluded.poll_interval_seconds,
                       auth_mode = excluded.auth_mode,
                       updated_at = excluded.updated_at""",
                (
                    config.provider,
                    config.email_address,
                    config.username,
                    config.password,
                    config.imap_host,
                    config.imap_port,
                    int(config.use_ssl),
                    config.poll_interval_seconds,
                    config.auth_mode.value,
                    now,
                    now,
                ),
            )
            if config.oauth_token is not None:
                self._write_token(config.provider, config.oauth_token, now)
            else:
                self.conn.execute(
                    "DELETE FROM oauth_tokens WHERE provider = ?", (config.provider,)
                )
            self.conn.commit()
        logger.debug("Saved account %s", config.provider)

    def save_token(self, config: AccountConfig) -> None:
        """Persist the (possibly refreshed) OAuth token of ``config``."""
        if config.oauth_token is None:
            return
        with self._lock:
            self._write_token(config.provider, config.oauth_token, datetime.now(UTC).isoformat())
            self.conn.commit()
        logger.debug("Saved OAuth token for %s", config.provider)

    def _write_token(self, provider: str, token: OAuthToken, now: str) -> None:
        data = token.to_dict()
        self.conn.execute(
            """INSERT OR REPLACE INTO oauth_tokens
               (provider, access_token, refresh_token, expires_at, token_endpoint,
                client_id, client_secret, scope, account_email, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                provider,
                data["access_token"],
                data["refresh_token"],
                data["expires_at"],
                data["token_endpoint"],
                data["client_id"],
                data["client_secret"],
                data["scope"],
                data["account_email"],
                now,
            ),
        )

    def load_account(self, provider: str) -> AccountConfig | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM accounts WHERE provider = ?", (provider,)
            ).fetchone()
            if row is None:
                return None
            token_row = self.conn.execute(
                "SELECT * FROM oauth_tokens WHERE provider = ?", (provider,)
            ).fetchone()
        return self._row_to_config(row, token_row)

    def list_accounts(self) -> list[AccountConfig]:
        with self._lock:
            rows = self.conn.execute("SELECT * FROM accounts ORDER BY provider").fetchall()
            tokens = {
                r["provider"].casefold(): r
                for r in self.conn.execute("SELECT * FROM oauth_tokens").fetchall()
            }
        return [self._row_to_config(row, tokens.get(row["provider"].casefold())) for row in rows]

    def delete_account(self, provider: str) -> bool:
        with self._lock:
            self.conn.execute("DELETE FROM oauth_tokens WHERE provider = ?", (provider,))
            cursor = self.conn.execute("DELETE FROM accounts WHERE provider = ?", (provider,))
            self.conn.commit()
        return cursor.rowcount > 0

    @staticmethod
    def _row_to_config(row: sqlite3.Row, token_row: sqlite3.Row | None) -> AccountConfig:
        token = OAuthToken.from_dict(dict(token_row)) if token_row is not None else None
        return AccountConfig(
            provider=row["provider"],
            email_address=row["email_address"],
            username=row["username"],
            password=row["password"],
            imap_host=row["imap_host"],
            imap_port=row["imap_port"],
            use_ssl=bool(row["use_ssl"]),
            poll_interval_seconds=row["poll_interval_seconds"],
            auth_mode=AuthMode(row["auth_mode"]),
            oauth_token=token,
        )

    # ---------- keywords ----------

    def list_keywords(self) -> list[str]:
        """Current keyword list in insertion order."""
        with self._lock:
            rows = self.conn.execute("SELECT keyword FROM keywords ORDER BY position").fetchall()
        return [row["keyword"] for row in rows]

    def add_keyword(self, keyword: str) -> bool:
        """Add a keyword. Returns False if blank or already present (ignoring case)."""
        trimmed = keyword.strip()
        if not trimmed:
            return False
        with self._lock:
            position = self.conn.execute(
                "SELECT COALESCE(MAX(position), 0) + 1 FROM keywords"
            ).fetchone()[0]
            cursor = self.conn.execute(
                "INSERT OR IGNORE INTO keywords (keyword, position, created_at) VALUES (?, ?, ?)",
                (trimmed, position, datetime.now(UTC).isoformat()),
            )
            self.conn.commit()
        return cursor.rowcount > 0

    def remove_keyword(self, keyword: str) -> bool:
        with self._lock:
            cursor = self.conn.execute(
                "DELETE FROM keywords WHERE keyword = ?", (keyword.strip(),)
            )
            self.conn.commit()
        return cursor.rowcount > 0

    def seed_keywords(self, keywords: Iterable[str]) -> int:
        """Populate an empty keyword table. Returns the number added."""
        with self._lock:
            if self.conn.execute("SELECT COUNT(*) FROM keywords").fetchone()[0]:
                return 0
            return sum(1 for keyword in normalize_keywords(keywords) if self.add_keyword(keyword))
