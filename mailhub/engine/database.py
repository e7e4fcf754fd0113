"""
SQLite persistence for messages, threads, entity links and sync bookkeeping.

Every connection runs in autocommit mode; writes go through ``transaction()``
which issues ``BEGIN IMMEDIATE`` so concurrent writers serialize on the
database lock instead of failing half-way. The journal runs in WAL mode so
list/detail reads never block on a sync in progress.
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from mailhub.exceptions import StorageError

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_MS = 5000


class Database:
    """Owns the schema and hands out connections."""

    def __init__(self, db_path: str | Path = "config/mailhub.db"):
        """
        Initialize the database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with self.connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    provider_message_id TEXT NOT NULL UNIQUE
                        CHECK (length(provider_message_id) > 0),
                    thread_id TEXT REFERENCES threads(id),
                    from_address TEXT NOT NULL DEFAULT '',
                    from_name TEXT NOT NULL DEFAULT '',
                    to_addresses TEXT NOT NULL DEFAULT '[]',
                    cc_addresses TEXT NOT NULL DEFAULT '[]',
                    subject TEXT NOT NULL DEFAULT '',
                    body_html TEXT,
                    body_text TEXT,
                    is_html BOOLEAN NOT NULL DEFAULT 0,
                    sent_at TEXT NOT NULL,
                    is_outbound BOOLEAN NOT NULL DEFAULT 0,
                    in_reply_to TEXT,
                    references_header TEXT NOT NULL DEFAULT '[]',
                    is_read BOOLEAN NOT NULL DEFAULT 0,
                    starred BOOLEAN NOT NULL DEFAULT 0,
                    archived BOOLEAN NOT NULL DEFAULT 0,
                    source_folder TEXT NOT NULL DEFAULT 'INBOX',
                    -- Flags as last reported by the provider
                    provider_read BOOLEAN NOT NULL DEFAULT 0,
                    provider_starred BOOLEAN NOT NULL DEFAULT 0,
                    synced_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS message_references (
                    message_id TEXT NOT NULL REFERENCES messages(id),
                    referenced_provider_id TEXT NOT NULL,
                    PRIMARY KEY (message_id, referenced_provider_id)
                );

                CREATE TABLE IF NOT EXISTS attachments (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    message_id TEXT NOT NULL REFERENCES messages(id),
                    filename TEXT NOT NULL,
                    mime_type TEXT NOT NULL,
                    size INTEGER NOT NULL DEFAULT 0,
                    storage_ref TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS threads (
                    id TEXT PRIMARY KEY,
                    subject TEXT NOT NULL DEFAULT '',
                    normalized_subject TEXT NOT NULL DEFAULT '',
                    fallback_key TEXT NOT NULL,
                    participants TEXT NOT NULL DEFAULT '[]',
                    message_count INTEGER NOT NULL DEFAULT 0,
                    first_activity TEXT,
                    last_activity TEXT,
                    folder TEXT NOT NULL DEFAULT 'inbox',
                    is_unread BOOLEAN NOT NULL DEFAULT 0,
                    has_attachments BOOLEAN NOT NULL DEFAULT 0,
                    starred BOOLEAN NOT NULL DEFAULT 0,
                    archived BOOLEAN NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS entity_links (
                    id TEXT PRIMARY KEY,
                    thread_id TEXT REFERENCES threads(id),
                    message_id TEXT REFERENCES messages(id),
                    entity_type TEXT NOT NULL
                        CHECK (entity_type IN ('order', 'case', 'return', 'repair')),
                    entity_id TEXT NOT NULL CHECK (length(entity_id) > 0),
                    created_at TEXT NOT NULL,
                    CHECK ((thread_id IS NULL) <> (message_id IS NULL))
                );

                CREATE TABLE IF NOT EXISTS sync_state (
                    account_id TEXT PRIMARY KEY,
                    watermark TEXT,
                    last_sync_at TEXT,
                    last_refresh_at TEXT
                );

                CREATE TABLE IF NOT EXISTS sync_errors (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id TEXT NOT NULL,
                    provider_message_id TEXT,
                    error_type TEXT NOT NULL,
                    error_message TEXT NOT NULL,
                    occurred_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS sync_leases (
                    account_id TEXT PRIMARY KEY,
                    holder TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                );
                """
            )
            # Run migrations BEFORE creating indexes on new columns
            self._migrate_schema(conn)

            conn.executescript(
                """
                CREATE INDEX IF NOT EXISTS idx_messages_thread
                    ON messages(thread_id, sent_at, id);
                CREATE INDEX IF NOT EXISTS idx_messages_sent
                    ON messages(sent_at DESC, id DESC);
                CREATE INDEX IF NOT EXISTS idx_messages_in_reply_to
                    ON messages(in_reply_to);
                CREATE INDEX IF NOT EXISTS idx_message_refs_target
                    ON message_references(referenced_provider_id);
                CREATE INDEX IF NOT EXISTS idx_attachments_message
                    ON attachments(message_id);
                CREATE INDEX IF NOT EXISTS idx_threads_activity
                    ON threads(last_activity DESC, id DESC);
                CREATE INDEX IF NOT EXISTS idx_threads_fallback
                    ON threads(fallback_key, last_activity);
                CREATE UNIQUE INDEX IF NOT EXISTS uq_links_thread
                    ON entity_links(thread_id, entity_type, entity_id)
                    WHERE thread_id IS NOT NULL;
                CREATE UNIQUE INDEX IF NOT EXISTS uq_links_message
                    ON entity_links(message_id, entity_type, entity_id)
                    WHERE message_id IS NOT NULL;
                CREATE INDEX IF NOT EXISTS idx_links_entity
                    ON entity_links(entity_type, entity_id);
                CREATE INDEX IF NOT EXISTS idx_sync_errors_account
                    ON sync_errors(account_id, occurred_at);
                """
            )
            logger.info(f"Mail database initialized at {self.db_path}")

    def _migrate_schema(self, conn: sqlite3.Connection) -> None:
        """Add new columns to existing databases."""
        cursor = conn.execute("PRAGMA table_info(messages)")
        existing_columns = {row[1] for row in cursor.fetchall()}

        migrations = [
            ("archived", "BOOLEAN NOT NULL DEFAULT 0", None),
            ("source_folder", "TEXT NOT NULL DEFAULT 'INBOX'", None),
            ("provider_read", "BOOLEAN NOT NULL DEFAULT 0", "is_read"),
            ("provider_starred", "BOOLEAN NOT NULL DEFAULT 0", "starred"),
        ]

        for col_name, col_type, backfill_from in migrations:
            if col_name not in existing_columns:
                conn.execute(f"ALTER TABLE messages ADD COLUMN {col_name} {col_type}")
                if backfill_from:
                    conn.execute(f"UPDATE messages SET {col_name} = {backfill_from}")
                logger.info(f"Added column {col_name} to messages table")

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Get a database connection context manager."""
        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=BUSY_TIMEOUT_MS / 1000,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self, conn: Optional[sqlite3.Connection] = None
    ) -> Iterator[sqlite3.Connection]:
        """Run a block in a write transaction.

        Passing a connection that already has an open transaction joins it,
        so store methods can be composed into one atomic unit. sqlite errors
        escaping the block roll back and surface as StorageError.
        """
        if conn is not None and conn.in_transaction:
            yield conn
            return

        with self._maybe_connection(conn) as active:
            try:
                active.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageError(f"Cannot start transaction: {e}") from e
            try:
                yield active
            except sqlite3.Error as e:
                active.execute("ROLLBACK")
                raise StorageError(str(e)) from e
            except BaseException:
                active.execute("ROLLBACK")
                raise
            else:
                try:
                    active.execute("COMMIT")
                except sqlite3.Error as e:
                    active.execute("ROLLBACK")
                    raise StorageError(f"Commit failed: {e}") from e

    @contextmanager
    def read(
        self, conn: Optional[sqlite3.Connection] = None
    ) -> Iterator[sqlite3.Connection]:
        """Connection for read-only work, mapping sqlite errors to StorageError."""
        with self._maybe_connection(conn) as active:
            try:
                yield active
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e

    @contextmanager
    def _maybe_connection(
        self, conn: Optional[sqlite3.Connection]
    ) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
        else:
            with self.connection() as fresh:
                yield fresh
