import logging
import sqlite3

from mailhub.engine.database import Database

FLAG_COLUMNS = {"archived", "source_folder", "provider_read", "provider_starred"}


def _columns(db):
    with db.read() as conn:
        return {row[1] for row in conn.execute("PRAGMA table_info(messages)")}


def test_fresh_database_needs_no_migration(tmp_path, caplog):
    with caplog.at_level(logging.INFO, logger="mailhub.engine.database"):
        db = Database(tmp_path / "fresh.db")

    assert FLAG_COLUMNS <= _columns(db)
    assert "Added column" not in caplog.text


def test_old_database_migrated(tmp_path, caplog):
    path = tmp_path / "old.db"
    conn = sqlite3.connect(path)
    conn.executescript(
        """
        CREATE TABLE messages (
            id TEXT PRIMARY KEY,
            provider_message_id TEXT NOT NULL UNIQUE,
            thread_id TEXT,
            in_reply_to TEXT,
            sent_at TEXT NOT NULL,
            is_read BOOLEAN NOT NULL DEFAULT 0,
            starred BOOLEAN NOT NULL DEFAULT 0,
            synced_at TEXT NOT NULL
        );
        INSERT INTO messages (id, provider_message_id, sent_at, is_read, starred, synced_at)
            VALUES ('m1', '<1@example.com>', '2024-03-01T09:00:00+00:00', 1, 0,
                    '2024-03-01T09:00:00+00:00');
        """
    )
    conn.commit()
    conn.close()

    with caplog.at_level(logging.INFO, logger="mailhub.engine.database"):
        db = Database(path)

    assert FLAG_COLUMNS <= _columns(db)
    assert "Added column provider_read" in caplog.text
    with db.read() as c:
        row = c.execute(
            "SELECT archived, source_folder, provider_read, provider_starred FROM messages"
        ).fetchone()
    assert tuple(row) == (0, "INBOX", 1, 0)

    # Reopening finds nothing left to add
    caplog.clear()
    with caplog.at_level(logging.INFO, logger="mailhub.engine.database"):
        Database(path)
    assert "Added column" not in caplog.text
