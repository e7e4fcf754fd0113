"""Durable, idempotent storage of normalized messages."""

import json
import logging
import sqlite3
from typing import Any, Iterable, Optional

from mailhub.engine.database import Database
from mailhub.exceptions import NotFoundError, StorageError
from mailhub.models import (
    Attachment,
    EmailAddress,
    Message,
    UpsertResult,
    from_db_time,
    to_db_time,
    utcnow,
)

logger = logging.getLogger(__name__)

# RFC 5322 line length limit
MAX_PROVIDER_ID_LENGTH = 998


def _encode_addresses(addresses: list[EmailAddress]) -> str:
    return json.dumps([a.to_dict() for a in addresses])


def _decode_addresses(value: Optional[str]) -> list[EmailAddress]:
    if not value:
        return []
    return [EmailAddress(**item) for item in json.loads(value)]


def validate_provider_id(provider_message_id: str) -> None:
    if not provider_message_id:
        raise StorageError("Provider message id is empty")
    if len(provider_message_id) > MAX_PROVIDER_ID_LENGTH:
        raise StorageError(
            f"Provider message id exceeds {MAX_PROVIDER_ID_LENGTH} characters"
        )
    if any(ch.isspace() for ch in provider_message_id):
        raise StorageError(
            f"Provider message id contains whitespace: {provider_message_id!r}"
        )


class MessageStore:
    """Messages keyed by provider id; only flags change after the first write."""

    def __init__(self, db: Database):
        self.db = db

    def upsert(
        self, message: Message, conn: Optional[sqlite3.Connection] = None
    ) -> UpsertResult:
        """Insert a message or absorb a re-delivery.

        A re-delivered message only refreshes its provider flags (read,
        starred) and, when the provider corrected it, ``sent_at``. Everything
        else stays as first stored.

        A provider flag is applied only when it differs from what the
        provider reported last time, so an unchanged re-delivery keeps local
        read/star toggles.

        Raises:
            StorageError: On invalid provider ids or database failures
        """
        validate_provider_id(message.provider_message_id)

        with self.db.transaction(conn) as tx:
            existing = self._fetch_one(
                tx, "provider_message_id = ?", (message.provider_message_id,)
            )
            if existing is None:
                self._insert(tx, message)
                stored = self._fetch_one(tx, "id = ?", (message.id,))
                assert stored is not None
                return UpsertResult(message=stored, created=True)

            reported = tx.execute(
                "SELECT provider_read, provider_starred FROM messages WHERE id = ?",
                (existing.id,),
            ).fetchone()
            read_changed = bool(reported["provider_read"]) != message.is_read
            starred_changed = bool(reported["provider_starred"]) != message.starred
            flags_changed = read_changed or starred_changed
            sent_at_changed = existing.sent_at != message.sent_at

            if read_changed:
                existing.is_read = message.is_read
            if starred_changed:
                existing.starred = message.starred

            if flags_changed or sent_at_changed:
                tx.execute(
                    """
                    UPDATE messages
                    SET is_read = ?, starred = ?, provider_read = ?,
                        provider_starred = ?, sent_at = ?, synced_at = ?
                    WHERE id = ?
                    """,
                    (
                        existing.is_read,
                        existing.starred,
                        message.is_read,
                        message.starred,
                        to_db_time(message.sent_at),
                        to_db_time(utcnow()),
                        existing.id,
                    ),
                )
                if sent_at_changed:
                    logger.info(
                        f"[SYNC] sent_at corrected for {existing.provider_message_id}: "
                        f"{existing.sent_at.isoformat()} -> {message.sent_at.isoformat()}"
                    )
                existing.sent_at = message.sent_at

            return UpsertResult(
                message=existing,
                created=False,
                flags_changed=flags_changed,
                sent_at_changed=sent_at_changed,
            )

    def _insert(self, conn: sqlite3.Connection, message: Message) -> None:
        now = to_db_time(utcnow())
        conn.execute(
            """
            INSERT INTO messages (
                id, provider_message_id, thread_id, from_address, from_name,
                to_addresses, cc_addresses, subject, body_html, body_text, is_html,
                sent_at, is_outbound, in_reply_to, references_header, is_read,
                starred, archived, source_folder, provider_read,
                provider_starred, synced_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                message.id,
                message.provider_message_id,
                message.thread_key,
                message.from_address.address,
                message.from_address.name,
                _encode_addresses(message.to_addresses),
                _encode_addresses(message.cc_addresses),
                message.subject,
                message.body_html,
                message.body_text,
                message.is_html,
                to_db_time(message.sent_at),
                message.is_outbound,
                message.in_reply_to_id,
                json.dumps(message.reference_ids),
                message.is_read,
                message.starred,
                message.archived,
                message.source_folder,
                message.is_read,
                message.starred,
                now,
            ),
        )
        referenced = set(message.reference_ids)
        if message.in_reply_to_id:
            referenced.add(message.in_reply_to_id)
        conn.executemany(
            "INSERT OR IGNORE INTO message_references (message_id, referenced_provider_id) VALUES (?, ?)",
            [(message.id, ref) for ref in sorted(referenced)],
        )
        for attachment in message.attachments:
            storage_ref = (
                attachment.storage_ref
                or f"attachments/{message.id}/{attachment.filename}"
            )
            conn.execute(
                """
                INSERT INTO attachments (message_id, filename, mime_type, size, storage_ref)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    message.id,
                    attachment.filename,
                    attachment.mime_type,
                    attachment.size,
                    storage_ref,
                ),
            )

    def assign_thread(
        self, message_id: str, thread_id: str, conn: Optional[sqlite3.Connection] = None
    ) -> None:
        with self.db.transaction(conn) as tx:
            tx.execute(
                "UPDATE messages SET thread_id = ? WHERE id = ?", (thread_id, message_id)
            )

    def get(
        self, message_id: str, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[Message]:
        """Get a single message by its stable id."""
        with self.db.read(conn) as c:
            return self._fetch_one(c, "id = ?", (message_id,))

    def get_by_provider_id(
        self, provider_message_id: str, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[Message]:
        with self.db.read(conn) as c:
            return self._fetch_one(c, "provider_message_id = ?", (provider_message_id,))

    def find_by_provider_ids(
        self, provider_ids: Iterable[str], conn: Optional[sqlite3.Connection] = None
    ) -> dict[str, Message]:
        """Stored messages among the given provider ids, keyed by provider id."""
        ids = list(dict.fromkeys(provider_ids))
        if not ids:
            return {}
        with self.db.read(conn) as c:
            placeholders = ",".join("?" * len(ids))
            messages = self._fetch_many(
                c, f"provider_message_id IN ({placeholders})", tuple(ids)
            )
        return {m.provider_message_id: m for m in messages}

    def find_replies_to(
        self, provider_message_id: str, conn: Optional[sqlite3.Connection] = None
    ) -> list[Message]:
        """Stored messages whose reply chain names the given message."""
        with self.db.read(conn) as c:
            return self._fetch_many(
                c,
                """
                id IN (
                    SELECT message_id FROM message_references
                    WHERE referenced_provider_id = ?
                )
                """,
                (provider_message_id,),
            )

    def list_by_thread(
        self, thread_id: str, conn: Optional[sqlite3.Connection] = None
    ) -> list[Message]:
        """Messages of a thread, oldest first, ties broken by id."""
        with self.db.read(conn) as c:
            return self._fetch_many(c, "thread_id = ?", (thread_id,))

    def set_flags(
        self,
        message_id: str,
        read: Optional[bool] = None,
        starred: Optional[bool] = None,
        archived: Optional[bool] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Message:
        """Apply user flag changes to one message.

        Raises:
            NotFoundError: If the message does not exist
        """
        updates, params = self._flag_updates(read, starred, archived)
        with self.db.transaction(conn) as tx:
            if updates:
                tx.execute(
                    f"UPDATE messages SET {', '.join(updates)} WHERE id = ?",
                    (*params, message_id),
                )
            message = self._fetch_one(tx, "id = ?", (message_id,))
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")
        return message

    def set_thread_flags(
        self,
        thread_id: str,
        read: Optional[bool] = None,
        starred: Optional[bool] = None,
        archived: Optional[bool] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> int:
        """Apply user flag changes to every message of a thread."""
        updates, params = self._flag_updates(read, starred, archived)
        if not updates:
            return 0
        with self.db.transaction(conn) as tx:
            cursor = tx.execute(
                f"UPDATE messages SET {', '.join(updates)} WHERE thread_id = ?",
                (*params, thread_id),
            )
            return cursor.rowcount

    @staticmethod
    def _flag_updates(
        read: Optional[bool], starred: Optional[bool], archived: Optional[bool]
    ) -> tuple[list[str], list[bool]]:
        updates: list[str] = []
        params: list[bool] = []
        for column, value in (
            ("is_read", read),
            ("starred", starred),
            ("archived", archived),
        ):
            if value is not None:
                updates.append(f"{column} = ?")
                params.append(bool(value))
        return updates, params

    def list_attachments(
        self, message_id: str, conn: Optional[sqlite3.Connection] = None
    ) -> list[Attachment]:
        with self.db.read(conn) as c:
            return load_attachments(c, [message_id]).get(message_id, [])

    def count(self, conn: Optional[sqlite3.Connection] = None) -> int:
        with self.db.read(conn) as c:
            return c.execute("SELECT COUNT(*) FROM messages").fetchone()[0]

    def _fetch_one(
        self, conn: sqlite3.Connection, where: str, params: tuple
    ) -> Optional[Message]:
        messages = self._fetch_many(conn, where, params)
        return messages[0] if messages else None

    def _fetch_many(
        self, conn: sqlite3.Connection, where: str, params: tuple
    ) -> list[Message]:
        rows = conn.execute(
            f"SELECT * FROM messages WHERE {where} ORDER BY sent_at ASC, id ASC",
            params,
        ).fetchall()
        attachments = load_attachments(conn, [row["id"] for row in rows])
        return [row_to_message(row, attachments.get(row["id"], [])) for row in rows]


def load_attachments(
    conn: sqlite3.Connection, message_ids: list[str]
) -> dict[str, list[Attachment]]:
    if not message_ids:
        return {}
    placeholders = ",".join("?" * len(message_ids))
    rows = conn.execute(
        f"""
        SELECT message_id, filename, mime_type, size, storage_ref
        FROM attachments WHERE message_id IN ({placeholders})
        ORDER BY id
        """,
        tuple(message_ids),
    ).fetchall()
    result: dict[str, list[Attachment]] = {}
    for row in rows:
        result.setdefault(row["message_id"], []).append(
            Attachment(
                filename=row["filename"],
                mime_type=row["mime_type"],
                size=row["size"],
                storage_ref=row["storage_ref"],
            )
        )
    return result


def row_to_message(row: Any, attachments: list[Attachment]) -> Message:
    sent_at = from_db_time(row["sent_at"])
    assert sent_at is not None
    return Message(
        id=row["id"],
        provider_message_id=row["provider_message_id"],
        thread_key=row["thread_id"],
        from_address=EmailAddress(address=row["from_address"], name=row["from_name"]),
        to_addresses=_decode_addresses(row["to_addresses"]),
        cc_addresses=_decode_addresses(row["cc_addresses"]),
        subject=row["subject"],
        body_html=row["body_html"],
        body_text=row["body_text"],
        is_html=bool(row["is_html"]),
        sent_at=sent_at,
        is_outbound=bool(row["is_outbound"]),
        in_reply_to_id=row["in_reply_to"],
        reference_ids=json.loads(row["references_header"] or "[]"),
        is_read=bool(row["is_read"]),
        starred=bool(row["starred"]),
        archived=bool(row["archived"]),
        source_folder=row["source_folder"],
        attachments=attachments,
    )
