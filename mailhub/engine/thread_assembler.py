"""
Conversation threading.

A message joins a thread by the first rule that matches:

1. Reply chain: the nearest known ancestor (In-Reply-To, then References from
   the nearest back to the root). Failing that, a known descendant, so the
   result does not depend on which end of a conversation arrives first.
2. Fallback: same normalized subject and participant set as a thread whose
   activity lies within the lookback window of the message date.
3. Otherwise the message founds a new thread.

A reply stored before its parent founds a placeholder thread. When a message
is placed, every placeholder holding one of its known replies is folded into
its thread: messages and links move over and the emptied placeholder is
dropped. Threads founded by a true root never fold, so two conversations
grouped apart stay apart. Membership comes out the same whatever order the
messages arrived in; the surviving thread id may differ.
"""

import json
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from mailhub.engine.database import Database
from mailhub.engine.message_store import MessageStore
from mailhub.engine.normalize import fallback_key, normalize_subject
from mailhub.exceptions import NotFoundError
from mailhub.models import (
    EmailAddress,
    Message,
    Thread,
    from_db_time,
    thread_id_for,
    to_db_time,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_DAYS = 60


def row_to_thread(row: Any) -> Thread:
    return Thread(
        id=row["id"],
        subject=row["subject"],
        normalized_subject=row["normalized_subject"],
        fallback_key=row["fallback_key"],
        participants=[EmailAddress(**p) for p in json.loads(row["participants"])],
        message_count=row["message_count"],
        first_activity=from_db_time(row["first_activity"]),
        last_activity=from_db_time(row["last_activity"]),
        folder=row["folder"],
        is_unread=bool(row["is_unread"]),
        has_attachments=bool(row["has_attachments"]),
        starred=bool(row["starred"]),
        archived=bool(row["archived"]),
    )


def _span_distance(sent_at: datetime, first: datetime, last: datetime) -> timedelta:
    if first <= sent_at <= last:
        return timedelta(0)
    return min(abs(sent_at - first), abs(sent_at - last))


class ThreadAssembler:
    """Assigns stored messages to threads and maintains thread aggregates."""

    def __init__(
        self,
        db: Database,
        store: MessageStore,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    ):
        self.db = db
        self.store = store
        self.lookback = timedelta(days=lookback_days)

    def assemble(
        self, message: Message, conn: Optional[sqlite3.Connection] = None
    ) -> str:
        """Place a stored message in a thread and refresh that thread's aggregates.

        Returns:
            The thread id

        Raises:
            NotFoundError: If the message has not been stored
        """
        with self.db.transaction(conn) as tx:
            stored = self.store.get(message.id, tx)
            if stored is None:
                raise NotFoundError(f"Message {message.id} is not stored")

            if stored.thread_key:
                # Threads never split; a re-delivery only refreshes aggregates
                thread_id = stored.thread_key
            else:
                thread_id = self._resolve(stored, tx)
                self.store.assign_thread(stored.id, thread_id, tx)
                self._absorb_replies(stored, thread_id, tx)

            self.recompute(thread_id, tx)
            return thread_id

    def _resolve(self, message: Message, conn: sqlite3.Connection) -> str:
        chain = message.ancestor_ids
        if chain:
            known = self.store.find_by_provider_ids(chain, conn)
            for provider_id in chain:
                ancestor = known.get(provider_id)
                if ancestor is not None and ancestor.thread_key:
                    logger.debug(
                        f"{message.provider_message_id} joins {ancestor.thread_key} via reply chain"
                    )
                    return ancestor.thread_key

        for reply in self.store.find_replies_to(message.provider_message_id, conn):
            if reply.thread_key:
                logger.debug(
                    f"{message.provider_message_id} joins {reply.thread_key} via known reply"
                )
                return reply.thread_key

        normalized = normalize_subject(message.subject)
        key = fallback_key(normalized, message.participants)
        if normalized:
            match = self._find_fallback(key, message.sent_at, conn)
            if match is not None:
                logger.debug(
                    f"{message.provider_message_id} joins {match} via subject/participants"
                )
                return match

        return self._create_thread(message, normalized, key, conn)

    def _absorb_replies(
        self, message: Message, thread_id: str, conn: sqlite3.Connection
    ) -> None:
        folded: set[str] = set()
        for reply in self.store.find_replies_to(message.provider_message_id, conn):
            source = reply.thread_key
            if not source or source == thread_id or source in folded:
                continue
            if not self._is_placeholder(source, conn):
                continue
            self._merge(source, thread_id, conn)
            folded.add(source)

    def _is_placeholder(self, thread_id: str, conn: sqlite3.Connection) -> bool:
        """True for a thread founded by a reply whose ancestors were unknown."""
        for member in self.store.list_by_thread(thread_id, conn):
            if thread_id_for(member.id) == thread_id:
                return bool(member.ancestor_ids)
        return False

    def _merge(self, source: str, target: str, conn: sqlite3.Connection) -> None:
        conn.execute(
            "UPDATE messages SET thread_id = ? WHERE thread_id = ?", (target, source)
        )
        # Links the target already carries would violate uniqueness
        conn.execute(
            """
            DELETE FROM entity_links
            WHERE thread_id = ? AND EXISTS (
                SELECT 1 FROM entity_links kept
                WHERE kept.thread_id = ?
                  AND kept.entity_type = entity_links.entity_type
                  AND kept.entity_id = entity_links.entity_id
            )
            """,
            (source, target),
        )
        conn.execute(
            "UPDATE entity_links SET thread_id = ? WHERE thread_id = ?", (target, source)
        )
        conn.execute("DELETE FROM threads WHERE id = ?", (source,))
        logger.info(f"Folded thread {source} into {target} after its parent arrived")

    def existing_threads(
        self, thread_ids: Iterable[str], conn: Optional[sqlite3.Connection] = None
    ) -> set[str]:
        ids = list(thread_ids)
        if not ids:
            return set()
        placeholders = ",".join("?" * len(ids))
        with self.db.read(conn) as c:
            rows = c.execute(
                f"SELECT id FROM threads WHERE id IN ({placeholders})", tuple(ids)
            ).fetchall()
        return {row["id"] for row in rows}

    def _find_fallback(
        self, key: str, sent_at: datetime, conn: sqlite3.Connection
    ) -> Optional[str]:
        rows = conn.execute(
            """
            SELECT id, first_activity, last_activity FROM threads
            WHERE fallback_key = ?
              AND last_activity >= ?
              AND first_activity <= ?
            """,
            (key, to_db_time(sent_at - self.lookback), to_db_time(sent_at + self.lookback)),
        ).fetchall()

        candidates = []
        for row in rows:
            first = from_db_time(row["first_activity"])
            last = from_db_time(row["last_activity"])
            if first is None or last is None:
                continue
            distance = _span_distance(sent_at, first, last)
            if distance <= self.lookback:
                candidates.append((distance, row["id"]))

        if not candidates:
            return None
        return min(candidates)[1]

    def _create_thread(
        self,
        message: Message,
        normalized: str,
        key: str,
        conn: sqlite3.Connection,
    ) -> str:
        thread_id = thread_id_for(message.id)
        conn.execute(
            """
            INSERT OR IGNORE INTO threads (
                id, subject, normalized_subject, fallback_key, first_activity,
                last_activity, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                thread_id,
                message.subject,
                normalized,
                key,
                to_db_time(message.sent_at),
                to_db_time(message.sent_at),
                to_db_time(utcnow()),
            ),
        )
        logger.debug(f"Created thread {thread_id} for {message.provider_message_id}")
        return thread_id

    def recompute(
        self, thread_id: str, conn: Optional[sqlite3.Connection] = None
    ) -> None:
        """Rebuild a thread's derived fields from its member messages."""
        with self.db.transaction(conn) as tx:
            messages = self.store.list_by_thread(thread_id, tx)
            if not messages:
                return

            participants: dict[str, EmailAddress] = {}
            for message in messages:
                for person in message.participants:
                    if not person.address:
                        continue
                    known = participants.get(person.address)
                    if known is None or (not known.name and person.name):
                        participants[person.address] = person

            subject = messages[0].subject
            tx.execute(
                """
                UPDATE threads SET
                    subject = ?, normalized_subject = ?, participants = ?,
                    message_count = ?, first_activity = ?, last_activity = ?,
                    folder = ?, is_unread = ?, has_attachments = ?, starred = ?,
                    archived = ?
                WHERE id = ?
                """,
                (
                    subject,
                    normalize_subject(subject),
                    json.dumps([p.to_dict() for p in participants.values()]),
                    len(messages),
                    to_db_time(messages[0].sent_at),
                    to_db_time(max(m.sent_at for m in messages)),
                    "sent" if all(m.is_outbound for m in messages) else "inbox",
                    any(not m.is_read for m in messages),
                    any(m.attachments for m in messages),
                    any(m.starred for m in messages),
                    all(m.archived for m in messages),
                    thread_id,
                ),
            )

    def update_flags(
        self,
        thread_id: str,
        read: Optional[bool] = None,
        starred: Optional[bool] = None,
        archived: Optional[bool] = None,
    ) -> Thread:
        """Apply user flags to every message of a thread.

        Raises:
            NotFoundError: If the thread does not exist
        """
        with self.db.transaction() as tx:
            if self._get_thread(thread_id, tx) is None:
                raise NotFoundError(f"Thread {thread_id} not found")
            self.store.set_thread_flags(thread_id, read, starred, archived, tx)
            self.recompute(thread_id, tx)
            thread = self._get_thread(thread_id, tx)
        assert thread is not None
        return thread

    def get_thread(
        self, thread_id: str, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[Thread]:
        with self.db.read(conn) as c:
            return self._get_thread(thread_id, c)

    @staticmethod
    def _get_thread(thread_id: str, conn: sqlite3.Connection) -> Optional[Thread]:
        row = conn.execute("SELECT * FROM threads WHERE id = ?", (thread_id,)).fetchone()
        return row_to_thread(row) if row else None

    def ordered_messages(self, thread_id: str) -> list[Message]:
        """Thread messages in ascending sent_at, ties by id."""
        return self.store.list_by_thread(thread_id)

    def thread_count(self, conn: Optional[sqlite3.Connection] = None) -> int:
        with self.db.read(conn) as c:
            return c.execute("SELECT COUNT(*) FROM threads").fetchone()[0]
