"""Links between mail (threads or single messages) and business records."""

import logging
import sqlite3
import uuid
from typing import Any, Optional

from mailhub.engine.database import Database
from mailhub.exceptions import ConflictError, NotFoundError
from mailhub.models import (
    EntityLink,
    EntityType,
    LinkTarget,
    from_db_time,
    to_db_time,
    utcnow,
)

logger = logging.getLogger(__name__)

MAX_ENTITY_ID_LENGTH = 255


def row_to_link(row: Any) -> EntityLink:
    created_at = from_db_time(row["created_at"])
    assert created_at is not None
    return EntityLink(
        id=row["id"],
        thread_id=row["thread_id"],
        message_id=row["message_id"],
        entity_type=EntityType(row["entity_type"]),
        entity_id=row["entity_id"],
        created_at=created_at,
    )


def _target_column(target: LinkTarget) -> str:
    return "thread_id" if target is LinkTarget.THREAD else "message_id"


def _clean_entity_id(entity_id: Any) -> str:
    value = str(entity_id or "").strip()
    if not value or len(value) > MAX_ENTITY_ID_LENGTH:
        raise ValueError(f"Invalid entity id: {entity_id!r}")
    return value


class LinkRegistry:
    """Sole writer of entity_links rows."""

    def __init__(self, db: Database):
        self.db = db

    def link(
        self,
        target: LinkTarget,
        target_id: str,
        entity_type: Any,
        entity_id: str,
    ) -> EntityLink:
        """Link a thread or message to a business record.

        Raises:
            InvalidEntityType: If entity_type is not a supported kind
            ValueError: If entity_id is empty
            NotFoundError: If the thread or message does not exist
            ConflictError: If the same link already exists
        """
        kind = EntityType.parse(entity_type)
        entity_id = _clean_entity_id(entity_id)
        column = _target_column(target)
        table = "threads" if target is LinkTarget.THREAD else "messages"

        link = EntityLink(
            id=str(uuid.uuid4()),
            entity_type=kind,
            entity_id=entity_id,
            created_at=utcnow(),
            thread_id=target_id if target is LinkTarget.THREAD else None,
            message_id=target_id if target is LinkTarget.MESSAGE else None,
        )

        with self.db.transaction() as tx:
            if tx.execute(f"SELECT 1 FROM {table} WHERE id = ?", (target_id,)).fetchone() is None:
                raise NotFoundError(f"{target.value.capitalize()} {target_id} not found")
            try:
                tx.execute(
                    """
                    INSERT INTO entity_links (id, thread_id, message_id, entity_type, entity_id, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        link.id,
                        link.thread_id,
                        link.message_id,
                        kind.value,
                        entity_id,
                        to_db_time(link.created_at),
                    ),
                )
            except sqlite3.IntegrityError:
                existing = self._find(tx, column, target_id, kind, entity_id)
                if existing is None:
                    raise
                raise ConflictError(
                    f"{target.value.capitalize()} is already linked to this {kind.label.lower()}",
                    existing=existing,
                )

        logger.info(
            f"Linked {target.value} {target_id} to {kind.value} {entity_id} ({link.id})"
        )
        return link

    @staticmethod
    def _find(
        conn: sqlite3.Connection,
        column: str,
        target_id: str,
        kind: EntityType,
        entity_id: str,
    ) -> Optional[EntityLink]:
        row = conn.execute(
            f"""
            SELECT * FROM entity_links
            WHERE {column} = ? AND entity_type = ? AND entity_id = ?
            """,
            (target_id, kind.value, entity_id),
        ).fetchone()
        return row_to_link(row) if row else None

    def unlink(self, link_id: str) -> bool:
        """Remove a link. Removing an absent link is not an error.

        Returns:
            True if a row was deleted
        """
        with self.db.transaction() as tx:
            cursor = tx.execute("DELETE FROM entity_links WHERE id = ?", (link_id,))
            removed = cursor.rowcount > 0
        if removed:
            logger.info(f"Removed link {link_id}")
        else:
            logger.debug(f"Link {link_id} already removed")
        return removed

    def unlink_entity(
        self,
        target: LinkTarget,
        target_id: str,
        entity_type: Any,
        entity_id: str,
    ) -> bool:
        """Remove the link identified by target and business record."""
        kind = EntityType.parse(entity_type)
        column = _target_column(target)
        with self.db.transaction() as tx:
            cursor = tx.execute(
                f"""
                DELETE FROM entity_links
                WHERE {column} = ? AND entity_type = ? AND entity_id = ?
                """,
                (target_id, kind.value, str(entity_id).strip()),
            )
            return cursor.rowcount > 0

    def get(self, link_id: str) -> Optional[EntityLink]:
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT * FROM entity_links WHERE id = ?", (link_id,)
            ).fetchone()
        return row_to_link(row) if row else None

    def links_for_thread(self, thread_id: str) -> list[EntityLink]:
        """Links on the thread itself and on any of its messages."""
        with self.db.read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM entity_links
                WHERE thread_id = ?
                   OR message_id IN (SELECT id FROM messages WHERE thread_id = ?)
                ORDER BY created_at, id
                """,
                (thread_id, thread_id),
            ).fetchall()
        return [row_to_link(row) for row in rows]

    def links_for_threads(self, thread_ids: list[str]) -> dict[str, list[EntityLink]]:
        """Batch form of links_for_thread for list pages."""
        if not thread_ids:
            return {}
        placeholders = ",".join("?" * len(thread_ids))
        with self.db.read() as conn:
            rows = conn.execute(
                f"""
                SELECT l.*, COALESCE(l.thread_id, m.thread_id) AS owner_thread
                FROM entity_links l
                LEFT JOIN messages m ON m.id = l.message_id
                WHERE l.thread_id IN ({placeholders})
                   OR m.thread_id IN ({placeholders})
                ORDER BY l.created_at, l.id
                """,
                (*thread_ids, *thread_ids),
            ).fetchall()
        result: dict[str, list[EntityLink]] = {tid: [] for tid in thread_ids}
        for row in rows:
            result.setdefault(row["owner_thread"], []).append(row_to_link(row))
        return result

    def links_for_message(self, message_id: str) -> list[EntityLink]:
        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT * FROM entity_links WHERE message_id = ? ORDER BY created_at, id",
                (message_id,),
            ).fetchall()
        return [row_to_link(row) for row in rows]

    def links_for_messages(self, message_ids: list[str]) -> dict[str, list[EntityLink]]:
        if not message_ids:
            return {}
        placeholders = ",".join("?" * len(message_ids))
        with self.db.read() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM entity_links WHERE message_id IN ({placeholders})
                ORDER BY created_at, id
                """,
                tuple(message_ids),
            ).fetchall()
        result: dict[str, list[EntityLink]] = {mid: [] for mid in message_ids}
        for row in rows:
            result[row["message_id"]].append(row_to_link(row))
        return result

    def links_for_entity(self, entity_type: Any, entity_id: str) -> list[EntityLink]:
        """All mail linked to one business record."""
        kind = EntityType.parse(entity_type)
        with self.db.read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM entity_links
                WHERE entity_type = ? AND entity_id = ?
                ORDER BY created_at DESC, id DESC
                """,
                (kind.value, str(entity_id).strip()),
            ).fetchall()
        return [row_to_link(row) for row in rows]

    def count(self) -> int:
        with self.db.read() as conn:
            return conn.execute("SELECT COUNT(*) FROM entity_links").fetchone()[0]
