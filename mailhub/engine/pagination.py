"""
Keyset pagination over thread and message lists.

Pages are ordered newest first by ``(sort_key DESC, id DESC)``. A cursor is
the pair of the last item served, and the next page is everything strictly
below it, so rows inserted above the cursor while a user is scrolling never
shift or duplicate the rows below. Filters share the WHERE clause with the
keyset predicate, which keeps every page exactly ``limit`` rows until the
last one.
"""

import logging
from typing import Any, Optional

from mailhub.engine.database import Database
from mailhub.engine.message_store import load_attachments, row_to_message
from mailhub.engine.thread_assembler import row_to_thread
from mailhub.models import Cursor, ListFilter, Page, to_db_time

logger = logging.getLogger(__name__)

_THREAD_FOLDERS = {
    "inbox": "t.archived = 0 AND t.folder = 'inbox'",
    "sent": "t.archived = 0 AND EXISTS (SELECT 1 FROM messages sm WHERE sm.thread_id = t.id AND sm.is_outbound = 1)",
    "archived": "t.archived = 1",
    "starred": "t.archived = 0 AND t.starred = 1",
    "all": "1 = 1",
}

_MESSAGE_FOLDERS = {
    "inbox": "m.archived = 0 AND m.is_outbound = 0",
    "sent": "m.archived = 0 AND m.is_outbound = 1",
    "archived": "m.archived = 1",
    "starred": "m.archived = 0 AND m.starred = 1",
    "all": "1 = 1",
}


def _like_pattern(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class CursorPaginator:
    """Serves stable pages of threads or messages."""

    def __init__(
        self,
        db: Database,
        default_page_size: int = 50,
        max_page_size: int = 200,
    ):
        self.db = db
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    def clamp(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.default_page_size
        return max(1, min(int(limit), self.max_page_size))

    def page(
        self,
        folder: str = "inbox",
        filters: Optional[ListFilter] = None,
        cursor: Optional[Cursor] = None,
        limit: Optional[int] = None,
    ) -> Page:
        """One page of threads ordered by (last_activity DESC, id DESC).

        Raises:
            ValueError: If the folder is unknown
        """
        filters = filters or ListFilter()
        size = self.clamp(limit)
        if folder not in _THREAD_FOLDERS:
            raise ValueError(f"Unknown folder: {folder}")

        where = [_THREAD_FOLDERS[folder]]
        params: list[Any] = []

        if filters.search and filters.search.strip():
            pattern = _like_pattern(filters.search.strip())
            where.append(
                """
                (t.subject LIKE ? ESCAPE '\\'
                 OR t.participants LIKE ? ESCAPE '\\'
                 OR EXISTS (
                    SELECT 1 FROM messages sm WHERE sm.thread_id = t.id
                    AND (sm.subject LIKE ? ESCAPE '\\'
                         OR sm.body_text LIKE ? ESCAPE '\\'
                         OR sm.body_html LIKE ? ESCAPE '\\')
                 ))
                """
            )
            params.extend([pattern] * 5)

        thread_links = """
            SELECT 1 FROM entity_links l
            WHERE (l.thread_id = t.id
                   OR l.message_id IN (SELECT id FROM messages lm WHERE lm.thread_id = t.id))
        """
        if filters.link_type is not None:
            where.append(f"EXISTS ({thread_links} AND l.entity_type = ?)")
            params.append(filters.link_type.value)
        if filters.unlinked:
            where.append(f"NOT EXISTS ({thread_links})")
        if filters.unread_only:
            where.append("t.is_unread = 1")

        if cursor is not None:
            key = to_db_time(cursor.sort_key)
            where.append("(t.last_activity < ? OR (t.last_activity = ? AND t.id < ?))")
            params.extend([key, key, cursor.id])

        sql = f"""
            SELECT t.* FROM threads t
            WHERE {' AND '.join(where)}
            ORDER BY t.last_activity DESC, t.id DESC
            LIMIT ?
        """
        params.append(size + 1)

        with self.db.read() as conn:
            rows = conn.execute(sql, params).fetchall()

        threads = [row_to_thread(row) for row in rows[:size]]
        has_more = len(rows) > size
        next_cursor = None
        if has_more:
            last = threads[-1]
            assert last.last_activity is not None
            next_cursor = Cursor(sort_key=last.last_activity, id=last.id)
        return Page(items=threads, has_more=has_more, next_cursor=next_cursor)

    def page_messages(
        self,
        folder: str = "inbox",
        filters: Optional[ListFilter] = None,
        cursor: Optional[Cursor] = None,
        limit: Optional[int] = None,
    ) -> Page:
        """One page of messages ordered by (sent_at DESC, id DESC).

        Raises:
            ValueError: If the folder is unknown
        """
        filters = filters or ListFilter()
        size = self.clamp(limit)
        if folder not in _MESSAGE_FOLDERS:
            raise ValueError(f"Unknown folder: {folder}")

        where = [_MESSAGE_FOLDERS[folder]]
        params: list[Any] = []

        if filters.search and filters.search.strip():
            pattern = _like_pattern(filters.search.strip())
            columns = (
                "m.subject",
                "m.from_address",
                "m.from_name",
                "m.to_addresses",
                "m.cc_addresses",
                "m.body_text",
                "m.body_html",
            )
            where.append(
                "(" + " OR ".join(f"{c} LIKE ? ESCAPE '\\'" for c in columns) + ")"
            )
            params.extend([pattern] * len(columns))

        message_links = """
            SELECT 1 FROM entity_links l
            WHERE (l.message_id = m.id OR l.thread_id = m.thread_id)
        """
        if filters.link_type is not None:
            where.append(f"EXISTS ({message_links} AND l.entity_type = ?)")
            params.append(filters.link_type.value)
        if filters.unlinked:
            where.append(f"NOT EXISTS ({message_links})")
        if filters.unread_only:
            where.append("m.is_read = 0")

        if cursor is not None:
            key = to_db_time(cursor.sort_key)
            where.append("(m.sent_at < ? OR (m.sent_at = ? AND m.id < ?))")
            params.extend([key, key, cursor.id])

        sql = f"""
            SELECT m.* FROM messages m
            WHERE {' AND '.join(where)}
            ORDER BY m.sent_at DESC, m.id DESC
            LIMIT ?
        """
        params.append(size + 1)

        with self.db.read() as conn:
            rows = conn.execute(sql, params).fetchall()
            page_rows = rows[:size]
            attachments = load_attachments(conn, [r["id"] for r in page_rows])

        messages = [
            row_to_message(row, attachments.get(row["id"], [])) for row in page_rows
        ]
        has_more = len(rows) > size
        next_cursor = None
        if has_more:
            last = messages[-1]
            next_cursor = Cursor(sort_key=last.sent_at, id=last.id)
        return Page(items=messages, has_more=has_more, next_cursor=next_cursor)
