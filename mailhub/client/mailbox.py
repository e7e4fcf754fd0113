import logging
from typing import Any, Optional

from mailhub.client.engine_client import MailClient
from mailhub.client.query_cache import (
    MAIL_LIST,
    MutationCoordinator,
    QueryCache,
    QueryKey,
    list_key,
    thread_key,
)
from mailhub.models import Cursor, ListFilter

logger = logging.getLogger(__name__)

# Folders that keep showing archived threads
ARCHIVE_VISIBLE = ("archived", "all")


def _page_data(response: dict[str, Any], items: list[dict[str, Any]]) -> dict[str, Any]:
    return {
        "items": items,
        "hasMore": response["hasMore"],
        "nextCursor": response.get("nextCursor"),
    }


class MailboxView:
    """What a mailbox screen needs: paged lists, thread detail and mutations."""

    def __init__(
        self,
        client: MailClient,
        cache: Optional[QueryCache] = None,
        coordinator: Optional[MutationCoordinator] = None,
        page_size: int = 50,
    ):
        self.client = client
        self.cache = cache or QueryCache()
        self.coordinator = coordinator or MutationCoordinator(self.cache)
        self.page_size = page_size

    def first_page(
        self,
        folder: str = "inbox",
        filters: Optional[ListFilter] = None,
        view: str = "threads",
    ) -> Optional[dict[str, Any]]:
        """Load the first page, replacing whatever the list held before."""
        key = list_key(folder, filters, view)
        ticket = self.cache.begin_fetch(key)
        try:
            response = self.client.list_mail(
                folder, filters, limit=self.page_size, view=view
            )
        except Exception:
            self.cache.cancel(ticket)
            raise
        self.cache.complete_fetch(ticket, _page_data(response, response["emails"]))
        return self.cache.get(key)

    def next_page(
        self,
        folder: str = "inbox",
        filters: Optional[ListFilter] = None,
        view: str = "threads",
    ) -> Optional[dict[str, Any]]:
        """Append the next page to the cached list."""
        key = list_key(folder, filters, view)
        current = self.cache.get(key)
        if current is None:
            return self.first_page(folder, filters, view)
        if not current["hasMore"] or not current.get("nextCursor"):
            return current

        cursor = Cursor.from_params(
            current["nextCursor"]["before"], current["nextCursor"]["beforeId"]
        )
        ticket = self.cache.begin_fetch(key)
        try:
            response = self.client.list_mail(
                folder, filters, cursor=cursor, limit=self.page_size, view=view
            )
        except Exception:
            self.cache.cancel(ticket)
            raise
        items = current["items"] + response["emails"]
        self.cache.complete_fetch(ticket, _page_data(response, items))
        return self.cache.get(key)

    def open_thread(self, thread_id: str) -> Optional[dict[str, Any]]:
        key = thread_key(thread_id)
        ticket = self.cache.begin_fetch(key)
        try:
            detail = self.client.get_thread(thread_id)
        except Exception:
            self.cache.cancel(ticket)
            raise
        self.cache.complete_fetch(ticket, detail)
        return self.cache.get(key)

    def _thread_keys(self, thread_id: str) -> list[QueryKey]:
        return [thread_key(thread_id), *self.cache.keys(MAIL_LIST)]

    def _update_thread(self, thread_id: str, **changes: bool) -> dict[str, Any]:
        archived = changes.get("archived")

        def patch(key: QueryKey, data: Any) -> Any:
            if key == thread_key(thread_id):
                return {**data, **changes}
            items = []
            for item in data["items"]:
                if item.get("id") != thread_id:
                    items.append(item)
                elif archived and key[2] not in ARCHIVE_VISIBLE:
                    continue
                else:
                    items.append({**item, **changes})
            return {**data, "items": items}

        field_map = {"starred": "starred", "archived": "archived", "isUnread": "read"}
        request = {
            field_map[k]: (not v if k == "isUnread" else v) for k, v in changes.items()
        }
        return self.coordinator.run(
            ("thread", thread_id),
            self._thread_keys(thread_id),
            patch,
            lambda: self.client.update_thread(thread_id, **request),
            invalidates=[thread_key(thread_id), MAIL_LIST],
        )

    def set_starred(self, thread_id: str, starred: bool) -> dict[str, Any]:
        return self._update_thread(thread_id, starred=starred)

    def set_archived(self, thread_id: str, archived: bool) -> dict[str, Any]:
        return self._update_thread(thread_id, archived=archived)

    def mark_read(self, thread_id: str, read: bool = True) -> dict[str, Any]:
        return self._update_thread(thread_id, isUnread=not read)

    def link_thread(self, thread_id: str, entity_type: str, entity_id: str) -> dict[str, Any]:
        pending = {
            "id": None,
            "threadId": thread_id,
            "messageId": None,
            "entityType": entity_type,
            "entityId": entity_id,
            "pending": True,
        }

        def patch(key: QueryKey, data: Any) -> Any:
            if key == thread_key(thread_id):
                return {**data, "links": [*data.get("links", []), pending]}
            return {
                **data,
                "items": [
                    {**item, "links": [*item.get("links", []), pending]}
                    if item.get("id") == thread_id
                    else item
                    for item in data["items"]
                ],
            }

        return self.coordinator.run(
            ("thread-links", thread_id),
            self._thread_keys(thread_id),
            patch,
            lambda: self.client.link_thread(thread_id, entity_type, entity_id),
            invalidates=[thread_key(thread_id), MAIL_LIST],
        )

    def unlink(self, link_id: str, thread_id: Optional[str] = None) -> bool:
        """Remove a link. Returns False if it was already gone."""
        keys = self._thread_keys(thread_id) if thread_id else self.cache.keys(MAIL_LIST)

        def drop(links: list[dict[str, Any]]) -> list[dict[str, Any]]:
            return [link for link in links if link.get("id") != link_id]

        def patch(key: QueryKey, data: Any) -> Any:
            if "items" not in data:
                return {**data, "links": drop(data.get("links", []))}
            return {
                **data,
                "items": [
                    {**item, "links": drop(item.get("links", []))}
                    for item in data["items"]
                ],
            }

        invalidates = [MAIL_LIST]
        if thread_id:
            invalidates.append(thread_key(thread_id))
        result = self.coordinator.run(
            ("link", link_id),
            keys,
            patch,
            lambda: self.client.unlink(link_id),
            invalidates=invalidates,
        )
        return bool(result.get("removed"))

    def refresh(self, force: bool = False) -> dict[str, Any]:
        """Pull new mail on the engine, then mark every list stale."""
        summary = self.client.refresh(force=force)
        stale = self.cache.invalidate(MAIL_LIST)
        logger.info(
            f"Refresh brought {summary.get('newMessageCount', 0)} new messages, "
            f"{len(stale)} lists marked stale"
        )
        return summary
