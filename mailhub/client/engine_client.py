import logging
import os
from typing import Any, Optional

import httpx

from mailhub.exceptions import (
    ConflictError,
    InvalidEntityType,
    MailHubError,
    NotFoundError,
    RefreshThrottled,
    StorageError,
    SyncInProgress,
    SyncProviderError,
)
from mailhub.models import Cursor, ListFilter

logger = logging.getLogger(__name__)

ENGINE_URL = os.environ.get("MAILHUB_ENGINE_URL", "http://localhost:8000")


def _detail(response: httpx.Response) -> Any:
    try:
        return response.json().get("detail", response.text)
    except ValueError:
        return response.text


def _message(detail: Any) -> str:
    if isinstance(detail, dict):
        return str(detail.get("error", detail))
    return str(detail)


def error_from_response(response: httpx.Response) -> Exception:
    """Rebuild the engine's error from an HTTP error response."""
    code = response.status_code
    detail = _detail(response)
    retry_after = int(response.headers.get("Retry-After", "0") or 0)

    if code == 404:
        return NotFoundError(_message(detail))
    if code == 409:
        if isinstance(detail, dict) and "retryAfter" in detail:
            return SyncInProgress("engine", retry_after=retry_after or detail["retryAfter"])
        existing = detail.get("existing") if isinstance(detail, dict) else None
        return ConflictError(_message(detail), existing=existing)
    if code == 422:
        if isinstance(detail, dict) and "allowed" in detail:
            return InvalidEntityType(_message(detail))
        return ValueError(_message(detail))
    if code == 429:
        if not retry_after and isinstance(detail, dict):
            retry_after = int(detail.get("retryAfter", 0))
        return RefreshThrottled(retry_after)
    if code == 400:
        return ValueError(_message(detail))
    if code == 502:
        return SyncProviderError(_message(detail))
    if code == 503:
        return SyncProviderError(_message(detail), unavailable=True)
    if code >= 500:
        return StorageError(_message(detail))
    return MailHubError(f"Engine error {code}: {_message(detail)}")


class MailClient:
    """Typed calls against the engine HTTP API."""

    def __init__(
        self,
        base_url: str = ENGINE_URL,
        client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(base_url=self.base_url, timeout=self.timeout)
        return self._client

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        client = self._get_client()
        try:
            response = client.request(method, path, **kwargs)
        except httpx.ConnectError:
            raise ConnectionError(
                f"Cannot connect to engine at {self.base_url}. "
                "Is mailhub-engine running?"
            )
        if response.is_error:
            error = error_from_response(response)
            logger.debug(f"{method} {path} failed: {error!r}")
            raise error
        return response.json()

    def health(self) -> dict[str, Any]:
        return self._request("GET", "/health")

    def sync_status(self) -> dict[str, Any]:
        return self._request("GET", "/api/sync/status")

    def list_mail(
        self,
        folder: str = "inbox",
        filters: Optional[ListFilter] = None,
        cursor: Optional[Cursor] = None,
        limit: Optional[int] = None,
        view: str = "threads",
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"folder": folder, "view": view}
        if limit is not None:
            params["limit"] = limit
        if cursor is not None:
            params.update(cursor.to_params())
        if filters is not None:
            if filters.search:
                params["search"] = filters.search
            if filters.link_type is not None:
                params["linkType"] = filters.link_type.value
            if filters.unlinked:
                params["unlinked"] = "true"
            if filters.unread_only:
                params["unread"] = "true"
        return self._request("GET", "/mail/list", params=params)

    def get_thread(self, thread_id: str) -> dict[str, Any]:
        return self._request("GET", f"/mail/{thread_id}")

    def get_message(self, message_id: str) -> dict[str, Any]:
        return self._request("GET", f"/mail/messages/{message_id}")

    def refresh(self, force: bool = False) -> dict[str, Any]:
        params = {"force": "true"} if force else None
        return self._request("POST", "/mail/refresh", params=params)

    def link_thread(self, thread_id: str, entity_type: str, entity_id: str) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/mail/threads/{thread_id}/link",
            json={"type": entity_type, "entityId": entity_id},
        )

    def link_message(self, message_id: str, entity_type: str, entity_id: str) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/mail/messages/{message_id}/link",
            json={"type": entity_type, "entityId": entity_id},
        )

    def unlink(self, link_id: str) -> dict[str, Any]:
        return self._request("DELETE", f"/mail/links/{link_id}")

    def links_for_entity(self, entity_type: str, entity_id: str) -> dict[str, Any]:
        return self._request(
            "GET", "/mail/links", params={"type": entity_type, "entityId": entity_id}
        )

    def update_thread(
        self,
        thread_id: str,
        starred: Optional[bool] = None,
        archived: Optional[bool] = None,
        read: Optional[bool] = None,
    ) -> dict[str, Any]:
        body = {
            k: v
            for k, v in (("starred", starred), ("archived", archived), ("read", read))
            if v is not None
        }
        return self._request("PATCH", f"/mail/threads/{thread_id}", json=body)
