from unittest.mock import patch

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import FakeProvider, make_raw
from mailhub.client import MailboxView, MailClient
from mailhub.client.engine_client import error_from_response
from mailhub.client.query_cache import list_key, thread_key
from mailhub.config import ApiConfig, DatabaseConfig, ServerConfig, SyncConfig
from mailhub.engine.api import app, state
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


@pytest.fixture(autouse=True)
def engine(tmp_path):
    provider = FakeProvider([make_raw(n, subject=f"Topic {n}") for n in range(1, 8)])
    state.setup(
        ServerConfig(
            database=DatabaseConfig(path=str(tmp_path / "engine.db")),
            sync=SyncConfig(account_id="test", refresh_cooldown_seconds=0),
            api=ApiConfig(default_page_size=10, max_page_size=50),
        ),
        provider=provider,
    )
    state.sync_engine.refresh()
    yield provider
    state.database = None
    state.provider = None
    state.sync_engine = None


@pytest.fixture
def client():
    return MailClient(client=TestClient(app))


@pytest.fixture
def view(client):
    return MailboxView(client, page_size=3)


class TestMailClient:
    def test_list_mail(self, client):
        body = client.list_mail(limit=3)

        assert [e["subject"] for e in body["emails"]] == ["Topic 7", "Topic 6", "Topic 5"]
        assert body["hasMore"] is True

        cursor = Cursor.from_params(
            body["nextCursor"]["before"], body["nextCursor"]["beforeId"]
        )
        more = client.list_mail(cursor=cursor, limit=3)
        assert [e["subject"] for e in more["emails"]] == ["Topic 4", "Topic 3", "Topic 2"]

    def test_list_mail_filters(self, client):
        body = client.list_mail(filters=ListFilter(search="topic 3"))
        assert [e["subject"] for e in body["emails"]] == ["Topic 3"]

    def test_not_found(self, client):
        with pytest.raises(NotFoundError):
            client.get_thread("missing")

    def test_conflict_carries_existing(self, client):
        thread_id = client.list_mail()["emails"][0]["id"]
        link = client.link_thread(thread_id, "order", "O-1")

        with pytest.raises(ConflictError) as exc_info:
            client.link_thread(thread_id, "order", "O-1")

        assert exc_info.value.existing["id"] == link["id"]

    def test_invalid_entity_type(self, client):
        thread_id = client.list_mail()["emails"][0]["id"]
        with pytest.raises(InvalidEntityType):
            client.link_thread(thread_id, "invoice", "1")

    def test_refresh_errors(self, client, engine):
        engine.unavailable = True
        with pytest.raises(SyncProviderError) as exc_info:
            client.refresh()
        assert exc_info.value.unavailable is True

    def test_connection_refused(self):
        client = MailClient(base_url="http://127.0.0.1:9")
        with patch.object(httpx.Client, "request", side_effect=httpx.ConnectError("refused")):
            with pytest.raises(ConnectionError, match="Is mailhub-engine running"):
                client.health()


@pytest.mark.parametrize(
    "status_code,detail,headers,expected",
    [
        (404, "Thread x not found", {}, NotFoundError),
        (409, {"error": "busy", "retryAfter": 5}, {"Retry-After": "5"}, SyncInProgress),
        (409, {"error": "exists", "existing": {"id": "l1"}}, {}, ConflictError),
        (422, {"error": "bad", "allowed": ["order"]}, {}, InvalidEntityType),
        (422, "Entity id must not be empty", {}, ValueError),
        (429, {"error": "wait", "retryAfter": 12}, {}, RefreshThrottled),
        (400, "Unknown folder", {}, ValueError),
        (502, "Mail provider error", {}, SyncProviderError),
        (503, "Mail provider error", {}, SyncProviderError),
        (500, "Storage error", {}, StorageError),
        (418, "teapot", {}, MailHubError),
    ],
)
def test_error_from_response(status_code, detail, headers, expected):
    response = httpx.Response(status_code, json={"detail": detail}, headers=headers)
    assert isinstance(error_from_response(response), expected)


def test_throttle_retry_after_from_body():
    response = httpx.Response(429, json={"detail": {"error": "wait", "retryAfter": 12}})
    assert error_from_response(response).retry_after == 12


class TestMailboxView:
    def test_pages_accumulate(self, view):
        first = view.first_page()
        assert [i["subject"] for i in first["items"]] == ["Topic 7", "Topic 6", "Topic 5"]

        view.next_page()
        last = view.next_page()

        assert len(last["items"]) == 7
        assert last["hasMore"] is False
        assert len({i["id"] for i in last["items"]}) == 7
        # Nothing left to load
        assert view.next_page() == last

    def test_first_page_resets_list(self, view):
        view.first_page()
        view.next_page()
        assert len(view.first_page()["items"]) == 3

    def test_open_thread(self, view):
        thread_id = view.first_page()["items"][0]["id"]
        detail = view.open_thread(thread_id)
        assert detail["id"] == thread_id
        assert detail["messages"][0]["subject"] == "Topic 7"

    def test_open_missing_thread_leaves_cache_alone(self, view):
        with pytest.raises(NotFoundError):
            view.open_thread("missing")
        assert view.cache.get(thread_key("missing")) is None

    def test_star_is_optimistic(self, view, client):
        thread_id = view.first_page()["items"][0]["id"]

        result = view.set_starred(thread_id, True)

        assert result["starred"] is True
        item = view.cache.get(list_key("inbox"))["items"][0]
        assert item["starred"] is True
        assert view.cache.is_stale(list_key("inbox")) is True
        assert client.get_thread(thread_id)["starred"] is True

    def test_star_rolls_back_on_failure(self, view, client):
        thread_id = view.first_page()["items"][0]["id"]

        with patch.object(client, "update_thread", side_effect=ConnectionError("down")):
            with pytest.raises(ConnectionError):
                view.set_starred(thread_id, True)

        assert view.cache.get(list_key("inbox"))["items"][0]["starred"] is False

    def test_archive_removes_from_inbox(self, view):
        items = view.first_page()["items"]
        thread_id = items[0]["id"]

        view.set_archived(thread_id, True)

        cached = view.cache.get(list_key("inbox"))["items"]
        assert thread_id not in {i["id"] for i in cached}
        fresh = view.first_page()["items"]
        assert thread_id not in {i["id"] for i in fresh}
        archived = view.first_page(folder="archived")["items"]
        assert [i["id"] for i in archived] == [thread_id]

    def test_mark_read(self, view, client):
        thread_id = view.first_page()["items"][0]["id"]
        view.mark_read(thread_id)
        assert client.get_thread(thread_id)["isUnread"] is False

    def test_link_and_unlink(self, view, client):
        thread_id = view.first_page()["items"][0]["id"]
        view.open_thread(thread_id)

        link = view.link_thread(thread_id, "case", "C-1")

        assert link["entityType"] == "case"
        assert view.cache.get(thread_key(thread_id))["links"][-1]["pending"] is True
        assert view.cache.is_stale(thread_key(thread_id)) is True
        assert [l["id"] for l in view.open_thread(thread_id)["links"]] == [link["id"]]

        assert view.unlink(link["id"], thread_id=thread_id) is True
        assert view.cache.get(thread_key(thread_id))["links"] == []
        assert view.unlink(link["id"]) is False

    def test_failed_link_rolls_back(self, view):
        thread_id = view.first_page()["items"][0]["id"]
        view.link_thread(thread_id, "order", "O-1")
        view.first_page()

        with pytest.raises(ConflictError):
            view.link_thread(thread_id, "order", "O-1")

        links = view.cache.get(list_key("inbox"))["items"][0]["links"]
        assert [l["entityId"] for l in links] == ["O-1"]
        assert "pending" not in links[0]

    def test_refresh_marks_lists_stale(self, view, engine):
        view.first_page()
        engine.messages.append(make_raw(20, subject="Fresh"))

        summary = view.refresh(force=True)

        assert summary["newMessageCount"] == 1
        assert view.cache.is_stale(list_key("inbox")) is True
        assert view.first_page()["items"][0]["subject"] == "Fresh"
