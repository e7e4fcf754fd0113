import pytest

from mailhub.client.query_cache import (
    MAIL_LIST,
    MutationCoordinator,
    MutationState,
    QueryCache,
    list_key,
    thread_key,
)
from mailhub.models import EntityType, ListFilter


@pytest.fixture
def cache():
    return QueryCache()


@pytest.fixture
def coordinator(cache):
    return MutationCoordinator(cache)


def test_list_key_identity():
    assert list_key("inbox") == list_key("inbox", ListFilter())
    assert list_key("inbox", ListFilter(search=" Refund ")) == list_key(
        "inbox", ListFilter(search="refund")
    )
    assert list_key("inbox") != list_key("inbox", view="messages")
    assert list_key("inbox") != list_key("inbox", ListFilter(link_type=EntityType.CASE))
    assert list_key("sent")[:2] == MAIL_LIST


class TestFetch:
    def test_fetch_stores_result(self, cache):
        key = thread_key("t1")
        ticket = cache.begin_fetch(key)

        assert cache.complete_fetch(ticket, {"id": "t1"}) is True
        assert cache.get(key) == {"id": "t1"}
        assert cache.is_stale(key) is False

    def test_result_after_invalidation_discarded(self, cache):
        key = list_key("inbox")
        cache.set(key, {"items": ["old"]})
        ticket = cache.begin_fetch(key)

        cache.invalidate(MAIL_LIST)

        assert cache.complete_fetch(ticket, {"items": ["racing"]}) is False
        assert cache.get(key) == {"items": ["old"]}
        assert cache.is_stale(key) is True

    def test_later_fetch_wins(self, cache):
        key = list_key("inbox")
        slow = cache.begin_fetch(key)
        fast = cache.begin_fetch(key)

        assert cache.complete_fetch(fast, {"items": ["fast"]}) is True
        assert cache.complete_fetch(slow, {"items": ["slow"]}) is False
        assert cache.get(key) == {"items": ["fast"]}

    def test_cancelled_fetch_discarded(self, cache):
        key = thread_key("t1")
        cache.set(key, {"id": "t1", "subject": "shown"})
        ticket = cache.begin_fetch(key)

        cache.cancel(ticket)

        assert cache.complete_fetch(ticket, {"id": "t1", "subject": "late"}) is False
        assert cache.get(key)["subject"] == "shown"

    def test_local_patch_beats_inflight_fetch(self, cache):
        key = thread_key("t1")
        cache.set(key, {"starred": False})
        ticket = cache.begin_fetch(key)

        cache.update(key, lambda data: {**data, "starred": True})

        assert cache.complete_fetch(ticket, {"starred": False}) is False
        assert cache.get(key) == {"starred": True}


class TestInvalidate:
    def test_prefix(self, cache):
        cache.set(list_key("inbox"), {"items": []})
        cache.set(list_key("sent"), {"items": []})
        cache.set(thread_key("t1"), {"id": "t1"})

        stale = cache.invalidate(MAIL_LIST)

        assert set(stale) == {list_key("inbox"), list_key("sent")}
        assert cache.is_stale(thread_key("t1")) is False
        # Data stays renderable until the refetch lands
        assert cache.get(list_key("inbox")) == {"items": []}

    def test_unknown_key_is_stale(self, cache):
        assert cache.is_stale(thread_key("nope")) is True
        assert cache.get(thread_key("nope")) is None

    def test_update_ignores_missing_entry(self, cache):
        cache.update(thread_key("nope"), lambda data: {"x": 1})
        assert cache.get(thread_key("nope")) is None


def _star(key, data):
    return {**data, "starred": True}


class TestMutations:
    def test_success(self, cache, coordinator):
        key = thread_key("t1")
        cache.set(key, {"starred": False})

        result = coordinator.run("t1", [key], _star, lambda: "server-ok")

        assert result == "server-ok"
        assert cache.get(key) == {"starred": True}
        assert cache.is_stale(key) is True
        assert coordinator.in_flight("t1") is None

    def test_failure_rolls_back(self, cache, coordinator):
        key = thread_key("t1")
        cache.set(key, {"starred": False})

        def call():
            assert cache.get(key) == {"starred": True}
            raise ConnectionError("engine down")

        with pytest.raises(ConnectionError):
            coordinator.run("t1", [key], _star, call)

        assert cache.get(key) == {"starred": False}

    def test_state_history(self, cache, coordinator):
        key = thread_key("t1")
        cache.set(key, {"starred": False})

        ok = coordinator.begin("t1", [key], _star)
        assert ok.state is MutationState.PENDING
        coordinator.succeed(ok)

        failed = coordinator.begin("t1", [key], _star)
        coordinator.fail(failed)

        assert ok.history == [MutationState.PENDING, MutationState.COMMITTED]
        assert ok.state is MutationState.SETTLED
        assert failed.history == [MutationState.PENDING, MutationState.ROLLED_BACK]
        assert failed.state is MutationState.SETTLED

    def test_superseded_mutation_does_not_roll_back(self, cache, coordinator):
        key = thread_key("t1")
        cache.set(key, {"starred": False})

        first = coordinator.begin("t1", [key], _star)
        second = coordinator.begin("t1", [key], lambda k, d: {**d, "starred": False, "archived": True})

        coordinator.fail(first)

        assert first.superseded is True
        assert cache.get(key) == {"starred": False, "archived": True}
        assert cache.is_stale(key) is False
        assert coordinator.in_flight("t1") is second

        coordinator.succeed(second)
        assert coordinator.in_flight("t1") is None
        assert cache.is_stale(key) is True

    def test_independent_entities(self, cache, coordinator):
        cache.set(thread_key("a"), {"starred": False})
        cache.set(thread_key("b"), {"starred": False})

        a = coordinator.begin("a", [thread_key("a")], _star)
        b = coordinator.begin("b", [thread_key("b")], _star)
        coordinator.fail(a)

        assert a.superseded is False
        assert b.superseded is False
        assert cache.get(thread_key("a")) == {"starred": False}
        assert cache.get(thread_key("b")) == {"starred": True}

    def test_failure_keeps_later_patch_on_shared_key(self, cache, coordinator):
        inbox = list_key("inbox")
        cache.set(inbox, {"items": [{"id": "a", "starred": False}, {"id": "b", "links": []}]})

        def star_a(key, data):
            items = [{**i, "starred": True} if i["id"] == "a" else i for i in data["items"]]
            return {"items": items}

        def link_b(key, data):
            items = [
                {**i, "links": ["order:O-1"]} if i["id"] == "b" else i
                for i in data["items"]
            ]
            return {"items": items}

        a = coordinator.begin("a", [inbox], star_a)
        b = coordinator.begin("b", [inbox], link_b)
        coordinator.fail(a)

        assert cache.get(inbox) == {
            "items": [{"id": "a", "starred": False}, {"id": "b", "links": ["order:O-1"]}]
        }
        assert coordinator.in_flight("b") is b

        coordinator.succeed(b)
        assert cache.get(inbox)["items"][1]["links"] == ["order:O-1"]

    def test_custom_invalidation(self, cache, coordinator):
        key = thread_key("t1")
        cache.set(key, {"starred": False})
        cache.set(list_key("inbox"), {"items": []})

        coordinator.run("t1", [key], _star, lambda: None, invalidates=[MAIL_LIST])

        assert cache.is_stale(key) is False
        assert cache.is_stale(list_key("inbox")) is True
