import pytest

from conftest import make_raw
from mailhub.exceptions import ConflictError, InvalidEntityType, NotFoundError
from mailhub.models import EntityType, LinkTarget


@pytest.fixture
def thread(ingest):
    message, thread_id = ingest(make_raw(1, subject="Where is order O-1?"))
    return message, thread_id


class TestLink:
    def test_link_thread(self, links, thread):
        _, thread_id = thread

        link = links.link(LinkTarget.THREAD, thread_id, "order", "O-1")

        assert link.thread_id == thread_id
        assert link.message_id is None
        assert link.entity_type is EntityType.ORDER
        assert link.target is LinkTarget.THREAD
        assert links.links_for_thread(thread_id) == [link]

    def test_duplicate_link_conflicts(self, links, thread):
        _, thread_id = thread
        first = links.link(LinkTarget.THREAD, thread_id, EntityType.ORDER, "O-1")

        with pytest.raises(ConflictError) as exc_info:
            links.link(LinkTarget.THREAD, thread_id, "ORDER", " O-1 ")

        assert exc_info.value.existing.id == first.id
        assert links.count() == 1

    def test_same_entity_on_message_and_thread(self, links, thread):
        message, thread_id = thread
        links.link(LinkTarget.THREAD, thread_id, "case", "C-9")
        links.link(LinkTarget.MESSAGE, message.id, "case", "C-9")
        assert links.count() == 2

    def test_invalid_entity_type(self, links, thread):
        _, thread_id = thread
        with pytest.raises(InvalidEntityType):
            links.link(LinkTarget.THREAD, thread_id, "invoice", "I-1")
        assert links.count() == 0

    def test_empty_entity_id(self, links, thread):
        _, thread_id = thread
        with pytest.raises(ValueError):
            links.link(LinkTarget.THREAD, thread_id, "order", "   ")

    def test_unknown_target(self, links):
        with pytest.raises(NotFoundError):
            links.link(LinkTarget.THREAD, "missing", "order", "O-1")
        with pytest.raises(NotFoundError):
            links.link(LinkTarget.MESSAGE, "missing", "order", "O-1")


class TestUnlink:
    def test_unlink_is_idempotent(self, links, thread):
        _, thread_id = thread
        link = links.link(LinkTarget.THREAD, thread_id, "return", "R-3")

        assert links.unlink(link.id) is True
        assert links.unlink(link.id) is False
        assert links.get(link.id) is None

    def test_unlink_entity(self, links, thread):
        message, _ = thread
        links.link(LinkTarget.MESSAGE, message.id, "case", "C-1")

        assert links.unlink_entity(LinkTarget.MESSAGE, message.id, "case", "C-1") is True
        assert links.unlink_entity(LinkTarget.MESSAGE, message.id, "case", "C-1") is False
        assert links.links_for_message(message.id) == []


class TestQueries:
    def test_thread_links_include_message_links(self, links, ingest, thread):
        message, thread_id = thread
        reply, _ = ingest(make_raw(2, subject="Re: order", in_reply_to="<1@example.com>"))

        on_thread = links.link(LinkTarget.THREAD, thread_id, "order", "O-1")
        on_reply = links.link(LinkTarget.MESSAGE, reply.id, "repair", "RP-2")

        assert {l.id for l in links.links_for_thread(thread_id)} == {on_thread.id, on_reply.id}
        assert links.links_for_message(reply.id) == [on_reply]
        batched = links.links_for_threads([thread_id, "other"])
        assert {l.id for l in batched[thread_id]} == {on_thread.id, on_reply.id}
        assert batched["other"] == []

    def test_links_for_entity(self, links, ingest, thread):
        _, first_thread = thread
        _, second_thread = ingest(make_raw(5, subject="Unrelated"))

        links.link(LinkTarget.THREAD, first_thread, "case", "C-7")
        links.link(LinkTarget.THREAD, second_thread, "case", "C-7")
        links.link(LinkTarget.THREAD, second_thread, "case", "C-8")

        found = links.links_for_entity("case", "C-7")
        assert {l.thread_id for l in found} == {first_thread, second_thread}

    def test_links_for_entity_invalid_type(self, links):
        with pytest.raises(InvalidEntityType):
            links.links_for_entity("customer", "1")


def test_entity_type_labels():
    assert EntityType.REPAIR.label == "Repair"
    assert EntityType.CASE.route == "/cases"
    assert {t.value for t in EntityType} == {"order", "case", "return", "repair"}
