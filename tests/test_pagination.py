import pytest

from conftest import make_raw
from mailhub.models import EntityType, LinkTarget, ListFilter


@pytest.fixture
def threads(ingest):
    """23 single-message threads, newest last."""
    ids = []
    for n in range(1, 24):
        _, thread_id = ingest(make_raw(n, subject=f"Topic {n}"))
        ids.append(thread_id)
    return ids


def _walk(paginator, **kwargs):
    pages = []
    cursor = None
    while True:
        page = paginator.page(cursor=cursor, **kwargs)
        pages.append(page)
        if not page.has_more:
            return pages
        cursor = page.next_cursor


class TestThreadPages:
    def test_23_threads_in_pages_of_10(self, paginator, threads):
        pages = _walk(paginator, limit=10)

        assert [len(p.items) for p in pages] == [10, 10, 3]
        assert [p.has_more for p in pages] == [True, True, False]
        assert pages[-1].next_cursor is None

    def test_completeness_and_order(self, paginator, threads):
        pages = _walk(paginator, limit=7)
        seen = [t.id for p in pages for t in p.items]

        assert len(seen) == len(set(seen)) == 23
        assert seen == list(reversed(threads))

    def test_exact_multiple_has_no_phantom_page(self, paginator, ingest):
        for n in range(1, 11):
            ingest(make_raw(n, subject=f"Topic {n}"))

        page = paginator.page(limit=10)

        assert len(page.items) == 10
        assert page.has_more is False

    def test_ties_broken_by_id(self, paginator, ingest):
        for n in range(1, 6):
            ingest(make_raw(n, subject=f"Same time {n}", minutes=0))

        pages = _walk(paginator, limit=2)
        items = [t for p in pages for t in p.items]

        assert [len(p.items) for p in pages] == [2, 2, 1]
        assert [t.id for t in items] == sorted((t.id for t in items), reverse=True)

    def test_new_mail_does_not_shift_pages(self, paginator, threads, ingest):
        first = paginator.page(limit=10)
        ingest(make_raw(100, subject="Brand new", minutes=1000))
        second = paginator.page(limit=10, cursor=first.next_cursor)

        first_ids = {t.id for t in first.items}
        assert first_ids.isdisjoint(t.id for t in second.items)
        assert [t.id for t in second.items] == list(reversed(threads))[10:20]

    @pytest.mark.parametrize("limit,expected", [(0, 1), (-5, 1), (1000, 50), (None, 10)])
    def test_limit_clamped(self, paginator, limit, expected):
        assert paginator.clamp(limit) == expected

    def test_unknown_folder(self, paginator):
        with pytest.raises(ValueError):
            paginator.page(folder="spam")


class TestFilters:
    def test_search(self, paginator, ingest):
        ingest(make_raw(1, subject="Broken zipper"))
        ingest(make_raw(2, subject="Hello", body_text="the ZIPPER came off"))
        ingest(make_raw(3, subject="Other"))
        ingest(make_raw(4, subject="From Zoe", from_addr="zipper.fan@example.com"))

        page = paginator.page(filters=ListFilter(search="zipper"))

        assert len(page.items) == 3
        assert "Other" not in {t.subject for t in page.items}

    def test_search_escapes_wildcards(self, paginator, ingest):
        ingest(make_raw(1, subject="100% refund"))
        ingest(make_raw(2, subject="1000 items"))

        page = paginator.page(filters=ListFilter(search="100%"))

        assert [t.subject for t in page.items] == ["100% refund"]

    def test_link_type_and_unlinked(self, paginator, links, ingest):
        _, order_thread = ingest(make_raw(1, subject="Order"))
        reply, _ = ingest(make_raw(2, subject="Re: Order", in_reply_to="<1@example.com>"))
        _, case_thread = ingest(make_raw(3, subject="Case"))
        _, plain_thread = ingest(make_raw(4, subject="Plain"))

        links.link(LinkTarget.MESSAGE, reply.id, "order", "O-1")
        links.link(LinkTarget.THREAD, case_thread, "case", "C-1")

        orders = paginator.page(filters=ListFilter(link_type=EntityType.ORDER))
        unlinked = paginator.page(filters=ListFilter(unlinked=True))

        assert [t.id for t in orders.items] == [order_thread]
        assert [t.id for t in unlinked.items] == [plain_thread]

    def test_filters_fill_full_pages(self, paginator, ingest):
        for n in range(1, 31):
            subject = f"Refund {n}" if n % 3 == 0 else f"Topic {n}"
            ingest(make_raw(n, subject=subject))

        pages = _walk(paginator, limit=4, filters=ListFilter(search="refund"))

        assert [len(p.items) for p in pages] == [4, 4, 2]

    def test_unread_only(self, paginator, ingest):
        ingest(make_raw(1, subject="Seen", flags=["\\Seen"]))
        ingest(make_raw(2, subject="Unseen"))

        page = paginator.page(filters=ListFilter(unread_only=True))

        assert [t.subject for t in page.items] == ["Unseen"]


class TestFolders:
    @pytest.fixture
    def mailbox(self, ingest, assembler):
        _, inbox = ingest(make_raw(1, subject="Inbox"))
        _, sent = ingest(
            make_raw(2, subject="Sent", from_addr="support@shop.example", to_addrs=["c@example.com"])
        )
        _, archived = ingest(make_raw(3, subject="Archived"))
        _, starred = ingest(make_raw(4, subject="Starred"))
        assembler.update_flags(archived, archived=True)
        assembler.update_flags(starred, starred=True)
        return {"inbox": inbox, "sent": sent, "archived": archived, "starred": starred}

    @pytest.mark.parametrize(
        "folder,expected",
        [
            ("inbox", {"inbox", "starred"}),
            ("sent", {"sent"}),
            ("archived", {"archived"}),
            ("starred", {"starred"}),
            ("all", {"inbox", "sent", "archived", "starred"}),
        ],
    )
    def test_folder_membership(self, paginator, mailbox, folder, expected):
        page = paginator.page(folder=folder)
        assert {t.id for t in page.items} == {mailbox[name] for name in expected}

    def test_archived_starred_thread_hidden_from_starred(self, paginator, mailbox, assembler):
        assembler.update_flags(mailbox["starred"], archived=True)
        assert paginator.page(folder="starred").items == []


class TestMessagePages:
    def test_message_pages(self, paginator, ingest):
        for n in range(1, 8):
            reply_to = "<1@example.com>" if n > 1 else None
            ingest(make_raw(n, subject="Chat", in_reply_to=reply_to))

        pages = []
        cursor = None
        while True:
            page = paginator.page_messages(folder="all", cursor=cursor, limit=3)
            pages.append(page)
            if not page.has_more:
                break
            cursor = page.next_cursor

        items = [m for p in pages for m in p.items]
        assert [len(p.items) for p in pages] == [3, 3, 1]
        assert [m.provider_message_id for m in items] == [
            f"<{n}@example.com>" for n in range(7, 0, -1)
        ]

    def test_message_search_and_links(self, paginator, links, ingest):
        first, thread_id = ingest(make_raw(1, subject="Repair", body_text="screen cracked"))
        ingest(make_raw(2, subject="Other"))
        links.link(LinkTarget.THREAD, thread_id, "repair", "RP-1")

        searched = paginator.page_messages(filters=ListFilter(search="cracked"))
        linked = paginator.page_messages(filters=ListFilter(link_type=EntityType.REPAIR))

        assert [m.id for m in searched.items] == [first.id]
        assert [m.id for m in linked.items] == [first.id]
