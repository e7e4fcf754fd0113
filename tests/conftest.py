"""Pytest fixtures for mailhub tests."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterator, List, Optional

import pytest

from mailhub.config import SyncConfig
from mailhub.engine.database import Database
from mailhub.engine.links import LinkRegistry
from mailhub.engine.message_store import MessageStore
from mailhub.engine.normalize import normalize
from mailhub.engine.pagination import CursorPaginator
from mailhub.engine.sync import MailSyncEngine
from mailhub.engine.thread_assembler import ThreadAssembler
from mailhub.exceptions import SyncProviderError
from mailhub.models import Message, RawMessage

# Configure logging
logging.basicConfig(level=logging.INFO)

BASE_TIME = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def make_raw(
    n: int,
    subject: Optional[str] = None,
    from_addr: str = "customer@example.com",
    to_addrs: Optional[List[str]] = None,
    minutes: Optional[int] = None,
    in_reply_to: Optional[str] = None,
    references: Optional[List[str]] = None,
    flags: Optional[List[str]] = None,
    **kwargs,
) -> RawMessage:
    """Build a provider message with id <n@example.com>, n minutes after BASE_TIME.

    The server arrival time defaults to the sent time.
    """
    sent_at = BASE_TIME + timedelta(minutes=minutes if minutes is not None else n)
    return RawMessage(
        provider_message_id=f"<{n}@example.com>",
        subject=subject if subject is not None else f"Question {n}",
        from_addr=from_addr,
        to_addrs=to_addrs if to_addrs is not None else ["support@shop.example"],
        sent_at=sent_at,
        received_at=kwargs.pop("received_at", sent_at),
        body_text=kwargs.pop("body_text", f"Body of message {n}"),
        in_reply_to=in_reply_to,
        references=references or [],
        flags=flags or [],
        **kwargs,
    )


class FakeProvider:
    """In-memory provider honouring the inclusive watermark contract."""

    def __init__(self, messages: Optional[List[RawMessage]] = None):
        self.messages: List[RawMessage] = list(messages or [])
        self.fail_after: Optional[int] = None
        self.unavailable = False
        self.calls: List[Optional[datetime]] = []

    def fetch_messages_since(self, watermark: Optional[datetime]) -> Iterator[RawMessage]:
        self.calls.append(watermark)
        if self.unavailable:
            raise SyncProviderError("connection refused", unavailable=True)
        for i, raw in enumerate(self.messages):
            if self.fail_after is not None and i >= self.fail_after:
                raise SyncProviderError("connection reset by peer")
            if watermark is None or raw.received_at >= watermark:
                yield raw


@pytest.fixture
def db(tmp_path):
    return Database(tmp_path / "mail.db")


@pytest.fixture
def store(db):
    return MessageStore(db)


@pytest.fixture
def assembler(db, store):
    return ThreadAssembler(db, store, lookback_days=60)


@pytest.fixture
def links(db):
    return LinkRegistry(db)


@pytest.fixture
def paginator(db):
    return CursorPaginator(db, default_page_size=10, max_page_size=50)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def sync_config():
    return SyncConfig(
        account_id="test",
        batch_size=3,
        refresh_cooldown_seconds=0,
        retry_attempts=3,
        retry_base_delay=0.01,
        retry_max_delay=0.05,
        lease_wait_seconds=0.5,
    )


@pytest.fixture
def sync_engine(db, store, assembler, provider, sync_config):
    return MailSyncEngine(
        db,
        store,
        assembler,
        provider,
        config=sync_config,
        account_address="support@shop.example",
    )


@pytest.fixture
def ingest(store, assembler):
    """Normalize, store and thread one raw message; returns (message, thread_id)."""

    def _ingest(raw: RawMessage) -> tuple[Message, str]:
        result = store.upsert(normalize(raw, account_address="support@shop.example"))
        thread_id = assembler.assemble(result.message)
        return store.get(result.message.id), thread_id

    return _ingest
