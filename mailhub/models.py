"""Domain models for messages, threads and entity links."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parseaddr
from enum import Enum
from typing import Any, Optional

from mailhub.exceptions import InvalidEntityType

MESSAGE_NAMESPACE = uuid.UUID("6f1c8f8e-2b9a-4f5e-9a57-0d7c4be1a001")
THREAD_NAMESPACE = uuid.UUID("6f1c8f8e-2b9a-4f5e-9a57-0d7c4be1a002")

# Fixed-width UTC format so stored timestamps compare correctly as text
DB_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_time(value: datetime) -> str:
    return to_utc(value).strftime(DB_TIME_FORMAT)


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, DB_TIME_FORMAT).replace(tzinfo=timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string or datetime into aware UTC.

    Raises:
        ValueError: If the value cannot be parsed
    """
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, str) and value:
        return to_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    raise ValueError(f"Invalid timestamp: {value!r}")


def message_id_for(provider_message_id: str) -> str:
    """Stable, provider-independent message id."""
    return str(uuid.uuid5(MESSAGE_NAMESPACE, provider_message_id))


def thread_id_for(message_id: str) -> str:
    """Id of a thread founded by the given message."""
    return str(uuid.uuid5(THREAD_NAMESPACE, message_id))


class EntityType(Enum):
    """Business records a thread or message can be linked to."""

    ORDER = "order"
    CASE = "case"
    RETURN = "return"
    REPAIR = "repair"

    @classmethod
    def parse(cls, value: Any) -> "EntityType":
        """Validate a client supplied entity type.

        Raises:
            InvalidEntityType: If the value is not a known type
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        raise InvalidEntityType(value)

    @property
    def label(self) -> str:
        return ENTITY_LABELS[self]

    @property
    def route(self) -> str:
        """UI route prefix for the linked record."""
        return ENTITY_ROUTES[self]


ENTITY_LABELS: dict[EntityType, str] = {
    EntityType.ORDER: "Order",
    EntityType.CASE: "Case",
    EntityType.RETURN: "Return",
    EntityType.REPAIR: "Repair",
}

ENTITY_ROUTES: dict[EntityType, str] = {
    EntityType.ORDER: "/orders",
    EntityType.CASE: "/cases",
    EntityType.RETURN: "/returns",
    EntityType.REPAIR: "/repairs",
}

for _mapping in (ENTITY_LABELS, ENTITY_ROUTES):
    if set(_mapping) != set(EntityType):
        raise RuntimeError("Entity type mapping is not exhaustive")


class LinkTarget(Enum):
    THREAD = "thread"
    MESSAGE = "message"


@dataclass(frozen=True)
class EmailAddress:
    """Email address with optional display name."""

    address: str
    name: str = ""

    @classmethod
    def parse(cls, value: str) -> "EmailAddress":
        name, address = parseaddr(value or "")
        return cls(address=address.strip().lower(), name=name.strip())

    def __str__(self) -> str:
        return f"{self.name} <{self.address}>" if self.name else self.address

    def to_dict(self) -> dict[str, str]:
        return {"address": self.address, "name": self.name}


@dataclass
class Attachment:
    filename: str
    mime_type: str = "application/octet-stream"
    size: int = 0
    storage_ref: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "mimeType": self.mime_type,
            "size": self.size,
            "storageRef": self.storage_ref,
        }


@dataclass
class RawMessage:
    """Message as handed over by a provider, before normalization."""

    provider_message_id: str
    subject: str = ""
    from_addr: str = ""
    to_addrs: list[str] = field(default_factory=list)
    cc_addrs: list[str] = field(default_factory=list)
    sent_at: Any = None
    body_html: Optional[str] = None
    body_text: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: list[str] = field(default_factory=list)
    flags: list[str] = field(default_factory=list)
    folder: str = "INBOX"
    attachments: list[Attachment] = field(default_factory=list)
    is_outbound: Optional[bool] = None
    # Server-side arrival time; the sync watermark is built from this
    received_at: Optional[datetime] = None


@dataclass
class Message:
    """Normalized message as stored by the MessageStore."""

    id: str
    provider_message_id: str
    from_address: EmailAddress
    sent_at: datetime
    subject: str = ""
    to_addresses: list[EmailAddress] = field(default_factory=list)
    cc_addresses: list[EmailAddress] = field(default_factory=list)
    body_html: Optional[str] = None
    body_text: Optional[str] = None
    is_html: bool = False
    is_outbound: bool = False
    attachments: list[Attachment] = field(default_factory=list)
    in_reply_to_id: Optional[str] = None
    reference_ids: list[str] = field(default_factory=list)
    thread_key: Optional[str] = None
    is_read: bool = False
    starred: bool = False
    archived: bool = False
    source_folder: str = "INBOX"

    @property
    def participants(self) -> list[EmailAddress]:
        return [self.from_address, *self.to_addresses, *self.cc_addresses]

    @property
    def ancestor_ids(self) -> list[str]:
        """Provider ids of ancestors, nearest first."""
        chain: list[str] = []
        if self.in_reply_to_id:
            chain.append(self.in_reply_to_id)
        for ref in reversed(self.reference_ids):
            if ref not in chain:
                chain.append(ref)
        return chain

    def to_dict(self, include_body: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "providerMessageId": self.provider_message_id,
            "threadKey": self.thread_key,
            "fromAddress": self.from_address.address,
            "fromName": self.from_address.name,
            "toAddresses": [a.address for a in self.to_addresses],
            "ccAddresses": [a.address for a in self.cc_addresses],
            "subject": self.subject,
            "isHtml": self.is_html,
            "sentAt": self.sent_at.isoformat(),
            "isOutbound": self.is_outbound,
            "inReplyToId": self.in_reply_to_id,
            "referenceIds": list(self.reference_ids),
            "isRead": self.is_read,
            "starred": self.starred,
            "archived": self.archived,
            "attachments": [a.to_dict() for a in self.attachments],
        }
        if include_body:
            data["bodyHtml"] = self.body_html
            data["bodyText"] = self.body_text
        return data


@dataclass
class Thread:
    id: str
    subject: str
    normalized_subject: str
    fallback_key: str
    participants: list[EmailAddress] = field(default_factory=list)
    message_count: int = 0
    first_activity: Optional[datetime] = None
    last_activity: Optional[datetime] = None
    folder: str = "inbox"
    is_unread: bool = False
    has_attachments: bool = False
    starred: bool = False
    archived: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subject": self.subject,
            "participants": [p.to_dict() for p in self.participants],
            "messageCount": self.message_count,
            "firstActivity": self.first_activity.isoformat()
            if self.first_activity
            else None,
            "lastActivity": self.last_activity.isoformat()
            if self.last_activity
            else None,
            "folder": self.folder,
            "isUnread": self.is_unread,
            "hasAttachments": self.has_attachments,
            "starred": self.starred,
            "archived": self.archived,
        }


@dataclass
class EntityLink:
    id: str
    entity_type: EntityType
    entity_id: str
    created_at: datetime
    thread_id: Optional[str] = None
    message_id: Optional[str] = None

    @property
    def target(self) -> LinkTarget:
        return LinkTarget.THREAD if self.thread_id else LinkTarget.MESSAGE

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "threadId": self.thread_id,
            "messageId": self.message_id,
            "entityType": self.entity_type.value,
            "entityLabel": self.entity_type.label,
            "entityId": self.entity_id,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class Cursor:
    """Keyset position: the sort key and id of the last item served."""

    sort_key: datetime
    id: str

    def to_params(self) -> dict[str, str]:
        return {"before": self.sort_key.isoformat(), "beforeId": self.id}

    @classmethod
    def from_params(
        cls, before: Optional[str], before_id: Optional[str]
    ) -> Optional["Cursor"]:
        """Build a cursor from the ``before``/``beforeId`` query pair.

        Raises:
            ValueError: If only one half is given or the timestamp is invalid
        """
        if not before and not before_id:
            return None
        if not before or not before_id:
            raise ValueError("before and beforeId must be given together")
        return cls(sort_key=parse_timestamp(before), id=before_id)


@dataclass(frozen=True)
class ListFilter:
    """Predicates applied before the keyset comparison."""

    search: Optional[str] = None
    link_type: Optional[EntityType] = None
    unlinked: bool = False
    unread_only: bool = False

    def cache_identity(self) -> tuple:
        return (
            (self.search or "").strip().lower(),
            self.link_type.value if self.link_type else None,
            self.unlinked,
            self.unread_only,
        )


@dataclass
class Page:
    items: list[Any]
    has_more: bool
    next_cursor: Optional[Cursor] = None


@dataclass
class UpsertResult:
    message: Message
    created: bool
    flags_changed: bool = False
    sent_at_changed: bool = False


@dataclass
class SyncSummary:
    new_message_count: int = 0
    updated_message_count: int = 0
    thread_count: int = 0
    watermark: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "newMessageCount": self.new_message_count,
            "updatedMessageCount": self.updated_message_count,
            "threadCount": self.thread_count,
            "watermark": self.watermark.isoformat() if self.watermark else None,
        }
