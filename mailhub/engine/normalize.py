"""Turn provider messages into normalized Message records."""

import hashlib
import logging
import re
from typing import Iterable, Optional

from mailhub.models import (
    EmailAddress,
    Message,
    RawMessage,
    message_id_for,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

# Reply/forward markers in English, German, Dutch and Scandinavian clients,
# optionally counted like "Re[2]:"
_SUBJECT_PREFIX = re.compile(
    r"^\s*(re|fwd|fw|aw|wg|antw|sv)\s*(\[\d+\])?\s*:\s*", re.IGNORECASE
)
_WHITESPACE = re.compile(r"\s+")

READ_FLAG = "\\Seen"
STAR_FLAGS = ("\\Flagged", "\\Starred")


def normalize_subject(subject: Optional[str]) -> str:
    """Strip leading reply/forward tokens, lowercase and collapse whitespace."""
    value = subject or ""
    while True:
        stripped = _SUBJECT_PREFIX.sub("", value, count=1)
        if stripped == value:
            break
        value = stripped
    return _WHITESPACE.sub(" ", value).strip().lower()


def fallback_key(
    normalized_subject: str, participants: Iterable[EmailAddress]
) -> str:
    """Grouping key for messages without a usable reply chain.

    Participant order does not matter; only addresses count, display names
    are ignored.
    """
    addresses = sorted({p.address for p in participants if p.address})
    material = normalized_subject + "\x1f" + "\x1e".join(addresses)
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def sanitize_html(html_content: Optional[str]) -> Optional[str]:
    """Remove scripts, styles and inline event handlers."""
    if not html_content:
        return html_content
    html_content = re.sub(
        r"<script[^>]*>.*?</script>", "", html_content, flags=re.DOTALL | re.IGNORECASE
    )
    html_content = re.sub(
        r"<style[^>]*>.*?</style>", "", html_content, flags=re.DOTALL | re.IGNORECASE
    )
    html_content = re.sub(
        r"\son\w+\s*=", " data-removed=", html_content, flags=re.IGNORECASE
    )
    html_content = re.sub(
        r"(href|src)\s*=\s*([\"'])\s*javascript:[^\"']*\2",
        r'\1="#"',
        html_content,
        flags=re.IGNORECASE,
    )
    return html_content


def clean_message_id(value: Optional[str]) -> Optional[str]:
    """Message-ID header value without surrounding whitespace."""
    if not value:
        return None
    value = value.strip()
    return value or None


def split_references(value: Optional[str]) -> list[str]:
    """Parse a References header into individual message ids, root first."""
    if not value:
        return []
    ids = re.findall(r"<[^<>\s]+>", value)
    if ids:
        return ids
    return [part for part in value.split() if part]


def _parse_addresses(values: Iterable[str]) -> list[EmailAddress]:
    parsed = []
    seen = set()
    for value in values:
        addr = EmailAddress.parse(value)
        if addr.address and addr.address not in seen:
            seen.add(addr.address)
            parsed.append(addr)
    return parsed


def normalize(
    raw: RawMessage,
    account_address: Optional[str] = None,
    sent_folders: Iterable[str] = (),
) -> Message:
    """Build a Message from a provider record.

    Raises:
        ValueError: If the message has no usable timestamp
    """
    if raw.sent_at is None:
        raise ValueError(f"Message {raw.provider_message_id} has no date")
    sent_at = parse_timestamp(raw.sent_at)

    provider_id = (raw.provider_message_id or "").strip()
    from_address = EmailAddress.parse(raw.from_addr)

    if raw.is_outbound is not None:
        is_outbound = raw.is_outbound
    else:
        sent = {f.lower() for f in sent_folders}
        is_outbound = bool(
            (account_address and from_address.address == account_address.lower())
            or raw.folder.lower() in sent
        )

    in_reply_to = clean_message_id(raw.in_reply_to)
    references = [r for r in (clean_message_id(x) for x in raw.references) if r]

    flags = set(raw.flags)
    body_html = sanitize_html(raw.body_html)

    return Message(
        id=message_id_for(provider_id),
        provider_message_id=provider_id,
        from_address=from_address,
        sent_at=sent_at,
        subject=(raw.subject or "").strip(),
        to_addresses=_parse_addresses(raw.to_addrs),
        cc_addresses=_parse_addresses(raw.cc_addrs),
        body_html=body_html,
        body_text=raw.body_text,
        is_html=bool(body_html),
        is_outbound=is_outbound,
        attachments=list(raw.attachments),
        in_reply_to_id=in_reply_to if in_reply_to != provider_id else None,
        reference_ids=[r for r in references if r != provider_id],
        # Our own mail counts as read
        is_read=READ_FLAG in flags or is_outbound,
        starred=any(f in flags for f in STAR_FLAGS),
        source_folder=raw.folder,
    )
