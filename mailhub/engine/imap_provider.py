"""IMAP implementation of the sync provider contract."""

import email
import email.message
import logging
import socket
from datetime import datetime, timedelta
from email.header import decode_header, make_header
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any, Iterable, Iterator, List, Optional

import imapclient
from imapclient.exceptions import IMAPClientError, LoginError

from mailhub.config import ImapConfig
from mailhub.engine.normalize import clean_message_id, split_references
from mailhub.exceptions import SyncProviderError
from mailhub.models import Attachment, RawMessage, message_id_for, to_utc

logger = logging.getLogger(__name__)

FETCH_CHUNK_SIZE = 50
FETCH_ATTRIBUTES = ["BODY.PEEK[]", "FLAGS", "INTERNALDATE"]


def _decode(value: Optional[str]) -> str:
    if not value:
        return ""
    try:
        return str(make_header(decode_header(value)))
    except (UnicodeDecodeError, LookupError, ValueError):
        return value


def _decode_text_part(part: email.message.Message) -> str:
    payload = part.get_payload(decode=True) or b""
    if not isinstance(payload, bytes):
        return ""
    try:
        return payload.decode(part.get_content_charset() or "utf-8", errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def _addresses(message: email.message.Message, header: str) -> List[str]:
    values = [_decode(v) for v in message.get_all(header, [])]
    return [
        f"{name} <{addr}>" if name else addr
        for name, addr in getaddresses(values)
        if addr
    ]


def _extract_parts(
    message: email.message.Message, message_id: str
) -> tuple[Optional[str], Optional[str], List[Attachment]]:
    plain_parts: List[str] = []
    html_parts: List[str] = []
    attachments: List[Attachment] = []

    for part in message.walk():
        if part.get_content_maintype() == "multipart":
            continue
        content_type = (part.get_content_type() or "").lower()
        disposition = (part.get_content_disposition() or "").lower()
        filename = part.get_filename()

        if disposition == "attachment" or filename:
            name = _decode(filename) or f"attachment-{len(attachments) + 1}"
            payload = part.get_payload(decode=True) or b""
            attachments.append(
                Attachment(
                    filename=name,
                    mime_type=content_type or "application/octet-stream",
                    size=len(payload) if isinstance(payload, bytes) else 0,
                    storage_ref=f"attachments/{message_id}/{name}",
                )
            )
            continue

        if content_type == "text/plain":
            plain_parts.append(_decode_text_part(part))
        elif content_type == "text/html":
            html_parts.append(_decode_text_part(part))

    body_text = "\n\n".join(p for p in plain_parts if p).strip() or None
    body_html = "\n".join(p for p in html_parts if p).strip() or None
    return body_html, body_text, attachments


def _arrival_time(internal_date: Any) -> Optional[datetime]:
    if not isinstance(internal_date, datetime):
        return None
    # imapclient normalises INTERNALDATE to naive local time
    if internal_date.tzinfo is None:
        return to_utc(internal_date.astimezone())
    return to_utc(internal_date)


def _parse_date(value: Optional[str], received_at: Optional[datetime]) -> Optional[datetime]:
    if value:
        try:
            return to_utc(parsedate_to_datetime(value))
        except (TypeError, ValueError, IndexError):
            logger.debug(f"Unparseable Date header: {value!r}")
    return received_at


def raw_message_from_bytes(
    data: bytes,
    folder: str = "INBOX",
    flags: Iterable[str] = (),
    fallback_id: Optional[str] = None,
    internal_date: Any = None,
) -> RawMessage:
    """Parse an RFC 822 message into a RawMessage.

    Args:
        data: Raw message bytes
        folder: Mailbox the message was fetched from
        flags: IMAP flags as strings
        fallback_id: Provider id to use when the message has no Message-ID
        internal_date: Server arrival time (INTERNALDATE); also stands in
            for an unusable Date header
    """
    message = email.message_from_bytes(data)
    received_at = _arrival_time(internal_date)

    provider_id = clean_message_id(message.get("Message-ID")) or fallback_id or ""
    body_html, body_text, attachments = _extract_parts(
        message, message_id_for(provider_id)
    )

    from_values = _addresses(message, "From")

    return RawMessage(
        provider_message_id=provider_id,
        subject=_decode(message.get("Subject")),
        from_addr=from_values[0] if from_values else "",
        to_addrs=_addresses(message, "To"),
        cc_addrs=_addresses(message, "Cc"),
        sent_at=_parse_date(message.get("Date"), received_at),
        received_at=received_at,
        body_html=body_html,
        body_text=body_text,
        in_reply_to=clean_message_id(message.get("In-Reply-To")),
        references=split_references(message.get("References")),
        flags=list(flags),
        folder=folder,
        attachments=attachments,
    )


class ImapProvider:
    """Fetches message deltas from an IMAP account."""

    def __init__(self, config: ImapConfig):
        self.config = config
        self.client: Optional[imapclient.IMAPClient] = None
        self.connected = False

    def connect(self) -> None:
        """Connect to IMAP server.

        Raises:
            SyncProviderError: If connection or login fails
        """
        if not self.config.password:
            raise SyncProviderError("IMAP password is not configured", unavailable=True)
        try:
            self.client = imapclient.IMAPClient(
                self.config.host,
                port=self.config.port,
                ssl=self.config.use_ssl,
                timeout=self.config.timeout,
            )
            self.client.login(self.config.username, self.config.password)
            self.connected = True
            logger.info(f"Connected to IMAP server {self.config.host}")
        except LoginError as e:
            self.connected = False
            logger.error(f"IMAP login failed: {e}")
            raise SyncProviderError(f"IMAP login failed: {e}", unavailable=True) from e
        except (OSError, socket.timeout, IMAPClientError) as e:
            self.connected = False
            logger.error(f"Failed to connect to IMAP server: {e}")
            raise SyncProviderError(
                f"Failed to connect to IMAP server: {e}", unavailable=True
            ) from e

    def disconnect(self) -> None:
        """Disconnect from IMAP server."""
        if self.client:
            try:
                self.client.logout()
            except (OSError, IMAPClientError) as e:
                logger.warning(f"Error during IMAP logout: {e}")
            finally:
                self.client = None
                self.connected = False
                logger.info("Disconnected from IMAP server")

    def _get_client(self) -> imapclient.IMAPClient:
        if not self.connected or not self.client:
            self.connect()
        if self.client is None:
            raise SyncProviderError("IMAP client not initialized", unavailable=True)
        return self.client

    def is_sent_folder(self, folder: str) -> bool:
        return folder.lower() in {f.lower() for f in self.config.sent_folders}

    def fetch_messages_since(self, watermark: Optional[datetime]) -> Iterator[RawMessage]:
        """Yield messages on or after the watermark from every configured folder.

        The watermark is a server arrival time, matching what SINCE compares
        against. SINCE has day granularity, so messages from the watermark's
        day are delivered again and absorbed by the idempotent store.

        Raises:
            SyncProviderError: On connection loss or IMAP errors
        """
        try:
            client = self._get_client()
            for folder in self.config.folders:
                yield from self._fetch_folder(client, folder, watermark)
        except (OSError, socket.timeout) as e:
            self.disconnect()
            raise SyncProviderError(f"IMAP connection lost: {e}", unavailable=True) from e
        except IMAPClientError as e:
            raise SyncProviderError(f"IMAP error: {e}") from e

    def _fetch_folder(
        self,
        client: imapclient.IMAPClient,
        folder: str,
        watermark: Optional[datetime],
    ) -> Iterator[RawMessage]:
        try:
            client.select_folder(folder, readonly=True)
        except IMAPClientError as e:
            # Not every server has every configured folder
            logger.warning(f"Skipping folder {folder}: {e}")
            return

        criteria: List[Any] = ["ALL"]
        if watermark is not None:
            # SINCE days are in the server's timezone, which may lag UTC
            criteria = ["SINCE", (to_utc(watermark) - timedelta(days=1)).date()]
        uids = sorted(client.search(criteria))
        logger.info(f"[SYNC] {folder}: {len(uids)} messages since {watermark}")

        outbound = True if self.is_sent_folder(folder) else None
        safe_folder = folder.replace(" ", "_")

        for i in range(0, len(uids), FETCH_CHUNK_SIZE):
            chunk = uids[i : i + FETCH_CHUNK_SIZE]
            result: Any = client.fetch(chunk, FETCH_ATTRIBUTES)
            for uid in chunk:
                data = result.get(uid)
                if not data:
                    continue
                body = data.get(b"BODY[]") or data.get(b"BODY.PEEK[]")
                if not isinstance(body, bytes):
                    logger.warning(f"No body found for message {uid} in {folder}")
                    continue
                flags = [
                    f.decode("utf-8") if isinstance(f, bytes) else str(f)
                    for f in data.get(b"FLAGS", ())
                ]
                raw = raw_message_from_bytes(
                    body,
                    folder=folder,
                    flags=flags,
                    fallback_id=f"<{safe_folder}.{uid}@{self.config.host}>",
                    internal_date=data.get(b"INTERNALDATE"),
                )
                if outbound:
                    raw.is_outbound = True
                yield raw
