"""
Incremental mailbox sync.

A refresh pulls every message that reached the server at or after the account
watermark (a server arrival time, never a sender Date header), normalizes
and stores each one, and threads it, one transaction per message. Messages
are handled in chunks sorted by date so replies are usually stored after the
message they answer; the assembler folds in replies that still got ahead of
their parent. The watermark only moves once the whole delta has been
stored; an interrupted refresh simply re-reads the same window next time and
the idempotent store absorbs what it already has.
"""

import asyncio
import logging
import math
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional, Protocol

from mailhub.config import LeaseMode, SyncConfig
from mailhub.engine.database import Database
from mailhub.engine.message_store import MessageStore
from mailhub.engine.normalize import normalize
from mailhub.engine.thread_assembler import ThreadAssembler
from mailhub.exceptions import (
    RefreshThrottled,
    StorageError,
    SyncInProgress,
    SyncProviderError,
)
from mailhub.models import (
    Message,
    RawMessage,
    SyncSummary,
    from_db_time,
    parse_timestamp,
    to_db_time,
    utcnow,
)

logger = logging.getLogger(__name__)

LEASE_POLL_INTERVAL = 0.2


class MailProvider(Protocol):
    def fetch_messages_since(
        self, watermark: Optional[datetime]
    ) -> Iterable[RawMessage]: ...


@dataclass
class SyncState:
    account_id: str
    watermark: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    last_refresh_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "accountId": self.account_id,
            "watermark": self.watermark.isoformat() if self.watermark else None,
            "lastSyncAt": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "lastRefreshAt": self.last_refresh_at.isoformat()
            if self.last_refresh_at
            else None,
        }


class SyncLease:
    """Single-writer lease for one account, stored in the database.

    An expired lease is free, so a crashed holder blocks refreshes for at
    most ``ttl_seconds``.
    """

    def __init__(self, db: Database, account_id: str, ttl_seconds: int):
        self.db = db
        self.account_id = account_id
        self.ttl = timedelta(seconds=ttl_seconds)
        self.token = str(uuid.uuid4())

    def try_acquire(self) -> Optional[datetime]:
        """Take the lease if free.

        Returns:
            None on success, otherwise the current holder's expiry
        """
        now = utcnow()
        with self.db.transaction() as tx:
            row = tx.execute(
                "SELECT holder, expires_at FROM sync_leases WHERE account_id = ?",
                (self.account_id,),
            ).fetchone()
            if row is not None and row["holder"] != self.token:
                expires_at = from_db_time(row["expires_at"])
                if expires_at is not None and expires_at > now:
                    return expires_at
                logger.warning(
                    f"[SYNC] Taking over expired lease for {self.account_id} from {row['holder']}"
                )
            tx.execute(
                "INSERT OR REPLACE INTO sync_leases (account_id, holder, expires_at) VALUES (?, ?, ?)",
                (self.account_id, self.token, to_db_time(now + self.ttl)),
            )
        return None

    def renew(self) -> bool:
        """Push the expiry forward while still the holder.

        Returns:
            False if another refresh has taken the lease over
        """
        with self.db.transaction() as tx:
            cursor = tx.execute(
                "UPDATE sync_leases SET expires_at = ? WHERE account_id = ? AND holder = ?",
                (to_db_time(utcnow() + self.ttl), self.account_id, self.token),
            )
            return cursor.rowcount == 1

    def release(self) -> None:
        with self.db.transaction() as tx:
            tx.execute(
                "DELETE FROM sync_leases WHERE account_id = ? AND holder = ?",
                (self.account_id, self.token),
            )


class MailSyncEngine:
    """Pulls deltas from a provider into the message store."""

    def __init__(
        self,
        db: Database,
        store: MessageStore,
        assembler: ThreadAssembler,
        provider: Optional[MailProvider],
        config: Optional[SyncConfig] = None,
        account_address: Optional[str] = None,
        sent_folders: Iterable[str] = (),
    ):
        self.db = db
        self.store = store
        self.assembler = assembler
        self.provider = provider
        self.config = config or SyncConfig()
        self.account_id = self.config.account_id
        self.account_address = account_address
        self.sent_folders = tuple(sent_folders)

    def refresh(self, force: bool = False) -> SyncSummary:
        """Run one sync pass for the account.

        Raises:
            RefreshThrottled: If not forced and the last refresh is too recent
            SyncInProgress: If another refresh holds the lease
            SyncProviderError: If the provider fails; committed messages stay
            StorageError: If a message cannot be stored
        """
        if self.provider is None:
            raise SyncProviderError("No mail provider configured", unavailable=True)

        state = self.get_state()
        now = utcnow()
        if not force and state.last_refresh_at is not None:
            elapsed = (now - state.last_refresh_at).total_seconds()
            cooldown = self.config.refresh_cooldown_seconds
            if elapsed < cooldown:
                raise RefreshThrottled(max(1, math.ceil(cooldown - elapsed)))

        lease = self._acquire_lease()
        try:
            self._save_state(last_refresh_at=now)
            return self._run(state.watermark, lease)
        finally:
            lease.release()

    def _acquire_lease(self) -> SyncLease:
        lease = SyncLease(self.db, self.account_id, self.config.lease_ttl_seconds)
        deadline = time.monotonic() + self.config.lease_wait_seconds

        while True:
            held_until = lease.try_acquire()
            if held_until is None:
                return lease
            retry_after = max(1, math.ceil((held_until - utcnow()).total_seconds()))
            if (
                self.config.lease_mode is LeaseMode.REJECT
                or time.monotonic() >= deadline
            ):
                raise SyncInProgress(self.account_id, retry_after=min(retry_after, 30))
            time.sleep(LEASE_POLL_INTERVAL)

    def _run(self, watermark: Optional[datetime], lease: SyncLease) -> SyncSummary:
        summary = SyncSummary(watermark=watermark)
        touched: set[str] = set()
        max_received = watermark
        batch: list[RawMessage] = []

        logger.info(f"[SYNC] Refresh started for {self.account_id} (watermark={watermark})")
        start = time.monotonic()

        try:
            iterator = iter(self.provider.fetch_messages_since(watermark))  # type: ignore[union-attr]
            while True:
                try:
                    raw = next(iterator)
                except StopIteration:
                    break
                except SyncProviderError:
                    raise
                except (ConnectionError, TimeoutError) as e:
                    raise SyncProviderError(str(e), unavailable=True) from e

                batch.append(raw)
                if len(batch) >= self.config.batch_size:
                    max_received = self._process_batch(
                        batch, summary, touched, max_received, lease
                    )
                    batch = []

            if batch:
                max_received = self._process_batch(
                    batch, summary, touched, max_received, lease
                )
        except SyncProviderError as e:
            logger.error(
                f"[SYNC] Provider failed after {summary.new_message_count} new messages: {e}"
            )
            self.record_error(None, e)
            raise
        finally:
            summary.thread_count = len(touched)

        # Threads absorbed by a later merge no longer exist
        summary.thread_count = len(self.assembler.existing_threads(touched))
        summary.watermark = max_received
        self._save_state(watermark=max_received, last_sync_at=utcnow())

        logger.info(
            f"[SYNC] Refresh complete: {summary.new_message_count} new, "
            f"{summary.updated_message_count} updated, {summary.thread_count} threads "
            f"in {time.monotonic() - start:.1f}s"
        )
        return summary

    def _process_batch(
        self,
        batch: list[RawMessage],
        summary: SyncSummary,
        touched: set[str],
        max_received: Optional[datetime],
        lease: SyncLease,
    ) -> Optional[datetime]:
        """Store and thread one chunk; returns the advanced watermark."""
        if not lease.renew():
            logger.warning(
                f"[SYNC] Lease for {self.account_id} was taken over, stopping this refresh"
            )
            raise SyncInProgress(self.account_id, retry_after=30)

        messages: list[Message] = []
        for raw in batch:
            try:
                messages.append(
                    normalize(raw, self.account_address, self.sent_folders)
                )
            except ValueError as e:
                logger.warning(f"[SYNC] Skipping {raw.provider_message_id}: {e}")
                self.record_error(raw.provider_message_id, e)

        messages.sort(key=lambda m: (m.sent_at, m.provider_message_id))

        for message in messages:
            try:
                with self.db.transaction() as tx:
                    result = self.store.upsert(message, tx)
                    thread_id = self.assembler.assemble(result.message, tx)
            except StorageError as e:
                logger.error(f"[SYNC] Failed to store {message.provider_message_id}: {e}")
                self.record_error(message.provider_message_id, e)
                raise

            touched.add(thread_id)
            if result.created:
                summary.new_message_count += 1
            elif result.flags_changed or result.sent_at_changed:
                summary.updated_message_count += 1

        # Server arrival time only; a sender's Date header can lie
        for raw in batch:
            if raw.received_at is None:
                continue
            received = parse_timestamp(raw.received_at)
            if max_received is None or received > max_received:
                max_received = received

        return max_received

    async def refresh_with_retry(self, force: bool = False) -> Optional[SyncSummary]:
        """Refresh from a scheduler, retrying provider failures with backoff.

        Returns None when another refresh is already running or the attempts
        are exhausted.
        """
        loop = asyncio.get_running_loop()
        delay = self.config.retry_base_delay

        for attempt in range(1, self.config.retry_attempts + 1):
            try:
                return await loop.run_in_executor(None, self.refresh, force)
            except (SyncInProgress, RefreshThrottled) as e:
                logger.info(f"[SYNC] Scheduled refresh skipped: {e}")
                return None
            except SyncProviderError as e:
                if attempt == self.config.retry_attempts:
                    logger.error(f"[SYNC] Giving up after {attempt} attempts: {e}")
                    return None
                logger.warning(
                    f"[SYNC] Attempt {attempt} failed: {e}. Retrying in {delay:.0f}s"
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.config.retry_max_delay)
        return None

    def get_state(self) -> SyncState:
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT * FROM sync_state WHERE account_id = ?", (self.account_id,)
            ).fetchone()
        if row is None:
            return SyncState(account_id=self.account_id)
        return SyncState(
            account_id=self.account_id,
            watermark=from_db_time(row["watermark"]),
            last_sync_at=from_db_time(row["last_sync_at"]),
            last_refresh_at=from_db_time(row["last_refresh_at"]),
        )

    def _save_state(self, **fields: Optional[datetime]) -> None:
        columns = list(fields)
        values = [to_db_time(v) if v else None for v in fields.values()]
        with self.db.transaction() as tx:
            tx.execute(
                "INSERT OR IGNORE INTO sync_state (account_id) VALUES (?)",
                (self.account_id,),
            )
            tx.execute(
                f"UPDATE sync_state SET {', '.join(f'{c} = ?' for c in columns)} WHERE account_id = ?",
                (*values, self.account_id),
            )

    def record_error(self, provider_message_id: Optional[str], error: Exception) -> None:
        try:
            with self.db.transaction() as tx:
                tx.execute(
                    """
                    INSERT INTO sync_errors (account_id, provider_message_id, error_type, error_message, occurred_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        self.account_id,
                        provider_message_id,
                        type(error).__name__,
                        str(error),
                        to_db_time(utcnow()),
                    ),
                )
        except StorageError as e:
            logger.error(f"[SYNC] Could not record sync error: {e}")

    def recent_errors(self, limit: int = 20) -> list[dict[str, Any]]:
        with self.db.read() as conn:
            rows = conn.execute(
                """
                SELECT provider_message_id, error_type, error_message, occurred_at
                FROM sync_errors WHERE account_id = ?
                ORDER BY id DESC LIMIT ?
                """,
                (self.account_id, limit),
            ).fetchall()
        return [
            {
                "providerMessageId": row["provider_message_id"],
                "errorType": row["error_type"],
                "message": row["error_message"],
                "occurredAt": row["occurred_at"],
            }
            for row in rows
        ]
