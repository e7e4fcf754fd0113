"""
Client-side query cache with optimistic mutations.

Entries are keyed by query identity tuples. Every write to an entry bumps its
generation; a fetch remembers the generation it started from and its result
is dropped if the entry moved on in the meantime (invalidated, patched by a
mutation, or the fetch was cancelled). Rendered data is never replaced by a
result that raced with a newer change.
"""

import copy
import itertools
import logging
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Hashable, Iterable, Optional

from mailhub.models import ListFilter

logger = logging.getLogger(__name__)

QueryKey = tuple

MAIL_LIST = ("mail", "list")
MAIL_THREAD = ("mail", "thread")


def list_key(
    folder: str, filters: Optional[ListFilter] = None, view: str = "threads"
) -> QueryKey:
    return (*MAIL_LIST, folder, view, (filters or ListFilter()).cache_identity())


def thread_key(thread_id: str) -> QueryKey:
    return (*MAIL_THREAD, thread_id)


@dataclass
class CacheEntry:
    data: Any = None
    generation: int = 0
    stale: bool = False
    fetch_token: Optional[int] = None


@dataclass(frozen=True)
class FetchTicket:
    key: QueryKey
    generation: int
    token: int


class QueryCache:
    """Thread-safe map of query key to cached data."""

    def __init__(self):
        self._lock = threading.RLock()
        self._entries: dict[QueryKey, CacheEntry] = {}
        self._tokens = itertools.count(1)

    def get(self, key: QueryKey) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            return entry.data if entry else None

    def entry(self, key: QueryKey) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(key)
            return copy.copy(entry) if entry else None

    def is_stale(self, key: QueryKey) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is None or entry.stale

    def keys(self, prefix: QueryKey = ()) -> list[QueryKey]:
        with self._lock:
            return [k for k in self._entries if k[: len(prefix)] == prefix]

    def set(self, key: QueryKey, data: Any) -> None:
        with self._lock:
            entry = self._entries.setdefault(key, CacheEntry())
            entry.data = data
            entry.generation += 1
            entry.stale = False

    def begin_fetch(self, key: QueryKey) -> FetchTicket:
        """Register an in-flight fetch; a later fetch for the key replaces it."""
        with self._lock:
            entry = self._entries.setdefault(key, CacheEntry(stale=True))
            entry.fetch_token = next(self._tokens)
            return FetchTicket(key=key, generation=entry.generation, token=entry.fetch_token)

    def complete_fetch(self, ticket: FetchTicket, data: Any) -> bool:
        """Store a fetch result unless the fetch was cancelled or overtaken.

        Returns:
            True if the result was stored
        """
        with self._lock:
            entry = self._entries.get(ticket.key)
            if (
                entry is None
                or entry.fetch_token != ticket.token
                or entry.generation != ticket.generation
            ):
                logger.debug(f"Discarding outdated fetch for {ticket.key}")
                return False
            entry.data = data
            entry.generation += 1
            entry.stale = False
            entry.fetch_token = None
            return True

    def cancel(self, ticket: FetchTicket) -> None:
        """Drop an in-flight fetch; cached data stays as rendered."""
        with self._lock:
            entry = self._entries.get(ticket.key)
            if entry is not None and entry.fetch_token == ticket.token:
                entry.fetch_token = None

    def invalidate(self, prefix: QueryKey) -> list[QueryKey]:
        """Mark every entry under the prefix stale and orphan its in-flight fetch."""
        with self._lock:
            matched = self.keys(prefix)
            for key in matched:
                entry = self._entries[key]
                entry.stale = True
                entry.generation += 1
                entry.fetch_token = None
            return matched

    def update(self, key: QueryKey, fn: Callable[[Any], Any]) -> None:
        """Apply a local patch to an entry's data, if cached."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.data is None:
                return
            entry.data = fn(copy.deepcopy(entry.data))
            entry.generation += 1

    def snapshot(self, keys: Iterable[QueryKey]) -> dict[QueryKey, Any]:
        with self._lock:
            return {
                key: copy.deepcopy(self._entries[key].data)
                for key in keys
                if key in self._entries
            }

    def restore(self, snapshot: dict[QueryKey, Any]) -> None:
        with self._lock:
            for key, data in snapshot.items():
                entry = self._entries.setdefault(key, CacheEntry())
                entry.data = data
                entry.generation += 1


class MutationState(Enum):
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    SETTLED = "settled"


@dataclass
class Mutation:
    id: str
    entity: Hashable
    keys: list[QueryKey]
    invalidates: list[QueryKey]
    snapshot: dict[QueryKey, Any]
    patch: Callable[[QueryKey, Any], Any]
    seq: int
    state: MutationState = MutationState.PENDING
    superseded: bool = False
    history: list[MutationState] = field(default_factory=list)

    def _move(self, new_state: MutationState) -> None:
        self.history.append(self.state)
        self.state = new_state


class MutationCoordinator:
    """Optimistic updates with rollback, one in-flight mutation per entity."""

    def __init__(self, cache: QueryCache):
        self.cache = cache
        self._lock = threading.Lock()
        self._inflight: dict[Hashable, Mutation] = {}
        self._sequence = itertools.count()

    def begin(
        self,
        entity: Hashable,
        keys: list[QueryKey],
        patch: Callable[[QueryKey, Any], Any],
        invalidates: Optional[list[QueryKey]] = None,
    ) -> Mutation:
        """Snapshot the affected keys and apply the optimistic patch.

        A mutation already in flight for the same entity is superseded: it
        will neither roll back nor invalidate when it settles.
        """
        with self._lock:
            previous = self._inflight.get(entity)
            if previous is not None:
                previous.superseded = True
                logger.debug(f"Mutation {previous.id} on {entity} superseded")

            mutation = Mutation(
                id=str(uuid.uuid4()),
                entity=entity,
                keys=list(keys),
                invalidates=list(invalidates if invalidates is not None else keys),
                snapshot=self.cache.snapshot(keys),
                patch=patch,
                seq=next(self._sequence),
            )
            for key in keys:
                self.cache.update(key, lambda data, key=key: patch(key, data))
            self._inflight[entity] = mutation
            return mutation

    def succeed(self, mutation: Mutation) -> None:
        with self._lock:
            mutation._move(MutationState.COMMITTED)
            self._settle(mutation)

    def fail(self, mutation: Mutation) -> None:
        with self._lock:
            if not mutation.superseded:
                self.cache.restore(mutation.snapshot)
                self._replay_later(mutation)
            mutation._move(MutationState.ROLLED_BACK)
            self._settle(mutation)

    def _replay_later(self, mutation: Mutation) -> None:
        """Re-apply patches that other entities made after this snapshot."""
        later = sorted(
            (
                other
                for other in self._inflight.values()
                if other is not mutation and other.seq > mutation.seq
            ),
            key=lambda other: other.seq,
        )
        for other in later:
            for key in other.keys:
                if key in mutation.snapshot:
                    self.cache.update(
                        key, lambda data, key=key, other=other: other.patch(key, data)
                    )

    def _settle(self, mutation: Mutation) -> None:
        if not mutation.superseded:
            for prefix in mutation.invalidates:
                self.cache.invalidate(prefix)
        if self._inflight.get(mutation.entity) is mutation:
            del self._inflight[mutation.entity]
        mutation._move(MutationState.SETTLED)

    def run(
        self,
        entity: Hashable,
        keys: list[QueryKey],
        patch: Callable[[QueryKey, Any], Any],
        call: Callable[[], Any],
        invalidates: Optional[list[QueryKey]] = None,
    ) -> Any:
        """Begin a mutation, perform the server call and settle it."""
        mutation = self.begin(entity, keys, patch, invalidates)
        try:
            result = call()
        except Exception:
            self.fail(mutation)
            raise
        self.succeed(mutation)
        return result

    def in_flight(self, entity: Hashable) -> Optional[Mutation]:
        with self._lock:
            return self._inflight.get(entity)
