"""Conversation context persistence and per-conversation locking.

``ConversationStore.save`` is the single write path for a context: the
whole context (history, extracted data, linked entities, handoff state)
is written as one unit, guarded by an optimistic version check.  A write
based on a stale version is refused with ``PersistenceError`` rather than
silently overwriting a newer turn.

Contexts are never deleted here; retention is an operator concern.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Protocol

from src.errors import PersistenceError
from src.models import ConversationContext, utcnow

logger = logging.getLogger(__name__)


class ConversationStore(Protocol):
    def load(self, conversation_id: str) -> ConversationContext | None: ...

    def save(self, context: ConversationContext) -> ConversationContext:
        """Persist *context* and return it with its new version."""
        ...


class InMemoryConversationStore:
    """Process-local store.  Snapshots are kept serialized so readers never
    observe a half-applied write."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rows: dict[str, str] = {}
        self._versions: dict[str, int] = {}

    def load(self, conversation_id: str) -> ConversationContext | None:
        with self._lock:
            row = self._rows.get(conversation_id)
        if row is None:
            return None
        return ConversationContext.model_validate_json(row)

    def save(self, context: ConversationContext) -> ConversationContext:
        with self._lock:
            current = self._versions.get(context.conversation_id, 0)
            if context.version != current:
                raise PersistenceError(
                    f"Conversation {context.conversation_id} was modified concurrently "
                    f"(expected version {current}, got {context.version})"
                )
            saved = context.model_copy(
                update={"version": current + 1, "updated_at": utcnow()}, deep=True,
            )
            self._rows[context.conversation_id] = saved.model_dump_json()
            self._versions[context.conversation_id] = saved.version
        logger.debug("Saved conversation %s v%d", saved.conversation_id, saved.version)
        return saved

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)


class ConversationLocks:
    """One mutex per conversation id.

    Turns for the same conversation queue behind each other; turns for
    different conversations never contend.  A mutex is dropped once no
    turn holds or waits on it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # conversation id -> (mutex, turns holding or waiting)
        self._locks: dict[str, tuple[threading.Lock, int]] = {}

    def _acquire_ref(self, conversation_id: str) -> threading.Lock:
        with self._guard:
            lock, users = self._locks.get(conversation_id, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[conversation_id] = (lock, users + 1)
            return lock

    def _release_ref(self, conversation_id: str) -> None:
        with self._guard:
            lock, users = self._locks[conversation_id]
            if users <= 1:
                del self._locks[conversation_id]
            else:
                self._locks[conversation_id] = (lock, users - 1)

    @contextmanager
    def hold(self, conversation_id: str) -> Iterator[None]:
        lock = self._acquire_ref(conversation_id)
        try:
            with lock:
                yield
        finally:
            self._release_ref(conversation_id)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
