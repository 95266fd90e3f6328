"""Tests for conversation persistence and per-conversation locking."""

from __future__ import annotations

import threading
import time

import pytest

from src.errors import PersistenceError
from src.models import AgentKind, ConversationContext, HandoffState, MessageRole
from src.services.conversation_store import ConversationLocks, InMemoryConversationStore


def _context(conversation_id: str = "conv-1") -> ConversationContext:
    return ConversationContext(conversation_id=conversation_id, tenant_id="clinic-a", agent=AgentKind.CUSTOMER)


class TestInMemoryStore:
    def test_missing_conversation_loads_as_none(self):
        assert InMemoryConversationStore().load("nope") is None

    def test_save_bumps_the_version_and_round_trips(self):
        store = InMemoryConversationStore()
        context = _context()
        context.append_message(MessageRole.USER, "hello")
        context.handoff_state = HandoffState.REQUESTED

        saved = store.save(context)
        loaded = store.load("conv-1")

        assert saved.version == 1
        assert loaded == saved
        assert loaded.message_history[0].content == "hello"
        assert loaded.handoff_state == HandoffState.REQUESTED
        assert len(store) == 1

    def test_saved_snapshot_is_isolated_from_later_mutation(self):
        store = InMemoryConversationStore()
        context = _context()
        store.save(context)
        context.append_message(MessageRole.USER, "not saved")
        assert store.load("conv-1").message_history == []

    def test_stale_write_is_refused(self):
        store = InMemoryConversationStore()
        first = store.save(_context())
        store.save(first)
        with pytest.raises(PersistenceError):
            store.save(first)

    def test_persistence_error_is_retryable(self):
        assert PersistenceError.retryable is True


class TestConversationLocks:
    def test_same_conversation_is_serialized(self):
        locks = ConversationLocks()
        inside = []
        overlap = threading.Event()

        def _turn():
            with locks.hold("conv-1"):
                inside.append(1)
                if len(inside) > 1:
                    overlap.set()
                time.sleep(0.02)
                inside.pop()

        threads = [threading.Thread(target=_turn) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert not overlap.is_set()

    def test_different_conversations_do_not_block_each_other(self):
        locks = ConversationLocks()
        entered = threading.Event()
        release = threading.Event()

        def _hold_a():
            with locks.hold("conv-a"):
                entered.set()
                release.wait(timeout=5)

        holder = threading.Thread(target=_hold_a)
        holder.start()
        try:
            assert entered.wait(timeout=5)
            with locks.hold("conv-b"):
                pass
        finally:
            release.set()
            holder.join()

    def test_idle_conversation_releases_its_lock(self):
        locks = ConversationLocks()
        for i in range(50):
            with locks.hold(f"conv-{i}"):
                assert len(locks) == 1
        assert len(locks) == 0

    def test_lock_is_released_when_the_turn_raises(self):
        locks = ConversationLocks()
        with pytest.raises(RuntimeError):
            with locks.hold("conv-1"):
                raise RuntimeError("turn failed")
        assert len(locks) == 0
        with locks.hold("conv-1"):
            pass

    def test_waiting_turn_keeps_the_lock_alive(self):
        locks = ConversationLocks()
        entered = threading.Event()
        release = threading.Event()
        order = []

        def _first():
            with locks.hold("conv-1"):
                entered.set()
                release.wait(timeout=5)
                order.append("first")

        def _second():
            with locks.hold("conv-1"):
                order.append("second")

        first = threading.Thread(target=_first)
        first.start()
        assert entered.wait(timeout=5)
        second = threading.Thread(target=_second)
        second.start()
        time.sleep(0.02)
        assert order == []
        release.set()
        first.join()
        second.join()
        assert order == ["first", "second"]
        assert len(locks) == 0
