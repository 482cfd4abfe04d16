"""Tests for sessions, turns and tier movement."""

import asyncio

import pytest

from liminal.domain.context.memory.memory_tier_manager import KeyedLocks, MemoryTierManager
from liminal.domain.models.conversation import MemoryTier
from liminal.domain.models.errors import ErrorKind, InvalidInput, StorageFailure
from liminal.infrastructure.persistence.conversation_store import ConversationStore


async def fill_session(manager, user_id: str, count: int, topic: str = "topic"):
    session = await manager.get_or_create_session(user_id)
    turns = []
    for number in range(1, count + 1):
        turns.append(await manager.save_conversation_turn(
            session.id,
            user_id,
            f"{topic} question {number}",
            f"answer {number}"
        ))
    return session, turns


class TestSessions:
    """Tests for session lifecycle."""

    @pytest.mark.asyncio
    async def test_open_session_reused(self, manager):
        first = await manager.get_or_create_session("user-1")
        second = await manager.get_or_create_session("user-1")

        assert first.id == second.id

    @pytest.mark.asyncio
    async def test_concurrent_creation_yields_one_session(self, manager):
        sessions = await asyncio.gather(*[manager.get_or_create_session("user-1") for _ in range(5)])

        assert len({session.id for session in sessions}) == 1

    @pytest.mark.asyncio
    async def test_new_session_after_end(self, manager):
        first = await manager.get_or_create_session("user-1")
        await manager.end_session(first.id)

        second = await manager.get_or_create_session("user-1")

        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_end_session_moves_everything_cold(self, manager, store):
        session, turns = await fill_session(manager, "user-1", 10)

        transitions = await manager.end_session(session.id)

        assert len(transitions) == 10
        assert all(t.reason == "session_end" and t.to_tier == MemoryTier.COLD for t in transitions)
        assert await store.count_transitions(session.id) == 10
        cold = await manager.load_cold_memory("user-1")
        assert len(cold) == 10
        assert all(turn.memory_tier == MemoryTier.COLD for turn in cold)

    @pytest.mark.asyncio
    async def test_end_session_twice(self, manager):
        session, _ = await fill_session(manager, "user-1", 2)
        await manager.end_session(session.id)

        assert await manager.end_session(session.id) == []

    @pytest.mark.asyncio
    async def test_end_unknown_session(self, manager):
        with pytest.raises(InvalidInput):
            await manager.end_session("missing")


class TestTurns:
    """Tests for recording turns."""

    @pytest.mark.asyncio
    async def test_turn_numbers_are_sequential(self, manager):
        _, turns = await fill_session(manager, "user-1", 3)

        assert [turn.turn_number for turn in turns] == [1, 2, 3]
        assert all(turn.is_answered for turn in turns)

    @pytest.mark.asyncio
    async def test_concurrent_messages_get_distinct_numbers(self, manager):
        session = await manager.get_or_create_session("user-1")

        turns = await asyncio.gather(*[
            manager.record_user_message(session.id, "user-1", f"message {n}") for n in range(6)
        ])

        assert sorted(turn.turn_number for turn in turns) == [1, 2, 3, 4, 5, 6]

    @pytest.mark.asyncio
    async def test_second_response_rejected(self, manager):
        session = await manager.get_or_create_session("user-1")
        turn = await manager.record_user_message(session.id, "user-1", "hello")
        await manager.record_response(turn.id, "first")

        with pytest.raises(InvalidInput) as exc_info:
            await manager.record_response(turn.id, "second")

        assert "already has a response" in exc_info.value.reason
        assert (await manager.get_turn(turn.id)).agent_response == "first"

    @pytest.mark.asyncio
    async def test_token_counts_estimated(self, manager):
        session = await manager.get_or_create_session("user-1")

        turn = await manager.save_conversation_turn(session.id, "user-1", "one two three", "four five")

        assert turn.input_tokens == 3
        assert turn.output_tokens == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("message", ["", "   ", "x" * 32001])
    async def test_invalid_messages(self, manager, message):
        session = await manager.get_or_create_session("user-1")

        with pytest.raises(InvalidInput) as exc_info:
            await manager.record_user_message(session.id, "user-1", message)

        assert exc_info.value.kind == ErrorKind.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_message_into_ended_session(self, manager):
        session = await manager.get_or_create_session("user-1")
        await manager.end_session(session.id)

        with pytest.raises(InvalidInput):
            await manager.record_user_message(session.id, "user-1", "too late")

    @pytest.mark.asyncio
    async def test_message_from_other_user(self, manager):
        session = await manager.get_or_create_session("user-1")

        with pytest.raises(InvalidInput):
            await manager.record_user_message(session.id, "user-2", "hello")


class TestTiers:
    """Tests for hot, warm and cold loading."""

    @pytest.mark.asyncio
    async def test_hot_holds_newest_five(self, manager):
        session, _ = await fill_session(manager, "user-1", 7)

        hot = await manager.load_hot_memory(session.id)

        assert [turn.turn_number for turn in hot.turns] == [3, 4, 5, 6, 7]

    @pytest.mark.asyncio
    async def test_unanswered_turn_not_in_hot(self, manager):
        session, _ = await fill_session(manager, "user-1", 2)
        await manager.record_user_message(session.id, "user-1", "pending")

        hot = await manager.load_hot_memory(session.id)

        assert [turn.turn_number for turn in hot.turns] == [1, 2]

    @pytest.mark.asyncio
    async def test_warm_precedes_hot(self, manager):
        session, _ = await fill_session(manager, "user-1", 20)

        warm = await manager.load_warm_memory(session.id)

        assert [turn.turn_number for turn in warm] == list(range(1, 16))

    @pytest.mark.asyncio
    async def test_warm_limited_to_fifty(self, manager):
        session, _ = await fill_session(manager, "user-1", 100)

        warm = await manager.load_warm_memory(session.id)

        assert [turn.turn_number for turn in warm] == list(range(46, 96))

    @pytest.mark.asyncio
    async def test_keyword_search_newest_first(self, manager):
        session = await manager.get_or_create_session("user-1")
        await manager.save_conversation_turn(session.id, "user-1", "Tell me about Quantum states", "ok")
        await manager.save_conversation_turn(session.id, "user-1", "Something else", "ok")
        await manager.save_conversation_turn(session.id, "user-1", "more on quantum", "ok")

        found = await manager.search_memory("user-1", MemoryTier.HOT, "QUANTUM")

        assert [turn.turn_number for turn in found] == [3, 1]

    @pytest.mark.asyncio
    async def test_search_treats_wildcards_literally(self, manager):
        session = await manager.get_or_create_session("user-1")
        await manager.save_conversation_turn(session.id, "user-1", "plain text", "ok")

        assert await manager.search_memory("user-1", MemoryTier.HOT, "%") == []

    @pytest.mark.asyncio
    async def test_warm_search_covers_turns_beyond_hot_window(self, manager):
        session, _ = await fill_session(manager, "user-1", 8)
        await manager.save_conversation_turn(session.id, "user-1", "quantum again", "ok")

        warm = await manager.search_memory("user-1", MemoryTier.WARM, "question")
        hot = await manager.search_memory("user-1", MemoryTier.HOT, "question")

        assert [turn.turn_number for turn in warm] == [4, 3, 2, 1]
        assert [turn.turn_number for turn in hot] == [8, 7, 6, 5]
        assert all(turn.memory_tier == MemoryTier.HOT for turn in warm)

    @pytest.mark.asyncio
    async def test_transition_recorded(self, manager):
        _, turns = await fill_session(manager, "user-1", 1)

        transition = await manager.transition_tier(turns[0].id, MemoryTier.WARM, "aged out")
        history = await manager.get_tier_transitions(turns[0].id)

        assert transition.from_tier == MemoryTier.HOT
        assert [(t.from_tier, t.to_tier, t.reason) for t in history] == [
            (MemoryTier.HOT, MemoryTier.WARM, "aged out")
        ]
        assert (await manager.get_turn(turns[0].id)).memory_tier == MemoryTier.WARM


class TestStorageErrors:
    """Tests for storage failures surfacing to callers."""

    @pytest.mark.asyncio
    async def test_disconnected_store(self):
        manager = MemoryTierManager(ConversationStore(":memory:"))

        with pytest.raises(StorageFailure) as exc_info:
            await manager.get_or_create_session("user-1")

        assert exc_info.value.kind == ErrorKind.STORAGE_FAILURE


class TestKeyedLocks:
    """Tests for per-key locks."""

    @pytest.mark.asyncio
    async def test_same_key_serialized(self):
        locks = KeyedLocks()
        order = []

        async def worker(name: str):
            async with locks.hold("session-1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]

    @pytest.mark.asyncio
    async def test_lock_dropped_after_release(self):
        locks = KeyedLocks()

        async with locks.hold("session-1"):
            assert "session-1" in locks

        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_manager_keeps_no_locks_between_calls(self, manager):
        await fill_session(manager, "user-1", 2)

        assert len(manager._session_locks) == 0
        assert len(manager._user_locks) == 0
