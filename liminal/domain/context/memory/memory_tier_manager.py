"""
Hot / warm / cold conversation memory.

Hot is the last few answered turns of the open session, warm the answered
turns just before them, cold everything from ended sessions. Turn numbering
and tier changes for a session are serialized by that session's lock;
different sessions proceed in parallel.
"""

from typing import AsyncIterator, Dict, List, Optional
from contextlib import asynccontextmanager
from datetime import datetime
import asyncio

import structlog

from liminal.domain.context.context_ranker import ContextRanker
from liminal.domain.context.memory.hot_memory import HotMemory
from liminal.domain.context.memory.identity_cache import IdentityCriticalityCache
from liminal.domain.context.tokens import estimate_tokens
from liminal.domain.models.conversation import (
    ConversationTurn,
    MemorySession,
    MemoryTier,
    RankedTurn,
    StateSnapshot,
    TierTransition,
)
from liminal.domain.models.errors import InvalidInput
from liminal.infrastructure.config.settings import MemorySettings
from liminal.infrastructure.observability.logging import TurnLogger, metrics
from liminal.infrastructure.persistence.conversation_store import ConversationStore

logger = structlog.get_logger(__name__)
turn_logger = TurnLogger(__name__)

MAX_MESSAGE_CHARS = 32000
SESSION_END_REASON = "session_end"


class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def __contains__(self, key: str) -> bool:
        return key in self._locks

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]


class MemoryTierManager:
    """Manages sessions, turns and the three memory tiers"""

    def __init__(
        self,
        store: ConversationStore,
        settings: Optional[MemorySettings] = None,
        identity_cache: Optional[IdentityCriticalityCache] = None,
        ranker: Optional[ContextRanker] = None,
        max_message_chars: int = MAX_MESSAGE_CHARS
    ):
        self.store = store
        self.settings = settings or MemorySettings()
        self.identity_cache = identity_cache or IdentityCriticalityCache(self._load_identity_weight)
        self.ranker = ranker or ContextRanker(self.settings.recency_decay)
        self.max_message_chars = max_message_chars
        self._session_locks = KeyedLocks()
        self._user_locks = KeyedLocks()

    def session_lock(self, session_id: str):
        """Async context manager serializing turn numbering and tier changes for one session"""
        return self._session_locks.hold(session_id)

    def _user_lock(self, user_id: str):
        return self._user_locks.hold(user_id)

    async def _load_identity_weight(self, snapshot_id: str) -> float:
        snapshot = await self.store.get_snapshot(snapshot_id)
        return snapshot.identity_weight if snapshot else 0.0

    # Sessions

    async def get_or_create_session(self, user_id: str) -> MemorySession:
        """Return the user's open session, creating one if none is open"""

        async with self._user_lock(user_id):
            session = await self.store.get_open_session(user_id)
            if session is not None:
                return session

            session = await self.store.create_session(user_id)
            logger.info("Session created", session_id=session.id, user_id=user_id)
            return session

    async def end_session(self, session_id: str) -> List[TierTransition]:
        """Close a session and move its hot and warm turns to cold"""

        async with self.session_lock(session_id):
            transitions = await self.store.end_session(session_id, SESSION_END_REASON)

        for transition in transitions:
            turn_logger.log_tier_transition(
                transition.turn_id,
                transition.from_tier.value,
                transition.to_tier.value,
                transition.reason
            )
        metrics.record_cold_promotions(len(transitions))
        logger.info("Session ended", session_id=session_id, promoted=len(transitions))
        return transitions

    # Turns

    def validate_message(self, message: str, stage: str = "record_user_message"):
        if message is None or not message.strip():
            raise InvalidInput(stage, "message is empty")
        if len(message) > self.max_message_chars:
            raise InvalidInput(stage, f"message exceeds {self.max_message_chars} characters")

    async def record_user_message(
        self,
        session_id: str,
        user_id: str,
        message: str,
        input_tokens: Optional[int] = None
    ) -> ConversationTurn:
        """Create the next turn of an open session"""

        self.validate_message(message)

        async with self.session_lock(session_id):
            session = await self.store.get_session(session_id)
            if session is None:
                raise InvalidInput("record_user_message", f"unknown session {session_id}")
            if not session.is_open:
                raise InvalidInput("record_user_message", f"session {session_id} has ended")
            if session.user_id != user_id:
                raise InvalidInput("record_user_message", f"session {session_id} belongs to another user")

            tokens = input_tokens if input_tokens is not None else estimate_tokens(message)
            turn = await self.store.insert_turn(session_id, user_id, message, tokens)

        logger.debug("User message recorded", session_id=session_id, turn_number=turn.turn_number)
        return turn

    async def record_response(
        self,
        turn_id: str,
        response: str,
        output_tokens: Optional[int] = None,
        snapshot_id: Optional[str] = None
    ) -> ConversationTurn:
        """Attach the agent response; the turn is immutable afterwards"""

        tokens = output_tokens if output_tokens is not None else estimate_tokens(response)
        return await self.store.update_response(turn_id, response, tokens, snapshot_id)

    async def save_conversation_turn(
        self,
        session_id: str,
        user_id: str,
        user_message: str,
        agent_response: str,
        snapshot_id: Optional[str] = None,
        input_tokens: Optional[int] = None,
        output_tokens: Optional[int] = None
    ) -> ConversationTurn:
        """Record a user message and its response in one call"""

        turn = await self.record_user_message(session_id, user_id, user_message, input_tokens)
        return await self.record_response(turn.id, agent_response, output_tokens, snapshot_id)

    async def get_turn(self, turn_id: str) -> Optional[ConversationTurn]:
        return await self.store.get_turn(turn_id)

    # Tiers

    async def load_hot_memory(self, session_id: str) -> HotMemory:
        """Newest answered turns, replayed oldest first through the bounded buffer"""

        recent = await self.store.recent_answered_turns(session_id, limit=self.settings.hot_max_turns)
        hot = HotMemory(session_id, self.settings.hot_max_turns, self.settings.hot_max_tokens)

        evicted = 0
        for turn in reversed(recent):
            evicted += len(hot.add_turn(turn))
        metrics.record_hot_evictions(evicted)

        return hot

    async def load_warm_memory(self, session_id: str) -> List[ConversationTurn]:
        """Answered turns preceding the hot window, oldest first, within the token budget"""

        candidates = await self.store.recent_answered_turns(
            session_id,
            limit=self.settings.warm_limit,
            offset=self.settings.warm_offset
        )

        warm = []
        total = 0
        for turn in reversed(candidates):
            if total + turn.total_tokens > self.settings.warm_max_tokens:
                break
            warm.append(turn)
            total += turn.total_tokens

        return warm

    async def load_cold_memory(self, user_id: str) -> List[ConversationTurn]:
        """Cold turns across all of the user's sessions, newest first"""
        return await self.store.turns_in_tier(user_id, MemoryTier.COLD, self.settings.cold_limit)

    async def search_memory(
        self,
        user_id: str,
        tier: MemoryTier,
        keyword: str,
        limit: int = 10
    ) -> List[ConversationTurn]:
        """Case-insensitive keyword search within one tier, most recent first

        Turns keep the hot label until their session ends, so warm means
        position here: answered turns of an open session that have dropped
        out of the newest hot_max_turns. Hot search covers the rest of the
        open session.
        """

        if limit <= 0:
            return []
        return await self.store.search_turns(user_id, tier, keyword, limit, self.settings.hot_max_turns)

    async def rank_turns(
        self,
        query: str,
        turns: List[ConversationTurn],
        now: Optional[datetime] = None
    ) -> List[RankedTurn]:
        return await self.ranker.rank(query, turns, self.identity_cache, now)

    async def transition_tier(self, turn_id: str, to_tier: MemoryTier, reason: str) -> TierTransition:
        """Move a turn to another tier and append the transition record"""

        turn = await self.store.get_turn(turn_id)
        if turn is None:
            raise InvalidInput("transition_tier", f"unknown turn {turn_id}")

        async with self.session_lock(turn.session_id):
            transition = await self.store.update_tier(turn_id, to_tier, reason)

        turn_logger.log_tier_transition(turn_id, transition.from_tier.value, to_tier.value, reason)
        return transition

    async def get_tier_transitions(self, turn_id: str) -> List[TierTransition]:
        return await self.store.get_tier_transitions(turn_id)

    # Snapshots

    async def save_snapshot(self, snapshot: StateSnapshot) -> StateSnapshot:
        saved = await self.store.save_snapshot(snapshot)
        self.identity_cache.put(saved.id, saved.identity_weight)
        return saved

    async def latest_snapshot(self, user_id: str) -> Optional[StateSnapshot]:
        return await self.store.latest_snapshot(user_id)
