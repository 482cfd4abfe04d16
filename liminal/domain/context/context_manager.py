from typing import Dict, List, Any, Optional
from datetime import datetime

import structlog
from pydantic import BaseModel, Field

from liminal.domain.context.memory.memory_tier_manager import MemoryTierManager
from liminal.domain.models.conversation import ConversationTurn, RankedTurn
from liminal.domain.models.framework_state import utc_now
from liminal.domain.models.recognition import MemorySelectionGuidance
from liminal.infrastructure.config.settings import ContextSettings
from liminal.infrastructure.observability.logging import TurnLogger, metrics

logger = structlog.get_logger(__name__)
turn_logger = TurnLogger(__name__)


class TurnContext(BaseModel):
    """Bounded history assembled for one turn"""
    user_id: str
    session_id: str
    query: str
    hot_turns: List[ConversationTurn] = Field(default_factory=list)
    warm: List[RankedTurn] = Field(default_factory=list)
    cold: List[RankedTurn] = Field(default_factory=list)
    hot_tokens: int = 0
    selected_tokens: int = Field(default=0, description="Tokens of the warm and cold selections")
    guidance: Optional[MemorySelectionGuidance] = None
    formatted: str = ""
    created_at: datetime = Field(default_factory=utc_now)


def _format_ranked(title: str, ranked: List[RankedTurn]) -> str:
    if not ranked:
        return ""

    parts = [f"# {title}\n\n"]
    for item in ranked:
        turn = item.turn
        parts.append(f"User: {turn.user_message}\n")
        parts.append(f"Assistant: {turn.agent_response or ''}\n\n")
    return "".join(parts)


class ContextManager:
    """Assembles per-turn context from the memory tiers"""

    def __init__(self, memory: MemoryTierManager, settings: Optional[ContextSettings] = None):
        self.memory = memory
        self.settings = settings or ContextSettings()
        self._last_contexts: Dict[str, TurnContext] = {}

    async def build_context(
        self,
        user_id: str,
        session_id: str,
        query: str,
        guidance: Optional[MemorySelectionGuidance] = None
    ) -> TurnContext:
        """Hot history plus the most significant warm and cold turns under the token budget

        Without guidance every tier is loaded. With guidance, warm and cold are
        loaded only when asked for and the search terms join the ranking query.
        """

        logger.info("Building context", session_id=session_id, guided=guidance is not None)

        load_warm = guidance is None or guidance.warm_needed
        load_cold = guidance is None or guidance.cold_needed
        ranking_query = query if guidance is None else " ".join([query, *guidance.ranking_terms()])

        hot = await self.memory.load_hot_memory(session_id)
        warm_candidates = await self.memory.load_warm_memory(session_id) if load_warm else []
        cold_candidates = await self.memory.load_cold_memory(user_id) if load_cold else []

        now = utc_now()
        ranked_warm = (await self.memory.rank_turns(ranking_query, warm_candidates, now))[:self.settings.warm_selection]
        ranked_cold = (await self.memory.rank_turns(ranking_query, cold_candidates, now))[:self.settings.cold_selection]

        budget = self.settings.max_context_tokens
        used = 0
        warm: List[RankedTurn] = []
        cold: List[RankedTurn] = []
        for selection, target in ((ranked_warm, warm), (ranked_cold, cold)):
            for item in selection:
                tokens = item.turn.total_tokens
                if used + tokens > budget:
                    continue
                target.append(item)
                used += tokens

        formatted = "".join(
            part for part in (
                hot.format_for_llm(),
                _format_ranked("Relevant Earlier Conversation", warm),
                _format_ranked("Long-term Memory", cold),
            )
            if part
        )

        context = TurnContext(
            user_id=user_id,
            session_id=session_id,
            query=query,
            hot_turns=list(hot.turns),
            warm=warm,
            cold=cold,
            hot_tokens=hot.total_tokens,
            selected_tokens=used,
            guidance=guidance,
            formatted=formatted
        )
        self._last_contexts[session_id] = context
        metrics.set_gauge("context.selected_tokens", used)

        turn_logger.log_context_update(
            session_id=session_id,
            context_type="turn",
            action="built",
            details={
                "hot": len(context.hot_turns),
                "warm": len(warm),
                "cold": len(cold),
                "selected_tokens": used
            }
        )

        return context

    async def get_context_summary(self, session_id: str) -> Dict[str, Any]:
        """Get a summary of the last context built for a session"""

        context = self._last_contexts.get(session_id)
        if context is None:
            return {
                "session_id": session_id,
                "status": "no_context"
            }

        return {
            "session_id": session_id,
            "hot_turns": len(context.hot_turns),
            "warm_turns": len(context.warm),
            "cold_turns": len(context.cold),
            "selected_tokens": context.selected_tokens,
            "last_updated": context.created_at.isoformat()
        }

    async def clear_session_context(self, session_id: str):
        """Drop the cached context for a session"""

        logger.info("Clearing session context", session_id=session_id)
        self._last_contexts.pop(session_id, None)
