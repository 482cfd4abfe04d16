from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum

from liminal.domain.models.framework_state import IdentityAnchor, utc_now


class MemoryTier(str, Enum):
    """Retention class of a conversation turn"""
    HOT = "hot"
    WARM = "warm"
    COLD = "cold"


class ConversationTurn(BaseModel):
    """One user message and, once answered, the agent response"""
    id: str = Field(description="Unique turn identifier")
    session_id: str
    user_id: str
    turn_number: int = Field(ge=1, description="Sequential within the session")
    user_message: str
    agent_response: Optional[str] = Field(None, description="Null until answered")
    user_timestamp: datetime = Field(default_factory=utc_now)
    agent_timestamp: Optional[datetime] = None
    snapshot_id: Optional[str] = Field(None, description="Linked state snapshot")
    input_tokens: int = 0
    output_tokens: int = 0
    memory_tier: MemoryTier = Field(default=MemoryTier.HOT)
    tier_changed_at: Optional[datetime] = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def is_answered(self) -> bool:
        return self.agent_response is not None

    @property
    def text(self) -> str:
        """User and agent text joined for search and ranking"""
        return f"{self.user_message}\n{self.agent_response or ''}"


class MemorySession(BaseModel):
    """A run of turns for one user; open while ended_at is absent"""
    id: str
    user_id: str
    started_at: datetime = Field(default_factory=utc_now)
    ended_at: Optional[datetime] = None
    turn_count: int = 0
    total_tokens: int = 0

    @property
    def is_open(self) -> bool:
        return self.ended_at is None


class TierTransition(BaseModel):
    """Immutable record of a tier change"""
    id: str
    turn_id: str
    from_tier: MemoryTier
    to_tier: MemoryTier
    reason: str
    transitioned_at: datetime = Field(default_factory=utc_now)


RECENCY_WEIGHT = 0.5
RELEVANCE_WEIGHT = 0.35
IDENTITY_WEIGHT = 0.15


class TurnSignificance(BaseModel):
    """Ranking components for a candidate turn"""
    turn_id: str
    recency_score: float = Field(ge=0.0, le=1.0)
    relevance_score: float = Field(ge=0.0, le=1.0)
    identity_score: float = Field(ge=0.0, le=1.0)
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Reserved for future signals")

    @property
    def combined(self) -> float:
        return (
            RECENCY_WEIGHT * self.recency_score
            + RELEVANCE_WEIGHT * self.relevance_score
            + IDENTITY_WEIGHT * self.identity_score
        )


class RankedTurn(BaseModel):
    """A turn paired with its significance"""
    turn: ConversationTurn
    significance: TurnSignificance


class StateSnapshot(BaseModel):
    """Persisted working state for one turn"""
    id: str
    user_id: str
    session_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    state: Dict[str, Any] = Field(default_factory=dict)
    identity_anchors: List[IdentityAnchor] = Field(default_factory=list)

    @property
    def identity_weight(self) -> float:
        """Strongest anchor confidence, 0.0 without anchors"""
        if not self.identity_anchors:
            return 0.0
        return max(anchor.confidence for anchor in self.identity_anchors)
