from typing import List, Optional, Sequence
from datetime import datetime, timezone
import math

import structlog
from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.metrics.pairwise import cosine_similarity

from liminal.domain.context.memory.identity_cache import IdentityCriticalityCache
from liminal.domain.models.conversation import ConversationTurn, RankedTurn, TurnSignificance
from liminal.domain.models.framework_state import utc_now

logger = structlog.get_logger(__name__)

SECONDS_PER_DAY = 86400.0


class ContextRanker:
    """Ranks candidate turns by recency, text relevance and identity weight"""

    def __init__(self, decay_rate: float = 0.01):
        self.decay_rate = decay_rate

    def recency_score(self, timestamp: datetime, now: Optional[datetime] = None) -> float:
        """exp(-decay * age in days); future timestamps count as age 0"""

        now = now or utc_now()
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        days = max(0.0, (now - timestamp).total_seconds() / SECONDS_PER_DAY)
        return math.exp(-self.decay_rate * days)

    def relevance_scores(self, query: str, documents: Sequence[str]) -> List[float]:
        """TF-IDF cosine between the query and each document, fitted on the documents"""

        if not documents or not query.strip():
            return [0.0] * len(documents)

        vectorizer = TfidfVectorizer()
        try:
            matrix = vectorizer.fit_transform(documents)
        except ValueError:
            # Empty vocabulary: nothing to compare against
            return [0.0] * len(documents)

        query_vector = vectorizer.transform([query])
        similarities = cosine_similarity(query_vector, matrix)[0]
        return [max(0.0, min(1.0, float(score))) for score in similarities]

    async def rank(
        self,
        query: str,
        turns: Sequence[ConversationTurn],
        identity_cache: IdentityCriticalityCache,
        now: Optional[datetime] = None
    ) -> List[RankedTurn]:
        """Score every turn and sort by combined significance, highest first"""

        if not turns:
            return []

        now = now or utc_now()
        relevance = self.relevance_scores(query, [turn.text for turn in turns])

        ranked = []
        for turn, relevance_score in zip(turns, relevance):
            significance = TurnSignificance(
                turn_id=turn.id,
                recency_score=self.recency_score(turn.user_timestamp, now),
                relevance_score=relevance_score,
                identity_score=await identity_cache.get(turn.snapshot_id)
            )
            ranked.append(RankedTurn(turn=turn, significance=significance))

        ranked.sort(key=lambda item: item.significance.combined, reverse=True)

        logger.debug(
            "Ranked turns",
            query=query[:50],
            candidates=len(ranked),
            top_score=ranked[0].significance.combined
        )
        return ranked
