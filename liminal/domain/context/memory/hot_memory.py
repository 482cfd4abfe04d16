from typing import Deque, List, Optional
from collections import deque

from liminal.domain.models.conversation import ConversationTurn

MAX_HOT_TURNS = 5
MAX_HOT_TOKENS = 1500


class HotMemory:
    """Most recent answered turns of a session, bounded by count and tokens"""

    def __init__(self, session_id: str, max_turns: int = MAX_HOT_TURNS, max_tokens: int = MAX_HOT_TOKENS):
        self.session_id = session_id
        self.max_turns = max_turns
        self.max_tokens = max_tokens
        self.turns: Deque[ConversationTurn] = deque()
        self.total_tokens = 0

    def add_turn(self, turn: ConversationTurn) -> List[ConversationTurn]:
        """Append a turn, evicting oldest first; returns the evicted turns"""

        evicted = []
        turn_tokens = turn.total_tokens

        # A lone oversized turn is still admitted into an empty buffer
        while len(self.turns) >= self.max_turns or (
            self.total_tokens + turn_tokens > self.max_tokens and self.turns
        ):
            oldest = self.turns.popleft()
            self.total_tokens -= oldest.total_tokens
            evicted.append(oldest)

        self.turns.append(turn)
        self.total_tokens += turn_tokens
        return evicted

    @property
    def turn_ids(self) -> List[str]:
        return [turn.id for turn in self.turns]

    def newest(self) -> Optional[ConversationTurn]:
        return self.turns[-1] if self.turns else None

    def __len__(self) -> int:
        return len(self.turns)

    def format_for_llm(self) -> str:
        """Oldest to newest, empty string when there is no history"""

        if not self.turns:
            return ""

        parts = ["# Recent Conversation History\n\n"]
        for turn in self.turns:
            parts.append(f"User: {turn.user_message}\n")
            parts.append(f"Assistant: {turn.agent_response or ''}\n\n")
        return "".join(parts)
