from typing import Dict, Any, Optional
import asyncio
import uuid

import structlog

from liminal.domain.context.memory.memory_tier_manager import MemoryTierManager
from liminal.domain.models.conversation import StateSnapshot
from liminal.domain.models.framework_state import FrameworkState

logger = structlog.get_logger(__name__)


class StateManager:
    """Manages working state across sessions"""

    def __init__(self, memory: Optional[MemoryTierManager] = None):
        self.memory = memory
        self.states: Dict[str, FrameworkState] = {}
        self._lock = asyncio.Lock()

    async def _seed_state(self, user_id: Optional[str]) -> FrameworkState:
        """Latest snapshot of the user, or the default state"""

        if self.memory is None or user_id is None:
            return FrameworkState()

        snapshot = await self.memory.latest_snapshot(user_id)
        if snapshot is None or not snapshot.state:
            return FrameworkState()

        logger.debug("Seeding state from snapshot", snapshot_id=snapshot.id, user_id=user_id)
        return FrameworkState.model_validate(snapshot.state)

    async def get_current_state(self, session_id: str, user_id: Optional[str] = None) -> FrameworkState:
        """Copy of the working state for a session"""

        async with self._lock:
            state = self.states.get(session_id)
            if state is not None:
                return state.model_copy(deep=True)

        seeded = await self._seed_state(user_id)

        async with self._lock:
            state = self.states.setdefault(session_id, seeded)
            return state.model_copy(deep=True)

    async def update_state(self, session_id: str, state: FrameworkState):
        """Replace the working state for a session"""

        async with self._lock:
            self.states[session_id] = state.model_copy(deep=True)

    def build_snapshot(self, session_id: str, user_id: str, state: FrameworkState) -> StateSnapshot:
        return StateSnapshot(
            id=str(uuid.uuid4()),
            user_id=user_id,
            session_id=session_id,
            state=state.model_dump(mode="json"),
            identity_anchors=state.identity_anchors()
        )

    async def clear_state(self, session_id: str):
        """Clear state for a session"""

        async with self._lock:
            self.states.pop(session_id, None)

    async def get_all_active_sessions(self) -> Dict[str, Dict[str, Any]]:
        """Summaries of all held session states"""

        async with self._lock:
            return {session_id: state.get_state_summary() for session_id, state in self.states.items()}
