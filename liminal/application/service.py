from typing import List, Optional

import structlog

from liminal.domain.context.context_manager import ContextManager
from liminal.domain.context.memory.memory_tier_manager import MemoryTierManager
from liminal.domain.context.state.state_manager import StateManager
from liminal.domain.models.conversation import TierTransition
from liminal.domain.orchestration.core.turn_orchestrator import TurnOrchestrator, TurnResult
from liminal.domain.recognition.recognition_processor import RecognitionProcessor
from liminal.infrastructure.config.settings import Settings
from liminal.infrastructure.llm.completion import TextCompletion
from liminal.infrastructure.observability.logging import metrics, setup_logging
from liminal.infrastructure.persistence.conversation_store import ConversationStore

logger = structlog.get_logger(__name__)


class LiminalService:
    """Owns the store and the per-turn components for one process"""

    def __init__(
        self,
        responder: TextCompletion,
        recognition_completion: Optional[TextCompletion] = None,
        settings: Optional[Settings] = None,
        configure_logging: bool = True
    ):
        self.settings = settings or Settings.from_env()
        self.responder = responder
        self.recognition_completion = recognition_completion
        self.configure_logging = configure_logging

        self.store: Optional[ConversationStore] = None
        self.memory: Optional[MemoryTierManager] = None
        self.orchestrator: Optional[TurnOrchestrator] = None

    @property
    def started(self) -> bool:
        return self.orchestrator is not None

    async def start(self) -> "LiminalService":
        """Connect storage and build the turn pipeline"""

        if self.started:
            return self

        if self.configure_logging:
            setup_logging(self.settings.log_level, self.settings.log_format)

        self.store = await ConversationStore(self.settings.memory.db_path).connect()
        self.memory = MemoryTierManager(
            self.store,
            self.settings.memory,
            max_message_chars=self.settings.context.max_message_chars
        )
        recognition = RecognitionProcessor(self.recognition_completion, self.settings.recognition)
        self.orchestrator = TurnOrchestrator(
            self.memory,
            recognition,
            self.responder,
            context_manager=ContextManager(self.memory, self.settings.context),
            state_manager=StateManager(self.memory)
        )

        logger.info(
            "Liminal service started",
            recognition_enabled=recognition.enabled,
            db_path=self.settings.memory.db_path
        )
        return self

    async def shutdown(self):
        if self.store is not None:
            await self.store.close()
        self.store = None
        self.memory = None
        self.orchestrator = None
        logger.info("Liminal service shutdown", metrics=metrics.get_metrics_summary())

    async def __aenter__(self) -> "LiminalService":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb):
        await self.shutdown()

    async def handle_turn(
        self,
        user_id: str,
        message: str,
        session_id: Optional[str] = None,
        deadline: Optional[float] = None
    ) -> TurnResult:
        if not self.started:
            await self.start()
        return await self.orchestrator.handle_turn(user_id, message, session_id, deadline)

    async def end_session(self, session_id: str) -> List[TierTransition]:
        if not self.started:
            await self.start()
        return await self.orchestrator.end_session(session_id)
