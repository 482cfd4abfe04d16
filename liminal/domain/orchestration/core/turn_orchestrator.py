from typing import TypedDict, Annotated, List, Dict, Any, Optional, Literal
import asyncio
import operator
import time

import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
from langgraph.graph import StateGraph, END
from langgraph.graph.message import add_messages
from pydantic import BaseModel, Field

from liminal.domain.context.context_manager import ContextManager, TurnContext
from liminal.domain.context.memory.memory_tier_manager import MemoryTierManager
from liminal.domain.context.state.state_manager import StateManager
from liminal.domain.context.tokens import estimate_tokens
from liminal.domain.models.conversation import ConversationTurn, TierTransition
from liminal.domain.models.errors import InvalidInput, RecognitionFailure
from liminal.domain.models.framework_state import FrameworkState
from liminal.domain.recognition.prompts import build_response_prompt
from liminal.domain.recognition.recognition_processor import MemoryGuidanceResult, RecognitionProcessor, RecognitionResult
from liminal.infrastructure.llm.completion import TextCompletion, classify_provider_error
from liminal.infrastructure.observability.logging import TurnLogger, metrics

logger = structlog.get_logger(__name__)
turn_logger = TurnLogger(__name__)


class TurnState(TypedDict):
    """State for the turn graph"""
    messages: Annotated[List[BaseMessage], add_messages]
    user_id: str
    session_id: Optional[str]
    message: str
    deadline_at: Optional[float]
    turn: Optional[ConversationTurn]
    working_state: Optional[FrameworkState]
    guidance: Optional[MemoryGuidanceResult]
    context: Optional[TurnContext]
    recognition: Optional[RecognitionResult]
    response: Optional[str]
    snapshot_id: Optional[str]
    node_trace: Annotated[List[str], operator.add]
    error: Optional[Dict[str, Any]]


class TurnResult(BaseModel):
    """What a caller gets back for one turn"""
    user_id: str
    session_id: Optional[str] = None
    turn_id: Optional[str] = None
    turn_number: Optional[int] = None
    response: Optional[str] = None
    source: Optional[str] = Field(None, description="recognition or fallback")
    attempts: int = 0
    memory_guidance: Optional[Dict[str, Any]] = None
    state_summary: Dict[str, Any] = Field(default_factory=dict)
    snapshot_id: Optional[str] = None
    node_trace: List[str] = Field(default_factory=list)
    error: Optional[Dict[str, Any]] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.response is not None


class TurnOrchestrator:
    """Sequences context assembly, recognition and response for each turn"""

    def __init__(
        self,
        memory: MemoryTierManager,
        recognition: RecognitionProcessor,
        responder: TextCompletion,
        context_manager: Optional[ContextManager] = None,
        state_manager: Optional[StateManager] = None
    ):
        self.memory = memory
        self.recognition = recognition
        self.responder = responder
        self.context_manager = context_manager or ContextManager(memory)
        self.state_manager = state_manager or StateManager(memory)
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        """Create the turn graph"""

        workflow = StateGraph(TurnState)

        workflow.add_node("validate_input", self.validate_input_node)
        workflow.add_node("open_turn", self.open_turn_node)
        workflow.add_node("plan_memory", self.plan_memory_node)
        workflow.add_node("assemble_context", self.assemble_context_node)
        workflow.add_node("recognize", self.recognize_node)
        workflow.add_node("generate_response", self.generate_response_node)
        workflow.add_node("commit_turn", self.commit_turn_node)
        workflow.add_node("report_error", self.report_error_node)

        workflow.set_entry_point("validate_input")

        workflow.add_conditional_edges(
            "validate_input",
            self.route_on_error,
            {"continue": "open_turn", "error": "report_error"}
        )
        workflow.add_conditional_edges(
            "open_turn",
            self.route_on_error,
            {"continue": "plan_memory", "error": "report_error"}
        )
        workflow.add_conditional_edges(
            "plan_memory",
            self.route_on_error,
            {"continue": "assemble_context", "error": "report_error"}
        )
        workflow.add_edge("assemble_context", "recognize")
        workflow.add_conditional_edges(
            "recognize",
            self.route_on_error,
            {"continue": "generate_response", "error": "report_error"}
        )
        workflow.add_conditional_edges(
            "generate_response",
            self.route_on_error,
            {"continue": "commit_turn", "error": "report_error"}
        )
        workflow.add_edge("commit_turn", END)
        workflow.add_edge("report_error", END)

        return workflow.compile()

    async def validate_input_node(self, state: TurnState) -> Dict[str, Any]:
        """Reject empty or oversized messages before anything is written"""

        try:
            self.memory.validate_message(state["message"], stage="validate_input")
        except InvalidInput as exc:
            return {"node_trace": ["validate_input"], "error": exc.to_dict()}

        return {
            "node_trace": ["validate_input"],
            "messages": [HumanMessage(content=state["message"])]
        }

    async def open_turn_node(self, state: TurnState) -> Dict[str, Any]:
        """Resolve the session and record the user message"""

        user_id = state["user_id"]
        session_id = state.get("session_id")
        if session_id is None:
            session = await self.memory.get_or_create_session(user_id)
            session_id = session.id

        try:
            turn = await self.memory.record_user_message(session_id, user_id, state["message"])
        except InvalidInput as exc:
            return {"node_trace": ["open_turn"], "session_id": session_id, "error": exc.to_dict()}

        working_state = await self.state_manager.get_current_state(session_id, user_id)

        logger.info("Turn opened", session_id=session_id, turn_number=turn.turn_number)
        return {
            "node_trace": ["open_turn"],
            "session_id": session_id,
            "turn": turn,
            "working_state": working_state
        }

    async def plan_memory_node(self, state: TurnState) -> Dict[str, Any]:
        """First pass over the message; skipped when the model is not in use"""

        if not self.recognition.first_pass_enabled:
            return {"node_trace": ["plan_memory"]}

        try:
            result = await self.recognition.first_pass(
                state["message"],
                temporal_context=f"turn {state['turn'].turn_number} of the current session",
                deadline=self._remaining(state),
                session_id=state["session_id"]
            )
        except RecognitionFailure as exc:
            return {"node_trace": ["plan_memory"], "error": exc.to_dict()}

        return {"node_trace": ["plan_memory"], "guidance": result}

    async def assemble_context_node(self, state: TurnState) -> Dict[str, Any]:
        planned = state.get("guidance")
        context = await self.context_manager.build_context(
            state["user_id"],
            state["session_id"],
            state["message"],
            guidance=planned.guidance if planned else None
        )
        return {"node_trace": ["assemble_context"], "context": context}

    async def recognize_node(self, state: TurnState) -> Dict[str, Any]:
        """Recognition runs without holding the session lock"""

        try:
            result = await self.recognition.process(
                state["message"],
                state["working_state"],
                deadline=self._remaining(state),
                session_id=state["session_id"]
            )
        except RecognitionFailure as exc:
            return {"node_trace": ["recognize"], "error": exc.to_dict()}

        return {"node_trace": ["recognize"], "recognition": result}

    async def generate_response_node(self, state: TurnState) -> Dict[str, Any]:
        recognized = state["recognition"].state
        context_text = state["context"].formatted if state.get("context") else ""
        prompt = build_response_prompt(state["message"], context_text, recognized)

        try:
            response = await self.responder.complete(prompt)
        except Exception as exc:
            error = classify_provider_error(exc, "generate_response")
            logger.warning("Response generation failed", error=error.to_dict())
            return {"node_trace": ["generate_response"], "error": error.to_dict()}

        return {
            "node_trace": ["generate_response"],
            "response": response,
            "messages": [AIMessage(content=response)]
        }

    async def commit_turn_node(self, state: TurnState) -> Dict[str, Any]:
        """Store working state, snapshot and response under the session lock"""

        session_id = state["session_id"]
        recognized = state["recognition"].state

        async with self.memory.session_lock(session_id):
            await self.state_manager.update_state(session_id, recognized)
            snapshot = self.state_manager.build_snapshot(session_id, state["user_id"], recognized)
            await self.memory.save_snapshot(snapshot)
            turn = await self.memory.record_response(
                state["turn"].id,
                state["response"],
                estimate_tokens(state["response"]),
                snapshot.id
            )

        return {"node_trace": ["commit_turn"], "turn": turn, "snapshot_id": snapshot.id}

    async def report_error_node(self, state: TurnState) -> Dict[str, Any]:
        logger.error("Turn failed", error=state.get("error"), trace=state.get("node_trace"))
        return {"node_trace": ["report_error"]}

    def route_on_error(self, state: TurnState) -> Literal["continue", "error"]:
        """Send any recorded error to report_error"""

        node = state["node_trace"][-1] if state.get("node_trace") else None
        route = "error" if state.get("error") else "continue"
        turn_logger.log_workflow_transition(state.get("session_id"), node, route)
        return route

    @staticmethod
    def _remaining(state: TurnState) -> Optional[float]:
        """Seconds left before the turn deadline, or None without one"""
        deadline_at = state.get("deadline_at")
        if deadline_at is None:
            return None
        return max(0.0, deadline_at - asyncio.get_running_loop().time())

    async def handle_turn(
        self,
        user_id: str,
        message: str,
        session_id: Optional[str] = None,
        deadline: Optional[float] = None
    ) -> TurnResult:
        """Run one turn through the graph; deadline (seconds) bounds all model calls before the response"""

        started = time.perf_counter()
        deadline_at = asyncio.get_running_loop().time() + deadline if deadline is not None else None

        initial_state: TurnState = {
            "messages": [],
            "user_id": user_id,
            "session_id": session_id,
            "message": message,
            "deadline_at": deadline_at,
            "turn": None,
            "working_state": None,
            "guidance": None,
            "context": None,
            "recognition": None,
            "response": None,
            "snapshot_id": None,
            "node_trace": [],
            "error": None
        }

        with structlog.contextvars.bound_contextvars(user_id=user_id):
            final = await self.workflow.ainvoke(initial_state)

        error = final.get("error")
        metrics.record_turn((time.perf_counter() - started) * 1000, error["kind"] if error else None)

        turn = final.get("turn")
        recognition = final.get("recognition")
        planned = final.get("guidance")
        return TurnResult(
            user_id=user_id,
            session_id=final.get("session_id"),
            turn_id=turn.id if turn else None,
            turn_number=turn.turn_number if turn else None,
            response=final.get("response") if not error else None,
            source=recognition.source if recognition else None,
            attempts=recognition.attempts if recognition else 0,
            memory_guidance=planned.guidance.model_dump() if planned else None,
            state_summary=recognition.state.get_state_summary() if recognition else {},
            snapshot_id=final.get("snapshot_id"),
            node_trace=final.get("node_trace", []),
            error=error
        )

    async def end_session(self, session_id: str) -> List[TierTransition]:
        """Move the session's turns to cold and drop its in-process state"""

        transitions = await self.memory.end_session(session_id)
        await self.state_manager.clear_state(session_id)
        await self.context_manager.clear_session_context(session_id)
        return transitions
