"""
Recognition processor.

Per turn, either asks the recognition model for a structured report or, when
the feature is off or the model cannot deliver, computes the same report
locally. States:

    idle -> requesting -> validating -> success
                 ^                  \\-> retry_backoff -> requesting
    (retries exhausted) -> fallback | report_error -> done

Auth failures go straight to report_error.

Before context assembly an optional first pass asks the same model which
memory tiers the turn needs. It walks the same states under the same retry
budget; its fallback is guidance that asks for no memory.
"""

from typing import Any, Callable, Dict, List, Optional, TypeVar
from enum import Enum
import asyncio
import time

import structlog
from pydantic import BaseModel, Field
from tenacity import AsyncRetrying, RetryCallState, RetryError, retry_if_exception_type, stop_after_attempt, wait_exponential

from liminal.domain.models.errors import (
    LiminalError,
    NetworkFailure,
    RecognitionFailure,
    RetriesExhausted,
    SchemaValidationFailure,
)
from liminal.domain.models.framework_state import (
    BoundaryStatus,
    DomainActivation,
    FrameworkState,
    PatternObservation,
    utc_now,
)
from liminal.domain.models.recognition import (
    MemorySelectionGuidance,
    RecognitionOutput,
    VolumetricConfiguration,
    parse_memory_guidance,
    parse_recognition_output,
)
from liminal.domain.quality.quality_evaluator import QualityEvaluator
from liminal.domain.recognition.fallback import FallbackComputation
from liminal.domain.recognition.json_extraction import extract_json_payload
from liminal.domain.recognition.prompts import build_memory_guidance_prompt, build_recognition_prompt
from liminal.infrastructure.config.settings import RecognitionSettings
from liminal.infrastructure.llm.completion import TextCompletion, classify_provider_error
from liminal.infrastructure.observability.logging import TurnLogger, metrics

logger = structlog.get_logger(__name__)
turn_logger = TurnLogger(__name__)

SOURCE_RECOGNITION = "recognition"
SOURCE_FALLBACK = "fallback"

PHASE_RECOGNITION = "recognition"
PHASE_FIRST_PASS = "first_pass"

Parsed = TypeVar("Parsed")


class RecognitionStage(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    VALIDATING = "validating"
    RETRY_BACKOFF = "retry_backoff"
    SUCCESS = "success"
    FALLBACK = "fallback"
    REPORT_ERROR = "report_error"
    DONE = "done"


class RecognitionResult(BaseModel):
    """Outcome of one recognition pass"""
    state: FrameworkState
    output: RecognitionOutput
    source: str = Field(description="recognition or fallback")
    attempts: int = 0
    stage_trace: List[str] = Field(default_factory=list)
    last_error: Optional[Dict[str, Any]] = None
    volumetric: Optional[VolumetricConfiguration] = None


class MemoryGuidanceResult(BaseModel):
    """Outcome of the first pass"""
    guidance: MemorySelectionGuidance
    source: str = Field(description="recognition or fallback")
    attempts: int = 0
    stage_trace: List[str] = Field(default_factory=list)
    last_error: Optional[Dict[str, Any]] = None


class _RecognitionRun:
    """Mutable bookkeeping for a single pass"""

    def __init__(self, session_id: Optional[str], phase: str = PHASE_RECOGNITION):
        self.session_id = session_id
        self.phase = phase
        self.stage = RecognitionStage.IDLE
        self.failed_stage = RecognitionStage.REQUESTING
        self.trace: List[str] = [RecognitionStage.IDLE.value]
        self.attempts = 0
        self.last_error: Optional[LiminalError] = None

    def transition(self, to_stage: RecognitionStage, condition: Optional[str] = None):
        turn_logger.log_workflow_transition(
            session_id=self.session_id,
            from_node=self.stage.value,
            to_node=to_stage.value,
            condition=condition,
            state_summary={"phase": self.phase}
        )
        self.stage = to_stage
        self.trace.append(to_stage.value)

    def fail(self, error: LiminalError):
        self.failed_stage = self.stage
        self.last_error = error

    def before_sleep(self, retry_state: RetryCallState):
        wait = retry_state.next_action.sleep if retry_state.next_action else 0.0
        self.transition(RecognitionStage.RETRY_BACKOFF, condition=f"wait {wait:.1f}s")
        metrics.record_retry(self.phase)


class RecognitionProcessor:
    """Produces the per-turn working state from the recognition model or the fallback"""

    def __init__(
        self,
        completion: Optional[TextCompletion] = None,
        settings: Optional[RecognitionSettings] = None,
        fallback: Optional[FallbackComputation] = None,
        evaluator: Optional[QualityEvaluator] = None,
        sleep: Callable[[float], Any] = asyncio.sleep
    ):
        self.completion = completion
        self.settings = settings or RecognitionSettings()
        self.evaluator = evaluator or QualityEvaluator()
        self.fallback = fallback or FallbackComputation(self.evaluator)
        self._sleep = sleep

        if self.settings.enabled and completion is None:
            logger.warning("Recognition enabled without a completion; using fallback only")

    @property
    def enabled(self) -> bool:
        return self.settings.enabled and self.completion is not None

    @property
    def first_pass_enabled(self) -> bool:
        return self.enabled and self.settings.first_pass_enabled

    @property
    def model_name(self) -> str:
        return getattr(self.completion, "model_name", self.settings.model)

    async def first_pass(
        self,
        turn_input: str,
        temporal_context: Optional[str] = None,
        deadline: Optional[float] = None,
        session_id: Optional[str] = None
    ) -> MemoryGuidanceResult:
        """Ask which memory tiers the turn needs before context is assembled"""

        run = _RecognitionRun(session_id, PHASE_FIRST_PASS)

        if not self.first_pass_enabled:
            run.transition(RecognitionStage.FALLBACK, condition="first pass disabled")
            run.transition(RecognitionStage.DONE)
            guidance = MemorySelectionGuidance.no_memory(
                "first pass disabled",
                "memory guidance skipped; context assembly loads every tier"
            )
            return self._guidance_result(run, guidance, SOURCE_FALLBACK)

        try:
            guidance = await self._network_phase(
                run,
                lambda attempt: build_memory_guidance_prompt(turn_input, temporal_context),
                parse_memory_guidance,
                deadline
            )
        except RetriesExhausted as exc:
            logger.warning("First pass retries exhausted", **exc.to_dict())
            if not self.settings.fallback_enabled:
                run.transition(RecognitionStage.REPORT_ERROR, condition="retries exhausted")
                run.transition(RecognitionStage.DONE)
                raise RecognitionFailure(exc.stage, exc) from exc

            run.last_error = exc
            run.transition(RecognitionStage.FALLBACK, condition="retries exhausted")
            run.transition(RecognitionStage.DONE)
            metrics.record_fallback(run.phase)
            guidance = MemorySelectionGuidance.no_memory(
                "model unavailable",
                "first pass failed; proceeding without memory retrieval"
            )
            return self._guidance_result(run, guidance, SOURCE_FALLBACK)

        run.transition(RecognitionStage.SUCCESS)
        run.transition(RecognitionStage.DONE)
        logger.info(
            "Memory guidance received",
            warm_needed=guidance.warm_needed,
            cold_needed=guidance.cold_needed,
            search_terms=guidance.search_terms
        )
        return self._guidance_result(run, guidance, SOURCE_RECOGNITION)

    def _guidance_result(
        self,
        run: _RecognitionRun,
        guidance: MemorySelectionGuidance,
        source: str
    ) -> MemoryGuidanceResult:
        return MemoryGuidanceResult(
            guidance=guidance,
            source=source,
            attempts=run.attempts,
            stage_trace=list(run.trace),
            last_error=run.last_error.to_dict() if run.last_error else None
        )

    async def process(
        self,
        turn_input: str,
        working_state: FrameworkState,
        deadline: Optional[float] = None,
        session_id: Optional[str] = None
    ) -> RecognitionResult:
        """Recognize the turn; deadline (seconds) bounds the whole network phase"""

        run = _RecognitionRun(session_id)
        started = time.perf_counter()

        if not self.enabled:
            run.transition(RecognitionStage.FALLBACK, condition="recognition disabled")
            return self._fallback_result(run, turn_input, working_state, started)

        try:
            output = await self._network_phase(
                run,
                lambda attempt: build_recognition_prompt(turn_input, working_state, attempt),
                parse_recognition_output,
                deadline
            )
        except RetriesExhausted as exc:
            return self._after_exhaustion(run, exc, turn_input, working_state, started)

        run.transition(RecognitionStage.SUCCESS)
        for mismatch in output.status_disagreements():
            logger.info("Boundary status disagrees with permeability", **mismatch)

        merged = self.merge_output(working_state, output)
        return self._finalize(run, turn_input, merged, output, SOURCE_RECOGNITION, started)

    async def _network_phase(
        self,
        run: _RecognitionRun,
        build_prompt: Callable[[int], str],
        parse: Callable[[str], Parsed],
        deadline: Optional[float]
    ) -> Parsed:
        """Retried calls under an optional overall deadline

        Raises RetriesExhausted once the budget or the deadline runs out, and
        RecognitionFailure for errors that are never retried.
        """

        try:
            request = self._request_with_retries(run, build_prompt, parse)
            if deadline is not None:
                return await asyncio.wait_for(request, timeout=deadline)
            return await request
        except RetriesExhausted:
            raise
        except asyncio.TimeoutError as exc:
            timeout_error = NetworkFailure(run.stage.value, f"deadline of {deadline}s exceeded")
            run.fail(timeout_error)
            raise RetriesExhausted(run.failed_stage.value, run.attempts, timeout_error) from exc
        except LiminalError as exc:
            run.fail(exc)
            run.transition(RecognitionStage.REPORT_ERROR, condition=exc.kind.value)
            run.transition(RecognitionStage.DONE)
            raise RecognitionFailure(run.failed_stage.value, exc) from exc

    async def _request_with_retries(
        self,
        run: _RecognitionRun,
        build_prompt: Callable[[int], str],
        parse: Callable[[str], Parsed]
    ) -> Parsed:
        """Call and validate under one shared retry budget"""

        retrying = AsyncRetrying(
            retry=retry_if_exception_type((NetworkFailure, SchemaValidationFailure)),
            stop=stop_after_attempt(self.settings.max_attempts),
            wait=wait_exponential(
                multiplier=self.settings.backoff_base_seconds,
                max=self.settings.backoff_max_seconds
            ),
            before_sleep=run.before_sleep,
            sleep=self._sleep
        )

        parsed = None
        try:
            async for attempt in retrying:
                with attempt:
                    parsed = await self._attempt(run, build_prompt, parse, attempt.retry_state.attempt_number)
        except RetryError as exc:
            last = exc.last_attempt.exception()
            raise RetriesExhausted(run.failed_stage.value, run.attempts, last) from last

        return parsed

    async def _attempt(
        self,
        run: _RecognitionRun,
        build_prompt: Callable[[int], str],
        parse: Callable[[str], Parsed],
        attempt_number: int
    ) -> Parsed:
        run.attempts = attempt_number
        run.transition(RecognitionStage.REQUESTING, condition=f"attempt {attempt_number}")
        prompt = build_prompt(attempt_number)
        started = time.perf_counter()

        try:
            raw = await asyncio.wait_for(self.completion.complete(prompt), timeout=self.settings.timeout_seconds)
        except asyncio.TimeoutError as exc:
            error = NetworkFailure(
                RecognitionStage.REQUESTING.value,
                f"{run.phase} call timed out after {self.settings.timeout_ms}ms"
            )
            self._record_failure(run, error, attempt_number, started)
            raise error from exc
        except LiminalError as exc:
            self._record_failure(run, exc, attempt_number, started)
            raise
        except Exception as exc:
            error = classify_provider_error(exc, RecognitionStage.REQUESTING.value)
            self._record_failure(run, error, attempt_number, started)
            raise error from exc

        run.transition(RecognitionStage.VALIDATING)
        try:
            payload = extract_json_payload(raw)
            parsed = parse(payload.text)
        except SchemaValidationFailure as exc:
            self._record_failure(run, exc, attempt_number, started)
            raise

        duration_ms = (time.perf_counter() - started) * 1000
        turn_logger.log_recognition_attempt(attempt_number, self.model_name, True, duration_ms)
        metrics.record_recognition_call(run.phase, duration_ms)
        return parsed

    def _record_failure(self, run: _RecognitionRun, error: LiminalError, attempt_number: int, started: float):
        run.fail(error)
        duration_ms = (time.perf_counter() - started) * 1000
        turn_logger.log_recognition_attempt(attempt_number, self.model_name, False, duration_ms, error.to_dict())
        metrics.record_recognition_call(run.phase, duration_ms, error.kind.value)

    def _after_exhaustion(
        self,
        run: _RecognitionRun,
        exhausted: RetriesExhausted,
        message: str,
        state: FrameworkState,
        started: float
    ) -> RecognitionResult:
        logger.warning("Recognition retries exhausted", **exhausted.to_dict())

        if self.settings.fallback_enabled:
            run.last_error = exhausted
            run.transition(RecognitionStage.FALLBACK, condition="retries exhausted")
            return self._fallback_result(run, message, state, started)

        run.transition(RecognitionStage.REPORT_ERROR, condition="retries exhausted")
        run.transition(RecognitionStage.DONE)
        raise RecognitionFailure(exhausted.stage, exhausted)

    def _fallback_result(
        self,
        run: _RecognitionRun,
        message: str,
        state: FrameworkState,
        started: float
    ) -> RecognitionResult:
        metrics.record_fallback(run.phase)
        output, advanced = self.fallback.compute(message, state)
        return self._finalize(run, message, advanced, output, SOURCE_FALLBACK, started)

    def merge_output(self, state: FrameworkState, output: RecognitionOutput) -> FrameworkState:
        """Apply a validated report; oscillator variables are left untouched"""

        merged = state.model_copy(deep=True)
        merged.domains = {
            name: DomainActivation(activation=rec.activation, emergence_note=rec.emergence_note)
            for name, rec in output.domain_recognitions.items()
        }

        for name, rec in output.boundary_states.items():
            boundary = merged.boundaries.get(name)
            if boundary is None:
                logger.debug("Ignoring unknown boundary in report", boundary=name)
                continue
            boundary.permeability = rec.permeability
            boundary.status = BoundaryStatus(rec.status)

        return merged

    def _finalize(
        self,
        run: _RecognitionRun,
        message: str,
        state: FrameworkState,
        output: RecognitionOutput,
        source: str,
        started: float
    ) -> RecognitionResult:
        state.patterns = [
            PatternObservation(
                description=pattern.description,
                pattern_type=pattern.pattern_type,
                lifecycle_stage=pattern.lifecycle_stage
            )
            for pattern in output.pattern_recognitions
        ]
        state.qualities = self.evaluator.evaluate_all(state.boundaries, message)
        state.developmental_stage = state.derive_developmental_stage()
        state.source = source
        state.last_updated = utc_now()

        volumetric = VolumetricConfiguration.from_activations(
            {name: d.activation for name, d in state.domains.items()},
            {name: b.permeability for name, b in state.boundaries.items()},
            output.quality_conditions.potentials()
        )
        output.volumetric_config = volumetric

        run.transition(RecognitionStage.DONE)
        metrics.observe_latency("recognition.process", (time.perf_counter() - started) * 1000)

        logger.info(
            "Recognition complete",
            source=source,
            attempts=run.attempts,
            stage=state.developmental_stage.value
        )

        return RecognitionResult(
            state=state,
            output=output,
            source=source,
            attempts=run.attempts,
            stage_trace=list(run.trace),
            last_error=run.last_error.to_dict() if run.last_error else None,
            volumetric=volumetric
        )
