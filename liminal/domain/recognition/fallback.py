"""
Deterministic local approximation of the recognition model.

Used when the recognition flag is off or the model could not produce a valid
report. Output has the same shape as a model report and passes the same
contract check.
"""

from typing import Dict, List, Optional, Tuple
from datetime import datetime
import math

import structlog

from liminal.domain.models.framework_state import (
    FrameworkState,
    DevelopmentalStage,
    DomainActivation,
    BoundaryStatus,
    DOMAIN_NAMES,
    utc_now,
)
from liminal.domain.models.recognition import (
    RecognitionOutput,
    DomainRecognition,
    BoundaryRecognition,
    QualityConditions,
    PatternRecognition,
)
from liminal.domain.oscillation.boundary_oscillator import clamp_unit
from liminal.domain.quality.quality_evaluator import QualityEvaluator, MessageFeatures, WORD_PATTERN

logger = structlog.get_logger(__name__)

DOMAIN_LEXICONS: Dict[str, frozenset] = {
    "CD": frozenset({
        "algorithm", "code", "compute", "computer", "computation", "data", "function", "logic",
        "program", "software", "system", "model", "optimize", "structure", "recursion", "network"
    }),
    "SD": frozenset({
        "science", "scientific", "experiment", "evidence", "theory", "hypothesis", "physics",
        "quantum", "biology", "chemistry", "measure", "observe", "research", "energy", "particle"
    }),
    "CuD": frozenset({
        "culture", "cultural", "society", "history", "tradition", "language", "art", "story",
        "meaning", "community", "myth", "religion", "values", "people", "social"
    }),
    "ED": frozenset({
        "feel", "feeling", "experience", "sense", "emotion", "body", "aware", "awareness",
        "felt", "intuition", "moment", "presence", "personal", "me", "i"
    }),
}

# Lexicon hits at which the lexical signal saturates
LEXICON_SATURATION_HITS = 3
LEXICON_WEIGHT = 0.6
PRIOR_WEIGHT = 0.4

TENSION_THRESHOLD = 0.3
PRODUCTIVE_ACTIVATION = 0.5

# Cap on the oscillator step taken between turns
MAX_ELAPSED_SECONDS = 60.0

PATTERN_TYPES = ["P⁰", "P¹", "P²", "P³", "P⁴"]

STAGE_LIFECYCLE = {
    DevelopmentalStage.RECOGNITION: "emerging",
    DevelopmentalStage.INTEGRATION: "established",
    DevelopmentalStage.GENERATION: "refined",
    DevelopmentalStage.RECURSION: "transcendent",
    DevelopmentalStage.TRANSCENDENCE: "universal",
}


def lexicon_hits(message: str) -> Dict[str, int]:
    words = set(WORD_PATTERN.findall(message.lower()))
    return {domain: len(words & lexicon) for domain, lexicon in DOMAIN_LEXICONS.items()}


def classify_tension(a1: float, a2: float) -> Tuple[bool, str]:
    """Tension when activations diverge; productive if both sides are engaged"""
    if abs(a1 - a2) <= TENSION_THRESHOLD:
        return False, "neutral"
    if a1 >= PRODUCTIVE_ACTIVATION and a2 >= PRODUCTIVE_ACTIVATION:
        return True, "productive"
    return True, "resistant"


class FallbackComputation:
    """Computes a recognition report from lexicons, oscillators and quality scores"""

    def __init__(self, evaluator: Optional[QualityEvaluator] = None, max_elapsed_seconds: float = MAX_ELAPSED_SECONDS):
        self.evaluator = evaluator or QualityEvaluator()
        self.max_elapsed_seconds = max_elapsed_seconds

    def domain_activations(self, message: str, prior: FrameworkState) -> Dict[str, float]:
        """Lexical signal blended with the prior activation"""

        hits = lexicon_hits(message)
        return {
            domain: clamp_unit(
                LEXICON_WEIGHT * min(1.0, hits[domain] / LEXICON_SATURATION_HITS)
                + PRIOR_WEIGHT * prior.activation(domain)
            )
            for domain in DOMAIN_NAMES
        }

    def elapsed_seconds(self, state: FrameworkState, now: datetime) -> float:
        elapsed = (now - state.last_updated).total_seconds()
        return max(0.0, min(elapsed, self.max_elapsed_seconds))

    def compute(
        self,
        message: str,
        state: FrameworkState,
        now: Optional[datetime] = None
    ) -> Tuple[RecognitionOutput, FrameworkState]:
        """Return a contract-valid report and the advanced working state"""

        now = now or utc_now()
        working = state.model_copy(deep=True)

        activations = self.domain_activations(message, state)
        hits = lexicon_hits(message)
        working.domains = {
            domain: DomainActivation(
                activation=value,
                emergence_note=f"{hits[domain]} lexical cue(s) blended with prior activation"
            )
            for domain, value in activations.items()
        }

        elapsed = self.elapsed_seconds(state, now)
        boundary_reports = {}
        for name, boundary in working.boundaries.items():
            first, second = boundary.domains
            a1 = activations.get(first, 0.0)
            a2 = activations.get(second, 0.0)
            boundary.advance(elapsed, math.sqrt(a1 * a2))
            boundary.status = BoundaryStatus.for_permeability(boundary.permeability)

            tension_detected, tension_type = classify_tension(a1, a2)
            boundary_reports[name] = BoundaryRecognition(
                permeability=boundary.permeability,
                status=boundary.status.value,
                tension_detected=tension_detected,
                tension_type=tension_type,
                integration_invitation=f"{first} and {second} meet at permeability {boundary.permeability:.2f}",
                resonance_note=f"phase {boundary.phase:.2f} rad at {boundary.frequency:.2f} Hz"
            )

        features = MessageFeatures.from_text(message)
        working.qualities = self.evaluator.evaluate_all(working.boundaries, message, features)
        working.developmental_stage = working.derive_developmental_stage()
        potentials = self.evaluator.aggregate(list(working.qualities.values()))

        pattern = self._pattern_for(working.developmental_stage, activations, now)

        output = RecognitionOutput(
            recognition_report=(
                f"Local recognition over {features.word_count} words; "
                f"stage {working.developmental_stage.value}"
            ),
            domain_recognitions={
                domain: DomainRecognition(activation=d.activation, emergence_note=d.emergence_note)
                for domain, d in working.domains.items()
            },
            boundary_states=boundary_reports,
            quality_conditions=QualityConditions(
                reasoning="Averaged from per-boundary quality scores",
                **potentials
            ),
            pattern_recognitions=[pattern]
        )
        output.check_contract()

        logger.debug(
            "Fallback computed",
            elapsed_seconds=elapsed,
            stage=working.developmental_stage.value,
            activations=activations
        )

        return output, working

    def _pattern_for(
        self,
        stage: DevelopmentalStage,
        activations: Dict[str, float],
        now: datetime
    ) -> PatternRecognition:
        stages: List[DevelopmentalStage] = list(DevelopmentalStage)
        index = stages.index(stage)
        dominant = max(activations.items(), key=lambda item: item[1])[0]

        return PatternRecognition(
            pattern_type=PATTERN_TYPES[index],
            lifecycle_stage=STAGE_LIFECYCLE[stage],
            description=f"{dominant}-led framing at the {stage.value} stage",
            first_observed=now.isoformat(),
            emergence_context="computed locally from message lexicon and boundary oscillation",
            developmental_trajectory="",
            significance=f"dominant domain {dominant} at activation {activations[dominant]:.2f}"
        )
