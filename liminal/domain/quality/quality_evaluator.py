from typing import Dict, List, Optional, Sequence
import math
import re
import statistics

from pydantic import BaseModel

from liminal.domain.models.framework_state import (
    BoundaryState,
    BoundaryStatus,
    PhenomenologicalQuality,
    QUALITY_NAMES,
)
from liminal.domain.oscillation.boundary_oscillator import clamp_unit

WORD_PATTERN = re.compile(r"[\w']+")
SENTENCE_PATTERN = re.compile(r"[.!?]+")

UNCERTAINTY_WORDS = frozenset({
    "maybe", "perhaps", "might", "possibly", "wonder", "unsure", "uncertain",
    "could", "whether", "why", "how", "what"
})

STATUS_WEIGHTS = {
    BoundaryStatus.MAINTAINED: 0.3,
    BoundaryStatus.TRANSITIONAL: 0.6,
    BoundaryStatus.TRANSCENDENT: 0.9,
}

# Words and characters at which message depth saturates
DEPTH_SATURATION_WORDS = 100
DEPTH_SATURATION_CHARS = 500
# Average word length at which precision saturates
PRECISION_SATURATION_LENGTH = 8.0
# Amplitude at which fluidity saturates
FLUIDITY_SATURATION_AMPLITUDE = 0.5


class MessageFeatures(BaseModel):
    """Surface features of a message used by the quality scores"""
    char_length: int = 0
    word_count: int = 0
    question_density: float = 0.0
    repetition: float = 0.0
    avg_word_length: float = 0.0
    regularity: float = 1.0

    @classmethod
    def from_text(cls, text: str) -> "MessageFeatures":
        words = WORD_PATTERN.findall(text.lower())
        word_count = len(words)
        if word_count == 0:
            return cls(char_length=len(text))

        inquiries = text.count("?") + sum(1 for word in words if word in UNCERTAINTY_WORDS)
        repetition = 1.0 - len(set(words)) / word_count
        avg_word_length = sum(len(word) for word in words) / word_count

        sentence_lengths = [
            len(WORD_PATTERN.findall(sentence))
            for sentence in SENTENCE_PATTERN.split(text)
            if WORD_PATTERN.search(sentence)
        ]
        if len(sentence_lengths) < 2:
            regularity = 1.0
        else:
            mean = statistics.mean(sentence_lengths)
            regularity = 1.0 - min(1.0, statistics.pstdev(sentence_lengths) / mean)

        return cls(
            char_length=len(text),
            word_count=word_count,
            question_density=inquiries / word_count,
            repetition=repetition,
            avg_word_length=avg_word_length,
            regularity=regularity
        )


def mean_phase(boundaries: Sequence[BoundaryState]) -> float:
    """Circular mean of boundary phases"""
    if not boundaries:
        return 0.0
    sin_sum = sum(math.sin(b.phase) for b in boundaries)
    cos_sum = sum(math.cos(b.phase) for b in boundaries)
    return math.atan2(sin_sum, cos_sum)


class QualityEvaluator:
    """Deterministic per-boundary quality scores

    Each score blends one boundary factor with one message factor using fixed
    weights, then clamps to [0, 1]. The same inputs always give the same
    scores.
    """

    def evaluate(
        self,
        boundary: BoundaryState,
        features: MessageFeatures,
        reference_phase: float = 0.0
    ) -> PhenomenologicalQuality:
        """Score one boundary against message features"""

        p = boundary.permeability
        status_weight = STATUS_WEIGHTS.get(boundary.status, 0.3)
        phase_alignment = 0.5 + 0.5 * math.cos(boundary.phase - reference_phase)
        frequency_factor = 1.0 / (1.0 + abs(boundary.frequency - 1.0))

        return PhenomenologicalQuality(
            boundary_name=boundary.name,
            clarity=clamp_unit(0.6 * p + 0.4 * features.regularity),
            depth=clamp_unit(
                0.5 * status_weight
                + 0.3 * min(1.0, features.word_count / DEPTH_SATURATION_WORDS)
                + 0.2 * min(1.0, features.char_length / DEPTH_SATURATION_CHARS)
            ),
            openness=clamp_unit(0.6 * p + 0.4 * min(1.0, features.question_density * 5.0)),
            precision=clamp_unit(
                0.6 * (1.0 - p) + 0.4 * min(1.0, features.avg_word_length / PRECISION_SATURATION_LENGTH)
            ),
            fluidity=clamp_unit(
                0.5 * min(1.0, boundary.amplitude / FLUIDITY_SATURATION_AMPLITUDE) + 0.5 * (1.0 - features.repetition)
            ),
            resonance=clamp_unit(0.6 * phase_alignment + 0.4 * features.repetition),
            coherence=clamp_unit(0.5 * frequency_factor + 0.5 * features.regularity)
        )

    def evaluate_all(
        self,
        boundaries: Dict[str, BoundaryState],
        message: str,
        features: Optional[MessageFeatures] = None
    ) -> Dict[str, PhenomenologicalQuality]:
        """Score every boundary; phase alignment is measured against the circular mean"""

        features = features or MessageFeatures.from_text(message)
        reference = mean_phase(list(boundaries.values()))
        return {
            name: self.evaluate(boundary, features, reference)
            for name, boundary in boundaries.items()
        }

    @staticmethod
    def aggregate(qualities: List[PhenomenologicalQuality]) -> Dict[str, float]:
        """Average qualities into the seven recognition potentials"""

        if not qualities:
            return {f"{name}_potential": 0.5 for name in QUALITY_NAMES}

        return {
            f"{name}_potential": clamp_unit(sum(getattr(q, name) for q in qualities) / len(qualities))
            for name in QUALITY_NAMES
        }

    @staticmethod
    def mean_quality(quality: PhenomenologicalQuality) -> float:
        return sum(getattr(quality, name) for name in QUALITY_NAMES) / len(QUALITY_NAMES)
