"""
Oscillatory dynamics for domain boundaries.

Each boundary carries a natural frequency (Hz), an amplitude and a phase angle.
Permeability follows P(t) = base + A * sin(phase), clamped to [0, 1], where the
phase advances by 2*pi*f*dt on every update.
"""

import math
from typing import List, Tuple, Sequence

from pydantic import BaseModel, Field

from liminal.domain.models.errors import InvalidInput

DEFAULT_FREQUENCY = 1.0
DEFAULT_AMPLITUDE = 0.1
DEFAULT_PHASE = 0.0

# Relative frequency tolerance for resonance
FREQUENCY_TOLERANCE = 0.2
# cos(0.2 * pi): phases within ~36 degrees count as aligned
PHASE_ALIGNMENT_THRESHOLD = math.cos(0.2 * math.pi)

FREQUENCY_WEIGHT = 0.6
PHASE_WEIGHT = 0.4


def clamp_unit(value: float) -> float:
    """Clamp a value into [0, 1]"""
    return max(0.0, min(1.0, value))


def wrap_phase_difference(phase_a: float, phase_b: float) -> float:
    """Phase difference reduced to [-pi, pi]"""
    diff = math.fmod(phase_a - phase_b, 2.0 * math.pi)
    if diff > math.pi:
        diff -= 2.0 * math.pi
    elif diff < -math.pi:
        diff += 2.0 * math.pi
    return diff


class BoundaryOscillator(BaseModel):
    """Continuous oscillation state for a single boundary"""
    frequency: float = Field(default=DEFAULT_FREQUENCY, ge=0.0, description="Natural frequency (Hz)")
    amplitude: float = Field(default=DEFAULT_AMPLITUDE, ge=0.0, description="Oscillation amplitude")
    phase: float = Field(default=DEFAULT_PHASE, description="Current phase angle (radians)")

    def update(self, delta_seconds: float, base_permeability: float) -> float:
        """Advance the phase and return the oscillating permeability"""

        if delta_seconds < 0:
            raise InvalidInput("oscillation", f"negative time step {delta_seconds}")

        # Not wrapped: phase grows monotonically while frequency > 0
        self.phase = self.phase + 2.0 * math.pi * self.frequency * delta_seconds

        oscillation = self.amplitude * math.sin(self.phase)
        return clamp_unit(base_permeability + oscillation)

    def frequency_closeness(self, other: "BoundaryOscillator") -> float:
        """1.0 for identical frequencies, falling to 0.0 as they diverge"""

        max_freq = max(self.frequency, other.frequency)
        if max_freq <= 0.0:
            return 1.0
        return 1.0 - min(abs(self.frequency - other.frequency) / max_freq, 1.0)

    def phase_alignment(self, other: "BoundaryOscillator") -> float:
        """Cosine of the wrapped phase difference"""
        return math.cos(wrap_phase_difference(self.phase, other.phase))

    def resonates_with(self, other: "BoundaryOscillator") -> bool:
        """Similar frequency and aligned phase"""

        max_freq = max(self.frequency, other.frequency)
        freq_resonates = abs(self.frequency - other.frequency) <= FREQUENCY_TOLERANCE * max_freq
        phase_resonates = self.phase_alignment(other) > PHASE_ALIGNMENT_THRESHOLD

        return freq_resonates and phase_resonates

    def resonance_strength(self, other: "BoundaryOscillator") -> float:
        """Continuous resonance score in [0, 1]"""

        phase_score = (1.0 + self.phase_alignment(other)) / 2.0
        strength = FREQUENCY_WEIGHT * self.frequency_closeness(other) + PHASE_WEIGHT * phase_score
        return clamp_unit(strength)


def resonant_pairs(oscillators: Sequence[Tuple[str, BoundaryOscillator]]) -> List[Tuple[str, str, float]]:
    """All resonating (name, name, strength) pairs, strongest first"""

    pairs = []
    for i, (name_a, osc_a) in enumerate(oscillators):
        for name_b, osc_b in oscillators[i + 1:]:
            if osc_a.resonates_with(osc_b):
                pairs.append((name_a, name_b, osc_a.resonance_strength(osc_b)))

    pairs.sort(key=lambda pair: pair[2], reverse=True)
    return pairs
