"""Tests for the local recognition fallback."""

import math
from datetime import timedelta

import pytest

from liminal.domain.models.framework_state import (
    BoundaryStatus,
    DevelopmentalStage,
    FrameworkState,
    DOMAIN_NAMES,
    BOUNDARY_NAMES,
)
from liminal.domain.recognition.fallback import FallbackComputation, classify_tension, lexicon_hits


class TestLexicon:
    """Tests for lexical domain cues."""

    def test_hits_per_domain(self):
        hits = lexicon_hits("How does the algorithm relate to quantum physics?")

        assert hits["CD"] == 1
        assert hits["SD"] == 2
        assert hits["CuD"] == 0

    @pytest.mark.parametrize("a1,a2,expected", [
        (0.9, 0.55, (True, "productive")),
        (0.9, 0.2, (True, "resistant")),
        (0.5, 0.6, (False, "neutral")),
        (0.2, 0.5, (False, "neutral")),
    ])
    def test_tension_classification(self, a1, a2, expected):
        assert classify_tension(a1, a2) == expected


class TestFallbackComputation:
    """Tests for the full fallback report."""

    def test_report_satisfies_contract(self):
        fallback = FallbackComputation()
        state = FrameworkState()

        output, advanced = fallback.compute("Tell me about culture and history.", state)

        output.check_contract()
        assert set(output.domain_recognitions) == set(DOMAIN_NAMES)
        assert set(output.boundary_states) == set(BOUNDARY_NAMES)
        assert len(output.pattern_recognitions) == 1
        assert set(advanced.qualities) == set(BOUNDARY_NAMES)

    def test_base_permeability_is_geometric_mean(self):
        """Without elapsed time the oscillation adds nothing to sqrt(a1 * a2)."""
        fallback = FallbackComputation()
        state = FrameworkState()

        output, advanced = fallback.compute("algorithm code data", state, now=state.last_updated)

        cd = advanced.activation("CD")
        sd = advanced.activation("SD")
        assert advanced.boundaries["CD-SD"].permeability == pytest.approx(math.sqrt(cd * sd))
        assert output.boundary_states["CD-SD"].permeability == pytest.approx(math.sqrt(cd * sd))

    def test_activation_blends_lexicon_and_prior(self):
        fallback = FallbackComputation()
        state = FrameworkState()

        activations = fallback.domain_activations("nothing relevant here", state)

        assert activations["CuD"] == pytest.approx(0.2)

    def test_status_follows_permeability(self):
        fallback = FallbackComputation()
        state = FrameworkState()

        _, advanced = fallback.compute("plain words", state, now=state.last_updated)

        for boundary in advanced.boundaries.values():
            assert boundary.status == BoundaryStatus.for_permeability(boundary.permeability)

    def test_elapsed_time_capped(self):
        fallback = FallbackComputation(max_elapsed_seconds=60.0)
        state = FrameworkState()

        elapsed = fallback.elapsed_seconds(state, state.last_updated + timedelta(hours=1))

        assert elapsed == 60.0

    def test_oscillator_advances_with_time(self):
        fallback = FallbackComputation()
        state = FrameworkState()

        _, advanced = fallback.compute("words", state, now=state.last_updated + timedelta(seconds=0.25))

        assert advanced.boundaries["CD-SD"].phase == pytest.approx(math.pi / 2)
        assert state.boundaries["CD-SD"].phase == 0.0

    def test_pattern_lifecycle_follows_stage(self):
        fallback = FallbackComputation()
        state = FrameworkState()

        output, advanced = fallback.compute("plain words", state, now=state.last_updated)

        assert advanced.developmental_stage == DevelopmentalStage.RECOGNITION
        assert output.pattern_recognitions[0].lifecycle_stage == "emerging"
        assert output.pattern_recognitions[0].pattern_type == "P⁰"
