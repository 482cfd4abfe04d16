from typing import Dict, Any, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime, timezone
from enum import Enum

from liminal.domain.oscillation.boundary_oscillator import BoundaryOscillator, clamp_unit


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Domain(str, Enum):
    """The four perspectives whose activation frames a response"""
    COMPUTATIONAL = "CD"
    SCIENTIFIC = "SD"
    CULTURAL = "CuD"
    EXPERIENTIAL = "ED"


DOMAIN_NAMES: List[str] = [domain.value for domain in Domain]

BOUNDARY_NAMES: List[str] = ["CD-SD", "CD-CuD", "CD-ED", "SD-CuD", "SD-ED", "CuD-ED"]


def split_boundary_name(name: str) -> Tuple[str, str]:
    """'CD-SD' -> ('CD', 'SD')"""
    first, _, second = name.partition("-")
    return first, second


class BoundaryStatus(str, Enum):
    """Interface state category"""
    MAINTAINED = "Maintained"
    TRANSITIONAL = "Transitional"
    TRANSCENDENT = "Transcendent"

    @classmethod
    def for_permeability(cls, permeability: float) -> "BoundaryStatus":
        """Bucket a permeability value"""
        if permeability > 0.8:
            return cls.TRANSCENDENT
        if permeability > 0.6:
            return cls.TRANSITIONAL
        return cls.MAINTAINED


def status_for(permeability: float) -> BoundaryStatus:
    return BoundaryStatus.for_permeability(permeability)


class DevelopmentalStage(str, Enum):
    """Integration maturity derived from boundary states and qualities"""
    RECOGNITION = "recognition"
    INTEGRATION = "integration"
    GENERATION = "generation"
    RECURSION = "recursion"
    TRANSCENDENCE = "transcendence"


class BoundaryState(BoundaryOscillator):
    """Named interface between two domains"""
    model_config = ConfigDict(validate_assignment=True)

    name: str
    permeability: float = Field(default=0.5, description="Clamped to [0, 1]")
    status: BoundaryStatus = Field(default=BoundaryStatus.MAINTAINED)

    @field_validator("permeability")
    @classmethod
    def _clamp_permeability(cls, value: float) -> float:
        return clamp_unit(value)

    def advance(self, delta_seconds: float, base_permeability: float) -> float:
        """Advance oscillation and store the resulting permeability"""
        self.permeability = self.update(delta_seconds, base_permeability)
        return self.permeability

    @property
    def domains(self) -> Tuple[str, str]:
        return split_boundary_name(self.name)


class DomainActivation(BaseModel):
    """Activation level of one domain"""
    activation: float = Field(ge=0.0, le=1.0)
    emergence_note: Optional[str] = None


class PhenomenologicalQuality(BaseModel):
    """Seven quality scores attached to a boundary"""
    boundary_name: str
    clarity: float = Field(ge=0.0, le=1.0)
    depth: float = Field(ge=0.0, le=1.0)
    openness: float = Field(ge=0.0, le=1.0)
    precision: float = Field(ge=0.0, le=1.0)
    fluidity: float = Field(ge=0.0, le=1.0)
    resonance: float = Field(ge=0.0, le=1.0)
    coherence: float = Field(ge=0.0, le=1.0)


QUALITY_NAMES: List[str] = ["clarity", "depth", "openness", "precision", "fluidity", "resonance", "coherence"]


class PatternObservation(BaseModel):
    """Pattern noticed during a turn"""
    description: str
    pattern_type: Optional[str] = None
    lifecycle_stage: Optional[str] = None


class IdentityAnchor(BaseModel):
    """Marker that a turn's state is foundational to the user's narrative"""
    anchor_type: str
    description: str
    confidence: float = Field(ge=0.0, le=1.0)
    domains: List[str] = Field(default_factory=list)


def default_domains() -> Dict[str, DomainActivation]:
    return {name: DomainActivation(activation=0.5) for name in DOMAIN_NAMES}


def default_boundaries() -> Dict[str, BoundaryState]:
    return {name: BoundaryState(name=name) for name in BOUNDARY_NAMES}


class FrameworkState(BaseModel):
    """Working state carried between turns of a session"""
    domains: Dict[str, DomainActivation] = Field(default_factory=default_domains)
    boundaries: Dict[str, BoundaryState] = Field(default_factory=default_boundaries)
    patterns: List[PatternObservation] = Field(default_factory=list)
    qualities: Dict[str, PhenomenologicalQuality] = Field(default_factory=dict)
    developmental_stage: DevelopmentalStage = Field(default=DevelopmentalStage.RECOGNITION)
    source: Optional[str] = Field(None, description="recognition or fallback")
    last_updated: datetime = Field(default_factory=utc_now)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def activation(self, domain: str) -> float:
        """Activation of a domain, 0.0 when unknown"""
        state = self.domains.get(domain)
        return state.activation if state else 0.0

    def identity_anchors(self) -> List[IdentityAnchor]:
        """Anchors for transcendent, highly permeable boundaries"""

        anchors = []
        for boundary in self.boundaries.values():
            if boundary.status == BoundaryStatus.TRANSCENDENT and boundary.permeability > 0.8:
                anchors.append(IdentityAnchor(
                    anchor_type="boundary",
                    description=f"Transcendent integration at {boundary.name} boundary",
                    confidence=boundary.permeability,
                    domains=list(boundary.domains)
                ))
        return anchors

    def derive_developmental_stage(self) -> DevelopmentalStage:
        """Stage from the count of transcendent boundaries and mean quality"""

        transcendent_count = sum(
            1 for boundary in self.boundaries.values() if boundary.status == BoundaryStatus.TRANSCENDENT
        )
        if self.qualities:
            avg_quality = sum(
                (q.clarity + q.depth + q.resonance + q.coherence) / 4.0 for q in self.qualities.values()
            ) / len(self.qualities)
        else:
            avg_quality = 0.5

        if transcendent_count >= 4 and avg_quality > 0.8:
            return DevelopmentalStage.TRANSCENDENCE
        if transcendent_count >= 3 and avg_quality > 0.7:
            return DevelopmentalStage.RECURSION
        if transcendent_count >= 2 and avg_quality > 0.6:
            return DevelopmentalStage.GENERATION
        if transcendent_count >= 1 and avg_quality > 0.5:
            return DevelopmentalStage.INTEGRATION
        return DevelopmentalStage.RECOGNITION

    def get_state_summary(self) -> Dict[str, Any]:
        """Compact summary for logs"""
        return {
            "domains": {name: round(d.activation, 3) for name, d in self.domains.items()},
            "boundaries": {
                name: {"permeability": round(b.permeability, 3), "status": b.status.value}
                for name, b in self.boundaries.items()
            },
            "patterns": len(self.patterns),
            "stage": self.developmental_stage.value,
            "source": self.source,
            "last_updated": self.last_updated.isoformat()
        }
