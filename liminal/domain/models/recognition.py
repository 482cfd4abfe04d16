"""
Structured output contracts for the recognition model.

The model returns JSON describing which domains emerged, the state of every
boundary, quality potentials and 1-3 pattern recognitions. A lighter first
pass returns memory guidance: whether warm or cold memory is needed and which
terms to search for.

Parsing is done by pydantic in strict mode; the semantic rules (required keys,
ranges, vocabularies, pattern count) are enforced by each model's
``check_contract`` so every rejection maps onto a single ``ValidationCode``.
"""

import json
from typing import Dict, Any, List, Optional, Type, TypeVar
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from liminal.domain.models.errors import SchemaValidationFailure, ValidationCode
from liminal.domain.models.framework_state import BOUNDARY_NAMES, DOMAIN_NAMES, split_boundary_name

VALID_STATUSES = ("Maintained", "Transitional", "Transcendent")
VALID_TENSION_TYPES = ("productive", "resistant", "neutral")
VALID_PATTERN_TYPES = ("P⁰", "P¹", "P²", "P³", "P⁴", "P⁵", "P0", "P1", "P2", "P3", "P4", "P5")
LIFECYCLE_STAGES = ("potential", "emerging", "established", "refined", "transcendent", "universal")

MAX_PATTERNS = 3
VOLUMETRIC_ACTIVATION_THRESHOLD = 0.6


class DomainRecognition(BaseModel):
    """How strongly a perspective emerged, and why"""
    model_config = ConfigDict(strict=True)

    activation: float
    emergence_note: str


class BoundaryRecognition(BaseModel):
    """Recognized interface state for one boundary"""
    model_config = ConfigDict(strict=True)

    permeability: float
    status: str
    tension_detected: bool
    tension_type: str
    integration_invitation: str
    resonance_note: str


class QualityConditions(BaseModel):
    """Potential for each quality to emerge this turn"""
    model_config = ConfigDict(strict=True)

    clarity_potential: float
    depth_potential: float
    precision_potential: float
    fluidity_potential: float
    resonance_potential: float
    openness_potential: float
    coherence_potential: float
    reasoning: str

    def potentials(self) -> Dict[str, float]:
        return {
            "clarity_potential": self.clarity_potential,
            "depth_potential": self.depth_potential,
            "precision_potential": self.precision_potential,
            "fluidity_potential": self.fluidity_potential,
            "resonance_potential": self.resonance_potential,
            "openness_potential": self.openness_potential,
            "coherence_potential": self.coherence_potential,
        }


class PatternRecognition(BaseModel):
    """Developmental pattern with lifecycle stage"""
    model_config = ConfigDict(strict=True, populate_by_name=True)

    pattern_type: str = Field(alias="type")
    lifecycle_stage: str
    description: str
    first_observed: str
    emergence_context: str
    developmental_trajectory: str = ""
    significance: str


class VolumetricConfiguration(BaseModel):
    """What emerges when three or more domains are co-active"""
    model_config = ConfigDict(strict=True)

    active_domains: List[str]
    dimensionality: int
    emergent_quality: str
    volumetric_resonance: float
    configuration_type: str
    involved_boundaries: List[str]
    phenomenological_signature: str

    @classmethod
    def from_activations(
        cls,
        activations: Dict[str, float],
        permeabilities: Dict[str, float],
        potentials: Dict[str, float]
    ) -> Optional["VolumetricConfiguration"]:
        """Build from domain activations; None with fewer than two active domains"""

        active = sorted(
            ((name, value) for name, value in activations.items() if value >= VOLUMETRIC_ACTIVATION_THRESHOLD),
            key=lambda item: item[1],
            reverse=True
        )
        if len(active) < 2:
            return None

        names = [name for name, _ in active]
        involved = [
            boundary for boundary in permeabilities
            if all(domain in names for domain in split_boundary_name(boundary))
        ]
        if involved:
            resonance = sum(permeabilities[b] for b in involved) / len(involved)
        else:
            resonance = 0.5

        highest = max(potentials.items(), key=lambda item: item[1])[0] if potentials else "integration"
        highest = highest.replace("_potential", "")

        signature = [
            label for key, label in (
                ("clarity_potential", "clear"),
                ("depth_potential", "deep"),
                ("precision_potential", "precise"),
                ("fluidity_potential", "fluid"),
                ("openness_potential", "open"),
                ("coherence_potential", "coherent"),
            )
            if potentials.get(key, 0.0) > 0.7
        ]

        return cls(
            active_domains=names,
            dimensionality=len(names) - 1,
            emergent_quality=f"{len(names)}-domain {highest} synthesis",
            volumetric_resonance=resonance,
            configuration_type="-".join(names),
            involved_boundaries=involved,
            phenomenological_signature=", ".join(signature) if signature else "emerging"
        )


def _require_text(value: str, field: str):
    if not value or not value.strip():
        raise SchemaValidationFailure(ValidationCode.MISSING_FIELD, f"missing required field: {field}", field)


def _require_unit(value: float, field: str):
    # NaN fails both comparisons
    if not (0.0 <= value <= 1.0):
        raise SchemaValidationFailure(
            ValidationCode.VALUE_OUT_OF_RANGE,
            f"invalid value {value} for field '{field}' (must be 0.0-1.0)",
            field
        )


def _require_choice(value: str, choices, field: str):
    if value not in choices:
        raise SchemaValidationFailure(
            ValidationCode.SCHEMA_VIOLATION,
            f"invalid value '{value}' for '{field}', must be one of: {', '.join(choices)}",
            field
        )


class RecognitionOutput(BaseModel):
    """Validated result of one recognition call"""
    model_config = ConfigDict(strict=True)

    recognition_report: str
    domain_recognitions: Dict[str, DomainRecognition]
    boundary_states: Dict[str, BoundaryRecognition]
    quality_conditions: QualityConditions
    pattern_recognitions: List[PatternRecognition] = Field(default_factory=list)
    volumetric_config: Optional[VolumetricConfiguration] = None

    def check_contract(self) -> None:
        """Raise SchemaValidationFailure on the first contract violation"""

        _require_text(self.recognition_report, "recognition_report")

        for domain in DOMAIN_NAMES:
            recognition = self.domain_recognitions.get(domain)
            if recognition is None:
                raise SchemaValidationFailure(
                    ValidationCode.MISSING_FIELD,
                    f"missing required field: domain_recognitions.{domain}",
                    f"domain_recognitions.{domain}"
                )
            _require_unit(recognition.activation, f"domain_recognitions.{domain}.activation")
            _require_text(recognition.emergence_note, f"domain_recognitions.{domain}.emergence_note")

        for boundary in BOUNDARY_NAMES:
            state = self.boundary_states.get(boundary)
            if state is None:
                raise SchemaValidationFailure(
                    ValidationCode.MISSING_FIELD,
                    f"missing required field: boundary_states.{boundary}",
                    f"boundary_states.{boundary}"
                )
            prefix = f"boundary_states.{boundary}"
            _require_unit(state.permeability, f"{prefix}.permeability")
            _require_choice(state.status, VALID_STATUSES, f"{prefix}.status")
            _require_choice(state.tension_type, VALID_TENSION_TYPES, f"{prefix}.tension_type")
            _require_text(state.integration_invitation, f"{prefix}.integration_invitation")
            _require_text(state.resonance_note, f"{prefix}.resonance_note")

        for name, value in self.quality_conditions.potentials().items():
            _require_unit(value, f"quality_conditions.{name}")
        _require_text(self.quality_conditions.reasoning, "quality_conditions.reasoning")

        count = len(self.pattern_recognitions)
        if count == 0:
            raise SchemaValidationFailure(
                ValidationCode.MISSING_PATTERNS, "output has no pattern_recognitions", "pattern_recognitions"
            )
        if count > MAX_PATTERNS:
            raise SchemaValidationFailure(
                ValidationCode.TOO_MANY_PATTERNS,
                f"output has too many patterns ({count}, max {MAX_PATTERNS})",
                "pattern_recognitions"
            )

        for i, pattern in enumerate(self.pattern_recognitions):
            prefix = f"pattern_recognitions[{i}]"
            _require_choice(pattern.pattern_type, VALID_PATTERN_TYPES, f"{prefix}.type")
            _require_choice(pattern.lifecycle_stage, LIFECYCLE_STAGES, f"{prefix}.lifecycle_stage")
            _require_text(pattern.description, f"{prefix}.description")
            _require_text(pattern.first_observed, f"{prefix}.first_observed")
            _require_text(pattern.emergence_context, f"{prefix}.emergence_context")
            _require_text(pattern.significance, f"{prefix}.significance")

    def status_disagreements(self) -> List[Dict[str, Any]]:
        """Boundaries whose status differs from the permeability bucket"""
        from liminal.domain.models.framework_state import BoundaryStatus

        mismatches = []
        for name, state in self.boundary_states.items():
            expected = BoundaryStatus.for_permeability(state.permeability).value
            if state.status != expected:
                mismatches.append({
                    "boundary": name,
                    "permeability": state.permeability,
                    "status": state.status,
                    "expected": expected
                })
        return mismatches


class MemorySelectionGuidance(BaseModel):
    """First-pass answer: which memory tiers this turn needs and what to search for"""
    model_config = ConfigDict(strict=True)

    warm_needed: bool
    cold_needed: bool
    search_terms: List[str]
    temporal_context: str
    reasoning: str

    @property
    def memory_needed(self) -> bool:
        return self.warm_needed or self.cold_needed

    @classmethod
    def no_memory(cls, temporal_context: str, reasoning: str) -> "MemorySelectionGuidance":
        return cls(
            warm_needed=False,
            cold_needed=False,
            search_terms=[],
            temporal_context=temporal_context,
            reasoning=reasoning
        )

    def check_contract(self) -> None:
        if self.memory_needed and not any(term.strip() for term in self.search_terms):
            raise SchemaValidationFailure(
                ValidationCode.SCHEMA_VIOLATION,
                "search_terms cannot be empty when memory is needed",
                "search_terms"
            )
        _require_text(self.temporal_context, "temporal_context")
        _require_text(self.reasoning, "reasoning")

    def ranking_terms(self) -> List[str]:
        return [term.strip() for term in self.search_terms if term.strip()]


ContractModel = TypeVar("ContractModel", RecognitionOutput, MemorySelectionGuidance)


def _validation_failure_from(exc: ValidationError) -> SchemaValidationFailure:
    """Map the first pydantic error onto a contract code"""

    error = exc.errors()[0]
    field = ".".join(str(part) for part in error.get("loc", ()))
    if error.get("type") == "missing":
        return SchemaValidationFailure(ValidationCode.MISSING_FIELD, f"missing required field: {field}", field)
    return SchemaValidationFailure(
        ValidationCode.SCHEMA_VIOLATION,
        f"output violated schema at '{field}': {error.get('msg')}",
        field
    )


def _validate_json(model: Type[ContractModel], payload: str) -> ContractModel:
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise SchemaValidationFailure(ValidationCode.JSON_PARSE_ERROR, f"failed to parse JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise SchemaValidationFailure(ValidationCode.SCHEMA_VIOLATION, "top-level JSON value must be an object")

    # Validated from JSON: nested objects are accepted, scalars are never coerced
    try:
        return model.model_validate_json(payload)
    except ValidationError as exc:
        raise _validation_failure_from(exc) from exc


def parse_recognition_output(payload: str) -> RecognitionOutput:
    """Parse and validate a JSON payload"""

    output = _validate_json(RecognitionOutput, payload)
    output.check_contract()
    return output


def parse_memory_guidance(payload: str) -> MemorySelectionGuidance:
    """Parse and validate a first-pass JSON payload"""

    guidance = _validate_json(MemorySelectionGuidance, payload)
    guidance.check_contract()
    return guidance
