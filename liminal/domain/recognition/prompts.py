"""
Prompt builders for the recognition model.

Exact wording is not part of the contract; what matters is that every prompt
asks for JSON only and names the required fields. Retries use progressively
shorter system prompts.
"""

from typing import Optional

from liminal.domain.models.framework_state import FrameworkState, BOUNDARY_NAMES, DOMAIN_NAMES


RECOGNITION_SYSTEM_PROMPT = """You recognize which perspectives emerge in a user message.

Domains: CD (computational), SD (scientific), CuD (cultural), ED (experiential).
Boundaries: CD-SD, CD-CuD, CD-ED, SD-CuD, SD-ED, CuD-ED.

Respond with ONLY a JSON object containing:
- recognition_report: string describing what emerged
- domain_recognitions: all 4 domains, each {activation, emergence_note}
- boundary_states: all 6 boundaries, each {permeability, status, tension_detected,
  tension_type, integration_invitation, resonance_note}
- quality_conditions: {clarity_potential, depth_potential, precision_potential,
  fluidity_potential, resonance_potential, openness_potential, coherence_potential, reasoning}
- pattern_recognitions: 1-3 items, each {type, lifecycle_stage, description,
  first_observed, emergence_context, developmental_trajectory, significance}

All numeric values are between 0.0 and 1.0.
status is one of "Maintained", "Transitional", "Transcendent".
tension_type is one of "productive", "resistant", "neutral".
type is one of "P⁰", "P¹", "P²", "P³", "P⁴", "P⁵".
lifecycle_stage is one of potential, emerging, established, refined, transcendent, universal."""


SIMPLIFIED_SYSTEM_PROMPT = """Respond with ONLY valid JSON. No markdown, no code blocks.

Required fields: recognition_report, domain_recognitions (CD, SD, CuD, ED),
boundary_states (6 boundaries), quality_conditions (7 potentials + reasoning),
pattern_recognitions (1-3 items). All numeric values 0.0-1.0."""


MINIMAL_SYSTEM_PROMPT = """Output ONLY JSON with keys recognition_report, domain_recognitions,
boundary_states, quality_conditions, pattern_recognitions."""


def system_prompt_for_attempt(attempt: int) -> str:
    """Full prompt first, then shorter ones on retries"""
    if attempt <= 1:
        return RECOGNITION_SYSTEM_PROMPT
    if attempt == 2:
        return SIMPLIFIED_SYSTEM_PROMPT
    return MINIMAL_SYSTEM_PROMPT


def build_recognition_prompt(user_message: str, previous: Optional[FrameworkState] = None, attempt: int = 1) -> str:
    """System prompt, prior state and the user message in one text prompt"""

    sections = [system_prompt_for_attempt(attempt)]

    if previous is not None:
        lines = ["Previous domain emergence:"]
        lines.extend(f"- {name}: {previous.activation(name):.2f}" for name in DOMAIN_NAMES)
        lines.append("Previous boundary states:")
        for name in BOUNDARY_NAMES:
            boundary = previous.boundaries.get(name)
            permeability = boundary.permeability if boundary else 0.5
            lines.append(f"- {name}: {permeability:.2f}")
        sections.append("\n".join(lines))

    sections.append(f"User message:\n{user_message}")
    sections.append("Recognition report (JSON only):")
    return "\n\n".join(sections)


MEMORY_GUIDANCE_SYSTEM_PROMPT = """Before the full recognition pass, decide which memories to retrieve.
Be fast and decisive.

Respond with ONLY a JSON object containing:
- warm_needed: true when the message refers back within this conversation
  ("earlier", "before", "we discussed", "last time", "continuing")
- cold_needed: true when it refers across sessions or to identity and values
  ("always", "remember when", "in the past", "you mentioned once")
- search_terms: 2-5 key concepts or phrases to search memory for
- temporal_context: short framing such as "continuing recent discussion" or "new topic"
- reasoning: one or two sentences on the memory needs

search_terms must not be empty when warm_needed or cold_needed is true."""


def build_memory_guidance_prompt(user_message: str, temporal_context: Optional[str] = None) -> str:
    """First-pass prompt; the same text is sent on every attempt"""

    sections = [MEMORY_GUIDANCE_SYSTEM_PROMPT]
    if temporal_context:
        sections.append(f"Temporal context:\n{temporal_context}")
    sections.append(f"User message:\n{user_message}")
    sections.append("Memory guidance (JSON only):")
    return "\n\n".join(sections)


def build_response_prompt(user_message: str, context_text: str, state: FrameworkState) -> str:
    """Prompt for the response model, framed by the recognized state"""

    summary = state.get_state_summary()
    domains = ", ".join(f"{name}={value}" for name, value in summary["domains"].items())
    boundaries = ", ".join(
        f"{name}={info['permeability']} ({info['status']})" for name, info in summary["boundaries"].items()
    )

    sections = [
        "Respond to the user, letting the active perspectives shape the framing.",
        f"Domain activations: {domains}",
        f"Boundaries: {boundaries}",
        f"Developmental stage: {summary['stage']}",
    ]
    if context_text:
        sections.append(context_text)
    sections.append(f"User: {user_message}\nAssistant:")
    return "\n\n".join(sections)
