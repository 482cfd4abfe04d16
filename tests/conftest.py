"""Pytest configuration and fixtures."""

import json
from typing import Any, Dict, List, Union

import pytest
import pytest_asyncio

from liminal.domain.context.memory.memory_tier_manager import MemoryTierManager
from liminal.infrastructure.persistence.conversation_store import ConversationStore

DOMAINS = ["CD", "SD", "CuD", "ED"]
BOUNDARIES = ["CD-SD", "CD-CuD", "CD-ED", "SD-CuD", "SD-ED", "CuD-ED"]


def build_valid_payload() -> Dict[str, Any]:
    return {
        "recognition_report": "Computational and scientific perspectives emerge together",
        "domain_recognitions": {
            "CD": {"activation": 0.85, "emergence_note": "Structural framing appears immediately"},
            "SD": {"activation": 0.75, "emergence_note": "Empirical grounding follows"},
            "CuD": {"activation": 0.4, "emergence_note": "Cultural context stays in the background"},
            "ED": {"activation": 0.55, "emergence_note": "Personal curiosity is present"},
        },
        "boundary_states": {
            name: {
                "permeability": 0.7,
                "status": "Transitional",
                "tension_detected": False,
                "tension_type": "neutral",
                "integration_invitation": f"Connect across {name}",
                "resonance_note": "Steady exchange",
            }
            for name in BOUNDARIES
        },
        "quality_conditions": {
            "clarity_potential": 0.8,
            "depth_potential": 0.7,
            "precision_potential": 0.75,
            "fluidity_potential": 0.6,
            "resonance_potential": 0.65,
            "openness_potential": 0.7,
            "coherence_potential": 0.8,
            "reasoning": "Clear technical question with room for depth",
        },
        "pattern_recognitions": [
            {
                "type": "P¹",
                "lifecycle_stage": "emerging",
                "description": "Bridging computation and physical theory",
                "first_observed": "current message",
                "emergence_context": "User asks how algorithms relate to physics",
                "developmental_trajectory": "",
                "significance": "Early cross-domain integration",
            }
        ],
    }


@pytest.fixture
def valid_payload() -> Dict[str, Any]:
    """A fresh recognition payload that satisfies the contract."""
    return build_valid_payload()


@pytest.fixture
def valid_payload_json(valid_payload) -> str:
    return json.dumps(valid_payload)


class ScriptedCompletion:
    """TextCompletion fake returning scripted replies or raising scripted errors."""

    def __init__(self, replies: List[Union[str, Exception]], model_name: str = "scripted"):
        self.replies = list(replies)
        self.model_name = model_name
        self.prompts: List[str] = []

    @property
    def call_count(self) -> int:
        return len(self.prompts)

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


class RecordingSleep:
    """Replaces asyncio.sleep so backoff waits are recorded, not slept."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float):
        self.calls.append(seconds)


@pytest.fixture
def scripted_completion():
    return ScriptedCompletion


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest_asyncio.fixture
async def store():
    """In-memory SQLite store."""
    conversation_store = ConversationStore(":memory:")
    await conversation_store.connect()
    yield conversation_store
    await conversation_store.close()


@pytest_asyncio.fixture
async def manager(store) -> MemoryTierManager:
    return MemoryTierManager(store)
