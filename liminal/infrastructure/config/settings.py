from typing import Optional, Mapping
import os

from pydantic import BaseModel, Field

TRUE_VALUES = ("1", "true", "yes", "on")


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    value = env.get(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in TRUE_VALUES


class RecognitionSettings(BaseModel):
    """Recognition model call policy"""
    enabled: bool = Field(default=False, description="Call the recognition model at all")
    model: str = "openai/gpt-3.5-turbo"
    timeout_ms: int = Field(default=5000, gt=0, description="Per-attempt timeout")
    max_retries: int = Field(default=2, ge=0, description="Additional attempts after the first")
    fallback_enabled: bool = True
    first_pass_enabled: bool = Field(default=True, description="Ask for memory guidance before context assembly")
    backoff_base_seconds: float = Field(default=1.0, ge=0.0)
    backoff_max_seconds: float = Field(default=30.0, ge=0.0)

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "RecognitionSettings":
        env = os.environ if env is None else env
        defaults = cls()
        return cls(
            enabled=_env_bool(env, "DUAL_LLM_MODE", defaults.enabled),
            model=env.get("RECOGNITION_LLM_MODEL", defaults.model),
            timeout_ms=int(env.get("RECOGNITION_TIMEOUT_MS", defaults.timeout_ms)),
            max_retries=int(env.get("RECOGNITION_MAX_RETRIES", defaults.max_retries)),
            fallback_enabled=_env_bool(env, "RECOGNITION_FALLBACK", defaults.fallback_enabled),
            first_pass_enabled=_env_bool(env, "RECOGNITION_FIRST_PASS", defaults.first_pass_enabled)
        )


class MemorySettings(BaseModel):
    """Tier sizes and budgets for conversation memory"""
    db_path: str = ":memory:"
    hot_max_turns: int = Field(default=5, ge=1)
    hot_max_tokens: int = Field(default=1500, ge=1)
    warm_offset: int = Field(default=5, ge=0)
    warm_limit: int = Field(default=50, ge=1)
    warm_max_tokens: int = Field(default=15000, ge=1)
    cold_limit: int = Field(default=100, ge=1)
    recency_decay: float = Field(default=0.01, ge=0.0, description="Per-day decay rate")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "MemorySettings":
        env = os.environ if env is None else env
        return cls(db_path=env.get("LIMINAL_DB_PATH", ":memory:"))


class ContextSettings(BaseModel):
    """Per-turn context assembly limits"""
    max_context_tokens: int = Field(default=4000, ge=0, description="Budget across warm and cold selections")
    warm_selection: int = Field(default=5, ge=0)
    cold_selection: int = Field(default=3, ge=0)
    max_message_chars: int = Field(default=32000, ge=1)


class Settings(BaseModel):
    """Top-level configuration"""
    recognition: RecognitionSettings = Field(default_factory=RecognitionSettings)
    memory: MemorySettings = Field(default_factory=MemorySettings)
    context: ContextSettings = Field(default_factory=ContextSettings)
    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        return cls(
            recognition=RecognitionSettings.from_env(env),
            memory=MemorySettings.from_env(env),
            log_level=env.get("LOG_LEVEL", "INFO"),
            log_format=env.get("LOG_FORMAT", "json")
        )
