"""Tests for configuration and logging setup."""

import pytest
import structlog
from pydantic import ValidationError

from liminal.infrastructure.config.settings import MemorySettings, RecognitionSettings, Settings
from liminal.infrastructure.observability.logging import TurnLogger, TurnMetrics


class TestRecognitionSettings:
    """Tests for recognition call policy."""

    def test_defaults(self):
        settings = RecognitionSettings.from_env({})

        assert settings.enabled is False
        assert settings.model == "openai/gpt-3.5-turbo"
        assert settings.timeout_seconds == 5.0
        assert settings.max_attempts == 3
        assert settings.fallback_enabled is True
        assert settings.first_pass_enabled is True

    def test_from_env(self):
        settings = RecognitionSettings.from_env({
            "DUAL_LLM_MODE": "true",
            "RECOGNITION_LLM_MODEL": "anthropic/claude-3-haiku",
            "RECOGNITION_TIMEOUT_MS": "2500",
            "RECOGNITION_MAX_RETRIES": "0",
            "RECOGNITION_FALLBACK": "no",
            "RECOGNITION_FIRST_PASS": "off",
        })

        assert settings.enabled is True
        assert settings.model == "anthropic/claude-3-haiku"
        assert settings.timeout_ms == 2500
        assert settings.max_attempts == 1
        assert settings.fallback_enabled is False
        assert settings.first_pass_enabled is False

    def test_blank_flag_keeps_default(self):
        assert RecognitionSettings.from_env({"RECOGNITION_FALLBACK": " "}).fallback_enabled is True

    def test_negative_retries_rejected(self):
        with pytest.raises(ValidationError):
            RecognitionSettings(max_retries=-1)


class TestSettings:
    """Tests for the aggregate settings."""

    def test_aggregates_sections(self):
        settings = Settings.from_env({"LIMINAL_DB_PATH": "/tmp/liminal.db", "LOG_LEVEL": "DEBUG"})

        assert settings.memory.db_path == "/tmp/liminal.db"
        assert settings.log_level == "DEBUG"
        assert settings.context.max_message_chars == 32000

    def test_memory_defaults(self):
        memory = MemorySettings()

        assert (memory.hot_max_turns, memory.hot_max_tokens) == (5, 1500)
        assert (memory.warm_offset, memory.warm_limit, memory.warm_max_tokens) == (5, 50, 15000)


class TestObservability:
    """Tests for turn logging and metrics."""

    def test_transition_logged(self):
        logger = TurnLogger("test")

        with structlog.testing.capture_logs() as logs:
            logger.log_workflow_transition("session-1", "requesting", "validating")

        assert logs[0]["from_node"] == "requesting"
        assert logs[0]["to_node"] == "validating"

    def test_metrics_summary(self):
        collector = TurnMetrics()

        collector.record_fallback("recognition")
        collector.record_fallback("recognition")
        collector.record_recognition_call("recognition", 10.0)
        collector.record_recognition_call("recognition", 30.0, "network_failure")
        collector.set_gauge("memory.hot_tokens", 120.0)

        summary = collector.get_metrics_summary()

        assert collector.get_counter("recognition.fallbacks") == 2
        assert summary["counters"]["recognition.successes"] == 1
        assert summary["counters"]["recognition.network_failure"] == 1
        assert summary["latencies"]["recognition.call"] == {"count": 2, "avg": 20.0, "min": 10.0, "max": 30.0}
        assert summary["gauges"]["memory.hot_tokens"] == 120.0

    def test_memory_and_turn_counters(self):
        collector = TurnMetrics()

        collector.record_hot_evictions(0)
        collector.record_hot_evictions(2)
        collector.record_cold_promotions(10)
        collector.record_turn(5.0)
        collector.record_turn(7.0, "auth_failure")

        assert "memory.hot_evictions" in collector.counters
        assert collector.get_counter("memory.hot_evictions") == 2
        assert collector.get_counter("memory.cold_promotions") == 10
        assert collector.get_counter("turn.succeeded") == 1
        assert collector.get_counter("turn.failed") == 1
        assert collector.latencies["turn"].count == 2

    def test_reset(self):
        collector = TurnMetrics()
        collector.record_retry("first_pass")

        collector.reset()

        assert collector.get_metrics_summary() == {"counters": {}, "latencies": {}, "gauges": {}}
