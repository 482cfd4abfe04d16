import structlog
import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import os

from pydantic import BaseModel


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "liminal"
) -> None:
    """Setup structured logging configuration"""

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add session and trace ids to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    context = structlog.contextvars.get_contextvars()

    trace_id = context.get("trace_id")
    if trace_id:
        event_dict["trace_id"] = trace_id

    session_id = context.get("session_id")
    if session_id and "session_id" not in event_dict:
        event_dict["session_id"] = session_id

    return event_dict


class TurnLogger:
    """Specialized logger for turn pipeline events"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_workflow_transition(
        self,
        session_id: Optional[str],
        from_node: str,
        to_node: str,
        condition: Optional[str] = None,
        state_summary: Optional[Dict[str, Any]] = None
    ):
        """Log workflow and recognition state transitions"""

        self.logger.info(
            "workflow_transition",
            session_id=session_id,
            from_node=from_node,
            to_node=to_node,
            condition=condition,
            state_summary=state_summary or {}
        )

    def log_recognition_attempt(
        self,
        attempt: int,
        model: str,
        success: bool,
        duration_ms: Optional[float] = None,
        error: Optional[Dict[str, Any]] = None
    ):
        """Log one call to the recognition model"""

        self.logger.info(
            "recognition_attempt",
            attempt=attempt,
            model=model,
            success=success,
            duration_ms=duration_ms,
            error=error
        )

    def log_tier_transition(
        self,
        turn_id: str,
        from_tier: str,
        to_tier: str,
        reason: str
    ):
        """Log a memory tier change"""

        self.logger.info(
            "tier_transition",
            turn_id=turn_id,
            from_tier=from_tier,
            to_tier=to_tier,
            reason=reason
        )

    def log_context_update(
        self,
        session_id: str,
        context_type: str,
        action: str,
        details: Optional[Dict[str, Any]] = None
    ):
        """Log context updates"""

        self.logger.info(
            "context_update",
            session_id=session_id,
            context_type=context_type,
            action=action,
            details=details or {}
        )


# Global logger instance
turn_logger = TurnLogger("liminal")


class LatencyStats(BaseModel):
    """Running latency aggregate for one operation"""
    count: int = 0
    total_ms: float = 0.0
    min_ms: float = 0.0
    max_ms: float = 0.0

    def add(self, duration_ms: float):
        self.min_ms = duration_ms if self.count == 0 else min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)
        self.count += 1
        self.total_ms += duration_ms

    def summary(self) -> Dict[str, float]:
        return {
            "count": self.count,
            "avg": self.total_ms / self.count if self.count else 0.0,
            "min": self.min_ms,
            "max": self.max_ms
        }


class TurnMetrics:
    """In-process counters, latencies and gauges for the turn pipeline

    Recognition outcomes are counted per error kind so a summary shows why
    turns ended up on the fallback path.
    """

    def __init__(self):
        self.counters: Dict[str, int] = {}
        self.latencies: Dict[str, LatencyStats] = {}
        self.gauges: Dict[str, float] = {}

    def increment(self, name: str, value: int = 1):
        self.counters[name] = self.counters.get(name, 0) + value
        turn_logger.logger.debug("metric", metric_type="counter", name=name, value=value)

    def observe_latency(self, operation: str, duration_ms: float):
        self.latencies.setdefault(operation, LatencyStats()).add(duration_ms)
        turn_logger.logger.debug("metric", metric_type="latency", operation=operation, duration_ms=duration_ms)

    def set_gauge(self, name: str, value: float):
        self.gauges[name] = value
        turn_logger.logger.debug("metric", metric_type="gauge", name=name, value=value)

    # Recognition

    def record_recognition_call(self, phase: str, duration_ms: float, error_kind: Optional[str] = None):
        """One model call; failures are counted by error kind"""
        self.observe_latency(f"{phase}.call", duration_ms)
        if error_kind is None:
            self.increment(f"{phase}.successes")
        else:
            self.increment(f"{phase}.{error_kind}")

    def record_retry(self, phase: str):
        self.increment(f"{phase}.retries")

    def record_fallback(self, phase: str):
        self.increment(f"{phase}.fallbacks")

    # Memory

    def record_hot_evictions(self, count: int):
        if count:
            self.increment("memory.hot_evictions", count)

    def record_cold_promotions(self, count: int):
        self.increment("memory.cold_promotions", count)

    # Turns

    def record_turn(self, duration_ms: float, error_kind: Optional[str] = None):
        self.observe_latency("turn", duration_ms)
        self.increment("turn.failed" if error_kind else "turn.succeeded")

    def get_counter(self, name: str) -> int:
        return self.counters.get(name, 0)

    def get_metrics_summary(self) -> Dict[str, Any]:
        return {
            "counters": dict(self.counters),
            "latencies": {name: stats.summary() for name, stats in self.latencies.items()},
            "gauges": dict(self.gauges)
        }

    def reset(self):
        self.counters.clear()
        self.latencies.clear()
        self.gauges.clear()


# Global metrics collector
metrics = TurnMetrics()
