from typing import Dict, Any, Optional
from enum import Enum


class ErrorKind(str, Enum):
    """Error categories surfaced by the turn pipeline"""
    NETWORK_FAILURE = "network_failure"
    AUTH_FAILURE = "auth_failure"
    SCHEMA_VALIDATION_FAILURE = "schema_validation_failure"
    RETRIES_EXHAUSTED = "retries_exhausted"
    STORAGE_FAILURE = "storage_failure"
    INVALID_INPUT = "invalid_input"


class ValidationCode(str, Enum):
    """Reasons a recognition payload can be rejected"""
    JSON_PARSE_ERROR = "JsonParseError"
    MISSING_FIELD = "MissingField"
    VALUE_OUT_OF_RANGE = "ValueOutOfRange"
    SCHEMA_VIOLATION = "SchemaViolation"
    MISSING_PATTERNS = "MissingPatterns"
    TOO_MANY_PATTERNS = "TooManyPatterns"


class LiminalError(Exception):
    """Base error carrying a stage identifier and a readable reason"""

    kind: ErrorKind = ErrorKind.INVALID_INPUT

    def __init__(self, stage: str, reason: str):
        super().__init__(f"[{stage}] {reason}")
        self.stage = stage
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        """Structured form for logs and results"""
        return {
            "kind": self.kind.value,
            "stage": self.stage,
            "reason": self.reason
        }


class NetworkFailure(LiminalError):
    """Transient transport failure or timeout; retried"""
    kind = ErrorKind.NETWORK_FAILURE

    def __init__(self, stage: str, reason: str, status_code: Optional[int] = None):
        super().__init__(stage, reason)
        self.status_code = status_code


class AuthFailure(LiminalError):
    """Credential rejected by the provider; never retried"""
    kind = ErrorKind.AUTH_FAILURE


class SchemaValidationFailure(LiminalError):
    """Structured output did not satisfy the recognition contract"""
    kind = ErrorKind.SCHEMA_VALIDATION_FAILURE

    def __init__(self, code: ValidationCode, reason: str, field: Optional[str] = None):
        super().__init__("validation", reason)
        self.code = code
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["code"] = self.code.value
        data["field"] = self.field
        return data


class RetriesExhausted(LiminalError):
    """All attempts failed; wraps the last underlying error"""
    kind = ErrorKind.RETRIES_EXHAUSTED

    def __init__(self, stage: str, attempts: int, last_error: Optional[LiminalError] = None):
        reason = f"failed after {attempts} attempts"
        if last_error is not None:
            reason = f"{reason}: {last_error.reason}"
        super().__init__(stage, reason)
        self.attempts = attempts
        self.last_error = last_error

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["attempts"] = self.attempts
        data["last_error"] = self.last_error.to_dict() if self.last_error else None
        return data


class StorageFailure(LiminalError):
    """Persistence error; always propagated to the caller"""
    kind = ErrorKind.STORAGE_FAILURE


class InvalidInput(LiminalError):
    """Caller supplied input the pipeline refuses to process"""
    kind = ErrorKind.INVALID_INPUT


class RecognitionFailure(LiminalError):
    """Stage-tagged failure reported by the recognition processor"""

    def __init__(self, stage: str, cause: LiminalError):
        super().__init__(stage, cause.reason)
        self.kind = cause.kind
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["cause"] = self.cause.to_dict()
        return data
