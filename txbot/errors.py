"""Failure kinds raised by the transaction pipeline.

Every component raises one of a closed set of failures, each carrying a
structured payload. The HTTP layer maps them to status codes; nothing in
between reinterprets them.
"""

from enum import Enum
from typing import Any


class FailureKind(str, Enum):
    """The closed set of pipeline failure kinds."""

    INVALID_FIELD = "invalid_field"
    EXTRACTION_FAILURE = "extraction_failure"
    SCHEMA_MISMATCH = "schema_mismatch"
    STORAGE_FAILURE = "storage_failure"


class ExtractionReason(str, Enum):
    """Why the OCR or LLM adapter could not produce usable output."""

    EMPTY_INPUT = "empty_input"
    NOT_CONFIGURED = "not_configured"
    FILE_NOT_FOUND = "file_not_found"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    NO_TEXT = "no_text"
    MALFORMED_INPUT = "malformed_input"
    UNAUTHORIZED = "unauthorized"
    THROTTLED = "throttled"
    THROUGHPUT_EXCEEDED = "throughput_exceeded"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    SERVICE_UNAVAILABLE = "service_unavailable"
    TIMEOUT = "timeout"
    EMPTY_RESPONSE = "empty_response"
    INVALID_JSON = "invalid_json"
    UNKNOWN = "unknown"


RETRYABLE_REASONS = frozenset(
    {
        ExtractionReason.THROTTLED,
        ExtractionReason.THROUGHPUT_EXCEEDED,
        ExtractionReason.RATE_LIMITED,
        ExtractionReason.SERVER_ERROR,
        ExtractionReason.SERVICE_UNAVAILABLE,
        ExtractionReason.TIMEOUT,
    }
)

# Caller sent something no extractor can use
_UNUSABLE_INPUT_REASONS = frozenset(
    {
        ExtractionReason.EMPTY_INPUT,
        ExtractionReason.FILE_NOT_FOUND,
        ExtractionReason.NO_TEXT,
        ExtractionReason.MALFORMED_INPUT,
    }
)


class TransactionError(Exception):
    """Base class for all pipeline failures."""

    kind: FailureKind
    retryable: bool = False

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    @property
    def status_code(self) -> int:
        return 500

    def details(self) -> dict[str, Any]:
        """Structured payload safe to show to API clients."""
        return {}

    def to_dict(self, include_cause: bool = False) -> dict[str, Any]:
        error: dict[str, Any] = {
            "message": self.message,
            "type": type(self).__name__,
            "kind": self.kind.value,
            "retryable": self.retryable,
            **self.details(),
        }
        if include_cause and self.cause is not None:
            error["cause"] = str(self.cause)
        return error


class InvalidField(TransactionError):
    """Caller input failed a field check."""

    kind = FailureKind.INVALID_FIELD

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field

    @property
    def status_code(self) -> int:
        return 400

    def details(self) -> dict[str, Any]:
        return {"field": self.field}


class ExtractionFailure(TransactionError):
    """The OCR or LLM adapter could not produce usable output."""

    kind = FailureKind.EXTRACTION_FAILURE

    def __init__(
        self,
        reason: ExtractionReason,
        message: str,
        stage: str = "llm",
        cause: BaseException | None = None,
    ):
        super().__init__(message, cause)
        self.reason = reason
        self.stage = stage

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.reason in RETRYABLE_REASONS

    @property
    def status_code(self) -> int:
        if self.reason == ExtractionReason.PAYLOAD_TOO_LARGE:
            return 413
        if self.reason in _UNUSABLE_INPUT_REASONS:
            return 422
        if self.retryable:
            return 503
        return 502

    def details(self) -> dict[str, Any]:
        return {"reason": self.reason.value, "stage": self.stage}


class SchemaMismatch(TransactionError):
    """Structured extractor output is missing required keys."""

    kind = FailureKind.SCHEMA_MISMATCH

    def __init__(self, missing_fields: list[str], message: str | None = None):
        self.missing_fields = list(missing_fields)
        super().__init__(message or f"Missing required fields in LLM response: {', '.join(self.missing_fields)}")

    @property
    def status_code(self) -> int:
        return 502

    def details(self) -> dict[str, Any]:
        return {"missing_fields": self.missing_fields}


class StorageFailure(TransactionError):
    """The storage backend is unavailable or rejected the operation."""

    kind = FailureKind.STORAGE_FAILURE
    retryable = True

    def __init__(self, operation: str, message: str | None = None, cause: BaseException | None = None):
        super().__init__(message or f"Failed to {operation}", cause)
        self.operation = operation

    def details(self) -> dict[str, Any]:
        return {"operation": self.operation}
