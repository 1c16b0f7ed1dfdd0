"""Error kinds raised by stages, providers and the job lifecycle."""

from __future__ import annotations

from enum import Enum
from typing import Any

from prompt_pipeline.core.models import TokenUsage


class ErrorKind(str, Enum):
    """Stable error kinds persisted on task records."""

    VALIDATION = "validation"
    PROVIDER_AUTH = "provider_auth"
    PROVIDER_TRANSIENT = "provider_transient"
    PROVIDER_PARSE = "provider_parse"
    PROVIDER = "provider"
    SYSTEM_IO = "system_io"
    POLICY_EXHAUSTED = "policy_exhausted"
    TASK_NOT_REGISTERED = "task_not_registered"
    CANCELLED = "cancelled"
    UNEXPECTED = "unexpected"


class PipelineError(RuntimeError):
    """Base error carrying a stable kind."""

    kind: ErrorKind = ErrorKind.UNEXPECTED
    recoverable: bool = False


class ValidationError(PipelineError):
    """Stage output is structurally or qualitatively deficient."""

    kind = ErrorKind.VALIDATION
    recoverable = True


class ProviderError(PipelineError):
    """Non-retryable inference provider failure.

    ``usage`` is set when the call completed and was billed before failing,
    e.g. a JSON reply that could not be parsed.
    """

    kind = ErrorKind.PROVIDER

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        usage: TokenUsage | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.usage = usage


class ProviderAuthError(ProviderError):
    """Provider rejected credentials; never retried."""

    kind = ErrorKind.PROVIDER_AUTH


class ProviderTransientError(ProviderError):
    """Network, timeout or rate-limit failure eligible for retry."""

    kind = ErrorKind.PROVIDER_TRANSIENT


class ProviderParseError(ProviderError):
    """Structured response could not be parsed."""

    kind = ErrorKind.PROVIDER_PARSE
    recoverable = True


class SystemIOError(PipelineError):
    """Durable artifact or status read/write failed."""

    kind = ErrorKind.SYSTEM_IO


class PolicyExhaustedError(PipelineError):
    """Remediation attempts exhausted without passing validation."""

    kind = ErrorKind.POLICY_EXHAUSTED

    def __init__(self, message: str, *, stage: str, attempts: int) -> None:
        super().__init__(message)
        self.stage = stage
        self.attempts = attempts


class TaskNotRegisteredError(PipelineError):
    """Pipeline references a task missing from the registry."""

    kind = ErrorKind.TASK_NOT_REGISTERED


class JobCancelledError(PipelineError):
    """Stop was requested for the job between stages."""

    kind = ErrorKind.CANCELLED


def is_recoverable(error: BaseException) -> bool:
    """Return True for errors that drive the critique/refine loop."""

    return isinstance(error, PipelineError) and error.recoverable


def error_kind(error: BaseException) -> ErrorKind:
    if isinstance(error, PipelineError):
        return error.kind
    if isinstance(error, OSError):
        return ErrorKind.SYSTEM_IO
    return ErrorKind.UNEXPECTED


def normalize_error(error: BaseException) -> dict[str, Any]:
    """Serialize an exception for status records and failure details."""

    return {
        "kind": error_kind(error).value,
        "name": type(error).__name__,
        "message": str(error) or type(error).__name__,
    }
