"""Deterministic provider failure classification for retry policy."""

from __future__ import annotations

from prompt_pipeline.core.errors import ProviderAuthError, ProviderError, ProviderTransientError

TRANSIENT_STATUS_CODES: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})
AUTH_STATUS_CODES: frozenset[int] = frozenset({401, 403})

_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "incorrect api key",
    "authentication",
)
_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "insufficient_quota",
    "billing",
    "payment",
    "credits",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "try again later",
    "temporarily unavailable",
    "timeout",
    "timed out",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
)


def classify_provider_failure(status_code: int | None, message: str) -> ProviderError:
    """Map an HTTP status and error text to a typed provider error.

    Status codes win over text; quota exhaustion is never transient even when
    served as 429.
    """

    haystack = message.lower()
    if status_code in AUTH_STATUS_CODES or _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS):
        return ProviderAuthError(message, status_code=status_code)
    if _first_match(haystack, _BILLING_OR_QUOTA_PATTERNS):
        return ProviderError(message, status_code=status_code)
    if status_code in TRANSIENT_STATUS_CODES:
        return ProviderTransientError(message, status_code=status_code)
    if status_code is None and _first_match(haystack, _TRANSIENT_PATTERNS):
        return ProviderTransientError(message)
    return ProviderError(message, status_code=status_code)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
