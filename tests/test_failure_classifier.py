from __future__ import annotations

import allure
import pytest

from prompt_pipeline.core.errors import (
    ProviderAuthError,
    ProviderError,
    ProviderTransientError,
    is_recoverable,
)
from prompt_pipeline.providers.failure_classifier import classify_provider_failure

pytestmark = [
    allure.epic("Inference Providers"),
    allure.feature("Failure Classification"),
]


def test_auth_status_maps_to_auth_error() -> None:
    error = classify_provider_failure(401, "HTTP 401 from m: no key")

    assert type(error) is ProviderAuthError
    assert error.status_code == 401
    assert not is_recoverable(error)


def test_auth_text_wins_without_status() -> None:
    error = classify_provider_failure(None, "Incorrect API key provided")

    assert type(error) is ProviderAuthError


def test_quota_is_never_transient_even_as_429() -> None:
    error = classify_provider_failure(429, "You exceeded your quota: insufficient_quota")

    assert type(error) is ProviderError


@pytest.mark.parametrize("status_code", [408, 429, 500, 502, 503, 504])
def test_transient_status_codes(status_code: int) -> None:
    error = classify_provider_failure(status_code, "upstream trouble")

    assert type(error) is ProviderTransientError
    assert error.status_code == status_code


def test_transient_text_only_counts_without_status() -> None:
    assert type(classify_provider_failure(None, "Connection reset by peer")) is (
        ProviderTransientError
    )
    assert type(classify_provider_failure(400, "request timed out")) is ProviderError


def test_unknown_failure_is_plain_provider_error() -> None:
    error = classify_provider_failure(400, "model not found")

    assert type(error) is ProviderError
    assert str(error) == "model not found"
