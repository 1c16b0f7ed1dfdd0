"""Chat-completions adapter for OpenAI-compatible HTTP APIs."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import httpx

from prompt_pipeline.config import ProviderSettings
from prompt_pipeline.core.errors import ProviderError, ProviderParseError, ProviderTransientError
from prompt_pipeline.core.models import TokenUsage
from prompt_pipeline.core.retry import RetryOptions, with_retry
from prompt_pipeline.providers.base import ChatRequest, ChatResponse, ResponseFormat
from prompt_pipeline.providers.failure_classifier import classify_provider_failure
from prompt_pipeline.providers.parsing import parse_json_response

logger = logging.getLogger(__name__)

DEFAULT_MODEL_ALIAS = "default"


class OpenAICompatibleProvider:
    """``POST /chat/completions`` with bounded retries on transient failures."""

    def __init__(
        self,
        settings: ProviderSettings,
        *,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self._headers = {"Content-Type": "application/json"}
        if settings.api_key:
            self._headers["Authorization"] = f"Bearer {settings.api_key}"
        self._client = client or httpx.Client(
            base_url=settings.base_url,
            timeout=httpx.Timeout(settings.request_timeout_seconds, connect=10.0),
        )
        self._sleep = sleep

    def chat(self, request: ChatRequest) -> ChatResponse:
        model = self._resolve_model(request.model)
        max_retries = (
            request.max_retries if request.max_retries is not None else self.settings.max_retries
        )

        def _on_retry(attempt: int, delay: float, error: BaseException) -> None:
            logger.warning(
                "Provider call to %s failed (%s); attempt %d in %.1fs",
                model,
                error,
                attempt,
                delay,
            )

        return with_retry(
            lambda: self._post(request, model),
            RetryOptions(
                max_attempts=max_retries + 1,
                initial_delay=self.settings.retry_initial_delay_seconds,
                max_delay=self.settings.retry_max_delay_seconds,
                should_retry=lambda error: isinstance(error, ProviderTransientError),
                on_retry=_on_retry,
            ),
            sleep=self._sleep,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> OpenAICompatibleProvider:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _resolve_model(self, model: str) -> str:
        if not model or model == DEFAULT_MODEL_ALIAS:
            return self.settings.default_model
        return model

    def _post(self, request: ChatRequest, model: str) -> ChatResponse:
        body: dict[str, Any] = {"model": model, "messages": request.messages}
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.response_format is ResponseFormat.JSON:
            body["response_format"] = {"type": "json_object"}

        try:
            response = self._client.post(
                "/chat/completions",
                json=body,
                headers=self._headers,
            )
        except httpx.TimeoutException as error:
            raise ProviderTransientError(f"Timeout calling {model}: {error}") from error
        except httpx.TransportError as error:
            raise ProviderTransientError(f"Network error calling {model}: {error}") from error

        if not response.is_success:
            raise classify_provider_failure(
                response.status_code,
                f"HTTP {response.status_code} from {model}: {_error_message(response)}",
            )

        try:
            payload = response.json()
            text = payload["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as error:
            raise ProviderError(f"Malformed completion payload from {model}: {error}") from error

        usage_raw = payload.get("usage") or {}
        usage = TokenUsage(
            model_key=model,
            input_tokens=int(usage_raw.get("prompt_tokens", 0) or 0),
            output_tokens=int(usage_raw.get("completion_tokens", 0) or 0),
        )
        content: Any = text
        if request.response_format is ResponseFormat.JSON:
            try:
                content = parse_json_response(text, model=model)
            except ProviderParseError as error:
                error.usage = usage
                raise
        return ChatResponse(content=content, usage=usage, raw_text=text)


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    return response.text[:200]
