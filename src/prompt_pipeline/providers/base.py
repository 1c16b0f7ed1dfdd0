"""Inference provider interface consumed by task stages."""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from prompt_pipeline.core.models import TokenUsage

logger = logging.getLogger(__name__)


class ResponseFormat(str, Enum):
    """Response mode requested from the provider."""

    TEXT = "text"
    JSON = "json"


@dataclass(slots=True)
class ChatRequest:
    """Inputs for one chat completion."""

    messages: list[dict[str, str]]
    model: str
    response_format: ResponseFormat = ResponseFormat.TEXT
    max_retries: int | None = None
    temperature: float | None = None


@dataclass(slots=True)
class ChatResponse:
    """Provider result; ``content`` is already parsed in JSON mode."""

    content: Any
    usage: TokenUsage
    raw_text: str = ""


class InferenceProvider(Protocol):
    """Protocol implemented by inference adapters."""

    def chat(self, request: ChatRequest) -> ChatResponse:
        """Run one chat completion, retrying transient failures internally."""


class ProviderObserver(Protocol):
    """Observer injected at the provider boundary for usage and timing."""

    def on_request_start(self, request: ChatRequest) -> None: ...

    def on_request_complete(
        self,
        request: ChatRequest,
        response: ChatResponse,
        duration_ms: int,
    ) -> None: ...

    def on_request_error(
        self,
        request: ChatRequest,
        error: BaseException,
        duration_ms: int,
    ) -> None: ...


@dataclass(slots=True)
class UsageRecorder:
    """Collects token usage tuples for one task execution."""

    usage: list[TokenUsage] = field(default_factory=list)
    requests: int = 0
    errors: int = 0

    def on_request_start(self, request: ChatRequest) -> None:
        self.requests += 1

    def on_request_complete(
        self,
        request: ChatRequest,
        response: ChatResponse,
        duration_ms: int,
    ) -> None:
        self.usage.append(response.usage)

    def on_request_error(
        self,
        request: ChatRequest,
        error: BaseException,
        duration_ms: int,
    ) -> None:
        self.errors += 1
        # Calls that completed but failed afterwards were still billed.
        usage = getattr(error, "usage", None)
        if isinstance(usage, TokenUsage):
            self.usage.append(usage)


class ObservedProvider:
    """Wraps a provider and notifies observers around every call."""

    def __init__(
        self,
        provider: InferenceProvider,
        observers: Sequence[ProviderObserver] = (),
    ) -> None:
        self.provider = provider
        self.observers = list(observers)

    def chat(self, request: ChatRequest) -> ChatResponse:
        self._notify("on_request_start", request)
        started = time.monotonic()
        try:
            response = self.provider.chat(request)
        except Exception as error:
            self._notify("on_request_error", request, error, _elapsed_ms(started))
            raise
        self._notify("on_request_complete", request, response, _elapsed_ms(started))
        return response

    def _notify(self, method: str, *args: Any) -> None:
        for observer in self.observers:
            try:
                getattr(observer, method)(*args)
            except Exception:  # noqa: BLE001
                logger.exception("Provider observer %s.%s failed", type(observer).__name__, method)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
