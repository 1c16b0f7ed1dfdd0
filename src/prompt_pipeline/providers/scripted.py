"""Deterministic provider replaying canned responses, for demos and tests."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any

from prompt_pipeline.core.errors import ProviderParseError
from prompt_pipeline.core.models import TokenUsage
from prompt_pipeline.providers.base import ChatRequest, ChatResponse, ResponseFormat
from prompt_pipeline.providers.parsing import parse_json_response

ScriptStep = str | BaseException | Callable[[ChatRequest], str]


class ScriptedProvider:
    """Returns queued responses in order; an exception step is raised instead.

    Once the script is exhausted the ``fallback`` text is returned.
    """

    def __init__(self, steps: Iterable[ScriptStep] = (), *, fallback: str = "{}") -> None:
        self._steps: list[ScriptStep] = list(steps)
        self.fallback = fallback
        self.requests: list[ChatRequest] = []

    def push(self, step: ScriptStep) -> None:
        self._steps.append(step)

    def chat(self, request: ChatRequest) -> ChatResponse:
        self.requests.append(request)
        step: ScriptStep = self._steps.pop(0) if self._steps else self.fallback
        if isinstance(step, BaseException):
            raise step
        text = step(request) if callable(step) else step
        prompt_chars = sum(len(message.get("content", "")) for message in request.messages)
        # Four characters per token, the usual estimate when a backend reports none.
        usage = TokenUsage(
            model_key=request.model,
            input_tokens=(prompt_chars + 3) // 4,
            output_tokens=(len(text) + 3) // 4,
        )
        content: Any = text
        if request.response_format is ResponseFormat.JSON:
            try:
                content = parse_json_response(text, model=request.model)
            except ProviderParseError as error:
                error.usage = usage
                raise
        return ChatResponse(content=content, usage=usage, raw_text=text)
