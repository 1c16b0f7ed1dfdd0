"""Stage vocabulary, per-task context and task registry."""

from __future__ import annotations

import importlib
import importlib.util
import re
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import ModuleType
from typing import Any

from prompt_pipeline.core.artifacts import TaskArtifacts
from prompt_pipeline.core.errors import PipelineError, TaskNotRegisteredError
from prompt_pipeline.providers.base import (
    ChatRequest,
    ChatResponse,
    InferenceProvider,
    ResponseFormat,
)

DEFAULT_REGISTRY_ATTR = "TASKS"


class Stage(str, Enum):
    """Fixed stage vocabulary in call order."""

    INGESTION = "ingestion"
    PRE_PROCESSING = "preProcessing"
    PROMPT_TEMPLATING = "promptTemplating"
    INFERENCE = "inference"
    PARSING = "parsing"
    VALIDATE_STRUCTURE = "validateStructure"
    VALIDATE_QUALITY = "validateQuality"
    CRITIQUE = "critique"
    REFINE = "refine"
    FINAL_VALIDATION = "finalValidation"
    INTEGRATION = "integration"

    @property
    def attr_name(self) -> str:
        """Python attribute name a task module uses for this stage."""

        return re.sub(r"(?<!^)(?=[A-Z])", "_", self.value).lower()

    @property
    def is_validation(self) -> bool:
        return self in {Stage.VALIDATE_STRUCTURE, Stage.VALIDATE_QUALITY}


STAGE_ORDER: tuple[Stage, ...] = tuple(Stage)
REMEDIATION_STAGES = frozenset({Stage.CRITIQUE, Stage.REFINE})
REFINEMENT_RESTART_STAGE = Stage.PROMPT_TEMPLATING

StageFn = Callable[["StageContext"], Mapping[str, Any] | None]


class StageOutput(Mapping[str, Any]):
    """Append-only key/value store; reads return the latest value per key."""

    def __init__(self, initial: Mapping[str, Any] | None = None) -> None:
        self._entries: list[tuple[str, str, Any]] = []
        self._latest: dict[str, Any] = {}
        if initial:
            self.merge("initial", initial)

    def merge(self, stage: str, values: Mapping[str, Any]) -> None:
        for key, value in values.items():
            self._entries.append((stage, key, value))
            self._latest[key] = value

    def history(self, key: str) -> list[tuple[str, Any]]:
        return [(stage, value) for stage, entry_key, value in self._entries if entry_key == key]

    def snapshot(self) -> dict[str, Any]:
        return dict(self._latest)

    def __getitem__(self, key: str) -> Any:
        return self._latest[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._latest)

    def __len__(self) -> int:
        return len(self._latest)


@dataclass(slots=True)
class StageFlags:
    """Control-flow signals, distinct from the data payload."""

    validation_failed: bool = False
    last_validation_error: str | None = None
    refined: bool = False
    critique: dict[str, Any] | None = None

    def fail_validation(self, message: str) -> None:
        self.validation_failed = True
        self.last_validation_error = message

    def to_dict(self) -> dict[str, Any]:
        return {
            "validationFailed": self.validation_failed,
            "lastValidationError": self.last_validation_error,
            "refined": self.refined,
            "critique": self.critique,
        }


@dataclass(slots=True)
class StageContext:
    """Mutable state owned by one task execution."""

    job_id: str
    task_name: str
    seed: dict[str, Any]
    artifacts: TaskArtifacts
    model: str
    task_config: dict[str, Any] = field(default_factory=dict)
    upstream: dict[str, dict[str, Any]] = field(default_factory=dict)
    provider: InferenceProvider | None = None
    output: StageOutput = field(default_factory=StageOutput)
    flags: StageFlags = field(default_factory=StageFlags)
    current_stage: Stage | None = None
    cycle: int = 0

    def chat(
        self,
        messages: list[dict[str, str]],
        *,
        response_format: ResponseFormat = ResponseFormat.TEXT,
        model: str | None = None,
        max_retries: int | None = None,
    ) -> ChatResponse:
        """Call the injected provider with the task's routed model."""

        if self.provider is None:
            raise PipelineError(f"Task {self.task_name} has no inference provider configured")
        return self.provider.chat(
            ChatRequest(
                messages=messages,
                model=model or self.model,
                response_format=response_format,
                max_retries=max_retries,
            ),
        )


@dataclass(slots=True, frozen=True)
class TaskDefinition:
    """A task implementation: the subset of stages it provides."""

    name: str
    stages: Mapping[Stage, StageFn]

    def provides(self, stage: Stage) -> bool:
        return stage in self.stages

    def get(self, stage: Stage) -> StageFn | None:
        return self.stages.get(stage)

    @classmethod
    def from_object(cls, name: str, source: Any) -> TaskDefinition:
        """Collect stage callables from a module, object or mapping.

        Both ``validate_quality`` and ``validateQuality`` spellings are accepted.
        """

        stages: dict[Stage, StageFn] = {}
        for stage in STAGE_ORDER:
            candidate = None
            for attr in (stage.attr_name, stage.value):
                if isinstance(source, Mapping):
                    candidate = source.get(attr)
                else:
                    candidate = getattr(source, attr, None)
                if candidate is not None:
                    break
            if candidate is None:
                continue
            if not callable(candidate):
                raise TypeError(f"Task {name}: stage {stage.value} must be callable")
            stages[stage] = candidate
        if not stages:
            raise ValueError(f"Task {name} provides no stages")
        return cls(name=name, stages=stages)


class TaskRegistry:
    """Task name -> TaskDefinition."""

    def __init__(self, tasks: Mapping[str, TaskDefinition] | None = None) -> None:
        self._tasks: dict[str, TaskDefinition] = dict(tasks or {})

    def register(self, definition: TaskDefinition) -> None:
        self._tasks[definition.name] = definition

    def get(self, name: str) -> TaskDefinition:
        try:
            return self._tasks[name]
        except KeyError as error:
            raise TaskNotRegisteredError(f"Task not registered: {name}") from error

    def names(self) -> list[str]:
        return sorted(self._tasks)

    def __contains__(self, name: object) -> bool:
        return name in self._tasks

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> TaskRegistry:
        registry = cls()
        for name, source in raw.items():
            if isinstance(source, TaskDefinition):
                registry.register(source)
            else:
                registry.register(TaskDefinition.from_object(name, source))
        return registry


def load_task_registry(location: str, *, base_dir: Path | None = None) -> TaskRegistry:
    """Load a registry from ``module``, ``module:attr`` or ``path/to/tasks.py[:attr]``.

    The target attribute (``TASKS`` by default) must be a mapping of task
    name to a TaskDefinition, module, object or mapping of stage callables.
    """

    target, _, attr = location.partition(":")
    attr = attr or DEFAULT_REGISTRY_ATTR
    module = _import_registry_module(target, base_dir=base_dir)
    raw = getattr(module, attr, None)
    if raw is None:
        raise ValueError(f"Task registry {location!r} has no attribute {attr}")
    if isinstance(raw, TaskRegistry):
        return raw
    if not isinstance(raw, Mapping):
        raise TypeError(f"Task registry {location!r}: {attr} must be a mapping")
    return TaskRegistry.from_mapping(raw)


def _import_registry_module(target: str, *, base_dir: Path | None) -> ModuleType:
    if target.endswith(".py"):
        path = Path(target)
        if not path.is_absolute() and base_dir is not None:
            path = base_dir / path
        if not path.exists():
            raise ValueError(f"Task registry file not found: {path}")
        module_name = f"prompt_pipeline_tasks_{abs(hash(str(path.resolve())))}"
        spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            raise ValueError(f"Cannot load task registry file: {path}")
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        return module
    return importlib.import_module(target)
