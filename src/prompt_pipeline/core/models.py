"""Domain models for jobs, task records and retry policy."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

FILE_KINDS: tuple[str, ...] = ("artifacts", "logs", "tmp")


class TaskState(str, Enum):
    """Durable task execution states."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class JobStatus(str, Enum):
    """Job status derived from its task map."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


class JobLocation(str, Enum):
    """Directories acting as job lifecycle states."""

    PENDING = "pending"
    CURRENT = "current"
    COMPLETE = "complete"
    REJECTED = "rejected"


_ALLOWED_TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.PENDING: frozenset({TaskState.RUNNING}),
    # running -> running happens when an orphaned job is resumed.
    TaskState.RUNNING: frozenset({TaskState.RUNNING, TaskState.DONE, TaskState.FAILED}),
    TaskState.DONE: frozenset(),
    TaskState.FAILED: frozenset(),
}


@dataclass(slots=True, frozen=True)
class TokenUsage:
    """One provider call's token accounting."""

    model_key: str
    input_tokens: int = 0
    output_tokens: int = 0

    def to_list(self) -> list[Any]:
        return [self.model_key, self.input_tokens, self.output_tokens]

    @classmethod
    def from_raw(cls, raw: Any) -> TokenUsage:
        if isinstance(raw, Mapping):
            return cls(
                model_key=str(raw.get("modelKey", "unknown")),
                input_tokens=int(raw.get("inputTokens", 0) or 0),
                output_tokens=int(raw.get("outputTokens", 0) or 0),
            )
        if isinstance(raw, list | tuple) and len(raw) == 3:  # noqa: PLR2004
            return cls(model_key=str(raw[0]), input_tokens=int(raw[1]), output_tokens=int(raw[2]))
        raise TypeError(f"tokenUsage entry must be a 3-item list, got {raw!r}")


def _empty_files() -> dict[str, list[str]]:
    return {kind: [] for kind in FILE_KINDS}


@dataclass(slots=True)
class TaskRecord:
    """Execution record of one task within a job."""

    state: TaskState = TaskState.PENDING
    attempts: int = 0
    started_at: str | None = None
    ended_at: str | None = None
    execution_time_ms: int | None = None
    error: dict[str, Any] | None = None
    failed_stage: str | None = None
    token_usage: list[TokenUsage] = field(default_factory=list)
    artifacts: list[str] = field(default_factory=list)
    files: dict[str, list[str]] = field(default_factory=_empty_files)

    def transition(self, new_state: TaskState) -> None:
        """Move forward in the task state machine or raise ValueError."""

        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise ValueError(
                f"Illegal task state transition: {self.state.value} -> {new_state.value}",
            )
        self.state = new_state

    def add_artifact(self, name: str) -> None:
        if name not in self.artifacts:
            self.artifacts.append(name)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "state": self.state.value,
            "attempts": self.attempts,
            "tokenUsage": [usage.to_list() for usage in self.token_usage],
            "artifacts": list(self.artifacts),
            "files": {kind: list(self.files.get(kind, [])) for kind in FILE_KINDS},
        }
        optional = {
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
            "executionTimeMs": self.execution_time_ms,
            "error": self.error,
            "failedStage": self.failed_stage,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> TaskRecord:
        state_raw = raw.get("state", TaskState.PENDING.value)
        try:
            state = TaskState(state_raw)
        except ValueError as error:
            raise ValueError(f"Unknown task state: {state_raw!r}") from error
        files_raw = raw.get("files") or {}
        if not isinstance(files_raw, Mapping):
            raise TypeError("task.files must be an object")
        error_raw = raw.get("error")
        if error_raw is not None and not isinstance(error_raw, Mapping):
            error_raw = {"kind": "unexpected", "name": "Error", "message": str(error_raw)}
        return cls(
            state=state,
            attempts=int(raw.get("attempts", 0) or 0),
            started_at=raw.get("startedAt"),
            ended_at=raw.get("endedAt"),
            execution_time_ms=raw.get("executionTimeMs"),
            error=dict(error_raw) if error_raw is not None else None,
            failed_stage=raw.get("failedStage"),
            token_usage=[TokenUsage.from_raw(item) for item in raw.get("tokenUsage") or []],
            artifacts=[str(item) for item in raw.get("artifacts") or []],
            files={kind: [str(item) for item in files_raw.get(kind, [])] for kind in FILE_KINDS},
        )


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Pipeline-level remediation bounds, immutable once loaded."""

    max_retries: int = 2
    retryable_stages: frozenset[str] = frozenset({"validateStructure", "validateQuality"})

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("retryPolicy.maxRetries must be >= 0")

    def is_retryable(self, stage: str) -> bool:
        return stage in self.retryable_stages

    def to_dict(self) -> dict[str, Any]:
        return {
            "maxRetries": self.max_retries,
            "retryableStages": sorted(self.retryable_stages),
        }


@dataclass(slots=True, frozen=True)
class PipelineDefinition:
    """Declarative pipeline shape: ordered tasks plus shared config."""

    tasks: tuple[str, ...]
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    models: Mapping[str, str] = field(default_factory=dict)
    task_config: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    name: str = "default"

    def model_for(self, task_name: str, default: str) -> str:
        return self.models.get(task_name, self.models.get("default", default))

    def config_for(self, task_name: str) -> dict[str, Any]:
        return dict(self.task_config.get(task_name, {}))


def derive_job_status(
    tasks: Mapping[str, TaskRecord] | Iterable[TaskRecord],
    *,
    expected_tasks: Iterable[str] = (),
) -> JobStatus:
    """Derive job status by priority: failed, running, all done, pending.

    Names in ``expected_tasks`` missing from a mapping count as pending.
    """

    records = list(tasks.values()) if isinstance(tasks, Mapping) else list(tasks)
    if isinstance(tasks, Mapping):
        records.extend(TaskRecord() for name in expected_tasks if name not in tasks)
    states = {record.state for record in records}
    if TaskState.FAILED in states:
        return JobStatus.FAILED
    if TaskState.RUNNING in states:
        return JobStatus.RUNNING
    if records and states == {TaskState.DONE}:
        return JobStatus.COMPLETE
    return JobStatus.PENDING
