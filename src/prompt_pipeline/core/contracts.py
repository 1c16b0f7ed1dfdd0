"""File-based contracts for seeds, pipeline definitions and job status records."""

from __future__ import annotations

import json
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import uuid4

from prompt_pipeline.core.models import (
    FILE_KINDS,
    JobStatus,
    PipelineDefinition,
    RetryPolicy,
    TaskRecord,
)

SEED_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")
SEED_NAME_MAX_LENGTH = 100
_SEED_KEYS = frozenset({"name", "data", "metadata", "pipeline", "id"})
_STATUS_KEYS = frozenset(
    {
        "id",
        "name",
        "pipeline",
        "state",
        "current",
        "currentStage",
        "createdAt",
        "lastUpdated",
        "finishedAt",
        "tasks",
        "files",
    },
)


def dump_json(payload: Any) -> str:
    """Deterministic JSON text used for every durable file."""

    return json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True)


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload atomically using deterministic formatting."""

    write_text_atomic(path, dump_json(payload))


def write_text_atomic(path: Path, text: str) -> None:
    """Write to a sibling temp file, then rename over the target."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
    try:
        tmp_path.write_text(text, "utf-8")
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def append_jsonl(path: Path, payload: dict[str, Any]) -> None:
    """Append one compact JSON line."""

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, ensure_ascii=False, sort_keys=True) + "\n")


@dataclass(slots=True)
class Seed:
    """Immutable request payload that initiates a job."""

    name: str
    data: dict[str, Any]
    metadata: dict[str, Any] = field(default_factory=dict)
    pipeline: str | None = None
    job_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": self.name, "data": self.data}
        if self.metadata:
            payload["metadata"] = self.metadata
        if self.pipeline is not None:
            payload["pipeline"] = self.pipeline
        if self.job_id is not None:
            payload["id"] = self.job_id
        return payload


def validate_seed(raw: Any) -> Seed:
    """Validate raw seed payload and return typed seed."""

    if not isinstance(raw, Mapping):
        raise TypeError("seed must be a JSON object")
    unknown = sorted(set(raw) - _SEED_KEYS)
    if unknown:
        raise ValueError(f"seed has unsupported fields: {', '.join(unknown)}")

    name = raw.get("name")
    if not isinstance(name, str) or not name:
        raise ValueError("seed.name must be a non-empty string")
    if len(name) > SEED_NAME_MAX_LENGTH:
        raise ValueError(f"seed.name must be at most {SEED_NAME_MAX_LENGTH} characters")
    if not SEED_NAME_RE.match(name):
        raise ValueError("seed.name may contain only letters, digits, '-' and '_'")

    data = raw.get("data")
    if not isinstance(data, Mapping):
        raise TypeError("seed.data must be an object")
    metadata = raw.get("metadata", {})
    if not isinstance(metadata, Mapping):
        raise TypeError("seed.metadata must be an object")
    pipeline = raw.get("pipeline")
    if pipeline is not None and (not isinstance(pipeline, str) or not pipeline.strip()):
        raise ValueError("seed.pipeline must be a non-empty string when provided")
    job_id = raw.get("id")
    if job_id is not None and (not isinstance(job_id, str) or not SEED_NAME_RE.match(job_id)):
        raise ValueError("seed.id must match [A-Za-z0-9_-]+ when provided")

    return Seed(
        name=name,
        data=dict(data),
        metadata=dict(metadata),
        pipeline=pipeline,
        job_id=job_id,
    )


def read_seed(path: Path) -> Seed:
    """Load and validate a seed file."""

    try:
        raw = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise ValueError(f"Invalid seed JSON at {path}: {error.msg}") from error
    return validate_seed(raw)


def parse_pipeline_definition(
    raw: Mapping[str, Any],
    *,
    default_max_retries: int = 2,
) -> PipelineDefinition:
    """Validate pipeline definition payload."""

    tasks = raw.get("tasks")
    if not isinstance(tasks, list) or not tasks:
        raise ValueError("pipeline.tasks must be a non-empty array")
    if not all(isinstance(name, str) and name.strip() for name in tasks):
        raise ValueError("pipeline.tasks entries must be non-empty strings")
    if len(set(tasks)) != len(tasks):
        raise ValueError("pipeline.tasks entries must be unique")

    config = raw.get("config", {})
    if not isinstance(config, Mapping):
        raise TypeError("pipeline.config must be an object")
    policy_raw = config.get("retryPolicy")
    if policy_raw is None:
        retry_policy = RetryPolicy(max_retries=default_max_retries)
    else:
        retry_policy = _parse_retry_policy(policy_raw)

    models = config.get("models", {})
    if not isinstance(models, Mapping) or not all(
        isinstance(value, str) for value in models.values()
    ):
        raise TypeError("pipeline.config.models must map task names to model keys")

    task_config = raw.get("taskConfig", {})
    if not isinstance(task_config, Mapping) or not all(
        isinstance(value, Mapping) for value in task_config.values()
    ):
        raise TypeError("pipeline.taskConfig must map task names to objects")

    name = raw.get("name", "default")
    if not isinstance(name, str):
        raise TypeError("pipeline.name must be a string")

    return PipelineDefinition(
        tasks=tuple(tasks),
        retry_policy=retry_policy,
        models=dict(models),
        task_config={key: dict(value) for key, value in task_config.items()},
        name=name,
    )


def _parse_retry_policy(raw: Any) -> RetryPolicy:
    if not isinstance(raw, Mapping):
        raise TypeError("pipeline.config.retryPolicy must be an object")
    max_retries = raw.get("maxRetries", 2)
    if isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 0:
        raise ValueError("retryPolicy.maxRetries must be an integer >= 0")
    stages = raw.get("retryableStages", ["validateStructure", "validateQuality"])
    if not isinstance(stages, list) or not all(isinstance(item, str) for item in stages):
        raise TypeError("retryPolicy.retryableStages must be an array of stage names")
    return RetryPolicy(max_retries=max_retries, retryable_stages=frozenset(stages))


def read_pipeline_definition(path: Path, *, default_max_retries: int = 2) -> PipelineDefinition:
    """Load pipeline definition JSON."""

    raw = load_json(path)
    try:
        return parse_pipeline_definition(raw, default_max_retries=default_max_retries)
    except (TypeError, ValueError) as error:
        raise ValueError(f"Invalid pipeline definition at {path}: {error}") from error


@dataclass(slots=True)
class JobStatusRecord:
    """Contents of ``tasks-status.json``; unknown keys survive round trips."""

    job_id: str
    name: str
    pipeline: str = "default"
    state: JobStatus = JobStatus.PENDING
    current: str | None = None
    current_stage: str | None = None
    created_at: str | None = None
    last_updated: str | None = None
    finished_at: str | None = None
    tasks: dict[str, TaskRecord] = field(default_factory=dict)
    files: dict[str, list[str]] = field(
        default_factory=lambda: {kind: [] for kind in FILE_KINDS},
    )
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload = dict(self.extra)
        payload.update(
            {
                "id": self.job_id,
                "name": self.name,
                "pipeline": self.pipeline,
                "state": self.state.value,
                "current": self.current,
                "currentStage": self.current_stage,
                "createdAt": self.created_at,
                "lastUpdated": self.last_updated,
                "finishedAt": self.finished_at,
                "tasks": {name: record.to_dict() for name, record in self.tasks.items()},
                "files": {kind: list(self.files.get(kind, [])) for kind in FILE_KINDS},
            },
        )
        return payload

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> JobStatusRecord:
        job_id = raw.get("id")
        if not isinstance(job_id, str) or not job_id:
            raise ValueError("tasks-status.id must be a non-empty string")
        tasks_raw = raw.get("tasks") or {}
        if not isinstance(tasks_raw, Mapping):
            raise TypeError("tasks-status.tasks must be an object")
        files_raw = raw.get("files") or {}
        if not isinstance(files_raw, Mapping):
            raise TypeError("tasks-status.files must be an object")
        try:
            state = JobStatus(raw.get("state", JobStatus.PENDING.value))
        except ValueError as error:
            raise ValueError(f"Unknown job state: {raw.get('state')!r}") from error
        return cls(
            job_id=job_id,
            name=str(raw.get("name", job_id)),
            pipeline=str(raw.get("pipeline", "default")),
            state=state,
            current=raw.get("current"),
            current_stage=raw.get("currentStage"),
            created_at=raw.get("createdAt"),
            last_updated=raw.get("lastUpdated"),
            finished_at=raw.get("finishedAt"),
            tasks={str(name): TaskRecord.from_dict(item) for name, item in tasks_raw.items()},
            files={kind: [str(item) for item in files_raw.get(kind, [])] for kind in FILE_KINDS},
            extra={key: value for key, value in raw.items() if key not in _STATUS_KEYS},
        )
