"""Durable per-task artifact handle over a job working directory."""

from __future__ import annotations

import json
from pathlib import Path, PurePosixPath
from typing import Any

from prompt_pipeline.core.contracts import dump_json, write_text_atomic
from prompt_pipeline.core.errors import SystemIOError
from prompt_pipeline.core.models import FILE_KINDS
from prompt_pipeline.core.status import StatusWriter

TASKS_DIR = "tasks"
FILES_DIR = "files"
OUTPUT_FILE = "output.json"


def task_dir(job_dir: Path, task_name: str) -> Path:
    return job_dir / TASKS_DIR / task_name


def _safe_name(name: str) -> str:
    relative = PurePosixPath(name)
    if relative.is_absolute() or ".." in relative.parts or not relative.parts:
        raise ValueError(f"Artifact name must be a relative path inside the task: {name!r}")
    return relative.as_posix()


class TaskArtifacts:
    """Read/write named files scoped to one task of one job.

    Task files live in ``tasks/<task>/``; shared job files live in
    ``files/{artifacts,logs,tmp}/`` and are tracked in the status record at
    job level and task level.
    """

    def __init__(self, job_dir: Path, task_name: str, status: StatusWriter) -> None:
        self.job_dir = job_dir
        self.task_name = task_name
        self.status = status
        self.written: list[str] = []

    @property
    def task_dir(self) -> Path:
        return task_dir(self.job_dir, self.task_name)

    def path(self, name: str) -> Path:
        return self.task_dir / _safe_name(name)

    def exists(self, name: str) -> bool:
        return self.path(name).exists()

    def write_json(self, name: str, payload: Any) -> Path:
        return self.write_text(name, dump_json(payload))

    def write_text(self, name: str, text: str) -> Path:
        target = self.path(name)
        try:
            write_text_atomic(target, text)
        except OSError as error:
            raise SystemIOError(f"Cannot write artifact {target}: {error}") from error
        safe = _safe_name(name)
        if safe not in self.written:
            self.written.append(safe)
        return target

    def read_json(self, name: str) -> Any:
        target = self.path(name)
        try:
            return json.loads(target.read_text("utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            raise SystemIOError(f"Cannot read artifact {target}: {error}") from error

    def read_upstream_output(self, upstream_task: str) -> dict[str, Any] | None:
        """Integrated output of an earlier task, or None if it has none."""

        target = task_dir(self.job_dir, upstream_task) / OUTPUT_FILE
        if not target.exists():
            return None
        try:
            payload = json.loads(target.read_text("utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            raise SystemIOError(f"Cannot read upstream output {target}: {error}") from error
        if not isinstance(payload, dict):
            raise SystemIOError(f"Upstream output {target} is not a JSON object")
        return payload

    # -- job-level files/{artifacts,logs,tmp} ----------------------------------

    def write_file(self, kind: str, name: str, content: str, *, mode: str = "replace") -> Path:
        """Write ``files/<kind>/<name>``; ``mode`` is ``replace`` or ``append``."""

        if kind not in FILE_KINDS:
            raise ValueError(f"Unknown file kind: {kind!r}")
        if mode not in {"replace", "append"}:
            raise ValueError(f"Unknown write mode: {mode!r}")
        safe = _safe_name(name)
        target = self.job_dir / FILES_DIR / kind / safe
        try:
            if mode == "append":
                target.parent.mkdir(parents=True, exist_ok=True)
                with target.open("a", encoding="utf-8") as handle:
                    handle.write(content)
            else:
                write_text_atomic(target, content)
        except OSError as error:
            raise SystemIOError(f"Cannot write file {target}: {error}") from error
        self.status.track_file(kind, safe, task_name=self.task_name)
        return target

    def write_artifact(self, name: str, content: str) -> Path:
        return self.write_file("artifacts", name, content)

    def write_log(self, name: str, content: str, *, mode: str = "append") -> Path:
        return self.write_file("logs", name, content, mode=mode)

    def write_tmp(self, name: str, content: str) -> Path:
        return self.write_file("tmp", name, content)

    def read_file(self, kind: str, name: str) -> str:
        if kind not in FILE_KINDS:
            raise ValueError(f"Unknown file kind: {kind!r}")
        target = self.job_dir / FILES_DIR / kind / _safe_name(name)
        try:
            return target.read_text("utf-8")
        except OSError as error:
            raise SystemIOError(f"Cannot read file {target}: {error}") from error
