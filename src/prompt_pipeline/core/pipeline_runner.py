"""PipelineRunner: sequences a job's tasks and threads outputs between them."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from prompt_pipeline.core.artifacts import OUTPUT_FILE, TaskArtifacts
from prompt_pipeline.core.contracts import load_json
from prompt_pipeline.core.errors import JobCancelledError, SystemIOError, normalize_error
from prompt_pipeline.core.models import PipelineDefinition, TaskRecord, TaskState
from prompt_pipeline.core.stages import Stage, StageContext, TaskRegistry
from prompt_pipeline.core.status import StatusWriter
from prompt_pipeline.core.task_runner import TaskRunResult, TaskStageEngine
from prompt_pipeline.notify.notifier import ChangeNotifier
from prompt_pipeline.providers.base import (
    InferenceProvider,
    ObservedProvider,
    ProviderObserver,
    UsageRecorder,
)
from prompt_pipeline.storage.common import utc_now_iso

logger = logging.getLogger(__name__)

SEED_FILE = "seed.json"
LETTER_FILE = "letter.json"
EXECUTION_LOGS_FILE = "execution-logs.json"
FAILURE_DETAILS_FILE = "failure-details.json"


class PipelineOutcome:
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class PipelineRunResult:
    """Result of running a job's task list."""

    job_id: str
    status: str = PipelineOutcome.COMPLETE
    completed_tasks: list[str] = field(default_factory=list)
    skipped_tasks: list[str] = field(default_factory=list)
    failed_task: str | None = None
    error: dict[str, Any] | None = None
    execution_time_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.status == PipelineOutcome.COMPLETE


class PipelineRunner:
    """Runs the task list of one job in declared order.

    Tasks already ``done`` are skipped and their ``output.json`` is reloaded
    from disk, so a resumed job rebuilds its inputs purely from durable
    artifacts. The first failed task aborts the rest of the list.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        registry: TaskRegistry,
        pipeline: PipelineDefinition,
        provider: InferenceProvider | None = None,
        observers: Sequence[ProviderObserver] = (),
        default_model: str = "default",
        notifier: ChangeNotifier | None = None,
        on_progress: Callable[[str], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._pipeline = pipeline
        self._provider = provider
        self._observers = list(observers)
        self._default_model = default_model
        self._notifier = notifier
        self._on_progress = on_progress or (lambda _msg: None)
        self._clock = clock

    def _emit(self, msg: str) -> None:
        """Log and notify progress callback."""
        logger.info(msg)
        self._on_progress(msg)

    def run(
        self,
        job_dir: Path,
        *,
        should_stop: Callable[[], bool] | None = None,
    ) -> PipelineRunResult:
        status = StatusWriter(
            job_dir,
            notifier=self._notifier,
            expected_tasks=self._pipeline.tasks,
        )
        record = status.read()
        result = PipelineRunResult(job_id=record.job_id)
        started = self._clock()
        try:
            seed = load_json(job_dir / SEED_FILE)
        except OSError as error:
            raise SystemIOError(f"Cannot read seed for job {record.job_id}: {error}") from error

        self._emit(f"Job {record.job_id} started: {len(self._pipeline.tasks)} task(s)")
        upstream: dict[str, dict[str, Any]] = {}
        for task_name in self._pipeline.tasks:
            existing = record.tasks.get(task_name)
            if existing is not None and existing.state is TaskState.DONE:
                output = TaskArtifacts(job_dir, task_name, status).read_upstream_output(task_name)
                if output is not None:
                    upstream[task_name] = output
                result.skipped_tasks.append(task_name)
                self._emit(f"[{task_name}] already done, skipping")
                continue
            if existing is not None and existing.state is TaskState.FAILED:
                result.status = PipelineOutcome.FAILED
                result.failed_task = task_name
                result.error = existing.error
                break

            task_result = self._run_task(
                job_dir=job_dir,
                status=status,
                job_id=record.job_id,
                task_name=task_name,
                seed=seed,
                upstream=upstream,
                should_stop=should_stop,
            )
            if not task_result.ok:
                result.status = (
                    PipelineOutcome.CANCELLED if task_result.cancelled else PipelineOutcome.FAILED
                )
                result.failed_task = task_name
                result.error = (
                    normalize_error(task_result.error) if task_result.error is not None else None
                )
                break
            result.completed_tasks.append(task_name)
            output = TaskArtifacts(job_dir, task_name, status).read_upstream_output(task_name)
            upstream[task_name] = output if output is not None else task_result.output

        status.set_current(None)
        result.execution_time_ms = int((self._clock() - started) * 1000)
        if result.ok:
            self._emit(f"Job {record.job_id} completed in {result.execution_time_ms} ms")
        else:
            self._emit(
                f"Job {record.job_id} {result.status} at task {result.failed_task}: "
                f"{(result.error or {}).get('message')}",
            )
        return result

    def _run_task(  # noqa: PLR0913
        self,
        *,
        job_dir: Path,
        status: StatusWriter,
        job_id: str,
        task_name: str,
        seed: dict[str, Any],
        upstream: dict[str, dict[str, Any]],
        should_stop: Callable[[], bool] | None,
    ) -> TaskRunResult:
        started_at = utc_now_iso()
        model = self._pipeline.model_for(task_name, self._default_model)

        def _mark_running(task: TaskRecord) -> None:
            task.transition(TaskState.RUNNING)
            task.started_at = started_at
            task.error = None
            task.failed_stage = None

        status.update_task(task_name, _mark_running)
        status.set_current(task_name)
        self._emit(f"[{task_name}] Starting with model {model}")

        artifacts = TaskArtifacts(job_dir, task_name, status)
        usage = UsageRecorder()
        started = self._clock()
        try:
            artifacts.write_json(
                LETTER_FILE,
                {
                    "jobId": job_id,
                    "task": task_name,
                    "model": model,
                    "startedAt": started_at,
                    "upstream": sorted(upstream),
                },
            )
            definition = self._registry.get(task_name)
            context = StageContext(
                job_id=job_id,
                task_name=task_name,
                seed=seed,
                artifacts=artifacts,
                model=model,
                task_config=self._pipeline.config_for(task_name),
                upstream=dict(upstream),
                provider=(
                    ObservedProvider(self._provider, [usage, *self._observers])
                    if self._provider is not None
                    else None
                ),
            )
            engine = TaskStageEngine(
                retry_policy=self._pipeline.retry_policy,
                should_stop=should_stop,
                on_stage=lambda stage: self._on_stage(status, task_name, stage),
                clock=self._clock,
            )
            task_result = engine.run(definition, context)
            artifacts.write_json(
                EXECUTION_LOGS_FILE,
                {
                    "task": task_name,
                    "attempts": task_result.attempts,
                    "flags": context.flags.to_dict(),
                    "logs": [entry.to_dict() for entry in task_result.logs],
                },
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Job %s: task %s aborted", job_id, task_name)
            task_result = TaskRunResult(
                ok=False,
                attempts=0,
                execution_time_ms=int((self._clock() - started) * 1000),
                error=error,
            )

        if task_result.ok:
            self._record_success(status, task_name, task_result, usage, artifacts)
            self._emit(
                f"[{task_name}] Done in {task_result.execution_time_ms} ms "
                f"({task_result.attempts} refinement attempt(s))",
            )
        else:
            self._record_failure(status, task_name, task_result, usage, artifacts)
        return task_result

    @staticmethod
    def _on_stage(status: StatusWriter, task_name: str, stage: Stage) -> None:
        status.set_current(task_name, stage.value)

    def _record_success(
        self,
        status: StatusWriter,
        task_name: str,
        task_result: TaskRunResult,
        usage: UsageRecorder,
        artifacts: TaskArtifacts,
    ) -> None:
        def _apply(task: TaskRecord) -> None:
            task.transition(TaskState.DONE)
            task.ended_at = utc_now_iso()
            task.attempts = task_result.attempts
            task.execution_time_ms = task_result.execution_time_ms
            task.token_usage.extend(usage.usage)
            for name in artifacts.written:
                task.add_artifact(name)

        status.update_task(task_name, _apply)

    def _record_failure(
        self,
        status: StatusWriter,
        task_name: str,
        task_result: TaskRunResult,
        usage: UsageRecorder,
        artifacts: TaskArtifacts,
    ) -> None:
        error = task_result.error or RuntimeError("task failed without error")
        normalized = normalize_error(error)
        try:
            artifacts.write_json(
                FAILURE_DETAILS_FILE,
                {
                    "task": task_name,
                    "stage": task_result.failed_stage,
                    "attempts": task_result.attempts,
                    "error": normalized,
                    "logs": [entry.to_dict() for entry in task_result.logs],
                    "failedAt": utc_now_iso(),
                },
            )
        except SystemIOError:
            logger.exception("Cannot write failure details for task %s", task_name)

        def _apply(task: TaskRecord) -> None:
            task.transition(TaskState.FAILED)
            task.ended_at = utc_now_iso()
            task.attempts = task_result.attempts
            task.execution_time_ms = task_result.execution_time_ms
            task.error = normalized
            task.failed_stage = task_result.failed_stage
            task.token_usage.extend(usage.usage)
            for name in artifacts.written:
                if name != OUTPUT_FILE:
                    task.add_artifact(name)

        status.update_task(task_name, _apply)
        if isinstance(error, JobCancelledError):
            self._emit(f"[{task_name}] Cancelled: {error}")
        else:
            self._emit(f"[{task_name}] Failed at {task_result.failed_stage}: {error}")
