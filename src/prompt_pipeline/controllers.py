"""Controllers for pipeline CLI commands."""

from __future__ import annotations

import json
import math
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from prompt_pipeline.batch.repository import BatchRepository
from prompt_pipeline.config import Settings
from prompt_pipeline.core.contracts import dump_json, read_pipeline_definition, read_seed
from prompt_pipeline.core.lifecycle import JobLifecycle, LifecyclePaths
from prompt_pipeline.core.models import PipelineDefinition
from prompt_pipeline.core.orchestrator import (
    InlineJobLauncher,
    JobExecutor,
    JobLauncher,
    Orchestrator,
    SubprocessJobLauncher,
    signal_stop_handlers,
)
from prompt_pipeline.core.pipeline_runner import PipelineRunner
from prompt_pipeline.core.stages import TaskRegistry, load_task_registry
from prompt_pipeline.notify.notifier import ChangeEvent, ChangeNotifier, DirectoryWatcher
from prompt_pipeline.providers.base import InferenceProvider
from prompt_pipeline.providers.openai_compatible import OpenAICompatibleProvider
from prompt_pipeline.providers.scripted import ScriptedProvider

DEFAULT_PIPELINE_FILE = "pipeline.json"


@dataclass(slots=True)
class SubmitCommand:
    """CLI input for seed submission."""

    seed_path: Path


@dataclass(slots=True)
class OrchestrateCommand:
    """CLI input for the pending-queue orchestrator."""

    once: bool
    max_idle_polls: int | None
    inline: bool = False


@dataclass(slots=True)
class RunJobCommand:
    """CLI input for running one promoted job in the foreground."""

    job_id: str


@dataclass(slots=True)
class StatusCommand:
    job_id: str | None


@dataclass(slots=True)
class StopCommand:
    job_id: str


@dataclass(slots=True)
class RestartCommand:
    job_id: str
    from_task: str | None


@dataclass(slots=True)
class RecoverCommand:
    clean_slate: bool


@dataclass(slots=True)
class WatchCommand:
    """CLI input for streaming change notifications."""

    seconds: float | None


@dataclass(slots=True)
class BatchCommand:
    """CLI input for batch inspection and stale-row recovery."""

    batch_id: str
    db_path: Path | None


@dataclass(slots=True)
class RunJobResult:
    """Foreground job report to render in CLI."""

    lines: list[str]
    success: bool


class PipelineCliController:
    """Coordinates job lifecycle, orchestrator, watcher and batch CLI operations."""

    def __init__(
        self,
        *,
        provider_factory: Callable[[Settings], InferenceProvider | None] | None = None,
    ) -> None:
        self._provider_factory = provider_factory or _default_provider

    def submit(self, command: SubmitCommand) -> list[str]:
        settings = _settings()
        seed = read_seed(command.seed_path)
        lifecycle = _lifecycle(settings, _pipeline_or_empty(settings))
        target = lifecycle.submit_seed(seed)
        return [f"Seed submitted: name={seed.name} path={target}"]

    def orchestrate(
        self,
        command: OrchestrateCommand,
        *,
        on_progress: Callable[[str], None] | None = None,
    ) -> list[str]:
        settings = _settings()
        pipeline = _pipeline(settings)
        lifecycle = _lifecycle(settings, pipeline)
        launcher: JobLauncher
        if command.inline:
            launcher = InlineJobLauncher(
                JobExecutor(
                    lifecycle=lifecycle,
                    runner=self._pipeline_runner(settings, pipeline, on_progress=on_progress),
                ),
            )
        else:
            launcher = SubprocessJobLauncher(
                spawn_retries=settings.orchestrator.spawn_retries,
                spawn_retry_delay_seconds=settings.orchestrator.spawn_retry_delay_seconds,
                cwd=settings.paths.root,
            )
        orchestrator = Orchestrator(
            lifecycle=lifecycle,
            launcher=launcher,
            poll_interval_seconds=settings.orchestrator.poll_interval_seconds,
            shutdown_grace_seconds=settings.orchestrator.shutdown_grace_seconds,
            clean_slate_restart=settings.orchestrator.clean_slate_restart,
            max_relaunches=settings.orchestrator.max_relaunches,
            on_progress=on_progress,
        )
        summary = orchestrator.run_loop(
            max_idle_polls=1 if command.once else command.max_idle_polls,
        )
        return [
            "Orchestrator summary: "
            f"promoted={summary.promoted} launched={summary.launched} "
            f"finished={summary.finished} recovered={summary.recovered} "
            f"dead_lettered={summary.dead_lettered}",
        ]

    def run_job(
        self,
        command: RunJobCommand,
        *,
        on_progress: Callable[[str], None] | None = None,
    ) -> RunJobResult:
        settings = _settings()
        pipeline = _pipeline(settings)
        lifecycle = _lifecycle(settings, pipeline)
        executor = JobExecutor(
            lifecycle=lifecycle,
            runner=self._pipeline_runner(settings, pipeline, on_progress=on_progress),
        )
        stop = threading.Event()
        with signal_stop_handlers(lambda _name: stop.set()):
            result = executor.execute(command.job_id, should_stop=stop.is_set)

        lines = [
            f"Job {result.job_id}: {result.status} "
            f"completed={','.join(result.completed_tasks) or '-'} "
            f"skipped={','.join(result.skipped_tasks) or '-'} "
            f"time_ms={result.execution_time_ms}",
        ]
        if result.error is not None:
            lines.append(
                f"Failed task: {result.failed_task} "
                f"[{result.error.get('kind')}] {result.error.get('message')}",
            )
        return RunJobResult(lines=lines, success=result.ok)

    def status(self, command: StatusCommand) -> list[str]:
        settings = _settings()
        lifecycle = _lifecycle(settings, _pipeline_or_empty(settings))
        if command.job_id is not None:
            location, record = lifecycle.read_status(command.job_id)
            return [f"Location: {location.value}", dump_json(record.to_dict())]

        jobs = lifecycle.list_jobs()
        if not jobs:
            return ["No jobs found."]
        return [
            f"{job.location.value:<9} {job.job_id} status={job.status.value} "
            f"current={job.current_task or '-'} name={job.name}"
            for job in jobs
        ]

    def stop(self, command: StopCommand) -> list[str]:
        settings = _settings()
        lifecycle = _lifecycle(settings, _pipeline_or_empty(settings))
        signalled = lifecycle.request_stop(command.job_id)
        suffix = "runner signalled" if signalled else "no live runner; stop file written"
        return [f"Stop requested for job {command.job_id} ({suffix})"]

    def restart(self, command: RestartCommand) -> list[str]:
        settings = _settings()
        pipeline = _pipeline(settings)
        lifecycle = _lifecycle(settings, pipeline)
        if command.from_task is not None and command.from_task not in pipeline.tasks:
            raise ValueError(
                f"Unknown task {command.from_task!r}; pipeline tasks: {', '.join(pipeline.tasks)}",
            )
        lifecycle.restart(command.job_id, from_task=command.from_task)
        scope = f"from task {command.from_task}" if command.from_task else "from the start"
        return [f"Job {command.job_id} moved to current, restarting {scope}"]

    def recover(self, command: RecoverCommand) -> list[str]:
        settings = _settings()
        lifecycle = _lifecycle(settings, _pipeline_or_empty(settings))
        orphans = lifecycle.recover(clean_slate=command.clean_slate)
        if not orphans:
            return ["No orphaned jobs found."]
        if command.clean_slate:
            action = "rebuilt in current from its seed"
        else:
            action = "left in current to resume"
        return [f"Orphaned job {job_id}: {action}" for job_id in orphans]

    def watch(
        self,
        command: WatchCommand,
        *,
        on_event: Callable[[ChangeEvent], None],
    ) -> list[str]:
        settings = _settings()
        paths = LifecyclePaths.from_settings(settings)
        paths.ensure()
        notifier = ChangeNotifier()
        unsubscribe = notifier.subscribe(on_event)
        watcher = DirectoryWatcher(
            paths.data_dir,
            notifier,
            poll_interval_seconds=settings.notifier.poll_interval_seconds,
            heartbeat_interval_seconds=settings.notifier.heartbeat_interval_seconds,
        )
        max_polls = (
            max(1, math.ceil(command.seconds / settings.notifier.poll_interval_seconds))
            if command.seconds is not None
            else None
        )
        try:
            with signal_stop_handlers(lambda _name: watcher.stop()):
                watcher.run(max_polls=max_polls)
        finally:
            unsubscribe()
        return [f"Stopped watching {paths.data_dir}"]

    def batch_status(self, command: BatchCommand) -> list[str]:
        settings = _settings()
        with _repository(settings, command.db_path) as repository:
            counts = repository.count_by_status(command.batch_id)
            failed = repository.get_failed_jobs(command.batch_id, settings.batch.max_retries)
        lines = [
            f"Batch {command.batch_id}: "
            + " ".join(f"{status}={count}" for status, count in counts.items()),
        ]
        lines.extend(
            f"  failed {job.id} retries={job.retry_count}: {job.error}" for job in failed
        )
        return lines

    def batch_recover(self, command: BatchCommand) -> list[str]:
        settings = _settings()
        with _repository(settings, command.db_path) as repository:
            recovered = repository.recover_stale_jobs(command.batch_id)
        return [f"Batch {command.batch_id}: reset {recovered} stale job(s) to pending"]

    def _pipeline_runner(
        self,
        settings: Settings,
        pipeline: PipelineDefinition,
        *,
        on_progress: Callable[[str], None] | None,
    ) -> PipelineRunner:
        return PipelineRunner(
            registry=_registry(settings),
            pipeline=pipeline,
            provider=self._provider_factory(settings),
            default_model=settings.task_runner.default_model,
            on_progress=on_progress,
        )


def _settings() -> Settings:
    settings = Settings.from_env()
    settings.validate()
    return settings


def _resolve(settings: Settings, path: Path) -> Path:
    return path if path.is_absolute() else settings.paths.root / path


def _pipeline_path(settings: Settings) -> Path:
    return _resolve(settings, settings.paths.pipeline_path or Path(DEFAULT_PIPELINE_FILE))


def _pipeline(settings: Settings) -> PipelineDefinition:
    path = _pipeline_path(settings)
    if not path.exists():
        raise ValueError(
            f"Pipeline definition not found at {path}; set PROMPT_PIPELINE_PIPELINE_PATH",
        )
    return read_pipeline_definition(
        path,
        default_max_retries=settings.task_runner.max_refinement_attempts,
    )


def _pipeline_or_empty(settings: Settings) -> PipelineDefinition:
    """Pipeline definition when one is configured; queue-only commands work without it."""

    if not _pipeline_path(settings).exists():
        return PipelineDefinition(tasks=())
    return _pipeline(settings)


def _registry(settings: Settings) -> TaskRegistry:
    if not settings.paths.task_registry:
        raise ValueError("Task registry is not configured; set PROMPT_PIPELINE_TASK_REGISTRY")
    return load_task_registry(settings.paths.task_registry, base_dir=settings.paths.root)


def _lifecycle(settings: Settings, pipeline: PipelineDefinition) -> JobLifecycle:
    return JobLifecycle(LifecyclePaths.from_settings(settings), pipeline=pipeline)


def _default_provider(settings: Settings) -> InferenceProvider | None:
    if settings.provider.kind == "scripted":
        return ScriptedProvider(fallback=settings.provider.scripted_reply)
    if not settings.provider.api_key:
        return None
    return OpenAICompatibleProvider(settings.provider)


@contextmanager
def _repository(settings: Settings, db_path: Path | None) -> Iterator[BatchRepository]:
    repository = BatchRepository(
        _resolve(settings, db_path or settings.batch.db_path),
        busy_timeout_ms=settings.batch.busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


def render_event(event: ChangeEvent) -> str:
    return json.dumps(event.to_dict(), ensure_ascii=False, sort_keys=True)
