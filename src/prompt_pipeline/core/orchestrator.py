"""Pending-queue orchestrator: promotes seeds and runs each job in its own process."""

from __future__ import annotations

import logging
import signal
import subprocess
import sys
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from prompt_pipeline.core.errors import ErrorKind, normalize_error
from prompt_pipeline.core.lifecycle import JobLifecycle
from prompt_pipeline.core.models import JobLocation
from prompt_pipeline.core.pipeline_runner import PipelineOutcome, PipelineRunner, PipelineRunResult
from prompt_pipeline.core.retry import RetryOptions, with_retry

logger = logging.getLogger(__name__)

EXIT_COMPLETE = 0
EXIT_REJECTED = 2


class JobExecutor:
    """Runs one promoted job to a terminal location inside this process."""

    def __init__(self, *, lifecycle: JobLifecycle, runner: PipelineRunner) -> None:
        self.lifecycle = lifecycle
        self.runner = runner

    def execute(
        self,
        job_id: str,
        *,
        should_stop: Callable[[], bool] | None = None,
    ) -> PipelineRunResult:
        """Run the job, then move it to ``complete`` or ``rejected``."""

        location = self.lifecycle.locate(job_id)
        if location is not JobLocation.CURRENT:
            raise ValueError(f"Job {job_id} is not in current (found: {location})")
        job_dir = self.lifecycle.job_dir(job_id)

        def _stop() -> bool:
            if should_stop is not None and should_stop():
                return True
            return self.lifecycle.stop_requested(job_dir)

        self.lifecycle.write_pid(job_dir)
        try:
            result = self.runner.run(job_dir, should_stop=_stop)
        except Exception as error:  # noqa: BLE001
            logger.exception("Job %s aborted", job_id)
            result = PipelineRunResult(
                job_id=job_id,
                status=PipelineOutcome.FAILED,
                error=normalize_error(error),
            )
        finally:
            self.lifecycle.clear_pid(job_dir)

        if result.ok:
            self.lifecycle.complete(job_id)
        else:
            reason = dict(result.error or {})
            reason["outcome"] = result.status
            if result.failed_task is not None:
                reason["task"] = result.failed_task
            self.lifecycle.reject(job_id, reason)
        return result


class JobLauncher(Protocol):
    """Starts job runners and reports the ones that finished."""

    def launch(self, job_id: str) -> None: ...

    def poll(self) -> list[tuple[str, int]]: ...

    def running(self) -> list[str]: ...

    def shutdown(self, grace_seconds: float) -> None: ...


class InlineJobLauncher:
    """Runs jobs synchronously in the calling process."""

    def __init__(self, executor: JobExecutor) -> None:
        self.executor = executor
        self._finished: list[tuple[str, int]] = []

    def launch(self, job_id: str) -> None:
        result = self.executor.execute(job_id)
        self._finished.append((job_id, EXIT_COMPLETE if result.ok else EXIT_REJECTED))

    def poll(self) -> list[tuple[str, int]]:
        finished, self._finished = self._finished, []
        return finished

    def running(self) -> list[str]:
        return []

    def shutdown(self, grace_seconds: float) -> None:
        return None


def default_runner_command(job_id: str) -> list[str]:
    return [sys.executable, "-m", "prompt_pipeline.main", "run-job", job_id]


class SubprocessJobLauncher:
    """Spawns one runner process per job, retrying failed spawns."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        command_factory: Callable[[str], Sequence[str]] = default_runner_command,
        spawn_retries: int = 3,
        spawn_retry_delay_seconds: float = 1.0,
        cwd: Path | None = None,
        popen: Callable[..., subprocess.Popen[bytes]] = subprocess.Popen,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.command_factory = command_factory
        self.spawn_retries = spawn_retries
        self.spawn_retry_delay_seconds = spawn_retry_delay_seconds
        self.cwd = cwd
        self._popen = popen
        self._sleep = sleep
        self._children: dict[str, subprocess.Popen[bytes]] = {}

    def launch(self, job_id: str) -> None:
        command = list(self.command_factory(job_id))

        def _spawn() -> subprocess.Popen[bytes]:
            return self._popen(command, cwd=self.cwd)

        def _on_retry(attempt: int, delay: float, error: BaseException) -> None:
            logger.warning(
                "Spawn of runner for job %s failed (%s); attempt %d in %.1fs",
                job_id,
                error,
                attempt,
                delay,
            )

        process = with_retry(
            _spawn,
            RetryOptions(
                max_attempts=self.spawn_retries,
                initial_delay=self.spawn_retry_delay_seconds,
                max_delay=self.spawn_retry_delay_seconds,
                backoff_multiplier=1.0,
                should_retry=lambda error: isinstance(error, OSError),
                on_retry=_on_retry,
            ),
            sleep=self._sleep,
        )
        self._children[job_id] = process
        logger.info("Runner for job %s started with pid %d", job_id, process.pid)

    def poll(self) -> list[tuple[str, int]]:
        finished: list[tuple[str, int]] = []
        for job_id, process in list(self._children.items()):
            code = process.poll()
            if code is None:
                continue
            del self._children[job_id]
            finished.append((job_id, code))
        return finished

    def running(self) -> list[str]:
        return sorted(self._children)

    def shutdown(self, grace_seconds: float) -> None:
        """SIGTERM every child, then SIGKILL those still alive after the grace period."""

        for process in self._children.values():
            if process.poll() is None:
                process.terminate()
        deadline = time.monotonic() + grace_seconds
        for job_id, process in list(self._children.items()):
            remaining = max(0.0, deadline - time.monotonic())
            try:
                process.wait(timeout=remaining)
            except subprocess.TimeoutExpired:
                logger.warning("Runner for job %s ignored SIGTERM; killing", job_id)
                process.kill()
                process.wait()
        self._children.clear()


@dataclass(slots=True)
class OrchestratorRunSummary:
    """Aggregate orchestrator counters for CLI reporting."""

    promoted: int = 0
    launched: int = 0
    finished: int = 0
    dead_lettered: int = 0
    recovered: int = 0
    idle_polls: int = 0


class Orchestrator:
    """Watches ``pending`` and hands promoted jobs to a launcher."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        lifecycle: JobLifecycle,
        launcher: JobLauncher,
        poll_interval_seconds: float = 1.0,
        shutdown_grace_seconds: float = 2.0,
        clean_slate_restart: bool = False,
        max_relaunches: int = 1,
        on_progress: Callable[[str], None] | None = None,
    ) -> None:
        self.lifecycle = lifecycle
        self.launcher = launcher
        self.poll_interval_seconds = poll_interval_seconds
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.clean_slate_restart = clean_slate_restart
        self.max_relaunches = max_relaunches
        self._relaunches: dict[str, int] = {}
        self._on_progress = on_progress or (lambda _msg: None)
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def _emit(self, msg: str) -> None:
        logger.info(msg)
        self._on_progress(msg)

    def recover(self) -> OrchestratorRunSummary:
        """Relaunch jobs left in ``current`` by a dead runner."""

        summary = OrchestratorRunSummary()
        for job_id in self.lifecycle.recover(clean_slate=self.clean_slate_restart):
            summary.recovered += 1
            self._emit(f"Recovering job {job_id}")
            self._launch(job_id, summary)
        return summary

    def run_once(self) -> OrchestratorRunSummary:
        """Reap finished runners and promote every pending seed once."""

        summary = OrchestratorRunSummary()
        self._reap(summary)
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        for seed_path in self.lifecycle.list_pending_seeds():
            if self._stop_requested:
                break
            job_id = self.lifecycle.promote(seed_path)
            if job_id is None:
                continue
            summary.promoted += 1
            self._emit(f"Job {job_id} promoted from {seed_path.name}")
            self._launch(job_id, summary)

        self._reap(summary)
        if summary.promoted == 0:
            summary.idle_polls = 1
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = None,
    ) -> OrchestratorRunSummary:
        """Run until stopped, ``max_jobs`` promoted, or ``max_idle_polls`` empty polls.

        Idle polls only count while no runner is alive.
        """

        aggregate = OrchestratorRunSummary()
        consecutive_idle = 0
        with signal_stop_handlers(lambda name: self.request_stop(signal_name=name)):
            _merge(aggregate, self.recover())
            try:
                while not self._stop_requested:
                    summary = self.run_once()
                    _merge(aggregate, summary)
                    if max_jobs is not None and aggregate.promoted >= max_jobs:
                        self._wait_for_runners(aggregate)
                        break
                    if summary.promoted == 0 and not self.launcher.running():
                        consecutive_idle += 1
                        if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                            break
                    else:
                        consecutive_idle = 0
                    self._sleep_with_stop(self.poll_interval_seconds)
            finally:
                if self.launcher.running():
                    self._emit(
                        f"Stopping {len(self.launcher.running())} runner(s) "
                        f"(signal: {self._stop_signal_name or 'none'})",
                    )
                self.launcher.shutdown(self.shutdown_grace_seconds)
        return aggregate

    def request_stop(self, signal_name: str | None = None) -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name

    def _launch(self, job_id: str, summary: OrchestratorRunSummary) -> None:
        try:
            self.launcher.launch(job_id)
        except OSError as error:
            logger.exception("Cannot start runner for job %s", job_id)
            self.lifecycle.move_to_dead_letter(job_id, normalize_error(error))
            summary.dead_lettered += 1
            return
        summary.launched += 1

    def _reap(self, summary: OrchestratorRunSummary) -> None:
        for job_id, code in self.launcher.poll():
            summary.finished += 1
            location = self.lifecycle.locate(job_id)
            self._emit(f"Job {job_id} runner exited ({code}); location: {location}")
            if location is JobLocation.CURRENT:
                self._handle_stranded(job_id, code, summary)
            else:
                self._relaunches.pop(job_id, None)

    def _handle_stranded(self, job_id: str, code: int, summary: OrchestratorRunSummary) -> None:
        """Relaunch a job its runner left in ``current``, then give up and reject it."""

        if self._stop_requested:
            logger.warning(
                "Runner for job %s exited with code %d during shutdown; left for recovery",
                job_id,
                code,
            )
            return
        relaunches = self._relaunches.get(job_id, 0)
        if relaunches >= self.max_relaunches:
            self._relaunches.pop(job_id, None)
            self.lifecycle.reject(
                job_id,
                {
                    "kind": ErrorKind.UNEXPECTED.value,
                    "outcome": "runner_exited",
                    "message": (
                        f"Runner exited with code {code} without finishing the job "
                        f"after {relaunches} relaunch(es)"
                    ),
                },
            )
            return
        logger.warning(
            "Runner for job %s exited with code %d without finishing the job; relaunching",
            job_id,
            code,
        )
        self._relaunches[job_id] = relaunches + 1
        self.lifecycle.recover_job(job_id, clean_slate=self.clean_slate_restart)
        summary.recovered += 1
        self._launch(job_id, summary)

    def _wait_for_runners(self, summary: OrchestratorRunSummary) -> None:
        while self.launcher.running() and not self._stop_requested:
            self._sleep_with_stop(self.poll_interval_seconds)
            self._reap(summary)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))


def _merge(aggregate: OrchestratorRunSummary, summary: OrchestratorRunSummary) -> None:
    aggregate.promoted += summary.promoted
    aggregate.launched += summary.launched
    aggregate.finished += summary.finished
    aggregate.dead_lettered += summary.dead_lettered
    aggregate.recovered += summary.recovered
    aggregate.idle_polls += summary.idle_polls


@contextmanager
def signal_stop_handlers(on_signal: Callable[[str], None]) -> Iterator[None]:
    """Route SIGINT and SIGTERM to ``on_signal(name)`` for the duration of the block."""

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        on_signal(name)

    installed = True
    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        installed = False
    try:
        yield
    finally:
        if installed:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
