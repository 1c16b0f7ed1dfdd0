from __future__ import annotations

import subprocess
import sys

import allure
import pytest

from prompt_pipeline.core.lifecycle import PID_FILE, STOP_FILE
from prompt_pipeline.core.models import JobLocation
from prompt_pipeline.core.orchestrator import (
    EXIT_COMPLETE,
    EXIT_REJECTED,
    InlineJobLauncher,
    JobExecutor,
    Orchestrator,
    SubprocessJobLauncher,
    default_runner_command,
)
from prompt_pipeline.core.pipeline_runner import PipelineOutcome, PipelineRunner
from prompt_pipeline.providers.scripted import ScriptedProvider

pytestmark = [
    allure.epic("Job Lifecycle"),
    allure.feature("Orchestrator"),
]


def _executor(lifecycle, pipeline, registry, reply: str = '{"summary": "ok"}') -> JobExecutor:
    runner = PipelineRunner(
        registry=registry,
        pipeline=pipeline,
        provider=ScriptedProvider(fallback=reply),
    )
    return JobExecutor(lifecycle=lifecycle, runner=runner)


class _FakeProcess:
    def __init__(self, pid: int, *, exit_code: int | None = None, stubborn: bool = False) -> None:
        self.pid = pid
        self.exit_code = exit_code
        self.stubborn = stubborn
        self.terminated = False
        self.killed = False

    def poll(self) -> int | None:
        return self.exit_code

    def terminate(self) -> None:
        self.terminated = True
        if not self.stubborn:
            self.exit_code = -15

    def kill(self) -> None:
        self.killed = True
        self.exit_code = -9

    def wait(self, timeout: float | None = None) -> int:
        if self.exit_code is None:
            raise subprocess.TimeoutExpired(cmd="runner", timeout=timeout or 0)
        return self.exit_code


class _RecordingLauncher:
    """Launcher whose runners finish on the next poll with a fixed exit code.

    With a lifecycle, each runner completes its job, except the first
    ``crashes`` runs, which exit leaving the job and a pid file in current.
    """

    def __init__(
        self,
        exit_code: int = EXIT_COMPLETE,
        *,
        lifecycle=None,
        crashes: int = 0,
    ) -> None:
        self.exit_code = exit_code
        self.lifecycle = lifecycle
        self.crashes = crashes
        self.launched: list[str] = []
        self._pending: list[str] = []
        self.shutdown_calls = 0

    def launch(self, job_id: str) -> None:
        self.launched.append(job_id)
        self._pending.append(job_id)

    def poll(self) -> list[tuple[str, int]]:
        finished, self._pending = self._pending, []
        if self.lifecycle is not None:
            for job_id in finished:
                if self.crashes > 0:
                    self.crashes -= 1
                    self.lifecycle.write_pid(self.lifecycle.job_dir(job_id), 999_999)
                else:
                    self.lifecycle.complete(job_id)
        return [(job_id, self.exit_code) for job_id in finished]

    def running(self) -> list[str]:
        return list(self._pending)

    def shutdown(self, grace_seconds: float) -> None:
        self.shutdown_calls += 1


def test_executor_completes_successful_job(lifecycle, pipeline, registry, promote_job):
    job_id = promote_job()

    result = _executor(lifecycle, pipeline, registry).execute(job_id)

    assert result.ok
    assert lifecycle.locate(job_id) is JobLocation.COMPLETE
    assert not (lifecycle.job_dir(job_id, JobLocation.COMPLETE) / PID_FILE).exists()


def test_executor_rejects_failed_job_with_reason(lifecycle, pipeline, registry, promote_job):
    job_id = promote_job()

    result = _executor(lifecycle, pipeline, registry, reply='{"summary": "   "}').execute(job_id)

    assert result.status == PipelineOutcome.FAILED
    location, record = lifecycle.read_status(job_id)
    assert location is JobLocation.REJECTED
    rejection = record.extra["rejection"]
    assert rejection["kind"] == "validation"
    assert rejection["outcome"] == "failed"
    assert rejection["task"] == "summarize"


def test_executor_honours_stop_file(lifecycle, pipeline, registry, promote_job):
    job_id = promote_job()
    (lifecycle.job_dir(job_id) / STOP_FILE).write_text("{}", "utf-8")

    result = _executor(lifecycle, pipeline, registry).execute(job_id)

    assert result.status == PipelineOutcome.CANCELLED
    _, record = lifecycle.read_status(job_id)
    assert record.extra["rejection"]["outcome"] == "cancelled"


def test_executor_requires_current_job(lifecycle, pipeline, registry, promote_job):
    job_id = promote_job()
    lifecycle.reject(job_id)

    with pytest.raises(ValueError, match="is not in current"):
        _executor(lifecycle, pipeline, registry).execute(job_id)


def test_inline_orchestrator_drains_pending_queue(lifecycle, pipeline, registry):
    for name in ("first", "second"):
        lifecycle.submit_seed({"name": name, "id": name, "data": {"text": name}})
    progress: list[str] = []
    orchestrator = Orchestrator(
        lifecycle=lifecycle,
        launcher=InlineJobLauncher(_executor(lifecycle, pipeline, registry)),
        poll_interval_seconds=0,
        on_progress=progress.append,
    )

    summary = orchestrator.run_loop(max_idle_polls=1)

    assert summary.promoted == 2
    assert summary.launched == 2
    assert summary.finished == 2
    assert lifecycle.job_ids(JobLocation.COMPLETE) == ["first", "second"]
    assert lifecycle.list_pending_seeds() == []
    assert any("Job first promoted" in line for line in progress)


def test_run_loop_relaunches_orphaned_jobs_first(lifecycle, promote_job):
    job_id = promote_job()
    launcher = _RecordingLauncher(lifecycle=lifecycle)
    orchestrator = Orchestrator(lifecycle=lifecycle, launcher=launcher, poll_interval_seconds=0)

    summary = orchestrator.run_loop(max_idle_polls=1)

    assert summary.recovered == 1
    assert launcher.launched == [job_id]
    assert summary.finished == 1
    assert launcher.shutdown_calls == 1


def test_run_loop_stops_after_max_jobs(lifecycle):
    for name in ("a", "b", "c"):
        lifecycle.submit_seed({"name": name, "id": name, "data": {}})
    launcher = _RecordingLauncher(lifecycle=lifecycle)
    orchestrator = Orchestrator(lifecycle=lifecycle, launcher=launcher, poll_interval_seconds=0)

    summary = orchestrator.run_loop(max_jobs=1)

    assert summary.promoted == 3
    assert launcher.launched == ["a", "b", "c"]


def test_stop_request_ends_loop_without_promoting(lifecycle):
    lifecycle.submit_seed({"name": "later", "data": {}})
    launcher = _RecordingLauncher()
    orchestrator = Orchestrator(lifecycle=lifecycle, launcher=launcher, poll_interval_seconds=0)
    orchestrator.request_stop("SIGTERM")

    summary = orchestrator.run_loop()

    assert summary.promoted == 0
    assert len(lifecycle.list_pending_seeds()) == 1
    assert launcher.shutdown_calls == 1


def test_spawn_failure_moves_job_to_dead_letter(lifecycle):
    lifecycle.submit_seed({"name": "doomed", "id": "doomed", "data": {}})
    sleeps: list[float] = []

    def _popen(command, cwd=None):
        raise OSError("exec format error")

    launcher = SubprocessJobLauncher(
        spawn_retries=3,
        spawn_retry_delay_seconds=0.5,
        popen=_popen,
        sleep=sleeps.append,
    )
    orchestrator = Orchestrator(lifecycle=lifecycle, launcher=launcher, poll_interval_seconds=0)

    summary = orchestrator.run_once()

    assert summary.promoted == 1
    assert summary.dead_lettered == 1
    assert summary.launched == 0
    assert sleeps == [0.5, 0.5]
    assert lifecycle.locate("doomed") is None
    assert (lifecycle.paths.dead_letter / "doomed-error.json").exists()


def test_subprocess_launcher_retries_then_tracks_child(tmp_path):
    attempts: list[list[str]] = []
    process = _FakeProcess(pid=321)

    def _popen(command, cwd=None):
        attempts.append(command)
        if len(attempts) == 1:
            raise OSError("temporarily unavailable")
        return process

    launcher = SubprocessJobLauncher(
        command_factory=lambda job_id: ["runner", job_id],
        cwd=tmp_path,
        popen=_popen,
        sleep=lambda _delay: None,
    )

    launcher.launch("job-1")

    assert attempts == [["runner", "job-1"], ["runner", "job-1"]]
    assert launcher.running() == ["job-1"]
    assert launcher.poll() == []
    process.exit_code = EXIT_REJECTED
    assert launcher.poll() == [("job-1", EXIT_REJECTED)]
    assert launcher.running() == []


def test_subprocess_launcher_shutdown_kills_stubborn_children():
    polite = _FakeProcess(pid=1)
    stubborn = _FakeProcess(pid=2, stubborn=True)
    children = iter([polite, stubborn])
    launcher = SubprocessJobLauncher(popen=lambda command, cwd=None: next(children))
    launcher.launch("polite")
    launcher.launch("stubborn")

    launcher.shutdown(grace_seconds=0)

    assert polite.terminated and not polite.killed
    assert stubborn.terminated and stubborn.killed
    assert launcher.running() == []


def test_default_runner_command_targets_run_job():
    command = default_runner_command("job-9")

    assert command[0] == sys.executable
    assert command[-2:] == ["run-job", "job-9"]


def test_runner_exit_leaving_job_in_current_relaunches_it(lifecycle):
    lifecycle.submit_seed({"name": "flaky", "id": "flaky", "data": {}})
    launcher = _RecordingLauncher(lifecycle=lifecycle, crashes=1)
    orchestrator = Orchestrator(lifecycle=lifecycle, launcher=launcher, poll_interval_seconds=0)

    first = orchestrator.run_once()

    assert first.promoted == 1
    assert first.finished == 1
    assert first.recovered == 1
    assert first.launched == 2
    assert not (lifecycle.job_dir("flaky") / PID_FILE).exists()

    second = orchestrator.run_once()

    assert second.finished == 1
    assert launcher.launched == ["flaky", "flaky"]
    assert lifecycle.locate("flaky") is JobLocation.COMPLETE


def test_runner_that_keeps_exiting_gets_job_rejected(lifecycle):
    lifecycle.submit_seed({"name": "doomed", "id": "doomed", "data": {}})
    launcher = _RecordingLauncher(exit_code=-9, lifecycle=lifecycle, crashes=10)
    orchestrator = Orchestrator(
        lifecycle=lifecycle,
        launcher=launcher,
        poll_interval_seconds=0,
        max_relaunches=1,
    )

    orchestrator.run_once()
    orchestrator.run_once()

    assert launcher.launched == ["doomed", "doomed"]
    location, record = lifecycle.read_status("doomed")
    assert location is JobLocation.REJECTED
    rejection = record.extra["rejection"]
    assert rejection["kind"] == "unexpected"
    assert rejection["outcome"] == "runner_exited"
    assert "code -9" in rejection["message"]


def test_runner_exit_during_shutdown_is_left_for_recovery(lifecycle, promote_job):
    job_id = promote_job()
    launcher = _RecordingLauncher(lifecycle=lifecycle, crashes=1)
    launcher.launch(job_id)
    orchestrator = Orchestrator(lifecycle=lifecycle, launcher=launcher, poll_interval_seconds=0)
    orchestrator.request_stop("SIGTERM")

    summary = orchestrator.run_once()

    assert summary.finished == 1
    assert summary.recovered == 0
    assert launcher.launched == [job_id]
    assert lifecycle.locate(job_id) is JobLocation.CURRENT
