"""Job lifecycle: the pending/current/complete/rejected directory state machine."""

from __future__ import annotations

import logging
import os
import secrets
import shutil
import signal
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from prompt_pipeline.config import Settings
from prompt_pipeline.core.artifacts import OUTPUT_FILE, TASKS_DIR
from prompt_pipeline.core.contracts import (
    JobStatusRecord,
    Seed,
    append_jsonl,
    load_json,
    read_seed,
    validate_seed,
    write_json,
)
from prompt_pipeline.core.errors import SystemIOError
from prompt_pipeline.core.models import JobLocation, JobStatus, PipelineDefinition
from prompt_pipeline.core.pipeline_runner import SEED_FILE
from prompt_pipeline.core.status import STATUS_FILE, StatusWriter, read_status
from prompt_pipeline.notify.detector import JOB_ID_RE
from prompt_pipeline.notify.notifier import ChangeNotifier, EventType
from prompt_pipeline.storage.common import utc_now, utc_now_iso

logger = logging.getLogger(__name__)

PID_FILE = "runner.pid"
STOP_FILE = "stop-requested.json"
SEED_SUFFIX = "-seed.json"
LOCK_SUFFIX = ".lock"
MOVING_SUFFIX = ".moving"
RUNS_LEDGER = "runs.jsonl"
DEAD_LETTER_DIR = "dead-letter"

# Where a job id is looked up, most authoritative first.
LOCATION_AUTHORITY: tuple[JobLocation, ...] = (
    JobLocation.COMPLETE,
    JobLocation.REJECTED,
    JobLocation.CURRENT,
    JobLocation.PENDING,
)


@dataclass(slots=True)
class LifecyclePaths:
    """Resolved lifecycle directories."""

    data_dir: Path
    pending: Path
    current: Path
    complete: Path
    rejected: Path
    dead_letter: Path

    @classmethod
    def from_data_dir(cls, data_dir: Path) -> LifecyclePaths:
        return cls(
            data_dir=data_dir,
            pending=data_dir / JobLocation.PENDING.value,
            current=data_dir / JobLocation.CURRENT.value,
            complete=data_dir / JobLocation.COMPLETE.value,
            rejected=data_dir / JobLocation.REJECTED.value,
            dead_letter=data_dir / DEAD_LETTER_DIR,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> LifecyclePaths:
        paths = settings.paths
        default = cls.from_data_dir(paths.resolved_data_dir())
        return cls(
            data_dir=default.data_dir,
            pending=paths.pending_dir or default.pending,
            current=paths.current_dir or default.current,
            complete=paths.complete_dir or default.complete,
            rejected=paths.rejected_dir or default.rejected,
            dead_letter=default.dead_letter,
        )

    def ensure(self) -> None:
        for directory in (self.pending, self.current, self.complete, self.rejected):
            directory.mkdir(parents=True, exist_ok=True)

    def location_dir(self, location: JobLocation) -> Path:
        return {
            JobLocation.PENDING: self.pending,
            JobLocation.CURRENT: self.current,
            JobLocation.COMPLETE: self.complete,
            JobLocation.REJECTED: self.rejected,
        }[location]


@dataclass(slots=True)
class JobSummary:
    """Listing row for one job or pending seed."""

    job_id: str
    name: str
    location: JobLocation
    status: JobStatus
    current_task: str | None = None
    created_at: str | None = None
    finished_at: str | None = None


def generate_job_id(now: datetime | None = None) -> str:
    """``pl-<timestamp>-<6 hex>`` with ':' and '.' made filesystem-safe."""

    stamp = (now or utc_now()).isoformat().replace(":", "-").replace(".", "-")
    stamp = stamp.replace("+00-00", "Z")
    return f"pl-{stamp}-{secrets.token_hex(3)}"


def pid_alive(pid: int) -> bool:
    """Return True when a process with ``pid`` exists."""

    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def read_pid(job_dir: Path) -> int | None:
    try:
        return int((job_dir / PID_FILE).read_text("utf-8").strip())
    except (OSError, ValueError):
        return None


class JobLifecycle:
    """Owns every transition between lifecycle directories.

    Moves are copy-then-rename-then-delete: the copy lands in a hidden
    ``.<id>.moving`` staging directory next to the destination and is renamed
    into place, so a destination entry is always complete. A crash between
    the rename and the delete leaves a residual source copy, which
    ``reconcile`` removes because complete/rejected win over current.
    """

    def __init__(
        self,
        paths: LifecyclePaths,
        *,
        pipeline: PipelineDefinition,
        notifier: ChangeNotifier | None = None,
        is_alive: Callable[[int], bool] = pid_alive,
        stale_lock_seconds: float = 60.0,
    ) -> None:
        self.paths = paths
        self.pipeline = pipeline
        self.notifier = notifier
        self._is_alive = is_alive
        self._stale_lock_seconds = stale_lock_seconds
        paths.ensure()

    # -- pending ---------------------------------------------------------------

    def submit_seed(self, payload: Seed | Mapping[str, Any]) -> Path:
        """Validate a seed and drop it into ``pending/<name>-seed.json``."""

        seed = payload if isinstance(payload, Seed) else validate_seed(payload)
        target = self.paths.pending / f"{seed.name}{SEED_SUFFIX}"
        if target.exists():
            raise FileExistsError(f"Seed {seed.name} is already pending")
        try:
            write_json(target, seed.to_dict())
        except OSError as error:
            raise SystemIOError(f"Cannot write seed {target}: {error}") from error
        logger.info("Seed %s submitted to %s", seed.name, target)
        return target

    def list_pending_seeds(self) -> list[Path]:
        if not self.paths.pending.exists():
            return []
        seeds = [
            path
            for path in self.paths.pending.iterdir()
            if path.is_file() and path.name.endswith(SEED_SUFFIX)
        ]
        return sorted(seeds, key=lambda path: (path.stat().st_mtime_ns, path.name))

    def promote(self, seed_path: Path) -> str | None:
        """Move one pending seed to ``current/<id>``; return the job id.

        Returns None when another promoter holds the lock or the seed was
        rejected as invalid.
        """

        name = seed_path.name.removesuffix(SEED_SUFFIX)
        lock_path = self.paths.current / f"{name}{LOCK_SUFFIX}"
        try:
            lock_fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            logger.debug("Seed %s is locked by another promoter", name)
            return None
        try:
            os.write(lock_fd, str(os.getpid()).encode())
            os.close(lock_fd)
            if not seed_path.exists():
                return None
            try:
                seed = read_seed(seed_path)
            except (TypeError, ValueError) as error:
                self._reject_seed(seed_path, str(error))
                return None

            job_id = seed.job_id or generate_job_id()
            if self.locate(job_id) is not None:
                self._reject_seed(seed_path, f"Job {job_id} already exists")
                return None

            self._create_job_dir(job_id, seed)
            seed_path.unlink()
            logger.info("Job %s promoted from seed %s", job_id, seed_path.name)
            self._publish(JobLocation.CURRENT, job_id, "created")
            return job_id
        finally:
            lock_path.unlink(missing_ok=True)

    def _create_job_dir(self, job_id: str, seed: Seed) -> Path:
        staging = self.paths.current / f".{job_id}{MOVING_SUFFIX}"
        job_dir = self.paths.current / job_id
        if staging.exists():
            shutil.rmtree(staging)
        try:
            (staging / TASKS_DIR).mkdir(parents=True)
            write_json(staging / SEED_FILE, seed.to_dict())
            now = utc_now_iso()
            record = JobStatusRecord(
                job_id=job_id,
                name=seed.name,
                pipeline=seed.pipeline or self.pipeline.name,
                created_at=now,
                last_updated=now,
            )
            write_json(staging / STATUS_FILE, record.to_dict())
            staging.rename(job_dir)
        except OSError as error:
            shutil.rmtree(staging, ignore_errors=True)
            raise SystemIOError(f"Cannot create job directory {job_dir}: {error}") from error
        return job_dir

    def _reject_seed(self, seed_path: Path, reason: str) -> None:
        target = self.paths.rejected / seed_path.name
        logger.warning("Rejecting seed %s: %s", seed_path.name, reason)
        os.replace(seed_path, target)
        write_json(
            self.paths.rejected / f"{seed_path.name.removesuffix('.json')}-error.json",
            {"seed": seed_path.name, "error": reason, "rejectedAt": utc_now_iso()},
        )

    # -- transitions -----------------------------------------------------------

    def job_dir(self, job_id: str, location: JobLocation = JobLocation.CURRENT) -> Path:
        return self.paths.location_dir(location) / job_id

    def complete(self, job_id: str) -> Path:
        """Move a finished job to ``complete`` and append the run ledger."""

        status = self._status(self.job_dir(job_id))
        record = status.update(_mark_finished)
        destination = self._move(job_id, JobLocation.CURRENT, JobLocation.COMPLETE)
        append_jsonl(self.paths.complete / RUNS_LEDGER, _ledger_entry(record, destination))
        logger.info("Job %s completed", job_id)
        return destination

    def reject(self, job_id: str, reason: Mapping[str, Any] | None = None) -> Path:
        """Move a failed or stopped job to ``rejected``."""

        def _apply(record: JobStatusRecord) -> None:
            _mark_finished(record)
            if reason is not None:
                record.extra["rejection"] = dict(reason)

        self._status(self.job_dir(job_id)).update(_apply)
        destination = self._move(job_id, JobLocation.CURRENT, JobLocation.REJECTED)
        logger.warning("Job %s rejected: %s", job_id, (reason or {}).get("message"))
        return destination

    def restart(self, job_id: str, *, from_task: str | None = None) -> Path:
        """Move a complete or rejected job back to ``current`` for re-execution.

        Task records from ``from_task`` onward (all of them when omitted) are
        replaced by fresh records and their task directories are cleared.
        """

        location = self.locate(job_id)
        if location not in {JobLocation.COMPLETE, JobLocation.REJECTED}:
            raise ValueError(f"Job {job_id} is not complete or rejected (found: {location})")
        tasks = list(self.pipeline.tasks)
        if from_task is not None and from_task not in tasks:
            raise ValueError(f"Unknown task {from_task!r} for pipeline {self.pipeline.name}")
        reset = tasks if from_task is None else tasks[tasks.index(from_task) :]

        job_dir = self._move(job_id, location, JobLocation.CURRENT)
        for task_name in reset:
            shutil.rmtree(job_dir / TASKS_DIR / task_name, ignore_errors=True)
        (job_dir / STOP_FILE).unlink(missing_ok=True)

        def _apply(record: JobStatusRecord) -> None:
            for task_name in reset:
                record.tasks.pop(task_name, None)
            record.finished_at = None
            record.current = None
            record.current_stage = None
            record.extra.pop("rejection", None)
            record.state = JobStatus.PENDING

        self._status(job_dir).update(_apply)
        logger.info("Job %s restarted from %s", job_id, from_task or "the first task")
        return job_dir

    def move_to_dead_letter(self, job_id: str, error: Mapping[str, Any]) -> Path:
        """Park a job whose runner could not be started."""

        source = self.job_dir(job_id)
        destination = self.paths.dead_letter / job_id
        self.paths.dead_letter.mkdir(parents=True, exist_ok=True)
        self._copy_then_delete(source, destination)
        write_json(
            self.paths.dead_letter / f"{job_id}-error.json",
            {"jobId": job_id, "error": dict(error), "movedAt": utc_now_iso()},
        )
        self._publish(JobLocation.CURRENT, job_id, "deleted")
        logger.error("Job %s moved to dead letter: %s", job_id, error.get("message"))
        return destination

    def _move(self, job_id: str, source_location: JobLocation, target: JobLocation) -> Path:
        source = self.job_dir(job_id, source_location)
        destination = self.job_dir(job_id, target)
        if not source.is_dir():
            raise FileNotFoundError(f"Job {job_id} not found in {source_location.value}")
        if destination.exists():
            raise FileExistsError(f"Job {job_id} already exists in {target.value}")
        self._copy_then_delete(source, destination)
        self._publish(source_location, job_id, "deleted")
        self._publish(target, job_id, "created")
        return destination

    @staticmethod
    def _copy_then_delete(source: Path, destination: Path) -> None:
        staging = destination.with_name(f".{destination.name}{MOVING_SUFFIX}")
        try:
            if staging.exists():
                shutil.rmtree(staging)
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copytree(source, staging)
            staging.rename(destination)
            shutil.rmtree(source)
        except OSError as error:
            raise SystemIOError(f"Cannot move {source} to {destination}: {error}") from error

    # -- queries ---------------------------------------------------------------

    def locate(self, job_id: str) -> JobLocation | None:
        """Authoritative location of a job id: complete/rejected beat current."""

        for location in LOCATION_AUTHORITY:
            if (self.paths.location_dir(location) / job_id).is_dir():
                return location
        return None

    def read_status(self, job_id: str) -> tuple[JobLocation, JobStatusRecord]:
        location = self.locate(job_id)
        if location is None:
            raise FileNotFoundError(f"Job {job_id} not found")
        return location, read_status(self.job_dir(job_id, location))

    def job_ids(self, location: JobLocation) -> list[str]:
        directory = self.paths.location_dir(location)
        if not directory.exists():
            return []
        return sorted(
            entry.name
            for entry in directory.iterdir()
            if entry.is_dir() and JOB_ID_RE.match(entry.name)
        )

    def list_jobs(self) -> list[JobSummary]:
        summaries: list[JobSummary] = []
        for seed_path in self.list_pending_seeds():
            name = seed_path.name.removesuffix(SEED_SUFFIX)
            summaries.append(
                JobSummary(
                    job_id=name,
                    name=name,
                    location=JobLocation.PENDING,
                    status=JobStatus.PENDING,
                ),
            )
        seen: set[str] = set()
        for location in LOCATION_AUTHORITY[:3]:
            for job_id in self.job_ids(location):
                if job_id in seen:
                    continue
                seen.add(job_id)
                try:
                    record = read_status(self.job_dir(job_id, location))
                except (SystemIOError, TypeError, ValueError):
                    logger.warning("Skipping job %s with unreadable status", job_id)
                    continue
                summaries.append(
                    JobSummary(
                        job_id=job_id,
                        name=record.name,
                        location=location,
                        status=record.state,
                        current_task=record.current,
                        created_at=record.created_at,
                        finished_at=record.finished_at,
                    ),
                )
        return summaries

    # -- stop / pid ------------------------------------------------------------

    def request_stop(self, job_id: str) -> bool:
        """Ask the runner of a current job to stop between stages.

        Returns True when a live runner process was signalled.
        """

        if self.locate(job_id) is not JobLocation.CURRENT:
            raise ValueError(f"Job {job_id} is not running")
        job_dir = self.job_dir(job_id)
        write_json(job_dir / STOP_FILE, {"jobId": job_id, "requestedAt": utc_now_iso()})
        pid = read_pid(job_dir)
        if pid is None or pid == os.getpid() or not self._is_alive(pid):
            return False
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            return False
        logger.info("Sent SIGTERM to runner %d of job %s", pid, job_id)
        return True

    @staticmethod
    def stop_requested(job_dir: Path) -> bool:
        return (job_dir / STOP_FILE).exists()

    @staticmethod
    def write_pid(job_dir: Path, pid: int | None = None) -> None:
        (job_dir / PID_FILE).write_text(str(pid or os.getpid()), "utf-8")

    @staticmethod
    def clear_pid(job_dir: Path) -> None:
        (job_dir / PID_FILE).unlink(missing_ok=True)

    # -- recovery --------------------------------------------------------------

    def reconcile(self) -> list[str]:
        """Remove residues left by interrupted moves; return affected job ids."""

        affected: list[str] = []
        for job_id in self.job_ids(JobLocation.CURRENT):
            for winner in (JobLocation.COMPLETE, JobLocation.REJECTED):
                if self.job_dir(job_id, winner).is_dir():
                    logger.warning(
                        "Job %s exists in current and %s; removing current copy",
                        job_id,
                        winner.value,
                    )
                    shutil.rmtree(self.job_dir(job_id))
                    affected.append(job_id)
                    break
        for location in (JobLocation.CURRENT, JobLocation.COMPLETE, JobLocation.REJECTED):
            directory = self.paths.location_dir(location)
            for entry in directory.glob(f".*{MOVING_SUFFIX}"):
                logger.warning("Removing interrupted move staging directory %s", entry)
                shutil.rmtree(entry, ignore_errors=True)
        now = time.time()
        for lock in self.paths.current.glob(f"*{LOCK_SUFFIX}"):
            try:
                age = now - lock.stat().st_mtime
            except FileNotFoundError:
                continue
            if age > self._stale_lock_seconds:
                logger.warning("Removing stale promotion lock %s", lock.name)
                lock.unlink(missing_ok=True)
        return affected

    def find_orphaned_jobs(self) -> list[str]:
        """Current jobs whose runner process is missing or dead."""

        orphans: list[str] = []
        for job_id in self.job_ids(JobLocation.CURRENT):
            pid = read_pid(self.job_dir(job_id))
            if pid is None or not self._is_alive(pid):
                orphans.append(job_id)
        return orphans

    def recover(self, *, clean_slate: bool = False) -> list[str]:
        """Reconcile residues and prepare orphaned jobs for re-execution.

        Resumed jobs keep their ``done`` tasks; clean-slate jobs are rebuilt in
        ``current`` from their seed.
        Returns the ids that need a runner.
        """

        self.reconcile()
        orphans = self.find_orphaned_jobs()
        for job_id in orphans:
            self.recover_job(job_id, clean_slate=clean_slate)
        return orphans

    def recover_job(self, job_id: str, *, clean_slate: bool = False) -> Path:
        """Prepare one current job whose runner is gone for a new runner."""

        job_dir = self.job_dir(job_id)
        self.clear_pid(job_dir)
        if clean_slate:
            job_dir = self.reseed(job_id)
            logger.warning("Orphaned job %s rebuilt in current from its seed", job_id)
        else:
            logger.warning("Orphaned job %s will resume", job_id)
        return job_dir

    def reseed(self, job_id: str) -> Path:
        """Clear a current job's working directory and re-initialize it from its seed."""

        job_dir = self.job_dir(job_id)
        try:
            seed = validate_seed(load_json(job_dir / SEED_FILE))
        except OSError as error:
            raise SystemIOError(f"Cannot read seed of job {job_id}: {error}") from error
        shutil.rmtree(job_dir)
        return self._create_job_dir(job_id, seed)

    def _status(self, job_dir: Path) -> StatusWriter:
        return StatusWriter(job_dir, notifier=self.notifier, expected_tasks=self.pipeline.tasks)

    def _publish(self, location: JobLocation, job_id: str, change_type: str) -> None:
        if self.notifier is None:
            return
        self.notifier.publish_path(
            EventType.STATE_CHANGE,
            f"{location.value}/{job_id}",
            change_type=change_type,
        )


def _mark_finished(record: JobStatusRecord) -> None:
    record.finished_at = utc_now_iso()
    record.current = None
    record.current_stage = None


def _ledger_entry(record: JobStatusRecord, job_dir: Path) -> dict[str, Any]:
    return {
        "id": record.job_id,
        "finishedAt": record.finished_at,
        "tasks": list(record.tasks),
        "totalExecutionTime": sum(
            task.execution_time_ms or 0 for task in record.tasks.values()
        ),
        "totalRefinementAttempts": sum(task.attempts for task in record.tasks.values()),
        "finalArtifacts": sorted(
            name for name in record.tasks if (job_dir / TASKS_DIR / name / OUTPUT_FILE).exists()
        ),
    }
