"""Serialized read-modify-write access to a job's ``tasks-status.json``."""

from __future__ import annotations

import threading
import weakref
from collections.abc import Callable, Sequence
from pathlib import Path

from prompt_pipeline.core.contracts import JobStatusRecord, load_json, write_json
from prompt_pipeline.core.errors import SystemIOError
from prompt_pipeline.core.models import FILE_KINDS, TaskRecord, derive_job_status
from prompt_pipeline.notify.notifier import ChangeNotifier, EventType
from prompt_pipeline.storage.common import utc_now_iso

STATUS_FILE = "tasks-status.json"

# Entries live only while some StatusWriter for the directory is alive.
_LOCKS: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
_LOCKS_GUARD = threading.Lock()


def _lock_for(job_dir: Path) -> threading.Lock:
    key = str(job_dir.resolve())
    with _LOCKS_GUARD:
        lock = _LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _LOCKS[key] = lock
        return lock


def read_status(job_dir: Path) -> JobStatusRecord:
    """Read and validate the status record of a job directory."""

    path = job_dir / STATUS_FILE
    try:
        return JobStatusRecord.from_dict(load_json(path))
    except OSError as error:
        raise SystemIOError(f"Cannot read status file {path}: {error}") from error


class StatusWriter:
    """Status persistence for one job directory.

    All writers of the same directory within a process share one lock, so
    concurrent ``update`` calls never interleave their read and write halves.
    Every write goes through a temp file and rename.
    """

    def __init__(
        self,
        job_dir: Path,
        *,
        notifier: ChangeNotifier | None = None,
        expected_tasks: Sequence[str] = (),
    ) -> None:
        self.job_dir = job_dir
        self.notifier = notifier
        self.expected_tasks = tuple(expected_tasks)
        self._lock = _lock_for(job_dir)

    @property
    def path(self) -> Path:
        return self.job_dir / STATUS_FILE

    def read(self) -> JobStatusRecord:
        return read_status(self.job_dir)

    def update(self, mutate: Callable[[JobStatusRecord], None]) -> JobStatusRecord:
        """Apply ``mutate`` to the current record and persist the result."""

        with self._lock:
            record = self.read()
            mutate(record)
            if record.tasks:
                record.state = derive_job_status(
                    record.tasks,
                    expected_tasks=self.expected_tasks,
                )
            record.last_updated = utc_now_iso()
            self._write(record)
        self._publish()
        return record

    def update_task(
        self,
        task_name: str,
        mutate: Callable[[TaskRecord], None],
    ) -> JobStatusRecord:
        def _apply(record: JobStatusRecord) -> None:
            task = record.tasks.setdefault(task_name, TaskRecord())
            mutate(task)

        return self.update(_apply)

    def set_current(self, task_name: str | None, stage: str | None = None) -> JobStatusRecord:
        def _apply(record: JobStatusRecord) -> None:
            record.current = task_name
            record.current_stage = stage

        return self.update(_apply)

    def track_file(self, kind: str, relative_path: str, *, task_name: str | None = None) -> None:
        """Record a ``files/<kind>`` entry at job level and optionally task level."""

        if kind not in FILE_KINDS:
            raise ValueError(f"Unknown file kind: {kind!r}")

        def _apply(record: JobStatusRecord) -> None:
            job_files = record.files.setdefault(kind, [])
            if relative_path not in job_files:
                job_files.append(relative_path)
            if task_name is not None:
                task = record.tasks.setdefault(task_name, TaskRecord())
                task_files = task.files.setdefault(kind, [])
                if relative_path not in task_files:
                    task_files.append(relative_path)

        self.update(_apply)

    def _write(self, record: JobStatusRecord) -> None:
        try:
            write_json(self.path, record.to_dict())
        except OSError as error:
            raise SystemIOError(f"Cannot write status file {self.path}: {error}") from error

    def _publish(self) -> None:
        if self.notifier is None:
            return
        self.notifier.publish_path(EventType.STATE_CHANGE, self.path, change_type="modified")
