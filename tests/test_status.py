from __future__ import annotations

import gc
import threading
from pathlib import Path

import allure

from prompt_pipeline.core import status as status_module
from prompt_pipeline.core.contracts import JobStatusRecord, write_json
from prompt_pipeline.core.models import TaskRecord, TaskState
from prompt_pipeline.core.status import STATUS_FILE, StatusWriter, read_status

pytestmark = [
    allure.epic("Pipeline Core"),
    allure.feature("Status Record"),
]


def _job_dir(tmp_path: Path, job_id: str = "job-1") -> Path:
    job_dir = tmp_path / job_id
    job_dir.mkdir()
    write_json(job_dir / STATUS_FILE, JobStatusRecord(job_id=job_id, name="job").to_dict())
    return job_dir


def test_writers_of_one_directory_share_a_lock(tmp_path: Path) -> None:
    job_dir = _job_dir(tmp_path)

    first = StatusWriter(job_dir)
    second = StatusWriter(job_dir)
    other = StatusWriter(_job_dir(tmp_path, "job-2"))

    assert first._lock is second._lock
    assert first._lock is not other._lock


def test_lock_entry_is_released_with_its_writers(tmp_path: Path) -> None:
    job_dir = _job_dir(tmp_path)
    key = str(job_dir.resolve())
    writer = StatusWriter(job_dir)
    assert key in status_module._LOCKS

    del writer
    gc.collect()

    assert key not in status_module._LOCKS


def test_concurrent_task_updates_are_not_lost(tmp_path: Path) -> None:
    job_dir = _job_dir(tmp_path)
    names = [f"task-{index}" for index in range(8)]

    def _start(name: str) -> None:
        StatusWriter(job_dir).update_task(name, lambda task: task.transition(TaskState.RUNNING))

    threads = [threading.Thread(target=_start, args=(name,)) for name in names]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    tasks = read_status(job_dir).tasks
    assert sorted(tasks) == names
    assert all(isinstance(task, TaskRecord) for task in tasks.values())
    assert {task.state for task in tasks.values()} == {TaskState.RUNNING}
