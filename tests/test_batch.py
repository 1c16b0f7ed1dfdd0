from __future__ import annotations

import threading
import time
from pathlib import Path

import allure
import pytest

from prompt_pipeline.batch.models import BatchContext, BatchJobStatus
from prompt_pipeline.batch.repository import BatchRepository
from prompt_pipeline.batch.runner import execute_batch, validate_batch_options

pytestmark = [
    allure.epic("Batch Execution"),
    allure.feature("Batch Runner"),
]


@pytest.fixture()
def repository(tmp_path: Path):
    repo = BatchRepository(tmp_path / "batch.db")
    repo.init_schema()
    yield repo
    repo.close()


def _double(item, context: BatchContext):
    return {"double": item["n"] * 2}


def test_every_job_completes(repository):
    jobs = [{"id": f"job-{n}", "n": n} for n in range(3)]
    progress: list[str] = []

    result = execute_batch(
        repository,
        jobs=jobs,
        processor=_double,
        batch_id="b1",
        on_progress=progress.append,
    )

    assert [job.output for job in result["completed"]] == [
        {"double": 0},
        {"double": 2},
        {"double": 4},
    ]
    assert result["failed"] == []
    view = repository.get_job("job-1")
    assert view.status is BatchJobStatus.COMPLETE
    assert view.started_at is not None and view.started_at.tzinfo is not None
    assert view.completed_at is not None
    assert progress[-1] == "Batch b1: 3 completed, 0 failed"


def test_concurrency_ceiling_is_respected(repository):
    lock = threading.Lock()
    in_flight = 0
    peak = 0

    def _slow(item, context):
        nonlocal in_flight, peak
        with lock:
            in_flight += 1
            peak = max(peak, in_flight)
        time.sleep(0.05)
        with lock:
            in_flight -= 1
        return item["n"]

    result = execute_batch(
        repository,
        jobs=[{"n": n} for n in range(8)],
        processor=_slow,
        concurrency=2,
    )

    assert len(result["completed"]) == 8
    assert 1 <= peak <= 2


def test_failed_job_is_retried_with_attempt_number(repository):
    attempts: list[int] = []

    def _flaky(item, context):
        attempts.append(context.attempt)
        if context.attempt == 1:
            raise RuntimeError("first try fails")
        return "ok"

    result = execute_batch(repository, jobs=[{"id": "flaky"}], processor=_flaky, max_retries=3)

    assert attempts == [1, 2]
    [job] = result["completed"]
    assert job.retry_count == 1
    assert job.output == "ok"
    assert job.error is None


def test_retries_are_bounded(repository):
    calls: list[str] = []

    def _broken(item, context):
        calls.append(context.batch_id)
        raise RuntimeError("always broken")

    result = execute_batch(
        repository,
        jobs=[{"id": "broken"}],
        processor=_broken,
        max_retries=2,
        batch_id="b2",
    )

    assert calls == ["b2", "b2"]
    [job] = result["failed"]
    assert job.retry_count == 2
    assert job.error == "always broken"
    assert result["completed"] == []


def test_zero_max_retries_still_runs_pending_jobs_once(repository):
    calls: list[int] = []

    def _broken(item, context):
        calls.append(context.attempt)
        raise ValueError("nope")

    result = execute_batch(repository, jobs=[{"id": "once"}], processor=_broken, max_retries=0)

    assert calls == [1]
    assert [job.id for job in result["failed"]] == ["once"]


def test_non_json_output_marks_job_failed(repository):
    result = execute_batch(
        repository,
        jobs=[{"id": "odd"}],
        processor=lambda item, context: object(),
        max_retries=1,
    )

    [job] = result["failed"]
    assert "not JSON serializable" in job.error


def test_interrupted_batch_resumes_stale_rows(repository):
    repository.insert_jobs("b3", [{"id": "stuck", "n": 5}])
    assert repository.mark_processing("stuck")

    result = execute_batch(
        repository,
        jobs=[{"id": "stuck", "n": 5}],
        processor=_double,
        batch_id="b3",
    )

    assert [job.output for job in result["completed"]] == [{"double": 10}]


def test_stale_recovery_is_scoped_to_batch(repository):
    repository.insert_jobs("a", [{"id": "a-1"}])
    repository.insert_jobs("b", [{"id": "b-1"}])
    repository.mark_processing("a-1")
    repository.mark_processing("b-1")

    assert repository.recover_stale_jobs("a") == 1

    assert repository.get_job("a-1").status is BatchJobStatus.PENDING
    assert repository.get_job("b-1").status is BatchJobStatus.PROCESSING


def test_insert_generates_ids_and_skips_existing(repository):
    ids = repository.insert_jobs("b4", [{"n": 1}, {"id": "fixed", "n": 2}])

    assert len(ids) == 2
    assert ids[1] == "fixed"
    assert repository.insert_jobs("b4", [{"id": "fixed", "n": 99}]) == ["fixed"]
    assert repository.get_job("fixed").input == {"id": "fixed", "n": 2}
    assert repository.count_by_status("b4") == {
        "pending": 2,
        "processing": 0,
        "complete": 0,
        "failed": 0,
    }


def test_reinserting_completed_job_raises(repository):
    repository.insert_jobs("b5", [{"id": "done"}])
    repository.mark_processing("done")
    repository.mark_complete("done", {"x": 1})

    with pytest.raises(ValueError, match='Cannot re-insert job "done"'):
        repository.insert_jobs("b5", [{"id": "done"}])


def test_claiming_is_exclusive(repository):
    repository.insert_jobs("b6", [{"id": "once"}])

    assert repository.mark_processing("once") is True
    assert repository.mark_processing("once") is False


def test_transitions_on_missing_rows_raise(repository):
    with pytest.raises(LookupError):
        repository.mark_complete("ghost", 1)
    with pytest.raises(LookupError):
        repository.mark_failed("ghost", "err")


def test_pending_query_respects_retry_budget(repository):
    repository.insert_jobs("b7", [{"id": "p"}, {"id": "f"}])
    repository.mark_processing("f")
    repository.mark_failed("f", "boom")

    assert [job.id for job in repository.get_pending_jobs("b7", max_retries=2)] == ["f", "p"]
    assert [job.id for job in repository.get_pending_jobs("b7", max_retries=1)] == ["p"]
    assert [job.id for job in repository.get_failed_jobs("b7", max_retries=1)] == ["f"]


@pytest.mark.parametrize(
    ("options", "error", "message"),
    [
        ({"jobs": "abc"}, TypeError, "jobs must be a list"),
        ({"jobs": []}, ValueError, "non-empty list"),
        ({"jobs": [1]}, TypeError, r"jobs\[0\] must be an object"),
        ({"processor": "nope"}, TypeError, "processor must be callable"),
        ({"concurrency": 0}, ValueError, "concurrency must be a positive integer"),
        ({"concurrency": True}, ValueError, "concurrency must be a positive integer"),
        ({"max_retries": -1}, ValueError, "max_retries must be a non-negative integer"),
    ],
)
def test_invalid_options_are_rejected(options, error, message):
    arguments = {"jobs": [{"n": 1}], "processor": _double, **options}

    with pytest.raises(error, match=message):
        validate_batch_options(**arguments)


def test_invalid_options_fail_before_touching_storage(repository):
    with pytest.raises(ValueError):
        execute_batch(repository, jobs=[{"n": 1}], processor=_double, concurrency=0)

    assert repository.count_by_status("any")["pending"] == 0
