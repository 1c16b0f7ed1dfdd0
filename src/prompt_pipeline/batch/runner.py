"""Batch execution loop with a bounded number of in-flight processor calls."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any
from uuid import uuid4

from prompt_pipeline.batch.models import BatchContext, BatchJobView
from prompt_pipeline.batch.repository import BatchRepository

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 10
DEFAULT_MAX_RETRIES = 3

Processor = Callable[[Any, BatchContext], Any]


def validate_batch_options(
    *,
    jobs: object,
    processor: object,
    concurrency: object = DEFAULT_CONCURRENCY,
    max_retries: object = DEFAULT_MAX_RETRIES,
) -> None:
    """Raise ValueError or TypeError describing the first invalid option."""

    if not isinstance(jobs, Sequence) or isinstance(jobs, str | bytes):
        raise TypeError(f"jobs must be a list, got: {type(jobs).__name__}")
    if not jobs:
        raise ValueError("jobs must be a non-empty list")
    for index, job in enumerate(jobs):
        if not isinstance(job, Mapping):
            raise TypeError(f"jobs[{index}] must be an object, got: {type(job).__name__}")
    if not callable(processor):
        raise TypeError(f"processor must be callable, got: {type(processor).__name__}")
    if isinstance(concurrency, bool) or not isinstance(concurrency, int) or concurrency < 1:
        raise ValueError(f"concurrency must be a positive integer, got: {concurrency!r}")
    if isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 0:
        raise ValueError(f"max_retries must be a non-negative integer, got: {max_retries!r}")


def execute_batch(  # noqa: PLR0913
    repository: BatchRepository,
    *,
    jobs: Sequence[Mapping[str, Any]],
    processor: Processor,
    concurrency: int = DEFAULT_CONCURRENCY,
    max_retries: int = DEFAULT_MAX_RETRIES,
    batch_id: str | None = None,
    on_progress: Callable[[str], None] | None = None,
) -> dict[str, list[BatchJobView]]:
    """Run every job of the batch to a terminal state for this run.

    Stale ``processing`` rows of the same batch are reset first, so a batch
    interrupted by a crash resumes where it stopped. Each round picks all
    runnable rows and keeps at most ``concurrency`` processor calls in
    flight; rounds repeat until no row is runnable.
    """

    validate_batch_options(
        jobs=jobs,
        processor=processor,
        concurrency=concurrency,
        max_retries=max_retries,
    )
    batch_id = batch_id or str(uuid4())
    emit = on_progress or (lambda _msg: None)

    recovered = repository.recover_stale_jobs(batch_id)
    if recovered:
        logger.warning("Batch %s: recovered %d stale job(s)", batch_id, recovered)
    repository.insert_jobs(batch_id, jobs)

    with ThreadPoolExecutor(
        max_workers=concurrency,
        thread_name_prefix=f"batch-{batch_id[:8]}",
    ) as pool:
        pending = repository.get_pending_jobs(batch_id, max_retries)
        round_no = 0
        while pending:
            round_no += 1
            emit(f"Batch {batch_id}: round {round_no}, {len(pending)} job(s)")
            futures = [
                pool.submit(_process_one, repository, job, processor, batch_id)
                for job in pending
            ]
            wait(futures)
            for future in futures:
                # Surfaces storage failures; processor errors are recorded on the row.
                future.result()
            pending = repository.get_pending_jobs(batch_id, max_retries)

    completed = repository.get_completed_jobs(batch_id)
    failed = repository.get_failed_jobs(batch_id, max_retries)
    emit(f"Batch {batch_id}: {len(completed)} completed, {len(failed)} failed")
    return {"completed": completed, "failed": failed}


def _process_one(
    repository: BatchRepository,
    job: BatchJobView,
    processor: Processor,
    batch_id: str,
) -> None:
    if not repository.mark_processing(job.id):
        logger.info("Batch job %s was claimed elsewhere; skipping", job.id)
        return
    context = BatchContext(attempt=job.retry_count + 1, batch_id=batch_id)
    try:
        output = processor(job.input, context)
    except Exception as error:  # noqa: BLE001
        logger.warning("Batch job %s attempt %d failed: %s", job.id, context.attempt, error)
        repository.mark_failed(job.id, str(error) or type(error).__name__)
        return
    try:
        repository.mark_complete(job.id, output)
    except TypeError as error:
        logger.warning("Batch job %s returned a non-JSON output: %s", job.id, error)
        repository.mark_failed(job.id, f"Output is not JSON serializable: {error}")
