"""Persistence of batch jobs backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from prompt_pipeline.batch.models import BatchJobStatus, BatchJobView
from prompt_pipeline.storage.alembic_runner import migrate, schema_revision
from prompt_pipeline.storage.common import sqlite_engine, to_aware_utc, to_naive_utc, utc_now
from prompt_pipeline.storage.sqlmodel_models import BatchJobRow


class BatchRepository:
    """Row-level state transitions of the ``batch_jobs`` table.

    Every transition is a single UPDATE keyed by job id, so concurrent
    workers never share in-memory state.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = sqlite_engine(db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        migrate(self.db_path)

    def schema_revision(self) -> str | None:
        return schema_revision(self.engine)

    def insert_jobs(self, batch_id: str, items: Iterable[Mapping[str, Any]]) -> list[str]:
        """Insert items as ``pending`` rows and return their ids in input order.

        Items without an ``id`` get a fresh UUID. An id already present is left
        untouched, except that re-inserting a job already ``complete`` in the
        same batch raises ``ValueError``.
        """

        ids: list[str] = []
        with Session(self.engine) as session:
            for item in items:
                job_id = str(item.get("id") or uuid4())
                existing = session.get(BatchJobRow, job_id)
                if existing is not None:
                    if (
                        existing.batch_id == batch_id
                        and existing.status == BatchJobStatus.COMPLETE.value
                    ):
                        session.rollback()
                        raise ValueError(
                            f'Cannot re-insert job "{job_id}" for batch "{batch_id}": '
                            f'existing job is in terminal state "{existing.status}".',
                        )
                    ids.append(job_id)
                    continue
                session.add(
                    BatchJobRow(
                        id=job_id,
                        batch_id=batch_id,
                        status=BatchJobStatus.PENDING.value,
                        input=json.dumps(dict(item), ensure_ascii=False, sort_keys=True),
                    ),
                )
                session.flush()
                ids.append(job_id)
            session.commit()
        return ids

    def mark_processing(self, job_id: str) -> bool:
        """Claim a ``pending`` or ``failed`` job; False when it was not claimable."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BatchJobRow)
                .where(
                    col(BatchJobRow.id) == job_id,
                    col(BatchJobRow.status).in_(
                        [BatchJobStatus.PENDING.value, BatchJobStatus.FAILED.value],
                    ),
                )
                .values(
                    status=BatchJobStatus.PROCESSING.value,
                    started_at=to_naive_utc(utc_now()),
                ),
            )
            session.commit()
            return result.rowcount == 1

    def mark_complete(self, job_id: str, output: Any) -> None:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BatchJobRow)
                .where(col(BatchJobRow.id) == job_id)
                .values(
                    status=BatchJobStatus.COMPLETE.value,
                    output=json.dumps(output, ensure_ascii=False, sort_keys=True),
                    error=None,
                    completed_at=to_naive_utc(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise LookupError(f"Batch job not found: {job_id}")
            session.commit()

    def mark_failed(self, job_id: str, error: str) -> None:
        """Record the error and count one more attempt."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BatchJobRow)
                .where(col(BatchJobRow.id) == job_id)
                .values(
                    status=BatchJobStatus.FAILED.value,
                    error=error,
                    retry_count=col(BatchJobRow.retry_count) + 1,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise LookupError(f"Batch job not found: {job_id}")
            session.commit()

    def get_pending_jobs(self, batch_id: str, max_retries: int) -> list[BatchJobView]:
        """Rows that are ``pending``, or ``failed`` with retries left."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(BatchJobRow)
                .where(
                    col(BatchJobRow.batch_id) == batch_id,
                    or_(
                        col(BatchJobRow.status) == BatchJobStatus.PENDING.value,
                        and_(
                            col(BatchJobRow.status) == BatchJobStatus.FAILED.value,
                            col(BatchJobRow.retry_count) < max_retries,
                        ),
                    ),
                )
                .order_by(col(BatchJobRow.id).asc()),
            ).all()
            return [_to_view(row) for row in rows]

    def recover_stale_jobs(self, batch_id: str) -> int:
        """Reset this batch's ``processing`` rows to ``pending``; returns the count."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BatchJobRow)
                .where(
                    col(BatchJobRow.batch_id) == batch_id,
                    col(BatchJobRow.status) == BatchJobStatus.PROCESSING.value,
                )
                .values(status=BatchJobStatus.PENDING.value),
            )
            session.commit()
            return int(result.rowcount or 0)

    def get_completed_jobs(self, batch_id: str) -> list[BatchJobView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(BatchJobRow)
                .where(
                    col(BatchJobRow.batch_id) == batch_id,
                    col(BatchJobRow.status) == BatchJobStatus.COMPLETE.value,
                )
                .order_by(col(BatchJobRow.id).asc()),
            ).all()
            return [_to_view(row) for row in rows]

    def get_failed_jobs(self, batch_id: str, max_retries: int) -> list[BatchJobView]:
        """Rows that exhausted their retries."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(BatchJobRow)
                .where(
                    col(BatchJobRow.batch_id) == batch_id,
                    col(BatchJobRow.status) == BatchJobStatus.FAILED.value,
                    col(BatchJobRow.retry_count) >= max_retries,
                )
                .order_by(col(BatchJobRow.id).asc()),
            ).all()
            return [_to_view(row) for row in rows]

    def get_job(self, job_id: str) -> BatchJobView | None:
        with Session(self.engine) as session:
            row = session.get(BatchJobRow, job_id)
            return _to_view(row) if row is not None else None

    def count_by_status(self, batch_id: str) -> dict[str, int]:
        with Session(self.engine) as session:
            statuses = session.exec(
                select(BatchJobRow.status).where(col(BatchJobRow.batch_id) == batch_id),
            ).all()
        counts = {status.value: 0 for status in BatchJobStatus}
        for status in statuses:
            counts[status] = counts.get(status, 0) + 1
        return counts


def _to_view(row: BatchJobRow) -> BatchJobView:
    return BatchJobView(
        id=row.id,
        batch_id=row.batch_id,
        status=BatchJobStatus(row.status),
        input=json.loads(row.input),
        output=json.loads(row.output) if row.output is not None else None,
        error=row.error,
        retry_count=row.retry_count,
        started_at=to_aware_utc(row.started_at),
        completed_at=to_aware_utc(row.completed_at),
    )
