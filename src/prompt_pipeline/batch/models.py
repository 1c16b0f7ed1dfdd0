"""Batch execution domain models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class BatchJobStatus(str, Enum):
    """Persisted batch job states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class BatchContext:
    """Second argument passed to every processor invocation."""

    attempt: int
    batch_id: str


@dataclass(slots=True)
class BatchJobView:
    """Read model of one ``batch_jobs`` row with decoded payloads."""

    id: str
    batch_id: str
    status: BatchJobStatus
    input: Any
    output: Any = None
    error: str | None = None
    retry_count: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "batchId": self.batch_id,
            "status": self.status.value,
            "input": self.input,
            "output": self.output,
            "error": self.error,
            "retryCount": self.retry_count,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }
