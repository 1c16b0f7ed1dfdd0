"""SQLModel ORM tables for batch execution storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class BatchJobRow(SQLModel, table=True):
    __tablename__ = "batch_jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_batch_jobs_batch_status", "batch_id", "status"),)

    id: str = Field(primary_key=True)
    batch_id: str = Field(nullable=False)
    status: str = Field(default="pending", nullable=False)
    input: str = Field(sa_column=Column(Text, nullable=False))
    output: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    retry_count: int = Field(default=0, nullable=False)
    started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
