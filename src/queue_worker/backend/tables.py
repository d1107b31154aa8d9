"""SQLModel table for persisted jobs."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class JobRecord(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_ready", "failed_at", "run_at", "priority"),
        Index("idx_jobs_locked_by", "locked_by"),
    )

    id: str = Field(primary_key=True)
    name: str
    queue: str | None = Field(default=None, index=True)
    priority: int = Field(default=0)
    payload: str = Field(sa_column=Column(Text, nullable=False))
    correlation_id: str | None = None
    attempts: int = Field(default=0)
    max_attempts: int | None = None
    run_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    locked_by: str | None = None
    locked_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    failed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
