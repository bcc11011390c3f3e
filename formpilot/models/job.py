from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, DateTime, Enum as SQLEnum, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ..db.database import Base, utcnow


class JobStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


ACTIVE_STATUSES = (JobStatus.QUEUED, JobStatus.RUNNING)
TERMINAL_STATUSES = (JobStatus.SUCCEEDED, JobStatus.FAILED)


class Job(Base):
    """表单填写任务，对应 jobs 表；worker 通过租约（worker_id + last_heartbeat）独占执行。"""

    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    job_type: Mapped[str] = mapped_column(String(64), nullable=False, default="fill_form")
    target_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    task_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    input_data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[JobStatus] = mapped_column(
        SQLEnum(JobStatus),
        default=JobStatus.PENDING,
        index=True,
        nullable=False,
    )
    worker_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    last_heartbeat: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0, index=True)
    target_worker_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=1800)
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error_details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    result_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    result_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    create_time: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    update_time: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def to_dict(self) -> dict:
        def _iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "job_type": self.job_type,
            "target_url": self.target_url,
            "task_description": self.task_description,
            "input_data": self.input_data or {},
            "status": self.status.value
            if isinstance(self.status, JobStatus)
            else self.status,
            "worker_id": self.worker_id,
            "last_heartbeat": _iso(self.last_heartbeat),
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "priority": self.priority,
            "target_worker_id": self.target_worker_id,
            "tags": self.tags or [],
            "timeout_seconds": self.timeout_seconds,
            "scheduled_at": _iso(self.scheduled_at),
            "error_code": self.error_code,
            "error_details": self.error_details,
            "result_data": self.result_data,
            "result_summary": self.result_summary,
            "create_time": _iso(self.create_time),
            "update_time": _iso(self.update_time),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }
