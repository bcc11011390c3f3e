"""
任务日志写入：JobLog 落库 + stdout 镜像。

日志写入失败只打印，不影响任务本身的执行。
"""

from __future__ import annotations

from typing import Any, Optional

from ..db.database import Database
from ..models.job_log import JobLog


class JobLogWriter:
    def __init__(self, database: Database, job_id: int, actor: Optional[str] = None) -> None:
        self.database = database
        self.job_id = job_id
        self.actor = actor

    def __call__(self, message: str, level: str = "info") -> None:
        self.log(message, level)

    def log(
        self,
        message: str,
        level: str = "info",
        *,
        event_type: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        print(f"[job={self.job_id}] [{level.upper()}] {message}")
        try:
            with self.database.session() as session:
                session.add(
                    JobLog(
                        job_id=self.job_id,
                        level=level,
                        message=message,
                        event_type=event_type,
                        actor=self.actor,
                        details=details,
                    )
                )
        except Exception as e:
            print(f"[job={self.job_id}] [ERROR] 日志写入失败: {e}")

    def event(self, event_type: str, message: str, level: str = "info", **details: Any) -> None:
        self.log(message, level, event_type=event_type, details=details or None)
