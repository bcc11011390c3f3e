"""
任务租约队列（JobLeaseQueue）。

职责：
- 原子认领：SELECT ... FOR UPDATE SKIP LOCKED 取候选 + 条件 UPDATE 做 compare-and-swap
- 心跳续约 / 完成 / 释放：全部带所有权校验，失去所有权时返回 False 并记日志
- 外部回收：心跳过期的任务回到 pending（retry+1），重试耗尽则失败
- 可重试错误的指数退避重排（scheduled_at）

SQLite 不支持 FOR UPDATE，此时退化为纯 compare-and-swap，正确性不变。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Literal, Optional, Sequence

from sqlalchemy import or_, select, update

from ..db.database import Database, utcnow
from ..models.job import ACTIVE_STATUSES, Job, JobStatus

Clock = Callable[[], datetime]
LogFn = Callable[[str, str], None]

EXHAUSTED_RETRIES_CODE = "exhausted_retries"
EXHAUSTED_RETRIES_DETAIL = "exhausted retries after stale heartbeat"

_SUBMIT_FIELDS = {
    "job_type",
    "target_url",
    "task_description",
    "input_data",
    "max_retries",
    "priority",
    "target_worker_id",
    "tags",
    "timeout_seconds",
    "scheduled_at",
}


@dataclass
class JobOutcome:
    status: Literal["succeeded", "failed"]
    error_code: Optional[str] = None
    error_details: Optional[dict[str, Any]] = None
    result_data: Optional[dict[str, Any]] = None
    result_summary: Optional[str] = None

    @classmethod
    def success(cls, summary: str | None = None, **result_data: Any) -> "JobOutcome":
        return cls(status="succeeded", result_data=result_data or None, result_summary=summary)

    @classmethod
    def failure(cls, error_code: str, message: str, **details: Any) -> "JobOutcome":
        return cls(
            status="failed",
            error_code=error_code,
            error_details={"message": message, **details},
            result_summary=message,
        )


@dataclass
class ReapReport:
    requeued: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.requeued) + len(self.failed)


def retry_backoff_seconds(retry_count: int, *, base: float = 5.0, cap: float = 60.0) -> float:
    """min(cap, base * 2^retry_count)"""
    return float(min(cap, base * (2 ** max(0, retry_count))))


class JobLeaseQueue:
    """
    基于 jobs 表的租约队列。所有方法都是短事务，可在多个进程/线程中并发调用。
    """

    def __init__(
        self,
        database: Database,
        *,
        clock: Optional[Clock] = None,
        log_fn: Optional[LogFn] = None,
        claim_batch_size: int = 5,
        backoff_base_seconds: float = 5.0,
        backoff_max_seconds: float = 60.0,
    ) -> None:
        self.database = database
        self._clock = clock or utcnow
        self._log = log_fn or (lambda msg, level="info": print(f"[queue] [{level.upper()}] {msg}"))
        self.claim_batch_size = max(1, claim_batch_size)
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds

    # ------------------------------------------------------------------
    # submission / read-back
    # ------------------------------------------------------------------

    def submit(self, *, target_url: str, **fields: Any) -> Job:
        """创建 pending 任务。"""
        unknown = set(fields) - _SUBMIT_FIELDS
        if unknown:
            raise ValueError(f"unknown job fields: {', '.join(sorted(unknown))}")
        if not (target_url or "").strip():
            raise ValueError("target_url is required")
        values = {k: v for k, v in fields.items() if v is not None}
        now = self._clock()
        job = Job(
            target_url=target_url.strip(),
            status=JobStatus.PENDING,
            create_time=now,
            update_time=now,
            **values,
        )
        with self.database.session() as session:
            session.add(job)
            session.flush()
            session.refresh(job)
        return job

    def get(self, job_id: int) -> Optional[Job]:
        with self.database.session() as session:
            return session.get(Job, job_id)

    # ------------------------------------------------------------------
    # lease protocol
    # ------------------------------------------------------------------

    def claim(self, worker_id: str, job_types: Optional[Sequence[str]] = None) -> Optional[Job]:
        """
        原子认领一个可执行任务，没有则返回 None。

        候选条件：pending、无 owner、scheduled_at 已到、亲和性为空或等于本 worker；
        传入 job_types 时只认领这些类型的任务。
        排序：priority DESC, create_time ASC, id ASC。
        """
        now = self._clock()
        conditions = [
            Job.status == JobStatus.PENDING,
            Job.worker_id.is_(None),
            or_(Job.scheduled_at.is_(None), Job.scheduled_at <= now),
            or_(Job.target_worker_id.is_(None), Job.target_worker_id == worker_id),
        ]
        if job_types:
            conditions.append(Job.job_type.in_(list(job_types)))
        with self.database.session() as session:
            candidates = (
                select(Job.id)
                .where(*conditions)
                .order_by(Job.priority.desc(), Job.create_time.asc(), Job.id.asc())
                .limit(self.claim_batch_size)
                .with_for_update(skip_locked=True)
            )
            for job_id in session.execute(candidates).scalars().all():
                result = session.execute(
                    update(Job)
                    .where(
                        Job.id == job_id,
                        Job.status == JobStatus.PENDING,
                        Job.worker_id.is_(None),
                    )
                    .values(
                        status=JobStatus.RUNNING,
                        worker_id=worker_id,
                        last_heartbeat=now,
                        started_at=now,
                        update_time=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    # 另一个 worker 抢先认领，尝试下一个候选
                    continue
                job = session.get(Job, job_id)
                self._log(f"✓ job={job_id} 已被 {worker_id} 认领", "info")
                return job
        return None

    def heartbeat(self, job_id: int, worker_id: str) -> bool:
        now = self._clock()
        ok = self._owned_update(
            job_id,
            worker_id,
            last_heartbeat=now,
            update_time=now,
        )
        if not ok:
            self._log(f"⚠ 心跳被拒绝：job={job_id} 不再属于 {worker_id}", "warn")
        return ok

    def complete(self, job_id: int, worker_id: str, outcome: JobOutcome) -> bool:
        now = self._clock()
        status = JobStatus.SUCCEEDED if outcome.status == "succeeded" else JobStatus.FAILED
        ok = self._owned_update(
            job_id,
            worker_id,
            status=status,
            worker_id=None,
            error_code=outcome.error_code,
            error_details=outcome.error_details,
            result_data=outcome.result_data,
            result_summary=outcome.result_summary,
            completed_at=now,
            update_time=now,
        )
        if ok:
            self._log(f"✓ job={job_id} 完成: {status.value} ({outcome.error_code or 'ok'})", "info")
        else:
            self._log(f"⚠ 完成被拒绝：job={job_id} 不再属于 {worker_id}", "warn")
        return ok

    def release(self, job_id: int, worker_id: str, *, reason: str = "released") -> bool:
        """把自己持有的任务放回 pending，retry_count 不变。"""
        now = self._clock()
        ok = self._owned_update(
            job_id,
            worker_id,
            status=JobStatus.PENDING,
            worker_id=None,
            last_heartbeat=None,
            started_at=None,
            error_details={"released_by": worker_id, "reason": reason},
            update_time=now,
        )
        if not ok:
            self._log(f"⚠ 释放被拒绝：job={job_id} 不再属于 {worker_id}", "warn")
        return ok

    def release_all_owned_by(self, worker_id: str, *, reason: str = "worker_shutdown") -> int:
        """批量释放某个 worker 持有的全部任务，幂等；返回释放条数。"""
        now = self._clock()
        with self.database.session() as session:
            result = session.execute(
                update(Job)
                .where(Job.worker_id == worker_id, Job.status.in_(ACTIVE_STATUSES))
                .values(
                    status=JobStatus.PENDING,
                    worker_id=None,
                    last_heartbeat=None,
                    started_at=None,
                    error_details={"released_by": worker_id, "reason": reason},
                    update_time=now,
                )
                .execution_options(synchronize_session=False)
            )
            released = int(result.rowcount or 0)
        if released:
            self._log(f"↩ {worker_id} 释放了 {released} 个任务 ({reason})", "info")
        return released

    def reap_stale(self, max_heartbeat_age: timedelta | float) -> ReapReport:
        """
        回收心跳过期（或从未心跳）的执行中任务。

        retry_count 先 +1；+1 后 >= max_retries 的任务直接失败（exhausted_retries），
        其余回到 pending 并清空 owner。每行更新都以观察到的 owner/heartbeat 做 CAS，
        避免与刚恢复心跳的 worker 冲突。
        """
        if not isinstance(max_heartbeat_age, timedelta):
            max_heartbeat_age = timedelta(seconds=float(max_heartbeat_age))
        now = self._clock()
        cutoff = now - max_heartbeat_age
        report = ReapReport()

        with self.database.session() as session:
            stale_rows = session.execute(
                select(
                    Job.id,
                    Job.worker_id,
                    Job.last_heartbeat,
                    Job.retry_count,
                    Job.max_retries,
                )
                .where(
                    Job.status.in_(ACTIVE_STATUSES),
                    or_(Job.last_heartbeat.is_(None), Job.last_heartbeat < cutoff),
                )
                .order_by(Job.id.asc())
                .with_for_update(skip_locked=True)
            ).all()

            for row in stale_rows:
                next_retry = int(row.retry_count or 0) + 1
                conditions = [Job.id == row.id, Job.status.in_(ACTIVE_STATUSES)]
                conditions.append(
                    Job.worker_id.is_(None) if row.worker_id is None else Job.worker_id == row.worker_id
                )
                conditions.append(
                    Job.last_heartbeat.is_(None)
                    if row.last_heartbeat is None
                    else Job.last_heartbeat == row.last_heartbeat
                )
                exhausted = next_retry >= int(row.max_retries or 0)
                if exhausted:
                    values = dict(
                        status=JobStatus.FAILED,
                        worker_id=None,
                        retry_count=next_retry,
                        error_code=EXHAUSTED_RETRIES_CODE,
                        error_details={
                            "message": EXHAUSTED_RETRIES_DETAIL,
                            "last_worker_id": row.worker_id,
                        },
                        result_summary=EXHAUSTED_RETRIES_DETAIL,
                        completed_at=now,
                        update_time=now,
                    )
                else:
                    values = dict(
                        status=JobStatus.PENDING,
                        worker_id=None,
                        last_heartbeat=None,
                        started_at=None,
                        retry_count=next_retry,
                        error_details={
                            "message": "requeued after stale heartbeat",
                            "last_worker_id": row.worker_id,
                        },
                        update_time=now,
                    )
                result = session.execute(
                    update(Job)
                    .where(*conditions)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue
                if exhausted:
                    report.failed.append(row.id)
                else:
                    report.requeued.append(row.id)

        if report.total:
            self._log(
                f"🧹 回收过期任务: requeued={report.requeued} failed={report.failed}",
                "warn",
            )
        return report

    def requeue_for_retry(
        self,
        job_id: int,
        worker_id: str,
        *,
        error_code: str,
        message: str,
    ) -> bool:
        """
        可重试错误：retry_count < max_retries 时 +1 并按退避时间重新排队，
        否则以该错误码直接失败。返回 False 表示已不再持有该任务。
        """
        job = self.get(job_id)
        if job is None or job.worker_id != worker_id:
            self._log(f"⚠ 重排被拒绝：job={job_id} 不再属于 {worker_id}", "warn")
            return False

        if job.retry_count >= job.max_retries:
            return self.complete(
                job_id,
                worker_id,
                JobOutcome.failure(error_code, message, retry_count=job.retry_count),
            )

        now = self._clock()
        delay = retry_backoff_seconds(
            job.retry_count,
            base=self.backoff_base_seconds,
            cap=self.backoff_max_seconds,
        )
        ok = self._owned_update(
            job_id,
            worker_id,
            status=JobStatus.PENDING,
            worker_id=None,
            last_heartbeat=None,
            started_at=None,
            retry_count=job.retry_count + 1,
            scheduled_at=now + timedelta(seconds=delay),
            error_code=error_code,
            error_details={"message": message, "retry_in_seconds": delay},
            update_time=now,
        )
        if ok:
            self._log(
                f"🔁 job={job_id} 将在 {delay:.0f}s 后重试 "
                f"({job.retry_count + 1}/{job.max_retries}, {error_code})",
                "warn",
            )
        return ok

    # ------------------------------------------------------------------

    def _owned_update(self, job_id: int, worker_id: str, /, **values: Any) -> bool:
        with self.database.session() as session:
            result = session.execute(
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.worker_id == worker_id,
                    Job.status.in_(ACTIVE_STATUSES),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1
