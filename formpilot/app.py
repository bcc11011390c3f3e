from contextlib import asynccontextmanager
from collections import Counter
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select

from .db.database import Database, database_from_settings
from .models.job import Job, JobStatus, TERMINAL_STATUSES
from .models.job_log import JobLog
from .core.lease_queue import JobLeaseQueue

_INT_FIELDS = ("timeout_seconds", "max_retries", "priority")
_SUBMITTABLE = (
    "job_type",
    "task_description",
    "input_data",
    "target_worker_id",
    "timeout_seconds",
    "max_retries",
    "priority",
    "tags",
)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": message})


def _job_fields_from_payload(payload: dict) -> dict:
    """校验提交字段并转换类型，非法时抛 ValueError。"""
    unknown = sorted(set(payload) - set(_SUBMITTABLE) - {"target_url"})
    if unknown:
        raise ValueError(f"unknown fields: {', '.join(unknown)}")
    fields = {k: payload[k] for k in _SUBMITTABLE if payload.get(k) is not None}
    for key in _INT_FIELDS:
        if key in fields:
            if isinstance(fields[key], bool):
                raise ValueError(f"{key} must be an integer")
            try:
                fields[key] = int(fields[key])
            except (TypeError, ValueError):
                raise ValueError(f"{key} must be an integer") from None
    if "timeout_seconds" in fields and fields["timeout_seconds"] <= 0:
        raise ValueError("timeout_seconds must be positive")
    if "max_retries" in fields and fields["max_retries"] < 0:
        raise ValueError("max_retries must be >= 0")
    if "input_data" in fields and not isinstance(fields["input_data"], dict):
        raise ValueError("input_data must be an object")
    if "tags" in fields:
        if not isinstance(fields["tags"], list):
            raise ValueError("tags must be a list")
        fields["tags"] = [str(t) for t in fields["tags"]]
    return fields


def create_app(database: Optional[Database] = None) -> FastAPI:
    """
    构建任务提交 API。database 由调用方注入，未传入时按配置创建。
    """
    db = database or database_from_settings()
    queue = JobLeaseQueue(db)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # 初始化数据库等资源
        db.create_all()
        yield

    app = FastAPI(title="FormPilot - Form Filling Job API", lifespan=lifespan)
    app.state.database = db
    app.state.queue = queue

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.post("/api/jobs", status_code=201)
    def add_job(payload: dict):
        """提交一个填写任务，只有 target_url 必填。"""
        target_url = str(payload.get("target_url") or "").strip()
        if not target_url:
            return _error(422, "target_url is required")
        try:
            fields = _job_fields_from_payload(payload)
            job = queue.submit(target_url=target_url, **fields)
        except ValueError as e:
            return _error(400, str(e))
        return {"ok": True, "job": job.to_dict()}

    @app.get("/api/jobs")
    def list_jobs(status: Optional[JobStatus] = None, limit: int = 100):
        """列出任务，按创建时间倒序。"""
        with db.session() as session:
            query = select(Job)
            if status is not None:
                query = query.where(Job.status == status)
            query = query.order_by(Job.create_time.desc(), Job.id.desc()).limit(max(1, min(limit, 1000)))
            return [job.to_dict() for job in session.execute(query).scalars().all()]

    @app.get("/api/jobs/{job_id}")
    def get_job(job_id: int):
        job = queue.get(job_id)
        if job is None:
            return _error(404, f"Job {job_id} not found")
        return job.to_dict()

    @app.get("/api/jobs/{job_id}/logs")
    def get_job_logs(job_id: int, event_type: Optional[str] = None):
        """返回指定 job 的执行日志。"""
        with db.session() as session:
            query = select(JobLog).where(JobLog.job_id == job_id)
            if event_type:
                query = query.where(JobLog.event_type == event_type)
            logs = session.execute(query.order_by(JobLog.create_time.asc(), JobLog.id.asc())).scalars().all()
            return [log.to_dict() for log in logs]

    @app.get("/api/stats/failures")
    def get_failure_stats():
        """失败任务按 error_code 聚合，以及各状态计数。"""
        with db.session() as session:
            rows = session.execute(select(Job.status, Job.error_code)).all()
        by_status: Counter[str] = Counter()
        by_code: Counter[str] = Counter()
        for status, error_code in rows:
            value = status.value if isinstance(status, JobStatus) else str(status)
            by_status[value] += 1
            if status == JobStatus.FAILED:
                by_code[(error_code or "unknown").strip() or "unknown"] += 1
        return {
            "ok": True,
            "total_failed_jobs": by_status.get(JobStatus.FAILED.value, 0),
            "total_finished_jobs": sum(by_status.get(s.value, 0) for s in TERMINAL_STATUSES),
            "by_status": dict(by_status),
            "top_failure_codes": [{"key": k, "count": v} for k, v in by_code.most_common(8)],
        }

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="127.0.0.1", port=8000)
