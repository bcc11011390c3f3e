"""
引擎异常定义。

预期内的结果（定位失败、遇到障碍、校验失败）用 dataclass 结果返回，
这里只放需要跨层传播、打断控制流的异常。
"""

from __future__ import annotations


class FormPilotError(Exception):
    """Base error for the engine."""


class JobTimeoutError(FormPilotError):
    """The job's wall-clock budget expired."""

    def __init__(self, message: str = "job timeout budget exhausted", *, elapsed_seconds: float | None = None):
        super().__init__(message)
        self.elapsed_seconds = elapsed_seconds


class OwnershipLostError(FormPilotError):
    """The worker no longer holds the job's lease; abandon without completing."""

    def __init__(self, job_id: int, worker_id: str):
        super().__init__(f"job {job_id} is no longer owned by {worker_id}")
        self.job_id = job_id
        self.worker_id = worker_id


class ScreenBudgetExceeded(FormPilotError):
    """A per-screen budget (AI calls) was already spent."""


class ConfigurationError(FormPilotError):
    """Missing or invalid runtime configuration (API keys, paths)."""
