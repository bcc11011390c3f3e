"""
Worker 运行时。

职责：
- 轮询 JobLeaseQueue 认领任务并交给 JobExecutor 串行执行
- 支持后台线程（start/stop）与前台阻塞（run_forever）两种运行方式
- 优雅退出：停止认领 → 最多等待 drain_timeout 秒 → 释放本 worker 持有的全部任务
"""

from __future__ import annotations

import os
import signal
import socket
from threading import Event, Thread
from typing import Callable, Optional, Protocol

from ..config import WorkerSettings, QueueSettings
from ..models.job import Job
from .lease_queue import JobLeaseQueue


class Executor(Protocol):
    def execute(self, job: Job): ...


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class WorkerRuntime:
    def __init__(
        self,
        queue: JobLeaseQueue,
        executor: Executor,
        worker_id: str,
        *,
        queue_settings: Optional[QueueSettings] = None,
        worker_settings: Optional[WorkerSettings] = None,
    ) -> None:
        self.queue = queue
        self.executor = executor
        self.worker_id = worker_id
        self.queue_settings = queue_settings or QueueSettings()
        self.worker_settings = worker_settings or WorkerSettings()
        self._stop_event = Event()
        self._idle = Event()
        self._idle.set()
        self._thread: Optional[Thread] = None
        self._shutdown_requested = Event()
        self.processed = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = Thread(target=self._run_loop, name=f"worker-{self.worker_id}", daemon=True)
        self._thread.start()
        print(f"[worker={self.worker_id}] ▶ 已启动 (poll={self.queue_settings.poll_interval_seconds}s)")

    def stop(self) -> None:
        """只停止认领，不等待也不释放；完整退出用 shutdown()。"""
        self._stop_event.set()
        self._shutdown_requested.set()

    def run_forever(self) -> int:
        """
        前台运行：后台线程执行任务，主线程等待退出信号后走 shutdown()。
        返回退出时释放的任务数。
        """
        self._shutdown_requested.clear()
        self.start()
        while not self._shutdown_requested.wait(1.0):
            if not self.is_running:
                break
        return self.shutdown()

    def run_once(self) -> bool:
        """认领并执行至多一个任务；返回是否执行了任务。"""
        job = self.queue.claim(self.worker_id, job_types=self.worker_settings.job_types or None)
        if job is None:
            return False
        self._idle.clear()
        try:
            self.executor.execute(job)
            self.processed += 1
        except Exception as e:
            print(f"[worker={self.worker_id}] [ERROR] job={job.id} 执行器异常: {e}")
            self.queue.release(job.id, self.worker_id, reason="executor_error")
        finally:
            self._idle.set()
        return True

    def shutdown(self, drain_timeout: Optional[float] = None) -> int:
        """
        优雅退出，返回释放的任务数。

        1. 停止认领
        2. 最多等待 drain_timeout 秒让在途任务结束
        3. 无论是否等到，都释放本 worker 仍持有的任务
        """
        if drain_timeout is None:
            drain_timeout = self.worker_settings.drain_timeout_seconds
        self._stop_event.set()
        self._shutdown_requested.set()
        print(f"[worker={self.worker_id}] ⏹ 正在退出 (drain_timeout={drain_timeout}s)")
        thread = self._thread
        if thread is not None and thread.is_alive():
            thread.join(timeout=max(0.0, drain_timeout))
        else:
            self._idle.wait(timeout=max(0.0, drain_timeout))
        return self._release_owned()

    def install_signal_handlers(self) -> None:
        def _handler(signum, _frame) -> None:
            print(f"[worker={self.worker_id}] 收到信号 {signum}")
            self._stop_event.set()
            self._shutdown_requested.set()

        signal.signal(signal.SIGTERM, _handler)
        signal.signal(signal.SIGINT, _handler)

    # ------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                worked = self.run_once()
            except Exception as e:
                print(f"[worker={self.worker_id}] [ERROR] 轮询失败: {e}")
                worked = False
            if not worked:
                self._stop_event.wait(self.queue_settings.poll_interval_seconds)

    def _release_owned(self) -> int:
        released = self.queue.release_all_owned_by(self.worker_id)
        print(f"[worker={self.worker_id}] ✓ 已退出，释放任务 {released} 个")
        return released


def build_worker(
    database,
    settings,
    *,
    worker_id: Optional[str] = None,
    executor_factory: Optional[Callable[..., Executor]] = None,
) -> WorkerRuntime:
    """按配置装配 queue + executor + runtime。"""
    from .job_executor import JobExecutor

    worker_id = worker_id or settings.worker.worker_id or default_worker_id()
    queue = JobLeaseQueue(
        database,
        backoff_base_seconds=settings.queue.retry_backoff_base_seconds,
        backoff_max_seconds=settings.queue.retry_backoff_max_seconds,
    )
    factory = executor_factory or JobExecutor
    executor = factory(database, queue, worker_id, settings=settings)
    return WorkerRuntime(
        queue,
        executor,
        worker_id,
        queue_settings=settings.queue,
        worker_settings=settings.worker,
    )
