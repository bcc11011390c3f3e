"""
过期任务回收器（StaleJobReaper）。

独立于 worker 运行：每 interval 秒调用一次 queue.reap_stale，
把心跳过期的任务放回 pending（retry+1）或在重试耗尽时标记失败。
"""

from __future__ import annotations

from datetime import timedelta
from threading import Event, Thread
from typing import Optional

from .lease_queue import JobLeaseQueue, ReapReport


class StaleJobReaper:
    def __init__(
        self,
        queue: JobLeaseQueue,
        *,
        max_heartbeat_age: timedelta | float = 120.0,
        interval: float = 60.0,
    ) -> None:
        self.queue = queue
        self.max_heartbeat_age = max_heartbeat_age
        self.interval = max(0.01, float(interval))
        self._stop_event = Event()
        self._thread: Optional[Thread] = None
        self.runs = 0

    def run_once(self) -> ReapReport:
        report = self.queue.reap_stale(self.max_heartbeat_age)
        self.runs += 1
        return report

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = Thread(target=self.run_forever, name="stale-job-reaper", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def run_forever(self) -> None:
        print(f"[reaper] ▶ 已启动 (interval={self.interval}s, max_age={self.max_heartbeat_age})")
        while True:
            try:
                self.run_once()
            except Exception as e:
                # 数据库暂不可用时等下一轮
                print(f"[reaper] [ERROR] 回收失败: {e}")
            if self._stop_event.wait(self.interval):
                break
        print("[reaper] ⏹ 已停止")
