"""
任务执行模块（JobExecutor）。

流程：
1. 启动心跳线程，持续为认领到的任务续约
2. 启动浏览器并打开 target_url
3. 识别平台，构建 QA 映射与 AI 填写提示，token 用量写入 job_logs
4. 逐屏执行：障碍检测 → 确认页 → 评审页 → HybridFillController 填写并前进；
   填写过程中的每次状态转换都续约心跳，心跳停止（卡死或失去所有权）后不再操作页面
5. 把结果写回队列：成功 / 失败 / 可重试错误退避重排 / 失去所有权时放弃
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from threading import Event, Thread
from typing import Any, Callable, Literal, Optional

from openai import OpenAI

from ..config import Settings, get_openai_api_key, load_settings
from ..db.database import Database
from ..models.job import Job
from .blocker_classifier import BlockerClassifier, BlockerResult
from .browser_manager import BrowserManager
from .errors import ConfigurationError, JobTimeoutError, OwnershipLostError
from .fill_controller import HybridFillController
from .job_logger import JobLogWriter
from .lease_queue import JobLeaseQueue, JobOutcome
from .locator_resolver import LocatorDescriptor, LocatorResolver, ResolveOptions
from .outcome_classifier import (
    BLOCKER_DETECTED,
    JOB_TIMEOUT,
    NAVIGATION_FAILED,
    SCREEN_LIMIT,
    VALIDATION_FAILED,
    classify_error,
)
from .platforms import PlatformProfile, detect_platform
from .reasoning import OpenAIReasoningService, ReasoningService, UsageEvent

Disposition = Literal["completed", "requeued", "abandoned"]

_SUBMIT_BUTTONS = (
    LocatorDescriptor(role="button", name="Submit Application"),
    LocatorDescriptor(role="button", name="Submit"),
    LocatorDescriptor(css="button[type='submit'], input[type='submit']"),
)


@dataclass
class ExecutionReport:
    job_id: int
    disposition: Disposition
    outcome: Optional[JobOutcome] = None
    error_code: Optional[str] = None


@dataclass
class _RunStats:
    platform: str = ""
    screens: list[dict] = field(default_factory=list)
    prompt_tokens: int = 0
    completion_tokens: int = 0
    llm_requests: int = 0

    def summary(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "screens": self.screens,
            "llm_usage": {
                "requests": self.llm_requests,
                "prompt_tokens": self.prompt_tokens,
                "completion_tokens": self.completion_tokens,
            },
        }


class HeartbeatThread(Thread):
    """
    后台心跳：每 interval 秒续约一次。

    两种情况停止续约：
    - 队列拒绝心跳（任务已被回收或转移），设置 ownership_lost
    - 执行器超过 stall_timeout 秒没有 touch()（卡死），交给 reaper 回收
    """

    def __init__(
        self,
        queue: JobLeaseQueue,
        job_id: int,
        worker_id: str,
        *,
        interval: float,
        stall_timeout: float,
        log_fn: Optional[Callable[[str, str], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(name=f"heartbeat-{job_id}", daemon=True)
        self.queue = queue
        self.job_id = job_id
        self.worker_id = worker_id
        self.interval = max(0.01, float(interval))
        self.stall_timeout = float(stall_timeout)
        self.ownership_lost = Event()
        self.stalled = Event()
        self._stop_event = Event()
        self._log = log_fn or (lambda msg, level="info": None)
        self._clock = clock
        self._last_touch = clock()

    def touch(self) -> None:
        self._last_touch = self._clock()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        while not self._stop_event.wait(self.interval):
            idle = self._clock() - self._last_touch
            if idle > self.stall_timeout:
                self._log(f"⏸ 执行器 {idle:.0f}s 无进展，停止心跳", "warn")
                self.stalled.set()
                return
            try:
                ok = self.queue.heartbeat(self.job_id, self.worker_id)
            except Exception as e:
                # 数据库短暂不可用：下一轮再试，超时由 reaper 兜底
                self._log(f"⚠️ 心跳写入失败: {e}", "warn")
                continue
            if not ok:
                self.ownership_lost.set()
                return


def build_reasoning_service(
    page: Any,
    settings: Settings,
    *,
    resolver: LocatorResolver,
    on_usage: Callable[[UsageEvent], None],
    log_fn: Callable[[str, str], None],
) -> ReasoningService:
    api_key = get_openai_api_key()
    if not api_key:
        raise ConfigurationError("OPENAI_API_KEY 未设置")
    return OpenAIReasoningService(
        page,
        OpenAI(api_key=api_key),
        settings.llm.model_chain(),
        resolver=resolver,
        on_usage=on_usage,
        log_fn=log_fn,
        temperature=settings.llm.temperature,
        max_tokens=settings.llm.max_tokens,
    )


class JobExecutor:
    """
    单个任务的执行器。一个 worker 进程持有一个实例，串行执行认领到的任务。
    """

    def __init__(
        self,
        database: Database,
        queue: JobLeaseQueue,
        worker_id: str,
        *,
        settings: Optional[Settings] = None,
        classifier: Optional[BlockerClassifier] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.database = database
        self.queue = queue
        self.worker_id = worker_id
        self.settings = settings or load_settings()
        self.classifier = classifier or BlockerClassifier()
        self._clock = clock

    def execute(self, job: Job) -> ExecutionReport:
        log = JobLogWriter(self.database, job.id, actor=self.worker_id)
        log.event(
            "job_started",
            f"🚀 开始执行: {job.target_url} (attempt {job.retry_count + 1}/{job.max_retries})",
            target_url=job.target_url,
            retry_count=job.retry_count,
        )

        heartbeat = HeartbeatThread(
            self.queue,
            job.id,
            self.worker_id,
            interval=self.settings.queue.heartbeat_interval_seconds,
            stall_timeout=self.settings.worker.stall_timeout_seconds,
            log_fn=log,
            clock=self._clock,
        )
        heartbeat.start()
        deadline = self._clock() + max(1, int(job.timeout_seconds or 0))

        outcome: Optional[JobOutcome] = None
        retry_error = None
        try:
            outcome = self._run(job, log, heartbeat, deadline)
        except OwnershipLostError:
            if heartbeat.stalled.is_set():
                log("⚠ 心跳已因无进展停止，任务交由 reaper 回收，不再操作页面", "warn")
            else:
                log("⚠ 任务所有权已丢失，放弃执行结果", "warn")
        except JobTimeoutError as e:
            log(f"⏱ 任务超时: {e}", "error")
            outcome = JobOutcome.failure(JOB_TIMEOUT, str(e), timeout_seconds=job.timeout_seconds)
        except ConfigurationError as e:
            log(f"❌ 配置错误: {e}", "error")
            outcome = JobOutcome.failure("configuration_error", str(e))
        except Exception as e:
            classified = classify_error(e)
            log(f"❌ 执行异常 [{classified.code}]: {classified.message}", "error")
            if classified.retryable:
                retry_error = classified
            else:
                outcome = JobOutcome.failure(classified.code, classified.message)
        finally:
            heartbeat.stop()
            heartbeat.join(timeout=5)

        if heartbeat.ownership_lost.is_set():
            log("⚠ 心跳被拒绝，结果不写回", "warn")
            return ExecutionReport(job.id, "abandoned")

        if retry_error is not None:
            ok = self.queue.requeue_for_retry(
                job.id,
                self.worker_id,
                error_code=retry_error.code,
                message=retry_error.message,
            )
            return ExecutionReport(job.id, "requeued" if ok else "abandoned", error_code=retry_error.code)

        if outcome is None:
            return ExecutionReport(job.id, "abandoned")

        if not self.queue.complete(job.id, self.worker_id, outcome):
            return ExecutionReport(job.id, "abandoned", outcome, outcome.error_code)
        log.event(
            "job_finished",
            f"{'✓' if outcome.status == 'succeeded' else '❌'} 任务结束: {outcome.status} "
            f"({outcome.error_code or 'ok'})",
            "info" if outcome.status == "succeeded" else "warn",
            status=outcome.status,
            error_code=outcome.error_code,
        )
        return ExecutionReport(job.id, "completed", outcome, outcome.error_code)

    # ------------------------------------------------------------------

    def _run(
        self,
        job: Job,
        log: JobLogWriter,
        heartbeat: HeartbeatThread,
        deadline: float,
    ) -> JobOutcome:
        stats = _RunStats()
        input_data = job.input_data or {}

        def on_progress(where: str) -> None:
            self._guard(heartbeat, deadline, where)
            heartbeat.touch()

        def on_usage(event: UsageEvent) -> None:
            stats.llm_requests += 1
            stats.prompt_tokens += event.prompt_tokens
            stats.completion_tokens += event.completion_tokens
            log.event(
                "llm_usage",
                f"🤖 {event.purpose} via {event.model}: {event.total_tokens} tokens",
                purpose=event.purpose,
                model=event.model,
                prompt_tokens=event.prompt_tokens,
                completion_tokens=event.completion_tokens,
            )

        session = BrowserManager(self.settings.browser, log_fn=log).launch()
        try:
            page = session.page
            log(f"--- 打开页面: {job.target_url} ---")
            page.goto(job.target_url, wait_until="domcontentloaded")
            heartbeat.touch()
            self._guard(heartbeat, deadline, "navigation")

            platform = detect_platform(page.url or job.target_url)
            stats.platform = platform.platform_id
            log(f"✓ 平台识别: {platform.platform_id}")

            profile = input_data.get("profile") or {}
            qa_map = platform.build_qa_map(profile, input_data.get("qa_overrides") or {})
            fill_prompt = platform.build_fill_prompt(profile, qa_map)
            if job.task_description:
                fill_prompt = f"{job.task_description}\n\n{fill_prompt}"

            resolver = LocatorResolver(
                ResolveOptions(
                    timeout_per_strategy_ms=self.settings.resolver.timeout_per_strategy_ms,
                    max_stale_retries=self.settings.resolver.max_stale_retries,
                    stale_backoff_ms=self.settings.resolver.stale_backoff_ms,
                ),
                log_fn=log,
            )
            reasoning = build_reasoning_service(
                page,
                self.settings,
                resolver=resolver,
                on_usage=on_usage,
                log_fn=log,
            )
            controller = HybridFillController(
                platform,
                reasoning,
                classifier=self.classifier,
                resolver=resolver,
                settings=self.settings.fill,
                log_fn=log,
                clock=self._clock,
            )

            for index in range(1, self.settings.worker.max_screens + 1):
                label = f"screen {index}"
                on_progress(label)

                blocker = self._detect_blocker(page, platform)
                if blocker is not None:
                    return self._blocker_outcome(log, blocker, stats, page, job)

                if platform.is_confirmation_screen(page):
                    log(f"✓ [{label}] 已到达确认页")
                    return self._success(page, job, log, stats, stopped_at="confirmation")

                if platform.is_review_screen(page):
                    return self._finish_at_review(
                        page, job, platform, log, stats, submit=bool(input_data.get("submit")), on_progress=on_progress
                    )

                result = controller.fill_screen(
                    page,
                    fill_prompt=fill_prompt,
                    qa_map=qa_map,
                    page_label=label,
                    deadline=deadline,
                    on_progress=on_progress,
                )
                on_progress(f"{label} done")
                stats.screens.append(
                    {
                        "screen": index,
                        "outcome": result.outcome,
                        "llm_calls": result.llm_calls,
                        "scroll_rounds": result.scroll_rounds,
                    }
                )

                if result.outcome == "done":
                    continue
                if result.outcome == "review_detected":
                    return self._finish_at_review(
                        page, job, platform, log, stats, submit=bool(input_data.get("submit")), on_progress=on_progress
                    )
                if result.outcome == "obstacle_detected" and result.blocker is not None:
                    return self._blocker_outcome(log, result.blocker, stats, page, job)
                if result.outcome == "validation_failed":
                    return JobOutcome.failure(
                        VALIDATION_FAILED,
                        result.detail or "validation errors remained",
                        screen=index,
                        unresolved_fields=result.unresolved_fields,
                        **stats.summary(),
                    )
                return JobOutcome.failure(
                    NAVIGATION_FAILED,
                    result.detail or "could not advance",
                    screen=index,
                    **stats.summary(),
                )

            return JobOutcome.failure(
                SCREEN_LIMIT,
                f"no review or confirmation screen within {self.settings.worker.max_screens} screens",
                **stats.summary(),
            )
        finally:
            session.close()

    def _guard(self, heartbeat: HeartbeatThread, deadline: float, where: str) -> None:
        # 心跳已停止时 reaper 可能已把任务交给别的 worker
        if heartbeat.ownership_lost.is_set() or heartbeat.stalled.is_set():
            raise OwnershipLostError(heartbeat.job_id, self.worker_id)
        if self._clock() >= deadline:
            raise JobTimeoutError(f"job timeout budget exhausted at {where}")

    def _detect_blocker(self, page: Any, platform: PlatformProfile) -> Optional[BlockerResult]:
        hint = platform.detect_page_by_url(page.url or "")
        if hint is not None and hint.needs_intervention:
            return BlockerResult(
                type="login",
                confidence=1.0,
                source="url",
                details=hint.title,
            )
        return self.classifier.detect(page)

    def _blocker_outcome(
        self,
        log: JobLogWriter,
        blocker: BlockerResult,
        stats: _RunStats,
        page: Any,
        job: Job,
    ) -> JobOutcome:
        log.event(
            "blocker_detected",
            f"🛑 需要人工处理: {blocker.type} ({blocker.details})",
            "warn",
            **blocker.to_dict(),
        )
        screenshot = self._save_final_screenshot(page, job.id, log)
        return JobOutcome.failure(
            BLOCKER_DETECTED,
            f"{blocker.type} blocker detected",
            blocker_type=blocker.type,
            requires_intervention=True,
            blocker=blocker.to_dict(),
            screenshot=screenshot,
            **stats.summary(),
        )

    def _finish_at_review(
        self,
        page: Any,
        job: Job,
        platform: PlatformProfile,
        log: JobLogWriter,
        stats: _RunStats,
        *,
        submit: bool,
        on_progress: Callable[[str], None],
    ) -> JobOutcome:
        if not submit:
            log("✓ 已到达评审页，按配置不提交")
            return self._success(page, job, log, stats, stopped_at="review")

        on_progress("submit")
        log("📨 评审页：点击提交")
        resolver = LocatorResolver(log_fn=log)
        for descriptor in _SUBMIT_BUTTONS:
            resolved = resolver.resolve(page, descriptor)
            if resolved.found:
                resolved.locator.click()
                break
        else:
            return JobOutcome.failure(NAVIGATION_FAILED, "submit control not found", **stats.summary())

        page.wait_for_timeout(self.settings.fill.advance_settle_ms)
        blocker = self._detect_blocker(page, platform)
        if blocker is not None:
            return self._blocker_outcome(log, blocker, stats, page, job)
        confirmed = platform.is_confirmation_screen(page)
        if not confirmed:
            log("⚠ 已点击提交，但未识别到确认页", "warn")
        return self._success(page, job, log, stats, stopped_at="submitted", submitted=True, confirmed=confirmed)

    def _success(
        self,
        page: Any,
        job: Job,
        log: JobLogWriter,
        stats: _RunStats,
        *,
        stopped_at: str,
        **extra: Any,
    ) -> JobOutcome:
        screenshot = self._save_final_screenshot(page, job.id, log)
        return JobOutcome.success(
            f"stopped at {stopped_at}",
            stopped_at=stopped_at,
            final_url=page.url,
            screenshot=screenshot,
            **extra,
            **stats.summary(),
        )

    def _save_final_screenshot(self, page: Any, job_id: int, log: JobLogWriter) -> Optional[str]:
        """保存最终页面截图；未配置 screenshot_dir 时跳过。"""
        target = self.settings.worker.screenshot_dir
        if not target:
            return None
        try:
            directory = Path(target).expanduser()
            directory.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            filepath = directory / f"job_{job_id}_{timestamp}.png"
            page.screenshot(path=str(filepath), full_page=True)
            log(f"✓ 截图已保存: {filepath}")
            return str(filepath)
        except Exception as e:
            log(f"⚠ 截图保存失败: {e}", "warn")
            return None
