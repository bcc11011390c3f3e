"""
单屏混合填写控制器（HybridFillController）

流程（显式状态机，见 fill_states）：
entry_guard → deterministic_pass → obstacle_check → ai_pass → scroll ↺ → advance → (error_recovery → advance)

- 确定性填写优先：结构化选项 → 日期 → 必勾选框 → 平台已知文本字段
- AI 辅助填写：只在视口内仍有空字段且预算未耗尽时调用一次
- 每屏 AI 调用总数受 max_llm_calls 约束，跨所有滚动轮次共享
- 每次状态转换都检查任务截止时间，超时抛 JobTimeoutError
- 每次状态转换和每次 AI 调用后回调 on_progress，供执行器续约心跳并检查所有权
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from ..config import FillSettings
from .blocker_classifier import BlockerClassifier, BlockerResult
from .dom_fillers import (
    FieldSpec,
    center_next_empty_field,
    check_required_checkboxes,
    collect_flagged_fields,
    detect_validation_errors,
    fill_choice_fields,
    fill_date_fields,
    fill_mapped_text_fields,
    has_empty_visible_fields,
    read_scroll_position,
    scroll_by_viewport,
    scroll_to_top,
    suppress_error_banners,
)
from .errors import JobTimeoutError
from .fill_states import (
    TERMINAL_STATES,
    FillBudget,
    FillState,
    ScreenOutcome,
    decide_after_advance,
    decide_ai_pass,
    decide_scroll,
    scroll_made_progress,
)
from .locator_resolver import LocatorResolver
from .platforms import PlatformProfile
from .reasoning import ReasoningService

LogFn = Callable[[str, str], None]
ProgressFn = Callable[[str], None]


@dataclass
class ScreenResult:
    outcome: ScreenOutcome
    llm_calls: int = 0
    scroll_rounds: int = 1
    blocker: Optional[BlockerResult] = None
    detail: str = ""
    unresolved_fields: list[str] = field(default_factory=list)


class HybridFillController:
    def __init__(
        self,
        platform: PlatformProfile,
        reasoning: ReasoningService,
        *,
        classifier: Optional[BlockerClassifier] = None,
        resolver: Optional[LocatorResolver] = None,
        settings: Optional[FillSettings] = None,
        log_fn: Optional[LogFn] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.platform = platform
        self.reasoning = reasoning
        self.classifier = classifier or BlockerClassifier()
        self.resolver = resolver or LocatorResolver()
        self.settings = settings or FillSettings()
        self._log = log_fn or (lambda msg, level="info": None)
        self._clock = clock

    def fill_screen(
        self,
        page: Any,
        *,
        fill_prompt: str,
        qa_map: dict[str, str],
        page_label: str = "",
        deadline: Optional[float] = None,
        on_progress: Optional[ProgressFn] = None,
    ) -> ScreenResult:
        budget = FillBudget(
            max_scroll_rounds=self.settings.max_scroll_rounds,
            max_llm_calls=self.settings.max_llm_calls,
        )
        field_specs = list(self.platform.field_map())
        unresolved: list[str] = []
        blocker: Optional[BlockerResult] = None
        detail = ""
        state: FillState = "entry_guard"
        progress = on_progress or (lambda where: None)

        while state not in TERMINAL_STATES:
            self._check_deadline(deadline, state)
            progress(state)

            if state == "entry_guard":
                if self.platform.is_review_screen(page):
                    self._log(f"ℹ [{page_label}] 已是评审页，跳过填写", "info")
                    state = "review_detected"
                    continue
                scroll_to_top(page, 500)
                suppress_error_banners(page)
                state = "deterministic_pass"

            elif state == "deterministic_pass":
                unresolved = self._deterministic_pass(page, qa_map, field_specs)
                if budget.scroll_round == 1:
                    # 确定性填写可能滚动了页面，回到顶部再开始逐屏检查
                    scroll_to_top(page, 400)
                state = "obstacle_check"

            elif state == "obstacle_check":
                blocker = self.classifier.detect(page)
                if blocker:
                    detail = blocker.details
                    self._log(
                        f"🛑 [{page_label}] 检测到障碍: {blocker.type} "
                        f"(confidence={blocker.confidence:.2f}, source={blocker.source})",
                        "warn",
                    )
                    state = "obstacle_detected"
                else:
                    state = "ai_pass"

            elif state == "ai_pass":
                self._ai_pass(page, fill_prompt, budget, unresolved, page_label, progress)
                state = "scroll"

            elif state == "scroll":
                pos = read_scroll_position(page)
                path = decide_scroll(
                    scroll_y=pos.y,
                    max_scroll_y=pos.max_y,
                    epsilon=self.settings.bottom_epsilon_px,
                    budget=budget,
                )
                if path != "scroll":
                    self._log(f"   [{page_label}] 停止滚动: {path} (round={budget.scroll_round})", "info")
                    state = "advance"
                    continue
                scroll_by_viewport(page, self.settings.scroll_fraction)
                page.wait_for_timeout(self.settings.scroll_settle_ms)
                after = read_scroll_position(page)
                if not scroll_made_progress(pos.y, after.y):
                    self._log(f"   [{page_label}] 无法继续滚动", "info")
                    state = "advance"
                    continue
                budget.scroll_round += 1
                state = "deterministic_pass"

            elif state == "advance":
                click = self.platform.click_next(page)
                has_errors = False
                if click == "clicked":
                    page.wait_for_timeout(self.settings.advance_settle_ms)
                    has_errors = detect_validation_errors(page)
                state = decide_after_advance(
                    click_result=click,
                    has_validation_errors=has_errors,
                    recovery_used=budget.recovery_used,
                )
                if state == "navigation_failed":
                    detail = "no next/continue control found"
                elif state == "validation_failed":
                    detail = "validation errors remained after one recovery pass"
                self._log(f"   [{page_label}] 前进结果: {click} -> {state}", "info")

            elif state == "error_recovery":
                budget.recovery_used = True
                flagged = collect_flagged_fields(page)
                self._log(f"🔧 [{page_label}] 校验未通过，修复字段: {flagged or '未知'}", "warn")
                unresolved = self._deterministic_pass(page, qa_map, field_specs)
                self._ai_pass(page, fill_prompt, budget, unresolved + flagged, page_label, progress)
                state = "advance"

        self._log(
            f"✓ [{page_label}] 本屏结束: {state} (llm_calls={budget.llm_calls}, rounds={budget.scroll_round})",
            "info",
        )
        return ScreenResult(
            outcome=state,  # type: ignore[arg-type]
            llm_calls=budget.llm_calls,
            scroll_rounds=budget.scroll_round,
            blocker=blocker,
            detail=detail,
            unresolved_fields=unresolved,
        )

    # ------------------------------------------------------------------

    def _deterministic_pass(
        self,
        page: Any,
        qa_map: dict[str, str],
        field_specs: list[FieldSpec],
    ) -> list[str]:
        if qa_map:
            fill_choice_fields(page, qa_map)
        fill_date_fields(page)
        check_required_checkboxes(page)
        outcome = fill_mapped_text_fields(page, field_specs, qa_map, self.resolver)
        return outcome.unresolved

    def _ai_pass(
        self,
        page: Any,
        fill_prompt: str,
        budget: FillBudget,
        focus_fields: list[str],
        page_label: str,
        progress: ProgressFn,
    ) -> None:
        path = decide_ai_pass(has_empty_fields=has_empty_visible_fields(page), budget=budget)
        if path == "skip_no_empty_fields":
            return
        if path == "skip_budget_exhausted":
            self._log(f"   [{page_label}] AI 调用已达上限 ({budget.max_llm_calls})，跳过", "warn")
            return
        center_next_empty_field(page)
        instruction = fill_prompt
        if focus_fields:
            instruction += "\n\nFields that still need attention: " + ", ".join(dict.fromkeys(focus_fields))
        budget.record_llm_call()
        result = self.reasoning.act(
            instruction,
            {"page_label": page_label, "scroll_round": budget.scroll_round},
        )
        progress("ai_call")
        self._log(
            f"🤖 [{page_label}] AI 填写 #{budget.llm_calls}: {result.message} ({result.duration_ms}ms)",
            "info" if result.success else "warn",
        )

    def _check_deadline(self, deadline: Optional[float], state: str) -> None:
        if deadline is not None and self._clock() >= deadline:
            raise JobTimeoutError(f"job timeout budget exhausted during {state}")
