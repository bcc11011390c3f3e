"""
单屏填写状态机决策模块

职责：
- 定义填写状态与终态
- 维护单屏预算（滚动轮次 / AI 调用次数 / 错误恢复是否已用）
- 关键分支决策保持纯函数化，便于测试与回放
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from .errors import ScreenBudgetExceeded

FillState = Literal[
    "entry_guard",
    "deterministic_pass",
    "obstacle_check",
    "ai_pass",
    "scroll",
    "advance",
    "error_recovery",
    "done",
    "review_detected",
    "obstacle_detected",
    "validation_failed",
    "navigation_failed",
]
ScreenOutcome = Literal[
    "done",
    "review_detected",
    "obstacle_detected",
    "validation_failed",
    "navigation_failed",
]
TERMINAL_STATES: frozenset[str] = frozenset(
    {"done", "review_detected", "obstacle_detected", "validation_failed", "navigation_failed"}
)

AIPassPath = Literal["call", "skip_no_empty_fields", "skip_budget_exhausted"]
ScrollPath = Literal["scroll", "at_bottom", "round_limit"]


@dataclass
class FillBudget:
    max_scroll_rounds: int = 10
    max_llm_calls: int = 20
    scroll_round: int = 1
    llm_calls: int = 0
    recovery_used: bool = False

    def can_call_llm(self) -> bool:
        return self.llm_calls < self.max_llm_calls

    def record_llm_call(self) -> None:
        if not self.can_call_llm():
            raise ScreenBudgetExceeded("AI call budget already exhausted for this screen")
        self.llm_calls += 1

    def can_scroll(self) -> bool:
        return self.scroll_round < self.max_scroll_rounds


def decide_ai_pass(*, has_empty_fields: bool, budget: FillBudget) -> AIPassPath:
    # 没有空字段时一律不调用，预算是否还有都一样
    if not has_empty_fields:
        return "skip_no_empty_fields"
    if not budget.can_call_llm():
        return "skip_budget_exhausted"
    return "call"


def decide_scroll(
    *,
    scroll_y: float,
    max_scroll_y: float,
    epsilon: float,
    budget: FillBudget,
) -> ScrollPath:
    if not budget.can_scroll():
        return "round_limit"
    if scroll_y >= max_scroll_y - epsilon:
        return "at_bottom"
    return "scroll"


def scroll_made_progress(before_y: float, after_y: float) -> bool:
    return after_y > before_y


def decide_after_advance(
    *,
    click_result: str,
    has_validation_errors: bool,
    recovery_used: bool,
) -> FillState:
    if click_result == "review_detected":
        return "review_detected"
    if click_result != "clicked":
        return "navigation_failed"
    if not has_validation_errors:
        return "done"
    if recovery_used:
        return "validation_failed"
    return "error_recovery"
