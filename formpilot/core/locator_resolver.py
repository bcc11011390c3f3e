"""
元素定位解析器（LocatorResolver）。

职责：
- 按固定优先级尝试多种定位策略（test id > role > label > name > id > text > css > xpath）
- 每个策略必须唯一命中（count == 1）且在超时内可见才算成功
- 元素 stale/detached 时在同一策略内有限重试
- 全部失败返回 strategy="none"，由调用方升级到 AI 辅助填写

attempts 统计实际尝试过的策略数（包括最终命中的那个）。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Literal, Optional

StrategyName = Literal[
    "test_id",
    "role",
    "label",
    "field_name",
    "dom_id",
    "text",
    "css",
    "xpath",
    "none",
]

_STALE_MARKERS = (
    "stale",
    "detached",
    "element is not attached",
    "not attached to the dom",
    "execution context was destroyed",
)


@dataclass(frozen=True)
class LocatorDescriptor:
    test_id: Optional[str] = None
    role: Optional[str] = None
    name: Optional[str] = None
    label: Optional[str] = None
    field_name: Optional[str] = None
    dom_id: Optional[str] = None
    text: Optional[str] = None
    css: Optional[str] = None
    xpath: Optional[str] = None

    def describe(self) -> str:
        parts = [f"{k}={v!r}" for k, v in self.__dict__.items() if v]
        return ", ".join(parts) or "<empty>"


@dataclass
class ResolveOptions:
    timeout_per_strategy_ms: int = 3000
    max_stale_retries: int = 1
    stale_backoff_ms: int = 100


@dataclass
class ResolveResult:
    locator: Any
    strategy: StrategyName
    attempts: int

    @property
    def found(self) -> bool:
        return self.locator is not None


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _build_strategies(descriptor: LocatorDescriptor) -> list[tuple[StrategyName, Callable[[Any], Any]]]:
    d = descriptor
    strategies: list[tuple[StrategyName, Callable[[Any], Any]]] = []
    if d.test_id:
        strategies.append(("test_id", lambda page: page.get_by_test_id(d.test_id)))
    if d.role:
        if d.name:
            strategies.append(("role", lambda page: page.get_by_role(d.role, name=d.name)))
        else:
            strategies.append(("role", lambda page: page.get_by_role(d.role)))
    if d.label:
        strategies.append(("label", lambda page: page.get_by_label(d.label)))
    # name 属性只在没有 role 时使用，避免 role+name 的语义被误当成表单 name
    if d.field_name and not d.role:
        strategies.append(
            ("field_name", lambda page: page.locator(f'[name="{_quote(d.field_name)}"]'))
        )
    if d.dom_id:
        strategies.append(("dom_id", lambda page: page.locator(f'[id="{_quote(d.dom_id)}"]')))
    if d.text:
        strategies.append(("text", lambda page: page.get_by_text(d.text, exact=True)))
    if d.css:
        strategies.append(("css", lambda page: page.locator(d.css)))
    if d.xpath:
        xpath = d.xpath if d.xpath.startswith("xpath=") else f"xpath={d.xpath}"
        strategies.append(("xpath", lambda page: page.locator(xpath)))
    return strategies


def is_stale_error(exc: BaseException) -> bool:
    text = str(exc).lower()
    return any(marker in text for marker in _STALE_MARKERS)


def _verify(page: Any, build: Callable[[Any], Any], timeout_ms: int) -> Any:
    locator = build(page)
    if locator.count() != 1:
        return None
    try:
        locator.wait_for(state="visible", timeout=timeout_ms)
    except Exception as exc:
        if is_stale_error(exc):
            raise
        return None
    return locator


def resolve(
    page: Any,
    descriptor: LocatorDescriptor,
    options: Optional[ResolveOptions] = None,
    *,
    log_fn: Optional[Callable[[str, str], None]] = None,
) -> ResolveResult:
    """按优先级解析唯一可见元素。"""
    opts = options or ResolveOptions()
    attempts = 0

    for strategy, build in _build_strategies(descriptor):
        attempts += 1
        stale_retries = 0
        while True:
            try:
                locator = _verify(page, build, opts.timeout_per_strategy_ms)
            except Exception as exc:
                if is_stale_error(exc) and stale_retries < opts.max_stale_retries:
                    stale_retries += 1
                    page.wait_for_timeout(opts.stale_backoff_ms)
                    continue
                if log_fn:
                    log_fn(f"   ⚠️ 定位策略 {strategy} 失败: {exc}", "warn")
                locator = None
            break
        if locator is not None:
            if log_fn:
                log_fn(f"   📍 定位成功: {strategy} ({descriptor.describe()})", "info")
            return ResolveResult(locator=locator, strategy=strategy, attempts=attempts)

    return ResolveResult(locator=None, strategy="none", attempts=attempts)


class LocatorResolver:
    """resolve() 的有状态包装：固定 page 选项与日志函数，便于注入。"""

    def __init__(
        self,
        options: Optional[ResolveOptions] = None,
        log_fn: Optional[Callable[[str, str], None]] = None,
    ) -> None:
        self.options = options or ResolveOptions()
        self._log = log_fn

    def resolve(self, page: Any, descriptor: LocatorDescriptor) -> ResolveResult:
        return resolve(page, descriptor, self.options, log_fn=self._log)
