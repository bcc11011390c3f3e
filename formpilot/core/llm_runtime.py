"""
LLM 调用运行时

职责：
- 模型错误分类：限流 / 能力不匹配（可回退）与其他错误（直接失败）
- 沿模型链回退调用，记录尝试过的模型
- 返回结构化结果（含 token 用量），由推理服务决定是否粘滞在回退模型上
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Optional

LLMErrorKind = Literal["rate_limit", "unsupported", "fatal"]

_RATE_LIMIT_MARKERS = ("429", "rate_limit", "rate limit", "too many requests")
_UNSUPPORTED_MARKERS = (
    "does not support",
    "unsupported",
    "response_format",
    "invalid model",
    "model_not_found",
    "not found",
)

# 整条模型链都因同一类原因失败时的错误码与摘要
_EXHAUSTED: dict[str, tuple[str, str]] = {
    "rate_limit": ("rate_limit_exhausted", "所有模型都遇到速率限制"),
    "unsupported": ("model_unsupported_exhausted", "所有候选模型都不支持当前请求"),
}


@dataclass
class LLMUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class LLMCallResult:
    ok: bool
    raw: str = ""
    model: str = ""
    model_index: int = 0
    error_summary: Optional[str] = None
    error_code: Optional[str] = None
    usage: Optional[LLMUsage] = None
    attempts: list[str] = field(default_factory=list)


def classify_llm_error(exc: BaseException | str) -> LLMErrorKind:
    text = str(exc).lower()
    if any(marker in text for marker in _RATE_LIMIT_MARKERS):
        return "rate_limit"
    if any(marker in text for marker in _UNSUPPORTED_MARKERS):
        return "unsupported"
    return "fatal"


def _usage_of(completion: Any) -> Optional[LLMUsage]:
    usage = getattr(completion, "usage", None)
    if usage is None:
        return None
    return LLMUsage(
        prompt_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
        completion_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
    )


def run_chat_with_fallback(
    *,
    client: Any,
    fallback_models: list[str],
    start_model_index: int,
    messages: list[dict],
    temperature: float,
    max_tokens: int,
    top_p: float = 0.8,
    response_format: Optional[dict] = None,
    on_log: Optional[Callable[[str, str], None]] = None,
    sleep_seconds: float = 1.0,
) -> LLMCallResult:
    """
    从 start_model_index 开始沿模型链调用 chat.completions。

    - rate_limit / unsupported：切到下一个模型（间隔 sleep_seconds）
    - fatal：立即返回失败，不再尝试后续模型
    起始下标越界时从第一个模型开始。
    """
    log = on_log or (lambda message, level="info": None)
    start = int(start_model_index)
    if not 0 <= start < len(fallback_models):
        start = 0

    attempts: list[str] = []
    last_kind: Optional[LLMErrorKind] = None
    for index in range(start, len(fallback_models)):
        model = fallback_models[index]
        if attempts:
            log(f"🔄 切换到模型: {model}", "info")
            time.sleep(max(0.0, sleep_seconds))
        attempts.append(model)

        request: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "top_p": top_p,
            "max_tokens": max_tokens,
        }
        if response_format:
            request["response_format"] = response_format

        try:
            completion = client.chat.completions.create(**request)
        except Exception as exc:
            last_kind = classify_llm_error(exc)
            if last_kind == "fatal":
                return LLMCallResult(
                    ok=False,
                    model=model,
                    model_index=index,
                    error_summary=f"LLM 调用失败: {exc}",
                    error_code="llm_call_failed",
                    attempts=attempts,
                )
            reason = "遇到速率限制" if last_kind == "rate_limit" else "能力不匹配或不可用"
            log(f"⚠️ 模型 {model} {reason}", "warn")
            continue

        return LLMCallResult(
            ok=True,
            raw=completion.choices[0].message.content or "",
            model=model,
            model_index=index,
            usage=_usage_of(completion),
            attempts=attempts,
        )

    code, summary = _EXHAUSTED.get(last_kind or "", ("llm_no_result", "LLM 未返回结果"))
    return LLMCallResult(
        ok=False,
        model=attempts[-1] if attempts else "",
        model_index=max(0, len(fallback_models) - 1),
        error_summary=summary,
        error_code=code,
        attempts=attempts,
    )
