"""
推理服务（AI 辅助填写）

职责：
- ReasoningService 协议：act(instruction) 填写当前视口内剩余空字段；extract(instruction, schema) 结构化抽取
- OpenAIReasoningService：读取空字段快照 → 请求模型给出 JSON 填写方案 → 经 LocatorResolver 落到页面
- 每次模型调用通过 on_usage 回调上报 token 用量
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

from .dom_fillers import collect_empty_fields, normalize_label
from .llm_runtime import LLMCallResult, run_chat_with_fallback
from .locator_resolver import LocatorDescriptor, LocatorResolver

LogFn = Callable[[str, str], None]

_ACT_SYSTEM_PROMPT = (
    "You fill web forms for a user. You receive the user's data and a JSON list of "
    "empty fields currently visible on screen. Reply with a JSON object "
    '{"fills": [{"label": "<field label exactly as given>", "value": "<value>"}]}. '
    "Use only the provided data. Omit any field you cannot answer from it. "
    "For select fields the value must be one of the listed options."
)

_EXTRACT_SYSTEM_PROMPT = (
    "You extract structured data from a web page. Reply with a single JSON object "
    "that matches the requested schema. Use null for values that are not present."
)

PAGE_TEXT_LIMIT = 8000


@dataclass
class ActResult:
    success: bool
    message: str
    duration_ms: int = 0
    applied: list[str] = field(default_factory=list)


@dataclass
class UsageEvent:
    purpose: str
    model: str
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class ReasoningService(Protocol):
    def act(self, instruction: str, context: Optional[dict] = None) -> ActResult: ...

    def extract(self, instruction: str, schema: dict) -> dict: ...


def parse_json_object(raw: str) -> dict:
    """解析模型输出中的 JSON 对象（容忍 ```json 代码块包裹与前后杂文）。"""
    text = (raw or "").strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise ValueError("no JSON object in model output")
    value = json.loads(text[start : end + 1])
    if not isinstance(value, dict):
        raise ValueError("model output is not a JSON object")
    return value


class OpenAIReasoningService:
    def __init__(
        self,
        page: Any,
        client: Any,
        models: list[str],
        *,
        resolver: Optional[LocatorResolver] = None,
        on_usage: Optional[Callable[[UsageEvent], None]] = None,
        log_fn: Optional[LogFn] = None,
        temperature: float = 0.1,
        max_tokens: int = 1200,
        sleep_seconds: float = 1.0,
    ) -> None:
        if not models:
            raise ValueError("at least one model is required")
        self.page = page
        self.client = client
        self.models = list(models)
        self.resolver = resolver or LocatorResolver()
        self._on_usage = on_usage
        self._log = log_fn or (lambda msg, level="info": None)
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.sleep_seconds = sleep_seconds
        self._model_index = 0

    # ------------------------------------------------------------------

    def act(self, instruction: str, context: Optional[dict] = None) -> ActResult:
        started = time.monotonic()
        fields_ = collect_empty_fields(self.page)
        if not fields_:
            return ActResult(True, "no empty fields", self._elapsed_ms(started))

        user_content = "\n".join(
            [
                instruction,
                "",
                f"CONTEXT: {json.dumps(context or {}, ensure_ascii=False)}",
                "EMPTY FIELDS:",
                json.dumps(fields_, ensure_ascii=False),
            ]
        )
        result = self._chat(
            [
                {"role": "system", "content": _ACT_SYSTEM_PROMPT},
                {"role": "user", "content": user_content},
            ],
            purpose="act",
        )
        if not result.ok:
            return ActResult(False, result.error_summary or "llm call failed", self._elapsed_ms(started))

        try:
            fills = parse_json_object(result.raw).get("fills") or []
        except ValueError as e:
            self._log(f"⚠️ 无法解析模型填写方案: {e}", "warn")
            return ActResult(False, f"unparseable model output: {e}", self._elapsed_ms(started))

        applied: list[str] = []
        for fill in fills:
            if not isinstance(fill, dict):
                continue
            label = str(fill.get("label") or "")
            value = fill.get("value")
            if not label or value in (None, ""):
                continue
            target = self._match_field(label, fields_)
            if target is None:
                self._log(f"   ⚠️ 模型返回了未知字段: {label}", "warn")
                continue
            if self._apply(target, str(value)):
                applied.append(label)

        return ActResult(
            success=bool(applied) or not fills,
            message=f"applied {len(applied)}/{len(fills)} fills",
            duration_ms=self._elapsed_ms(started),
            applied=applied,
        )

    def extract(self, instruction: str, schema: dict) -> dict:
        try:
            page_text = str(self.page.evaluate("() => document.body ? document.body.innerText : ''") or "")
        except Exception as e:
            self._log(f"⚠️ 读取页面文本失败: {e}", "warn")
            page_text = ""
        result = self._chat(
            [
                {"role": "system", "content": _EXTRACT_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": "\n".join(
                        [
                            instruction,
                            "SCHEMA:",
                            json.dumps(schema, ensure_ascii=False),
                            "PAGE TEXT:",
                            page_text[:PAGE_TEXT_LIMIT],
                        ]
                    ),
                },
            ],
            purpose="extract",
            response_format={"type": "json_object"},
        )
        if not result.ok:
            raise RuntimeError(result.error_summary or "llm call failed")
        return parse_json_object(result.raw)

    # ------------------------------------------------------------------

    def _chat(self, messages: list[dict], *, purpose: str, response_format: dict | None = None) -> LLMCallResult:
        result = run_chat_with_fallback(
            client=self.client,
            fallback_models=self.models,
            start_model_index=self._model_index,
            messages=messages,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            response_format=response_format,
            on_log=self._log,
            sleep_seconds=self.sleep_seconds,
        )
        if result.ok:
            # 回退成功后保持在可用模型上
            self._model_index = result.model_index
            if result.usage and self._on_usage:
                self._on_usage(
                    UsageEvent(
                        purpose=purpose,
                        model=result.model,
                        prompt_tokens=result.usage.prompt_tokens,
                        completion_tokens=result.usage.completion_tokens,
                    )
                )
        return result

    @staticmethod
    def _match_field(label: str, fields_: list[dict]) -> Optional[dict]:
        wanted = normalize_label(label)
        for item in fields_:
            if normalize_label(item.get("label")) == wanted:
                return item
        for item in fields_:
            have = normalize_label(item.get("label"))
            if have and (wanted in have or have in wanted):
                return item
        return None

    def _apply(self, target: dict, value: str) -> bool:
        descriptor = LocatorDescriptor(
            label=target.get("label") or None,
            field_name=target.get("name") or None,
            dom_id=target.get("id") or None,
        )
        resolved = self.resolver.resolve(self.page, descriptor)
        if not resolved.found:
            self._log(f"   ⚠️ 无法定位字段: {descriptor.describe()}", "warn")
            return False
        try:
            if target.get("kind") == "select":
                resolved.locator.select_option(label=value)
            else:
                resolved.locator.fill(value)
            return True
        except Exception as e:
            self._log(f"   ⚠️ 填写失败 {target.get('label')}: {e}", "warn")
            return False

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)
