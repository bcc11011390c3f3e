"""
障碍检测（BlockerClassifier）：验证码 / 登录墙 / 2FA / 反爬挑战 / 限流。

职责：
- 维护一张按注册顺序排列的信号表（先结构信号 DOM selector，后文本信号 regex）
- 一次 page.evaluate 同时采集所有 selector 命中情况与正文前 5000 字，保证同一快照内打分
- 隐藏元素命中时置信度折半；取最高置信度，完全相同时先注册者胜出

结构信号只收录厂商特定的挑战标记（recaptcha iframe、cloudflare challenge 等），
不收录 audio/video/iframe 这类普通媒体元素，避免正常页面被误判。
recaptcha 法律声明文本（"protected by reCAPTCHA"）不算挑战。
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

BlockerType = Literal["captcha", "login", "2fa", "bot_check", "rate_limit", "visual_verification"]
SignalMode = Literal["dom", "text"]
BlockerSource = Literal["dom", "text", "url"]

HIDDEN_PENALTY = 0.5
BODY_TEXT_LIMIT = 5000


@dataclass(frozen=True)
class BlockerSignal:
    type: BlockerType
    confidence: float
    mode: SignalMode
    selector: Optional[str] = None
    pattern: Optional[str] = None
    label: str = ""

    def compiled(self) -> re.Pattern:
        return re.compile(self.pattern or "", re.IGNORECASE)


@dataclass
class BlockerResult:
    type: BlockerType
    confidence: float
    source: BlockerSource
    details: str
    selector: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "confidence": round(self.confidence, 3),
            "source": self.source,
            "details": self.details,
            "selector": self.selector,
        }


def _dom(type_: BlockerType, selector: str, confidence: float) -> BlockerSignal:
    return BlockerSignal(type=type_, confidence=confidence, mode="dom", selector=selector, label=selector)


def _text(type_: BlockerType, pattern: str, confidence: float) -> BlockerSignal:
    return BlockerSignal(type=type_, confidence=confidence, mode="text", pattern=pattern, label=pattern)


DEFAULT_SIGNALS: tuple[BlockerSignal, ...] = (
    # captcha
    _dom("captcha", 'iframe[src*="recaptcha"]', 0.95),
    _dom("captcha", 'iframe[src*="hcaptcha"]', 0.95),
    _dom("captcha", ".g-recaptcha", 0.9),
    _dom("captcha", ".h-captcha", 0.9),
    _dom("captcha", "#captcha", 0.7),
    _dom("captcha", "[data-captcha]", 0.7),
    _dom("captcha", 'iframe[src*="challenges.cloudflare.com"]', 0.95),
    _dom("captcha", 'iframe[src*="funcaptcha"]', 0.9),
    _dom("captcha", "#FunCaptcha", 0.85),
    # login
    _dom("login", 'form[action*="login"]', 0.8),
    _dom("login", 'form[action*="signin"]', 0.8),
    _dom("login", 'form[action*="sign-in"]', 0.8),
    _dom("login", 'input[type="password"]', 0.6),
    _dom("login", "#login-form", 0.85),
    _dom("login", '[data-testid="login-form"]', 0.85),
    # bot check
    _dom("bot_check", "#challenge-running", 0.95),
    _dom("bot_check", "#cf-challenge-running", 0.95),
    _dom("bot_check", ".cf-browser-verification", 0.9),
    _dom("bot_check", "#px-captcha", 0.9),
    _dom("bot_check", "[data-datadome]", 0.85),
    # visual verification
    _dom("visual_verification", ".slider-captcha", 0.85),
    _dom("visual_verification", "[data-slider-captcha]", 0.85),
    # --- text signals ---
    _text("captcha", r"please complete the (security |captcha )?check", 0.75),
    _text("captcha", r"verify you('re| are) (a )?human", 0.8),
    _text("captcha", r"prove you('re| are) not a robot", 0.8),
    _text("captcha", r"i('|’)?m not a robot", 0.85),
    _text("captcha", r"cloudflare.*turnstile", 0.8),
    _text("2fa", r"two[- ]?factor auth", 0.85),
    _text("2fa", r"verification code", 0.7),
    _text("2fa", r"authenticator app", 0.85),
    _text("2fa", r"enter the code sent to", 0.8),
    _text("2fa", r"security code", 0.6),
    _text("2fa", r"email verification", 0.7),
    _text("login", r"sign in to continue", 0.85),
    _text("login", r"session (has )?expired", 0.8),
    _text("login", r"please (log|sign) ?in", 0.75),
    _text("bot_check", r"checking your browser", 0.85),
    _text("bot_check", r"just a moment", 0.5),
    _text("bot_check", r"please wait while we verify", 0.8),
    _text("bot_check", r"access denied", 0.5),
    _text("bot_check", r"blocked by.*security", 0.7),
    _text("bot_check", r"are you a (ro)?bot", 0.85),
    _text("bot_check", r"please verify you('re| are) human", 0.85),
    _text("rate_limit", r"too many requests", 0.9),
    _text("rate_limit", r"please try again later", 0.65),
    _text("rate_limit", r"rate limit(ed)?", 0.85),
    _text("visual_verification", r"select all images with", 0.9),
    _text("visual_verification", r"slide to (verify|unlock)", 0.85),
    _text("visual_verification", r"audio challenge", 0.8),
    _text("visual_verification", r"drag the (slider|puzzle)", 0.85),
)


_SNAPSHOT_JS = """
(args) => {
  const isVisible = (el) => {
    if (!el) return false;
    const st = window.getComputedStyle(el);
    if (!st) return false;
    if (st.display === "none" || st.visibility === "hidden" || st.opacity === "0") return false;
    const r = el.getBoundingClientRect();
    return r.width > 0 && r.height > 0;
  };
  const isLegalNotice = (el) => {
    const cls = String(el.className || "").toLowerCase();
    const text = String(el.textContent || "").toLowerCase();
    const src = String(el.getAttribute && el.getAttribute("src") || "").toLowerCase();
    return (
      cls.includes("recaptchalegal") ||
      src.includes("size=invisible") ||
      (text.includes("protected by recaptcha") &&
       text.includes("privacy policy") &&
       text.includes("terms of service"))
    );
  };
  const matches = {};
  for (const sel of args.selectors) {
    let nodes = [];
    try {
      nodes = Array.from(document.querySelectorAll(sel)).filter((el) => !isLegalNotice(el));
    } catch (e) {
      nodes = [];
    }
    if (!nodes.length) continue;
    matches[sel] = { count: nodes.length, visible: nodes.some((el) => isVisible(el)) };
  }
  const body = document.body ? String(document.body.innerText || "") : "";
  return { matches, text: body.slice(0, args.limit) };
}
"""


class BlockerClassifier:
    def __init__(self, signals: Optional[list[BlockerSignal]] = None) -> None:
        self.signals: list[BlockerSignal] = list(DEFAULT_SIGNALS if signals is None else signals)

    def register(self, signal: BlockerSignal) -> None:
        """追加信号；追加的信号在同分时排在已有信号之后。"""
        if signal.mode == "dom" and not signal.selector:
            raise ValueError("dom signal requires a selector")
        if signal.mode == "text":
            if not signal.pattern:
                raise ValueError("text signal requires a pattern")
            signal.compiled()
        self.signals.append(signal)

    def snapshot(self, page: Any) -> dict:
        selectors = [s.selector for s in self.signals if s.mode == "dom" and s.selector]
        payload = page.evaluate(_SNAPSHOT_JS, {"selectors": selectors, "limit": BODY_TEXT_LIMIT})
        if not isinstance(payload, dict):
            return {"matches": {}, "text": ""}
        return {
            "matches": payload.get("matches") or {},
            "text": str(payload.get("text") or "")[:BODY_TEXT_LIMIT],
        }

    def classify(self, snapshot: dict) -> Optional[BlockerResult]:
        """对同一份快照打分，返回最高置信度的障碍；没有任何信号命中返回 None。"""
        matches: dict = snapshot.get("matches") or {}
        text: str = snapshot.get("text") or ""
        best: Optional[BlockerResult] = None

        for signal in self.signals:
            candidate: Optional[BlockerResult] = None
            if signal.mode == "dom":
                hit = matches.get(signal.selector)
                if not hit or not int(hit.get("count", 0) or 0):
                    continue
                visible = bool(hit.get("visible"))
                confidence = signal.confidence if visible else signal.confidence * HIDDEN_PENALTY
                candidate = BlockerResult(
                    type=signal.type,
                    confidence=confidence,
                    source="dom",
                    selector=signal.selector,
                    details=f"{signal.type} element matched {signal.selector}"
                    + ("" if visible else " (hidden)"),
                )
            else:
                m = signal.compiled().search(text)
                if not m:
                    continue
                candidate = BlockerResult(
                    type=signal.type,
                    confidence=signal.confidence,
                    source="text",
                    details=f'{signal.type} text matched "{m.group(0)[:80]}"',
                )
            # 严格大于：同分时保留先注册的信号
            if best is None or candidate.confidence > best.confidence:
                best = candidate
        return best

    def detect(self, page: Any) -> Optional[BlockerResult]:
        return self.classify(self.snapshot(page))
