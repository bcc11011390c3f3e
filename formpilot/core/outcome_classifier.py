"""
结果分类模块

职责：
- 运行时异常文案 → 机器可读错误码（正则表，先命中者优先）
- 判定错误码是否可重试
- 完成页文案识别（提交后确认页）
"""

from __future__ import annotations

import re
from dataclasses import dataclass

# 终态错误码（不在正则表中，由执行器直接给出）
BLOCKER_DETECTED = "blocker_detected"
JOB_TIMEOUT = "timeout"
VALIDATION_FAILED = "validation_failed"
NAVIGATION_FAILED = "navigation_failed"
SCREEN_LIMIT = "screen_limit_exceeded"
INTERNAL_ERROR = "internal_error"

ERROR_CLASSIFICATIONS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"budget.?exceeded", re.I), "budget_exceeded"),
    (re.compile(r"action.?limit.?exceeded", re.I), "action_limit_exceeded"),
    (re.compile(r"captcha", re.I), "captcha_blocked"),
    (re.compile(r"login|sign.?in", re.I), "login_required"),
    (re.compile(r"rate.?limit|too many requests|\b429\b", re.I), "rate_limited"),
    (re.compile(r"browser.*closed|target.*closed|browser has disconnected", re.I), "browser_crashed"),
    (re.compile(r"net::|disconnect|connection|econnrefused|econnreset", re.I), "network_error"),
    (re.compile(r"timeout|timed out", re.I), "page_timeout"),
    (re.compile(r"not.?found|selector", re.I), "element_not_found"),
]

# 障碍类（captcha/login）与整体超时不自动重试
RETRYABLE_ERROR_CODES = frozenset(
    {
        "rate_limited",
        "browser_crashed",
        "network_error",
        "page_timeout",
        "element_not_found",
        INTERNAL_ERROR,
    }
)


@dataclass
class ErrorClassification:
    code: str
    retryable: bool
    message: str


def classify_error(message: str | BaseException) -> ErrorClassification:
    text = str(message or "")
    code = INTERNAL_ERROR
    for pattern, candidate in ERROR_CLASSIFICATIONS:
        if pattern.search(text):
            code = candidate
            break
    return ErrorClassification(
        code=code,
        retryable=code in RETRYABLE_ERROR_CODES,
        message=text[:500],
    )


def looks_like_completion_text(lower_text: str) -> bool:
    success_indicators = [
        "thank you for applying",
        "thanks for your application",
        "application submitted",
        "application received",
        "successfully submitted",
        "your application has been submitted",
        "application complete",
        "thanks for submitting",
        "your submission has been received",
        "form submitted",
    ]
    return any(token in lower_text for token in success_indicators)
