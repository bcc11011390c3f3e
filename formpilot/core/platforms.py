"""
平台能力（PlatformProfile）

职责：
- 按 URL 谓词选择平台能力对象，未命中回落到通用平台
- 每个平台各自提供：QA 映射、AI 填写提示、已知文本字段定位、评审页判定、下一步点击

平台之间没有共同基类，只需满足 PlatformProfile 协议。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Literal, Optional, Protocol

from .dom_fillers import FieldSpec
from .locator_resolver import LocatorDescriptor
from .outcome_classifier import looks_like_completion_text

ClickResult = Literal["clicked", "review_detected", "not_found"]


@dataclass
class PageHint:
    page_type: str
    title: str

    @property
    def needs_intervention(self) -> bool:
        return self.page_type in ("sso_signin", "sso_challenge")


class PlatformProfile(Protocol):
    platform_id: str

    def detect_page_by_url(self, url: str) -> Optional[PageHint]: ...

    def build_qa_map(self, profile: dict, qa_overrides: dict[str, str]) -> dict[str, str]: ...

    def build_fill_prompt(self, profile: dict, qa_map: dict[str, str]) -> str: ...

    def field_map(self) -> list[FieldSpec]: ...

    def is_review_screen(self, page: Any) -> bool: ...

    def is_confirmation_screen(self, page: Any) -> bool: ...

    def click_next(self, page: Any) -> ClickResult: ...


# ---------------------------------------------------------------------------
# shared helpers (plain functions, no inheritance)
# ---------------------------------------------------------------------------


def _sso_hint(url: str) -> Optional[PageHint]:
    lowered = (url or "").lower()
    if "accounts.google.com" not in lowered:
        return None
    if "/challenge/" in lowered:
        return PageHint(page_type="sso_challenge", title="Google challenge (manual solve required)")
    return PageHint(page_type="sso_signin", title="Google Sign-In")


def _full_name(profile: dict) -> str:
    return " ".join(
        part for part in (profile.get("first_name"), profile.get("last_name")) if part
    ).strip()


def _address(profile: dict) -> dict:
    addr = profile.get("address")
    return addr if isinstance(addr, dict) else {}


def _drop_empty(mapping: dict[str, Any]) -> dict[str, str]:
    return {k: str(v) for k, v in mapping.items() if v not in (None, "")}


def _body_text(page: Any) -> str:
    try:
        return str(page.evaluate("() => document.body ? document.body.innerText : ''") or "")
    except Exception:
        return ""


def _qa_lines(qa_map: dict[str, str]) -> list[str]:
    return [f'- If the field asks "{q}" -> answer: {a}' for q, a in qa_map.items()]


# ---------------------------------------------------------------------------
# generic
# ---------------------------------------------------------------------------

_GENERIC_REVIEW_JS = """
() => {
  const NEXT = ["next", "continue", "proceed", "review application", "review my application",
                "go to next step", "next step"];
  const NEXT_INCLUDES = ["save and continue", "save & continue", "skip and continue",
                         "submit and continue", "submit & continue"];
  const texts = Array.from(document.querySelectorAll('button, [role="button"], input[type="submit"], a.btn'))
    .map((b) => (b.textContent || b.getAttribute("value") || "").trim().toLowerCase());
  const hasSubmit = texts.some((t) => t === "submit" || t === "submit application");
  const hasNext = texts.some((t) => NEXT.includes(t) || NEXT_INCLUDES.some((s) => t.includes(s)));
  if (!hasSubmit || hasNext) return false;
  const editable = Array.from(document.querySelectorAll(
    'input[type="text"]:not([readonly]), input[type="email"]:not([readonly]), ' +
    'input[type="tel"]:not([readonly]), textarea:not([readonly])'
  )).some((el) => {
    const r = el.getBoundingClientRect();
    return r.width > 0 && r.height > 0 && !(el.value || "").trim();
  });
  return !editable;
}
"""

_GENERIC_CLICK_NEXT_JS = """
() => {
  const NEXT = ["next", "continue", "proceed", "review application", "review my application",
                "go to next step", "next step"];
  const NEXT_INCLUDES = ["save and continue", "save & continue", "skip and continue",
                         "skip & continue", "submit profile", "submit and continue",
                         "submit & continue"];
  const vh = window.innerHeight;
  const buttons = Array.from(document.querySelectorAll('button, [role="button"], input[type="submit"], a.btn'))
    .map((el) => {
      const r = el.getBoundingClientRect();
      return {
        el,
        text: (el.textContent || el.getAttribute("value") || "").trim().toLowerCase(),
        visible: r.width > 0 && r.height > 0 && r.bottom > 0 && r.top < vh,
      };
    });
  const isNext = (t) => NEXT.includes(t) || NEXT_INCLUDES.some((s) => t.includes(s));
  const hasSubmit = buttons.some((b) => b.text === "submit" || b.text === "submit application");
  const hasNext = buttons.some((b) => isNext(b.text));
  if (hasSubmit && !hasNext) return "review_detected";
  const target = buttons.find((b) => b.visible && isNext(b.text)) || buttons.find((b) => isNext(b.text));
  if (target) {
    target.el.scrollIntoView({ block: "center", behavior: "instant" });
    target.el.click();
    return "clicked";
  }
  return "not_found";
}
"""


class GenericPlatform:
    platform_id = "generic"

    def detect_page_by_url(self, url: str) -> Optional[PageHint]:
        return _sso_hint(url)

    def build_qa_map(self, profile: dict, qa_overrides: dict[str, str]) -> dict[str, str]:
        addr = _address(profile)
        qa = _drop_empty(
            {
                "First Name": profile.get("first_name"),
                "Last Name": profile.get("last_name"),
                "Full Name": _full_name(profile),
                "Email": profile.get("email"),
                "Phone": profile.get("phone"),
                "Address": addr.get("street"),
                "City": addr.get("city"),
                "State": addr.get("state"),
                "Zip Code": addr.get("zip"),
                "Country": addr.get("country"),
                "LinkedIn": profile.get("linkedin_url"),
                "Website": profile.get("website_url"),
                "Gender": profile.get("gender"),
                "Veteran Status": profile.get("veteran_status"),
                "Disability Status": profile.get("disability_status"),
                "Work Authorization": profile.get("work_authorization"),
                "Visa Sponsorship": profile.get("visa_sponsorship"),
            }
        )
        qa.update(_drop_empty(qa_overrides or {}))
        return qa

    def build_fill_prompt(self, profile: dict, qa_map: dict[str, str]) -> str:
        parts = [
            "Fill every empty form field that is visible on screen using ONLY the data below.",
            "Match each field label to the closest entry. Skip fields with no matching entry.",
            "Do not click Next, Continue or Submit.",
            "",
            "DATA:",
            *_qa_lines(qa_map),
        ]
        return "\n".join(parts)

    def field_map(self) -> list[FieldSpec]:
        return [
            FieldSpec("First Name", LocatorDescriptor(label="First Name", field_name="first_name", dom_id="first_name")),
            FieldSpec("Last Name", LocatorDescriptor(label="Last Name", field_name="last_name", dom_id="last_name")),
            FieldSpec("Email", LocatorDescriptor(label="Email", field_name="email", css='input[type="email"]')),
            FieldSpec("Phone", LocatorDescriptor(label="Phone", field_name="phone", css='input[type="tel"]')),
        ]

    def is_review_screen(self, page: Any) -> bool:
        return bool(page.evaluate(_GENERIC_REVIEW_JS))

    def is_confirmation_screen(self, page: Any) -> bool:
        return looks_like_completion_text(_body_text(page).lower())

    def click_next(self, page: Any) -> ClickResult:
        result = page.evaluate(_GENERIC_CLICK_NEXT_JS)
        return result if result in ("clicked", "review_detected") else "not_found"


# ---------------------------------------------------------------------------
# workday
# ---------------------------------------------------------------------------

_WORKDAY_REVIEW_JS = """
() => {
  const headings = Array.from(document.querySelectorAll("h1, h2, h3"));
  const isReviewHeading = headings.some((h) => (h.textContent || "").toLowerCase().includes("review"));
  const buttons = Array.from(document.querySelectorAll("button"));
  const text = (b) => (b.textContent || "").trim();
  const hasSubmit = buttons.some((b) => text(b).toLowerCase() === "submit");
  const hasSaveAndContinue = buttons.some((b) => text(b).toLowerCase().includes("save and continue"));
  const hasSelectOne = buttons.some((b) => text(b) === "Select One");
  const hasEditableInputs = document.querySelectorAll(
    'input[type="text"]:not([readonly]), textarea:not([readonly]), input[type="email"], input[type="tel"]'
  ).length > 0;
  return isReviewHeading && hasSubmit && !hasSaveAndContinue && !hasSelectOne && !hasEditableInputs;
}
"""

_WORKDAY_CLICK_NEXT_JS = """
() => {
  const buttons = Array.from(document.querySelectorAll('button, [role="button"], a'));
  const text = (b) => (b.textContent || "").trim().toLowerCase();
  for (const target of ["save and continue", "next", "continue"]) {
    const btn = buttons.find((b) => text(b) === target);
    if (btn) { btn.click(); return "clicked"; }
  }
  const fallback = buttons.find((b) => text(b).includes("save and continue") || text(b).includes("next"));
  if (fallback) { fallback.click(); return "clicked"; }
  const hasSubmit = buttons.some((b) => text(b) === "submit" || text(b) === "submit application");
  return hasSubmit ? "review_detected" : "not_found";
}
"""

_WORKDAY_PREFIX = "data-automation-id"


def _wd(automation_id: str) -> str:
    return f'[{_WORKDAY_PREFIX}="{automation_id}"]'


class WorkdayPlatform:
    platform_id = "workday"

    def detect_page_by_url(self, url: str) -> Optional[PageHint]:
        hint = _sso_hint(url)
        if hint:
            return hint
        lowered = (url or "").lower()
        if "/login" in lowered or "/signin" in lowered:
            return PageHint(page_type="workday_signin", title="Workday account sign-in")
        return None

    def build_qa_map(self, profile: dict, qa_overrides: dict[str, str]) -> dict[str, str]:
        addr = _address(profile)
        decline = "I do not wish to answer"
        qa = _drop_empty(
            {
                "Gender": profile.get("gender") or decline,
                # 不加单独的 "Ethnicity" 键：normalize 后包含 "city"，会误匹配 City 字段
                "Race/Ethnicity": profile.get("race_ethnicity") or decline,
                "Veteran Status": profile.get("veteran_status") or "I am not a protected veteran",
                "Are you a protected veteran": profile.get("veteran_status") or "I am not a protected veteran",
                "Disability Status": profile.get("disability_status") or decline,
                "Email Address": profile.get("email"),
                "Phone Number": profile.get("phone"),
                "Phone Device Type": profile.get("phone_device_type") or "Mobile",
                "Country Phone Code": profile.get("phone_country_code") or "+1",
                "Address Line 1": addr.get("street"),
                "City": addr.get("city"),
                "State/Province": addr.get("state"),
                "Postal Code": addr.get("zip"),
                "Country/Territory": addr.get("country"),
                "Legal First Name": profile.get("first_name"),
                "First Name": profile.get("first_name"),
                "Legal Last Name": profile.get("last_name"),
                "Last Name": profile.get("last_name"),
                "Signature": _full_name(profile),
                "How Did You Hear About Us": profile.get("referral_source"),
                "Are you legally authorized to work": profile.get("work_authorization"),
                "Will you now or in the future require sponsorship": profile.get("visa_sponsorship"),
            }
        )
        qa.update(_drop_empty(qa_overrides or {}))
        return qa

    def build_fill_prompt(self, profile: dict, qa_map: dict[str, str]) -> str:
        parts = [
            "FIELD-TO-VALUE MAPPING: read each visible field label and match it to a value below.",
            "Workday dropdowns show 'Select One' until answered; pick the option closest to the value.",
            "Never click 'Submit', 'Save and Continue' or any back arrow.",
            "For questions not listed, skip the field rather than guessing.",
            "",
            *_qa_lines(qa_map),
        ]
        return "\n".join(parts)

    def field_map(self) -> list[FieldSpec]:
        return [
            FieldSpec("Legal First Name", LocatorDescriptor(css=_wd("legalNameSection_firstName"), label="First Name")),
            FieldSpec("Legal Last Name", LocatorDescriptor(css=_wd("legalNameSection_lastName"), label="Last Name")),
            FieldSpec("Address Line 1", LocatorDescriptor(css=_wd("addressSection_addressLine1"), label="Address Line 1")),
            FieldSpec("City", LocatorDescriptor(css=_wd("addressSection_city"), label="City")),
            FieldSpec("Postal Code", LocatorDescriptor(css=_wd("addressSection_postalCode"), label="Postal Code")),
            FieldSpec("Phone Number", LocatorDescriptor(css=_wd("phone-number"), label="Phone Number")),
            FieldSpec("Email Address", LocatorDescriptor(css=_wd("email"), label="Email Address")),
        ]

    def is_review_screen(self, page: Any) -> bool:
        return bool(page.evaluate(_WORKDAY_REVIEW_JS))

    def is_confirmation_screen(self, page: Any) -> bool:
        text = _body_text(page).lower()
        return looks_like_completion_text(text) or "application has been submitted" in text

    def click_next(self, page: Any) -> ClickResult:
        result = page.evaluate(_WORKDAY_CLICK_NEXT_JS)
        return result if result in ("clicked", "review_detected") else "not_found"


# ---------------------------------------------------------------------------
# registry
# ---------------------------------------------------------------------------


def _is_workday_url(url: str) -> bool:
    return any(
        host in url
        for host in ("myworkdayjobs.com", "myworkday.com", "myworkdaysite.com")
    )


PLATFORM_PREDICATES: list[tuple[Callable[[str], bool], Callable[[], PlatformProfile]]] = [
    (_is_workday_url, WorkdayPlatform),
]


def detect_platform(url: str) -> PlatformProfile:
    lowered = (url or "").lower()
    for predicate, factory in PLATFORM_PREDICATES:
        if predicate(lowered):
            return factory()
    return GenericPlatform()
