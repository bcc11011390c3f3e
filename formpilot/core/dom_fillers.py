"""
Deterministic DOM fill helpers (no reasoning-service calls).

Everything here is a plain function over a Playwright ``Page`` so the fill
controller can import them by name and tests can swap them out. Viewport
scoped helpers only look at elements currently on screen; the controller
scrolls to bring the rest of the form into view.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional

from .locator_resolver import LocatorDescriptor, LocatorResolver

_GENERIC_WORDS = {
    "name",
    "number",
    "address",
    "date",
    "line",
    "code",
    "url",
    "type",
    "level",
    "status",
    "field",
    "info",
    "the",
    "your",
    "please",
    "enter",
    "select",
    "provide",
}


@dataclass(frozen=True)
class FieldSpec:
    """A text field the platform knows how to find, keyed by its qa_map entry."""

    key: str
    descriptor: LocatorDescriptor


@dataclass
class FillOutcome:
    filled: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)


@dataclass
class ScrollPosition:
    y: float
    max_y: float
    viewport_height: float


# ---------------------------------------------------------------------------
# label / option matching
# ---------------------------------------------------------------------------


def normalize_label(text: str | None) -> str:
    lowered = (text or "").lower()
    lowered = re.sub(r"[^a-z0-9\s]", "", lowered)
    return " ".join(lowered.split())


def find_best_answer(label: str, qa_map: dict[str, str]) -> Optional[str]:
    """
    Match a field label against qa_map keys.

    Passes, first hit wins: exact; label contains key; key contains label;
    word overlap where every distinguishing (non generic) label word appears
    in the key and at least two words overlap.
    """
    norm = normalize_label(label)
    if not norm or not qa_map:
        return None

    for q, a in qa_map.items():
        if normalize_label(q) == norm:
            return a

    for q, a in qa_map.items():
        nq = normalize_label(q)
        if len(nq) >= 3 and nq in norm:
            return a

    if len(norm) >= 3:
        for q, a in qa_map.items():
            if norm in normalize_label(q):
                return a

    words = [w for w in norm.split() if len(w) > 2]
    if not words:
        return None
    distinguishing = [w for w in words if w not in _GENERIC_WORDS]
    for q, a in qa_map.items():
        q_words = [w for w in normalize_label(q).split() if len(w) > 2]
        overlap = [w for w in words if w in q_words]
        if distinguishing:
            if all(w in q_words for w in distinguishing) and len(overlap) >= 2:
                return a
        elif len(overlap) >= 2:
            return a
    return None


def match_option_text(options: list[str], wanted: str) -> Optional[str]:
    w = normalize_label(wanted)
    if not w:
        return None
    exact = [opt for opt in options if normalize_label(opt) == w]
    if exact:
        return exact[0]
    starts = [opt for opt in options if normalize_label(opt).startswith(w)]
    if starts:
        return starts[0]
    contains = [
        opt
        for opt in options
        if normalize_label(opt) and (w in normalize_label(opt) or normalize_label(opt) in w)
    ]
    if contains:
        return contains[0]
    return None


# ---------------------------------------------------------------------------
# structured choice fields (native <select> + radio groups)
# ---------------------------------------------------------------------------

_COLLECT_CHOICES_JS = """
() => {
  const vh = window.innerHeight;
  const inView = (el) => {
    const r = el.getBoundingClientRect();
    if (r.width === 0 || r.height === 0) return false;
    return !(r.bottom < 0 || r.top > vh);
  };
  const labelFor = (el) => {
    let label = "";
    if (el.labels && el.labels.length) label = (el.labels[0].textContent || "").trim();
    if (!label) label = el.getAttribute("aria-label") || "";
    if (!label) {
      const by = el.getAttribute("aria-labelledby");
      const ref = by ? document.getElementById(by) : null;
      if (ref) label = (ref.textContent || "").trim();
    }
    if (!label) label = el.name || el.id || "";
    return label;
  };
  const out = [];
  document.querySelectorAll("select").forEach((sel, i) => {
    if (sel.disabled) return;
    if (sel.value && sel.selectedIndex > 0) return;
    if (!inView(sel)) return;
    out.push({
      kind: "select",
      index: i,
      label: labelFor(sel),
      options: Array.from(sel.options).map((o) => (o.text || "").trim()),
    });
  });
  const groups = {};
  document.querySelectorAll('input[type="radio"]:not([disabled])').forEach((r) => {
    if (!r.name) return;
    if (!groups[r.name]) groups[r.name] = [];
    groups[r.name].push(r);
  });
  Object.keys(groups).forEach((name) => {
    const radios = groups[name];
    if (radios.some((r) => r.checked)) return;
    if (!radios.some((r) => inView(r))) return;
    const fs = radios[0].closest("fieldset");
    const legend = fs ? fs.querySelector("legend") : null;
    let question = legend ? (legend.textContent || "").trim() : "";
    if (!question) {
      const box = radios[0].closest('[role="radiogroup"], [class*="question"], [class*="field"]');
      const lbl = box ? box.querySelector('label, [class*="label"]') : null;
      question = lbl ? (lbl.textContent || "").trim() : name;
    }
    out.push({
      kind: "radio",
      name,
      label: question,
      options: radios.map((r) => {
        const l = r.labels && r.labels.length ? r.labels[0].textContent : r.value;
        return String(l || "").trim();
      }),
    });
  });
  return out;
}
"""

_APPLY_SELECT_JS = """
(args) => {
  const sel = document.querySelectorAll("select")[args.index];
  if (!sel) return false;
  const opt = Array.from(sel.options).find((o) => (o.text || "").trim() === args.value);
  if (!opt) return false;
  const setter = Object.getOwnPropertyDescriptor(HTMLSelectElement.prototype, "value");
  if (setter && setter.set) setter.set.call(sel, opt.value); else sel.value = opt.value;
  sel.dispatchEvent(new Event("input", { bubbles: true }));
  sel.dispatchEvent(new Event("change", { bubbles: true }));
  return true;
}
"""

_APPLY_RADIO_JS = """
(args) => {
  const radios = Array.from(document.querySelectorAll('input[type="radio"]'))
    .filter((r) => r.name === args.name);
  const pick = radios.find((r) => {
    const l = r.labels && r.labels.length ? r.labels[0].textContent : r.value;
    return String(l || "").trim() === args.value;
  });
  if (!pick) return false;
  pick.click();
  return true;
}
"""


def fill_choice_fields(page: Any, qa_map: dict[str, str]) -> int:
    """Answer visible, unanswered selects and radio groups from qa_map."""
    if not qa_map:
        return 0
    fields_ = page.evaluate(_COLLECT_CHOICES_JS) or []
    filled = 0
    for item in fields_:
        answer = find_best_answer(item.get("label", ""), qa_map)
        if not answer:
            continue
        options = [o for o in item.get("options") or [] if o]
        option = match_option_text(options, answer)
        if not option:
            continue
        if item.get("kind") == "select":
            ok = page.evaluate(_APPLY_SELECT_JS, {"index": item.get("index"), "value": option})
        else:
            ok = page.evaluate(_APPLY_RADIO_JS, {"name": item.get("name"), "value": option})
        if ok:
            filled += 1
    return filled


# ---------------------------------------------------------------------------
# dates / checkboxes / mapped text fields
# ---------------------------------------------------------------------------

_FILL_DATES_JS = """
(today) => {
  let filled = 0;
  const vh = window.innerHeight;
  document.querySelectorAll('input[type="date"]').forEach((input) => {
    if (input.value || input.disabled || input.readOnly) return;
    const r = input.getBoundingClientRect();
    if (r.width === 0 || r.height === 0) return;
    if (r.bottom < 0 || r.top > vh) return;
    const label = (
      (input.labels && input.labels.length ? input.labels[0].textContent : "") + " " +
      (input.getAttribute("aria-label") || "") + " " + (input.name || "")
    ).toLowerCase();
    if (!(label.includes("today") || label.includes("signature") || label.includes("current"))) return;
    const setter = Object.getOwnPropertyDescriptor(HTMLInputElement.prototype, "value");
    if (setter && setter.set) setter.set.call(input, today); else input.value = today;
    input.dispatchEvent(new Event("input", { bubbles: true }));
    input.dispatchEvent(new Event("change", { bubbles: true }));
    filled += 1;
  });
  return filled;
}
"""

_CHECK_REQUIRED_BOXES_JS = """
() => {
  const words = [
    "agree", "acknowledge", "terms", "consent", "privacy", "certify",
    "confirm", "authorize", "accept", "understand", "i have read",
  ];
  const vh = window.innerHeight;
  let checked = 0;
  document.querySelectorAll('input[type="checkbox"]').forEach((cb) => {
    if (cb.checked || cb.disabled) return;
    const r = cb.getBoundingClientRect();
    if (r.width === 0 || r.height === 0) return;
    if (r.bottom < 0 || r.top > vh) return;
    const required = cb.required || cb.getAttribute("aria-required") === "true";
    let nearby = "";
    if (cb.labels) for (const l of cb.labels) nearby += " " + (l.textContent || "");
    let el = cb.parentElement;
    for (let depth = 0; depth < 3 && el; depth++) {
      nearby += " " + (el.textContent || "");
      el = el.parentElement;
    }
    nearby = nearby.toLowerCase();
    if (required || words.some((w) => nearby.includes(w))) {
      cb.click();
      checked += 1;
    }
  });
  return checked;
}
"""


def fill_date_fields(page: Any, today: Optional[date] = None) -> int:
    """Fill visible empty "today/signature date" inputs with today's date."""
    value = (today or date.today()).isoformat()
    return int(page.evaluate(_FILL_DATES_JS, value) or 0)


def check_required_checkboxes(page: Any) -> int:
    return int(page.evaluate(_CHECK_REQUIRED_BOXES_JS) or 0)


def fill_mapped_text_fields(
    page: Any,
    field_specs: list[FieldSpec],
    qa_map: dict[str, str],
    resolver: LocatorResolver,
) -> FillOutcome:
    """
    Fill the platform's known text fields through the locator resolver.

    A field whose locator cannot be resolved lands in ``unresolved`` so the
    AI pass can be told about it; it never fails the screen.
    """
    outcome = FillOutcome()
    for spec in field_specs:
        value = qa_map.get(spec.key)
        if not value:
            continue
        result = resolver.resolve(page, spec.descriptor)
        if not result.found:
            outcome.unresolved.append(spec.key)
            continue
        try:
            if (result.locator.input_value() or "").strip():
                continue
            result.locator.fill(str(value))
            outcome.filled.append(spec.key)
        except Exception:
            outcome.unresolved.append(spec.key)
    return outcome


# ---------------------------------------------------------------------------
# empty-field probes
# ---------------------------------------------------------------------------

_HAS_EMPTY_FIELDS_JS = """
() => {
  const vh = window.innerHeight;
  const inView = (el) => {
    const r = el.getBoundingClientRect();
    if (r.width === 0 || r.height === 0) return false;
    return !(r.bottom < 0 || r.top > vh);
  };
  const inputs = document.querySelectorAll(
    'input[type="text"], input[type="email"], input[type="tel"], input[type="url"], ' +
    'input[type="number"], input:not([type]), textarea'
  );
  for (const input of inputs) {
    if (input.disabled || input.readOnly) continue;
    const r = input.getBoundingClientRect();
    if (r.width < 20 || r.height < 10) continue;
    if (r.bottom < 0 || r.top > vh) continue;
    if (input.getAttribute("aria-hidden") === "true") continue;
    const st = window.getComputedStyle(input);
    if (st.display === "none" || st.visibility === "hidden" || st.opacity === "0") continue;
    if (!input.value || input.value.trim() === "") return true;
  }
  for (const sel of document.querySelectorAll("select:not([disabled])")) {
    if (inView(sel) && sel.selectedIndex <= 0) return true;
  }
  for (const cb of document.querySelectorAll('input[type="checkbox"]:not([disabled])')) {
    if (cb.checked || !inView(cb)) continue;
    if (cb.required || cb.getAttribute("aria-required") === "true") return true;
  }
  const groups = {};
  for (const radio of document.querySelectorAll('input[type="radio"]:not([disabled])')) {
    if (!radio.name || !inView(radio)) continue;
    if (!(radio.name in groups)) groups[radio.name] = false;
    if (radio.checked) groups[radio.name] = true;
  }
  for (const name in groups) if (!groups[name]) return true;
  return false;
}
"""

_COLLECT_EMPTY_FIELDS_JS = """
(limit) => {
  const vh = window.innerHeight;
  const out = [];
  const labelFor = (el) => {
    let label = "";
    if (el.labels && el.labels.length) label = (el.labels[0].textContent || "").trim();
    if (!label) label = el.getAttribute("aria-label") || "";
    if (!label) label = el.getAttribute("placeholder") || "";
    if (!label) label = el.name || el.id || "";
    return label.replace(/\\s+/g, " ").slice(0, 160);
  };
  const nodes = document.querySelectorAll(
    'input[type="text"], input[type="email"], input[type="tel"], input[type="url"], ' +
    'input[type="number"], input:not([type]), textarea, select'
  );
  for (const el of nodes) {
    if (out.length >= limit) break;
    if (el.disabled || el.readOnly) continue;
    const r = el.getBoundingClientRect();
    if (r.width === 0 || r.height === 0) continue;
    if (r.bottom < 0 || r.top > vh) continue;
    const st = window.getComputedStyle(el);
    if (st.display === "none" || st.visibility === "hidden") continue;
    const isSelect = el.tagName === "SELECT";
    const empty = isSelect ? el.selectedIndex <= 0 : !(el.value || "").trim();
    if (!empty) continue;
    out.push({
      label: labelFor(el),
      kind: isSelect ? "select" : (el.tagName === "TEXTAREA" ? "textarea" : (el.type || "text")),
      name: el.name || "",
      id: el.id || "",
      required: !!(el.required || el.getAttribute("aria-required") === "true"),
      options: isSelect ? Array.from(el.options).map((o) => (o.text || "").trim()).filter(Boolean).slice(0, 40) : [],
    });
  }
  return out;
}
"""

_CENTER_NEXT_EMPTY_JS = """
() => {
  const inputs = document.querySelectorAll(
    'input[type="text"], input[type="email"], input[type="tel"], input[type="url"], input:not([type]), textarea, select'
  );
  for (const el of inputs) {
    if (el.disabled || el.readOnly) continue;
    const r = el.getBoundingClientRect();
    if (r.width < 20 || r.height < 10) continue;
    const st = window.getComputedStyle(el);
    if (st.display === "none" || st.visibility === "hidden" || st.opacity === "0") continue;
    const empty = el.tagName === "SELECT" ? el.selectedIndex <= 0 : !(el.value || "").trim();
    if (empty) {
      el.scrollIntoView({ block: "center", behavior: "instant" });
      return true;
    }
  }
  return false;
}
"""


def has_empty_visible_fields(page: Any) -> bool:
    return bool(page.evaluate(_HAS_EMPTY_FIELDS_JS))


def collect_empty_fields(page: Any, limit: int = 25) -> list[dict]:
    return list(page.evaluate(_COLLECT_EMPTY_FIELDS_JS, limit) or [])


def center_next_empty_field(page: Any) -> bool:
    centered = bool(page.evaluate(_CENTER_NEXT_EMPTY_JS))
    if centered:
        page.wait_for_timeout(300)
    return centered


# ---------------------------------------------------------------------------
# scrolling / banners / validation
# ---------------------------------------------------------------------------

_SUPPRESS_BANNERS_JS = """
() => {
  document.querySelectorAll('[data-automation-id="errorMessage"], [role="alert"]')
    .forEach((el) => { el.style.display = "none"; });
}
"""

_SCROLL_POSITION_JS = """
() => ({
  y: window.scrollY,
  max_y: document.documentElement.scrollHeight - window.innerHeight,
  viewport: window.innerHeight,
})
"""

_DETECT_VALIDATION_JS = """
() => {
  const patterns = [
    "required", "please fill", "please enter", "please select", "invalid",
    "must be completed", "cannot be blank", "is not valid", "must provide",
    "missing required", "errors found",
  ];
  const els = document.querySelectorAll(
    '[role="alert"], [data-automation-id="errorMessage"], .field-error, ' +
    '.validation-error, .form-error, .input-error, .error-message'
  );
  for (const el of els) {
    const r = el.getBoundingClientRect();
    if (r.width === 0 || r.height === 0) continue;
    const text = (el.textContent || "").trim().toLowerCase();
    if (!text || text.length > 500) continue;
    if (patterns.some((p) => text.includes(p))) return true;
  }
  for (const el of document.querySelectorAll('[aria-invalid="true"]')) {
    const r = el.getBoundingClientRect();
    if (r.width > 0 && r.height > 0) return true;
  }
  return false;
}
"""

_COLLECT_FLAGGED_JS = """
() => {
  const out = [];
  for (const el of document.querySelectorAll('[aria-invalid="true"]')) {
    const r = el.getBoundingClientRect();
    if (r.width === 0 || r.height === 0) continue;
    let label = "";
    if (el.labels && el.labels.length) label = (el.labels[0].textContent || "").trim();
    if (!label) label = el.getAttribute("aria-label") || el.name || el.id || "";
    if (label) out.push(label.replace(/\\s+/g, " ").slice(0, 120));
  }
  return out;
}
"""


def suppress_error_banners(page: Any) -> None:
    page.evaluate(_SUPPRESS_BANNERS_JS)
    page.wait_for_timeout(300)


def scroll_to_top(page: Any, settle_ms: int = 400) -> None:
    page.evaluate("() => window.scrollTo(0, 0)")
    page.wait_for_timeout(settle_ms)


def read_scroll_position(page: Any) -> ScrollPosition:
    raw = page.evaluate(_SCROLL_POSITION_JS) or {}
    return ScrollPosition(
        y=float(raw.get("y", 0) or 0),
        max_y=float(raw.get("max_y", 0) or 0),
        viewport_height=float(raw.get("viewport", 0) or 0),
    )


def scroll_by_viewport(page: Any, fraction: float) -> None:
    page.evaluate(
        "(f) => window.scrollBy(0, Math.round(window.innerHeight * f))",
        fraction,
    )


def detect_validation_errors(page: Any) -> bool:
    return bool(page.evaluate(_DETECT_VALIDATION_JS))


def collect_flagged_fields(page: Any) -> list[str]:
    """Labels of fields the page marked aria-invalid."""
    return [str(x) for x in page.evaluate(_COLLECT_FLAGGED_JS) or []]
