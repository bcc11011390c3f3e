"""
Configuration module for loading engine settings.

Settings come from ``formpilot/config.yaml`` (or the file named by
``FORMPILOT_CONFIG``) and are exposed as small dataclasses so callers never
touch raw dict keys. Missing keys fall back to the dataclass defaults.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml


# Config paths
PACKAGE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH = PACKAGE_DIR / "config.yaml"
DEFAULT_DATABASE_URL = "sqlite:///./formpilot.db"


_settings_cache: Optional["Settings"] = None


@dataclass
class QueueSettings:
    poll_interval_seconds: float = 5.0
    heartbeat_interval_seconds: float = 30.0
    stale_after_seconds: float = 120.0
    reap_interval_seconds: float = 60.0
    retry_backoff_base_seconds: float = 5.0
    retry_backoff_max_seconds: float = 60.0


@dataclass
class WorkerSettings:
    worker_id: str = ""
    job_types: list[str] = field(default_factory=list)
    drain_timeout_seconds: float = 30.0
    stall_timeout_seconds: float = 300.0
    max_screens: int = 15
    screenshot_dir: str = ""


@dataclass
class ResolverSettings:
    timeout_per_strategy_ms: int = 3000
    max_stale_retries: int = 1
    stale_backoff_ms: int = 100


@dataclass
class FillSettings:
    max_scroll_rounds: int = 10
    max_llm_calls: int = 20
    scroll_fraction: float = 0.65
    bottom_epsilon_px: int = 10
    scroll_settle_ms: int = 800
    advance_settle_ms: int = 1500


@dataclass
class BrowserSettings:
    headless: bool = True
    slow_mo: int = 0
    user_data_dir: str = ""
    executable_path: str = ""
    navigation_timeout_ms: int = 30000


@dataclass
class LLMSettings:
    model: str = "gpt-4o-mini"
    fallback_models: list[str] = field(default_factory=list)
    temperature: float = 0.1
    max_tokens: int = 1200

    def model_chain(self) -> list[str]:
        chain = [self.model] if self.model else []
        for m in self.fallback_models:
            if m and m not in chain:
                chain.append(m)
        return chain


@dataclass
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    queue: QueueSettings = field(default_factory=QueueSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    resolver: ResolverSettings = field(default_factory=ResolverSettings)
    fill: FillSettings = field(default_factory=FillSettings)
    browser: BrowserSettings = field(default_factory=BrowserSettings)
    llm: LLMSettings = field(default_factory=LLMSettings)


_SECTIONS: dict[str, type] = {
    "queue": QueueSettings,
    "worker": WorkerSettings,
    "resolver": ResolverSettings,
    "fill": FillSettings,
    "browser": BrowserSettings,
    "llm": LLMSettings,
}


def _build_section(cls: type, raw: Any):
    if not isinstance(raw, dict):
        return cls()
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        print(f"⚠️ Ignoring unknown {cls.__name__} keys: {', '.join(unknown)}")
    return cls(**{k: v for k, v in raw.items() if k in known})


def settings_from_dict(raw: dict) -> Settings:
    """Build a Settings object from an already parsed YAML mapping."""
    raw = raw or {}
    sections = {name: _build_section(cls, raw.get(name)) for name, cls in _SECTIONS.items()}
    database_url = (
        os.getenv("FORMPILOT_DATABASE_URL")
        or raw.get("database_url")
        or DEFAULT_DATABASE_URL
    )
    return Settings(database_url=database_url, **sections)


def config_path() -> Path:
    override = os.getenv("FORMPILOT_CONFIG")
    return Path(override).expanduser() if override else DEFAULT_CONFIG_PATH


def load_settings(force_reload: bool = False) -> Settings:
    """
    Load engine settings from YAML.
    Caches the result for performance.

    Returns:
        Settings: parsed settings, defaults when the file is absent or broken
    """
    global _settings_cache

    if _settings_cache is not None and not force_reload:
        return _settings_cache

    path = config_path()
    raw: dict = {}
    if not path.exists():
        print(f"⚠️ Config not found, using defaults: {path}")
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except Exception as e:
            print(f"❌ Failed to load config: {e}")
            raw = {}

    _settings_cache = settings_from_dict(raw)
    return _settings_cache


def get_openai_api_key() -> str:
    return os.getenv("OPENAI_API_KEY", "")
