"""
浏览器管理模块：统一管理 Playwright 浏览器启动、profile 与事件日志。
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from playwright.sync_api import BrowserContext, Page, sync_playwright

from ..config import BrowserSettings

LogFn = Callable[[str, str], None]


@dataclass
class BrowserSession:
    playwright: Any
    context: BrowserContext
    page: Page
    browser: Any = None

    def close(self) -> None:
        try:
            self.context.close()
            if self.browser is not None:
                self.browser.close()
        finally:
            try:
                self.playwright.stop()
            except Exception as e:
                print(f"[browser] [WARN] playwright stop failed: {e}")


class BrowserManager:
    """
    管理浏览器生命周期与配置，避免业务流程中重复拼装启动参数。
    """

    def __init__(self, settings: Optional[BrowserSettings] = None, log_fn: Optional[LogFn] = None) -> None:
        self.settings = settings or BrowserSettings()
        self._log = log_fn or (lambda msg, level="info": None)

    def launch(self) -> BrowserSession:
        """启动浏览器并返回会话；配置了 user_data_dir 时使用持久化 profile。"""
        cfg = self.settings
        launch_args: dict[str, Any] = {
            "headless": bool(cfg.headless),
            "slow_mo": cfg.slow_mo if cfg.slow_mo > 0 else None,
            "executable_path": cfg.executable_path or None,
        }
        # 清理 None 参数
        launch_args = {k: v for k, v in launch_args.items() if v is not None}

        playwright = sync_playwright().start()
        browser = None
        try:
            if cfg.user_data_dir:
                user_data_dir = str(Path(cfg.user_data_dir).expanduser())
                context = playwright.chromium.launch_persistent_context(user_data_dir, **launch_args)
            else:
                browser = playwright.chromium.launch(**launch_args)
                context = browser.new_context()
            context.set_default_navigation_timeout(cfg.navigation_timeout_ms)
            page = context.new_page()
        except Exception:
            playwright.stop()
            raise

        self._attach_basic_listeners(page)
        self._attach_context_listeners(context)
        self._log(f"✓ 浏览器已启动 (headless={cfg.headless})", "info")

        return BrowserSession(playwright=playwright, context=context, page=page, browser=browser)

    def _attach_basic_listeners(self, page: Page) -> None:
        """采集页面基础错误信息，写入日志便于排查。"""
        page.on(
            "console",
            lambda msg: self._log(f"[console:{msg.type}] {msg.text}", "warn")
            if msg.type == "error"
            else None,
        )
        page.on("pageerror", lambda exc: self._log(f"[pageerror] {exc}", "error"))

    def _attach_context_listeners(self, context: BrowserContext) -> None:
        context.on(
            "requestfailed",
            lambda req: self._log(f"[requestfailed] {req.method} {req.url}", "warn"),
        )
