from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from playwright.sync_api import BrowserContext, ConsoleMessage, Page, sync_playwright

from ui_harness.services.output import CapturedOutput
from ui_harness.services.resources import AutomationScope, BrowserDriver, BrowserLogMessage

LOGGER = logging.getLogger("ui_harness.browser")

DEFAULT_VIEWPORT = {"width": 1280, "height": 720}
DEFAULT_TIMEOUT_MS = 30000


class PlaywrightDriver(BrowserDriver):
    """Drives the active page of a Playwright context and records console output of all its pages."""

    def __init__(self, context: BrowserContext, page: Page) -> None:
        self._context = context
        self._page = page
        self._messages: List[BrowserLogMessage] = []
        self._lock = threading.Lock()
        self._watch(page)
        context.on("page", self._on_new_page)

    def _watch(self, page: Page) -> None:
        page.on("console", self._on_console)
        page.on("pageerror", self._on_page_error)

    def _on_new_page(self, page: Page) -> None:
        self._watch(page)

    def _on_console(self, message: ConsoleMessage) -> None:
        location = message.location or {}
        source = str(location.get("url") or "")
        if location.get("lineNumber") is not None:
            source = f"{source}:{location['lineNumber']}"
        self._append(BrowserLogMessage(level=message.type, message=message.text, source=source))

    def _on_page_error(self, error: Any) -> None:
        self._append(BrowserLogMessage(level="error", message=str(error), source="pageerror"))

    def _append(self, message: BrowserLogMessage) -> None:
        message.timestamp = datetime.now(tz=timezone.utc)
        with self._lock:
            self._messages.append(message)

    @property
    def page(self) -> Page:
        return self._page

    @property
    def url(self) -> str:
        return self._page.url

    @property
    def page_source(self) -> str:
        return self._page.content()

    def navigate(self, url: str) -> None:
        self._page.goto(url, wait_until="load")

    def evaluate(self, expression: str, arg: Any = None) -> Any:
        if arg is None:
            return self._page.evaluate(expression)
        return self._page.evaluate(expression, arg)

    def screenshot(self) -> bytes:
        return self._page.screenshot(full_page=True)

    def get_and_empty_browser_log(self) -> List[BrowserLogMessage]:
        with self._lock:
            messages = list(self._messages)
            self._messages.clear()
        return messages


class PlaywrightScope(AutomationScope):
    def __init__(
        self,
        base_url: str,
        *,
        browser_name: str = "chromium",
        headless: bool = True,
        viewport: Optional[Dict[str, int]] = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        output: Optional[CapturedOutput] = None,
    ) -> None:
        self._output = output
        self._playwright = sync_playwright().start()
        try:
            if not hasattr(self._playwright, browser_name):
                raise RuntimeError(f"Unsupported browser '{browser_name}'")
            browser_type = getattr(self._playwright, browser_name)
            launch_kwargs: Dict[str, Any] = {"headless": headless}
            if browser_name == "chromium":
                launch_kwargs["args"] = ["--disable-dev-shm-usage", "--no-sandbox"]
            self._browser = browser_type.launch(**launch_kwargs)
            self._log("Launched %s browser", browser_name)
            self._context = self._browser.new_context(
                base_url=base_url,
                viewport=viewport or dict(DEFAULT_VIEWPORT),
                ignore_https_errors=True,
            )
            self._context.set_default_timeout(timeout_ms)
            page = self._context.new_page()
            self._driver = PlaywrightDriver(self._context, page)
            self._driver.navigate(base_url)
        except Exception:
            self.close()
            raise

    def _log(self, message: str, *args: object) -> None:
        if self._output is not None:
            self._output.write_line(message, *args)
        else:
            LOGGER.info(message, *args)

    @property
    def driver(self) -> PlaywrightDriver:
        return self._driver

    def close(self) -> None:
        for label in ("_context", "_browser"):
            target = getattr(self, label, None)
            if target is None:
                continue
            try:
                target.close()
            except Exception as exc:  # pragma: no cover - cleanup failure
                LOGGER.debug("Closing Playwright %s failed: %s", label.strip("_"), exc)
            setattr(self, label, None)
        if self._playwright is not None:
            try:
                self._playwright.stop()
            except Exception as exc:  # pragma: no cover - cleanup failure
                LOGGER.debug("Stopping Playwright failed: %s", exc)
            self._playwright = None


def playwright_scope_factory(
    browser_name: str = "chromium",
    headless: bool = True,
    viewport: Optional[Dict[str, int]] = None,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
) -> Callable[..., PlaywrightScope]:
    """Build a ``scope_factory`` for :class:`ExecutorConfiguration` backed by Playwright."""

    def _factory(base_url: str, configuration: Any, output: CapturedOutput) -> PlaywrightScope:
        return PlaywrightScope(
            base_url,
            browser_name=browser_name,
            headless=headless,
            viewport=viewport,
            timeout_ms=timeout_ms,
            output=output,
        )

    return _factory
