"""Browser-session driver contract, the in-process Playwright driver and driver selection."""
from __future__ import annotations

import asyncio
import importlib.util
import logging
from typing import Any, Callable, Optional, Protocol, TypeVar, runtime_checkable

from atf.src.utils.config import BrowserConfig, CONFIG
from atf.src.utils.errors import DriverError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@runtime_checkable
class BrowserDriver(Protocol):
    """Capability surface shared by the local and the remote browser drivers."""

    @property
    def started(self) -> bool: ...

    def start(self, base_url: str, headless: bool = True) -> None: ...

    def stop(self) -> None: ...

    def goto(self, url: str) -> None: ...

    def click(self, selector: str) -> None: ...

    def type(self, selector: str, text: str) -> None: ...

    def select(self, selector: str, value: str) -> None: ...

    def press(self, selector: str, key: str) -> None: ...

    def wait_for_selector(self, selector: str, timeout_ms: Optional[int] = None) -> None: ...

    def wait_for_text(self, text: str, timeout_ms: Optional[int] = None) -> None: ...

    def extract_text(self, selector: str) -> str: ...

    def text_content(self, selector: str) -> str: ...

    def screenshot(self, path: str) -> None: ...

    def current_url(self) -> str: ...

    def title(self) -> str: ...

    def evaluate(self, source: str, arg: Any = None) -> Any: ...


WAIT_FOR_TEXT_SCRIPT = "(needle) => document.body && document.body.innerText.includes(needle)"
DEFAULT_TEXT_TIMEOUT_MS = 5000


class LocalBrowserDriver:
    """Runs Chromium in this process through Playwright's sync API."""

    def __init__(self) -> None:
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None

    @property
    def started(self) -> bool:
        return self._page is not None

    def _require_page(self):
        if self._page is None:
            raise DriverError("UI driver not started")
        return self._page

    def _call(self, description: str, operation: Callable[[], T]) -> T:
        from playwright.sync_api import Error as PlaywrightError

        try:
            return operation()
        except PlaywrightError as exc:
            raise DriverError(f"{description} failed: {exc}") from exc

    def start(self, base_url: str, headless: bool = True) -> None:
        from playwright.sync_api import sync_playwright

        self.stop()
        self._playwright = sync_playwright().start()
        context_options = {"base_url": base_url} if base_url else {}

        def _launch() -> None:
            self._browser = self._playwright.chromium.launch(headless=headless)
            self._context = self._browser.new_context(**context_options)
            self._page = self._context.new_page()

        try:
            self._call("browser launch", _launch)
        except DriverError:
            self.stop()
            raise

    def stop(self) -> None:
        page, context, browser, playwright = self._page, self._context, self._browser, self._playwright
        self._page = self._context = self._browser = self._playwright = None
        for closer in (page, context, browser):
            if closer is None:
                continue
            try:
                closer.close()
            except Exception as exc:  # noqa: BLE001 - session teardown continues
                logger.warning("Browser close step failed: %s", exc)
        if playwright is not None:
            try:
                playwright.stop()
            except Exception as exc:  # noqa: BLE001 - session teardown continues
                logger.warning("Playwright shutdown failed: %s", exc)

    def goto(self, url: str) -> None:
        page = self._require_page()
        self._call(f"goto {url}", lambda: page.goto(url))

    def click(self, selector: str) -> None:
        page = self._require_page()
        self._call(f"click {selector}", lambda: page.locator(selector).click())

    def type(self, selector: str, text: str) -> None:
        page = self._require_page()

        def _clear_then_type() -> None:
            locator = page.locator(selector)
            locator.fill("")
            locator.type(text or "")

        self._call(f"type into {selector}", _clear_then_type)

    def select(self, selector: str, value: str) -> None:
        page = self._require_page()
        self._call(f"select {selector}", lambda: page.select_option(selector, value))

    def press(self, selector: str, key: str) -> None:
        page = self._require_page()
        self._call(f"press {key} on {selector}", lambda: page.locator(selector).press(key))

    def wait_for_selector(self, selector: str, timeout_ms: Optional[int] = None) -> None:
        page = self._require_page()
        self._call(
            f"wait for {selector}",
            lambda: page.locator(selector).wait_for(state="visible", timeout=timeout_ms),
        )

    def wait_for_text(self, text: str, timeout_ms: Optional[int] = None) -> None:
        page = self._require_page()
        self._call(
            f"wait for text {text!r}",
            lambda: page.wait_for_function(
                WAIT_FOR_TEXT_SCRIPT, arg=text, timeout=timeout_ms or DEFAULT_TEXT_TIMEOUT_MS
            ),
        )

    def extract_text(self, selector: str) -> str:
        page = self._require_page()
        content = self._call(f"extract text from {selector}", lambda: page.locator(selector).text_content())
        return (content or "").strip()

    def text_content(self, selector: str) -> str:
        page = self._require_page()
        return self._call(f"read text of {selector}", lambda: page.text_content(selector)) or ""

    def screenshot(self, path: str) -> None:
        page = self._require_page()
        self._call("screenshot", lambda: page.screenshot(path=path))

    def current_url(self) -> str:
        return self._require_page().url

    def title(self) -> str:
        page = self._require_page()
        return self._call("read title", page.title)

    def evaluate(self, source: str, arg: Any = None) -> Any:
        page = self._require_page()
        return self._call("evaluate", lambda: page.evaluate(source, arg))


def _event_loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


def resolve_browser_mode(mode: str) -> str:
    """Map ``auto`` onto ``local`` or ``remote`` for the calling thread."""
    mode = (mode or "auto").lower()
    if mode in {"local", "remote"}:
        return mode
    if mode != "auto":
        raise ValueError(f"Unknown browser mode: {mode}")
    if _event_loop_running():
        return "remote"
    if importlib.util.find_spec("playwright") is None:
        return "remote"
    return "local"


def select_browser_driver(config: Optional[BrowserConfig] = None) -> BrowserDriver:
    cfg = config or CONFIG.browser
    mode = resolve_browser_mode(cfg.mode)
    logger.debug("Browser driver mode: %s (configured %s)", mode, cfg.mode)
    if mode == "remote":
        from .remote import RemoteBrowserDriver

        return RemoteBrowserDriver(cfg.worker_command, request_timeout=cfg.request_timeout)
    return LocalBrowserDriver()


__all__ = [
    "BrowserDriver",
    "DEFAULT_TEXT_TIMEOUT_MS",
    "LocalBrowserDriver",
    "WAIT_FOR_TEXT_SCRIPT",
    "resolve_browser_mode",
    "select_browser_driver",
]
