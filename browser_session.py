# browser_session.py
"""
Browser session bootstrap/teardown and the page primitives the engine relies on.

One BrowserSession belongs to exactly one flow execution. It is released by
the engine on every exit path except debug inspection, where it is handed
back to the caller still open.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, List, Optional, Set

from playwright.async_api import (
    Browser,
    BrowserContext,
    ElementHandle,
    Page,
    Playwright,
    async_playwright,
)

from onboard_errors import QuiescenceTimeout

if TYPE_CHECKING:
    from onboard_runner import OnboardOptions

logger = logging.getLogger("OnboardRunner.session")


class NetworkIdleTracker:
    """
    Counts in-flight requests of a page and remembers when network activity
    last changed. The page is idle once nothing is in flight for a whole
    idle window.
    """
    POLL_INTERVAL_S = 0.05

    def __init__(self, page):
        self.inflight: Set[Any] = set()
        self.last_activity = time.monotonic()
        page.on("request", self._on_request)
        page.on("requestfinished", self._on_request_done)
        page.on("requestfailed", self._on_request_done)

    def _on_request(self, request):
        self.inflight.add(request)
        self.last_activity = time.monotonic()

    def _on_request_done(self, request):
        self.inflight.discard(request)
        self.last_activity = time.monotonic()

    @property
    def inflight_count(self) -> int:
        return len(self.inflight)

    async def wait_for_idle(self, min_idle_ms: int, timeout_ms: int):
        min_idle_s = min_idle_ms / 1000.0
        deadline = time.monotonic() + timeout_ms / 1000.0
        while True:
            now = time.monotonic()
            idle_for = now - self.last_activity
            if not self.inflight and idle_for >= min_idle_s:
                return
            if now >= deadline:
                raise QuiescenceTimeout(
                    f"Page did not stay network-idle for {min_idle_ms}ms within {timeout_ms}ms "
                    f"({len(self.inflight)} requests still in flight)"
                )
            await asyncio.sleep(self.POLL_INTERVAL_S)


class BrowserSession:
    """A launched browser with a single page, owned by one onboarding flow."""

    def __init__(
        self,
        playwright: Playwright,
        browser: Browser,
        context: BrowserContext,
        page: Page,
        tracker: NetworkIdleTracker,
    ):
        self.playwright = playwright
        self.browser = browser
        self.context = context
        self.page = page
        self.tracker = tracker
        self._closed = False

    @classmethod
    async def launch(cls, options: "OnboardOptions") -> "BrowserSession":
        """Start Chromium with a fixed viewport and locale and open options.url."""
        playwright = await async_playwright().start()
        browser = None
        try:
            language = options.locale.split("-")[0]
            browser = await playwright.chromium.launch(
                headless=options.headless,
                slow_mo=0,
                args=[f"--lang={options.locale},{language}"],
            )
            context = await browser.new_context(
                viewport={"width": options.viewport_width, "height": options.viewport_height},
                locale=options.locale,
                extra_http_headers={"Accept-Language": options.locale},
            )
            page = await context.new_page()
        except Exception:
            if browser:
                await browser.close()
            await playwright.stop()
            raise

        session = cls(playwright, browser, context, page, NetworkIdleTracker(page))
        logger.info(f"Browser launched (headless={options.headless}), navigating to onboarding link.")
        try:
            await page.goto(options.url)
        except Exception:
            await session.close()
            raise
        return session

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self):
        """Release the browser. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        try:
            await self.browser.close()
        finally:
            await self.playwright.stop()
        logger.debug("Browser session closed.")

    # --- Page primitives ---

    async def wait_for_idle(self, min_idle_ms: int, timeout_ms: int = 30000):
        await self.tracker.wait_for_idle(min_idle_ms, timeout_ms)

    async def current_location(self) -> str:
        return await self.page.evaluate("() => document.location.href")

    async def query_all(self, selector: str) -> List[ElementHandle]:
        return await self.page.query_selector_all(selector)

    async def query_one(self, selector: str) -> Optional[ElementHandle]:
        return await self.page.query_selector(selector)

    async def evaluate(self, expression: str, arg: Any = None) -> Any:
        return await self.page.evaluate(expression, arg)

    async def click(self, element: ElementHandle):
        await element.click()

    async def show_alert(self, message: str):
        """
        Open a native alert with message and leave it up for a human to read.
        The alert is scheduled from the page so this call returns immediately.
        """
        self.page.on("dialog", self._leave_dialog_open)
        await self.evaluate("message => { setTimeout(() => window.alert(message), 0); }", message)

    def _leave_dialog_open(self, dialog):
        # A registered listener keeps Playwright from auto-dismissing the dialog.
        logger.info(f"Leaving '{dialog.type}' dialog open for inspection.")
