"""Headless Chromium controller owned directly by the host process."""
from __future__ import annotations

import logging
from typing import Any, Literal, Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    Page,
    Playwright,
    async_playwright,
    TimeoutError as PlaywrightTimeout,
)

from exceptions import BackendNotReadyError, InitializationError, NavigationError

# Flags for running Chromium inside restricted serverless sandboxes.
SYSTEM_BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--no-first-run",
    "--no-zygote",
    "--single-process",
    "--disable-extensions",
]


class ProcessBrowser:
    """Playwright-launched Chromium with a fixed viewport."""

    def __init__(
        self,
        viewport_width: int = 1280,
        viewport_height: int = 720,
        headless: bool = True,
        executable_path: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.viewport_width = viewport_width
        self.viewport_height = viewport_height
        self.headless = headless
        self.executable_path = executable_path
        self.logger = logger or logging.getLogger("browser")

        self._playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None
        self._console_errors: list[str] = []

    @property
    def is_started(self) -> bool:
        return self.page is not None

    def _ensure_started(self) -> Page:
        """Raise if browser not started."""
        if self.page is None:
            raise BackendNotReadyError("browser not started")
        return self.page

    def _launch_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {"headless": self.headless}
        if self.executable_path:
            options["executable_path"] = self.executable_path
            options["args"] = [
                *SYSTEM_BROWSER_ARGS,
                f"--window-size={self.viewport_width},{self.viewport_height}",
            ]
        return options

    async def start(self) -> None:
        """Launch Chromium, bundled or system depending on executable_path."""
        if self.page is not None:
            return
        try:
            self._playwright = await async_playwright().start()
            self.browser = await self._playwright.chromium.launch(**self._launch_options())
            self.context = await self.browser.new_context(
                viewport={"width": self.viewport_width, "height": self.viewport_height}
            )
            self.page = await self.context.new_page()
        except Exception as e:
            try:
                await self.close()
            except Exception as close_error:
                self.logger.warning(f"Failed to close browser after launch error: {close_error}")
            raise InitializationError(f"Failed to initialize browser: {e}", execution_mode="process") from e

        self.page.on("console", self._handle_console)
        source = self.executable_path or "bundled chromium"
        self.logger.info(f"Browser started: {source} (headless={self.headless})")

    def _handle_console(self, msg: Any) -> None:
        """Keep the last console errors for diagnostics."""
        if msg.type != "error":
            return
        self._console_errors.append(msg.text)
        if len(self._console_errors) > 50:
            self._console_errors = self._console_errors[-50:]

    def get_console_errors(self) -> list[str]:
        return self._console_errors.copy()

    async def close(self) -> None:
        """Close the browser and clean up resources. Safe to call repeatedly."""
        page, context, browser, playwright = self.page, self.context, self.browser, self._playwright
        self.page = self.context = self.browser = None
        self._playwright = None
        if page is None and context is None and browser is None and playwright is None:
            return
        try:
            if context:
                await context.close()
            if browser:
                await browser.close()
        finally:
            if playwright:
                await playwright.stop()
        self.logger.info("Browser closed")

    async def __aenter__(self) -> "ProcessBrowser":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ─────────────────────────────────────────────────────────────────────────
    # Navigation
    # ─────────────────────────────────────────────────────────────────────────

    async def navigate(
        self,
        url: str,
        wait_until: Literal["load", "domcontentloaded", "networkidle", "commit"] = "networkidle",
        timeout: float = 30000,
    ) -> None:
        """Load a URL and wait for network activity to settle."""
        page = self._ensure_started()
        try:
            await page.goto(url, wait_until=wait_until, timeout=timeout)
        except PlaywrightTimeout as e:
            raise NavigationError(f"Navigation timed out: {url}", url=url, timeout=timeout) from e
        except Exception as e:
            raise NavigationError(f"Navigation failed: {e}", url=url) from e

    def get_url(self) -> str:
        """Get current URL."""
        return self._ensure_started().url

    # ─────────────────────────────────────────────────────────────────────────
    # Screenshots
    # ─────────────────────────────────────────────────────────────────────────

    async def screenshot(self) -> bytes:
        """PNG bytes of the visible viewport."""
        page = self._ensure_started()
        return await page.screenshot(type="png", full_page=False)

    # ─────────────────────────────────────────────────────────────────────────
    # Mouse and keyboard
    # ─────────────────────────────────────────────────────────────────────────

    async def click(self, x: float, y: float) -> None:
        page = self._ensure_started()
        await page.mouse.click(x, y)

    async def type_text(self, text: str, delay: int = 50) -> None:
        """Type text with a per-character delay."""
        page = self._ensure_started()
        await page.keyboard.type(text, delay=delay)

    async def press_key(self, key: str) -> None:
        page = self._ensure_started()
        await page.keyboard.press(key)

    async def scroll(self, x: float, y: float, delta_x: float, delta_y: float) -> None:
        """Move to (x, y) and turn the wheel (positive delta_y scrolls down)."""
        page = self._ensure_started()
        await page.mouse.move(x, y)
        await page.mouse.wheel(delta_x, delta_y)
