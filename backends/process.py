"""Actuation through a Playwright-owned headless Chromium."""
from __future__ import annotations

import logging
from typing import Dict, Optional

from backends.base import ActuationBackend, to_playwright_key
from browser import ProcessBrowser
from config import BrowserConfig, DisplayConfig

# Wheel delta per scroll notch, matching one mouse-wheel click in Chromium.
PIXELS_PER_NOTCH = 120


class ProcessBackend(ActuationBackend):
    """Backend driving an in-process browser; no shell access."""

    execution_mode = "process"
    supports_shell = False

    def __init__(
        self,
        run_id: str,
        display: Optional[DisplayConfig] = None,
        browser_config: Optional[BrowserConfig] = None,
        browser: Optional[ProcessBrowser] = None,
        settle_delays: Optional[Dict[str, float]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(run_id, display=display, settle_delays=settle_delays, logger=logger)
        self.browser_config = browser_config or BrowserConfig()
        self.browser = browser or ProcessBrowser(
            viewport_width=self.display.width,
            viewport_height=self.display.height,
            headless=self.browser_config.headless,
            executable_path=self.browser_config.executable_path,
            logger=self.logger,
        )

    async def _start(self) -> None:
        await self.browser.start()

    async def _stop(self) -> None:
        errors = self.browser.get_console_errors() if self.browser.is_started else []
        if errors:
            self.logger.debug(f"[{self.run_id}] {len(errors)} console errors, last: {errors[-1]}")
        await self.browser.close()

    async def navigate(self, url: str) -> None:
        self._ensure_ready()
        await self.browser.navigate(url, timeout=self.browser_config.navigation_timeout_ms)
        self.logger.debug(f"[{self.run_id}] Page loaded: {self.browser.get_url()}")

    async def _capture(self) -> bytes:
        return await self.browser.screenshot()

    async def _click(self, x: int, y: int) -> None:
        await self.browser.click(x, y)

    async def _type(self, text: str) -> None:
        await self.browser.type_text(text, delay=self.browser_config.type_delay_ms)

    async def _key(self, symbol: str) -> None:
        await self.browser.press_key(to_playwright_key(symbol))

    async def _scroll(self, x: int, y: int, dx: int, dy: int) -> None:
        await self.browser.scroll(x, y, dx * PIXELS_PER_NOTCH, dy * PIXELS_PER_NOTCH)
