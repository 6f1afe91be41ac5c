"""
Browser Manager - launches the Chromium instance a replay runs in.

One manager owns one browser, one context and one page.
"""

import asyncio
from pathlib import Path
from typing import Optional

import structlog
from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright


logger = structlog.get_logger()


class BrowserManager:
    """
    Manages the lifecycle of a single browser page.

    Usable as an async context manager:

        async with BrowserManager(headless=True) as manager:
            page = manager.page
    """

    def __init__(
        self,
        headless: bool = True,
        storage_state_path: Optional[str] = None,
        viewport_width: int = 1280,
        viewport_height: int = 720,
    ):
        """
        Initialize browser manager.

        Args:
            headless: Run browser in headless mode
            storage_state_path: Optional cookies/storage file to load and save
            viewport_width: Browser viewport width
            viewport_height: Browser viewport height
        """
        self.headless = headless
        self.storage_state_path = storage_state_path
        self.viewport = {"width": viewport_width, "height": viewport_height}

        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._lock = asyncio.Lock()

    @property
    def browser(self) -> Optional[Browser]:
        return self._browser

    @property
    def page(self) -> Optional[Page]:
        return self._page

    async def start(self) -> None:
        """Launch the browser and open a page."""
        async with self._lock:
            if self._page is not None:
                return

            logger.info("browser_starting", headless=self.headless)

            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self.headless,
                args=[
                    "--disable-dev-shm-usage",  # Overcome limited /dev/shm in Docker
                    "--no-sandbox",
                    "--disable-extensions",
                    "--no-first-run",
                    f"--window-size={self.viewport['width']},{self.viewport['height']}",
                ],
            )

            storage_state = None
            if self.storage_state_path and Path(self.storage_state_path).exists():
                storage_state = self.storage_state_path

            self._context = await self._browser.new_context(
                viewport=self.viewport,
                storage_state=storage_state,
                accept_downloads=True,
                locale="en-US",
            )
            self._page = await self._context.new_page()
            logger.info("browser_started")

    async def shutdown(self) -> None:
        """Close page, context and browser. Safe to call more than once."""
        async with self._lock:
            if self._playwright is None:
                return

            logger.info("browser_shutting_down")

            if self._context is not None and self.storage_state_path:
                Path(self.storage_state_path).parent.mkdir(parents=True, exist_ok=True)
                await self._context.storage_state(path=self.storage_state_path)

            if self._context is not None:
                await self._context.close()
            if self._browser is not None:
                await self._browser.close()
            await self._playwright.stop()

            self._page = None
            self._context = None
            self._browser = None
            self._playwright = None
            logger.info("browser_shutdown_complete")

    async def __aenter__(self) -> "BrowserManager":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()
