"""
Playwright Driver - browser primitives for replayed workflow steps.

Wraps a Playwright page with the operations a recorded action can replay
as. Failures raise StepExecutionError so the runner's retry policy can
decide whether to try again.
"""

import time
from pathlib import Path
from typing import Optional

import structlog
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..core.errors import NavigationError, StepExecutionError


logger = structlog.get_logger()


class PlaywrightDriver:
    """Browser driver capability on top of a Playwright page."""

    def __init__(
        self,
        page: Page,
        download_dir: str = "./data/downloads",
        wait_until: str = "domcontentloaded",
    ):
        """
        Initialize driver.

        Args:
            page: Playwright page instance
            download_dir: Directory downloaded files are saved to
            wait_until: Load state navigation waits for
        """
        self.page = page
        self.download_dir = Path(download_dir)
        self.wait_until = wait_until
        self._action_count = 0

    @property
    def action_count(self) -> int:
        return self._action_count

    async def navigate(self, url: str, timeout: int) -> None:
        start_time = time.monotonic()
        try:
            await self.page.goto(url, wait_until=self.wait_until, timeout=timeout)
        except PlaywrightTimeoutError:
            raise NavigationError(
                f"Navigation timed out after {timeout}ms",
                url=url.split("?", 1)[0],
                retryable=True,
            )
        except PlaywrightError as e:
            raise NavigationError(
                f"Navigation failed: {e.message}",
                url=url.split("?", 1)[0],
                retryable=True,
            )

        self._action_count += 1
        logger.debug(
            "page_navigated",
            duration_ms=round((time.monotonic() - start_time) * 1000, 1),
        )

    async def click(self, selector: str, timeout: int) -> None:
        await self._run("click", selector, self.page.click(selector, timeout=timeout))

    async def type(self, selector: str, value: str, timeout: int) -> None:
        await self._run("type", selector, self.page.fill(selector, value, timeout=timeout))

    async def select(self, selector: str, value: str, timeout: int) -> None:
        await self._run(
            "select", selector, self.page.select_option(selector, value, timeout=timeout)
        )

    async def hover(self, selector: str, timeout: int) -> None:
        await self._run("hover", selector, self.page.hover(selector, timeout=timeout))

    async def wait_for_selector(self, selector: str, timeout: int) -> None:
        await self._run(
            "waitForSelector",
            selector,
            self.page.wait_for_selector(selector, state="visible", timeout=timeout),
        )

    async def download(self, selector: str, timeout: int) -> Optional[str]:
        """Click a download trigger and save the file; returns the saved path."""
        try:
            async with self.page.expect_download(timeout=timeout) as download_info:
                await self.page.click(selector, timeout=timeout)
            download = await download_info.value

            self.download_dir.mkdir(parents=True, exist_ok=True)
            target = self.download_dir / download.suggested_filename
            await download.save_as(str(target))
        except PlaywrightTimeoutError:
            raise StepExecutionError(
                f"Download timed out after {timeout}ms",
                action_type="download",
                selector=selector,
            )
        except PlaywrightError as e:
            raise StepExecutionError(e.message, action_type="download", selector=selector)

        self._action_count += 1
        return str(target)

    async def screenshot(self) -> Optional[bytes]:
        return await self.page.screenshot(full_page=True)

    def current_url(self) -> str:
        return self.page.url

    async def _run(self, action_type: str, selector: str, operation) -> None:
        try:
            await operation
        except PlaywrightTimeoutError:
            raise StepExecutionError(
                f"Timed out waiting for {selector}",
                action_type=action_type,
                selector=selector,
            )
        except PlaywrightError as e:
            raise StepExecutionError(e.message, action_type=action_type, selector=selector)

        self._action_count += 1
