"""Login form detection and submission on a Playwright page."""

import asyncio
from typing import Optional

import structlog
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from ..core.models import LoginConfig
from ..orchestrator.interfaces import LoginForm, LoginOutcome


logger = structlog.get_logger()


USERNAME_SELECTORS = (
    'input[type="email"]',
    'input[name="email"]',
    'input[name="username"]',
    'input[name="user"]',
    'input[name="login"]',
    'input[id="email"]',
    'input[id="username"]',
    'input[name="loginfmt"]',
    'input[autocomplete="username"]',
    'input[autocomplete="email"]',
    'input[placeholder*="email" i]',
    'input[placeholder*="username" i]',
)

PASSWORD_SELECTORS = (
    'input[type="password"]',
    'input[name="password"]',
    'input[name="passwd"]',
    'input[id="password"]',
    'input[autocomplete="current-password"]',
)

SUBMIT_SELECTORS = (
    'button[type="submit"]',
    'input[type="submit"]',
    'button[data-testid*="login"]',
    'button[data-testid*="signin"]',
    'button[data-testid*="submit"]',
    'form input[type="button"]',
)

TENANT_SELECTORS = (
    'input[name="tenant"]',
    'input[name="company"]',
    'input[name="organization"]',
    'input[id="tenant"]',
)


class FormLoginExecutor:
    """
    Detects a username/password form and submits credentials.

    Handles single-page forms and two-step forms where the password field
    only appears after the username is submitted.
    """

    def __init__(self, step_timeout: int = 10000, settle_seconds: float = 1.5):
        self.step_timeout = step_timeout
        self.settle_seconds = settle_seconds

    async def detect_form(self, page: Page) -> Optional[LoginForm]:
        username = await self._find_visible(page, USERNAME_SELECTORS)
        if username is None:
            logger.info("login_form_not_found", url=page.url.split("?", 1)[0])
            return None

        form = LoginForm(
            username_selector=username,
            password_selector=await self._find_visible(page, PASSWORD_SELECTORS),
            submit_selector=await self._find_visible(page, SUBMIT_SELECTORS),
            tenant_selector=await self._find_visible(page, TENANT_SELECTORS),
        )
        logger.info("login_form_detected", multi_step=form.multi_step)
        return form

    async def perform_login(
        self,
        page: Page,
        form: LoginForm,
        credentials: LoginConfig,
    ) -> LoginOutcome:
        try:
            if form.tenant_selector and credentials.tenant:
                await page.fill(form.tenant_selector, credentials.tenant, timeout=self.step_timeout)

            await page.fill(form.username_selector, credentials.username, timeout=self.step_timeout)

            password_selector = form.password_selector
            if form.multi_step:
                await page.press(form.username_selector, "Enter", timeout=self.step_timeout)
                await asyncio.sleep(self.settle_seconds)
                password_selector = await self._find_visible(page, PASSWORD_SELECTORS)
                if password_selector is None:
                    return LoginOutcome(
                        success=False,
                        error="Password field not found after username step",
                    )

            await page.fill(password_selector, credentials.password, timeout=self.step_timeout)

            if form.submit_selector:
                await page.click(form.submit_selector, timeout=self.step_timeout)
            else:
                await page.press(password_selector, "Enter", timeout=self.step_timeout)

            await page.wait_for_load_state("domcontentloaded", timeout=self.step_timeout)
            await asyncio.sleep(self.settle_seconds)

            # A password field still on screen means the form rejected us
            if await self._find_visible(page, PASSWORD_SELECTORS) is not None:
                return LoginOutcome(success=False, error="credentials rejected")

        except PlaywrightError as e:
            return LoginOutcome(success=False, error=e.message)

        return LoginOutcome(success=True, metadata={"url": page.url.split("?", 1)[0]})

    async def _find_visible(self, page: Page, selectors: tuple[str, ...]) -> Optional[str]:
        for selector in selectors:
            element = await page.query_selector(selector)
            if element is not None and await element.is_visible():
                return selector
        return None
