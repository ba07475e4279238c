"""
Browser infrastructure with Playwright.

BrowserService owns the Chromium process and the target pages:
- Persistent context so the user's login survives restarts
- Stealth patches on every page
- Integer page ids for the message bus
- The agent bootstrap registered as an init script, so every navigation
  re-installs it
- requestfinished events forwarded to the network monitor
- Error snapshots (screenshot + HTML dump) for failed submissions
"""

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from playwright.async_api import (
    async_playwright,
    Page,
    BrowserContext,
    Browser,
    Request,
    Error as PlaywrightError,
    TimeoutError as PlaywrightTimeoutError
)
from playwright_stealth import stealth_async

from ..config import Settings, SelectorConfig
from ..core.exceptions import BrowserError
from ..utils.dom import AGENT_BOOTSTRAP_JS, DOMDriver

logger = logging.getLogger(__name__)

RequestListener = Callable[[int, str], Any]
PageListener = Callable[[int], Any]

_LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-sandbox",
]
_VIEWPORT = {"width": 1920, "height": 1080}


class BrowserService:
    """
    Async browser service hosting the target pages.

    Usage:
        async with BrowserService(settings, selectors) as browser:
            page_id = await browser.open_target()
            driver = browser.driver(page_id)
    """

    def __init__(self, settings: Settings, selectors: SelectorConfig):
        """
        Args:
            settings: Browser and target configuration
            selectors: Matcher lists handed to every DOMDriver
        """
        self.settings = settings
        self.selectors = selectors
        self.playwright = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None

        self.pages: Dict[int, Page] = {}
        self._next_page_id = 1

        self.on_request: Optional[RequestListener] = None
        self.on_page_closed: Optional[PageListener] = None

    async def __aenter__(self) -> 'BrowserService':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        # Cleanup must finish even when the caller is cancelled.
        await asyncio.shield(self.close())
        return False

    async def start(self) -> None:
        """
        Launch Chromium and prepare the context.

        Raises:
            BrowserError: If the browser fails to launch
        """
        try:
            self.playwright = await async_playwright().start()

            if self.settings.user_data_dir:
                self.context = await self.playwright.chromium.launch_persistent_context(
                    user_data_dir=str(self.settings.user_data_dir),
                    headless=self.settings.headless,
                    slow_mo=self.settings.slow_mo,
                    args=_LAUNCH_ARGS,
                    viewport=_VIEWPORT,
                )
            else:
                self.browser = await self.playwright.chromium.launch(
                    headless=self.settings.headless,
                    slow_mo=self.settings.slow_mo,
                    args=_LAUNCH_ARGS,
                )
                self.context = await self.browser.new_context(viewport=_VIEWPORT)

            await self.context.add_init_script(AGENT_BOOTSTRAP_JS)
            self.context.on("requestfinished", self._on_request_finished)
            self.context.on("page", self._on_new_page)

            for page in self.context.pages:
                await self._register_page(page)

        except PlaywrightError as e:
            await self.close()
            raise BrowserError(
                f"Failed to launch browser: {e}",
                context={"headless": self.settings.headless, "user_data_dir": str(self.settings.user_data_dir)}
            ) from e

        logger.info(f"Browser started (headless={self.settings.headless}, stealth={self.settings.enable_stealth})")

    async def close(self) -> None:
        """Shut the browser down; errors are logged, never raised."""
        try:
            if self.context:
                await self.context.close()
            if self.browser:
                await self.browser.close()
            if self.playwright:
                await self.playwright.stop()
        except Exception as e:
            logger.warning(f"Error during browser cleanup: {e}")
        finally:
            self.pages.clear()
            self.context = None
            self.browser = None
            self.playwright = None

    # ===== Pages =====

    async def open_target(self, url: Optional[str] = None) -> int:
        """
        Navigate a page to the target tool, reusing an open blank page.

        Returns:
            The page id

        Raises:
            BrowserError: If navigation keeps failing
        """
        if self.context is None:
            raise BrowserError("Browser is not started")

        url = url or self.settings.target_url
        page = next(iter(self.pages.values()), None)
        if page is None:
            page = await self.context.new_page()
            await self._register_page(page)
        page_id = self.page_id_for(page)

        max_retries = 3
        for attempt in range(max_retries):
            try:
                await page.goto(url, wait_until="domcontentloaded")
                logger.info(f"Page {page_id} opened {url}")
                return page_id
            except PlaywrightTimeoutError as e:
                if attempt < max_retries - 1:
                    logger.warning(f"Navigation to {url} timed out (attempt {attempt + 1}/{max_retries})")
                    await asyncio.sleep(2 ** attempt)
                    continue
                raise BrowserError(
                    f"Navigation timeout after {max_retries} attempts",
                    context={"url": url, "page_id": page_id}
                ) from e
            except PlaywrightError as e:
                raise BrowserError(f"Navigation failed: {e}", context={"url": url, "page_id": page_id}) from e

    def get_page(self, page_id: int) -> Page:
        page = self.pages.get(page_id)
        if page is None or page.is_closed():
            raise BrowserError(f"Page {page_id} is not open", context={"page_id": page_id})
        return page

    def page_id_for(self, page: Page) -> Optional[int]:
        for page_id, known in self.pages.items():
            if known is page:
                return page_id
        return None

    def driver(self, page_id: int) -> DOMDriver:
        return DOMDriver(self.get_page(page_id), self.selectors)

    async def capture_error_snapshot(
        self,
        page_id: int,
        error_type: str
    ) -> Tuple[Optional[Path], Optional[Path]]:
        """
        Save a screenshot and HTML dump of the page into SCREENSHOT_DIR.

        Returns:
            Tuple of (screenshot_path, html_path); None for what failed
        """
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        screenshot_path = None
        html_path = None

        try:
            page = self.get_page(page_id)

            screenshot_file = self.settings.screenshot_dir / f"error_{error_type}_{timestamp}.png"
            await page.screenshot(path=str(screenshot_file))
            screenshot_path = screenshot_file

            html_file = self.settings.screenshot_dir / f"error_{error_type}_{timestamp}.html"
            html_file.write_text(await page.content(), encoding="utf-8")
            html_path = html_file

            logger.info(f"Error snapshot saved: {screenshot_path}")
        except (BrowserError, PlaywrightError, OSError) as e:
            logger.warning(f"Failed to capture error snapshot: {e}")

        return screenshot_path, html_path

    # ===== Event plumbing =====

    async def _register_page(self, page: Page) -> int:
        page_id = self.page_id_for(page)
        if page_id is not None:
            return page_id

        page_id = self._next_page_id
        self._next_page_id += 1
        self.pages[page_id] = page

        page.set_default_timeout(self.settings.action_timeout)
        page.set_default_navigation_timeout(self.settings.page_load_timeout)
        page.on("close", lambda _: self._on_page_close(page_id))

        if self.settings.enable_stealth:
            await stealth_async(page)

        logger.debug(f"Registered page {page_id}")
        return page_id

    def _on_new_page(self, page: Page) -> None:
        asyncio.ensure_future(self._register_page(page))

    def _on_page_close(self, page_id: int) -> None:
        self.pages.pop(page_id, None)
        logger.info(f"Page {page_id} closed")
        if self.on_page_closed is not None:
            self.on_page_closed(page_id)

    def _on_request_finished(self, request: Request) -> None:
        if self.on_request is None:
            return
        try:
            page = request.frame.page
        except PlaywrightError:
            # Service-worker requests have no frame.
            return
        page_id = self.page_id_for(page)
        if page_id is not None:
            self.on_request(page_id, request.url)
