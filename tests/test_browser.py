"""
Unit tests for BrowserService page bookkeeping and event plumbing.

Pages and the context are mocks; Chromium is never launched.
"""

import pytest
from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError
from unittest.mock import AsyncMock, MagicMock

from autoqueue.core.exceptions import BrowserError
from autoqueue.infrastructure import browser as browser_module
from autoqueue.infrastructure.browser import BrowserService
from autoqueue.utils.dom import DOMDriver

from conftest import make_settings


def fake_page():
    page = MagicMock()
    page.is_closed.return_value = False
    page.goto = AsyncMock()
    page.screenshot = AsyncMock()
    page.content = AsyncMock(return_value="<html><body>boom</body></html>")
    page.handlers = {}
    page.on.side_effect = lambda event, handler: page.handlers.setdefault(event, handler)
    return page


@pytest.fixture
def stealth(monkeypatch):
    stealth = AsyncMock()
    monkeypatch.setattr(browser_module, "stealth_async", stealth)
    return stealth


@pytest.fixture
def service(settings, selectors, stealth):
    service = BrowserService(settings, selectors)
    service.context = MagicMock()
    return service


# ============================================================================
# TEST: Pages
# ============================================================================

class TestPageRegistry:
    """Integer ids, stealth and close tracking."""

    @pytest.mark.asyncio
    async def test_register_assigns_ids_once(self, service, stealth):
        first, second = fake_page(), fake_page()

        assert await service._register_page(first) == 1
        assert await service._register_page(second) == 2
        assert await service._register_page(first) == 1

        assert stealth.await_count == 2
        first.set_default_timeout.assert_called_once_with(service.settings.action_timeout)

    @pytest.mark.asyncio
    async def test_stealth_disabled(self, tmp_path, selectors, stealth):
        service = BrowserService(make_settings(tmp_path, enable_stealth=False), selectors)

        await service._register_page(fake_page())

        stealth.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_close_event_forgets_page(self, service):
        page = fake_page()
        closed = []
        service.on_page_closed = closed.append
        page_id = await service._register_page(page)

        page.handlers["close"](page)

        assert closed == [page_id]
        with pytest.raises(BrowserError):
            service.get_page(page_id)

    @pytest.mark.asyncio
    async def test_driver_for_page(self, service):
        page = fake_page()
        page_id = await service._register_page(page)

        driver = service.driver(page_id)

        assert isinstance(driver, DOMDriver)
        assert driver.page is page


# ============================================================================
# TEST: Navigation
# ============================================================================

class TestOpenTarget:
    """Reuse an open page, retry timeouts."""

    @pytest.mark.asyncio
    async def test_reuses_existing_page(self, service):
        page = fake_page()
        await service._register_page(page)

        page_id = await service.open_target()

        assert page_id == 1
        page.goto.assert_awaited_once_with(service.settings.target_url, wait_until="domcontentloaded")

    @pytest.mark.asyncio
    async def test_timeout_retried(self, service, monkeypatch):
        monkeypatch.setattr(browser_module.asyncio, "sleep", AsyncMock())
        page = fake_page()
        page.goto.side_effect = [PlaywrightTimeoutError("slow"), None]
        await service._register_page(page)

        assert await service.open_target("https://sora.example/") == 1
        assert page.goto.await_count == 2

    @pytest.mark.asyncio
    async def test_timeouts_exhausted(self, service, monkeypatch):
        monkeypatch.setattr(browser_module.asyncio, "sleep", AsyncMock())
        page = fake_page()
        page.goto.side_effect = PlaywrightTimeoutError("slow")
        await service._register_page(page)

        with pytest.raises(BrowserError) as exc_info:
            await service.open_target()
        assert "after 3 attempts" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_not_started(self, settings, selectors):
        with pytest.raises(BrowserError):
            await BrowserService(settings, selectors).open_target()


# ============================================================================
# TEST: Events and snapshots
# ============================================================================

class TestEvents:
    """requestfinished forwarding and error snapshots."""

    @pytest.mark.asyncio
    async def test_request_forwarded_with_page_id(self, service):
        page = fake_page()
        page_id = await service._register_page(page)
        seen = []
        service.on_request = lambda pid, url: seen.append((pid, url))

        request = MagicMock()
        request.frame.page = page
        request.url = "https://browser-intake-datadoghq.com/api/v2/rum"
        service._on_request_finished(request)

        assert seen == [(page_id, request.url)]

    @pytest.mark.asyncio
    async def test_request_from_unknown_page_ignored(self, service):
        seen = []
        service.on_request = lambda pid, url: seen.append(pid)

        request = MagicMock()
        request.frame.page = fake_page()
        service._on_request_finished(request)

        assert seen == []

    @pytest.mark.asyncio
    async def test_error_snapshot_written(self, service):
        page_id = await service._register_page(fake_page())

        screenshot, html = await service.capture_error_snapshot(page_id, "GenerationFailed")

        assert screenshot.name.startswith("error_GenerationFailed_")
        assert "boom" in html.read_text(encoding="utf-8")

    @pytest.mark.asyncio
    async def test_snapshot_failure_swallowed(self, service):
        page = fake_page()
        page.screenshot.side_effect = PlaywrightError("Target closed")
        page_id = await service._register_page(page)

        assert await service.capture_error_snapshot(page_id, "x") == (None, None)
