"""
Shared fixtures: fast settings, an in-memory fake of the page DOM, and a
polling helper for assertions on background tasks.
"""

import asyncio
import sys
from pathlib import Path
from typing import Callable

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from autoqueue.config import Settings, SelectorConfig
from autoqueue.core.models import SubmitControl
from autoqueue.utils.dom import LoaderProbe


# ============================================================================
# FIXTURES
# ============================================================================

def make_settings(tmp_path: Path, **overrides) -> Settings:
    """Settings with millisecond-scale timings and everything under tmp_path."""
    values = dict(
        user_data_dir=tmp_path / "browser_data",
        screenshot_dir=tmp_path / "screenshots",
        storage_path=tmp_path / "data" / "autoqueue.json",
        api_key=None,
        silence_threshold=0.1,
        monitor_check_interval=0.02,
        network_completion_timeout=2.0,
        dom_completion_timeout=2.0,
        completion_settle_delay=0,
        dom_poll_interval=0.01,
        field_discovery_timeout=0.1,
        generation_start_timeout=0.1,
        pre_submit_delay=0,
        submit_retries=3,
        submit_retry_interval=0.01,
        ping_timeout=0.1,
        ping_interval=0.02,
        reinject_settle_delay=0,
        send_max_attempts=3,
        send_base_delay=0.01,
        message_timeout=2.0,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def selectors():
    return SelectorConfig()


class FakeDOMDriver:
    """
    Scriptable stand-in for DOMDriver.

    Clicking (or pressing Enter) starts a "generation" when
    starts_generation is set; finish() ends it.
    """

    def __init__(self):
        self.injected = True
        self.input_after = 0
        self.value_sticks = True
        self.submit_controls = [SubmitControl(found=True, text="Create")]
        self.starts_generation = True
        self.generating = False
        self.status = ""
        self.limit = []
        self.comboboxes = []

        self.typed = []
        self.clicks = 0
        self.enters = 0
        self.form_submits = 0
        self.inject_calls = 0
        self._find_input_calls = 0
        self._find_submit_calls = 0

    def finish(self, status: str = "ready") -> None:
        self.generating = False
        self.status = status

    async def inject(self):
        self.inject_calls += 1
        self.injected = True

    async def is_injected(self):
        return self.injected

    async def find_input(self):
        self._find_input_calls += 1
        if self.input_after is None or self._find_input_calls <= self.input_after:
            return None
        return "textarea"

    async def set_input_value(self, text):
        self.typed.append(text)
        return text if self.value_sticks else ""

    async def find_submit(self):
        index = min(self._find_submit_calls, len(self.submit_controls) - 1)
        self._find_submit_calls += 1
        return self.submit_controls[index]

    async def click_submit(self):
        self.clicks += 1
        self._start()
        return True

    async def press_enter(self):
        self.enters += 1
        self._start()
        return True

    async def submit_form(self):
        self.form_submits += 1
        return True

    async def probe_loaders(self):
        return LoaderProbe(
            with_marker=self.generating,
            visible=self.generating,
            generic_present=self.generating
        )

    async def status_text(self):
        return self.status

    async def limit_texts(self):
        return list(self.limit)

    async def combobox_texts(self):
        return list(self.comboboxes)

    async def dom_snapshot(self):
        return {
            "url": "https://sora.example/",
            "title": "Fake page",
            "ready_state": "complete",
            "inputs": [],
            "buttons": [],
        }

    def _start(self):
        if self.starts_generation:
            self.generating = True


@pytest.fixture
def driver():
    return FakeDOMDriver()


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll until predicate() is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)
