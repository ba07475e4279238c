"""
Network-silence completion heuristic.

The creation tool streams telemetry requests while it is generating and
goes quiet afterwards. It exposes no completion event, so a sustained gap
in that traffic (silence threshold) is taken as "generation finished".

One MonitorEntry per page. The browser feeds every finished request into
observe_request(); a periodic check fires the entry's callback exactly once
when the page has been silent long enough.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set

logger = logging.getLogger(__name__)


@dataclass
class MonitorEntry:
    """Working state for one monitored page. Never persisted."""

    page_id: int
    last_request_time: float
    on_complete: Callable[[], Any]
    check_task: Optional[asyncio.Task] = None


class NetworkSilenceMonitor:
    """
    Declares generation complete after `silence_threshold` seconds without
    matching traffic from a page.

    The monitor never fires if it never reaches the threshold: callers
    impose their own hard timeout.
    """

    def __init__(
        self,
        url_pattern: str,
        silence_threshold: float = 30.0,
        check_interval: float = 5.0,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Args:
            url_pattern: URL prefix of the requests that count as activity
            silence_threshold: Seconds of silence that mean "finished"
            check_interval: Seconds between silence checks
            clock: Monotonic time source, injectable for tests
        """
        self.url_pattern = url_pattern
        self.silence_threshold = silence_threshold
        self.check_interval = check_interval
        self._clock = clock
        self._entries: Dict[int, MonitorEntry] = {}
        self._callback_tasks: Set[asyncio.Task] = set()

    def start_monitoring(self, page_id: int, on_complete: Callable[[], Any]) -> None:
        """
        Start (or restart) monitoring a page.

        A second call for the same page supersedes the first: the old entry
        is discarded without firing.
        """
        self.stop_monitoring(page_id)

        entry = MonitorEntry(
            page_id=page_id,
            last_request_time=self._clock(),
            on_complete=on_complete,
        )
        self._entries[page_id] = entry
        entry.check_task = asyncio.create_task(
            self._check_loop(entry),
            name=f"silence-monitor:{page_id}"
        )
        logger.info(f"Network monitoring started for page {page_id}")

    def stop_monitoring(self, page_id: int) -> bool:
        """Discard a page's entry. Idempotent; returns whether one existed."""
        entry = self._entries.pop(page_id, None)
        if entry is None:
            return False

        self._cancel_check(entry)
        logger.info(f"Network monitoring stopped for page {page_id}")
        return True

    def is_monitoring(self, page_id: int) -> bool:
        return page_id in self._entries

    def observe_request(self, page_id: int, url: str) -> bool:
        """
        Record an outbound request from a page.

        Returns:
            True if the request matched and reset a tracked page's countdown
        """
        if not url.startswith(self.url_pattern):
            return False

        entry = self._entries.get(page_id)
        if entry is None:
            return False

        entry.last_request_time = self._clock()
        logger.debug(f"Telemetry activity on page {page_id}")
        return True

    def check(self, page_id: int) -> bool:
        """
        Run one silence check for a page.

        Returns:
            True if the page was silent long enough and its callback fired
        """
        entry = self._entries.get(page_id)
        if entry is None:
            return False

        elapsed = self._clock() - entry.last_request_time
        logger.debug(f"Page {page_id}: {elapsed:.1f}s since last telemetry")
        if elapsed < self.silence_threshold:
            return False

        del self._entries[page_id]
        self._cancel_check(entry)
        logger.info(f"Page {page_id} silent for {elapsed:.1f}s, generation considered complete")
        self._fire(entry)
        return True

    async def close(self) -> None:
        for page_id in list(self._entries):
            self.stop_monitoring(page_id)
        for task in list(self._callback_tasks):
            task.cancel()

    async def _check_loop(self, entry: MonitorEntry) -> None:
        while self._entries.get(entry.page_id) is entry:
            await asyncio.sleep(self.check_interval)
            if self._entries.get(entry.page_id) is not entry:
                return
            self.check(entry.page_id)

    def _cancel_check(self, entry: MonitorEntry) -> None:
        task = entry.check_task
        # The loop itself may be the caller of check(); it exits on its own.
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _fire(self, entry: MonitorEntry) -> None:
        try:
            result = entry.on_complete()
        except Exception:
            logger.exception(f"Completion callback failed for page {entry.page_id}")
            return

        if asyncio.iscoroutine(result):
            task = asyncio.create_task(result, name=f"silence-callback:{entry.page_id}")
            self._callback_tasks.add(task)
            task.add_done_callback(self._callback_done)

    def _callback_done(self, task: asyncio.Task) -> None:
        self._callback_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Completion callback {task.get_name()} failed: {task.exception()!r}")
