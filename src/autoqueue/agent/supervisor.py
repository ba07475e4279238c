"""
Agent Supervisor - liveness probing, re-injection and delivery retries.

A page reload wipes the injected bootstrap, and a closed page takes its
mailbox with it. The supervisor hides both from the orchestrator: it
probes the agent, re-injects it once when it stays silent, and retries
deliveries that failed because nobody was listening.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from ..config import Settings
from ..core.exceptions import AgentUnavailable, AutoQueueError, ReceivingEndMissing, error_from_code
from ..core.models import AgentMessage, AgentResponse
from ..infrastructure.messaging import MessageBus, page_address

logger = logging.getLogger(__name__)

Reinjector = Callable[[int], Awaitable[None]]


class AgentSupervisor:
    """Guarantees a responsive agent before the orchestrator talks to it."""

    def __init__(self, bus: MessageBus, settings: Settings, reinject: Reinjector):
        """
        Args:
            bus: Message bus the agents listen on
            settings: Ping/retry timing
            reinject: Coroutine function that re-installs the agent in a page
        """
        self.bus = bus
        self.settings = settings
        self._reinject = reinject

    async def ping(self, page_id: int, timeout: Optional[float] = None) -> bool:
        """Single liveness probe; True only if the agent reports ready."""
        try:
            response = await self.bus.send(
                page_address(page_id),
                AgentMessage(action="ping", page_id=page_id),
                timeout=timeout or self.settings.ping_timeout
            )
        except AgentUnavailable as e:
            logger.debug(f"Ping to page {page_id} failed: {e.message}")
            return False
        return response.success and bool(response.data.get("ready"))

    async def ensure_ready(self, page_id: int) -> None:
        """
        Resolve once the agent in `page_id` answers a ping.

        Probes every PING_INTERVAL for up to PING_TIMEOUT, then re-injects
        the agent once and probes again after REINJECT_SETTLE_DELAY.

        Raises:
            AgentUnavailable: If the agent is still silent after re-injection
        """
        if await self._probe(page_id):
            return

        logger.warning(f"Agent in page {page_id} not responding, re-injecting")
        try:
            await self._reinject(page_id)
        except AutoQueueError as e:
            raise AgentUnavailable(
                f"Could not re-inject agent into page {page_id}: {e.message}. Please reload the target page.",
                context={"page_id": page_id}
            ) from e

        await asyncio.sleep(self.settings.reinject_settle_delay)
        if await self._probe(page_id):
            logger.info(f"Agent in page {page_id} ready after re-injection")
            return

        raise AgentUnavailable(
            f"Agent in page {page_id} is not responding. Please reload the target page.",
            context={"page_id": page_id}
        )

    async def send_with_retry(
        self,
        page_id: int,
        message: AgentMessage,
        max_attempts: Optional[int] = None,
        timeout: Optional[float] = None
    ) -> AgentResponse:
        """
        Deliver a message, recovering from a missing receiving end.

        ReceivingEndMissing triggers ensure_ready() and a backoff of
        attempt * SEND_BASE_DELAY before the next attempt. Any other
        delivery error propagates immediately. A failure reply is raised
        as the error class named by its error_code.
        """
        attempts = max_attempts or self.settings.send_max_attempts

        for attempt in range(1, attempts + 1):
            try:
                response = await self.bus.send(page_address(page_id), message, timeout=timeout)
            except ReceivingEndMissing as e:
                if attempt >= attempts:
                    raise AgentUnavailable(
                        f"Could not deliver {message.action} to page {page_id} after {attempts} attempts. "
                        f"Please reload the target page.",
                        context={"page_id": page_id, "action": message.action}
                    ) from e
                logger.warning(
                    f"Delivery of {message.action} to page {page_id} failed "
                    f"(attempt {attempt}/{attempts}): {e.message}"
                )
                await self.ensure_ready(page_id)
                await asyncio.sleep(attempt * self.settings.send_base_delay)
                continue

            if not response.success:
                raise error_from_code(
                    response.error_code,
                    response.error or f"{message.action} failed"
                )
            return response

    async def _probe(self, page_id: int) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.ping_timeout

        while True:
            remaining = deadline - loop.time()
            if await self.ping(page_id, timeout=max(remaining, self.settings.ping_interval)):
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(self.settings.ping_interval)
