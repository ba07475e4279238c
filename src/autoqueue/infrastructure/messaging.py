"""
Addressed request/response channel between the host and page agents.

The host process and each page agent are actors: they share no state and
only talk through typed AgentMessage requests answered by AgentResponse.
Every request carries a timeout, and sending to an address nobody is
listening on fails immediately with ReceivingEndMissing instead of
hanging.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Tuple, Union

from ..core.exceptions import AutoQueueError, AgentUnavailable, ReceivingEndMissing
from ..core.models import AgentMessage, AgentResponse

logger = logging.getLogger(__name__)

HOST_ADDRESS = "host"

# A handler either answers directly or hands back a future whose result is
# the answer (deferred reply), which lets the inbox keep draining while
# long work is in progress.
HandlerResult = Union[AgentResponse, "asyncio.Future[AgentResponse]"]
Handler = Callable[[AgentMessage], Awaitable[HandlerResult]]


def page_address(page_id: int) -> str:
    """Mailbox address of the agent living in a page."""
    return f"page:{page_id}"


class Mailbox:
    """
    Single-consumer inbox processing one request at a time.

    Handler exceptions are logged and converted into failure responses;
    they never kill the consumer loop.
    """

    def __init__(self, address: str, handler: Handler):
        self.address = address
        self._handler = handler
        self._queue: "asyncio.Queue[Tuple[AgentMessage, asyncio.Future]]" = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"mailbox:{self.address}")

    async def stop(self) -> None:
        """Stop consuming; pending requests fail as undeliverable."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        while not self._queue.empty():
            message, future = self._queue.get_nowait()
            if not future.done():
                future.set_exception(ReceivingEndMissing(
                    f"Mailbox {self.address} closed before handling {message.action}",
                    context={"address": self.address, "action": message.action}
                ))

    async def request(self, message: AgentMessage, timeout: float) -> AgentResponse:
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((message, future))
        return await asyncio.wait_for(future, timeout)

    async def _run(self) -> None:
        while True:
            message, future = await self._queue.get()
            if future.done():
                # Requester already gave up.
                continue

            try:
                result = await self._handler(message)
            except AutoQueueError as e:
                logger.warning(f"{self.address}: {message.action} failed: {e}")
                result = AgentResponse.from_exception(e)
            except Exception as e:
                logger.exception(f"{self.address}: unexpected error handling {message.action}")
                result = AgentResponse.from_exception(e)

            if asyncio.isfuture(result):
                result.add_done_callback(
                    lambda done, reply=future, action=message.action: self._resolve_deferred(done, reply, action)
                )
            elif not future.done():
                future.set_result(result)

    def _resolve_deferred(self, done: asyncio.Future, reply: asyncio.Future, action: str) -> None:
        if done.cancelled():
            if reply.done():
                return
            reply.set_result(AgentResponse(
                success=False,
                error=f"{action} was cancelled",
                error_code="AgentUnavailable"
            ))
            return
        exc = done.exception()
        if reply.done():
            # Requester timed out; the outcome was already logged by the agent.
            return
        if exc is not None:
            if not isinstance(exc, AutoQueueError):
                logger.error(f"{self.address}: unexpected error in deferred {action}: {exc!r}")
            reply.set_result(AgentResponse.from_exception(exc))
        else:
            reply.set_result(done.result())


class MessageBus:
    """Registry of mailboxes; routes requests by address."""

    def __init__(self, default_timeout: float = 30.0):
        self.default_timeout = default_timeout
        self._mailboxes: Dict[str, Mailbox] = {}

    def register(self, address: str, handler: Handler) -> Mailbox:
        """Create and start a mailbox, replacing any previous one at this address."""
        previous = self._mailboxes.get(address)
        if previous is not None and previous.running:
            logger.warning(f"Replacing running mailbox at {address}")
            previous._task.cancel()

        mailbox = Mailbox(address, handler)
        mailbox.start()
        self._mailboxes[address] = mailbox
        logger.debug(f"Registered mailbox {address}")
        return mailbox

    async def unregister(self, address: str) -> None:
        mailbox = self._mailboxes.pop(address, None)
        if mailbox is not None:
            await mailbox.stop()
            logger.debug(f"Unregistered mailbox {address}")

    def is_registered(self, address: str) -> bool:
        mailbox = self._mailboxes.get(address)
        return mailbox is not None and mailbox.running

    async def send(
        self,
        address: str,
        message: AgentMessage,
        timeout: Optional[float] = None
    ) -> AgentResponse:
        """
        Deliver a request and wait for its reply.

        Raises:
            ReceivingEndMissing: Nobody is listening at the address
            AgentUnavailable: No reply within the timeout
        """
        mailbox = self._mailboxes.get(address)
        if mailbox is None or not mailbox.running:
            raise ReceivingEndMissing(
                "Could not establish connection. Receiving end does not exist.",
                context={"address": address, "action": message.action}
            )

        timeout = timeout if timeout is not None else self.default_timeout
        try:
            return await mailbox.request(message, timeout)
        except asyncio.TimeoutError as e:
            raise AgentUnavailable(
                f"No reply from {address} to {message.action} within {timeout}s",
                context={"address": address, "action": message.action}
            ) from e

    async def close(self) -> None:
        for address in list(self._mailboxes):
            await self.unregister(address)
