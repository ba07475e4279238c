"""
Completion signalling between the host and a page agent.

The host learns "generation finished" from the network monitor; the agent
is the one waiting for it. CompletionSignal is the agent's one-shot
receiving end, and race_first() joins it with the DOM-polling fallback.
"""

import asyncio
from typing import Any, Awaitable, Optional


class CompletionSignal:
    """
    One-shot notification with latching.

    fire() before arm() is remembered and resolves the next wait at once.
    Firing an already-resolved signal is a no-op, so a late signal and a
    fallback path can never resolve the same wait twice.
    """

    def __init__(self):
        self._future: Optional[asyncio.Future] = None
        self._latched = False

    @property
    def armed(self) -> bool:
        return self._future is not None and not self._future.done()

    def arm(self) -> None:
        """Register the single listener for the next signal."""
        self._future = asyncio.get_running_loop().create_future()
        if self._latched:
            self._latched = False
            self._future.set_result(True)

    def fire(self) -> bool:
        """
        Deliver the signal.

        Returns:
            True if a waiting listener was resolved
        """
        if self._future is None:
            self._latched = True
            return False
        if self._future.done():
            return False
        self._future.set_result(True)
        return True

    async def wait(self, timeout: float) -> None:
        """
        Block until fired.

        Raises:
            RuntimeError: If arm() was not called
            asyncio.TimeoutError: If the signal did not arrive in time
        """
        if self._future is None:
            raise RuntimeError("CompletionSignal.wait() called before arm()")
        await asyncio.wait_for(asyncio.shield(self._future), timeout)

    def disarm(self) -> None:
        """Drop the listener and any latched signal."""
        if self._future is not None and not self._future.done():
            self._future.cancel()
        self._future = None
        self._latched = False


async def race_first(*awaitables: Awaitable[Any]) -> Any:
    """
    Run awaitables concurrently; the first to finish wins.

    The winner's result is returned (or its exception raised) and every
    other awaitable is cancelled and awaited before returning.
    """
    tasks = [asyncio.ensure_future(aw) for aw in awaitables]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # Argument order breaks ties.
    for task in tasks:
        if task in done:
            return task.result()
