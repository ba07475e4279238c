"""
Page Automation Agent - per-page submission state machine.

One PageAgent lives behind the mailbox `page:<id>` of every target page.
It drives the page only through DOMDriver primitives and talks to the host
only through the message bus.

Submission lifecycle:
    idle -> finding_input -> typing -> waiting_before_submit -> submitting
         -> awaiting_start -> [reply "submitted"] -> awaiting_completion -> idle

The submit request is answered as soon as generation has visibly started;
completion is awaited in the background and reported to the host with
mark_complete / mark_failed. Only one submission may be in flight.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from ..config import Settings, SelectorConfig
from ..core.exceptions import (
    AutoQueueError,
    AgentBusy,
    BrowserError,
    ElementNotFound,
    GenerationDidNotStart,
    GenerationFailed,
    GenerationTimedOut,
    SubmissionRejected,
)
from ..core.models import (
    AgentMessage,
    AgentResponse,
    DetectedSettings,
    LimitCheckResult,
    PromptItem,
)
from ..infrastructure.messaging import HOST_ADDRESS, MessageBus, page_address
from ..utils.dom import parse_detected_settings
from .signals import CompletionSignal, race_first

logger = logging.getLogger(__name__)

FailureHook = Callable[[str], Awaitable[Any]]


class AgentPhase(str, Enum):
    IDLE = "idle"
    FINDING_INPUT = "finding_input"
    TYPING = "typing"
    WAITING_BEFORE_SUBMIT = "waiting_before_submit"
    SUBMITTING = "submitting"
    AWAITING_START = "awaiting_start"
    AWAITING_COMPLETION = "awaiting_completion"


class PageAgent:
    """
    Actor owning the submission protocol for one page.

    Handles: ping, submit, check_limit, generation_complete,
    detect_settings, dom_snapshot.
    """

    def __init__(
        self,
        page_id: int,
        driver,
        bus: MessageBus,
        settings: Settings,
        selectors: SelectorConfig,
        on_failure: Optional[FailureHook] = None
    ):
        """
        Args:
            page_id: Id of the page this agent drives
            driver: DOMDriver (or anything with the same async methods)
            bus: Message bus shared with the host
            settings: Timing configuration
            selectors: Keyword lists used to interpret probe results
            on_failure: Called with a label when a submission fails
                (debug screenshots)
        """
        self.page_id = page_id
        self.driver = driver
        self.bus = bus
        self.settings = settings
        self.selectors = selectors
        self.on_failure = on_failure

        self.phase = AgentPhase.IDLE
        self.current_item: Optional[PromptItem] = None
        self.signal = CompletionSignal()
        self._submission: Optional[asyncio.Task] = None

    @property
    def address(self) -> str:
        return page_address(self.page_id)

    @property
    def busy(self) -> bool:
        return self.phase is not AgentPhase.IDLE

    def attach(self) -> None:
        """Start listening on this page's mailbox."""
        self.bus.register(self.address, self.handle)

    async def detach(self) -> None:
        """Stop listening and abandon any in-flight submission."""
        await self.bus.unregister(self.address)
        if self._submission is not None and not self._submission.done():
            self._submission.cancel()
            try:
                await self._submission
            except asyncio.CancelledError:
                pass
        self._reset()

    # ===== Message dispatch =====

    async def handle(self, message: AgentMessage):
        action = message.action

        if action == "ping":
            return await self._handle_ping()
        if action == "submit":
            item = PromptItem.model_validate(message.payload["item"])
            return self._start_submission(item)
        if action == "check_limit":
            result = await self.check_limit()
            return AgentResponse.ok(**result.model_dump())
        if action == "generation_complete":
            return self._handle_generation_complete()
        if action == "detect_settings":
            detected = await self.detect_settings()
            return AgentResponse(
                success=detected.success,
                error=detected.error,
                data=detected.model_dump()
            )
        if action == "dom_snapshot":
            return AgentResponse.ok(**(await self.driver.dom_snapshot()))

        raise AutoQueueError(
            f"Agent cannot handle {action}",
            error_code="UnknownAction",
            context={"page_id": self.page_id}
        )

    async def _handle_ping(self) -> AgentResponse:
        ready = await self.driver.is_injected()
        return AgentResponse.ok(ready=ready, phase=self.phase.value)

    def _handle_generation_complete(self) -> AgentResponse:
        if self.phase is not AgentPhase.AWAITING_COMPLETION:
            logger.info(f"Page {self.page_id}: ignoring completion signal in phase {self.phase.value}")
            return AgentResponse.ok(delivered=False)

        delivered = self.signal.fire()
        logger.info(f"Page {self.page_id}: completion signal received (delivered={delivered})")
        return AgentResponse.ok(delivered=delivered)

    # ===== Submission =====

    def _start_submission(self, item: PromptItem) -> "asyncio.Future[AgentResponse]":
        """
        Claim the agent and start the submission in the background.

        Returns a future that resolves with the "submitted" reply once
        generation has started, or fails with the phase error.
        """
        if self.busy:
            raise AgentBusy(
                "Already processing a prompt",
                context={
                    "page_id": self.page_id,
                    "phase": self.phase.value,
                    "current_item": self.current_item.id if self.current_item else None,
                    "rejected_item": item.id,
                }
            )

        self.phase = AgentPhase.FINDING_INPUT
        self.current_item = item
        # Listener is registered before monitoring can possibly start.
        self.signal.disarm()
        self.signal.arm()

        submitted = asyncio.get_running_loop().create_future()
        self._submission = asyncio.create_task(
            self._run_submission(item, submitted),
            name=f"submission:{self.page_id}:{item.id}"
        )
        return submitted

    async def _run_submission(self, item: PromptItem, submitted: asyncio.Future) -> None:
        logger.info(f"Page {self.page_id}: submitting item {item.id} ({len(item.text)} chars)")

        try:
            await self._submit_phases(item)
        except asyncio.CancelledError:
            self._reset()
            if not submitted.done():
                submitted.cancel()
            raise
        except Exception as e:
            error = self._pipeline_error(e)
            await self._log_failure(item, error)
            self._reset()
            if not submitted.done():
                submitted.set_exception(error)
            return

        if not submitted.done():
            submitted.set_result(AgentResponse.ok(status="submitted", item_id=item.id))

        self.phase = AgentPhase.AWAITING_COMPLETION
        started = asyncio.get_running_loop().time()
        try:
            await self._await_completion()
        except asyncio.CancelledError:
            self._reset()
            raise
        except Exception as e:
            error = self._pipeline_error(e)
            await self._log_failure(item, error)
            # Idle before notifying, so the host can dispatch the next item.
            self._reset()
            await self._notify_host(
                "mark_failed",
                item_id=item.id,
                error=error.message,
                error_code=error.error_code
            )
            return

        elapsed = asyncio.get_running_loop().time() - started
        logger.info(f"Page {self.page_id}: item {item.id} completed after {elapsed:.1f}s")
        self._reset()
        await self._notify_host("mark_complete", item_id=item.id)

    async def _submit_phases(self, item: PromptItem) -> None:
        self.phase = AgentPhase.FINDING_INPUT
        selector = await self._find_input()
        logger.debug(f"Page {self.page_id}: prompt field found with {selector}")

        self.phase = AgentPhase.TYPING
        value = await self.driver.set_input_value(item.text)
        if value != item.text:
            # Not fatal here: a page that ignored the text keeps its submit
            # control disabled, which fails below.
            logger.warning(
                f"Page {self.page_id}: input value did not stick "
                f"(expected {len(item.text)} chars, got {len(value or '')})"
            )

        self.phase = AgentPhase.WAITING_BEFORE_SUBMIT
        await asyncio.sleep(self.settings.pre_submit_delay)

        self.phase = AgentPhase.SUBMITTING
        await self._submit()

        self.phase = AgentPhase.AWAITING_START
        await self._await_start()
        logger.info(f"Page {self.page_id}: generation started for item {item.id}")

    async def _find_input(self) -> str:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.field_discovery_timeout

        while True:
            selector = await self.driver.find_input()
            if selector:
                return selector
            if loop.time() >= deadline:
                break
            await asyncio.sleep(self.settings.dom_poll_interval)

        raise ElementNotFound(
            f"Could not find the prompt field within {self.settings.field_discovery_timeout}s",
            selectors=self.selectors.input_selectors,
            context={"page_id": self.page_id}
        )

    async def _submit(self) -> None:
        """
        Click an enabled submit control, or fall back to Enter + form submit.

        A control that stays disabled after every retry fails the attempt.
        """
        control = await self.driver.find_submit()
        retries = 0
        while retries < self.settings.submit_retries and (not control.found or control.disabled):
            logger.debug(
                f"Page {self.page_id}: retry {retries + 1}/{self.settings.submit_retries} "
                f"waiting for an enabled submit control"
            )
            await asyncio.sleep(self.settings.submit_retry_interval)
            control = await self.driver.find_submit()
            retries += 1

        if control.found and not control.disabled:
            await self.driver.click_submit()
            logger.info(f"Page {self.page_id}: clicked submit control '{control.text or control.aria_label}'")
            return

        if control.found:
            raise SubmissionRejected(
                "Submit control remained disabled - the page did not register the input",
                context={"page_id": self.page_id, "retries": retries, "control": control.text}
            )

        logger.warning(f"Page {self.page_id}: no submit control found, trying Enter key")
        await self.driver.press_enter()
        if not await self.driver.submit_form():
            logger.warning(f"Page {self.page_id}: no form element to submit")

    async def _await_start(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.generation_start_timeout

        while True:
            if await self._generation_started():
                return
            if loop.time() >= deadline:
                break
            await asyncio.sleep(self.settings.dom_poll_interval)

        status = await self.driver.status_text()
        if _contains_any(status, self.selectors.error_keywords):
            raise GenerationFailed(
                f"Generation failed to start: {status}",
                context={"page_id": self.page_id}
            )
        raise GenerationDidNotStart(
            f"Generation did not start within {self.settings.generation_start_timeout}s",
            context={"page_id": self.page_id, "status": status}
        )

    async def _generation_started(self) -> bool:
        probe = await self.driver.probe_loaders()
        if probe.with_marker or probe.visible:
            return True
        status = await self.driver.status_text()
        return _contains_any(status, self.selectors.in_progress_keywords)

    # ===== Completion =====

    async def _await_completion(self) -> None:
        """
        Wait for the network-silence signal, falling back to DOM polling
        when the host cannot start the monitor.
        """
        monitoring = await self._start_monitoring()
        try:
            if not monitoring:
                await self._poll_dom_completion(self.settings.dom_completion_timeout)
            elif self.settings.race_dom_fallback:
                await race_first(
                    self._wait_for_signal(),
                    self._poll_dom_completion(self.settings.network_completion_timeout)
                )
            else:
                await self._wait_for_signal()
        finally:
            if monitoring:
                await self._notify_host("stop_network_monitoring")

    async def _start_monitoring(self) -> bool:
        try:
            response = await self.bus.send(
                HOST_ADDRESS,
                AgentMessage(action="start_network_monitoring", page_id=self.page_id),
                timeout=self.settings.message_timeout
            )
        except AutoQueueError as e:
            logger.warning(f"Page {self.page_id}: network monitoring unavailable ({e}), using DOM detection")
            return False

        if not response.success:
            logger.warning(
                f"Page {self.page_id}: failed to start network monitoring ({response.error}), using DOM detection"
            )
            return False
        return True

    async def _wait_for_signal(self) -> None:
        timeout = self.settings.network_completion_timeout
        try:
            await self.signal.wait(timeout)
        except asyncio.TimeoutError as e:
            raise GenerationTimedOut(
                f"Network monitoring timed out after {timeout:.0f}s",
                timeout_seconds=timeout,
                context={"page_id": self.page_id}
            ) from e

    async def _poll_dom_completion(self, timeout: float) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        logger.info(f"Page {self.page_id}: polling DOM for completion (max {timeout:.0f}s)")

        while loop.time() < deadline:
            state, status = await self._completion_state()
            if state == "ready":
                await asyncio.sleep(self.settings.completion_settle_delay)
                return
            if state == "error":
                raise GenerationFailed(
                    f"Host page reported an error: {status}",
                    context={"page_id": self.page_id}
                )
            await asyncio.sleep(self.settings.dom_poll_interval)

        raise GenerationTimedOut(
            f"Generation timed out after {timeout:.0f}s",
            timeout_seconds=timeout,
            context={"page_id": self.page_id}
        )

    async def _completion_state(self) -> Tuple[str, str]:
        """One of ("loading" | "ready" | "error", status text)."""
        probe = await self.driver.probe_loaders()
        if probe.with_marker:
            return "loading", ""

        status = await self.driver.status_text()
        if _contains_any(status, self.selectors.ready_keywords):
            return "ready", status
        if _contains_any(status, self.selectors.error_keywords):
            return "error", status
        if not probe.generic_present:
            return "ready", status
        return "loading", status

    # ===== Probes =====

    async def check_limit(self) -> LimitCheckResult:
        """Look for a rate-limit banner on the page."""
        for text in await self.driver.limit_texts():
            if _contains_any(text.lower(), self.selectors.limit_keywords):
                logger.warning(f"Page {self.page_id}: rate limit banner: {text}")
                return LimitCheckResult(found=True, message=text)
        return LimitCheckResult(found=False)

    async def detect_settings(self) -> DetectedSettings:
        try:
            detected = parse_detected_settings(await self.driver.combobox_texts())
        except Exception as e:
            logger.error(f"Page {self.page_id}: failed to detect settings: {e}")
            return DetectedSettings(success=False, error=str(e))
        logger.info(f"Page {self.page_id}: detected settings {detected.model_dump(exclude={'success', 'error'})}")
        return detected

    # ===== Helpers =====

    async def _notify_host(self, action: str, **payload: Any) -> Optional[AgentResponse]:
        """Fire-and-acknowledge request to the host; failures are logged."""
        try:
            response = await self.bus.send(
                HOST_ADDRESS,
                AgentMessage(action=action, page_id=self.page_id, payload=payload),
                timeout=self.settings.message_timeout
            )
        except AutoQueueError as e:
            logger.error(f"Page {self.page_id}: could not deliver {action} to host: {e}")
            return None

        if not response.success:
            logger.warning(f"Page {self.page_id}: host rejected {action}: {response.error}")
        return response

    def _pipeline_error(self, exc: Exception) -> AutoQueueError:
        if isinstance(exc, AutoQueueError):
            return exc
        return BrowserError(
            f"Page interaction failed: {exc}",
            context={"page_id": self.page_id, "phase": self.phase.value}
        )

    async def _log_failure(self, item: PromptItem, error: AutoQueueError) -> None:
        snapshot: Dict[str, Any] = {}
        try:
            snapshot = await self.driver.dom_snapshot()
        except Exception as e:
            logger.debug(f"Page {self.page_id}: DOM snapshot unavailable: {e}")

        logger.error(
            f"Page {self.page_id}: item {item.id} failed in {self.phase.value}: {error} | "
            f"inputs={len(snapshot.get('inputs', []))} buttons={snapshot.get('buttons', [])[:5]}"
        )

        if self.on_failure is not None:
            try:
                await self.on_failure(f"{error.error_code}_{self.phase.value}")
            except Exception as e:
                logger.warning(f"Page {self.page_id}: failure hook raised: {e}")

    def _reset(self) -> None:
        self.phase = AgentPhase.IDLE
        self.current_item = None
        self.signal.disarm()


def _contains_any(text: str, keywords) -> bool:
    return any(keyword in text for keyword in keywords)
