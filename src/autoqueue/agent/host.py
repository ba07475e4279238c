"""
Host process - wires the queue, the page agents and the network monitor.

The host owns Storage, the message bus, the network-silence monitor, the
supervisor, the orchestrator and the prompt-generation client. It listens
on the `host` mailbox for requests from page agents and exposes
handle_command() as the single entry point for the UI (the console in
main.py).
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..config import Settings, SelectorConfig
from ..core.exceptions import AutoQueueError, AgentUnavailable, ConfigurationError
from ..core.models import (
    AgentMessage,
    AgentResponse,
    CommandResult,
    GenerationRequest,
    PromptItem,
)
from ..infrastructure.messaging import HOST_ADDRESS, MessageBus, page_address
from ..infrastructure.network_monitor import NetworkSilenceMonitor
from ..infrastructure.storage import Storage
from .orchestrator import QueueOrchestrator, recover_stale_items
from .page_agent import AgentPhase, PageAgent
from .supervisor import AgentSupervisor

logger = logging.getLogger(__name__)

CommandHandler = Callable[[Dict[str, Any]], Awaitable[CommandResult]]


class HostProcess:
    """
    Long-lived background context.

    Usage:
        host = HostProcess(settings, selectors, storage, generator, browser)
        await host.start()
        result = await host.handle_command("start_queue")
    """

    def __init__(
        self,
        settings: Settings,
        selectors: SelectorConfig,
        storage: Storage,
        generator,
        browser=None,
        bus: Optional[MessageBus] = None,
        monitor: Optional[NetworkSilenceMonitor] = None
    ):
        """
        Args:
            settings: Application settings
            selectors: Matcher lists for the page agents
            storage: Persistent store
            generator: PromptGenerationClient
            browser: BrowserService; None when agents are attached by hand
            bus: Message bus (created from settings if omitted)
            monitor: Network-silence monitor (created from settings if omitted)
        """
        self.settings = settings
        self.selectors = selectors
        self.storage = storage
        self.generator = generator
        self.browser = browser

        self.bus = bus or MessageBus(default_timeout=settings.message_timeout)
        self.monitor = monitor or NetworkSilenceMonitor(
            url_pattern=settings.telemetry_url_pattern,
            silence_threshold=settings.silence_threshold,
            check_interval=settings.monitor_check_interval
        )
        self.supervisor = AgentSupervisor(self.bus, settings, self._reinject)
        self.orchestrator: Optional[QueueOrchestrator] = None
        self.agents: Dict[int, PageAgent] = {}
        self.page_id: Optional[int] = None

        self._commands: Dict[str, CommandHandler] = {
            "start_queue": self._start_queue,
            "pause_queue": self._pause_queue,
            "resume_queue": self._resume_queue,
            "stop_queue": self._stop_queue,
            "process_selected": self._process_selected,
            "add_prompts": self._add_prompts,
            "edit_prompt": self._edit_prompt,
            "delete_prompts": self._delete_prompts,
            "duplicate_prompt": self._duplicate_prompt,
            "refine_prompt": self._refine_prompt,
            "generate_prompts": self._generate_prompts,
            "enhance_prompt": self._enhance_prompt,
            "generate_similar": self._generate_similar,
            "mark_complete": self._mark_complete,
            "mark_failed": self._mark_failed,
            "start_network_monitoring": self._start_network_monitoring,
            "stop_network_monitoring": self._stop_network_monitoring,
            "detect_settings": self._detect_settings,
            "get_queue_status": self._get_queue_status,
            "update_config": self._update_config,
        }

    # ===== Lifecycle =====

    async def start(self, page_id: Optional[int] = None) -> int:
        """
        Recover stale state, open the target page and start the queue worker.

        Args:
            page_id: Page whose agent was attached by hand (no browser)

        Returns:
            Id of the target page
        """
        recovered = await recover_stale_items(self.storage)
        if recovered:
            logger.info(f"Startup recovery reset {len(recovered)} items to pending")
        await self.import_prompts_file()

        self.bus.register(HOST_ADDRESS, self.handle_message)

        if self.browser is not None:
            self.browser.on_request = self.monitor.observe_request
            self.browser.on_page_closed = self._on_page_closed
            page_id = await self.browser.open_target()
            self.attach_agent(page_id, self.browser.driver(page_id))

        if page_id is None:
            raise ConfigurationError("No target page: pass a browser or a page_id")

        self.page_id = page_id
        self.orchestrator = QueueOrchestrator(
            storage=self.storage,
            supervisor=self.supervisor,
            generator=self.generator,
            settings=self.settings,
            page_id=page_id
        )
        self.orchestrator.start_worker()
        logger.info(f"Host started on page {page_id}")
        return page_id

    async def close(self) -> None:
        if self.orchestrator is not None:
            await self.orchestrator.close()
        for page_id in list(self.agents):
            await self.detach_agent(page_id)
        await self.monitor.close()
        await self.bus.close()
        await self.generator.close()
        logger.info("Host stopped")

    def attach_agent(self, page_id: int, driver) -> PageAgent:
        """Create the agent for a page and start its mailbox."""
        agent = PageAgent(
            page_id=page_id,
            driver=driver,
            bus=self.bus,
            settings=self.settings,
            selectors=self.selectors,
            on_failure=self._failure_hook(page_id)
        )
        agent.attach()
        self.agents[page_id] = agent
        logger.debug(f"Agent attached to page {page_id}")
        return agent

    async def detach_agent(self, page_id: int) -> None:
        """
        Drop a page's agent. An item it was still waiting on is reported
        failed; one cut off before "submitted" fails its submit request.
        """
        self.monitor.stop_monitoring(page_id)
        agent = self.agents.pop(page_id, None)
        if agent is None:
            return

        abandoned = agent.current_item if agent.phase is AgentPhase.AWAITING_COMPLETION else None
        await agent.detach()

        if abandoned is not None and self.orchestrator is not None and self.orchestrator.running:
            logger.warning(f"Page {page_id} detached while item {abandoned.id} was generating")
            await self.orchestrator.mark_failed(
                abandoned.id,
                f"Page {page_id} closed before the generation finished",
                "AgentUnavailable"
            )

    async def import_prompts_file(self) -> int:
        """
        Append prompts from PROMPTS_FILE, one per line.

        Returns:
            Number of prompts imported (texts already queued are skipped)

        Raises:
            ConfigurationError: If the file cannot be read
        """
        path = self.settings.prompts_file
        if path is None:
            return 0

        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise ConfigurationError(f"Cannot read prompts file {path}: {e}") from e

        # Re-importing the same file on the next launch adds nothing.
        existing = {item.text for item in await self.storage.get_items()}
        texts = list(dict.fromkeys(
            line.strip() for line in lines
            if line.strip() and line.strip() not in existing
        ))
        if texts:
            await self.storage.append_items(PromptItem(text=text) for text in texts)
            logger.info(f"Imported {len(texts)} prompts from {path}")
        return len(texts)

    # ===== Host mailbox =====

    async def handle_message(self, message: AgentMessage) -> AgentResponse:
        """Requests from page agents."""
        action = message.action

        if action == "start_network_monitoring":
            self._monitor_page(message.page_id)
            return AgentResponse.ok(monitoring=True)
        if action == "stop_network_monitoring":
            return AgentResponse.ok(stopped=self.monitor.stop_monitoring(message.page_id))
        if action == "mark_complete":
            result = await self._require_orchestrator().mark_complete(message.payload["item_id"])
            return _to_response(result)
        if action == "mark_failed":
            result = await self._require_orchestrator().mark_failed(
                message.payload["item_id"],
                message.payload["error"],
                message.payload.get("error_code")
            )
            return _to_response(result)

        raise AutoQueueError(f"Host cannot handle {action}", error_code="UnknownAction")

    def _monitor_page(self, page_id: int) -> None:
        self.monitor.start_monitoring(page_id, lambda: self._signal_completion(page_id))
        logger.info(f"Network monitoring started for page {page_id}")

    async def _signal_completion(self, page_id: int) -> None:
        """Monitor callback: tell the agent its generation finished."""
        try:
            response = await self.bus.send(
                page_address(page_id),
                AgentMessage(action="generation_complete", page_id=page_id),
                timeout=self.settings.message_timeout
            )
        except AgentUnavailable as e:
            logger.error(f"Could not deliver completion signal to page {page_id}: {e.message}")
            return
        logger.debug(f"Completion signal delivered to page {page_id}: {response.data}")

    # ===== UI commands =====

    async def handle_command(self, action: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Dispatch a UI command.

        Returns:
            {success, error?, message?, data?}; never raises
        """
        handler = self._commands.get(action)
        if handler is None:
            return {"success": False, "error": "Unknown action"}

        try:
            result = await handler(data or {})
        except AutoQueueError as e:
            logger.error(f"Command {action} failed: {e}")
            return {"success": False, "error": e.message}
        except Exception as e:
            logger.exception(f"Command {action} failed")
            return {"success": False, "error": str(e)}

        return result.model_dump(exclude_none=True)

    async def _start_queue(self, data: Dict[str, Any]) -> CommandResult:
        return await self._require_orchestrator().start()

    async def _pause_queue(self, data: Dict[str, Any]) -> CommandResult:
        return await self._require_orchestrator().pause()

    async def _resume_queue(self, data: Dict[str, Any]) -> CommandResult:
        return await self._require_orchestrator().resume()

    async def _stop_queue(self, data: Dict[str, Any]) -> CommandResult:
        return await self._require_orchestrator().stop()

    async def _process_selected(self, data: Dict[str, Any]) -> CommandResult:
        return await self._require_orchestrator().process_selected(data.get("item_ids", []))

    async def _add_prompts(self, data: Dict[str, Any]) -> CommandResult:
        texts = [t.strip() for t in data.get("texts", []) if t and t.strip()]
        if not texts:
            return CommandResult(success=False, error="No prompt text given")

        added = await self.storage.append_items(
            PromptItem(text=text, media_kind=data.get("media_kind", "video"))
            for text in texts
        )
        await self._require_orchestrator().refresh_counts()
        return CommandResult(
            success=True,
            message=f"Added {len(texts)} prompts",
            data={"item_ids": [item.id for item in added]}
        )

    async def _edit_prompt(self, data: Dict[str, Any]) -> CommandResult:
        if not str(data.get("text", "")).strip():
            return CommandResult(success=False, error="New text is required for edit action")
        return await self._require_orchestrator().edit_item(data["item_id"], data["text"])

    async def _delete_prompts(self, data: Dict[str, Any]) -> CommandResult:
        return await self._require_orchestrator().delete_items(data.get("item_ids", []))

    async def _duplicate_prompt(self, data: Dict[str, Any]) -> CommandResult:
        return await self._require_orchestrator().duplicate_item(data["item_id"], data.get("count", 1))

    async def _refine_prompt(self, data: Dict[str, Any]) -> CommandResult:
        """Rewrite an item's text through enhance_prompt; its status is kept."""
        item_id = data["item_id"]
        item = next((i for i in await self.storage.get_items() if i.id == item_id), None)
        if item is None:
            return CommandResult(success=False, error="Prompt not found")

        response = await self.generator.enhance_prompt(item.text, item.media_kind)
        if not response.success:
            return CommandResult(success=False, error=response.error)

        result = await self._require_orchestrator().edit_item(
            item_id,
            response.enhanced,
            enhanced=True,
            requeue=False
        )
        if result.success:
            result.data["refined"] = response.enhanced
        return result

    async def _generate_prompts(self, data: Dict[str, Any]) -> CommandResult:
        """Generate prompts, queue them, then the optional follow-up batch."""
        if not str(data.get("context", "")).strip():
            return CommandResult(success=False, error="Context prompt is required")

        request = GenerationRequest(
            context=data.get("context", ""),
            count=data.get("count", 10),
            media_kind=data.get("media_kind", "video"),
            enhanced=data.get("enhanced", True)
        )
        response = await self.generator.generate(request)
        if not response.success:
            return CommandResult(success=False, error=response.error)

        item_ids = await self._queue_generated(
            response.prompts,
            media_kind=request.media_kind,
            aspect_ratio=data.get("aspect_ratio"),
            variations=data.get("variations"),
            preset=data.get("preset"),
            enhanced=request.enhanced
        )
        await self._auto_generate_on_received()
        await self._require_orchestrator().refresh_counts()

        return CommandResult(
            success=True,
            message=f"Generated {len(item_ids)} prompts",
            data={"item_ids": item_ids, "prompts": response.prompts}
        )

    async def _auto_generate_on_received(self) -> None:
        config = await self.storage.get_config()
        if not (config.auto_generate_on_received and config.context_prompt and self.generator.available):
            return

        logger.info(f"Auto-generating {config.batch_size} more prompts after a received batch")
        response = await self.generator.generate(GenerationRequest(
            context=config.context_prompt,
            count=config.batch_size,
            media_kind=config.media_kind,
            enhanced=config.use_enhanced
        ))
        if not response.success:
            logger.error(f"Follow-up generation failed: {response.error}")
            return

        await self._queue_generated(
            response.prompts,
            media_kind=config.media_kind,
            variations=config.variation_count,
            enhanced=config.use_enhanced
        )

    async def _queue_generated(self, prompts: List[str], **attributes: Any) -> List[str]:
        items = [PromptItem(text=text, **attributes) for text in prompts]
        await self.storage.append_items(items)
        return [item.id for item in items]

    async def _enhance_prompt(self, data: Dict[str, Any]) -> CommandResult:
        response = await self.generator.enhance_prompt(
            data.get("text", ""),
            data.get("media_kind", "video")
        )
        return CommandResult(
            success=response.success,
            error=response.error,
            data={"enhanced": response.enhanced}
        )

    async def _generate_similar(self, data: Dict[str, Any]) -> CommandResult:
        response = await self.generator.generate_similar(
            data.get("base_prompt", ""),
            data.get("count", 5),
            data.get("media_kind", "video")
        )
        return CommandResult(
            success=response.success,
            error=response.error,
            data={"prompts": response.prompts}
        )

    async def _mark_complete(self, data: Dict[str, Any]) -> CommandResult:
        return await self._require_orchestrator().mark_complete(data["item_id"])

    async def _mark_failed(self, data: Dict[str, Any]) -> CommandResult:
        return await self._require_orchestrator().mark_failed(
            data["item_id"],
            data.get("error", "Unknown error"),
            data.get("error_code")
        )

    async def _start_network_monitoring(self, data: Dict[str, Any]) -> CommandResult:
        page_id = data.get("page_id", self.page_id)
        self._monitor_page(page_id)
        return CommandResult(success=True, message=f"Monitoring page {page_id}")

    async def _stop_network_monitoring(self, data: Dict[str, Any]) -> CommandResult:
        page_id = data.get("page_id", self.page_id)
        stopped = self.monitor.stop_monitoring(page_id)
        return CommandResult(success=True, data={"stopped": stopped})

    async def _detect_settings(self, data: Dict[str, Any]) -> CommandResult:
        page_id = data.get("page_id", self.page_id)
        await self.supervisor.ensure_ready(page_id)
        response = await self.supervisor.send_with_retry(
            page_id,
            AgentMessage(action="detect_settings", page_id=page_id)
        )
        return CommandResult(success=True, data=response.data)

    async def _get_queue_status(self, data: Dict[str, Any]) -> CommandResult:
        status = await self._require_orchestrator().status()
        return CommandResult(success=True, data=status)

    async def _update_config(self, data: Dict[str, Any]) -> CommandResult:
        config = await self.storage.set_config(**data)
        return CommandResult(success=True, data=config.model_dump())

    # ===== Helpers =====

    def _require_orchestrator(self) -> QueueOrchestrator:
        if self.orchestrator is None:
            raise AutoQueueError("Host is not started", error_code="HostNotStarted")
        return self.orchestrator

    async def _reinject(self, page_id: int) -> None:
        agent = self.agents.get(page_id)
        if agent is None:
            raise AgentUnavailable(f"No agent for page {page_id}", context={"page_id": page_id})

        await agent.driver.inject()
        if not self.bus.is_registered(agent.address):
            agent.attach()

    def _failure_hook(self, page_id: int):
        async def capture(label: str) -> None:
            if self.settings.debug_mode and self.browser is not None:
                await self.browser.capture_error_snapshot(page_id, label)
        return capture

    def _on_page_closed(self, page_id: int) -> None:
        if page_id in self.agents:
            asyncio.ensure_future(self.detach_agent(page_id))


def _to_response(result: CommandResult) -> AgentResponse:
    return AgentResponse(
        success=result.success,
        error=result.error,
        data=result.data or {}
    )
