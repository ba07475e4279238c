"""
Queue Orchestrator - the single owner of queue state.

All queue mutations run inside one worker task that consumes a command
queue (start, pause, resume, stop, process_selected, mark_complete,
mark_failed, item edits, plus internal pipeline and timer callbacks).
Commands are processed strictly one at a time, which is what makes "at
most one item processing" enforceable.

Per item:
    process_next -> pipeline task: ensure_ready -> check_limit
                 -> begin_item (mark processing)   [inside the worker]
                 -> submit over the supervisor
    The agent later reports mark_complete / mark_failed, which updates
    the item, recounts and schedules the next item after a random delay.
    A watchdog timer armed at begin_item fails the item if no report
    arrives within settings.completion_watchdog.

Counters shown to the UI are always recomputed from the item list with
recount(); they are never incremented in place.
"""

import asyncio
import logging
import random
from collections import deque
from datetime import datetime
from functools import partial
from typing import Any, Deque, Dict, Iterable, List, Optional

from ..config import Settings
from ..core.exceptions import (
    AutoQueueError,
    AgentBusy,
    GenerationTimedOut,
    RateLimited,
)
from ..core.models import (
    AgentMessage,
    CommandResult,
    GenerationRequest,
    PromptItem,
    new_item_id,
    recount,
)
from ..infrastructure.storage import Storage
from .supervisor import AgentSupervisor

logger = logging.getLogger(__name__)


class QueueOrchestrator:
    """
    State machine owning the prompt backlog.

    States: stopped -> running <-> paused -> stopped. Only start (or
    process_selected) leaves stopped; only stop (or a queue-halting error)
    returns to it.
    """

    def __init__(
        self,
        storage: Storage,
        supervisor: AgentSupervisor,
        generator,
        settings: Settings,
        page_id: int,
        rng: Optional[random.Random] = None
    ):
        """
        Args:
            storage: Persistent store for items, config and queue state
            supervisor: Delivers commands to the page agent
            generator: PromptGenerationClient used when the queue runs dry
            settings: Timing configuration
            page_id: Page the agent lives in (one target tab)
            rng: Random source for pacing delays
        """
        self.storage = storage
        self.supervisor = supervisor
        self.generator = generator
        self.settings = settings
        self.page_id = page_id
        self._rng = rng or random.Random()

        self._commands: "asyncio.Queue" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

        # In-memory run flag; the persisted is_running may be stale after a crash.
        self._active = False
        self._selection: Optional[Deque[str]] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._pipeline: Optional[asyncio.Task] = None
        self._in_flight: Optional[str] = None
        self._watchdog: Optional[asyncio.TimerHandle] = None

    # ===== Lifecycle =====

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start_worker(self) -> None:
        if not self.running:
            self._worker = asyncio.create_task(self._run(), name="queue-orchestrator")

    async def close(self) -> None:
        self._cancel_timer()
        self._cancel_watchdog()
        for task in (self._pipeline, self._worker):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._worker = None
        self._pipeline = None

    # ===== Public commands =====

    async def start(self) -> CommandResult:
        return await self._dispatch("start")

    async def pause(self) -> CommandResult:
        return await self._dispatch("pause")

    async def resume(self) -> CommandResult:
        return await self._dispatch("resume")

    async def stop(self) -> CommandResult:
        return await self._dispatch("stop")

    async def process_selected(self, item_ids: Iterable[str]) -> CommandResult:
        return await self._dispatch("process_selected", item_ids=list(item_ids))

    async def mark_complete(self, item_id: str) -> CommandResult:
        return await self._dispatch("mark_complete", item_id=item_id)

    async def mark_failed(
        self,
        item_id: str,
        error: str,
        error_code: Optional[str] = None
    ) -> CommandResult:
        return await self._dispatch("mark_failed", item_id=item_id, error=error, error_code=error_code)

    async def refresh_counts(self) -> CommandResult:
        """Recount after items were added or removed outside the queue."""
        return await self._dispatch("refresh_counts")

    async def edit_item(
        self,
        item_id: str,
        text: str,
        enhanced: Optional[bool] = None,
        requeue: bool = True
    ) -> CommandResult:
        """
        Replace an item's text, keeping the previous text in original_text.

        Args:
            item_id: Item to edit
            text: New prompt text
            enhanced: New value of the enhanced flag (unchanged if None)
            requeue: Return the item to pending afterwards
        """
        return await self._dispatch("edit_item", item_id=item_id, text=text, enhanced=enhanced, requeue=requeue)

    async def delete_items(self, item_ids: Iterable[str]) -> CommandResult:
        return await self._dispatch("delete_items", item_ids=list(item_ids))

    async def duplicate_item(self, item_id: str, count: int = 1) -> CommandResult:
        return await self._dispatch("duplicate_item", item_id=item_id, count=count)

    async def status(self) -> Dict[str, Any]:
        """Queue state plus freshly recomputed counters."""
        state = await self.storage.get_queue_state()
        counts = recount(await self.storage.get_items())
        return {
            "state": state.model_dump(mode="json"),
            "counts": counts.model_dump(),
            "in_flight": self._in_flight,
            "selection": list(self._selection) if self._selection is not None else None,
        }

    # ===== Worker =====

    async def _dispatch(self, name: str, **kwargs: Any) -> Any:
        if not self.running:
            raise AutoQueueError("Queue orchestrator is not running", error_code="OrchestratorStopped")
        future = asyncio.get_running_loop().create_future()
        self._commands.put_nowait((name, kwargs, future))
        return await future

    def _post(self, name: str, **kwargs: Any) -> None:
        """Fire-and-forget command (timers, pipeline callbacks)."""
        self._commands.put_nowait((name, kwargs, None))

    async def _run(self) -> None:
        while True:
            name, kwargs, future = await self._commands.get()
            handler = getattr(self, f"_cmd_{name}")
            try:
                result = await handler(**kwargs)
            except Exception as e:
                logger.exception(f"Queue command {name} failed")
                result = CommandResult(success=False, error=str(e))
                # Posted commands have no caller to report to.
                if future is None and name != "halt" and self._active:
                    await self._halt_after_error(e)
            if future is not None and not future.done():
                future.set_result(result)

    async def _halt_after_error(self, exc: Exception) -> None:
        if isinstance(exc, AutoQueueError):
            error = exc
        else:
            error = AutoQueueError(str(exc), error_code=exc.__class__.__name__)
        try:
            await self._cmd_halt(error)
        except Exception:
            logger.exception("Could not record queue halt")

    # ===== Run-mode commands =====

    async def _cmd_start(self) -> CommandResult:
        state = await self.storage.get_queue_state()
        if self._active and state.is_running:
            return CommandResult(success=True, message="Queue already running")

        self._active = True
        self._selection = None
        await self._enter_running()
        logger.info("Queue started")
        await self._cmd_process_next()
        return CommandResult(success=True, message="Queue started")

    async def _cmd_process_selected(self, item_ids: List[str]) -> CommandResult:
        state = await self.storage.get_queue_state()
        if self._active and state.is_running:
            return CommandResult(success=False, error="Queue is already running")

        items = {item.id: item for item in await self.storage.get_items()}
        selected = [
            item_id for item_id in dict.fromkeys(item_ids)
            if item_id in items and items[item_id].status == "pending"
        ]
        if not selected:
            return CommandResult(success=False, error="No pending items among the selection")

        self._active = True
        self._selection = deque(selected)
        await self._enter_running()
        logger.info(f"Processing {len(selected)} selected items")
        await self._cmd_process_next()
        return CommandResult(
            success=True,
            message=f"Processing {len(selected)} selected items",
            data={"item_ids": selected}
        )

    async def _cmd_pause(self) -> CommandResult:
        state = await self.storage.get_queue_state()
        if not (self._active and state.is_running):
            return CommandResult(success=True, message="Queue is not running")
        if state.is_paused:
            return CommandResult(success=True, message="Queue already paused")

        self._cancel_timer()
        await self.storage.set_queue_state(is_paused=True)
        logger.info("Queue paused")
        return CommandResult(success=True, message="Queue paused")

    async def _cmd_resume(self) -> CommandResult:
        state = await self.storage.get_queue_state()
        if not (self._active and state.is_running):
            return CommandResult(success=True, message="Queue is not running")
        if not state.is_paused:
            return CommandResult(success=True, message="Queue is not paused")

        await self._sync_counts(is_paused=False)
        logger.info("Queue resumed")
        await self._cmd_process_next()
        return CommandResult(success=True, message="Queue resumed")

    async def _cmd_stop(self) -> CommandResult:
        await self._stop()
        return CommandResult(success=True, message="Queue stopped")

    async def _cmd_refresh_counts(self) -> CommandResult:
        await self._sync_counts()
        return CommandResult(success=True)

    # ===== Item selection and pipeline =====

    async def _cmd_process_next(self) -> CommandResult:
        state = await self.storage.get_queue_state()
        if not self._active or not state.is_running or state.is_paused:
            return CommandResult(success=True, message="Queue idle")

        if self._in_flight is not None:
            return CommandResult(success=True, message="Item in flight")

        if self._pipeline is not None and not self._pipeline.done():
            return CommandResult(success=True, message="Submission in progress")

        item = self._select_next(await self.storage.get_items())
        if item is None:
            if self._selection is not None:
                logger.info("Selected items exhausted, stopping queue")
                await self._stop()
            else:
                await self._handle_empty_queue()
            return CommandResult(success=True, message="Queue empty")

        self._pipeline = asyncio.create_task(
            self._run_pipeline(item.id),
            name=f"pipeline:{item.id}"
        )
        return CommandResult(success=True, message=f"Processing {item.id}")

    def _select_next(self, items: List[PromptItem]) -> Optional[PromptItem]:
        """First pending item in list order, or the next pending selected item."""
        if self._selection is None:
            return next((item for item in items if item.status == "pending"), None)

        by_id = {item.id: item for item in items}
        while self._selection:
            item = by_id.get(self._selection[0])
            if item is not None and item.status == "pending":
                return item
            self._selection.popleft()
        return None

    async def _run_pipeline(self, item_id: str) -> None:
        """
        Drive one item up to the agent's "submitted" reply.

        Runs outside the worker; every state change goes back through a
        command so the worker stays the only writer.
        """
        marked = False
        try:
            await self.supervisor.ensure_ready(self.page_id)

            response = await self.supervisor.send_with_retry(
                self.page_id,
                AgentMessage(action="check_limit", page_id=self.page_id)
            )
            if response.data.get("found"):
                message = response.data.get("message") or "Rate limit reached"
                raise RateLimited(message, context={"page_id": self.page_id})

            marked = await self._dispatch("begin_item", item_id=item_id)
            if not marked:
                return

            items = {item.id: item for item in await self.storage.get_items()}
            item = items[item_id]
            await self.supervisor.send_with_retry(
                self.page_id,
                AgentMessage(
                    action="submit",
                    page_id=self.page_id,
                    payload={"item": item.model_dump(mode="json")}
                ),
                timeout=self._submit_timeout()
            )
            logger.info(f"Item {item_id} submitted, waiting for completion")

        except asyncio.CancelledError:
            raise
        except AgentBusy as e:
            self._post("requeue_item", item_id=item_id, reason=e.message)
        except AutoQueueError as e:
            if not marked or e.halts_queue:
                self._post("halt", error=e, requeue_item_id=item_id if marked else None)
            else:
                self._post("item_failed", item_id=item_id, error=e.message, error_code=e.error_code)
        except Exception as e:
            logger.exception(f"Unexpected pipeline error for item {item_id}")
            if marked:
                self._post("item_failed", item_id=item_id, error=str(e), error_code=e.__class__.__name__)
            else:
                self._post("halt", error=AutoQueueError(str(e)), requeue_item_id=None)

    async def _cmd_begin_item(self, item_id: str) -> bool:
        """Mark the item processing if the queue still wants it."""
        state = await self.storage.get_queue_state()
        if not self._active or not state.is_running or state.is_paused:
            logger.info(f"Queue no longer running, not starting item {item_id}")
            return False

        items = await self.storage.get_items()
        busy = [item.id for item in items if item.status == "processing"]
        if busy:
            logger.error(f"Item(s) {busy} already processing, refusing to start {item_id}")
            return False

        item = next((item for item in items if item.id == item_id), None)
        if item is None or item.status != "pending":
            logger.info(f"Item {item_id} no longer pending, skipping")
            self._post("process_next")
            return False

        await self.storage.update_item(item_id, status="processing", start_time=datetime.now(), error=None)
        self._in_flight = item_id
        self._arm_watchdog(item_id)
        if self._selection and self._selection[0] == item_id:
            self._selection.popleft()

        await self._sync_counts(current_prompt_id=item_id)
        logger.info(f"Item {item_id} processing")
        return True

    # ===== Completion =====

    async def _cmd_mark_complete(self, item_id: str) -> CommandResult:
        return await self._finish_item(item_id, "completed")

    async def _cmd_mark_failed(
        self,
        item_id: str,
        error: str,
        error_code: Optional[str] = None
    ) -> CommandResult:
        return await self._finish_item(item_id, "failed", error=error, error_code=error_code)

    async def _cmd_item_failed(
        self,
        item_id: str,
        error: str,
        error_code: Optional[str] = None
    ) -> CommandResult:
        return await self._finish_item(item_id, "failed", error=error, error_code=error_code)

    async def _finish_item(
        self,
        item_id: str,
        status: str,
        error: Optional[str] = None,
        error_code: Optional[str] = None
    ) -> CommandResult:
        """
        Record an item's terminal status and advance the queue.

        Completions for items that are no longer processing are
        acknowledged no-ops. After stop the item is still updated, but the
        queue state is left alone and nothing is scheduled.
        """
        item = next((i for i in await self.storage.get_items() if i.id == item_id), None)
        if item is None:
            return CommandResult(success=False, error=f"Unknown item {item_id}")
        if item.status != "processing":
            logger.info(f"Ignoring {status} report for item {item_id} in status {item.status}")
            return CommandResult(success=True, message="Already finished")

        now = datetime.now()
        duration_ms = int((now - item.start_time).total_seconds() * 1000) if item.start_time else None
        updated = await self.storage.update_item(
            item_id,
            status=status,
            completed_time=now,
            duration_ms=duration_ms,
            error=error
        )

        if status == "completed":
            await self.storage.move_to_history([updated])
            logger.info(f"Item {item_id} completed in {(duration_ms or 0) / 1000:.1f}s")
        else:
            logger.error(f"Item {item_id} failed [{error_code}]: {error}")

        self._clear_in_flight(item_id)

        state = await self.storage.get_queue_state()
        if not self._active or not state.is_running:
            logger.info(f"Queue stopped, item {item_id} recorded without advancing")
            return CommandResult(success=True, message=f"Item {status}")

        await self._sync_counts(current_prompt_id=None)
        if not state.is_paused:
            await self._schedule_next()
        return CommandResult(success=True, message=f"Item {status}")

    async def _cmd_requeue_item(self, item_id: str, reason: str) -> CommandResult:
        """Return a marked item to pending and try again later."""
        logger.warning(f"Item {item_id} requeued: {reason}")
        await self.storage.update_item(item_id, status="pending", start_time=None)
        self._clear_in_flight(item_id)

        state = await self.storage.get_queue_state()
        if self._active and state.is_running:
            await self._sync_counts(current_prompt_id=None)
            if not state.is_paused:
                await self._schedule_next()
        return CommandResult(success=True)

    async def _cmd_halt(
        self,
        error: AutoQueueError,
        requeue_item_id: Optional[str] = None
    ) -> CommandResult:
        """Stop the whole queue on a queue-level failure."""
        if requeue_item_id is not None:
            await self.storage.update_item(requeue_item_id, status="pending", start_time=None)
            self._clear_in_flight(requeue_item_id)

        logger.error(f"Queue halted: {error}")
        await self._stop(last_error=error.message)
        return CommandResult(success=False, error=error.message)

    async def _cmd_expire_in_flight(self, item_id: str) -> CommandResult:
        """Watchdog: fail an item whose completion report never arrived."""
        if self._in_flight != item_id:
            return CommandResult(success=True, message="Already finished")

        self._watchdog = None
        timeout = self.settings.completion_watchdog
        logger.error(f"No completion reported for item {item_id} within {timeout:.0f}s")
        if self._pipeline is not None and not self._pipeline.done():
            self._pipeline.cancel()

        error = GenerationTimedOut(
            f"No completion reported within {timeout:.0f}s",
            timeout_seconds=timeout
        )
        return await self._finish_item(item_id, "failed", error=error.message, error_code=error.error_code)

    # ===== Item edits =====

    async def _cmd_edit_item(
        self,
        item_id: str,
        text: str,
        enhanced: Optional[bool] = None,
        requeue: bool = True
    ) -> CommandResult:
        item = next((i for i in await self.storage.get_items() if i.id == item_id), None)
        if item is None:
            return CommandResult(success=False, error="Prompt not found")
        if item.status == "processing":
            return CommandResult(success=False, error="Cannot edit a prompt while it is processing")
        if not text.strip():
            return CommandResult(success=False, error="Prompt text cannot be empty")

        # The editing lock keeps the queue off the item until the text is written.
        await self.storage.update_item(item_id, status="editing", original_text=item.text)

        changes: Dict[str, Any] = {"text": text}
        if enhanced is not None:
            changes["enhanced"] = enhanced
        if requeue:
            changes.update(
                status="pending",
                start_time=None,
                completed_time=None,
                duration_ms=None,
                error=None
            )
        else:
            changes["status"] = item.status
        updated = await self.storage.update_item(item_id, **changes)

        await self._sync_counts()
        logger.info(f"Item {item_id} edited ({len(item.text)} -> {len(updated.text)} chars)")
        return CommandResult(
            success=True,
            message="Prompt updated",
            data={"item": updated.model_dump(mode="json")}
        )

    async def _cmd_delete_items(self, item_ids: List[str]) -> CommandResult:
        items = {item.id: item for item in await self.storage.get_items()}
        deletable = [item_id for item_id in item_ids if item_id in items and items[item_id].status != "processing"]
        skipped = [item_id for item_id in item_ids if item_id in items and item_id not in deletable]
        if skipped:
            logger.warning(f"Not deleting processing item(s) {skipped}")

        removed = await self.storage.delete_items(deletable)
        await self._sync_counts()
        logger.info(f"Deleted {removed} items")
        return CommandResult(
            success=True,
            message=f"Deleted {removed} prompts",
            data={"deleted": removed, "skipped": skipped}
        )

    async def _cmd_duplicate_item(self, item_id: str, count: int = 1) -> CommandResult:
        item = next((i for i in await self.storage.get_items() if i.id == item_id), None)
        if item is None:
            return CommandResult(success=False, error="Prompt not found")
        if count < 1:
            return CommandResult(success=False, error="Duplicate count must be at least 1")

        copies = await self.storage.append_items(
            item.model_copy(update={
                "id": new_item_id(),
                "created_at": datetime.now(),
                "status": "pending",
                "start_time": None,
                "completed_time": None,
                "duration_ms": None,
                "error": None,
            })
            for _ in range(count)
        )
        await self._sync_counts()
        logger.info(f"Item {item_id} duplicated {count}x")
        return CommandResult(
            success=True,
            message=f"Added {count} copies",
            data={"item_ids": [copy.id for copy in copies]}
        )

    # ===== Empty queue =====

    async def _handle_empty_queue(self) -> None:
        config = await self.storage.get_config()

        if not (config.auto_generate_on_empty and config.context_prompt and self.generator.available):
            logger.info("Queue empty, stopping")
            await self._stop()
            return

        logger.info(f"Queue empty, auto-generating {config.batch_size} prompts")
        response = await self.generator.generate(GenerationRequest(
            context=config.context_prompt,
            count=config.batch_size,
            media_kind=config.media_kind,
            enhanced=config.use_enhanced
        ))

        if not response.success or not response.prompts:
            error = response.error or "no prompts returned"
            logger.error(f"Auto-generation failed: {error}")
            await self._stop(last_error=f"Auto-generation failed: {error}")
            return

        await self.storage.append_items(
            PromptItem(
                text=text,
                media_kind=config.media_kind,
                variations=config.variation_count,
                enhanced=config.use_enhanced
            )
            for text in response.prompts
        )
        await self._sync_counts()
        await self._cmd_process_next()

    # ===== Helpers =====

    async def _enter_running(self) -> None:
        await self._sync_counts(
            is_running=True,
            is_paused=False,
            queue_start_time=datetime.now(),
            current_prompt_id=self._in_flight,
            last_error=None
        )

    async def _stop(self, last_error: Optional[str] = None) -> None:
        self._cancel_timer()
        self._active = False
        self._selection = None
        await self._sync_counts(
            is_running=False,
            is_paused=False,
            current_prompt_id=None,
            queue_start_time=None,
            last_error=last_error
        )
        logger.info("Queue stopped" + (f": {last_error}" if last_error else ""))

    async def _sync_counts(self, **state: Any) -> None:
        counts = recount(await self.storage.get_items())
        await self.storage.set_queue_state(
            processed_count=counts.processed,
            total_count=counts.total,
            **state
        )

    async def _schedule_next(self) -> None:
        config = await self.storage.get_config()
        delay_ms = self._rng.randint(config.min_delay_ms, config.max_delay_ms)
        self._cancel_timer()
        self._timer = asyncio.get_running_loop().call_later(
            delay_ms / 1000.0,
            self._post,
            "process_next"
        )
        logger.info(f"Next item in {delay_ms / 1000:.1f}s")

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _arm_watchdog(self, item_id: str) -> None:
        # Survives stop(); late reports are still recorded.
        self._cancel_watchdog()
        self._watchdog = asyncio.get_running_loop().call_later(
            self.settings.completion_watchdog,
            partial(self._post, "expire_in_flight", item_id=item_id)
        )

    def _cancel_watchdog(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None

    def _clear_in_flight(self, item_id: str) -> None:
        if self._in_flight == item_id:
            self._in_flight = None
            self._cancel_watchdog()

    def _submit_timeout(self) -> float:
        """Submit replies after awaiting-start, so allow for every phase before it."""
        s = self.settings
        return (
            s.message_timeout
            + s.field_discovery_timeout
            + s.generation_start_timeout
            + s.submit_retries * s.submit_retry_interval
        )


async def recover_stale_items(storage: Storage) -> List[str]:
    """
    Startup recovery: items left processing by a previous run are reset to
    pending, and a stale running queue state is cleared.

    Returns:
        Ids of the recovered items
    """
    items = await storage.get_items()
    stale = [item.id for item in items if item.status == "processing"]

    for item_id in stale:
        await storage.update_item(item_id, status="pending", start_time=None)

    state = await storage.get_queue_state()
    if state.is_running or state.current_prompt_id is not None:
        await storage.set_queue_state(
            is_running=False,
            is_paused=False,
            current_prompt_id=None,
            queue_start_time=None
        )

    if stale:
        logger.info(f"Recovered {len(stale)} stale items to pending")
    else:
        logger.debug("No stale items found")
    return stale
