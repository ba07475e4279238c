"""
Unit tests for the queue orchestrator.

The supervisor is scripted, storage is in-memory and pacing delays are
zero unless a test is about pacing, so every scenario runs the real
command worker end to end.
"""

import asyncio
import random

import pytest
from unittest.mock import AsyncMock

from autoqueue.agent.orchestrator import QueueOrchestrator, recover_stale_items
from autoqueue.core.exceptions import (
    AgentBusy,
    AgentUnavailable,
    AutoQueueError,
    StorageError,
    SubmissionRejected,
)
from autoqueue.core.models import AgentResponse, GenerationResponse, PromptItem
from autoqueue.infrastructure.storage import MemoryStorage

from conftest import make_settings, wait_until


class FakeSupervisor:
    """Answers check_limit and submit; submit errors are consumed in order."""

    def __init__(self):
        self.ensure_ready = AsyncMock()
        self.limit = {"found": False}
        self.submit_errors = []
        self.submitted = []

    async def send_with_retry(self, page_id, message, max_attempts=None, timeout=None):
        if message.action == "check_limit":
            return AgentResponse.ok(**self.limit)

        item_id = message.payload["item"]["id"]
        self.submitted.append(item_id)
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        return AgentResponse.ok(status="submitted", item_id=item_id)


class FakeGenerator:
    def __init__(self, response=None, available=True):
        self.available = available
        self.response = response or GenerationResponse(success=True, prompts=[])
        self.requests = []

    async def generate(self, request):
        self.requests.append(request)
        return self.response


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def supervisor():
    return FakeSupervisor()


async def seed(storage, *texts, **config):
    await storage.set_config(min_delay_ms=0, max_delay_ms=0, **config)
    items = await storage.append_items(PromptItem(text=text) for text in texts)
    return [item.id for item in items]


def make_orchestrator(storage, settings, supervisor, generator=None):
    orchestrator = QueueOrchestrator(
        storage,
        supervisor,
        generator or FakeGenerator(available=False),
        settings,
        page_id=1,
        rng=random.Random(0)
    )
    orchestrator.start_worker()
    return orchestrator


async def wait_stopped(orchestrator, storage):
    """Wait for the queue to stop, then for the worker to finish that command."""
    await wait_until(lambda: not orchestrator._active)
    await orchestrator.refresh_counts()
    return await storage.get_queue_state()


async def get_item(storage, item_id):
    return next(item for item in await storage.get_items() if item.id == item_id)


# ============================================================================
# TEST: Normal run
# ============================================================================

class TestQueueRun:
    """start -> submit -> complete -> next."""

    @pytest.mark.asyncio
    async def test_start_submits_first_pending(self, storage, settings, supervisor):
        a, b = await seed(storage, "first", "second")
        orchestrator = make_orchestrator(storage, settings, supervisor)

        result = await orchestrator.start()

        assert result.success
        await wait_until(lambda: supervisor.submitted == [a])
        assert (await get_item(storage, a)).status == "processing"
        assert (await get_item(storage, b)).status == "pending"
        state = await storage.get_queue_state()
        assert state.is_running and not state.is_paused
        assert state.current_prompt_id == a
        assert state.total_count == 2
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_completion_advances_queue(self, storage, settings, supervisor):
        a, b = await seed(storage, "first", "second")
        orchestrator = make_orchestrator(storage, settings, supervisor)
        await orchestrator.start()
        await wait_until(lambda: supervisor.submitted == [a])

        result = await orchestrator.mark_complete(a)

        assert result.success
        await wait_until(lambda: supervisor.submitted == [a, b])
        done = await get_item(storage, a)
        assert done.status == "completed"
        assert done.duration_ms is not None
        assert [item.id for item in await storage.get_history()] == [a]
        assert (await storage.get_queue_state()).processed_count == 1
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_queue_stops_when_drained(self, storage, settings, supervisor):
        (a,) = await seed(storage, "only")
        orchestrator = make_orchestrator(storage, settings, supervisor)
        await orchestrator.start()
        await wait_until(lambda: supervisor.submitted == [a])

        await orchestrator.mark_complete(a)

        state = await wait_stopped(orchestrator, storage)
        assert not state.is_running
        assert state.processed_count == 1
        assert state.last_error is None
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, storage, settings, supervisor):
        a, _ = await seed(storage, "first", "second")
        orchestrator = make_orchestrator(storage, settings, supervisor)
        await orchestrator.start()
        await wait_until(lambda: supervisor.submitted == [a])

        result = await orchestrator.start()

        assert result.success
        assert result.message == "Queue already running"
        assert supervisor.submitted == [a]
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_failure_still_advances(self, storage, settings, supervisor):
        a, b = await seed(storage, "first", "second")
        orchestrator = make_orchestrator(storage, settings, supervisor)
        await orchestrator.start()
        await wait_until(lambda: supervisor.submitted == [a])

        await orchestrator.mark_failed(a, "Host page reported an error", "GenerationFailed")

        await wait_until(lambda: supervisor.submitted == [a, b])
        failed = await get_item(storage, a)
        assert failed.status == "failed"
        assert failed.error == "Host page reported an error"
        assert await storage.get_history() == []
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_duplicate_completion_is_noop(self, storage, settings, supervisor):
        a, b, _ = await seed(storage, "first", "second", "third")
        orchestrator = make_orchestrator(storage, settings, supervisor)
        await orchestrator.start()
        await wait_until(lambda: supervisor.submitted == [a])
        await orchestrator.mark_complete(a)
        await wait_until(lambda: supervisor.submitted == [a, b])

        result = await orchestrator.mark_complete(a)

        assert result.success
        assert result.message == "Already finished"
        assert supervisor.submitted == [a, b]
        assert len(await storage.get_history()) == 1
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_unknown_item(self, storage, settings, supervisor):
        orchestrator = make_orchestrator(storage, settings, supervisor)

        result = await orchestrator.mark_complete("missing")

        assert result.success is False
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_editing_item_skipped(self, storage, settings, supervisor):
        a, b = await seed(storage, "being edited", "ready")
        await storage.update_item(a, status="editing")
        orchestrator = make_orchestrator(storage, settings, supervisor)

        await orchestrator.start()

        await wait_until(lambda: supervisor.submitted == [b])
        assert (await get_item(storage, a)).status == "editing"
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_status_snapshot(self, storage, settings, supervisor):
        a, _ = await seed(storage, "first", "second")
        orchestrator = make_orchestrator(storage, settings, supervisor)
        await orchestrator.start()
        await wait_until(lambda: supervisor.submitted == [a])

        status = await orchestrator.status()

        assert status["in_flight"] == a
        assert status["counts"]["processing"] == 1
        assert status["counts"]["pending"] == 1
        assert status["state"]["is_running"] is True
        assert status["selection"] is None
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_commands_need_worker(self, storage, settings, supervisor):
        orchestrator = QueueOrchestrator(storage, supervisor, FakeGenerator(), settings, page_id=1)

        with pytest.raises(AutoQueueError):
            await orchestrator.start()


# ============================================================================
# TEST: Pause / stop
# ============================================================================

class TestPauseAndStop:
    """In-flight items finish; the queue only advances while running."""

    @pytest.mark.asyncio
    async def test_pause_holds_next_item(self, storage, settings, supervisor):
        a, b = await seed(storage, "first", "second")
        orchestrator = make_orchestrator(storage, settings, supervisor)
        await orchestrator.start()
        await wait_until(lambda: supervisor.submitted == [a])

        assert (await orchestrator.pause()).success
        await orchestrator.mark_complete(a)
        await orchestrator.refresh_counts()

        assert supervisor.submitted == [a]
        state = await storage.get_queue_state()
        assert state.is_paused
        assert state.current_prompt_id is None

        await orchestrator.resume()
        await wait_until(lambda: supervisor.submitted == [a, b])
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_pause_and_resume_idempotent(self, storage, settings, supervisor):
        await seed(storage, "first")
        orchestrator = make_orchestrator(storage, settings, supervisor)

        assert (await orchestrator.pause()).message == "Queue is not running"
        assert (await orchestrator.resume()).message == "Queue is not running"
        assert (await orchestrator.stop()).success
        assert (await orchestrator.stop()).success
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_late_completion_after_stop(self, storage, settings, supervisor):
        a, _ = await seed(storage, "first", "second")
        orchestrator = make_orchestrator(storage, settings, supervisor)
        await orchestrator.start()
        await wait_until(lambda: supervisor.submitted == [a])

        await orchestrator.stop()
        result = await orchestrator.mark_complete(a)
        await orchestrator.refresh_counts()

        assert result.success
        assert (await get_item(storage, a)).status == "completed"
        state = await storage.get_queue_state()
        assert not state.is_running
        assert state.current_prompt_id is None
        assert supervisor.submitted == [a]
        await orchestrator.close()


# ============================================================================
# TEST: Errors
# ============================================================================

class TestPipelineErrors:
    """Queue-level errors halt; item-level errors fail the item."""

    @pytest.mark.asyncio
    async def test_rate_limit_halts_without_touching_items(self, storage, settings, supervisor):
        a, b = await seed(storage, "first", "second")
        supervisor.limit = {"found": True, "message": "You've hit the rate limit"}
        orchestrator = make_orchestrator(storage, settings, supervisor)

        await orchestrator.start()

        state = await wait_stopped(orchestrator, storage)
        assert not state.is_running
        assert state.last_error == "You've hit the rate limit"
        assert supervisor.submitted == []
        assert {item.status for item in await storage.get_items()} == {"pending"}
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_unreachable_agent_halts(self, storage, settings, supervisor):
        await seed(storage, "first")
        supervisor.ensure_ready.side_effect = AgentUnavailable("Please reload the target page.")
        orchestrator = make_orchestrator(storage, settings, supervisor)

        await orchestrator.start()

        state = await wait_stopped(orchestrator, storage)
        assert state.last_error == "Please reload the target page."
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_lost_agent_during_submit_requeues_and_halts(self, storage, settings, supervisor):
        (a,) = await seed(storage, "first")
        supervisor.submit_errors = [AgentUnavailable("no reply")]
        orchestrator = make_orchestrator(storage, settings, supervisor)

        await orchestrator.start()

        await wait_stopped(orchestrator, storage)
        item = await get_item(storage, a)
        assert item.status == "pending"
        assert item.start_time is None
        assert (await storage.get_queue_state()).last_error == "no reply"
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_rejected_submission_fails_item(self, storage, settings, supervisor):
        a, b = await seed(storage, "first", "second")
        supervisor.submit_errors = [SubmissionRejected("Submit control remained disabled")]
        orchestrator = make_orchestrator(storage, settings, supervisor)

        await orchestrator.start()

        await wait_until(lambda: supervisor.submitted == [a, b])
        failed = await get_item(storage, a)
        assert failed.status == "failed"
        assert failed.error == "Submit control remained disabled"
        assert (await storage.get_queue_state()).is_running
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_busy_agent_requeues(self, storage, settings, supervisor):
        (a,) = await seed(storage, "first")
        supervisor.submit_errors = [AgentBusy("Already processing a prompt")]
        orchestrator = make_orchestrator(storage, settings, supervisor)

        await orchestrator.start()

        await wait_until(lambda: supervisor.submitted == [a, a])
        assert (await get_item(storage, a)).status == "processing"
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_failed_posted_command_halts(self, storage, settings, supervisor, monkeypatch):
        a, _ = await seed(storage, "first", "second")
        orchestrator = make_orchestrator(storage, settings, supervisor)
        await orchestrator.start()
        await wait_until(lambda: supervisor.submitted == [a])

        get_queue_state = storage.get_queue_state
        failures = [StorageError("Cannot read queue state: disk full")]

        async def flaky_get_queue_state():
            if failures:
                raise failures.pop()
            return await get_queue_state()

        monkeypatch.setattr(storage, "get_queue_state", flaky_get_queue_state)
        # What the pacing timer posts when it fires.
        orchestrator._post("process_next")

        state = await wait_stopped(orchestrator, storage)
        assert not state.is_running
        assert state.last_error == "Cannot read queue state: disk full"
        await orchestrator.close()


# ============================================================================
# TEST: Watchdog
# ============================================================================

class TestWatchdog:
    """A missing completion report cannot wedge the queue."""

    @pytest.mark.asyncio
    async def test_silent_item_failed_by_timer(self, tmp_path, storage, supervisor):
        settings = make_settings(tmp_path, network_completion_timeout=0.2, watchdog_grace=0)
        a, b = await seed(storage, "first", "second")
        orchestrator = make_orchestrator(storage, settings, supervisor)
        await orchestrator.start()
        await wait_until(lambda: supervisor.submitted == [a])

        # No report and no other command for item a.
        await wait_until(lambda: supervisor.submitted == [a, b])

        expired = await get_item(storage, a)
        assert expired.status == "failed"
        assert "No completion reported" in expired.error
        assert orchestrator._in_flight == b
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_silent_item_failed_after_stop(self, tmp_path, storage, supervisor):
        settings = make_settings(tmp_path, network_completion_timeout=0.2, watchdog_grace=0)
        a, _ = await seed(storage, "first", "second")
        orchestrator = make_orchestrator(storage, settings, supervisor)
        await orchestrator.start()
        await wait_until(lambda: supervisor.submitted == [a])

        await orchestrator.stop()

        await wait_until(lambda: orchestrator._in_flight is None)
        assert (await get_item(storage, a)).status == "failed"
        assert supervisor.submitted == [a]
        assert not (await storage.get_queue_state()).is_running
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_completion_disarms_watchdog(self, tmp_path, storage, supervisor):
        settings = make_settings(tmp_path, network_completion_timeout=0.2, watchdog_grace=0)
        (a,) = await seed(storage, "only")
        orchestrator = make_orchestrator(storage, settings, supervisor)
        await orchestrator.start()
        await wait_until(lambda: supervisor.submitted == [a])

        await orchestrator.mark_complete(a)
        await wait_stopped(orchestrator, storage)
        await asyncio.sleep(0.6)

        assert orchestrator._watchdog is None
        assert (await get_item(storage, a)).status == "completed"
        await orchestrator.close()


# ============================================================================
# TEST: Pacing
# ============================================================================

class TestPacing:
    """The next item waits a random delay in [min_delay_ms, max_delay_ms]."""

    @staticmethod
    def remaining(orchestrator):
        return orchestrator._timer.when() - asyncio.get_running_loop().time()

    @pytest.mark.asyncio
    async def test_delay_after_completion(self, storage, settings, supervisor):
        a, b = await seed(storage, "first", "second")
        await storage.set_config(min_delay_ms=200, max_delay_ms=400)
        orchestrator = make_orchestrator(storage, settings, supervisor)
        await orchestrator.start()
        await wait_until(lambda: supervisor.submitted == [a])

        await orchestrator.mark_complete(a)

        # Same seed as make_orchestrator; the first draw is this delay.
        expected = random.Random(0).randint(200, 400) / 1000
        remaining = self.remaining(orchestrator)
        assert 0.2 <= expected <= 0.4
        assert expected - 0.05 < remaining <= expected
        assert supervisor.submitted == [a]

        await wait_until(lambda: supervisor.submitted == [a, b])
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_delay_after_failure(self, storage, settings, supervisor):
        a, b = await seed(storage, "first", "second")
        await storage.set_config(min_delay_ms=250, max_delay_ms=250)
        orchestrator = make_orchestrator(storage, settings, supervisor)
        await orchestrator.start()
        await wait_until(lambda: supervisor.submitted == [a])

        await orchestrator.mark_failed(a, "Host page reported an error", "GenerationFailed")

        assert 0.2 < self.remaining(orchestrator) <= 0.25
        assert supervisor.submitted == [a]
        await wait_until(lambda: supervisor.submitted == [a, b])
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_pause_cancels_pending_timer(self, storage, settings, supervisor):
        a, b = await seed(storage, "first", "second")
        await storage.set_config(min_delay_ms=300, max_delay_ms=300)
        orchestrator = make_orchestrator(storage, settings, supervisor)
        await orchestrator.start()
        await wait_until(lambda: supervisor.submitted == [a])
        await orchestrator.mark_complete(a)
        assert orchestrator._timer is not None

        await orchestrator.pause()
        await asyncio.sleep(0.5)

        assert orchestrator._timer is None
        assert supervisor.submitted == [a]
        assert (await get_item(storage, b)).status == "pending"

        await orchestrator.resume()
        await wait_until(lambda: supervisor.submitted == [a, b])
        await orchestrator.close()


# ============================================================================
# TEST: Item edits
# ============================================================================

class TestItemEdits:
    """Edit, delete and duplicate go through the worker like every other write."""

    @pytest.mark.asyncio
    async def test_edit_holds_editing_lock_then_requeues(self, storage, settings, supervisor, monkeypatch):
        (a,) = await seed(storage, "a fox")
        await storage.update_item(a, status="failed", error="Generation timed out", duration_ms=5)
        statuses = []
        update_item = storage.update_item

        async def recording_update_item(item_id, **partial):
            statuses.append(partial.get("status"))
            return await update_item(item_id, **partial)

        monkeypatch.setattr(storage, "update_item", recording_update_item)
        orchestrator = make_orchestrator(storage, settings, supervisor)

        result = await orchestrator.edit_item(a, "a fox in fresh snow")

        assert result.success
        assert statuses == ["editing", "pending"]
        item = await get_item(storage, a)
        assert item.text == "a fox in fresh snow"
        assert item.original_text == "a fox"
        assert item.status == "pending"
        assert item.error is None
        assert item.duration_ms is None
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_edit_refused_while_processing(self, storage, settings, supervisor):
        a, _ = await seed(storage, "first", "second")
        orchestrator = make_orchestrator(storage, settings, supervisor)
        await orchestrator.start()
        await wait_until(lambda: supervisor.submitted == [a])

        result = await orchestrator.edit_item(a, "changed")

        assert result.success is False
        assert result.error == "Cannot edit a prompt while it is processing"
        item = await get_item(storage, a)
        assert item.text == "first"
        assert item.status == "processing"
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_edit_rejects_blank_text(self, storage, settings, supervisor):
        (a,) = await seed(storage, "first")
        orchestrator = make_orchestrator(storage, settings, supervisor)

        result = await orchestrator.edit_item(a, "   ")

        assert result.success is False
        assert (await get_item(storage, a)).status == "pending"
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_edit_without_requeue_keeps_status(self, storage, settings, supervisor):
        (a,) = await seed(storage, "a boat")
        await storage.update_item(a, status="completed")
        orchestrator = make_orchestrator(storage, settings, supervisor)

        result = await orchestrator.edit_item(a, "a boat at golden hour", enhanced=True, requeue=False)

        assert result.success
        item = await get_item(storage, a)
        assert item.status == "completed"
        assert item.enhanced is True
        assert item.original_text == "a boat"
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_edit_unknown_item(self, storage, settings, supervisor):
        orchestrator = make_orchestrator(storage, settings, supervisor)

        result = await orchestrator.edit_item("missing", "text")

        assert result.error == "Prompt not found"
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_delete_skips_processing_item(self, storage, settings, supervisor):
        a, b, c = await seed(storage, "first", "second", "third")
        orchestrator = make_orchestrator(storage, settings, supervisor)
        await orchestrator.start()
        await wait_until(lambda: supervisor.submitted == [a])

        result = await orchestrator.delete_items([a, b, "missing"])

        assert result.data == {"deleted": 1, "skipped": [a]}
        assert [item.id for item in await storage.get_items()] == [a, c]
        assert (await storage.get_queue_state()).total_count == 2
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_duplicate(self, storage, settings, supervisor):
        a, b = await seed(storage, "first", "second")
        await storage.update_item(a, status="failed", error="boom", aspect_ratio="16:9")
        orchestrator = make_orchestrator(storage, settings, supervisor)

        result = await orchestrator.duplicate_item(a, count=2)

        assert result.success
        items = await storage.get_items()
        assert [item.id for item in items[:2]] == [a, b]
        copies = items[2:]
        assert [copy.id for copy in copies] == result.data["item_ids"]
        assert len({copy.id for copy in copies} | {a}) == 3
        for copy in copies:
            assert copy.text == "first"
            assert copy.aspect_ratio == "16:9"
            assert copy.status == "pending"
            assert copy.error is None
        assert (await storage.get_queue_state()).total_count == 4
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_duplicate_unknown_item(self, storage, settings, supervisor):
        orchestrator = make_orchestrator(storage, settings, supervisor)

        assert (await orchestrator.duplicate_item("missing")).error == "Prompt not found"
        await orchestrator.close()


# ============================================================================
# TEST: Selected items
# ============================================================================

class TestProcessSelected:
    """Only the chosen pending items, in the chosen order."""

    @pytest.mark.asyncio
    async def test_runs_selection_then_stops(self, storage, settings, supervisor):
        a, b, c = await seed(storage, "a", "b", "c")
        orchestrator = make_orchestrator(storage, settings, supervisor)

        result = await orchestrator.process_selected([c, a, "missing", c])

        assert result.data == {"item_ids": [c, a]}
        await wait_until(lambda: supervisor.submitted == [c])
        await orchestrator.mark_complete(c)
        await wait_until(lambda: supervisor.submitted == [c, a])
        await orchestrator.mark_complete(a)

        await wait_stopped(orchestrator, storage)
        assert (await get_item(storage, b)).status == "pending"
        assert supervisor.submitted == [c, a]
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_rejected_while_running(self, storage, settings, supervisor):
        a, b = await seed(storage, "a", "b")
        orchestrator = make_orchestrator(storage, settings, supervisor)
        await orchestrator.start()

        result = await orchestrator.process_selected([b])

        assert result.success is False
        assert result.error == "Queue is already running"
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_nothing_pending_selected(self, storage, settings, supervisor):
        await seed(storage, "a")
        orchestrator = make_orchestrator(storage, settings, supervisor)

        result = await orchestrator.process_selected(["nope"])

        assert result.success is False
        assert not (await storage.get_queue_state()).is_running
        await orchestrator.close()


# ============================================================================
# TEST: Empty queue
# ============================================================================

class TestEmptyQueue:
    """Auto-generation refills the queue when configured."""

    @pytest.mark.asyncio
    async def test_auto_generates_and_continues(self, storage, settings, supervisor):
        await seed(
            storage,
            auto_generate_on_empty=True,
            context_prompt="lighthouses",
            batch_size=2,
            media_kind="image",
            variation_count=2
        )
        generator = FakeGenerator(GenerationResponse(success=True, prompts=["storm", "dawn"]))
        orchestrator = make_orchestrator(storage, settings, supervisor, generator)

        await orchestrator.start()

        await wait_until(lambda: len(supervisor.submitted) == 1)
        items = await storage.get_items()
        assert [item.text for item in items] == ["storm", "dawn"]
        assert items[0].media_kind == "image"
        assert items[0].variations == 2
        assert supervisor.submitted == [items[0].id]
        request = generator.requests[0]
        assert request.context == "lighthouses"
        assert request.count == 2
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_failed_generation_stops_with_error(self, storage, settings, supervisor):
        await seed(storage, auto_generate_on_empty=True, context_prompt="lighthouses")
        generator = FakeGenerator(GenerationResponse(success=False, error="quota exceeded"))
        orchestrator = make_orchestrator(storage, settings, supervisor, generator)

        await orchestrator.start()

        state = await storage.get_queue_state()
        assert not state.is_running
        assert state.last_error == "Auto-generation failed: quota exceeded"
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_no_context_just_stops(self, storage, settings, supervisor):
        await seed(storage, auto_generate_on_empty=True)
        generator = FakeGenerator()
        orchestrator = make_orchestrator(storage, settings, supervisor, generator)

        await orchestrator.start()

        assert generator.requests == []
        assert not (await storage.get_queue_state()).is_running
        await orchestrator.close()


# ============================================================================
# TEST: Startup recovery
# ============================================================================

class TestRecovery:
    """Items stranded in processing by a crash go back to pending."""

    @pytest.mark.asyncio
    async def test_recover_stale_items(self, storage):
        a, b = await seed(storage, "a", "b")
        await storage.update_item(a, status="processing")
        await storage.set_queue_state(is_running=True, current_prompt_id=a)

        recovered = await recover_stale_items(storage)

        assert recovered == [a]
        assert (await get_item(storage, a)).status == "pending"
        state = await storage.get_queue_state()
        assert not state.is_running
        assert state.current_prompt_id is None

    @pytest.mark.asyncio
    async def test_nothing_to_recover(self, storage):
        await seed(storage, "a")
        assert await recover_stale_items(storage) == []
