from __future__ import annotations

import asyncio
import re

import pytest

from agentdeck.engine.process_state import ProcessPhase, ProcessState
from agentdeck.engine.prompt_queue import PromptQueue, new_prompt_id
from agentdeck.engine.scheduler import TaskScheduler

RUNNING = ProcessState(phase=ProcessPhase.RUNNING, has_active_session=True)
IDLE = ProcessState()
PENDING = ProcessState(phase=ProcessPhase.PENDING_SEND, has_active_session=True)


class Harness:
    def __init__(self, running: bool = False) -> None:
        self.running = running
        self.fail_check = False
        self.dispatched = []
        self.checks = 0

    async def is_running(self) -> bool:
        self.checks += 1
        if self.fail_check:
            raise ConnectionError("no backend")
        return self.running

    async def dispatch(self, item) -> None:
        self.dispatched.append(item.prompt)


def _queue(harness: Harness, scheduler: TaskScheduler) -> PromptQueue:
    return PromptQueue(scheduler, harness.is_running, harness.dispatch, settle_delay=0.01)


def test_prompt_ids_have_timestamp_and_base36_suffix() -> None:
    prompt_id = new_prompt_id()
    assert re.fullmatch(r"\d{13}-[0-9a-z]{9}", prompt_id)
    assert new_prompt_id() != prompt_id


def test_add_remove_and_clear_are_synchronous() -> None:
    queue = PromptQueue(TaskScheduler(), Harness().is_running, Harness().dispatch)
    seen = []
    queue.add_listener(lambda items: seen.append(len(items)))

    first = queue.add_to_queue("one", "sonnet")
    queue.add_to_queue("two", "opus")
    assert queue.remove_from_queue(first.id) is True
    assert queue.remove_from_queue("missing") is False
    assert [p.prompt for p in queue.items] == ["two"]
    queue.clear_queue()

    assert queue.items == ()
    assert seen == [1, 2, 1, 0]


@pytest.mark.asyncio
async def test_drains_one_prompt_on_loading_to_idle_edge() -> None:
    scheduler = TaskScheduler()
    harness = Harness(running=False)
    queue = _queue(harness, scheduler)
    queue.add_to_queue("next", "sonnet")

    queue.on_process_state(RUNNING, IDLE)
    await asyncio.sleep(0.05)

    assert harness.dispatched == ["next"]
    assert len(queue) == 0
    assert not queue.is_draining
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_no_drain_without_an_edge_or_while_pending() -> None:
    scheduler = TaskScheduler()
    harness = Harness()
    queue = _queue(harness, scheduler)
    queue.add_to_queue("waiting", "sonnet")

    queue.on_process_state(IDLE, IDLE)
    queue.on_process_state(IDLE, RUNNING)
    queue.on_process_state(RUNNING, PENDING)
    await asyncio.sleep(0.03)

    assert harness.checks == 0
    assert harness.dispatched == []
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_backend_still_running_keeps_prompt_queued() -> None:
    scheduler = TaskScheduler()
    harness = Harness(running=True)
    queue = _queue(harness, scheduler)
    queue.add_to_queue("later", "sonnet")

    queue.on_process_state(RUNNING, IDLE)
    await asyncio.sleep(0.03)

    assert harness.checks == 1
    assert harness.dispatched == []
    assert len(queue) == 1
    assert not queue.is_draining
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_failed_liveness_check_releases_guard(caplog) -> None:
    scheduler = TaskScheduler()
    harness = Harness()
    harness.fail_check = True
    queue = _queue(harness, scheduler)
    queue.add_to_queue("later", "sonnet")

    queue.on_process_state(RUNNING, IDLE)
    await asyncio.sleep(0.03)

    assert len(queue) == 1
    assert not queue.is_draining
    assert "queue drain failed" in caplog.text
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_reentrant_edges_dispatch_once() -> None:
    scheduler = TaskScheduler()
    harness = Harness()
    queue = _queue(harness, scheduler)
    queue.add_to_queue("a", "sonnet")
    queue.add_to_queue("b", "sonnet")

    queue.on_process_state(RUNNING, IDLE)
    queue.on_process_state(RUNNING, IDLE)
    await asyncio.sleep(0.05)

    assert harness.dispatched == ["a"]
    assert [p.prompt for p in queue.items] == ["b"]
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_fifo_across_successive_idle_edges() -> None:
    scheduler = TaskScheduler()
    harness = Harness()
    queue = _queue(harness, scheduler)
    for prompt in ("first", "second", "third"):
        queue.add_to_queue(prompt, "sonnet")

    for _ in range(3):
        queue.on_process_state(RUNNING, IDLE)
        await asyncio.sleep(0.04)

    assert harness.dispatched == ["first", "second", "third"]
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_failing_dispatch_is_logged_and_guard_cleared(caplog) -> None:
    scheduler = TaskScheduler()

    async def broken(_item):
        raise RuntimeError("submit exploded")

    queue = PromptQueue(scheduler, Harness().is_running, broken, settle_delay=0)
    queue.add_to_queue("x", "sonnet")

    queue.on_process_state(RUNNING, IDLE)
    await asyncio.sleep(0.03)

    assert not queue.is_draining
    assert "Dispatch of queued prompt" in caplog.text
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_keeps_draining_when_dispatch_leaves_process_idle() -> None:
    scheduler = TaskScheduler()
    harness = Harness()
    dispatched = []

    async def failing(item):
        dispatched.append(item.prompt)
        raise RuntimeError("submit rejected")

    queue = PromptQueue(
        scheduler, harness.is_running, failing, settle_delay=0.01, state=lambda: IDLE,
    )
    for prompt in ("one", "two", "three"):
        queue.add_to_queue(prompt, "sonnet")

    queue.on_process_state(RUNNING, IDLE)
    await asyncio.sleep(0.15)

    assert dispatched == ["one", "two", "three"]
    assert len(queue) == 0
    assert not queue.is_draining
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_waits_for_next_edge_when_dispatch_leaves_process_running() -> None:
    scheduler = TaskScheduler()
    harness = Harness()
    queue = PromptQueue(
        scheduler, harness.is_running, harness.dispatch, settle_delay=0.01, state=lambda: RUNNING,
    )
    queue.add_to_queue("a", "sonnet")
    queue.add_to_queue("b", "sonnet")

    queue.on_process_state(RUNNING, IDLE)
    await asyncio.sleep(0.08)

    assert harness.dispatched == ["a"]
    assert [p.prompt for p in queue.items] == ["b"]
    await scheduler.aclose()
