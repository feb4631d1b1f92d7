"""Unit tests for WorkerPool — drain, timeout/retry, crashes, concurrency bound."""

from __future__ import annotations

import asyncio

import pytest

from ferret.config import QueueSettings
from ferret.models.schemas import TaskSpec
from ferret.research.activity import ActivityLog
from ferret.research.coordinator import ResearchCoordinator
from ferret.tasks import TaskQueue, WorkerPool


class StubCoordinator:
    """Records each run; optionally hangs, fails, or sleeps."""

    def __init__(self, result, *, delay: float = 0.0, raises: Exception | None = None) -> None:
        self.result = result
        self.delay = delay
        self.raises = raises
        self.runs: list[str] = []
        self.tokens = []
        self.active = 0
        self.max_active = 0

    async def run(self, task, *, cancel=None, prior_knowledge=(), project_context=None):
        self.runs.append(task.query)
        self.tokens.append(cancel)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.raises:
                raise self.raises
            return self.result
        finally:
            self.active -= 1


class RecordingActivity(ActivityLog):
    def __init__(self) -> None:
        super().__init__(enabled=False)
        self.lines: list[tuple[str, str]] = []

    async def log_entry(self, task_id: str, message: str) -> None:
        self.lines.append((task_id, message))


def _queue(store, **overrides) -> TaskQueue:
    return TaskQueue(store, QueueSettings(**overrides))


# ─────────────────────────────────────────────────────────────────────────────
# 1. Happy path
# ─────────────────────────────────────────────────────────────────────────────

async def test_run_until_idle_completes_everything(store, fake_generator, registry):
    queue = _queue(store)
    ids = [await queue.enqueue(TaskSpec(query=f"what is rate limiting {i}", depth="quick")) for i in range(3)]
    pool = WorkerPool(queue, ResearchCoordinator(fake_generator, registry))

    assert await pool.run_until_idle() == 3
    for task_id in ids:
        task = await queue.get(task_id)
        assert task.status == "completed"
        assert task.result.summary


async def test_runs_respect_priority_with_one_slot(store, make_result):
    queue = _queue(store, max_concurrent=1)
    for priority in (3, 9, 5):
        await queue.enqueue(TaskSpec(query=f"p{priority}", priority=priority))
    coordinator = StubCoordinator(make_result())
    await WorkerPool(queue, coordinator).run_until_idle()
    assert coordinator.runs == ["p9", "p5", "p3"]


async def test_concurrency_is_bounded(store, make_result):
    queue = _queue(store, max_concurrent=2)
    for i in range(5):
        await queue.enqueue(TaskSpec(query=f"q{i}"))
    coordinator = StubCoordinator(make_result(), delay=0.02)
    await WorkerPool(queue, coordinator).run_until_idle()
    assert coordinator.max_active == 2
    assert (await queue.stats()).completed == 5


async def test_activity_lines_are_written(store, make_result):
    queue = _queue(store)
    task_id = await queue.enqueue(TaskSpec(query="q"))
    activity = RecordingActivity()
    await WorkerPool(queue, StubCoordinator(make_result()), activity=activity).run_until_idle()
    messages = [m for tid, m in activity.lines if tid == task_id]
    assert messages[0].startswith("claimed (attempt 1)")
    assert messages[-1].startswith("completed")


async def test_prior_knowledge_lookup_is_used(store, make_result):
    queue = _queue(store)
    await queue.enqueue(TaskSpec(query="q"))
    seen = []

    async def lookup(task):
        seen.append(task.query)
        return []

    await WorkerPool(queue, StubCoordinator(make_result()), prior_knowledge=lookup).run_until_idle()
    assert seen == ["q"]


# ─────────────────────────────────────────────────────────────────────────────
# 2. Timeouts and failures
# ─────────────────────────────────────────────────────────────────────────────

async def test_timeout_is_retried_exactly_twice_then_failed(store, make_result):
    queue = _queue(store, task_timeout_s=0.05, retry_attempts=2)
    task_id = await queue.enqueue(TaskSpec(query="slow"))
    coordinator = StubCoordinator(make_result(), delay=10)

    await WorkerPool(queue, coordinator).run_until_idle()

    task = await queue.get(task_id)
    assert task.status == "failed"
    assert task.retry_count == 2
    assert len(coordinator.runs) == 3
    assert all(token.cancelled for token in coordinator.tokens)
    assert task.result is None


async def test_crash_goes_through_retry_policy(store, make_result):
    queue = _queue(store, retry_attempts=1)
    task_id = await queue.enqueue(TaskSpec(query="boom"))
    coordinator = StubCoordinator(make_result(), raises=RuntimeError("specialist exploded"))

    await WorkerPool(queue, coordinator).run_until_idle()

    task = await queue.get(task_id)
    assert task.status == "failed"
    assert len(coordinator.runs) == 2
    assert "RuntimeError" in task.error


# ─────────────────────────────────────────────────────────────────────────────
# 3. Long-running loop
# ─────────────────────────────────────────────────────────────────────────────

async def test_run_forever_picks_up_new_work_and_stops(store, make_result):
    queue = _queue(store, poll_interval_s=0.01)
    pool = WorkerPool(queue, StubCoordinator(make_result()))
    runner = asyncio.create_task(pool.run_forever())

    task_id = await queue.enqueue(TaskSpec(query="late arrival"))
    for _ in range(200):
        if (await queue.get(task_id)).status == "completed":
            break
        await asyncio.sleep(0.01)

    await pool.stop()
    await asyncio.wait_for(runner, timeout=1)
    assert (await queue.get(task_id)).status == "completed"


async def test_stop_cancels_in_flight_tasks(store, make_result):
    queue = _queue(store, retry_attempts=0, poll_interval_s=0.01)
    task_id = await queue.enqueue(TaskSpec(query="hang"))
    coordinator = StubCoordinator(make_result(), delay=10)
    pool = WorkerPool(queue, coordinator)
    runner = asyncio.create_task(pool.run_forever())

    for _ in range(200):
        if coordinator.runs:
            break
        await asyncio.sleep(0.01)
    await pool.stop()
    await asyncio.wait_for(runner, timeout=1)

    task = await queue.get(task_id)
    assert task.status == "failed"
    assert task.error == "worker stopped"
    assert pool.active == 0


@pytest.mark.parametrize("slots", [1, 3])
async def test_run_until_idle_on_empty_queue(store, slots):
    pool = WorkerPool(_queue(store, max_concurrent=slots), StubCoordinator(None))
    assert await pool.run_until_idle() == 0
