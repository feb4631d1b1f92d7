"""WorkerPool — runs queued research tasks with bounded concurrency.

Each loop turn asks the queue for as many tasks as there are free slots,
claims each one and runs the coordinator for it in its own asyncio task.

Per-task timeout:
    ``task_timeout_s`` is a hard wall-clock bound. On expiry the pool sets the
    task's CancelToken, cancels the asyncio task and hands the task back to
    ``TaskQueue.handle_timeout`` (retry or fail). Any other exception from the
    coordinator goes through ``handle_failure`` with the same retry policy.

Progress lines go to the ActivityLog so ``ferret log <task_id>`` can replay them.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence

import structlog

from ferret.config import QueueSettings
from ferret.models.plan import PriorKnowledge
from ferret.models.schemas import ResearchResult, ResearchTask
from ferret.research.activity import ActivityLog
from ferret.research.coordinator import CancelToken, ResearchCoordinator
from ferret.tasks.queue import TaskQueue

logger = structlog.get_logger().bind(component="tasks.worker")

PriorKnowledgeLookup = Callable[[ResearchTask], Awaitable[Sequence[PriorKnowledge]]]


class WorkerPool:
    """Bounded pool of concurrent research runs.

    Args:
        queue:       Source of work and sink for outcomes.
        coordinator: Runs one task to a ResearchResult.
        config:      Pool size, timeout and poll interval.
        activity:    Per-task progress log (disabled when None).
        prior_knowledge: Optional ``async (task) -> [PriorKnowledge]`` lookup
                     passed to the coordinator for each run.
    """

    def __init__(
        self,
        queue: TaskQueue,
        coordinator: ResearchCoordinator,
        config: QueueSettings | None = None,
        activity: ActivityLog | None = None,
        prior_knowledge: PriorKnowledgeLookup | None = None,
    ) -> None:
        self.queue = queue
        self.coordinator = coordinator
        self.config = config or queue.config
        self.activity = activity or ActivityLog(enabled=False)
        self._prior_knowledge = prior_knowledge
        self._running: dict[str, asyncio.Task[None]] = {}
        self._stopping = False
        self.processed = 0

    @property
    def active(self) -> int:
        return len(self._running)

    # ── Scheduling ────────────────────────────────────────────────────────

    def _prune(self) -> None:
        for task_id in [tid for tid, t in self._running.items() if t.done()]:
            del self._running[task_id]

    async def _fill(self) -> int:
        """Claim and start up to ``free_slots`` tasks. Returns how many started."""
        self._prune()
        free = self.config.max_concurrent - len(self._running)
        if free <= 0 or self._stopping:
            return 0
        started = 0
        for task in await self.queue.dequeue_batch(free):
            if not await self.queue.claim(task.id):
                continue
            token = CancelToken()
            self._running[task.id] = asyncio.create_task(
                self._execute(task, token), name=f"ferret-task-{task.id[:8]}"
            )
            started += 1
        return started

    async def _wait_any(self, timeout: float | None) -> None:
        if self._running:
            await asyncio.wait(
                list(self._running.values()),
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        self._prune()

    # ── Execution ─────────────────────────────────────────────────────────

    async def _research(self, task: ResearchTask, token: CancelToken) -> ResearchResult:
        prior: Sequence[PriorKnowledge] = ()
        if self._prior_knowledge is not None:
            prior = await self._prior_knowledge(task)
        return await self.coordinator.run(task, cancel=token, prior_knowledge=prior)

    async def _execute(self, task: ResearchTask, token: CancelToken) -> None:
        log = logger.bind(task_id=task.id)
        attempt = task.retry_count + 1
        await self.activity.log_entry(task.id, f"claimed (attempt {attempt}): {task.query[:100]}")
        log.info("task_started", query=task.query[:80], depth=task.depth, attempt=attempt)

        run = asyncio.ensure_future(self._research(task, token))
        try:
            done, _ = await asyncio.wait({run}, timeout=self.config.task_timeout_s)
        except asyncio.CancelledError:
            token.cancel("worker stopped")
            run.cancel()
            await asyncio.gather(run, return_exceptions=True)
            await self.queue.handle_failure(task.id, "worker stopped")
            raise

        self.processed += 1
        if not done:
            token.cancel("timeout")
            run.cancel()
            await asyncio.gather(run, return_exceptions=True)
            requeued = await self.queue.handle_timeout(task.id)
            await self.activity.log_entry(
                task.id,
                f"timed out after {self.config.task_timeout_s:.0f}s"
                + (" (requeued)" if requeued else " (failed)"),
            )
            return

        exc = run.exception()
        if exc is not None:
            error = f"{type(exc).__name__}: {exc}"
            log.warning("task_crashed", error=error)
            requeued = await self.queue.handle_failure(task.id, error)
            await self.activity.log_entry(
                task.id, f"error: {error[:200]}" + (" (requeued)" if requeued else " (failed)")
            )
            return

        result = run.result()
        if await self.queue.complete(task.id, result):
            await self.activity.log_entry(
                task.id,
                f"completed: {len(result.sources)} source(s), confidence {result.confidence:.2f}",
            )

    # ── Public API ────────────────────────────────────────────────────────

    async def run_until_idle(self) -> int:
        """Drain the queue, wait for in-flight tasks and return how many runs finished."""
        before = self.processed
        while not self._stopping:
            started = await self._fill()
            if not self._running and not started:
                break
            await self._wait_any(timeout=None)
        return self.processed - before

    async def run_forever(self) -> None:
        """Process tasks until ``stop()`` is called."""
        logger.info("worker_pool_started", max_concurrent=self.config.max_concurrent)
        try:
            while not self._stopping:
                started = await self._fill()
                if not self._running and not started:
                    await self.queue.wait_for_work(self.config.poll_interval_s)
                else:
                    await self._wait_any(timeout=self.config.poll_interval_s)
        finally:
            logger.info("worker_pool_stopped", processed=self.processed)

    async def stop(self) -> None:
        """Stop scheduling and cancel in-flight tasks."""
        self._stopping = True
        running = list(self._running.values())
        for t in running:
            t.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        self._prune()
