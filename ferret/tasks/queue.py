"""TaskQueue — durable, prioritised research queue on top of KnowledgeStore.

Lifecycle::

    queued ──claim──▶ running ──complete──▶ completed ──mark_injected──▶ injected
       ▲                 │
       └──── retry ──────┤
                         └──retries exhausted──▶ failed

Every transition is a conditional UPDATE in the store, so a write from the
wrong state changes nothing. The queue logs such writes as invalid
transitions and returns False instead of raising.
"""

from __future__ import annotations

import asyncio

import structlog

from ferret.config import QueueSettings
from ferret.errors import InvalidTransitionError, QueueFullError, TaskTimeoutError
from ferret.models.schemas import QueueStats, ResearchResult, ResearchTask, TaskSpec
from ferret.research.store import KnowledgeStore

logger = structlog.get_logger().bind(component="tasks.queue")


class TaskQueue:
    """Priority queue of research tasks.

    Args:
        store:  Persistence for tasks and their results.
        config: Capacity and retry policy; defaults to ``QueueSettings()``.
    """

    def __init__(self, store: KnowledgeStore, config: QueueSettings | None = None) -> None:
        self.store = store
        self.config = config or QueueSettings()
        self._work = asyncio.Event()

    async def _reject(self, task_id: str, target: str) -> None:
        task = await self.store.get_task(task_id)
        err = InvalidTransitionError(task_id, task.status if task else None, target)
        logger.warning("invalid_transition", task_id=task_id, error=str(err))

    # ── Producer side ─────────────────────────────────────────────────────

    async def enqueue(self, spec: TaskSpec) -> str:
        """Persist a new queued task and return its id.

        Raises:
            QueueFullError: ``max_queue_size`` tasks are already queued.
        """
        task = ResearchTask(**spec.model_dump())
        try:
            await self.store.insert_task(task, max_queued=self.config.max_queue_size)
        except QueueFullError as exc:
            logger.warning("queue_full", query=spec.query[:80], size=exc.size, limit=exc.limit)
            raise
        self._work.set()
        logger.info(
            "task_enqueued",
            task_id=task.id,
            query=task.query[:80],
            depth=task.depth,
            priority=task.priority,
            trigger=task.trigger,
        )
        return task.id

    # ── Consumer side ─────────────────────────────────────────────────────

    async def dequeue_batch(self, n: int) -> list[ResearchTask]:
        """Up to *n* queued tasks, highest priority first, oldest first within a priority."""
        if n <= 0:
            return []
        return await self.store.queued_tasks(n)

    async def claim(self, task_id: str) -> bool:
        claimed = await self.store.claim_task(task_id)
        if claimed:
            logger.debug("task_claimed", task_id=task_id)
        return claimed

    async def wait_for_work(self, timeout: float | None = None) -> bool:
        """Block until something is enqueued or *timeout* elapses. True on a wake-up."""
        try:
            await asyncio.wait_for(self._work.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        finally:
            self._work.clear()
        return True

    # ── Outcomes ──────────────────────────────────────────────────────────

    async def complete(self, task_id: str, result: ResearchResult) -> bool:
        if not await self.store.complete_task(task_id, result):
            await self._reject(task_id, "completed")
            return False
        logger.info(
            "task_completed",
            task_id=task_id,
            sources=len(result.sources),
            confidence=round(result.confidence, 3),
        )
        return True

    async def handle_timeout(self, task_id: str) -> bool:
        """Retry a timed-out task or fail it. Returns True when it was requeued."""
        error = TaskTimeoutError(task_id, self.config.task_timeout_s)
        return await self._retry_or_fail(task_id, str(error))

    async def handle_failure(self, task_id: str, error: str) -> bool:
        """Retry a crashed task or fail it. Returns True when it was requeued."""
        return await self._retry_or_fail(task_id, error)

    async def _retry_or_fail(self, task_id: str, error: str) -> bool:
        task = await self.store.get_task(task_id)
        if task is None or task.status != "running":
            await self._reject(task_id, "queued|failed")
            return False

        if task.retry_count < self.config.retry_attempts:
            if await self.store.requeue_task(task_id, error):
                self._work.set()
                logger.warning(
                    "task_retry",
                    task_id=task_id,
                    attempt=task.retry_count + 1,
                    max_attempts=self.config.retry_attempts,
                    error=error,
                )
                return True
            await self._reject(task_id, "queued")
            return False

        if await self.store.fail_task(task_id, error):
            logger.error("task_failed", task_id=task_id, retries=task.retry_count, error=error)
        else:
            await self._reject(task_id, "failed")
        return False

    async def mark_injected(self, task_id: str) -> bool:
        if not await self.store.mark_injected(task_id):
            await self._reject(task_id, "injected")
            return False
        return True

    # ── Reads ─────────────────────────────────────────────────────────────

    async def get(self, task_id: str) -> ResearchTask | None:
        return await self.store.get_task(task_id)

    async def recent(self, limit: int = 20) -> list[ResearchTask]:
        return await self.store.recent_tasks(limit)

    async def stats(self) -> QueueStats:
        return await self.store.stats()
