"""ResearchService — the surface a hosting application talks to.

Wires detector → queue → worker pool → store → injection manager and exposes
the session hooks:

    start_session(id, project)       register / refresh a session
    on_user_prompt(id, prompt)       detect + maybe enqueue research
    on_tool_output(id, tool, output) detect + maybe enqueue research
    pending_injection(id)            pull finished research for the session
    get_injection(id, query)         unified memory + research injection
    end_session(id)                  drop session state

Hooks never raise: a full queue or an upstream hiccup is logged and the
hook returns None so the host keeps going.
"""

from __future__ import annotations

import random
from typing import Any

import structlog

from ferret.config import FerretSettings
from ferret.errors import QueueFullError
from ferret.injection.manager import InjectionManager
from ferret.models.knowledge import Injection
from ferret.models.plan import PriorKnowledge
from ferret.models.schemas import (
    Depth,
    DetectedTrigger,
    MemoryObservation,
    ObservationType,
    QueueStats,
    ResearchTask,
    Session,
    TaskSpec,
    TriggerSource,
)
from ferret.research.activity import ActivityLog
from ferret.research.coordinator import ResearchCoordinator
from ferret.research.scorer import KnowledgeScorer
from ferret.research.specialists import SpecialistRegistry, default_registry
from ferret.research.store import KnowledgeStore
from ferret.tasks.queue import TaskQueue
from ferret.tasks.worker import WorkerPool
from ferret.tools.generator import ChatCompletionsGenerator, TextGenerator
from ferret.triggers.detector import TriggerDetector, clean_query
from ferret.utils.clock import now_utc

logger = structlog.get_logger().bind(component="service")

# Research on the same query within this window is reused, not repeated
RESEARCHED_WITHIN_DAYS = 1.0
PRIOR_KNOWLEDGE_LIMIT = 3


class ResearchService:
    """One Ferret instance: storage, queue, workers and injection for many sessions.

    Args:
        config:      Full settings tree (tests build isolated instances).
        store:       Defaults to a KnowledgeStore at ``config.db_path``.
        generator:   Defaults to a ChatCompletionsGenerator from ``config.generator``.
        specialists: Defaults to the keyless Wikipedia + Hacker News registry.
        activity:    Defaults to a Redis ActivityLog at ``config.redis_url``.
        rng:         Random source for the detector's speculative rule.
    """

    def __init__(
        self,
        config: FerretSettings | None = None,
        *,
        store: KnowledgeStore | None = None,
        generator: TextGenerator | None = None,
        specialists: SpecialistRegistry | None = None,
        activity: ActivityLog | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or FerretSettings()
        cfg = self.config

        if store is None:
            cfg.data_dir.mkdir(parents=True, exist_ok=True)
            store = KnowledgeStore(cfg.db_path)
        self.store = store
        self.generator = generator if generator is not None else ChatCompletionsGenerator(
            base_url=cfg.generator.base_url,
            model=cfg.generator.model,
            api_key=cfg.generator.api_key,
            timeout=cfg.generator.timeout_s,
        )
        self.specialists = specialists or default_registry()
        self.activity = activity or ActivityLog(cfg.redis_url)

        self.detector = TriggerDetector(
            rng=rng,
            speculative_probability=cfg.speculative_probability,
            min_confidence=cfg.min_trigger_confidence,
        )
        self.queue = TaskQueue(self.store, cfg.queue)
        self.coordinator = ResearchCoordinator(
            self.generator,
            self.specialists,
            config=cfg.coordinator,
            generation=cfg.generator,
            on_event=self.activity.log_entry,
        )
        self.scorer = KnowledgeScorer(
            weights=cfg.knowledge.weight_preset,
            recency_decay_days=cfg.knowledge.recency_decay_days,
            min_relevance=cfg.injection.min_relevance,
            store=self.store,
        )
        self.injections = InjectionManager(self.store, self.scorer, cfg.injection)
        self._pool: WorkerPool | None = None

    # ── Sessions ──────────────────────────────────────────────────────────

    async def start_session(self, session_id: str, project_path: str | None = None) -> Session:
        session = await self.store.touch_session(session_id, project_path)
        logger.info("session_started", session_id=session_id, project=project_path)
        return session

    async def end_session(self, session_id: str) -> bool:
        self.detector.forget_session(session_id)
        self.injections.forget_session(session_id)
        ended = await self.store.end_session(session_id)
        logger.info("session_ended", session_id=session_id, existed=ended)
        return ended

    async def active_sessions(self, within_s: float = 3600) -> list[Session]:
        return await self.store.active_sessions(within_s)

    # ── Research requests ─────────────────────────────────────────────────

    async def request_research(
        self,
        query: str,
        depth: Depth | None = None,
        priority: int = 5,
        session_id: str | None = None,
        *,
        context: str | None = None,
        trigger: TriggerSource = "manual",
        project_path: str | None = None,
        force: bool = False,
    ) -> str:
        """Enqueue research and return the task id.

        A completed task for the same query from the last day is reused
        unless ``force`` is set.
        Without *depth* the configured ``default_depth`` is used.

        Raises:
            QueueFullError: the queue is at capacity.
        """
        depth = depth or self.config.default_depth
        query = clean_query(query) or query.strip()
        if not force:
            existing = await self.store.find_researched(query, max_age_days=RESEARCHED_WITHIN_DAYS)
            if existing is not None:
                logger.info("research_reused", task_id=existing.id, query=query[:80])
                return existing.id
        spec = TaskSpec(
            query=query,
            context=context,
            depth=depth,
            trigger=trigger,
            session_id=session_id,
            project_path=project_path,
            priority=priority,
        )
        return await self.queue.enqueue(spec)

    async def _enqueue_trigger(
        self,
        trigger: DetectedTrigger,
        session: Session,
        source: TriggerSource,
        context: str | None,
    ) -> str | None:
        if not self.detector.should_enqueue(trigger) or not trigger.query:
            return None
        try:
            return await self.request_research(
                trigger.query,
                depth=trigger.depth,
                priority=trigger.priority,
                session_id=session.id,
                context=context,
                trigger=source,
                project_path=session.project_path,
            )
        except QueueFullError as exc:
            logger.warning("trigger_dropped", session_id=session.id, query=trigger.query[:80], error=str(exc))
            return None

    async def on_user_prompt(
        self, session_id: str, prompt: str, project_path: str | None = None
    ) -> str | None:
        """Analyse a user prompt; returns the enqueued task id, if any."""
        session = await self.store.touch_session(session_id, project_path)
        trigger = self.detector.analyze_prompt(prompt, session_id=session_id)
        logger.debug(
            "prompt_analyzed",
            session_id=session_id,
            should_research=trigger.should_research,
            confidence=trigger.confidence,
            reason=trigger.reason,
        )
        return await self._enqueue_trigger(trigger, session, "user_prompt", prompt[:500])

    async def on_tool_output(
        self,
        session_id: str,
        tool_name: str,
        output: str,
        *,
        file_path: str | None = None,
    ) -> str | None:
        """Analyse a tool's output; returns the enqueued task id, if any."""
        session = await self.store.touch_session(session_id)
        trigger = self.detector.analyze_tool_output(
            tool_name, output, session_id=session_id, file_path=file_path
        )
        return await self._enqueue_trigger(trigger, session, "tool_output", None)

    # ── Injection ─────────────────────────────────────────────────────────

    async def pending_injection(
        self, session_id: str, context: str | None = None
    ) -> dict[str, str] | None:
        content = await self.injections.pull_pending(session_id, context)
        return {"content": content} if content else None

    async def get_injection(
        self,
        session_id: str,
        query: str,
        *,
        context: str | None = None,
        project: str | None = None,
    ) -> Injection | None:
        return await self.injections.get_injection(session_id, query, context=context, project=project)

    # ── Memory ────────────────────────────────────────────────────────────

    async def remember(
        self,
        title: str,
        summary: str,
        *,
        type: ObservationType = "discovery",
        project: str | None = None,
        session_id: str | None = None,
        facts: list[str] | None = None,
        files: list[str] | None = None,
        details: str | None = None,
    ) -> str:
        obs = MemoryObservation(
            title=title,
            summary=summary,
            type=type,
            project=project,
            session_id=session_id,
            facts=facts or [],
            files=files or [],
            details=details,
        )
        obs_id = await self.store.add_observation(obs)
        logger.info("memory_recorded", id=obs_id, type=type, project=project)
        return obs_id

    async def prior_knowledge(self, task: ResearchTask) -> list[PriorKnowledge]:
        """Earlier results on related queries, handed to the planner."""
        now = now_utc()
        related = await self.store.search_tasks(task.query, PRIOR_KNOWLEDGE_LIMIT + 1, match_any=True)
        return [
            PriorKnowledge(
                query=t.query,
                summary=t.result.summary,
                confidence=t.result.confidence,
                age_hours=(now - (t.completed_at or t.created_at)).total_seconds() / 3600,
            )
            for t in related
            if t.id != task.id and t.result is not None
        ][:PRIOR_KNOWLEDGE_LIMIT]

    # ── Workers ───────────────────────────────────────────────────────────

    @property
    def pool(self) -> WorkerPool:
        if self._pool is None:
            self._pool = WorkerPool(
                self.queue,
                self.coordinator,
                config=self.config.queue,
                activity=self.activity,
                prior_knowledge=self.prior_knowledge,
            )
        return self._pool

    async def run_until_idle(self) -> int:
        return await self.pool.run_until_idle()

    async def run_forever(self) -> None:
        await self.pool.run_forever()

    # ── Reads / maintenance ───────────────────────────────────────────────

    async def status(self, limit: int = 10) -> dict[str, Any]:
        stats: QueueStats = await self.queue.stats()
        return {"stats": stats, "recent": await self.queue.recent(limit)}

    async def search(self, text: str, limit: int = 10) -> list[ResearchTask]:
        return await self.store.search_tasks(text, limit)

    async def task_log(self, task_id: str, n: int = 50) -> list[str]:
        return await self.activity.get_log(task_id, n)

    async def cleanup(self, older_than_days: float = 30) -> dict[str, int]:
        return await self.store.cleanup(older_than_days)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.stop()
        for name in self.specialists.names():
            specialist = self.specialists.get(name)
            close = getattr(specialist, "close", None)
            if close is not None:
                await close()
        close_generator = getattr(self.generator, "close", None)
        if close_generator is not None:
            await close_generator()
        await self.activity.close()
        self.store.close()
