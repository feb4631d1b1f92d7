"""InjectionManager — decides whether, what and how much to inject.

Every request passes the same gates, in order:

    1. the session exists
    2. the session is under its count and token budgets
    3. the cooldown since the last injection has elapsed
    4. a candidate scores at or above ``min_relevance``

A successful injection appends one InjectionRecord, bumps the session
counters and restarts the cooldown. All three happen in one store
transaction, under a per-session lock. A ``None`` answer has no side effects.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import structlog

from ferret.config import InjectionSettings
from ferret.injection import formatters
from ferret.models.knowledge import Injection, KnowledgeCandidate, QueryContext
from ferret.models.schemas import InjectionRecord, InjectionType, ResearchTask, Session
from ferret.research.scorer import KnowledgeScorer
from ferret.research.store import KnowledgeStore
from ferret.utils.clock import now_utc
from ferret.utils.text import estimate_tokens, overlap

logger = structlog.get_logger().bind(component="injection.manager")

PENDING_THRESHOLD = 0.5
PENDING_POOL = 20


def score_task(task: ResearchTask, context: str | None = None, now: datetime | None = None) -> float:
    """Heuristic readiness score for a completed task, in [0, 1].

    confidence × 0.3, a recency bonus (0.3 under 5 min, 0.2 under 15, 0.1 under 30),
    a priority bonus (0.2 at ≥8, 0.1 at ≥6), a source-count bonus (0.15 at ≥5,
    0.1 at ≥3) and context overlap × 0.25.
    """
    if task.result is None:
        return 0.0
    now = now or now_utc()
    result = task.result
    score = result.confidence * 0.3

    age_min = (now - (task.completed_at or task.created_at)).total_seconds() / 60
    if age_min < 5:
        score += 0.3
    elif age_min < 15:
        score += 0.2
    elif age_min < 30:
        score += 0.1

    if task.priority >= 8:
        score += 0.2
    elif task.priority >= 6:
        score += 0.1

    if len(result.sources) >= 5:
        score += 0.15
    elif len(result.sources) >= 3:
        score += 0.1

    if context and result.summary:
        score += overlap(result.summary, context) * 0.25

    return min(score, 1.0)


class InjectionManager:
    """Selects and records context injections for a session.

    Args:
        store:  Session, task and injection persistence.
        scorer: Ranks memory and research candidates. Defaults to a scorer
                over ``store`` using ``config.min_relevance``.
        config: Budget, cooldown, thresholds and template ceilings.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        scorer: KnowledgeScorer | None = None,
        config: InjectionSettings | None = None,
    ) -> None:
        self.store = store
        self.config = config or InjectionSettings()
        self.scorer = scorer or KnowledgeScorer(store=store, min_relevance=self.config.min_relevance)
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    def set_budget(self, **changes: object) -> InjectionSettings:
        """Replace budget knobs at runtime; values are validated like config."""
        self.config = InjectionSettings.model_validate({**self.config.model_dump(), **changes})
        self.scorer.min_relevance = self.config.min_relevance
        logger.info("budget_updated", **{k: getattr(self.config, k) for k in changes})
        return self.config

    # ── Gates ─────────────────────────────────────────────────────────────

    def _limits(self) -> dict[str, float]:
        """Cooldown and budget limits, re-checked by the store when it records."""
        return {
            "cooldown_s": self.config.cooldown_s,
            "max_count": self.config.max_per_session,
            "max_tokens": self.config.max_total_tokens_per_session,
        }

    def _within_budget(self, session: Session) -> bool:
        return (
            session.injections_count < self.config.max_per_session
            and session.injections_tokens < self.config.max_total_tokens_per_session
        )

    def _in_cooldown(self, session: Session, now: datetime) -> bool:
        if session.last_injection_at is None:
            return False
        return now - session.last_injection_at < timedelta(seconds=self.config.cooldown_s)

    async def _open_session(self, session_id: str) -> Session | None:
        session = await self.store.get_session(session_id)
        if session is None:
            logger.debug("injection_skipped", session_id=session_id, reason="no_session")
            return None
        if not self._within_budget(session):
            logger.debug(
                "injection_skipped",
                session_id=session_id,
                reason="budget",
                count=session.injections_count,
                tokens=session.injections_tokens,
            )
            return None
        if self._in_cooldown(session, now_utc()):
            logger.debug("injection_skipped", session_id=session_id, reason="cooldown")
            return None
        return session

    # ── Selection ─────────────────────────────────────────────────────────

    def determine_injection_type(
        self,
        memory: KnowledgeCandidate | None,
        research: KnowledgeCandidate | None,
    ) -> InjectionType | None:
        cfg = self.config
        m = memory.final_score if memory else 0.0
        r = research.final_score if research else 0.0

        if memory and m >= cfg.memory_only_threshold and m > r:
            return "memory-only"
        if memory and research and m >= cfg.combined_threshold and r >= cfg.combined_threshold:
            return "combined"
        if research and r >= cfg.research_only_threshold:
            if research.pivot is not None and research.pivot.urgency == "high":
                return "warning"
            return "research-only"
        if memory and m >= cfg.min_relevance:
            return "memory-only"
        return None

    def _render(
        self,
        kind: InjectionType,
        memory: KnowledgeCandidate | None,
        research: KnowledgeCandidate | None,
        current_approach: str | None,
    ) -> Injection:
        cfg = self.config
        cap = cfg.max_tokens_per_injection
        if kind == "memory-only":
            return formatters.format_memory(memory, max_tokens=min(cfg.memory_only_tokens, cap))
        if kind == "combined":
            return formatters.format_combined(
                memory, research, max_tokens=min(cfg.combined_tokens, cap)
            )
        if kind == "warning":
            return formatters.format_warning(
                research,
                research.pivot,
                current_approach=current_approach,
                max_tokens=min(cfg.warning_tokens, cap),
            )
        return formatters.format_research(research, max_tokens=min(cfg.research_only_tokens, cap))

    # ── Public API ────────────────────────────────────────────────────────

    async def get_injection(
        self,
        session_id: str,
        query: str,
        *,
        context: str | None = None,
        project: str | None = None,
    ) -> Injection | None:
        """Pick, render and record the best knowledge for *query*, or return None."""
        async with self._lock_for(session_id):
            session = await self._open_session(session_id)
            if session is None:
                return None

            ctx = QueryContext(query=query, context=context, project=project or session.project_path)
            memory, research = await self.scorer.best_candidates(ctx)
            kind = self.determine_injection_type(memory, research)
            if kind is None:
                logger.debug("injection_skipped", session_id=session_id, reason="no_candidate")
                return None

            if kind == "memory-only":
                research = None
            elif kind in ("research-only", "warning"):
                memory = None
            injection = self._render(kind, memory, research, context)

            record = InjectionRecord(
                task_id=injection.research_id or injection.memory_id,
                session_id=session_id,
                content=injection.content,
                tokens_used=injection.tokens,
                injection_type=kind,
            )
            recorded = await self.store.record_injection(
                record,
                mark_task_injected=injection.research_id is not None,
                **self._limits(),
            )
            if not recorded:
                logger.debug("injection_skipped", session_id=session_id, reason="limit_race")
                return None

        logger.info(
            "injection_recorded",
            session_id=session_id,
            type=kind,
            tokens=injection.tokens,
            memory_score=memory.final_score if memory else None,
            research_score=research.final_score if research else None,
        )
        return injection

    async def pull_pending(self, session_id: str, context: str | None = None) -> str | None:
        """Inject the best finished research task of this session, if any.

        Uses the ``<research-context>`` template and moves the task to
        ``injected``.
        """
        async with self._lock_for(session_id):
            session = await self._open_session(session_id)
            if session is None:
                return None

            injected = {r.task_id for r in await self.store.session_injections(session_id)}
            candidates = [
                t
                for t in await self.store.session_tasks(session_id, "completed")
                if t.result is not None and t.id not in injected
            ][:PENDING_POOL]
            now = now_utc()
            scored = sorted(
                ((score_task(t, context, now), t) for t in candidates),
                key=lambda pair: pair[0],
                reverse=True,
            )
            scored = [(s, t) for s, t in scored if s > PENDING_THRESHOLD]
            if not scored:
                logger.debug(
                    "injection_skipped", session_id=session_id, reason="no_pending", seen=len(candidates)
                )
                return None

            score, task = scored[0]
            content = formatters.format_task(task, max_tokens=self.config.max_tokens_per_injection)
            record = InjectionRecord(
                task_id=task.id,
                session_id=session_id,
                content=content,
                tokens_used=estimate_tokens(content),
                injection_type="research-only",
            )
            recorded = await self.store.record_injection(
                record, mark_task_injected=True, **self._limits()
            )
            if not recorded:
                return None

        logger.info(
            "pending_injected",
            session_id=session_id,
            task_id=task.id,
            score=round(score, 3),
            tokens=record.tokens_used,
        )
        return content

    async def history(self, session_id: str) -> list[InjectionRecord]:
        return await self.store.session_injections(session_id)

    def forget_session(self, session_id: str) -> None:
        self._locks.pop(session_id, None)
