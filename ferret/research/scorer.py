"""KnowledgeScorer — one relevance scale for memory and research knowledge.

    final = Σ weight_i × factor_i     (clamped to [0, 1])

Factors:
    text_similarity  word overlap between query/context and the candidate
    recency          exp(-age_days / decay_days), 1.0 for "just now"
    project_match    1.0 on the same project (or when no project is known), else 0.5
    type_match       per-category base score, +0.2 when the query's flavour
                     matches the category (errors → bugfix, choices → decision)
    confidence       source-provided: research confidence, or 0.5 for memory

Weights must sum to 1 and come as named presets.
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterable
from datetime import datetime

import structlog
from pydantic import BaseModel, Field, model_validator

from ferret.models.knowledge import (
    KnowledgeCandidate,
    KnowledgeContent,
    QueryContext,
    RelevanceVector,
)
from ferret.models.schemas import MemoryObservation, ResearchTask
from ferret.research.store import KnowledgeStore
from ferret.utils.clock import age_days, now_utc
from ferret.utils.text import overlap

logger = structlog.get_logger().bind(component="research.scorer")

TYPE_BASE_SCORES: dict[str, float] = {
    "discovery": 0.9,
    "bugfix": 0.8,
    "decision": 0.7,
    "feature": 0.6,
    "refactor": 0.5,
    "change": 0.4,
}
DEFAULT_TYPE_SCORE = 0.5
TYPE_BOOST = 0.2

# An FTS hit already implies some lexical overlap
FTS_MIN_SIMILARITY = 0.3
MEMORY_CONFIDENCE = 0.5
CANDIDATE_POOL = 10

_ERROR_FLAVOUR = re.compile(r"\b(error|errors|exception|traceback|failed|failing|bug|crash)", re.IGNORECASE)
_DECISION_FLAVOUR = re.compile(r"\b(decide|decision|choose|choosing|which should)", re.IGNORECASE)


class RelevanceWeights(BaseModel):
    text_similarity: float = Field(default=0.35, ge=0)
    recency: float = Field(default=0.15, ge=0)
    project_match: float = Field(default=0.15, ge=0)
    type_match: float = Field(default=0.15, ge=0)
    confidence: float = Field(default=0.20, ge=0)

    @model_validator(mode="after")
    def _sums_to_one(self) -> "RelevanceWeights":
        total = (
            self.text_similarity + self.recency + self.project_match
            + self.type_match + self.confidence
        )
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"relevance weights must sum to 1.0 (got {total:.4f})")
        return self


WEIGHT_PRESETS: dict[str, RelevanceWeights] = {
    "default": RelevanceWeights(),
    "memory_first": RelevanceWeights(
        text_similarity=0.30, recency=0.10, project_match=0.25, type_match=0.20, confidence=0.15
    ),
    "research_first": RelevanceWeights(
        text_similarity=0.35, recency=0.25, project_match=0.05, type_match=0.10, confidence=0.25
    ),
}


def weighted_score(relevance: RelevanceVector, weights: RelevanceWeights) -> float:
    score = (
        relevance.text_similarity * weights.text_similarity
        + relevance.recency * weights.recency
        + (1.0 if relevance.project_match else 0.5) * weights.project_match
        + relevance.type_match * weights.type_match
        + relevance.confidence * weights.confidence
    )
    return min(1.0, max(0.0, score))


def type_match_score(obs_type: str, text: str | None = None) -> float:
    base = TYPE_BASE_SCORES.get(obs_type, DEFAULT_TYPE_SCORE)
    if text:
        if obs_type == "bugfix" and _ERROR_FLAVOUR.search(text):
            return min(1.0, base + TYPE_BOOST)
        if obs_type == "decision" and _DECISION_FLAVOUR.search(text):
            return min(1.0, base + TYPE_BOOST)
    return base


class KnowledgeScorer:
    """Scores, filters and ranks knowledge candidates.

    Args:
        weights:            A ``RelevanceWeights`` or the name of a preset.
        recency_decay_days: Decay constant for the recency factor.
        min_relevance:      Candidates scoring below this are dropped by ``rank``.
        store:              Needed only by ``best_candidates``.
    """

    def __init__(
        self,
        weights: RelevanceWeights | str = "default",
        recency_decay_days: float = 10.0,
        min_relevance: float = 0.5,
        store: KnowledgeStore | None = None,
    ) -> None:
        if isinstance(weights, str):
            if weights not in WEIGHT_PRESETS:
                raise ValueError(f"unknown weight preset {weights!r}; choose from {sorted(WEIGHT_PRESETS)}")
            weights = WEIGHT_PRESETS[weights]
        self.weights = weights
        self.recency_decay_days = recency_decay_days
        self.min_relevance = min_relevance
        self.store = store

    # ── Factors ───────────────────────────────────────────────────────────

    def recency(self, created_at: datetime, now: datetime | None = None) -> float:
        return math.exp(-age_days(created_at, now) / self.recency_decay_days)

    @staticmethod
    def text_similarity(ctx: QueryContext, content: KnowledgeContent) -> float:
        haystack = " ".join([content.title, content.summary, *content.facts])
        return max(FTS_MIN_SIMILARITY, overlap(ctx.text, haystack))

    # ── Scoring ───────────────────────────────────────────────────────────

    def relevance(
        self, candidate: KnowledgeCandidate, ctx: QueryContext, now: datetime | None = None
    ) -> RelevanceVector:
        return RelevanceVector(
            text_similarity=self.text_similarity(ctx, candidate.content),
            recency=self.recency(candidate.created_at, now),
            project_match=ctx.project is None or candidate.project == ctx.project,
            type_match=type_match_score(candidate.content.type, ctx.text),
            confidence=candidate.relevance.confidence,
        )

    def score(self, candidate: KnowledgeCandidate, ctx: QueryContext, now: datetime | None = None) -> float:
        return weighted_score(self.relevance(candidate, ctx, now), self.weights)

    def scored(
        self, candidate: KnowledgeCandidate, ctx: QueryContext, now: datetime | None = None
    ) -> KnowledgeCandidate:
        """Copy of *candidate* with its relevance vector and final score filled in."""
        relevance = self.relevance(candidate, ctx, now)
        return candidate.model_copy(
            update={"relevance": relevance, "final_score": weighted_score(relevance, self.weights)}
        )

    def rank(
        self,
        candidates: Iterable[KnowledgeCandidate],
        ctx: QueryContext,
        now: datetime | None = None,
    ) -> list[KnowledgeCandidate]:
        """Score every candidate, drop those under ``min_relevance``, best first."""
        now = now or now_utc()
        scored = [self.scored(c, ctx, now) for c in candidates]
        kept = [c for c in scored if c.final_score >= self.min_relevance]
        return sorted(kept, key=lambda c: c.final_score, reverse=True)

    # ── Candidate construction ────────────────────────────────────────────

    @staticmethod
    def from_observation(obs: MemoryObservation) -> KnowledgeCandidate:
        return KnowledgeCandidate(
            source="memory",
            content=KnowledgeContent(
                id=obs.id,
                title=obs.title,
                summary=obs.summary,
                details=obs.details,
                facts=obs.facts,
                type=obs.type,
            ),
            relevance=RelevanceVector(confidence=MEMORY_CONFIDENCE),
            project=obs.project,
            created_at=obs.created_at,
            files=obs.files,
        )

    @staticmethod
    def from_task(task: ResearchTask) -> KnowledgeCandidate | None:
        if task.result is None:
            return None
        return KnowledgeCandidate(
            source="research",
            content=KnowledgeContent(
                id=task.id,
                title=task.query,
                summary=task.result.summary,
                details=task.result.full_content or None,
                facts=task.result.key_findings,
                type="discovery",
            ),
            relevance=RelevanceVector(confidence=task.result.confidence),
            project=task.project_path,
            created_at=task.completed_at or task.created_at,
            pivot=task.result.pivot,
        )

    async def best_candidates(
        self, ctx: QueryContext
    ) -> tuple[KnowledgeCandidate | None, KnowledgeCandidate | None]:
        """Top memory candidate and top research candidate for *ctx* (either may be None)."""
        if self.store is None:
            raise RuntimeError("KnowledgeScorer.best_candidates needs a store")
        observations = await self.store.search_observations(ctx.text, CANDIDATE_POOL)
        tasks = await self.store.search_tasks(ctx.text, CANDIDATE_POOL, match_any=True)

        memory = self.rank([self.from_observation(o) for o in observations], ctx)
        research = self.rank(
            [c for c in (self.from_task(t) for t in tasks) if c is not None], ctx
        )
        logger.debug(
            "candidates_ranked",
            query=ctx.query,
            memory=len(memory),
            research=len(research),
            best_memory=memory[0].final_score if memory else None,
            best_research=research[0].final_score if research else None,
        )
        return (memory[0] if memory else None, research[0] if research else None)
