"""Core data models — tasks, results, sessions, injection records.

All timestamps are timezone-aware UTC datetimes. The store persists them as
epoch milliseconds; ``from_row`` classmethods convert back.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from ferret.utils.clock import from_ms, now_utc

Depth = Literal["quick", "medium", "deep"]
TaskStatus = Literal["queued", "running", "completed", "failed", "injected"]
TriggerSource = Literal["user_prompt", "tool_output", "manual", "scheduled"]
InjectionType = Literal["memory-only", "research-only", "combined", "warning"]
Urgency = Literal["low", "medium", "high"]
ObservationType = Literal["decision", "bugfix", "feature", "refactor", "discovery", "change"]


@dataclass(frozen=True)
class DepthPreset:
    """How much work a depth tier buys: loop iterations and results per specialist."""

    iterations: int
    max_results: int


DEPTH_PRESETS: dict[str, DepthPreset] = {
    "quick": DepthPreset(iterations=1, max_results=3),
    "medium": DepthPreset(iterations=1, max_results=5),
    "deep": DepthPreset(iterations=2, max_results=8),
}


def _new_id() -> str:
    return str(uuid.uuid4())


# ── Research output ──────────────────────────────────────────────────────────


class ResearchSource(BaseModel):
    """A single cited source."""

    model_config = ConfigDict(frozen=True)

    title: str
    url: str
    snippet: str | None = None
    relevance: float = Field(default=0.5, ge=0.0, le=1.0)


class PivotSuggestion(BaseModel):
    """An alternative framing of the problem proposed during evaluation."""

    model_config = ConfigDict(frozen=True)

    alternative: str
    reason: str
    urgency: Urgency = "low"


class ResearchResult(BaseModel):
    """The synthesised outcome of one research task. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    summary: str
    full_content: str = ""
    sources: list[ResearchSource] = Field(default_factory=list)
    tokens_used: int = 0
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    key_findings: list[str] = Field(default_factory=list)
    pivot: PivotSuggestion | None = None


# ── Tasks ────────────────────────────────────────────────────────────────────


class TaskSpec(BaseModel):
    """What a caller hands to ``TaskQueue.enqueue``."""

    query: str = Field(min_length=1)
    context: str | None = None
    depth: Depth = "medium"
    trigger: TriggerSource = "manual"
    session_id: str | None = None
    project_path: str | None = None
    priority: int = Field(default=5, ge=1, le=10)


class ResearchTask(BaseModel):
    """A unit of research work and its lifecycle state.

    Persisted in the ``research_tasks`` table. ``result`` is only ever set
    on the running → completed transition.
    """

    id: str = Field(default_factory=_new_id)
    query: str
    context: str | None = None
    depth: Depth = "medium"
    status: TaskStatus = "queued"
    trigger: TriggerSource = "manual"
    session_id: str | None = None
    project_path: str | None = None
    priority: int = Field(default=5, ge=1, le=10)
    retry_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=now_utc)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    result: ResearchResult | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ResearchTask":
        """Construct from a sqlite3.Row converted to dict."""
        raw_result = row.get("result")
        return cls(
            id=row["id"],
            query=row["query"],
            context=row.get("context"),
            depth=row.get("depth") or "medium",
            status=row.get("status") or "queued",
            trigger=row.get("trigger") or "manual",
            session_id=row.get("session_id"),
            project_path=row.get("project_path"),
            priority=row.get("priority") or 5,
            retry_count=row.get("retry_count") or 0,
            created_at=from_ms(row["created_at"]),
            started_at=from_ms(row.get("started_at")),
            completed_at=from_ms(row.get("completed_at")),
            error=row.get("error"),
            result=ResearchResult.model_validate_json(raw_result) if raw_result else None,
        )


class QueueStats(BaseModel):
    queued: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    injected: int = 0

    @property
    def total_processed(self) -> int:
        return self.completed + self.failed + self.injected


# ── Triggers ─────────────────────────────────────────────────────────────────


class DetectedTrigger(BaseModel):
    """Ephemeral detector verdict. Never persisted."""

    should_research: bool
    query: str | None = None
    depth: Depth = "quick"
    priority: int = Field(default=5, ge=1, le=10)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reason: str = ""

    @classmethod
    def none(cls, reason: str) -> "DetectedTrigger":
        return cls(should_research=False, confidence=0.0, reason=reason)


# ── Sessions and injections ──────────────────────────────────────────────────


class Session(BaseModel):
    id: str
    started_at: datetime = Field(default_factory=now_utc)
    last_activity_at: datetime = Field(default_factory=now_utc)
    project_path: str | None = None
    injections_count: int = 0
    injections_tokens: int = 0
    last_injection_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Session":
        return cls(
            id=row["id"],
            started_at=from_ms(row["started_at"]),
            last_activity_at=from_ms(row["last_activity_at"]),
            project_path=row.get("project_path"),
            injections_count=row.get("injections_count") or 0,
            injections_tokens=row.get("injections_tokens") or 0,
            last_injection_at=from_ms(row.get("last_injection_at")),
        )


class InjectionRecord(BaseModel):
    """Append-only audit entry for one injection."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    task_id: str = Field(description="Task id or synthetic candidate id")
    session_id: str
    injected_at: datetime = Field(default_factory=now_utc)
    content: str
    tokens_used: int
    accepted: bool = True
    injection_type: InjectionType

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "InjectionRecord":
        return cls(
            id=row["id"],
            task_id=row["task_id"],
            session_id=row["session_id"],
            injected_at=from_ms(row["injected_at"]),
            content=row["content"],
            tokens_used=row["tokens_used"],
            accepted=bool(row["accepted"]),
            injection_type=row["injection_type"],
        )


# ── Memory ───────────────────────────────────────────────────────────────────


class MemoryObservation(BaseModel):
    """Something learnt in a past session: a fix, a decision, a discovery."""

    id: str = Field(default_factory=_new_id)
    session_id: str | None = None
    project: str | None = None
    type: ObservationType = "discovery"
    title: str
    summary: str
    details: str | None = None
    facts: list[str] = Field(default_factory=list)
    files: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=now_utc)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "MemoryObservation":
        return cls(
            id=row["id"],
            session_id=row.get("session_id"),
            project=row.get("project"),
            type=row.get("type") or "discovery",
            title=row["title"],
            summary=row["summary"],
            details=row.get("details"),
            facts=json.loads(row.get("facts") or "[]"),
            files=json.loads(row.get("files") or "[]"),
            created_at=from_ms(row["created_at"]),
        )
