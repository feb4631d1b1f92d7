"""Knowledge candidates — the common shape of memory and research knowledge.

Candidates are recomputed per query and never persisted.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from ferret.models.schemas import InjectionType, PivotSuggestion

KnowledgeSource = Literal["memory", "research"]


class KnowledgeContent(BaseModel):
    id: str
    title: str
    summary: str
    details: str | None = None
    facts: list[str] = Field(default_factory=list)
    type: str = "discovery"


class RelevanceVector(BaseModel):
    """The five scoring factors, each in [0, 1]."""

    text_similarity: float = Field(default=0.0, ge=0.0, le=1.0)
    recency: float = Field(default=0.0, ge=0.0, le=1.0)
    project_match: bool = False
    type_match: float = Field(default=0.5, ge=0.0, le=1.0)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class KnowledgeCandidate(BaseModel):
    source: KnowledgeSource
    content: KnowledgeContent
    relevance: RelevanceVector = Field(default_factory=RelevanceVector)
    final_score: float = Field(default=0.0, ge=0.0, le=1.0)
    project: str | None = None
    created_at: datetime
    files: list[str] = Field(default_factory=list)
    pivot: PivotSuggestion | None = None


class QueryContext(BaseModel):
    """What the scorer compares candidates against."""

    query: str
    context: str | None = None
    project: str | None = None

    @property
    def text(self) -> str:
        return f"{self.query} {self.context or ''}".strip()


class Injection(BaseModel):
    """A rendered, recorded injection handed back to the hosting application."""

    type: InjectionType
    content: str
    tokens: int
    memory_id: str | None = None
    research_id: str | None = None
