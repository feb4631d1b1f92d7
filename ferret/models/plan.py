"""Research loop data: plans, findings, evaluations, synthesis."""

from __future__ import annotations

from pydantic import BaseModel, Field

from ferret.models.schemas import PivotSuggestion


class SearchResult(BaseModel):
    """One hit returned by a specialist."""

    title: str
    url: str
    snippet: str = ""
    relevance: float | None = Field(default=None, ge=0.0, le=1.0)
    source: str = ""


class PlannedStep(BaseModel):
    specialist: str
    query: str
    priority: int = 1


class ResearchPlan(BaseModel):
    strategy: str
    rationale: str = ""
    steps: list[PlannedStep] = Field(min_length=1)
    fallback: bool = False


class Finding(BaseModel):
    """Everything one specialist returned for one planned step."""

    specialist: str
    query: str
    results: list[SearchResult] = Field(default_factory=list)
    error: str | None = None


class Evaluation(BaseModel):
    complete: bool
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    next_steps: list[PlannedStep] = Field(default_factory=list)
    pivot: PivotSuggestion | None = None


class SynthesizedResult(BaseModel):
    summary: str
    key_findings: list[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)


class PriorKnowledge(BaseModel):
    """An earlier result on a related query, fed to the planner."""

    query: str
    summary: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    age_hours: float = 0.0
