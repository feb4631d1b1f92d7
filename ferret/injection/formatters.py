"""Injection templates.

Each formatter renders a candidate into a short, self-contained block of
context and guarantees ``estimate_tokens(content) <= max_tokens``. Field
truncation keeps the block readable; a final hard cut enforces the ceiling.
"""

from __future__ import annotations

from datetime import datetime

from ferret.models.knowledge import Injection, KnowledgeCandidate
from ferret.models.schemas import PivotSuggestion, ResearchTask
from ferret.utils.clock import relative_date
from ferret.utils.text import CHARS_PER_TOKEN, estimate_tokens, truncate

MEMORY_TOKENS = 80
RESEARCH_TOKENS = 100
COMBINED_TOKENS = 150
WARNING_TOKENS = 120
TASK_TOKENS = 150

# Share of the combined budget given to the memory half
COMBINED_MEMORY_SHARE = 0.4

URGENCY_MARKERS = {"high": "[!]", "medium": "[*]", "low": "[i]"}


def _fit(lines: list[str], max_tokens: int) -> str:
    return truncate("\n".join(lines), max_tokens * CHARS_PER_TOKEN)


def _project_name(project: str | None) -> str:
    if not project:
        return "this project"
    return project.rstrip("/").split("/")[-1] or project


def _percent(confidence: float) -> str:
    return f"{round(confidence * 100)}%"


def _confidence_label(confidence: float) -> str:
    if confidence >= 0.8:
        return "high"
    if confidence >= 0.6:
        return "good"
    return "moderate"


def format_memory(
    candidate: KnowledgeCandidate,
    *,
    max_tokens: int = MEMORY_TOKENS,
    include_files: bool = True,
    now: datetime | None = None,
) -> Injection:
    max_chars = max_tokens * CHARS_PER_TOKEN
    lines = [
        "Continue your work. Relevant context:",
        "",
        f"[Memory] You handled similar {candidate.content.type} in "
        f"{_project_name(candidate.project)} ({relative_date(candidate.created_at, now)}):",
    ]
    room = max_chars - len("\n".join(lines)) - 50
    lines.append(truncate(candidate.content.summary, room))
    if include_files and candidate.files:
        files = list(dict.fromkeys(candidate.files))[:3]
        lines.append(f"Files: {', '.join(files)}")

    content = _fit(lines, max_tokens)
    return Injection(
        type="memory-only",
        content=content,
        tokens=estimate_tokens(content),
        memory_id=candidate.content.id,
    )


def format_research(
    candidate: KnowledgeCandidate,
    *,
    max_tokens: int = RESEARCH_TOKENS,
    include_followup: bool = True,
) -> Injection:
    max_chars = max_tokens * CHARS_PER_TOKEN
    lines = [
        "Continue your work. Research gathered:",
        "",
        f"**{truncate(candidate.content.title, 50)}**:",
    ]
    room = max_chars - len("\n".join(lines)) - 60
    lines.append(truncate(candidate.content.summary, room))
    confidence = f"(confidence: {_percent(candidate.relevance.confidence)})"
    if include_followup:
        confidence += f" [ferret log {candidate.content.id} for sources]"
    lines.append(confidence)

    content = _fit(lines, max_tokens)
    return Injection(
        type="research-only",
        content=content,
        tokens=estimate_tokens(content),
        research_id=candidate.content.id,
    )


def format_combined(
    memory: KnowledgeCandidate,
    research: KnowledgeCandidate,
    *,
    max_tokens: int = COMBINED_TOKENS,
    now: datetime | None = None,
) -> Injection:
    max_chars = max_tokens * CHARS_PER_TOKEN
    memory_chars = int(max_chars * COMBINED_MEMORY_SHARE)
    research_chars = max_chars - memory_chars

    verb = "fixed" if memory.content.type == "bugfix" else "implemented"
    lines = [
        "Continue your work. Context gathered:",
        "",
        f"[Memory] You {verb} {memory.content.title[:30]} in "
        f"{_project_name(memory.project)} ({relative_date(memory.created_at, now)}):",
        truncate(memory.content.summary, memory_chars - 80),
        "",
        f"[Research] Current best practice for {truncate(research.content.title, 40)}:",
        truncate(research.content.summary, research_chars - 100),
        f"(confidence: {_percent(research.relevance.confidence)})",
    ]

    content = _fit(lines, max_tokens)
    return Injection(
        type="combined",
        content=content,
        tokens=estimate_tokens(content),
        memory_id=memory.content.id,
        research_id=research.content.id,
    )


def format_warning(
    research: KnowledgeCandidate,
    pivot: PivotSuggestion,
    *,
    current_approach: str | None = None,
    max_tokens: int = WARNING_TOKENS,
) -> Injection:
    max_chars = max_tokens * CHARS_PER_TOKEN
    lines = [f"{URGENCY_MARKERS[pivot.urgency]} Research suggests reconsidering approach:", ""]
    if current_approach:
        lines.append(f"**Current**: {truncate(current_approach, 50)}")
    lines.append(f"**Alternative**: {truncate(pivot.alternative, 100)}")
    room = max_chars - len("\n".join(lines)) - 60
    lines.append(f"**Why**: {truncate(pivot.reason, room)}")
    lines.append("")
    lines.append(f"({_confidence_label(research.relevance.confidence)} confidence)")

    content = _fit(lines, max_tokens)
    return Injection(
        type="warning",
        content=content,
        tokens=estimate_tokens(content),
        research_id=research.content.id,
    )


def format_task(task: ResearchTask, *, max_tokens: int = TASK_TOKENS) -> str:
    """Render a completed task as a ``<research-context>`` block.

    Returns "" for a task without a result. The closing tag always survives
    truncation.
    """
    if task.result is None:
        return ""
    result = task.result
    max_chars = max_tokens * CHARS_PER_TOKEN
    closing = "</research-context>"
    query = task.query.replace('"', "'")

    summary = truncate(result.summary, max_chars - 100)
    lines = [f'<research-context query="{query}">', summary]
    if result.sources:
        top = result.sources[0]
        lines.append(f"Source: {top.title} ({top.url})")
    if result.pivot:
        pivot = result.pivot
        lines += [
            "",
            f"{URGENCY_MARKERS[pivot.urgency]} **Alternative Approach Detected:**",
            pivot.alternative,
            f"_Reason: {pivot.reason}_",
        ]
    if len(result.sources) > 1 or len(result.full_content) > len(summary) * 2:
        lines += ["", f"{len(result.sources)} sources available. Use `ferret status` for details."]

    body = truncate("\n".join(lines), max_chars - len(closing) - 1)
    return f"{body}\n{closing}"
