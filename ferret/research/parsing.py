"""Parsers for the field-tagged text the generator is asked to produce.

Format (keys are case-insensitive, order-free, one per line)::

    STRATEGY: <text>
    RATIONALE: <text>
    STEPS:
    - specialist:web query:"rate limiting" priority:1

    COMPLETE: true|false
    CONFIDENCE: 0.0-1.0
    REASONING: <text>
    NEXT_STEPS:
    - specialist:docs query:"token bucket" priority:1
    PIVOT:
    alternative: <text>
    reason: <text>
    urgency: low|medium|high

    SUMMARY: <text>
    KEY_FINDINGS:
    - <finding>

Each parser raises ``ParseError`` when a required field is missing or
malformed. Callers turn that into their documented fallback.
"""

from __future__ import annotations

import re

from ferret.errors import ParseError
from ferret.models.plan import Evaluation, PlannedStep, ResearchPlan, SynthesizedResult
from ferret.models.schemas import PivotSuggestion

_KEYS = (
    "STRATEGY", "RATIONALE", "STEPS", "COMPLETE", "CONFIDENCE", "REASONING",
    "NEXT_STEPS", "PIVOT", "SUMMARY", "KEY_FINDINGS",
)
_KEY_LINE = re.compile(
    r"^[ \t*#>]*(" + "|".join(_KEYS) + r")[ \t*]*:[ \t]*(.*)$",
    re.IGNORECASE | re.MULTILINE,
)
_STEP = re.compile(
    r"specialist\s*:\s*([\w-]+)\s+query\s*:\s*\"([^\"]+)\"(?:\s+priority\s*:\s*(\d+))?",
    re.IGNORECASE,
)
_BULLET = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.+?)\s*$", re.MULTILINE)
_THINK = re.compile(r"<think>.*?</think>", re.DOTALL)
_NUMBER = re.compile(r"(\d+(?:\.\d+)?|\.\d+)\s*(%?)")
_PIVOT_FIELD = re.compile(
    r"^\s*[-*]?\s*(alternative|reason|urgency)\s*:\s*(.*)$", re.IGNORECASE | re.MULTILINE
)


def strip_think(raw: str) -> str:
    """Drop any <think>…</think> reasoning blocks."""
    return _THINK.sub("", raw).strip()


def split_sections(raw: str) -> dict[str, str]:
    """Map each tagged key (upper-cased) to the text that follows it.

    The text runs from after the colon to the next tagged key. The first
    occurrence of a key wins.
    """
    text = strip_think(raw)
    matches = list(_KEY_LINE.finditer(text))
    sections: dict[str, str] = {}
    for i, match in enumerate(matches):
        key = match.group(1).upper()
        end = matches[i + 1].start() if i + 1 < len(matches) else len(text)
        body = (match.group(2) + text[match.end():end]).strip()
        sections.setdefault(key, body)
    return sections


def parse_confidence(value: str | None) -> float:
    """'0.8', '.8', '80%' or '80' → a float in [0, 1]."""
    if not value:
        raise ParseError("missing CONFIDENCE")
    match = _NUMBER.search(value)
    if not match:
        raise ParseError(f"unreadable CONFIDENCE: {value[:40]!r}")
    number = float(match.group(1))
    if match.group(2) == "%" or number > 1:
        number /= 100
    return max(0.0, min(1.0, number))


def parse_steps(body: str | None) -> list[PlannedStep]:
    steps: list[PlannedStep] = []
    for i, match in enumerate(_STEP.finditer(body or "")):
        query = match.group(2).strip()
        if not query:
            continue
        priority = int(match.group(3)) if match.group(3) else i + 1
        steps.append(PlannedStep(specialist=match.group(1).lower(), query=query, priority=priority))
    return steps


def parse_pivot(body: str | None) -> PivotSuggestion | None:
    if not body:
        return None
    fields: dict[str, str] = {}
    for match in _PIVOT_FIELD.finditer(body):
        fields.setdefault(match.group(1).lower(), match.group(2).strip())
    alternative = fields.get("alternative", "")
    if not alternative or alternative.lower() in ("none", "n/a"):
        return None
    urgency = (fields.get("urgency") or "medium").lower().split()[0]
    if urgency not in ("low", "medium", "high"):
        urgency = "medium"
    return PivotSuggestion(
        alternative=alternative,
        reason=fields.get("reason") or "Alternative approach detected",
        urgency=urgency,
    )


def parse_plan(raw: str) -> ResearchPlan:
    sections = split_sections(raw)
    steps = parse_steps(sections.get("STEPS"))
    if not steps:
        raise ParseError("plan has no valid STEPS lines")
    return ResearchPlan(
        strategy=sections.get("STRATEGY") or "Multi-source research",
        rationale=sections.get("RATIONALE", ""),
        steps=sorted(steps, key=lambda s: s.priority),
    )


def parse_evaluation(raw: str) -> Evaluation:
    sections = split_sections(raw)
    complete_raw = sections.get("COMPLETE", "").strip().lower()
    if complete_raw.startswith("true") or complete_raw.startswith("yes"):
        complete = True
    elif complete_raw.startswith("false") or complete_raw.startswith("no"):
        complete = False
    else:
        raise ParseError("evaluation missing COMPLETE: true|false")
    return Evaluation(
        complete=complete,
        confidence=parse_confidence(sections.get("CONFIDENCE")),
        reasoning=sections.get("REASONING", ""),
        next_steps=[] if complete else parse_steps(sections.get("NEXT_STEPS")),
        pivot=parse_pivot(sections.get("PIVOT")),
    )


def parse_synthesis(raw: str) -> SynthesizedResult:
    sections = split_sections(raw)
    summary = sections.get("SUMMARY", "").strip()
    if not summary:
        raise ParseError("synthesis missing SUMMARY")
    findings = [m.group(1) for m in _BULLET.finditer(sections.get("KEY_FINDINGS", ""))]
    return SynthesizedResult(
        summary=summary,
        key_findings=findings,
        confidence=parse_confidence(sections.get("CONFIDENCE")),
    )
