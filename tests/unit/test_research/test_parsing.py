"""Unit tests for the tagged-text parsers used by the coordinator."""

from __future__ import annotations

import pytest

from ferret.errors import ParseError
from ferret.research.parsing import (
    parse_confidence,
    parse_evaluation,
    parse_pivot,
    parse_plan,
    parse_steps,
    parse_synthesis,
    split_sections,
)


# ─────────────────────────────────────────────────────────────────────────────
# 1. Sections
# ─────────────────────────────────────────────────────────────────────────────

def test_split_sections_is_case_insensitive_and_first_wins():
    raw = "strategy: first\nSTRATEGY: second\n**Rationale**: because\n"
    sections = split_sections(raw)
    assert sections["STRATEGY"] == "first"
    assert sections["RATIONALE"] == "because"


def test_split_sections_drops_think_blocks():
    raw = "<think>SUMMARY: not this</think>\nSUMMARY: this one\nCONFIDENCE: 0.5"
    assert split_sections(raw)["SUMMARY"] == "this one"


# ─────────────────────────────────────────────────────────────────────────────
# 2. Confidence
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("value,expected", [
    ("0.8", 0.8),
    (".75", 0.75),
    ("80%", 0.8),
    ("85", 0.85),
    ("1.0 (very sure)", 1.0),
])
def test_parse_confidence(value, expected):
    assert parse_confidence(value) == pytest.approx(expected)


@pytest.mark.parametrize("value", [None, "", "high"])
def test_parse_confidence_rejects_missing_or_unreadable(value):
    with pytest.raises(ParseError):
        parse_confidence(value)


# ─────────────────────────────────────────────────────────────────────────────
# 3. Steps and plans
# ─────────────────────────────────────────────────────────────────────────────

def test_parse_steps_defaults_priority_to_position():
    body = '- specialist:web query:"a"\n- specialist:Code query:"b" priority:1\n- junk line'
    steps = parse_steps(body)
    assert [(s.specialist, s.query, s.priority) for s in steps] == [("web", "a", 1), ("code", "b", 1)]


def test_parse_plan_sorts_by_priority():
    raw = (
        "STRATEGY: docs then code\n"
        "RATIONALE: well documented\n"
        "STEPS:\n"
        '- specialist:code query:"token bucket example" priority:2\n'
        '- specialist:docs query:"rate limiting middleware" priority:1\n'
    )
    plan = parse_plan(raw)
    assert plan.strategy == "docs then code"
    assert [s.specialist for s in plan.steps] == ["docs", "code"]
    assert plan.fallback is False


def test_parse_plan_without_steps_raises():
    with pytest.raises(ParseError):
        parse_plan("STRATEGY: nothing\nSTEPS:\n- none")


# ─────────────────────────────────────────────────────────────────────────────
# 4. Evaluation
# ─────────────────────────────────────────────────────────────────────────────

def test_parse_evaluation_incomplete_with_next_steps_and_pivot():
    raw = (
        "COMPLETE: false\n"
        "CONFIDENCE: 0.4\n"
        "REASONING: thin coverage\n"
        "NEXT_STEPS:\n"
        '- specialist:docs query:"sliding window" priority:1\n'
        "PIVOT:\n"
        "alternative: use an API gateway\n"
        "reason: built-in quotas\n"
        "urgency: HIGH\n"
    )
    evaluation = parse_evaluation(raw)
    assert evaluation.complete is False
    assert evaluation.confidence == pytest.approx(0.4)
    assert [s.query for s in evaluation.next_steps] == ["sliding window"]
    assert evaluation.pivot is not None
    assert evaluation.pivot.urgency == "high"
    assert evaluation.pivot.alternative == "use an API gateway"


def test_parse_evaluation_complete_ignores_next_steps():
    raw = 'COMPLETE: yes\nCONFIDENCE: 90%\nNEXT_STEPS:\n- specialist:web query:"x" priority:1'
    evaluation = parse_evaluation(raw)
    assert evaluation.complete is True
    assert evaluation.next_steps == []


def test_parse_evaluation_requires_complete():
    with pytest.raises(ParseError):
        parse_evaluation("CONFIDENCE: 0.9\nREASONING: fine")


def test_parse_pivot_none_and_default_urgency():
    assert parse_pivot("alternative: none") is None
    assert parse_pivot(None) is None
    pivot = parse_pivot("alternative: use SQLite\nreason: simpler")
    assert pivot.urgency == "medium"


# ─────────────────────────────────────────────────────────────────────────────
# 5. Synthesis
# ─────────────────────────────────────────────────────────────────────────────

def test_parse_synthesis_bullets():
    raw = (
        "SUMMARY: Use a token bucket.\n"
        "KEY_FINDINGS:\n"
        "- bursts are allowed\n"
        "* refill rate matters\n"
        "1. keep state in Redis\n"
        "CONFIDENCE: 0.7\n"
    )
    result = parse_synthesis(raw)
    assert result.summary == "Use a token bucket."
    assert result.key_findings == ["bursts are allowed", "refill rate matters", "keep state in Redis"]
    assert result.confidence == pytest.approx(0.7)


def test_parse_synthesis_requires_summary():
    with pytest.raises(ParseError):
        parse_synthesis("KEY_FINDINGS:\n- x\nCONFIDENCE: 0.7")
