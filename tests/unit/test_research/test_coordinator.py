"""Unit tests for ResearchCoordinator.

Covers:
  - normal plan → dispatch → evaluate → synthesize run
  - fallback plan / evaluation / synthesis when the generator fails
  - high-relevance fast path (no evaluation call)
  - unknown and slow specialists contribute empty findings
  - multi-iteration deep runs, pivots, cancellation, progress events
  - end-to-end through TaskQueue + WorkerPool
"""

from __future__ import annotations

import pytest

from ferret.config import CoordinatorSettings, QueueSettings
from ferret.errors import GenerationError, ResearchCancelled
from ferret.models.plan import Finding, PlannedStep, PriorKnowledge
from ferret.models.schemas import ResearchTask, TaskSpec
from ferret.research.coordinator import (
    CancelToken,
    ResearchCoordinator,
    average_relevance,
    build_evaluation_prompt,
    build_plan_prompt,
    select_specialists,
)
from ferret.research.specialists import SpecialistRegistry, default_registry
from ferret.tasks import TaskQueue, WorkerPool


def _task(query="what is rate limiting", depth="quick") -> ResearchTask:
    return ResearchTask(query=query, depth=depth)


# ─────────────────────────────────────────────────────────────────────────────
# 1. Normal path
# ─────────────────────────────────────────────────────────────────────────────

async def test_full_run_uses_generator_for_every_phase(fake_generator, registry):
    coordinator = ResearchCoordinator(fake_generator, registry)
    result = await coordinator.run(_task())

    assert fake_generator.calls_for("plan") == 1
    assert fake_generator.calls_for("evaluate") == 1
    assert fake_generator.calls_for("synthesize") == 1
    assert registry.get("research").queries == ["rate limiting"]
    assert registry.get("community").queries == ["rate limiting token bucket"]

    assert result.summary.startswith("Rate limiting caps")
    assert result.confidence == pytest.approx(0.85)
    assert result.key_findings == ["Token bucket allows bursts", "Sliding window is smoother"]
    assert "Key findings:" in result.full_content
    assert result.tokens_used > 0


async def test_sources_are_ranked_and_deduplicated(fake_generator, specialist_factory, make_results):
    shared = make_results("same", 2, relevance=0.9)
    registry = SpecialistRegistry([
        specialist_factory("research", shared + make_results("wiki", 2, relevance=0.4)),
        specialist_factory("community", shared),
    ])
    result = await ResearchCoordinator(fake_generator, registry).run(_task(depth="medium"))

    urls = [s.url for s in result.sources]
    assert len(urls) == len(set(urls)) == 4
    assert [s.relevance for s in result.sources] == sorted((s.relevance for s in result.sources), reverse=True)


async def test_quick_depth_caps_results_per_specialist(fake_generator, specialist_factory, make_results):
    registry = SpecialistRegistry([
        specialist_factory("research", make_results("wiki", 10, relevance=0.5)),
        specialist_factory("community", make_results("hn", 10, relevance=0.5)),
    ])
    result = await ResearchCoordinator(fake_generator, registry).run(_task(depth="quick"))
    assert len(result.sources) == 6


# ─────────────────────────────────────────────────────────────────────────────
# 2. Fallbacks
# ─────────────────────────────────────────────────────────────────────────────

async def test_generator_down_falls_back_everywhere(generator_factory, specialist_factory, make_results):
    generator = generator_factory(raises=GenerationError("connection refused"))
    registry = SpecialistRegistry([
        specialist_factory("web", make_results("web", 4, relevance=0.6)),
        specialist_factory("docs", make_results("docs", 4, relevance=0.7)),
    ])
    coordinator = ResearchCoordinator(generator, registry)

    plan = await coordinator.plan("what is rate limiting")
    assert plan.fallback is True
    assert [s.specialist for s in plan.steps] == ["docs", "web"]

    result = await coordinator.run(_task())
    assert result.summary.startswith('Research for "what is rate limiting" found 6 results')
    assert 0.0 <= result.confidence <= 1.0
    assert result.sources


async def test_fallback_plan_routes_when_no_default_specialist_registered(registry):
    coordinator = ResearchCoordinator(None, registry)
    plan = await coordinator.plan("what is rate limiting")
    assert plan.fallback is True
    assert [s.specialist for s in plan.steps] == ["research"]


async def test_fallback_plan_with_shipped_registry_uses_first_registered():
    registry = default_registry()
    plan = await ResearchCoordinator(None, registry).plan("rate limiting in node")
    assert plan.fallback is True
    assert [s.specialist for s in plan.steps] == ["research"]
    assert all(s.specialist in registry for s in plan.steps)


async def test_fallback_plan_with_empty_registry_uses_configured_defaults():
    coordinator = ResearchCoordinator(None, SpecialistRegistry())
    plan = await coordinator.plan("rate limiting in node")
    assert [s.specialist for s in plan.steps] == ["docs", "code", "web"]


async def test_unparseable_plan_falls_back(generator_factory, registry):
    generator = generator_factory(plan="I would search the web.")
    plan = await ResearchCoordinator(generator, registry).plan("rate limiting")
    assert plan.fallback is True


async def test_unparseable_synthesis_stitches_top_results(generator_factory, registry):
    generator = generator_factory(synthesize="Here is what I found.")
    result = await ResearchCoordinator(generator, registry).run(_task())
    assert "wiki result 0" in result.summary
    assert result.confidence == pytest.approx(0.7)


async def test_no_results_skips_synthesis(fake_generator, specialist_factory):
    registry = SpecialistRegistry([specialist_factory("research"), specialist_factory("community")])
    result = await ResearchCoordinator(fake_generator, registry).run(_task())
    assert result.summary == 'Unable to find relevant information for: "what is rate limiting"'
    assert result.confidence == 0.0
    assert result.sources == []
    assert fake_generator.calls_for("synthesize") == 0


# ─────────────────────────────────────────────────────────────────────────────
# 3. Dispatch edge cases
# ─────────────────────────────────────────────────────────────────────────────

async def test_unknown_specialist_yields_empty_finding(registry):
    coordinator = ResearchCoordinator(None, registry)
    findings = await coordinator.dispatch(
        [PlannedStep(specialist="ghost", query="q"), PlannedStep(specialist="research", query="q")],
        max_results=3,
    )
    assert findings[0].results == []
    assert findings[0].error == "unknown specialist"
    assert len(findings[1].results) == 3


async def test_slow_specialist_times_out(specialist_factory, make_results):
    registry = SpecialistRegistry([
        specialist_factory("research", make_results("wiki", 2), delay=5),
        specialist_factory("community", make_results("hn", 2)),
    ])
    coordinator = ResearchCoordinator(None, registry, CoordinatorSettings(specialist_timeout_s=0.05))
    findings = await coordinator.dispatch(
        [PlannedStep(specialist="research", query="q"), PlannedStep(specialist="community", query="q")],
        max_results=5,
    )
    assert findings[0].error == "timeout"
    assert len(findings[1].results) == 2


async def test_failing_specialist_is_absorbed(specialist_factory):
    registry = SpecialistRegistry([specialist_factory("research", raises=RuntimeError("503"))])
    findings = await ResearchCoordinator(None, registry).dispatch(
        [PlannedStep(specialist="research", query="q")], max_results=5
    )
    assert findings[0].results == []


# ─────────────────────────────────────────────────────────────────────────────
# 4. Evaluation
# ─────────────────────────────────────────────────────────────────────────────

async def test_fast_path_skips_evaluation_call(fake_generator, specialist_factory, make_results):
    registry = SpecialistRegistry([
        specialist_factory("research", make_results("wiki", 3, relevance=0.95)),
        specialist_factory("community", make_results("hn", 3, relevance=0.9)),
    ])
    await ResearchCoordinator(fake_generator, registry).run(_task())
    assert fake_generator.calls_for("evaluate") == 0


async def test_deep_run_follows_next_steps(generator_factory, registry):
    evaluation = (
        "COMPLETE: false\n"
        "CONFIDENCE: 0.5\n"
        "REASONING: need algorithms\n"
        "NEXT_STEPS:\n"
        '- specialist:research query:"sliding window log" priority:1\n'
    )
    generator = generator_factory(evaluate=evaluation)
    await ResearchCoordinator(generator, registry).run(_task(depth="deep"))

    assert registry.get("research").queries == ["rate limiting", "sliding window log"]
    assert generator.calls_for("evaluate") == 2


async def test_quick_run_never_iterates(generator_factory, registry):
    evaluation = 'COMPLETE: false\nCONFIDENCE: 0.5\nNEXT_STEPS:\n- specialist:research query:"more" priority:1\n'
    generator = generator_factory(evaluate=evaluation)
    await ResearchCoordinator(generator, registry).run(_task(depth="quick"))
    assert registry.get("research").queries == ["rate limiting"]


async def test_pivot_is_carried_into_result(generator_factory, registry):
    evaluation = (
        "COMPLETE: true\n"
        "CONFIDENCE: 0.8\n"
        "PIVOT:\n"
        "alternative: use the API gateway's built-in limiter\n"
        "reason: no code to maintain\n"
        "urgency: high\n"
    )
    generator = generator_factory(evaluate=evaluation)
    result = await ResearchCoordinator(generator, registry).run(_task())

    assert result.pivot is not None
    assert result.pivot.urgency == "high"
    assert "Alternative approach (high)" in result.full_content
    synthesis_prompt = [p for phase, p in generator.calls if phase == "synthesize"][0]
    assert "## Alternative Approach Detected" in synthesis_prompt


def test_average_relevance_defaults_missing_scores(make_results):
    findings = [Finding(specialist="a", query="q", results=make_results("x", 2, relevance=None))]
    assert average_relevance(findings) == pytest.approx(0.5)
    assert average_relevance([]) == 0.0


# ─────────────────────────────────────────────────────────────────────────────
# 5. Cancellation and events
# ─────────────────────────────────────────────────────────────────────────────

async def test_cancelled_token_stops_before_planning(fake_generator, registry):
    token = CancelToken()
    token.cancel("timeout")
    with pytest.raises(ResearchCancelled):
        await ResearchCoordinator(fake_generator, registry).run(_task(), cancel=token)
    assert fake_generator.calls == []


async def test_cancel_during_plan_stops_before_dispatch(generator_factory, registry):
    token = CancelToken()

    def plan_then_cancel(prompt):
        token.cancel("timeout")
        return 'STRATEGY: s\nSTEPS:\n- specialist:research query:"rate limiting" priority:1\n'

    generator = generator_factory(plan=plan_then_cancel)
    with pytest.raises(ResearchCancelled, match="dispatch"):
        await ResearchCoordinator(generator, registry).run(_task(), cancel=token)
    assert registry.get("research").queries == []


async def test_progress_events_are_emitted(fake_generator, registry):
    events = []

    async def sink(task_id, message):
        events.append(message)

    await ResearchCoordinator(fake_generator, registry, on_event=sink).run(_task())
    assert events[0].startswith("planned 2 step(s)")
    assert any(e.startswith("iteration 1:") for e in events)
    assert events[-1].startswith("synthesized:")


async def test_broken_event_sink_does_not_break_run(fake_generator, registry):
    async def sink(task_id, message):
        raise ConnectionError("redis down")

    result = await ResearchCoordinator(fake_generator, registry, on_event=sink).run(_task())
    assert result.summary


# ─────────────────────────────────────────────────────────────────────────────
# 6. Routing and prompts
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("query,expected", [
    ("how do i use hono middleware", ["docs"]),
    ("show me code for a token bucket", ["code"]),
    ("redis vs memcached", ["community"]),
    ("latest react release", ["docs", "web"]),
    ("something vague", ["web"]),
])
def test_select_specialists(query, expected):
    assert select_specialists(query, ["docs", "code", "community", "research", "web"]) == expected


def test_plan_prompt_includes_prior_knowledge_and_project():
    prompt = build_plan_prompt(
        "rate limiting",
        prior_knowledge=[PriorKnowledge(query="api throttling", summary="Use 429s", confidence=0.9, age_hours=5)],
        project_context="Hono on Cloudflare Workers",
    )
    assert '- "api throttling" (5h ago, 90% conf): Use 429s' in prompt
    assert "## Project Context" in prompt


def test_prompts_name_only_registered_specialists():
    plan_prompt = build_plan_prompt("rate limiting", specialists=["research", "community"])
    assert "- **research**:" in plan_prompt
    assert "- **community**:" in plan_prompt
    assert 'specialist:research query:"search query" priority:1' in plan_prompt
    for absent in ("web", "code", "docs"):
        assert f"**{absent}**" not in plan_prompt
        assert f"specialist:{absent}" not in plan_prompt

    eval_prompt = build_evaluation_prompt("rate limiting", [], specialists=["community"])
    assert "Next steps may only use: community" in eval_prompt
    assert 'specialist:community query:"query" priority:1' in eval_prompt
    assert "specialist:web" not in eval_prompt


async def test_coordinator_prompts_follow_the_registry(fake_generator, registry):
    await ResearchCoordinator(fake_generator, registry).plan("rate limiting")
    _, prompt = fake_generator.calls[0]
    assert "- **research**:" in prompt
    assert "**web**" not in prompt


# ─────────────────────────────────────────────────────────────────────────────
# 7. End to end through the queue
# ─────────────────────────────────────────────────────────────────────────────

async def test_end_to_end_with_generator_down(store, generator_factory, specialist_factory, make_results):
    registry = SpecialistRegistry([
        specialist_factory("web", make_results("web", 3, relevance=0.6)),
        specialist_factory("docs", make_results("docs", 3, relevance=0.7)),
    ])
    coordinator = ResearchCoordinator(generator_factory(raises=GenerationError("down")), registry)
    queue = TaskQueue(store, QueueSettings())
    task_id = await queue.enqueue(TaskSpec(query="what is rate limiting", depth="quick"))

    await WorkerPool(queue, coordinator).run_until_idle()

    task = await queue.get(task_id)
    assert task.status == "completed"
    assert task.result.summary
    assert 0.0 <= task.result.confidence <= 1.0
    assert len(task.result.sources) >= 1
