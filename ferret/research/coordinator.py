"""ResearchCoordinator — plan → dispatch → evaluate → synthesize.

One ``run()`` turns a ResearchTask into a ResearchResult:

    1. Plan        generator proposes (specialist, query, priority) steps;
                   unusable output falls back to a fixed default plan
    2. Dispatch    all steps run concurrently, each bounded by a timeout;
                   a failed specialist contributes an empty finding
    3. Evaluate    a high average relevance over ≥2 productive findings ends
                   the loop without a generator call; otherwise the generator
                   decides (complete? next steps? pivot?)
    4. Synthesize  generator writes summary + key findings; on failure the
                   top-ranked raw results are stitched together instead

Dispatch and evaluate repeat up to the depth preset's iteration count. The
cancel token is checked between phases; a cancelled run raises
``ResearchCancelled`` and produces no result.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable, Iterable, Sequence

import structlog

from ferret.config import CoordinatorSettings, GeneratorSettings
from ferret.errors import GenerationError, ParseError, ResearchCancelled
from ferret.models.plan import (
    Evaluation,
    Finding,
    PlannedStep,
    PriorKnowledge,
    ResearchPlan,
    SearchResult,
    SynthesizedResult,
)
from ferret.models.schemas import (
    DEPTH_PRESETS,
    PivotSuggestion,
    ResearchResult,
    ResearchSource,
    ResearchTask,
)
from ferret.research.parsing import parse_evaluation, parse_plan, parse_synthesis
from ferret.research.specialists import SpecialistRegistry
from ferret.tools.generator import TextGenerator
from ferret.utils.clock import today_human
from ferret.utils.text import estimate_tokens, truncate

logger = structlog.get_logger().bind(component="research.coordinator")

EventSink = Callable[[str, str], Awaitable[None]]

MAX_PLAN_STEPS = 5
MAX_SOURCES = 10
SYNTHESIS_RESULTS_PER_SPECIALIST = 5
SYNTHESIS_SNIPPET_CHARS = 200
EVALUATION_RESULTS_PER_SPECIALIST = 3
EVALUATION_SNIPPET_CHARS = 150
PRIOR_KNOWLEDGE_LIMIT = 3
DEFAULT_RELEVANCE = 0.5


class CancelToken:
    """Cooperative cancellation flag checked by the coordinator between phases."""

    def __init__(self) -> None:
        self._cancelled = False
        self.reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        self._cancelled = True
        self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def check(self, phase: str) -> None:
        if self._cancelled:
            raise ResearchCancelled(f"cancelled before {phase}: {self.reason}")


# ── Specialist routing ───────────────────────────────────────────────────────

_ROUTES: tuple[tuple[str, tuple[re.Pattern[str], ...]], ...] = (
    ("docs", (
        re.compile(r"\b(documentation|docs|library|package|npm|pip|crates|cargo)\b"),
        re.compile(r"\b(how to use|how do i|using|middleware|routing|configuration)\b"),
        re.compile(r"\b(react|vue|angular|svelte|next|hono|express|fastify|django|flask)\b"),
    )),
    ("code", (
        re.compile(r"\b(code|function|class|implement|example|snippet)\b"),
        re.compile(r"\b(github|stackoverflow|bug|error|exception|debug)\b"),
        re.compile(r"\b(show me|how to implement|code for)\b"),
    )),
    ("community", (
        re.compile(r"\b(vs|versus|opinion|think|better|worth|should i|recommend)\b"),
        re.compile(r"\b(hackernews|reddit|twitter|discussion|comparison)\b"),
        re.compile(r"\b(experience|review|pros and cons|alternative)\b"),
    )),
    ("research", (
        re.compile(r"\b(what is|explain|concept|theory|definition|history)\b"),
        re.compile(r"\b(wikipedia|arxiv|paper|academic|research)\b"),
        re.compile(r"\b(algorithm|protocol|standard|specification)\b"),
    )),
)
_WEB_HINT = re.compile(r"\b(search|find|latest|news|current|recent)\b")


def select_specialists(query: str, available: Iterable[str], limit: int = 3) -> list[str]:
    """Keyword routing of *query* to at most *limit* available specialists."""
    names = set(available)
    q = query.lower()
    selected = [
        name for name, patterns in _ROUTES
        if name in names and any(p.search(q) for p in patterns)
    ]
    if ("web" in names) and (not selected or _WEB_HINT.search(q)):
        selected.append("web")
    if not selected:
        selected = [n for n in ("docs", "web") if n in names]
    return selected[:limit]


def average_relevance(findings: Sequence[Finding]) -> float:
    """Mean relevance over every result; a result without one counts as 0.5."""
    scores = [
        r.relevance if r.relevance is not None else DEFAULT_RELEVANCE
        for f in findings for r in f.results
    ]
    return sum(scores) / len(scores) if scores else 0.0


def ranked_results(findings: Sequence[Finding]) -> list[SearchResult]:
    """All results, highest relevance first (stable within equal scores)."""
    results = [r for f in findings for r in f.results]
    return sorted(
        results,
        key=lambda r: r.relevance if r.relevance is not None else DEFAULT_RELEVANCE,
        reverse=True,
    )


class ResearchCoordinator:
    """Runs the research loop for one task at a time (instances are reusable).

    Args:
        generator:   Anything with ``generate(prompt, max_tokens, temperature)``.
                     None means every generation phase takes its fallback.
        specialists: Registry the plan's steps are dispatched to.
        config:      Loop bounds; defaults to ``CoordinatorSettings()``.
        generation:  max_tokens / temperature for generator calls.
        on_event:    Optional ``async (task_id, message)`` progress sink.
    """

    def __init__(
        self,
        generator: TextGenerator | None,
        specialists: SpecialistRegistry,
        config: CoordinatorSettings | None = None,
        generation: GeneratorSettings | None = None,
        on_event: EventSink | None = None,
    ) -> None:
        self.generator = generator
        self.specialists = specialists
        self.config = config or CoordinatorSettings()
        self.generation = generation or GeneratorSettings()
        self._on_event = on_event

    # ── Full loop ─────────────────────────────────────────────────────────

    async def run(
        self,
        task: ResearchTask,
        *,
        cancel: CancelToken | None = None,
        prior_knowledge: Sequence[PriorKnowledge] = (),
        project_context: str | None = None,
    ) -> ResearchResult:
        cancel = cancel or CancelToken()
        preset = DEPTH_PRESETS[task.depth]
        iterations = max(1, min(preset.iterations, self.config.max_iterations))
        log = logger.bind(task_id=task.id)

        cancel.check("plan")
        plan = await self.plan(task.query, task.context, prior_knowledge, project_context)
        await self._emit(task.id, f"planned {len(plan.steps)} step(s): {plan.strategy[:80]}"
                         + (" [fallback]" if plan.fallback else ""))

        findings: list[Finding] = []
        pivot: PivotSuggestion | None = None
        steps = plan.steps
        for iteration in range(1, iterations + 1):
            cancel.check("dispatch")
            new = await self.dispatch(steps, preset.max_results)
            findings.extend(new)
            await self._emit(
                task.id,
                f"iteration {iteration}: {sum(len(f.results) for f in new)} result(s) "
                f"from {', '.join(f.specialist for f in new)}",
            )

            cancel.check("evaluate")
            evaluation = await self.evaluate(task.query, findings)
            if evaluation.pivot is not None:
                pivot = evaluation.pivot
            await self._emit(
                task.id,
                f"evaluated: complete={evaluation.complete} confidence={evaluation.confidence:.2f}",
            )
            if evaluation.complete or not evaluation.next_steps:
                break
            steps = evaluation.next_steps[:MAX_PLAN_STEPS]

        cancel.check("synthesize")
        synthesis = await self.synthesize(task.query, findings, pivot)
        cancel.check("finalize")

        result = self.to_research_result(synthesis, findings, pivot)
        log.info(
            "research_run_complete",
            findings=len(findings),
            sources=len(result.sources),
            confidence=round(result.confidence, 3),
        )
        await self._emit(task.id, f"synthesized: {len(result.sources)} source(s), "
                                  f"confidence {result.confidence:.2f}")
        return result

    # ── Phase 1: plan ─────────────────────────────────────────────────────

    async def plan(
        self,
        query: str,
        context: str | None = None,
        prior_knowledge: Sequence[PriorKnowledge] = (),
        project_context: str | None = None,
    ) -> ResearchPlan:
        """Generator plan, or the default plan on any failure. Never raises."""
        prompt = build_plan_prompt(
            query, context, prior_knowledge, project_context, specialists=self.specialists.names()
        )
        try:
            plan = parse_plan(await self._generate(prompt))
        except (GenerationError, ParseError) as exc:
            logger.warning("plan_fallback", query=query, error=str(exc))
            return self.fallback_plan(query)
        plan.steps = plan.steps[:MAX_PLAN_STEPS]
        logger.debug("plan_created", query=query, steps=len(plan.steps), strategy=plan.strategy[:80])
        return plan

    def fallback_plan(self, query: str) -> ResearchPlan:
        available = self.specialists.names()
        names = [n for n in self.config.default_specialists if n in self.specialists]
        if not names:
            names = select_specialists(query, available) or available[:1]
        if not names:
            names = list(self.config.default_specialists)
        return ResearchPlan(
            strategy="Broad multi-source search",
            rationale="Fallback plan using primary specialists",
            steps=[PlannedStep(specialist=n, query=query, priority=i) for i, n in enumerate(names, 1)],
            fallback=True,
        )

    # ── Phase 2: dispatch ─────────────────────────────────────────────────

    async def dispatch(self, steps: Sequence[PlannedStep], max_results: int) -> list[Finding]:
        """Run every step concurrently; failures become empty findings."""
        return list(await asyncio.gather(*(self._run_step(s, max_results) for s in steps)))

    async def _run_step(self, step: PlannedStep, max_results: int) -> Finding:
        specialist = self.specialists.get(step.specialist)
        if specialist is None:
            logger.debug("specialist_unknown", specialist=step.specialist)
            return Finding(specialist=step.specialist, query=step.query, error="unknown specialist")
        try:
            results = await asyncio.wait_for(
                specialist.run(step.query, max_results),
                timeout=self.config.specialist_timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "specialist_timeout",
                specialist=step.specialist,
                timeout_s=self.config.specialist_timeout_s,
            )
            return Finding(specialist=step.specialist, query=step.query, error="timeout")
        except Exception as exc:
            # Specialist.run already absorbs errors; this covers foreign implementations
            logger.warning("specialist_error", specialist=step.specialist, error=str(exc))
            return Finding(specialist=step.specialist, query=step.query, error=str(exc))
        return Finding(specialist=step.specialist, query=step.query, results=results[:max_results])

    # ── Phase 3: evaluate ─────────────────────────────────────────────────

    async def evaluate(self, query: str, findings: Sequence[Finding]) -> Evaluation:
        avg = average_relevance(findings)
        productive = [f for f in findings if f.results]
        if avg > self.config.completion_threshold and len(productive) >= 2:
            logger.debug("evaluation_fast_path", average_relevance=round(avg, 3))
            return Evaluation(
                complete=True,
                confidence=avg,
                reasoning="High confidence findings from multiple specialists",
            )

        try:
            evaluation = parse_evaluation(await self._generate(
                build_evaluation_prompt(query, findings, specialists=self.specialists.names())
            ))
        except (GenerationError, ParseError) as exc:
            logger.warning("evaluation_fallback", query=query, error=str(exc))
            return Evaluation(
                complete=True,
                confidence=avg,
                reasoning="Evaluation failed, returning collected findings",
            )
        logger.debug(
            "evaluation_complete",
            complete=evaluation.complete,
            confidence=evaluation.confidence,
            next_steps=len(evaluation.next_steps),
            pivot=evaluation.pivot is not None,
        )
        return evaluation

    # ── Phase 4: synthesize ───────────────────────────────────────────────

    async def synthesize(
        self,
        query: str,
        findings: Sequence[Finding],
        pivot: PivotSuggestion | None = None,
    ) -> SynthesizedResult:
        if not any(f.results for f in findings):
            return SynthesizedResult(
                summary=f'Unable to find relevant information for: "{query}"',
                confidence=0.0,
            )
        try:
            return parse_synthesis(
                await self._generate(build_synthesis_prompt(query, findings, pivot))
            )
        except (GenerationError, ParseError) as exc:
            logger.warning("synthesis_fallback", query=query, error=str(exc))
            return self.fallback_synthesis(query, findings)

    def fallback_synthesis(self, query: str, findings: Sequence[Finding]) -> SynthesizedResult:
        ranked = ranked_results(findings)
        top = ranked[:5]
        summary = (
            f'Research for "{query}" found {len(ranked)} results. '
            f"Top findings: {', '.join(r.title for r in top)}."
        )
        return SynthesizedResult(
            summary=summary,
            key_findings=[f"{r.title}: {truncate(r.snippet, 100)}" if r.snippet else r.title for r in top],
            confidence=average_relevance(findings),
        )

    # ── Result assembly ───────────────────────────────────────────────────

    @staticmethod
    def to_research_result(
        synthesis: SynthesizedResult,
        findings: Sequence[Finding],
        pivot: PivotSuggestion | None,
    ) -> ResearchResult:
        sources: list[ResearchSource] = []
        seen: set[str] = set()
        for r in ranked_results(findings):
            if r.url in seen:
                continue
            seen.add(r.url)
            sources.append(ResearchSource(
                title=r.title,
                url=r.url,
                snippet=truncate(r.snippet, 300) or None,
                relevance=r.relevance if r.relevance is not None else DEFAULT_RELEVANCE,
            ))
            if len(sources) >= MAX_SOURCES:
                break

        lines = [synthesis.summary]
        if synthesis.key_findings:
            lines += ["", "Key findings:"] + [f"- {k}" for k in synthesis.key_findings]
        if pivot is not None:
            lines += ["", f"Alternative approach ({pivot.urgency}): {pivot.alternative}",
                      f"Reason: {pivot.reason}"]
        if sources:
            lines += ["", "Sources:"] + [f"- {s.title} ({s.url})" for s in sources]

        return ResearchResult(
            summary=synthesis.summary,
            full_content="\n".join(lines),
            sources=sources,
            tokens_used=estimate_tokens(synthesis.summary),
            confidence=synthesis.confidence,
            key_findings=synthesis.key_findings,
            pivot=pivot,
        )

    # ── Helpers ───────────────────────────────────────────────────────────

    async def _generate(self, prompt: str) -> str:
        if self.generator is None:
            raise GenerationError("no text generator configured")
        try:
            return await self.generator.generate(
                prompt,
                max_tokens=self.generation.max_tokens,
                temperature=self.generation.temperature,
            )
        except GenerationError:
            raise
        except Exception as exc:
            raise GenerationError(f"{type(exc).__name__}: {exc}") from exc

    async def _emit(self, task_id: str, message: str) -> None:
        if self._on_event is None:
            return
        try:
            await self._on_event(task_id, message)
        except Exception as exc:
            logger.debug("event_sink_failed", error=str(exc))


# ── Prompts ──────────────────────────────────────────────────────────────────

_NO_YEARS = (
    "**CRITICAL: NEVER add years (2024, 2025, etc) to search queries.**\n"
    'BAD: "react native best practices 2024"\n'
    'GOOD: "react native best practices"\n'
    "Search engines handle recency automatically."
)

_SPECIALIST_ROLES = {
    "docs": 'Library documentation - "How do I use X?"',
    "code": 'Code examples - "Show me code that does X"',
    "community": 'Discussions and opinions - "What do people think of X?"',
    "research": 'Reference and academic sources - "What is X?"',
    "web": "General search - fallback for broad queries",
}


def specialist_guide(specialists: Sequence[str] = ()) -> str:
    """One line per specialist the plan may use; all known roles when none given."""
    names = list(specialists) or list(_SPECIALIST_ROLES)
    return "\n".join(
        f"- **{n}**: {_SPECIALIST_ROLES.get(n, 'Registered search specialist')}" for n in names
    )


def _step_examples(specialists: Sequence[str], label: str, count: int) -> list[str]:
    names = (list(specialists) or list(_SPECIALIST_ROLES))[:count]
    return [f'- specialist:{n} query:"{label}" priority:{i}' for i, n in enumerate(names, 1)]


def build_plan_prompt(
    query: str,
    context: str | None = None,
    prior_knowledge: Sequence[PriorKnowledge] = (),
    project_context: str | None = None,
    *,
    specialists: Sequence[str] = (),
) -> str:
    parts = [
        "You are a research coordinator planning how to investigate a query.",
        "",
        f"**Current Date: {today_human()}**",
        "",
        _NO_YEARS,
        "",
        "## Research Query",
        f'"{query}"',
    ]
    if context:
        parts += ["", "## Additional Context", context]
    if prior_knowledge:
        parts += ["", "## Prior Knowledge (from previous research)"]
        for pk in list(prior_knowledge)[:PRIOR_KNOWLEDGE_LIMIT]:
            parts.append(
                f'- "{pk.query}" ({round(pk.age_hours)}h ago, {round(pk.confidence * 100)}% conf): '
                f"{truncate(pk.summary, 150)}"
            )
        parts += ["", "Build on this prior knowledge. Focus on NEW information not already covered."]
    if project_context:
        parts += ["", "## Project Context", project_context,
                  "Prioritize information relevant to this tech stack."]
    parts += [
        "",
        "## Available Specialists",
        specialist_guide(specialists),
        "",
        "## Your Task",
        "Create a research plan. Decide which specialists should search and with what queries.",
        "Only use the specialists listed above.",
        "If a completely different approach might be better, note it in your strategy.",
        "",
        "Respond in this exact format:",
        "STRATEGY: <brief strategy description>",
        "RATIONALE: <why this approach>",
        "STEPS:",
        *_step_examples(specialists, "search query", 2),
    ]
    return "\n".join(parts)


def build_evaluation_prompt(
    query: str,
    findings: Sequence[Finding],
    *,
    specialists: Sequence[str] = (),
) -> str:
    parts = [
        "You are evaluating research progress and deciding next steps.",
        "",
        "## Original Query",
        f'"{query}"',
        "",
        "## Findings So Far",
    ]
    for finding in findings:
        parts.append(f"### From {finding.specialist} ({len(finding.results)} results)")
        for r in finding.results[:EVALUATION_RESULTS_PER_SPECIALIST]:
            parts.append(f"- **{r.title}**: {truncate(r.snippet, EVALUATION_SNIPPET_CHARS)}")
        parts.append("")
    parts += [
        "## Your Task",
        "Evaluate: Do we have enough to answer confidently? Should we dig deeper? Pivot?",
        "If findings suggest a DIFFERENT solution would be better, flag it as a pivot.",
        "Next steps may only use: " + ", ".join(list(specialists) or list(_SPECIALIST_ROLES)),
        "",
        _NO_YEARS,
        "",
        "Respond in this exact format:",
        "COMPLETE: true/false",
        "CONFIDENCE: 0.0-1.0",
        "REASONING: <why>",
        "NEXT_STEPS: (if not complete)",
        *_step_examples(specialists, "query", 1),
        "PIVOT: (optional, if alternative approach detected)",
        "alternative: <description>",
        "reason: <why this might be better>",
        "urgency: low/medium/high",
    ]
    return "\n".join(parts)


def build_synthesis_prompt(
    query: str,
    findings: Sequence[Finding],
    pivot: PivotSuggestion | None = None,
) -> str:
    parts = [
        "Synthesize research findings into a concise, actionable summary.",
        "",
        f"**Current Date: {today_human()}**",
        "Prioritize recent information and note if any findings may be outdated.",
        "",
        "## Original Query",
        f'"{query}"',
        "",
        "## All Findings",
    ]
    for finding in findings:
        if not finding.results:
            continue
        parts.append(f"### {finding.specialist} Results")
        for r in finding.results[:SYNTHESIS_RESULTS_PER_SPECIALIST]:
            parts.append(f"- **{r.title}**")
            if r.snippet:
                parts.append(f"  {truncate(r.snippet, SYNTHESIS_SNIPPET_CHARS)}")
            parts.append(f"  URL: {r.url}")
        parts.append("")
    if pivot is not None:
        parts += [
            "## Alternative Approach Detected",
            f"Alternative: {pivot.alternative}",
            f"Reason: {pivot.reason}",
            f"Urgency: {pivot.urgency}",
            "",
        ]
    parts += [
        "## Your Task",
        "1. Directly answer the query with key insights",
        "2. List 5-8 key findings as bullet points",
        "3. Note any caveats or alternative approaches",
        "",
        "Respond in this exact format:",
        "SUMMARY: <4-6 sentence summary answering the query>",
        "KEY_FINDINGS:",
        "- <finding 1>",
        "- <finding 2>",
        "CONFIDENCE: 0.0-1.0",
    ]
    return "\n".join(parts)
