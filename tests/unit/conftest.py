"""Unit-test conftest — FakeGenerator, FakeSpecialist, store fixtures and builders.

All fixtures here are available to every test under tests/unit/ without import.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from ferret.config import FerretSettings
from ferret.errors import GenerationError
from ferret.models.plan import SearchResult
from ferret.models.schemas import ResearchResult, ResearchSource
from ferret.research.specialists import Specialist, SpecialistRegistry
from ferret.research.store import KnowledgeStore


# ─────────────────────────────────────────────────────────────────────────────
# FakeGenerator: drop-in replacement for ChatCompletionsGenerator
# ─────────────────────────────────────────────────────────────────────────────

PHASE_PREFIXES = {
    "plan": "You are a research coordinator planning",
    "evaluate": "You are evaluating research progress",
    "synthesize": "Synthesize research findings",
}

PLAN_TEXT = """STRATEGY: Compare algorithms, then look at middleware
RATIONALE: Rate limiting is well documented
STEPS:
- specialist:research query:"rate limiting" priority:1
- specialist:community query:"rate limiting token bucket" priority:2
"""

EVALUATION_COMPLETE = """COMPLETE: true
CONFIDENCE: 0.9
REASONING: Two good sources agree
"""

SYNTHESIS_TEXT = """SUMMARY: Rate limiting caps how many requests a client may make in a time window.
KEY_FINDINGS:
- Token bucket allows bursts
- Sliding window is smoother
CONFIDENCE: 0.85
"""


class FakeGenerator:
    """Configurable fake TextGenerator for unit tests.

    Responses are chosen by the phase the prompt belongs to (plan, evaluate,
    synthesize). A response may be a string, an exception instance (raised),
    or a callable ``(prompt) -> str``.

    Args:
        plan / evaluate / synthesize: Per-phase responses.
        delay:  Seconds to sleep before every response.
        raises: If set, every call raises this exception.
    """

    def __init__(
        self,
        *,
        plan: Any = PLAN_TEXT,
        evaluate: Any = EVALUATION_COMPLETE,
        synthesize: Any = SYNTHESIS_TEXT,
        delay: float = 0.0,
        raises: Exception | None = None,
    ) -> None:
        self.responses = {"plan": plan, "evaluate": evaluate, "synthesize": synthesize}
        self.delay = delay
        self.raises = raises
        # Call log for assertion: (phase, prompt)
        self.calls: list[tuple[str, str]] = []

    @staticmethod
    def phase_of(prompt: str) -> str:
        for phase, prefix in PHASE_PREFIXES.items():
            if prompt.startswith(prefix):
                return phase
        return "unknown"

    def calls_for(self, phase: str) -> int:
        return sum(1 for p, _ in self.calls if p == phase)

    async def generate(self, prompt: str, *, max_tokens: int = 1024, temperature: float = 0.3) -> str:
        phase = self.phase_of(prompt)
        self.calls.append((phase, prompt))
        if self.delay > 0:
            await asyncio.sleep(self.delay)
        if self.raises:
            raise self.raises
        response = self.responses.get(phase)
        if response is None:
            raise GenerationError(f"no fake response for phase {phase}")
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(prompt)
        return response


# ─────────────────────────────────────────────────────────────────────────────
# FakeSpecialist
# ─────────────────────────────────────────────────────────────────────────────

class FakeSpecialist(Specialist):
    """Returns canned results; optionally slow or failing."""

    def __init__(
        self,
        name: str,
        results: list[SearchResult] | None = None,
        *,
        delay: float = 0.0,
        raises: Exception | None = None,
    ) -> None:
        self.name = name
        super().__init__()
        self.results = results if results is not None else []
        self.delay = delay
        self.raises = raises
        self.queries: list[str] = []

    async def search(self, query: str, max_results: int) -> list[SearchResult]:
        self.queries.append(query)
        if self.delay > 0:
            await asyncio.sleep(self.delay)
        if self.raises:
            raise self.raises
        return list(self.results)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def make_results(prefix: str, n: int, relevance: float | None = 0.8) -> list[SearchResult]:
    return [
        SearchResult(
            title=f"{prefix} result {i}",
            url=f"https://example.com/{prefix}/{i}",
            snippet=f"{prefix} snippet {i} about rate limiting",
            relevance=relevance,
        )
        for i in range(n)
    ]


def make_result(
    summary: str = "Use a token bucket for rate limiting.",
    confidence: float = 0.8,
    n_sources: int = 2,
    **kwargs: Any,
) -> ResearchResult:
    return ResearchResult(
        summary=summary,
        full_content=summary,
        sources=[
            ResearchSource(title=f"Source {i}", url=f"https://example.com/{i}", relevance=0.7)
            for i in range(n_sources)
        ],
        confidence=confidence,
        **kwargs,
    )


def make_settings(**overrides: Any) -> FerretSettings:
    """Isolated settings (ignores any .env / FERRET_ env in the test runner)."""
    return FerretSettings(_env_file=None, **overrides)


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def store(tmp_path):
    """A fresh on-disk KnowledgeStore for each test."""
    s = KnowledgeStore(tmp_path / "ferret.db")
    yield s
    s.close()


@pytest.fixture
def fake_generator():
    """A FakeGenerator with well-formed plan / evaluation / synthesis output."""
    return FakeGenerator()


@pytest.fixture
def registry():
    """Two specialists with four results each."""
    return SpecialistRegistry([
        FakeSpecialist("research", make_results("wiki", 4, relevance=0.8)),
        FakeSpecialist("community", make_results("hn", 4, relevance=0.6)),
    ])


@pytest.fixture
def specialist_factory() -> Callable[..., FakeSpecialist]:
    return FakeSpecialist


@pytest.fixture(name="make_results")
def _make_results_fixture():
    return make_results


@pytest.fixture(name="make_result")
def _make_result_fixture():
    return make_result


@pytest.fixture(name="make_settings")
def _make_settings_fixture():
    return make_settings


@pytest.fixture
def generator_factory() -> Callable[..., FakeGenerator]:
    return FakeGenerator
