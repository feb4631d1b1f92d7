"""TriggerDetector — decides whether a piece of session text warrants research.

Two inputs are understood:

    user_prompt  — what the user typed. Negative patterns (acknowledgements,
                   imperatives, pointers, git verbs) are checked first and
                   short-circuit to "no research". Then every positive rule is
                   tried; the highest weight wins, ties go to the rule declared
                   first. A bare question mark is a weak fallback.

    tool_output  — what a tool printed. Rules are keyed by the producing tool:
                   error signatures for Bash (and unknown tools), deprecation
                   notices and TODOs for Read, and a speculative rule for
                   repeated Grep/Glob searches.

The detector does no I/O. It does keep a little per-session memory: error keys
already triggered (so the same error never retriggers), the last five tool
names, and technology topics seen so far. Dedup is by error substring, so a
reworded error will trigger again.
"""

from __future__ import annotations

import random
import re
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

from ferret.models.schemas import DetectedTrigger

logger = structlog.get_logger().bind(component="triggers.detector")

MIN_PROMPT_LENGTH = 10
MAX_QUERY_LENGTH = 200
FALLBACK_CONFIDENCE = 0.5
RECENT_TOOL_WINDOW = 5
ERROR_KEY_LENGTH = 50

_SEARCH_TOOLS = frozenset({"Grep", "Glob"})


@dataclass(frozen=True)
class PatternRule:
    name: str
    pattern: re.Pattern[str]
    weight: float
    depth: str
    extract: Callable[[re.Match[str]], str]

    @property
    def priority(self) -> int:
        return max(1, min(10, round(self.weight * 10)))


@dataclass(frozen=True)
class ErrorRule:
    pattern: re.Pattern[str]
    weight: float
    extract: Callable[[re.Match[str], str], str]


def _rx(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


# ── User prompt rules ────────────────────────────────────────────────────────

PROMPT_RULES: tuple[PatternRule, ...] = (
    PatternRule("what_is", _rx(r"what\s+(?:is|are)\s+(.+?)(?:\?|$)"), 0.7, "quick",
                lambda m: m.group(1)),
    PatternRule("how_do", _rx(r"how\s+(?:do|does|can|should)\s+(?:i|we|you)\s+(.+?)(?:\?|$)"),
                0.8, "medium", lambda m: m.group(1)),
    PatternRule("best_way",
                _rx(r"(?:what(?:'s| is) the )?best\s+(?:way|approach|practice|method)\s+(?:to|for)\s+(.+?)(?:\?|$)"),
                0.9, "medium", lambda m: f"best practices {m.group(1)}"),
    PatternRule("comparison", _rx(r"(.+?)\s+(?:vs|versus|or|compared to)\s+(.+?)(?:\?|$)"),
                0.85, "deep", lambda m: f"{m.group(1)} vs {m.group(2)}"),
    PatternRule("reported_error", _rx(r"(?:getting|seeing|have|having|got)\s+(?:an?\s+)?error[:\s]+(.+)"),
                0.75, "medium", lambda m: f"fix error {m.group(1)}"),
    PatternRule("implement", _rx(r"how\s+(?:to\s+)?implement\s+(.+?)(?:\?|$)"), 0.85, "medium",
                lambda m: f"implement {m.group(1)}"),
    PatternRule("docs_request",
                _rx(r"(?:show|find|get)\s+(?:me\s+)?(?:the\s+)?(?:docs?|documentation|tutorial|guide)\s+(?:for|on|about)\s+(.+)"),
                0.9, "medium", lambda m: f"{m.group(1)} documentation"),
    PatternRule("why", _rx(r"why\s+(?:is|does|do|should|would)\s+(.+?)(?:\?|$)"), 0.7, "medium",
                lambda m: f"why {m.group(1)}"),
    PatternRule("latest", _rx(r"(?:what(?:'s| is) the\s+)?(?:latest|newest|current|recent)\s+(.+)"),
                0.95, "quick", lambda m: f"latest {m.group(1)}"),
)

NEGATIVE_PATTERNS: tuple[re.Pattern[str], ...] = (
    _rx(r"^(?:ok|okay|yes|no|thanks|thank you|got it|understood)\b"),
    _rx(r"^(?:please\s+)?(?:do|make|create|write|build|implement|add|remove|delete|update|fix)\s"),
    _rx(r"^(?:here(?:'s| is)|look at|check|see|read)\s"),
    _rx(r"^(?:commit|push|pull|merge|deploy)\b"),
)

_FILLER = _rx(r"^(?:please|can you|could you|help me)\s+")
_QUOTES = re.compile(r"['\"`]")
_SPACES = re.compile(r"\s+")


# ── Tool output rules ────────────────────────────────────────────────────────

def _fix(m: re.Match[str], key: str) -> str:
    return f"fix {key}"


# Ordered most specific first; the first unseen match wins.
ERROR_RULES: tuple[ErrorRule, ...] = (
    ErrorRule(re.compile(r"npm ERR! code (\S+)"), 0.85, lambda m, k: f"npm error {m.group(1)}"),
    ErrorRule(_rx(r"npm ERR!\s+(.+)"), 0.85, _fix),
    ErrorRule(re.compile(r"Cannot find module ['\"](.+?)['\"]"), 0.8,
              lambda m, k: f"cannot find module {m.group(1)}"),
    ErrorRule(re.compile(r"ModuleNotFoundError: No module named ['\"](.+?)['\"]"), 0.8,
              lambda m, k: f"python install {m.group(1)}"),
    ErrorRule(_rx(r"ModuleNotFoundError:\s+(.+)"), 0.8, _fix),
    ErrorRule(re.compile(r"ImportError: (.+)"), 0.75, lambda m, k: f"python import error {k}"),
    ErrorRule(_rx(r"TypeError:\s+(.+)"), 0.75, _fix),
    ErrorRule(_rx(r"SyntaxError:\s+(.+)"), 0.7, _fix),
    ErrorRule(_rx(r"error:\s*(.{10,100})"), 0.8, _fix),
    ErrorRule(_rx(r"ENOENT:\s+(.+)"), 0.6, _fix),
    ErrorRule(_rx(r"permission denied"), 0.7, lambda m, k: "fix permission denied error"),
    ErrorRule(_rx(r"ECONNREFUSED|connection refused"), 0.65,
              lambda m, k: "connection refused error troubleshooting"),
)

_DEPRECATED = _rx(r"@deprecated[:\s]+(.+)|DEPRECATED[:\s]+(.+)")
_TODO = _rx(r"(?:TODO|FIXME|HACK|XXX)[:\s]+(.+)")

_TECH_PATTERNS: tuple[re.Pattern[str], ...] = (
    _rx(r"\b(react|vue|angular|svelte|next\.?js|nuxt|gatsby)\b"),
    _rx(r"\b(node\.?js|deno|bun|express|fastify|koa)\b"),
    _rx(r"\b(typescript|javascript|python|rust|golang|java|kotlin)\b"),
    _rx(r"\b(postgres|mysql|mongodb|redis|sqlite|prisma)\b"),
    _rx(r"\b(docker|kubernetes|aws|gcp|azure|vercel|netlify)\b"),
    _rx(r"\b(graphql|rest\s?api|websocket|grpc)\b"),
)

_EXTENSION_TOPICS = {
    ".tsx": "react", ".jsx": "react", ".vue": "vue",
    ".py": "python", ".rs": "rust", ".go": "golang",
}


def clean_query(query: str) -> str:
    """Strip quotes and filler, collapse whitespace, cap length."""
    q = _QUOTES.sub("", query.strip())
    q = _SPACES.sub(" ", q).strip()
    while True:
        stripped = _FILLER.sub("", q)
        if stripped == q:
            break
        q = stripped
    return q[:MAX_QUERY_LENGTH].strip()


def extract_topics(text: str) -> list[str]:
    """Technology names mentioned in *text*, lowercased, first-seen order."""
    seen: dict[str, None] = {}
    for pattern in _TECH_PATTERNS:
        for match in pattern.finditer(text):
            seen.setdefault(match.group(1).lower(), None)
    return list(seen)


@dataclass
class _SessionState:
    errors: list[str] = field(default_factory=list)
    recent_tools: deque[str] = field(default_factory=lambda: deque(maxlen=RECENT_TOOL_WINDOW))
    topics: dict[str, None] = field(default_factory=dict)


class TriggerDetector:
    """Turns prompts and tool output into ``DetectedTrigger`` verdicts.

    Args:
        rng:                     Random source for the speculative rule.
                                 Pass ``random.Random(seed)`` for determinism.
        speculative_probability: Chance that repeated code searches fire.
        min_confidence:          Threshold used by ``should_enqueue``.
    """

    def __init__(
        self,
        rng: random.Random | None = None,
        speculative_probability: float = 0.3,
        min_confidence: float = 0.6,
    ) -> None:
        self._rng = rng or random.Random()
        self.speculative_probability = speculative_probability
        self.min_confidence = min_confidence
        self._sessions: dict[str, _SessionState] = {}

    # ── Public API ────────────────────────────────────────────────────────

    def detect(
        self,
        text: str,
        source_kind: str = "user_prompt",
        *,
        tool_name: str | None = None,
        session_id: str | None = None,
        file_path: str | None = None,
    ) -> DetectedTrigger:
        if source_kind == "tool_output":
            return self.analyze_tool_output(
                tool_name or "", text, session_id=session_id, file_path=file_path
            )
        return self.analyze_prompt(text, session_id=session_id)

    def should_enqueue(self, trigger: DetectedTrigger, min_confidence: float | None = None) -> bool:
        """The single gate consulted before anything is enqueued."""
        threshold = self.min_confidence if min_confidence is None else min_confidence
        return bool(trigger.should_research and trigger.query and trigger.confidence >= threshold)

    def forget_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def session_topics(self, session_id: str) -> list[str]:
        state = self._sessions.get(session_id)
        return list(state.topics) if state else []

    # ── Prompts ───────────────────────────────────────────────────────────

    def analyze_prompt(self, prompt: str, *, session_id: str | None = None) -> DetectedTrigger:
        trimmed = prompt.strip()

        for pattern in NEGATIVE_PATTERNS:
            if pattern.search(trimmed):
                return DetectedTrigger.none("matches negative pattern (not a question)")

        if len(trimmed) < MIN_PROMPT_LENGTH:
            return DetectedTrigger.none("prompt too short")

        if session_id:
            state = self._state(session_id)
            for topic in extract_topics(trimmed):
                state.topics.setdefault(topic, None)

        best: tuple[PatternRule, str] | None = None
        for rule in PROMPT_RULES:
            match = rule.pattern.search(trimmed)
            if not match:
                continue
            query = clean_query(rule.extract(match))
            if not query:
                continue
            # Strict '>' keeps the first-declared rule on ties
            if best is None or rule.weight > best[0].weight:
                best = (rule, query)

        if best is not None:
            rule, query = best
            trigger = DetectedTrigger(
                should_research=True,
                query=query,
                depth=rule.depth,
                priority=rule.priority,
                confidence=rule.weight,
                reason=f"matches rule '{rule.name}'",
            )
            logger.debug("trigger_detected", rule=rule.name, query=query, confidence=rule.weight)
            return trigger

        if "?" in trimmed:
            query = clean_query(trimmed.replace("?", ""))
            if query:
                return DetectedTrigger(
                    should_research=True,
                    query=query,
                    depth="quick",
                    priority=5,
                    confidence=FALLBACK_CONFIDENCE,
                    reason="contains question mark",
                )

        return DetectedTrigger.none("no research triggers detected")

    # ── Tool output ───────────────────────────────────────────────────────

    def analyze_tool_output(
        self,
        tool_name: str,
        output: str,
        *,
        session_id: str | None = None,
        file_path: str | None = None,
    ) -> DetectedTrigger:
        state = self._state(session_id) if session_id else _SessionState()
        state.recent_tools.append(tool_name)
        for topic in self._tool_topics(output, file_path):
            state.topics.setdefault(topic, None)

        if tool_name in _SEARCH_TOOLS:
            return self._speculative(state)

        if tool_name == "Read":
            return self._read_rules(output) or DetectedTrigger.none("no research opportunity in file")

        trigger = self._error_rules(output, state)
        if trigger is not None:
            return trigger
        return self._deprecation(output) or DetectedTrigger.none(
            "no research opportunity in tool output"
        )

    def _error_rules(self, output: str, state: _SessionState) -> DetectedTrigger | None:
        for rule in ERROR_RULES:
            match = rule.pattern.search(output)
            if not match:
                continue
            captured = match.group(1) if match.groups() and match.group(1) else None
            key = captured.strip()[:ERROR_KEY_LENGTH] if captured else rule.pattern.pattern
            if key in state.errors:
                continue
            state.errors.append(key)
            query = clean_query(rule.extract(match, key))
            logger.debug("error_trigger_detected", key=key, weight=rule.weight)
            return DetectedTrigger(
                should_research=rule.weight >= self.min_confidence,
                query=query,
                depth="medium",
                priority=max(1, min(10, round(rule.weight * 10))),
                confidence=rule.weight,
                reason=f"error detected: {rule.pattern.pattern[:30]}",
            )
        return None

    def _read_rules(self, output: str) -> DetectedTrigger | None:
        deprecation = self._deprecation(output)
        if deprecation is not None:
            return deprecation
        todo = _TODO.search(output)
        if todo:
            query = clean_query(f"how to {todo.group(1)}")
            return DetectedTrigger(
                should_research=True,
                query=query,
                depth="quick",
                priority=4,
                confidence=0.4,
                reason="found TODO/FIXME comment",
            )
        return None

    @staticmethod
    def _deprecation(output: str) -> DetectedTrigger | None:
        if "@deprecated" not in output and "DEPRECATED" not in output:
            return None
        match = _DEPRECATED.search(output)
        if not match:
            return None
        subject = (match.group(1) or match.group(2) or "").strip()
        if not subject:
            return None
        return DetectedTrigger(
            should_research=True,
            query=clean_query(f"alternative to {subject}"),
            depth="quick",
            priority=5,
            confidence=0.5,
            reason="found deprecation notice",
        )

    def _speculative(self, state: _SessionState) -> DetectedTrigger:
        searches = sum(1 for name in state.recent_tools if name in _SEARCH_TOOLS)
        if searches < 2 or not state.topics:
            return DetectedTrigger.none("no research opportunity in search output")
        topic = next(reversed(state.topics))
        if self._rng.random() >= self.speculative_probability:
            return DetectedTrigger.none("speculative search skipped")
        return DetectedTrigger(
            should_research=True,
            query=f"{topic} best practices examples",
            depth="quick",
            priority=4,
            confidence=0.5,
            reason="multiple code searches detected",
        )

    # ── Helpers ───────────────────────────────────────────────────────────

    def _state(self, session_id: str) -> _SessionState:
        state = self._sessions.get(session_id)
        if state is None:
            state = self._sessions[session_id] = _SessionState()
        return state

    @staticmethod
    def _tool_topics(output: str, file_path: str | None) -> list[str]:
        topics = extract_topics(output[:2000])
        if file_path:
            for ext, topic in _EXTENSION_TOPICS.items():
                if file_path.endswith(ext) and topic not in topics:
                    topics.append(topic)
        return topics
