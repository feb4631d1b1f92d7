"""Ferret research — the coordinator loop and the knowledge it produces.

Architecture:
    ResearchCoordinator — plan → dispatch → evaluate → synthesize, per task
    SpecialistRegistry  — named search collaborators (Wikipedia, Hacker News, ...)
    KnowledgeStore      — SQLite tasks, sources, sessions, injections, memory (FTS5)
    KnowledgeScorer     — one relevance scale across memory and research
    ActivityLog         — per-task Redis ring buffer for ``ferret log``
"""

from .activity import ActivityLog
from .coordinator import CancelToken, ResearchCoordinator
from .scorer import KnowledgeScorer, RelevanceWeights
from .specialists import Specialist, SpecialistRegistry, default_registry
from .store import KnowledgeStore

__all__ = [
    "ActivityLog",
    "CancelToken",
    "KnowledgeScorer",
    "KnowledgeStore",
    "RelevanceWeights",
    "ResearchCoordinator",
    "Specialist",
    "SpecialistRegistry",
    "default_registry",
]
