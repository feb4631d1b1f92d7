"""Ferret error taxonomy.

Only ``QueueFullError`` reaches callers of the public API. Upstream and parse
errors are absorbed inside the research loop; timeouts end up on the task's
own ``error`` field once retries are exhausted.
"""

from __future__ import annotations


class FerretError(Exception):
    """Base class for all Ferret errors."""


class QueueFullError(FerretError):
    """Raised by enqueue when the queue already holds max_queue_size queued tasks."""

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"research queue is full ({size}/{limit})")
        self.size = size
        self.limit = limit


class TaskTimeoutError(FerretError):
    """A task exceeded the worker pool's per-task timeout."""

    def __init__(self, task_id: str, timeout_s: float) -> None:
        super().__init__(f"task {task_id} timed out after {timeout_s:.0f}s")
        self.task_id = task_id
        self.timeout_s = timeout_s


class GenerationError(FerretError):
    """The text generator failed (transport, HTTP status, or empty completion)."""


class SpecialistError(FerretError):
    """A specialist's search failed. Never escapes ``Specialist.run``."""


class ParseError(FerretError):
    """Generated text did not match the tagged format."""


class ResearchCancelled(FerretError):
    """The coordinator observed its cancel token between phases."""


class InvalidTransitionError(FerretError):
    """A task lifecycle write was attempted from the wrong state."""

    def __init__(self, task_id: str, current: str | None, target: str) -> None:
        super().__init__(f"task {task_id}: cannot move {current} -> {target}")
        self.task_id = task_id
        self.current = current
        self.target = target
