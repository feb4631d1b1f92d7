"""Ferret task execution — the durable queue and the worker pool that drains it.

Public surface
--------------
``TaskQueue``   — enqueue / claim / complete / retry-or-fail over KnowledgeStore
``WorkerPool``  — bounded-concurrency runner with per-task timeout
"""

from .queue import TaskQueue
from .worker import WorkerPool

__all__ = ["TaskQueue", "WorkerPool"]
