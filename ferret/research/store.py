"""KnowledgeStore — durable storage for tasks, sessions, injections and memory.

Storage:
    SQLite (one file under ``settings.data_dir``), WAL mode.

    research_tasks        — task rows; the result is stored once as JSON
    research_tasks_fts    — FTS5 external-content index over query/context/result
    research_sources      — one row per cited source of a completed task
    sessions              — per-session injection counters and cooldown clock
    injection_records     — append-only audit trail
    memory_observations   — findings remembered from earlier sessions
    memory_fts            — FTS5 index over observations

The FTS tables are maintained by triggers, so every insert/update/delete of a
primary row is mirrored in the same transaction.

Concurrency:
    A single connection guarded by a ``threading.Lock``. Async methods run the
    blocking work with ``asyncio.to_thread``. Each mutation is one transaction.
    Lifecycle writes are conditional UPDATEs (``WHERE status = ...``), which is
    what makes claims atomic and transitions monotonic.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path
from threading import Lock
from typing import Any, TypeVar

import structlog

from ferret.errors import QueueFullError
from ferret.models.schemas import (
    InjectionRecord,
    MemoryObservation,
    QueueStats,
    ResearchResult,
    ResearchSource,
    ResearchTask,
    Session,
)
from ferret.utils.clock import now_ms, now_utc, to_ms

logger = structlog.get_logger().bind(component="research.store")

T = TypeVar("T")

# ── DDL ──────────────────────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS research_tasks (
    id                TEXT PRIMARY KEY,
    query             TEXT NOT NULL,
    context           TEXT,
    depth             TEXT NOT NULL DEFAULT 'medium',
    status            TEXT NOT NULL DEFAULT 'queued',
    trigger           TEXT NOT NULL DEFAULT 'manual',
    session_id        TEXT,
    project_path      TEXT,
    priority          INTEGER NOT NULL DEFAULT 5,
    retry_count       INTEGER NOT NULL DEFAULT 0,
    created_at        INTEGER NOT NULL,
    started_at        INTEGER,
    completed_at      INTEGER,
    error             TEXT,
    result            TEXT,
    result_summary    TEXT,
    result_full       TEXT,
    result_confidence REAL
);

CREATE VIRTUAL TABLE IF NOT EXISTS research_tasks_fts USING fts5(
    query, context, result_summary, result_full,
    content='research_tasks', content_rowid='rowid'
);

CREATE TRIGGER IF NOT EXISTS research_tasks_ai AFTER INSERT ON research_tasks BEGIN
    INSERT INTO research_tasks_fts(rowid, query, context, result_summary, result_full)
    VALUES (NEW.rowid, NEW.query, NEW.context, NEW.result_summary, NEW.result_full);
END;

CREATE TRIGGER IF NOT EXISTS research_tasks_ad AFTER DELETE ON research_tasks BEGIN
    INSERT INTO research_tasks_fts(research_tasks_fts, rowid, query, context, result_summary, result_full)
    VALUES ('delete', OLD.rowid, OLD.query, OLD.context, OLD.result_summary, OLD.result_full);
END;

CREATE TRIGGER IF NOT EXISTS research_tasks_au AFTER UPDATE ON research_tasks BEGIN
    INSERT INTO research_tasks_fts(research_tasks_fts, rowid, query, context, result_summary, result_full)
    VALUES ('delete', OLD.rowid, OLD.query, OLD.context, OLD.result_summary, OLD.result_full);
    INSERT INTO research_tasks_fts(rowid, query, context, result_summary, result_full)
    VALUES (NEW.rowid, NEW.query, NEW.context, NEW.result_summary, NEW.result_full);
END;

CREATE TABLE IF NOT EXISTS research_sources (
    id        INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id   TEXT NOT NULL REFERENCES research_tasks(id) ON DELETE CASCADE,
    title     TEXT NOT NULL,
    url       TEXT NOT NULL,
    snippet   TEXT,
    relevance REAL NOT NULL DEFAULT 0.5
);

CREATE TABLE IF NOT EXISTS sessions (
    id                TEXT PRIMARY KEY,
    started_at        INTEGER NOT NULL,
    last_activity_at  INTEGER NOT NULL,
    project_path      TEXT,
    injections_count  INTEGER NOT NULL DEFAULT 0,
    injections_tokens INTEGER NOT NULL DEFAULT 0,
    last_injection_at INTEGER
);

CREATE TABLE IF NOT EXISTS injection_records (
    id             TEXT PRIMARY KEY,
    task_id        TEXT NOT NULL,
    session_id     TEXT NOT NULL,
    injected_at    INTEGER NOT NULL,
    content        TEXT NOT NULL,
    tokens_used    INTEGER NOT NULL,
    accepted       INTEGER NOT NULL DEFAULT 1,
    injection_type TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS memory_observations (
    id         TEXT PRIMARY KEY,
    session_id TEXT,
    project    TEXT,
    type       TEXT NOT NULL DEFAULT 'discovery',
    title      TEXT NOT NULL,
    summary    TEXT NOT NULL,
    details    TEXT,
    facts      TEXT NOT NULL DEFAULT '[]',
    files      TEXT NOT NULL DEFAULT '[]',
    created_at INTEGER NOT NULL
);

CREATE VIRTUAL TABLE IF NOT EXISTS memory_fts USING fts5(
    title, summary, details, facts,
    content='memory_observations', content_rowid='rowid'
);

CREATE TRIGGER IF NOT EXISTS memory_ai AFTER INSERT ON memory_observations BEGIN
    INSERT INTO memory_fts(rowid, title, summary, details, facts)
    VALUES (NEW.rowid, NEW.title, NEW.summary, NEW.details, NEW.facts);
END;

CREATE TRIGGER IF NOT EXISTS memory_ad AFTER DELETE ON memory_observations BEGIN
    INSERT INTO memory_fts(memory_fts, rowid, title, summary, details, facts)
    VALUES ('delete', OLD.rowid, OLD.title, OLD.summary, OLD.details, OLD.facts);
END;

CREATE TRIGGER IF NOT EXISTS memory_au AFTER UPDATE ON memory_observations BEGIN
    INSERT INTO memory_fts(memory_fts, rowid, title, summary, details, facts)
    VALUES ('delete', OLD.rowid, OLD.title, OLD.summary, OLD.details, OLD.facts);
    INSERT INTO memory_fts(rowid, title, summary, details, facts)
    VALUES (NEW.rowid, NEW.title, NEW.summary, NEW.details, NEW.facts);
END;

CREATE INDEX IF NOT EXISTS idx_tasks_status   ON research_tasks(status);
CREATE INDEX IF NOT EXISTS idx_tasks_queue    ON research_tasks(status, priority DESC, created_at ASC);
CREATE INDEX IF NOT EXISTS idx_tasks_session  ON research_tasks(session_id);
CREATE INDEX IF NOT EXISTS idx_tasks_created  ON research_tasks(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_sources_task   ON research_sources(task_id);
CREATE INDEX IF NOT EXISTS idx_injections_session ON injection_records(session_id);
CREATE INDEX IF NOT EXISTS idx_memory_project ON memory_observations(project);
"""

_MIN_TERM_LENGTH = 3


def fts_phrase(text: str) -> str:
    """Quote *text* as a single FTS5 phrase (inner quotes doubled)."""
    return '"' + text.replace('"', '""') + '"'


def fts_any(text: str) -> str:
    """OR together each quoted term of *text*; empty string if nothing usable."""
    terms: dict[str, None] = {}
    for raw in text.split():
        word = "".join(ch for ch in raw if ch.isalnum() or ch in "-_").lower()
        if len(word) >= _MIN_TERM_LENGTH:
            terms.setdefault(word, None)
    return " OR ".join(fts_phrase(t) for t in terms)


class KnowledgeStore:
    """Read/write interface over the Ferret SQLite database.

    Args:
        db_path: Path to the SQLite file, or ``":memory:"`` for tests.
    """

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self) -> None:
        with self._lock:
            if self.db_path != ":memory:":
                self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.executescript(_SCHEMA)
            self._conn.commit()
        logger.debug("store_schema_ready", path=self.db_path)

    # ── Plumbing ──────────────────────────────────────────────────────────

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(self._locked, fn, *args)

    def _locked(self, fn: Callable[..., T], *args: Any) -> T:
        with self._lock:
            with self._conn:
                return fn(*args)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ── Tasks ─────────────────────────────────────────────────────────────

    async def insert_task(self, task: ResearchTask, max_queued: int | None = None) -> str:
        """Insert a queued task. Raises ``QueueFullError`` when at capacity."""
        return await self._run(self._insert_task, task, max_queued)

    def _insert_task(self, task: ResearchTask, max_queued: int | None) -> str:
        if max_queued is not None:
            (queued,) = self._conn.execute(
                "SELECT COUNT(*) FROM research_tasks WHERE status = 'queued'"
            ).fetchone()
            if queued >= max_queued:
                raise QueueFullError(queued, max_queued)
        self._conn.execute(
            """
            INSERT INTO research_tasks
                (id, query, context, depth, status, trigger, session_id, project_path,
                 priority, retry_count, created_at)
            VALUES (?, ?, ?, ?, 'queued', ?, ?, ?, ?, ?, ?)
            """,
            (
                task.id, task.query, task.context, task.depth, task.trigger,
                task.session_id, task.project_path, task.priority, task.retry_count,
                to_ms(task.created_at),
            ),
        )
        return task.id

    async def get_task(self, task_id: str) -> ResearchTask | None:
        return await self._run(self._get_task, task_id)

    def _get_task(self, task_id: str) -> ResearchTask | None:
        row = self._conn.execute(
            "SELECT * FROM research_tasks WHERE id = ?", (task_id,)
        ).fetchone()
        return ResearchTask.from_row(dict(row)) if row else None

    async def queued_tasks(self, limit: int) -> list[ResearchTask]:
        """Queued tasks by priority DESC, then creation time and insertion order."""
        return await self._run(self._queued_tasks, limit)

    def _queued_tasks(self, limit: int) -> list[ResearchTask]:
        rows = self._conn.execute(
            """
            SELECT * FROM research_tasks
            WHERE status = 'queued'
            ORDER BY priority DESC, created_at ASC, rowid ASC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [ResearchTask.from_row(dict(r)) for r in rows]

    async def claim_task(self, task_id: str) -> bool:
        """queued → running. Exactly one concurrent caller gets True."""
        return await self._run(self._claim_task, task_id)

    def _claim_task(self, task_id: str) -> bool:
        cur = self._conn.execute(
            """
            UPDATE research_tasks SET status = 'running', started_at = ?
            WHERE id = ? AND status = 'queued'
            """,
            (now_ms(), task_id),
        )
        return cur.rowcount == 1

    async def complete_task(self, task_id: str, result: ResearchResult) -> bool:
        """running → completed, attaching the result and its sources."""
        return await self._run(self._complete_task, task_id, result)

    def _complete_task(self, task_id: str, result: ResearchResult) -> bool:
        cur = self._conn.execute(
            """
            UPDATE research_tasks
            SET status = 'completed', completed_at = ?, error = NULL,
                result = ?, result_summary = ?, result_full = ?, result_confidence = ?
            WHERE id = ? AND status = 'running' AND result IS NULL
            """,
            (
                now_ms(), result.model_dump_json(), result.summary, result.full_content,
                result.confidence, task_id,
            ),
        )
        if cur.rowcount != 1:
            return False
        self._conn.executemany(
            "INSERT INTO research_sources (task_id, title, url, snippet, relevance) VALUES (?, ?, ?, ?, ?)",
            [(task_id, s.title, s.url, s.snippet, s.relevance) for s in result.sources],
        )
        return True

    async def fail_task(self, task_id: str, error: str) -> bool:
        """running → failed (terminal)."""
        return await self._run(self._fail_task, task_id, error)

    def _fail_task(self, task_id: str, error: str) -> bool:
        cur = self._conn.execute(
            """
            UPDATE research_tasks SET status = 'failed', completed_at = ?, error = ?
            WHERE id = ? AND status = 'running'
            """,
            (now_ms(), error, task_id),
        )
        return cur.rowcount == 1

    async def requeue_task(self, task_id: str, error: str) -> bool:
        """running → queued for a retry; bumps retry_count, keeps priority."""
        return await self._run(self._requeue_task, task_id, error)

    def _requeue_task(self, task_id: str, error: str) -> bool:
        cur = self._conn.execute(
            """
            UPDATE research_tasks
            SET status = 'queued', retry_count = retry_count + 1, started_at = NULL, error = ?
            WHERE id = ? AND status = 'running'
            """,
            (error, task_id),
        )
        return cur.rowcount == 1

    async def mark_injected(self, task_id: str) -> bool:
        """completed → injected."""
        return await self._run(self._mark_injected, task_id)

    def _mark_injected(self, task_id: str) -> bool:
        cur = self._conn.execute(
            "UPDATE research_tasks SET status = 'injected' WHERE id = ? AND status = 'completed'",
            (task_id,),
        )
        return cur.rowcount == 1

    async def recent_tasks(self, limit: int = 20) -> list[ResearchTask]:
        return await self._run(self._recent_tasks, limit)

    def _recent_tasks(self, limit: int) -> list[ResearchTask]:
        rows = self._conn.execute(
            "SELECT * FROM research_tasks ORDER BY created_at DESC, rowid DESC LIMIT ?", (limit,)
        ).fetchall()
        return [ResearchTask.from_row(dict(r)) for r in rows]

    async def session_tasks(self, session_id: str, status: str | None = None) -> list[ResearchTask]:
        return await self._run(self._session_tasks, session_id, status)

    def _session_tasks(self, session_id: str, status: str | None) -> list[ResearchTask]:
        sql = "SELECT * FROM research_tasks WHERE session_id = ?"
        params: list[Any] = [session_id]
        if status:
            sql += " AND status = ?"
            params.append(status)
        rows = self._conn.execute(sql + " ORDER BY created_at DESC", params).fetchall()
        return [ResearchTask.from_row(dict(r)) for r in rows]

    async def get_sources(self, task_id: str) -> list[ResearchSource]:
        return await self._run(self._get_sources, task_id)

    def _get_sources(self, task_id: str) -> list[ResearchSource]:
        rows = self._conn.execute(
            "SELECT title, url, snippet, relevance FROM research_sources WHERE task_id = ? ORDER BY relevance DESC",
            (task_id,),
        ).fetchall()
        return [ResearchSource(**dict(r)) for r in rows]

    async def search_tasks(
        self, text: str, limit: int = 10, *, match_any: bool = False
    ) -> list[ResearchTask]:
        """FTS search over tasks that carry a result, best match first.

        By default *text* is matched as one quoted phrase. ``match_any`` ORs
        the individual terms instead.
        """
        return await self._run(self._search_tasks, text, limit, match_any)

    def _search_tasks(self, text: str, limit: int, match_any: bool) -> list[ResearchTask]:
        expr = fts_any(text) if match_any else fts_phrase(text.strip())
        if not expr or expr == '""':
            return []
        rows = self._conn.execute(
            """
            SELECT t.* FROM research_tasks_fts
            JOIN research_tasks t ON t.rowid = research_tasks_fts.rowid
            WHERE research_tasks_fts MATCH ? AND t.result IS NOT NULL
            ORDER BY research_tasks_fts.rank
            LIMIT ?
            """,
            (expr, limit),
        ).fetchall()
        return [ResearchTask.from_row(dict(r)) for r in rows]

    async def find_researched(self, query: str, max_age_days: float | None = None) -> ResearchTask | None:
        """A completed or injected task whose query matches *query* exactly or by LIKE."""
        return await self._run(self._find_researched, query, max_age_days)

    def _find_researched(self, query: str, max_age_days: float | None) -> ResearchTask | None:
        q = query.strip().lower()
        if not q:
            return None
        since = 0
        if max_age_days is not None:
            since = to_ms(now_utc() - timedelta(days=max_age_days)) or 0
        like = "%" + q.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
        row = self._conn.execute(
            """
            SELECT * FROM research_tasks
            WHERE status IN ('completed', 'injected') AND created_at >= ?
              AND (lower(query) = ? OR lower(query) LIKE ? ESCAPE '\\')
            ORDER BY (lower(query) = ?) DESC, created_at DESC
            LIMIT 1
            """,
            (since, q, like, q),
        ).fetchone()
        return ResearchTask.from_row(dict(row)) if row else None

    async def stats(self) -> QueueStats:
        return await self._run(self._stats)

    def _stats(self) -> QueueStats:
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM research_tasks GROUP BY status"
        ).fetchall()
        return QueueStats(**{r["status"]: r["n"] for r in rows})

    # ── Sessions ──────────────────────────────────────────────────────────

    async def touch_session(self, session_id: str, project_path: str | None = None) -> Session:
        """Create the session on first sight; otherwise bump last_activity_at."""
        return await self._run(self._touch_session, session_id, project_path)

    def _touch_session(self, session_id: str, project_path: str | None) -> Session:
        ts = now_ms()
        self._conn.execute(
            """
            INSERT INTO sessions (id, started_at, last_activity_at, project_path)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                last_activity_at = excluded.last_activity_at,
                project_path = COALESCE(excluded.project_path, sessions.project_path)
            """,
            (session_id, ts, ts, project_path),
        )
        row = self._conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return Session.from_row(dict(row))

    async def get_session(self, session_id: str) -> Session | None:
        return await self._run(self._get_session, session_id)

    def _get_session(self, session_id: str) -> Session | None:
        row = self._conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return Session.from_row(dict(row)) if row else None

    async def end_session(self, session_id: str) -> bool:
        return await self._run(self._end_session, session_id)

    def _end_session(self, session_id: str) -> bool:
        cur = self._conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        return cur.rowcount == 1

    async def active_sessions(self, within_s: float = 3600) -> list[Session]:
        return await self._run(self._active_sessions, within_s)

    def _active_sessions(self, within_s: float) -> list[Session]:
        since = now_ms() - int(within_s * 1000)
        rows = self._conn.execute(
            "SELECT * FROM sessions WHERE last_activity_at > ? ORDER BY last_activity_at DESC",
            (since,),
        ).fetchall()
        return [Session.from_row(dict(r)) for r in rows]

    # ── Injections ────────────────────────────────────────────────────────

    async def record_injection(
        self,
        record: InjectionRecord,
        *,
        cooldown_s: float,
        max_count: int | None = None,
        max_tokens: int | None = None,
        mark_task_injected: bool = False,
    ) -> bool:
        """Append *record* and bump the session counters in one transaction.

        The session row is only updated when its last injection is at least
        ``cooldown_s`` old and, when given, its injection count and token total
        are still below ``max_count`` / ``max_tokens``. Otherwise nothing is
        written and False is returned.
        """
        return await self._run(
            self._record_injection, record, cooldown_s, max_count, max_tokens, mark_task_injected
        )

    def _record_injection(
        self,
        record: InjectionRecord,
        cooldown_s: float,
        max_count: int | None,
        max_tokens: int | None,
        mark_task_injected: bool,
    ) -> bool:
        at = to_ms(record.injected_at)
        cutoff = at - int(cooldown_s * 1000)
        cur = self._conn.execute(
            """
            UPDATE sessions
            SET injections_count = injections_count + 1,
                injections_tokens = injections_tokens + ?,
                last_injection_at = ?,
                last_activity_at = MAX(last_activity_at, ?)
            WHERE id = ?
              AND (last_injection_at IS NULL OR last_injection_at <= ?)
              AND (? IS NULL OR injections_count < ?)
              AND (? IS NULL OR injections_tokens < ?)
            """,
            (
                record.tokens_used, at, at, record.session_id, cutoff,
                max_count, max_count, max_tokens, max_tokens,
            ),
        )
        if cur.rowcount != 1:
            return False
        self._conn.execute(
            """
            INSERT INTO injection_records
                (id, task_id, session_id, injected_at, content, tokens_used, accepted, injection_type)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id, record.task_id, record.session_id, at, record.content,
                record.tokens_used, int(record.accepted), record.injection_type,
            ),
        )
        if mark_task_injected:
            self._mark_injected(record.task_id)
        return True

    async def session_injections(self, session_id: str) -> list[InjectionRecord]:
        return await self._run(self._session_injections, session_id)

    def _session_injections(self, session_id: str) -> list[InjectionRecord]:
        rows = self._conn.execute(
            "SELECT * FROM injection_records WHERE session_id = ? ORDER BY injected_at DESC",
            (session_id,),
        ).fetchall()
        return [InjectionRecord.from_row(dict(r)) for r in rows]

    # ── Memory observations ───────────────────────────────────────────────

    async def add_observation(self, obs: MemoryObservation) -> str:
        return await self._run(self._add_observation, obs)

    def _add_observation(self, obs: MemoryObservation) -> str:
        self._conn.execute(
            """
            INSERT INTO memory_observations
                (id, session_id, project, type, title, summary, details, facts, files, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                obs.id, obs.session_id, obs.project, obs.type, obs.title, obs.summary,
                obs.details, json.dumps(obs.facts), json.dumps(obs.files), to_ms(obs.created_at),
            ),
        )
        return obs.id

    async def search_observations(self, text: str, limit: int = 10) -> list[MemoryObservation]:
        """Observations matching any term of *text*, best match first."""
        return await self._run(self._search_observations, text, limit)

    def _search_observations(self, text: str, limit: int) -> list[MemoryObservation]:
        expr = fts_any(text)
        if not expr:
            return []
        rows = self._conn.execute(
            """
            SELECT m.* FROM memory_fts
            JOIN memory_observations m ON m.rowid = memory_fts.rowid
            WHERE memory_fts MATCH ?
            ORDER BY memory_fts.rank
            LIMIT ?
            """,
            (expr, limit),
        ).fetchall()
        return [MemoryObservation.from_row(dict(r)) for r in rows]

    # ── Maintenance ───────────────────────────────────────────────────────

    async def cleanup(self, older_than_days: float = 30) -> dict[str, int]:
        """Delete tasks, idle sessions and injection records older than the cutoff."""
        return await self._run(self._cleanup, older_than_days)

    def _cleanup(self, older_than_days: float) -> dict[str, int]:
        cutoff = to_ms(now_utc() - timedelta(days=older_than_days))
        tasks = self._conn.execute(
            "DELETE FROM research_tasks WHERE created_at < ? AND status NOT IN ('queued', 'running')",
            (cutoff,),
        ).rowcount
        sessions = self._conn.execute(
            "DELETE FROM sessions WHERE last_activity_at < ?", (cutoff,)
        ).rowcount
        injections = self._conn.execute(
            "DELETE FROM injection_records WHERE injected_at < ?", (cutoff,)
        ).rowcount
        logger.info("store_cleanup", tasks=tasks, sessions=sessions, injections=injections)
        return {"tasks": tasks, "sessions": sessions, "injections": injections}
