"""Unit tests for KnowledgeStore (SQLite + FTS5).

Covers:
  - result round-trip (summary, confidence, sources)
  - conditional lifecycle writes: single claim, append-only result
  - capacity check on insert
  - FTS search, "already researched" lookup, stats
  - sessions, atomic injection recording with cooldown
  - memory observations and cleanup
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from ferret.errors import QueueFullError
from ferret.models.schemas import InjectionRecord, MemoryObservation, ResearchTask
from ferret.research.store import KnowledgeStore, fts_any, fts_phrase
from ferret.utils.clock import now_utc


async def _completed(store, make_result, query="rate limiting", **kwargs) -> ResearchTask:
    task = ResearchTask(query=query, **kwargs)
    await store.insert_task(task)
    assert await store.claim_task(task.id)
    assert await store.complete_task(task.id, make_result())
    return await store.get_task(task.id)


# ─────────────────────────────────────────────────────────────────────────────
# 1. Tasks
# ─────────────────────────────────────────────────────────────────────────────

async def test_result_round_trip(store, make_result):
    result = make_result(summary="Token bucket it is.", confidence=0.73, n_sources=3)
    task = ResearchTask(query="rate limiting")
    await store.insert_task(task)
    await store.claim_task(task.id)
    await store.complete_task(task.id, result)

    loaded = await store.get_task(task.id)
    assert loaded.status == "completed"
    assert loaded.result.summary == result.summary
    assert loaded.result.confidence == pytest.approx(result.confidence)
    assert len(loaded.result.sources) == 3
    assert len(await store.get_sources(task.id)) == 3
    assert loaded.completed_at is not None


async def test_only_one_claim_wins(store):
    task = ResearchTask(query="q")
    await store.insert_task(task)
    outcomes = await asyncio.gather(*(store.claim_task(task.id) for _ in range(5)))
    assert sorted(outcomes) == [False, False, False, False, True]


async def test_result_is_written_once(store, make_result):
    task = await _completed(store, make_result)
    assert await store.complete_task(task.id, make_result(summary="other")) is False
    assert (await store.get_task(task.id)).result.summary != "other"


async def test_complete_requires_running(store, make_result):
    task = ResearchTask(query="q")
    await store.insert_task(task)
    assert await store.complete_task(task.id, make_result()) is False
    assert (await store.get_task(task.id)).result is None


async def test_insert_respects_capacity(store):
    for i in range(2):
        await store.insert_task(ResearchTask(query=f"q{i}"), max_queued=2)
    with pytest.raises(QueueFullError) as exc:
        await store.insert_task(ResearchTask(query="q2"), max_queued=2)
    assert exc.value.limit == 2
    assert (await store.stats()).queued == 2


async def test_requeue_bumps_retry_count(store):
    task = ResearchTask(query="q", priority=7)
    await store.insert_task(task)
    await store.claim_task(task.id)
    assert await store.requeue_task(task.id, "timed out")
    loaded = await store.get_task(task.id)
    assert loaded.status == "queued"
    assert loaded.retry_count == 1
    assert loaded.priority == 7
    assert loaded.error == "timed out"


async def test_mark_injected_only_from_completed(store, make_result):
    queued = ResearchTask(query="q")
    await store.insert_task(queued)
    assert await store.mark_injected(queued.id) is False

    done = await _completed(store, make_result, query="other")
    assert await store.mark_injected(done.id) is True
    assert (await store.get_task(done.id)).status == "injected"


# ─────────────────────────────────────────────────────────────────────────────
# 2. Search
# ─────────────────────────────────────────────────────────────────────────────

def test_fts_quoting():
    assert fts_phrase('say "hi"') == '"say ""hi"""'
    assert fts_any("to be rate-limited, OK?") == '"rate-limited"'
    assert fts_any("a an") == ""


async def test_search_tasks_only_returns_results(store, make_result):
    await store.insert_task(ResearchTask(query="rate limiting queued"))
    done = await _completed(store, make_result, query="rate limiting in hono")

    found = await store.search_tasks("rate limiting")
    assert [t.id for t in found] == [done.id]
    assert await store.search_tasks("kubernetes") == []
    assert [t.id for t in await store.search_tasks("token nonsense", match_any=True)] == [done.id]


async def test_search_survives_fts_syntax(store, make_result):
    await _completed(store, make_result)
    assert await store.search_tasks('rate" OR limiting') == []


async def test_find_researched(store, make_result):
    done = await _completed(store, make_result, query="Rate Limiting")
    assert (await store.find_researched("rate limiting")).id == done.id
    assert (await store.find_researched("limiting")).id == done.id
    assert await store.find_researched("100%_match") is None
    assert await store.find_researched("   ") is None


async def test_stats(store, make_result):
    await store.insert_task(ResearchTask(query="a"))
    await _completed(store, make_result, query="b")
    stats = await store.stats()
    assert (stats.queued, stats.completed, stats.failed) == (1, 1, 0)
    assert stats.total_processed == 1


# ─────────────────────────────────────────────────────────────────────────────
# 3. Sessions and injections
# ─────────────────────────────────────────────────────────────────────────────

async def test_touch_session_upserts(store):
    first = await store.touch_session("s1", "/work/api")
    again = await store.touch_session("s1")
    assert again.started_at == first.started_at
    assert again.project_path == "/work/api"
    assert [s.id for s in await store.active_sessions()] == ["s1"]
    assert await store.end_session("s1") is True
    assert await store.get_session("s1") is None


def _record(session_id="s1", task_id="t1", tokens=40, at=None):
    return InjectionRecord(
        task_id=task_id,
        session_id=session_id,
        content="x" * tokens * 4,
        tokens_used=tokens,
        injection_type="research-only",
        injected_at=at or now_utc(),
    )


async def test_record_injection_updates_counters(store):
    await store.touch_session("s1")
    assert await store.record_injection(_record(tokens=40), cooldown_s=30)
    session = await store.get_session("s1")
    assert session.injections_count == 1
    assert session.injections_tokens == 40
    assert session.last_injection_at is not None
    assert len(await store.session_injections("s1")) == 1


async def test_record_injection_enforces_cooldown(store):
    await store.touch_session("s1")
    t0 = now_utc()
    assert await store.record_injection(_record(at=t0), cooldown_s=30)
    assert not await store.record_injection(_record(at=t0 + timedelta(seconds=10)), cooldown_s=30)
    assert await store.record_injection(_record(at=t0 + timedelta(seconds=31)), cooldown_s=30)
    assert (await store.get_session("s1")).injections_count == 2
    assert len(await store.session_injections("s1")) == 2


async def test_record_injection_enforces_count_limit(store):
    await store.touch_session("s1")
    assert await store.record_injection(_record(), cooldown_s=0, max_count=1)
    assert not await store.record_injection(_record(), cooldown_s=0, max_count=1)
    assert (await store.get_session("s1")).injections_count == 1
    assert len(await store.session_injections("s1")) == 1


async def test_record_injection_enforces_token_budget(store):
    await store.touch_session("s1")
    assert await store.record_injection(_record(tokens=40), cooldown_s=0, max_tokens=50)
    assert await store.record_injection(_record(tokens=40), cooldown_s=0, max_tokens=50)
    assert not await store.record_injection(_record(tokens=40), cooldown_s=0, max_tokens=50)
    assert (await store.get_session("s1")).injections_tokens == 80


async def test_record_injection_without_session_writes_nothing(store):
    assert not await store.record_injection(_record(session_id="ghost"), cooldown_s=0)
    assert await store.session_injections("ghost") == []


async def test_record_injection_can_mark_task(store, make_result):
    done = await _completed(store, make_result)
    await store.touch_session("s1")
    assert await store.record_injection(_record(task_id=done.id), cooldown_s=0, mark_task_injected=True)
    assert (await store.get_task(done.id)).status == "injected"


# ─────────────────────────────────────────────────────────────────────────────
# 4. Memory and maintenance
# ─────────────────────────────────────────────────────────────────────────────

async def test_observation_search(store):
    obs = MemoryObservation(
        title="JWT refresh tokens",
        summary="Used httpOnly cookies for refresh tokens",
        type="decision",
        facts=["15 minute access token expiry"],
        files=["src/auth/tokens.ts"],
        project="/work/api",
    )
    await store.add_observation(obs)
    found = await store.search_observations("how should refresh tokens be stored")
    assert [o.id for o in found] == [obs.id]
    assert found[0].facts == ["15 minute access token expiry"]
    assert found[0].files == ["src/auth/tokens.ts"]
    assert await store.search_observations("kubernetes") == []


async def test_cleanup_keeps_live_tasks(store, make_result):
    queued = ResearchTask(query="still waiting", created_at=now_utc() - timedelta(days=90))
    await store.insert_task(queued)
    old = ResearchTask(query="old", created_at=now_utc() - timedelta(days=90))
    await store.insert_task(old)
    await store.claim_task(old.id)
    await store.complete_task(old.id, make_result())

    removed = await store.cleanup(older_than_days=30)
    assert removed["tasks"] == 1
    assert await store.get_task(old.id) is None
    assert await store.get_task(queued.id) is not None
    assert await store.get_sources(old.id) == []


def test_in_memory_store():
    s = KnowledgeStore(":memory:")
    s.close()
