"""ActivityLog — per-task progress lines in a Redis ring buffer.

The worker pool and the coordinator write one line per lifecycle step
(claimed, planned, each iteration, evaluated, synthesized, completed, retried,
failed). ``ferret log <task_id>`` reads them back.

Redis is optional. An unreachable server turns the log into a no-op for the
rest of the process; callers never see an exception. Tests pass ``_redis``.
"""

from __future__ import annotations

import structlog

from ferret.utils.clock import now_utc

logger = structlog.get_logger().bind(component="research.activity")

KEY_PREFIX = "ferret:log:"
MAX_LINES = 200


def log_key(task_id: str) -> str:
    return f"{KEY_PREFIX}{task_id}"


class ActivityLog:
    """Timestamped progress lines per task, newest last.

    Args:
        redis_url: Defaults to ``settings.redis_url``.
        enabled:   False makes every call a no-op (CLI tests, no Redis).
        _redis:    Pre-built ``redis.asyncio.Redis``-compatible client.
    """

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        enabled: bool = True,
        _redis=None,
    ) -> None:
        if redis_url is None and _redis is None:
            from ferret.config import settings
            redis_url = settings.redis_url
        self._redis_url = redis_url
        self._client = _redis
        self._enabled = enabled
        self._down = False

    @property
    def available(self) -> bool:
        return self._enabled and not self._down

    async def _connection(self):
        if not self.available:
            return None
        if self._client is None:
            try:
                import redis.asyncio as aioredis
                self._client = aioredis.from_url(self._redis_url, decode_responses=True)
            except Exception as exc:
                logger.warning("activity_redis_connect_failed", error=str(exc))
                self._down = True
                return None
        return self._client

    async def log_entry(self, task_id: str, message: str) -> None:
        conn = await self._connection()
        if conn is None:
            return
        line = f"[{now_utc():%H:%M:%S}] {message}"
        try:
            async with conn.pipeline() as pipe:
                pipe.rpush(log_key(task_id), line)
                pipe.ltrim(log_key(task_id), -MAX_LINES, -1)
                await pipe.execute()
        except Exception as exc:
            self._down = True
            logger.warning("activity_log_disabled", task_id=task_id, error=str(exc))

    async def get_log(self, task_id: str, n: int = 50) -> list[str]:
        """Up to *n* most recent lines for *task_id*; [] when Redis is unavailable."""
        conn = await self._connection()
        if conn is None:
            return []
        try:
            return list(await conn.lrange(log_key(task_id), -n, -1))
        except Exception as exc:
            logger.warning("activity_read_failed", task_id=task_id, error=str(exc))
            return []

    async def close(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.aclose()
        except Exception as exc:
            logger.debug("activity_close_failed", error=str(exc))
        self._client = None
