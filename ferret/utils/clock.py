"""Centralised wall-clock helpers — single source of truth for 'now'.

Timestamps are stored as epoch milliseconds (int) in SQLite and carried as
timezone-aware datetimes in models. Patch ``now_utc`` to freeze time in tests.
"""

from __future__ import annotations

from datetime import datetime, timezone


def now_utc() -> datetime:
    """Return the current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(now_utc().timestamp() * 1000)


def to_ms(dt: datetime | None) -> int | None:
    if dt is None:
        return None
    return int(dt.timestamp() * 1000)


def from_ms(ms: int | None) -> datetime | None:
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def today_human() -> str:
    """Full human-readable date: 'Monday, February 23, 2026'"""
    now = now_utc()
    return f"{now.strftime('%A, %B')} {now.day}, {now.year}"


def age_days(dt: datetime, now: datetime | None = None) -> float:
    """Fractional days between *dt* and *now* (never negative)."""
    now = now or now_utc()
    return max((now - dt).total_seconds() / 86400.0, 0.0)


def relative_date(dt: datetime, now: datetime | None = None) -> str:
    """'today', 'yesterday', 'N days ago', or 'Mon DD' for anything older."""
    days = int(age_days(dt, now))
    if days == 0:
        return "today"
    if days == 1:
        return "yesterday"
    if days < 7:
        return f"{days} days ago"
    return f"{dt.strftime('%b')} {dt.day}"
