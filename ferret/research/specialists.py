"""Specialists — the search collaborators the coordinator dispatches to.

Every specialist extends ``Specialist`` and implements ``search()``. The public
entry point is ``run()``, which wraps ``search()`` with timing, result capping
and error handling: a failing specialist returns an empty list, never raises.

Two keyless specialists ship with Ferret:

    research   — Wikipedia full-text search (MediaWiki API)
    community  — Hacker News discussions (Algolia HN Search API)

Anything else (web, code, docs) is registered by the hosting application.
"""

from __future__ import annotations

import re
import time
from abc import ABC, abstractmethod
from urllib.parse import quote

import httpx
import structlog

from ferret.errors import SpecialistError
from ferret.models.plan import SearchResult

logger = structlog.get_logger()

_TAGS = re.compile(r"<[^>]*>")
_USER_AGENT = "ferret-research/0.1"


class Specialist(ABC):
    """Base class for all specialists.

    Subclasses must:
        1. Set ``name`` (e.g. "web", "code", "research")
        2. Implement ``search(query, max_results)``
    """

    name: str = "base"

    def __init__(self) -> None:
        self.log = logger.bind(specialist=self.name)

    async def run(self, query: str, max_results: int = 5) -> list[SearchResult]:
        """Search with timing and error handling. Do NOT override — override search()."""
        start = time.perf_counter()
        try:
            results = await self.search(query, max_results)
        except Exception as exc:
            self.log.warning(
                "specialist_failed",
                query=query,
                error=str(exc) or type(exc).__name__,
                error_type=type(exc).__name__,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            return []
        results = [r if r.source else r.model_copy(update={"source": self.name}) for r in results]
        self.log.debug(
            "specialist_complete",
            query=query,
            results=len(results),
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return results[:max_results]

    @abstractmethod
    async def search(self, query: str, max_results: int) -> list[SearchResult]:
        ...


class SpecialistRegistry:
    """Name → specialist lookup, in registration order."""

    def __init__(self, specialists: list[Specialist] | None = None) -> None:
        self._by_name: dict[str, Specialist] = {}
        for specialist in specialists or []:
            self.register(specialist)

    def register(self, specialist: Specialist) -> None:
        self._by_name[specialist.name] = specialist

    def get(self, name: str) -> Specialist | None:
        return self._by_name.get(name)

    def names(self) -> list[str]:
        return list(self._by_name)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __len__(self) -> int:
        return len(self._by_name)


class _HttpSpecialist(Specialist):
    """Shared lazy httpx client handling."""

    timeout: float = 10.0

    def __init__(self, *, _client: httpx.AsyncClient | None = None) -> None:
        super().__init__()
        self._client = _client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"User-Agent": _USER_AGENT},
                follow_redirects=True,
            )
        return self._client

    async def _get_json(self, url: str, params: dict) -> dict:
        """GET *url* and decode the JSON body. Any HTTP or decode failure raises SpecialistError."""
        client = await self._get_client()
        try:
            response = await client.get(url, params=params)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            raise SpecialistError(f"{self.name}: HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise SpecialistError(f"{self.name}: {type(exc).__name__}: {exc}") from exc
        except ValueError as exc:
            raise SpecialistError(f"{self.name}: invalid JSON body") from exc

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


class WikipediaSpecialist(_HttpSpecialist):
    """Encyclopedic background via the MediaWiki search API."""

    name = "research"
    endpoint = "https://en.wikipedia.org/w/api.php"

    async def search(self, query: str, max_results: int) -> list[SearchResult]:
        body = await self._get_json(
            self.endpoint,
            params={
                "action": "query",
                "list": "search",
                "srsearch": query,
                "srlimit": max_results,
                "format": "json",
            },
        )
        hits = (body.get("query") or {}).get("search") or []
        return [
            SearchResult(
                title=hit["title"],
                url="https://en.wikipedia.org/wiki/" + quote(hit["title"].replace(" ", "_")),
                snippet=_TAGS.sub("", hit.get("snippet", "")),
                relevance=max(0.0, 1 - i * 0.05),
                source="wikipedia",
            )
            for i, hit in enumerate(hits[:max_results])
        ]


class HackerNewsSpecialist(_HttpSpecialist):
    """Practitioner discussion via the Algolia Hacker News search API."""

    name = "community"
    endpoint = "https://hn.algolia.com/api/v1/search"

    async def search(self, query: str, max_results: int) -> list[SearchResult]:
        body = await self._get_json(
            self.endpoint,
            params={"query": query, "tags": "story", "hitsPerPage": max_results},
        )
        results: list[SearchResult] = []
        for i, hit in enumerate(body.get("hits") or []):
            title = hit.get("title") or hit.get("story_title")
            if not title:
                continue
            url = hit.get("url") or f"https://news.ycombinator.com/item?id={hit.get('objectID')}"
            points = hit.get("points") or 0
            comments = hit.get("num_comments") or 0
            results.append(SearchResult(
                title=title,
                url=url,
                snippet=f"{points} points, {comments} comments on Hacker News",
                relevance=max(0.0, 0.9 - i * 0.05),
                source="hackernews",
            ))
        return results[:max_results]


def default_registry() -> SpecialistRegistry:
    return SpecialistRegistry([WikipediaSpecialist(), HackerNewsSpecialist()])
