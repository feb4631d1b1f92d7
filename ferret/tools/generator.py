"""Text generation for the research coordinator.

The coordinator only needs ``generate(prompt, max_tokens=..., temperature=...)``.
Anything with that coroutine satisfies ``TextGenerator``; the concrete client
here speaks the OpenAI-compatible ``/v1/chat/completions`` API, which covers
local servers (llama.cpp, vLLM, LM Studio, Ollama) and hosted providers alike.

Failures always raise ``GenerationError``. An empty completion is a failure,
never a silent empty string.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

import httpx
import structlog

from ferret.errors import GenerationError

logger = structlog.get_logger().bind(component="tools.generator")


@runtime_checkable
class TextGenerator(Protocol):
    async def generate(self, prompt: str, *, max_tokens: int = 1024, temperature: float = 0.3) -> str:
        ...


class ChatCompletionsGenerator:
    """Async client for an OpenAI-compatible chat-completions endpoint.

    Args:
        base_url:  Server root, e.g. ``http://localhost:8080``.
        model:     Model identifier sent with every request.
        api_key:   Optional bearer token.
        timeout:   Per-request timeout in seconds.
        system:    Optional system prompt prepended to every call.
        _client:   Pre-built ``httpx.AsyncClient`` (inject for tests).
    """

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        system: str = "",
        *,
        _client: httpx.AsyncClient | None = None,
    ) -> None:
        from ferret.config import settings

        cfg = settings.generator
        self.base_url = (base_url or cfg.base_url).rstrip("/")
        self.model = model or cfg.model
        self.api_key = cfg.api_key if api_key is None else api_key
        self.timeout = timeout or cfg.timeout_s
        self.system = system
        self._client = _client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=headers,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def chat(
        self,
        messages: list[dict[str, str]],
        temperature: float = 0.3,
        max_tokens: int = 1024,
    ) -> dict[str, Any]:
        """Send a chat completion request and return the full response dict."""
        client = await self._get_client()
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        try:
            response = await client.post("/v1/chat/completions", json=payload)
            response.raise_for_status()
            result = response.json()
        except httpx.HTTPStatusError as exc:
            raise GenerationError(
                f"generator returned HTTP {exc.response.status_code}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise GenerationError(f"generator request failed: {exc}") from exc

        logger.debug(
            "chat_completion",
            model=self.model,
            messages_count=len(messages),
            usage=result.get("usage"),
        )
        return result

    async def generate(self, prompt: str, *, max_tokens: int = 1024, temperature: float = 0.3) -> str:
        """Send a single prompt, get back just the text."""
        messages: list[dict[str, str]] = []
        if self.system:
            messages.append({"role": "system", "content": self.system})
        messages.append({"role": "user", "content": prompt})

        result = await self.chat(messages, temperature=temperature, max_tokens=max_tokens)
        try:
            content = result["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise GenerationError("generator response had no message content") from exc
        if not content or not str(content).strip():
            raise GenerationError("generator returned an empty completion")
        return str(content)
