"""Generation backends for HybridRAG."""

from __future__ import annotations

import json
import re
from contextlib import AsyncExitStack, aclosing
from dataclasses import dataclass
from typing import AsyncIterator, Protocol, Sequence

import httpx

from hybridrag.metrics.observability import get_logger
from hybridrag.services.prompts import FOLLOW_UP_DELIMITER

LOGGER = get_logger("generation")

ChatMessage = dict[str, str]


@dataclass(frozen=True)
class GenerationConfig:
    """Configuration for answer generation."""

    model: str = "llama-3.1-8b-instant"
    base_url: str = "https://api.groq.com/openai/v1"
    max_new_tokens: int = 1024
    temperature: float = 0.3
    timeout_seconds: float = 60.0


class GenerationBackend(Protocol):
    """Protocol describing streaming generation."""

    def stream(self, messages: Sequence[ChatMessage]) -> AsyncIterator[str]:
        """Yield answer tokens in generation order."""


class TemplateGenerator:
    """Deterministic generator used for tests and offline environments."""

    _CITATION = re.compile(r"^\[(\d+)\] Source: ([^\n(]+)", re.MULTILINE)

    async def stream(self, messages: Sequence[ChatMessage]) -> AsyncIterator[str]:
        system = next((m["content"] for m in messages if m["role"] == "system"), "")
        question = messages[-1]["content"] if messages else ""
        cited = self._CITATION.findall(system)
        if cited:
            markers = "".join(f"[{number}]" for number, _ in cited[:3])
            titles = ", ".join(title.strip() for _, title in cited[:3])
            answer = f"Based on {titles} {markers}, here is what the sources say about '{question}'."
        else:
            answer = (
                "I could not find any relevant documents for this question. "
                "Try uploading related documents or enabling web search."
            )
        text = (
            f"{answer}\n\n{FOLLOW_UP_DELIMITER}\n"
            f"What else should I know about {question.rstrip('?')}?\n"
            "Which sources cover this in more depth?\n"
            "How has this changed recently?"
        )
        for token in re.findall(r"\S+\s*|\s+", text):
            yield token


class OpenAICompatibleGenerator:
    """Streams chat completions from an OpenAI-compatible endpoint (Groq by default)."""

    def __init__(
        self,
        api_key: str,
        config: GenerationConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._config = config or GenerationConfig()
        self._client = client

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    async def stream(self, messages: Sequence[ChatMessage]) -> AsyncIterator[str]:
        payload = {
            "model": self._config.model,
            "messages": list(messages),
            "temperature": self._config.temperature,
            "max_tokens": self._config.max_new_tokens,
            "stream": True,
        }
        url = f"{self._config.base_url.rstrip('/')}/chat/completions"
        async with AsyncExitStack() as stack:
            client = self._client
            if client is None:
                client = await stack.enter_async_context(httpx.AsyncClient(timeout=self._config.timeout_seconds))
            tokens = await stack.enter_async_context(aclosing(self._stream_with(client, url, payload)))
            async for token in tokens:
                yield token

    async def _stream_with(self, client: httpx.AsyncClient, url: str, payload: dict) -> AsyncIterator[str]:
        async with client.stream("POST", url, json=payload, headers=self._headers()) as response:
            if response.status_code >= 400:
                body = await response.aread()
                LOGGER.error("generation.http_error", status=response.status_code, body=body[:300].decode("utf-8", "replace"))
                response.raise_for_status()
            async for line in response.aiter_lines():
                if not line.startswith("data: "):
                    continue
                data = line[6:].strip()
                if data == "[DONE]":
                    break
                try:
                    chunk = json.loads(data)
                except json.JSONDecodeError:
                    continue
                choices = chunk.get("choices") or [{}]
                content = (choices[0].get("delta") or {}).get("content")
                if content:
                    yield content
