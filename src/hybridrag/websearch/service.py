"""Live web search with a paid API tier and a free HTML fallback."""

from __future__ import annotations

import asyncio
import re
import time
from contextlib import AsyncExitStack
from dataclasses import dataclass
from html import unescape
from typing import Protocol, Sequence

import httpx
from bs4 import BeautifulSoup

from hybridrag.config import Settings
from hybridrag.errors import WebSearchError
from hybridrag.metrics.observability import PipelineMetrics, get_logger
from hybridrag.models import WebResult

LOGGER = get_logger("websearch")

FIRECRAWL_SEARCH_URL = "https://api.firecrawl.dev/v1/search"
DUCKDUCKGO_HTML_URL = "https://html.duckduckgo.com/html/"
USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Safari/537.36"
STRIP_TAGS = ("script", "style", "nav", "header", "footer", "noscript", "iframe", "svg", "form")


@dataclass(frozen=True)
class WebSearchConfig:
    fetch_timeout_seconds: float = 5.0
    search_timeout_seconds: float = 10.0
    fetch_concurrency: int = 3
    excerpt_chars: int = 2000
    min_excerpt_chars: int = 50
    max_page_bytes: int = 512_000


class WebSearchBackend(Protocol):
    """One tier of the web search strategy."""

    name: str

    async def search(self, query: str, limit: int) -> Sequence[WebResult]:
        """Return up to ``limit`` results or raise ``WebSearchError``."""


class _HttpBackend:
    def __init__(self, config: WebSearchConfig | None = None, client: httpx.AsyncClient | None = None) -> None:
        self._config = config or WebSearchConfig()
        self._client = client

    async def _request(self, method: str, url: str, *, timeout: float, **kwargs) -> httpx.Response:
        headers = {"User-Agent": USER_AGENT, **kwargs.pop("headers", {})}
        if self._client is not None:
            return await self._client.request(
                method, url, headers=headers, timeout=timeout, follow_redirects=True, **kwargs
            )
        async with httpx.AsyncClient(follow_redirects=True) as client:
            return await client.request(method, url, headers=headers, timeout=timeout, **kwargs)

    async def _read_capped(self, url: str, *, timeout: float, max_bytes: int) -> str:
        """GET ``url`` and decode at most ``max_bytes`` of its body."""

        headers = {"User-Agent": USER_AGENT}
        async with AsyncExitStack() as stack:
            client = self._client
            if client is None:
                client = await stack.enter_async_context(httpx.AsyncClient())
            response = await stack.enter_async_context(
                client.stream("GET", url, headers=headers, timeout=timeout, follow_redirects=True)
            )
            response.raise_for_status()
            body = bytearray()
            async for chunk in response.aiter_bytes():
                body.extend(chunk)
                if len(body) >= max_bytes:
                    break
            return bytes(body[:max_bytes]).decode(response.encoding or "utf-8", errors="replace")


class FirecrawlSearchBackend(_HttpBackend):
    """Paid search API returning already scraped markdown."""

    name = "firecrawl"

    def __init__(
        self,
        api_key: str,
        config: WebSearchConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(config, client)
        self._api_key = api_key

    async def search(self, query: str, limit: int) -> Sequence[WebResult]:
        payload = {"query": query, "limit": limit, "scrapeOptions": {"formats": ["markdown"]}}
        try:
            response = await self._request(
                "POST",
                FIRECRAWL_SEARCH_URL,
                timeout=self._config.search_timeout_seconds,
                json=payload,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        except httpx.HTTPError as exc:
            raise WebSearchError(f"firecrawl request failed: {exc}") from exc
        if response.status_code >= 400:
            raise WebSearchError(f"firecrawl returned {response.status_code}: {response.text[:200]}")
        data = response.json()
        if not isinstance(data, dict):
            raise WebSearchError(f"firecrawl returned {type(data).__name__} instead of an object")
        if not data.get("success") or not isinstance(data.get("data"), list):
            return []
        results: list[WebResult] = []
        for item in data["data"][:limit]:
            if not isinstance(item, dict) or not item.get("url"):
                continue
            content = item.get("markdown") or item.get("content") or item.get("description") or ""
            results.append(
                WebResult(
                    title=item.get("title") or "No Title",
                    url=str(item["url"]),
                    content=str(content)[: self._config.excerpt_chars],
                ),
            )
        return results


def unwrap_redirect(href: str) -> str:
    """Return the target of a DuckDuckGo ``/l/?uddg=`` redirect, else ``href``."""

    if href.startswith("//"):
        href = f"https:{href}"
    if "uddg=" not in href:
        return href
    try:
        target = httpx.URL(href).params.get("uddg")
    except httpx.InvalidURL:
        return href
    return target or href


def html_to_text(html: str, max_chars: int = 2000) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(STRIP_TAGS):
        tag.decompose()
    text = soup.get_text(" ")
    text = re.sub(r"\s+", " ", unescape(text)).strip()
    return text[:max_chars]


def parse_duckduckgo_results(html: str, limit: int) -> list[WebResult]:
    """Extract title/url/snippet triples from the DuckDuckGo HTML endpoint."""

    soup = BeautifulSoup(html, "html.parser")
    results: list[WebResult] = []
    for block in soup.select("div.result"):
        if "result--ad" in (block.get("class") or []):
            continue
        anchor = block.select_one("a.result__a")
        if anchor is None or not anchor.get("href"):
            continue
        url = unwrap_redirect(str(anchor["href"]))
        if not url.startswith("http"):
            continue
        snippet = block.select_one(".result__snippet")
        results.append(
            WebResult(
                title=anchor.get_text(" ", strip=True) or url,
                url=url,
                content=snippet.get_text(" ", strip=True) if snippet else "",
            ),
        )
        if len(results) >= limit:
            break
    return results


class DuckDuckGoSearchBackend(_HttpBackend):
    """Free HTML search; page text is fetched for each hit."""

    name = "duckduckgo"

    async def search(self, query: str, limit: int) -> Sequence[WebResult]:
        try:
            response = await self._request(
                "POST",
                DUCKDUCKGO_HTML_URL,
                timeout=self._config.search_timeout_seconds,
                data={"q": query},
            )
        except httpx.HTTPError as exc:
            raise WebSearchError(f"duckduckgo request failed: {exc}") from exc
        if response.status_code >= 400:
            raise WebSearchError(f"duckduckgo returned {response.status_code}")
        hits = parse_duckduckgo_results(response.text, limit)
        if not hits:
            return []

        semaphore = asyncio.Semaphore(max(1, self._config.fetch_concurrency))

        async def enrich(hit: WebResult) -> WebResult:
            async with semaphore:
                excerpt = await self._fetch_excerpt(hit.url)
            if excerpt is None:
                return hit
            return WebResult(title=hit.title, url=hit.url, content=excerpt)

        # gather keeps the search order regardless of which fetch finishes first
        return list(await asyncio.gather(*(enrich(hit) for hit in hits)))

    async def _fetch_excerpt(self, url: str) -> str | None:
        try:
            html = await self._read_capped(
                url,
                timeout=self._config.fetch_timeout_seconds,
                max_bytes=self._config.max_page_bytes,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            LOGGER.info("websearch.page_failed", url=url, error=str(exc))
            return None
        excerpt = html_to_text(html, self._config.excerpt_chars)
        if len(excerpt) < self._config.min_excerpt_chars:
            return None
        return excerpt


class WebSearchClient:
    """Try each search tier in order; never raises."""

    def __init__(self, backends: Sequence[WebSearchBackend]) -> None:
        self._backends = list(backends)

    @property
    def backend_names(self) -> list[str]:
        return [backend.name for backend in self._backends]

    async def search(self, query: str, limit: int = 3) -> list[WebResult]:
        start = time.perf_counter()
        results: list[WebResult] = []
        for backend in self._backends:
            try:
                results = list(await backend.search(query, limit))[:limit]
            except Exception as exc:
                PipelineMetrics.observe_degraded(f"websearch.{backend.name}")
                LOGGER.warning("websearch.backend_failed", backend=backend.name, error=str(exc))
                continue
            if results:
                break
        duration = time.perf_counter() - start
        PipelineMetrics.observe_web_search(duration, len(results))
        LOGGER.info("websearch.complete", query=query, result_count=len(results), duration_seconds=duration)
        return results


def build_web_search_client(settings: Settings, *, client: httpx.AsyncClient | None = None) -> WebSearchClient:
    config = WebSearchConfig(
        fetch_timeout_seconds=settings.web_fetch_timeout_seconds,
        fetch_concurrency=settings.web_fetch_concurrency,
        excerpt_chars=settings.web_excerpt_chars,
        min_excerpt_chars=settings.web_min_excerpt_chars,
        max_page_bytes=settings.web_max_page_bytes,
    )
    backends: list[WebSearchBackend] = []
    if settings.firecrawl_api_key:
        backends.append(FirecrawlSearchBackend(settings.firecrawl_api_key, config, client))
    backends.append(DuckDuckGoSearchBackend(config, client))
    return WebSearchClient(backends)
