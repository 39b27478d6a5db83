"""Hybrid retrieval: scoped vector search, global widening and web fallback."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Sequence

from hybridrag.embeddings.service import EmbeddingChain
from hybridrag.embeddings.store import PassageStore
from hybridrag.errors import RetrievalDegraded
from hybridrag.metrics.observability import PipelineMetrics, get_logger
from hybridrag.models import RetrievalResult, RetrievedItem, Scope, Source, WebResult
from hybridrag.websearch.service import WebSearchClient

DOCUMENT_HEADING = "WORKSPACE DOCUMENTS"
WEB_HEADING = "LIVE WEB KNOWLEDGE"


@dataclass(frozen=True)
class RetrievalConfig:
    """Thresholds are cosine similarities."""

    top_k: int = 5
    noise_floor: float = 0.15
    widen_threshold: float = 0.4
    web_threshold: float = 0.3
    web_results: int = 3


class RetrievalOrchestrator:
    """Builds the numbered context and source list for one question."""

    def __init__(
        self,
        embedder: EmbeddingChain,
        store: PassageStore,
        web_search: WebSearchClient | None = None,
        config: RetrievalConfig | None = None,
    ) -> None:
        self._embedder = embedder
        self._store = store
        self._web_search = web_search
        self._config = config or RetrievalConfig()
        self._logger = get_logger("retrieval")

    @property
    def config(self) -> RetrievalConfig:
        return self._config

    async def retrieve(
        self,
        question: str,
        scope: Scope,
        user_id: str,
        *,
        force_web: bool = False,
    ) -> RetrievalResult:
        start = time.perf_counter()
        # EmbeddingUnavailable propagates: nothing can be retrieved without a query vector.
        vector = await self._embedder.embed(question)

        items = await self._scoped_query(scope, user_id, vector)
        items = self._above_floor(items)
        top_score = items[0].similarity if items else 0.0

        if not items or top_score < self._config.widen_threshold:
            items = await self._widen(user_id, vector, items, top_score)
            top_score = items[0].similarity if items else 0.0

        sources: list[Source] = []
        sections: list[str] = []
        if items:
            sections.append(self._document_section(items, sources))

        need_web = force_web or not items or top_score < self._config.web_threshold
        used_web = False
        if need_web and self._web_search is not None:
            web_results = await self._search_web(question)
            if web_results:
                sections.append(self._web_section(web_results, sources))
                used_web = True

        duration = time.perf_counter() - start
        PipelineMetrics.observe_retrieval(duration, len(items), (item.similarity for item in items))
        if not sources:
            self._logger.info("retrieval.no_context", scope=scope.kind, user_id=user_id)
        self._logger.info(
            "retrieval.complete",
            scope=scope.kind,
            doc_count=len(items),
            web_count=len(sources) - len(items),
            top_score=top_score,
            force_web=force_web,
            web_triggered=need_web,
            duration_seconds=duration,
        )
        return RetrievalResult(
            context="\n\n".join(sections),
            sources=sources,
            used_web=used_web,
            top_score=top_score,
        )

    async def _scoped_query(self, scope: Scope, user_id: str, vector: Sequence[float]) -> list[RetrievedItem]:
        if scope.workspace_id:
            return await self._run_query(
                "store.workspace", self._store.query_workspace, user_id, scope.workspace_id, vector, self._config.top_k
            )
        return await self._run_query(
            "store.document", self._store.query_document, user_id, scope.document_id, vector, self._config.top_k
        )

    async def _widen(
        self,
        user_id: str,
        vector: Sequence[float],
        items: list[RetrievedItem],
        top_score: float,
    ) -> list[RetrievedItem]:
        PipelineMetrics.observe_widening()
        widened = self._above_floor(
            await self._run_query("store.global", self._store.query_global, user_id, vector, self._config.top_k)
        )
        seen = {item.passage_id for item in items}
        merged = list(items)
        for item in widened:
            if item.passage_id in seen or item.similarity <= top_score:
                continue
            seen.add(item.passage_id)
            merged.append(item)
        merged.sort(key=lambda item: item.similarity, reverse=True)
        self._logger.info(
            "retrieval.widened",
            scoped_count=len(items),
            added=len(merged) - len(items),
            previous_top_score=top_score,
        )
        return merged[: self._config.top_k]

    async def _run_query(self, stage: str, query: Callable[..., Sequence[RetrievedItem]], *args) -> list[RetrievedItem]:
        try:
            results = await asyncio.to_thread(query, *args)
        except Exception as exc:
            self._degraded(RetrievalDegraded(stage, exc))
            return []
        ordered = list(results)
        ordered.sort(key=lambda item: item.similarity, reverse=True)
        return ordered

    async def _search_web(self, question: str) -> list[WebResult]:
        try:
            return list(await self._web_search.search(question, self._config.web_results))
        except Exception as exc:
            self._degraded(RetrievalDegraded("websearch", exc))
            return []

    def _degraded(self, error: RetrievalDegraded) -> None:
        PipelineMetrics.observe_degraded(error.stage)
        self._logger.warning("retrieval.degraded", stage=error.stage, error=str(error))

    def _above_floor(self, items: Sequence[RetrievedItem]) -> list[RetrievedItem]:
        return [item for item in items if item.similarity > self._config.noise_floor]

    @staticmethod
    def _document_section(items: Sequence[RetrievedItem], sources: list[Source]) -> str:
        lines = [f"{DOCUMENT_HEADING}:"]
        for item in items:
            source = Source(
                id=len(sources) + 1,
                type="document",
                title=item.doc_title or item.document_id,
                content=item.content,
            )
            sources.append(source)
            lines.append(f"[{source.id}] Source: {source.title} (relevance {item.similarity:.2f})\n{item.content}")
        return "\n\n".join(lines)

    @staticmethod
    def _web_section(results: Sequence[WebResult], sources: list[Source]) -> str:
        lines = [f"{WEB_HEADING}:"]
        for result in results:
            source = Source(
                id=len(sources) + 1,
                type="web",
                title=result.title,
                url=result.url,
                content=result.content,
            )
            sources.append(source)
            lines.append(f"[{source.id}] Source: {source.title} ({source.url})\n{result.content}")
        return "\n\n".join(lines)
