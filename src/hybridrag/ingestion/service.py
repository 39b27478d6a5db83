"""Document ingestion service for HybridRAG."""

from __future__ import annotations

import asyncio
import re
import time
import unicodedata
from dataclasses import dataclass
from typing import List, Sequence

from hybridrag.embeddings.service import EmbeddingChain
from hybridrag.embeddings.store import PassageStore
from hybridrag.ingestion.chunker import chunk_text
from hybridrag.metrics.observability import PipelineMetrics, get_logger
from hybridrag.models import Document, Passage, PassageMetadata


class IngestionError(RuntimeError):
    """Raised when a document cannot be ingested at all."""


class DocumentConflict(IngestionError):
    """Raised when a document id is already owned by another user."""


@dataclass(frozen=True)
class IngestionConfig:
    """Configuration for document ingestion."""

    chunk_size: int = 500
    chunk_overlap: int = 50


@dataclass(frozen=True)
class IngestionReport:
    document_id: str
    chunks: int
    embedded: int
    failed: int


@dataclass(frozen=True)
class ReembedReport:
    retried: int
    embedded: int
    failed: int


def _normalize_text(raw: str) -> str:
    normalized = unicodedata.normalize("NFKC", raw)
    normalized = normalized.replace("\u00a0", " ")
    normalized = re.sub(r"[ \t\r\f\v]+", " ", normalized)
    return normalized.strip()


class PassageIngestor:
    """Chunk a document, write pending passages, then embed them one by one."""

    _logger = get_logger("ingestion")

    def __init__(
        self,
        embedder: EmbeddingChain,
        store: PassageStore,
        config: IngestionConfig | None = None,
    ) -> None:
        self._embedder = embedder
        self._store = store
        self._config = config or IngestionConfig()

    def build_passages(self, document: Document) -> List[Passage]:
        text = _normalize_text(document.content)
        pieces = chunk_text(text, self._config.chunk_size, self._config.chunk_overlap)
        words = len(text.split())
        return [
            Passage(
                id=f"{document.id}-{ordinal}",
                document_id=document.id,
                user_id=document.user_id,
                workspace_id=document.workspace_id,
                content=piece,
                metadata=PassageMetadata(
                    source_title=document.title,
                    ordinal=ordinal,
                    total=len(pieces),
                    doc_words=words,
                ),
            )
            for ordinal, piece in enumerate(pieces)
        ]

    async def ingest(self, document: Document) -> IngestionReport:
        if not document.content.strip():
            raise IngestionError(f"Document {document.id} has no text content")

        start = time.perf_counter()
        await self._replace_previous_version(document)
        passages = self.build_passages(document)
        await asyncio.to_thread(self._store.add_passages, passages)
        embedded, failed = await self._embed_passages(passages)

        duration = time.perf_counter() - start
        PipelineMetrics.observe_ingestion(duration, len(passages))
        self._logger.info(
            "ingestion.complete",
            document_id=document.id,
            chunk_count=len(passages),
            embedded=embedded,
            failed=failed,
            duration_seconds=duration,
        )
        return IngestionReport(document_id=document.id, chunks=len(passages), embedded=embedded, failed=failed)

    async def reembed_pending(self, *, user_id: str | None = None) -> ReembedReport:
        """Retry embedding for passages whose first attempt failed."""

        passages = list(await asyncio.to_thread(self._store.pending_passages, user_id=user_id))
        embedded, failed = await self._embed_passages(passages)
        self._logger.info("ingestion.reembedded", user_id=user_id, retried=len(passages), embedded=embedded, failed=failed)
        return ReembedReport(retried=len(passages), embedded=embedded, failed=failed)

    async def _replace_previous_version(self, document: Document) -> None:
        owner = await asyncio.to_thread(self._store.document_owner, document.id)
        if owner is None:
            return
        if owner != document.user_id:
            raise DocumentConflict(f"Document id {document.id} is already in use")
        removed = await asyncio.to_thread(self._store.delete_document, document.id, user_id=document.user_id)
        self._logger.info("ingestion.replaced", document_id=document.id, removed=removed)

    async def _embed_passages(self, passages: Sequence[Passage]) -> tuple[int, int]:
        embedded = 0
        failed = 0
        for passage in passages:
            try:
                vector = await self._embedder.embed(passage.content)
                await asyncio.to_thread(self._store.set_embedding, passage.id, vector)
            except Exception as exc:
                failed += 1
                self._logger.warning(
                    "ingestion.chunk_failed",
                    document_id=passage.document_id,
                    passage_id=passage.id,
                    error=str(exc),
                )
                continue
            embedded += 1
        return embedded, failed
