"""Passage store implementations."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Iterable, Mapping, MutableMapping, Protocol, Sequence

import chromadb
from chromadb.api import ClientAPI

from hybridrag.errors import EmbeddingDimensionError
from hybridrag.models import Passage, RetrievedItem


class PassageStore(Protocol):
    """Query contract the retrieval pipeline needs from persistence."""

    def add_passages(self, passages: Sequence[Passage]) -> Sequence[str]:
        """Persist passages; those without an embedding stay pending."""

    def set_embedding(self, passage_id: str, vector: Sequence[float]) -> None:
        """Attach an embedding to a pending passage, making it searchable."""

    def pending_passages(self, *, user_id: str | None = None) -> Sequence[Passage]:
        """Passages still waiting for an embedding."""

    def document_owner(self, document_id: str) -> str | None:
        """Return the user owning a document, or ``None`` if it is unknown."""

    def delete_document(self, document_id: str, *, user_id: str) -> int:
        """Remove every passage of a document owned by ``user_id``."""

    def query_workspace(
        self, user_id: str, workspace_id: str, vector: Sequence[float], limit: int
    ) -> Sequence[RetrievedItem]:
        """Passages in one workspace of the user, most similar first."""

    def query_document(
        self, user_id: str, document_id: str, vector: Sequence[float], limit: int
    ) -> Sequence[RetrievedItem]:
        """Passages of one document of the user, most similar first."""

    def query_global(self, user_id: str, vector: Sequence[float], limit: int) -> Sequence[RetrievedItem]:
        """Passages across the user's whole collection, most similar first."""

    def count(self, *, user_id: str | None = None, workspace_id: str | None = None) -> int:
        """Return number of searchable passages."""


class ChromaPassageStore:
    """Chroma-backed passage store using cosine distance."""

    def __init__(
        self,
        collection_name: str = "hybridrag",
        *,
        dim: int = 384,
        client: ClientAPI | None = None,
        persist_directory: str | Path | None = None,
    ) -> None:
        if client is not None:
            self._client = client
        elif persist_directory is not None:
            self._client = chromadb.PersistentClient(path=str(persist_directory))
        else:
            self._client = chromadb.EphemeralClient()
        self._collection = self._client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
        )
        self._dim = dim
        # passages waiting for their embedding; never visible to queries
        self._pending: dict[str, Passage] = {}
        self._lock = threading.Lock()

    def add_passages(self, passages: Sequence[Passage]) -> Sequence[str]:
        ready = [passage for passage in passages if passage.embedding is not None]
        with self._lock:
            for passage in passages:
                if passage.embedding is None:
                    self._pending[passage.id] = passage
            if ready:
                self._upsert(ready)
        return [passage.id for passage in passages]

    def set_embedding(self, passage_id: str, vector: Sequence[float]) -> None:
        # held across the upsert so a concurrent delete cannot be undone
        with self._lock:
            passage = self._pending.get(passage_id)
            if passage is None:
                raise KeyError(f"Unknown pending passage: {passage_id}")
            self._upsert([self._with_embedding(passage, vector)])
            del self._pending[passage_id]

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def pending_passages(self, *, user_id: str | None = None) -> Sequence[Passage]:
        with self._lock:
            passages = list(self._pending.values())
        if user_id is not None:
            passages = [p for p in passages if p.user_id == user_id]
        return sorted(passages, key=lambda p: (p.document_id, p.metadata.ordinal))

    def document_owner(self, document_id: str) -> str | None:
        with self._lock:
            for passage in self._pending.values():
                if passage.document_id == document_id:
                    return passage.user_id
            existing = self._collection.get(where={"document_id": document_id}, limit=1, include=["metadatas"])
        metadatas = existing.get("metadatas") or []
        if not metadatas or not isinstance(metadatas[0], Mapping):
            return None
        owner = metadatas[0].get("user_id")
        return str(owner) if owner else None

    def delete_document(self, document_id: str, *, user_id: str) -> int:
        where = {"$and": [{"user_id": user_id}, {"document_id": document_id}]}
        with self._lock:
            pending_ids = [
                pid for pid, p in self._pending.items() if p.document_id == document_id and p.user_id == user_id
            ]
            for pid in pending_ids:
                del self._pending[pid]
            existing = self._collection.get(where=where, include=[])
            ids = list(existing.get("ids") or [])
            if ids:
                self._collection.delete(ids=ids)
        return len(ids) + len(pending_ids)

    def query_workspace(
        self, user_id: str, workspace_id: str, vector: Sequence[float], limit: int
    ) -> Sequence[RetrievedItem]:
        where = {"$and": [{"user_id": user_id}, {"workspace_id": workspace_id}]}
        return self._query(where, vector, limit)

    def query_document(
        self, user_id: str, document_id: str, vector: Sequence[float], limit: int
    ) -> Sequence[RetrievedItem]:
        where = {"$and": [{"user_id": user_id}, {"document_id": document_id}]}
        return self._query(where, vector, limit)

    def query_global(self, user_id: str, vector: Sequence[float], limit: int) -> Sequence[RetrievedItem]:
        return self._query({"user_id": user_id}, vector, limit)

    def count(self, *, user_id: str | None = None, workspace_id: str | None = None) -> int:
        where = self._where(user_id=user_id, workspace_id=workspace_id)
        if where is None:
            return int(self._collection.count())
        result = self._collection.get(where=where, include=[])
        return len(result.get("ids") or [])

    def document_stats(self, *, user_id: str, workspace_id: str | None = None) -> Mapping[str, Mapping[str, Any]]:
        """Return per-document passage counts and word totals for a scope."""

        where = self._where(user_id=user_id, workspace_id=workspace_id)
        result = self._collection.get(where=where, include=["metadatas"])
        stats: dict[str, dict[str, Any]] = {}
        for metadata in result.get("metadatas") or []:
            if not isinstance(metadata, Mapping):
                continue
            doc_id = str(metadata.get("document_id", ""))
            entry = stats.setdefault(
                doc_id,
                {
                    "title": str(metadata.get("source_title", "")),
                    "passages": 0,
                    "words": int(metadata.get("doc_words", 0) or 0),
                },
            )
            entry["passages"] += 1
        return stats

    def _upsert(self, passages: Sequence[Passage]) -> None:
        vectors = []
        for passage in passages:
            vector = list(passage.embedding or ())
            if len(vector) != self._dim:
                raise EmbeddingDimensionError(self._dim, len(vector))
            vectors.append(vector)
        self._collection.upsert(
            ids=[passage.id for passage in passages],
            documents=[passage.content for passage in passages],
            embeddings=vectors,
            metadatas=[self._serialize(passage) for passage in passages],
        )

    def _query(self, where: Mapping[str, object], vector: Sequence[float], limit: int) -> Sequence[RetrievedItem]:
        if limit <= 0:
            return []
        if len(vector) != self._dim:
            raise EmbeddingDimensionError(self._dim, len(vector))
        available = self._collection.count()
        if available == 0:
            return []
        results = self._collection.query(
            query_embeddings=[list(vector)],
            n_results=min(limit, available),
            where=where,
            include=["documents", "metadatas", "distances"],
        )
        items = self._deserialize_results(results)
        items.sort(key=lambda item: item.similarity, reverse=True)
        return items[:limit]

    @staticmethod
    def _where(*, user_id: str | None, workspace_id: str | None) -> Mapping[str, object] | None:
        clauses: list[dict[str, object]] = []
        if user_id:
            clauses.append({"user_id": user_id})
        if workspace_id:
            clauses.append({"workspace_id": workspace_id})
        if not clauses:
            return None
        if len(clauses) == 1:
            return clauses[0]
        return {"$and": clauses}

    def _with_embedding(self, passage: Passage, vector: Sequence[float]) -> Passage:
        return Passage(
            id=passage.id,
            document_id=passage.document_id,
            user_id=passage.user_id,
            content=passage.content,
            metadata=passage.metadata,
            workspace_id=passage.workspace_id,
            embedding=tuple(float(value) for value in vector),
        )

    @staticmethod
    def _serialize(passage: Passage) -> MutableMapping[str, object]:
        # chroma metadata values cannot be None
        return {
            "document_id": passage.document_id,
            "user_id": passage.user_id,
            "workspace_id": passage.workspace_id or "",
            "source_title": passage.metadata.source_title,
            "ordinal": passage.metadata.ordinal,
            "total": passage.metadata.total,
            "doc_words": passage.metadata.doc_words,
        }

    def _deserialize_results(self, results: Mapping[str, object]) -> list[RetrievedItem]:
        ids = self._first(results.get("ids", []))
        documents = self._first(results.get("documents", []))
        metadatas = self._first(results.get("metadatas", []))
        distances = self._first(results.get("distances", []))
        retrieved: list[RetrievedItem] = []
        for passage_id, content, metadata, distance in zip(ids, documents, metadatas, distances, strict=False):
            if distance is None:
                continue
            metadata = metadata or {}
            retrieved.append(
                RetrievedItem(
                    passage_id=str(passage_id),
                    document_id=str(metadata.get("document_id", "")),
                    content=str(content or ""),
                    similarity=1.0 - float(distance),
                    doc_title=str(metadata.get("source_title", "")),
                ),
            )
        return retrieved

    @staticmethod
    def _first(value: object) -> list:
        if isinstance(value, list) and value:
            first = value[0]
            return list(first) if isinstance(first, Iterable) and not isinstance(first, (str, bytes)) else []
        return []
