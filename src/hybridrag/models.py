"""Shared domain models used across the HybridRAG pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Sequence
from uuid import uuid4

SourceType = Literal["document", "web"]
Role = Literal["user", "assistant"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Document:
    """Plain-text document handed over by the upload collaborator."""

    id: str
    title: str
    content: str
    user_id: str
    workspace_id: str | None = None


@dataclass(frozen=True)
class PassageMetadata:
    source_title: str
    ordinal: int
    total: int
    doc_words: int = 0


@dataclass(frozen=True)
class Passage:
    """Chunk of a document together with its (possibly pending) embedding."""

    id: str
    document_id: str
    user_id: str
    content: str
    metadata: PassageMetadata
    workspace_id: str | None = None
    embedding: tuple[float, ...] | None = None


@dataclass(frozen=True)
class Scope:
    """Retrieval scope: exactly one of workspace or document."""

    workspace_id: str | None = None
    document_id: str | None = None

    def __post_init__(self) -> None:
        if bool(self.workspace_id) == bool(self.document_id):
            raise ValueError("Scope requires exactly one of workspace_id or document_id")

    @property
    def kind(self) -> Literal["workspace", "document"]:
        return "workspace" if self.workspace_id else "document"


@dataclass(frozen=True)
class RetrievedItem:
    """Passage returned from a similarity query."""

    passage_id: str
    document_id: str
    content: str
    similarity: float
    doc_title: str


@dataclass(frozen=True)
class WebResult:
    title: str
    url: str
    content: str


@dataclass(frozen=True)
class Source:
    """Numbered citation target; ``id`` matches the ``[n]`` markers in answers."""

    id: int
    type: SourceType
    title: str
    content: str
    url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "url": self.url,
            "content": self.content,
        }


@dataclass(frozen=True)
class RetrievalResult:
    """Context assembled for one question."""

    context: str
    sources: Sequence[Source]
    used_web: bool
    top_score: float = 0.0

    @property
    def doc_count(self) -> int:
        return sum(1 for source in self.sources if source.type == "document")

    @property
    def web_count(self) -> int:
        return sum(1 for source in self.sources if source.type == "web")

    @property
    def has_doc_context(self) -> bool:
        return self.doc_count > 0

    @property
    def has_web_context(self) -> bool:
        return self.web_count > 0


@dataclass(frozen=True)
class Message:
    """Conversation turn persisted for replay."""

    role: Role
    content: str
    user_id: str
    workspace_id: str | None = None
    id: str = field(default_factory=lambda: uuid4().hex)
    created_at: datetime = field(default_factory=_utcnow)
