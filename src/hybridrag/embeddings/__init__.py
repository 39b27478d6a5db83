"""Embedding services."""

from .service import (
    EmbeddingBackend,
    EmbeddingChain,
    EmbeddingConfig,
    EmbeddingRuntime,
    HashEmbeddingBackend,
    LocalEmbeddingBackend,
    LocalModelHandle,
    RemoteEmbeddingBackend,
    build_embedding_chain,
    get_runtime,
)
from .store import ChromaPassageStore, PassageStore

__all__ = [
    "EmbeddingBackend",
    "EmbeddingChain",
    "EmbeddingConfig",
    "EmbeddingRuntime",
    "ChromaPassageStore",
    "HashEmbeddingBackend",
    "LocalEmbeddingBackend",
    "LocalModelHandle",
    "PassageStore",
    "RemoteEmbeddingBackend",
    "build_embedding_chain",
    "get_runtime",
]
