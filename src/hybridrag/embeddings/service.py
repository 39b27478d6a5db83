"""Embedding backends for HybridRAG."""

from __future__ import annotations

import asyncio
import hashlib
import math
import threading
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence, Tuple

import httpx
from langchain_community.embeddings import HuggingFaceEmbeddings
from langchain_core.embeddings import Embeddings as LangChainEmbeddings

from hybridrag.config import Settings
from hybridrag.errors import EmbeddingDimensionError, EmbeddingUnavailable
from hybridrag.metrics.observability import PipelineMetrics, get_logger

LOGGER = get_logger("embeddings")

OPENAI_BASE_URL = "https://api.openai.com/v1"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for embedding backends."""

    model: str = "sentence-transformers/all-MiniLM-L6-v2"
    dim: int = 384
    device: str | None = None
    normalize: bool = True
    cache_folder: str | None = None
    max_input_chars: int = 8000
    timeout_seconds: float = 15.0


class EmbeddingBackend(Protocol):
    """One strategy in the embedding chain."""

    name: str

    async def embed(self, text: str) -> Sequence[float]:
        """Return the embedding vector for ``text`` or raise."""


def _normalize(vector: Sequence[float]) -> Tuple[float, ...]:
    norm = math.sqrt(sum(value * value for value in vector)) or 1.0
    return tuple(value / norm for value in vector)


class HashEmbeddingBackend:
    """Deterministic lightweight embedding used for tests and offline mode."""

    name = "hash"

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()

    def _hash_to_vector(self, text: str) -> Tuple[float, ...]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        repeat = (self._config.dim + len(digest) - 1) // len(digest)
        raw = (digest * repeat)[: self._config.dim]
        vector = [byte / 255.0 for byte in raw]
        if self._config.normalize:
            return _normalize(vector)
        return tuple(vector)

    async def embed(self, text: str) -> Sequence[float]:
        return self._hash_to_vector(text[: self._config.max_input_chars])


class RemoteEmbeddingBackend:
    """OpenAI-compatible ``/embeddings`` endpoint asked explicitly for ``dim`` dimensions."""

    name = "remote"

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "text-embedding-3-small",
        base_url: str | None = None,
        config: EmbeddingConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._config = config or EmbeddingConfig()
        self._client = client
        self._openrouter = api_key.startswith("sk-or-")
        if base_url:
            self._base_url = base_url.rstrip("/")
        else:
            self._base_url = OPENROUTER_BASE_URL if self._openrouter else OPENAI_BASE_URL
        if self._openrouter and "/" not in model:
            model = f"openai/{model}"
        self._model = model

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        if self._openrouter:
            headers["HTTP-Referer"] = "https://github.com/hybridrag/hybridrag"
            headers["X-Title"] = "HybridRAG"
        return headers

    async def embed(self, text: str) -> Sequence[float]:
        payload = {
            "input": text[: self._config.max_input_chars],
            "model": self._model,
            "dimensions": self._config.dim,
        }
        url = f"{self._base_url}/embeddings"
        if self._client is not None:
            response = await self._client.post(url, json=payload, headers=self._headers())
        else:
            async with httpx.AsyncClient(timeout=self._config.timeout_seconds) as client:
                response = await client.post(url, json=payload, headers=self._headers())
        response.raise_for_status()
        body = response.json()
        try:
            vector = body["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ValueError(f"Malformed embedding response: {str(body)[:200]}") from exc
        if not isinstance(vector, list):
            raise ValueError("Embedding response field is not a list")
        return [float(value) for value in vector]


class LocalModelHandle:
    """Lazily loads one in-process embedding model and shares it across requests."""

    def __init__(self, factory: Callable[[], LangChainEmbeddings]) -> None:
        self._factory = factory
        self._model: LangChainEmbeddings | None = None
        self._lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._model is not None

    def get(self) -> LangChainEmbeddings:
        model = self._model
        if model is not None:
            return model
        with self._lock:
            if self._model is None:
                LOGGER.info("embedding.local_model_loading")
                self._model = self._factory()
                LOGGER.info("embedding.local_model_loaded")
            return self._model

    def close(self) -> None:
        with self._lock:
            self._model = None


def huggingface_factory(config: EmbeddingConfig) -> Callable[[], LangChainEmbeddings]:
    def _load() -> LangChainEmbeddings:
        model_kwargs = {"device": config.device} if config.device else {}
        return HuggingFaceEmbeddings(
            model_name=config.model,
            cache_folder=config.cache_folder,
            model_kwargs=model_kwargs,
            encode_kwargs={"normalize_embeddings": config.normalize},
        )

    return _load


class LocalEmbeddingBackend:
    """Sentence-transformers model run in a worker thread."""

    name = "local"

    def __init__(self, handle: LocalModelHandle, config: EmbeddingConfig | None = None) -> None:
        self._handle = handle
        self._config = config or EmbeddingConfig()

    def _embed_sync(self, text: str) -> Sequence[float]:
        return self._handle.get().embed_query(text)

    async def embed(self, text: str) -> Sequence[float]:
        vector = await asyncio.to_thread(self._embed_sync, text[: self._config.max_input_chars])
        if self._config.normalize:
            return _normalize(vector)
        return tuple(vector)


class EmbeddingRuntime:
    """Process-wide owner of the shared local model handle."""

    def __init__(self) -> None:
        self._handles: dict[str, LocalModelHandle] = {}
        self._lock = threading.Lock()

    def local_model(self, config: EmbeddingConfig) -> LocalModelHandle:
        with self._lock:
            handle = self._handles.get(config.model)
            if handle is None:
                handle = LocalModelHandle(huggingface_factory(config))
                self._handles[config.model] = handle
            return handle

    def close(self) -> None:
        with self._lock:
            for handle in self._handles.values():
                handle.close()
            self._handles.clear()


_runtime: EmbeddingRuntime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> EmbeddingRuntime:
    global _runtime  # noqa: PLW0603 - process-wide context
    with _runtime_lock:
        if _runtime is None:
            _runtime = EmbeddingRuntime()
        return _runtime


class EmbeddingChain:
    """Try each backend in order until one returns a vector of the right size."""

    def __init__(self, backends: Sequence[EmbeddingBackend], *, dim: int = 384) -> None:
        self._backends = list(backends)
        self._dim = dim

    @property
    def dim(self) -> int:
        return self._dim

    @property
    def backend_names(self) -> list[str]:
        return [backend.name for backend in self._backends]

    def validate(self, vector: Sequence[float]) -> Tuple[float, ...]:
        if len(vector) != self._dim:
            raise EmbeddingDimensionError(self._dim, len(vector))
        return tuple(float(value) for value in vector)

    async def embed(self, text: str) -> Tuple[float, ...]:
        failures: list[tuple[str, str]] = []
        for backend in self._backends:
            try:
                vector = self.validate(await backend.embed(text))
            except Exception as exc:
                failures.append((backend.name, str(exc) or type(exc).__name__))
                PipelineMetrics.observe_embedding_failure(backend.name)
                LOGGER.warning("embedding.backend_failed", backend=backend.name, error=str(exc))
                continue
            return vector
        raise EmbeddingUnavailable(failures)


def build_embedding_chain(
    settings: Settings,
    *,
    runtime: EmbeddingRuntime | None = None,
    client: httpx.AsyncClient | None = None,
) -> EmbeddingChain:
    """Assemble the backend order from settings: remote, then local model or hash."""

    config = EmbeddingConfig(
        model=settings.embedding_local_model,
        dim=settings.embedding_dim,
        device=settings.embedding_device,
        cache_folder=str(settings.embedding_cache_dir) if settings.embedding_cache_dir else None,
        max_input_chars=settings.embedding_max_input_chars,
        timeout_seconds=settings.embedding_timeout_seconds,
    )
    backends: list[EmbeddingBackend] = []
    if settings.embedding_api_key:
        backends.append(
            RemoteEmbeddingBackend(
                settings.embedding_api_key,
                model=settings.embedding_remote_model,
                base_url=settings.embedding_base_url,
                config=config,
                client=client,
            ),
        )
    if settings.use_model_embeddings:
        handle = (runtime or get_runtime()).local_model(config)
        backends.append(LocalEmbeddingBackend(handle, config))
    else:
        LOGGER.info("embedding.hash_mode")
        backends.append(HashEmbeddingBackend(config))
    return EmbeddingChain(backends, dim=settings.embedding_dim)
