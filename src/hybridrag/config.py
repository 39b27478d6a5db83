"""Runtime configuration for the HybridRAG services."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="hybridrag_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"

    chroma_persist_dir: Path = Path("./.chroma")
    chroma_collection: str = "hybridrag-passages"
    chroma_host: str | None = None
    chroma_port: int | None = None
    chroma_ssl: bool = False

    # Remote embedding API (OpenAI compatible). Keys starting with "sk-or-" route to OpenRouter.
    embedding_api_key: str | None = None
    embedding_base_url: str | None = None
    embedding_remote_model: str = "text-embedding-3-small"
    embedding_timeout_seconds: float = 15.0
    embedding_max_input_chars: int = 8000

    # Local fallback model; must produce embedding_dim vectors
    embedding_local_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    embedding_cache_dir: Path | None = None
    embedding_device: str | None = None
    embedding_dim: int = 384
    use_model_embeddings: bool = False

    # Web search
    web_search_enabled: bool = True
    firecrawl_api_key: str | None = None
    web_search_results: int = 3
    web_fetch_timeout_seconds: float = 5.0
    web_fetch_concurrency: int = 3
    web_excerpt_chars: int = 2000
    web_min_excerpt_chars: int = 50
    web_max_page_bytes: int = 512_000

    # Retrieval
    max_chunks: int = 5
    noise_floor: float = 0.15
    widen_threshold: float = 0.4
    web_threshold: float = 0.3

    chunk_size: int = 500
    chunk_overlap: int = 50

    # Generation (Groq's OpenAI-compatible endpoint by default)
    generator_api_key: str | None = None
    generator_base_url: str = "https://api.groq.com/openai/v1"
    generator_model: str = "llama-3.1-8b-instant"
    generator_max_new_tokens: int = 1024
    generator_temperature: float = 0.3
    generator_timeout_seconds: float = 60.0
    use_model_generator: bool = False
    history_limit: int = 10

    # CORS
    cors_allow_origins: tuple[str, ...] = ()  # e.g., ("*") to allow all
    cors_allow_credentials: bool = False
    cors_allow_methods: tuple[str, ...] = ("GET", "POST", "DELETE", "OPTIONS")
    cors_allow_headers: tuple[str, ...] = ("*",)

    # Security
    api_key: str | None = None  # if set, required in X-API-Key header
    rate_limit_requests: int = 120  # per window per client
    rate_limit_window_seconds: int = 60
    max_document_chars: int = 2_000_000

    @property
    def is_test(self) -> bool:
        return self.environment == "test"

    @property
    def remote_embeddings_enabled(self) -> bool:
        return bool(self.embedding_api_key)


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
