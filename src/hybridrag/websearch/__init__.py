"""Live web search."""

from .service import (
    DuckDuckGoSearchBackend,
    FirecrawlSearchBackend,
    WebSearchBackend,
    WebSearchClient,
    WebSearchConfig,
    build_web_search_client,
)

__all__ = [
    "DuckDuckGoSearchBackend",
    "FirecrawlSearchBackend",
    "WebSearchBackend",
    "WebSearchClient",
    "WebSearchConfig",
    "build_web_search_client",
]
