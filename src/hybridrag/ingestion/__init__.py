"""Document ingestion pipeline."""

from .chunker import chunk_text
from .service import (
    DocumentConflict,
    IngestionConfig,
    IngestionError,
    IngestionReport,
    PassageIngestor,
    ReembedReport,
)

__all__ = [
    "DocumentConflict",
    "IngestionConfig",
    "IngestionError",
    "IngestionReport",
    "PassageIngestor",
    "ReembedReport",
    "chunk_text",
]
