"""Retrieval components."""

from .service import DOCUMENT_HEADING, WEB_HEADING, RetrievalConfig, RetrievalOrchestrator

__all__ = ["DOCUMENT_HEADING", "WEB_HEADING", "RetrievalConfig", "RetrievalOrchestrator"]
