"""Observability helpers for HybridRAG."""

from __future__ import annotations

import logging
from typing import Iterable

import structlog
from prometheus_client import Counter, Histogram

_logger_configured = False


def configure_logging(level: int = logging.INFO) -> None:
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured:
        return
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()


def get_logger(name: str = "hybridrag") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


def _clamp_score(score: float) -> float:
    if score < 0.0:
        return 0.0
    if score > 1.0:
        return 1.0
    return score


class PipelineMetrics:
    """Prometheus metrics for pipeline stages."""

    ingestion_latency = Histogram(
        "hybridrag_ingestion_duration_seconds",
        "Time spent chunking and embedding a document.",
        buckets=(0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
    )
    ingestion_chunks = Histogram(
        "hybridrag_ingestion_chunk_count",
        "Chunks produced per ingested document.",
        buckets=(0, 1, 5, 10, 20, 40, 80, 160),
    )
    embedding_failures = Counter(
        "hybridrag_embedding_backend_failures_total",
        "Embedding attempts that failed, per backend.",
        ["backend"],
    )
    retrieval_latency = Histogram(
        "hybridrag_retrieval_duration_seconds",
        "Time spent assembling retrieval context.",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0),
    )
    retrieved_chunk_count = Histogram(
        "hybridrag_retrieved_chunk_count",
        "Number of document passages placed in context.",
        buckets=(0, 1, 2, 3, 5, 8, 13),
    )
    grounding_score = Histogram(
        "hybridrag_grounding_score",
        "Similarity of passages placed in context.",
        buckets=(0.0, 0.15, 0.3, 0.4, 0.5, 0.75, 1.0),
    )
    scope_widenings = Counter(
        "hybridrag_scope_widenings_total",
        "Queries that fell back to the user's whole collection.",
    )
    web_search_latency = Histogram(
        "hybridrag_web_search_duration_seconds",
        "Time spent on live web search including page fetches.",
        buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0),
    )
    web_search_results = Histogram(
        "hybridrag_web_search_result_count",
        "Web results placed in context.",
        buckets=(0, 1, 2, 3, 5),
    )
    degraded_events = Counter(
        "hybridrag_degraded_events_total",
        "Non-fatal failures that reduced the available context.",
        ["stage"],
    )
    generation_latency = Histogram(
        "hybridrag_generation_duration_seconds",
        "Time spent streaming answers.",
        buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
    )

    @classmethod
    def observe_ingestion(cls, duration_seconds: float, chunk_count: int) -> None:
        cls.ingestion_latency.observe(duration_seconds)
        cls.ingestion_chunks.observe(chunk_count)

    @classmethod
    def observe_embedding_failure(cls, backend: str) -> None:
        cls.embedding_failures.labels(backend=backend).inc()

    @classmethod
    def observe_retrieval(
        cls,
        duration_seconds: float,
        chunk_count: int,
        scores: Iterable[float],
    ) -> None:
        cls.retrieval_latency.observe(duration_seconds)
        cls.retrieved_chunk_count.observe(chunk_count)
        for score in scores:
            cls.grounding_score.observe(_clamp_score(score))

    @classmethod
    def observe_widening(cls) -> None:
        cls.scope_widenings.inc()

    @classmethod
    def observe_web_search(cls, duration_seconds: float, result_count: int) -> None:
        cls.web_search_latency.observe(duration_seconds)
        cls.web_search_results.observe(result_count)

    @classmethod
    def observe_degraded(cls, stage: str) -> None:
        cls.degraded_events.labels(stage=stage).inc()

    @classmethod
    def observe_generation(cls, duration_seconds: float) -> None:
        cls.generation_latency.observe(duration_seconds)


__all__ = [
    "PipelineMetrics",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_logger",
]
