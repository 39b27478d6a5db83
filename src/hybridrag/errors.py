"""Error taxonomy for the retrieval pipeline."""

from __future__ import annotations

from typing import Sequence


class EmbeddingUnavailable(RuntimeError):
    """Raised when every embedding backend failed for a piece of text."""

    def __init__(self, failures: Sequence[tuple[str, str]] = ()) -> None:
        self.failures = list(failures)
        detail = "; ".join(f"{name}: {reason}" for name, reason in self.failures) or "no backends configured"
        super().__init__(f"No embedding backend available ({detail})")


class EmbeddingDimensionError(ValueError):
    """Raised when a vector does not have the configured dimensionality."""

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Expected {expected}-dimensional embedding, got {actual}")


class RetrievalDegraded(RuntimeError):
    """Non-fatal failure of the vector store or web search."""

    def __init__(self, stage: str, cause: Exception | str) -> None:
        self.stage = stage
        super().__init__(f"{stage} degraded: {cause}")


class WebSearchError(RuntimeError):
    """Raised by a single web search backend; the client moves to the next tier."""
