"""Deterministic character chunking with word-boundary overlap."""

from __future__ import annotations

# A window is cut at its last space only when that space is this far into it.
BREAK_RATIO = 0.8


def chunk_text(text: str, chunk_size: int = 500, overlap: int = 50) -> list[str]:
    """Split ``text`` into overlapping, trimmed, non-empty passages.

    Each window covers at most ``chunk_size`` characters. When a window does
    not reach the end of the text and its last space lies past
    ``chunk_size * 0.8``, the window is cut at that space and the next one
    starts ``overlap`` characters before it. Otherwise the cursor advances by
    ``chunk_size - overlap``.
    """

    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if overlap < 0:
        raise ValueError("overlap must not be negative")
    if overlap >= chunk_size:
        raise ValueError(f"overlap ({overlap}) must be smaller than chunk_size ({chunk_size})")

    chunks: list[str] = []
    length = len(text)
    start = 0
    while start < length:
        end = min(start + chunk_size, length)
        window = text[start:end]
        if end < length:
            last_space = window.rfind(" ")
            if last_space > chunk_size * BREAK_RATIO:
                window = window[:last_space]
                # large overlaps could otherwise move the cursor backwards
                start += max(last_space + 1 - overlap, 1)
            else:
                start += chunk_size - overlap
        else:
            start += chunk_size - overlap

        stripped = window.strip()
        if stripped:
            chunks.append(stripped)
    return chunks
