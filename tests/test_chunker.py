"""Tests for the character chunker."""

from __future__ import annotations

import pytest

from hybridrag.ingestion.chunker import chunk_text


def _text(length: int) -> str:
    # numbered words keep every substring unique
    words: list[str] = []
    index = 0
    while len(" ".join(words)) < length:
        words.append(f"term{index}")
        index += 1
    return " ".join(words)[:length]


def test_empty_text_yields_no_chunks():
    assert chunk_text("") == []
    assert chunk_text("   \n  ") == []


def test_short_text_is_single_chunk():
    assert chunk_text("  hello world  ") == ["hello world"]


@pytest.mark.parametrize("overlap", [500, 600])
def test_overlap_not_smaller_than_chunk_size_rejected(overlap):
    with pytest.raises(ValueError):
        chunk_text("some text", chunk_size=500, overlap=overlap)


def test_invalid_sizes_rejected():
    with pytest.raises(ValueError):
        chunk_text("abc", chunk_size=0, overlap=0)
    with pytest.raises(ValueError):
        chunk_text("abc", chunk_size=10, overlap=-1)


def test_1200_character_document_yields_three_overlapping_chunks():
    text = _text(1200)
    assert len(text) == 1200

    chunks = chunk_text(text, chunk_size=500, overlap=50)

    assert len(chunks) == 3
    assert all(len(chunk) <= 500 for chunk in chunks)
    for previous, current in zip(chunks, chunks[1:]):
        shared = max(size for size in range(0, min(len(previous), len(current)) + 1) if previous.endswith(current[:size]))
        assert shared >= 40


def test_chunking_is_deterministic():
    text = _text(3000)
    assert chunk_text(text) == chunk_text(text)


def test_chunks_are_substrings_that_cover_every_word():
    text = _text(2500)
    chunks = chunk_text(text, chunk_size=300, overlap=30)

    assert all(chunk and chunk == chunk.strip() for chunk in chunks)
    covered = set()
    cursor = 0
    for chunk in chunks:
        position = text.find(chunk, max(0, cursor - 300))
        assert position >= 0
        covered.update(range(position, position + len(chunk)))
        cursor = position + len(chunk)
    uncovered = [i for i, char in enumerate(text) if i not in covered and not char.isspace()]
    assert uncovered == []


def test_text_without_spaces_advances_by_stride():
    text = "x" * 1000
    chunks = chunk_text(text, chunk_size=100, overlap=10)
    assert all(len(chunk) <= 100 for chunk in chunks)
    # stride 90 over 1000 characters
    assert len(chunks) == 12


def test_large_overlap_still_terminates():
    text = _text(800)
    chunks = chunk_text(text, chunk_size=100, overlap=95)
    assert chunks
    assert all(len(chunk) <= 100 for chunk in chunks)
