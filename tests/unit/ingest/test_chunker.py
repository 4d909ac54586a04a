"""Tests for the recursive character chunker."""

from __future__ import annotations

import pytest

from localrag.ingest.chunker import DocumentChunker


def test_empty_and_blank_text_yield_no_chunks():
    chunker = DocumentChunker()
    assert chunker.chunk_text("") == []
    assert chunker.chunk_text("   \n\n  ") == []


def test_short_text_is_single_chunk_even_below_minimum():
    chunks = DocumentChunker().chunk_text("  Hello world  ")
    assert len(chunks) == 1
    assert chunks[0].text == "Hello world"
    assert chunks[0].index == 0


@pytest.mark.parametrize("size, overlap", [(0, 0), (100, 100), (100, -1)])
def test_invalid_sizes_raise(size, overlap):
    with pytest.raises(ValueError):
        DocumentChunker(chunk_size=size, chunk_overlap=overlap)


def test_chunks_respect_size_and_are_indexed():
    text = " ".join(f"word{i}" for i in range(400))
    chunks = DocumentChunker(chunk_size=100, chunk_overlap=20, min_chunk_length=1).chunk_text(text)

    assert len(chunks) > 1
    assert all(len(c.text) <= 100 for c in chunks)
    assert [c.index for c in chunks] == list(range(len(chunks)))


def test_thousand_characters_split_into_indexed_chunks():
    text = ("The quick brown fox jumps over the lazy dog. " * 25)[:1000]
    chunks = DocumentChunker(chunk_size=200, chunk_overlap=50).chunk_text(text)

    assert len(chunks) > 1
    assert [c.index for c in chunks] == list(range(len(chunks)))


def test_neighbouring_chunks_overlap():
    text = " ".join(f"w{i}" for i in range(200))
    chunks = DocumentChunker(chunk_size=100, chunk_overlap=30, min_chunk_length=1).chunk_text(text)

    for prev, nxt in zip(chunks, chunks[1:]):
        assert nxt.text.split()[0] in prev.text.split()


def test_chunks_record_their_source_offsets():
    text = "  Intro line\n\n" + " ".join(f"w{i}" for i in range(80))
    chunks = DocumentChunker(chunk_size=60, chunk_overlap=15, min_chunk_length=1).chunk_text(text)

    assert chunks[0].start == 2
    for chunk in chunks:
        assert text[chunk.start : chunk.start + len(chunk.text)] == chunk.text


def test_paragraph_boundaries_preferred():
    para_a = "alpha " * 12
    para_b = "beta " * 12
    chunks = DocumentChunker(chunk_size=100, chunk_overlap=0, min_chunk_length=1).chunk_text(
        f"{para_a}\n\n{para_b}"
    )
    assert [c.text for c in chunks] == [para_a.strip(), para_b.strip()]


def test_short_pieces_filtered_and_reindexed():
    text = "a" * 80 + "\n\n" + "b" * 90 + "\n\n" + "c" * 10
    chunks = DocumentChunker(chunk_size=100, chunk_overlap=0, min_chunk_length=50).chunk_text(text)

    assert [c.text for c in chunks] == ["a" * 80, "b" * 90]
    assert [c.index for c in chunks] == [0, 1]


def test_unbroken_text_falls_back_to_characters():
    chunks = DocumentChunker(chunk_size=50, chunk_overlap=10, min_chunk_length=1).chunk_text("x" * 175)
    assert len(chunks) > 1
    assert all(len(c.text) <= 50 for c in chunks)
