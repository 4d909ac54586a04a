"""Recursive character chunker with overlap.

Text is split on the coarsest separator that occurs in it (paragraphs, then
lines, then words, then characters). Pieces that still exceed ``chunk_size``
are split again with the next separator; small pieces are merged back into
windows of at most ``chunk_size`` characters, each window sharing up to
``chunk_overlap`` trailing characters with the one before it. Every chunk
records where it starts in the source, so neighbours can be spliced back
together without guessing at the overlap.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

SEPARATORS: tuple[str, ...] = ("\n\n", "\n", " ", "")

# Chunks shorter than this are document noise (page numbers, lone headings).
MIN_CHUNK_LENGTH = 50


@dataclass
class TextChunk:
    text: str
    index: int
    start: int = 0  # offset of ``text`` in the chunked source


class DocumentChunker:
    """Split text into indexed, overlapping chunks for embedding.

    Args:
        chunk_size: Maximum chunk length in characters.
        chunk_overlap: Characters shared between neighbouring chunks.
        min_chunk_length: Chunks shorter than this are dropped, unless the
            whole text produced a single chunk.

    Raises:
        ValueError: If ``chunk_size < 1`` or ``chunk_overlap`` is outside
            ``[0, chunk_size)``.
    """

    def __init__(
        self,
        chunk_size: int = 512,
        chunk_overlap: int = 100,
        min_chunk_length: int = MIN_CHUNK_LENGTH,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if not 0 <= chunk_overlap < chunk_size:
            raise ValueError("chunk_overlap must be in [0, chunk_size)")
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.min_chunk_length = min_chunk_length

    def chunk_text(self, text: str) -> list[TextChunk]:
        """Split *text* into chunks numbered 0..n-1.

        Returns an empty list for empty or whitespace-only input.
        """
        if not text or not text.strip():
            return []

        try:
            pieces = self._split(text, 0, SEPARATORS)
        except Exception:
            logger.exception("Failed to chunk text.")
            raise

        if len(pieces) <= 1:
            lead = len(text) - len(text.lstrip())
            return [TextChunk(text=text.strip(), index=0, start=lead)]

        kept = [(p, s) for p, s in pieces if len(p) >= self.min_chunk_length]
        return [TextChunk(text=p, index=i, start=s) for i, (p, s) in enumerate(kept)]

    # ------------------------------------------------------------------
    # Splitting
    # ------------------------------------------------------------------

    def _split(
        self,
        text: str,
        offset: int,
        separators: tuple[str, ...],
    ) -> list[tuple[str, int]]:
        """Return ``(chunk, start)`` pairs for *text*, which begins at *offset*."""
        separator = separators[-1]
        remaining: tuple[str, ...] = ()
        for i, sep in enumerate(separators):
            if sep == "":
                separator = sep
                break
            if sep in text:
                separator = sep
                remaining = separators[i + 1 :]
                break

        splits: list[tuple[str, int]] = []
        if separator:
            pos = offset
            for part in text.split(separator):
                if part:
                    splits.append((part, pos))
                pos += len(part) + len(separator)
        else:
            splits = [(ch, offset + i) for i, ch in enumerate(text)]

        chunks: list[tuple[str, int]] = []
        small: list[tuple[str, int]] = []
        for piece, start in splits:
            if len(piece) < self.chunk_size:
                small.append((piece, start))
                continue
            if small:
                chunks.extend(self._merge(small, separator))
                small = []
            if remaining:
                chunks.extend(self._split(piece, start, remaining))
            else:
                chunks.append((piece, start))
        if small:
            chunks.extend(self._merge(small, separator))
        return chunks

    def _merge(self, splits: list[tuple[str, int]], separator: str) -> list[tuple[str, int]]:
        """Greedily join *splits* into windows no longer than ``chunk_size``."""
        sep_len = len(separator)
        docs: list[tuple[str, int]] = []
        current: list[tuple[str, int]] = []
        total = 0

        for piece, start in splits:
            length = len(piece)
            joined_len = length + (sep_len if current else 0)
            if current and total + joined_len > self.chunk_size:
                doc = _join(current, separator)
                if doc is not None:
                    docs.append(doc)
                # Drop from the front until only the overlap tail remains
                # and the next piece fits.
                while total > 0 and (
                    total > self.chunk_overlap
                    or total + length + (sep_len if current else 0) > self.chunk_size
                ):
                    total -= len(current[0][0]) + (sep_len if len(current) > 1 else 0)
                    current.pop(0)
            current.append((piece, start))
            total += length + (sep_len if len(current) > 1 else 0)

        doc = _join(current, separator)
        if doc is not None:
            docs.append(doc)
        return docs


def _join(pieces: list[tuple[str, int]], separator: str) -> tuple[str, int] | None:
    joined = separator.join(p for p, _ in pieces)
    text = joined.strip()
    if not text:
        return None
    return text, pieces[0][1] + len(joined) - len(joined.lstrip())
