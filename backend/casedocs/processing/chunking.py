"""
Text Chunker  —  Bounded, Overlapping, Sentence-Respecting Segments
════════════════════════════════════════════════════════════════════

Long extracted documents are split into chunks that a bounded-context
consumer (an LLM prompt, a search index) can take one at a time.

Algorithm
─────────
  text ≤ max_chunk_size          → one chunk spanning the whole text

  otherwise, with a cursor starting at 0:
    end = cursor + max_chunk_size
    if end falls inside the text and boundaries are respected:
        search the last 500 chars before `end` for
          1. a sentence terminator (. ! ? 。 ！ ？) followed by whitespace
          2. else a newline
          3. else a space
        keep the adjusted end only if the chunk stays > min_chunk_size
    emit [cursor, end)
    stop when end reaches the end of the text
    cursor = end - overlap_size, unless that would not move past the
    current cursor or the end of the chunk before the previous one, in
    which case cursor = end (no overlap)

  a second pass back-fills chunk_index, total_chunks and the
  previous/next links.

Guarantees
──────────
  • [start_index, end_index) ranges cover the text with no gaps.
  • No chunk is longer than max_chunk_size (the boundary search only
    looks backwards inside the tentative chunk).
  • Consecutive chunks overlap by exactly overlap_size or not at all.
  • Chunk ids are deterministic: sha256(seed + chunk_index), where the seed
    is the document id (or a content hash when none is given), so re-running
    the same chunking yields the same ids.

The page-aware variant runs the same loop inside each page's range and
tags every chunk with its 1-based page number for citations.
"""

from __future__ import annotations

import dataclasses
import hashlib
import logging
import math
from dataclasses import dataclass
from typing import Any, Sequence

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

DEFAULT_MAX_CHUNK_SIZE = 8000
DEFAULT_MIN_CHUNK_SIZE = 500
DEFAULT_OVERLAP_SIZE   = 200

BOUNDARY_SEARCH_WINDOW = 500
CHARS_PER_TOKEN        = 4

_SENTENCE_ENDERS = frozenset(".!?。！？")
_BREAK_AFTER     = frozenset(" \n\r")


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChunkingOptions:
    max_chunk_size:              int  = DEFAULT_MAX_CHUNK_SIZE
    min_chunk_size:              int  = DEFAULT_MIN_CHUNK_SIZE
    overlap_size:                int  = DEFAULT_OVERLAP_SIZE
    respect_sentence_boundaries: bool = True

    def __post_init__(self) -> None:
        if self.max_chunk_size <= 0:
            raise ValueError("max_chunk_size must be positive")
        if self.min_chunk_size < 0 or self.min_chunk_size > self.max_chunk_size:
            raise ValueError("min_chunk_size must be within [0, max_chunk_size]")
        if self.overlap_size < 0 or self.overlap_size >= self.max_chunk_size:
            raise ValueError("overlap_size must be within [0, max_chunk_size)")

    def as_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class Chunk:
    id:                str
    content:           str
    start_index:       int
    end_index:         int
    chunk_index:       int
    total_chunks:      int
    word_count:        int
    char_count:        int
    page_number:       int | None = None
    previous_chunk_id: str | None = None
    next_chunk_id:     str | None = None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def chunk_text(
    text: str,
    options: ChunkingOptions | None = None,
    *,
    document_id: Any = None,
) -> list[Chunk]:
    """Split `text` into ordered, linked chunks (see module docstring)."""
    opts = options or ChunkingOptions()

    if len(text) <= opts.max_chunk_size:
        spans = [(0, len(text), None)]
    else:
        spans = [(s, e, None) for s, e in _spans(text, 0, len(text), opts)]

    chunks = _link(text, spans, _seed(text, document_id))
    logger.debug(
        "Chunker | chars=%d chunks=%d max=%d overlap=%d",
        len(text), len(chunks), opts.max_chunk_size, opts.overlap_size,
    )
    return chunks


def chunk_document_with_pages(
    text: str,
    page_breaks: Sequence[int],
    options: ChunkingOptions | None = None,
    *,
    document_id: Any = None,
) -> list[Chunk]:
    """
    Chunk each page range independently and tag chunks with page numbers.

    Args:
        page_breaks: character offsets where pages 2..n begin.
    """
    opts   = options or ChunkingOptions()
    breaks = sorted({b for b in page_breaks if 0 < b < len(text)})

    spans: list[tuple[int, int, int | None]] = []
    bounds = [0, *breaks, len(text)]
    for page_number, (start, stop) in enumerate(zip(bounds, bounds[1:]), start=1):
        if start >= stop:
            continue
        if stop - start <= opts.max_chunk_size:
            spans.append((start, stop, page_number))
        else:
            spans.extend((s, e, page_number) for s, e in _spans(text, start, stop, opts))

    if not spans:
        spans = [(0, len(text), 1)]

    return _link(text, spans, _seed(text, document_id))


# ---------------------------------------------------------------------------
# Consumer helpers
# ---------------------------------------------------------------------------

def merge_chunks(chunks: Sequence[Chunk], max_result_size: int) -> str:
    """Concatenate leading chunks until max_result_size would be exceeded."""
    parts: list[str] = []
    size = 0
    for chunk in chunks:
        if size + len(chunk.content) <= max_result_size:
            parts.append(chunk.content)
            size += len(chunk.content)
        else:
            if not parts:
                parts.append(chunk.content[:max_result_size])
            break
    return "\n\n".join(parts)


def get_chunks_for_context(
    chunks: Sequence[Chunk], target_index: int, context_size: int,
) -> list[Chunk]:
    start = max(0, target_index - context_size)
    end   = min(len(chunks), target_index + context_size + 1)
    return list(chunks[start:end])


def find_relevant_chunks(chunks: Sequence[Chunk], query: str, top_k: int = 5) -> list[Chunk]:
    """Rank chunks by raw occurrence count of query terms (> 2 chars)."""
    terms = [t for t in query.lower().split() if len(t) > 2]

    def _score(chunk: Chunk) -> int:
        content = chunk.content.lower()
        return sum(content.count(term) for term in terms)

    # sorted() is stable: ties keep document order
    return sorted(chunks, key=_score, reverse=True)[:top_k]


def format_chunks_for_ai(chunks: Sequence[Chunk]) -> str:
    blocks = []
    for position, chunk in enumerate(chunks, start=1):
        header = f"[Chunk {position}/{chunk.total_chunks}]"
        if chunk.page_number:
            header += f" (Page {chunk.page_number})"
        blocks.append(f"{header}\n{chunk.content}")
    return "\n\n---\n\n".join(blocks)


def estimate_token_count(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def optimize_chunks_for_token_limit(chunks: Sequence[Chunk], max_tokens: int) -> list[Chunk]:
    """Keep leading chunks within max_tokens; truncate the first if it alone is too big."""
    selected: list[Chunk] = []
    total = 0
    for chunk in chunks:
        tokens = estimate_token_count(chunk.content)
        if total + tokens <= max_tokens:
            selected.append(chunk)
            total += tokens
            continue
        if not selected:
            content = chunk.content[: max_tokens * CHARS_PER_TOKEN]
            selected.append(dataclasses.replace(
                chunk,
                content=content,
                char_count=len(content),
                word_count=_word_count(content),
            ))
        break
    return selected


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------

def _spans(text: str, start: int, stop: int, opts: ChunkingOptions) -> list[tuple[int, int]]:
    spans: list[tuple[int, int]] = []
    cursor = start

    while cursor < stop:
        end = min(cursor + opts.max_chunk_size, stop)

        if end < stop and opts.respect_sentence_boundaries:
            adjusted = _find_boundary(text, end, floor=cursor)
            if adjusted > cursor + opts.min_chunk_size:
                end = adjusted

        spans.append((cursor, end))
        if end >= stop:
            break

        next_cursor = end - opts.overlap_size
        if next_cursor <= cursor or (len(spans) > 1 and next_cursor <= spans[-2][1]):
            next_cursor = end
        cursor = next_cursor

    return spans


def _find_boundary(text: str, position: int, floor: int) -> int:
    """Best break offset in (floor, position]; returns position if none found."""
    lowest = max(position - BOUNDARY_SEARCH_WINDOW, floor)
    window = range(position - 1, lowest - 1, -1)

    for i in window:
        if text[i] in _SENTENCE_ENDERS and text[i + 1] in _BREAK_AFTER:
            return i + 1
    for i in window:
        if text[i] in "\n\r":
            return i
    for i in window:
        if text[i] == " ":
            return i
    return position


def _link(text: str, spans: list[tuple[int, int, int | None]], seed: str) -> list[Chunk]:
    total = len(spans)
    chunks = [
        Chunk(
            id=_make_chunk_id(seed, index),
            content=text[start:end],
            start_index=start,
            end_index=end,
            chunk_index=index,
            total_chunks=total,
            word_count=_word_count(text[start:end]),
            char_count=end - start,
            page_number=page,
        )
        for index, (start, end, page) in enumerate(spans)
    ]
    for previous, current in zip(chunks, chunks[1:]):
        current.previous_chunk_id = previous.id
        previous.next_chunk_id = current.id
    return chunks


def _seed(text: str, document_id: Any) -> str:
    if document_id is not None:
        return str(document_id)
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def _make_chunk_id(seed: str, chunk_index: int) -> str:
    """Deterministic chunk ID: sha256(seed:index)[:32]."""
    return hashlib.sha256(f"{seed}:{chunk_index}".encode()).hexdigest()[:32]


def _word_count(text: str) -> int:
    return len(text.split())
