"""Deterministic token-window chunking with fixed overlap."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass

from mnemo.errors import ConfigError
from mnemo.memory.tokens import Tokenizer, whitespace_tokens

DEFAULT_CHUNK_SIZE = 400
DEFAULT_CHUNK_OVERLAP = 80


@dataclass(frozen=True)
class Chunk:
    """A fragment of one source file.

    Offsets are token offsets, ``end_offset`` exclusive. Lines are 1-based
    and inclusive.
    """

    source_path: str
    chunk_index: int
    start_offset: int
    end_offset: int
    text: str
    content_hash: str
    line_start: int = 1
    line_end: int = 1

    @property
    def key(self) -> tuple[str, int]:
        return (self.source_path, self.chunk_index)


def validate_chunk_params(chunk_size: int, overlap: int) -> None:
    if chunk_size < 1:
        raise ConfigError("chunk_size must be >= 1")
    if overlap < 0:
        raise ConfigError("chunk_overlap must be >= 0")
    if overlap >= chunk_size:
        raise ConfigError("chunk_overlap must be less than chunk_size")


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def chunk_text(
    source_path: str,
    text: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
    tokenizer: Tokenizer = whitespace_tokens,
) -> list[Chunk]:
    """Split text into chunks of ``chunk_size`` tokens stepping by ``chunk_size - overlap``.

    Chunk i covers tokens ``[i * step, min(i * step + chunk_size, N))``; the
    last chunk ends at the final token. Text shorter than ``chunk_size``
    (including empty text) yields exactly one chunk.
    """
    validate_chunk_params(chunk_size, overlap)

    spans = tokenizer(text)
    total = len(spans)
    if total <= chunk_size:
        return [_make_chunk(source_path, 0, 0, total, text, spans)]

    chunks: list[Chunk] = []
    step = chunk_size - overlap
    start = 0
    while True:
        end = min(start + chunk_size, total)
        chunks.append(_make_chunk(source_path, len(chunks), start, end, text, spans))
        if end == total:
            break
        start += step
    return chunks


def _make_chunk(
    source_path: str,
    index: int,
    start: int,
    end: int,
    text: str,
    spans: list[tuple[int, int]],
) -> Chunk:
    if start < end:
        char_start, char_end = spans[start][0], spans[end - 1][1]
    else:
        char_start, char_end = 0, len(text)
    body = text[char_start:char_end]
    line_start = text.count("\n", 0, char_start) + 1
    line_end = line_start + body.count("\n")
    return Chunk(
        source_path=source_path,
        chunk_index=index,
        start_offset=start,
        end_offset=end,
        text=body,
        content_hash=content_hash(body),
        line_start=line_start,
        line_end=line_end,
    )
