"""Tests for token-window chunking."""

from __future__ import annotations

import pytest

from mnemo.errors import ConfigError
from mnemo.memory.chunker import chunk_text, content_hash
from mnemo.memory.tokens import estimate_tokens, truncate_to_tokens, whitespace_tokens


def _words(n: int) -> str:
    return " ".join(f"w{i}" for i in range(n))


class TestChunkBoundaries:
    def test_thousand_tokens_three_chunks(self):
        chunks = chunk_text("notes.md", _words(1000), chunk_size=400, overlap=80)
        spans = [(c.start_offset, c.end_offset) for c in chunks]
        assert spans == [(0, 400), (320, 720), (640, 1000)]
        assert [c.chunk_index for c in chunks] == [0, 1, 2]

    @pytest.mark.parametrize(
        "n,size,overlap", [(1000, 400, 80), (401, 400, 0), (57, 10, 3), (12, 5, 4)]
    )
    def test_coverage_and_overlap(self, n: int, size: int, overlap: int):
        chunks = chunk_text("f.md", _words(n), chunk_size=size, overlap=overlap)
        assert chunks[0].start_offset == 0
        assert chunks[-1].end_offset == n
        for prev, cur in zip(chunks, chunks[1:]):
            assert cur.start_offset == prev.start_offset + (size - overlap)
            assert prev.end_offset - cur.start_offset == overlap
        for c in chunks[:-1]:
            assert c.end_offset - c.start_offset == size

    def test_chunk_text_matches_tokens(self):
        text = _words(30)
        chunks = chunk_text("f.md", text, chunk_size=10, overlap=2)
        tokens = text.split()
        for c in chunks:
            assert c.text.split() == tokens[c.start_offset : c.end_offset]

    def test_deterministic(self):
        text = _words(777)
        first = chunk_text("f.md", text, chunk_size=100, overlap=25)
        second = chunk_text("f.md", text, chunk_size=100, overlap=25)
        assert [(c.start_offset, c.end_offset, c.content_hash) for c in first] == [
            (c.start_offset, c.end_offset, c.content_hash) for c in second
        ]


class TestEdgeCases:
    def test_short_file_single_chunk(self):
        text = "# Title\n\nA short note.\n"
        chunks = chunk_text("short.md", text, chunk_size=400, overlap=80)
        assert len(chunks) == 1
        assert chunks[0].start_offset == 0
        assert chunks[0].end_offset == 5
        assert chunks[0].text == text.strip()

    def test_empty_file_single_chunk(self):
        chunks = chunk_text("empty.md", "", chunk_size=400, overlap=80)
        assert len(chunks) == 1
        assert (chunks[0].start_offset, chunks[0].end_offset) == (0, 0)
        assert chunks[0].content_hash == content_hash("")

    def test_exactly_chunk_size(self):
        chunks = chunk_text("f.md", _words(400), chunk_size=400, overlap=80)
        assert len(chunks) == 1

    def test_line_ranges(self):
        text = "\n".join(f"line{i}" for i in range(1, 21))
        chunks = chunk_text("f.md", text, chunk_size=10, overlap=0)
        assert (chunks[0].line_start, chunks[0].line_end) == (1, 10)
        assert (chunks[1].line_start, chunks[1].line_end) == (11, 20)

    @pytest.mark.parametrize("size,overlap", [(0, 0), (10, 10), (10, 11), (10, -1)])
    def test_invalid_params(self, size: int, overlap: int):
        with pytest.raises(ConfigError):
            chunk_text("f.md", "text", chunk_size=size, overlap=overlap)

    def test_pluggable_tokenizer(self):
        def chars(text: str) -> list[tuple[int, int]]:
            return [(i, i + 1) for i in range(len(text))]

        chunks = chunk_text("f.md", "abcdefghij", chunk_size=4, overlap=1, tokenizer=chars)
        assert [c.text for c in chunks] == ["abcd", "defg", "ghij"]


class TestTokens:
    def test_whitespace_tokens(self):
        assert whitespace_tokens("  a bb\n c ") == [(2, 3), (4, 6), (8, 9)]

    def test_estimate(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_truncate_within_budget(self):
        text = "x" * 103
        assert estimate_tokens(truncate_to_tokens(text, 10)) <= 10
        assert truncate_to_tokens(text, 0) == ""
        assert truncate_to_tokens("short", 10) == "short"
