"""Token heuristics.

Two deterministic approximations are used:

- Chunk boundaries count whitespace-delimited words. A tokenizer is any
  callable returning ``(start, end)`` character spans, so a real BPE
  tokenizer can be swapped in without touching the chunker.
- Budgets (session turns, injected context) use ``ceil(chars / 4)``, the
  usual rule of thumb for English text against modern BPE vocabularies.
"""

from __future__ import annotations

import math
import re
from collections.abc import Callable

Tokenizer = Callable[[str], list[tuple[int, int]]]

_WORD_RE = re.compile(r"\S+")

CHARS_PER_TOKEN = 4


def whitespace_tokens(text: str) -> list[tuple[int, int]]:
    """Character spans of whitespace-delimited words."""
    return [m.span() for m in _WORD_RE.finditer(text)]


def estimate_tokens(text: str) -> int:
    """Approximate model tokens for budget accounting."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """Cut text so that estimate_tokens(result) <= max_tokens."""
    if max_tokens <= 0:
        return ""
    limit = max_tokens * CHARS_PER_TOKEN
    if len(text) <= limit:
        return text
    return text[:limit]
