"""
Word-Window Chunker
═══════════════════

Full text is split into fixed-size, overlapping word windows for embedding:

    words:    w0 w1 … w699 w700 … w1299 w1300 …
    window 0: [0, 700)
    window 1: [600, 1300)        start_{i+1} = end_i − overlap
    window 2: [1200, 1900)

Consecutive windows always share `overlap` words, so together they cover
the whole text with no gaps. A text of at most `size` words is a single
window (one embedding for the whole document).

Whitespace is collapsed before splitting; start_offset is the character
offset of a window's first word in that normalised text.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_WORDS  = 700
DEFAULT_OVERLAP_WORDS = 100


@dataclass(frozen=True)
class TextWindow:
    index:        int    # 0-based position in the window sequence
    start_offset: int    # character offset into the normalised text
    start_word:   int
    end_word:     int    # exclusive
    text:         str


def normalize_text(text: str | None) -> str:
    """Collapse runs of whitespace into single spaces."""
    return " ".join((text or "").split())


def split_windows(
    text:    str,
    size:    int = DEFAULT_WINDOW_WORDS,
    overlap: int = DEFAULT_OVERLAP_WORDS,
) -> list[TextWindow]:
    if size <= 0:
        raise ValueError("window size must be positive")
    if not 0 <= overlap < size:
        raise ValueError("overlap must be in [0, size)")

    words = text.split()
    if not words:
        return []

    offsets: list[int] = []
    position = 0
    for word in words:
        offsets.append(position)
        position += len(word) + 1

    windows: list[TextWindow] = []
    start = 0
    while True:
        end = min(start + size, len(words))
        windows.append(TextWindow(
            index=len(windows),
            start_offset=offsets[start],
            start_word=start,
            end_word=end,
            text=" ".join(words[start:end]),
        ))
        if end >= len(words):
            break
        start = end - overlap

    logger.debug(
        "Text split | words=%d windows=%d size=%d overlap=%d",
        len(words), len(windows), size, overlap,
    )
    return windows
