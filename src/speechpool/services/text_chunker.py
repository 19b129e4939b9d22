"""
Text Chunker for Long-Form Speech Synthesis.

Splits arbitrarily long input text into bounded-size chunks so that each
chunk can be synthesized as an independent request.

Cut points are chosen inside each window of ``max_chunk_size`` characters:

1. the last sentence-ending mark (``. ! ? \\n`` or full-width ``。！？``),
2. otherwise the last space,
3. otherwise a hard cut at exactly ``max_chunk_size``.

The break character stays with the chunk that precedes it. Every chunk is
trimmed and empty chunks are dropped. A single word longer than the window
is cut mid-word.

Usage:
    chunks = split_text(document, max_chunk_size=2500)
"""

from typing import List

SENTENCE_BREAKS = (".", "!", "?", "\n", "。", "！", "？")


def _find_cut(window: str) -> int:
    """Return the exclusive end index of the next chunk inside ``window``."""
    split_index = max(window.rfind(mark) for mark in SENTENCE_BREAKS)

    # No sentence break in the window, fall back to the last space
    if split_index == -1:
        split_index = window.rfind(" ")

    if split_index > 0:
        return split_index + 1
    return len(window)


def split_text(text: str, max_chunk_size: int) -> List[str]:
    """
    Split ``text`` into trimmed chunks of at most ``max_chunk_size`` characters.

    Args:
        text: Input text of any length.
        max_chunk_size: Maximum characters per chunk. Must be positive.

    Returns:
        Non-empty trimmed chunks in document order. Blank input yields [].
    """
    if max_chunk_size <= 0:
        raise ValueError("max_chunk_size must be > 0")

    remaining = text.strip()
    if len(remaining) <= max_chunk_size:
        return [remaining] if remaining else []

    chunks: List[str] = []
    while remaining:
        if len(remaining) <= max_chunk_size:
            chunks.append(remaining)
            break

        cut = _find_cut(remaining[:max_chunk_size])
        chunk = remaining[:cut].strip()
        if chunk:
            chunks.append(chunk)
        remaining = remaining[cut:].lstrip()

    return chunks


__all__ = ["SENTENCE_BREAKS", "split_text"]
