"""Split generated text into notification-sized sentences."""

from __future__ import annotations

import re

# A run of ASCII or full-width sentence terminators.
_TERMINATORS = re.compile(r"([.!?。！？]+)")


def split_sentences(text: str) -> list[str]:
    """Split ``text`` into sentences, keeping each terminator run on its clause.

    ``split_sentences("Hello! How are you?")`` gives ``["Hello!", "How are you?"]``.
    Text without terminators comes back as one stripped chunk; empty or
    whitespace-only text gives ``[]``.
    """
    if not text or not text.strip():
        return []

    parts = _TERMINATORS.split(text)
    # re.split with a capture group alternates clause, terminator, clause, ...
    chunks: list[str] = []
    for i in range(0, len(parts), 2):
        clause = parts[i].strip()
        terminator = parts[i + 1] if i + 1 < len(parts) else ""
        if clause:
            chunks.append(clause + terminator)
        elif terminator and chunks:
            # Leading or stray punctuation joins the previous chunk.
            chunks[-1] += terminator

    return chunks or [text.strip()]
