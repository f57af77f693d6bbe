"""Typewriter reveal — progressive text display derived from playback progress."""
from __future__ import annotations

from typing import Iterator


def prefixes(text: str, step: int = 1) -> Iterator[str]:
    """Lazily yield growing prefixes of ``text``; restart by calling again."""
    if step < 1:
        raise ValueError("step must be >= 1")
    for end in range(step, len(text), step):
        yield text[:end]
    if text:
        yield text


def reveal(text: str, progress: float) -> str:
    """Prefix of ``text`` visible at ``progress`` (0.0–1.0) through playback."""
    progress = max(0.0, min(1.0, progress))
    return text[:round(len(text) * progress)]


def estimated_duration_s(text: str, ms_per_char: int = 15, cap_ms: int = 0) -> float:
    """Reading time used when no audio drives the reveal."""
    duration_ms = len(text) * ms_per_char
    if cap_ms:
        duration_ms = min(duration_ms, cap_ms)
    return duration_ms / 1000
