"""Cost estimation: audio duration -> tokens and processing time.

WHY: Admission needs the token price of a file before any remote call,
and the progress pacer needs a rough idea of how long processing takes.
Both are derived from the audio duration alone.

HOW: Pure, synchronous functions over float seconds. Rounding is always
upward so a 0.1s clip still costs one token.

RULES:
- tokens_required(d) = ceil(d)            (1 token per started second)
- estimated_processing_seconds(d) = ceil(d / 6)
- d = 0 costs 0 tokens and 0 processing seconds
- Negative durations are a caller error (ValueError)
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from tokenscribe.config import PROCESSING_RATIO, SECONDS_PER_TOKEN


@dataclass(frozen=True)
class CostEstimate:
    """Price and pacing estimate for one audio file."""

    duration_seconds: float
    tokens_required: int
    estimated_processing_seconds: int


def _check_duration(duration_seconds: float) -> None:
    if duration_seconds < 0 or math.isnan(duration_seconds):
        raise ValueError(f"Duration must be >= 0 seconds, got {duration_seconds!r}")


def tokens_required(duration_seconds: float) -> int:
    """Return the token cost of ``duration_seconds`` of audio."""
    _check_duration(duration_seconds)
    return math.ceil(duration_seconds / SECONDS_PER_TOKEN)


def estimated_processing_seconds(duration_seconds: float) -> int:
    """Return the modelled processing time (1/6th of duration, rounded up)."""
    _check_duration(duration_seconds)
    return math.ceil(duration_seconds / PROCESSING_RATIO)


def estimate_cost(duration_seconds: float) -> CostEstimate:
    return CostEstimate(
        duration_seconds=duration_seconds,
        tokens_required=tokens_required(duration_seconds),
        estimated_processing_seconds=estimated_processing_seconds(duration_seconds),
    )


def format_duration(seconds: float) -> str:
    """Format seconds as ``m:ss`` for display (e.g. 65.4 -> "1:05")."""
    mins = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{mins}:{secs:02d}"
