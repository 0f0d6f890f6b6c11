"""Result surface: positional class labels with percentage confidences.

The model ships no class names, so classes are identified by position only.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence


@dataclass(frozen=True)
class ClassScore:
    """A single class with its raw score and display percentage."""

    label: str
    score: float
    confidence: str


def class_label(index: int) -> str:
    """Return the display label for a zero-based class index."""
    return f"Class {index + 1}"


def format_confidence(score: float) -> str:
    """Format a score in [0, 1] as a percentage with two decimals."""
    return f"{score * 100:.2f}%"


def format_scores(vector: Sequence[float]) -> tuple[ClassScore, ...]:
    """Label a confidence vector in index order."""
    return tuple(
        ClassScore(label=class_label(index), score=score, confidence=format_confidence(score))
        for index, score in enumerate(vector)
    )
