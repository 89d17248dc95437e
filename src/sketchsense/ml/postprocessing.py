"""Turn raw classifier scores into a ranked, labeled result."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from sketchsense.ml.model_registry import DEFAULT_LABELS

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import ArrayLike

NO_DATA_LABEL: str = "N/A"
TOP_K: int = 3


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction.

    ``confidence`` is the raw score of the winning class; scores are expected
    to already be probabilities (softmax output).
    """

    label: str
    confidence: float
    scores: tuple[float, ...]
    top3_indices: tuple[int, ...]

    @property
    def index(self) -> int | None:
        return self.top3_indices[0] if self.top3_indices else None

    def is_low_confidence(self, threshold: float) -> bool:
        return self.confidence < threshold


def resolve_label(index: int, labels: Sequence[str] | None = None) -> str:
    """Label for a class index: model labels, then the default table, then the index."""
    for table in (labels, DEFAULT_LABELS):
        if table is not None and 0 <= index < len(table):
            return table[index]
    return str(index)


def interpret_scores(scores: ArrayLike, labels: Sequence[str] | None = None) -> ClassificationResult:
    """Rank ``scores`` and resolve the winning label.

    Ties keep their original order, so the arg-max is always the lowest
    index among equal top scores.
    """
    values = np.asarray(scores, dtype=np.float32).reshape(-1)
    if values.size == 0:
        return ClassificationResult(label=NO_DATA_LABEL, confidence=0.0, scores=(), top3_indices=())

    order = np.argsort(-values, kind="stable")
    top = tuple(int(i) for i in order[:TOP_K])
    best = top[0]
    return ClassificationResult(
        label=resolve_label(best, labels),
        confidence=float(values[best]),
        scores=tuple(float(v) for v in values),
        top3_indices=top,
    )
