"""Threshold what-if recompute over already fetched predictions.

Used whenever thresholds change after a run. Nothing here calls the
detector, and the output is identical to what a full run with the same
thresholds would have produced.
"""

from __future__ import annotations

from collections.abc import Sequence

from app.models.box import Box
from app.models.evaluation import OverallMetrics
from app.services.matching import BaseMatcher
from app.services.metrics import aggregate


def filter_by_confidence(
    predictions: Sequence[Box], confidence_threshold: float
) -> list[Box]:
    """Keep predictions whose confidence is >= the threshold."""
    return [p for p in predictions if p.score >= confidence_threshold]


def recompute(
    predictions: Sequence[Box],
    ground_truth: Sequence[Box],
    confidence_threshold: float,
    iou_threshold: float,
    matcher: BaseMatcher | None = None,
) -> OverallMetrics:
    """Filter by confidence, then aggregate."""
    return aggregate(
        filter_by_confidence(predictions, confidence_threshold),
        ground_truth,
        iou_threshold,
        matcher=matcher,
    )
