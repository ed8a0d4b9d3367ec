"""Confidence-threshold sweep and F1-optimal threshold selection."""

from __future__ import annotations

from collections.abc import Sequence

from app.models.box import Box
from app.models.evaluation import OptimalThreshold, ThresholdPoint
from app.services.projection import recompute

DEFAULT_THRESHOLDS: tuple[float, ...] = (0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9)

# Returned when no threshold achieves a positive F1.
FALLBACK_THRESHOLD = 0.5


def sweep(
    predictions: Sequence[Box],
    ground_truth: Sequence[Box],
    thresholds: Sequence[float] = DEFAULT_THRESHOLDS,
    iou_threshold: float = 0.5,
) -> list[ThresholdPoint]:
    """Re-aggregate at every confidence threshold and record the headline metrics."""
    points: list[ThresholdPoint] = []
    for threshold in thresholds:
        metrics = recompute(predictions, ground_truth, threshold, iou_threshold)
        points.append(
            ThresholdPoint(
                threshold=threshold,
                precision=metrics.precision,
                recall=metrics.recall,
                f1=metrics.f1,
            )
        )
    return points


def find_optimal_threshold(curve: Sequence[ThresholdPoint]) -> OptimalThreshold:
    """Return the first point with the maximum F1.

    Falls back to :data:`FALLBACK_THRESHOLD` with F1 0 when no point beats 0.
    """
    best = OptimalThreshold(threshold=FALLBACK_THRESHOLD, f1=0.0)
    for point in curve:
        if point.f1 > best.f1:
            best = OptimalThreshold(threshold=point.threshold, f1=point.f1)
    return best
