"""One-to-one assignment of predictions to ground-truth boxes.

The aggregator only depends on :class:`BaseMatcher`, so an optimal
assignment (e.g. Hungarian) can replace the greedy default without
touching metric code.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field

from app.models.box import Box
from app.services.geometry import iou_matrix


@dataclass(frozen=True)
class PredictionMatch:
    """Outcome for one prediction.

    ``gt_index`` is ``None`` for a false positive; ``iou`` then holds the
    best overlap that was found (for diagnostics).
    """

    prediction_index: int
    gt_index: int | None
    iou: float

    @property
    def is_match(self) -> bool:
        return self.gt_index is not None


@dataclass
class Assignment:
    """Result of matching one prediction list against one ground-truth list.

    ``matches`` is ordered by processing order (descending confidence).
    No two entries share a ``gt_index``.
    """

    matches: list[PredictionMatch] = field(default_factory=list)
    unmatched_gt: list[int] = field(default_factory=list)

    @property
    def true_positives(self) -> int:
        return sum(1 for m in self.matches if m.is_match)

    @property
    def false_positives(self) -> int:
        return sum(1 for m in self.matches if not m.is_match)

    @property
    def false_negatives(self) -> int:
        return len(self.unmatched_gt)


class BaseMatcher(ABC):
    """Extension point for prediction-to-ground-truth assignment."""

    @abstractmethod
    def match(
        self,
        predictions: Sequence[Box],
        ground_truth: Sequence[Box],
        iou_threshold: float,
    ) -> Assignment:
        """Assign each prediction to at most one ground-truth box."""
        ...


class GreedyMatcher(BaseMatcher):
    """Confidence-first greedy matcher.

    1. Sort predictions by descending confidence (stable on ties).
    2. For each prediction pick the unused same-class ground-truth box with
       the highest IoU; the earliest index wins exact ties.
    3. Accept when that IoU is positive and >= ``iou_threshold``, then
       mark the box used.
    4. Ground truth never used is a false negative.

    Class names are compared exactly (case-sensitive).
    """

    def match(
        self,
        predictions: Sequence[Box],
        ground_truth: Sequence[Box],
        iou_threshold: float,
    ) -> Assignment:
        order = sorted(
            range(len(predictions)), key=lambda i: -predictions[i].score
        )
        ious = iou_matrix(predictions, ground_truth)
        used: set[int] = set()
        matches: list[PredictionMatch] = []

        for pi in order:
            pred_class = predictions[pi].class_name
            best_iou = 0.0
            best_gi = -1
            for gi, gt in enumerate(ground_truth):
                if gi in used or gt.class_name != pred_class:
                    continue
                iou = float(ious[pi, gi])
                if best_gi < 0 or iou > best_iou:
                    best_iou = iou
                    best_gi = gi

            if best_gi >= 0 and best_iou > 0 and best_iou >= iou_threshold:
                used.add(best_gi)
                matches.append(PredictionMatch(pi, best_gi, best_iou))
            else:
                matches.append(PredictionMatch(pi, None, best_iou))

        unmatched = [gi for gi in range(len(ground_truth)) if gi not in used]
        return Assignment(matches=matches, unmatched_gt=unmatched)
