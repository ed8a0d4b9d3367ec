"""Per-image diff between predicted and ground-truth boxes.

Feeds the visual debugger: every surviving prediction is either paired
with the ground-truth box it matched or listed as a false positive, and
every unmatched ground-truth box is listed as a false negative.

Uses the same matcher and confidence filter as the aggregator, so the
diff of a single image agrees with that image's contribution to the
metrics.
"""

from __future__ import annotations

from collections.abc import Sequence

from app.models.box import Box
from app.models.evaluation import BoxPair, ImageDiff
from app.services.matching import BaseMatcher, GreedyMatcher
from app.services.metrics import filter_valid
from app.services.projection import filter_by_confidence


def diff_image(
    image_index: int,
    predictions: Sequence[Box],
    ground_truth: Sequence[Box],
    confidence_threshold: float = 0.5,
    iou_threshold: float = 0.5,
    file_name: str | None = None,
    matcher: BaseMatcher | None = None,
) -> ImageDiff:
    """Classify one image's boxes into TP pairs, FPs and FNs."""
    matcher = matcher or GreedyMatcher()
    preds = filter_by_confidence(filter_valid(predictions), confidence_threshold)
    gts = filter_valid(ground_truth)

    assignment = matcher.match(preds, gts, iou_threshold)

    true_positives: list[BoxPair] = []
    false_positives: list[Box] = []
    for m in assignment.matches:
        if m.gt_index is None:
            false_positives.append(preds[m.prediction_index])
        else:
            true_positives.append(
                BoxPair(
                    prediction=preds[m.prediction_index],
                    ground_truth=gts[m.gt_index],
                    iou=m.iou,
                )
            )

    return ImageDiff(
        image_index=image_index,
        file_name=file_name,
        true_positives=true_positives,
        false_positives=false_positives,
        false_negatives=[gts[gi] for gi in assignment.unmatched_gt],
    )
