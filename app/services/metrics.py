"""Metrics aggregation: per-class and overall precision/recall/F1.

Overall precision/recall/F1 are micro-averaged from summed TP/FP/FN.
``mean_precision`` is the macro-average of per-class precision at the
current confidence threshold. It is a single-threshold summary, not the
ranking-based interpolated Average Precision reported by detection
benchmarks, so it is deliberately not called mAP.

Empty or disjoint inputs never raise; every ratio with a zero
denominator is 0.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from app.models.box import Box
from app.models.evaluation import ClassMetrics, OverallMetrics
from app.services.matching import BaseMatcher, GreedyMatcher

_DEFAULT_MATCHER = GreedyMatcher()


def filter_valid(boxes: Iterable[Box]) -> list[Box]:
    """Drop boxes with non-finite coordinates or non-positive extents."""
    return [b for b in boxes if b.is_valid]


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator > 0 else 0.0


def _f1(precision: float, recall: float) -> float:
    return _ratio(2 * precision * recall, precision + recall)


def aggregate(
    predictions: Sequence[Box],
    ground_truth: Sequence[Box],
    iou_threshold: float = 0.5,
    matcher: BaseMatcher | None = None,
) -> OverallMetrics:
    """Compute :class:`OverallMetrics` for the given boxes.

    Class names are the sorted union of prediction and ground-truth
    classes rather than first-appearance order, so the layout of
    ``class_metrics`` and the confusion matrix does not depend on which
    image a class was first seen in. Confusion matrix rows (actual) and
    columns (predicted) follow that order.
    """
    matcher = matcher or _DEFAULT_MATCHER
    predictions = filter_valid(predictions)
    ground_truth = filter_valid(ground_truth)

    class_names = sorted(
        {b.class_name for b in predictions} | {b.class_name for b in ground_truth}
    )
    index = {name: i for i, name in enumerate(class_names)}
    matrix = [[0] * len(class_names) for _ in class_names]

    class_metrics: list[ClassMetrics] = []
    total_tp = total_fp = total_fn = 0

    for name in class_names:
        class_preds = [b for b in predictions if b.class_name == name]
        class_gts = [b for b in ground_truth if b.class_name == name]
        assignment = matcher.match(class_preds, class_gts, iou_threshold)

        tp = assignment.true_positives
        fp = assignment.false_positives
        fn = assignment.false_negatives
        precision = _ratio(tp, tp + fp)
        recall = _ratio(tp, tp + fn)
        mean_iou = _ratio(
            sum(m.iou for m in assignment.matches), len(assignment.matches)
        )

        for m in assignment.matches:
            if m.gt_index is None:
                continue
            actual = index[class_gts[m.gt_index].class_name]
            predicted = index[class_preds[m.prediction_index].class_name]
            matrix[actual][predicted] += 1

        class_metrics.append(
            ClassMetrics(
                class_name=name,
                true_positives=tp,
                false_positives=fp,
                false_negatives=fn,
                precision=precision,
                recall=recall,
                f1=_f1(precision, recall),
                mean_iou=mean_iou,
                sample_count=len(class_gts),
            )
        )
        total_tp += tp
        total_fp += fp
        total_fn += fn

    precision = _ratio(total_tp, total_tp + total_fp)
    recall = _ratio(total_tp, total_tp + total_fn)
    mean_precision = _ratio(
        sum(cm.precision for cm in class_metrics), len(class_metrics)
    )

    return OverallMetrics(
        precision=precision,
        recall=recall,
        f1=_f1(precision, recall),
        mean_precision=mean_precision,
        total_predictions=len(predictions),
        total_ground_truths=len(ground_truth),
        class_metrics=class_metrics,
        confusion_matrix=matrix,
        class_names=class_names,
    )
