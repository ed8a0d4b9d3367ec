"""Response models for evaluation metrics."""

from pydantic import BaseModel

from app.models.box import Box


class ClassMetrics(BaseModel):
    """Counts and ratios for a single class at one IoU threshold."""

    class_name: str
    true_positives: int
    false_positives: int
    false_negatives: int
    precision: float
    recall: float
    f1: float
    mean_iou: float
    sample_count: int


class OverallMetrics(BaseModel):
    """Aggregate metrics over all classes.

    ``precision``/``recall``/``f1`` are micro-averaged over summed counts.
    ``mean_precision`` is the macro-average of per-class precision at the
    current confidence threshold. It is *not* ranking-based Average
    Precision and is not comparable to published mAP numbers.
    """

    precision: float
    recall: float
    f1: float
    mean_precision: float
    total_predictions: int
    total_ground_truths: int
    class_metrics: list[ClassMetrics]
    confusion_matrix: list[list[int]]
    class_names: list[str]


class ThresholdPoint(BaseModel):
    """Single point of a confidence-threshold sweep."""

    threshold: float
    precision: float
    recall: float
    f1: float


class OptimalThreshold(BaseModel):
    """Confidence threshold with the highest F1 on a sweep curve."""

    threshold: float
    f1: float


class SweepResponse(BaseModel):
    """Payload for GET /evaluations/{id}/sweep."""

    iou_threshold: float
    points: list[ThresholdPoint]
    optimal: OptimalThreshold


class BoxPair(BaseModel):
    """A prediction matched to a ground-truth box."""

    prediction: Box
    ground_truth: Box
    iou: float


class ImageDiff(BaseModel):
    """Per-image breakdown of predictions against ground truth."""

    image_index: int
    file_name: str | None = None
    true_positives: list[BoxPair]
    false_positives: list[Box]
    false_negatives: list[Box]
