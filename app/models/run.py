"""Pydantic models for evaluation run requests, progress, and storage."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from app.models.box import Box
from app.models.evaluation import OverallMetrics

RunStatus = Literal["idle", "running", "completed", "failed", "cancelled"]


class ProgressUpdate(BaseModel):
    """Progress snapshot emitted after every completed image group.

    ``estimated_seconds_remaining`` extrapolates the average time per
    processed image so far. It is noisy for small runs and only an
    estimate.
    """

    status: RunStatus = "idle"
    current: int = 0
    total: int = 0
    percentage: float = 0.0
    current_batch: int = 0
    total_batches: int = 0
    estimated_seconds_remaining: float = 0.0
    message: str = ""
    error: str | None = None
    image_index: int | None = None


class EvaluationRequest(BaseModel):
    """Request body for POST /evaluations.

    Provide either ``image_paths`` (ordered to match the ground truth) or
    ``image_dir``, in which case image files are taken in sorted order.
    Paths may be local or ``gs://`` URIs.
    """

    ground_truth_path: str
    image_paths: list[str] | None = None
    image_dir: str | None = None
    batch_size: int | None = Field(default=None, ge=1)
    confidence_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    iou_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    model_version: str | None = None

    @model_validator(mode="after")
    def _require_images(self) -> "EvaluationRequest":
        if not self.image_paths and not self.image_dir:
            raise ValueError("Either image_paths or image_dir is required")
        return self


class EvaluationStartResponse(BaseModel):
    """Response after a run has been scheduled."""

    run_id: str
    total_images: int
    ground_truth_truncated: bool
    message: str


class RunSummary(BaseModel):
    """Lightweight record listed by GET /evaluations."""

    id: str
    created_at: datetime
    model_version: str
    total_images: int
    confidence_threshold: float
    iou_threshold: float
    metrics: OverallMetrics


class EvaluationRun(RunSummary):
    """Full stored run including every raw prediction and ground-truth box."""

    image_names: list[str]
    predictions: list[list[Box]]
    ground_truths: list[list[Box]]
