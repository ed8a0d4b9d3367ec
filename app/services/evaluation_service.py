"""Evaluation run lifecycle: prepare, execute, track, cancel, revisit.

Active runs are tracked in memory (progress + cancellation token) while
the orchestrator drives detection calls. A settled run keeps only its
final progress snapshot. Completed runs are persisted
through :class:`RunRepository`; every later threshold change, sweep or
per-image diff is computed from the stored predictions without calling
the detector again.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from app.config import Settings
from app.exceptions import (
    DetectionError,
    EvaluationCancelledError,
    InputValidationError,
    RunNotFoundError,
)
from app.ingestion.ground_truth import parse_ground_truth
from app.models.box import Box
from app.models.evaluation import ImageDiff, OverallMetrics, SweepResponse
from app.models.run import (
    EvaluationRequest,
    EvaluationRun,
    EvaluationStartResponse,
    ProgressUpdate,
)
from app.repositories.run_repository import RunRepository
from app.repositories.storage import StorageBackend
from app.services.annotation_diff import diff_image
from app.services.image_service import ImageService
from app.services.orchestrator import (
    BatchOrchestrator,
    CancellationToken,
    reconcile_ground_truth,
)
from app.services.projection import recompute
from app.services.threshold_sweep import find_optimal_threshold, sweep

logger = logging.getLogger(__name__)

Detector = Callable[[bytes], Awaitable[Sequence[Box]]]


@dataclass
class ActiveRun:
    """In-memory state of a run that has not been persisted yet."""

    run_id: str
    image_paths: list[str]
    ground_truth: list[list[Box]]
    batch_size: int
    confidence_threshold: float
    iou_threshold: float
    model_version: str
    token: CancellationToken = field(default_factory=CancellationToken)
    progress: ProgressUpdate = field(default_factory=ProgressUpdate)


class EvaluationService:
    """Coordinates storage, ground-truth parsing, orchestration and persistence."""

    def __init__(
        self,
        repository: RunRepository,
        storage: StorageBackend,
        image_service: ImageService,
        detect: Detector,
        settings: Settings,
    ) -> None:
        self.repository = repository
        self.storage = storage
        self.image_service = image_service
        self.detect = detect
        self.settings = settings
        self._runs: dict[str, ActiveRun] = {}
        self._finished: dict[str, ProgressUpdate] = {}

    # ------------------------------------------------------------------
    # Starting and executing runs
    # ------------------------------------------------------------------

    def prepare_run(self, request: EvaluationRequest) -> EvaluationStartResponse:
        """Validate inputs and register a run. Nothing is sent to the detector.

        Raises :class:`InputValidationError` (including
        :class:`ReconciliationError`) when the run cannot start.
        """
        image_paths = list(request.image_paths or [])
        if not image_paths and request.image_dir:
            image_paths = self.storage.list_images(request.image_dir)
        if not image_paths:
            raise InputValidationError("No images found to evaluate")

        if not self.storage.exists(request.ground_truth_path):
            raise InputValidationError(
                f"Ground truth file not found: {request.ground_truth_path}"
            )
        ground_truth = parse_ground_truth(
            self.storage.read_bytes(request.ground_truth_path)
        )
        ground_truth, truncated = reconcile_ground_truth(
            len(image_paths), ground_truth
        )

        run = ActiveRun(
            run_id=str(uuid.uuid4()),
            image_paths=image_paths,
            ground_truth=ground_truth,
            batch_size=request.batch_size or self.settings.batch_size,
            confidence_threshold=_pick(
                request.confidence_threshold,
                self.settings.default_confidence_threshold,
            ),
            iou_threshold=_pick(
                request.iou_threshold, self.settings.default_iou_threshold
            ),
            model_version=request.model_version or self.settings.model_version,
        )
        run.progress = ProgressUpdate(
            total=len(image_paths), message="Queued"
        )
        self._runs[run.run_id] = run

        message = f"Evaluation scheduled for {len(image_paths)} images"
        if truncated:
            message += (
                f"; ground truth truncated to the first {len(image_paths)} sets"
            )
        return EvaluationStartResponse(
            run_id=run.run_id,
            total_images=len(image_paths),
            ground_truth_truncated=truncated,
            message=message,
        )

    async def execute(self, run_id: str) -> EvaluationRun | None:
        """Drive a prepared run to a terminal state.

        Returns the persisted run on success and ``None`` when the run
        failed or was cancelled; the outcome is visible via
        :meth:`get_progress` either way. The ``completed`` status is only
        published once the run has been saved. Once the run settles only
        its final progress snapshot is kept in memory.
        """
        run = self._get_active(run_id)
        try:
            return await self._execute(run)
        except asyncio.CancelledError:
            run.progress = run.progress.model_copy(
                update={"status": "cancelled", "message": "Evaluation task cancelled"}
            )
            raise
        finally:
            self._finished[run_id] = run.progress
            del self._runs[run_id]

    async def _execute(self, run: ActiveRun) -> EvaluationRun | None:
        completed: list[ProgressUpdate] = []

        def on_progress(update: ProgressUpdate) -> None:
            if update.status == "completed":
                completed.append(update)
            else:
                run.progress = update

        orchestrator = BatchOrchestrator(
            batch_size=run.batch_size,
            retry_attempts=self.settings.retry_attempts,
            retry_delay=self.settings.retry_delay_seconds,
            inter_batch_delay=self.settings.inter_batch_delay_seconds,
            call_timeout=self.settings.detect_timeout_seconds,
        )

        try:
            result = await orchestrator.run(
                run.image_paths,
                run.ground_truth,
                self._detect_path,
                on_progress=on_progress,
                cancel_token=run.token,
                confidence_threshold=run.confidence_threshold,
                iou_threshold=run.iou_threshold,
            )
        except (DetectionError, EvaluationCancelledError) as e:
            logger.info(
                "Evaluation run %s ended without results: %s", run.run_id, e
            )
            return None
        except Exception as e:
            logger.exception("Evaluation run %s crashed", run.run_id)
            _mark_failed(run, e)
            return None

        stored = EvaluationRun(
            id=run.run_id,
            created_at=datetime.now(),
            model_version=run.model_version,
            total_images=len(run.image_paths),
            confidence_threshold=run.confidence_threshold,
            iou_threshold=run.iou_threshold,
            metrics=result.metrics,
            image_names=run.image_paths,
            predictions=result.predictions,
            ground_truths=result.ground_truth,
        )
        try:
            await asyncio.to_thread(self.repository.save, stored)
        except Exception as e:
            logger.exception("Could not save evaluation run %s", run.run_id)
            _mark_failed(run, e)
            return None

        run.progress = completed[-1]
        return stored

    async def _detect_path(self, path: str) -> Sequence[Box]:
        data = await asyncio.to_thread(self.storage.read_bytes, path)
        return await self.detect(data)

    # ------------------------------------------------------------------
    # Progress and cancellation
    # ------------------------------------------------------------------

    def get_progress(self, run_id: str) -> ProgressUpdate:
        """Return live progress, or a completed snapshot for stored runs."""
        run = self._runs.get(run_id)
        if run is not None:
            return run.progress
        if run_id in self._finished:
            return self._finished[run_id]
        summary = self.repository.get_summary(run_id)
        return ProgressUpdate(
            status="completed",
            current=summary.total_images,
            total=summary.total_images,
            percentage=100.0,
            message="Evaluation complete!",
        )

    def is_running(self, run_id: str) -> bool:
        run = self._runs.get(run_id)
        return run is not None and run.progress.status in ("idle", "running")

    def cancel(self, run_id: str) -> ProgressUpdate:
        """Request cancellation; takes effect before the next image group."""
        run = self._get_active(run_id)
        run.token.cancel()
        logger.info("Cancellation requested for evaluation run %s", run_id)
        return run.progress

    def forget(self, run_id: str) -> None:
        """Drop the final progress snapshot of a settled run."""
        self._finished.pop(run_id, None)

    # ------------------------------------------------------------------
    # Revisiting stored runs
    # ------------------------------------------------------------------

    def recompute(
        self,
        run_id: str,
        confidence_threshold: float,
        iou_threshold: float,
    ) -> OverallMetrics:
        """Metrics of a stored run at new thresholds."""
        run = self.repository.load_full(run_id)
        return recompute(
            _flatten(run.predictions),
            _flatten(run.ground_truths),
            confidence_threshold,
            iou_threshold,
        )

    def sweep(self, run_id: str, iou_threshold: float) -> SweepResponse:
        """Precision/recall/F1 curve over the default confidence grid."""
        run = self.repository.load_full(run_id)
        points = sweep(
            _flatten(run.predictions),
            _flatten(run.ground_truths),
            iou_threshold=iou_threshold,
        )
        return SweepResponse(
            iou_threshold=iou_threshold,
            points=points,
            optimal=find_optimal_threshold(points),
        )

    def diff(
        self,
        run_id: str,
        image_index: int,
        confidence_threshold: float,
        iou_threshold: float,
    ) -> ImageDiff:
        """TP/FP/FN breakdown for one image of a stored run."""
        run = self.repository.load_full(run_id)
        if not 0 <= image_index < run.total_images:
            raise InputValidationError(
                f"Image index {image_index} out of range "
                f"(run has {run.total_images} images)"
            )
        return diff_image(
            image_index,
            run.predictions[image_index],
            run.ground_truths[image_index],
            confidence_threshold=confidence_threshold,
            iou_threshold=iou_threshold,
            file_name=run.image_names[image_index],
        )

    def overlay(
        self,
        run_id: str,
        image_index: int,
        confidence_threshold: float,
        iou_threshold: float,
    ) -> bytes:
        """PNG of one image with its diff drawn on top."""
        diff = self.diff(run_id, image_index, confidence_threshold, iou_threshold)
        return self.image_service.render_diff_overlay(diff.file_name, diff)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _get_active(self, run_id: str) -> ActiveRun:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run


def _mark_failed(run: ActiveRun, error: Exception) -> None:
    run.progress = run.progress.model_copy(
        update={"status": "failed", "message": str(error), "error": str(error)}
    )


def _flatten(sets: list[list[Box]]) -> list[Box]:
    return [box for boxes in sets for box in boxes]


def _pick(value: float | None, default: float) -> float:
    return default if value is None else value
