"""Batch orchestration of per-image detection calls.

Images are processed in consecutive groups of ``batch_size``. All calls in
a group run concurrently and the orchestrator waits for every one of them
to settle before starting the next group, so at most ``batch_size``
requests are ever outstanding against the detector.

Each call is retried with a fixed backoff. A call that exhausts its
retries fails the whole run: dropping an image would break the 1:1
alignment between prediction sets and ground-truth sets.

Cancellation is cooperative and checked only at group boundaries. An
in-flight group always runs to completion.

Progress is reported after every group. The remaining-time estimate is
``elapsed / processed * remaining`` and is noisy for small runs.

There is no per-call timeout unless ``call_timeout`` is set; without
one, a hung call stalls the run.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from app.exceptions import (
    DetectionError,
    EvaluationCancelledError,
    InputValidationError,
    ReconciliationError,
)
from app.models.box import Box
from app.models.evaluation import OverallMetrics
from app.models.run import ProgressUpdate
from app.services.matching import BaseMatcher
from app.services.projection import recompute

logger = logging.getLogger(__name__)

ImageT = TypeVar("ImageT")
DetectFn = Callable[[Any], Awaitable[Sequence[Box]]]
ProgressFn = Callable[[ProgressUpdate], None]


class RunState(str, Enum):
    """Lifecycle of a batch run: IDLE -> RUNNING -> terminal state."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CancellationToken:
    """Thread-safe cancellation flag checked between image groups."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class BatchResult:
    """Everything a successful run produced."""

    predictions: list[list[Box]]
    ground_truth: list[list[Box]]
    metrics: OverallMetrics
    ground_truth_truncated: bool


def reconcile_ground_truth(
    image_count: int, ground_truth: Sequence[Sequence[Box]]
) -> tuple[list[list[Box]], bool]:
    """Align ground-truth sets with the image list.

    Returns ``(ground_truth, truncated)``. Extra ground-truth sets beyond
    the image count are dropped and ``truncated`` is True. More images than
    ground-truth sets raises :class:`ReconciliationError`.
    """
    if image_count > len(ground_truth):
        raise ReconciliationError(image_count, len(ground_truth))
    truncated = image_count < len(ground_truth)
    return [list(gt) for gt in ground_truth[:image_count]], truncated


class BatchOrchestrator:
    """Drives detection calls for one evaluation run at a time.

    The detection collaborator is an async callable ``detect(image)``
    returning the image's predictions; it must be safe to retry.
    """

    def __init__(
        self,
        batch_size: int = 4,
        retry_attempts: int = 2,
        retry_delay: float = 1.0,
        inter_batch_delay: float = 0.1,
        call_timeout: float | None = None,
        matcher: BaseMatcher | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if batch_size < 1:
            raise InputValidationError("batch_size must be at least 1")
        if retry_attempts < 1:
            raise InputValidationError("retry_attempts must be at least 1")
        self.batch_size = batch_size
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.inter_batch_delay = inter_batch_delay
        self.call_timeout = call_timeout
        self.matcher = matcher
        self._clock = clock
        self.state = RunState.IDLE

    async def run(
        self,
        images: Sequence[ImageT],
        ground_truth: Sequence[Sequence[Box]],
        detect: DetectFn,
        on_progress: ProgressFn | None = None,
        cancel_token: CancellationToken | None = None,
        confidence_threshold: float = 0.0,
        iou_threshold: float = 0.5,
    ) -> BatchResult:
        """Run detection over every image and aggregate the results.

        Raises :class:`InputValidationError` before any call is made,
        :class:`DetectionError` when a call exhausts its retries, and
        :class:`EvaluationCancelledError` when cancelled between groups.
        No metrics are returned for a failed or cancelled run.
        """
        if self.state == RunState.RUNNING:
            raise RuntimeError("Orchestrator is already running")
        if not images:
            raise InputValidationError("No images to evaluate")

        gt_sets, truncated = reconcile_ground_truth(len(images), ground_truth)
        if truncated:
            logger.warning(
                "Truncated ground truth from %d to %d sets to match images",
                len(ground_truth),
                len(images),
            )

        token = cancel_token or CancellationToken()
        report = on_progress or (lambda update: None)
        total = len(images)
        total_batches = math.ceil(total / self.batch_size)
        predictions: list[list[Box]] = []
        started = self._clock()

        self.state = RunState.RUNNING
        try:
            logger.info(
                "Starting evaluation run: %d images in %d groups of %d",
                total,
                total_batches,
                self.batch_size,
            )
            report(
                ProgressUpdate(
                    status="running",
                    total=total,
                    total_batches=total_batches,
                    message="Starting evaluation...",
                )
            )

            for batch_index in range(total_batches):
                if token.cancelled:
                    self.state = RunState.CANCELLED
                    logger.info(
                        "Evaluation cancelled after %d/%d images",
                        len(predictions),
                        total,
                    )
                    report(
                        ProgressUpdate(
                            status="cancelled",
                            current=len(predictions),
                            total=total,
                            percentage=len(predictions) / total * 100,
                            current_batch=batch_index,
                            total_batches=total_batches,
                            message="Evaluation cancelled",
                        )
                    )
                    raise EvaluationCancelledError(len(predictions))

                start = batch_index * self.batch_size
                group = images[start : start + self.batch_size]

                try:
                    group_predictions = await self._run_group(start, group, detect)
                except DetectionError as exc:
                    self.state = RunState.FAILED
                    logger.error("Evaluation failed: %s", exc)
                    report(
                        ProgressUpdate(
                            status="failed",
                            current=len(predictions),
                            total=total,
                            percentage=len(predictions) / total * 100,
                            current_batch=batch_index + 1,
                            total_batches=total_batches,
                            message=str(exc),
                            error=exc.message,
                            image_index=exc.image_index,
                        )
                    )
                    raise

                predictions.extend(group_predictions)
                processed = len(predictions)
                elapsed = self._clock() - started
                remaining = (elapsed / processed) * (total - processed)

                report(
                    ProgressUpdate(
                        status="running",
                        current=processed,
                        total=total,
                        percentage=processed / total * 100,
                        current_batch=batch_index + 1,
                        total_batches=total_batches,
                        estimated_seconds_remaining=round(remaining, 1),
                        message=f"Processed {processed}/{total} images",
                    )
                )

                # Courtesy pause for the remote endpoint, not needed for correctness.
                if batch_index < total_batches - 1 and self.inter_batch_delay > 0:
                    await asyncio.sleep(self.inter_batch_delay)

            metrics = recompute(
                [box for image_preds in predictions for box in image_preds],
                [box for image_gts in gt_sets for box in image_gts],
                confidence_threshold,
                iou_threshold,
                matcher=self.matcher,
            )
            self.state = RunState.COMPLETED
            logger.info(
                "Evaluation complete: %d images, precision=%.3f recall=%.3f f1=%.3f",
                total,
                metrics.precision,
                metrics.recall,
                metrics.f1,
            )
            report(
                ProgressUpdate(
                    status="completed",
                    current=total,
                    total=total,
                    percentage=100.0,
                    current_batch=total_batches,
                    total_batches=total_batches,
                    message="Evaluation complete!",
                )
            )
            return BatchResult(
                predictions=predictions,
                ground_truth=gt_sets,
                metrics=metrics,
                ground_truth_truncated=truncated,
            )
        finally:
            # Callback errors and task cancellation end the run as FAILED.
            if self.state == RunState.RUNNING:
                self.state = RunState.FAILED

    async def _run_group(
        self, start: int, group: Sequence[ImageT], detect: DetectFn
    ) -> list[list[Box]]:
        """Run one group concurrently; wait for all calls before returning.

        When several calls fail, the lowest image index is reported.
        """
        results = await asyncio.gather(
            *(
                self._detect_with_retry(start + offset, image, detect)
                for offset, image in enumerate(group)
            ),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)

    async def _detect_with_retry(
        self, image_index: int, image: ImageT, detect: DetectFn
    ) -> list[Box]:
        last_error: Exception | None = None
        for attempt in range(1, self.retry_attempts + 1):
            try:
                call = detect(image)
                if self.call_timeout is not None:
                    boxes = await asyncio.wait_for(call, self.call_timeout)
                else:
                    boxes = await call
                return self._keep_valid(image_index, boxes)
            except Exception as exc:
                last_error = exc
                if attempt < self.retry_attempts:
                    logger.warning(
                        "Detection failed for image %d (attempt %d/%d): %s",
                        image_index,
                        attempt,
                        self.retry_attempts,
                        exc,
                    )
                    await asyncio.sleep(self.retry_delay)

        assert last_error is not None
        message = str(last_error) or type(last_error).__name__
        raise DetectionError(image_index, self.retry_attempts, message) from last_error

    @staticmethod
    def _keep_valid(image_index: int, boxes: Sequence[Box]) -> list[Box]:
        valid = [b for b in boxes if b.is_valid]
        dropped = len(boxes) - len(valid)
        if dropped:
            logger.warning(
                "Dropped %d invalid prediction(s) for image %d",
                dropped,
                image_index,
            )
        return valid
