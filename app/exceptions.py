"""Error taxonomy for evaluation runs.

Geometry, matching and aggregation never raise for empty or degenerate
input; only input validation and the orchestrator's I/O boundary do.
"""

from __future__ import annotations


class EvaluationError(Exception):
    """Base class for all evaluation failures."""


class InputValidationError(EvaluationError, ValueError):
    """Inputs were rejected before a run started."""


class ReconciliationError(InputValidationError):
    """More images were supplied than ground-truth sets."""

    def __init__(self, image_count: int, ground_truth_count: int) -> None:
        self.image_count = image_count
        self.ground_truth_count = ground_truth_count
        super().__init__(
            f"Got {image_count} images but only {ground_truth_count} "
            "ground-truth annotation sets"
        )


class DetectionError(EvaluationError):
    """A detection call kept failing on every retry attempt."""

    def __init__(self, image_index: int, attempts: int, message: str) -> None:
        self.image_index = image_index
        self.attempts = attempts
        self.message = message
        super().__init__(
            f"Detection failed for image {image_index} after "
            f"{attempts} attempt(s): {message}"
        )


class EvaluationCancelledError(EvaluationError):
    """The run was stopped on request at a group boundary."""

    def __init__(self, completed_images: int) -> None:
        self.completed_images = completed_images
        super().__init__(
            f"Evaluation cancelled after {completed_images} image(s)"
        )


class RunNotFoundError(EvaluationError, KeyError):
    """No run exists with the requested id."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(run_id)

    def __str__(self) -> str:
        return f"Evaluation run {self.run_id} not found"
