"""Evaluation API router.

Endpoints:
- POST   /evaluations                              -- validate inputs and start a run
- GET    /evaluations/{run_id}/progress            -- SSE stream of run progress
- POST   /evaluations/{run_id}/cancel              -- cancel before the next image group
- GET    /evaluations                              -- stored run summaries
- GET    /evaluations/{run_id}                     -- full stored run
- DELETE /evaluations/{run_id}                     -- delete a stored run
- GET    /evaluations/{run_id}/export              -- download the run as JSON
- GET    /evaluations/{run_id}/metrics             -- recompute at new thresholds
- GET    /evaluations/{run_id}/sweep               -- confidence sweep + optimal threshold
- GET    /evaluations/{run_id}/images/{index}/diff     -- per-image TP/FP/FN
- GET    /evaluations/{run_id}/images/{index}/overlay  -- per-image PNG overlay
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Response
from fastapi.responses import FileResponse
from sse_starlette.sse import EventSourceResponse

from app.dependencies import get_evaluation_service, get_run_repository
from app.exceptions import InputValidationError, RunNotFoundError
from app.models.evaluation import ImageDiff, OverallMetrics, SweepResponse
from app.models.run import (
    EvaluationRequest,
    EvaluationRun,
    EvaluationStartResponse,
    ProgressUpdate,
    RunSummary,
)
from app.repositories.run_repository import RunRepository
from app.services.evaluation_service import EvaluationService

router = APIRouter(prefix="/evaluations", tags=["evaluations"])

_TERMINAL = ("completed", "failed", "cancelled")


@router.post("", status_code=202, response_model=EvaluationStartResponse)
def start_evaluation(
    request: EvaluationRequest,
    background_tasks: BackgroundTasks,
    service: EvaluationService = Depends(get_evaluation_service),
) -> EvaluationStartResponse:
    """Validate images and ground truth, then run detection in the background.

    Returns 202 Accepted immediately.  Monitor progress via the
    ``/progress`` SSE endpoint.  Mismatched image / ground-truth counts
    are rejected here and the run never starts.
    """
    try:
        response = service.prepare_run(request)
    except InputValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    background_tasks.add_task(service.execute, response.run_id)
    return response


@router.get("/{run_id}/progress")
async def evaluation_progress(
    run_id: str,
    service: EvaluationService = Depends(get_evaluation_service),
) -> EventSourceResponse:
    """Stream run progress via Server-Sent Events.

    Yields progress events every 0.5s until the run reaches a terminal
    state, then closes the connection.
    """
    try:
        service.get_progress(run_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    async def event_generator():
        while True:
            progress = service.get_progress(run_id)
            yield {
                "event": "progress",
                "data": json.dumps(progress.model_dump()),
            }
            if progress.status in _TERMINAL:
                break
            await asyncio.sleep(0.5)

    return EventSourceResponse(event_generator())


@router.post("/{run_id}/cancel", response_model=ProgressUpdate)
def cancel_evaluation(
    run_id: str,
    service: EvaluationService = Depends(get_evaluation_service),
) -> ProgressUpdate:
    """Request cancellation.  The in-flight image group still completes."""
    if not service.is_running(run_id):
        raise HTTPException(status_code=409, detail="Evaluation is not running")
    return service.cancel(run_id)


@router.get("", response_model=list[RunSummary])
def list_evaluations(
    repository: RunRepository = Depends(get_run_repository),
) -> list[RunSummary]:
    """Return stored run summaries, newest first."""
    return repository.list_summaries()


@router.get("/{run_id}", response_model=EvaluationRun)
def get_evaluation(
    run_id: str,
    repository: RunRepository = Depends(get_run_repository),
) -> EvaluationRun:
    """Return a stored run with all predictions and ground truth."""
    try:
        return repository.load_full(run_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.delete("/{run_id}", status_code=204)
def delete_evaluation(
    run_id: str,
    repository: RunRepository = Depends(get_run_repository),
    service: EvaluationService = Depends(get_evaluation_service),
) -> Response:
    """Delete a stored run."""
    try:
        repository.delete(run_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    service.forget(run_id)
    return Response(status_code=204)


@router.get("/{run_id}/export")
def export_evaluation(
    run_id: str,
    repository: RunRepository = Depends(get_run_repository),
) -> FileResponse:
    """Write the run to the export directory and return the JSON file."""
    try:
        path = repository.export(run_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return FileResponse(
        path, media_type="application/json", filename=Path(path).name
    )


@router.get("/{run_id}/metrics", response_model=OverallMetrics)
def recompute_metrics(
    run_id: str,
    confidence_threshold: float = Query(0.5, ge=0.0, le=1.0),
    iou_threshold: float = Query(0.5, ge=0.0, le=1.0),
    service: EvaluationService = Depends(get_evaluation_service),
) -> OverallMetrics:
    """Recompute metrics from stored predictions without calling the detector."""
    try:
        return service.recompute(run_id, confidence_threshold, iou_threshold)
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{run_id}/sweep", response_model=SweepResponse)
def threshold_sweep(
    run_id: str,
    iou_threshold: float = Query(0.5, ge=0.0, le=1.0),
    service: EvaluationService = Depends(get_evaluation_service),
) -> SweepResponse:
    """Precision/recall/F1 at confidence 0.1..0.9 and the F1-optimal threshold."""
    try:
        return service.sweep(run_id, iou_threshold)
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{run_id}/images/{image_index}/diff", response_model=ImageDiff)
def image_diff(
    run_id: str,
    image_index: int,
    confidence_threshold: float = Query(0.5, ge=0.0, le=1.0),
    iou_threshold: float = Query(0.5, ge=0.0, le=1.0),
    service: EvaluationService = Depends(get_evaluation_service),
) -> ImageDiff:
    """Matched pairs, false positives and false negatives for one image."""
    try:
        return service.diff(run_id, image_index, confidence_threshold, iou_threshold)
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InputValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/{run_id}/images/{image_index}/overlay")
def image_overlay(
    run_id: str,
    image_index: int,
    confidence_threshold: float = Query(0.5, ge=0.0, le=1.0),
    iou_threshold: float = Query(0.5, ge=0.0, le=1.0),
    service: EvaluationService = Depends(get_evaluation_service),
) -> Response:
    """PNG of one image with predictions and ground truth drawn on top."""
    try:
        png = service.overlay(run_id, image_index, confidence_threshold, iou_threshold)
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InputValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Image file not found")
    return Response(content=png, media_type="image/png")
