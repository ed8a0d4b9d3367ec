"""Tests for the batch orchestrator: grouping, retries, cancellation, progress."""

import asyncio
import logging

import pytest

from app.exceptions import (
    DetectionError,
    EvaluationCancelledError,
    InputValidationError,
    ReconciliationError,
)
from app.models.run import ProgressUpdate
from app.services.orchestrator import (
    BatchOrchestrator,
    CancellationToken,
    RunState,
    reconcile_ground_truth,
)
from app.services.projection import recompute
from helpers import FakeDetector, gt, pred


def _orchestrator(**kwargs) -> BatchOrchestrator:
    kwargs.setdefault("retry_delay", 0.0)
    kwargs.setdefault("inter_batch_delay", 0.0)
    return BatchOrchestrator(**kwargs)


def _scene(count: int):
    images = [f"img{i}" for i in range(count)]
    answers = {
        image: [pred(10 * i + 50, 50, 20, 20, conf=0.9)]
        for i, image in enumerate(images)
    }
    gts = [[gt(10 * i + 50, 50, 20, 20)] for i in range(count)]
    return images, answers, gts


# ---------------------------------------------------------------------------
# Ground-truth reconciliation
# ---------------------------------------------------------------------------


def test_reconcile_truncates_extra_ground_truth() -> None:
    gts = [[gt(1, 1, 1, 1)], [], [gt(2, 2, 2, 2)]]
    aligned, truncated = reconcile_ground_truth(2, gts)
    assert truncated is True
    assert aligned == gts[:2]


def test_reconcile_exact_count() -> None:
    aligned, truncated = reconcile_ground_truth(1, [[]])
    assert aligned == [[]]
    assert truncated is False


def test_reconcile_rejects_missing_ground_truth() -> None:
    with pytest.raises(ReconciliationError) as exc_info:
        reconcile_ground_truth(3, [[], []])
    assert exc_info.value.image_count == 3
    assert exc_info.value.ground_truth_count == 2


# ---------------------------------------------------------------------------
# Successful runs
# ---------------------------------------------------------------------------


async def test_run_collects_predictions_in_image_order() -> None:
    images, answers, gts = _scene(5)
    detector = FakeDetector(answers)
    orchestrator = _orchestrator(batch_size=2)

    result = await orchestrator.run(images, gts, detector)

    assert orchestrator.state == RunState.COMPLETED
    assert result.predictions == [answers[image] for image in images]
    assert result.ground_truth == gts
    assert result.ground_truth_truncated is False
    assert result.metrics.f1 == 1.0
    assert sorted(detector.calls) == sorted(images)


async def test_run_metrics_equal_recompute_over_flattened_boxes() -> None:
    images = ["a", "b"]
    answers = {
        "a": [pred(10, 10, 10, 10, conf=0.9), pred(80, 80, 10, 10, conf=0.3)],
        "b": [pred(50, 50, 10, 10, cls="B", conf=0.6)],
    }
    gts = [[gt(10, 10, 10, 10)], [gt(52, 50, 10, 10, cls="B"), gt(5, 5, 5, 5)]]

    result = await _orchestrator().run(
        images,
        gts,
        FakeDetector(answers),
        confidence_threshold=0.5,
        iou_threshold=0.5,
    )

    expected = recompute(
        [b for image in images for b in answers[image]],
        [b for boxes in gts for b in boxes],
        0.5,
        0.5,
    )
    assert result.metrics.model_dump() == expected.model_dump()


async def test_run_truncates_extra_ground_truth(caplog) -> None:
    images, answers, gts = _scene(2)
    gts.append([gt(1, 1, 1, 1)])

    with caplog.at_level(logging.WARNING):
        result = await _orchestrator().run(images, gts, FakeDetector(answers))

    assert result.ground_truth_truncated is True
    assert len(result.ground_truth) == 2
    assert "Truncated ground truth" in caplog.text


async def test_more_images_than_ground_truth_fails_before_any_call() -> None:
    images, answers, _ = _scene(3)
    detector = FakeDetector(answers)

    with pytest.raises(ReconciliationError):
        await _orchestrator().run(images, [[], []], detector)

    assert detector.calls == []


async def test_empty_image_list_is_rejected() -> None:
    with pytest.raises(InputValidationError):
        await _orchestrator().run([], [], FakeDetector({}))


def test_invalid_batch_size_is_rejected() -> None:
    with pytest.raises(InputValidationError):
        BatchOrchestrator(batch_size=0)


async def test_invalid_predictions_are_dropped(caplog) -> None:
    answers = {"img0": [pred(10, 10, 10, 10), pred(10, 10, 0, 10)]}

    with caplog.at_level(logging.WARNING):
        result = await _orchestrator().run(
            ["img0"], [[gt(10, 10, 10, 10)]], FakeDetector(answers)
        )

    assert result.predictions == [[pred(10, 10, 10, 10)]]
    assert "Dropped 1 invalid prediction" in caplog.text


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


async def test_groups_never_overlap() -> None:
    images = [f"img{i}" for i in range(7)]
    events: list[tuple[str, str]] = []
    in_flight = 0
    peak = 0

    async def detect(image):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        events.append(("start", image))
        # Later images finish first to prove the barrier waits for all.
        await asyncio.sleep(0.001 * (10 - int(image[3:])))
        events.append(("end", image))
        in_flight -= 1
        return []

    await _orchestrator(batch_size=3).run(images, [[] for _ in images], detect)

    assert peak == 3
    groups = [images[0:3], images[3:6], images[6:7]]
    for earlier, later in zip(groups, groups[1:]):
        last_end = max(events.index(("end", i)) for i in earlier)
        first_start = min(events.index(("start", i)) for i in later)
        assert last_end < first_start


# ---------------------------------------------------------------------------
# Retries and failures
# ---------------------------------------------------------------------------


async def test_transient_failure_is_retried() -> None:
    images, answers, gts = _scene(2)
    detector = FakeDetector(answers, failures={"img1": 1})

    result = await _orchestrator(retry_attempts=2).run(images, gts, detector)

    assert detector.calls.count("img1") == 2
    assert result.metrics.recall == 1.0


async def test_exhausted_retries_fail_the_run() -> None:
    images, answers, gts = _scene(2)
    detector = FakeDetector(answers, failures={"img1": 2})
    updates: list[ProgressUpdate] = []
    orchestrator = _orchestrator(batch_size=1, retry_attempts=2)

    with pytest.raises(DetectionError) as exc_info:
        await orchestrator.run(images, gts, detector, on_progress=updates.append)

    assert exc_info.value.image_index == 1
    assert exc_info.value.attempts == 2
    assert "detector unavailable" in exc_info.value.message
    assert orchestrator.state == RunState.FAILED
    assert detector.calls.count("img1") == 2

    last = updates[-1]
    assert last.status == "failed"
    assert last.image_index == 1
    assert last.current == 1
    assert last.error == "detector unavailable"


async def test_lowest_failing_index_is_reported() -> None:
    images, answers, gts = _scene(4)
    detector = FakeDetector(answers, failures={"img3": 5, "img2": 5})

    with pytest.raises(DetectionError) as exc_info:
        await _orchestrator(batch_size=4, retry_attempts=1).run(images, gts, detector)

    assert exc_info.value.image_index == 2


async def test_call_timeout_counts_as_failure() -> None:
    async def hang(image):
        await asyncio.sleep(10)
        return []

    orchestrator = _orchestrator(retry_attempts=1, call_timeout=0.01)
    with pytest.raises(DetectionError) as exc_info:
        await orchestrator.run(["img0"], [[]], hang)

    assert exc_info.value.message == "TimeoutError"


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


async def test_cancel_between_groups() -> None:
    images, answers, gts = _scene(3)
    detector = FakeDetector(answers)
    token = CancellationToken()
    updates: list[ProgressUpdate] = []
    orchestrator = _orchestrator(batch_size=1)

    def on_progress(update: ProgressUpdate) -> None:
        updates.append(update)
        if update.current == 1:
            token.cancel()

    with pytest.raises(EvaluationCancelledError) as exc_info:
        await orchestrator.run(
            images, gts, detector, on_progress=on_progress, cancel_token=token
        )

    assert exc_info.value.completed_images == 1
    assert detector.calls == ["img0"]
    assert orchestrator.state == RunState.CANCELLED
    assert updates[-1].status == "cancelled"


async def test_cancel_before_start_makes_no_calls() -> None:
    images, answers, gts = _scene(2)
    detector = FakeDetector(answers)
    token = CancellationToken()
    token.cancel()

    with pytest.raises(EvaluationCancelledError) as exc_info:
        await _orchestrator().run(images, gts, detector, cancel_token=token)

    assert exc_info.value.completed_images == 0
    assert detector.calls == []


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------


async def test_progress_reported_after_every_group() -> None:
    images, answers, gts = _scene(5)
    updates: list[ProgressUpdate] = []

    await _orchestrator(batch_size=2).run(
        images, gts, FakeDetector(answers), on_progress=updates.append
    )

    assert [u.status for u in updates] == [
        "running", "running", "running", "running", "completed",
    ]
    assert [u.current for u in updates[1:4]] == [2, 4, 5]
    assert [u.current_batch for u in updates[1:4]] == [1, 2, 3]
    assert all(u.total_batches == 3 for u in updates)
    assert updates[-1].percentage == 100.0


async def test_remaining_time_extrapolates_average_pace() -> None:
    images, answers, gts = _scene(4)
    ticks = iter([0.0, 10.0, 20.0])
    updates: list[ProgressUpdate] = []

    await _orchestrator(batch_size=2, clock=lambda: next(ticks)).run(
        images, gts, FakeDetector(answers), on_progress=updates.append
    )

    group_updates = [u for u in updates if u.current_batch and u.status == "running"]
    assert [u.estimated_seconds_remaining for u in group_updates] == [10.0, 0.0]


# ---------------------------------------------------------------------------
# State after unexpected exits
# ---------------------------------------------------------------------------


async def test_progress_callback_error_does_not_wedge_orchestrator() -> None:
    images, answers, gts = _scene(2)
    orchestrator = _orchestrator()

    def explode(update: ProgressUpdate) -> None:
        raise RuntimeError("subscriber went away")

    with pytest.raises(RuntimeError, match="subscriber went away"):
        await orchestrator.run(images, gts, FakeDetector(answers), on_progress=explode)

    assert orchestrator.state == RunState.FAILED
    result = await orchestrator.run(images, gts, FakeDetector(answers))
    assert orchestrator.state == RunState.COMPLETED
    assert result.metrics.f1 == 1.0


async def test_task_cancellation_does_not_wedge_orchestrator() -> None:
    async def hang(image):
        await asyncio.sleep(10)
        return []

    orchestrator = _orchestrator()
    task = asyncio.create_task(orchestrator.run(["img0"], [[]], hang))
    await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert orchestrator.state == RunState.FAILED
