"""Persistence of completed evaluation runs in DuckDB.

A run is split into a lightweight summary row (listed quickly) and the
full per-box data (loaded only when a run is opened, recomputed or
exported). Box rows keep their input order so a reloaded run
recomputes to exactly the same metrics.
"""

from __future__ import annotations

import logging
import math
from pathlib import Path

import pandas as pd

from app.exceptions import RunNotFoundError
from app.models.box import Box
from app.models.evaluation import OverallMetrics
from app.models.run import EvaluationRun, RunSummary
from app.repositories.duckdb_repo import DuckDBRepo
from app.repositories.storage import StorageBackend

logger = logging.getLogger(__name__)

_SUMMARY_COLUMNS = (
    "id, created_at, model_version, total_images, "
    "confidence_threshold, iou_threshold, metrics"
)


class RunRepository:
    """``save`` / ``list_summaries`` / ``load_full`` / ``delete`` / ``export``."""

    def __init__(
        self, db: DuckDBRepo, storage: StorageBackend, export_dir: Path
    ) -> None:
        self.db = db
        self.storage = storage
        self.export_dir = export_dir

    def save(self, run: EvaluationRun) -> None:
        """Insert or replace a run."""
        images_df = pd.DataFrame(
            {
                "run_id": run.id,
                "image_index": list(range(len(run.image_names))),
                "file_name": run.image_names,
            },
            columns=["run_id", "image_index", "file_name"],
        )
        boxes_df = _boxes_frame(run)

        cursor = self.db.connection.cursor()
        try:
            cursor.execute("BEGIN TRANSACTION")
            self._delete_rows(cursor, run.id)
            cursor.execute(
                f"INSERT INTO evaluation_runs ({_SUMMARY_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                [
                    run.id,
                    run.created_at,
                    run.model_version,
                    run.total_images,
                    run.confidence_threshold,
                    run.iou_threshold,
                    run.metrics.model_dump_json(),
                ],
            )
            if not images_df.empty:
                cursor.execute("INSERT INTO run_images SELECT * FROM images_df")
            if not boxes_df.empty:
                cursor.execute("INSERT INTO run_boxes SELECT * FROM boxes_df")
            cursor.execute("COMMIT")
        except Exception:
            cursor.execute("ROLLBACK")
            raise
        finally:
            cursor.close()

        logger.info(
            "Saved evaluation run %s (%d images, %d boxes)",
            run.id,
            run.total_images,
            len(boxes_df),
        )

    def list_summaries(self) -> list[RunSummary]:
        """Return all run summaries, newest first."""
        cursor = self.db.connection.cursor()
        try:
            rows = cursor.execute(
                f"SELECT {_SUMMARY_COLUMNS} FROM evaluation_runs "
                "ORDER BY created_at DESC"
            ).fetchall()
        finally:
            cursor.close()
        return [_summary_from_row(r) for r in rows]

    def get_summary(self, run_id: str) -> RunSummary:
        """Return one run summary. Raises :class:`RunNotFoundError`."""
        cursor = self.db.connection.cursor()
        try:
            row = cursor.execute(
                f"SELECT {_SUMMARY_COLUMNS} FROM evaluation_runs WHERE id = ?",
                [run_id],
            ).fetchone()
        finally:
            cursor.close()
        if row is None:
            raise RunNotFoundError(run_id)
        return _summary_from_row(row)

    def load_full(self, run_id: str) -> EvaluationRun:
        """Load a run with all its boxes. Raises :class:`RunNotFoundError`."""
        cursor = self.db.connection.cursor()
        try:
            row = cursor.execute(
                f"SELECT {_SUMMARY_COLUMNS} FROM evaluation_runs WHERE id = ?",
                [run_id],
            ).fetchone()
            if row is None:
                raise RunNotFoundError(run_id)

            image_rows = cursor.execute(
                "SELECT file_name FROM run_images WHERE run_id = ? "
                "ORDER BY image_index",
                [run_id],
            ).fetchall()
            box_rows = cursor.execute(
                "SELECT image_index, source, class_name, x, y, width, height, "
                "confidence FROM run_boxes WHERE run_id = ? "
                "ORDER BY image_index, box_index",
                [run_id],
            ).fetchall()
        finally:
            cursor.close()

        summary = _summary_from_row(row)
        predictions: list[list[Box]] = [[] for _ in range(summary.total_images)]
        ground_truths: list[list[Box]] = [[] for _ in range(summary.total_images)]
        for image_index, source, class_name, x, y, w, h, conf in box_rows:
            target = predictions if source == "prediction" else ground_truths
            target[image_index].append(
                Box(
                    x=x,
                    y=y,
                    width=w,
                    height=h,
                    class_name=class_name,
                    confidence=None if conf is None or math.isnan(conf) else conf,
                )
            )

        return EvaluationRun(
            **summary.model_dump(),
            image_names=[r[0] for r in image_rows],
            predictions=predictions,
            ground_truths=ground_truths,
        )

    def delete(self, run_id: str) -> None:
        """Delete a run. Raises :class:`RunNotFoundError` if it does not exist."""
        cursor = self.db.connection.cursor()
        try:
            exists = cursor.execute(
                "SELECT 1 FROM evaluation_runs WHERE id = ?", [run_id]
            ).fetchone()
            if exists is None:
                raise RunNotFoundError(run_id)
            self._delete_rows(cursor, run_id)
        finally:
            cursor.close()
        logger.info("Deleted evaluation run %s", run_id)

    def export(self, run_id: str) -> str:
        """Write the full run as JSON under ``export_dir`` and return its path."""
        run = self.load_full(run_id)
        file_name = f"evaluation_{run.created_at.date().isoformat()}_{run.id}.json"
        path = str(Path(self.export_dir) / file_name)
        payload = run.model_dump_json(by_alias=True, indent=2).encode()
        return self.storage.write_bytes(path, payload)

    @staticmethod
    def _delete_rows(cursor, run_id: str) -> None:
        cursor.execute("DELETE FROM run_boxes WHERE run_id = ?", [run_id])
        cursor.execute("DELETE FROM run_images WHERE run_id = ?", [run_id])
        cursor.execute("DELETE FROM evaluation_runs WHERE id = ?", [run_id])


def _boxes_frame(run: EvaluationRun) -> pd.DataFrame:
    """Flatten predictions and ground truth into ``run_boxes`` column order."""
    records: list[dict] = []
    for source, sets in (
        ("prediction", run.predictions),
        ("ground_truth", run.ground_truths),
    ):
        for image_index, boxes in enumerate(sets):
            for box_index, box in enumerate(boxes):
                records.append(
                    {
                        "run_id": run.id,
                        "image_index": image_index,
                        "box_index": box_index,
                        "source": source,
                        "class_name": box.class_name,
                        "x": box.x,
                        "y": box.y,
                        "width": box.width,
                        "height": box.height,
                        "confidence": box.confidence,
                    }
                )
    return pd.DataFrame(
        records,
        columns=[
            "run_id", "image_index", "box_index", "source", "class_name",
            "x", "y", "width", "height", "confidence",
        ],
    )


def _summary_from_row(row: tuple) -> RunSummary:
    run_id, created_at, model_version, total_images, conf, iou, metrics = row
    return RunSummary(
        id=run_id,
        created_at=created_at,
        model_version=model_version,
        total_images=total_images,
        confidence_threshold=conf,
        iou_threshold=iou,
        metrics=OverallMetrics.model_validate_json(metrics),
    )
