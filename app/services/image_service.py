"""Visual diff overlays rendered with Pillow.

Draws a per-image :class:`ImageDiff` on top of the source image:
ground truth that was matched in green, predictions that matched it in
blue, false positives in red and missed ground truth (false negatives)
in orange. Output is PNG bytes.
"""

from __future__ import annotations

import logging
from io import BytesIO

from PIL import Image, ImageDraw

from app.models.box import Box
from app.models.evaluation import ImageDiff
from app.repositories.storage import StorageBackend

logger = logging.getLogger(__name__)

COLORS: dict[str, tuple[int, int, int]] = {
    "ground_truth": (34, 197, 94),
    "true_positive": (59, 130, 246),
    "false_positive": (239, 68, 68),
    "false_negative": (249, 115, 22),
}
LINE_WIDTH: int = 3


class ImageService:
    """Load evaluation images and render prediction/ground-truth overlays."""

    def __init__(self, storage: StorageBackend) -> None:
        self.storage = storage

    def render_diff_overlay(self, image_path: str, diff: ImageDiff) -> bytes:
        """Return PNG bytes of *image_path* annotated with *diff*."""
        data = self.storage.read_bytes(image_path)
        with Image.open(BytesIO(data)) as img:
            canvas = img.convert("RGB")

        draw = ImageDraw.Draw(canvas)
        for pair in diff.true_positives:
            _draw_box(draw, pair.ground_truth, COLORS["ground_truth"])
            _draw_box(
                draw,
                pair.prediction,
                COLORS["true_positive"],
                label=f"{pair.prediction.class_name} {pair.iou:.2f}",
            )
        for box in diff.false_positives:
            _draw_box(
                draw,
                box,
                COLORS["false_positive"],
                label=f"{box.class_name} {box.score:.2f}",
            )
        for box in diff.false_negatives:
            _draw_box(draw, box, COLORS["false_negative"], label=box.class_name)

        buf = BytesIO()
        canvas.save(buf, format="PNG")
        logger.debug(
            "Rendered overlay for image %d (%d TP, %d FP, %d FN)",
            diff.image_index,
            len(diff.true_positives),
            len(diff.false_positives),
            len(diff.false_negatives),
        )
        return buf.getvalue()


def _draw_box(
    draw: ImageDraw.ImageDraw,
    box: Box,
    color: tuple[int, int, int],
    label: str | None = None,
) -> None:
    x1, y1, x2, y2 = box.corners()
    draw.rectangle([x1, y1, x2, y2], outline=color, width=LINE_WIDTH)
    if label:
        draw.text((x1 + LINE_WIDTH, y1 + LINE_WIDTH), label, fill=color)
