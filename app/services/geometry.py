"""Box overlap computations.

Boxes arrive in center form and are converted to corner form before any
area arithmetic. Areas are taken from the corner extents so that a box
compared with itself yields exactly 1.0.
"""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np

from app.models.box import Box


def corners_array(boxes: Sequence[Box]) -> np.ndarray:
    """Return an ``(N, 4)`` float64 array of ``x1, y1, x2, y2`` rows."""
    if not boxes:
        return np.empty((0, 4), dtype=np.float64)
    return np.array([b.corners() for b in boxes], dtype=np.float64)


def iou_matrix(boxes_a: Sequence[Box], boxes_b: Sequence[Box]) -> np.ndarray:
    """Vectorized IoU between two box lists. Returns an (M, N) matrix.

    Pairs whose union area is zero (both boxes degenerate) get 0.0.
    """
    a = corners_array(boxes_a)
    b = corners_array(boxes_b)

    x1 = np.maximum(a[:, 0:1], b[:, 0])
    y1 = np.maximum(a[:, 1:2], b[:, 1])
    x2 = np.minimum(a[:, 2:3], b[:, 2])
    y2 = np.minimum(a[:, 3:4], b[:, 3])

    inter = np.maximum(0.0, x2 - x1) * np.maximum(0.0, y2 - y1)

    area_a = (a[:, 2] - a[:, 0]) * (a[:, 3] - a[:, 1])
    area_b = (b[:, 2] - b[:, 0]) * (b[:, 3] - b[:, 1])

    union = area_a[:, None] + area_b[None, :] - inter
    return np.divide(
        inter, union, out=np.zeros_like(inter), where=union > 0
    )


def intersection_over_union(a: Box, b: Box) -> float:
    """IoU of two boxes, in ``[0, 1]``. Symmetric and side-effect free."""
    return float(iou_matrix([a], [b])[0, 0])
