"""Pydantic model for a center-form bounding box."""

from __future__ import annotations

import math

from pydantic import BaseModel, ConfigDict, Field


class Box(BaseModel):
    """Axis-aligned box in image pixel coordinates.

    ``x``/``y`` are the box **center**, not the top-left corner.
    Predictions carry a ``confidence``; ground-truth boxes leave it unset.
    On the wire the class name uses the key ``class``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    x: float
    y: float
    width: float
    height: float
    class_name: str = Field(alias="class")
    confidence: float | None = None

    @property
    def is_valid(self) -> bool:
        """True when all coordinates are finite and both extents positive."""
        coords = (self.x, self.y, self.width, self.height)
        if not all(math.isfinite(c) for c in coords):
            return False
        return self.width > 0 and self.height > 0

    @property
    def score(self) -> float:
        """Confidence used for ordering and filtering (missing counts as 0)."""
        return self.confidence if self.confidence is not None else 0.0

    def corners(self) -> tuple[float, float, float, float]:
        """Return ``(x1, y1, x2, y2)`` corner coordinates."""
        half_w = self.width / 2
        half_h = self.height / 2
        return (
            self.x - half_w,
            self.y - half_h,
            self.x + half_w,
            self.y + half_h,
        )
