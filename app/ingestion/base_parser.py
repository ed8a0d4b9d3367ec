"""Abstract base parser interface for ground-truth annotation formats."""

from abc import ABC, abstractmethod
from typing import BinaryIO

from app.exceptions import InputValidationError
from app.models.box import Box


class BaseGroundTruthParser(ABC):
    """Extension point for ground-truth formats (nested arrays, COCO, ...).

    Subclasses turn a binary JSON stream into one list of center-form
    boxes per image, in image order.
    """

    @property
    @abstractmethod
    def format_name(self) -> str:
        """Short identifier for the format, e.g. ``'coco'``."""
        ...

    @abstractmethod
    def parse(self, stream: BinaryIO) -> list[list[Box]]:
        """Return ground-truth boxes grouped per image."""
        ...

    @staticmethod
    def check_boxes(image_index: int, boxes: list[Box]) -> list[Box]:
        """Reject the whole file if any box has unusable geometry."""
        for box in boxes:
            if not box.is_valid:
                raise InputValidationError(
                    f"Invalid ground-truth box for image {image_index}: "
                    f"x={box.x}, y={box.y}, width={box.width}, height={box.height}"
                )
        return boxes
