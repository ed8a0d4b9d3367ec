"""Parser for ground truth given as a nested array of center-form boxes.

Shape::

    [[{"x": 100, "y": 100, "width": 50, "height": 50, "class": "A"}, ...],
     [...]]
"""

from __future__ import annotations

from typing import BinaryIO

import ijson
from pydantic import ValidationError

from app.exceptions import InputValidationError
from app.ingestion.base_parser import BaseGroundTruthParser
from app.models.box import Box


class NestedArrayParser(BaseGroundTruthParser):
    """Streams one image's array at a time."""

    @property
    def format_name(self) -> str:  # noqa: D401
        """Format identifier."""
        return "nested"

    def parse(self, stream: BinaryIO) -> list[list[Box]]:
        result: list[list[Box]] = []
        try:
            for index, items in enumerate(ijson.items(stream, "item", use_float=True)):
                if not isinstance(items, list):
                    raise InputValidationError(
                        f"Expected a list of boxes for image {index}"
                    )
                boxes = [
                    Box(
                        x=item["x"],
                        y=item["y"],
                        width=item["width"],
                        height=item["height"],
                        class_name=str(item["class"]),
                    )
                    for item in items
                ]
                result.append(self.check_boxes(index, boxes))
        except (KeyError, TypeError, ValidationError) as e:
            raise InputValidationError(f"Malformed ground-truth box: {e}") from e
        except ijson.JSONError as e:
            raise InputValidationError(f"Invalid ground-truth JSON: {e}") from e
        return result
