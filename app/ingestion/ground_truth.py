"""Ground-truth format detection and parsing entry point."""

from __future__ import annotations

import io

from app.exceptions import InputValidationError
from app.ingestion.base_parser import BaseGroundTruthParser
from app.ingestion.coco_parser import COCOGroundTruthParser
from app.ingestion.nested_parser import NestedArrayParser
from app.models.box import Box


def detect_parser(data: bytes) -> BaseGroundTruthParser:
    """Pick a parser from the first JSON token: ``[`` nested, ``{`` COCO."""
    head = data.lstrip()[:1]
    if head == b"[":
        return NestedArrayParser()
    if head == b"{":
        return COCOGroundTruthParser()
    raise InputValidationError(
        "Invalid ground truth format. Expected COCO format or array of annotations."
    )


def parse_ground_truth(data: bytes) -> list[list[Box]]:
    """Parse raw ground-truth JSON into per-image box lists."""
    parser = detect_parser(data)
    return parser.parse(io.BytesIO(data))
