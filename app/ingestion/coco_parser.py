"""Streaming COCO ground-truth parser using ijson.

Works on binary streams because ijson's ``yajl2_c`` backend operates on
raw bytes. Uses ``use_float=True`` to avoid ``Decimal`` overhead for
coordinate values. The stream must be seekable: categories, images and
annotations are each read in their own pass.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import BinaryIO

import ijson

from app.exceptions import InputValidationError
from app.ingestion.base_parser import BaseGroundTruthParser
from app.models.box import Box

logger = logging.getLogger(__name__)


class COCOGroundTruthParser(BaseGroundTruthParser):
    """Converts COCO images/annotations/categories into per-image boxes.

    Images are ordered by id. COCO ``bbox`` is ``[x, y, w, h]`` with a
    top-left origin and is converted to center form. Annotations whose
    category id is not declared get the class name ``class_<id>``.
    """

    @property
    def format_name(self) -> str:  # noqa: D401
        """Format identifier."""
        return "coco"

    # ------------------------------------------------------------------
    # Low-level streaming helpers
    # ------------------------------------------------------------------

    def parse_categories(self, stream: BinaryIO) -> dict[int, str]:
        """Extract ``{category_id: category_name}``.

        Returns an empty dict if the ``categories`` key is missing.
        """
        stream.seek(0)
        categories: dict[int, str] = {}
        try:
            for cat in ijson.items(stream, "categories.item"):
                categories[int(cat["id"])] = cat["name"]
        except (ijson.IncompleteJSONError, KeyError):
            logger.warning("Could not parse COCO categories")
        return categories

    def parse_images_streaming(self, stream: BinaryIO) -> Iterator[dict]:
        """Yield raw image dicts one at a time."""
        stream.seek(0)
        yield from ijson.items(stream, "images.item", use_float=True)

    def parse_annotations_streaming(self, stream: BinaryIO) -> Iterator[dict]:
        """Yield raw annotation dicts one at a time."""
        stream.seek(0)
        yield from ijson.items(stream, "annotations.item", use_float=True)

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def parse(self, stream: BinaryIO) -> list[list[Box]]:
        categories = self.parse_categories(stream)
        try:
            image_ids = sorted(int(img["id"]) for img in self.parse_images_streaming(stream))
            by_image: dict[int, list[Box]] = {image_id: [] for image_id in image_ids}

            for ann in self.parse_annotations_streaming(stream):
                image_id = int(ann["image_id"])
                if image_id not in by_image:
                    logger.warning(
                        "Annotation %s references unknown image %s, skipping",
                        ann.get("id"),
                        image_id,
                    )
                    continue
                bbox = ann.get("bbox") or []
                if len(bbox) < 4:
                    raise InputValidationError(
                        f"Annotation {ann.get('id')} has no usable bbox"
                    )
                x, y, w, h = (float(v) for v in bbox[:4])
                cat_id = ann.get("category_id")
                by_image[image_id].append(
                    Box(
                        x=x + w / 2,
                        y=y + h / 2,
                        width=w,
                        height=h,
                        class_name=categories.get(cat_id, f"class_{cat_id}"),
                    )
                )
        except InputValidationError:
            raise
        except (KeyError, TypeError, ValueError) as e:
            raise InputValidationError(f"Malformed COCO annotation file: {e}") from e
        except ijson.JSONError as e:
            raise InputValidationError(f"Invalid COCO JSON: {e}") from e

        logger.info(
            "Converted COCO ground truth: %d images, %d categories",
            len(image_ids),
            len(categories),
        )
        return [
            self.check_boxes(index, by_image[image_id])
            for index, image_id in enumerate(image_ids)
        ]
