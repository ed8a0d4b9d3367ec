"""Tests for box overlap computations."""

import pytest

from app.models.box import Box
from app.services.geometry import intersection_over_union, iou_matrix
from helpers import gt, pred

BOXES = [
    gt(100, 100, 50, 50),
    gt(13.7, 21.3, 7.1, 3.3),
    gt(0.1, 0.2, 0.3, 0.7),
    pred(640.25, 480.5, 33.3, 12.9, conf=0.4),
]


@pytest.mark.parametrize("box", BOXES)
def test_iou_with_itself_is_one(box: Box) -> None:
    assert intersection_over_union(box, box) == 1.0


def test_disjoint_boxes_have_zero_iou() -> None:
    a = gt(10, 10, 10, 10)
    b = gt(100, 100, 10, 10)
    assert intersection_over_union(a, b) == 0.0


def test_touching_edges_have_zero_iou() -> None:
    a = gt(5, 5, 10, 10)
    b = gt(15, 5, 10, 10)
    assert intersection_over_union(a, b) == 0.0


def test_partial_overlap() -> None:
    # Corners (0,0)-(10,10) and (5,0)-(15,10): 50 / 150
    a = gt(5, 5, 10, 10)
    b = gt(10, 5, 10, 10)
    assert intersection_over_union(a, b) == pytest.approx(1 / 3)


def test_contained_box() -> None:
    outer = gt(50, 50, 100, 100)
    inner = gt(50, 50, 50, 50)
    assert intersection_over_union(outer, inner) == pytest.approx(0.25)


@pytest.mark.parametrize(
    "a, b",
    [
        (gt(5, 5, 10, 10), gt(10, 5, 10, 10)),
        (gt(13.7, 21.3, 7.1, 3.3), gt(15.2, 20.0, 4.4, 9.9)),
        (gt(0, 0, 1, 1), gt(0.25, 0.25, 2, 0.5)),
    ],
)
def test_iou_is_symmetric(a: Box, b: Box) -> None:
    assert intersection_over_union(a, b) == intersection_over_union(b, a)


def test_degenerate_boxes_return_zero() -> None:
    a = gt(10, 10, 0, 0)
    b = gt(10, 10, 0, 0)
    assert intersection_over_union(a, b) == 0.0


def test_center_coordinates_are_not_corners() -> None:
    # Same top-left corner but different centers must not fully overlap.
    a = gt(25, 25, 50, 50)
    b = gt(50, 50, 100, 100)
    assert intersection_over_union(a, b) == pytest.approx(0.25)


def test_iou_matrix_shape_and_values() -> None:
    preds = [gt(5, 5, 10, 10), gt(100, 100, 10, 10)]
    gts = [gt(5, 5, 10, 10), gt(10, 5, 10, 10), gt(500, 500, 1, 1)]
    matrix = iou_matrix(preds, gts)
    assert matrix.shape == (2, 3)
    assert matrix[0, 0] == 1.0
    assert matrix[0, 1] == pytest.approx(1 / 3)
    assert matrix[1].tolist() == [0.0, 0.0, 0.0]


def test_iou_matrix_empty_inputs() -> None:
    assert iou_matrix([], [gt(1, 1, 1, 1)]).shape == (0, 1)
    assert iou_matrix([gt(1, 1, 1, 1)], []).shape == (1, 0)


def test_box_validity() -> None:
    assert gt(1, 1, 1, 1).is_valid
    assert not gt(1, 1, 0, 1).is_valid
    assert not gt(1, 1, 1, -2).is_valid
    assert not gt(float("nan"), 1, 1, 1).is_valid
    assert not gt(1, float("inf"), 1, 1).is_valid


def test_box_wire_alias() -> None:
    box = Box.model_validate(
        {"x": 1, "y": 2, "width": 3, "height": 4, "class": "A"}
    )
    assert box.class_name == "A"
    assert box.confidence is None
    assert box.model_dump(by_alias=True)["class"] == "A"
