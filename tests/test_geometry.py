from __future__ import annotations

import pytest

from invoice_trainer.geometry import (
    Point,
    Rect,
    ViewportGeometry,
    clamp_origin_to_bounds,
    normalize_rect,
    pointer_to_document,
    rect_to_viewport,
    to_document,
    to_viewport,
)


@pytest.mark.parametrize("scale", [0.5, 0.75, 1.0, 1.5, 2.25, 3.0])
@pytest.mark.parametrize("scroll", [Point(0.0, 0.0), Point(137.5, 2048.0), Point(-12.0, 33.3)])
def test_viewport_round_trip_returns_original_point(scale: float, scroll: Point) -> None:
    origin = Point(24.0, 96.0)
    doc = Point(412.37, 88.9)
    viewport = to_viewport(doc.x, doc.y, origin, scroll, scale)
    back = to_document(viewport.x, viewport.y, origin, scroll, scale)
    assert back.x == pytest.approx(doc.x)
    assert back.y == pytest.approx(doc.y)


def test_to_document_accounts_for_origin_scroll_and_zoom() -> None:
    point = to_document(220.0, 140.0, Point(20.0, 40.0), Point(0.0, 100.0), 2.0)
    assert point == Point(100.0, 100.0)


def test_non_positive_scale_is_rejected() -> None:
    with pytest.raises(ValueError):
        to_document(1.0, 1.0, Point(0.0, 0.0), Point(0.0, 0.0), 0.0)
    with pytest.raises(ValueError):
        to_viewport(1.0, 1.0, Point(0.0, 0.0), Point(0.0, 0.0), -1.0)


def test_normalize_rect_handles_drag_up_and_left() -> None:
    assert normalize_rect(Point(50.0, 80.0), Point(10.0, 20.0)) == Rect(10.0, 20.0, 40.0, 60.0)
    assert normalize_rect(Point(10.0, 20.0), Point(50.0, 80.0)) == Rect(10.0, 20.0, 40.0, 60.0)


def test_clamp_origin_keeps_box_inside_page() -> None:
    bounds = Rect(0.0, 0.0, 600.0, 800.0)
    assert clamp_origin_to_bounds(580.0, 790.0, 100.0, 40.0, bounds) == Point(500.0, 760.0)
    assert clamp_origin_to_bounds(-30.0, -5.0, 100.0, 40.0, bounds) == Point(0.0, 0.0)
    assert clamp_origin_to_bounds(-30.0, 12.0, 100.0, 40.0, None) == Point(0.0, 12.0)


def test_geometry_helpers_use_page_rect_and_scale() -> None:
    geometry = ViewportGeometry(Point(10.0, 10.0), Point(0.0, 50.0), 2.0, page_size=(612.0, 792.0))
    assert geometry.page_rect() == Rect(0.0, 0.0, 612.0, 792.0)
    assert pointer_to_document(Point(30.0, 10.0), geometry) == Point(10.0, 25.0)
    assert rect_to_viewport(Rect(10.0, 25.0, 5.0, 5.0), geometry) == Rect(30.0, 10.0, 10.0, 10.0)
    assert ViewportGeometry(Point(0.0, 0.0), Point(0.0, 0.0), 1.0).page_rect() is None
