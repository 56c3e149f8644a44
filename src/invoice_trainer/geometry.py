"""Conversions between viewport pixels and document units.

Document space is the page's own coordinate system (scale 1.0, no scroll).
Viewport space is what pointer events report: pixels relative to the host
window, shifted by the content origin and the scroll offset and multiplied by
the zoom scale.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple, Optional, Tuple


class Point(NamedTuple):
    x: float
    y: float


@dataclass(frozen=True)
class Rect:
    x: float
    y: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    def contains(self, point: Point) -> bool:
        return self.x <= point.x <= self.right and self.y <= point.y <= self.bottom


@dataclass(frozen=True)
class ViewportGeometry:
    """Viewport state at the moment of a pointer event.

    ``content_origin`` is where the rendered page's top-left corner sits when
    the container is not scrolled. It differs from the container origin when
    the page is centered or padded.
    """

    content_origin: Point
    scroll_offset: Point
    scale: float
    page_size: Optional[Tuple[float, float]] = None

    def page_rect(self) -> Optional[Rect]:
        if self.page_size is None:
            return None
        width, height = self.page_size
        return Rect(0.0, 0.0, float(width), float(height))


def to_document(
    pointer_x: float,
    pointer_y: float,
    viewport_origin: Point,
    scroll_offset: Point,
    scale: float,
) -> Point:
    if scale <= 0:
        raise ValueError("scale must be positive.")
    return Point(
        (pointer_x - viewport_origin.x + scroll_offset.x) / scale,
        (pointer_y - viewport_origin.y + scroll_offset.y) / scale,
    )


def to_viewport(
    doc_x: float,
    doc_y: float,
    viewport_origin: Point,
    scroll_offset: Point,
    scale: float,
) -> Point:
    if scale <= 0:
        raise ValueError("scale must be positive.")
    return Point(
        doc_x * scale - scroll_offset.x + viewport_origin.x,
        doc_y * scale - scroll_offset.y + viewport_origin.y,
    )


def pointer_to_document(pointer: Point, geometry: ViewportGeometry) -> Point:
    return to_document(pointer.x, pointer.y, geometry.content_origin, geometry.scroll_offset, geometry.scale)


def rect_to_viewport(rect: Rect, geometry: ViewportGeometry) -> Rect:
    """Overlay rectangle for a document-space box under the current zoom and scroll."""
    origin = to_viewport(rect.x, rect.y, geometry.content_origin, geometry.scroll_offset, geometry.scale)
    return Rect(origin.x, origin.y, rect.width * geometry.scale, rect.height * geometry.scale)


def normalize_rect(start: Point, end: Point) -> Rect:
    """Rectangle spanned by two corners; dragging up or left flips the anchor."""
    dx = end.x - start.x
    dy = end.y - start.y
    return Rect(
        end.x if dx < 0 else start.x,
        end.y if dy < 0 else start.y,
        abs(dx),
        abs(dy),
    )


def clamp_origin_to_bounds(x: float, y: float, width: float, height: float, bounds: Optional[Rect]) -> Point:
    """Shift a box origin so the box stays inside ``bounds`` (and never goes negative)."""
    if bounds is not None:
        if x + width > bounds.right:
            x = bounds.right - width
        if y + height > bounds.bottom:
            y = bounds.bottom - height
        x = max(x, bounds.x)
        y = max(y, bounds.y)
    return Point(max(x, 0.0), max(y, 0.0))


__all__ = [
    "Point",
    "Rect",
    "ViewportGeometry",
    "clamp_origin_to_bounds",
    "normalize_rect",
    "pointer_to_document",
    "rect_to_viewport",
    "to_document",
    "to_viewport",
]
