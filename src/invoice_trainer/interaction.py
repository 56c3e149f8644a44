"""Pointer-driven drawing and moving of annotation boxes.

The machine owns exactly one state value at a time (:class:`Idle`,
:class:`Drawing` or :class:`Moving`). Pointer positions arrive in viewport
pixels and are converted with the geometry read at that instant, because the
viewport may scroll or zoom in the middle of a drag. Completed gestures are
returned as commit intents; applying them to the store is the engine's job.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Callable, Optional, Protocol, Tuple, Union

from .annotation_core import AnnotationStore
from .geometry import Point, Rect, ViewportGeometry, clamp_origin_to_bounds, normalize_rect, pointer_to_document
from .schemas import Annotation

DEFAULT_MIN_DRAW_SIZE = 10.0

PointerCallback = Callable[[float, float], None]


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Drawing:
    field_type_id: str
    sub_type: Optional[str] = None
    start: Optional[Point] = None
    current_rect: Optional[Rect] = None


@dataclass(frozen=True)
class Moving:
    field_type_id: str
    index: int
    original: Annotation
    offset: Point
    current: Annotation


InteractionState = Union[Idle, Drawing, Moving]
IDLE = Idle()


@dataclass(frozen=True)
class DrawCommit:
    field_type_id: str
    sub_type: Optional[str]
    rect: Rect
    page: int


@dataclass(frozen=True)
class MoveCommit:
    field_type_id: str
    index: int
    annotation: Annotation


Commit = Union[DrawCommit, MoveCommit]


class PointerCapture(Protocol):
    """Window-wide pointer tracking used while a box is being dragged."""

    def acquire(self, on_move: PointerCallback, on_up: PointerCallback) -> None: ...

    def release(self) -> None: ...


class NullPointerCapture:
    """Capture for hosts that already route every pointer event to the machine."""

    def __init__(self) -> None:
        self.active = False

    def acquire(self, on_move: PointerCallback, on_up: PointerCallback) -> None:
        self.active = True

    def release(self) -> None:
        self.active = False


def _drawable_area(geometry: ViewportGeometry) -> Rect:
    # Without a known page size only the origin bounds the document.
    return geometry.page_rect() or Rect(0.0, 0.0, math.inf, math.inf)


def _intersect(rect: Rect, bounds: Rect) -> Rect:
    left = max(rect.x, bounds.x)
    top = max(rect.y, bounds.y)
    right = min(rect.right, bounds.right)
    bottom = min(rect.bottom, bounds.bottom)
    return Rect(left, top, max(0.0, right - left), max(0.0, bottom - top))


class InteractionMachine:
    def __init__(
        self,
        store: AnnotationStore,
        geometry_provider: Callable[[], ViewportGeometry],
        *,
        page_provider: Callable[[], int] = lambda: 1,
        capture: Optional[PointerCapture] = None,
        min_draw_size: float = DEFAULT_MIN_DRAW_SIZE,
    ) -> None:
        self.store = store
        self.geometry_provider = geometry_provider
        self.page_provider = page_provider
        self.capture = capture or NullPointerCapture()
        self.min_draw_size = min_draw_size
        self.state: InteractionState = IDLE
        self._captured = False
        # Set by the engine; receives moves that finish while the global capture owns the pointer.
        self.on_captured_commit: Optional[Callable[[Optional[Commit]], None]] = None

    @property
    def is_idle(self) -> bool:
        return isinstance(self.state, Idle)

    def _document_point(self, x: float, y: float) -> Tuple[Point, ViewportGeometry]:
        geometry = self.geometry_provider()
        return pointer_to_document(Point(x, y), geometry), geometry

    def start_annotation(self, field_type_id: str, sub_type: Optional[str] = None) -> bool:
        if isinstance(self.state, Moving):
            return False
        self.store.field_types.get(field_type_id)
        self.state = Drawing(field_type_id=field_type_id, sub_type=sub_type)
        return True

    def pointer_down(self, x: float, y: float) -> bool:
        point, geometry = self._document_point(x, y)
        state = self.state
        if isinstance(state, Drawing):
            if not _drawable_area(geometry).contains(point):
                return False
            self.state = replace(state, start=point, current_rect=Rect(point.x, point.y, 0.0, 0.0))
            return True
        if isinstance(state, Idle):
            hit = self.hit_test(point)
            if hit is None:
                return False
            return self.begin_move(hit[0], hit[1], x, y)
        return False

    def hit_test(self, point: Point) -> Optional[Tuple[str, int]]:
        page = self.page_provider()
        hits = [
            (annotation.created_at, field_type_id, index)
            for field_type_id, index, annotation in self.store.iter_annotations()
            if annotation.page == page
            and Rect(annotation.x, annotation.y, annotation.width, annotation.height).contains(point)
        ]
        if not hits:
            return None
        # Newest box is drawn on top.
        _, field_type_id, index = max(hits, key=lambda hit: hit[0])
        return field_type_id, index

    def begin_move(self, field_type_id: str, index: int, x: float, y: float) -> bool:
        if not isinstance(self.state, Idle):
            return False
        annotation = self.store.annotation_at(field_type_id, index)
        if annotation is None:
            return False
        point, _ = self._document_point(x, y)
        self.state = Moving(
            field_type_id=field_type_id,
            index=index,
            original=annotation,
            offset=Point(point.x - annotation.x, point.y - annotation.y),
            current=annotation,
        )
        self.capture.acquire(self._captured_move, self._captured_up)
        self._captured = True
        return True

    def pointer_move(self, x: float, y: float) -> InteractionState:
        point, geometry = self._document_point(x, y)
        state = self.state
        if isinstance(state, Drawing) and state.start is not None:
            rect = _intersect(normalize_rect(state.start, point), _drawable_area(geometry))
            self.state = replace(state, current_rect=rect)
        elif isinstance(state, Moving):
            current = state.current
            origin = clamp_origin_to_bounds(
                point.x - state.offset.x,
                point.y - state.offset.y,
                current.width,
                current.height,
                geometry.page_rect(),
            )
            self.state = replace(state, current=current.moved_to(origin.x, origin.y))
        return self.state

    def pointer_up(self, x: Optional[float] = None, y: Optional[float] = None) -> Optional[Commit]:
        if x is not None and y is not None:
            self.pointer_move(x, y)
        state = self.state
        if isinstance(state, Drawing):
            if state.start is None or state.current_rect is None:
                return None
            self.state = IDLE
            rect = state.current_rect
            if rect.width > self.min_draw_size and rect.height > self.min_draw_size:
                return DrawCommit(state.field_type_id, state.sub_type, rect, self.page_provider())
            return None
        if isinstance(state, Moving):
            self._release_capture()
            self.state = IDLE
            if (state.current.x, state.current.y) == (state.original.x, state.original.y):
                return None
            return MoveCommit(state.field_type_id, state.index, state.current)
        return None

    def cancel(self) -> bool:
        was_active = not isinstance(self.state, Idle)
        self._release_capture()
        self.state = IDLE
        return was_active

    def teardown(self) -> None:
        self.cancel()

    def _release_capture(self) -> None:
        if self._captured:
            self._captured = False
            self.capture.release()

    def _captured_move(self, x: float, y: float) -> None:
        self.pointer_move(x, y)

    def _captured_up(self, x: float, y: float) -> None:
        commit = self.pointer_up(x, y)
        if self.on_captured_commit is not None:
            self.on_captured_commit(commit)


__all__ = [
    "Commit",
    "DEFAULT_MIN_DRAW_SIZE",
    "DrawCommit",
    "Drawing",
    "IDLE",
    "Idle",
    "InteractionMachine",
    "InteractionState",
    "MoveCommit",
    "Moving",
    "NullPointerCapture",
    "PointerCapture",
]
