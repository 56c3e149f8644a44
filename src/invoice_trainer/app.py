"""PyQt5 desktop host for visual invoice annotation training."""
from __future__ import annotations

import argparse
import asyncio
import hashlib
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional

from PyQt5 import sip
from PyQt5.QtCore import QObject, QPointF, QRectF, Qt, QThread, QTimer, pyqtSignal
from PyQt5.QtGui import QBrush, QColor, QPen, QPixmap
from PyQt5.QtWidgets import (
    QApplication,
    QComboBox,
    QFileDialog,
    QGraphicsPixmapItem,
    QGraphicsRectItem,
    QGraphicsScene,
    QGraphicsView,
    QHBoxLayout,
    QInputDialog,
    QLabel,
    QLineEdit,
    QListWidget,
    QListWidgetItem,
    QMainWindow,
    QMessageBox,
    QPlainTextEdit,
    QPushButton,
    QSpinBox,
    QSplitter,
    QVBoxLayout,
    QWidget,
)

from .autosave import SessionCache
from .commands import CommandDispatcher, normalize_chord
from .config import TrainerConfig, load_trainer_config
from .engine import AnnotationEngine
from .errors import ConfigError, TrainerError
from .geometry import Point, ViewportGeometry
from .interaction import Drawing, Moving, PointerCallback
from .pdf_to_images import render_document_pages
from .schemas import AutosaveStatus, StepStatus
from .services import build_http_services
from .session import SessionOrchestrator, WorkflowState

logger = logging.getLogger("invoice_trainer.app")

POINTS_PER_INCH = 72.0

_KEY_NAMES = {
    Qt.Key_Escape: "escape",
    Qt.Key_Delete: "delete",
    Qt.Key_Backspace: "backspace",
    Qt.Key_Up: "up",
    Qt.Key_Down: "down",
    Qt.Key_Left: "left",
    Qt.Key_Right: "right",
    Qt.Key_Equal: "=",
    Qt.Key_Plus: "+",
    Qt.Key_Minus: "-",
    Qt.Key_Return: "enter",
    Qt.Key_Enter: "enter",
}


def key_event_chord(event) -> Optional[str]:
    key = event.key()
    name = _KEY_NAMES.get(key)
    if name is None:
        if Qt.Key_A <= key <= Qt.Key_Z:
            name = chr(key).lower()
        elif Qt.Key_0 <= key <= Qt.Key_9:
            name = chr(key)
        else:
            return None
    modifiers = event.modifiers()
    parts: List[str] = []
    if modifiers & Qt.ControlModifier:
        parts.append("ctrl")
    if modifiers & Qt.MetaModifier:
        parts.append("meta")
    if modifiers & Qt.AltModifier:
        parts.append("alt")
    if modifiers & Qt.ShiftModifier and name not in ("+",):
        parts.append("shift")
    return "+".join([*parts, name])


class _QtTimerHandle:
    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class QtScheduler:
    """Debounce timers driven by the Qt event loop."""

    def __init__(self, parent: QObject) -> None:
        self.parent = parent

    def call_later(self, delay: float, callback: Callable[[], None]) -> _QtTimerHandle:
        timer = QTimer(self.parent)
        timer.setSingleShot(True)
        handle = _QtTimerHandle()

        def _fire() -> None:
            timer.deleteLater()
            if not handle.cancelled:
                callback()

        timer.timeout.connect(_fire)
        timer.start(int(delay * 1000))
        return handle


class ViewPointerCapture:
    """Routes all mouse events to the engine while a box is being moved."""

    def __init__(self, view: "AnnotationView") -> None:
        self.view = view
        self.on_move: Optional[PointerCallback] = None
        self.on_up: Optional[PointerCallback] = None

    def acquire(self, on_move: PointerCallback, on_up: PointerCallback) -> None:
        self.on_move = on_move
        self.on_up = on_up
        self.view.viewport().grabMouse()

    def release(self) -> None:
        self.on_move = None
        self.on_up = None
        viewport = self.view.viewport()
        if not sip.isdeleted(viewport):
            viewport.releaseMouse()


class AnnotationView(QGraphicsView):
    pointer_pressed = pyqtSignal(float, float)
    pointer_moved = pyqtSignal(float, float)
    pointer_released = pyqtSignal(float, float)
    zoom_requested = pyqtSignal(float)

    def __init__(self, scene: QGraphicsScene, parent: Optional[QWidget] = None) -> None:
        super().__init__(scene, parent)
        self.capture = ViewPointerCapture(self)
        self.setMouseTracking(True)
        self.viewport().setMouseTracking(True)

    def wheelEvent(self, event) -> None:
        if event.modifiers() & Qt.ControlModifier:
            delta = event.angleDelta().y()
            if delta:
                self.zoom_requested.emit(1.2 if delta > 0 else 1 / 1.2)
                event.accept()
                return
        super().wheelEvent(event)

    def mousePressEvent(self, event) -> None:
        self.setFocus()
        if event.button() == Qt.LeftButton:
            self.pointer_pressed.emit(float(event.pos().x()), float(event.pos().y()))
            event.accept()
            return
        super().mousePressEvent(event)

    def mouseMoveEvent(self, event) -> None:
        x, y = float(event.pos().x()), float(event.pos().y())
        if self.capture.on_move is not None:
            self.capture.on_move(x, y)
            self.viewport().update()
            event.accept()
            return
        self.pointer_moved.emit(x, y)
        super().mouseMoveEvent(event)

    def mouseReleaseEvent(self, event) -> None:
        if event.button() != Qt.LeftButton:
            super().mouseReleaseEvent(event)
            return
        x, y = float(event.pos().x()), float(event.pos().y())
        if self.capture.on_up is not None:
            self.capture.on_up(x, y)
        else:
            self.pointer_released.emit(x, y)
        event.accept()


class ServiceWorker(QObject):
    completed = pyqtSignal(object)
    failed = pyqtSignal(str)
    finished = pyqtSignal()

    def __init__(self, coro_factory: Callable[[], Awaitable[Any]], parent: Optional[QObject] = None) -> None:
        super().__init__(parent)
        # Only service calls run here; results are applied to the engine by GUI-thread slots.
        self.coro_factory = coro_factory

    def run(self) -> None:
        try:
            self.completed.emit(asyncio.run(self.coro_factory()))
        except Exception as exc:
            logger.exception("Service call failed")
            self.failed.emit(str(exc))
        finally:
            self.finished.emit()


class _EngineBridge(QObject):
    """Re-emits engine callbacks as queued signals so repaints happen after the change completes."""

    changed = pyqtSignal()
    state_changed = pyqtSignal(str)
    autosave_changed = pyqtSignal(str)


class TrainerWindow(QMainWindow):
    def __init__(self, config: TrainerConfig) -> None:
        super().__init__()
        self.config = config
        self.field_types = config.field_table()
        self._page_images: List[Path] = []
        self._page_size: Optional[tuple[float, float]] = None
        self._box_items: List[QGraphicsRectItem] = []
        self._preview_item: Optional[QGraphicsRectItem] = None
        self._pixmap_item: Optional[QGraphicsPixmapItem] = None
        self._worker_thread: Optional[QThread] = None
        self._worker: Optional[ServiceWorker] = None
        self._bridge = _EngineBridge(self)

        self.scene = QGraphicsScene(self)
        self.view = AnnotationView(self.scene, self)

        self.engine = AnnotationEngine(
            self.field_types,
            self._viewport_geometry,
            scheduler=QtScheduler(self),
            cache=SessionCache(config.autosave.cache_dir),
            engine_config=config.engine,
            autosave_config=config.autosave,
            capture=self.view.capture,
        )
        self.orchestrator = SessionOrchestrator(
            self.engine,
            build_http_services(config.services),
            default_category=config.services.default_carrier_category,
        )
        self.dispatcher = CommandDispatcher(self.engine, zoom=self._apply_zoom)

        self.orchestrator.on_changed = self._bridge.changed.emit
        self.orchestrator.on_state_changed = lambda state: self._bridge.state_changed.emit(state.value)
        if self.engine.autosave is not None:
            self.engine.autosave.on_status_changed = lambda status: self._bridge.autosave_changed.emit(status.value)
        self._bridge.changed.connect(self._refresh)
        self._bridge.state_changed.connect(lambda _state: self._refresh())
        self._bridge.autosave_changed.connect(self._on_autosave_status)

        self.setWindowTitle("Invoice Annotation Trainer")
        self.resize(1320, 860)
        self._build_ui()
        self._refresh()
        QTimer.singleShot(0, self._startup)

    def _build_ui(self) -> None:
        central = QWidget(self)
        self.setCentralWidget(central)
        root = QVBoxLayout(central)
        root.setContentsMargins(10, 10, 10, 10)

        top = QHBoxLayout()
        self.carrier_combo = QComboBox()
        self.carrier_combo.setMinimumWidth(220)
        self.carrier_filter = QLineEdit()
        self.carrier_filter.setPlaceholderText("Filter carriers")
        self.refresh_carriers_btn = QPushButton("Refresh")
        self.new_carrier_btn = QPushButton("New Carrier")
        self.open_btn = QPushButton("Open PDF")
        self.open_remote_btn = QPushButton("Open Sample")
        self.prev_page_btn = QPushButton("Prev")
        self.next_page_btn = QPushButton("Next")
        self.page_spin = QSpinBox()
        self.page_spin.setRange(1, 1)
        self.zoom_out_btn = QPushButton("Zoom -")
        self.zoom_in_btn = QPushButton("Zoom +")
        for widget in (
            QLabel("Carrier"),
            self.carrier_combo,
            self.carrier_filter,
            self.refresh_carriers_btn,
            self.new_carrier_btn,
            self.open_btn,
            self.open_remote_btn,
            self.prev_page_btn,
            self.page_spin,
            self.next_page_btn,
            self.zoom_out_btn,
            self.zoom_in_btn,
        ):
            top.addWidget(widget)
        top.addStretch(1)
        root.addLayout(top)

        splitter = QSplitter(Qt.Horizontal)
        side = QWidget()
        side_layout = QVBoxLayout(side)
        side_layout.addWidget(QLabel("Steps"))
        self.step_list = QListWidget()
        side_layout.addWidget(self.step_list, 2)
        self.step_description = QPlainTextEdit()
        self.step_description.setReadOnly(True)
        self.step_description.setMaximumHeight(110)
        side_layout.addWidget(self.step_description)

        annotate_row = QHBoxLayout()
        self.sub_type_combo = QComboBox()
        self.annotate_btn = QPushButton("Annotate")
        annotate_row.addWidget(self.sub_type_combo, 1)
        annotate_row.addWidget(self.annotate_btn)
        side_layout.addLayout(annotate_row)

        side_layout.addWidget(QLabel("Annotations"))
        self.annotation_list = QListWidget()
        side_layout.addWidget(self.annotation_list, 2)

        edit_row = QHBoxLayout()
        self.delete_btn = QPushButton("Delete")
        self.undo_btn = QPushButton("Undo")
        self.redo_btn = QPushButton("Redo")
        self.validate_btn = QPushButton("Validate")
        for widget in (self.delete_btn, self.undo_btn, self.redo_btn, self.validate_btn):
            edit_row.addWidget(widget)
        side_layout.addLayout(edit_row)

        self.quality_label = QLabel("-")
        self.autosave_label = QLabel("Autosave: idle")
        self.workflow_label = QLabel("-")
        self.submit_btn = QPushButton("Submit for Training")
        self.reset_btn = QPushButton("New Session")
        for widget in (self.quality_label, self.autosave_label, self.workflow_label, self.submit_btn, self.reset_btn):
            side_layout.addWidget(widget)

        splitter.addWidget(side)
        splitter.addWidget(self.view)
        splitter.setStretchFactor(1, 1)
        splitter.setSizes([340, 980])
        root.addWidget(splitter, 1)

        self.refresh_carriers_btn.clicked.connect(self.refresh_carriers)
        self.carrier_filter.returnPressed.connect(self.refresh_carriers)
        self.new_carrier_btn.clicked.connect(self.create_carrier)
        self.carrier_combo.activated.connect(self._on_carrier_selected)
        self.open_btn.clicked.connect(self.open_pdf)
        self.open_remote_btn.clicked.connect(self.open_remote_document)
        self.prev_page_btn.clicked.connect(lambda: self._go_to_page(self.engine.current_page - 1))
        self.next_page_btn.clicked.connect(lambda: self._go_to_page(self.engine.current_page + 1))
        self.page_spin.valueChanged.connect(self._go_to_page)
        self.zoom_in_btn.clicked.connect(lambda: self._run_command("zoom_in"))
        self.zoom_out_btn.clicked.connect(lambda: self._run_command("zoom_out"))
        self.step_list.currentRowChanged.connect(self._on_step_selected)
        self.annotation_list.currentRowChanged.connect(self._on_annotation_selected)
        self.annotate_btn.clicked.connect(self.start_annotation)
        self.delete_btn.clicked.connect(lambda: self._run_command("delete"))
        self.undo_btn.clicked.connect(lambda: self._run_command("undo"))
        self.redo_btn.clicked.connect(lambda: self._run_command("redo"))
        self.validate_btn.clicked.connect(self.show_validation_report)
        self.submit_btn.clicked.connect(self.submit_for_training)
        self.reset_btn.clicked.connect(self.reset_session)

        self.view.pointer_pressed.connect(self._on_pointer_pressed)
        self.view.pointer_moved.connect(self._on_pointer_moved)
        self.view.pointer_released.connect(self._on_pointer_released)
        self.view.zoom_requested.connect(self._apply_zoom)

        self.statusBar().showMessage("Ready")

    # Geometry and rendering

    def _viewport_geometry(self) -> ViewportGeometry:
        origin = self.view.mapFromScene(QPointF(0.0, 0.0))
        return ViewportGeometry(
            content_origin=Point(float(origin.x()), float(origin.y())),
            scroll_offset=Point(0.0, 0.0),
            scale=self.view.transform().m11(),
            page_size=self._page_size,
        )

    def _apply_zoom(self, factor: float) -> None:
        current = self.view.transform().m11()
        if not 0.1 <= current * factor <= 12.0:
            return
        self.view.scale(factor, factor)

    def _pages_dir_for(self, document_id: str) -> Path:
        digest = hashlib.sha1(document_id.encode("utf-8")).hexdigest()[:12]
        return self.config.render.output_dir / digest

    def _render_current_document(self) -> None:
        document = self.orchestrator.document
        if document is None:
            self._page_images = []
            self._show_page_image()
            return
        pages_dir = self._pages_dir_for(document.document_id)
        try:
            self._page_images = render_document_pages(document.data, pages_dir, dpi=self.config.render.dpi)
        except Exception as exc:
            logger.exception("Rendering failed for %s", document.file_name)
            QMessageBox.warning(self, "Render error", f"Could not render {document.file_name}:\n{exc}")
            self._page_images = []
        self.page_spin.blockSignals(True)
        self.page_spin.setRange(1, max(1, len(self._page_images)))
        self.page_spin.setValue(self.engine.current_page)
        self.page_spin.blockSignals(False)
        self._show_page_image()
        self.view.resetTransform()
        if self._pixmap_item is not None:
            self.view.fitInView(self._pixmap_item, Qt.KeepAspectRatio)

    def _show_page_image(self) -> None:
        self.scene.clear()
        self._box_items = []
        self._preview_item = None
        self._pixmap_item = None
        self._page_size = None
        index = self.engine.current_page - 1
        if not 0 <= index < len(self._page_images):
            return
        pixmap = QPixmap(str(self._page_images[index]))
        item = QGraphicsPixmapItem(pixmap)
        # Scene units are PDF points so stored boxes do not depend on render dpi.
        ratio = POINTS_PER_INCH / float(self.config.render.dpi)
        item.setScale(ratio)
        self.scene.addItem(item)
        self._pixmap_item = item
        self._page_size = (pixmap.width() * ratio, pixmap.height() * ratio)
        self.scene.setSceneRect(QRectF(0.0, 0.0, self._page_size[0], self._page_size[1]))
        self._draw_boxes()

    def _draw_boxes(self) -> None:
        for item in self._box_items:
            self.scene.removeItem(item)
        self._box_items = []
        for field_type_id, _index, annotation in self.engine.store.iter_annotations():
            if annotation.page != self.engine.current_page:
                continue
            spec = self.field_types.get(field_type_id)
            color = QColor(spec.color or "#2563eb")
            item = QGraphicsRectItem(QRectF(annotation.x, annotation.y, annotation.width, annotation.height))
            pen = QPen(color)
            pen.setWidth(2)
            pen.setCosmetic(True)
            diagnostics = self.engine.diagnostics.get(annotation.id)
            if diagnostics is not None and not diagnostics.valid:
                pen.setStyle(Qt.DashLine)
            fill = QColor(color)
            fill.setAlpha(40)
            item.setPen(pen)
            item.setBrush(QBrush(fill))
            item.setToolTip(f"{spec.display_label}" + (f" ({annotation.sub_type})" if annotation.sub_type else ""))
            self.scene.addItem(item)
            self._box_items.append(item)
        self._draw_preview()

    def _draw_preview(self) -> None:
        if self._preview_item is not None:
            self.scene.removeItem(self._preview_item)
            self._preview_item = None
        state = self.engine.state
        if isinstance(state, Drawing) and state.current_rect is not None:
            rect = state.current_rect
            bounds = QRectF(rect.x, rect.y, rect.width, rect.height)
        elif isinstance(state, Moving):
            current = state.current
            bounds = QRectF(current.x, current.y, current.width, current.height)
        else:
            return
        pen = QPen(Qt.blue)
        pen.setStyle(Qt.DashLine)
        pen.setCosmetic(True)
        self._preview_item = QGraphicsRectItem(bounds)
        self._preview_item.setPen(pen)
        self.scene.addItem(self._preview_item)

    # Pointer events

    def _on_pointer_pressed(self, x: float, y: float) -> None:
        if self._pixmap_item is None:
            return
        self.engine.pointer_down(x, y)
        self._draw_preview()

    def _on_pointer_moved(self, x: float, y: float) -> None:
        if isinstance(self.engine.state, (Drawing, Moving)):
            self.engine.pointer_move(x, y)
            self._draw_preview()

    def _on_pointer_released(self, x: float, y: float) -> None:
        outcome = self.engine.pointer_up(x, y)
        if outcome is None:
            self._draw_preview()
            return
        if outcome.warning:
            self.statusBar().showMessage(outcome.warning, 4000)
        elif outcome.validation is not None and outcome.validation.errors:
            self.statusBar().showMessage("; ".join(outcome.validation.errors), 5000)

    def keyPressEvent(self, event) -> None:
        chord = key_event_chord(event)
        if chord is None:
            super().keyPressEvent(event)
            return
        focus = QApplication.focusWidget()
        typing = isinstance(focus, (QLineEdit, QPlainTextEdit, QSpinBox)) and not (
            isinstance(focus, QPlainTextEdit) and focus.isReadOnly()
        )
        if self._worker_thread is not None and not typing and normalize_chord(chord) in self.dispatcher.bindings:
            self.statusBar().showMessage("Wait for the current request to finish.", 2000)
            event.accept()
            return
        result = self.dispatcher.handle_key(chord, typing_in_text_field=typing)
        if result.command is None:
            super().keyPressEvent(event)
            return
        if result.command == "save" and result.handled:
            self.statusBar().showMessage("Session saved." if result.value else "Autosave is disabled.", 2000)
        event.accept()

    # Commands

    def _run_command(self, command: str) -> None:
        result = self.dispatcher.dispatch(command)
        if not result.handled and result.reason:
            self.statusBar().showMessage(result.reason, 2500)

    def start_annotation(self) -> None:
        spec = self.engine.active_step
        sub_type = self.sub_type_combo.currentText() or None
        if self.orchestrator.document is None:
            self.statusBar().showMessage("Open a document first.", 2500)
            return
        result = self.dispatcher.dispatch(f"start:{spec.id}:{sub_type or ''}")
        if result.handled:
            self.statusBar().showMessage(f"Drag on the page to mark {spec.display_label}.", 3000)
        elif result.reason:
            self.statusBar().showMessage(result.reason, 2500)

    def _go_to_page(self, page: int) -> None:
        if not 1 <= page <= max(1, len(self._page_images)) or page == self.engine.current_page:
            return
        self.engine.set_page(page)
        self.page_spin.blockSignals(True)
        self.page_spin.setValue(page)
        self.page_spin.blockSignals(False)
        self._show_page_image()

    def _on_step_selected(self, row: int) -> None:
        if row >= 0 and row != self.engine.active_step_index:
            self.engine.go_to_step(row)

    def _on_annotation_selected(self, row: int) -> None:
        self.dispatcher.select(self.engine.active_step.id if row >= 0 else None, max(row, 0))

    def show_validation_report(self) -> None:
        report = self.engine.validation_report()
        lines = [f"Overall quality: {report.overall_score:.0f}/100", f"Errors: {report.error_count}", ""]
        for field_type_id, field_validation in report.fields.items():
            label = self.field_types.get(field_type_id).display_label
            for result in field_validation.results:
                lines.extend(f"[error] {label}: {message}" for message in result.errors)
                lines.extend(f"[warning] {label}: {message}" for message in result.warnings)
                lines.extend(f"[hint] {label}: {message}" for message in result.suggestions)
        QMessageBox.information(self, "Validation", "\n".join(lines))

    def _on_autosave_status(self, status: str) -> None:
        text = f"Autosave: {status}"
        if status == AutosaveStatus.error.value and self.engine.autosave is not None:
            text += f" ({self.engine.autosave.last_error})"
        self.autosave_label.setText(text)

    # Workflow (network calls run on a worker thread)

    def _run_service(
        self,
        coro_factory: Callable[[], Awaitable[Any]],
        on_success: Callable[[Any], None],
        *,
        busy_message: str,
        error_title: str,
        on_failure: Optional[Callable[[], None]] = None,
    ) -> None:
        if self._worker_thread is not None:
            self.statusBar().showMessage("Another request is still running.", 2500)
            return
        self.engine.cancel()

        def _succeeded(value: Any) -> None:
            try:
                on_success(value)
            except TrainerError as exc:
                QMessageBox.warning(self, error_title, str(exc))

        def _failed(message: str) -> None:
            if on_failure is not None:
                on_failure()
            QMessageBox.warning(self, error_title, message)

        worker = ServiceWorker(coro_factory)
        thread = QThread(self)
        worker.moveToThread(thread)
        thread.started.connect(worker.run)
        worker.completed.connect(_succeeded)
        worker.failed.connect(_failed)
        worker.finished.connect(thread.quit)
        worker.finished.connect(worker.deleteLater)
        thread.finished.connect(thread.deleteLater)
        thread.finished.connect(self._on_worker_finished)
        self._worker = worker
        self._worker_thread = thread
        self.view.setEnabled(False)
        self.statusBar().showMessage(busy_message)
        thread.start()

    def _on_worker_finished(self) -> None:
        self._worker = None
        self._worker_thread = None
        self.view.setEnabled(True)
        self._refresh()

    def _startup(self) -> None:
        record = self.engine.autosave.load() if self.engine.autosave is not None else None
        if record is not None:
            choice = QMessageBox.question(
                self,
                "Recover session",
                f"Restore the session saved at {record.saved_at:%Y-%m-%d %H:%M}?",
                QMessageBox.Yes | QMessageBox.No,
                QMessageBox.Yes,
            )
            if choice == QMessageBox.Yes:
                self.recover_session()
                return
            self.engine.autosave.clear()
        self.refresh_carriers()

    def recover_session(self) -> None:
        record = self.orchestrator.restore_autosave()
        if record is None or not record.document_id:
            self.refresh_carriers()
            return

        def _attached(pending: Any) -> None:
            self.orchestrator.attach_document(pending)
            self._render_current_document()

        self._run_service(
            lambda: self.orchestrator.fetch_stored(record.document_id, record.document_name),
            _attached,
            busy_message="Recovering session...",
            error_title="Recovery failed",
        )

    def refresh_carriers(self) -> None:
        query = self.carrier_filter.text().strip() or None
        self._run_service(
            lambda: self.orchestrator.refresh_carriers(query),
            lambda _carriers: self._populate_carriers(),
            busy_message="Loading carriers...",
            error_title="Carrier list failed",
        )

    def _populate_carriers(self) -> None:
        self.carrier_combo.blockSignals(True)
        self.carrier_combo.clear()
        self.carrier_combo.addItem("Select a carrier", None)
        for carrier in self.orchestrator.carriers:
            self.carrier_combo.addItem(f"{carrier.name} ({carrier.category})", carrier.id)
        selected = self.orchestrator.carrier
        if selected is not None:
            index = self.carrier_combo.findData(selected.id)
            self.carrier_combo.setCurrentIndex(max(0, index))
        self.carrier_combo.blockSignals(False)
        self.statusBar().showMessage(f"Loaded {len(self.orchestrator.carriers)} carrier(s).", 2500)

    def create_carrier(self) -> None:
        name, ok = QInputDialog.getText(self, "New carrier", "Carrier name:")
        if not ok:
            return
        if not name.strip():
            QMessageBox.warning(self, "New carrier", "Carrier name is required.")
            return

        def _created(carrier: Any) -> None:
            self.orchestrator.select_carrier(carrier)
            self._populate_carriers()

        self._run_service(
            lambda: self.orchestrator.create_carrier(name),
            _created,
            busy_message="Creating carrier...",
            error_title="Create carrier failed",
        )

    def _on_carrier_selected(self, index: int) -> None:
        carrier_id = self.carrier_combo.itemData(index)
        if carrier_id is None:
            return
        try:
            self.orchestrator.select_carrier(carrier_id)
        except TrainerError as exc:
            QMessageBox.warning(self, "Carrier", str(exc))
        self._refresh()

    def open_pdf(self) -> None:
        if self.orchestrator.carrier is None:
            QMessageBox.warning(self, "Open PDF", "Select a carrier before loading a document.")
            return
        path, _ = QFileDialog.getOpenFileName(self, "Open invoice", "", "PDF files (*.pdf)")
        if not path:
            return
        try:
            pending = self.orchestrator.prepare_upload(Path(path))
        except (OSError, TrainerError) as exc:
            QMessageBox.warning(self, "Open PDF", str(exc))
            return

        def _uploaded(document: Any) -> None:
            self.orchestrator.apply_document(document)
            self._render_current_document()

        self._run_service(
            lambda: self.orchestrator.upload(pending),
            _uploaded,
            busy_message=f"Uploading {Path(path).name}...",
            error_title="Upload failed",
        )

    def open_remote_document(self) -> None:
        document_id, ok = QInputDialog.getText(self, "Open sample", "Document id:")
        if not ok or not document_id.strip():
            return

        def _opened(pending: Any) -> None:
            skipped = self.orchestrator.apply_document(pending)
            self._render_current_document()
            if skipped:
                QMessageBox.warning(self, "Some annotations skipped", "\n".join(skipped))

        self._run_service(
            lambda: self.orchestrator.fetch_stored(document_id.strip()),
            _opened,
            busy_message="Fetching document...",
            error_title="Open sample failed",
        )

    def submit_for_training(self) -> None:
        try:
            pending = self.orchestrator.begin_submission()
        except TrainerError as exc:
            QMessageBox.warning(self, "Submit for training", str(exc))
            return

        def _done(result: Any) -> None:
            result = self.orchestrator.complete_submission(pending, result)
            QMessageBox.information(
                self,
                "Training complete",
                f"Confidence: {result.confidence:.0%}\nExtracted fields: {result.extracted_field_count}",
            )

        self._run_service(
            lambda: self.orchestrator.send_submission(pending),
            _done,
            busy_message="Submitting for training...",
            error_title="Training failed",
            on_failure=lambda: self.orchestrator.abort_submission(pending),
        )

    def reset_session(self) -> None:
        if len(self.engine.store):
            choice = QMessageBox.question(
                self,
                "New session",
                "Discard the current annotations?",
                QMessageBox.Yes | QMessageBox.No,
                QMessageBox.No,
            )
            if choice != QMessageBox.Yes:
                return
        self.orchestrator.reset_session(keep_carrier=self.orchestrator.state == WorkflowState.COMPLETE)
        self._render_current_document()

    # Refresh

    def _refresh(self) -> None:
        engine = self.engine
        self.step_list.blockSignals(True)
        self.step_list.clear()
        for spec in self.field_types:
            done = engine.get_step_status(spec.id) == StepStatus.completed
            count = len(engine.get_annotations(spec.id))
            suffix = f" ({count})" if spec.allow_multiple and count else ""
            item = QListWidgetItem(f"{'✓' if done else '○'} {spec.display_label}{suffix}")
            item.setForeground(QColor(spec.color or "#111827"))
            self.step_list.addItem(item)
        self.step_list.setCurrentRow(engine.active_step_index)
        self.step_list.blockSignals(False)

        spec = engine.active_step
        description = [spec.description] if spec.description else []
        if spec.examples:
            description.append("Examples: " + ", ".join(spec.examples))
        self.step_description.setPlainText("\n".join(description))
        self.sub_type_combo.clear()
        self.sub_type_combo.addItems(spec.sub_types)
        if spec.default_sub_type:
            self.sub_type_combo.setCurrentText(spec.default_sub_type)
        self.sub_type_combo.setEnabled(bool(spec.sub_types))

        self.annotation_list.blockSignals(True)
        self.annotation_list.clear()
        for index, annotation in enumerate(engine.get_annotations(spec.id)):
            diagnostics = engine.diagnostics.get(annotation.id)
            flag = "" if diagnostics is None or diagnostics.valid else " ⚠"
            label = annotation.sub_type or spec.display_label
            self.annotation_list.addItem(
                f"{index + 1}. {label} p{annotation.page} "
                f"[{annotation.x:.0f}, {annotation.y:.0f}, {annotation.width:.0f}x{annotation.height:.0f}]{flag}"
            )
        self.annotation_list.blockSignals(False)
        self.dispatcher.select(None)

        self.undo_btn.setEnabled(engine.history.can_undo)
        self.redo_btn.setEnabled(engine.history.can_redo)
        report = engine.validation_report()
        self.quality_label.setText(
            f"Completed {engine.completed_count()}/{len(self.field_types)} - quality {report.overall_score:.0f}/100"
        )
        state = self.orchestrator.state
        carrier = self.orchestrator.carrier
        self.workflow_label.setText(
            f"{state.value.replace('_', ' ').title()}" + (f" - {carrier.name}" if carrier is not None else "")
        )
        self.submit_btn.setEnabled(
            state in (WorkflowState.DOCUMENT_LOADED, WorkflowState.ANNOTATING)
            and engine.completed_count() >= self.orchestrator.min_completed_fields
        )
        if self._pixmap_item is not None:
            self._draw_boxes()

    def closeEvent(self, event) -> None:
        self.orchestrator.close()
        super().closeEvent(event)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Draw labeled boxes on invoice PDFs and submit them for extraction training.")
    parser.add_argument("--config", default=None, help="Trainer YAML config (default: $INVOICE_TRAINER_CONFIG).")
    parser.add_argument("--services-url", default=None, help="Override services.base_url.")
    parser.add_argument("--log-level", default="INFO", help="Python logging level.")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=str(args.log_level).upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        config = load_trainer_config(args.config)
    except (ConfigError, FileNotFoundError) as exc:
        print(str(exc), file=sys.stderr)
        return 1
    if args.services_url:
        config.services.base_url = args.services_url

    if hasattr(Qt, "AA_EnableHighDpiScaling"):
        QApplication.setAttribute(Qt.AA_EnableHighDpiScaling, True)
    if hasattr(Qt, "AA_UseHighDpiPixmaps"):
        QApplication.setAttribute(Qt.AA_UseHighDpiPixmaps, True)

    app = QApplication(sys.argv)
    window = TrainerWindow(config)
    window.show()
    return app.exec_()


if __name__ == "__main__":
    raise SystemExit(main())
