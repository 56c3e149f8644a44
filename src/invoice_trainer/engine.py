"""Annotation editing engine exposed to the host UI.

Every committed change (draw, move, removal) goes through the same path:
store write, validation, one history entry, autosave scheduling.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from .annotation_core import AnnotationStore
from .autosave import AutosaveChannel, Scheduler, SessionCache
from .config import AutosaveConfig, EngineConfig
from .field_types import FieldTypeTable
from .geometry import Rect, ViewportGeometry
from .history import HistoryManager
from .interaction import Commit, DrawCommit, InteractionMachine, InteractionState, PointerCapture
from .schemas import Annotation, AutosaveRecord, AutosaveStatus, Carrier, FieldTypeSpec, StepStatus, utc_now
from .validation import ValidationEngine, ValidationReport, ValidationResult

logger = logging.getLogger("invoice_trainer.engine")

TextExtractor = Callable[[int, Rect], Optional[str]]


@dataclass
class CommitOutcome:
    field_type_id: str
    annotation: Optional[Annotation] = None
    validation: Optional[ValidationResult] = None
    warning: Optional[str] = None

    @property
    def committed(self) -> bool:
        return self.annotation is not None


class AnnotationEngine:
    def __init__(
        self,
        field_types: FieldTypeTable,
        geometry_provider: Callable[[], ViewportGeometry],
        *,
        scheduler: Optional[Scheduler] = None,
        cache: Optional[SessionCache] = None,
        engine_config: Optional[EngineConfig] = None,
        autosave_config: Optional[AutosaveConfig] = None,
        capture: Optional[PointerCapture] = None,
        text_extractor: Optional[TextExtractor] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.field_types = field_types
        self.config = engine_config or EngineConfig()
        self.text_extractor = text_extractor
        self.store = AnnotationStore(field_types)
        self.validator = ValidationEngine(field_types)
        self.history = HistoryManager(self.store, limit=self.config.history_limit)
        self.interaction = InteractionMachine(
            self.store,
            geometry_provider,
            page_provider=lambda: self.current_page,
            capture=capture,
            min_draw_size=self.config.min_draw_size,
        )
        self.interaction.on_captured_commit = self._apply_commit_quietly

        self.document_id: Optional[str] = None
        self.document_name: Optional[str] = None
        self.carrier: Optional[Carrier] = None
        self.current_page = 1
        self.active_step_index = 0
        self.diagnostics: Dict[str, ValidationResult] = {}
        self.on_changed: Optional[Callable[[], None]] = None

        autosave_cfg = autosave_config or AutosaveConfig()
        self.autosave: Optional[AutosaveChannel] = None
        if autosave_cfg.enabled and scheduler is not None:
            self.autosave = AutosaveChannel(
                cache or SessionCache(autosave_cfg.cache_dir),
                self.autosave_state,
                scheduler,
                key=autosave_cfg.session_key,
                debounce_sec=autosave_cfg.debounce_sec,
                ttl=timedelta(hours=autosave_cfg.ttl_hours),
                clock=clock,
            )

    # Session lifecycle

    def new_session(
        self,
        *,
        document_id: Optional[str] = None,
        document_name: Optional[str] = None,
        carrier: Optional[Carrier] = None,
        annotations: Optional[Dict[str, Any]] = None,
    ) -> List[str]:
        self.interaction.cancel()
        self.document_id = document_id
        self.document_name = document_name
        self.carrier = carrier
        self.current_page = 1
        self.active_step_index = 0
        skipped = self.store.load_payload(annotations or {})
        for message in skipped:
            logger.warning("Skipped stored annotation: %s", message)
        self.history.reset()
        self._revalidate()
        self._notify()
        return skipped

    def restore_record(self, record: AutosaveRecord) -> List[str]:
        skipped = self.new_session(
            document_id=record.document_id,
            document_name=record.document_name,
            carrier=record.carrier_ref,
            annotations=record.annotations,
        )
        self.current_page = record.current_page
        self.active_step_index = self._step_index(record.active_step_index)
        self._notify()
        return skipped

    def close(self) -> None:
        self.interaction.teardown()
        if self.autosave is not None and self.autosave.pending:
            self.autosave.save_now()

    def autosave_state(self) -> Dict[str, Any]:
        return {
            "annotations": self.store.to_payload(),
            "carrier_ref": self.carrier,
            "document_id": self.document_id,
            "document_name": self.document_name,
            "active_step_index": self.active_step_index,
            "current_page": self.current_page,
        }

    # Host queries

    @property
    def state(self) -> InteractionState:
        return self.interaction.state

    @property
    def active_step(self) -> FieldTypeSpec:
        return self.field_types.at(self.active_step_index)

    def get_step_status(self, field_type_id: str) -> StepStatus:
        self.field_types.get(field_type_id)
        return self.store.status_of(field_type_id)

    def get_annotations(self, field_type_id: str) -> List[Annotation]:
        return self.store.annotations_for(field_type_id)

    def completed_count(self) -> int:
        return len(self.store.completed_field_ids())

    def get_autosave_status(self) -> AutosaveStatus:
        if self.autosave is None:
            return AutosaveStatus.idle
        return self.autosave.status

    def validation_report(self) -> ValidationReport:
        return self.validator.validate_all(self.store)

    def validate_all(self) -> int:
        return self.validation_report().error_count

    # Steps and pages

    def _step_index(self, step: Union[int, str]) -> int:
        if isinstance(step, str):
            return self.field_types.index_of(step)
        return max(0, min(int(step), len(self.field_types) - 1))

    def go_to_step(self, step: Union[int, str]) -> None:
        index = self._step_index(step)
        if index != self.active_step_index:
            self.active_step_index = index
            # The step pointer is part of the saved session.
            if self.autosave is not None:
                self.autosave.schedule()
        self._notify()

    def next_step(self) -> None:
        self.go_to_step(self.active_step_index + 1)

    def previous_step(self) -> None:
        self.go_to_step(self.active_step_index - 1)

    def set_page(self, page: int) -> None:
        if page < 1:
            raise ValueError("Pages are numbered from 1.")
        self.interaction.cancel()
        self.current_page = page
        self._notify()

    def _advance_after(self, field_type_id: str) -> None:
        current = self.field_types.index_of(field_type_id)
        order = list(range(current + 1, len(self.field_types))) + list(range(0, current))
        for index in order:
            if self.store.status_of(self.field_types.at(index).id) == StepStatus.pending:
                self.active_step_index = index
                return
        self.active_step_index = min(current + 1, len(self.field_types) - 1)

    # Pointer interaction

    def start_annotation(self, field_type_id: str, sub_type: Optional[str] = None) -> bool:
        spec = self.field_types.get(field_type_id)
        if sub_type is not None and spec.sub_types and sub_type not in spec.sub_types:
            raise ValueError(f"{spec.display_label} has no sub type {sub_type!r}.")
        started = self.interaction.start_annotation(field_type_id, sub_type or spec.default_sub_type)
        if started:
            self._notify()
        return started

    def pointer_down(self, x: float, y: float) -> bool:
        return self.interaction.pointer_down(x, y)

    def pointer_move(self, x: float, y: float) -> InteractionState:
        return self.interaction.pointer_move(x, y)

    def pointer_up(self, x: Optional[float] = None, y: Optional[float] = None) -> Optional[CommitOutcome]:
        commit = self.interaction.pointer_up(x, y)
        if commit is None:
            self._notify()
            return None
        return self._apply_commit(commit)

    def begin_move(self, field_type_id: str, index: int, x: float, y: float) -> bool:
        return self.interaction.begin_move(field_type_id, index, x, y)

    def cancel(self) -> bool:
        cancelled = self.interaction.cancel()
        if cancelled:
            self._notify()
        return cancelled

    def _apply_commit_quietly(self, commit: Optional[Commit]) -> None:
        if commit is not None:
            self._apply_commit(commit)

    def _apply_commit(self, commit: Commit) -> CommitOutcome:
        if isinstance(commit, DrawCommit):
            rect = commit.rect
            annotation = Annotation(
                field_type_id=commit.field_type_id,
                sub_type=commit.sub_type,
                page=commit.page,
                x=round(rect.x, 2),
                y=round(rect.y, 2),
                width=round(rect.width, 2),
                height=round(rect.height, 2),
                extracted_text=self._extract_text(commit.page, rect),
            )
            field_type_id, sub_type = commit.field_type_id, commit.sub_type
        else:
            moved = commit.annotation
            rect = Rect(moved.x, moved.y, moved.width, moved.height)
            annotation = moved.model_copy(update={"extracted_text": self._extract_text(moved.page, rect, moved.extracted_text)})
            field_type_id, sub_type = commit.field_type_id, moved.sub_type

        result = self.store.upsert(field_type_id, sub_type, annotation)
        if not result.accepted:
            logger.info("Rejected annotation for %s: %s", field_type_id, result.warning)
            self._notify()
            return CommitOutcome(field_type_id=field_type_id, warning=result.warning)

        stored = self.store.annotations_for(field_type_id)[result.index or 0]
        validation = self.validator.validate(field_type_id, stored)
        self.diagnostics[stored.id] = validation
        self.history.record()
        if isinstance(commit, DrawCommit) and not self.field_types.get(field_type_id).allow_multiple:
            self._advance_after(field_type_id)
        self._mutated()
        return CommitOutcome(field_type_id=field_type_id, annotation=stored, validation=validation)

    def _extract_text(self, page: int, rect: Rect, fallback: Optional[str] = None) -> Optional[str]:
        if self.text_extractor is None:
            return fallback
        return self.text_extractor(page, rect)

    # Discrete edits

    def remove_annotation(self, field_type_id: str, index: Optional[int] = None) -> bool:
        self.field_types.get(field_type_id)
        self.interaction.cancel()
        if not self.store.remove(field_type_id, index):
            return False
        self.history.record()
        self._revalidate()
        self._mutated()
        return True

    def undo(self) -> bool:
        self.interaction.cancel()
        if not self.history.undo():
            return False
        self._revalidate()
        self._mutated()
        return True

    def redo(self) -> bool:
        self.interaction.cancel()
        if not self.history.redo():
            return False
        self._revalidate()
        self._mutated()
        return True

    def save_now(self) -> bool:
        if self.autosave is None:
            return False
        return self.autosave.save_now()

    def _revalidate(self) -> None:
        self.diagnostics = {
            annotation.id: self.validator.validate(field_type_id, annotation)
            for field_type_id, _, annotation in self.store.iter_annotations()
        }

    def _mutated(self) -> None:
        if self.autosave is not None:
            self.autosave.schedule()
        self._notify()

    def _notify(self) -> None:
        if self.on_changed is not None:
            self.on_changed()


__all__ = ["AnnotationEngine", "CommitOutcome", "TextExtractor"]
