"""Workflow sequencing: carrier -> document -> annotations -> training.

Each network step is split in three: a synchronous ``prepare``/``begin`` that
checks the workflow, a coroutine that only talks to the services, and a
synchronous ``apply``/``complete`` that writes the result into the engine.
Hosts that await the services on another thread run the first and last parts
on their UI thread; the plain ``async`` methods chain all three.

``reset_session`` bumps a generation counter; a request that was started under
an older generation has its result discarded instead of being applied to the
new session.
"""
from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from .engine import AnnotationEngine
from .errors import ServiceError, SubmissionRejected, WorkflowError
from .schemas import AutosaveRecord, Carrier, TrainingResult, utc_now
from .services import ServiceBundle

logger = logging.getLogger("invoice_trainer.session")


class WorkflowState(str, Enum):
    SELECTING_CARRIER = "selecting_carrier"
    DOCUMENT_LOADED = "document_loaded"
    ANNOTATING = "annotating"
    SUBMITTING = "submitting"
    COMPLETE = "complete"


@dataclass
class LoadedDocument:
    document_id: str
    file_name: str
    data: bytes
    url: str = ""


@dataclass
class PendingUpload:
    generation: int
    carrier_id: str
    file_name: str
    data: bytes


@dataclass
class PendingDocument:
    generation: int
    document: LoadedDocument
    annotations: Optional[Dict[str, Any]] = None


@dataclass
class PendingSubmission:
    generation: int
    previous_state: WorkflowState
    request: Dict[str, Any]


class SessionOrchestrator:
    def __init__(
        self,
        engine: AnnotationEngine,
        services: ServiceBundle,
        *,
        min_completed_fields: Optional[int] = None,
        default_category: str = "general",
    ) -> None:
        self.engine = engine
        self.services = services
        self.min_completed_fields = min_completed_fields or engine.config.min_completed_fields
        self.default_category = default_category
        self.state = WorkflowState.SELECTING_CARRIER
        self.carriers: List[Carrier] = []
        self.carrier: Optional[Carrier] = None
        self.document: Optional[LoadedDocument] = None
        self.last_result: Optional[TrainingResult] = None
        self.on_state_changed: Optional[Callable[[WorkflowState], None]] = None
        self.on_changed: Optional[Callable[[], None]] = None
        self._generation = 0
        engine.on_changed = self._on_engine_changed

    def _set_state(self, state: WorkflowState) -> None:
        if state == self.state:
            return
        logger.info("Workflow %s -> %s", self.state.value, state.value)
        self.state = state
        if self.on_state_changed is not None:
            self.on_state_changed(state)

    def _on_engine_changed(self) -> None:
        if self.state == WorkflowState.DOCUMENT_LOADED and (len(self.engine.store) or not self.engine.interaction.is_idle):
            self._set_state(WorkflowState.ANNOTATING)
        if self.on_changed is not None:
            self.on_changed()

    def _ensure_current(self, generation: int) -> None:
        if generation != self._generation:
            raise WorkflowError("The session was reset while a request was in flight.")

    def _ensure_not_submitting(self) -> None:
        if self.state == WorkflowState.SUBMITTING:
            raise WorkflowError("A training submission is in progress.")

    # Carriers

    async def refresh_carriers(self, filter: Optional[str] = None) -> List[Carrier]:
        generation = self._generation
        carriers = await self.services.carriers.list_carriers(filter)
        self._ensure_current(generation)
        self.carriers = carriers
        logger.info("Loaded %d carrier(s)", len(carriers))
        return carriers

    async def create_carrier(self, name: str, category: Optional[str] = None) -> Carrier:
        clean_name = name.strip()
        if not clean_name:
            raise WorkflowError("Carrier name is required.")
        category = (category or self.default_category).strip() or self.default_category
        generation = self._generation
        carrier_id = await self.services.carriers.create_carrier(clean_name, category)
        self._ensure_current(generation)
        carrier = Carrier(id=carrier_id, name=clean_name, category=category)
        self.carriers.append(carrier)
        logger.info("Created carrier %s (%s)", carrier.name, carrier.id)
        return carrier

    def select_carrier(self, carrier: Union[Carrier, str]) -> Carrier:
        self._ensure_not_submitting()
        if isinstance(carrier, str):
            match = next((c for c in self.carriers if c.id == carrier), None)
            if match is None:
                raise WorkflowError(f"Unknown carrier: {carrier}")
            carrier = match
        self.carrier = carrier
        self.engine.carrier = carrier
        return carrier

    # Documents

    def prepare_upload(self, file: Union[Path, str, bytes], file_name: Optional[str] = None) -> PendingUpload:
        self._ensure_not_submitting()
        if self.carrier is None:
            raise WorkflowError("Select a carrier before loading a document.")
        if isinstance(file, bytes):
            data = file
            name = file_name or "document.pdf"
        else:
            path = Path(file)
            data = path.read_bytes()
            name = file_name or path.name
        if not data:
            raise WorkflowError(f"{name} is empty.")
        return PendingUpload(self._generation, self.carrier.id, name, data)

    async def upload(self, pending: PendingUpload) -> PendingDocument:
        uploaded = await self.services.samples.upload_document(pending.carrier_id, pending.data, pending.file_name)
        logger.info("Uploaded %s as document %s", pending.file_name, uploaded.document_id)
        document = LoadedDocument(uploaded.document_id, pending.file_name, pending.data, uploaded.url)
        return PendingDocument(pending.generation, document)

    async def fetch_stored(self, document_id: str, file_name: Optional[str] = None) -> PendingDocument:
        """Fetch a stored document and any annotations saved with it; the engine is not touched."""
        generation = self._generation
        carrier_id = self.carrier.id if self.carrier is not None else None
        fetched = await self.services.samples.fetch_document(document_id, carrier_id)
        data = await self.services.samples.download(fetched.url)
        name = file_name or Path(fetched.url.split("?", 1)[0]).name or f"{document_id}.pdf"
        return PendingDocument(generation, LoadedDocument(document_id, name, data, fetched.url), fetched.annotations)

    def apply_document(self, pending: PendingDocument) -> List[str]:
        """Start a fresh annotation session on a fetched or uploaded document."""
        self._ensure_current(pending.generation)
        self._ensure_not_submitting()
        document = pending.document
        self.document = document
        self.last_result = None
        skipped = self.engine.new_session(
            document_id=document.document_id,
            document_name=document.file_name,
            carrier=self.carrier,
            annotations=pending.annotations,
        )
        self._set_state(WorkflowState.ANNOTATING if len(self.engine.store) else WorkflowState.DOCUMENT_LOADED)
        return skipped

    async def load_document(self, file: Union[Path, str, bytes], file_name: Optional[str] = None) -> LoadedDocument:
        pending = await self.upload(self.prepare_upload(file, file_name))
        self.apply_document(pending)
        return pending.document

    async def open_document(self, document_id: str, file_name: Optional[str] = None) -> List[str]:
        self._ensure_not_submitting()
        return self.apply_document(await self.fetch_stored(document_id, file_name))

    def go_to_step(self, step: Union[int, str]) -> None:
        self.engine.go_to_step(step)

    # Training

    def build_training_request(self) -> Dict[str, Any]:
        if self.document is None or self.carrier is None:
            raise WorkflowError("Load a document before submitting for training.")
        store = self.engine.store
        return {
            "carrierId": self.carrier.id,
            "documentId": self.document.document_id,
            "fileName": self.document.file_name,
            "base64Data": base64.b64encode(self.document.data).decode("ascii"),
            "annotations": store.to_payload(),
            "metadata": {
                "carrierName": self.carrier.name,
                "completedFields": store.completed_field_ids(),
                "annotationCount": len(store),
                "submittedAt": utc_now().isoformat(),
            },
        }

    def ensure_ready_for_training(self) -> None:
        """Raise unless a submission would be sent; never touches the network."""
        if self.state not in (WorkflowState.DOCUMENT_LOADED, WorkflowState.ANNOTATING):
            raise WorkflowError(f"Cannot submit while {self.state.value.replace('_', ' ')}.")
        completed = self.engine.completed_count()
        if completed < self.min_completed_fields:
            raise SubmissionRejected(
                f"Please annotate at least {self.min_completed_fields} fields before training "
                f"({completed} completed)."
            )

    def begin_submission(self) -> PendingSubmission:
        self.ensure_ready_for_training()
        self.engine.cancel()
        request = self.build_training_request()
        pending = PendingSubmission(self._generation, self.state, request)
        self._set_state(WorkflowState.SUBMITTING)
        return pending

    async def send_submission(self, pending: PendingSubmission) -> TrainingResult:
        return await self.services.training.submit_training(pending.request)

    def abort_submission(self, pending: PendingSubmission) -> None:
        if pending.generation == self._generation and self.state == WorkflowState.SUBMITTING:
            self._set_state(pending.previous_state)
        logger.warning("Training submission failed for document %s", pending.request["documentId"])

    def complete_submission(self, pending: PendingSubmission, result: TrainingResult) -> TrainingResult:
        self._ensure_current(pending.generation)
        if not result.success:
            self.abort_submission(pending)
            raise ServiceError(result.message or "Training failed.")

        self.last_result = result
        self._set_state(WorkflowState.COMPLETE)
        if self.engine.autosave is not None:
            self.engine.autosave.clear()
        logger.info(
            "Training complete for %s: confidence=%.2f fields=%d",
            pending.request["documentId"],
            result.confidence,
            result.extracted_field_count,
        )
        return result

    async def submit_for_training(self) -> TrainingResult:
        pending = self.begin_submission()
        try:
            result = await self.send_submission(pending)
        except ServiceError:
            self.abort_submission(pending)
            raise
        return self.complete_submission(pending, result)

    # Lifecycle

    def reset_session(self, *, keep_carrier: bool = False) -> None:
        self._generation += 1
        if not keep_carrier:
            self.carrier = None
        self.document = None
        self.last_result = None
        if self.engine.autosave is not None:
            self.engine.autosave.clear()
        self.engine.new_session(carrier=self.carrier)
        self._set_state(WorkflowState.SELECTING_CARRIER)

    def restore_autosave(self) -> Optional[AutosaveRecord]:
        """Bring back autosaved annotations; the document itself is attached separately."""
        if self.engine.autosave is None:
            return None
        record = self.engine.autosave.load()
        if record is None:
            return None
        self._generation += 1
        self.engine.restore_record(record)
        self.carrier = record.carrier_ref
        self.document = None
        self.last_result = None
        self._set_state(WorkflowState.SELECTING_CARRIER)
        logger.info("Recovered session saved at %s", record.saved_at.isoformat())
        return record

    def attach_document(self, pending: PendingDocument) -> None:
        """Attach a document to the current annotations without starting a new session."""
        self._ensure_current(pending.generation)
        self.document = pending.document
        self._set_state(WorkflowState.ANNOTATING if len(self.engine.store) else WorkflowState.DOCUMENT_LOADED)

    async def recover_session(self) -> Optional[AutosaveRecord]:
        """Restore the last autosaved session if one exists and has not expired."""
        record = self.restore_autosave()
        if record is None or not record.document_id:
            return record
        try:
            pending = await self.fetch_stored(record.document_id, record.document_name)
        except ServiceError:
            logger.warning("Recovered annotations but could not fetch document %s", record.document_id)
            return record
        self.attach_document(pending)
        return record

    def close(self) -> None:
        self._generation += 1
        self.engine.close()


__all__ = [
    "LoadedDocument",
    "PendingDocument",
    "PendingSubmission",
    "PendingUpload",
    "SessionOrchestrator",
    "WorkflowState",
]
