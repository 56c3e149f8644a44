from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from invoice_trainer.autosave import SessionCache
from invoice_trainer.config import AutosaveConfig
from invoice_trainer.engine import AnnotationEngine
from invoice_trainer.errors import ServiceError, SubmissionRejected, WorkflowError
from invoice_trainer.field_types import default_field_table
from invoice_trainer.geometry import Point, ViewportGeometry
from invoice_trainer.schemas import Carrier, FetchedDocument, TrainingResult, UploadedDocument
from invoice_trainer.services import ServiceBundle
from invoice_trainer.session import SessionOrchestrator, WorkflowState

PDF_BYTES = b"%PDF-1.4 fake invoice"


class FakeCarriers:
    def __init__(self) -> None:
        self.created: List[tuple] = []

    async def list_carriers(self, filter: Optional[str] = None) -> List[Carrier]:
        return [Carrier(id="c1", name="Acme Freight"), Carrier(id="c2", name="Blue Line")]

    async def create_carrier(self, name: str, category: str) -> str:
        self.created.append((name, category))
        return "c-new"


class FakeSamples:
    def __init__(self, stored: Optional[Dict[str, Any]] = None) -> None:
        self.uploads: List[tuple] = []
        self.stored = stored
        self.on_upload = None

    async def upload_document(self, carrier_id: str, file_bytes: bytes, file_name: str) -> UploadedDocument:
        self.uploads.append((carrier_id, file_bytes, file_name))
        if self.on_upload is not None:
            self.on_upload()
        return UploadedDocument(document_id="doc-1", url="https://files.example/doc-1.pdf")

    async def fetch_document(self, document_id: str, carrier_id: Optional[str] = None) -> FetchedDocument:
        return FetchedDocument(url=f"https://files.example/{document_id}.pdf?token=abc", annotations=self.stored)

    async def download(self, url: str) -> bytes:
        return PDF_BYTES


class FakeTraining:
    def __init__(self, result: Optional[TrainingResult] = None, error: Optional[Exception] = None) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.result = result or TrainingResult(success=True, confidence=0.91, extracted_field_count=3)
        self.error = error

    async def submit_training(self, request: Dict[str, Any]) -> TrainingResult:
        self.calls.append(request)
        if self.error is not None:
            raise self.error
        return self.result


def _engine(cache_dir: Optional[Path] = None) -> AnnotationEngine:
    geometry = ViewportGeometry(Point(0.0, 0.0), Point(0.0, 0.0), 1.0, page_size=(612.0, 792.0))
    kwargs: Dict[str, Any] = {}
    if cache_dir is not None:
        kwargs = {
            "scheduler": _NeverScheduler(),
            "cache": SessionCache(cache_dir),
            "autosave_config": AutosaveConfig(cache_dir=cache_dir),
        }
    return AnnotationEngine(default_field_table(), lambda: geometry, **kwargs)


class _NeverScheduler:
    class _Handle:
        def cancel(self) -> None:
            pass

    def call_later(self, delay, callback):
        return self._Handle()


def _orchestrator(training: Optional[FakeTraining] = None, samples: Optional[FakeSamples] = None, cache_dir=None):
    bundle = ServiceBundle(
        carriers=FakeCarriers(),
        samples=samples or FakeSamples(),
        training=training or FakeTraining(),
    )
    return SessionOrchestrator(_engine(cache_dir), bundle)


def _draw(engine: AnnotationEngine, field_type_id: str, y: float) -> None:
    engine.start_annotation(field_type_id)
    engine.pointer_down(20.0, y)
    engine.pointer_up(320.0, y + 60.0)


def _load(orchestrator: SessionOrchestrator) -> None:
    asyncio.run(orchestrator.refresh_carriers())
    orchestrator.select_carrier("c1")
    asyncio.run(orchestrator.load_document(PDF_BYTES, "invoice.pdf"))


def test_workflow_moves_from_carrier_to_annotating() -> None:
    orchestrator = _orchestrator()
    assert orchestrator.state == WorkflowState.SELECTING_CARRIER
    with pytest.raises(WorkflowError):
        asyncio.run(orchestrator.load_document(PDF_BYTES, "invoice.pdf"))

    _load(orchestrator)
    assert orchestrator.state == WorkflowState.DOCUMENT_LOADED
    assert orchestrator.document.document_id == "doc-1"
    assert orchestrator.engine.document_id == "doc-1"
    assert orchestrator.services.samples.uploads == [("c1", PDF_BYTES, "invoice.pdf")]

    _draw(orchestrator.engine, "carrier", 20.0)
    assert orchestrator.state == WorkflowState.ANNOTATING


def test_submission_with_two_fields_is_rejected_without_network_call() -> None:
    training = FakeTraining()
    orchestrator = _orchestrator(training)
    _load(orchestrator)
    _draw(orchestrator.engine, "carrier", 20.0)
    _draw(orchestrator.engine, "total", 600.0)

    with pytest.raises(SubmissionRejected, match="at least 3"):
        asyncio.run(orchestrator.submit_for_training())
    assert training.calls == []
    assert orchestrator.state == WorkflowState.ANNOTATING


def test_submission_with_three_fields_calls_training_once() -> None:
    training = FakeTraining()
    orchestrator = _orchestrator(training)
    _load(orchestrator)
    engine = orchestrator.engine
    _draw(engine, "carrier", 20.0)
    _draw(engine, "total", 600.0)
    _draw(engine, "charges", 300.0)
    _draw(engine, "charges", 400.0)

    result = asyncio.run(orchestrator.submit_for_training())

    assert len(training.calls) == 1
    request = training.calls[0]
    assert request["annotations"] == engine.store.to_payload()
    assert len(request["annotations"]["charges"]) == 2
    assert request["carrierId"] == "c1"
    assert request["documentId"] == "doc-1"
    assert request["metadata"]["completedFields"] == ["carrier", "charges", "total"]
    assert result.confidence == pytest.approx(0.91)
    assert orchestrator.state == WorkflowState.COMPLETE
    assert orchestrator.last_result is result


def test_failed_submission_keeps_state_and_annotations() -> None:
    training = FakeTraining(error=ServiceError("model offline"))
    orchestrator = _orchestrator(training)
    _load(orchestrator)
    for field_type_id, y in (("carrier", 20.0), ("total", 600.0), ("charges", 300.0)):
        _draw(orchestrator.engine, field_type_id, y)
    before = orchestrator.engine.store.snapshot()

    with pytest.raises(ServiceError, match="model offline"):
        asyncio.run(orchestrator.submit_for_training())
    assert orchestrator.state == WorkflowState.ANNOTATING
    assert orchestrator.engine.store.snapshot() == before

    training.error = None
    training.result = TrainingResult(success=False, message="quota exceeded")
    with pytest.raises(ServiceError, match="quota exceeded"):
        asyncio.run(orchestrator.submit_for_training())
    assert orchestrator.state == WorkflowState.ANNOTATING
    assert len(training.calls) == 2


def test_reset_during_upload_discards_the_result() -> None:
    samples = FakeSamples()
    orchestrator = _orchestrator(samples=samples)
    asyncio.run(orchestrator.refresh_carriers())
    orchestrator.select_carrier("c1")
    samples.on_upload = orchestrator.reset_session

    with pytest.raises(WorkflowError):
        asyncio.run(orchestrator.load_document(PDF_BYTES, "invoice.pdf"))
    assert orchestrator.document is None
    assert orchestrator.state == WorkflowState.SELECTING_CARRIER
    assert orchestrator.carrier is None


def test_create_carrier_rejects_blank_names_locally() -> None:
    orchestrator = _orchestrator()
    with pytest.raises(WorkflowError):
        asyncio.run(orchestrator.create_carrier("   "))
    assert orchestrator.services.carriers.created == []

    carrier = asyncio.run(orchestrator.create_carrier(" Northwind ", None))
    assert carrier == Carrier(id="c-new", name="Northwind", category="general")
    assert orchestrator.services.carriers.created == [("Northwind", "general")]
    assert orchestrator.select_carrier("c-new") is carrier


def test_open_document_preloads_stored_annotations() -> None:
    stored = {
        "carrier": {"x": 10, "y": 10, "width": 120, "height": 40},
        "charges": [{"x": 10, "y": 300, "width": 300, "height": 80, "sub_type": "amount"}],
        "legacy_field": {"x": 1, "y": 1, "width": 5, "height": 5},
    }
    orchestrator = _orchestrator(samples=FakeSamples(stored=stored))
    asyncio.run(orchestrator.refresh_carriers())
    orchestrator.select_carrier("c1")

    skipped = asyncio.run(orchestrator.open_document("doc-7"))
    assert orchestrator.document.file_name == "doc-7.pdf"
    assert orchestrator.document.data == PDF_BYTES
    assert orchestrator.engine.store.completed_field_ids() == ["carrier", "charges"]
    assert len(skipped) == 1
    assert orchestrator.state == WorkflowState.ANNOTATING


def test_recover_session_restores_autosaved_work(tmp_path: Path) -> None:
    first = _orchestrator(cache_dir=tmp_path)
    _load(first)
    _draw(first.engine, "carrier", 20.0)
    _draw(first.engine, "charges", 300.0)
    assert first.engine.save_now() is True

    second = _orchestrator(cache_dir=tmp_path)
    record = asyncio.run(second.recover_session())
    assert record is not None
    assert second.carrier.id == "c1"
    assert second.document.document_id == "doc-1"
    assert second.engine.store.completed_field_ids() == ["carrier", "charges"]
    assert second.state == WorkflowState.ANNOTATING


def test_successful_submission_clears_autosave(tmp_path: Path) -> None:
    orchestrator = _orchestrator(cache_dir=tmp_path)
    _load(orchestrator)
    for field_type_id, y in (("carrier", 20.0), ("total", 600.0), ("charges", 300.0)):
        _draw(orchestrator.engine, field_type_id, y)
    orchestrator.engine.save_now()
    assert orchestrator.engine.autosave.load() is not None

    asyncio.run(orchestrator.submit_for_training())
    assert orchestrator.engine.autosave.load() is None

    orchestrator.reset_session(keep_carrier=True)
    assert orchestrator.carrier.id == "c1"
    assert orchestrator.state == WorkflowState.SELECTING_CARRIER
    assert len(orchestrator.engine.store) == 0


def test_service_phase_leaves_engine_untouched_until_applied() -> None:
    orchestrator = _orchestrator()
    _load(orchestrator)
    engine = orchestrator.engine
    _draw(engine, "carrier", 20.0)
    history_before = list(engine.history.entries)

    pending = asyncio.run(orchestrator.upload(orchestrator.prepare_upload(PDF_BYTES, "second.pdf")))
    assert engine.document_name == "invoice.pdf"
    assert engine.store.completed_field_ids() == ["carrier"]
    assert engine.history.entries == history_before
    assert engine.undo() is True

    assert orchestrator.apply_document(pending) == []
    assert engine.document_name == "second.pdf"
    assert len(engine.store) == 0
    assert orchestrator.state == WorkflowState.DOCUMENT_LOADED


def test_submission_phases_restore_state_on_abort_and_reject_stale_results() -> None:
    training = FakeTraining()
    orchestrator = _orchestrator(training)
    _load(orchestrator)
    for field_type_id, y in (("carrier", 20.0), ("total", 600.0), ("charges", 300.0)):
        _draw(orchestrator.engine, field_type_id, y)

    pending = orchestrator.begin_submission()
    assert orchestrator.state == WorkflowState.SUBMITTING
    orchestrator.abort_submission(pending)
    assert orchestrator.state == WorkflowState.ANNOTATING
    assert training.calls == []

    pending = orchestrator.begin_submission()
    result = asyncio.run(orchestrator.send_submission(pending))
    orchestrator.reset_session()
    with pytest.raises(WorkflowError):
        orchestrator.complete_submission(pending, result)
    assert orchestrator.state == WorkflowState.SELECTING_CARRIER
    assert orchestrator.last_result is None
