from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, List

from invoice_trainer.autosave import AsyncioScheduler, AutosaveChannel, SessionCache
from invoice_trainer.config import AutosaveConfig
from invoice_trainer.engine import AnnotationEngine
from invoice_trainer.field_types import default_field_table
from invoice_trainer.geometry import Point, ViewportGeometry
from invoice_trainer.schemas import AutosaveRecord, AutosaveStatus, Carrier

START = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class _Timer:
    def __init__(self, due: float, callback: Callable[[], None]) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    def __init__(self) -> None:
        self.now = 0.0
        self.timers: List[_Timer] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> _Timer:
        timer = _Timer(self.now + delay, callback)
        self.timers.append(timer)
        return timer

    def advance(self, seconds: float) -> None:
        self.now += seconds
        for timer in sorted(self.timers, key=lambda t: t.due):
            if not timer.cancelled and timer.due <= self.now:
                timer.cancelled = True
                timer.callback()
        self.timers = [t for t in self.timers if not t.cancelled]


class CountingCache(SessionCache):
    def __init__(self, base_path: Path) -> None:
        super().__init__(base_path)
        self.writes: List[AutosaveRecord] = []

    def write(self, key: str, record: AutosaveRecord) -> Path:
        self.writes.append(record)
        return super().write(key, record)


def _engine(tmp_path: Path, scheduler: ManualScheduler, cache: SessionCache) -> AnnotationEngine:
    geometry = ViewportGeometry(Point(0.0, 0.0), Point(0.0, 0.0), 1.0, page_size=(612.0, 792.0))
    return AnnotationEngine(
        default_field_table(),
        lambda: geometry,
        scheduler=scheduler,
        cache=cache,
        autosave_config=AutosaveConfig(cache_dir=tmp_path, debounce_sec=2.0),
        clock=lambda: START,
    )


def _draw_shipment(engine: AnnotationEngine, y: float) -> None:
    engine.start_annotation("shipment_ids")
    engine.pointer_down(20.0, y)
    engine.pointer_up(120.0, y + 20.0)


def test_rapid_edits_produce_one_write_with_final_state(tmp_path: Path) -> None:
    scheduler = ManualScheduler()
    cache = CountingCache(tmp_path)
    engine = _engine(tmp_path, scheduler, cache)

    for i in range(5):
        _draw_shipment(engine, 20.0 + 30 * i)
        scheduler.advance(0.3)
    assert cache.writes == []
    assert engine.get_autosave_status() == AutosaveStatus.saving

    scheduler.advance(2.0)
    assert len(cache.writes) == 1
    assert len(cache.writes[0].annotations["shipment_ids"]) == 5
    assert engine.get_autosave_status() == AutosaveStatus.saved

    scheduler.advance(10.0)
    assert len(cache.writes) == 1


def test_pending_write_reflects_undo_made_before_it_fires(tmp_path: Path) -> None:
    scheduler = ManualScheduler()
    cache = CountingCache(tmp_path)
    engine = _engine(tmp_path, scheduler, cache)

    _draw_shipment(engine, 20.0)
    _draw_shipment(engine, 60.0)
    engine.undo()
    scheduler.advance(2.5)

    assert len(cache.writes) == 1
    assert len(cache.writes[0].annotations["shipment_ids"]) == 1


def test_failed_write_sets_error_and_next_cycle_retries(tmp_path: Path, monkeypatch) -> None:
    scheduler = ManualScheduler()
    cache = SessionCache(tmp_path)
    engine = _engine(tmp_path, scheduler, cache)

    def _broken_write(key: str, record: AutosaveRecord) -> Path:
        raise OSError("disk full")

    monkeypatch.setattr(cache, "write", _broken_write)
    _draw_shipment(engine, 20.0)
    scheduler.advance(2.0)
    assert engine.get_autosave_status() == AutosaveStatus.error
    assert engine.autosave.last_error == "disk full"
    assert len(engine.get_annotations("shipment_ids")) == 1

    monkeypatch.undo()
    _draw_shipment(engine, 60.0)
    scheduler.advance(2.0)
    assert engine.get_autosave_status() == AutosaveStatus.saved
    assert engine.autosave.load() is not None


def test_expired_record_is_ignored_and_removed(tmp_path: Path) -> None:
    now = {"value": START}
    cache = SessionCache(tmp_path)
    channel = AutosaveChannel(
        cache,
        lambda: {"annotations": {}, "carrier_ref": Carrier(id="c1", name="Acme"), "document_name": "inv.pdf"},
        ManualScheduler(),
        key="session",
        ttl=timedelta(hours=24),
        clock=lambda: now["value"],
    )
    assert channel.save_now() is True
    record = channel.load()
    assert record is not None
    assert record.carrier_ref.name == "Acme"
    assert record.expires_at == START + timedelta(hours=24)

    now["value"] = START + timedelta(hours=25)
    assert channel.load() is None
    assert not (tmp_path / "session.json").exists()


def test_corrupt_record_is_discarded(tmp_path: Path) -> None:
    (tmp_path / "session.json").write_text("{not json", encoding="utf-8")
    assert SessionCache(tmp_path).read("session", START) is None
    assert not (tmp_path / "session.json").exists()


def test_close_flushes_pending_write(tmp_path: Path) -> None:
    scheduler = ManualScheduler()
    cache = CountingCache(tmp_path)
    engine = _engine(tmp_path, scheduler, cache)
    _draw_shipment(engine, 20.0)
    engine.close()
    assert len(cache.writes) == 1
    assert engine.autosave.pending is False


def test_restore_record_brings_back_session(tmp_path: Path) -> None:
    scheduler = ManualScheduler()
    cache = SessionCache(tmp_path)
    engine = _engine(tmp_path, scheduler, cache)
    engine.carrier = Carrier(id="c1", name="Acme")
    engine.document_name = "inv.pdf"
    _draw_shipment(engine, 20.0)
    engine.go_to_step("charges")
    engine.save_now()

    restored = _engine(tmp_path, ManualScheduler(), SessionCache(tmp_path))
    record = restored.autosave.load()
    assert restored.restore_record(record) == []
    assert len(restored.get_annotations("shipment_ids")) == 1
    assert restored.active_step.id == "charges"
    assert restored.carrier.id == "c1"
    assert restored.history.can_undo is False


def test_asyncio_scheduler_runs_callback_on_loop() -> None:
    fired: List[str] = []

    async def _main() -> None:
        handle = AsyncioScheduler().call_later(0.01, lambda: fired.append("late"))
        cancelled = AsyncioScheduler().call_later(0.01, lambda: fired.append("cancelled"))
        cancelled.cancel()
        await asyncio.sleep(0.05)
        assert handle is not None

    asyncio.run(_main())
    assert fired == ["late"]


def test_step_navigation_is_autosaved(tmp_path: Path) -> None:
    scheduler = ManualScheduler()
    cache = CountingCache(tmp_path)
    engine = _engine(tmp_path, scheduler, cache)

    engine.go_to_step("charges")
    scheduler.advance(2.0)
    assert len(cache.writes) == 1
    assert cache.writes[0].active_step_index == 3

    engine.go_to_step("charges")
    scheduler.advance(2.0)
    assert len(cache.writes) == 1
