"""Debounced session persistence for reload/crash recovery."""
from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol

from pydantic import ValidationError

from .annotation_core import serialize_annotations_json
from .schemas import AutosaveRecord, AutosaveStatus, utc_now

DEFAULT_SESSION_KEY = "visual_annotation_session"
DEFAULT_DEBOUNCE_SEC = 2.0
DEFAULT_TTL = timedelta(hours=24)

logger = logging.getLogger("invoice_trainer.autosave")


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class AsyncioScheduler:
    """Runs debounce timers on an asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(delay, callback)


class SessionCache:
    """Keyed JSON records on local disk, one file per key.

    Directory structure:
        <base_path>/<key>.json
    """

    def __init__(self, base_path: Path | str) -> None:
        self.base_path = Path(base_path).expanduser()

    def _record_path(self, key: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", key)
        return self.base_path / f"{safe}.json"

    def write(self, key: str, record: AutosaveRecord) -> Path:
        self.base_path.mkdir(parents=True, exist_ok=True)
        path = self._record_path(key)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(serialize_annotations_json(record.model_dump(mode="json")), encoding="utf-8")
        tmp_path.replace(path)
        return path

    def read(self, key: str, now: datetime) -> Optional[AutosaveRecord]:
        path = self._record_path(key)
        if not path.is_file():
            return None
        try:
            record = AutosaveRecord.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Discarding unreadable autosave record %s: %s", path, exc)
            path.unlink(missing_ok=True)
            return None
        if record.is_expired(now):
            logger.info("Autosave record %s expired at %s", path, record.expires_at.isoformat())
            path.unlink(missing_ok=True)
            return None
        return record

    def delete(self, key: str) -> bool:
        path = self._record_path(key)
        if not path.exists():
            return False
        path.unlink()
        return True


class AutosaveChannel:
    """Writes the session to the cache ``debounce_sec`` after the last change.

    The state is read from ``state_provider`` when the timer fires, so an
    undo or redo that lands while a write is pending is what gets persisted.
    """

    def __init__(
        self,
        cache: SessionCache,
        state_provider: Callable[[], Dict[str, Any]],
        scheduler: Scheduler,
        *,
        key: str = DEFAULT_SESSION_KEY,
        debounce_sec: float = DEFAULT_DEBOUNCE_SEC,
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.cache = cache
        self.state_provider = state_provider
        self.scheduler = scheduler
        self.key = key
        self.debounce_sec = debounce_sec
        self.ttl = ttl
        self.clock = clock
        self.status = AutosaveStatus.idle
        self.last_error: Optional[str] = None
        self.last_saved_at: Optional[datetime] = None
        self.on_status_changed: Optional[Callable[[AutosaveStatus], None]] = None
        self._pending: Optional[TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self._pending is not None

    def _set_status(self, status: AutosaveStatus) -> None:
        self.status = status
        if self.on_status_changed is not None:
            self.on_status_changed(status)

    def schedule(self) -> None:
        self.cancel()
        self._pending = self.scheduler.call_later(self.debounce_sec, self._on_timer)
        self._set_status(AutosaveStatus.saving)

    def cancel(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def _on_timer(self) -> None:
        self._pending = None
        self.flush()

    def save_now(self) -> bool:
        self.cancel()
        return self.flush()

    def flush(self) -> bool:
        self._set_status(AutosaveStatus.saving)
        now = self.clock()
        try:
            record = AutosaveRecord(**self.state_provider(), saved_at=now, expires_at=now + self.ttl)
            self.cache.write(self.key, record)
        except (OSError, ValueError) as exc:
            logger.exception("Autosave failed for key=%s", self.key)
            self.last_error = str(exc)
            self._set_status(AutosaveStatus.error)
            return False
        self.last_error = None
        self.last_saved_at = now
        self._set_status(AutosaveStatus.saved)
        return True

    def load(self) -> Optional[AutosaveRecord]:
        return self.cache.read(self.key, self.clock())

    def clear(self) -> None:
        self.cancel()
        self.cache.delete(self.key)
        self.last_error = None
        self._set_status(AutosaveStatus.idle)


__all__ = [
    "AsyncioScheduler",
    "AutosaveChannel",
    "DEFAULT_DEBOUNCE_SEC",
    "DEFAULT_SESSION_KEY",
    "DEFAULT_TTL",
    "Scheduler",
    "SessionCache",
    "TimerHandle",
]
