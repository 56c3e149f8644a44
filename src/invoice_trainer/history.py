from __future__ import annotations

from copy import deepcopy
from typing import List, Optional

from .annotation_core import AnnotationStore, Snapshot

DEFAULT_HISTORY_LIMIT = 50


class HistoryManager:
    """Linear undo/redo over whole-store snapshots.

    ``index`` always addresses an entry of ``entries``; entry 0 is the state
    the session started from.
    """

    def __init__(self, store: AnnotationStore, limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        if limit < 2:
            raise ValueError("History limit must keep at least two entries.")
        self.store = store
        self.limit = limit
        self.entries: List[Snapshot] = []
        self.index = 0
        self.reset()

    def reset(self, snapshot: Optional[Snapshot] = None) -> None:
        base = snapshot if snapshot is not None else self.store.snapshot()
        self.entries = [deepcopy(base)]
        self.index = 0

    @property
    def can_undo(self) -> bool:
        return self.index > 0

    @property
    def can_redo(self) -> bool:
        return self.index < len(self.entries) - 1

    def push(self, snapshot: Snapshot) -> None:
        if self.index < len(self.entries) - 1:
            self.entries = self.entries[: self.index + 1]
        self.entries.append(deepcopy(snapshot))
        self.index = len(self.entries) - 1

        if len(self.entries) > self.limit:
            overflow = len(self.entries) - self.limit
            self.entries = self.entries[overflow:]
            self.index = max(0, self.index - overflow)

    def record(self) -> None:
        self.push(self.store.snapshot())

    def undo(self) -> bool:
        return self._restore(self.index - 1)

    def redo(self) -> bool:
        return self._restore(self.index + 1)

    def _restore(self, index: int) -> bool:
        if index < 0 or index >= len(self.entries):
            return False
        self.index = index
        self.store.restore(self.entries[index])
        return True


__all__ = ["DEFAULT_HISTORY_LIMIT", "HistoryManager"]
