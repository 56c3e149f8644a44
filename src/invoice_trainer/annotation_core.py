"""In-memory annotation store for the active document.

This module intentionally has no Qt dependency so it can be unit tested.
"""
from __future__ import annotations

import json
from copy import deepcopy
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from pydantic import ValidationError

from .field_types import FieldTypeTable
from .schemas import Annotation, StepStatus

StoredValue = Union[Annotation, List[Annotation]]
Snapshot = Dict[str, StoredValue]


@dataclass
class UpsertResult:
    accepted: bool
    index: Optional[int] = None
    replaced: bool = False
    warning: Optional[str] = None


def normalize_box_data(data: Optional[Dict[str, Any]]) -> Dict[str, float]:
    raw = data or {}
    x = max(float(raw.get("x", 0.0)), 0.0)
    y = max(float(raw.get("y", 0.0)), 0.0)
    w = max(float(raw.get("width", 0.0)), 0.0)
    h = max(float(raw.get("height", 0.0)), 0.0)
    return {"x": round(x, 2), "y": round(y, 2), "width": round(w, 2), "height": round(h, 2)}


class AnnotationStore:
    """Field type id -> one annotation, or a list of them when the type allows multiples.

    Empty lists are never kept, so a key is present iff its step is completed.
    """

    def __init__(self, field_types: FieldTypeTable) -> None:
        self.field_types = field_types
        self._entries: Dict[str, StoredValue] = {}

    def __len__(self) -> int:
        return sum(self.count(field_type_id) for field_type_id in self._entries)

    def upsert(self, field_type_id: str, sub_type: Optional[str], annotation: Annotation) -> UpsertResult:
        spec = self.field_types.get(field_type_id)
        record = annotation.model_copy(update={"field_type_id": field_type_id, "sub_type": sub_type}, deep=True)

        if not spec.allow_multiple:
            replaced = field_type_id in self._entries
            self._entries[field_type_id] = record
            return UpsertResult(accepted=True, index=0, replaced=replaced)

        items = list(self.annotations_for(field_type_id))
        match = next((i for i, item in enumerate(items) if item.id == record.id), None)
        if match is None and sub_type is not None and spec.replace_same_sub_type:
            match = next((i for i, item in enumerate(items) if item.sub_type == sub_type), None)

        if match is not None:
            items[match] = record
            self._entries[field_type_id] = items
            return UpsertResult(accepted=True, index=match, replaced=True)

        if len(items) >= spec.max_annotations:
            return UpsertResult(
                accepted=False,
                warning=f"{spec.display_label} allows at most {spec.max_annotations} annotation(s).",
            )
        items.append(record)
        self._entries[field_type_id] = items
        return UpsertResult(accepted=True, index=len(items) - 1)

    def remove(self, field_type_id: str, index: Optional[int] = None) -> bool:
        value = self._entries.get(field_type_id)
        if value is None:
            return False
        if isinstance(value, list) and index is not None:
            if index < 0 or index >= len(value):
                return False
            remaining = value[:index] + value[index + 1 :]
            if remaining:
                self._entries[field_type_id] = remaining
            else:
                del self._entries[field_type_id]
            return True
        if not isinstance(value, list) and index not in (None, 0):
            return False
        del self._entries[field_type_id]
        return True

    def clear(self) -> None:
        self._entries = {}

    def status_of(self, field_type_id: str) -> StepStatus:
        value = self._entries.get(field_type_id)
        if value is None:
            return StepStatus.pending
        if isinstance(value, list) and not value:
            return StepStatus.pending
        return StepStatus.completed

    def get(self, field_type_id: str) -> Optional[StoredValue]:
        value = self._entries.get(field_type_id)
        return deepcopy(value)

    def annotations_for(self, field_type_id: str) -> List[Annotation]:
        value = self._entries.get(field_type_id)
        if value is None:
            return []
        if isinstance(value, list):
            return list(value)
        return [value]

    def annotation_at(self, field_type_id: str, index: int) -> Optional[Annotation]:
        items = self.annotations_for(field_type_id)
        if 0 <= index < len(items):
            return items[index]
        return None

    def count(self, field_type_id: str) -> int:
        return len(self.annotations_for(field_type_id))

    def iter_annotations(self) -> Iterator[Tuple[str, int, Annotation]]:
        for spec in self.field_types:
            for index, annotation in enumerate(self.annotations_for(spec.id)):
                yield spec.id, index, annotation

    def completed_field_ids(self) -> List[str]:
        return [spec.id for spec in self.field_types if self.status_of(spec.id) == StepStatus.completed]

    def snapshot(self) -> Snapshot:
        return deepcopy(self._entries)

    def restore(self, snapshot: Snapshot) -> None:
        self._entries = deepcopy(snapshot)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        for spec in self.field_types:
            value = self._entries.get(spec.id)
            if value is None:
                continue
            if isinstance(value, list):
                payload[spec.id] = [item.model_dump(mode="json") for item in value]
            else:
                payload[spec.id] = value.model_dump(mode="json")
        return payload

    def load_payload(self, payload: Dict[str, Any]) -> List[str]:
        """Replace the store contents from a serialized payload.

        Unknown field types and malformed records are skipped; their
        descriptions are returned so the caller can report them.
        """
        self._entries = {}
        skipped: List[str] = []
        if not isinstance(payload, dict):
            return ["payload is not an object"]
        for field_type_id, raw_value in payload.items():
            if field_type_id not in self.field_types:
                skipped.append(f"unknown field type {field_type_id!r}")
                continue
            raw_items = raw_value if isinstance(raw_value, list) else [raw_value]
            for raw in raw_items:
                if not isinstance(raw, dict):
                    skipped.append(f"{field_type_id}: record is not an object")
                    continue
                try:
                    annotation = Annotation(
                        **{**raw, **normalize_box_data(raw), "field_type_id": field_type_id}
                    )
                except ValidationError as exc:
                    skipped.append(f"{field_type_id}: {exc.errors()[0].get('msg', 'invalid record')}")
                    continue
                result = self.upsert(field_type_id, annotation.sub_type, annotation)
                if not result.accepted and result.warning:
                    skipped.append(result.warning)
        return skipped


def serialize_annotations_json(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False)


__all__ = [
    "AnnotationStore",
    "Snapshot",
    "StoredValue",
    "UpsertResult",
    "normalize_box_data",
    "serialize_annotations_json",
]
