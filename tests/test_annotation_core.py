from __future__ import annotations

import json

import pytest

from invoice_trainer.annotation_core import AnnotationStore, normalize_box_data, serialize_annotations_json
from invoice_trainer.field_types import DEFAULT_FIELD_TYPES, FieldTypeTable, default_field_table
from invoice_trainer.schemas import Annotation, FieldTypeSpec, StepStatus


def _box(field_type_id: str, x: float = 10.0, y: float = 10.0, **extra) -> Annotation:
    return Annotation(field_type_id=field_type_id, x=x, y=y, width=60.0, height=20.0, **extra)


def test_single_valued_type_keeps_only_latest_annotation() -> None:
    store = AnnotationStore(default_field_table())
    for i in range(4):
        result = store.upsert("carrier", None, _box("carrier", x=10.0 * i))
        assert result.accepted is True
    assert store.count("carrier") == 1
    assert store.annotations_for("carrier")[0].x == 30.0
    assert isinstance(store.get("carrier"), Annotation)


def test_multi_valued_type_stops_at_max_annotations() -> None:
    table = FieldTypeTable(
        [FieldTypeSpec(id="ids", display_label="IDs", allow_multiple=True, max_annotations=3)]
    )
    store = AnnotationStore(table)
    for i in range(3):
        assert store.upsert("ids", None, _box("ids", y=25.0 * i)).accepted is True

    result = store.upsert("ids", None, _box("ids", y=100.0))
    assert result.accepted is False
    assert result.warning == "IDs allows at most 3 annotation(s)."
    assert store.count("ids") == 3
    assert isinstance(store.get("ids"), list)


def test_same_sub_type_replaces_in_place_unless_disabled() -> None:
    store = AnnotationStore(default_field_table())
    store.upsert("invoice_number", "number", _box("invoice_number", x=10.0))
    store.upsert("invoice_number", "date", _box("invoice_number", x=20.0))
    result = store.upsert("invoice_number", "number", _box("invoice_number", x=30.0))
    assert result.replaced is True
    assert result.index == 0
    assert [a.sub_type for a in store.annotations_for("invoice_number")] == ["number", "date"]
    assert store.annotations_for("invoice_number")[0].x == 30.0

    store.upsert("charges", "amount", _box("charges"))
    store.upsert("charges", "amount", _box("charges", y=50.0))
    assert store.count("charges") == 2


def test_upsert_with_existing_id_replaces_that_entry() -> None:
    store = AnnotationStore(default_field_table())
    first = _box("shipment_ids")
    store.upsert("shipment_ids", None, first)
    store.upsert("shipment_ids", None, _box("shipment_ids", y=40.0))
    moved = first.moved_to(200.0, 300.0)
    result = store.upsert("shipment_ids", None, moved)
    assert result.index == 0
    assert store.annotations_for("shipment_ids")[0].x == 200.0
    assert store.count("shipment_ids") == 2


def test_remove_drops_empty_lists_and_updates_status() -> None:
    store = AnnotationStore(default_field_table())
    store.upsert("shipment_ids", None, _box("shipment_ids"))
    assert store.status_of("shipment_ids") == StepStatus.completed

    assert store.remove("shipment_ids", 5) is False
    assert store.remove("shipment_ids", 0) is True
    assert store.status_of("shipment_ids") == StepStatus.pending
    assert store.get("shipment_ids") is None
    assert store.remove("carrier") is False


def test_iteration_follows_field_type_order() -> None:
    store = AnnotationStore(default_field_table())
    store.upsert("total", None, _box("total"))
    store.upsert("carrier", None, _box("carrier"))
    assert [ft for ft, _, _ in store.iter_annotations()] == ["carrier", "total"]
    assert store.completed_field_ids() == ["carrier", "total"]
    assert len(store) == 2


def test_snapshot_is_isolated_from_later_edits() -> None:
    store = AnnotationStore(default_field_table())
    store.upsert("charges", "amount", _box("charges"))
    snapshot = store.snapshot()
    store.upsert("charges", "rate", _box("charges", y=80.0))
    assert len(snapshot["charges"]) == 1

    store.restore(snapshot)
    assert store.count("charges") == 1


def test_payload_round_trip_skips_unknown_and_malformed_records() -> None:
    store = AnnotationStore(default_field_table())
    store.upsert("carrier", None, _box("carrier"))
    store.upsert("charges", "amount", _box("charges"))
    payload = json.loads(serialize_annotations_json(store.to_payload()))
    assert isinstance(payload["carrier"], dict)
    assert isinstance(payload["charges"], list)

    payload["mystery"] = {"x": 1, "y": 1, "width": 5, "height": 5}
    payload["total"] = {"x": 1, "y": 1, "width": 0, "height": 5}
    restored = AnnotationStore(default_field_table())
    skipped = restored.load_payload(payload)

    assert restored.completed_field_ids() == ["carrier", "charges"]
    assert restored.annotations_for("carrier")[0].id == store.annotations_for("carrier")[0].id
    assert any("mystery" in message for message in skipped)
    assert any(message.startswith("total:") for message in skipped)


def test_normalize_box_data_rounds_and_clamps_negative_values() -> None:
    assert normalize_box_data({"x": "1.257", "y": -4, "width": 10.004, "height": "3"}) == {
        "x": 1.26,
        "y": 0.0,
        "width": 10.0,
        "height": 3.0,
    }


def test_field_type_table_rejects_duplicates_and_unknown_ids() -> None:
    with pytest.raises(ValueError):
        FieldTypeTable([DEFAULT_FIELD_TYPES[0], DEFAULT_FIELD_TYPES[0]])
    with pytest.raises(KeyError):
        default_field_table().get("nope")
    assert default_field_table().ids == ["carrier", "invoice_number", "shipment_ids", "charges", "total"]


def test_default_sub_type_must_be_listed() -> None:
    with pytest.raises(ValueError):
        FieldTypeSpec(id="x", display_label="X", sub_types=["a"], default_sub_type="b")
