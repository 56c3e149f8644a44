"""Field type table for invoice annotation.

Each supported label is described once by a :class:`FieldTypeSpec`; the store,
validator and interaction code look each entry up by id instead of branching on
field names.
"""
from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Sequence

from .schemas import FieldTypeSpec, SizeConstraints, WarningRule

MONEY_PATTERN = r"\$[\d,]+\.?\d*"

DEFAULT_FIELD_TYPES: Sequence[FieldTypeSpec] = (
    FieldTypeSpec(
        id="carrier",
        display_label="Carrier Information",
        description="Draw a box around the carrier logo or company name",
        color="#2563eb",
        examples=["Company logo in header", "Carrier name at top", "Letterhead company info"],
        required=True,
        min_confidence=0.7,
        size_constraints=SizeConstraints(min_width=40, min_height=15),
        warning_rules=[
            WarningRule(kind="min_width", value=100, message="Carrier logo/name might be too small"),
            WarningRule(kind="max_y", value=200, message="Carrier info usually appears in the top section"),
        ],
    ),
    FieldTypeSpec(
        id="invoice_number",
        display_label="Invoice Number",
        description="Highlight the invoice number or reference ID",
        color="#dc2626",
        examples=["Invoice #12345", "Ref: ABC-123", "Bill Number: 67890"],
        allow_multiple=True,
        required=True,
        min_confidence=0.8,
        size_constraints=SizeConstraints(min_width=30, min_height=12),
        max_annotations=3,
        expected_patterns=[r"[A-Za-z0-9][A-Za-z0-9\-/#]{2,}"],
        sub_types=["number", "date", "terms"],
        default_sub_type="number",
        warning_rules=[
            WarningRule(kind="contains_digit", message="Invoice numbers typically contain digits"),
        ],
    ),
    FieldTypeSpec(
        id="shipment_ids",
        display_label="Shipment IDs",
        description="Select all shipment/tracking numbers (can select multiple)",
        color="#059669",
        examples=["Tracking: 1Z123456", "PRO: 789456123", "Shipment ID: SHP-001"],
        allow_multiple=True,
        min_confidence=0.7,
        size_constraints=SizeConstraints(min_width=30, min_height=12),
        max_annotations=25,
        expected_patterns=[r"[A-Z0-9][A-Z0-9\-]{4,}"],
    ),
    FieldTypeSpec(
        id="charges",
        display_label="Line Item Charges",
        description="Highlight the charges table or line items section",
        color="#7c3aed",
        examples=["Freight charges table", "Service fees list", "Itemized costs"],
        allow_multiple=True,
        min_confidence=0.6,
        size_constraints=SizeConstraints(min_width=20, min_height=12),
        max_annotations=50,
        sub_types=["name", "qty", "rate", "amount"],
        default_sub_type="amount",
        replace_same_sub_type=False,
        warning_rules=[
            WarningRule(kind="min_width", value=200, message="Charges table might be too narrow"),
            WarningRule(kind="min_height", value=50, message="Charges section might be too short"),
        ],
    ),
    FieldTypeSpec(
        id="total",
        display_label="Total Amount",
        description="Select the final total amount to be charged",
        color="#ea580c",
        examples=["Total: $1,234.56", "Amount Due: $567.89", "Grand Total: $999.00"],
        required=True,
        min_confidence=0.8,
        size_constraints=SizeConstraints(min_width=30, min_height=12),
        expected_patterns=[MONEY_PATTERN],
        warning_rules=[
            WarningRule(kind="contains", value="$", message="Total amount should include currency symbol"),
            WarningRule(kind="min_amount", value=1, message="Total amount seems unusually low"),
        ],
    ),
)


class FieldTypeTable:
    """Ordered, read-only lookup of field type specs.

    The order is the annotation step order shown to the user.
    """

    def __init__(self, specs: Iterable[FieldTypeSpec]) -> None:
        self._specs: List[FieldTypeSpec] = list(specs)
        self._by_id: Dict[str, FieldTypeSpec] = {}
        for spec in self._specs:
            if spec.id in self._by_id:
                raise ValueError(f"Duplicate field type id: {spec.id}")
            self._by_id[spec.id] = spec
        if not self._specs:
            raise ValueError("At least one field type is required.")

    def __iter__(self) -> Iterator[FieldTypeSpec]:
        return iter(self._specs)

    def __len__(self) -> int:
        return len(self._specs)

    def __contains__(self, field_type_id: object) -> bool:
        return field_type_id in self._by_id

    def get(self, field_type_id: str) -> FieldTypeSpec:
        try:
            return self._by_id[field_type_id]
        except KeyError:
            raise KeyError(f"Unknown field type: {field_type_id}") from None

    def at(self, index: int) -> FieldTypeSpec:
        return self._specs[index]

    def index_of(self, field_type_id: str) -> int:
        self.get(field_type_id)
        return next(i for i, spec in enumerate(self._specs) if spec.id == field_type_id)

    @property
    def ids(self) -> List[str]:
        return [spec.id for spec in self._specs]


def default_field_table() -> FieldTypeTable:
    return FieldTypeTable(DEFAULT_FIELD_TYPES)


__all__ = ["DEFAULT_FIELD_TYPES", "FieldTypeTable", "MONEY_PATTERN", "default_field_table"]
