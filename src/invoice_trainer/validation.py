"""Per-field-type validation of annotations.

Validation is advisory: results are attached to annotations for display and
never stop a write. Multiplicity limits live in the store, not here.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, List, Optional

from .annotation_core import AnnotationStore
from .field_types import FieldTypeTable
from .schemas import Annotation, FieldTypeSpec, WarningRule

CONTENT_MISMATCH = "Content doesn't match expected format"
ERROR_PENALTY = 25
WARNING_PENALTY = 10


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    @property
    def quality_score(self) -> int:
        score = 100 - ERROR_PENALTY * len(self.errors) - WARNING_PENALTY * len(self.warnings)
        return max(0, score)


@dataclass
class FieldValidation:
    field_type_id: str
    results: List[ValidationResult]

    @property
    def score(self) -> float:
        if not self.results:
            return 0.0
        return sum(r.quality_score for r in self.results) / len(self.results)


@dataclass
class ValidationReport:
    fields: Dict[str, FieldValidation] = field(default_factory=dict)

    @property
    def error_count(self) -> int:
        return sum(len(r.errors) for fv in self.fields.values() for r in fv.results)

    @property
    def overall_score(self) -> float:
        if not self.fields:
            return 0.0
        return sum(fv.score for fv in self.fields.values()) / len(self.fields)


@lru_cache(maxsize=256)
def _compiled(pattern: str) -> "re.Pattern[str]":
    return re.compile(pattern)


def _parse_amount(text: str) -> Optional[float]:
    digits = re.sub(r"[^0-9.\-]", "", text)
    try:
        return float(digits)
    except ValueError:
        return None


def _rule_hit(rule: WarningRule, annotation: Annotation) -> bool:
    text = annotation.extracted_text
    if rule.kind == "min_width":
        return annotation.width < float(rule.value)
    if rule.kind == "min_height":
        return annotation.height < float(rule.value)
    if rule.kind == "max_y":
        return annotation.y > float(rule.value)
    if text is None:
        return False
    if rule.kind == "contains_digit":
        return not any(ch.isdigit() for ch in text)
    if rule.kind == "contains":
        return str(rule.value) not in text
    if rule.kind == "min_amount":
        amount = _parse_amount(text)
        return amount is not None and amount < float(rule.value)
    return False


class ValidationEngine:
    def __init__(self, field_types: FieldTypeTable) -> None:
        self.field_types = field_types

    def validate(self, field_type_id: str, annotation: Annotation) -> ValidationResult:
        spec = self.field_types.get(field_type_id)
        errors = self._size_errors(spec, annotation)
        suggestions: List[str] = []

        text = annotation.extracted_text
        if spec.expected_patterns and text is not None:
            if not any(_compiled(p).search(text) for p in spec.expected_patterns):
                errors.append(CONTENT_MISMATCH)
                suggestions.append("Consider re-selecting the area or check for typos")

        warnings = [rule.message for rule in spec.warning_rules if _rule_hit(rule, annotation)]
        return ValidationResult(valid=not errors, errors=errors, warnings=warnings, suggestions=suggestions)

    @staticmethod
    def _size_errors(spec: FieldTypeSpec, annotation: Annotation) -> List[str]:
        errors: List[str] = []
        limits = spec.size_constraints
        if annotation.width < limits.min_width:
            errors.append(f"Annotation too narrow ({annotation.width:g} < minimum width {limits.min_width:g})")
        if annotation.height < limits.min_height:
            errors.append(f"Annotation too short ({annotation.height:g} < minimum height {limits.min_height:g})")
        return errors

    def validate_all(self, store: AnnotationStore) -> ValidationReport:
        report = ValidationReport()
        for spec in self.field_types:
            annotations = store.annotations_for(spec.id)
            if not annotations:
                continue
            report.fields[spec.id] = FieldValidation(
                field_type_id=spec.id,
                results=[self.validate(spec.id, annotation) for annotation in annotations],
            )
        return report


__all__ = [
    "CONTENT_MISMATCH",
    "FieldValidation",
    "ValidationEngine",
    "ValidationReport",
    "ValidationResult",
]
