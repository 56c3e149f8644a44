from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_annotation_id() -> str:
    return uuid.uuid4().hex[:8]


class StepStatus(str, Enum):
    pending = "pending"
    completed = "completed"


class AutosaveStatus(str, Enum):
    idle = "idle"
    saving = "saving"
    saved = "saved"
    error = "error"


class SizeConstraints(BaseModel):
    min_width: float = Field(default=0.0, ge=0.0)
    min_height: float = Field(default=0.0, ge=0.0)
    model_config = ConfigDict(extra="forbid", frozen=True)


class WarningRule(BaseModel):
    """Soft heuristic attached to a field type; a hit yields a warning, never an error.

    Geometry kinds compare the annotation box against ``value``; text kinds only
    run when the annotation carries extracted text.
    """

    kind: Literal["min_width", "min_height", "max_y", "contains_digit", "contains", "min_amount"]
    value: Optional[Any] = None
    message: str
    model_config = ConfigDict(extra="forbid", frozen=True)


class FieldTypeSpec(BaseModel):
    id: str
    display_label: str
    description: str = ""
    color: str = "#2563eb"
    examples: List[str] = Field(default_factory=list)
    allow_multiple: bool = False
    required: bool = False
    min_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    size_constraints: SizeConstraints = Field(default_factory=SizeConstraints)
    max_annotations: int = Field(default=1, ge=1)
    expected_patterns: List[str] = Field(default_factory=list)
    sub_types: List[str] = Field(default_factory=list)
    default_sub_type: Optional[str] = None
    replace_same_sub_type: bool = True
    warning_rules: List[WarningRule] = Field(default_factory=list)
    model_config = ConfigDict(extra="forbid", frozen=True)

    @field_validator("expected_patterns")
    @classmethod
    def _patterns_compile(cls, value: List[str]) -> List[str]:
        for pattern in value:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"Invalid expected pattern {pattern!r}: {exc}") from exc
        return value

    @model_validator(mode="after")
    def _validate_sub_types(self) -> "FieldTypeSpec":
        if self.default_sub_type is not None and self.default_sub_type not in self.sub_types:
            raise ValueError(f"{self.id}: default_sub_type {self.default_sub_type!r} is not one of sub_types.")
        return self


class Annotation(BaseModel):
    id: str = Field(default_factory=new_annotation_id)
    field_type_id: str
    sub_type: Optional[str] = None
    page: int = Field(default=1, ge=1)
    x: float = Field(ge=0.0)
    y: float = Field(ge=0.0)
    width: float = Field(gt=0.0)
    height: float = Field(gt=0.0)
    created_at: datetime = Field(default_factory=utc_now)
    extracted_text: Optional[str] = None
    model_config = ConfigDict(extra="forbid")

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    def moved_to(self, x: float, y: float) -> "Annotation":
        return self.model_copy(update={"x": round(x, 2), "y": round(y, 2)})


class Carrier(BaseModel):
    id: str
    name: str
    category: str = "general"
    description: str = ""
    model_config = ConfigDict(extra="ignore")


class UploadedDocument(BaseModel):
    document_id: str = Field(validation_alias=AliasChoices("document_id", "documentId", "sampleId"))
    url: str = Field(default="", validation_alias=AliasChoices("url", "downloadUrl", "fileUrl"))
    model_config = ConfigDict(extra="ignore")


class FetchedDocument(BaseModel):
    url: str = Field(validation_alias=AliasChoices("url", "downloadUrl", "fileUrl"))
    annotations: Optional[Dict[str, Any]] = None
    model_config = ConfigDict(extra="ignore")


class TrainingResult(BaseModel):
    success: bool
    confidence: float = Field(default=0.0, validation_alias=AliasChoices("confidence", "overallConfidence"))
    extracted_field_count: int = Field(
        default=0, validation_alias=AliasChoices("extracted_field_count", "extractedFieldCount", "fieldCount")
    )
    extracted_data: Dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("extracted_data", "extractedData"))
    message: Optional[str] = Field(default=None, validation_alias=AliasChoices("message", "error"))
    model_config = ConfigDict(extra="ignore")


class AutosaveRecord(BaseModel):
    annotations: Dict[str, Any] = Field(default_factory=dict)
    carrier_ref: Optional[Carrier] = None
    document_id: Optional[str] = None
    document_name: Optional[str] = None
    active_step_index: int = Field(default=0, ge=0)
    current_page: int = Field(default=1, ge=1)
    saved_at: datetime
    expires_at: datetime
    model_config = ConfigDict(extra="forbid")

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


__all__ = [
    "Annotation",
    "AutosaveRecord",
    "AutosaveStatus",
    "Carrier",
    "FetchedDocument",
    "FieldTypeSpec",
    "SizeConstraints",
    "StepStatus",
    "TrainingResult",
    "UploadedDocument",
    "WarningRule",
    "new_annotation_id",
    "utc_now",
]
