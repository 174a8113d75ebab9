"""Domain models for wallet activity, devices and spending annotations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from wallet_trace.timestamps import is_parseable, normalize


@dataclass(frozen=True)
class Document:
    """One document in a collection snapshot."""

    id: str
    data: dict[str, Any] = field(default_factory=dict)


class ActivityRecord(BaseModel):
    """One wallet-open event, attributed to the source that produced it.

    `id` is only unique within its source, so (source_id, id) identifies a
    record across the merged collection.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    source_id: str
    source_label: str | None = None
    occurred_at: datetime

    @property
    def key(self) -> tuple[str, str]:
        return (self.source_id, self.id)

    @property
    def display_source(self) -> str:
        return self.source_label or self.source_id or "Unknown Device"


class SourceDescriptor(BaseModel):
    """A registered device, i.e. one live activity source."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    device_id: str = Field(default="", alias="deviceId")
    name: str = ""
    created_at: int = Field(default=0, alias="createdAt")

    @field_validator("created_at", mode="before")
    @classmethod
    def _coerce_created_at(cls, value: Any) -> int:
        """Devices store createdAt as epoch ms; tolerate other encodings."""
        instant = normalize(value)
        if not is_parseable(instant):
            return 0
        return int(instant.timestamp() * 1000)

    @property
    def label(self) -> str:
        return self.name or self.device_id or self.id

    @classmethod
    def from_document(cls, doc: Document) -> SourceDescriptor:
        return cls.model_validate({**doc.data, "id": doc.id})


class AnnotationRecord(BaseModel):
    """User-entered spending detail for one activity.

    `updated_at` is the store-assigned write time used to pick the
    authoritative record when several exist for the same activity.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    activity_id: str = Field(alias="activityId")
    is_spent: bool = Field(alias="isSpent")
    spent_with: str = Field(default="", alias="spentWith")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")

    @field_validator("spent_with", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("updated_at", mode="before")
    @classmethod
    def _normalize_updated_at(cls, value: Any) -> datetime | None:
        if value is None:
            return None
        instant = normalize(value)
        return instant if is_parseable(instant) else None

    @model_validator(mode="after")
    def _spent_requires_detail(self) -> AnnotationRecord:
        if self.is_spent and not self.spent_with.strip():
            raise ValueError("spentWith is required when isSpent is true")
        return self

    @classmethod
    def from_document(cls, doc: Document) -> AnnotationRecord:
        return cls.model_validate({**doc.data, "id": doc.id})
