"""
Conversation and request-creation records.

Offerings and schemas are only ever built from Ticketing API responses.
RequestDraft is the per-channel scratch state of the request-creation
state machine; it is replaced (never mutated) by each successful turn.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class Message:
    role: Role
    content: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role.value, "content": self.content, "timestamp": self.timestamp.isoformat()}


@dataclass(frozen=True)
class Offering:
    offering_id: str
    name: str
    description: str = ""
    category: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "offeringId": self.offering_id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
        }


@dataclass(frozen=True)
class FieldOption:
    value: str
    record_id: str | None = None
    label: str | None = None


@dataclass(frozen=True)
class FieldSpec:
    name: str
    label: str
    required: bool = False
    type: str = "text"
    options: tuple[FieldOption, ...] = ()
    default_value: str | None = None
    record_id: str | None = None

    @property
    def is_enumerated(self) -> bool:
        return bool(self.options)

    def match_option(self, value: Any) -> FieldOption | None:
        """Declared option whose value (or label) equals ``value``, ignoring case."""
        wanted = str(value).strip().lower()
        for option in self.options:
            if option.value.lower() == wanted or (option.label and option.label.lower() == wanted):
                return option
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "label": self.label,
            "required": self.required,
            "type": self.type,
            "options": [{"value": o.value, "recordId": o.record_id} for o in self.options],
            "defaultValue": self.default_value,
        }


@dataclass(frozen=True)
class OfferingSchema:
    offering_id: str
    fields: tuple[FieldSpec, ...]
    name: str = ""

    def find_field(self, key: str) -> FieldSpec | None:
        """Look a field up by name or label, ignoring case and surrounding space."""
        wanted = key.strip().lower()
        for spec in self.fields:
            if spec.name.lower() == wanted or spec.label.lower() == wanted:
                return spec
        return None


@dataclass(frozen=True)
class CreatedRecord:
    record_id: str
    record_number: str

    @property
    def confirmed(self) -> bool:
        """True when the ticketing system returned a request number."""
        return bool(self.record_number)

    def to_dict(self) -> dict[str, str]:
        return {"recordId": self.record_id, "recordNumber": self.record_number}


class RequestCreationState(str, Enum):
    IDLE = "IDLE"
    CATALOG_SHOWN = "CATALOG_SHOWN"
    OFFERING_SUGGESTED = "OFFERING_SUGGESTED"
    FIELDSET_SHOWN = "FIELDSET_SHOWN"
    COMPLETED = "COMPLETED"
    ABANDONED = "ABANDONED"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestCreationState.COMPLETED, RequestCreationState.ABANDONED)


@dataclass(frozen=True)
class RequestDraft:
    state: RequestCreationState = RequestCreationState.IDLE
    catalog: tuple[Offering, ...] = ()
    suggested: Offering | None = None
    offering: Offering | None = None
    schema: OfferingSchema | None = None
    values: dict[str, str] = field(default_factory=dict)
    rejected: dict[str, str] = field(default_factory=dict)
    record: CreatedRecord | None = None
