"""
Validation Engine: presence check of required fields against a schema.
"""

from __future__ import annotations

from typing import Any, Mapping

from sr_assistant.agents.models import FieldSpec, OfferingSchema


def is_blank(value: Any) -> bool:
    return value is None or not str(value).strip()


def find_missing_required(schema: OfferingSchema, values: Mapping[str, Any]) -> list[FieldSpec]:
    """
    Required fields whose value is absent, None, or empty/whitespace after str().

    Order follows the schema. No type checks beyond presence.
    """
    return [spec for spec in schema.fields if spec.required and is_blank(values.get(spec.name))]
