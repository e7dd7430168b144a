"""Identifier coercion helpers."""

from typing import Any, Optional
from uuid import UUID

from bulkengine.errors import ValidationError


def to_uuid(value: Any, field: str = "id") -> UUID:
    """Coerce a UUID or its string form, raising ValidationError otherwise."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError, AttributeError) as e:
        raise ValidationError(f"Invalid {field}: {value!r}", {"field": field}) from e


def to_optional_uuid(value: Any, field: str = "id") -> Optional[UUID]:
    """Like to_uuid, but None and empty strings pass through as None."""
    if value is None or value == "":
        return None
    return to_uuid(value, field)
