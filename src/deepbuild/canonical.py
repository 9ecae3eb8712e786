from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

JsonValue = bool | int | float | str | None | list[Any] | dict[str, Any]


def _to_json_primitives(value: Any) -> JsonValue:
    """Reduce pydantic models and common Python values to JSON primitives.

    Raises:
        TypeError: If value contains a type with no JSON representation.
    """
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, BaseModel):
        return _to_json_primitives(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(key): _to_json_primitives(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json_primitives(item) for item in value]
    if isinstance(value, Enum):
        return _to_json_primitives(value.value)
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Cannot serialize type {type(value).__name__} to canonical JSON")


def to_canonical_json(value: Any) -> str:
    """Serialize a value to RFC 8785 canonical JSON.

    Prompts embed the brief through this function, so a given brief always
    renders to byte-identical prompt text.
    """
    return rfc8785.dumps(_to_json_primitives(value)).decode("utf-8")
