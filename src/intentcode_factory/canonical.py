from __future__ import annotations

import hashlib
from datetime import date, datetime
from enum import Enum
from pathlib import PurePath
from typing import Any

import rfc8785
from pydantic import BaseModel

# JSON-primitive types that rfc8785 accepts as-is.
_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def _to_json_primitives(value: Any) -> Any:
    """Convert graph payloads (pydantic models, enums, dates, paths) into JSON primitives.

    Raises:
        TypeError: If a value has no JSON representation.
    """
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value
    if isinstance(value, BaseModel):
        return _to_json_primitives(value.model_dump(mode="json", by_alias=True))
    if isinstance(value, dict):
        return {str(key): _to_json_primitives(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json_primitives(item) for item in value]
    if isinstance(value, Enum):
        return _to_json_primitives(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, PurePath):
        return value.as_posix()
    raise TypeError(
        f"Cannot serialize type {type(value).__name__} to canonical JSON. "
        f"Convert to a JSON-compatible type first."
    )


def to_canonical_json(value: Any) -> str:
    """Serialize a value to deterministic JSON per RFC 8785 (JCS).

    Two structurally equal payloads always serialize to the same string,
    regardless of key insertion order.

    Raises:
        TypeError: If value contains an unsupported type.
        rfc8785.CanonicalizationError: If rfc8785 rejects the normalized value.
    """
    return rfc8785.dumps(_to_json_primitives(value)).decode("utf-8")


def text_hash(text: str) -> str:
    """Return the sha256 hex digest of a text payload."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def structured_content_hash(value: Any) -> str:
    """Hash structured content by its canonical JSON form."""
    return text_hash(to_canonical_json(value))


def prompt_hash(prompt: str) -> str:
    """Cache index for a prompt. Never trusted on its own; callers compare the stored prompt text too."""
    return text_hash(prompt)
