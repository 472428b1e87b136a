from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

import rfc8785
from pydantic import BaseModel

_PRIMITIVES = (bool, int, float, str, type(None))


def _to_primitive(value: Any) -> Any:
    """Reduce ``value`` to the JSON primitives rfc8785 accepts.

    Raises:
        TypeError: For values with no JSON representation (bytes, arbitrary objects).
    """
    if isinstance(value, _PRIMITIVES):
        return value
    if isinstance(value, BaseModel):
        return _to_primitive(value.model_dump(mode="json", by_alias=True))
    if isinstance(value, dict):
        return {str(key): _to_primitive(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_primitive(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_to_primitive(item) for item in value), key=repr)
    if isinstance(value, Enum):
        return _to_primitive(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise TypeError(f"Cannot serialize non-finite Decimal to JSON: {value!r}")
        return float(value)
    raise TypeError(f"Cannot serialize type {type(value).__name__} to canonical JSON")


def to_canonical_json(value: Any) -> str:
    """Serialize ``value`` to RFC 8785 canonical JSON."""
    return rfc8785.dumps(_to_primitive(value)).decode("utf-8")


def payload_size(payload: Any) -> int:
    """Size in bytes of a candidate payload, used as the voting tie-breaker.

    ``bytes`` payloads are measured directly; everything else by the length
    of its canonical JSON encoding, so equal payloads always compare equal.

    Raises:
        TypeError: For values with no JSON representation.
        ValueError: From rfc8785, for ints outside the I-JSON range and non-finite floats.
    """
    if isinstance(payload, (bytes, bytearray)):
        return len(payload)
    return len(to_canonical_json(payload).encode("utf-8"))

