from __future__ import annotations

import json
from dataclasses import asdict, is_dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, BaseException):
        return str(value)
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    return str(value)


def encode_json(value: Any) -> str:
    """Serialize notification payloads, coercing timestamps, enums and dataclasses."""
    return json.dumps(value, default=_json_default)


def json_size_bytes(value: Any) -> int | None:
    """Return the UTF-8 size of ``value`` encoded as strict JSON, or ``None`` if it cannot be encoded."""
    try:
        encoded = json.dumps(value)
    except (TypeError, ValueError, RecursionError):
        return None
    return len(encoded.encode("utf-8"))
