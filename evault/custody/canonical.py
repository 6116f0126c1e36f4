from __future__ import annotations

import base64
import json
import math
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Mapping


class _Undefined:
    """Marker for an absent value. Mapping entries holding it are dropped."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNDEFINED"

    def __bool__(self) -> bool:
        return False


UNDEFINED = _Undefined()


def iso_datetime(value: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a `Z` suffix."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def _number(value: float) -> Any:
    if not math.isfinite(value):
        return None
    # Integral floats serialize as integers so 1.0 and 1 hash identically.
    if value.is_integer() and abs(value) < 2**53:
        return int(value)
    return value


def canonicalize(value: Any) -> Any:
    """Normalize a structured value into a deterministic JSON-ready form.

    Rules
    - mapping keys are stringified and sorted at every level
    - sequences keep their order; sets are sorted
    - UNDEFINED entries are dropped from mappings (None stays null)
    - NaN / +-Infinity become null
    - datetimes become ISO-8601 UTC strings, dates become YYYY-MM-DD
    - objects exposing `to_payload()` or `to_json()` are replaced by that
      hook's output, recursively
    - bytes become base64 text; anything else unknown becomes null

    """

    if value is None or value is UNDEFINED:
        return None
    if isinstance(value, Enum):
        return canonicalize(value.value)
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return int(value)
    if isinstance(value, float):
        return _number(value)
    if isinstance(value, str):
        return str(value)
    if isinstance(value, datetime):
        return iso_datetime(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")

    for hook in ("to_payload", "to_json"):
        fn = getattr(value, hook, None)
        if callable(fn):
            return canonicalize(fn())

    if isinstance(value, Mapping):
        out = {}
        for key in sorted(value.keys(), key=str):
            entry = value[key]
            if entry is UNDEFINED:
                continue
            out[str(key)] = canonicalize(entry)
        return out
    if isinstance(value, (list, tuple)):
        return [canonicalize(v) for v in value]
    if isinstance(value, (set, frozenset)):
        items = [canonicalize(v) for v in value]
        return sorted(items, key=lambda v: json.dumps(v, sort_keys=True))
    return None


def canonical_stringify(value: Any) -> str:
    """Compact JSON of the canonical form (no whitespace, UTF-8 kept verbatim)."""

    return json.dumps(
        canonicalize(value),
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
        sort_keys=True,
    )


def iso_from_ms(ms: int) -> str:
    """Epoch milliseconds -> ISO-8601 UTC string (same format as datetimes)."""

    whole = datetime.fromtimestamp(ms // 1000, tz=timezone.utc)
    return iso_datetime(whole + timedelta(milliseconds=ms % 1000))
